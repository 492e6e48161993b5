import csv
import logging
from datetime import date, datetime, time, timedelta
from io import StringIO
from typing import Annotated, List, Optional

from fastapi import APIRouter, Depends, Path, status
from fastapi.responses import StreamingResponse
from sqlalchemy import extract, func
from sqlalchemy.orm import Session

from auth import get_current_user
from database import get_db, utcnow, Expense, User
from errors import Forbidden, NotFound
from schemas import (
    ExpenseCreate,
    ExpenseOut,
    ExpenseSummary,
    ExpenseUpdate,
    MessageResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter()

# ids beyond a signed 64-bit integer cannot exist in the store
ExpenseId = Annotated[int, Path(ge=1, le=2**63 - 1)]


def get_owned_expense(
    expense_id: int, db: Session, current_user: User, action: str = "modify"
) -> Expense:
    """Load an expense and make sure the caller owns it.

    Raises NotFound when the id does not exist and Forbidden when it belongs
    to somebody else. Runs on every request, nothing is cached.
    """
    expense = db.get(Expense, expense_id)
    if expense is None:
        raise NotFound("Expense not found")
    if expense.user_id != current_user.id:
        logger.warning(
            "User %s tried to %s expense %s owned by user %s",
            current_user.id,
            action,
            expense_id,
            expense.user_id,
        )
        raise Forbidden(f"Not authorized to {action} this expense")
    return expense


def _date_range(query, start_date: Optional[date], end_date: Optional[date]):
    if start_date:
        query = query.filter(Expense.date >= datetime.combine(start_date, time.min))
    if end_date:
        # end date is inclusive
        upper = datetime.combine(end_date + timedelta(days=1), time.min)
        query = query.filter(Expense.date < upper)
    return query


@router.get("/expenses", response_model=List[ExpenseOut])
def get_expenses(
    db: Session = Depends(get_db), current_user: User = Depends(get_current_user)
):
    expenses = (
        db.query(Expense)
        .filter(Expense.user_id == current_user.id)
        .order_by(Expense.date.desc(), Expense.id.desc())
        .all()
    )
    return expenses


@router.post(
    "/expenses", response_model=ExpenseOut, status_code=status.HTTP_201_CREATED
)
def create_expense(
    expense: ExpenseCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    db_expense = Expense(
        user_id=current_user.id,
        title=expense.title,
        amount=expense.amount,
        category=expense.category.value,
        date=expense.date or utcnow(),
        notes=expense.notes or "",
    )
    db.add(db_expense)
    db.commit()
    db.refresh(db_expense)
    return db_expense


@router.get("/expenses/summary", response_model=ExpenseSummary)
def get_expense_summary(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Category and monthly totals for the caller's expenses."""
    base = _date_range(
        db.query(Expense).filter(Expense.user_id == current_user.id),
        start_date,
        end_date,
    )
    total, count = base.with_entities(
        func.coalesce(func.sum(Expense.amount), 0.0), func.count(Expense.id)
    ).one()

    category_rows = (
        base.with_entities(Expense.category, func.sum(Expense.amount).label("total"))
        .group_by(Expense.category)
        .order_by(func.sum(Expense.amount).desc())
        .all()
    )
    year = extract("year", Expense.date).label("year")
    month = extract("month", Expense.date).label("month")
    month_rows = (
        base.with_entities(year, month, func.sum(Expense.amount).label("total"))
        .group_by(year, month)
        .order_by(year, month)
        .all()
    )

    return {
        "total": round(total, 2),
        "count": count,
        "by_category": [
            {
                "category": row.category,
                "total": round(row.total or 0.0, 2),
                "percentage": round((row.total / total) * 100, 1) if total else 0.0,
            }
            for row in category_rows
        ],
        "by_month": [
            {
                "month": f"{int(row.year):04d}-{int(row.month):02d}",
                "total": round(row.total or 0.0, 2),
            }
            for row in month_rows
        ],
    }


@router.get("/expenses/export")
def export_expenses(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """
    Exports the caller's expenses as CSV containing:
    - All expenses, newest first
    - Category-wise totals
    """
    expenses = (
        db.query(Expense)
        .filter(Expense.user_id == current_user.id)
        .order_by(Expense.date.desc(), Expense.id.desc())
        .all()
    )

    csv_data = StringIO()
    writer = csv.writer(csv_data)
    writer.writerow(["Date", "Title", "Category", "Amount", "Notes"])
    for e in expenses:
        writer.writerow([e.date.date().isoformat(), e.title, e.category, e.amount, e.notes])

    writer.writerow([])
    writer.writerow(["Category", "Total Spending"])
    category_totals = (
        db.query(Expense.category, func.sum(Expense.amount).label("total"))
        .filter(Expense.user_id == current_user.id)
        .group_by(Expense.category)
        .order_by(Expense.category)
        .all()
    )
    for category, total in category_totals:
        writer.writerow([category, round(total, 2)])

    csv_data.seek(0)
    return StreamingResponse(
        iter([csv_data.getvalue()]),
        media_type="text/csv",
        headers={
            "Content-Disposition": f"attachment; filename=expenses_{current_user.id}.csv"
        },
    )


@router.get("/expenses/{expense_id}", response_model=ExpenseOut)
def get_expense(
    expense_id: ExpenseId,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return get_owned_expense(expense_id, db, current_user, action="access")


@router.put("/expenses/{expense_id}", response_model=ExpenseOut)
def update_expense(
    expense_id: ExpenseId,
    changes: ExpenseUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    expense = get_owned_expense(expense_id, db, current_user)

    for field, value in changes.model_dump(exclude_unset=True).items():
        if field == "category":
            value = value.value
        elif field == "notes" and value is None:
            value = ""
        setattr(expense, field, value)
    expense.updated_at = utcnow()

    db.commit()
    db.refresh(expense)
    return expense


@router.delete("/expenses/{expense_id}", response_model=MessageResponse)
def delete_expense(
    expense_id: ExpenseId,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    expense = get_owned_expense(expense_id, db, current_user)
    db.delete(expense)
    db.commit()
    return {"message": "Expense deleted"}
