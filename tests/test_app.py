from datetime import datetime

import pytest
from pydantic import ValidationError

from errors import format_validation_errors
from ratelimit import RateLimiter
from schemas import ExpenseCreate, ExpenseUpdate, UserCreate
from conftest import API


def test_root_and_health(client):
    assert client.get("/").json() == {"message": "Expense Tracker API is running"}

    health = client.get(f"{API}/health")
    assert health.status_code == 200
    assert health.json() == {"status": "ok"}


def test_security_headers_are_set(client):
    response = client.get(f"{API}/health")

    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["X-Frame-Options"] == "DENY"


def test_cors_preflight(client):
    response = client.options(
        f"{API}/expenses",
        headers={
            "Origin": "http://localhost:5173",
            "Access-Control-Request-Method": "POST",
        },
    )

    assert response.status_code == 200
    assert response.headers["access-control-allow-origin"] in ("*", "http://localhost:5173")


def test_unknown_route_uses_error_body(client):
    response = client.get(f"{API}/nope")

    assert response.status_code == 404
    assert response.json() == {"message": "Not Found"}


def test_malformed_json_body(client):
    response = client.post(
        f"{API}/users/register",
        content=b"{not json",
        headers={"Content-Type": "application/json"},
    )

    assert response.status_code == 400
    assert response.json()["message"] == "Validation failed"


def test_expense_date_is_normalised_to_utc():
    expense = ExpenseCreate(title="Taxi", amount=12, date="2024-05-01T23:30:00-02:00")

    assert expense.date == datetime(2024, 5, 2, 1, 30)
    assert expense.category.value == "Other"


def test_expense_date_accepts_plain_dates():
    assert ExpenseCreate(title="Taxi", amount=12, date="2024-05-01").date == datetime(2024, 5, 1)


def test_partial_update_only_tracks_supplied_fields():
    changes = ExpenseUpdate(notes="  ")

    assert changes.model_dump(exclude_unset=True) == {"notes": ""}


def test_validation_errors_are_flattened():
    with pytest.raises(ValidationError) as info:
        UserCreate(name="Al", email="al@example.com", password="lowercase1")

    assert format_validation_errors(info.value.errors()) == [
        {
            "field": "password",
            "message": "Password must be 8+ chars with uppercase, lowercase, and number",
        }
    ]


def test_lifespan_schedules_counter_pruning(make_client, clock):
    limiter = RateLimiter([], clock=clock)
    client = make_client(limiter=limiter)
    limiter.store.increment("general:ip:1", 10, clock())

    with client:
        scheduler = client.app.state.scheduler
        assert scheduler.running
        jobs = scheduler.get_jobs()
        assert [job.func for job in jobs] == [limiter.prune]

        clock.advance(11)
        assert jobs[0].func() == 1
        assert len(limiter.store) == 0

    assert not scheduler.running
