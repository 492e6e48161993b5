import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
import jwt
from fastapi import APIRouter, Body, Depends, status
from fastapi.security import OAuth2PasswordBearer
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import settings
from database import get_db, User
from errors import AuthError, Conflict, ValidationFailed, format_validation_errors
from schemas import AuthResponse, UserCreate, UserLogin

logger = logging.getLogger(__name__)

auth_router = APIRouter()
oauth2_scheme = OAuth2PasswordBearer(
    tokenUrl=f"{settings.api_prefix}/users/login", auto_error=False
)

# bcrypt only looks at the first 72 bytes
BCRYPT_MAX_BYTES = 72


def _password_bytes(password: str) -> bytes:
    return password.encode("utf-8")[:BCRYPT_MAX_BYTES]


def hash_password(password: str) -> str:
    salt = bcrypt.gensalt(rounds=settings.bcrypt_rounds)
    return bcrypt.hashpw(_password_bytes(password), salt).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(_password_bytes(password), password_hash.encode("utf-8"))
    except ValueError:
        # malformed stored hash
        return False


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.access_token_expire_minutes)
    expire = datetime.now(timezone.utc) + expires_delta
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)
    return encoded_jwt


def decode_access_token(token: str) -> Optional[int]:
    """Return the user id carried by a valid token, or None."""
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except jwt.ExpiredSignatureError:
        logger.debug("Rejected expired token")
        return None
    except jwt.InvalidTokenError:
        return None

    subject = payload.get("sub")
    try:
        return int(subject)
    except (TypeError, ValueError):
        return None


def issue_token(user: User) -> AuthResponse:
    access_token = create_access_token(data={"sub": str(user.id)})
    return AuthResponse(id=user.id, name=user.name, email=user.email, token=access_token)


def get_current_user(
    token: Optional[str] = Depends(oauth2_scheme), db: Session = Depends(get_db)
) -> User:
    if not token:
        raise AuthError("Not authorized, no token")

    user_id = decode_access_token(token)
    if user_id is None:
        raise AuthError("Not authorized, token failed")

    user = db.get(User, user_id)
    if user is None:
        raise AuthError("Not authorized, token failed")
    return user


@auth_router.post(
    "/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED
)
def register(user: UserCreate, db: Session = Depends(get_db)):
    existing = db.query(User).filter(User.email == user.email).first()
    if existing:
        raise Conflict("User already exists")

    new_user = User(
        name=user.name, email=user.email, password_hash=hash_password(user.password)
    )
    db.add(new_user)
    try:
        db.commit()
    except IntegrityError:
        # lost a race against a concurrent registration
        db.rollback()
        raise Conflict("User already exists")
    db.refresh(new_user)

    logger.info("Registered user id=%s", new_user.id)
    return issue_token(new_user)


@auth_router.post("/login", response_model=AuthResponse)
def login(payload: dict = Body(...), db: Session = Depends(get_db)):
    # Only the first problem is reported back on login.
    try:
        credentials = UserLogin.model_validate(payload)
    except ValidationError as exc:
        raise ValidationFailed(errors=format_validation_errors(exc.errors())[:1])

    db_user = db.query(User).filter(User.email == credentials.email).first()
    if not db_user or not verify_password(credentials.password, db_user.password_hash):
        logger.info("Failed login attempt")
        raise AuthError("Invalid credentials")

    return issue_token(db_user)
