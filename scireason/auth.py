"""Authentication: password hashing and bearer-token issuance."""

import logging
import uuid
from datetime import datetime, timedelta, timezone

import bcrypt
from jose import JWTError, jwt
from pydantic import BaseModel

from scireason.contracts.schemas import User
from scireason.errors import (
    EmailAlreadyRegisteredError,
    InvalidCredentialsError,
    InvalidTokenError,
)
from scireason.kb.session_store import SqliteSessionStore

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"
BCRYPT_ROUNDS = 10
MIN_PASSWORD_LENGTH = 6


class AuthPayload(BaseModel):
    """Claims carried by a bearer token."""

    user_id: str
    email: str


def hash_password(password: str) -> str:
    """Hash a password using bcrypt (inputs are truncated to bcrypt's 72 bytes)."""
    salt = bcrypt.gensalt(rounds=BCRYPT_ROUNDS)
    return bcrypt.hashpw(password.encode("utf-8")[:72], salt).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8")[:72], password_hash.encode("utf-8"))


class AuthService:
    """Registers users, checks credentials and issues/validates tokens."""

    def __init__(self, users: SqliteSessionStore, secret: str, expiry_days: int = 30):
        self.users = users
        self.secret = secret
        self.expiry = timedelta(days=expiry_days)

    def register(self, email: str, password: str) -> tuple[str, User]:
        """Create a user and return ``(token, user)``.

        Raises:
            InvalidCredentialsError: if email or password is unusable.
            EmailAlreadyRegisteredError: if the email is taken.
        """
        email = email.strip().lower()
        if "@" not in email or len(password) < MIN_PASSWORD_LENGTH:
            raise InvalidCredentialsError("Valid email and a password of at least 6 characters are required")
        if self.users.get_user_by_email(email):
            raise EmailAlreadyRegisteredError(f"Email already registered: {email}")

        user = self.users.create_user(User(
            id=uuid.uuid4().hex,
            email=email,
            password_hash=hash_password(password),
        ))
        logger.info("[AUTH] Registered user %s", user.id)
        return self.issue_token(user), user

    def login(self, email: str, password: str) -> tuple[str, User]:
        """Check credentials and return ``(token, user)``.

        Raises:
            InvalidCredentialsError: on unknown email or wrong password.
        """
        user = self.users.get_user_by_email(email.strip())
        if user is None or not verify_password(password, user.password_hash):
            logger.warning("[AUTH] Failed login attempt")
            raise InvalidCredentialsError("Invalid email or password")
        return self.issue_token(user), user

    def issue_token(self, user: User) -> str:
        now = datetime.now(timezone.utc)
        claims = {
            "userId": user.id,
            "email": user.email,
            "iat": int(now.timestamp()),
            "exp": int((now + self.expiry).timestamp()),
        }
        return jwt.encode(claims, self.secret, algorithm=JWT_ALGORITHM)

    def verify_token(self, token: str) -> AuthPayload:
        """Decode a bearer token.

        Raises:
            InvalidTokenError: if the token is malformed, forged or expired.
        """
        try:
            claims = jwt.decode(token, self.secret, algorithms=[JWT_ALGORITHM])
        except JWTError as e:
            raise InvalidTokenError("Invalid or expired token") from e

        if "userId" not in claims or "email" not in claims:
            raise InvalidTokenError("Invalid or expired token")
        return AuthPayload(user_id=claims["userId"], email=claims["email"])

    def current_user(self, token: str) -> User:
        payload = self.verify_token(token)
        user = self.users.get_user(payload.user_id)
        if user is None:
            raise InvalidTokenError("User no longer exists")
        return user
