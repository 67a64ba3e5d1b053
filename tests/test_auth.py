import time

import pytest
from jose import jwt

from scireason.auth import AuthService, hash_password, verify_password
from scireason.errors import (
    EmailAlreadyRegisteredError,
    InvalidCredentialsError,
    InvalidTokenError,
)
from scireason.kb.session_store import SqliteSessionStore

SECRET = "test-secret"


@pytest.fixture
def auth(tmp_path):
    return AuthService(SqliteSessionStore(tmp_path / "db.sqlite"), SECRET)


def test_password_hash_roundtrip() -> None:
    hashed = hash_password("correct horse")
    assert hashed != "correct horse"
    assert verify_password("correct horse", hashed)
    assert not verify_password("wrong horse", hashed)


def test_register_issues_token_for_new_user(auth) -> None:
    token, user = auth.register("Ada@Example.com", "secret1")

    assert user.email == "ada@example.com"
    assert "passwordHash" not in user.to_wire()
    payload = auth.verify_token(token)
    assert payload.user_id == user.id
    assert payload.email == "ada@example.com"


def test_token_claims_use_wire_names(auth) -> None:
    token, user = auth.register("ada@example.com", "secret1")
    claims = jwt.get_unverified_claims(token)
    assert claims["userId"] == user.id
    assert claims["exp"] - claims["iat"] == 30 * 24 * 3600


@pytest.mark.parametrize("email,password", [("no-at-sign", "secret1"), ("ada@example.com", "short")])
def test_register_rejects_bad_input(auth, email: str, password: str) -> None:
    with pytest.raises(InvalidCredentialsError):
        auth.register(email, password)


def test_register_rejects_duplicate_email(auth) -> None:
    auth.register("ada@example.com", "secret1")
    with pytest.raises(EmailAlreadyRegisteredError):
        auth.register("ADA@example.com", "another1")


def test_login(auth) -> None:
    _, registered = auth.register("ada@example.com", "secret1")

    token, user = auth.login("ada@example.com", "secret1")
    assert user.id == registered.id
    assert auth.current_user(token).id == registered.id

    with pytest.raises(InvalidCredentialsError):
        auth.login("ada@example.com", "wrong-password")
    with pytest.raises(InvalidCredentialsError):
        auth.login("nobody@example.com", "secret1")


def test_verify_token_rejects_forged_and_expired(auth) -> None:
    _, user = auth.register("ada@example.com", "secret1")

    forged = AuthService(auth.users, "other-secret").issue_token(user)
    with pytest.raises(InvalidTokenError):
        auth.verify_token(forged)

    now = int(time.time())
    expired = jwt.encode(
        {"userId": user.id, "email": user.email, "iat": now - 100, "exp": now - 10},
        SECRET,
        algorithm="HS256",
    )
    with pytest.raises(InvalidTokenError):
        auth.verify_token(expired)

    with pytest.raises(InvalidTokenError):
        auth.verify_token("not-a-token")


def test_current_user_requires_existing_user(auth) -> None:
    token = jwt.encode({"userId": "ghost", "email": "g@example.com"}, SECRET, algorithm="HS256")
    with pytest.raises(InvalidTokenError):
        auth.current_user(token)
