"""Session persistence.

One ``SessionStore`` interface with three backends:

- ``SqliteSessionStore``: the server database; sessions are owned by users.
- ``LocalSessionStore``: a JSON file in a data directory; offline, unowned.
- ``RemoteSessionStore``: the SciReason HTTP API, authenticated by a bearer
  token.

``select_session_store`` picks remote or local once, at construction time,
based on whether a token and API URL are available.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import httpx

from scireason.config import Settings
from scireason.contracts.schemas import Session, User, utc_now_iso
from scireason.errors import (
    EmailAlreadyRegisteredError,
    SessionAlreadyExistsError,
    SessionNotFoundError,
)

logger = logging.getLogger(__name__)

# Session columns that hold JSON documents
_JSON_COLUMNS = ("completed_steps", "step_data", "evidence_card_ids", "hypothesis_card_ids")


def _sort_recent_first(sessions: list[Session]) -> list[Session]:
    return sorted(sessions, key=lambda s: s.updated_at, reverse=True)


class SessionStore(ABC):
    """CRUD contract for sessions."""

    @abstractmethod
    async def create(self, session: Session) -> Session:
        """Persist a new session and return the stored copy.

        Raises:
            SessionAlreadyExistsError: if the id is already taken.
        """

    @abstractmethod
    async def get(self, session_id: str) -> Session | None:
        """Return the session, or None when it does not exist."""

    @abstractmethod
    async def list(self, user_id: str | None = None) -> list[Session]:
        """Sessions for ``user_id``, most recently updated first."""

    @abstractmethod
    async def update(self, session_id: str, fields: dict[str, Any]) -> Session:
        """Apply ``fields`` (snake_case attribute names) and bump ``updated_at``.

        Raises:
            SessionNotFoundError: if the session does not exist.
        """

    @abstractmethod
    async def delete(self, session_id: str) -> bool:
        """Delete a session; False when nothing was deleted."""

    async def clear(self) -> None:
        """Remove every session this store can see."""
        for session in await self.list():
            await self.delete(session.id)


# =============================================================================
# SQLite (server)
# =============================================================================


class SqliteSessionStore(SessionStore):
    """Sessions and users in a SQLite database.

    Each call opens its own connection so work can run in a worker thread.
    """

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _init_db(self) -> None:
        """Create tables if they don't exist."""
        conn = self._connect()
        try:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    email TEXT NOT NULL UNIQUE,
                    password TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS sessions (
                    id TEXT PRIMARY KEY,
                    user_id TEXT REFERENCES users(id) ON DELETE CASCADE,
                    problem_statement TEXT NOT NULL,
                    mode TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'in_progress',
                    current_step INTEGER NOT NULL DEFAULT 0,
                    completed_steps TEXT NOT NULL DEFAULT '[]',
                    stop_reason TEXT,
                    step_data TEXT NOT NULL DEFAULT '{}',
                    evidence_card_ids TEXT NOT NULL DEFAULT '[]',
                    hypothesis_card_ids TEXT NOT NULL DEFAULT '[]',
                    roadmap_card_id TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_sessions_user ON sessions(user_id, updated_at);
            """)
            conn.commit()
        finally:
            conn.close()

    # -- rows ---------------------------------------------------------------

    @staticmethod
    def _to_row(session: Session) -> dict[str, Any]:
        row = session.model_dump(mode="json")
        for column in _JSON_COLUMNS:
            row[column] = json.dumps(row[column])
        return row

    @staticmethod
    def _from_row(row: sqlite3.Row) -> Session:
        data = dict(row)
        for column in _JSON_COLUMNS:
            data[column] = json.loads(data[column])
        return Session.model_validate(data)

    # -- sessions -----------------------------------------------------------

    def _create_sync(self, session: Session) -> Session:
        row = self._to_row(session)
        columns = ", ".join(row)
        placeholders = ", ".join(f":{c}" for c in row)
        conn = self._connect()
        try:
            conn.execute(f"INSERT INTO sessions ({columns}) VALUES ({placeholders})", row)
            conn.commit()
        except sqlite3.IntegrityError:
            # Also raised for an unknown owner (foreign key)
            exists = conn.execute("SELECT 1 FROM sessions WHERE id = ?", (session.id,)).fetchone()
            if exists:
                raise SessionAlreadyExistsError(session.id) from None
            raise
        finally:
            conn.close()
        return session

    def _get_sync(self, session_id: str) -> Session | None:
        conn = self._connect()
        try:
            row = conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
        finally:
            conn.close()
        return self._from_row(row) if row else None

    def _list_sync(self, user_id: str | None) -> list[Session]:
        conn = self._connect()
        try:
            if user_id is None:
                rows = conn.execute("SELECT * FROM sessions ORDER BY updated_at DESC").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM sessions WHERE user_id = ? ORDER BY updated_at DESC",
                    (user_id,),
                ).fetchall()
        finally:
            conn.close()
        return [self._from_row(r) for r in rows]

    def _update_sync(self, session_id: str, fields: dict[str, Any]) -> Session:
        current = self._get_sync(session_id)
        if current is None:
            raise SessionNotFoundError(session_id)

        merged = current.model_copy(update={**fields, "updated_at": utc_now_iso()})
        row = self._to_row(merged)
        row.pop("id")
        row.pop("created_at")
        assignments = ", ".join(f"{c} = :{c}" for c in row)
        conn = self._connect()
        try:
            conn.execute(f"UPDATE sessions SET {assignments} WHERE id = :id", {**row, "id": session_id})
            conn.commit()
        finally:
            conn.close()
        return merged

    def _delete_sync(self, session_id: str) -> bool:
        conn = self._connect()
        try:
            cursor = conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    async def create(self, session: Session) -> Session:
        return await asyncio.to_thread(self._create_sync, session)

    async def get(self, session_id: str) -> Session | None:
        return await asyncio.to_thread(self._get_sync, session_id)

    async def list(self, user_id: str | None = None) -> list[Session]:
        return await asyncio.to_thread(self._list_sync, user_id)

    async def update(self, session_id: str, fields: dict[str, Any]) -> Session:
        return await asyncio.to_thread(self._update_sync, session_id, fields)

    async def delete(self, session_id: str) -> bool:
        return await asyncio.to_thread(self._delete_sync, session_id)

    # -- users --------------------------------------------------------------

    def create_user(self, user: User) -> User:
        """Insert a user; the email is stored lowercased.

        Raises:
            EmailAlreadyRegisteredError: if the email is taken.
        """
        user = user.model_copy(update={"email": user.email.lower()})
        conn = self._connect()
        try:
            conn.execute(
                "INSERT INTO users (id, email, password, created_at) VALUES (?, ?, ?, ?)",
                (user.id, user.email, user.password_hash, user.created_at),
            )
            conn.commit()
        except sqlite3.IntegrityError as e:
            raise EmailAlreadyRegisteredError(f"Email already registered: {user.email}") from e
        finally:
            conn.close()
        return user

    def _user_where(self, clause: str, value: str) -> User | None:
        conn = self._connect()
        try:
            row = conn.execute(f"SELECT * FROM users WHERE {clause} = ?", (value,)).fetchone()
        finally:
            conn.close()
        if not row:
            return None
        return User(
            id=row["id"],
            email=row["email"],
            password_hash=row["password"],
            created_at=row["created_at"],
        )

    def get_user(self, user_id: str) -> User | None:
        return self._user_where("id", user_id)

    def get_user_by_email(self, email: str) -> User | None:
        return self._user_where("email", email.lower())


# =============================================================================
# Local JSON file (offline)
# =============================================================================


class LocalSessionStore(SessionStore):
    """Unowned sessions kept in ``<data_dir>/sessions.json``."""

    def __init__(self, data_dir: Path | str):
        self.path = Path(data_dir) / "sessions.json"
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    def _read(self) -> dict[str, dict[str, Any]]:
        if not self.path.exists():
            return {}
        with open(self.path, encoding="utf-8") as f:
            return json.load(f)

    def _write(self, sessions: dict[str, dict[str, Any]]) -> None:
        tmp = self.path.with_suffix(".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(sessions, f, indent=2, ensure_ascii=False)
        tmp.replace(self.path)

    async def _load(self) -> dict[str, dict[str, Any]]:
        return await asyncio.to_thread(self._read)

    async def _save(self, sessions: dict[str, dict[str, Any]]) -> None:
        await asyncio.to_thread(self._write, sessions)

    async def create(self, session: Session) -> Session:
        async with self._lock:
            sessions = await self._load()
            if session.id in sessions:
                raise SessionAlreadyExistsError(session.id)
            sessions[session.id] = session.model_dump(mode="json")
            await self._save(sessions)
        return session

    async def get(self, session_id: str) -> Session | None:
        sessions = await self._load()
        raw = sessions.get(session_id)
        return Session.model_validate(raw) if raw else None

    async def list(self, user_id: str | None = None) -> list[Session]:
        sessions = [Session.model_validate(raw) for raw in (await self._load()).values()]
        if user_id is not None:
            sessions = [s for s in sessions if s.user_id == user_id]
        return _sort_recent_first(sessions)

    async def update(self, session_id: str, fields: dict[str, Any]) -> Session:
        async with self._lock:
            sessions = await self._load()
            raw = sessions.get(session_id)
            if raw is None:
                raise SessionNotFoundError(session_id)
            merged = Session.model_validate(raw).model_copy(
                update={**fields, "updated_at": utc_now_iso()}
            )
            sessions[session_id] = merged.model_dump(mode="json")
            await self._save(sessions)
        return merged

    async def delete(self, session_id: str) -> bool:
        async with self._lock:
            sessions = await self._load()
            if session_id not in sessions:
                return False
            del sessions[session_id]
            await self._save(sessions)
        return True

    async def clear(self) -> None:
        async with self._lock:
            await self._save({})


# =============================================================================
# Remote HTTP API
# =============================================================================


class RemoteSessionStore(SessionStore):
    """Sessions owned by the authenticated user on a SciReason server."""

    def __init__(self, base_url: str, token: str, client: httpx.AsyncClient | None = None):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=30.0)

    async def aclose(self) -> None:
        await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}

    async def create(self, session: Session) -> Session:
        response = await self._client.post("/api/sessions", json=session.to_wire(), headers=self._headers())
        if response.status_code == 409:
            raise SessionAlreadyExistsError(session.id)
        response.raise_for_status()
        return Session.model_validate(response.json())

    async def get(self, session_id: str) -> Session | None:
        response = await self._client.get(f"/api/sessions/{session_id}", headers=self._headers())
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return Session.model_validate(response.json())

    async def list(self, user_id: str | None = None) -> list[Session]:
        # The server scopes the listing to the token's user
        response = await self._client.get("/api/sessions", headers=self._headers())
        response.raise_for_status()
        return [Session.model_validate(raw) for raw in response.json()]

    async def update(self, session_id: str, fields: dict[str, Any]) -> Session:
        current = await self.get(session_id)
        if current is None:
            raise SessionNotFoundError(session_id)
        # Keep nulls: the server only applies keys present in the body
        body = current.model_copy(update=fields).model_dump(by_alias=True, mode="json")
        response = await self._client.put(f"/api/sessions/{session_id}", json=body, headers=self._headers())
        if response.status_code == 404:
            raise SessionNotFoundError(session_id)
        response.raise_for_status()
        return Session.model_validate(response.json())

    async def delete(self, session_id: str) -> bool:
        response = await self._client.delete(f"/api/sessions/{session_id}", headers=self._headers())
        if response.status_code == 404:
            return False
        response.raise_for_status()
        return True


def select_session_store(settings: Settings, token: str | None = None) -> SessionStore:
    """Remote store when authenticated against a configured API, else local."""
    if token and settings.api_url:
        logger.info("[STORE] Using remote session store at %s", settings.api_url)
        return RemoteSessionStore(settings.api_url, token)
    logger.info("[STORE] Using local session store in %s", settings.data_dir)
    return LocalSessionStore(settings.data_dir)
