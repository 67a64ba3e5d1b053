"""Evidence, hypothesis and roadmap card collections.

Cards are stored as the JSON dicts the model produced (with their minted
ids). They are append-only: a card is written once, when its step
completes, and never mutated afterwards.
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

CARD_KINDS = ("evidence", "hypothesis", "roadmap")


class CardStore(ABC):
    """Append-only card collections keyed by card id."""

    @abstractmethod
    async def _add(self, kind: str, session_id: str, cards: list[dict[str, Any]]) -> None: ...

    @abstractmethod
    async def _get(self, kind: str, card_id: str) -> dict[str, Any] | None: ...

    @abstractmethod
    async def clear(self) -> None: ...

    async def add_evidence(self, session_id: str, cards: list[dict[str, Any]]) -> None:
        await self._add("evidence", session_id, cards)

    async def add_hypotheses(self, session_id: str, cards: list[dict[str, Any]]) -> None:
        await self._add("hypothesis", session_id, cards)

    async def add_roadmap(self, session_id: str, card: dict[str, Any]) -> None:
        await self._add("roadmap", session_id, [card])

    async def get_evidence(self, card_id: str) -> dict[str, Any] | None:
        return await self._get("evidence", card_id)

    async def get_hypothesis(self, card_id: str) -> dict[str, Any] | None:
        return await self._get("hypothesis", card_id)

    async def get_roadmap(self, card_id: str) -> dict[str, Any] | None:
        return await self._get("roadmap", card_id)

    async def list_evidence(self, card_ids: list[str]) -> list[dict[str, Any]]:
        cards = [await self.get_evidence(cid) for cid in card_ids]
        return [c for c in cards if c is not None]

    async def list_hypotheses(self, card_ids: list[str]) -> list[dict[str, Any]]:
        cards = [await self.get_hypothesis(cid) for cid in card_ids]
        return [c for c in cards if c is not None]


class SqliteCardStore(CardStore):
    """Cards in the server database, one row per card."""

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.db_path))
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS cards (
                    id TEXT PRIMARY KEY,
                    kind TEXT NOT NULL,
                    session_id TEXT NOT NULL,
                    payload TEXT NOT NULL
                )
            """)
            conn.commit()
        finally:
            conn.close()

    def _add_sync(self, kind: str, session_id: str, cards: list[dict[str, Any]]) -> None:
        conn = sqlite3.connect(str(self.db_path))
        try:
            conn.executemany(
                "INSERT OR REPLACE INTO cards (id, kind, session_id, payload) VALUES (?, ?, ?, ?)",
                [(card["id"], kind, session_id, json.dumps(card)) for card in cards],
            )
            conn.commit()
        finally:
            conn.close()

    def _get_sync(self, kind: str, card_id: str) -> dict[str, Any] | None:
        conn = sqlite3.connect(str(self.db_path))
        try:
            row = conn.execute(
                "SELECT payload FROM cards WHERE id = ? AND kind = ?", (card_id, kind)
            ).fetchone()
        finally:
            conn.close()
        return json.loads(row[0]) if row else None

    def _clear_sync(self) -> None:
        conn = sqlite3.connect(str(self.db_path))
        try:
            conn.execute("DELETE FROM cards")
            conn.commit()
        finally:
            conn.close()

    async def _add(self, kind: str, session_id: str, cards: list[dict[str, Any]]) -> None:
        await asyncio.to_thread(self._add_sync, kind, session_id, cards)

    async def _get(self, kind: str, card_id: str) -> dict[str, Any] | None:
        return await asyncio.to_thread(self._get_sync, kind, card_id)

    async def clear(self) -> None:
        await asyncio.to_thread(self._clear_sync)


class JsonCardStore(CardStore):
    """Cards in ``<data_dir>/<kind>_cards.json``, one list per kind.

    Writes snapshot the current list, append, and replace the file.
    """

    def __init__(self, data_dir: Path | str):
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    def _path(self, kind: str) -> Path:
        return self.data_dir / f"{kind}_cards.json"

    def _read(self, kind: str) -> list[dict[str, Any]]:
        path = self._path(kind)
        if not path.exists():
            return []
        with open(path, encoding="utf-8") as f:
            return json.load(f)

    def _write(self, kind: str, cards: list[dict[str, Any]]) -> None:
        path = self._path(kind)
        tmp = path.with_suffix(".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(cards, f, indent=2, ensure_ascii=False)
        tmp.replace(path)

    async def _add(self, kind: str, session_id: str, cards: list[dict[str, Any]]) -> None:
        async with self._lock:
            existing = await asyncio.to_thread(self._read, kind)
            await asyncio.to_thread(self._write, kind, [*existing, *cards])

    async def _get(self, kind: str, card_id: str) -> dict[str, Any] | None:
        for card in await asyncio.to_thread(self._read, kind):
            if card.get("id") == card_id:
                return card
        return None

    async def clear(self) -> None:
        async with self._lock:
            for kind in CARD_KINDS:
                path = self._path(kind)
                if path.exists():
                    path.unlink()
