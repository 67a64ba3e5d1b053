"""Session orchestrator - drives a session through the step pipeline.

Implements the session state machine:
- in_progress -> in_progress on SUCCESS (pointer advances by one)
- in_progress -> completed when the pointer reaches max_steps(mode)
- in_progress -> stopped on STOP or a runner exception (pointer unchanged)

At most one step is in flight per session (or per process, with
``BusyScope.GLOBAL``). A request that arrives while busy is dropped, not
queued.
"""

import asyncio
import inspect
import logging
import time
import uuid
from typing import Any

from scireason.contracts.schemas import (
    BusyScope,
    EvidenceCard,
    HypothesisCard,
    ProcessStepRequest,
    ReasoningConfig,
    Session,
    SessionMode,
    SessionStatus,
    StepResult,
)
from scireason.contracts.validators import parse_evidence_card, parse_hypothesis_card
from scireason.engine.processor import StepRunner, assign_card_ids
from scireason.engine.prompts import step_id
from scireason.errors import SessionNotFoundError
from scireason.kb.card_store import CardStore
from scireason.kb.session_store import SessionStore

logger = logging.getLogger(__name__)

PROCESSING_FAILED_REASON = "Failed to process. Please try again."
ROADMAP_STEP = 9


def new_session_id() -> str:
    return f"session_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"


def _with_ids(cards: list[dict[str, Any]], session_id: str, prefix: str) -> list[dict[str, Any]]:
    """Cards as given when every one has an id, else the batch relabeled in order."""
    if all(card.get("id") for card in cards):
        return cards
    logger.warning("[STEP] %s: %s cards without ids, relabeling batch", session_id, prefix)
    return assign_card_ids(cards, session_id, prefix)


class SessionOrchestrator:
    """Owns session lifecycles and advances them one step at a time."""

    def __init__(
        self,
        store: SessionStore,
        cards: CardStore,
        runner: StepRunner,
        config: ReasoningConfig | None = None,
        user_id: str | None = None,
        callbacks: dict[str, Any] | None = None,
    ):
        self.store = store
        self.cards = cards
        self.runner = runner
        self.config = config or ReasoningConfig()
        self.user_id = user_id
        self.callbacks = callbacks or {}
        self._locks: dict[str, asyncio.Lock] = {}

    async def aclose(self) -> None:
        """Release HTTP clients held by a remote store or runner."""
        for resource in (self.runner, self.store):
            close = getattr(resource, "aclose", None)
            if close is not None:
                await close()

    # -------------------------------------------------------------------------
    # Callbacks
    # -------------------------------------------------------------------------

    async def _emit(self, name: str, *args: Any) -> None:
        callback = self.callbacks.get(name)
        if callback is None:
            return
        try:
            if inspect.iscoroutinefunction(callback):
                await callback(*args)
            else:
                callback(*args)
        except Exception as e:
            logger.warning("[WARN] Error in %s callback: %s", name, e)

    # -------------------------------------------------------------------------
    # Busy guard
    # -------------------------------------------------------------------------

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        key = "*" if self.config.busy_scope == BusyScope.GLOBAL else session_id
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    def is_processing(self, session_id: str | None = None) -> bool:
        """Whether a step is in flight (for ``session_id``, or anywhere)."""
        if session_id is None:
            return any(lock.locked() for lock in self._locks.values())
        return self._lock_for(session_id).locked()

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def max_steps(self, mode: SessionMode | str) -> int:
        return self.config.max_steps(mode)

    def can_continue(self, session: Session) -> bool:
        return not session.is_terminal and session.current_step < self.max_steps(session.mode)

    async def get_session(self, session_id: str) -> Session | None:
        return await self.store.get(session_id)

    async def list_sessions(self) -> list[Session]:
        return await self.store.list(self.user_id)

    async def delete_session(self, session_id: str) -> bool:
        return await self.store.delete(session_id)

    async def get_evidence_card(self, card_id: str) -> dict[str, Any] | None:
        return await self.cards.get_evidence(card_id)

    async def get_hypothesis_card(self, card_id: str) -> dict[str, Any] | None:
        return await self.cards.get_hypothesis(card_id)

    async def get_roadmap_card(self, card_id: str) -> dict[str, Any] | None:
        return await self.cards.get_roadmap(card_id)

    async def session_cards(self, session: Session) -> tuple[list[EvidenceCard], list[HypothesisCard]]:
        """The session's evidence and hypothesis cards, in creation order.

        Cards that no longer fit their schema are left out.
        """
        evidence = [parse_evidence_card(c) for c in await self.cards.list_evidence(session.evidence_card_ids)]
        hypotheses = [
            parse_hypothesis_card(c) for c in await self.cards.list_hypotheses(session.hypothesis_card_ids)
        ]
        return [c for c in evidence if c], [c for c in hypotheses if c]

    async def clear_all_data(self) -> None:
        await self.store.clear()
        await self.cards.clear()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def create_session(
        self,
        problem_statement: str,
        mode: SessionMode | str = SessionMode.EVIDENCE,
        auto_start: bool = True,
    ) -> Session:
        """Persist a new session and (by default) immediately run step 0."""
        session = Session(
            id=new_session_id(),
            user_id=self.user_id,
            problem_statement=problem_statement,
            mode=SessionMode(mode),
        )
        session = await self.store.create(session)
        logger.info("[SESSION] Created %s (%s mode)", session.id, session.mode)
        await self._emit("on_status_change", session)

        if auto_start:
            return await self.process_next_step(session.id)
        return session

    async def process_next_step(self, session_id: str) -> Session:
        """Run the session's current step and apply the outcome.

        Dropped (the stored session is returned unchanged) when a step is
        already in flight, or when the session cannot continue.

        Raises:
            SessionNotFoundError: if the session does not exist.
        """
        lock = self._lock_for(session_id)
        if lock.locked():
            logger.info("[BUSY] %s: step already in flight, ignoring request", session_id)
            return await self._require(session_id)

        async with lock:
            session = await self._require(session_id)
            if not self.can_continue(session):
                logger.info("[SESSION] %s cannot continue (%s)", session_id, session.status)
                return session

            request = ProcessStepRequest(
                session_id=session.id,
                current_step=session.current_step,
                problem_statement=session.problem_statement,
                mode=session.mode,
                previous_step_data=session.step_data,
            )

            try:
                result = await self.runner.process_step(request)
            except Exception as e:
                logger.error("[STOP] %s: failed to process step %d: %s", session_id, session.current_step, e)
                updated = await self.store.update(session_id, {
                    "status": SessionStatus.STOPPED,
                    "stop_reason": PROCESSING_FAILED_REASON,
                })
                await self._emit("on_status_change", updated)
                return updated

            if result.is_success:
                updated = await self._apply_success(session, result)
            else:
                updated = await self._apply_stop(session, result)

        await self._emit("on_step", updated, result)
        if updated.status != SessionStatus.IN_PROGRESS:
            await self._emit("on_status_change", updated)
        return updated

    async def run_to_completion(self, session_id: str) -> Session:
        """Keep processing steps until the session completes or stops."""
        session = await self._require(session_id)
        while self.can_continue(session):
            before = session.current_step
            session = await self.process_next_step(session_id)
            if session.current_step == before and session.status == SessionStatus.IN_PROGRESS:
                # Another caller holds the lock; let it finish
                await asyncio.sleep(0.05)
                session = await self._require(session_id)
        return session

    async def retry_step(self, session_id: str) -> Session:
        """Re-open a stopped session and re-run the step that stopped it."""
        session = await self._require(session_id)
        if session.status != SessionStatus.STOPPED:
            return session

        step_data = dict(session.step_data)
        step_data.pop(step_id(session.current_step), None)
        await self.store.update(session_id, {
            "status": SessionStatus.IN_PROGRESS,
            "stop_reason": None,
            "step_data": step_data,
        })
        logger.info("[SESSION] Retrying %s at step %d", session_id, session.current_step)
        return await self.process_next_step(session_id)

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    async def _require(self, session_id: str) -> Session:
        session = await self.store.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    async def _apply_success(self, session: Session, result: StepResult) -> Session:
        completed = list(session.completed_steps)
        if session.current_step not in completed:
            completed.append(session.current_step)

        fields: dict[str, Any] = {
            "current_step": session.current_step + 1,
            "completed_steps": completed,
            "step_data": {**session.step_data, result.step_id: result.data},
        }

        if result.evidence_cards:
            evidence = _with_ids(result.evidence_cards, session.id, "EV")
            await self.cards.add_evidence(session.id, evidence)
            fields["evidence_card_ids"] = [*session.evidence_card_ids, *(c["id"] for c in evidence)]

        if result.hypothesis_cards:
            hypotheses = _with_ids(result.hypothesis_cards, session.id, "HYP")
            await self.cards.add_hypotheses(session.id, hypotheses)
            fields["hypothesis_card_ids"] = [*session.hypothesis_card_ids, *(c["id"] for c in hypotheses)]

        roadmap = (result.data or {}).get("roadmapCard")
        if session.current_step == ROADMAP_STEP and isinstance(roadmap, dict):
            card = {**roadmap, "id": f"{session.id}_RM001"}
            await self.cards.add_roadmap(session.id, card)
            fields["roadmap_card_id"] = card["id"]

        if fields["current_step"] >= self.max_steps(session.mode):
            fields["status"] = SessionStatus.COMPLETED

        logger.info("[STEP] %s completed %s", session.id, result.step_id)
        return await self.store.update(session.id, fields)

    async def _apply_stop(self, session: Session, result: StepResult) -> Session:
        logger.info("[STOP] %s stopped at %s: %s", session.id, result.step_id, result.reason)
        return await self.store.update(session.id, {
            "status": SessionStatus.STOPPED,
            "stop_reason": result.reason,
            "step_data": {**session.step_data, result.step_id: result.to_wire()},
        })
