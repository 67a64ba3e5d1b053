import asyncio
import json

import pytest
from httpx import AsyncClient, MockTransport, Response

from scireason.contracts.schemas import (
    BusyScope,
    ProcessStepRequest,
    ReasoningConfig,
    SessionMode,
    SessionStatus,
    StepResult,
    StepStatus,
    StopReason,
)
from scireason.engine.processor import StepProcessor
from scireason.engine.prompts import step_id
from scireason.engine.remote import RemoteStepClient
from scireason.errors import SessionNotFoundError
from scireason.kb.card_store import JsonCardStore
from scireason.kb.session_store import LocalSessionStore, RemoteSessionStore
from scireason.workflow.orchestrator import PROCESSING_FAILED_REASON, SessionOrchestrator

PROBLEM = "What treats condition X?"


def _success(step: int, data: dict | None = None, **kwargs) -> StepResult:
    return StepResult(
        status=StepStatus.SUCCESS,
        step_id=step_id(step),
        data=data if data is not None else {"summary": f"step {step} done"},
        **kwargs,
    )


def _stop(step: int, reason: StopReason = StopReason.MISSING_EVIDENCE) -> StepResult:
    return StepResult(
        status=StepStatus.STOP,
        step_id=step_id(step),
        reason=reason.value,
        what_is_needed_next=["Failed to process this step. Please try again."],
        suggested_queries=[],
    )


class ScriptedRunner:
    """Succeeds by default; ``script[step]`` is a queue of outcomes for that step."""

    def __init__(self, script: dict[int, list] | None = None):
        self.script = script or {}
        self.requests: list[ProcessStepRequest] = []

    async def process_step(self, request: ProcessStepRequest) -> StepResult:
        self.requests.append(request)
        queue = self.script.get(request.current_step)
        outcome = queue.pop(0) if queue else None
        if isinstance(outcome, Exception):
            raise outcome
        return outcome or _success(request.current_step)


class BlockingRunner(ScriptedRunner):
    """Holds every step until ``release`` is set."""

    def __init__(self):
        super().__init__()
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def process_step(self, request: ProcessStepRequest) -> StepResult:
        self.started.set()
        await self.release.wait()
        return await super().process_step(request)


@pytest.fixture
def stores(tmp_path):
    return LocalSessionStore(tmp_path), JsonCardStore(tmp_path)


def _orchestrator(stores, runner, **kwargs) -> SessionOrchestrator:
    session_store, card_store = stores
    return SessionOrchestrator(session_store, card_store, runner, **kwargs)


# -- advancement ----------------------------------------------------------


@pytest.mark.asyncio
async def test_evidence_mode_completes_after_seven_successes(stores) -> None:
    runner = ScriptedRunner()
    orch = _orchestrator(stores, runner)

    session = await orch.create_session(PROBLEM, SessionMode.EVIDENCE)
    assert session.current_step == 1
    assert session.status == SessionStatus.IN_PROGRESS

    session = await orch.run_to_completion(session.id)

    assert session.status == SessionStatus.COMPLETED
    assert session.current_step == 7
    assert session.completed_steps == list(range(7))
    assert sorted(session.step_data) == [step_id(i) for i in range(7)]
    assert [r.current_step for r in runner.requests] == list(range(7))


@pytest.mark.asyncio
async def test_completion_triggers_exactly_at_boundary(stores) -> None:
    orch = _orchestrator(stores, ScriptedRunner())
    session = await orch.create_session(PROBLEM, SessionMode.EVIDENCE)

    for _ in range(5):
        session = await orch.process_next_step(session.id)
    assert session.current_step == 6
    assert session.status == SessionStatus.IN_PROGRESS

    session = await orch.process_next_step(session.id)
    assert session.current_step == 7
    assert session.status == SessionStatus.COMPLETED


@pytest.mark.asyncio
async def test_roadmap_mode_runs_ten_steps_and_stores_roadmap_card(stores) -> None:
    roadmap = {"roadmapCard": {"id": "RM001", "objective": "Test X", "phases": [{"phaseId": "P1"}]}}
    runner = ScriptedRunner({9: [_success(9, roadmap)]})
    orch = _orchestrator(stores, runner)

    session = await orch.create_session(PROBLEM, "roadmap")
    session = await orch.run_to_completion(session.id)

    assert session.status == SessionStatus.COMPLETED
    assert session.current_step == 10
    assert session.roadmap_card_id == f"{session.id}_RM001"
    card = await orch.get_roadmap_card(session.roadmap_card_id)
    assert card["objective"] == "Test X"


@pytest.mark.asyncio
async def test_completed_session_ignores_further_requests(stores) -> None:
    runner = ScriptedRunner()
    orch = _orchestrator(stores, runner)
    session = await orch.create_session(PROBLEM)
    session = await orch.run_to_completion(session.id)

    again = await orch.process_next_step(session.id)

    assert again.current_step == 7
    assert len(runner.requests) == 7
    assert orch.can_continue(again) is False


@pytest.mark.asyncio
async def test_request_carries_accumulated_step_data(stores) -> None:
    runner = ScriptedRunner({1: [_success(1, {"problemDefinition": {"condition": "X"}})]})
    orch = _orchestrator(stores, runner)
    session = await orch.create_session(PROBLEM)
    await orch.process_next_step(session.id)
    await orch.process_next_step(session.id)

    last = runner.requests[-1]
    assert last.current_step == 2
    assert last.problem_statement == PROBLEM
    assert last.previous_step_data["step1"] == {"problemDefinition": {"condition": "X"}}


# -- stop and failure -----------------------------------------------------


@pytest.mark.asyncio
async def test_stop_leaves_pointer_unchanged(stores) -> None:
    runner = ScriptedRunner({3: [_stop(3)]})
    orch = _orchestrator(stores, runner)
    session = await orch.create_session(PROBLEM)

    session = await orch.run_to_completion(session.id)

    assert session.status == SessionStatus.STOPPED
    assert session.current_step == 3
    assert session.stop_reason == "MissingEvidence"
    assert session.completed_steps == [0, 1, 2]
    assert session.step_data["step3"]["status"] == "STOP"
    assert session.step_data["step3"]["reason"] == "MissingEvidence"


@pytest.mark.asyncio
async def test_stopped_session_is_not_resumed(stores) -> None:
    runner = ScriptedRunner({0: [_stop(0, StopReason.SAFETY_CONSTRAINT)]})
    orch = _orchestrator(stores, runner)
    session = await orch.create_session(PROBLEM)

    again = await orch.process_next_step(session.id)

    assert again.status == SessionStatus.STOPPED
    assert again.current_step == 0
    assert len(runner.requests) == 1


@pytest.mark.asyncio
async def test_runner_exception_stops_without_merging(stores) -> None:
    runner = ScriptedRunner({1: [ConnectionError("network down")]})
    orch = _orchestrator(stores, runner)
    session = await orch.create_session(PROBLEM)

    session = await orch.process_next_step(session.id)

    assert session.status == SessionStatus.STOPPED
    assert session.stop_reason == PROCESSING_FAILED_REASON
    assert session.current_step == 1
    assert "step1" not in session.step_data


@pytest.mark.asyncio
async def test_retry_reruns_the_stopped_step(stores) -> None:
    runner = ScriptedRunner({2: [_stop(2), _success(2, {"summary": "second try"})]})
    orch = _orchestrator(stores, runner)
    session = await orch.create_session(PROBLEM)
    session = await orch.run_to_completion(session.id)
    assert session.status == SessionStatus.STOPPED

    session = await orch.retry_step(session.id)

    assert session.status == SessionStatus.IN_PROGRESS
    assert session.stop_reason is None
    assert session.current_step == 3
    assert session.step_data["step2"] == {"summary": "second try"}
    assert session.completed_steps == [0, 1, 2]


@pytest.mark.asyncio
async def test_retry_is_a_noop_unless_stopped(stores) -> None:
    runner = ScriptedRunner()
    orch = _orchestrator(stores, runner)
    session = await orch.create_session(PROBLEM)

    again = await orch.retry_step(session.id)

    assert again.current_step == 1
    assert len(runner.requests) == 1


@pytest.mark.asyncio
async def test_unknown_session_raises(stores) -> None:
    orch = _orchestrator(stores, ScriptedRunner())
    with pytest.raises(SessionNotFoundError):
        await orch.process_next_step("session_missing")


# -- busy guard -----------------------------------------------------------


@pytest.mark.asyncio
async def test_request_while_busy_is_ignored(stores) -> None:
    runner = BlockingRunner()
    orch = _orchestrator(stores, runner)
    session = await orch.create_session(PROBLEM, auto_start=False)

    first = asyncio.create_task(orch.process_next_step(session.id))
    await runner.started.wait()
    assert orch.is_processing(session.id)

    ignored = await orch.process_next_step(session.id)
    assert ignored.current_step == 0

    runner.release.set()
    done = await first

    assert done.current_step == 1
    assert done.completed_steps == [0]
    assert len(runner.requests) == 1
    assert not orch.is_processing()


@pytest.mark.asyncio
async def test_sessions_do_not_block_each_other_by_default(stores) -> None:
    runner = BlockingRunner()
    orch = _orchestrator(stores, runner)
    a = await orch.create_session("Question A", auto_start=False)
    b = await orch.create_session("Question B", auto_start=False)

    task_a = asyncio.create_task(orch.process_next_step(a.id))
    await runner.started.wait()
    task_b = asyncio.create_task(orch.process_next_step(b.id))
    await asyncio.sleep(0.05)
    assert orch.is_processing(b.id)

    runner.release.set()
    assert (await task_a).current_step == 1
    assert (await task_b).current_step == 1


@pytest.mark.asyncio
async def test_global_scope_serializes_all_sessions(stores) -> None:
    runner = BlockingRunner()
    orch = _orchestrator(stores, runner, config=ReasoningConfig(busy_scope=BusyScope.GLOBAL))
    a = await orch.create_session("Question A", auto_start=False)
    b = await orch.create_session("Question B", auto_start=False)

    task_a = asyncio.create_task(orch.process_next_step(a.id))
    await runner.started.wait()

    ignored = await orch.process_next_step(b.id)
    assert ignored.current_step == 0

    runner.release.set()
    assert (await task_a).current_step == 1
    assert [r.session_id for r in runner.requests] == [a.id]


# -- callbacks ------------------------------------------------------------


@pytest.mark.asyncio
async def test_callbacks_fire_and_errors_are_contained(stores) -> None:
    steps = []
    statuses = []

    def on_step(session, result):
        steps.append(result.step_id)

    async def on_status_change(session):
        statuses.append(session.status)
        raise RuntimeError("listener bug")

    orch = _orchestrator(
        stores,
        ScriptedRunner({1: [_stop(1)]}),
        callbacks={"on_step": on_step, "on_status_change": on_status_change},
    )
    session = await orch.create_session(PROBLEM)
    session = await orch.process_next_step(session.id)

    assert steps == ["step0", "step1"]
    assert statuses == ["in_progress", "stopped"]
    assert session.status == SessionStatus.STOPPED


# -- end to end with the step processor ----------------------------------


class SequenceModel:
    def __init__(self, *responses: dict):
        self.responses = [json.dumps(r) for r in responses]

    async def invoke(self, system_prompt: str, user_prompt: str) -> str:
        return "Result:\n" + self.responses.pop(0)


@pytest.mark.asyncio
async def test_end_to_end_evidence_cards_are_collected(stores) -> None:
    model = SequenceModel(
        {"valid": True, "summary": "Analyzable"},
        {"problemDefinition": {"condition": "Condition X", "unmetNeed": "No therapy"}},
        {"evidenceCards": [{"id": "EV001", "outcome": {"variable": "a"}}, {"id": "EV002"}]},
    )
    orch = _orchestrator(stores, StepProcessor(model))

    session = await orch.create_session(PROBLEM, SessionMode.EVIDENCE)
    assert session.status == SessionStatus.IN_PROGRESS
    assert session.current_step == 1

    session = await orch.process_next_step(session.id)
    before = list(session.evidence_card_ids)
    session = await orch.process_next_step(session.id)

    assert session.current_step == 3
    assert session.evidence_card_ids == [*before, f"{session.id}_EV001", f"{session.id}_EV002"]
    card = await orch.get_evidence_card(f"{session.id}_EV001")
    assert card["outcome"] == {"variable": "a"}


@pytest.mark.asyncio
async def test_session_queries_and_clear(stores) -> None:
    orch = _orchestrator(stores, ScriptedRunner())
    first = await orch.create_session("Question A")
    second = await orch.create_session("Question B")

    listed = await orch.list_sessions()
    assert {s.id for s in listed} == {first.id, second.id}
    assert (await orch.get_session(first.id)).problem_statement == "Question A"

    assert await orch.delete_session(first.id) is True
    assert await orch.get_session(first.id) is None

    await orch.clear_all_data()
    assert await orch.list_sessions() == []


# -- cards and resources --------------------------------------------------


@pytest.mark.asyncio
async def test_cards_without_ids_are_relabeled(stores) -> None:
    cards = [{"outcome": {"variable": "a"}}, {"id": "", "outcome": {"variable": "b"}}]
    hypotheses = [{"statement": "X lowers Y"}]
    runner = ScriptedRunner({
        2: [_success(2, {"evidenceCards": cards}, evidence_cards=cards)],
        6: [_success(6, {"hypothesisCards": hypotheses}, hypothesis_cards=hypotheses)],
    })
    orch = _orchestrator(stores, runner)

    session = await orch.create_session(PROBLEM)
    session = await orch.run_to_completion(session.id)

    assert session.status == SessionStatus.COMPLETED
    assert session.evidence_card_ids == [f"{session.id}_EV001", f"{session.id}_EV002"]
    assert session.hypothesis_card_ids == [f"{session.id}_HYP001"]
    card = await orch.get_evidence_card(f"{session.id}_EV002")
    assert card["outcome"] == {"variable": "b"}


@pytest.mark.asyncio
async def test_session_cards_are_typed_and_ordered(stores) -> None:
    evidence = [
        {"id": "s_EV001", "source": {"citation": "Smith 2020"}},
        {"id": "s_EV002", "validityProfile": {"robustness": "high"}},
    ]
    hypotheses = [{"id": "s_HYP001", "statement": "X lowers Y", "priority": 1}]
    runner = ScriptedRunner({
        2: [_success(2, evidence_cards=evidence)],
        6: [_success(6, hypothesis_cards=hypotheses)],
    })
    orch = _orchestrator(stores, runner)
    session = await orch.run_to_completion((await orch.create_session(PROBLEM)).id)

    ev_cards, hyp_cards = await orch.session_cards(session)

    assert [c.id for c in ev_cards] == ["s_EV001", "s_EV002"]
    assert ev_cards[0].source.citation == "Smith 2020"
    assert ev_cards[1].to_wire()["validityProfile"]["robustness"] == "high"
    assert ev_cards[0].to_wire()["validityProfile"]["robustness"] == "low"
    [hypothesis] = hyp_cards
    assert hypothesis.statement == "X lowers Y"
    assert hypothesis.to_wire()["priority"] == 1


@pytest.mark.asyncio
async def test_terminal_sessions_cannot_continue(stores) -> None:
    orch = _orchestrator(stores, ScriptedRunner({0: [_stop(0)]}))
    session = await orch.create_session(PROBLEM)

    assert session.status == SessionStatus.STOPPED
    assert session.is_terminal
    assert orch.can_continue(session) is False
    assert orch.can_continue(session.model_copy(update={"status": SessionStatus.IN_PROGRESS})) is True


@pytest.mark.asyncio
async def test_aclose_closes_remote_clients(stores) -> None:
    transport = MockTransport(lambda request: Response(200, json={}))
    step_http = AsyncClient(transport=transport, base_url="http://api")
    store_http = AsyncClient(transport=transport, base_url="http://api")
    orch = SessionOrchestrator(
        RemoteSessionStore("http://api", "token", client=store_http),
        stores[1],
        RemoteStepClient("http://api", client=step_http),
    )

    await orch.aclose()

    assert step_http.is_closed
    assert store_http.is_closed


@pytest.mark.asyncio
async def test_aclose_without_closable_resources(stores) -> None:
    orch = _orchestrator(stores, ScriptedRunner())
    await orch.aclose()
