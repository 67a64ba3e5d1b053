"""Step processor: runs exactly one pipeline step for one session.

The processor renders the step prompt, calls the model, recovers the JSON
object from the response and turns it into a ``StepResult``. It never
raises: every failure becomes a STOP result with a reason from
``StopReason``.
"""

import logging
from typing import Any, Protocol

from scireason.contracts.schemas import (
    ProcessStepRequest,
    StepResult,
    StepStatus,
    StopReason,
)
from scireason.contracts.validators import parse_json_object
from scireason.engine.prompts import (
    SYSTEM_PROMPT,
    PromptContext,
    get_prompt_renderer,
    step_id,
)

logger = logging.getLogger(__name__)

RETRY_MESSAGE = "Failed to process this step. Please try again."


class ModelCollaborator(Protocol):
    """Anything that turns (system prompt, user prompt) into text."""

    async def invoke(self, system_prompt: str, user_prompt: str) -> str: ...


class StepRunner(Protocol):
    """Anything that can execute one step request."""

    async def process_step(self, request: ProcessStepRequest) -> StepResult: ...


def assign_card_ids(cards: list[Any], session_id: str, prefix: str) -> list[dict[str, Any]]:
    """Copy ``cards`` with ids ``<session_id>_<prefix><NNN>`` in array order."""
    relabeled = []
    for ordinal, card in enumerate(cards, start=1):
        body = dict(card) if isinstance(card, dict) else {"content": card}
        body["id"] = f"{session_id}_{prefix}{ordinal:03d}"
        relabeled.append(body)
    return relabeled


class StepProcessor:
    """Executes pipeline steps against a model collaborator."""

    def __init__(self, model: ModelCollaborator, system_prompt: str = SYSTEM_PROMPT):
        self.model = model
        self.system_prompt = system_prompt

    async def process_step(self, request: ProcessStepRequest) -> StepResult:
        sid = step_id(request.current_step)

        renderer = get_prompt_renderer(request.current_step)
        if renderer is None:
            logger.warning("[STEP] %s: no prompt for step %d", request.session_id, request.current_step)
            return StepResult(
                status=StepStatus.STOP,
                step_id=sid,
                reason=StopReason.INVALID_STEP.value,
                what_is_needed_next=["Invalid step number"],
                suggested_queries=[],
            )

        prompt = renderer(PromptContext(
            problem_statement=request.problem_statement,
            previous_step_data=request.previous_step_data,
        ))

        try:
            text = await self.model.invoke(self.system_prompt, prompt)
            data = parse_json_object(text)
        except Exception as e:
            logger.error("[STEP] %s %s failed: %s", request.session_id, sid, e)
            return StepResult(
                status=StepStatus.STOP,
                step_id=sid,
                reason=StopReason.MISSING_EVIDENCE.value,
                what_is_needed_next=[RETRY_MESSAGE],
                suggested_queries=[],
            )

        if request.current_step == 0 and data.get("valid") is False:
            suggestion = data.get("suggestion") or data.get("reason") or ""
            logger.info("[STOP] %s rejected by validity gate", request.session_id)
            return StepResult(
                status=StepStatus.STOP,
                step_id=sid,
                reason=StopReason.SAFETY_CONSTRAINT.value,
                data={"summary": suggestion},
                what_is_needed_next=[suggestion] if suggestion else [],
                suggested_queries=[],
            )

        result = StepResult(status=StepStatus.SUCCESS, step_id=sid, data=data)

        evidence = data.get("evidenceCards")
        if isinstance(evidence, list):
            result.evidence_cards = assign_card_ids(evidence, request.session_id, "EV")

        hypotheses = data.get("hypothesisCards")
        if isinstance(hypotheses, list):
            result.hypothesis_cards = assign_card_ids(hypotheses, request.session_id, "HYP")

        logger.info("[STEP] %s %s succeeded", request.session_id, sid)
        return result
