"""HTTP step runner: delegates step processing to a SciReason API server."""

import logging

import httpx

from scireason.contracts.schemas import (
    ProcessStepRequest,
    StepResult,
    StepStatus,
    StopReason,
)
from scireason.engine.prompts import step_id

logger = logging.getLogger(__name__)

PROCESS_STEP_PATH = "/api/reasoning/process-step"
DEFAULT_TIMEOUT = httpx.Timeout(120.0, connect=10.0)


class RemoteStepClient:
    """Posts step requests to ``/api/reasoning/process-step``.

    HTTP-level failures come back as STOP results with reason
    ``SafetyConstraint``; the caller never sees a transport exception.
    """

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self._client = client

    async def __aenter__(self) -> "RemoteStepClient":
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=DEFAULT_TIMEOUT)
        return self

    async def __aexit__(self, *args) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"} if self.token else {}

    async def process_step(self, request: ProcessStepRequest) -> StepResult:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=DEFAULT_TIMEOUT)

        try:
            response = await self._client.post(
                f"{self.base_url}{PROCESS_STEP_PATH}",
                json=request.to_wire(),
                headers=self._headers(),
            )
            response.raise_for_status()
            return StepResult.model_validate(response.json())
        except (httpx.HTTPError, ValueError) as e:
            logger.error("[STEP] Remote processing of %s failed: %s", request.session_id, e)
            return StepResult(
                status=StepStatus.STOP,
                step_id=step_id(request.current_step),
                reason=StopReason.SAFETY_CONSTRAINT.value,
                what_is_needed_next=["Try again with a clearer research question"],
                suggested_queries=[],
            )
