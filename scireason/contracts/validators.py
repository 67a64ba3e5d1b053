"""Validators for parsing LLM output and stored step data.

Provides utilities for:
- Extracting the first balanced JSON object from free-form model text
- Parsing step payloads into their typed variants (with a raw fallback)
- Reading stored card dicts back as typed cards
"""

import json
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from scireason.contracts.schemas import (
    Critique,
    EvidenceCard,
    EvidenceMap,
    EvidenceSet,
    GapList,
    HypothesisCard,
    HypothesisSet,
    ProblemDefinitionPayload,
    Ranking,
    RawPayload,
    Roadmap,
    RoadmapCard,
    StepPayload,
    ValidityAssessment,
    ValidityGate,
)
from scireason.errors import JSONExtractionError

T = TypeVar("T", bound=BaseModel)


# =============================================================================
# JSON Extraction
# =============================================================================


def extract_first_json_object(text: str) -> str | None:
    """Return the first balanced top-level ``{...}`` block in ``text``.

    Scanning starts at each ``{`` in turn, so leading prose (or a stray
    unbalanced brace) does not hide a later well-formed object.

    Returns:
        The JSON object text, or None if no balanced object exists.
    """
    start = text.find("{")
    while start != -1:
        block = _extract_balanced_braces(text[start:], "{", "}")
        if block is not None:
            return block
        start = text.find("{", start + 1)
    return None


def _extract_balanced_braces(text: str, open_char: str, close_char: str) -> str | None:
    """Extract content with balanced braces from the start of text."""
    if not text.startswith(open_char):
        return None

    depth = 0
    in_string = False
    escape_next = False

    for i, char in enumerate(text):
        if escape_next:
            escape_next = False
            continue

        if char == "\\":
            escape_next = True
            continue

        if char == '"':
            in_string = not in_string
            continue

        if in_string:
            continue

        if char == open_char:
            depth += 1
        elif char == close_char:
            depth -= 1
            if depth == 0:
                return text[: i + 1]

    return None


def parse_json_object(text: str) -> dict[str, Any]:
    """Extract and decode the first JSON object in a model response.

    Raises:
        JSONExtractionError: if no object is found or it does not decode.
    """
    json_str = extract_first_json_object(text)
    if json_str is None:
        raise JSONExtractionError("No JSON found in response")

    try:
        data = json.loads(json_str)
    except json.JSONDecodeError as e:
        raise JSONExtractionError(f"JSON parse error: {e}") from e

    if not isinstance(data, dict):
        raise JSONExtractionError("Top-level JSON value is not an object")
    return data


# =============================================================================
# Step payloads
# =============================================================================


STEP_PAYLOAD_TYPES: dict[str, type[StepPayload]] = {
    "step0": ValidityGate,
    "step1": ProblemDefinitionPayload,
    "step2": EvidenceSet,
    "step3": ValidityAssessment,
    "step4": EvidenceMap,
    "step5": GapList,
    "step6": HypothesisSet,
    "step7": Critique,
    "step8": Ranking,
    "step9": Roadmap,
}


def parse_step_payload(step_id: str, data: Any) -> StepPayload:
    """Parse a raw ``stepData`` entry into its typed variant.

    Anything that does not fit the step's schema (model drift, a merged STOP
    result, an unknown step id) comes back as ``RawPayload``.
    """
    if not isinstance(data, dict):
        return RawPayload(value=data)

    payload_type = STEP_PAYLOAD_TYPES.get(step_id)
    if payload_type is not None and "status" not in data:
        try:
            return payload_type.model_validate(data)
        except ValidationError:
            pass

    try:
        return RawPayload.model_validate({k: v for k, v in data.items() if k != "kind"})
    except ValidationError:
        return RawPayload(value=data)


# =============================================================================
# Cards
# =============================================================================


def _parse_card(card: Any, schema: type[T]) -> T | None:
    if not isinstance(card, dict):
        return None
    try:
        return schema.model_validate(card)
    except ValidationError:
        return None


def parse_evidence_card(card: Any) -> EvidenceCard | None:
    return _parse_card(card, EvidenceCard)


def parse_hypothesis_card(card: Any) -> HypothesisCard | None:
    return _parse_card(card, HypothesisCard)


def parse_roadmap_card(card: Any) -> RoadmapCard | None:
    return _parse_card(card, RoadmapCard)
