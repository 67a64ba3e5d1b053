"""Heuristic text analysis over step output.

Derives secondary, human-facing summaries (evidence strength, confidence,
validity scores) from data the pipeline already produced, with no further
model calls. Everything here is keyword counting over the compact JSON
serialization of step data: crude, deterministic and explainable. The
thresholds below define what HIGH/MEDIUM/LOW mean to users, so they are
part of the output contract rather than tuning knobs.
"""

from __future__ import annotations

import json
import re
from collections.abc import Iterable
from typing import Any, TypeVar

from scireason.contracts.schemas import (
    CoreTakeaways,
    Critique,
    DecisionSummary,
    ExecutiveSummary,
    GapList,
    PhaseFeasibility,
    ProblemDefinitionPayload,
    Ranking,
    RejectedHypothesis,
    Session,
    SessionAnalysis,
    SessionMode,
    StepPayload,
    StrengthLevel,
    ValidityScore,
    ValidityScores,
)
from scireason.contracts.validators import parse_step_payload
from scireason.verify.lexicons import (
    BIAS_KEYWORDS,
    GENERALIZATION_KEYWORDS,
    MEASUREMENT_KEYWORDS,
    POSITIVE_KEYWORDS,
    SKEPTICAL_KEYWORDS,
    STATISTICS_KEYWORDS,
)

P = TypeVar("P", bound=StepPayload)

_SENTENCE_SPLIT_RE = re.compile(r"[.!?]")
_MIN_CLAUSE_LENGTH = 15

SCORE_FLOOR = 10
SCORE_CEILING = 90

FALLBACK_CAN_CLAIM = "Preliminary observations require further validation"
FALLBACK_CANNOT_CLAIM = "Definitive conclusions pending additional evidence"
FALLBACK_LIMITATIONS = (
    "Limited sample size and generalizability",
    "Potential confounding variables not controlled",
)
NEXT_ACTIONS = (
    "Validate primary findings with independent dataset",
    "Address identified limitations in study design",
    "Quantify uncertainty ranges for key estimates",
)
STRENGTH_JUSTIFICATIONS = {
    StrengthLevel.HIGH: "Multiple consistent findings with minimal contradictions",
    StrengthLevel.MEDIUM: "Some supporting evidence but notable gaps remain",
    StrengthLevel.LOW: "Insufficient evidence for confident conclusions",
}

FALLBACK_ANSWER = "Preliminary investigation in progress"
FALLBACK_UNKNOWNS = (
    "Mechanism of action not fully characterized",
    "Optimal dosing parameters undefined",
    "Long-term safety profile unknown",
)
NEXT_DECISIONS = (
    "Determine if current evidence justifies proceeding to next phase",
    "Identify critical experiments to address key unknowns",
    "Assess resource requirements vs. probability of success",
)


# =============================================================================
# Primitives
# =============================================================================


def serialize(data: Any) -> str:
    """Compact JSON text of ``data``; ``None`` serializes as ``{}``."""
    return json.dumps(
        data if data is not None else {},
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )


def count_keywords(text: str, lexicon: Iterable[str]) -> int:
    """Count lexicon entries that occur anywhere in ``text``.

    Case-insensitive substring containment: each keyword contributes at most
    1 no matter how often it repeats.
    """
    lower = text.lower()
    return sum(1 for keyword in lexicon if keyword in lower)


def _contains_any(text: str, lexicon: Iterable[str]) -> bool:
    lower = text.lower()
    return any(keyword in lower for keyword in lexicon)


def _clauses(text: str) -> list[str]:
    return [s for s in _SENTENCE_SPLIT_RE.split(text) if len(s.strip()) > _MIN_CLAUSE_LENGTH]


def extract_bullets(text: str, max_bullets: int = 5) -> list[str]:
    """Clauses that mention a skeptical keyword (limitations)."""
    matches = [s for s in _clauses(text) if _contains_any(s, SKEPTICAL_KEYWORDS)]
    return [s.strip() for s in matches[:max_bullets]]


def extract_positive_claims(text: str, max_claims: int = 3) -> list[str]:
    """Clauses with a positive keyword and no skeptical keyword."""
    matches = [
        s for s in _clauses(text)
        if _contains_any(s, POSITIVE_KEYWORDS) and not _contains_any(s, SKEPTICAL_KEYWORDS)
    ]
    return [s.strip() for s in matches[:max_claims]]


def extract_negative_claims(text: str, max_claims: int = 3) -> list[str]:
    """Clauses that mention a skeptical keyword."""
    matches = [s for s in _clauses(text) if _contains_any(s, SKEPTICAL_KEYWORDS)]
    return [s.strip() for s in matches[:max_claims]]


def _clamp(value: int) -> int:
    return max(SCORE_FLOOR, min(SCORE_CEILING, value))


def _tiered(count: int, many: str, some: str, none: str) -> str:
    if count > 2:
        return many
    if count > 0:
        return some
    return none


# =============================================================================
# Parsers
# =============================================================================


def parse_executive_summary(step_data: Any) -> ExecutiveSummary:
    """Summarize what the step output lets us claim and how strongly."""
    text = serialize(step_data)

    skeptical = count_keywords(text, SKEPTICAL_KEYWORDS)
    positive = count_keywords(text, POSITIVE_KEYWORDS)

    if positive > skeptical * 2:
        strength = StrengthLevel.HIGH
    elif positive > skeptical:
        strength = StrengthLevel.MEDIUM
    else:
        strength = StrengthLevel.LOW

    can_claim = extract_positive_claims(text, 3) or [FALLBACK_CAN_CLAIM]
    cannot_claim = extract_negative_claims(text, 3) or [FALLBACK_CANNOT_CLAIM]
    limitations = extract_bullets(text, 5) or list(FALLBACK_LIMITATIONS)

    return ExecutiveSummary(
        core_takeaways=CoreTakeaways(can_claim=can_claim, cannot_claim=cannot_claim),
        evidence_strength=strength,
        evidence_justification=STRENGTH_JUSTIFICATIONS[strength],
        limitations=limitations,
        next_actions=list(NEXT_ACTIONS),
    )


def _step_payload(step_data: dict[str, Any], sid: str, payload_type: type[P]) -> P | None:
    """The typed payload stored under ``sid``; None when absent or drifted."""
    if sid not in step_data:
        return None
    payload = parse_step_payload(sid, step_data[sid])
    return payload if isinstance(payload, payload_type) else None


def _gap_text(gap: Any) -> str:
    if isinstance(gap, dict):
        return str(gap.get("description") or gap.get("id") or gap)
    return str(gap)


def _best_answer(step1: ProblemDefinitionPayload | None) -> str:
    if step1 is None or "problem_definition" not in step1.model_fields_set:
        return FALLBACK_ANSWER
    problem = step1.problem_definition
    return f"Investigating {problem.condition}: {problem.unmet_need}"


def _selected_hypothesis(step8: Ranking | None) -> str | None:
    if step8 is None:
        return None
    if step8.selected_hypothesis:
        return step8.selected_hypothesis
    if step8.selected_for_roadmap:
        return str(step8.selected_for_roadmap[0])
    return None


def _rejected_hypotheses(step7: Critique | None) -> list[RejectedHypothesis]:
    if step7 is None:
        return []

    if step7.critiques:
        rejected = []
        for entry in step7.critiques[:2]:
            entry = entry if isinstance(entry, dict) else {}
            rejected.append(RejectedHypothesis(
                hypothesis=entry.get("hypothesis") or "Alternative hypothesis",
                reason=entry.get("reason") or "Failed falsification criteria",
            ))
        return rejected

    return [
        RejectedHypothesis(
            hypothesis=str(item) if item else "Alternative hypothesis",
            reason="Failed falsification criteria",
        )
        for item in step7.eliminated_hypotheses[:2]
    ]


def parse_decision_summary(session: Session | dict[str, Any]) -> DecisionSummary:
    """Summarize where the inquiry stands and how confident we can be."""
    if isinstance(session, Session):
        step_data = session.step_data or {}
        completed_count = len(session.completed_steps)
    else:
        step_data = (session or {}).get("stepData") or {}
        completed_count = len((session or {}).get("completedSteps") or [])

    text = serialize(step_data)
    skeptical = count_keywords(text, SKEPTICAL_KEYWORDS)
    positive = count_keywords(text, POSITIVE_KEYWORDS)

    if positive > skeptical * 3 and completed_count > 5:
        confidence = StrengthLevel.HIGH
    elif positive > skeptical * 1.5:
        confidence = StrengthLevel.MEDIUM
    else:
        confidence = StrengthLevel.LOW

    gap_list = _step_payload(step_data, "step5", GapList)
    unknowns = [_gap_text(g) for g in gap_list.gaps[:3]] if gap_list else []

    return DecisionSummary(
        best_current_answer=_best_answer(_step_payload(step_data, "step1", ProblemDefinitionPayload)),
        unknowns=unknowns or list(FALLBACK_UNKNOWNS),
        selected_hypothesis=_selected_hypothesis(_step_payload(step_data, "step8", Ranking)),
        rejected_hypotheses=_rejected_hypotheses(_step_payload(step_data, "step7", Critique)),
        confidence_level=confidence,
        next_decisions=list(NEXT_DECISIONS),
    )


def parse_validity_scores(step_data: Any) -> ValidityScores:
    """Score internal/external/measurement/statistical validity on 10-90."""
    text = serialize(step_data)

    bias = count_keywords(text, BIAS_KEYWORDS)
    general = count_keywords(text, GENERALIZATION_KEYWORDS)
    measure = count_keywords(text, MEASUREMENT_KEYWORDS)
    stats = count_keywords(text, STATISTICS_KEYWORDS)

    base = 50 + count_keywords(text, POSITIVE_KEYWORDS) * 5 - count_keywords(text, SKEPTICAL_KEYWORDS) * 8

    return ValidityScores(
        internal_validity=ValidityScore(
            score=_clamp(base - bias * 10),
            explanation=_tiered(
                bias,
                "Multiple potential sources of bias identified",
                "Some bias concerns noted",
                "Limited bias assessment available",
            ),
        ),
        external_validity=ValidityScore(
            score=_clamp(base - general * 8),
            explanation=_tiered(
                general,
                "Generalizability concerns across populations",
                "Population specificity may limit applicability",
                "External validity not explicitly addressed",
            ),
        ),
        measurement_validity=ValidityScore(
            score=_clamp(base + measure * 5),
            explanation=_tiered(
                measure,
                "Measurement methods discussed with some validation",
                "Limited measurement validation reported",
                "Measurement validity not assessed",
            ),
        ),
        statistical_robustness=ValidityScore(
            score=_clamp(base + stats * 5),
            explanation=_tiered(
                stats,
                "Statistical methods addressed with varying rigor",
                "Basic statistical considerations present",
                "Statistical robustness not evaluated",
            ),
        ),
    )


# Industry benchmarks for drug-development phases; independent of input.
_PHASE_TABLE: tuple[dict[str, Any], ...] = (
    {
        "phase": "Preclinical",
        "duration": "12-24 months",
        "cost_range": "$2M - $10M",
        "failure_risks": [
            "Target not druggable (30-40% failure rate)",
            "Toxicity in animal models",
            "Lack of efficacy signal",
            "Manufacturing challenges",
        ],
        "go_no_go_decisions": [
            "Demonstrate target engagement in relevant model",
            "Acceptable safety margin (>10x therapeutic dose)",
            "Reproducible efficacy across 2+ models",
        ],
        "regulatory_bottlenecks": [
            "IND-enabling studies requirements",
            "GLP toxicology package",
            "CMC documentation",
        ],
    },
    {
        "phase": "Phase I",
        "duration": "12-18 months",
        "cost_range": "$5M - $15M",
        "failure_risks": [
            "Dose-limiting toxicity (10-15% failure)",
            "Poor PK/bioavailability",
            "Unexpected safety signals",
            "Enrollment challenges",
        ],
        "go_no_go_decisions": [
            "MTD established with acceptable safety",
            "PK supports target exposure",
            "Preliminary biomarker activity",
        ],
        "regulatory_bottlenecks": [
            "IND approval",
            "IRB/ethics approval",
            "Site qualification",
        ],
    },
    {
        "phase": "Phase II",
        "duration": "24-36 months",
        "cost_range": "$20M - $50M",
        "failure_risks": [
            "Lack of efficacy (50-60% failure rate)",
            "Inadequate therapeutic window",
            "Patient selection challenges",
            "Competitive landscape changes",
        ],
        "go_no_go_decisions": [
            "Statistically significant efficacy signal",
            "Acceptable benefit-risk profile",
            "Clear dose-response relationship",
        ],
        "regulatory_bottlenecks": [
            "End-of-Phase-2 meeting",
            "Endpoint agreement",
            "Biomarker qualification",
        ],
    },
    {
        "phase": "Phase III",
        "duration": "36-60 months",
        "cost_range": "$100M - $500M+",
        "failure_risks": [
            "Failed primary endpoint (40-50% failure)",
            "Safety signal in larger population",
            "Operational execution failures",
            "Regulatory rejection",
        ],
        "go_no_go_decisions": [
            "Met primary efficacy endpoint",
            "Positive benefit-risk assessment",
            "Sufficient safety database",
        ],
        "regulatory_bottlenecks": [
            "NDA/BLA submission",
            "Advisory committee",
            "Manufacturing inspection",
        ],
    },
)


def parse_phase_feasibility(roadmap_data: Any = None) -> list[PhaseFeasibility]:
    """Static Preclinical..Phase III benchmark table (input is ignored)."""
    return [PhaseFeasibility.model_validate(row) for row in _PHASE_TABLE]


def analyze_session(session: Session) -> SessionAnalysis:
    """Run every heuristic parser over a session's accumulated step data."""
    step_data = session.step_data or {}
    phases = []
    if session.mode == SessionMode.ROADMAP:
        phases = parse_phase_feasibility(step_data.get("step9"))

    return SessionAnalysis(
        session_id=session.id,
        executive_summary=parse_executive_summary(step_data),
        decision_summary=parse_decision_summary(session),
        validity_scores=parse_validity_scores(step_data),
        phase_feasibility=phases,
    )
