"""Core Pydantic schemas for the scientific reasoning engine.

These schemas define the data contracts for:
- Sessions and their lifecycle (mode, status, step pointer)
- Evidence, hypothesis and roadmap cards produced by the pipeline
- Step requests/results exchanged with the step processor
- Typed step payloads (one variant per pipeline step)
- Heuristic summaries derived from step output
- Users and orchestration configuration

Wire names are camelCase (the external JSON contract); attributes are
snake_case. Dump with ``by_alias=True`` to get the wire form.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Base model that speaks camelCase on the wire."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=True,
    )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# =============================================================================
# Enums
# =============================================================================


class SessionMode(str, Enum):
    """Which pipeline a session runs."""

    EVIDENCE = "evidence"  # Steps 0-6
    ROADMAP = "roadmap"  # Steps 0-9


class SessionStatus(str, Enum):
    """Lifecycle states for a session."""

    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    STOPPED = "stopped"


class StepStatus(str, Enum):
    """Outcome of processing a single step."""

    SUCCESS = "SUCCESS"
    STOP = "STOP"


class StopReason(str, Enum):
    """Why a step stopped the session."""

    INVALID_STEP = "InvalidStep"  # No prompt registered for the step index
    SAFETY_CONSTRAINT = "SafetyConstraint"  # Rejected question or endpoint failure
    MISSING_EVIDENCE = "MissingEvidence"  # Model call or JSON parse failed


class BusyScope(str, Enum):
    """Granularity of the in-flight guard."""

    SESSION = "session"
    GLOBAL = "global"


class SourceType(str, Enum):
    PAPER = "paper"
    CLINICAL_TRIAL = "clinical_trial"
    META_ANALYSIS = "meta_analysis"
    DATASET = "dataset"
    GUIDELINE = "guideline"


class ModelType(str, Enum):
    IN_VITRO = "in_vitro"
    ANIMAL = "animal"
    HUMAN = "human"


class Direction(str, Enum):
    INCREASE = "increase"
    DECREASE = "decrease"
    NO_EFFECT = "no_effect"


class ValidityLevel(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class DecisionType(str, Enum):
    PROCEED = "proceed"
    STOP = "stop"
    PIVOT = "pivot"


class StrengthLevel(str, Enum):
    """Heuristic evidence strength / confidence label."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


# =============================================================================
# Cards
# =============================================================================


class EvidenceSource(WireModel):
    type: SourceType | str = "paper"
    citation: str = ""
    link: str | None = None


class EvidenceContext(WireModel):
    model: ModelType | str = "human"
    species: str | None = None
    population: str | None = None
    condition: str = ""


class Intervention(WireModel):
    agent: str = ""
    dose: str | None = None
    route: str | None = None
    duration: str | None = None


class Outcome(WireModel):
    variable: str = ""
    direction: Direction | str = Direction.NO_EFFECT
    magnitude: str | None = None


class ValidityProfile(WireModel):
    internal_validity: ValidityLevel | str = ValidityLevel.LOW
    external_validity: ValidityLevel | str = ValidityLevel.LOW
    mechanistic_validity: ValidityLevel | str = ValidityLevel.LOW
    robustness: ValidityLevel | str = ValidityLevel.LOW
    critical_limitations: list[str] = Field(default_factory=list)


class EvidenceCard(WireModel):
    """One structured unit of literature evidence."""

    model_config = ConfigDict(extra="allow")

    id: str = Field(..., description="<sessionId>_EV<NNN>")
    source: EvidenceSource = Field(default_factory=EvidenceSource)
    context: EvidenceContext = Field(default_factory=EvidenceContext)
    intervention: Intervention = Field(default_factory=Intervention)
    outcome: Outcome = Field(default_factory=Outcome)
    validity_profile: ValidityProfile = Field(default_factory=ValidityProfile)


class Mechanism(WireModel):
    description: str = ""
    assumptions: list[str] = Field(default_factory=list)


class Scope(WireModel):
    condition: str = ""
    population: str | None = None


class Prediction(WireModel):
    observable: str = ""
    expected_direction: str = ""


class FalsificationCriterion(WireModel):
    description: str = ""
    decisive_outcome: str = ""


class HypothesisCard(WireModel):
    """A falsifiable proposition produced by the hypothesis step."""

    model_config = ConfigDict(extra="allow")

    id: str = Field(..., description="<sessionId>_HYP<NNN>")
    statement: str = ""
    mechanism: Mechanism = Field(default_factory=Mechanism)
    scope: Scope = Field(default_factory=Scope)
    predictions: list[Prediction] = Field(default_factory=list)
    supporting_evidence: list[str] = Field(default_factory=list)
    counter_evidence: list[str] = Field(default_factory=list)
    falsification_criteria: list[FalsificationCriterion] = Field(default_factory=list)


class RoadmapPhase(WireModel):
    phase_id: str = ""
    goal: str = ""
    method: str = ""
    success_criteria: str = ""
    failure_criteria: str = ""
    decision: DecisionType | str = DecisionType.PROCEED


class GlobalRisk(WireModel):
    description: str = ""
    mitigation: str = ""


class ExitCondition(WireModel):
    description: str = ""


class RoadmapCard(WireModel):
    """Terminal artifact of roadmap mode."""

    model_config = ConfigDict(extra="allow")

    id: str
    objective: str = ""
    linked_hypotheses: list[str] = Field(default_factory=list)
    phases: list[RoadmapPhase] = Field(default_factory=list)
    global_risks: list[GlobalRisk] = Field(default_factory=list)
    exit_conditions: list[ExitCondition] = Field(default_factory=list)


# =============================================================================
# Session
# =============================================================================


class Session(WireModel):
    """The unit of work: one research question walked through the pipeline."""

    id: str
    user_id: str | None = Field(default=None, description="Owner; None for local sessions")
    problem_statement: str = Field(..., min_length=1)
    mode: SessionMode = SessionMode.EVIDENCE
    status: SessionStatus = SessionStatus.IN_PROGRESS
    current_step: int = Field(default=0, ge=0)
    completed_steps: list[int] = Field(default_factory=list)
    stop_reason: str | None = None
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: str = Field(default_factory=utc_now_iso)
    step_data: dict[str, Any] = Field(default_factory=dict)
    evidence_card_ids: list[str] = Field(default_factory=list)
    hypothesis_card_ids: list[str] = Field(default_factory=list)
    roadmap_card_id: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (SessionStatus.COMPLETED.value, SessionStatus.STOPPED.value)


# =============================================================================
# Step exchange
# =============================================================================


class ProcessStepRequest(WireModel):
    """Input to the step-processing endpoint."""

    session_id: str = Field(..., min_length=1)
    current_step: int
    problem_statement: str = Field(..., min_length=1)
    mode: SessionMode
    previous_step_data: dict[str, Any] = Field(default_factory=dict)

    @field_validator("previous_step_data", mode="before")
    @classmethod
    def _null_as_empty(cls, value: Any) -> Any:
        return {} if value is None else value


class StepResult(WireModel):
    """Output of the step-processing endpoint."""

    status: StepStatus
    step_id: str
    data: dict[str, Any] | None = None
    evidence_cards: list[dict[str, Any]] | None = None
    hypothesis_cards: list[dict[str, Any]] | None = None
    reason: str | None = None
    what_is_needed_next: list[str] | None = None
    suggested_queries: list[str] | None = None

    @property
    def is_success(self) -> bool:
        return self.status == StepStatus.SUCCESS.value


# =============================================================================
# Typed step payloads (tagged union keyed by step id)
# =============================================================================


class StepPayload(WireModel):
    """Base for typed step payloads. Unknown keys are kept."""

    model_config = ConfigDict(extra="allow")

    kind: str = ""
    summary: str | None = None


class ValidityGate(StepPayload):
    kind: Literal["validity_gate"] = "validity_gate"
    valid: bool = True
    reason: str | None = None
    suggestion: str | None = None


class Constraint(WireModel):
    type: str = ""
    description: str = ""


class ProblemDefinition(WireModel):
    condition: str | None = ""
    unmet_need: str | None = ""
    observable_gap: str | None = ""
    constraints: list[Constraint] = Field(default_factory=list)


class ProblemDefinitionPayload(StepPayload):
    kind: Literal["problem_definition"] = "problem_definition"
    problem_definition: ProblemDefinition = Field(default_factory=ProblemDefinition)


class EvidenceSet(StepPayload):
    kind: Literal["evidence_set"] = "evidence_set"
    evidence_cards: list[dict[str, Any]] = Field(default_factory=list)
    evidence_count: int | None = None


class ValidityAssessmentBody(WireModel):
    overall_quality: str = ""
    strongest_evidence: list[str] = Field(default_factory=list)
    weakest_evidence: list[str] = Field(default_factory=list)
    major_concerns: list[str] = Field(default_factory=list)
    confidence_level: str = ""


class ValidityAssessment(StepPayload):
    kind: Literal["validity_assessment"] = "validity_assessment"
    validity_assessment: ValidityAssessmentBody = Field(default_factory=ValidityAssessmentBody)


class Contradiction(WireModel):
    a: str = ""
    b: str = ""
    note: str = ""


class EvidenceMapBody(WireModel):
    consistent_findings: list[str] = Field(default_factory=list)
    contradictions: list[Contradiction] = Field(default_factory=list)
    gaps: list[str] = Field(default_factory=list)


class EvidenceMap(StepPayload):
    kind: Literal["evidence_map"] = "evidence_map"
    evidence_map: EvidenceMapBody = Field(default_factory=EvidenceMapBody)


class GapList(StepPayload):
    kind: Literal["gap_list"] = "gap_list"
    # Entries may be plain strings or {id, description} objects
    gaps: list[Any] = Field(default_factory=list)
    prioritized_gaps: list[Any] = Field(default_factory=list)


class HypothesisSet(StepPayload):
    kind: Literal["hypothesis_set"] = "hypothesis_set"
    hypothesis_cards: list[dict[str, Any]] = Field(default_factory=list)
    hypotheses_count: int | None = None


class CritiqueEntry(WireModel):
    hypothesis_id: str = ""
    strengths: list[str] = Field(default_factory=list)
    weaknesses: list[str] = Field(default_factory=list)
    alternative_explanations: list[str] = Field(default_factory=list)
    falsification_risk: str = ""


class Critique(StepPayload):
    kind: Literal["critique"] = "critique"
    critique: list[CritiqueEntry] = Field(default_factory=list)
    # {hypothesis, reason} rejections, when the model reports them that way
    critiques: list[Any] = Field(default_factory=list)
    eliminated_hypotheses: list[Any] = Field(default_factory=list)
    remaining_hypotheses: list[str] = Field(default_factory=list)


class RankingEntry(WireModel):
    hypothesis_id: str = ""
    plausibility: str | float = ""
    testability: str | float = ""
    risk: str | float = ""
    priority: int | None = None


class Ranking(StepPayload):
    kind: Literal["ranking"] = "ranking"
    ranking: list[RankingEntry] = Field(default_factory=list)
    selected_hypothesis: str | None = None
    selected_for_roadmap: list[Any] = Field(default_factory=list)
    rationale: str | None = None


class Roadmap(StepPayload):
    kind: Literal["roadmap"] = "roadmap"
    roadmap_card: dict[str, Any] = Field(default_factory=dict)


class RawPayload(StepPayload):
    """Fallback for payloads that drifted from their step's schema."""

    kind: Literal["raw"] = "raw"


# =============================================================================
# Heuristic summaries
# =============================================================================


class CoreTakeaways(WireModel):
    can_claim: list[str] = Field(default_factory=list)
    cannot_claim: list[str] = Field(default_factory=list)


class ExecutiveSummary(WireModel):
    core_takeaways: CoreTakeaways
    evidence_strength: StrengthLevel
    evidence_justification: str
    limitations: list[str]
    next_actions: list[str]


class RejectedHypothesis(WireModel):
    hypothesis: str
    reason: str


class DecisionSummary(WireModel):
    best_current_answer: str
    unknowns: list[str]
    selected_hypothesis: str | None = None
    rejected_hypotheses: list[RejectedHypothesis] = Field(default_factory=list)
    confidence_level: StrengthLevel
    next_decisions: list[str]


class ValidityScore(WireModel):
    score: int = Field(..., ge=0, le=100)
    explanation: str


class ValidityScores(WireModel):
    internal_validity: ValidityScore
    external_validity: ValidityScore
    measurement_validity: ValidityScore
    statistical_robustness: ValidityScore


class PhaseFeasibility(WireModel):
    phase: str
    duration: str
    cost_range: str
    failure_risks: list[str]
    go_no_go_decisions: list[str]
    regulatory_bottlenecks: list[str]


class SessionAnalysis(WireModel):
    """All heuristic outputs for one session."""

    session_id: str
    executive_summary: ExecutiveSummary
    decision_summary: DecisionSummary
    validity_scores: ValidityScores
    phase_feasibility: list[PhaseFeasibility] = Field(default_factory=list)


# =============================================================================
# Users and LLM usage
# =============================================================================


class User(WireModel):
    id: str
    email: str
    password_hash: str = Field(default="", exclude=True)
    created_at: str = Field(default_factory=utc_now_iso)


class TokenUsage(BaseModel):
    """Token usage statistics."""

    prompt_tokens: int = Field(default=0, ge=0)
    completion_tokens: int = Field(default=0, ge=0)
    total_tokens: int = Field(default=0, ge=0)
    cost_usd: float = Field(default=0.0, ge=0.0)


class GenerationResponse(BaseModel):
    """Standardized response from LLM providers."""

    content: str = Field(..., description="Generated text content")
    usage: TokenUsage = Field(default_factory=TokenUsage, description="Usage statistics")
    model_name: str = Field(default="", description="Model used for generation")
    provider: str = Field(default="", description="Provider used")


# =============================================================================
# Orchestration configuration
# =============================================================================


class ReasoningConfig(BaseModel):
    """Configuration for the session orchestrator."""

    evidence_max_steps: int = Field(default=7, ge=1, le=10)
    roadmap_max_steps: int = Field(default=10, ge=1, le=10)
    busy_scope: BusyScope = Field(
        default=BusyScope.SESSION,
        description="session: one in-flight step per session; global: one per process.",
    )

    def max_steps(self, mode: SessionMode | str) -> int:
        """Number of steps after which a session of this mode is complete."""
        if SessionMode(mode) == SessionMode.EVIDENCE:
            return self.evidence_max_steps
        return self.roadmap_max_steps
