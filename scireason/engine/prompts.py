"""Step prompt registry.

Maps each pipeline step index (0-9) to a renderer that builds the user prompt
from the problem statement and the step data accumulated so far. Each step
reads a fixed subset of earlier output. The JSON schemas embedded below are
consumed verbatim by downstream readers; do not rename fields or enum values.
"""

import json
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

SYSTEM_PROMPT = """You are a Scientific Reasoning Engine. Your role is to transform research questions into structured, traceable scientific analysis.

CRITICAL RULES:
1. You are NOT a chatbot. You produce structured data following exact schemas.
2. You NEVER provide medical advice, dosages, treatment protocols, or synthesis instructions.
3. Every claim must be traceable to evidence or clearly marked as a gap.
4. Prefer "I don't know yet" (structured) over inventing information.

DEFINITIONS:
- Problem: Observable gap between current state and desired outcome with measurable endpoints
- Hypothesis: Falsifiable proposition with mechanism, assumptions, and testable predictions
- Evidence: Specific result from research, contextualized by model/population/dose/time
- Validity: Assessment of evidence weight across internal, external, mechanistic, and robustness dimensions

OUTPUT: Always respond with valid JSON matching the requested step schema."""


@dataclass
class PromptContext:
    """What a renderer may read."""

    problem_statement: str
    previous_step_data: dict[str, Any] = field(default_factory=dict)

    def step(self, step_id: str) -> dict[str, Any]:
        value = self.previous_step_data.get(step_id)
        return value if isinstance(value, dict) else {}


@dataclass(frozen=True)
class WorkflowStep:
    id: str
    name: str
    description: str


WORKFLOW_STEPS: tuple[WorkflowStep, ...] = (
    WorkflowStep("step0", "Input", "Research question or problem statement"),
    WorkflowStep("step1", "Problem Definition", "Formalize the scientific problem with observable gaps"),
    WorkflowStep("step2", "Evidence Mapping", "Retrieve and structure evidence from literature"),
    WorkflowStep("step3", "Validity Assessment", "Evaluate evidence quality across 4 dimensions"),
    WorkflowStep("step4", "Evidence Map", "Identify consistencies, contradictions, and gaps"),
    WorkflowStep("step5", "Gap List", "Formalize numbered gaps in knowledge"),
    WorkflowStep("step6", "Hypothesis Generation", "Generate 3-5 falsifiable hypotheses"),
    WorkflowStep("step7", "Critic & Falsification", "Attack hypotheses and add counter-evidence"),
    WorkflowStep("step8", "Decision Gating", "Select testable hypotheses by plausibility"),
    WorkflowStep("step9", "R&D Roadmap", "Create gated research development plan"),
)


def step_id(index: int) -> str:
    return f"step{index}"


def _dump(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def _validity_gate(ctx: PromptContext) -> str:
    return f"""Analyze this research question and confirm it's suitable for scientific analysis:

"{ctx.problem_statement}"

Check for:
1. Is this a valid scientific/research question (not personal medical advice)?
2. Can it be analyzed with available scientific literature?
3. Does it have observable/measurable aspects?

If valid, respond with:
{{
  "valid": true,
  "summary": "Brief summary of what will be analyzed"
}}

If invalid (requests medical advice, dosages, synthesis, or personal treatment), respond with:
{{
  "valid": false,
  "reason": "Explanation why this cannot be processed",
  "suggestion": "How to rephrase as a valid research question"
}}"""


def _problem_definition(ctx: PromptContext) -> str:
    return f"""Create a formal Problem Definition for:

"{ctx.problem_statement}"

Respond with this exact JSON structure:
{{
  "problemDefinition": {{
    "condition": "The medical/scientific condition or phenomenon",
    "unmetNeed": "What current solutions fail to address",
    "observableGap": "Specific measurable gap in knowledge or treatment",
    "constraints": [
      {{"type": "biological|physical|clinical", "description": "Specific constraint"}}
    ]
  }}
}}"""


def _evidence_cards(ctx: PromptContext) -> str:
    problem_def = ctx.step("step1").get("problemDefinition")
    context_line = f"Context: {_dump(problem_def)}" if "step1" in ctx.previous_step_data else ""
    return f"""Based on the problem definition, generate 3-5 Evidence Cards representing key findings from scientific literature.

Problem: "{ctx.problem_statement}"
{context_line}

Create evidence cards following this schema:
{{
  "evidenceCards": [
    {{
      "id": "EV001",
      "source": {{
        "type": "paper|clinical_trial|meta_analysis|dataset|guideline",
        "citation": "Author et al., Journal (Year)",
        "link": "https://doi.org/..."
      }},
      "context": {{
        "model": "in_vitro|animal|human",
        "species": "if applicable",
        "population": "patient population if human",
        "condition": "specific condition studied"
      }},
      "intervention": {{
        "agent": "drug/therapy/intervention name",
        "dose": "if applicable",
        "route": "if applicable",
        "duration": "if applicable"
      }},
      "outcome": {{
        "variable": "what was measured",
        "direction": "increase|decrease|no_effect",
        "magnitude": "effect size if available"
      }},
      "validityProfile": {{
        "internalValidity": "high|medium|low",
        "externalValidity": "high|medium|low",
        "mechanisticValidity": "high|medium|low",
        "robustness": "high|medium|low",
        "criticalLimitations": ["limitation 1", "limitation 2"]
      }}
    }}
  ],
  "summary": "Brief overview of evidence found",
  "evidenceCount": 3
}}

Generate realistic evidence based on known scientific literature for this condition."""


def _validity_assessment(ctx: PromptContext) -> str:
    evidence = ctx.step("step2").get("evidenceCards") or []
    return f"""Assess the validity of the evidence gathered.

Problem: "{ctx.problem_statement}"
Evidence: {_dump(evidence)}

Provide a validity assessment:
{{
  "validityAssessment": {{
    "overallQuality": "high|medium|low",
    "strongestEvidence": ["EV001 - reason"],
    "weakestEvidence": ["EV002 - reason"],
    "majorConcerns": ["concern 1"],
    "confidenceLevel": "high|medium|low"
  }},
  "summary": "Overall assessment of evidence quality"
}}"""


def _evidence_map(ctx: PromptContext) -> str:
    evidence = ctx.step("step2").get("evidenceCards") or []
    return f"""Create an Evidence Map showing relationships between findings.

Problem: "{ctx.problem_statement}"
Evidence: {_dump(evidence)}

Generate:
{{
  "evidenceMap": {{
    "consistentFindings": ["EV001", "EV002"],
    "contradictions": [
      {{"a": "EV001", "b": "EV003", "note": "Explanation of contradiction"}}
    ],
    "gaps": ["Gap 1 description", "Gap 2 description"]
  }},
  "summary": "Key patterns and conflicts in the evidence"
}}"""


def _gap_list(ctx: PromptContext) -> str:
    evidence_map = ctx.step("step4").get("evidenceMap") or {}
    return f"""Generate a numbered Gap List from the evidence map.

Problem: "{ctx.problem_statement}"
Evidence Map: {_dump(evidence_map)}

Format:
{{
  "gaps": [
    "GAP1: Description of knowledge gap",
    "GAP2: Description of another gap"
  ],
  "prioritizedGaps": ["GAP1", "GAP2"],
  "summary": "Critical gaps that need addressing"
}}"""


def _hypothesis_cards(ctx: PromptContext) -> str:
    gaps = ctx.step("step5").get("gaps") or []
    return f"""Generate 2-3 Hypothesis Cards based on the identified gaps.

Gaps: {_dump(gaps)}
Problem: "{ctx.problem_statement}"

Create hypotheses:
{{
  "hypothesisCards": [
    {{
      "id": "HYP001",
      "statement": "Clear, testable hypothesis statement",
      "mechanism": {{
        "description": "Proposed mechanism of action",
        "assumptions": ["assumption 1", "assumption 2"]
      }},
      "scope": {{
        "condition": "Target condition",
        "population": "Target population"
      }},
      "predictions": [
        {{"observable": "What would be observed if true", "expectedDirection": "increase|decrease|no_change"}}
      ],
      "supportingEvidence": ["EV001"],
      "counterEvidence": [],
      "falsificationCriteria": [
        {{"description": "What would prove this wrong", "decisiveOutcome": "Specific result that disproves"}}
      ]
    }}
  ],
  "hypothesesCount": 2,
  "summary": "Overview of generated hypotheses"
}}"""


def _critique(ctx: PromptContext) -> str:
    hypotheses = ctx.step("step6").get("hypothesisCards") or []
    return f"""Critique the hypotheses and add counter-evidence.

Problem: "{ctx.problem_statement}"
Hypotheses: {_dump(hypotheses)}

For each hypothesis, identify weaknesses:
{{
  "critique": [
    {{
      "hypothesisId": "HYP001",
      "strengths": ["strength 1"],
      "weaknesses": ["weakness 1"],
      "alternativeExplanations": ["alternative 1"],
      "falsificationRisk": "high|medium|low"
    }}
  ],
  "eliminatedHypotheses": [],
  "remainingHypotheses": ["HYP001", "HYP002"],
  "summary": "Critical analysis of hypotheses"
}}"""


def _decision_gating(ctx: PromptContext) -> str:
    return f"""Select the most promising hypotheses for testing.

Problem: "{ctx.problem_statement}"
Critique: {_dump(ctx.step("step7"))}

Evaluate and rank:
{{
  "ranking": [
    {{
      "hypothesisId": "HYP001",
      "plausibility": "high|medium|low",
      "testability": "high|medium|low",
      "risk": "high|medium|low",
      "priority": 1
    }}
  ],
  "selectedForRoadmap": ["HYP001"],
  "rationale": "Why these were selected",
  "summary": "Decision gating results"
}}"""


def _roadmap(ctx: PromptContext) -> str:
    selected = ctx.step("step8").get("selectedForRoadmap") or []
    return f"""Create an R&D Roadmap for the selected hypotheses.

Problem: "{ctx.problem_statement}"
Selected: {_dump(selected)}

Generate:
{{
  "roadmapCard": {{
    "id": "RM001",
    "objective": "Overall research objective",
    "linkedHypotheses": ["HYP001"],
    "phases": [
      {{
        "phaseId": "P1",
        "goal": "Phase goal",
        "method": "Proposed methodology",
        "successCriteria": "What defines success",
        "failureCriteria": "What defines failure",
        "decision": "proceed|stop|pivot"
      }}
    ],
    "globalRisks": [
      {{"description": "Risk description", "mitigation": "How to mitigate"}}
    ],
    "exitConditions": [
      {{"description": "When to stop the research"}}
    ]
  }},
  "summary": "R&D roadmap overview"
}}"""


STEP_PROMPTS: dict[int, Callable[[PromptContext], str]] = {
    0: _validity_gate,
    1: _problem_definition,
    2: _evidence_cards,
    3: _validity_assessment,
    4: _evidence_map,
    5: _gap_list,
    6: _hypothesis_cards,
    7: _critique,
    8: _decision_gating,
    9: _roadmap,
}


def get_prompt_renderer(step_index: int) -> Callable[[PromptContext], str] | None:
    return STEP_PROMPTS.get(step_index)


def render_prompt(step_index: int, context: PromptContext) -> str:
    """Render the user prompt for ``step_index``.

    Raises:
        KeyError: if no prompt is registered for the index.
    """
    renderer = STEP_PROMPTS.get(step_index)
    if renderer is None:
        raise KeyError(f"No prompt registered for step {step_index}")
    return renderer(context)
