import pytest

from scireason.contracts.schemas import Session, SessionMode, StrengthLevel
from scireason.verify.heuristics import (
    FALLBACK_ANSWER,
    FALLBACK_CAN_CLAIM,
    FALLBACK_CANNOT_CLAIM,
    FALLBACK_LIMITATIONS,
    FALLBACK_UNKNOWNS,
    NEXT_ACTIONS,
    SCORE_CEILING,
    SCORE_FLOOR,
    analyze_session,
    count_keywords,
    extract_bullets,
    extract_positive_claims,
    parse_decision_summary,
    parse_executive_summary,
    parse_phase_feasibility,
    parse_validity_scores,
    serialize,
)
from scireason.verify.lexicons import POSITIVE_KEYWORDS, SKEPTICAL_KEYWORDS


def _all_scores(scores) -> list[int]:
    return [
        scores.internal_validity.score,
        scores.external_validity.score,
        scores.measurement_validity.score,
        scores.statistical_robustness.score,
    ]


# -- primitives ---------------------------------------------------------------


def test_count_keywords_counts_presence_not_occurrences() -> None:
    assert count_keywords("This shows a CONFOUND and confound again", ["confound"]) == 1


def test_count_keywords_matches_stems_as_substrings() -> None:
    text = "High variability and heterogeneous cohorts"
    assert count_keywords(text, ["variab", "hetero", "bias"]) == 2


def test_serialize_is_compact_and_keeps_unicode() -> None:
    assert serialize({"a": [1, 2], "b": "µg"}) == '{"a":[1,2],"b":"µg"}'
    assert serialize(None) == "{}"


def test_extract_bullets_keeps_only_long_skeptical_clauses() -> None:
    text = "Risk. The main limitation is the small cohort. Results were robust across sites."
    assert extract_bullets(text) == ["The main limitation is the small cohort"]


def test_positive_claims_exclude_clauses_with_skeptical_terms() -> None:
    text = "Effect was robust in three trials. Effect was robust however biased by design."
    assert extract_positive_claims(text) == ["Effect was robust in three trials"]


# -- executive summary ------------------------------------------------------


def test_executive_summary_high_strength_with_only_positive_terms() -> None:
    summary = parse_executive_summary({"summary": "robust, replicated, significant"})
    assert summary.evidence_strength == StrengthLevel.HIGH
    assert summary.evidence_justification == "Multiple consistent findings with minimal contradictions"


def test_executive_summary_medium_strength() -> None:
    # 3 positive, 2 skeptical
    summary = parse_executive_summary({"summary": "robust replicated significant however caveat"})
    assert summary.evidence_strength == StrengthLevel.MEDIUM


def test_executive_summary_low_strength_when_skepticism_dominates() -> None:
    summary = parse_executive_summary({"summary": "robust however limitation caveat"})
    assert summary.evidence_strength == StrengthLevel.LOW


@pytest.mark.parametrize("step_data", [None, {}, {"summary": "neutral words only"}])
def test_executive_summary_falls_back_on_neutral_input(step_data) -> None:
    summary = parse_executive_summary(step_data)
    assert summary.core_takeaways.can_claim == [FALLBACK_CAN_CLAIM]
    assert summary.core_takeaways.cannot_claim == [FALLBACK_CANNOT_CLAIM]
    assert summary.limitations == list(FALLBACK_LIMITATIONS)
    assert summary.next_actions == list(NEXT_ACTIONS)


def test_executive_summary_extracts_claims_from_text() -> None:
    step_data = {
        "step4": {"summary": "Benefit was replicated in two cohorts. However the follow-up period was short."},
    }
    summary = parse_executive_summary(step_data)
    # Clauses are cut from the serialized JSON, so the first one keeps its key prefix
    assert len(summary.core_takeaways.can_claim) == 1
    assert summary.core_takeaways.can_claim[0].endswith("Benefit was replicated in two cohorts")
    assert summary.core_takeaways.cannot_claim == ["However the follow-up period was short"]


# -- decision summary -------------------------------------------------------


def _decision_session(**overrides) -> Session:
    fields = {
        "id": "S1",
        "problem_statement": "What treats condition X?",
        "completed_steps": list(range(9)),
        "step_data": {
            "step1": {"problemDefinition": {"condition": "Type 2 diabetes", "unmetNeed": "Durable glycemic control"}},
            "step5": {"gaps": ["G1", "G2", "G3", "G4"]},
            "step7": {"eliminatedHypotheses": ["H3"]},
            "step8": {"selectedForRoadmap": ["H1", "H2"], "summary": "Robust and replicated, significant and strong"},
        },
    }
    fields.update(overrides)
    return Session(**fields)


def test_decision_summary_reads_prior_steps() -> None:
    decision = parse_decision_summary(_decision_session())
    assert decision.best_current_answer == "Investigating Type 2 diabetes: Durable glycemic control"
    assert decision.unknowns == ["G1", "G2", "G3"]
    assert decision.selected_hypothesis == "H1"
    assert [r.hypothesis for r in decision.rejected_hypotheses] == ["H3"]
    assert decision.rejected_hypotheses[0].reason == "Failed falsification criteria"
    assert decision.confidence_level == StrengthLevel.HIGH


def test_decision_summary_high_confidence_requires_enough_completed_steps() -> None:
    decision = parse_decision_summary(_decision_session(completed_steps=[0, 1, 2]))
    assert decision.confidence_level == StrengthLevel.MEDIUM


def test_decision_summary_accepts_wire_dict() -> None:
    decision = parse_decision_summary(_decision_session().to_wire())
    assert decision.selected_hypothesis == "H1"
    assert decision.confidence_level == StrengthLevel.HIGH


def test_decision_summary_prefers_critique_entries() -> None:
    session = _decision_session()
    session.step_data["step7"] = {
        "critiques": [{"hypothesis": "H2", "reason": "Contradicted by EV003"}, {}, {"hypothesis": "H4"}],
    }
    rejected = parse_decision_summary(session).rejected_hypotheses
    assert [(r.hypothesis, r.reason) for r in rejected] == [
        ("H2", "Contradicted by EV003"),
        ("Alternative hypothesis", "Failed falsification criteria"),
    ]


def test_decision_summary_fallbacks_for_empty_session() -> None:
    decision = parse_decision_summary(Session(id="S2", problem_statement="Q"))
    assert decision.best_current_answer == FALLBACK_ANSWER
    assert decision.unknowns == list(FALLBACK_UNKNOWNS)
    assert decision.selected_hypothesis is None
    assert decision.rejected_hypotheses == []
    assert decision.confidence_level == StrengthLevel.LOW


# -- validity scores --------------------------------------------------------


def test_validity_scores_neutral_input_is_base_score() -> None:
    scores = parse_validity_scores({})
    assert _all_scores(scores) == [50, 50, 50, 50]
    assert scores.internal_validity.explanation == "Limited bias assessment available"
    assert scores.statistical_robustness.explanation == "Statistical robustness not evaluated"


def test_validity_scores_domain_adjustments() -> None:
    # "control" -> bias 1; "measured" -> measurement 1; "population" -> generalization 1
    scores = parse_validity_scores({"summary": "Control population was measured"})
    assert scores.internal_validity.score == 40
    assert scores.external_validity.score == 42
    assert scores.measurement_validity.score == 55
    assert scores.internal_validity.explanation == "Some bias concerns noted"


def test_validity_scores_clamp_at_floor() -> None:
    text = " ".join(SKEPTICAL_KEYWORDS) + " control population sample generalize"
    assert all(score == SCORE_FLOOR for score in _all_scores(parse_validity_scores(text)))


def test_validity_scores_clamp_at_ceiling() -> None:
    text = " ".join(POSITIVE_KEYWORDS) + " measured validity reliable accuracy statistics power p-value"
    scores = parse_validity_scores(text)
    assert scores.measurement_validity.score == SCORE_CEILING
    assert scores.statistical_robustness.score == SCORE_CEILING


@pytest.mark.parametrize("repeat", [0, 1, 5, 50])
def test_validity_scores_always_within_bounds(repeat: int) -> None:
    text = ("robust bias however " * repeat) + ("significant " * repeat)
    for score in _all_scores(parse_validity_scores({"text": text})):
        assert SCORE_FLOOR <= score <= SCORE_CEILING


# -- phases and full analysis ------------------------------------------------


def test_phase_feasibility_is_static_table() -> None:
    phases = parse_phase_feasibility({"anything": "ignored"})
    assert [p.phase for p in phases] == ["Preclinical", "Phase I", "Phase II", "Phase III"]
    assert phases[0].cost_range == "$2M - $10M"
    assert parse_phase_feasibility() == phases


def test_analyze_session_includes_phases_only_for_roadmap_mode() -> None:
    evidence = analyze_session(Session(id="S1", problem_statement="Q"))
    roadmap = analyze_session(Session(id="S2", problem_statement="Q", mode=SessionMode.ROADMAP))

    assert evidence.session_id == "S1"
    assert evidence.phase_feasibility == []
    assert len(roadmap.phase_feasibility) == 4
    assert "executiveSummary" in roadmap.to_wire()


def test_decision_summary_reads_ranking_and_gap_objects() -> None:
    session = _decision_session()
    session.step_data["step5"] = {"gaps": [{"id": "G1", "description": "No long-term data"}, {"id": "G2"}]}
    session.step_data["step8"] = {"selectedHypothesis": "H2", "selectedForRoadmap": ["H1"]}

    decision = parse_decision_summary(session)

    assert decision.unknowns == ["No long-term data", "G2"]
    assert decision.selected_hypothesis == "H2"


def test_decision_summary_ignores_malformed_step_data() -> None:
    session = _decision_session()
    session.step_data.update({
        "step1": {"problemDefinition": "Type 2 diabetes"},
        "step5": {"gaps": "G1"},
        "step7": {"status": "STOP", "stepId": "step7", "reason": "MissingEvidence"},
        "step8": {"selectedForRoadmap": "H1"},
    })

    decision = parse_decision_summary(session)

    assert decision.best_current_answer == FALLBACK_ANSWER
    assert decision.unknowns == list(FALLBACK_UNKNOWNS)
    assert decision.rejected_hypotheses == []
    assert decision.selected_hypothesis is None
