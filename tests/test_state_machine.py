import pytest

from spin_agent.services.session_state import SessionFacts, SessionState
from spin_agent.services.spin_classifier import KeywordSpinClassifier, RegexFactExtractor, SpinClassification
from spin_agent.services.state_machine import (
    InvalidTransitionError,
    ScoringConfig,
    SpinStage,
    can_transition,
    compute_score,
    evaluate_batch,
    is_gate_satisfied,
    is_qualified,
    next_stage,
    transition,
)

HOUR_MS = 3600 * 1000
PROBLEM_TEXT = "Temos um problema sério, o atendimento demora muito"


def problem_signal():
    return SpinClassification(stage=SpinStage.PROBLEM, confidence=0.5, matched_topics=["problem"])


class TestValidTransitions:
    def test_situation_to_problem(self):
        assert transition(SpinStage.SITUATION, SpinStage.PROBLEM) == SpinStage.PROBLEM

    def test_problem_to_implication(self):
        assert transition(SpinStage.PROBLEM, SpinStage.IMPLICATION) == SpinStage.IMPLICATION

    def test_implication_to_need(self):
        assert transition(SpinStage.IMPLICATION, SpinStage.NEED) == SpinStage.NEED


class TestInvalidTransitions:
    def test_skipping_a_stage(self):
        with pytest.raises(InvalidTransitionError):
            transition(SpinStage.SITUATION, SpinStage.IMPLICATION)

    def test_going_back(self):
        with pytest.raises(InvalidTransitionError):
            transition(SpinStage.IMPLICATION, SpinStage.PROBLEM)

    def test_need_is_terminal(self):
        assert can_transition(SpinStage.NEED, SpinStage.SITUATION) is False
        with pytest.raises(InvalidTransitionError):
            transition(SpinStage.NEED, SpinStage.NEED)


class TestGating:
    def test_empty_facts_block_problem_signal(self):
        assert next_stage(SpinStage.SITUATION, SessionFacts(), problem_signal()) == SpinStage.SITUATION

    def test_name_and_person_type_open_gate(self):
        facts = SessionFacts(name="Ana", person_type="PF")
        assert next_stage(SpinStage.SITUATION, facts, problem_signal()) == SpinStage.PROBLEM

    def test_company_needs_business_name(self):
        facts = SessionFacts(name="Ana", person_type="PJ")
        assert is_gate_satisfied(facts) is False
        assert next_stage(SpinStage.SITUATION, facts, problem_signal()) == SpinStage.SITUATION

        facts = SessionFacts(name="Ana", person_type="PJ", business="Acme")
        assert is_gate_satisfied(facts) is True

    def test_same_batch_blocked_then_advances_once_facts_known(self):
        classifier = KeywordSpinClassifier()
        extractor = RegexFactExtractor()

        blocked = evaluate_batch(SessionState(), [PROBLEM_TEXT], classifier, extractor, now_ms=0)
        assert blocked.stage == SpinStage.SITUATION

        state = SessionState(facts=SessionFacts(name="Ana", person_type="PF"))
        advanced = evaluate_batch(state, [PROBLEM_TEXT], classifier, extractor, now_ms=0)
        assert advanced.stage == SpinStage.PROBLEM
        assert advanced.advanced is True


class TestForwardSteps:
    def test_later_signal_moves_one_step(self):
        need = SpinClassification(stage=SpinStage.NEED, confidence=0.4)
        assert next_stage(SpinStage.PROBLEM, SessionFacts(), need) == SpinStage.IMPLICATION

    def test_same_or_earlier_signal_keeps_stage(self):
        assert next_stage(SpinStage.IMPLICATION, SessionFacts(), problem_signal()) == SpinStage.IMPLICATION

    def test_no_signal_keeps_stage(self):
        assert next_stage(SpinStage.PROBLEM, SessionFacts(), SpinClassification(stage=None)) == SpinStage.PROBLEM

    def test_need_never_advances(self):
        need = SpinClassification(stage=SpinStage.NEED, confidence=1.0)
        assert next_stage(SpinStage.NEED, SessionFacts(), need) == SpinStage.NEED


class TestScore:
    def test_stage_points_per_reached_stage(self):
        score = compute_score(0, SpinStage.SITUATION, SpinStage.PROBLEM, 0, None, now_ms=0)
        assert score == 10

    def test_engagement_is_capped(self):
        scoring = ScoringConfig()
        few = compute_score(0, SpinStage.PROBLEM, SpinStage.PROBLEM, 2, None, 0, scoring)
        many = compute_score(0, SpinStage.PROBLEM, SpinStage.PROBLEM, 50, None, 0, scoring)
        assert few == 2
        assert many == scoring.engagement_points

    def test_recent_transition_bonus(self):
        now = 100 * HOUR_MS
        recent = compute_score(0, SpinStage.PROBLEM, SpinStage.IMPLICATION, 0, now - HOUR_MS, now)
        stale = compute_score(0, SpinStage.PROBLEM, SpinStage.IMPLICATION, 0, now - 48 * HOUR_MS, now)
        assert recent == 15
        assert stale == 10

    def test_bounded_at_100(self):
        assert compute_score(98, SpinStage.IMPLICATION, SpinStage.NEED, 5, 0, 1) == 100

    def test_never_decreases(self):
        previous = 40
        for count in range(0, 6):
            assert compute_score(previous, SpinStage.NEED, SpinStage.NEED, count, None, 0) >= previous

    def test_constants_are_tunable(self):
        scoring = ScoringConfig(stage_points=25, engagement_points=0)
        assert compute_score(0, SpinStage.SITUATION, SpinStage.PROBLEM, 3, None, 0, scoring) == 25


class TestQualified:
    def test_requires_need_stage(self):
        assert is_qualified(90, SpinStage.IMPLICATION) is False

    def test_requires_threshold(self):
        assert is_qualified(69, SpinStage.NEED) is False
        assert is_qualified(70, SpinStage.NEED) is True


class TestEvaluateBatch:
    def test_merges_facts_across_messages(self):
        decision = evaluate_batch(
            SessionState(),
            ["Oi, me chamo Ana", "sou pessoa física"],
            KeywordSpinClassifier(),
            RegexFactExtractor(),
            now_ms=1000,
        )
        assert decision.facts.name == "Ana"
        assert decision.facts.person_type == "PF"
        assert decision.stage == SpinStage.PROBLEM
        assert decision.stage_changed_at == 1000
        assert {"name", "person_type"} <= decision.answered_topics

    def test_known_facts_survive_empty_extraction(self):
        state = SessionState(facts=SessionFacts(name="Ana", person_type="PF", contact="ana@example.com"))
        decision = evaluate_batch(state, ["ok"], KeywordSpinClassifier(), RegexFactExtractor(), now_ms=0)
        assert decision.facts == state.facts

    def test_score_does_not_drop(self):
        state = SessionState(stage=SpinStage.NEED, score=80)
        decision = evaluate_batch(state, ["obrigado"], KeywordSpinClassifier(), RegexFactExtractor(), now_ms=0)
        assert decision.score >= 80
        assert decision.qualified is True
