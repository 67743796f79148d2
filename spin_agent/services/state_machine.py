from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Iterable, Optional

if TYPE_CHECKING:
    from spin_agent.services.session_state import SessionFacts, SessionState
    from spin_agent.services.spin_classifier import FactExtractor, SpinClassification, SpinClassifier


class SpinStage(str, Enum):
    SITUATION = "S"
    PROBLEM = "P"
    IMPLICATION = "I"
    NEED = "N"

    @property
    def label(self) -> str:
        return STAGE_LABELS[self]

    @property
    def order(self) -> int:
        return STAGE_ORDER.index(self)


STAGE_ORDER = [SpinStage.SITUATION, SpinStage.PROBLEM, SpinStage.IMPLICATION, SpinStage.NEED]

STAGE_LABELS = {
    SpinStage.SITUATION: "Situação",
    SpinStage.PROBLEM: "Problema",
    SpinStage.IMPLICATION: "Implicação",
    SpinStage.NEED: "Necessidade",
}

VALID_TRANSITIONS = {
    SpinStage.SITUATION: [SpinStage.PROBLEM],
    SpinStage.PROBLEM: [SpinStage.IMPLICATION],
    SpinStage.IMPLICATION: [SpinStage.NEED],
    SpinStage.NEED: [],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_state: SpinStage, to_state: SpinStage):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.value} -> {to_state.value}")


def can_transition(from_state: SpinStage, to_state: SpinStage) -> bool:
    """Check if transition is valid."""
    allowed = VALID_TRANSITIONS.get(from_state, [])
    return to_state in allowed


def transition(from_state: SpinStage, to_state: SpinStage) -> SpinStage:
    """Perform state transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state


def is_gate_satisfied(facts: SessionFacts) -> bool:
    """Leaving S requires a name, a person type and, for PJ, the business name."""
    if not facts.name or not facts.person_type:
        return False
    if facts.person_type == "PJ" and not facts.business:
        return False
    return True


def next_stage(
    current: SpinStage,
    facts: SessionFacts,
    classification: Optional[SpinClassification] = None,
) -> SpinStage:
    """Stage after one batch. Advances at most one step."""
    if current == SpinStage.SITUATION:
        if is_gate_satisfied(facts):
            return transition(current, SpinStage.PROBLEM)
        return current

    if current == SpinStage.NEED:
        return current

    if classification is None or classification.stage is None:
        return current
    if classification.stage.order > current.order:
        return transition(current, STAGE_ORDER[current.order + 1])
    return current


@dataclass(frozen=True)
class ScoringConfig:
    stage_points: int = 10
    engagement_points: int = 5
    engagement_message_cap: int = 5
    recent_transition_points: int = 5
    recent_transition_hours: int = 24
    qualified_threshold: int = 70
    max_score: int = 100

    @classmethod
    def from_settings(cls, settings) -> "ScoringConfig":
        return cls(
            stage_points=settings.score_stage_points,
            engagement_points=settings.score_engagement_points,
            engagement_message_cap=settings.score_engagement_message_cap,
            recent_transition_points=settings.score_recent_transition_points,
            recent_transition_hours=settings.score_recent_transition_hours,
            qualified_threshold=settings.qualified_threshold,
        )


def compute_score(
    previous: int,
    previous_stage: SpinStage,
    new_stage: SpinStage,
    message_count: int,
    last_stage_change_ms: Optional[int],
    now_ms: int,
    scoring: ScoringConfig = ScoringConfig(),
) -> int:
    """Accumulate the qualification score. Never decreases, never exceeds ``max_score``."""
    increment = 0

    steps = new_stage.order - previous_stage.order
    if steps > 0:
        increment += steps * scoring.stage_points
        if last_stage_change_ms is not None:
            window_ms = scoring.recent_transition_hours * 3600 * 1000
            if 0 <= now_ms - last_stage_change_ms <= window_ms:
                increment += scoring.recent_transition_points

    if message_count > 0 and scoring.engagement_message_cap > 0:
        counted = min(message_count, scoring.engagement_message_cap)
        increment += round(scoring.engagement_points * counted / scoring.engagement_message_cap)

    previous = max(0, min(previous, scoring.max_score))
    return min(scoring.max_score, previous + max(increment, 0))


def is_qualified(score: int, stage: SpinStage, threshold: int = 70) -> bool:
    return score >= threshold and stage == SpinStage.NEED


@dataclass
class StageDecision:
    previous_stage: SpinStage
    stage: SpinStage
    facts: SessionFacts
    score: int
    qualified: bool
    answered_topics: set[str] = field(default_factory=set)
    classification: Optional[SpinClassification] = None
    stage_changed_at: Optional[int] = None

    @property
    def advanced(self) -> bool:
        return self.stage != self.previous_stage


def evaluate_batch(
    state: SessionState,
    texts: Iterable[str],
    classifier: SpinClassifier,
    extractor: FactExtractor,
    now_ms: int,
    scoring: ScoringConfig = ScoringConfig(),
) -> StageDecision:
    """Run fact extraction, classification, gating and scoring for one batch.

    Pure with respect to storage: the caller applies the decision.
    """
    texts = [text for text in texts if text and text.strip()]

    facts = state.facts
    for text in texts:
        facts = facts.merge(extractor.extract(text))

    classification = classifier.classify("\n".join(texts)) if texts else None
    stage = next_stage(state.stage, facts, classification)

    score = compute_score(
        state.score,
        state.stage,
        stage,
        len(texts),
        state.stage_changed_at,
        now_ms,
        scoring,
    )

    answered = set(facts.known_keys())
    if classification is not None:
        answered.update(classification.matched_topics)

    return StageDecision(
        previous_stage=state.stage,
        stage=stage,
        facts=facts,
        score=score,
        qualified=is_qualified(score, stage, scoring.qualified_threshold),
        answered_topics=answered,
        classification=classification,
        stage_changed_at=now_ms if stage != state.stage else state.stage_changed_at,
    )
