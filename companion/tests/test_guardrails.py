import pytest

from companion.agent.emotional_state import EmotionalClimate, Weather
from companion.agent.guardrails import (
    VULNERABILITY_GUARDED,
    VULNERABILITY_OPEN,
    VULNERABILITY_SOFT,
    GuardrailEvaluator,
)
from companion.config import GuardrailThresholds

CLEAR = EmotionalClimate(weather=Weather.CLEAR, stability_score=0.9)
STORM = EmotionalClimate(weather=Weather.STORM, stability_score=0.2)


@pytest.mark.parametrize("climate,trust,affection", [(None, 0.9, 0.9), (CLEAR, None, 0.9), (CLEAR, 0.9, None)])
def test_missing_inputs_give_restrictive_decision(climate, trust, affection):
    evaluator = GuardrailEvaluator()
    decision = evaluator.evaluate(climate, trust, affection)

    assert decision == evaluator.restrictive()
    assert not decision.allow_vulnerable_tone
    assert not decision.allow_high_intensity_joy
    assert not decision.allow_playful_conflict
    assert decision.max_response_length_factor == GuardrailThresholds().restrictive_length_factor


def test_storm_blocks_vulnerable_tone_even_at_full_trust():
    decision = GuardrailEvaluator().evaluate(STORM, 1.0, 1.0)
    assert not decision.allow_vulnerable_tone
    assert not decision.allow_playful_conflict
    assert decision.max_response_length_factor < 1.0


def test_calm_high_trust_allows_everything():
    decision = GuardrailEvaluator().evaluate(CLEAR, 0.9, 0.9)
    assert decision.allow_vulnerable_tone
    assert decision.allow_high_intensity_joy
    assert decision.allow_playful_conflict
    assert decision.max_response_length_factor == 1.0


def test_decisions_are_monotone_in_trust():
    evaluator = GuardrailEvaluator()
    previous = None
    for step in range(0, 21):
        decision = evaluator.evaluate(CLEAR, step / 20, 0.8)
        if previous is not None:
            assert decision.allow_vulnerable_tone >= previous.allow_vulnerable_tone
            assert decision.allow_playful_conflict >= previous.allow_playful_conflict
            assert decision.allow_high_intensity_joy == previous.allow_high_intensity_joy
        previous = decision


def test_demo_mode_never_vulnerable():
    assert not GuardrailEvaluator().evaluate(CLEAR, 1.0, 1.0, demo_mode=True).allow_vulnerable_tone


def test_presence_mode_blocks_playful_and_shortens():
    decision = GuardrailEvaluator().evaluate(CLEAR, 0.9, 0.9, mode="on")
    assert not decision.allow_playful_conflict
    assert decision.max_response_length_factor == pytest.approx(0.8)


def test_length_factor_floor():
    thresholds = GuardrailThresholds().with_overrides(
        exhaustion_length_factor=0.3, storm_length_factor=0.3, presence_length_factor=0.3,
    )
    decision = GuardrailEvaluator(thresholds).evaluate(STORM, 1.0, 1.0, mode=True, exhaustion_mode=True)
    assert decision.max_response_length_factor == thresholds.min_length_factor


def test_evaluation_is_pure():
    evaluator = GuardrailEvaluator()
    assert evaluator.evaluate(CLEAR, 0.7, 0.4) == evaluator.evaluate(CLEAR, 0.7, 0.4)


def test_vulnerability_mode_follows_tier():
    evaluator = GuardrailEvaluator()
    open_decision = evaluator.evaluate(CLEAR, 0.9, 0.9)

    assert evaluator.decide_vulnerability_mode(open_decision, 3) == VULNERABILITY_OPEN
    assert evaluator.decide_vulnerability_mode(open_decision, 1) == VULNERABILITY_SOFT
    assert evaluator.decide_vulnerability_mode(open_decision, None) == VULNERABILITY_GUARDED
    assert evaluator.decide_vulnerability_mode(evaluator.restrictive(), 4) == VULNERABILITY_GUARDED


def test_thresholds_reject_out_of_range_env():
    with pytest.raises(ValueError):
        GuardrailThresholds.from_env({"GUARDRAIL_VULNERABLE_TRUST_MIN": "1.5"})
    with pytest.raises(ValueError):
        GuardrailThresholds.from_env({"GUARDRAIL_STORM_LENGTH_FACTOR": "lots"})
