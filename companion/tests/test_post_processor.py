import pytest

from companion.conversation import post_processor
from companion.conversation.post_processor import (
    APPROVAL_CUE,
    ResponsePostProcessor,
    find_fragment_defects,
    remove_bullets,
    sanitize,
)
from companion.conversation.types import OutcomeKind, TurnOutcome, TurnResult
from companion.conversation.ux_policy import UXPolicy, build_ux_policy
from companion.utils.text_utils import count_sentences


def _result(text, intents=(), tool_results=()):
    return TurnResult(
        text=text,
        outcome=TurnOutcome(OutcomeKind.OK, "stub"),
        pending_tool_intents=tuple(intents),
        tool_results=tuple(tool_results),
    )


def test_caps_whole_sentences():
    shaped = ResponsePostProcessor().shape("Hello there. How are you? I am fine.", UXPolicy(max_sentences=2))
    assert shaped == "Hello there. How are you?"


def test_cap_respects_abbreviations():
    shaped = ResponsePostProcessor().shape("Dr. Smith is here. He says hi. Bye now.", UXPolicy(max_sentences=1))
    assert shaped == "Dr. Smith is here."


def test_longform_request_is_left_alone():
    text = "One. Two. Three. Four. Five. Six. Seven. Eight."
    policy = build_ux_policy("mobile", "Explain it step by step please")
    assert ResponsePostProcessor().shape(text, policy) == text


def test_mobile_flattens_and_strips_lists():
    raw = "Here is the plan:\n- pack bags\n- leave early\n\nSee you soon."
    shaped = ResponsePostProcessor().shape(raw, build_ux_policy("mobile"))

    assert "\n" not in shaped
    assert "- " not in shaped
    assert shaped == "Here is the plan: Pack bags. Leave early."
    assert count_sentences(shaped) == 2


def test_desktop_keeps_paragraphs():
    raw = "First thought here.\n\nSecond thought there."
    assert ResponsePostProcessor().shape(raw, build_ux_policy("desktop")) == raw


def test_pending_tool_intent_keeps_first_sentence_and_adds_cue():
    raw = "I can set a timer for ten minutes. It will ring in the kitchen. Anything else?"
    shaped = ResponsePostProcessor().shape(raw, UXPolicy(max_sentences=2), _result(raw, intents=["set_timer"]))

    assert shaped.startswith("I can set a timer for ten minutes. " + APPROVAL_CUE)
    assert "Anything else?" not in shaped


def test_approval_cue_stays_in_first_paragraph():
    raw = "Sure thing\n\nI'll queue it up now. It'll be great."
    shaped = ResponsePostProcessor().shape(raw, UXPolicy(), _result(raw, intents=["music.play"]))

    assert shaped == "Sure thing. " + APPROVAL_CUE + "\n\nI'll queue it up now. It'll be great."
    assert shaped.count("I'll queue it up now.") == 1


def test_existing_cue_is_not_duplicated():
    raw = "Should I set a timer for ten minutes? It will ring in the kitchen."
    shaped = ResponsePostProcessor().shape(raw, UXPolicy(max_sentences=2), _result(raw, intents=["set_timer"]))
    assert APPROVAL_CUE not in shaped
    assert shaped == raw


def test_executed_intent_needs_no_cue():
    raw = "Your timer is set. It will ring in ten minutes."
    result = _result(raw, intents=["set_timer"], tool_results=[{"intent": "set_timer", "ok": True}])
    assert APPROVAL_CUE not in ResponsePostProcessor().shape(raw, UXPolicy(), result)


def test_failing_persona_pass_is_skipped():
    def broken(text):
        raise RuntimeError("style model offline")

    assert ResponsePostProcessor(persona_pass=broken).shape("All good here.") == "All good here."


def test_persona_pass_applies():
    processor = ResponsePostProcessor(persona_pass=lambda text: text.replace("Hello", "Hey"))
    assert processor.shape("Hello friend.") == "Hey friend."


def test_reverts_when_shaping_introduces_fragment(monkeypatch):
    monkeypatch.setattr(post_processor, "_cap", lambda text, *args, **kwargs: "and then it stopped.")
    raw = "It rained all day. Then it stopped."
    assert ResponsePostProcessor().shape(raw, UXPolicy(max_sentences=1)) == raw


def test_sanitize_strips_debug_prefix_and_whitespace():
    assert sanitize("🔧 [DEBUG turn=3]  Hello   there.\n\n\n\nBye.") == "Hello there.\n\nBye."
    assert sanitize(None) == ""


@pytest.mark.parametrize("text,defect", [
    ("and so it goes.", "leading_lowercase"),
    (", right.", "leading_punctuation"),
    ("Well,, fine.", "doubled_punctuation"),
    ("That is the end of a", "dangling_tail"),
])
def test_fragment_defects(text, defect):
    assert defect in find_fragment_defects(text)


def test_clean_text_has_no_defects():
    assert find_fragment_defects("Okay. That works for me!") == set()


def test_remove_bullets_numbered_list():
    assert remove_bullets("Steps:\n1. boil water\n2) add tea") == "Steps: Boil water. Add tea."


def test_ux_policy_scaling_never_below_one():
    policy = build_ux_policy("desktop")
    assert policy.max_sentences == 6
    assert policy.scaled(0.5).max_sentences == 3
    assert policy.scaled(0.01).max_sentences == 1
    assert build_ux_policy("ios").allow_bullets is False
