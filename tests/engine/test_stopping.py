import pytest

from taleweaver.engine.stopping import (
    DIALOGUE_PUNCTUATION,
    LLAMA3_STOP_MARKERS,
    MINIMAL_CLEANUP_MARKERS,
    StoppingPolicy,
    StopTracker,
    cleanup_text,
    find_earliest,
)


def _feed(tracker, chars, *, start_pos=100):
    """Feed one character per token; return (text, reason, tokens consumed)."""
    text = ""
    for i, ch in enumerate(chars):
        text += ch
        reason = tracker.check(ch, text, position=start_pos + i)
        if reason is not None:
            return text, reason, i + 1
    return text, None, len(chars)


def test_json_stop_fires_exactly_on_matching_close():
    tracker = StopTracker(StoppingPolicy(json_braces=True), n_ctx=4096, max_tokens=150)
    text, reason, used = _feed(tracker, '{"a":1}{"b":2}')
    assert text == '{"a":1}'
    assert reason == "json_complete"
    assert used == 7


def test_json_stop_ignores_closing_brace_before_any_opening():
    tracker = StopTracker(StoppingPolicy(json_braces=True), n_ctx=4096, max_tokens=150)
    text, reason, _ = _feed(tracker, '} {"x": {"y": 1}}')
    assert text == '} {"x": {"y": 1}}'
    assert reason == "json_complete"


def test_punctuation_stop_waits_for_min_length():
    policy = StoppingPolicy(terminal_punctuation=DIALOGUE_PUNCTUATION, min_length=20)
    tracker = StopTracker(policy, n_ctx=4096, max_tokens=80)
    text, reason, _ = _feed(tracker, "はい。それは静寂の森の奥にある古い神殿のことじゃ。続き")
    assert reason == "punctuation"
    assert text.endswith("じゃ。")


def test_stop_marker_records_its_index():
    tracker = StopTracker(StoppingPolicy(), n_ctx=4096, max_tokens=80)
    text, reason, _ = _feed(tracker, "fine</s>rest")
    assert reason == "stop"
    assert text[: tracker.marker_index] == "fine"


def test_marker_takes_precedence_over_json_completion():
    tracker = StopTracker(StoppingPolicy(json_braces=True), n_ctx=4096, max_tokens=80)
    reason = tracker.check("{}<|eot_id|>", "{}<|eot_id|>", position=10)
    assert reason == "stop"
    assert tracker.marker_index == 2


def test_context_ceiling():
    tracker = StopTracker(StoppingPolicy(), n_ctx=16, max_tokens=80)
    assert tracker.check("a", "a", position=14) is None
    assert tracker.check("b", "ab", position=15) == "context"


def test_token_budget():
    tracker = StopTracker(StoppingPolicy(), n_ctx=4096, max_tokens=3)
    _, reason, used = _feed(tracker, "abcdefg")
    assert reason == "length"
    assert used == 3
    assert tracker.produced == 3


def test_find_earliest_picks_first_occurrence():
    assert find_earliest("ab</s>cd<|eot_id|>", LLAMA3_STOP_MARKERS) == 2
    assert find_earliest("clean", LLAMA3_STOP_MARKERS) is None


def test_cleanup_truncates_markup_and_speaker_prefix():
    policy = StoppingPolicy(strip_prefixes=("Elder: ",))
    assert cleanup_text("Elder: Be careful.<|start_header_id|>user", policy) == "Be careful."
    assert cleanup_text("Be careful. Elder: again", policy) == "Be careful. "


def test_minimal_cleanup_leaves_other_markup():
    policy = StoppingPolicy(cleanup_markers=MINIMAL_CLEANUP_MARKERS)
    assert cleanup_text('{"hit": true}[GPT]', policy) == '{"hit": true}[GPT]'
    assert cleanup_text('{"hit": true}<|eot_id|>', policy) == '{"hit": true}'


def test_policy_merge_validates():
    base = StoppingPolicy()
    merged = base.merged({"stop_markers": ["###"], "min_length": 5})
    assert merged.stop_markers == ("###",)
    assert merged.min_length == 5

    with pytest.raises(ValueError, match="Unknown stopping option"):
        base.merged({"regex": "x"})
    with pytest.raises(ValueError, match="list of strings"):
        base.merged({"stop_markers": "###"})
    with pytest.raises(ValueError, match="exclusive"):
        base.merged({"json_braces": True, "terminal_punctuation": ["."]})
