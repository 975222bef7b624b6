import threading

import pytest


torch = pytest.importorskip("torch", reason="torch not installed")


from fakes import make_engine_class, resolver

from taleweaver.engine.pipeline import DecodeFailed, GenerationPipeline, RolePolicy, TokenizationFailed
from taleweaver.engine.pool import EnginePool, RoleNotFound
from taleweaver.engine.sampling import SamplingPolicy
from taleweaver.engine.stopping import DIALOGUE_PUNCTUATION, StoppingPolicy
from taleweaver.engine.types import EngineParams, GenerationState


def _pipeline(engine_cls, *, policy=None, n_ctx=256, n_batch=64, model_paths=None):
    pool = EnginePool(
        model_paths or {"GM": "models/a.gguf"},
        params=EngineParams(n_ctx=n_ctx, n_batch=n_batch),
        resolve_engine=resolver(engine_cls),
    )
    policies = {}
    if policy is not None:
        policies = {role: policy for role in pool.roles()}
    return pool, GenerationPipeline(pool, policies)


def _policy(max_tokens=80, **stopping):
    return RolePolicy(sampling=SamplingPolicy(max_tokens=max_tokens), stopping=StoppingPolicy(**stopping))


def test_budget_exhaustion_stops_after_exactly_max_tokens():
    engine_cls = make_engine_class("abcdefgh")
    pool, pipeline = _pipeline(engine_cls, policy=_policy(max_tokens=3))

    result = pipeline.generate("GM", "prompt")

    assert result.text == "abc"
    assert result.completion_tokens == 3
    assert result.finish_reason == "length"
    assert result.state is GenerationState.STOPPED
    pool.teardown()


@pytest.mark.parametrize("budget", [1, 2, 5, 9])
def test_never_exceeds_budget(budget):
    engine_cls = make_engine_class("x" * 20)
    pool, pipeline = _pipeline(engine_cls, policy=_policy(max_tokens=budget))
    result = pipeline.generate("GM", "prompt")
    assert result.completion_tokens == budget
    assert len(result.text) == budget
    pool.teardown()


def test_end_of_generation_token_is_not_emitted():
    engine_cls = make_engine_class("hi")
    pool, pipeline = _pipeline(engine_cls, policy=_policy())
    result = pipeline.generate("GM", "prompt")
    assert result.text == "hi"
    assert result.finish_reason == "eog"
    assert result.completion_tokens == 2
    pool.teardown()


def test_balanced_braces_stop_at_closing_brace():
    engine_cls = make_engine_class('{"a":1} and more')
    pool, pipeline = _pipeline(engine_cls, policy=_policy(json_braces=True))

    result = pipeline.generate("GM", "prompt")

    assert result.text == '{"a":1}'
    assert result.finish_reason == "json_complete"
    assert result.completion_tokens == len('{"a":1}')
    pool.teardown()


def test_nested_braces_wait_for_outermost_close():
    engine_cls = make_engine_class('noise {"a":{"b":2}} tail')
    pool, pipeline = _pipeline(engine_cls, policy=_policy(json_braces=True))
    result = pipeline.generate("GM", "prompt")
    assert result.text == 'noise {"a":{"b":2}}'
    pool.teardown()


def test_stop_marker_is_truncated_from_output():
    engine_cls = make_engine_class("hello<|eot_id|>more")
    pool, pipeline = _pipeline(engine_cls, policy=_policy())
    result = pipeline.generate("GM", "prompt")
    assert result.text == "hello"
    assert result.finish_reason == "stop"
    pool.teardown()


def test_punctuation_stop_needs_minimum_length():
    engine_cls = make_engine_class("Short. Then a much longer sentence. Tail")
    policy = _policy(terminal_punctuation=DIALOGUE_PUNCTUATION, min_length=20)
    pool, pipeline = _pipeline(engine_cls, policy=policy)

    result = pipeline.generate("GM", "prompt")

    assert result.text == "Short. Then a much longer sentence."
    assert result.finish_reason == "punctuation"
    pool.teardown()


def test_leading_speaker_prefix_is_stripped():
    engine_cls = make_engine_class("Elder: Welcome, traveller.")
    policy = _policy(terminal_punctuation=DIALOGUE_PUNCTUATION, strip_prefixes=("Elder: ",))
    pool, pipeline = _pipeline(engine_cls, policy=policy)
    result = pipeline.generate("GM", "prompt")
    assert result.text == "Welcome, traveller."
    pool.teardown()


def test_context_ceiling_stops_gracefully():
    prompt = "p" * 14
    engine_cls = make_engine_class("abcdef")
    pool, pipeline = _pipeline(engine_cls, policy=_policy(), n_ctx=16, n_batch=16)

    result = pipeline.generate("GM", prompt)

    assert result.text == "ab"
    assert result.finish_reason == "context"
    assert result.state is GenerationState.STOPPED
    pool.teardown()


def test_prompt_filling_context_yields_one_token():
    engine_cls = make_engine_class("abc")
    pool, pipeline = _pipeline(engine_cls, policy=_policy(), n_ctx=16, n_batch=16)
    result = pipeline.generate("GM", "p" * 16)
    assert result.text == "a"
    assert result.finish_reason == "context"
    pool.teardown()


def test_prompt_longer_than_context_fails():
    engine_cls = make_engine_class("abc")
    pool, pipeline = _pipeline(engine_cls, policy=_policy(), n_ctx=16, n_batch=16)
    with pytest.raises(DecodeFailed):
        pipeline.generate("GM", "p" * 17)
    pool.teardown()


def test_prompt_is_decoded_in_chunks_with_logits_only_at_the_end():
    engine_cls = make_engine_class("ok")
    pool, pipeline = _pipeline(engine_cls, policy=_policy(), n_ctx=64, n_batch=4)

    pipeline.generate("GM", "0123456789")

    decodes = engine_cls.recorder.decodes
    assert decodes[:3] == [(4, 0, False), (4, 4, False), (2, 8, True)]
    # Generated tokens are fed back one at a time at advancing positions.
    assert decodes[3:] == [(1, 10, True), (1, 11, True)]
    assert all(width <= 4 for width, _, _ in decodes)
    pool.teardown()


def test_tokenize_failure_raises_tokenization_failed():
    engine_cls = make_engine_class("abc", fail_tokenize=True)
    pool, pipeline = _pipeline(engine_cls, policy=_policy())
    with pytest.raises(TokenizationFailed):
        pipeline.generate("GM", "prompt")
    pool.teardown()


def test_empty_prompt_raises_tokenization_failed():
    engine_cls = make_engine_class("abc")
    pool, pipeline = _pipeline(engine_cls, policy=_policy())
    with pytest.raises(TokenizationFailed):
        pipeline.generate("GM", "")
    pool.teardown()


def test_prompt_decode_failure_raises_decode_failed():
    engine_cls = make_engine_class("abc", fail_decode_at=3)
    pool, pipeline = _pipeline(engine_cls, policy=_policy())
    with pytest.raises(DecodeFailed):
        pipeline.generate("GM", "prompt")
    pool.teardown()


def test_decode_failure_mid_generation_keeps_partial_text():
    prompt = "prompt"
    engine_cls = make_engine_class("abcdef", fail_decode_at=len(prompt) + 1)
    pool, pipeline = _pipeline(engine_cls, policy=_policy())

    result = pipeline.generate("GM", prompt)

    assert result.text == "ab"
    assert result.state is GenerationState.ERROR
    assert result.finish_reason == "error"
    assert not result.ok
    pool.teardown()


def test_every_call_starts_from_cleared_memory():
    engine_cls = make_engine_class("same")
    pool, pipeline = _pipeline(engine_cls, policy=_policy())
    first = pipeline.generate("GM", "prompt")
    second = pipeline.generate("GM", "prompt")
    assert first.text == second.text == "same"
    pool.teardown()


def test_unknown_role_propagates():
    engine_cls = make_engine_class("abc")
    pool, pipeline = _pipeline(engine_cls, policy=_policy())
    with pytest.raises(RoleNotFound):
        pipeline.generate("BARD", "prompt")
    pool.teardown()


def test_roles_sharing_an_instance_never_decode_concurrently():
    engine_cls = make_engine_class("abcdefgh", decode_delay=0.002)
    pool, pipeline = _pipeline(
        engine_cls,
        policy=_policy(),
        model_paths={"GM": "models/a.gguf", "NPC": "models/a.gguf"},
    )

    results = {}

    def run(role):
        results[role] = pipeline.generate(role, "prompt")

    threads = [threading.Thread(target=run, args=(role,)) for role in ("GM", "NPC")]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert engine_cls.recorder.max_active == 1
    assert results["GM"].text == results["NPC"].text == "abcdefgh"
    pool.teardown()
