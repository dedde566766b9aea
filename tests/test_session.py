import dataclasses

import pytest

from tests.conftest import IMAGE_TOKEN_ID, MAX_CONTEXT, tiny_handle
from vlm.decode import CancellationToken, FinishReason
from vlm.errors import (
    ContextLengthExceededError,
    EmptyInputError,
    PlaceholderMismatchError,
    SessionStateError,
)
from vlm.sampling import SamplingConfig
from vlm.session import GenerationSession, Turn


@pytest.fixture
def session(llava_handle, tokenizer):
    return GenerationSession(llava_handle, tokenizer)


def _fused_length(session, tokenizer, prompt, num_images=1, image_seq_len=16):
    tokens = tokenizer.encode(session.render_prompt(prompt))
    return len(tokens) - num_images + num_images * image_seq_len


def test_generate_with_image(session, tokenizer, pixels):
    expected_length = _fused_length(session, tokenizer, "<image> Describe.")
    text = session.generate("<image> Describe.", image=pixels, max_new_tokens=6)
    result = session.last_result
    assert result.text == text
    assert len(result.token_ids) == 6
    assert result.finish_reason is FinishReason.MAX_TOKENS
    assert result.prompt_tokens == expected_length
    assert tokenizer.decode(result.token_ids) == text
    # Prompt plus one forward per emitted token except the last
    assert session.cache.current_length() == result.prompt_tokens + 5


def test_output_never_exceeds_budget(session, pixels):
    for budget in (1, 3, 8):
        session.reset()
        session.generate("<image> Hi", image=pixels, max_new_tokens=budget)
        assert len(session.last_result.token_ids) <= budget


def test_zero_budget(session, pixels):
    text = session.generate("<image> Hi", image=pixels, max_new_tokens=0)
    assert text == ""
    assert session.last_result.token_ids == []
    assert session.last_result.finish_reason is FinishReason.MAX_TOKENS
    assert session.cache.current_length() == session.last_result.prompt_tokens


def test_greedy_is_deterministic(llava_handle, tokenizer, pixels):
    outputs = []
    for _ in range(2):
        session = GenerationSession(llava_handle, tokenizer)
        session.generate("<image> What?", image=pixels, max_new_tokens=8)
        outputs.append(session.last_result.token_ids)
    assert outputs[0] == outputs[1]


def test_tiny_temperature_matches_greedy(llava_handle, tokenizer, pixels):
    greedy = GenerationSession(llava_handle, tokenizer)
    greedy.generate("<image> What?", image=pixels, max_new_tokens=8)

    sampled = GenerationSession(llava_handle, tokenizer)
    sampled.generate(
        "<image> What?", image=pixels, max_new_tokens=8,
        sampling_config=SamplingConfig(greedy=False, temperature=1e-5, seed=0),
    )
    assert sampled.last_result.token_ids == greedy.last_result.token_ids


def test_text_only_prompt(session):
    session.generate("Hello", max_new_tokens=3)
    assert len(session.last_result.token_ids) == 3


def test_stop_token(llava_handle, tokenizer, pixels):
    reference = GenerationSession(llava_handle, tokenizer)
    reference.generate("<image> Go", image=pixels, max_new_tokens=8)
    ids = reference.last_result.token_ids
    stop_id = ids[3]

    session = GenerationSession(llava_handle, tokenizer)
    session.generate("<image> Go", image=pixels, max_new_tokens=8, stop=[stop_id])
    result = session.last_result
    assert result.finish_reason is FinishReason.STOP_TOKEN
    assert result.token_ids == ids[:ids.index(stop_id)]


def test_stream_events(session, pixels):
    events = list(session.stream("<image> Stream", image=pixels, max_new_tokens=4))
    assert [e.index for e in events[:-1]] == [0, 1, 2, 3]
    assert all(e.token_id is not None and e.finish_reason is None for e in events[:-1])
    final = events[-1]
    assert final.token_id is None
    assert final.finish_reason is FinishReason.MAX_TOKENS
    assert "".join(e.text for e in events) == session.last_result.text


def test_stream_is_lazy(session, pixels):
    stream = session.stream("<image> Lazy", image=pixels, max_new_tokens=2)
    assert session.cache.current_length() == 0
    next(stream)
    assert session.cache.current_length() > 0
    stream.close()


def test_cancellation(session, pixels):
    cancel = CancellationToken()
    stream = session.stream("<image> Go on", image=pixels, max_new_tokens=20, cancel=cancel)
    first = next(stream)
    cancel.cancel()
    rest = list(stream)
    assert rest[-1].finish_reason is FinishReason.CANCELLED
    assert session.last_result.token_ids == [first.token_id]


def test_concurrent_use_is_rejected(session, pixels):
    stream = session.stream("<image> One", image=pixels, max_new_tokens=5)
    next(stream)
    with pytest.raises(SessionStateError):
        session.generate("<image> Two", image=pixels, max_new_tokens=2)
    with pytest.raises(SessionStateError):
        session.reset()
    stream.close()
    # Closing the stream early does not poison the session
    assert not session.poisoned
    session.generate("<image> Three", image=pixels, max_new_tokens=2)


def test_placeholder_mismatch_poisons_session(session, pixels, other_pixels):
    with pytest.raises(PlaceholderMismatchError):
        session.generate("<image> One placeholder", image=[pixels, other_pixels])
    assert session.poisoned
    assert session.cache.frozen

    with pytest.raises(SessionStateError):
        session.generate("<image> Again", image=pixels, max_new_tokens=2)

    session.reset()
    assert not session.poisoned
    session.generate("<image> Again", image=pixels, max_new_tokens=2)
    assert len(session.last_result.token_ids) == 2


def test_image_without_placeholder(session, pixels):
    with pytest.raises(PlaceholderMismatchError):
        session.generate("No placeholder here", image=pixels)


def test_empty_prompt(llava_handle, tokenizer):
    config = dataclasses.replace(llava_handle.config, prompt_template="{history}{prompt}")
    session = GenerationSession(dataclasses.replace(llava_handle, config=config), tokenizer)
    with pytest.raises(EmptyInputError):
        session.generate("")


def test_context_limit_plus_one(session, tokenizer):
    # Fill the context exactly one position past the limit
    overhead = len(tokenizer.encode(session.render_prompt("")))
    prompt = "x" * (MAX_CONTEXT + 1 - overhead)
    assert len(tokenizer.encode(session.render_prompt(prompt))) == MAX_CONTEXT + 1

    with pytest.raises(ContextLengthExceededError):
        session.generate(prompt, max_new_tokens=1)
    assert session.cache.current_length() == 0
    assert session.poisoned


def test_prompt_at_context_limit(session, tokenizer):
    overhead = len(tokenizer.encode(session.render_prompt("")))
    prompt = "x" * (MAX_CONTEXT - overhead)
    session.generate(prompt, max_new_tokens=5)
    assert session.last_result.finish_reason is FinishReason.CONTEXT_LENGTH
    assert len(session.last_result.token_ids) == 1


def test_multi_turn_history(session, tokenizer, pixels):
    session.generate("<image>", image=pixels, max_new_tokens=2)
    first_prompt_tokens = session.last_result.prompt_tokens
    session.generate("More?", max_new_tokens=2)

    assert len(session.history) == 2
    rendered = session.render_prompt("x")
    assert rendered.startswith("USER: <image>\nASSISTANT: ")
    # Previous turns, their image included, are part of the new prompt
    assert session.last_result.prompt_tokens > first_prompt_tokens


def test_smolvlm_session(smolvlm_handle, tokenizer, pixels):
    session = GenerationSession(smolvlm_handle, tokenizer)
    tokens = tokenizer.encode(session.render_prompt("<image> Hi"))
    session.generate("<image> Hi", image=pixels, max_new_tokens=3)
    # Each placeholder becomes boundary + image_seq_len placeholders + boundary
    assert session.last_result.prompt_tokens == len(tokens) - 1 + 4 + 2
    assert len(session.last_result.token_ids) == 3


def _favour_token(monkeypatch, handle, token_id):
    """Make ``token_id`` the argmax of every forward pass."""
    forward_step = handle.architecture.forward_step

    def favoured(embeddings, cache):
        logits = forward_step(embeddings, cache).clone()
        logits[..., token_id] = logits.max() + 50.0
        return logits

    monkeypatch.setattr(handle.architecture, "forward_step", favoured)


def test_generated_placeholders_do_not_break_history(monkeypatch, tokenizer, pixels):
    handle = tiny_handle("llava")
    _favour_token(monkeypatch, handle, IMAGE_TOKEN_ID)
    session = GenerationSession(handle, tokenizer)

    session.generate("<image> Hi", image=pixels, max_new_tokens=3)
    assert IMAGE_TOKEN_ID not in session.last_result.token_ids
    assert len(session.last_result.token_ids) == 3

    session.generate("And now?", max_new_tokens=3)
    assert not session.poisoned
    assert len(session.last_result.token_ids) == 3


def test_response_text_resembling_a_placeholder(session, tokenizer, pixels):
    response_ids = [tokenizer.token_id(ch) for ch in "<image>"]
    assert tokenizer.decode(response_ids) == "<image>"
    session.history.append(Turn(
        prompt="<image> Hi", images=[pixels], response="<image>", response_ids=response_ids,
    ))

    # The response is spliced as byte tokens, not re-encoded into a placeholder
    assert session.prompt_token_ids("Next").count(IMAGE_TOKEN_ID) == 1
    session.generate("Next", max_new_tokens=2)
    assert len(session.last_result.token_ids) == 2


def test_boolean_stop_entries_are_not_token_ids(monkeypatch, tokenizer):
    handle = tiny_handle("llava")
    _favour_token(monkeypatch, handle, 1)
    session = GenerationSession(handle, tokenizer)

    session.generate("Hi", max_new_tokens=2, stop=[True])
    assert session.last_result.token_ids == [1, 1]
    assert session.last_result.finish_reason is FinishReason.MAX_TOKENS
