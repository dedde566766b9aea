import pytest
import torch

from vlm.errors import InvalidSamplingConfigError
from vlm.sampling import (
    Sampler,
    SamplingConfig,
    apply_repetition_penalty,
    top_k_filter,
    top_p_filter,
)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"temperature": 0.0},
        {"temperature": -1.0},
        {"top_p": 0.0},
        {"top_p": 1.5},
        {"top_k": -1},
        {"repetition_penalty": 0.0},
    ],
)
def test_invalid_configs(kwargs):
    with pytest.raises(InvalidSamplingConfigError):
        SamplingConfig(**kwargs)


def test_greedy_picks_argmax():
    logits = torch.tensor([0.1, 2.0, 1.9, -3.0])
    assert Sampler(SamplingConfig.greedy_decoding()).sample(logits) == 1


def test_tiny_temperature_matches_greedy():
    generator = torch.Generator().manual_seed(0)
    logits = torch.randn(100, generator=generator)
    sampler = Sampler(SamplingConfig(greedy=False, temperature=1e-4, seed=3))
    expected = int(torch.argmax(logits))
    assert all(sampler.sample(logits) == expected for _ in range(20))


@pytest.mark.parametrize("temperature", [1e-40, 1e-300])
def test_vanishing_temperature_does_not_overflow(temperature):
    sampler = Sampler(SamplingConfig(greedy=False, temperature=temperature, seed=0))
    assert sampler.sample(torch.tensor([3.0, 1.0, -2.0])) == 0
    assert sampler.sample(torch.tensor([-5.0, 80.0, 79.0]), previous_tokens=[0]) == 1


def test_seeded_sampling_is_reproducible():
    logits = torch.zeros(50)
    config = SamplingConfig(greedy=False, temperature=1.0, seed=42)
    sampler_a, sampler_b = Sampler(config), Sampler(config)
    draws_a = [sampler_a.sample(logits) for _ in range(10)]
    draws_b = [sampler_b.sample(logits) for _ in range(10)]
    assert draws_a == draws_b
    assert len(set(draws_a)) > 1


def test_top_k_restricts_candidates():
    logits = torch.tensor([5.0, 4.0, 3.0, 2.0, 1.0])
    filtered = top_k_filter(logits, 2)
    assert torch.isfinite(filtered).tolist() == [True, True, False, False, False]

    sampler = Sampler(SamplingConfig(greedy=False, top_k=2, seed=0))
    assert {sampler.sample(logits) for _ in range(50)} <= {0, 1}


def test_top_p_keeps_smallest_nucleus():
    probs = torch.tensor([0.5, 0.3, 0.15, 0.05])
    filtered = top_p_filter(probs.log(), 0.7)
    assert torch.isfinite(filtered).tolist() == [True, True, False, False]

    # The most likely token survives even a tiny threshold
    filtered = top_p_filter(probs.log(), 0.01)
    assert torch.isfinite(filtered).tolist() == [True, False, False, False]


def test_repetition_penalty():
    logits = torch.tensor([2.0, -2.0, 1.0])
    penalized = apply_repetition_penalty(logits, [0, 1, 1], 2.0)
    assert penalized.tolist() == [1.0, -4.0, 1.0]
    # Input is not modified in place
    assert logits.tolist() == [2.0, -2.0, 1.0]

    sampler = Sampler(SamplingConfig(greedy=True, repetition_penalty=4.0))
    assert sampler.sample(torch.tensor([2.0, 1.0]), previous_tokens=[0]) == 1
