import pytest
import torch

from vlm.errors import CacheOverflowError, CacheStateError, ShapeError
from vlm.kv_cache import KVCache


def _kv(n, heads=2, head_dim=4, value=1.0):
    return torch.full((heads, n, head_dim), value), torch.full((heads, n, head_dim), -value)


def _write_step(cache, n, value=1.0):
    for layer in range(cache.num_layers):
        k, v = _kv(n, cache.num_heads, cache.head_dim, value)
        if n == 1:
            cache.append(layer, k, v)
        else:
            cache.extend(layer, k, v)
    return cache.commit()


@pytest.fixture
def cache():
    return KVCache(num_layers=3, num_heads=2, head_dim=4, max_length=8)


def test_prefill_then_decode_lengths(cache):
    assert cache.current_length() == 0
    assert _write_step(cache, 5) == 5
    _write_step(cache, 1, value=2.0)
    _write_step(cache, 1, value=3.0)
    assert cache.current_length() == 7
    assert cache.remaining == 1

    keys, values = cache.layer(2)
    assert keys.shape == (2, 7, 4)
    assert torch.all(keys[:, 5] == 2.0)
    assert torch.all(values[:, 6] == -3.0)


def test_length_only_advances_on_commit(cache):
    k, v = _kv(3)
    cache.extend(0, k, v)
    cache.extend(1, k, v)
    assert cache.current_length() == 0
    # Staged positions are visible to the layer that wrote them
    assert cache.layer(0)[0].shape[1] == 3
    assert cache.layer(2)[0].shape[1] == 0


def test_uneven_layers_cannot_commit(cache):
    k, v = _kv(2)
    cache.extend(0, k, v)
    cache.extend(1, k, v)
    with pytest.raises(CacheStateError):
        cache.commit()
    assert cache.current_length() == 0


def test_layer_written_twice_in_one_step(cache):
    k, v = _kv(1)
    cache.append(0, k, v)
    with pytest.raises(CacheStateError):
        cache.append(0, k, v)


def test_append_requires_single_position(cache):
    k, v = _kv(2)
    with pytest.raises(ShapeError):
        cache.append(0, k, v)


def test_wrong_head_layout(cache):
    k, v = _kv(1, heads=3)
    with pytest.raises(ShapeError):
        cache.append(0, k, v)


def test_overflow(cache):
    _write_step(cache, 8)
    assert cache.is_full
    k, v = _kv(1)
    with pytest.raises(CacheOverflowError) as exc_info:
        cache.append(0, k, v)
    assert exc_info.value.details["max_length"] == 8
    assert cache.current_length() == 8


def test_freeze_and_reset(cache):
    _write_step(cache, 4)
    k, v = _kv(1)
    cache.append(0, k, v)
    cache.freeze()
    assert cache.frozen
    assert cache.current_length() == 4
    with pytest.raises(CacheStateError):
        cache.append(0, k, v)

    cache.reset()
    assert not cache.frozen
    assert cache.current_length() == 0
    assert _write_step(cache, 1) == 1


def test_nbytes():
    cache = KVCache(num_layers=2, num_heads=2, head_dim=4, max_length=8, dtype=torch.float16)
    assert cache.nbytes == 2 * 2 * 2 * 8 * 4 * 2
