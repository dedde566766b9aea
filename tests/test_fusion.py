import pytest
import torch

from vlm.errors import EmptyInputError, PlaceholderMismatchError, ShapeError
from vlm.fusion import PlaceholderMode, embed_text, fuse

PLACEHOLDER = 9
HIDDEN = 4


def embed(ids):
    # Each token embeds to a row filled with its own id
    return ids.float().unsqueeze(-1).expand(-1, HIDDEN).clone()


def visual(n, value):
    return torch.full((n, HIDDEN), float(value))


def test_region_fusion_length_and_order():
    tokens = [1, 2, PLACEHOLDER, 3, PLACEHOLDER, 4]
    fused = fuse(tokens, [visual(5, -1), visual(3, -2)], embed, PLACEHOLDER)

    # len(text) - placeholders + sum(visual lengths)
    assert len(fused) == 6 - 2 + 5 + 3
    assert fused.image_spans == [(2, 7), (8, 11)]
    column = fused.embeddings[:, 0].tolist()
    assert column == [1, 2, -1, -1, -1, -1, -1, 3, -2, -2, -2, 4]
    assert fused.token_ids == tokens


def test_per_patch_fusion_keeps_length():
    tokens = [1, PLACEHOLDER, PLACEHOLDER, 2, PLACEHOLDER, PLACEHOLDER]
    fused = fuse(
        tokens, [visual(2, -1), visual(2, -2)], embed, PLACEHOLDER,
        mode=PlaceholderMode.PER_PATCH, tokens_per_image=2,
    )
    assert len(fused) == len(tokens)
    assert fused.embeddings[:, 0].tolist() == [1, -1, -1, 2, -2, -2]
    assert fused.image_spans == [(1, 3), (4, 6)]


def test_fusion_is_pure():
    tokens = [1, PLACEHOLDER, 2]
    images = [visual(3, -1)]
    first = fuse(tokens, images, embed, PLACEHOLDER)
    second = fuse(tokens, images, embed, PLACEHOLDER)
    assert torch.equal(first.embeddings, second.embeddings)


def test_one_placeholder_two_images():
    with pytest.raises(PlaceholderMismatchError) as exc_info:
        fuse([1, PLACEHOLDER, 2], [visual(3, -1), visual(3, -2)], embed, PLACEHOLDER)
    details = exc_info.value.details
    assert details["found"] == 1
    assert details["expected"] == 2
    assert details["num_images"] == 2


def test_per_patch_wrong_visual_length():
    with pytest.raises(PlaceholderMismatchError):
        fuse(
            [PLACEHOLDER, PLACEHOLDER, 1], [visual(3, -1)], embed, PLACEHOLDER,
            mode="per_patch", tokens_per_image=2,
        )


def test_empty_inputs():
    with pytest.raises(EmptyInputError):
        fuse([], [visual(3, -1)], embed, PLACEHOLDER)
    with pytest.raises(EmptyInputError):
        fuse([1, PLACEHOLDER], [], embed, PLACEHOLDER)
    with pytest.raises(EmptyInputError):
        fuse([1, PLACEHOLDER], [torch.zeros(0, HIDDEN)], embed, PLACEHOLDER)


def test_hidden_size_mismatch():
    with pytest.raises(ShapeError):
        fuse([1, PLACEHOLDER], [torch.zeros(3, HIDDEN + 1)], embed, PLACEHOLDER)


def test_embed_text():
    fused = embed_text([1, 2, 3], embed, PLACEHOLDER)
    assert len(fused) == 3
    assert fused.image_spans == []
    with pytest.raises(PlaceholderMismatchError):
        embed_text([1, PLACEHOLDER], embed, PLACEHOLDER)
    with pytest.raises(EmptyInputError):
        embed_text([], embed, PLACEHOLDER)
