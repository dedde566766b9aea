# =============================================================================
# VLM Inference Engine - Embedding Fusion
# =============================================================================
# Splices visual embedding sequences into the text token stream in place of
# the placeholder token.  Two substitution conventions exist across VLM
# families and both are supported:
#
#   region     one placeholder per image, replaced by that image's whole
#              visual sequence (LLaVA's single ``<image>`` token)
#   per_patch  one placeholder per visual vector, ``tokens_per_image`` of
#              them per image (SmolVLM / Idefics expanded ``<image>`` runs)
#
# Fusion is a pure function: same inputs, same output, no retained state.
# =============================================================================

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Sequence, Tuple

import torch

from vlm.errors import EmptyInputError, PlaceholderMismatchError, ShapeError

logger = logging.getLogger(__name__)

# Maps a 1-D LongTensor of token ids to their (n, hidden) embeddings
EmbedFn = Callable[[torch.Tensor], torch.Tensor]


class PlaceholderMode(str, Enum):
    REGION = "region"
    PER_PATCH = "per_patch"


@dataclass
class FusedSequence:
    """
    Text and visual embeddings merged into one ordered sequence.

    Attributes:
        embeddings:  (length, hidden) tensor fed to the language model.
        token_ids:   Original text token ids (placeholders included).
        image_spans: ``[start, end)`` positions of each image's embeddings.
    """

    embeddings: torch.Tensor
    token_ids: List[int]
    image_spans: List[Tuple[int, int]]

    def __len__(self) -> int:
        return self.embeddings.shape[0]


def fuse(
    text_tokens: Sequence[int],
    visual_embeddings: Sequence[torch.Tensor],
    embed_tokens: EmbedFn,
    placeholder_id: int,
    mode: PlaceholderMode = PlaceholderMode.REGION,
    tokens_per_image: int = 1,
) -> FusedSequence:
    """
    Replace placeholder tokens with visual embeddings, preserving text order.

    Args:
        text_tokens:       Prompt token ids containing placeholder tokens.
        visual_embeddings: One (n_visual, hidden) tensor per image, in the
                           order the images appear in the prompt.
        embed_tokens:      Token embedding lookup of the language model.
        placeholder_id:    Id of the placeholder token.
        mode:              Substitution convention (see module header).
        tokens_per_image:  Placeholders per image in ``per_patch`` mode.

    Returns:
        FusedSequence of length
        ``len(text_tokens) - placeholders + sum(n_visual)`` for region mode;
        ``len(text_tokens)`` for per-patch mode.

    Raises:
        EmptyInputError:          If the text or any visual sequence is empty.
        PlaceholderMismatchError: If the placeholder count disagrees with the
                                  number of images for this mode.
        ShapeError:               On hidden-size mismatches.
    """
    mode = PlaceholderMode(mode)
    if len(text_tokens) == 0:
        raise EmptyInputError("Cannot fuse an empty text token sequence", text_length=0)
    if len(visual_embeddings) == 0:
        raise EmptyInputError(
            "Cannot fuse without visual embeddings; use embed_text for text-only prompts",
            num_images=0,
        )
    for i, visual in enumerate(visual_embeddings):
        if visual.dim() != 2 or visual.shape[0] == 0:
            raise EmptyInputError(
                f"Visual embedding sequence {i} is empty or not 2-D: {list(visual.shape)}",
                image_index=i,
                shape=list(visual.shape),
            )

    positions = [i for i, t in enumerate(text_tokens) if t == placeholder_id]
    num_images = len(visual_embeddings)
    per_image = 1 if mode is PlaceholderMode.REGION else tokens_per_image
    expected = num_images * per_image
    if len(positions) != expected:
        raise PlaceholderMismatchError(
            f"Found {len(positions)} placeholder token(s) (id={placeholder_id}) but "
            f"{num_images} image(s) in {mode.value} mode require {expected}",
            placeholder_id=placeholder_id,
            found=len(positions),
            expected=expected,
            num_images=num_images,
            mode=mode.value,
        )

    ids = torch.tensor(list(text_tokens), dtype=torch.long)
    text_embeds = embed_tokens(ids)
    hidden = text_embeds.shape[-1]
    for i, visual in enumerate(visual_embeddings):
        if visual.shape[-1] != hidden:
            raise ShapeError(
                f"Visual embedding {i} has hidden size {visual.shape[-1]}, "
                f"text embeddings have {hidden}",
                image_index=i,
                visual_shape=list(visual.shape),
                text_hidden_size=hidden,
            )

    if mode is PlaceholderMode.REGION:
        fused = _fuse_regions(text_embeds, positions, visual_embeddings)
    else:
        fused = _fuse_per_patch(text_embeds, positions, visual_embeddings, tokens_per_image)

    logger.debug(
        "Fused %d text tokens + %d image(s) -> %d positions (%s)",
        len(text_tokens), num_images, len(fused), mode.value,
    )
    return FusedSequence(embeddings=fused.embeddings, token_ids=list(text_tokens),
                         image_spans=fused.image_spans)


def _fuse_regions(text_embeds, positions, visual_embeddings) -> FusedSequence:
    pieces = []
    spans = []
    cursor = 0
    offset = 0
    for pos, visual in zip(positions, visual_embeddings):
        pieces.append(text_embeds[cursor:pos])
        offset += pos - cursor
        visual = visual.to(device=text_embeds.device, dtype=text_embeds.dtype)
        pieces.append(visual)
        spans.append((offset, offset + visual.shape[0]))
        offset += visual.shape[0]
        cursor = pos + 1
    pieces.append(text_embeds[cursor:])
    return FusedSequence(torch.cat(pieces, dim=0), [], spans)


def _fuse_per_patch(text_embeds, positions, visual_embeddings, tokens_per_image) -> FusedSequence:
    spans = []
    for i, visual in enumerate(visual_embeddings):
        if visual.shape[0] != tokens_per_image:
            raise PlaceholderMismatchError(
                f"Image {i} produced {visual.shape[0]} embeddings but "
                f"{tokens_per_image} placeholders are reserved per image",
                image_index=i,
                found=visual.shape[0],
                expected=tokens_per_image,
            )
        image_positions = positions[i * tokens_per_image:(i + 1) * tokens_per_image]
        spans.append((image_positions[0], image_positions[-1] + 1))

    fused = text_embeds.clone()
    index = torch.tensor(positions, dtype=torch.long, device=fused.device)
    visual = torch.cat(visual_embeddings, dim=0).to(device=fused.device, dtype=fused.dtype)
    fused[index] = visual
    return FusedSequence(fused, [], spans)


def embed_text(
    text_tokens: Sequence[int],
    embed_tokens: EmbedFn,
    placeholder_id: int,
) -> FusedSequence:
    """
    Embed a text-only prompt.

    Raises:
        EmptyInputError:          If the text is empty.
        PlaceholderMismatchError: If placeholders appear without any image.
    """
    if len(text_tokens) == 0:
        raise EmptyInputError("Cannot embed an empty text token sequence", text_length=0)
    found = sum(1 for t in text_tokens if t == placeholder_id)
    if found:
        raise PlaceholderMismatchError(
            f"Found {found} placeholder token(s) (id={placeholder_id}) but no image was supplied",
            placeholder_id=placeholder_id,
            found=found,
            expected=0,
            num_images=0,
        )
    ids = torch.tensor(list(text_tokens), dtype=torch.long)
    return FusedSequence(embeddings=embed_tokens(ids), token_ids=list(text_tokens), image_spans=[])
