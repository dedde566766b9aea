import json
import os

import numpy as np
import pytest
import torch
from PIL import Image

from tests.conftest import tiny_config_dict
from vlm.errors import ModelConfigError
from vlm.loader import CONFIG_FILENAME, WEIGHTS_FILENAME, load_model, save_model
from vlm.preprocess import ImagePreprocessor


def test_save_and_load_round_trip(tmp_path, llava_handle, pixels):
    model_dir = str(tmp_path / "model")
    save_model(llava_handle, model_dir)
    assert os.path.exists(os.path.join(model_dir, CONFIG_FILENAME))
    assert os.path.exists(os.path.join(model_dir, WEIGHTS_FILENAME))

    loaded = load_model(model_dir)
    assert loaded.config == llava_handle.config
    assert loaded.num_parameters == llava_handle.num_parameters
    assert not any(p.requires_grad for p in loaded.architecture.parameters())
    assert torch.allclose(
        loaded.architecture.encode_vision(pixels),
        llava_handle.architecture.encode_vision(pixels),
    )


def test_missing_config(tmp_path):
    with pytest.raises(ModelConfigError):
        load_model(str(tmp_path))


def test_missing_weights(tmp_path, llava_handle):
    model_dir = str(tmp_path / "model")
    save_model(llava_handle, model_dir)
    os.remove(os.path.join(model_dir, WEIGHTS_FILENAME))
    with pytest.raises(ModelConfigError) as exc_info:
        load_model(model_dir)
    assert WEIGHTS_FILENAME in str(exc_info.value)


def test_weights_for_another_architecture(tmp_path, llava_handle):
    model_dir = str(tmp_path / "model")
    save_model(llava_handle, model_dir)
    with open(os.path.join(model_dir, CONFIG_FILENAME), "w") as f:
        json.dump(tiny_config_dict("smolvlm"), f)
    with pytest.raises(ModelConfigError):
        load_model(model_dir)


@pytest.mark.parametrize("architecture", ["llava", "smolvlm"])
def test_preprocess_matches_encoder_input(architecture, llava_handle, smolvlm_handle):
    handle = llava_handle if architecture == "llava" else smolvlm_handle
    rng = np.random.default_rng(0)
    image = Image.fromarray(rng.integers(0, 256, size=(50, 70, 3), dtype=np.uint8))

    pixels = ImagePreprocessor(handle.config)(image)
    assert list(pixels.shape) == [3, 32, 32]
    assert pixels.dtype == torch.float32
    embeddings = handle.architecture.encode_vision(pixels)
    assert embeddings.shape == (handle.config.image_seq_len, 32)
