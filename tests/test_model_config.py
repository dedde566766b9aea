import pytest

from tests.conftest import tiny_config_dict
from vlm.errors import ModelConfigError
from vlm.model_config import ModelConfig


def test_defaults_per_architecture():
    llava = ModelConfig.from_dict(tiny_config_dict("llava"))
    assert llava.placeholder_mode == "region"
    assert llava.eos_token_id == [257]
    assert llava.image_seq_len == 16
    assert llava.max_context_length == 128
    assert llava.text.num_key_value_heads == 2
    assert llava.text.head_dim == 8

    smol = ModelConfig.from_dict(tiny_config_dict("smolvlm"))
    assert smol.placeholder_mode == "per_patch"
    assert smol.image_seq_len == 4


def test_missing_fields_are_listed():
    data = tiny_config_dict()
    del data["text_config"]["vocab_size"]
    del data["vision_config"]["patch_size"]
    del data["image_token_id"]
    with pytest.raises(ModelConfigError) as exc_info:
        ModelConfig.from_dict(data)
    missing = exc_info.value.details["missing"]
    assert set(missing) == {"image_token_id", "text_config.vocab_size", "vision_config.patch_size"}


def test_unknown_keys_are_ignored():
    data = tiny_config_dict()
    data["torch_dtype"] = "float16"
    data["text_config"]["model_type"] = "llama"
    config = ModelConfig.from_dict(data)
    assert config.text.vocab_size == 260


def test_special_id_outside_vocab():
    data = tiny_config_dict()
    data["eos_token_id"] = [257, 999]
    with pytest.raises(ModelConfigError) as exc_info:
        ModelConfig.from_dict(data)
    assert exc_info.value.details["field"] == "eos_token_id[1]"


def test_inconsistent_dimensions():
    data = tiny_config_dict()
    data["text_config"]["num_attention_heads"] = 5
    with pytest.raises(ModelConfigError):
        ModelConfig.from_dict(data)

    data = tiny_config_dict("smolvlm")
    data["scale_factor"] = 3
    with pytest.raises(ModelConfigError):
        ModelConfig.from_dict(data)


def test_json_round_trip(tmp_path):
    config = ModelConfig.from_dict(tiny_config_dict("smolvlm"))
    path = str(tmp_path / "config.json")
    config.to_json_file(path)
    assert ModelConfig.from_json_file(path) == config
