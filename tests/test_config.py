import json
from pathlib import Path

import pytest

from onnx_offload.config import ProviderConfig, load_config, save_config


def test_config_defaults() -> None:
    cfg = ProviderConfig()
    assert cfg.backend == "reference"
    assert cfg.bind_by == "position"
    assert cfg.scratch_param == "scratch"
    assert cfg.on_compile_failure == "fallback"
    assert cfg.target().device == "cpu"


def test_config_roundtrip_save_load(tmp_path: Path) -> None:
    p = tmp_path / "cfg" / "offload.json"
    save_config(ProviderConfig(bind_by="name", excluded_ops=["Sigmoid"], name_prefix="Npu"), p)

    loaded = load_config(p)
    assert loaded.bind_by == "name"
    assert loaded.excluded_ops == ["Sigmoid"]
    assert loaded.name_prefix == "Npu"
    assert not list(p.parent.glob("*.tmp"))


def test_config_unknown_keys_are_ignored(tmp_path: Path) -> None:
    p = tmp_path / "offload.json"
    p.write_text(json.dumps({"device": "gpu", "device_id": 1, "future_knob": True}), encoding="utf-8")

    cfg = load_config(p)
    assert cfg.device == "gpu"
    assert cfg.target().device_id == 1


@pytest.mark.parametrize(
    "text",
    ["{not valid json", "[1, 2, 3]"],
)
def test_config_malformed_file_is_rejected(tmp_path: Path, text: str) -> None:
    p = tmp_path / "offload.json"
    p.write_text(text, encoding="utf-8")
    with pytest.raises(ValueError):
        load_config(p)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"backend": "tensorrt"},
        {"bind_by": "order"},
        {"on_compile_failure": "retry"},
        {"device": "npu"},
        {"device_id": -1},
        {"name_prefix": ""},
    ],
)
def test_config_invalid_values_are_rejected(kwargs) -> None:
    with pytest.raises(ValueError):
        ProviderConfig(**kwargs)
