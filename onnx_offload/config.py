"""Provider configuration.

Settings are a flat dataclass so they serialise to/from JSON unchanged.
Unknown keys in a file are ignored (forward compatible); invalid values are
rejected when the config is built.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .backends import BACKENDS
from .backends.base import SCRATCH_PARAM, Target
from .dispatch import BIND_MODES

LOGGER = logging.getLogger(__name__)

COMPILE_FAILURE_POLICIES = ("fallback", "raise")


@dataclass
class ProviderConfig:
    backend: str = "reference"
    device: str = "cpu"
    device_id: int = 0

    # How compiled parameters are tied to runtime tensors: "position" | "name"
    bind_by: str = "position"
    scratch_param: str = SCRATCH_PARAM
    name_prefix: str = "OffloadCluster"

    # None: everything the backend reports. Otherwise restrict to this list.
    supported_ops: Optional[List[str]] = None
    excluded_ops: List[str] = field(default_factory=list)

    # What the runner does with a cluster the backend rejects: keep it on the host, or abort.
    on_compile_failure: str = "fallback"

    # Write every cluster sub-model as <dump_dir>/<cluster>.onnx
    dump_dir: Optional[str] = None

    def __post_init__(self) -> None:
        if self.backend not in BACKENDS:
            raise ValueError(f"backend must be one of {BACKENDS}, got '{self.backend}'")
        if self.bind_by not in BIND_MODES:
            raise ValueError(f"bind_by must be one of {BIND_MODES}, got '{self.bind_by}'")
        if self.on_compile_failure not in COMPILE_FAILURE_POLICIES:
            raise ValueError(
                f"on_compile_failure must be one of {COMPILE_FAILURE_POLICIES}, got '{self.on_compile_failure}'"
            )
        if not self.name_prefix:
            raise ValueError("name_prefix must not be empty")
        # Validates device / device_id.
        self.target()

    def target(self) -> Target:
        return Target(device=self.device, device_id=int(self.device_id))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProviderConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(k for k in data if k not in known)
        if unknown:
            LOGGER.debug("Ignoring unknown config keys: %s", ", ".join(unknown))
        return cls(**{k: v for k, v in data.items() if k in known})


def load_config(path: Union[str, Path]) -> ProviderConfig:
    """Read a JSON config file merged over the defaults."""
    p = Path(path)
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ValueError(f"Config file {p} is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ValueError(f"Config file {p}: root is not an object")
    return ProviderConfig.from_dict(data)


def save_config(config: ProviderConfig, path: Union[str, Path]) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    tmp = p.with_suffix(p.suffix + ".tmp")

    # Atomic write
    tmp.write_text(json.dumps(config.to_dict(), indent=2, sort_keys=True), encoding="utf-8")
    os.replace(tmp, p)
