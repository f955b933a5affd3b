"""
Encoder configuration: dataclass defaults, YAML loading and validation.

Everything here is fixed when an encoder is built; nothing is re-read per call.
"""
import logging
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from cliptensors.data.image_decoders import IMAGE_BACKENDS
from cliptensors.data.image_normalizer import CLIP_MEAN, CLIP_STD
from cliptensors.data.text_tokens import CONTEXT_LENGTH, TOKENIZER_BACKENDS
from cliptensors.errors import ConfigError

logger = logging.getLogger(__name__)


@dataclass
class EncoderConfig:
    visual_model: Optional[str] = None          # ONNX image tower
    textual_model: Optional[str] = None         # ONNX text tower
    image_size: int = 224                       # used when the model's spatial dims are dynamic
    context_length: int = CONTEXT_LENGTH
    dtype: Optional[str] = None                 # None: take it from the model input
    image_backend: str = "pil"
    tokenizer_backend: str = "open_clip"
    tokenizer_name: str = "openai/clip-vit-base-patch32"
    providers: List[str] = field(default_factory=lambda: ["CUDAExecutionProvider"])
    decode_workers: int = 0
    mean: List[float] = field(default_factory=lambda: list(CLIP_MEAN))
    std: List[float] = field(default_factory=lambda: list(CLIP_STD))

    def validate(self) -> "EncoderConfig":
        if self.image_size <= 0:
            raise ConfigError("image_size", f"must be positive, got {self.image_size}")
        if self.context_length <= 0:
            raise ConfigError("context_length", f"must be positive, got {self.context_length}")
        if self.decode_workers < 0:
            raise ConfigError("decode_workers", f"must be >= 0, got {self.decode_workers}")
        for name in ("mean", "std"):
            values = getattr(self, name)
            if len(values) != 3:
                raise ConfigError(name, f"needs 3 values (R, G, B), got {len(values)}")
        if any(s == 0 for s in self.std):
            raise ConfigError("std", "values must be non-zero")
        if self.image_backend.lower() not in IMAGE_BACKENDS:
            raise ConfigError("image_backend", f"unknown backend '{self.image_backend}'")
        if self.tokenizer_backend.lower() not in TOKENIZER_BACKENDS:
            raise ConfigError("tokenizer_backend", f"unknown backend '{self.tokenizer_backend}'")
        return self

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def config_from_dict(data: Dict[str, Any]) -> EncoderConfig:
    known = {f.name for f in fields(EncoderConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(unknown[0], f"unknown option (valid options: {sorted(known)})")
    return EncoderConfig(**data).validate()


def load_config(path: Union[str, Path], **overrides) -> EncoderConfig:
    """
    Load an ``EncoderConfig`` from YAML. Keyword overrides that are not None
    win over file values (this is how CLI flags are applied).
    """
    path = Path(path)
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError(str(path), "top level must be a mapping")
    data.update({k: v for k, v in overrides.items() if v is not None})
    cfg = config_from_dict(data)
    logger.info("Loaded encoder config from %s", path)
    return cfg
