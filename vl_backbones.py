# vl_backbones.py
import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np
import torch, torch.nn.functional as F

from cliptensors.config import EncoderConfig
from cliptensors.models.vl.textual_loader import TextualEncoder, build_textual_encoder
from cliptensors.models.vl.visual_loader import VisualEncoder, build_visual_encoder

logger = logging.getLogger(__name__)


@dataclass
class ClipPack:
    visual: Optional[VisualEncoder]     # images (paths or bytes) -> [N, D]
    textual: Optional[TextualEncoder]   # list[str] -> [N, D]
    name: str = "CLIP"

    def encode_image(self, sources: Sequence, normalize: bool = True) -> np.ndarray:
        if self.visual is None:
            raise ValueError(f"{self.name} has no visual model loaded")
        return self._stack(self.visual.encode(sources), normalize)

    def encode_text(self, texts: Sequence[str], normalize: bool = True) -> np.ndarray:
        if self.textual is None:
            raise ValueError(f"{self.name} has no textual model loaded")
        return self._stack(self.textual.encode(texts), normalize)

    @staticmethod
    def similarity(image_emb: np.ndarray, text_emb: np.ndarray) -> np.ndarray:
        """Cosine similarity [N_img, N_txt]."""
        a = ClipPack._l2norm(torch.from_numpy(np.asarray(image_emb, dtype=np.float32)))
        b = ClipPack._l2norm(torch.from_numpy(np.asarray(text_emb, dtype=np.float32)))
        return (a @ b.T).numpy()

    @staticmethod
    def _stack(vectors, normalize: bool) -> np.ndarray:
        if not vectors:
            return np.empty((0, 0), dtype=np.float32)
        z = np.stack(vectors).astype(np.float32)
        if normalize:
            z = ClipPack._l2norm(torch.from_numpy(z)).numpy()
        return z

    @staticmethod
    def _l2norm(x): return F.normalize(x, dim=-1)


def load_clip_pack(config: EncoderConfig, name: str = "CLIP") -> ClipPack:
    """Build whichever towers ``config`` names a model file for."""
    if not (config.visual_model or config.textual_model):
        raise ValueError("Set visual_model and/or textual_model")
    visual = build_visual_encoder(config) if config.visual_model else None
    textual = build_textual_encoder(config) if config.textual_model else None
    logger.info("%s ready (visual=%s, textual=%s)", name, visual is not None, textual is not None)
    return ClipPack(visual=visual, textual=textual, name=name)
