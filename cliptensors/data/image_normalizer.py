# image_normalizer.py
from typing import Sequence

import numpy as np

from cliptensors.data.numeric import DTypeLike, converter_for
from cliptensors.errors import DimensionMismatch

# CLIP (OpenAI) statistics, channel order R, G, B
CLIP_MEAN = (0.48145466, 0.4578275, 0.40821073)
CLIP_STD = (0.26862954, 0.26130258, 0.27577711)


class ImageNormalizer:
    """
    Turns a resized (H, W, 3) uint8 pixel grid into a (3, H, W) CHW buffer:

        tensor[c, y, x] = convert((grid[y, x, c] / 255 - mean[c]) / std[c])

    All arithmetic happens in float32 before the conversion to ``dtype``.
    """

    def __init__(self,
                 size: int = 224,
                 dtype: DTypeLike = np.float32,
                 mean: Sequence[float] = CLIP_MEAN,
                 std: Sequence[float] = CLIP_STD):
        if len(mean) != 3 or len(std) != 3:
            raise ValueError("mean and std need one value per RGB channel")
        self.size = int(size)
        self.converter = converter_for(dtype)
        self.dtype = self.converter.dtype
        self._mean = np.asarray(mean, dtype=np.float32).reshape(3, 1, 1)
        self._std = np.asarray(std, dtype=np.float32).reshape(3, 1, 1)

    @property
    def output_shape(self):
        return (3, self.size, self.size)

    def normalize(self, grid: np.ndarray) -> np.ndarray:
        grid = np.asarray(grid)
        expected = (self.size, self.size, 3)
        if grid.shape != expected:
            raise DimensionMismatch(f"Pixel grid has shape {grid.shape}, expected {expected}")
        if grid.dtype != np.uint8:
            raise TypeError(f"Pixel grid must be uint8, got {grid.dtype}")

        chw = grid.transpose(2, 0, 1).astype(np.float32)
        samples = (chw / np.float32(255.0) - self._mean) / self._std
        return np.ascontiguousarray(self.converter.convert(samples))

    __call__ = normalize
