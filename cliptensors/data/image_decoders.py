import io
import glob
import logging
import os
from typing import Dict, List, Tuple, Type, Union

import numpy as np
import torch
import torchvision.transforms.functional as TF
from PIL import Image
from torchvision.io import ImageReadMode, decode_image, read_file
from torchvision.transforms import InterpolationMode

from cliptensors.errors import ImageDecodeError

logger = logging.getLogger(__name__)

ImageSource = Union[str, os.PathLike, bytes, bytearray, memoryview]

IMAGE_EXTS = (".png", ".jpg", ".jpeg", ".bmp", ".gif", ".webp")


def _describe(source) -> str:
    if isinstance(source, (bytes, bytearray, memoryview)):
        return f"<{len(source)} bytes>"
    return str(source)


def _check_source(source):
    if not isinstance(source, (str, os.PathLike, bytes, bytearray, memoryview)):
        raise TypeError(f"Unsupported image source type: {type(source).__name__}")
    if isinstance(source, (str, os.PathLike)) and not os.path.isfile(source):
        raise ImageDecodeError(f"Image not found: {source}")


class ImageDecoder:
    """
    Decode + resize capability. A pixel grid is a (H, W, 3) uint8 RGB array;
    alpha is always dropped.
    """
    name: str = None

    def decode(self, source: ImageSource) -> np.ndarray:
        raise NotImplementedError

    def resize(self, grid: np.ndarray, size: int) -> np.ndarray:
        raise NotImplementedError

    def load(self, source: ImageSource, size: int = 224) -> np.ndarray:
        return self.resize(self.decode(source), size)


class PilImageDecoder(ImageDecoder):
    """Pillow backend, Lanczos resampling."""
    name = "pil"

    def decode(self, source: ImageSource) -> np.ndarray:
        _check_source(source)
        fp = io.BytesIO(bytes(source)) if isinstance(source, (bytes, bytearray, memoryview)) else source
        try:
            with Image.open(fp) as img:
                return np.asarray(img.convert("RGB"), dtype=np.uint8)
        except (OSError, ValueError, Image.DecompressionBombError) as exc:
            raise ImageDecodeError(f"Could not decode image {_describe(source)}: {exc}") from exc

    def resize(self, grid: np.ndarray, size: int) -> np.ndarray:
        img = Image.fromarray(np.ascontiguousarray(grid, dtype=np.uint8))
        if img.size != (size, size):
            img = img.resize((size, size), Image.Resampling.LANCZOS)
        return np.asarray(img, dtype=np.uint8)


class TorchvisionImageDecoder(ImageDecoder):
    """
    torchvision.io backend, antialiased bicubic resampling.

    ``read_file``/``decode_image`` are deprecated in favour of TorchCodec
    from torchvision 0.29 on and emit a DeprecationWarning there; the
    dependency is pinned below 0.29 in pyproject.toml.
    """
    name = "torchvision"

    def decode(self, source: ImageSource) -> np.ndarray:
        _check_source(source)
        try:
            if isinstance(source, (bytes, bytearray, memoryview)):
                data = torch.frombuffer(bytearray(source), dtype=torch.uint8)
            else:
                data = read_file(os.fspath(source))
            chw = decode_image(data, mode=ImageReadMode.RGB)
        except (RuntimeError, OSError, ValueError) as exc:
            raise ImageDecodeError(f"Could not decode image {_describe(source)}: {exc}") from exc
        if chw.ndim == 4:
            chw = chw[0]  # first frame of animated images
        return chw.permute(1, 2, 0).contiguous().numpy()

    def resize(self, grid: np.ndarray, size: int) -> np.ndarray:
        grid = np.asarray(grid, dtype=np.uint8)
        if grid.shape[:2] == (size, size):
            return grid
        x = torch.from_numpy(np.ascontiguousarray(grid)).permute(2, 0, 1).float()
        x = TF.resize(x, [size, size], interpolation=InterpolationMode.BICUBIC, antialias=True)
        x = x.round().clamp(0, 255).to(torch.uint8)
        return x.permute(1, 2, 0).contiguous().numpy()


IMAGE_BACKENDS: Dict[str, Type[ImageDecoder]] = {
    PilImageDecoder.name: PilImageDecoder,
    TorchvisionImageDecoder.name: TorchvisionImageDecoder,
}


def build_image_decoder(backend: str = "pil") -> ImageDecoder:
    try:
        cls = IMAGE_BACKENDS[backend.lower()]
    except KeyError:
        raise ValueError(f"Unknown image backend '{backend}'. Choose from {sorted(IMAGE_BACKENDS)}")
    logger.debug("Using %s image decoder", cls.name)
    return cls()


def collect_image_paths(root: str, exts: Tuple[str, ...] = IMAGE_EXTS) -> List[str]:
    """
    Expand ``root`` into image files. A file is returned as-is; a directory is
    scanned recursively. Results are sorted so batch order is reproducible.
    """
    if os.path.isfile(root):
        return [root]
    if not os.path.isdir(root):
        raise FileNotFoundError(f"No such image file or directory: {root}")

    paths = []
    for p in glob.glob(os.path.join(root, "**", "*"), recursive=True):
        if os.path.isfile(p) and p.lower().endswith(exts):
            paths.append(p)
    return sorted(paths)
