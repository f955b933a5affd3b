import io
import sys
import threading
import time
from pathlib import Path

import numpy as np
import pytest
from PIL import Image

# Project root on sys.path so cliptensors / vl_backbones import without install
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from cliptensors.models.vl.engine import InferenceEngine, TensorMeta  # noqa: E402


class FakeVisualEngine(InferenceEngine):
    """Returns per-row channel means, so every output row is tagged by its image."""

    def __init__(self, shape=(None, 3, 224, 224), dtype=np.float32,
                 input_name="pixel_values", output_name="image_embeds"):
        self.inputs = [TensorMeta(input_name, tuple(shape), np.dtype(dtype) if dtype else None)]
        self.outputs = [TensorMeta(output_name, (None, 3), np.dtype(np.float32))]
        self.calls = []

    def run(self, input_name, tensor, output_name=None):
        self.calls.append((input_name, tensor.shape, tensor.dtype))
        return self.outputs[0].name, tensor.astype(np.float32).mean(axis=(2, 3))


class FakeTextEngine(InferenceEngine):
    """Echoes the token ids back as float rows."""

    def __init__(self, shape=(None, 77), dtype=np.int32,
                 input_name="input_ids", output_name="text_embeds"):
        self.inputs = [TensorMeta(input_name, tuple(shape), np.dtype(dtype) if dtype else None)]
        self.outputs = [TensorMeta(output_name, (None, shape[-1]), np.dtype(np.float32))]
        self.calls = []

    def run(self, input_name, tensor, output_name=None):
        self.calls.append((input_name, tensor.shape, tensor.dtype))
        return self.outputs[0].name, tensor.astype(np.float32)


class FakeTokenizer:
    """One token per character: ord(c)."""
    sot_token = 49406
    eot_token = 49407

    def encode(self, text):
        return [ord(c) for c in text]


def png_bytes(color, size=(64, 48), mode="RGB"):
    img = Image.new(mode, size, color)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def fake_visual_engine():
    return FakeVisualEngine()


@pytest.fixture
def fake_text_engine():
    return FakeTextEngine()


@pytest.fixture
def fake_tokenizer():
    return FakeTokenizer()


@pytest.fixture
def image_files(tmp_path):
    """Three solid-colour PNGs: red, green, blue."""
    paths = []
    for name, color in [("red", (255, 0, 0)), ("green", (0, 255, 0)), ("blue", (0, 0, 255))]:
        p = tmp_path / f"{name}.png"
        p.write_bytes(png_bytes(color))
        paths.append(str(p))
    return paths


class OverlapTracker:
    """Counts how many engine.run calls are in flight at once."""

    def __init__(self, delay=0.01):
        self.delay = delay
        self.active = 0
        self.max_active = 0
        self._guard = threading.Lock()

    def __enter__(self):
        with self._guard:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        time.sleep(self.delay)
        return self

    def __exit__(self, *exc):
        with self._guard:
            self.active -= 1
        return False


class SlowVisualEngine(FakeVisualEngine):
    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.tracker = OverlapTracker()

    def run(self, input_name, tensor, output_name=None):
        with self.tracker:
            return super().run(input_name, tensor, output_name)


class SlowTextEngine(FakeTextEngine):
    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.tracker = OverlapTracker()

    def run(self, input_name, tensor, output_name=None):
        with self.tracker:
            return super().run(input_name, tensor, output_name)
