from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest
import torch
import torch.nn as nn

from cliptensors.config import EncoderConfig
from cliptensors.data.image_decoders import TorchvisionImageDecoder
from cliptensors.errors import EngineContractViolation, ImageDecodeError, ShapeMismatch, UnsupportedNumericType
from cliptensors.models.vl.engine import TensorMeta, TorchModuleEngine
from cliptensors.models.vl.visual_loader import VisualEncoder, build_visual_encoder
from conftest import FakeVisualEngine, SlowVisualEngine, png_bytes


def test_encode_preserves_order(fake_visual_engine, image_files):
    red, green, blue = image_files
    enc = VisualEncoder(fake_visual_engine)
    out = enc.encode([green, red, blue, green])

    assert len(out) == 4
    # the fake engine returns per-channel means, so the dominant channel tags each image
    assert [int(np.argmax(v)) for v in out] == [1, 0, 2, 1]
    np.testing.assert_array_equal(out[0], out[3])
    assert fake_visual_engine.calls == [("pixel_values", (4, 3, 224, 224), np.dtype(np.float32))]


def test_red_image_values(fake_visual_engine, image_files):
    (vec,) = VisualEncoder(fake_visual_engine).encode(image_files[:1])
    assert vec[0] == pytest.approx(1.93033, abs=1e-3)


def test_bytes_sources(fake_visual_engine):
    out = VisualEncoder(fake_visual_engine).encode([png_bytes((0, 0, 255)), png_bytes((255, 0, 0))])
    assert [int(np.argmax(v)) for v in out] == [2, 0]


def test_empty_batch_skips_engine(fake_visual_engine):
    assert VisualEncoder(fake_visual_engine).encode([]) == []
    assert fake_visual_engine.calls == []


def test_decode_failure_aborts_batch(fake_visual_engine, image_files):
    enc = VisualEncoder(fake_visual_engine)
    with pytest.raises(ImageDecodeError):
        enc.encode([image_files[0], b"garbage", image_files[1]])
    assert fake_visual_engine.calls == []


@pytest.mark.parametrize("shape", [
    (None, 3, 224),
    (None, 3, 224, 224, 1),
    (None, 3, 224, 256),
    (None, 1, 224, 224),
])
def test_construction_rejects_bad_input_shape(shape):
    with pytest.raises(ShapeMismatch):
        VisualEncoder(FakeVisualEngine(shape=shape))


def test_dynamic_spatial_dims_use_configured_size(image_files):
    engine = FakeVisualEngine(shape=(None, 3, None, None))
    enc = VisualEncoder(engine, image_size=32)
    assert enc.input_size == 32
    enc.encode(image_files[:2])
    assert engine.calls[0][1] == (2, 3, 32, 32)


@pytest.mark.parametrize("dtype", [np.float16, np.int8])
def test_dtype_taken_from_engine(dtype, image_files):
    engine = FakeVisualEngine(dtype=dtype)
    enc = VisualEncoder(engine)
    assert enc.dtype == np.dtype(dtype)
    enc.encode(image_files[:1])
    assert engine.calls[0][2] == np.dtype(dtype)


def test_configured_dtype_when_engine_is_silent(image_files):
    engine = FakeVisualEngine(dtype=None)
    VisualEncoder(engine, dtype="int8").encode(image_files[:1])
    assert engine.calls[0][2] == np.int8


def test_conflicting_dtype():
    with pytest.raises(EngineContractViolation):
        VisualEncoder(FakeVisualEngine(dtype=np.float32), dtype="float16")


def test_unsupported_dtype_at_construction():
    with pytest.raises(UnsupportedNumericType):
        VisualEncoder(FakeVisualEngine(dtype=None), dtype=np.complex64)


def test_unknown_input_name():
    with pytest.raises(EngineContractViolation):
        VisualEncoder(FakeVisualEngine(), input_name="images")


def test_wrong_output_row_count(image_files):
    class ShortEngine(FakeVisualEngine):
        def run(self, input_name, tensor, output_name=None):
            name, out = super().run(input_name, tensor, output_name)
            return name, out[:1]

    with pytest.raises(EngineContractViolation):
        VisualEncoder(ShortEngine()).encode(image_files)


def test_parallel_decode_matches_sequential(image_files):
    seq = VisualEncoder(FakeVisualEngine()).encode(image_files * 2)
    par = VisualEncoder(FakeVisualEngine(), decode_workers=3).encode(image_files * 2)
    for a, b in zip(seq, par):
        np.testing.assert_array_equal(a, b)


def test_parallel_decode_still_fails_fast(image_files):
    enc = VisualEncoder(FakeVisualEngine(), decode_workers=2)
    with pytest.raises(ImageDecodeError):
        enc.encode([image_files[0], b"garbage"])


def test_torchvision_decoder(image_files):
    out = VisualEncoder(FakeVisualEngine(), decoder=TorchvisionImageDecoder()).encode(image_files)
    assert [int(np.argmax(v)) for v in out] == [0, 1, 2]


def test_end_to_end_with_torch_module(image_files):
    torch.manual_seed(0)
    module = nn.Sequential(nn.Flatten(), nn.Linear(3 * 8 * 8, 16))
    engine = TorchModuleEngine(module, TensorMeta("pixel_values", (None, 3, 8, 8), np.dtype(np.float32)))
    out = VisualEncoder(engine).encode(image_files)
    assert len(out) == 3
    assert all(v.shape == (16,) for v in out)
    assert not np.allclose(out[0], out[1])


def test_build_visual_encoder_with_engine(image_files):
    cfg = EncoderConfig(image_backend="torchvision", dtype="float32")
    enc = build_visual_encoder(cfg, engine=FakeVisualEngine())
    assert isinstance(enc.decoder, TorchvisionImageDecoder)
    assert len(enc.encode(image_files)) == 3


def test_build_visual_encoder_requires_model():
    with pytest.raises(ValueError):
        build_visual_encoder(EncoderConfig())


def test_concurrent_encode_calls_are_serialized(image_files):
    red, green, blue = image_files
    engine = SlowVisualEngine()
    enc = VisualEncoder(engine)
    orders = [[red, green], [blue, red], [green, blue], [blue, green, red], [red], [green, green]]
    tags = {red: 0, green: 1, blue: 2}

    with ThreadPoolExecutor(max_workers=6) as pool:
        results = list(pool.map(enc.encode, orders))

    assert engine.tracker.max_active == 1
    assert len(engine.calls) == len(orders)
    for sources, out in zip(orders, results):
        assert [int(np.argmax(v)) for v in out] == [tags[s] for s in sources]
