# visual_loader.py
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Sequence

import numpy as np

from cliptensors.config import EncoderConfig
from cliptensors.data.image_decoders import ImageDecoder, ImageSource, PilImageDecoder, build_image_decoder
from cliptensors.data.image_normalizer import CLIP_MEAN, CLIP_STD, ImageNormalizer
from cliptensors.data.numeric import DTypeLike, resolve_dtype
from cliptensors.data.tensors import assemble_batch, split_batch
from cliptensors.errors import EngineContractViolation, ShapeMismatch
from cliptensors.models.vl.engine import InferenceEngine, OnnxEngine

logger = logging.getLogger(__name__)


class VisualEncoder:
    """
    Image tower: decode -> resize -> normalize (CHW) -> [N, 3, S, S] batch ->
    engine -> one embedding per image, in input order.
    """

    def __init__(self,
                 engine: InferenceEngine,
                 decoder: Optional[ImageDecoder] = None,
                 dtype: Optional[DTypeLike] = None,
                 input_name: Optional[str] = None,
                 output_name: Optional[str] = None,
                 image_size: int = 224,
                 mean: Sequence[float] = CLIP_MEAN,
                 std: Sequence[float] = CLIP_STD,
                 decode_workers: int = 0):
        self.engine = engine
        meta = engine.input_meta(input_name)
        self.output_name = engine.output_meta(output_name).name
        self.input_name = meta.name

        if meta.rank != 4 or meta.shape[2] != meta.shape[3]:
            raise ShapeMismatch(
                f"Unexpected input dimensions {meta.shape} (expected [N, 3, S, S] with height == width)")
        if meta.shape[1] not in (None, 3):
            raise ShapeMismatch(f"Expected 3 input channels, model declares {meta.shape[1]}")
        self.input_size = meta.shape[2] if meta.shape[2] is not None else int(image_size)

        if dtype is not None and meta.dtype is not None and resolve_dtype(dtype) != meta.dtype:
            raise EngineContractViolation(
                f"Configured dtype {resolve_dtype(dtype)} but model input '{meta.name}' is {meta.dtype}")
        if dtype is None:
            dtype = meta.dtype if meta.dtype is not None else np.float32

        self.normalizer = ImageNormalizer(self.input_size, dtype, mean=mean, std=std)
        self.dtype = self.normalizer.dtype
        self.decoder = decoder if decoder is not None else PilImageDecoder()
        self.decode_workers = int(decode_workers)
        self._lock = threading.Lock()

        logger.info("Visual inference ready: input '%s' %dx%d, dtype %s, decoder %s",
                    self.input_name, self.input_size, self.input_size, self.dtype, self.decoder.name)

    def preprocess(self, source: ImageSource) -> np.ndarray:
        """One source -> (3, S, S) tensor in the encoder's dtype."""
        return self.normalizer.normalize(self.decoder.load(source, self.input_size))

    def _preprocess_all(self, sources: List[ImageSource]) -> List[np.ndarray]:
        if self.decode_workers > 0 and len(sources) > 1:
            # map() yields in input order and re-raises the first failing item
            with ThreadPoolExecutor(max_workers=self.decode_workers) as pool:
                return list(pool.map(self.preprocess, sources))
        return [self.preprocess(s) for s in sources]

    def encode(self, sources: Sequence[ImageSource]) -> List[np.ndarray]:
        sources = list(sources)
        if not sources:
            return []

        tensors = self._preprocess_all(sources)
        batch = assemble_batch(tensors, self.normalizer.output_shape, dtype=self.dtype)
        logger.debug("Encoding %d images, batch shape %s", batch.batch_size, batch.shape)

        with self._lock:
            name, output = self.engine.run(self.input_name, batch.as_array(), self.output_name)
        return split_batch(output, len(sources), name=name)

    __call__ = encode


def build_visual_encoder(config: EncoderConfig, engine: Optional[InferenceEngine] = None) -> VisualEncoder:
    if engine is None:
        if not config.visual_model:
            raise ValueError("config.visual_model is not set")
        engine = OnnxEngine.load(config.visual_model, config.providers)
    return VisualEncoder(
        engine,
        decoder=build_image_decoder(config.image_backend),
        dtype=config.dtype,
        image_size=config.image_size,
        mean=config.mean,
        std=config.std,
        decode_workers=config.decode_workers,
    )
