# textual_loader.py
import logging
import threading
from typing import List, Optional, Sequence

import numpy as np

from cliptensors.config import EncoderConfig
from cliptensors.data.tensors import assemble_batch, split_batch
from cliptensors.data.text_tokens import CONTEXT_LENGTH, Tokenizer, build_token_sequence, build_tokenizer
from cliptensors.errors import EngineContractViolation, ShapeMismatch
from cliptensors.models.vl.engine import InferenceEngine, OnnxEngine

logger = logging.getLogger(__name__)


class TextualEncoder:
    """Text tower: tokenize -> pad/truncate to L -> [N, L] batch -> engine -> embeddings."""

    def __init__(self,
                 engine: InferenceEngine,
                 tokenizer: Tokenizer,
                 context_length: int = CONTEXT_LENGTH,
                 input_name: Optional[str] = None,
                 output_name: Optional[str] = None):
        self.engine = engine
        self.tokenizer = tokenizer
        meta = engine.input_meta(input_name)
        self.output_name = engine.output_meta(output_name).name
        self.input_name = meta.name

        if meta.rank != 2 or meta.shape[1] != context_length:
            raise ShapeMismatch(
                f"Unexpected input dimensions {meta.shape} (expected [N, {context_length}])")
        self.context_length = int(context_length)

        # int32 ids unless the exported graph asks for another integer type
        if meta.dtype is not None and meta.dtype.kind in "iu":
            # CLIP vocab ids (sot/eot = 49406/49407) need at least 32 bits
            if meta.dtype.itemsize < 4:
                raise EngineContractViolation(
                    f"Model input '{meta.name}' is {meta.dtype}, too narrow for token ids (need >= 32 bits)")
            self.token_dtype = meta.dtype
        else:
            self.token_dtype = np.dtype(np.int32)
        self._lock = threading.Lock()

        logger.info("Textual inference ready: input '%s', context length %d, dtype %s",
                    self.input_name, self.context_length, self.token_dtype)

    def tokenize(self, text: str) -> np.ndarray:
        ids = build_token_sequence(self.tokenizer.encode(text),
                                   self.tokenizer.sot_token,
                                   self.tokenizer.eot_token,
                                   self.context_length)
        return np.asarray(ids, dtype=self.token_dtype)

    def encode(self, texts: Sequence[str]) -> List[np.ndarray]:
        if isinstance(texts, str):
            raise TypeError("encode() takes a sequence of strings, not a single string")
        texts = list(texts)
        if not texts:
            return []

        tokens = [self.tokenize(t) for t in texts]
        batch = assemble_batch(tokens, (self.context_length,), dtype=self.token_dtype)
        logger.debug("Encoding %d texts, batch shape %s", batch.batch_size, batch.shape)

        with self._lock:
            name, output = self.engine.run(self.input_name, batch.as_array(), self.output_name)
        return split_batch(output, len(texts), name=name)

    __call__ = encode


def build_textual_encoder(config: EncoderConfig,
                          engine: Optional[InferenceEngine] = None,
                          tokenizer: Optional[Tokenizer] = None) -> TextualEncoder:
    if engine is None:
        if not config.textual_model:
            raise ValueError("config.textual_model is not set")
        engine = OnnxEngine.load(config.textual_model, config.providers)
    if tokenizer is None:
        name = config.tokenizer_name if config.tokenizer_backend.lower() == "hf" else None
        tokenizer = build_tokenizer(config.tokenizer_backend, name)
    return TextualEncoder(engine, tokenizer, context_length=config.context_length)
