# engine.py
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np
import onnxruntime as ort
import torch

from cliptensors.errors import EngineContractViolation

logger = logging.getLogger(__name__)

BASELINE_PROVIDER = "CPUExecutionProvider"

# onnxruntime NodeArg.type -> numpy
ONNX_DTYPES = {
    "tensor(float)": np.float32,
    "tensor(float16)": np.float16,
    "tensor(double)": np.float64,
    "tensor(int8)": np.int8,
    "tensor(uint8)": np.uint8,
    "tensor(int16)": np.int16,
    "tensor(int32)": np.int32,
    "tensor(int64)": np.int64,
}


@dataclass(frozen=True)
class TensorMeta:
    name: str
    shape: Tuple[Optional[int], ...]    # None marks a dynamic dimension
    dtype: Optional[np.dtype] = None

    @property
    def rank(self) -> int:
        return len(self.shape)


def _static_dim(dim) -> Optional[int]:
    # onnxruntime reports dynamic axes as None or a symbolic name ("batch_size")
    if isinstance(dim, (int, np.integer)) and dim > 0:
        return int(dim)
    return None


def meta_from_node(node) -> TensorMeta:
    dtype = ONNX_DTYPES.get(getattr(node, "type", None))
    return TensorMeta(
        name=node.name,
        shape=tuple(_static_dim(d) for d in (node.shape or ())),
        dtype=np.dtype(dtype) if dtype is not None else None,
    )


class InferenceEngine:
    """Black-box model: named input tensor in, named output tensor out."""
    inputs: List[TensorMeta]
    outputs: List[TensorMeta]

    def run(self, input_name: str, tensor: np.ndarray,
            output_name: Optional[str] = None) -> Tuple[str, np.ndarray]:
        raise NotImplementedError

    def input_meta(self, name: Optional[str] = None) -> TensorMeta:
        return self._lookup(self.inputs, name, "input")

    def output_meta(self, name: Optional[str] = None) -> TensorMeta:
        return self._lookup(self.outputs, name, "output")

    @staticmethod
    def _lookup(metas: Sequence[TensorMeta], name: Optional[str], kind: str) -> TensorMeta:
        if not metas:
            raise EngineContractViolation(f"Engine declares no {kind}s")
        if name is None:
            return metas[0]
        for m in metas:
            if m.name == name:
                return m
        raise EngineContractViolation(
            f"Engine has no {kind} named '{name}' (available: {[m.name for m in metas]})")


class OnnxEngine(InferenceEngine):
    def __init__(self, session):
        self.session = session
        self.inputs = [meta_from_node(n) for n in session.get_inputs()]
        self.outputs = [meta_from_node(n) for n in session.get_outputs()]

    def run(self, input_name, tensor, output_name=None):
        out_name = output_name or self.outputs[0].name
        result = self.session.run([out_name], {input_name: tensor})
        return out_name, result[0]

    @classmethod
    def load(cls, model_path: str, providers: Sequence[str] = ("CUDAExecutionProvider",)):
        return cls(create_session(model_path, providers))


def _session_options():
    options = ort.SessionOptions()
    options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
    return options


def _try_session(model_path: str, providers: List[str]):
    try:
        return ort.InferenceSession(model_path, sess_options=_session_options(), providers=providers)
    except Exception as e:
        logger.warning("Could not create session with %s: %s", providers, e)
        return None


def create_session(model_path: str, providers: Sequence[str] = ("CUDAExecutionProvider",)):
    """
    Two-step construction: preferred providers first (only those the installed
    runtime offers), then a CPU-only session if that attempt failed.
    """
    available = set(ort.get_available_providers())
    preferred = [p for p in providers if p in available and p != BASELINE_PROVIDER]
    skipped = [p for p in providers if p not in available]
    if skipped:
        logger.info("Execution providers not available, skipping: %s", skipped)

    session = None
    if preferred:
        session = _try_session(model_path, preferred + [BASELINE_PROVIDER])
        if session is None:
            logger.warning("Falling back to %s for %s", BASELINE_PROVIDER, model_path)
    if session is None:
        session = ort.InferenceSession(model_path, sess_options=_session_options(),
                                       providers=[BASELINE_PROVIDER])

    logger.info("Loaded %s with providers %s", model_path, session.get_providers())
    return session


class TorchModuleEngine(InferenceEngine):
    """
    Runs an in-process torch module. Input metadata is declared by the caller
    since a module carries none; the output is always 2-D [N, D].
    """

    def __init__(self, module: torch.nn.Module, input_meta: TensorMeta,
                 output_name: str = "embeddings", device="cpu"):
        self.device = torch.device(device)
        self.module = module.to(self.device).eval()
        self.inputs = [input_meta]
        self.outputs = [TensorMeta(output_name, (None, None), None)]

    @torch.no_grad()
    def run(self, input_name, tensor, output_name=None):
        if input_name != self.inputs[0].name:
            raise EngineContractViolation(f"Engine has no input named '{input_name}'")
        x = torch.from_numpy(np.ascontiguousarray(tensor)).to(self.device)
        z = self.module(x)
        return self.outputs[0].name, z.detach().cpu().numpy()
