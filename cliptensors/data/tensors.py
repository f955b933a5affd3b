"""Row-major flattening, batch assembly and de-tensorization of engine outputs."""
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

from cliptensors.errors import DimensionMismatch, EngineContractViolation


def flatten(tensor) -> np.ndarray:
    """Contiguous 1-D copy of ``tensor``, last dimension fastest."""
    return np.ascontiguousarray(tensor).reshape(-1)


def flatten_batch(items: Sequence[np.ndarray], dtype=None) -> np.ndarray:
    """Concatenate ``flatten(item)`` for every item, in input order, no padding."""
    flats = [flatten(x) for x in items]
    if not flats:
        return np.empty(0, dtype=dtype if dtype is not None else np.float32)
    kinds = {f.dtype for f in flats}
    if len(kinds) > 1:
        raise ValueError(f"Batch items have mixed dtypes: {sorted(str(k) for k in kinds)}")
    out = np.concatenate(flats)
    return out if dtype is None else out.astype(dtype, copy=False)


@dataclass(frozen=True)
class BatchTensor:
    data: np.ndarray            # flat, C-contiguous
    shape: Tuple[int, ...]      # e.g. (N, 3, 224, 224) or (N, 77)

    @property
    def batch_size(self) -> int:
        return self.shape[0]

    def as_array(self) -> np.ndarray:
        return self.data.reshape(self.shape)


def assemble_batch(items: Sequence[np.ndarray],
                   item_shape: Tuple[int, ...],
                   dtype=None) -> BatchTensor:
    item_shape = tuple(int(d) for d in item_shape)
    for i, item in enumerate(items):
        if tuple(np.shape(item)) != item_shape:
            raise DimensionMismatch(
                f"Batch item {i} has shape {tuple(np.shape(item))}, expected {item_shape}")
    data = flatten_batch(items, dtype=dtype)
    return BatchTensor(data=data, shape=(len(items),) + item_shape)


def split_batch(output, n: int, name: Optional[str] = None) -> List[np.ndarray]:
    """Slice an [N, D] engine output into N independent vectors, row order kept."""
    out = np.asarray(output)
    label = name or "output"
    if out.ndim != 2:
        raise EngineContractViolation(f"Engine {label} has rank {out.ndim}, expected 2 ([N, D])")
    if out.shape[0] != n:
        raise EngineContractViolation(
            f"Engine {label} has {out.shape[0]} rows for a batch of {n}")
    return [out[i].copy() for i in range(n)]
