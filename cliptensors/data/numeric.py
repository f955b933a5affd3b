"""Conversion of normalized float32 samples into the engine's numeric type.

One ``NumericConverter`` subclass exists per representation. The converter is
picked once by ``converter_for`` when an encoder is built; the per-sample path
only calls ``convert``.

Integer conversions clamp to the target range and round half-to-even
(``numpy.rint``), so 0.5 -> 0, 1.5 -> 2 and -2.5 -> -2.
"""
from typing import Dict, Type, Union

import numpy as np

from cliptensors.errors import UnsupportedNumericType

DTypeLike = Union[str, type, np.dtype]


def _as_float32(samples) -> np.ndarray:
    return np.asarray(samples, dtype=np.float32)


def _unwrap(arr: np.ndarray):
    # 0-d results come back as numpy scalars
    return arr[()] if arr.ndim == 0 else arr


class NumericConverter:
    dtype: np.dtype = None

    def convert(self, samples):
        raise NotImplementedError

    def __call__(self, samples):
        return self.convert(samples)

    def __repr__(self):
        return f"{type(self).__name__}({self.dtype})"


class Float32Converter(NumericConverter):
    dtype = np.dtype(np.float32)

    def convert(self, samples):
        return _unwrap(_as_float32(samples))


class Float16Converter(NumericConverter):
    """Round-to-nearest-even narrowing; values beyond +/-65504 become inf."""
    dtype = np.dtype(np.float16)

    def convert(self, samples):
        with np.errstate(over="ignore"):
            return _unwrap(_as_float32(samples).astype(np.float16))


class Int8Converter(NumericConverter):
    dtype = np.dtype(np.int8)

    def convert(self, samples):
        x = np.clip(_as_float32(samples), -128.0, 127.0)
        return _unwrap(np.rint(x).astype(np.int8))


class IntegerCastConverter(NumericConverter):
    """Clamp to the integer type's range, round half-to-even, cast."""

    def __init__(self, dtype: DTypeLike):
        self.dtype = np.dtype(dtype)
        info = np.iinfo(self.dtype)
        self._max = np.array(info.max, dtype=self.dtype)
        self._lo, self._hi = float(info.min), float(info.max)
        # float(int64/uint64 max) rounds up past the type's range
        self._safe_hi = self._hi if int(self._hi) <= info.max else float(np.nextafter(self._hi, -np.inf))

    def convert(self, samples):
        # float64 keeps int32/uint32 bounds exact
        x = np.asarray(samples, dtype=np.float64)
        out = np.rint(np.clip(x, self._lo, self._safe_hi)).astype(self.dtype)
        out = np.where(x >= self._hi, self._max, out).astype(self.dtype, copy=False)
        return _unwrap(out)


class FloatCastConverter(NumericConverter):
    def __init__(self, dtype: DTypeLike):
        self.dtype = np.dtype(dtype)

    def convert(self, samples):
        with np.errstate(over="ignore"):
            return _unwrap(_as_float32(samples).astype(self.dtype))


_CONVERTERS: Dict[np.dtype, Type[NumericConverter]] = {
    np.dtype(np.float32): Float32Converter,
    np.dtype(np.float16): Float16Converter,
    np.dtype(np.int8): Int8Converter,
}


def resolve_dtype(dtype: DTypeLike) -> np.dtype:
    """Turn a dtype-like (``"float16"``, ``np.int8``, ...) into a numpy dtype."""
    if dtype is None:
        raise UnsupportedNumericType("A numeric type is required")
    if isinstance(dtype, str) and dtype.lower() in ("half", "fp16"):
        return np.dtype(np.float16)
    try:
        return np.dtype(dtype)
    except TypeError as exc:
        raise UnsupportedNumericType(f"Unknown numeric type: {dtype!r}") from exc


def converter_for(dtype: DTypeLike) -> NumericConverter:
    """Return the converter for ``dtype``, failing before any data is touched."""
    dt = resolve_dtype(dtype)
    if dt in _CONVERTERS:
        return _CONVERTERS[dt]()
    if dt.kind in "iu":
        return IntegerCastConverter(dt)
    if dt.kind == "f":
        return FloatCastConverter(dt)
    raise UnsupportedNumericType(f"No numeric conversion defined for {dt}")
