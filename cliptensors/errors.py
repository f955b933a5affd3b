from dataclasses import dataclass


class ClipTensorsError(Exception):
    """Base class for every error raised by the preprocessing layer."""


class ImageDecodeError(ClipTensorsError):
    """An image source could not be read or decoded. Aborts the whole batch."""


class DimensionMismatch(ClipTensorsError):
    """A pixel grid or tensor does not have the configured shape."""


class UnsupportedNumericType(ClipTensorsError):
    """No conversion is defined for the requested output representation."""


class EngineContractViolation(ClipTensorsError):
    """The engine metadata or output does not fit the fixed preprocessing."""


class ShapeMismatch(EngineContractViolation):
    """The declared engine input shape is incompatible (rank, square, length)."""


@dataclass(eq=False)
class ConfigError(ClipTensorsError):
    """Configuration validation error."""
    field: str
    message: str

    def __str__(self):
        return f"Configuration error in '{self.field}': {self.message}"
