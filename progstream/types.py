import json
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Tuple

import torch

from .bitpack import packed_size
from .errors import DegenerateQuantizationRangeError, UnsupportedDtypeError

SUPPORTED_DTYPES = ("float32", "int32")
TORCH_DTYPES = {"float32": torch.float32, "int32": torch.int32}
MAX_INTERFACE_BITS = 32


def validate_interface(interface: Sequence[int]) -> Tuple[int, ...]:
    """Check a bit-width interface (e.g. (4, 4, 8, 16)) and return it as a tuple."""
    bits = tuple(int(b) for b in interface)
    if not bits:
        raise ValueError("bit-width interface must have at least one level")
    if any(b < 1 for b in bits):
        raise ValueError(f"bit widths must be positive, got {list(bits)}")
    if sum(bits) > MAX_INTERFACE_BITS:
        raise ValueError(f"bit widths must sum to at most {MAX_INTERFACE_BITS}, got {sum(bits)}")
    return bits


@dataclass(frozen=True)
class QuantizationParams:
    """Affine map from the 32-bit normalized domain back to floats."""

    min: float
    scale: float

    def __post_init__(self):
        if not self.scale > 0:
            raise DegenerateQuantizationRangeError(f"quantization scale must be > 0, got {self.scale}")

    def to_dict(self) -> Dict[str, float]:
        return {"scale": float(self.scale), "min": float(self.min)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QuantizationParams":
        return cls(min=float(data["min"]), scale=float(data["scale"]))


@dataclass(frozen=True)
class LayerDescriptor:
    name: str
    shape: Tuple[int, ...]
    dtype: str
    byte_sizes: Tuple[int, ...]
    quantization: Optional[QuantizationParams] = None

    def __post_init__(self):
        if self.dtype not in SUPPORTED_DTYPES:
            raise UnsupportedDtypeError(f'Currently dtype "{self.dtype}" is not supported (layer {self.name})')
        if self.dtype == "float32" and self.quantization is None:
            raise ValueError(f"float32 layer {self.name} requires quantization params")
        if self.dtype == "int32":
            if self.quantization is not None:
                raise ValueError(f"int32 layer {self.name} must not carry quantization params")
            if any(self.byte_sizes[1:]):
                raise ValueError(f"int32 layer {self.name} may only occupy the first partition")
        if any(s < 0 for s in self.byte_sizes):
            raise ValueError(f"negative byte size on layer {self.name}")

    @property
    def num_elements(self) -> int:
        return math.prod(self.shape)

    def placeholder(self) -> torch.Tensor:
        """Weights to hold before any partition arrives: the midpoint of the float range, or zeros."""
        if self.dtype == "float32":
            q = self.quantization
            return torch.full(self.shape, q.min + q.scale * 0.5, dtype=torch.float32)
        return torch.zeros(self.shape, dtype=TORCH_DTYPES[self.dtype])

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "name": self.name,
            "shape": list(self.shape),
            "dtype": self.dtype,
            "byteSizes": list(self.byte_sizes),
        }
        if self.quantization is not None:
            out["quantization"] = self.quantization.to_dict()
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LayerDescriptor":
        quant = data.get("quantization")
        return cls(
            name=str(data["name"]),
            shape=tuple(int(d) for d in data["shape"]),
            dtype=str(data["dtype"]),
            byte_sizes=tuple(int(s) for s in data["byteSizes"]),
            quantization=QuantizationParams.from_dict(quant) if quant is not None else None,
        )


def _expected_byte_sizes(layer: LayerDescriptor, interface: Tuple[int, ...]) -> Tuple[int, ...]:
    n = layer.num_elements
    if layer.dtype == "int32":
        return (4 * n,) + (0,) * (len(interface) - 1)
    return tuple(packed_size(n, b) for b in interface)


@dataclass(frozen=True)
class PartitionManifest:
    """Contents of progressive.json: per-layer layout plus the ordered partition files."""

    layers: Tuple[LayerDescriptor, ...]
    files: Tuple[str, ...]
    dividing_interface: Tuple[int, ...]

    def __post_init__(self):
        object.__setattr__(self, "layers", tuple(self.layers))
        object.__setattr__(self, "files", tuple(self.files))
        object.__setattr__(self, "dividing_interface", validate_interface(self.dividing_interface))
        levels = len(self.dividing_interface)
        if len(self.files) != levels:
            raise ValueError(f"{len(self.files)} partition files for {levels} interface levels")
        names = [layer.name for layer in self.layers]
        if len(set(names)) != len(names):
            raise ValueError("layer names must be unique")
        for layer in self.layers:
            if len(layer.byte_sizes) != levels:
                raise ValueError(f"layer {layer.name} has {len(layer.byte_sizes)} byte sizes for {levels} levels")
            expected = _expected_byte_sizes(layer, self.dividing_interface)
            if tuple(layer.byte_sizes) != expected:
                raise ValueError(
                    f"layer {layer.name} declares byte sizes {list(layer.byte_sizes)}, its shape needs {list(expected)}"
                )

    @property
    def num_levels(self) -> int:
        return len(self.dividing_interface)

    def partition_size(self, level: int) -> int:
        return sum(layer.byte_sizes[level] for layer in self.layers)

    def split_partition(self, level: int, buffer: bytes) -> Dict[str, bytes]:
        """Cut one partition file into per-layer slices, laid out back to back in layer order."""
        expected = self.partition_size(level)
        if len(buffer) != expected:
            raise ValueError(f"partition {level} has {len(buffer)} bytes, manifest expects {expected}")
        view = memoryview(buffer)
        slices = {}
        offset = 0
        for layer in self.layers:
            size = layer.byte_sizes[level]
            slices[layer.name] = bytes(view[offset:offset + size])
            offset += size
        return slices

    def initial_weights(self) -> Dict[str, torch.Tensor]:
        return {layer.name: layer.placeholder() for layer in self.layers}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "layers": [layer.to_dict() for layer in self.layers],
            "files": list(self.files),
            "dividingInterface": list(self.dividing_interface),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PartitionManifest":
        return cls(
            layers=tuple(LayerDescriptor.from_dict(entry) for entry in data["layers"]),
            files=tuple(str(f) for f in data["files"]),
            dividing_interface=tuple(data["dividingInterface"]),
        )

    def save_json(self, path: str) -> None:
        p = Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(json.dumps(self.to_dict()))

    @classmethod
    def load_json(cls, path: str) -> "PartitionManifest":
        return cls.from_dict(json.loads(Path(path).read_text()))
