"""Progressive model streaming (progstream) package.

Public API:
- encode / decode: variable-bit-width quantization of float tensors into level buffers
- PartitionManifest: layout of progressive.json (layers, partition files, bit-width interface)
- ProgressiveLoader / load_sequentially: fetch partitions and refine model weights step by step
- LayersModel / GraphModel / build_model: executor shells fed by the loader
- convert / export_sequential: write a model in the partitioned wire format
"""

from .converter import convert, export_sequential
from .errors import (
    DegenerateQuantizationRangeError,
    ManifestFetchError,
    NotInitializedError,
    PartitionFetchError,
    ProgStreamError,
    UnknownModelFormatError,
    UnsupportedDtypeError,
)
from .frontend import Classifier
from .io import HttpFetcher, LocalFetcher
from .loader import LoaderState, ProgressiveLoader, load_sequentially
from .models import GraphModel, LayersModel, ModelFormat, build_model
from .quantization import decode, encode
from .types import LayerDescriptor, PartitionManifest, QuantizationParams

__all__ = [
    "encode",
    "decode",
    "PartitionManifest",
    "LayerDescriptor",
    "QuantizationParams",
    "ProgressiveLoader",
    "LoaderState",
    "load_sequentially",
    "HttpFetcher",
    "LocalFetcher",
    "LayersModel",
    "GraphModel",
    "ModelFormat",
    "build_model",
    "Classifier",
    "convert",
    "export_sequential",
    "ProgStreamError",
    "ManifestFetchError",
    "UnknownModelFormatError",
    "UnsupportedDtypeError",
    "NotInitializedError",
    "DegenerateQuantizationRangeError",
    "PartitionFetchError",
]
