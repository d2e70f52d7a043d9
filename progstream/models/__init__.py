import logging
from enum import Enum
from typing import Any, Dict, Union

from ..errors import UnknownModelFormatError
from .base import ProgressiveModel
from .graph_model import GraphModel
from .layers_model import LayersModel

logger = logging.getLogger(__name__)


class ModelFormat(str, Enum):
    LAYERS = "layers-model"
    GRAPH = "graph-model"


def resolve_format(model_json: Dict[str, Any]) -> ModelFormat:
    fmt = model_json.get("format")
    if fmt is None:
        logger.warning("There is no `format` field in model.json; trying the graph format, which may not work.")
        return ModelFormat.GRAPH
    try:
        return ModelFormat(fmt)
    except ValueError:
        raise UnknownModelFormatError(
            f"Unknown model format {fmt!r}. Supported formats are `layers-model` and `graph-model`"
        ) from None


def build_model(model_json: Dict[str, Any]) -> Union[LayersModel, GraphModel]:
    fmt = resolve_format(model_json)
    if fmt is ModelFormat.LAYERS:
        return LayersModel(model_json)
    return GraphModel(model_json)


__all__ = [
    "ModelFormat",
    "ProgressiveModel",
    "LayersModel",
    "GraphModel",
    "resolve_format",
    "build_model",
]
