import math
from typing import Any, Callable, Dict, Optional, Sequence, Tuple

import torch
import torch.nn as nn

from .base import ProgressiveModel

_ACTIVATIONS: Dict[str, Callable[[torch.Tensor], torch.Tensor]] = {
    "linear": lambda x: x,
    "relu": torch.relu,
    "relu6": lambda x: torch.clamp(x, 0.0, 6.0),
    "sigmoid": torch.sigmoid,
    "tanh": torch.tanh,
    "softmax": lambda x: torch.softmax(x, dim=-1),
}


def get_activation(name: Optional[str]) -> Callable[[torch.Tensor], torch.Tensor]:
    name = name or "linear"
    if name not in _ACTIVATIONS:
        raise ValueError(f"Unknown activation: {name}")
    return _ACTIVATIONS[name]


class Dense(nn.Module):
    """Keras-style dense layer: y = activation(x @ kernel + bias), kernel is [in, units]."""

    def __init__(self, in_features: int, units: int, activation: Optional[str] = None, use_bias: bool = True):
        super().__init__()
        self.activation_name = activation or "linear"
        self.activation = get_activation(activation)
        self.kernel = nn.Parameter(torch.zeros(in_features, units), requires_grad=False)
        self.bias = nn.Parameter(torch.zeros(units), requires_grad=False) if use_bias else None

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        y = torch.matmul(x, self.kernel)
        if self.bias is not None:
            y = y + self.bias
        return self.activation(y)


class Activation(nn.Module):
    def __init__(self, activation: str):
        super().__init__()
        self.activation = get_activation(activation)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.activation(x)


class Flatten(nn.Module):
    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return x.reshape(x.size(0), -1)


def _declared_shape(config: Dict[str, Any]) -> Optional[Tuple[int, ...]]:
    """Per-sample input shape declared on a layer config, if any."""
    for key in ("batch_input_shape", "batch_shape"):
        if config.get(key) is not None:
            return tuple(int(d) for d in config[key][1:])
    if config.get("input_shape") is not None:
        return tuple(int(d) for d in config["input_shape"])
    return None


class LayersModel(ProgressiveModel):
    """Sequential executor built from a layers-model topology.

    Supported layers: Dense, Activation, Flatten, Dropout and InputLayer. Dense weights
    are named "<layer>/kernel" and "<layer>/bias".
    """

    def __init__(self, model_json: Dict[str, Any]):
        super().__init__()
        topology = model_json["modelTopology"]
        if topology.get("model_config") is not None:
            topology = topology["model_config"]
        if topology.get("class_name") != "Sequential":
            raise ValueError(f"Only Sequential layers models are supported, got {topology.get('class_name')}")
        config = topology["config"]
        layer_entries: Sequence[Dict[str, Any]] = config["layers"] if isinstance(config, dict) else config
        self.name = config.get("name", "sequential") if isinstance(config, dict) else "sequential"

        self.layers = nn.ModuleList()
        self.layer_names = []
        shape: Optional[Tuple[int, ...]] = None
        for index, entry in enumerate(layer_entries):
            class_name = entry["class_name"]
            layer_config = entry.get("config", {})
            name = layer_config.get("name", f"{class_name.lower()}_{index}")
            if shape is None:
                shape = _declared_shape(layer_config)

            if class_name == "Dense":
                if not shape:
                    raise ValueError(f"Dense layer {name} has no known input shape")
                units = int(layer_config["units"])
                layer = Dense(shape[-1], units, layer_config.get("activation"), layer_config.get("use_bias", True))
                self._weights[f"{name}/kernel"] = layer.kernel
                if layer.bias is not None:
                    self._weights[f"{name}/bias"] = layer.bias
                shape = shape[:-1] + (units,)
            elif class_name == "Activation":
                layer = Activation(layer_config["activation"])
            elif class_name == "Flatten":
                layer = Flatten()
                if shape is not None:
                    shape = (math.prod(shape),)
            elif class_name in ("Dropout", "InputLayer"):
                layer = nn.Identity()
            else:
                raise ValueError(f"Unsupported layer class: {class_name}")
            self.layers.append(layer)
            self.layer_names.append(name)
        self.output_shape = shape

    def _set_weight(self, name: str, tensor: torch.Tensor) -> None:
        current = self._weights[name]
        raise ValueError(
            f"weight {name} expects {tuple(current.shape)} {current.dtype}, got {tuple(tensor.shape)} {tensor.dtype}"
        )

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        for layer in self.layers:
            x = layer(x)
        return x

    @torch.no_grad()
    def predict(self, inputs) -> torch.Tensor:
        x = torch.as_tensor(inputs, dtype=torch.float32)
        return self(x)
