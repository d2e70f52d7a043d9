from typing import Dict, Mapping, Optional

import torch
import torch.nn as nn


class ProgressiveModel(nn.Module):
    """Executor shell whose named weights are replaced as partitions arrive.

    Subclasses register every weight name in `self._weights` while building the
    topology (None when the shape is only known once the first tensor arrives).
    """

    def __init__(self):
        super().__init__()
        self._weights: Dict[str, Optional[torch.Tensor]] = {}

    @property
    def weights(self) -> Dict[str, Optional[torch.Tensor]]:
        return dict(self._weights)

    def _set_weight(self, name: str, tensor: torch.Tensor) -> None:
        self._weights[name] = tensor.detach().clone()

    @torch.no_grad()
    def load_weights(self, weights: Mapping[str, torch.Tensor]) -> None:
        """Replace named weights, copying in place whenever shape and dtype still match."""
        for name, tensor in weights.items():
            if name not in self._weights:
                raise KeyError(f"model has no weight named {name!r}")
            current = self._weights[name]
            if current is not None and current.shape == tensor.shape and current.dtype == tensor.dtype:
                current.copy_(tensor)
            else:
                self._set_weight(name, tensor)

    def predict(self, inputs):
        raise NotImplementedError
