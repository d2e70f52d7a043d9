"""Uniform affine quantization, used as an error baseline for the progressive codec.

Measures how much precision a single fixed bit width (4, 8 or 16) keeps compared with
decoding the first levels of a progressive interface with the same total bit count.
"""

import math
from typing import List, Mapping, Sequence, Tuple

import torch

from .quantization import decode, encode
from .types import validate_interface


def quantization_range(min_val: float, max_val: float, bits: int) -> Tuple[float, float, float]:
    """Return (scale, nudged_min, nudged_max) so that zero falls exactly on the grid."""
    quant_max = 2 ** bits - 1
    scale = (max_val - min_val) / quant_max
    if min_val <= 0 <= max_val:
        zero_point = math.floor((0 - min_val) / scale)
        nudged_min = -zero_point * scale
        nudged_max = quant_max * scale + nudged_min
        return scale, nudged_min, nudged_max
    return scale, min_val, max_val


def uniform_quantize(data: torch.Tensor, bits: int) -> Tuple[torch.Tensor, float, float]:
    assert bits in (4, 8, 16), f"bits must be 4, 8 or 16, got {bits}"
    data = torch.as_tensor(data, dtype=torch.float64)
    min_val = float(data.min().item())
    max_val = float(data.max().item())
    if min_val == max_val:
        return torch.zeros_like(data, dtype=torch.int64), 1.0, min_val
    scale, min_val, max_val = quantization_range(min_val, max_val, bits)
    quantized = torch.round((data.clamp(min_val, max_val) - min_val) / scale).to(torch.int64)
    return quantized, scale, min_val


def uniform_dequantize(quantized: torch.Tensor, scale: float, min_val: float) -> torch.Tensor:
    return quantized.to(torch.float64) * scale + min_val


def rmse(a: torch.Tensor, b: torch.Tensor) -> float:
    diff = a.to(torch.float64).reshape(-1) - b.to(torch.float64).reshape(-1)
    return math.sqrt(float(torch.mean(diff * diff).item())) if diff.numel() else 0.0


def uniform_rmse(weights: Mapping[str, torch.Tensor], bits: int) -> float:
    """RMSE over every element of every float tensor after uniform quantization."""
    error_sum = 0.0
    count = 0
    for tensor in weights.values():
        if not tensor.is_floating_point() or tensor.numel() == 0:
            continue
        q, scale, min_val = uniform_quantize(tensor, bits)
        diff = tensor.to(torch.float64) - uniform_dequantize(q, scale, min_val)
        error_sum += float(torch.sum(diff * diff).item())
        count += tensor.numel()
    return math.sqrt(error_sum / max(1, count))


def progressive_rmse(weights: Mapping[str, torch.Tensor], interface: Sequence[int]) -> List[float]:
    """RMSE after decoding levels [0..j] of `interface`, one value per level."""
    interface = validate_interface(interface)
    error_sums = [0.0] * len(interface)
    count = 0
    for tensor in weights.values():
        if not tensor.is_floating_point() or tensor.numel() == 0:
            continue
        encoded = encode(tensor, interface)
        original = tensor.detach().to(torch.float64).reshape(-1)
        for level in range(len(interface)):
            decoded = decode(encoded.buffers[:level + 1], encoded.scale, encoded.min, interface,
                             num_elements=original.numel(), dtype=torch.float64)
            diff = original - decoded
            error_sums[level] += float(torch.sum(diff * diff).item())
        count += tensor.numel()
    return [math.sqrt(s / max(1, count)) for s in error_sums]
