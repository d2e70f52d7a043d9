import logging
from typing import List, NamedTuple, Optional, Sequence, Tuple

import numpy as np
import torch

from . import bitpack
from .errors import DegenerateQuantizationRangeError
from .types import validate_interface

logger = logging.getLogger(__name__)

NUM_BITS = 32
NUM_RANGES = 1 << NUM_BITS


class EncodedTensor(NamedTuple):
    buffers: List[bytes]
    interface: Tuple[int, ...]
    scale: float
    min: float


def normalize(flat: torch.Tensor, lo: float, scale: float) -> torch.Tensor:
    """Map float64 values onto the 32-bit integer domain [0, 2**32)."""
    normalized = torch.floor((flat - lo) / scale * NUM_RANGES).to(torch.int64)
    return normalized.clamp_(0, NUM_RANGES - 1)


def encode(data, interface: Sequence[int], strict: bool = False) -> EncodedTensor:
    """Quantize `data` into one packed buffer per level of `interface`.

    Level 0 holds the most-significant bits of every element's 32-bit code, the last
    level the least-significant ones. A constant tensor has no dynamic range: its codes
    are all zero and its scale is forced to 1.0 (or, with `strict`, it is rejected).
    """
    interface = validate_interface(interface)
    if isinstance(data, torch.Tensor):
        flat = data.detach().reshape(-1).to(device="cpu", dtype=torch.float64)
    else:
        flat = torch.from_numpy(np.asarray(data, dtype=np.float64).reshape(-1))

    if flat.numel() == 0:
        lo, scale = 0.0, 1.0
        normalized = torch.zeros(0, dtype=torch.int64)
    else:
        lo = float(flat.min().item())
        hi = float(flat.max().item())
        scale = hi - lo
        if scale == 0:
            if strict:
                raise DegenerateQuantizationRangeError(f"tensor is constant ({lo}); cannot quantize")
            logger.debug("constant tensor (value %r): encoding zero codes with scale 1.0", lo)
            scale = 1.0
            normalized = torch.zeros(flat.numel(), dtype=torch.int64)
        else:
            normalized = normalize(flat, lo, scale)
            # the maximum lands exactly on 2**32 before clamping
            normalized[flat == hi] = NUM_RANGES - 1

    buffers = []
    offset = 0
    for bit_size in interface:
        shift = NUM_BITS - offset - bit_size
        part = (normalized >> shift) & ((1 << bit_size) - 1)
        buffers.append(bitpack.pack(bit_size, part.numpy()))
        offset += bit_size
    return EncodedTensor(buffers=buffers, interface=interface, scale=float(scale), min=lo)


def decode(
    buffers: Sequence[bytes],
    scale: float,
    min_value: float,
    interface: Sequence[int],
    num_elements: Optional[int] = None,
    dtype: torch.dtype = torch.float32,
) -> torch.Tensor:
    """Reconstruct floats from a contiguous prefix of level buffers (level 0 first).

    Each value is centred in the quantization bucket the available bits describe,
    so the absolute error is at most `max_abs_error(scale, interface, len(buffers))`.
    `num_elements` drops the padding values that sub-byte levels can leave at the end.
    """
    interface = validate_interface(interface)
    if not buffers:
        raise ValueError("decode needs at least the first level's buffer")
    if len(buffers) > len(interface):
        raise ValueError(f"{len(buffers)} buffers for a {len(interface)}-level interface")

    parts = [bitpack.unpack(bit_size, buf) for bit_size, buf in zip(interface, buffers)]
    count = num_elements if num_elements is not None else min(p.size for p in parts)
    for level, part in enumerate(parts):
        if part.size < count:
            raise ValueError(f"level {level} holds {part.size} values, expected {count}")

    codes = np.zeros(count, dtype=np.int64)
    bits_used = 0
    for bit_size, part in zip(interface, parts):
        bits_used += bit_size
        codes |= part[:count] << (NUM_BITS - bits_used)

    # all-zero codes only come from a constant tensor, whose min is exact
    revise_factor = scale / (2.0 ** (bits_used + 1)) if codes.any() else 0.0
    values = torch.from_numpy(codes).to(torch.float64) / NUM_RANGES * scale + min_value + revise_factor
    return values.to(dtype)


def max_abs_error(scale: float, interface: Sequence[int], levels: int) -> float:
    """Worst-case reconstruction error after decoding the first `levels` levels."""
    interface = validate_interface(interface)
    assert 1 <= levels <= len(interface), f"levels must be in [1, {len(interface)}], got {levels}"
    return scale / (2.0 ** (sum(interface[:levels]) + 1))
