import numpy as np

# Elements per chunk; a multiple of 8 so every chunk packs to whole bytes.
_CHUNK = 1 << 16


def _check_bit_width(bit_width: int) -> None:
    if not 1 <= bit_width <= 32:
        raise ValueError(f"bit_width must be in [1, 32], got {bit_width}")


def packed_size(count: int, bit_width: int) -> int:
    _check_bit_width(bit_width)
    return (count * bit_width + 7) // 8


def pack(bit_width: int, values) -> bytes:
    """Pack unsigned ints of `bit_width` bits each, MSB first, with no per-element padding.

    The output is ceil(len(values) * bit_width / 8) bytes; unused trailing bits are zero.
    """
    _check_bit_width(bit_width)
    arr = np.asarray(values, dtype=np.int64).reshape(-1)
    if arr.size and (arr.min() < 0 or arr.max() >= (1 << bit_width)):
        raise ValueError(f"values must lie in [0, 2**{bit_width})")
    shifts = np.arange(bit_width - 1, -1, -1, dtype=np.int64)
    chunks = []
    for start in range(0, arr.size, _CHUNK):
        bits = ((arr[start:start + _CHUNK, None] >> shifts) & 1).astype(np.uint8)
        chunks.append(np.packbits(bits.reshape(-1)))
    if not chunks:
        return b""
    return np.concatenate(chunks).tobytes()


def unpack(bit_width: int, buffer) -> np.ndarray:
    """Inverse of `pack`: returns floor(len(buffer) * 8 / bit_width) values as int64."""
    _check_bit_width(bit_width)
    raw = np.frombuffer(buffer, dtype=np.uint8)
    count = raw.size * 8 // bit_width
    shifts = np.arange(bit_width - 1, -1, -1, dtype=np.int64)
    # bit_width * _CHUNK / 8 bytes hold exactly _CHUNK values
    chunk_bytes = bit_width * (_CHUNK // 8)
    out = []
    for start in range(0, raw.size, chunk_bytes):
        bits = np.unpackbits(raw[start:start + chunk_bytes])
        n = bits.size // bit_width
        bits = bits[: n * bit_width].reshape(n, bit_width).astype(np.int64)
        out.append((bits << shifts).sum(axis=1))
    if not out:
        return np.zeros(0, dtype=np.int64)
    values = np.concatenate(out)
    assert values.size == count, f"unpacked {values.size} values, expected {count}"
    return values
