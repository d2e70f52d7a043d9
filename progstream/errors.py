class ProgStreamError(Exception):
    """Base class for every error raised by progstream."""


class ManifestFetchError(ProgStreamError):
    """progressive.json or model.json could not be fetched or parsed."""


class UnknownModelFormatError(ProgStreamError, ValueError):
    pass


class UnsupportedDtypeError(ProgStreamError, ValueError):
    pass


class NotInitializedError(ProgStreamError, RuntimeError):
    pass


class DegenerateQuantizationRangeError(ProgStreamError, ValueError):
    """A tensor with zero dynamic range (min == max) reached a strict encoder or decoder."""


class PartitionFetchError(ProgStreamError):
    """A partition file failed to arrive (or arrived malformed) mid-sequence."""

    def __init__(self, step: int, url: str, reason: str = "fetch failed"):
        super().__init__(f"partition {step} ({url}): {reason}")
        self.step = step
        self.url = url
