import asyncio
import contextlib
import inspect
import logging
import time
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Set, Union

import httpx
import numpy as np
import torch

from .errors import (
    ManifestFetchError,
    NotInitializedError,
    PartitionFetchError,
    ProgStreamError,
    UnsupportedDtypeError,
)
from .io import Fetcher, fetcher_for, join_url
from .models import GraphModel, LayersModel, build_model
from .quantization import decode
from .types import PartitionManifest

logger = logging.getLogger(__name__)

MANIFEST_FILE = "progressive.json"
MODEL_FILE = "model.json"

Model = Union[LayersModel, GraphModel]
ProgressCallback = Callable[[Model, bool, int], Optional[Awaitable[None]]]

_FETCH_ERRORS = (httpx.HTTPError, OSError)


class LoaderState(Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"
    STEPPING = "stepping"
    COMPLETED = "completed"
    FAILED = "failed"


class ProgressiveLoader:
    """Streams a partitioned model and refines its weights one level at a time.

    Usage:
        loader = ProgressiveLoader("https://host/models/mlp_44816")
        await loader.init()
        await loader.drive(lambda model, is_last, step: print(step, model.predict(x)))

    With `concurrent=True` the partition for step k+1 downloads while step k is decoded,
    injected and handed to the callback; callbacks still run strictly in step order.
    """

    def __init__(
        self,
        model_url: str,
        num_steps: Optional[int] = None,
        concurrent: bool = True,
        fetcher: Optional[Fetcher] = None,
        max_prefetch: int = 0,
    ):
        if num_steps is not None and num_steps < 1:
            raise ValueError(f"num_steps must be positive, got {num_steps}")
        self.model_url = model_url.rstrip("/")
        self.requested_steps = num_steps
        self.concurrent = concurrent
        self.max_prefetch = max_prefetch
        self._owns_fetcher = fetcher is None
        self.fetcher = fetcher if fetcher is not None else fetcher_for(model_url)

        self.manifest: Optional[PartitionManifest] = None
        self.model: Optional[Model] = None
        self.num_steps = 0
        self.current_step = 0
        self.accumulated: List[Dict[str, bytes]] = []
        self.state = LoaderState.UNINITIALIZED
        self.pending_callbacks: Set[asyncio.Future] = set()

    async def init(self) -> None:
        """Fetch progressive.json and model.json, then build the model shell."""
        try:
            manifest_json = await self.fetcher.fetch_json(join_url(self.model_url, MANIFEST_FILE))
            model_json = await self.fetcher.fetch_json(join_url(self.model_url, MODEL_FILE))
        except (*_FETCH_ERRORS, ValueError) as e:
            self.state = LoaderState.FAILED
            raise ManifestFetchError(f"cannot load model description from {self.model_url}: {e}") from e

        try:
            manifest = PartitionManifest.from_dict(manifest_json)
            model = build_model(model_json)
            model.load_weights(manifest.initial_weights())
        except ProgStreamError:
            self.state = LoaderState.FAILED
            raise
        except (KeyError, TypeError, ValueError) as e:
            self.state = LoaderState.FAILED
            raise ManifestFetchError(f"malformed model description at {self.model_url}: {e}") from e

        self.manifest = manifest
        self.model = model
        levels = manifest.num_levels
        self.num_steps = levels if self.requested_steps is None else min(self.requested_steps, levels)
        self.current_step = 0
        self.accumulated = []
        self.state = LoaderState.INITIALIZED
        logger.info(
            "initialized %s: %d layers, interface %s, %d steps",
            self.model_url, len(manifest.layers), list(manifest.dividing_interface), self.num_steps,
        )

    def _require_init(self) -> None:
        if self.manifest is None:
            raise NotInitializedError("init() must be called before loading partitions")

    @property
    def is_complete(self) -> bool:
        return self.manifest is not None and self.current_step >= self.num_steps

    async def _fetch_partition(self, step: int) -> bytes:
        url = join_url(self.model_url, self.manifest.files[step])
        try:
            return await self.fetcher.fetch_bytes(url)
        except _FETCH_ERRORS as e:
            raise PartitionFetchError(step, url, str(e)) from e

    def build_tensor_map(self) -> Dict[str, torch.Tensor]:
        """Rebuild every layer's tensor from all partitions accumulated so far."""
        self._require_init()
        assert self.accumulated, "no partition has been accumulated yet"
        return self._tensor_map(self.accumulated)

    def _tensor_map(self, accumulated: List[Dict[str, bytes]]) -> Dict[str, torch.Tensor]:
        manifest = self.manifest
        tensors = {}
        for layer in manifest.layers:
            if layer.dtype == "float32":
                data = decode(
                    [slices[layer.name] for slices in accumulated],
                    layer.quantization.scale,
                    layer.quantization.min,
                    manifest.dividing_interface,
                    num_elements=layer.num_elements,
                )
            elif layer.dtype == "int32":
                # int32 tensors are stored raw in the first partition only
                raw = np.frombuffer(accumulated[0][layer.name], dtype="<i4")
                data = torch.from_numpy(raw.astype(np.int32))
            else:
                raise UnsupportedDtypeError(f'Currently dtype "{layer.dtype}" is not supported')
            tensors[layer.name] = data.reshape(layer.shape)
        return tensors

    def _restore(self, step: int, buffer: bytes) -> None:
        assert step == self.current_step, f"partition {step} arrived while expecting {self.current_step}"
        start = time.perf_counter()
        # nothing is recorded unless the whole step applies
        try:
            slices = self.manifest.split_partition(step, buffer)
            self.model.load_weights(self._tensor_map(self.accumulated + [slices]))
        except (ValueError, RuntimeError) as e:
            raise PartitionFetchError(step, join_url(self.model_url, self.manifest.files[step]), str(e)) from e
        self.accumulated.append(slices)
        self.current_step = step + 1
        self.state = LoaderState.COMPLETED if self.is_complete else LoaderState.STEPPING
        logger.debug("restored step %d/%d in %.3fs", step + 1, self.num_steps, time.perf_counter() - start)

    async def advance_one_step(self) -> int:
        """Load the next partition. Returns the step just completed, or -1 when all are loaded."""
        self._require_init()
        step = self.current_step
        if step >= self.num_steps:
            return -1
        try:
            buffer = await self._fetch_partition(step)
            self._restore(step, buffer)
        except Exception:
            self.state = LoaderState.FAILED
            raise
        return step

    async def drive(self, callback: ProgressCallback) -> Model:
        """Load every remaining step, calling `callback(model, is_last, step)` after each one."""
        self._require_init()
        try:
            if self.concurrent:
                await self._drive_pipelined(callback)
            else:
                await self._drive_sequential(callback)
        except BaseException:
            self.state = LoaderState.FAILED
            raise
        return self.model

    async def _drive_sequential(self, callback: ProgressCallback) -> None:
        for step in range(self.current_step, self.num_steps):
            buffer = await self._fetch_partition(step)
            self._restore(step, buffer)
            result = callback(self.model, step == self.num_steps - 1, step)
            if inspect.isawaitable(result):
                await result

    async def _drive_pipelined(self, callback: ProgressCallback) -> None:
        first = self.current_step
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_prefetch)

        async def produce() -> None:
            for step in range(first, self.num_steps):
                try:
                    buffer = await self._fetch_partition(step)
                except Exception as e:
                    await queue.put((step, None, e))
                    return
                await queue.put((step, buffer, None))

        producer = asyncio.create_task(produce())
        try:
            for _ in range(first, self.num_steps):
                step, buffer, error = await queue.get()
                if error is not None:
                    raise error
                self._restore(step, buffer)
                result = callback(self.model, step == self.num_steps - 1, step)
                if inspect.isawaitable(result):
                    self._schedule_callback(result)
                    # let the callback start against this step's weights
                    await asyncio.sleep(0)
        finally:
            if not producer.done():
                producer.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await producer

    def _schedule_callback(self, awaitable: Awaitable[None]) -> None:
        task = asyncio.ensure_future(awaitable)
        self.pending_callbacks.add(task)
        task.add_done_callback(self._on_callback_done)

    def _on_callback_done(self, task: asyncio.Future) -> None:
        self.pending_callbacks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("progress callback failed", exc_info=task.exception())

    async def wait_pending_callbacks(self) -> None:
        """Wait for callback coroutines scheduled by a pipelined drive."""
        if self.pending_callbacks:
            await asyncio.gather(*list(self.pending_callbacks), return_exceptions=True)

    async def aclose(self) -> None:
        """Close the fetcher if this loader created it."""
        if self._owns_fetcher:
            await self.fetcher.aclose()

    async def __aenter__(self) -> "ProgressiveLoader":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()


async def load_sequentially(
    model_url: str,
    callback: ProgressCallback,
    num_steps: Optional[int] = None,
    concurrent: bool = True,
    fetcher: Optional[Fetcher] = None,
    max_prefetch: int = 0,
) -> Model:
    async with ProgressiveLoader(model_url, num_steps, concurrent, fetcher, max_prefetch) as loader:
        await loader.init()
        return await loader.drive(callback)
