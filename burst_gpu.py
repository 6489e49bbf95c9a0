"""
GPU context: device, low priority compute stream, kernel pipelines, chunked
dispatch and async readback.

A "kernel" is a plain torch function with the signature

    entry(params: bytes, workgroups: (x, y), *bindings)

that reads its parameters only from the packed block and writes its results
into the bound tensors. The context is created once by the application and
handed to the processor; it owns the lock that serialises bursts.
"""

import asyncio
import contextlib
import struct
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Type

import torch

from burst_errors import DispatchError, SetupError
from burst_log import get_logger
from burst_params import ParamBlock, check_layout, verify_param_layouts

Tensor = torch.Tensor

logger = get_logger(__name__)

LOCK_POLL_INTERVAL = 0.002  # s
READBACK_POLL_INTERVAL = 0.0005  # s


@dataclass(frozen=True)
class RowChunk:
    offset: int
    rows: int


def plan_row_chunks(n_rows: int, rows_per_chunk: int) -> List[RowChunk]:
    """Split `n_rows` tile rows into consecutive chunks of at most `rows_per_chunk`."""
    if rows_per_chunk < 1:
        raise ValueError(f"rows_per_chunk must be >= 1, got {rows_per_chunk}")
    return [RowChunk(r, min(rows_per_chunk, n_rows - r)) for r in range(0, n_rows, rows_per_chunk)]


@dataclass(frozen=True)
class ComputePipeline:
    name: str
    params_type: Type[ParamBlock]
    entry: Callable


def select_device(device: str = "auto") -> torch.device:
    if device == "auto":
        return torch.device("cuda" if torch.cuda.is_available() else "cpu")
    try:
        dev = torch.device(device)
    except RuntimeError as e:
        raise SetupError(f"Unknown device {device!r}", original_error=e) from e
    if dev.type == "cuda":
        if not torch.cuda.is_available():
            raise SetupError(f"Device {device!r} requested but CUDA is not available")
        if dev.index is not None and dev.index >= torch.cuda.device_count():
            raise SetupError(f"Device {device!r} does not exist ({torch.cuda.device_count()} visible)")
    return dev


class GpuContext:
    def __init__(self, device: str = "auto", low_priority: bool = True):
        verify_param_layouts()
        self.device = select_device(device)
        self.stream: Optional["torch.cuda.Stream"] = None
        self.low_priority_enabled = False
        if self.device.type == "cuda":
            try:
                # priority 0 is the least priority a CUDA stream can get
                self.stream = torch.cuda.Stream(device=self.device, priority=0 if low_priority else -1)
                self.low_priority_enabled = low_priority
            except RuntimeError as e:
                raise SetupError(f"Cannot create compute stream on {self.device}", original_error=e) from e

        self._pipelines: Dict[str, ComputePipeline] = {}
        self._lock = threading.Lock()
        self.submission_count = 0
        logger.info(f"GPU context on {self.device} (low priority queue: {self.low_priority_enabled})")

    # ------------------------------------------------------------
    # pipelines and dispatch
    # ------------------------------------------------------------

    def create_pipeline(self, name: str, params_type: Type[ParamBlock], entry: Callable,
                        expected_size: int) -> ComputePipeline:
        """Register a kernel, checking its parameter block against the size it is written for."""
        cached = self._pipelines.get(name)
        if cached is not None:
            if cached.params_type is not params_type or cached.entry is not entry:
                raise SetupError(f"Pipeline {name!r} already registered with a different kernel")
            return cached
        check_layout(params_type, expected_size)
        pipeline = ComputePipeline(name, params_type, entry)
        self._pipelines[name] = pipeline
        logger.debug(f"Created pipeline {name} ({expected_size} byte params)")
        return pipeline

    @contextlib.contextmanager
    def stream_scope(self):
        """
        Run the enclosed work on the compute stream. The compute stream first
        waits for the caller's stream, and on exit the caller's stream waits
        for the compute stream, so buffers hand over safely in both directions.
        """
        if self.stream is None:
            yield
            return
        caller = torch.cuda.current_stream(self.device)
        if caller == self.stream:
            yield
            return
        self.stream.wait_stream(caller)
        with torch.cuda.stream(self.stream):
            yield
        caller.wait_stream(self.stream)

    @torch.no_grad()
    def dispatch(self, pipeline: ComputePipeline, params: ParamBlock, bindings: Sequence[Tensor],
                 workgroups: Tuple[int, int]) -> None:
        if not isinstance(params, pipeline.params_type):
            raise DispatchError(
                f"{pipeline.name}: expected {pipeline.params_type.__name__}, got {type(params).__name__}")
        try:
            raw = params.pack()
            with self.stream_scope():
                pipeline.entry(raw, workgroups, *bindings)
        except (RuntimeError, ValueError, IndexError, struct.error) as e:
            logger.error(f"Dispatch of {pipeline.name} failed: {e}")
            raise DispatchError(f"{pipeline.name} dispatch failed: {e}", original_error=e) from e
        self.submission_count += 1

    async def yield_to_scheduler(self) -> None:
        await asyncio.sleep(0)

    async def run_chunked(self, pipeline: ComputePipeline, params: ParamBlock, bindings: Sequence[Tensor],
                          workgroups_x: int, n_rows: int, rows_per_chunk: int,
                          chunks_per_yield: int) -> int:
        """
        Dispatch `pipeline` over `n_rows` tile rows, a chunk of rows at a time.

        Each chunk rewrites `tile_row_offset` in the block; control goes back
        to the event loop every `chunks_per_yield` chunks and after the last.
        Returns the number of dispatches.
        """
        chunks = plan_row_chunks(n_rows, rows_per_chunk)
        for i, chunk in enumerate(chunks, 1):
            self.dispatch(pipeline, params.replace(tile_row_offset=chunk.offset), bindings,
                          (workgroups_x, chunk.rows))
            if i % chunks_per_yield == 0:
                await self.yield_to_scheduler()
        await self.yield_to_scheduler()
        logger.debug(f"{pipeline.name}: {len(chunks)} chunks over {n_rows} rows")
        return len(chunks)

    # ------------------------------------------------------------
    # transfers
    # ------------------------------------------------------------

    @torch.no_grad()
    def upload(self, data, out: Tensor) -> Optional[Tensor]:
        """
        Copy an HxWxC frame into a 3xHxW float buffer with values in [0,1]
        for 8-bit input. Returns the alpha plane (device, original dtype) if
        the frame has one.
        """
        try:
            src = torch.as_tensor(data)
            with self.stream_scope():
                src = src.to(self.device, non_blocking=True)
                rgb = src[..., :3].permute(2, 0, 1)
                if rgb.dtype == torch.uint8:
                    out.copy_(rgb.to(out.dtype) / 255.0)
                else:
                    out.copy_(rgb)
                alpha = src[..., 3].clone() if src.shape[-1] == 4 else None
        except RuntimeError as e:
            raise DispatchError(f"Frame upload failed: {e}", original_error=e) from e
        return alpha

    def new_staging(self, shape: Tuple[int, ...], dtype: torch.dtype) -> Tensor:
        return torch.empty(shape, dtype=dtype, pin_memory=self.device.type == "cuda")

    async def map_read(self, src: Tensor, staging: Tensor) -> Tensor:
        """
        Copy `src` into the host `staging` tensor and resolve once the copy
        has landed. Completion is polled from the event loop; the caller only
        awaits and no thread blocks on the device.
        """
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        try:
            with self.stream_scope():
                staging.copy_(src, non_blocking=True)
                event = None
                if self.stream is not None:
                    event = torch.cuda.Event()
                    event.record(self.stream)
        except RuntimeError as e:
            raise DispatchError(f"Readback submission failed: {e}", original_error=e) from e

        def poll():
            if future.done():
                return
            try:
                ready = event is None or event.query()
            except RuntimeError as e:
                future.set_exception(DispatchError(f"Readback failed: {e}", original_error=e))
                return
            if ready:
                future.set_result(staging)
            else:
                loop.call_later(READBACK_POLL_INTERVAL, poll)

        loop.call_soon(poll)
        return await future

    # ------------------------------------------------------------
    # burst serialisation
    # ------------------------------------------------------------

    @contextlib.asynccontextmanager
    async def exclusive(self):
        """Hold the context for one burst; other callers wait their turn."""
        while not self._lock.acquire(blocking=False):
            await asyncio.sleep(LOCK_POLL_INTERVAL)
        try:
            yield self
        finally:
            self._lock.release()

    @property
    def busy(self) -> bool:
        return self._lock.locked()
