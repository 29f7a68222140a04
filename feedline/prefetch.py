"""Double-buffered batch prefetching.

PrefetchEngine overlaps "produce the next batch" with "consume the current
batch" using exactly two pre-allocated buffers and one background thread:

    consumer (training loop)             producer (worker thread)
    ------------------------             ------------------------
    next_batch():                        loop:
      wait until READY                     wait until not READY
      swap active <-> staging              fill staging, sample by sample
      clear READY, notify        ----->    set READY, notify
      return active

The buffers are the only shared mutable state and the role swap is the
only synchronized step; the per-sample fill loop takes no locks. The Nth
``next_batch()`` returns the Nth fill. A batch returned by ``next_batch()``
stays valid until the following call, when its buffer becomes staging.

The engine knows nothing about files or formats. It pulls samples from a
SampleSource strategy supplied by the layer (cursor + decoder + transformer).

Usage:
    engine = PrefetchEngine(batch_size=32, name="ImageData")
    engine.setup(source, data_shape=(3, 224, 224))   # first batch filled here
    engine.start()
    for step in range(num_steps):
        batch = engine.next_batch()
        train_step(batch.data, batch.label)
    engine.stop()
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import numpy as np
import torch

from feedline.cursors import SourceCursor
from feedline.errors import ConfigurationError, DecodeError, LifecycleError
from feedline.transforms import DataTransformer

logger = logging.getLogger(__name__)


class SampleSource(ABC):
    """Strategy that produces transformed samples for a PrefetchEngine.

    ``next_sample()`` must move the source forward by one record whether or
    not decoding succeeds, so that a bad record is skipped rather than
    retried forever.
    """

    @abstractmethod
    def next_sample(self) -> tuple[np.ndarray, Any]:
        """Return (transformed sample, label) and advance. Raises DecodeError."""

    @abstractmethod
    def sample_shape(self) -> tuple[int, ...]:
        """Shape of a transformed sample, computed without advancing."""

    @abstractmethod
    def __len__(self) -> int:
        ...

    def skip(self, count: int) -> None:
        """Advance ``count`` records without decoding them."""
        raise NotImplementedError(f"{type(self).__name__} does not support skipping")

    def describe(self) -> str:
        """Short description of the current position, used in log messages."""
        return type(self).__name__


class CursorSampleSource(SampleSource):
    """Compose a SourceCursor, a decode function and a DataTransformer.

    Args:
        cursor: Position in the dataset
        decode: ``record -> (CHW array, label)``; raises DecodeError
        transformer: Per-sample preprocessing (None = float32 cast)
        locate: ``record -> str`` used in log messages
    """

    def __init__(
        self,
        cursor: SourceCursor,
        decode: Callable[[Any], tuple[np.ndarray, Any]],
        transformer: DataTransformer | None = None,
        locate: Callable[[Any], str] = repr,
    ) -> None:
        self.cursor = cursor
        self.decode = decode
        self.transformer = transformer if transformer is not None else DataTransformer()
        self.locate = locate
        self._shape: tuple[int, ...] | None = None

    def sample_shape(self) -> tuple[int, ...]:
        if self._shape is None:
            record = self.cursor.current()
            try:
                sample, _ = self.decode(record)
            except DecodeError as e:
                raise ConfigurationError(
                    f"Cannot decode first record {self.locate(record)}: {e}"
                ) from e
            self._shape = tuple(self.transformer.infer_shape(sample.shape))
        return self._shape

    def next_sample(self) -> tuple[np.ndarray, Any]:
        record = self.cursor.current()
        try:
            sample, label = self.decode(record)
            out = self.transformer(sample)
        finally:
            self.cursor.advance()
        if self._shape is not None and out.shape != self._shape:
            raise DecodeError(
                f"{self.locate(record)} produced shape {out.shape}, expected {self._shape}",
                record,
            )
        return out, label

    def skip(self, count: int) -> None:
        self.cursor.skip(count)

    def describe(self) -> str:
        return repr(self.cursor)

    def __len__(self) -> int:
        return len(self.cursor)


@dataclass
class Batch:
    """One batch buffer: ``data`` [batch_size, *sample_shape], ``label`` [batch_size, *label_shape]."""

    data: torch.Tensor
    label: torch.Tensor

    @property
    def batch_size(self) -> int:
        return self.data.shape[0]


class PrefetchEngine:
    """Two-buffer, one-worker batch producer.

    Args:
        batch_size: Samples per batch
        name: Used for the worker thread name and log messages
        use_threading: Fill in a background thread (default). When False,
            ``next_batch()`` fills synchronously, which is useful for
            debugging and for deterministic profiling.
        max_consecutive_failures: Consecutive undecodable records tolerated
            before giving up. None means one full pass over the source.
        pin_memory: Allocate buffers in page-locked memory (CUDA only).
    """

    def __init__(
        self,
        batch_size: int,
        name: str = "prefetch",
        use_threading: bool = True,
        max_consecutive_failures: int | None = None,
        pin_memory: bool = False,
    ) -> None:
        if batch_size <= 0:
            raise ConfigurationError(f"batch_size must be positive (got {batch_size})")
        self.batch_size = batch_size
        self.name = name
        self.use_threading = use_threading
        self.max_consecutive_failures = max_consecutive_failures
        self.pin_memory = pin_memory and torch.cuda.is_available()

        self._source: SampleSource | None = None
        self._buffers: list[Batch] = []
        self._active = 0
        self._cond = threading.Condition()
        self._ready = False
        self._filling = False
        self._stopping = False
        self._error: BaseException | None = None
        self._thread: threading.Thread | None = None
        self._started = False

        self.batches_produced = 0
        self.samples_skipped = 0

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def _allocate(self, shape: tuple[int, ...], dtype: torch.dtype) -> torch.Tensor:
        tensor = torch.zeros((self.batch_size, *shape), dtype=dtype)
        return tensor.pin_memory() if self.pin_memory else tensor

    def setup(
        self,
        source: SampleSource,
        data_shape: tuple[int, ...] | None = None,
        label_shape: tuple[int, ...] = (),
        data_dtype: torch.dtype = torch.float32,
        label_dtype: torch.dtype = torch.int64,
    ) -> None:
        """Allocate both buffers and fill the first batch synchronously.

        Raises:
            ConfigurationError: If the source cannot produce a full batch.
            LifecycleError: If the engine was already set up.
        """
        if self._source is not None:
            raise LifecycleError(f"{self.name}: setup() called twice")
        if len(source) == 0:
            raise ConfigurationError(f"{self.name}: source is empty")
        if data_shape is None:
            data_shape = source.sample_shape()

        buffers = [
            Batch(self._allocate(tuple(data_shape), data_dtype),
                  self._allocate(tuple(label_shape), label_dtype))
            for _ in range(2)
        ]
        self._active = 0
        self._fill(buffers[self._staging], source)
        self._source = source
        self._buffers = buffers
        self._ready = True
        logger.info(
            "%s: prefetch buffers %s, labels %s",
            self.name, tuple(self._buffers[0].data.shape), tuple(self._buffers[0].label.shape),
        )

    @property
    def _staging(self) -> int:
        return 1 - self._active

    @property
    def is_setup(self) -> bool:
        return self._source is not None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def data_shape(self) -> tuple[int, ...]:
        return tuple(self._buffers[0].data.shape) if self._buffers else ()

    @property
    def label_shape(self) -> tuple[int, ...]:
        return tuple(self._buffers[0].label.shape) if self._buffers else ()

    # ------------------------------------------------------------------
    # Producer
    # ------------------------------------------------------------------

    def _failure_limit(self, source: SampleSource) -> int:
        if self.max_consecutive_failures is not None:
            return self.max_consecutive_failures
        return max(len(source), 1)

    def _fill(self, batch: Batch, source: SampleSource | None = None) -> None:
        """Write ``batch_size`` samples into ``batch``, skipping bad records.

        A sample whose shape differs from the buffer slot counts as a bad record.
        """
        source = source if source is not None else self._source
        limit = self._failure_limit(source)
        slot_shape = tuple(batch.data.shape[1:])
        failures = 0
        item = 0
        while item < self.batch_size:
            try:
                sample, label = source.next_sample()
                sample = np.asarray(sample)
                if sample.shape != slot_shape:
                    raise DecodeError(
                        f"sample shape {sample.shape} does not match buffer slot {slot_shape}"
                    )
            except (DecodeError, OSError) as e:
                failures += 1
                self.samples_skipped += 1
                logger.debug("%s: skipping record (%s): %s", self.name, source.describe(), e)
                if failures >= limit:
                    raise ConfigurationError(
                        f"{self.name}: {failures} consecutive records failed to decode "
                        f"({source.describe()}); last error: {e}"
                    ) from e
                continue
            failures = 0
            batch.data[item].copy_(torch.from_numpy(sample))
            batch.label[item] = torch.as_tensor(label, dtype=batch.label.dtype)
            item += 1
        self.batches_produced += 1

    def _worker(self) -> None:
        while True:
            with self._cond:
                self._cond.wait_for(lambda: not self._ready or self._stopping)
                if self._stopping:
                    return
                self._filling = True
            try:
                self._fill(self._buffers[self._staging])
            except Exception as e:
                with self._cond:
                    self._error = e
                    self._filling = False
                    self._cond.notify_all()
                logger.error("%s: prefetch worker failed: %s", self.name, e)
                return
            with self._cond:
                self._ready = True
                self._filling = False
                self._cond.notify_all()

    def start(self) -> None:
        """Launch the background worker.

        Raises:
            LifecycleError: If called before setup() or more than once.
        """
        if self._source is None:
            raise LifecycleError(f"{self.name}: start() called before setup()")
        if self._started:
            raise LifecycleError(f"{self.name}: start() called twice")
        self._started = True
        if not self.use_threading:
            return
        with self._cond:
            self._stopping = False
        self._thread = threading.Thread(
            target=self._worker, name=f"{self.name}-prefetch", daemon=True
        )
        self._thread.start()

    # ------------------------------------------------------------------
    # Consumer
    # ------------------------------------------------------------------

    def next_batch(self) -> Batch:
        """Block until the staging batch is ready, swap roles and return it.

        Raises:
            LifecycleError: If called before setup() or after stop().
            ConfigurationError: If the worker gave up on the source.
        """
        if self._source is None:
            raise LifecycleError(f"{self.name}: next_batch() called before setup()")
        with self._cond:
            if not self._ready and not self.running:
                if self._error is not None:
                    raise self._error
                if self._thread is not None:
                    raise LifecycleError(f"{self.name}: next_batch() called after stop()")
                # no worker: fill inline
                self._fill(self._buffers[self._staging])
                self._ready = True
            self._cond.wait_for(lambda: self._ready or self._error is not None)
            if not self._ready:
                raise self._error
            self._active = self._staging
            self._ready = False
            self._cond.notify_all()
            return self._buffers[self._active]

    def advance_cursor(self, count: int) -> None:
        """Skip ``count`` records without fetching them.

        Waits for any in-flight fill to finish and holds the engine lock
        while skipping, so the producer never sees a half-moved cursor.
        Records skipped here are missing from the batch after the one
        already staged.
        """
        if self._source is None:
            raise LifecycleError(f"{self.name}: advance_cursor() called before setup()")
        if count <= 0:
            return
        with self._cond:
            self._cond.wait_for(lambda: not self._filling)
            self._source.skip(count)

    def stop(self, timeout: float | None = None) -> None:
        """Stop the worker after its current fill and wait for it to exit.

        Safe to call more than once and before start().

        Raises:
            LifecycleError: If the worker is still alive after ``timeout``.
        """
        thread = self._thread
        if thread is None:
            return
        with self._cond:
            self._stopping = True
            self._cond.notify_all()
        thread.join(timeout)
        if thread.is_alive():
            raise LifecycleError(
                f"{self.name}: prefetch worker did not exit within {timeout}s"
            )
        logger.debug("%s: prefetch worker stopped after %d batches", self.name, self.batches_produced)

    def __repr__(self) -> str:
        return (
            f"PrefetchEngine(\n"
            f"    name='{self.name}',\n"
            f"    batch_size={self.batch_size},\n"
            f"    data_shape={self.data_shape},\n"
            f"    use_threading={self.use_threading},\n"
            f"    running={self.running},\n"
            f")"
        )


__all__ = [
    "Batch",
    "CursorSampleSource",
    "PrefetchEngine",
    "SampleSource",
]
