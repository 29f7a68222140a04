"""Common contract for data layers.

Every layer exposes the same capability set to the surrounding execution
engine:

- ``setup(bottom, top)``: establish output shapes (from the first decoded
  record where the layer has a dataset) and return them
- ``forward(bottom, top)``: return this step's output tensors, copying them
  into ``top`` when a list is given
- ``backward()``: no-op, data layers have no parameters
- ``offset_cursor(step)``: parallel-training hook that moves the dataset
  cursor without fetching; a no-op unless ``parallel_offset`` is set

Prefetching variants do not subclass an engine. PrefetchingDataLayer holds
a PrefetchEngine and hands it a SampleSource built by the variant.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from typing import Any, ClassVar

import numpy as np
import torch

from feedline.config import Phase, TransformParameter, resolve_seed, spawn_generators
from feedline.cursors import SourceCursor
from feedline.errors import LifecycleError
from feedline.prefetch import PrefetchEngine, SampleSource
from feedline.transforms import DataTransformer

logger = logging.getLogger(__name__)

Shape = tuple[int, ...]


def write_top(top: list[torch.Tensor], outputs: Sequence[torch.Tensor]) -> None:
    """Copy outputs into caller-owned top tensors, appending any that are missing."""
    for i, tensor in enumerate(outputs):
        if i < len(top):
            top[i].resize_(tensor.shape).copy_(tensor)
        else:
            top.append(tensor.clone())


class BaseDataLayer(ABC):
    """Base for all data layers.

    Args:
        param: Layer-specific parameter dataclass
        transform_param: Per-sample preprocessing options
        phase: TRAIN or TEST
        seed: Seed for every random stream in the layer. None defers to
            FEEDLINE_SEED, then OS entropy.
        output_labels: Emit the label tensor as a second output
        parallel_offset: Enable ``offset_cursor`` for parallel training
    """

    type_name: ClassVar[str] = ""
    has_labels: ClassVar[bool] = True

    def __init__(
        self,
        param: Any,
        transform_param: TransformParameter | None = None,
        phase: Phase = Phase.TRAIN,
        seed: int | None = None,
        output_labels: bool = True,
        parallel_offset: bool = False,
    ) -> None:
        self.param = param
        self.transform_param = transform_param if transform_param is not None else TransformParameter()
        self.phase = Phase(phase)
        self.seed = resolve_seed(seed)
        self.output_labels = output_labels
        self.parallel_offset = parallel_offset
        self.top_shapes: list[Shape] = []
        self._is_setup = False

    @property
    def is_setup(self) -> bool:
        return self._is_setup

    def _select(self, outputs: Sequence[Any]) -> list[Any]:
        if self.has_labels and not self.output_labels:
            return list(outputs[:1])
        return list(outputs)

    def setup(self, bottom: Sequence[torch.Tensor] | None = None, top: list[torch.Tensor] | None = None) -> list[Shape]:
        """Prepare the layer and return its output shapes."""
        if self._is_setup:
            raise LifecycleError(f"{self.type_name}: setup() called twice")
        self.top_shapes = self._select(self.layer_setup(bottom))
        self._is_setup = True
        if top is not None:
            write_top(top, [torch.zeros(shape) for shape in self.top_shapes])
        for i, shape in enumerate(self.top_shapes):
            logger.info("%s: output %d size: %s", self.type_name, i, ",".join(map(str, shape)))
        return self.top_shapes

    @abstractmethod
    def layer_setup(self, bottom: Sequence[torch.Tensor] | None) -> list[Shape]:
        """Variant setup. Returns the shapes of all outputs, labels included."""

    def forward(self, bottom: Sequence[torch.Tensor] | None = None, top: list[torch.Tensor] | None = None) -> tuple[torch.Tensor, ...]:
        """Produce this step's outputs."""
        if not self._is_setup:
            raise LifecycleError(f"{self.type_name}: forward() called before setup()")
        outputs = self._select(self.layer_forward(bottom))
        if top is not None:
            write_top(top, outputs)
        return tuple(outputs)

    @abstractmethod
    def layer_forward(self, bottom: Sequence[torch.Tensor] | None) -> list[torch.Tensor]:
        ...

    def backward(self, *args: Any, **kwargs: Any) -> None:
        """Data layers propagate no gradient."""

    def offset_cursor(self, step: int) -> None:
        """Move the dataset cursor ``step`` records forward without fetching.

        Used by a parallel-training coordinator to give each replica a
        distinct offset. Does nothing unless ``parallel_offset`` is set.
        """
        if not self.parallel_offset or step <= 0:
            return
        if not self._is_setup:
            raise LifecycleError(f"{self.type_name}: offset_cursor() called before setup()")
        self.advance_cursor(step)

    def advance_cursor(self, step: int) -> None:
        raise NotImplementedError(
            f"{self.type_name} must implement advance_cursor() to take part in parallel training"
        )

    def close(self) -> None:
        """Release files, databases and threads. No-op by default."""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class PrefetchingDataLayer(BaseDataLayer):
    """Data layer backed by a PrefetchEngine.

    Subclasses implement ``build_source()``. The layer owns three
    independent random streams: ``shuffle_rng`` (record order and
    rand_skip), ``sample_rng`` (sampling jitter such as segment offsets)
    and the transformer's own stream (crop offsets, mirror flips).

    Args:
        decoder: Replaces the variant's default ``record -> (array, label)``
            decode function.
        use_threading: Fill batches in a background thread.
        max_consecutive_failures: See PrefetchEngine.
        pin_memory: Allocate page-locked batch buffers when CUDA is present.
    """

    def __init__(
        self,
        param: Any,
        transform_param: TransformParameter | None = None,
        phase: Phase = Phase.TRAIN,
        seed: int | None = None,
        output_labels: bool = True,
        parallel_offset: bool = False,
        decoder: Callable[[Any], tuple[np.ndarray, Any]] | None = None,
        use_threading: bool = True,
        max_consecutive_failures: int | None = None,
        pin_memory: bool = False,
    ) -> None:
        super().__init__(param, transform_param, phase, seed, output_labels, parallel_offset)
        self.decoder = decoder
        self.shuffle_rng, self.sample_rng, transform_rng = spawn_generators(self.seed, 3)
        self.transformer = DataTransformer(self.transform_param, self.phase, rng=transform_rng)
        self.engine = PrefetchEngine(
            param.batch_size,
            name=self.type_name,
            use_threading=use_threading,
            max_consecutive_failures=max_consecutive_failures,
            pin_memory=pin_memory,
        )
        self.source: SampleSource | None = None

    @abstractmethod
    def build_source(self) -> SampleSource:
        """Open the dataset and return the sample strategy for the engine."""

    def label_shape(self) -> Shape:
        return ()

    def rand_skip(self, cursor: SourceCursor, rand_skip: int) -> None:
        """Skip a random number (< rand_skip) of leading records."""
        if rand_skip <= 0:
            return
        skip = int(self.shuffle_rng.integers(rand_skip))
        logger.info("%s: skipping first %d data points", self.type_name, skip)
        cursor.skip(skip)

    def layer_setup(self, bottom: Sequence[torch.Tensor] | None) -> list[Shape]:
        self.source = self.build_source()
        self.engine.setup(self.source, self.source.sample_shape(), self.label_shape())
        self.engine.start()
        return [self.engine.data_shape, self.engine.label_shape]

    def layer_forward(self, bottom: Sequence[torch.Tensor] | None) -> list[torch.Tensor]:
        batch = self.engine.next_batch()
        return [batch.data, batch.label]

    def advance_cursor(self, step: int) -> None:
        self.engine.advance_cursor(step)

    def close(self) -> None:
        self.engine.stop()

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(\n"
            f"    param={self.param!r},\n"
            f"    phase='{self.phase.value}',\n"
            f"    transformer={self.transformer!r},\n"
            f"    engine={'running' if self.engine.running else 'idle'},\n"
            f")"
        )


__all__ = [
    "BaseDataLayer",
    "PrefetchingDataLayer",
    "write_top",
]
