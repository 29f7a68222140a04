"""MemoryDataLayer: batches pushed in by the caller.

There is no worker thread. The caller either hands over arrays it keeps
owning (``reset``) or pushes samples that the layer transforms and copies
(``add_arrays``/``add_datums``). Each forward returns the next
``batch_size`` rows, wrapping at the end.

Usage:
    layer = MemoryDataLayer(MemoryDataParameter(batch_size=4, channels=3, height=8, width=8))
    layer.setup()
    layer.reset(data, labels)   # data: float32 [N, 3, 8, 8], N % 4 == 0
    images, labels = layer.forward()
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import numpy as np
import torch

from feedline.config import MemoryDataParameter, spawn_generators
from feedline.db import Datum
from feedline.decoders import decode_datum
from feedline.errors import ConfigurationError, LifecycleError
from feedline.layers.base import BaseDataLayer, Shape
from feedline.transforms import DataTransformer


class MemoryDataLayer(BaseDataLayer):
    """Serve batches from caller-supplied memory."""

    type_name = "MemoryData"

    def __init__(self, param: MemoryDataParameter, **kwargs: Any) -> None:
        super().__init__(param, **kwargs)
        (transform_rng,) = spawn_generators(self.seed, 1)
        self.transformer = DataTransformer(self.transform_param, self.phase, rng=transform_rng)
        self.batch_size = param.batch_size
        self.sample_shape: Shape = self.transformer.infer_shape(
            (param.channels, param.height, param.width)
        )
        self._data: torch.Tensor | None = None
        self._labels: torch.Tensor | None = None
        self._n = 0
        self._pos = 0
        self.has_new_data = False

    def layer_setup(self, bottom: Sequence[torch.Tensor] | None) -> list[Shape]:
        return [(self.batch_size, *self.sample_shape), (self.batch_size,)]

    def _install(self, data: torch.Tensor, labels: torch.Tensor) -> None:
        n = data.shape[0]
        if n == 0 or n % self.batch_size != 0:
            raise ConfigurationError(
                f"Number of samples ({n}) must be a positive multiple of batch_size ({self.batch_size})"
            )
        if labels.shape[0] != n:
            raise ConfigurationError(f"Got {n} samples but {labels.shape[0]} labels")
        if tuple(data.shape[1:]) != tuple(self.sample_shape):
            raise ConfigurationError(
                f"Sample shape {tuple(data.shape[1:])} does not match {tuple(self.sample_shape)}"
            )
        self._data = data
        self._labels = labels
        self._n = n
        self._pos = 0

    def reset(self, data: np.ndarray | torch.Tensor, labels: np.ndarray | torch.Tensor) -> None:
        """Serve ``data``/``labels`` directly, without copying or transforming.

        The caller keeps ownership; numpy arrays are wrapped zero-copy, so
        they must stay alive and unchanged while the layer uses them.
        """
        self._install(torch.as_tensor(data), torch.as_tensor(labels))

    def add_arrays(self, data: Sequence[np.ndarray] | np.ndarray, labels: Sequence[int] | np.ndarray) -> None:
        """Transform and copy CHW samples into layer-owned memory."""
        if len(data) == 0:
            raise ConfigurationError("There is no data to add")
        if len(data) % self.batch_size != 0:
            raise ConfigurationError(
                f"The added data ({len(data)}) must be a multiple of the batch size ({self.batch_size})"
            )
        transformed = np.stack([self.transformer(np.asarray(sample)) for sample in data])
        self._install(
            torch.from_numpy(transformed),
            torch.as_tensor(np.asarray(labels), dtype=torch.int64),
        )
        self.has_new_data = True

    def add_datums(self, datums: Sequence[Datum]) -> None:
        """Decode, transform and copy Datum records."""
        decoded = [decode_datum(datum) for datum in datums]
        self.add_arrays([sample for sample, _ in decoded], [label for _, label in decoded])

    def set_batch_size(self, new_size: int) -> None:
        """Change the batch size. Illegal while added data is still unconsumed."""
        if self.has_new_data:
            raise LifecycleError("Can't change batch_size until current data has been consumed.")
        if new_size <= 0:
            raise ConfigurationError(f"batch_size must be positive (got {new_size})")
        if self._data is not None and self._n % new_size != 0:
            raise ConfigurationError(
                f"batch_size {new_size} does not divide the {self._n} samples currently held"
            )
        self.batch_size = new_size
        self.top_shapes = self._select([(new_size, *self.sample_shape), (new_size,)])

    def layer_forward(self, bottom: Sequence[torch.Tensor] | None) -> list[torch.Tensor]:
        if self._data is None:
            raise LifecycleError("MemoryDataLayer needs to be initialized by calling reset() or add_arrays()")
        start = self._pos
        end = start + self.batch_size
        if end <= self._n:
            outputs = [self._data[start:end], self._labels[start:end]]
        else:
            # offset_cursor left the position off a batch boundary
            index = torch.arange(start, end) % self._n
            outputs = [self._data[index], self._labels[index]]
        self._pos = end % self._n
        self.has_new_data = False
        return outputs

    def advance_cursor(self, step: int) -> None:
        if self._data is None:
            return
        self._pos = (self._pos + step) % self._n


__all__ = ["MemoryDataLayer"]
