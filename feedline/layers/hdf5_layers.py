"""HDF5 input and output layers.

HDF5DataLayer reads whole files into memory, one at a time, and serves
rows synchronously (no prefetch thread). ``param.source`` is a text file
listing one HDF5 path per line; every file must hold the datasets named in
``param.dataset_names`` with the same number of rows.

Iteration is two nested cursors: a row permutation within the current
file and a file permutation over the list. Running out of rows always
moves the file cursor, and running out of files always wraps it, whether
the list holds one file or many. With ``shuffle`` both permutations are
redrawn independently when they wrap.

HDF5OutputLayer appends every forward's bottoms to resizable datasets.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import h5py
import numpy as np
import torch

from feedline.config import HDF5DataParameter, HDF5OutputParameter, spawn_generators
from feedline.errors import ConfigurationError, LifecycleError
from feedline.layers.base import BaseDataLayer, Shape

logger = logging.getLogger(__name__)


def read_file_list(source: str | Path) -> list[str]:
    source = Path(source)
    logger.info("Loading list of HDF5 filenames from: %s", source)
    try:
        lines = source.read_text().splitlines()
    except OSError as e:
        raise ConfigurationError(f"Failed to open source file {source}: {e}") from e
    filenames = [line.strip() for line in lines if line.strip()]
    if not filenames:
        raise ConfigurationError(f"Must have at least 1 HDF5 filename listed in {source}")
    logger.info("Number of HDF5 files: %d", len(filenames))
    return filenames


class HDF5DataLayer(BaseDataLayer):
    """Serve rows from a list of HDF5 files.

    Outputs one tensor per entry of ``param.dataset_names`` (by default
    ``data`` and ``label``), each shaped ``(batch_size, *row_shape)`` and
    keeping the dataset's dtype.
    """

    type_name = "HDF5Data"
    has_labels = False

    def __init__(self, param: HDF5DataParameter, **kwargs: Any) -> None:
        super().__init__(param, **kwargs)
        self.row_rng, self.file_rng = spawn_generators(self.seed, 2)
        self.filenames: list[str] = []
        self.file_permutation = np.zeros(0, dtype=np.int64)
        self.data_permutation = np.zeros(0, dtype=np.int64)
        self.current_file = 0
        self.current_row = 0
        self.blobs: list[np.ndarray] = []
        self._row_shapes: list[Shape] = []

    @property
    def num_rows(self) -> int:
        return self.blobs[0].shape[0]

    def load_file(self, filename: str) -> None:
        """Load every dataset of ``filename`` and reset the row cursor."""
        logger.debug("Loading HDF5 file: %s", filename)
        blobs = []
        try:
            with h5py.File(filename, "r") as f:
                for name in self.param.dataset_names:
                    if name not in f:
                        raise ConfigurationError(f"HDF5 file {filename} has no dataset '{name}'")
                    blob = np.asarray(f[name][()])
                    if blob.ndim == 0:
                        raise ConfigurationError(
                            f"Dataset '{name}' in {filename} must have at least one axis"
                        )
                    blobs.append(blob)
        except OSError as e:
            raise ConfigurationError(f"Failed opening HDF5 file {filename}: {e}") from e

        rows = blobs[0].shape[0]
        for name, blob in zip(self.param.dataset_names, blobs):
            if blob.shape[0] != rows:
                raise ConfigurationError(
                    f"{filename}: dataset '{name}' has {blob.shape[0]} rows, expected {rows}"
                )
        if rows == 0:
            raise ConfigurationError(f"HDF5 file {filename} has no rows")
        row_shapes = [tuple(blob.shape[1:]) for blob in blobs]
        if self._row_shapes and row_shapes != self._row_shapes:
            raise ConfigurationError(
                f"{filename}: row shapes {row_shapes} differ from {self._row_shapes}"
            )

        self._row_shapes = row_shapes
        self.blobs = blobs
        self.data_permutation = np.arange(rows)
        self._reset_rows()
        logger.debug("Successfully loaded %d rows", rows)

    def _reset_rows(self) -> None:
        self.current_row = 0
        if self.param.shuffle:
            self.row_rng.shuffle(self.data_permutation)

    def _next_file(self) -> None:
        self.current_file += 1
        if self.current_file == len(self.filenames):
            self.current_file = 0
            if self.param.shuffle:
                self.file_rng.shuffle(self.file_permutation)
            logger.debug("Looping around to first file.")
        if len(self.filenames) > 1:
            self.load_file(self.filenames[self.file_permutation[self.current_file]])
        else:
            self._reset_rows()

    def advance_row(self) -> None:
        self.current_row += 1
        if self.current_row == self.num_rows:
            self._next_file()

    def layer_setup(self, bottom: Sequence[torch.Tensor] | None) -> list[Shape]:
        self.filenames = read_file_list(self.param.source)
        self.file_permutation = np.arange(len(self.filenames))
        if self.param.shuffle:
            self.file_rng.shuffle(self.file_permutation)
            logger.info("Successfully shuffled file permutation")
        self.current_file = 0
        self.load_file(self.filenames[self.file_permutation[0]])
        return [(self.param.batch_size, *shape) for shape in self._row_shapes]

    def layer_forward(self, bottom: Sequence[torch.Tensor] | None) -> list[torch.Tensor]:
        batch_size = self.param.batch_size
        outputs = [
            np.empty((batch_size, *shape), dtype=blob.dtype)
            for shape, blob in zip(self._row_shapes, self.blobs)
        ]
        for i in range(batch_size):
            row = self.data_permutation[self.current_row]
            for out, blob in zip(outputs, self.blobs):
                out[i] = blob[row]
            self.advance_row()
        return [torch.from_numpy(out) for out in outputs]

    def advance_cursor(self, step: int) -> None:
        for _ in range(step):
            self.advance_row()

    def __repr__(self) -> str:
        return (
            f"HDF5DataLayer(files={len(self.filenames)}, batch_size={self.param.batch_size}, "
            f"shuffle={self.param.shuffle}, file={self.current_file}, row={self.current_row})"
        )


class HDF5OutputLayer(BaseDataLayer):
    """Append bottoms to ``param.file_name``, one dataset per bottom."""

    type_name = "HDF5Output"
    has_labels = False

    def __init__(self, param: HDF5OutputParameter, **kwargs: Any) -> None:
        super().__init__(param, **kwargs)
        self._file: h5py.File | None = None

    @property
    def file_name(self) -> str:
        return self.param.file_name

    def layer_setup(self, bottom: Sequence[torch.Tensor] | None) -> list[Shape]:
        try:
            self._file = h5py.File(self.param.file_name, "w")
        except OSError as e:
            raise ConfigurationError(f"Failed to open HDF5 file {self.param.file_name}: {e}") from e
        return []

    def layer_forward(self, bottom: Sequence[torch.Tensor] | None) -> list[torch.Tensor]:
        if self._file is None:
            raise LifecycleError(f"HDF5 file {self.param.file_name} is closed")
        if bottom is None or len(bottom) != len(self.param.dataset_names):
            raise ConfigurationError(
                f"HDF5Output expects {len(self.param.dataset_names)} bottoms "
                f"({', '.join(self.param.dataset_names)})"
            )
        num = bottom[0].shape[0]
        for name, tensor in zip(self.param.dataset_names, bottom):
            array = tensor.detach().cpu().numpy()
            if array.shape[0] != num:
                raise ConfigurationError(f"Bottom '{name}' has {array.shape[0]} rows, expected {num}")
            if name not in self._file:
                self._file.create_dataset(
                    name, data=array, maxshape=(None, *array.shape[1:]), chunks=True
                )
                continue
            dataset = self._file[name]
            dataset.resize(dataset.shape[0] + num, axis=0)
            dataset[-num:] = array
        self._file.flush()
        return []

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None


__all__ = ["HDF5DataLayer", "HDF5OutputLayer", "read_file_list"]
