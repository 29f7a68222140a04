"""DummyDataLayer: synthetic tops from constant, uniform or gaussian fillers."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import torch

from feedline.config import DummyDataParameter, FillerParameter
from feedline.layers.base import BaseDataLayer, Shape


def fill(tensor: torch.Tensor, filler: FillerParameter, generator: torch.Generator) -> None:
    if filler.type == "constant":
        tensor.fill_(filler.value)
    elif filler.type == "uniform":
        tensor.uniform_(filler.min, filler.max, generator=generator)
    else:
        tensor.normal_(filler.mean, filler.std, generator=generator)


class DummyDataLayer(BaseDataLayer):
    """One output per ``param.shapes`` entry.

    Zero fillers mean all-zero constants; one filler applies to every top.
    Constant tops are filled once at setup, random tops on every forward.
    """

    type_name = "DummyData"
    has_labels = False

    def __init__(self, param: DummyDataParameter, **kwargs: Any) -> None:
        super().__init__(param, **kwargs)
        self.generator = torch.Generator()
        self.generator.manual_seed(self.seed % (1 << 63))
        fillers = param.fillers or (FillerParameter(),)
        if len(fillers) == 1:
            fillers = fillers * len(param.shapes)
        self.fillers: tuple[FillerParameter, ...] = fillers
        self.tensors: list[torch.Tensor] = []

    def layer_setup(self, bottom: Sequence[torch.Tensor] | None) -> list[Shape]:
        self.tensors = [torch.empty(shape) for shape in self.param.shapes]
        for tensor, filler in zip(self.tensors, self.fillers):
            fill(tensor, filler, self.generator)
        return [tuple(shape) for shape in self.param.shapes]

    def layer_forward(self, bottom: Sequence[torch.Tensor] | None) -> list[torch.Tensor]:
        for tensor, filler in zip(self.tensors, self.fillers):
            if filler.type != "constant":
                fill(tensor, filler, self.generator)
        return list(self.tensors)


__all__ = ["DummyDataLayer"]
