"""Data layer front-ends and the layer registry.

Layers are looked up by type name:

    from feedline.layers import create_layer
    from feedline.config import ImageDataParameter

    layer = create_layer("ImageData", ImageDataParameter("train.txt", batch_size=32))
    layer.setup()
    images, labels = layer.forward()
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from feedline.config import (
    DataParameter,
    DummyDataParameter,
    HDF5DataParameter,
    HDF5OutputParameter,
    ImageDataParameter,
    MemoryDataParameter,
    VideoDataParameter,
    WindowDataParameter,
)
from feedline.errors import ConfigurationError
from feedline.layers.base import BaseDataLayer, PrefetchingDataLayer, write_top
from feedline.layers.data_layer import DataLayer
from feedline.layers.dummy_data_layer import DummyDataLayer
from feedline.layers.hdf5_layers import HDF5DataLayer, HDF5OutputLayer
from feedline.layers.image_data_layer import ImageDataLayer
from feedline.layers.memory_data_layer import MemoryDataLayer
from feedline.layers.video_data_layer import VideoDataLayer
from feedline.layers.window_data_layer import WindowDataLayer

LAYER_REGISTRY: dict[str, type[BaseDataLayer]] = {}

_PARAM_TYPES: dict[str, type] = {
    "Data": DataParameter,
    "ImageData": ImageDataParameter,
    "VideoData": VideoDataParameter,
    "MemoryData": MemoryDataParameter,
    "HDF5Data": HDF5DataParameter,
    "HDF5Output": HDF5OutputParameter,
    "DummyData": DummyDataParameter,
    "WindowData": WindowDataParameter,
}


def register_layer(cls: type[BaseDataLayer]) -> type[BaseDataLayer]:
    """Register a layer class under its ``type_name``. Usable as a decorator."""
    if not cls.type_name:
        raise ValueError(f"{cls.__name__} has no type_name")
    if LAYER_REGISTRY.get(cls.type_name, cls) is not cls:
        raise ValueError(f"Layer type '{cls.type_name}' already registered")
    LAYER_REGISTRY[cls.type_name] = cls
    return cls


for _cls in (
    DataLayer,
    ImageDataLayer,
    VideoDataLayer,
    MemoryDataLayer,
    HDF5DataLayer,
    HDF5OutputLayer,
    DummyDataLayer,
    WindowDataLayer,
):
    register_layer(_cls)


def create_layer(type_name: str, param: Any, **kwargs: Any) -> BaseDataLayer:
    """Instantiate a registered layer.

    ``param`` may be the layer's parameter dataclass or a plain mapping,
    which is converted with the dataclass's ``from_dict``.
    """
    try:
        cls = LAYER_REGISTRY[type_name]
    except KeyError:
        known = ", ".join(sorted(LAYER_REGISTRY))
        raise ConfigurationError(f"Unknown layer type: {type_name} (known types: {known})") from None
    if isinstance(param, Mapping):
        if type_name not in _PARAM_TYPES:
            raise ConfigurationError(f"Layer type {type_name} needs a parameter object, not a mapping")
        param = _PARAM_TYPES[type_name].from_dict(param)
    return cls(param, **kwargs)


__all__ = [
    "LAYER_REGISTRY",
    "BaseDataLayer",
    "DataLayer",
    "DummyDataLayer",
    "HDF5DataLayer",
    "HDF5OutputLayer",
    "ImageDataLayer",
    "MemoryDataLayer",
    "PrefetchingDataLayer",
    "VideoDataLayer",
    "WindowDataLayer",
    "create_layer",
    "register_layer",
    "write_top",
]
