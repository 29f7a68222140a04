"""feedline: asynchronous data-feeding layers for neural-network training.

Data layers load labeled samples from key/value databases, image lists,
video frame directories, in-memory arrays or HDF5 files, transform them
one sample at a time, and hand fixed-shape batches to the training loop.
Prefetching layers fill the next batch in a background thread while the
current one is consumed.

Example:
    from feedline import ImageDataLayer, ImageDataParameter, TransformParameter

    layer = ImageDataLayer(
        ImageDataParameter("train.txt", batch_size=32, shuffle=True,
                           new_height=256, new_width=256),
        transform_param=TransformParameter(crop_size=224, mirror=True),
        seed=0,
    )
    layer.setup()
    for step in range(num_steps):
        images, labels = layer.forward()   # [32, 3, 224, 224], [32]
        # Training...
    layer.close()

Offline tools:
    from feedline import convert_imageset, compute_image_mean

    convert_imageset("train.txt", "/data/images", "/data/train_lmdb", shuffle=True)
    compute_image_mean("/data/train_lmdb", "mean.npy")
"""

import logging

__version__ = "0.1.0"

# Configuration
from feedline.config import (
    DataParameter,
    DummyDataParameter,
    FillerParameter,
    HDF5DataParameter,
    HDF5OutputParameter,
    ImageDataParameter,
    MemoryDataParameter,
    Modality,
    Phase,
    TransformParameter,
    VideoDataParameter,
    WindowDataParameter,
)

# Offline tools
from feedline.convert import convert_imageset

# Storage
from feedline.db import Datum, LMDBDatabase, MemoryDatabase
from feedline.errors import (
    ConfigurationError,
    DecodeError,
    FeedlineError,
    LifecycleError,
)

# Layers
from feedline.layers import (
    LAYER_REGISTRY,
    DataLayer,
    DummyDataLayer,
    HDF5DataLayer,
    HDF5OutputLayer,
    ImageDataLayer,
    MemoryDataLayer,
    VideoDataLayer,
    WindowDataLayer,
    create_layer,
    register_layer,
)

# Engine
from feedline.prefetch import Batch, CursorSampleSource, PrefetchEngine, SampleSource
from feedline.records import (
    FlowPairRecord,
    ImageRecord,
    VideoRecord,
    read_record_list,
    read_window_file,
)
from feedline.segments import SegmentSampler
from feedline.stats import compute_image_mean
from feedline.transforms import DataTransformer

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "__version__",
    # Configuration
    "DataParameter",
    "DummyDataParameter",
    "FillerParameter",
    "HDF5DataParameter",
    "HDF5OutputParameter",
    "ImageDataParameter",
    "MemoryDataParameter",
    "Modality",
    "Phase",
    "TransformParameter",
    "VideoDataParameter",
    "WindowDataParameter",
    # Errors
    "ConfigurationError",
    "DecodeError",
    "FeedlineError",
    "LifecycleError",
    # Storage and records
    "Datum",
    "LMDBDatabase",
    "MemoryDatabase",
    "FlowPairRecord",
    "ImageRecord",
    "VideoRecord",
    "read_record_list",
    "read_window_file",
    # Engine
    "Batch",
    "CursorSampleSource",
    "DataTransformer",
    "PrefetchEngine",
    "SampleSource",
    "SegmentSampler",
    # Layers
    "LAYER_REGISTRY",
    "DataLayer",
    "DummyDataLayer",
    "HDF5DataLayer",
    "HDF5OutputLayer",
    "ImageDataLayer",
    "MemoryDataLayer",
    "VideoDataLayer",
    "WindowDataLayer",
    "create_layer",
    "register_layer",
    # Offline tools
    "compute_image_mean",
    "convert_imageset",
]
