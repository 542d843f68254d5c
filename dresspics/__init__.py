"""Responsive image pipeline: build-time optimiser, manifest, runtime resolver and lazy display."""

import logging

from .errors import DressPicsError, EncodeError, EncoderUnavailable, ManifestError, StorageError
from .manifest import Manifest, ManifestEntry, Variant

__version__ = "0.3.0"

logging.getLogger("dresspics").addHandler(logging.NullHandler())

__all__ = [
    "DressPicsError",
    "EncodeError",
    "EncoderUnavailable",
    "Manifest",
    "ManifestEntry",
    "ManifestError",
    "StorageError",
    "Variant",
    "__version__",
]
