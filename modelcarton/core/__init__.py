"""
Core components of modelcarton.
"""

from .metrics import (
    MetricsCollector,
    get_metrics,
    StructuredLogger,
    get_logger,
)
from .versioning import (
    SemanticVersion,
    VersionRange,
    satisfies,
)
from .device import Device, DeviceKind, DeviceResolver, GpuEnumerator
from .options import LoadOpts

# Exceptions
from .exceptions import (
    CartonError,
    ReferenceNotFound,
    DownloadFailed,
    IntegrityMismatch,
    CorruptArchive,
    UnsupportedFormat,
    ValidationFailed,
    NoCompatibleRunner,
    RunnerLoadError,
    UnknownInput,
    ShapeMismatch,
    DeviceUnavailable,
)

__all__ = [
    # Metrics
    "MetricsCollector",
    "get_metrics",
    "StructuredLogger",
    "get_logger",
    # Versioning
    "SemanticVersion",
    "VersionRange",
    "satisfies",
    # Devices
    "Device",
    "DeviceKind",
    "DeviceResolver",
    "GpuEnumerator",
    # Options
    "LoadOpts",
    # Exceptions
    "CartonError",
    "ReferenceNotFound",
    "DownloadFailed",
    "IntegrityMismatch",
    "CorruptArchive",
    "UnsupportedFormat",
    "ValidationFailed",
    "NoCompatibleRunner",
    "RunnerLoadError",
    "UnknownInput",
    "ShapeMismatch",
    "DeviceUnavailable",
]
