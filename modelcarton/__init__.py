"""
modelcarton v0.1

Package ML models into self-describing cartons and load them into runners.
"""

__version__ = "0.1.0"

from .core.exceptions import CartonError
from .core.device import Device
from .core.options import LoadOpts
from .core.model import Model, SelfTestResult
from .core.orchestrator import (
    Carton,
    get_carton,
    set_carton,
    configure_carton,
    pack,
    load,
    load_unpacked,
    get_model_info,
)
from .packs.models import DType, TensorSpec, SelfTest, Example, ModelInfo, RunnerInfo
from .packs.lazy import LazyTensor, LazyFile

__all__ = [
    # Operations
    "pack",
    "load",
    "load_unpacked",
    "get_model_info",
    # Orchestrator
    "Carton",
    "get_carton",
    "set_carton",
    "configure_carton",
    # Types
    "CartonError",
    "Device",
    "LoadOpts",
    "Model",
    "SelfTestResult",
    "DType",
    "TensorSpec",
    "SelfTest",
    "Example",
    "ModelInfo",
    "RunnerInfo",
    "LazyTensor",
    "LazyFile",
]
