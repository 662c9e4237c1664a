"""
Carton packs.

A carton is a single archive holding:
- The model payload (files the runner loads)
- Model info (signatures, self tests, examples, misc files)
- The runner requirement
"""

from modelcarton.packs.models import (
    DType,
    TensorSpec,
    SelfTest,
    Example,
    ModelInfo,
    RunnerInfo,
    Manifest,
)
from modelcarton.packs.lazy import LazyValue, LazyTensor, LazyFile
from modelcarton.packs.format import ArchiveReader, ArchiveWriter, verify_archive
from modelcarton.packs.loader import PackLoader, PackContents, ModelPayload
from modelcarton.packs.validator import PackValidator

__all__ = [
    "DType",
    "TensorSpec",
    "SelfTest",
    "Example",
    "ModelInfo",
    "RunnerInfo",
    "Manifest",
    "LazyValue",
    "LazyTensor",
    "LazyFile",
    "ArchiveReader",
    "ArchiveWriter",
    "verify_archive",
    "PackLoader",
    "PackContents",
    "ModelPayload",
    "PackValidator",
]
