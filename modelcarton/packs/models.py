"""
Pack Models and Data Structures.

Defines the core models for cartons including:
- Tensor signatures (dtype, shape)
- Self-tests and examples
- Model info and runner requirements
- The archive manifest
"""

from typing import Any, Dict, List, Optional, Set, Union
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

import numpy as np

from modelcarton.packs.lazy import (
    LazyFile,
    LazyTensor,
    LazyValue,
    as_lazy,
    as_lazy_tensors,
)


OptValue = Union[bool, int, float, str]

Dimension = Union[int, str, None]
ShapeSpec = Union[None, str, List[Dimension]]


class DType(str, Enum):
    """Tensor element types a carton can declare."""
    FLOAT32 = "float32"
    FLOAT64 = "float64"
    INT8 = "int8"
    INT16 = "int16"
    INT32 = "int32"
    INT64 = "int64"
    UINT8 = "uint8"
    UINT16 = "uint16"
    UINT32 = "uint32"
    UINT64 = "uint64"
    STRING = "string"

    @property
    def numpy_dtype(self) -> Optional[np.dtype]:
        """The numpy dtype for numeric types (None for strings)."""
        if self is DType.STRING:
            return None
        return np.dtype(self.value)

    def accepts(self, dtype: np.dtype) -> bool:
        """Check whether an array dtype is valid for this declared type."""
        if self is DType.STRING:
            return dtype.kind in ("U", "S", "O")
        return np.dtype(dtype) == self.numpy_dtype

    @classmethod
    def from_numpy(cls, dtype: np.dtype) -> "DType":
        dtype = np.dtype(dtype)
        if dtype.kind in ("U", "S", "O"):
            return cls.STRING
        return cls(dtype.name)


@dataclass
class TensorSpec:
    """Signature of one model input or output."""
    name: str
    dtype: DType
    shape: ShapeSpec = None  # None = any shape, str = any shape (named), list = per-dim
    description: Optional[str] = None
    internal_name: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.dtype, DType):
            self.dtype = DType(self.dtype)
        if isinstance(self.shape, tuple):
            self.shape = list(self.shape)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "dtype": self.dtype.value,
            "shape": self.shape,
            "description": self.description,
            "internal_name": self.internal_name,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TensorSpec":
        return cls(
            name=data["name"],
            dtype=DType(data["dtype"]),
            shape=data.get("shape"),
            description=data.get("description"),
            internal_name=data.get("internal_name"),
        )


def _describe_values(values: Optional[Dict[str, LazyValue]]) -> Optional[Dict[str, str]]:
    if values is None:
        return None
    return {name: values[name].kind for name in sorted(values)}


@dataclass
class SelfTest:
    """A packaged input/expected-output pair used to check a model runs correctly."""
    name: Optional[str] = None
    description: Optional[str] = None
    inputs: Dict[str, LazyTensor] = field(default_factory=dict)
    expected_out: Optional[Dict[str, LazyTensor]] = None

    def __post_init__(self):
        self.inputs = as_lazy_tensors(self.inputs) or {}
        self.expected_out = as_lazy_tensors(self.expected_out)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "inputs": _describe_values(self.inputs),
            "expected_out": _describe_values(self.expected_out),
        }


@dataclass
class Example:
    """A packaged input/sample-output pair; values may be tensors or files."""
    name: Optional[str] = None
    description: Optional[str] = None
    inputs: Dict[str, LazyValue] = field(default_factory=dict)
    sample_out: Dict[str, LazyValue] = field(default_factory=dict)

    def __post_init__(self):
        self.inputs = {k: as_lazy(v) for k, v in (self.inputs or {}).items()}
        self.sample_out = {k: as_lazy(v) for k, v in (self.sample_out or {}).items()}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "inputs": _describe_values(self.inputs),
            "sample_out": _describe_values(self.sample_out),
        }


@dataclass
class ModelInfo:
    """
    Everything a carton says about its model.

    Tensors and files in ``self_tests``, ``examples`` and ``misc_files`` are
    lazy handles. ``content_sha256`` is the archive content hash; it is None
    for models loaded unpacked and is ignored when comparing infos.
    """
    model_name: Optional[str] = None
    short_description: Optional[str] = None
    model_description: Optional[str] = None
    license: Optional[str] = None
    repository: Optional[str] = None
    homepage: Optional[str] = None
    required_platforms: Set[str] = field(default_factory=set)
    inputs: List[TensorSpec] = field(default_factory=list)
    outputs: List[TensorSpec] = field(default_factory=list)
    self_tests: List[SelfTest] = field(default_factory=list)
    examples: List[Example] = field(default_factory=list)
    misc_files: Dict[str, LazyFile] = field(default_factory=dict)
    content_sha256: Optional[str] = field(default=None, compare=False)

    def __post_init__(self):
        self.required_platforms = set(self.required_platforms or ())
        misc = {}
        for path, value in (self.misc_files or {}).items():
            if isinstance(value, (str, Path)):
                value = LazyFile.from_path(value)
            elif isinstance(value, (bytes, bytearray)):
                value = LazyFile.from_bytes(bytes(value))
            misc[str(path)] = value
        self.misc_files = misc

    def input_spec(self, name: str) -> Optional[TensorSpec]:
        """Look up an input signature by name."""
        for spec in self.inputs:
            if spec.name == name:
                return spec
        return None

    def list_inputs(self) -> List[str]:
        return [spec.name for spec in self.inputs]

    def list_outputs(self) -> List[str]:
        return [spec.name for spec in self.outputs]

    def to_dict(self) -> Dict[str, Any]:
        """Describe the info without fetching any payload."""
        return {
            "model_name": self.model_name,
            "short_description": self.short_description,
            "model_description": self.model_description,
            "license": self.license,
            "repository": self.repository,
            "homepage": self.homepage,
            "required_platforms": sorted(self.required_platforms),
            "inputs": [s.to_dict() for s in self.inputs],
            "outputs": [s.to_dict() for s in self.outputs],
            "self_tests": [t.to_dict() for t in self.self_tests],
            "examples": [e.to_dict() for e in self.examples],
            "misc_files": sorted(self.misc_files),
        }


@dataclass
class RunnerInfo:
    """The runner a carton needs and the options it should be started with."""
    runner_name: str
    required_framework_version: str
    runner_compat_version: Optional[str] = None
    opts: Dict[str, OptValue] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "runner_name": self.runner_name,
            "required_framework_version": self.required_framework_version,
            "runner_compat_version": self.runner_compat_version,
            "opts": dict(self.opts),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RunnerInfo":
        return cls(
            runner_name=data["runner_name"],
            required_framework_version=data["required_framework_version"],
            runner_compat_version=data.get("runner_compat_version"),
            opts=dict(data.get("opts") or {}),
        )


# -------------------------------------------------------------------------
# Archive structure
# -------------------------------------------------------------------------

class EntryKind(str, Enum):
    """Kinds of payload entries stored in an archive."""
    MODEL = "model"
    TENSOR = "tensor"
    FILE = "file"


def _uint(data: Dict[str, Any], key: str) -> int:
    """Read a non-negative integer field without coercion."""
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValueError(f"'{key}' must be a non-negative integer, got {value!r}")
    return value


def _digest(data: Dict[str, Any], key: str) -> str:
    """Read a lowercase hex sha256 field."""
    value = data[key]
    if not isinstance(value, str) or len(value) != 64 or value.strip("0123456789abcdef"):
        raise ValueError(f"'{key}' must be a lowercase hex sha256, got {value!r}")
    return value


@dataclass(frozen=True)
class SectionPointer:
    """Byte range of a section, relative to the start of the archive body."""
    offset: int
    length: int
    sha256: str

    def to_dict(self) -> Dict[str, Any]:
        return {"offset": self.offset, "length": self.length, "sha256": self.sha256}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SectionPointer":
        return cls(
            offset=_uint(data, "offset"),
            length=_uint(data, "length"),
            sha256=_digest(data, "sha256"),
        )


@dataclass(frozen=True)
class EntryRecord:
    """One independently addressable payload entry."""
    name: str
    kind: EntryKind
    pointer: SectionPointer

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, **self.pointer.to_dict()}

    @classmethod
    def from_dict(cls, name: str, data: Dict[str, Any]) -> "EntryRecord":
        return cls(
            name=name,
            kind=EntryKind(data["kind"]),
            pointer=SectionPointer.from_dict(data),
        )


@dataclass(frozen=True)
class Manifest:
    """
    Archive-level record stored right after the preamble.

    ``content_sha256`` covers the whole body (metadata section and every
    payload entry). Section offsets are relative to the body start; entry
    offsets are relative to ``payload_offset``.
    """
    format_version: int
    content_sha256: str
    body_length: int
    metadata: SectionPointer
    payload_offset: int
    payload_length: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "format_version": self.format_version,
            "content_sha256": self.content_sha256,
            "body_length": self.body_length,
            "metadata": self.metadata.to_dict(),
            "payload": {"offset": self.payload_offset, "length": self.payload_length},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Manifest":
        return cls(
            format_version=_uint(data, "format_version"),
            content_sha256=_digest(data, "content_sha256"),
            body_length=_uint(data, "body_length"),
            metadata=SectionPointer.from_dict(data["metadata"]),
            payload_offset=_uint(data["payload"], "offset"),
            payload_length=_uint(data["payload"], "length"),
        )
