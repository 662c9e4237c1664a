"""
Lazy Handles.

Tensors and files inside a carton are exposed as handles that carry only
addressing information. Bytes are fetched on an explicit ``await get()``;
repeated calls re-fetch and never mutate shared state.

Example:
    info = await get_model_info("model.carton")
    x = await info.self_tests[0].inputs["x"].get()   # numpy array
    readme = await info.misc_files["README.md"].read()
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Generic, Optional, TypeVar, Union

import numpy as np

from modelcarton.core.exceptions import (
    CorruptArchive,
    IntegrityMismatch,
    ReferenceNotFound,
)
from modelcarton.utils.hashing import sha256_bytes
from modelcarton.utils.serialization import decode_tensor, encode_tensor, to_array


logger = logging.getLogger(__name__)


T = TypeVar("T")


# -------------------------------------------------------------------------
# Locators
# -------------------------------------------------------------------------

class Locator(ABC):
    """Where the bytes behind a lazy handle live."""

    @abstractmethod
    def read_bytes(self) -> bytes:
        """Fetch the raw bytes (blocking)."""
        pass

    @abstractmethod
    def describe(self) -> str:
        """Human-readable address for diagnostics."""
        pass


@dataclass(frozen=True)
class ArchiveRange(Locator):
    """A byte range inside a carton archive, verified on every read."""
    path: str
    offset: int
    length: int
    sha256: str
    entry: str = ""

    def read_bytes(self) -> bytes:
        try:
            with open(self.path, "rb") as f:
                f.seek(self.offset)
                data = f.read(self.length)
        except FileNotFoundError:
            raise ReferenceNotFound(self.path, "archive no longer exists")

        if len(data) != self.length:
            raise CorruptArchive(
                self.path,
                f"entry '{self.entry}' truncated: expected {self.length} bytes, got {len(data)}",
            )

        actual = sha256_bytes(data)
        if actual != self.sha256:
            raise IntegrityMismatch(self.path, self.sha256, actual, section=f"entry '{self.entry}'")
        return data

    def describe(self) -> str:
        return f"{self.path}[{self.offset}:{self.offset + self.length}] ({self.entry})"


@dataclass(frozen=True)
class LocalFile(Locator):
    """A plain file on the local filesystem."""
    path: str

    def read_bytes(self) -> bytes:
        try:
            return Path(self.path).read_bytes()
        except FileNotFoundError:
            raise ReferenceNotFound(self.path, "file not found")

    def describe(self) -> str:
        return self.path


@dataclass(frozen=True, eq=False)
class InMemory(Locator):
    """Bytes held in memory (used when packing or loading unpacked models)."""
    data: bytes

    def read_bytes(self) -> bytes:
        return self.data

    def describe(self) -> str:
        return f"<{len(self.data)} bytes in memory>"


# -------------------------------------------------------------------------
# Handles
# -------------------------------------------------------------------------

class LazyValue(ABC, Generic[T]):
    """
    An addressable value fetched on demand.

    Handles compare equal when they point at the same bytes.
    """

    kind: str = "value"

    def __init__(self, locator: Locator):
        self.locator = locator

    async def read_bytes(self) -> bytes:
        """Fetch the raw stored bytes."""
        return await asyncio.to_thread(self.locator.read_bytes)

    @abstractmethod
    async def get(self) -> T:
        """Fetch and decode the value."""
        pass

    def __eq__(self, other: object) -> bool:
        if type(other) is not type(self):
            return NotImplemented
        return self.locator == other.locator

    def __hash__(self) -> int:
        return hash((type(self).__name__, self.locator))

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.locator.describe()})"


class LazyTensor(LazyValue[np.ndarray]):
    """Handle to a tensor stored as ``.npy`` bytes."""

    kind = "tensor"

    def __init__(self, locator: Optional[Locator] = None, array: Optional[np.ndarray] = None):
        if locator is None and array is None:
            raise ValueError("LazyTensor needs a locator or an array")
        if locator is None:
            locator = InMemory(encode_tensor(array))
        super().__init__(locator)
        self._array = array

    @classmethod
    def from_array(cls, value: Any) -> "LazyTensor":
        """Wrap an in-memory tensor; the handle keeps its own copy."""
        return cls(array=to_array(value).copy())

    async def get(self) -> np.ndarray:
        if self._array is not None:
            return self._array.copy()
        raw = await self.read_bytes()
        try:
            return decode_tensor(raw)
        except ValueError as e:
            raise CorruptArchive(self.locator.describe(), f"invalid tensor encoding: {e}")


class LazyFile(LazyValue[bytes]):
    """Handle to an arbitrary byte stream (misc files, example files, model files)."""

    kind = "file"

    @classmethod
    def from_path(cls, path: Union[str, Path]) -> "LazyFile":
        return cls(LocalFile(str(Path(path).resolve())))

    @classmethod
    def from_bytes(cls, data: bytes) -> "LazyFile":
        return cls(InMemory(bytes(data)))

    async def get(self) -> bytes:
        return await self.read_bytes()

    async def read(self) -> bytes:
        """Alias of :meth:`get`."""
        return await self.read_bytes()

    async def read_text(self, encoding: str = "utf-8") -> str:
        return (await self.read_bytes()).decode(encoding)


def as_lazy(value: Any) -> LazyValue:
    """
    Wrap a value as a lazy handle for packing.

    Lazy handles pass through; ``bytes`` become files; anything else is
    treated as a tensor.
    """
    if isinstance(value, LazyValue):
        return value
    if isinstance(value, (bytes, bytearray)):
        return LazyFile.from_bytes(bytes(value))
    return LazyTensor.from_array(value)


def as_lazy_tensors(values: Optional[Dict[str, Any]]) -> Optional[Dict[str, LazyValue]]:
    """Wrap a mapping of tensor-likes as LazyTensor handles."""
    if values is None:
        return None
    wrapped = {}
    for name, value in values.items():
        wrapped[name] = value if isinstance(value, LazyValue) else LazyTensor.from_array(value)
    return wrapped
