"""
Serialization Utilities.

Provides consistent serialization for archive metadata and tensors.
"""

from typing import Any, Dict
from enum import Enum
from pathlib import PurePath
import io
import json

import numpy as np


def serialize_value(value: Any) -> Any:
    """
    Serialize a value for JSON/dict conversion.

    Handles common types:
    - Enum -> value
    - paths -> POSIX string
    - numpy scalars -> Python scalars
    - list/tuple/set -> recursively serialized list (sets sorted)
    - dict -> recursively serialized dict

    Args:
        value: Value to serialize

    Returns:
        JSON-serializable value
    """
    if value is None:
        return None

    if isinstance(value, Enum):
        return value.value

    if isinstance(value, PurePath):
        return value.as_posix()

    if isinstance(value, np.generic):
        return value.item()

    if isinstance(value, (set, frozenset)):
        return sorted(serialize_value(v) for v in value)

    if isinstance(value, (list, tuple)):
        return [serialize_value(v) for v in value]

    if isinstance(value, dict):
        return {str(k): serialize_value(v) for k, v in value.items()}

    # Primitives pass through
    if isinstance(value, (str, int, float, bool)):
        return value

    raise TypeError(f"Cannot serialize value of type {type(value).__name__}")


def dumps_canonical(data: Dict[str, Any]) -> bytes:
    """Encode a dict as compact, key-sorted UTF-8 JSON."""
    return json.dumps(
        serialize_value(data), sort_keys=True, separators=(",", ":")
    ).encode("utf-8")


def loads_json(raw: bytes) -> Dict[str, Any]:
    """Decode UTF-8 JSON bytes into a dict."""
    data = json.loads(raw.decode("utf-8"))
    if not isinstance(data, dict):
        raise ValueError("expected a JSON object")
    return data


def to_array(value: Any) -> np.ndarray:
    """
    Coerce a tensor-like value to a numpy array.

    Python strings and lists of strings become unicode arrays; object arrays
    holding only strings are converted the same way.
    """
    array = value if isinstance(value, np.ndarray) else np.asarray(value)
    if array.dtype == object:
        if all(isinstance(v, (str, bytes)) for v in array.flat):
            array = array.astype(str)
        else:
            raise TypeError("object arrays are only supported for strings")
    return array


def encode_tensor(value: Any) -> bytes:
    """Encode a tensor as ``.npy`` bytes (dtype, shape and order preserved)."""
    buffer = io.BytesIO()
    np.save(buffer, to_array(value), allow_pickle=False)
    return buffer.getvalue()


def decode_tensor(raw: bytes) -> np.ndarray:
    """Decode ``.npy`` bytes produced by :func:`encode_tensor`."""
    return np.load(io.BytesIO(raw), allow_pickle=False)
