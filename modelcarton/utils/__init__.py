"""
Utility modules for modelcarton.

Centralized utilities to avoid code duplication.
"""

from modelcarton.utils.hashing import sha256_bytes, sha256_file
from modelcarton.utils.serialization import (
    serialize_value,
    dumps_canonical,
    loads_json,
    to_array,
    encode_tensor,
    decode_tensor,
)

__all__ = [
    # Hashing
    "sha256_bytes",
    "sha256_file",
    # Serialization
    "serialize_value",
    "dumps_canonical",
    "loads_json",
    "to_array",
    "encode_tensor",
    "decode_tensor",
]
