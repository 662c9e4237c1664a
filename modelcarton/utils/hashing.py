"""
Hashing helpers for archive integrity checks.
"""

import hashlib
from pathlib import Path
from typing import Optional, Union


CHUNK_SIZE = 1 << 20


def sha256_bytes(data: bytes) -> str:
    """Hex sha256 of a byte string."""
    return hashlib.sha256(data).hexdigest()


def sha256_file(
    path: Union[str, Path],
    offset: int = 0,
    length: Optional[int] = None,
    chunk_size: int = CHUNK_SIZE,
) -> str:
    """
    Hex sha256 of a file, or of the byte range ``[offset, offset + length)``.

    Reads in chunks so arbitrarily large payloads hash in constant memory.
    """
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        f.seek(offset)
        remaining = length
        while remaining is None or remaining > 0:
            size = chunk_size if remaining is None else min(chunk_size, remaining)
            chunk = f.read(size)
            if not chunk:
                break
            digest.update(chunk)
            if remaining is not None:
                remaining -= len(chunk)
    return digest.hexdigest()
