"""
Carton Archive Format.

Single-file layout (little endian)::

    offset 0   magic            8 bytes   b"MCARTON\\x00"
    offset 8   format_version   uint16
    offset 10  reserved         uint16
    offset 12  manifest_length  uint32
    offset 16  manifest         JSON (see Manifest)
    body       metadata section JSON, then the payload region

The metadata section holds the model info, the runner requirement and the
entry table. Every payload entry (model file, tensor, misc file) is an
independently addressable byte range with its own sha256, so readers can
fetch metadata without touching payload bytes and fetch any single entry
without reading the others.
"""

import os
import re
import uuid
import shutil
import tempfile
import struct
import hashlib
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from modelcarton.core.exceptions import (
    CorruptArchive,
    IntegrityMismatch,
    ReferenceNotFound,
    UnsupportedFormat,
)
from modelcarton.packs.lazy import LazyTensor, LazyValue, LocalFile
from modelcarton.packs.models import (
    EntryKind,
    EntryRecord,
    Manifest,
    ModelInfo,
    RunnerInfo,
    SectionPointer,
)
from modelcarton.utils.hashing import sha256_bytes, sha256_file
from modelcarton.utils.serialization import dumps_canonical, loads_json


logger = logging.getLogger(__name__)


MAGIC = b"MCARTON\x00"
FORMAT_VERSION = 1
PREAMBLE = struct.Struct("<8sHHI")
MAX_MANIFEST_LENGTH = 1 << 20
COPY_CHUNK = 1 << 20

METADATA_SECTIONS = ("model_info", "runner", "entries")

MODEL_PREFIX = "model/"

PARTIAL_ARCHIVE = re.compile(r"^\..+\.[0-9a-f]{32}\.part$")


def _is_partial_archive(name: str) -> bool:
    return PARTIAL_ARCHIVE.match(name) is not None


def iter_model_files(source: Path, exclude: Iterable[Path] = ()) -> List[Tuple[str, Path]]:
    """
    List the model payload files under ``source``.

    Partially written archives and any path in ``exclude`` are skipped, so an
    archive can be written inside the directory it packs.

    Returns:
        Sorted (relative POSIX path, absolute path) pairs

    Raises:
        ReferenceNotFound: If source does not exist
    """
    source = Path(source)
    if source.is_file():
        return [(source.name, source.resolve())]
    if not source.is_dir():
        raise ReferenceNotFound(str(source), "model source not found")

    skipped = {Path(path).resolve() for path in exclude}
    files = []
    for root, _, names in os.walk(source, followlinks=True):
        for name in names:
            if _is_partial_archive(name):
                continue
            path = Path(root) / name
            resolved = path.resolve()
            if resolved in skipped:
                continue
            files.append((path.relative_to(source).as_posix(), resolved))
    return sorted(files)


# -------------------------------------------------------------------------
# Writer
# -------------------------------------------------------------------------

EntrySource = Union[Path, bytes]


class ArchiveWriter:
    """
    Writes a carton archive.

    The payload region is staged in an anonymous temporary file, then
    preamble + manifest + metadata + payload are written to a partial file
    next to the output and atomically renamed over ``output_path``.

    Example:
        writer = ArchiveWriter("/tmp/model.carton")
        manifest = writer.write(Path("./my_model"), info, runner_info)
    """

    def __init__(self, output_path: Union[str, Path]):
        self.output_path = Path(output_path)
        self._entries: Dict[str, EntryRecord] = {}
        self._payload = None

    def write(self, source: Path, info: ModelInfo, runner: RunnerInfo) -> Manifest:
        """Write the archive and return its manifest."""
        output = self.output_path
        output.parent.mkdir(parents=True, exist_ok=True)
        token = uuid.uuid4().hex
        final_tmp = output.with_name(f".{output.name}.{token}.part")
        self._entries = {}

        try:
            with tempfile.TemporaryFile(prefix="carton-payload-") as payload:
                self._payload = payload

                for rel_path, path in iter_model_files(source, exclude=[output]):
                    self._add(MODEL_PREFIX + rel_path, EntryKind.MODEL, path)

                encoded_info = self._encode_info(info)
                metadata = {
                    "model_info": encoded_info,
                    "runner": runner.to_dict(),
                    "entries": {
                        name: record.to_dict() for name, record in self._entries.items()
                    },
                }
                metadata_bytes = dumps_canonical(metadata)
                payload_length = payload.tell()

                body_hash = hashlib.sha256(metadata_bytes)
                payload.seek(0)
                while True:
                    chunk = payload.read(COPY_CHUNK)
                    if not chunk:
                        break
                    body_hash.update(chunk)

                manifest = Manifest(
                    format_version=FORMAT_VERSION,
                    content_sha256=body_hash.hexdigest(),
                    body_length=len(metadata_bytes) + payload_length,
                    metadata=SectionPointer(0, len(metadata_bytes), sha256_bytes(metadata_bytes)),
                    payload_offset=len(metadata_bytes),
                    payload_length=payload_length,
                )
                manifest_bytes = dumps_canonical(manifest.to_dict())

                with open(final_tmp, "wb") as out:
                    out.write(PREAMBLE.pack(MAGIC, FORMAT_VERSION, 0, len(manifest_bytes)))
                    out.write(manifest_bytes)
                    out.write(metadata_bytes)
                    payload.seek(0)
                    shutil.copyfileobj(payload, out, COPY_CHUNK)
                    out.flush()
                    os.fsync(out.fileno())

            os.replace(final_tmp, output)
        finally:
            self._payload = None
            final_tmp.unlink(missing_ok=True)

        logger.info(
            f"Wrote carton {output} "
            f"(entries: {len(self._entries)}, bytes: {manifest.body_length}, "
            f"sha256: {manifest.content_sha256[:12]})"
        )
        return manifest

    def _add(self, name: str, kind: EntryKind, source: EntrySource) -> str:
        """Append one entry to the payload region."""
        payload = self._payload
        offset = payload.tell()
        digest = hashlib.sha256()

        if isinstance(source, Path):
            try:
                with open(source, "rb") as f:
                    while True:
                        chunk = f.read(COPY_CHUNK)
                        if not chunk:
                            break
                        digest.update(chunk)
                        payload.write(chunk)
            except FileNotFoundError:
                raise ReferenceNotFound(str(source), f"file for entry '{name}' not found")
        else:
            digest.update(source)
            payload.write(source)

        self._entries[name] = EntryRecord(
            name=name,
            kind=kind,
            pointer=SectionPointer(offset, payload.tell() - offset, digest.hexdigest()),
        )
        return name

    def _add_value(self, name: str, handle: LazyValue) -> str:
        kind = EntryKind.TENSOR if isinstance(handle, LazyTensor) else EntryKind.FILE
        if isinstance(handle.locator, LocalFile):
            source: EntrySource = Path(handle.locator.path)
        else:
            source = handle.locator.read_bytes()
        return self._add(name, kind, source)

    def _add_values(self, prefix: str, values: Optional[Dict[str, LazyValue]]) -> Optional[Dict[str, str]]:
        if values is None:
            return None
        return {
            key: self._add_value(f"{prefix}/{i}", values[key])
            for i, key in enumerate(sorted(values))
        }

    def _encode_info(self, info: ModelInfo) -> Dict[str, Any]:
        """Serialize model info, storing every lazy value as an entry."""
        self_tests = []
        for i, test in enumerate(info.self_tests):
            self_tests.append({
                "name": test.name,
                "description": test.description,
                "inputs": self._add_values(f"self_tests/{i}/inputs", test.inputs),
                "expected_out": self._add_values(f"self_tests/{i}/expected_out", test.expected_out),
            })

        examples = []
        for i, example in enumerate(info.examples):
            examples.append({
                "name": example.name,
                "description": example.description,
                "inputs": self._add_values(f"examples/{i}/inputs", example.inputs),
                "sample_out": self._add_values(f"examples/{i}/sample_out", example.sample_out),
            })

        misc_files = {
            path: self._add_value(f"misc/{path}", info.misc_files[path])
            for path in sorted(info.misc_files)
        }

        return {
            "model_name": info.model_name,
            "short_description": info.short_description,
            "model_description": info.model_description,
            "license": info.license,
            "repository": info.repository,
            "homepage": info.homepage,
            "required_platforms": sorted(info.required_platforms),
            "inputs": [spec.to_dict() for spec in info.inputs],
            "outputs": [spec.to_dict() for spec in info.outputs],
            "self_tests": self_tests,
            "examples": examples,
            "misc_files": misc_files,
        }


# -------------------------------------------------------------------------
# Reader
# -------------------------------------------------------------------------

class ArchiveReader:
    """
    Bounded reader for carton archives.

    Every read goes through :meth:`read_range`, which records the
    ``(offset, length)`` of the range in ``reads``.

    Example:
        reader = ArchiveReader("model.carton")
        manifest, metadata = reader.read_metadata()
    """

    def __init__(self, path: Union[str, Path], reference: Optional[str] = None):
        self.path = Path(path)
        self.reference = reference or str(path)
        self.reads: List[Tuple[int, int]] = []
        self._manifest: Optional[Manifest] = None
        self._body_offset: Optional[int] = None

    def read_range(self, offset: int, length: int) -> bytes:
        """Read exactly ``length`` bytes at ``offset``."""
        self.reads.append((offset, length))
        try:
            with open(self.path, "rb") as f:
                f.seek(offset)
                data = f.read(length)
        except FileNotFoundError:
            raise ReferenceNotFound(self.reference, "archive file not found")

        if len(data) != length:
            raise CorruptArchive(
                self.reference,
                f"truncated: wanted {length} bytes at offset {offset}, got {len(data)}",
            )
        return data

    @property
    def body_offset(self) -> int:
        if self._body_offset is None:
            self.read_manifest()
        return self._body_offset

    @property
    def payload_offset(self) -> int:
        manifest = self._manifest or self.read_manifest()
        return self.body_offset + manifest.payload_offset

    def read_manifest(self) -> Manifest:
        """
        Read and check the preamble and manifest.

        The manifest must be the canonical encoding of its own fields and its
        section pointers must tile the body exactly.

        Raises:
            CorruptArchive: Bad magic, truncated or unparsable manifest
            UnsupportedFormat: Format version newer than this library
        """
        preamble = self.read_range(0, PREAMBLE.size)
        magic, version, reserved, length = PREAMBLE.unpack(preamble)

        if magic != MAGIC:
            raise CorruptArchive(self.reference, "not a carton archive (bad magic)")
        if version < 1 or version > FORMAT_VERSION:
            raise UnsupportedFormat(self.reference, version, FORMAT_VERSION)
        if reserved != 0:
            raise CorruptArchive(self.reference, f"reserved preamble field is {reserved}, expected 0")
        if length == 0 or length > MAX_MANIFEST_LENGTH:
            raise CorruptArchive(self.reference, f"invalid manifest length {length}")

        raw = self.read_range(PREAMBLE.size, length)
        try:
            manifest = Manifest.from_dict(loads_json(raw))
        except (ValueError, KeyError, TypeError) as e:
            raise CorruptArchive(self.reference, f"unreadable manifest: {e}")

        if dumps_canonical(manifest.to_dict()) != raw:
            raise CorruptArchive(self.reference, "manifest is not canonically encoded")
        if manifest.format_version != version:
            raise CorruptArchive(
                self.reference,
                f"manifest version {manifest.format_version} disagrees with preamble {version}",
            )

        metadata = manifest.metadata
        if (
            metadata.offset != 0
            or manifest.payload_offset != metadata.length
            or metadata.length + manifest.payload_length != manifest.body_length
        ):
            raise CorruptArchive(self.reference, "manifest sections do not cover the body")

        self._manifest = manifest
        self._body_offset = PREAMBLE.size + length
        return manifest

    def read_metadata(self) -> Tuple[Manifest, Dict[str, Any]]:
        """
        Read the metadata section (never the payload).

        Raises:
            IntegrityMismatch: If the metadata section hash does not match
            CorruptArchive: If the section is unreadable or incomplete
        """
        manifest = self._manifest or self.read_manifest()
        pointer = manifest.metadata
        raw = self.read_range(self.body_offset + pointer.offset, pointer.length)

        actual = sha256_bytes(raw)
        if actual != pointer.sha256:
            raise IntegrityMismatch(self.reference, pointer.sha256, actual, section="metadata")

        try:
            data = loads_json(raw)
        except ValueError as e:
            raise CorruptArchive(self.reference, f"unreadable metadata: {e}")

        missing = [section for section in METADATA_SECTIONS if section not in data]
        if missing:
            raise CorruptArchive(self.reference, f"missing sections: {', '.join(missing)}")

        return manifest, data


def verify_archive(
    path: Union[str, Path],
    reference: Optional[str] = None,
    expected_sha256: Optional[str] = None,
) -> Manifest:
    """
    Recompute the body hash of an archive and compare it to its manifest.

    The metadata section is also checked against its own manifest pointer,
    since the body hash does not cover the manifest.

    Args:
        path: Local archive path
        reference: Name used in errors (defaults to path)
        expected_sha256: Hash the caller expects, checked in addition

    Returns:
        The verified manifest

    Raises:
        CorruptArchive: Malformed or truncated archive
        IntegrityMismatch: Hash mismatch
    """
    reference = reference or str(path)
    reader = ArchiveReader(path, reference)
    manifest = reader.read_manifest()

    size = os.path.getsize(path)
    expected_size = reader.body_offset + manifest.body_length
    if size != expected_size:
        raise CorruptArchive(reference, f"size is {size} bytes, manifest declares {expected_size}")

    actual = sha256_file(path, reader.body_offset, manifest.body_length)
    if actual != manifest.content_sha256:
        raise IntegrityMismatch(reference, manifest.content_sha256, actual)
    if expected_sha256 and expected_sha256.lower() != actual:
        raise IntegrityMismatch(reference, expected_sha256.lower(), actual)

    reader.read_metadata()
    return manifest
