"""
Tests for the archive format, metadata reads and lazy handles.
"""

import json
import struct

import numpy as np
import pytest

from modelcarton.core.exceptions import (
    CorruptArchive,
    IntegrityMismatch,
    UnsupportedFormat,
    ValidationFailed,
)
from modelcarton.packs.format import (
    FORMAT_VERSION,
    MAGIC,
    PREAMBLE,
    ArchiveReader,
    ArchiveWriter,
    verify_archive,
)
from modelcarton.packs.lazy import LazyFile, LazyTensor
from modelcarton.packs.loader import ArchivePackSource, PackLoader
from modelcarton.packs.models import ModelInfo, RunnerInfo


@pytest.fixture
def archive(tmp_path, model_dir, model_info, python_runner):
    path = tmp_path / "doubler.carton"
    ArchiveWriter(path).write(model_dir, model_info, python_runner)
    return path


def rewrite_manifest(path, edit, **dump_kwargs):
    """Apply ``edit`` to the manifest dict of an archive and write it back."""
    raw = path.read_bytes()
    _, version, reserved, length = PREAMBLE.unpack(raw[:PREAMBLE.size])
    manifest = json.loads(raw[PREAMBLE.size:PREAMBLE.size + length])
    edit(manifest)

    kwargs = dump_kwargs or {"separators": (",", ":")}
    encoded = json.dumps(manifest, sort_keys=True, **kwargs).encode()
    body = raw[PREAMBLE.size + length:]
    path.write_bytes(PREAMBLE.pack(MAGIC, version, reserved, len(encoded)) + encoded + body)


class TestArchiveWriter:
    """Tests for writing archives."""

    def test_layout(self, archive):
        """Test preamble, manifest and body sizes line up."""
        raw = archive.read_bytes()
        magic, version, _, manifest_length = PREAMBLE.unpack(raw[:PREAMBLE.size])

        assert magic == MAGIC
        assert version == FORMAT_VERSION

        reader = ArchiveReader(archive)
        manifest = reader.read_manifest()
        assert reader.body_offset == PREAMBLE.size + manifest_length
        assert len(raw) == reader.body_offset + manifest.body_length
        assert manifest.payload_offset == manifest.metadata.length

    def test_verify_archive(self, archive):
        """Test that a fresh archive verifies."""
        manifest = verify_archive(archive)

        assert manifest.content_sha256 == ArchiveReader(archive).read_manifest().content_sha256

    def test_verify_detects_tampering(self, archive):
        """Test that flipping a payload byte breaks the content hash."""
        raw = bytearray(archive.read_bytes())
        raw[-1] ^= 0xFF
        archive.write_bytes(bytes(raw))

        with pytest.raises(IntegrityMismatch):
            verify_archive(archive)

    def test_verify_expected_hash(self, archive):
        """Test checking against a caller-supplied hash."""
        with pytest.raises(IntegrityMismatch):
            verify_archive(archive, expected_sha256="0" * 64)

    def test_identical_inputs_produce_identical_archives(self, tmp_path, model_dir, model_info, python_runner):
        """Test that packing is deterministic."""
        first = tmp_path / "a.carton"
        second = tmp_path / "b.carton"
        ArchiveWriter(first).write(model_dir, model_info, python_runner)
        ArchiveWriter(second).write(model_dir, model_info, python_runner)

        assert first.read_bytes() == second.read_bytes()

    def test_pack_into_source_directory(self, model_dir, model_info, python_runner):
        """Test that an archive written inside its source never packs itself or staging files."""
        output = model_dir / "doubler.carton"
        ArchiveWriter(output).write(model_dir, model_info, python_runner)
        first = output.read_bytes()
        stale = model_dir / (".doubler.carton." + "a" * 32 + ".part")
        stale.write_bytes(b"interrupted")

        ArchiveWriter(output).write(model_dir, model_info, python_runner)

        files = ArchivePackSource(output).read_contents().payload.list_files()
        assert files == ["doubler.py", "weights/params.bin"]
        assert output.read_bytes() == first
        assert sorted(p.name for p in model_dir.iterdir()) == [
            stale.name, "doubler.carton", "doubler.py", "weights",
        ]

    def test_no_temporary_files_left(self, archive):
        """Test that only the archive remains in the output directory."""
        leftovers = [p.name for p in archive.parent.iterdir() if p.name.startswith(".")]
        assert leftovers == []


class TestMetadataReader:
    """Tests for reading model info from an archive."""

    def test_metadata_reads_never_touch_payload(self, archive):
        """Test that reading model info stays inside the manifest and metadata sections."""
        source = ArchivePackSource(archive)
        source.read_contents()

        payload_start = source.reader.payload_offset
        assert source.reader.reads
        assert len(source.reader.reads) == 3
        for offset, length in source.reader.reads:
            assert offset + length <= payload_start

    def test_repeated_reads_are_equal(self, archive):
        """Test that model info read twice compares equal."""
        first = ArchivePackSource(archive).read_contents().model_info
        second = ArchivePackSource(archive).read_contents().model_info

        assert first == second
        assert first.content_sha256 == second.content_sha256 is not None

    def test_model_info_round_trip(self, archive, model_info):
        """Test that descriptive fields survive packing."""
        info = ArchivePackSource(archive).read_contents().model_info

        assert info.to_dict() == model_info.to_dict()
        assert info.required_platforms == {"x86_64-unknown-linux-gnu"}
        assert info.inputs[0].shape == ["batch", 3]

    def test_runner_info_round_trip(self, archive, python_runner):
        """Test that the runner requirement survives packing."""
        contents = PackLoader().load_archive(archive)

        assert contents.runner_info == python_runner
        assert contents.payload.list_files() == ["doubler.py", "weights/params.bin"]

    @pytest.mark.asyncio
    async def test_lazy_values(self, archive, model_info):
        """Test that lazy handles fetch the packed bytes."""
        info = ArchivePackSource(archive).read_contents().model_info

        x = await info.self_tests[0].inputs["x"].get()
        expected = await model_info.self_tests[0].inputs["x"].get()
        assert isinstance(info.self_tests[0].inputs["x"], LazyTensor)
        assert x.dtype == np.float32
        np.testing.assert_array_equal(x, expected)

        sample = info.examples[0].sample_out["y"]
        assert isinstance(sample, LazyFile)
        assert await sample.get() == b"rendered output"

        readme = await info.misc_files["README.md"].read_text()
        assert readme.startswith("# Doubler")

    @pytest.mark.asyncio
    async def test_repeated_lazy_reads_are_independent(self, archive):
        """Test that mutating a fetched tensor does not affect later fetches."""
        handle = ArchivePackSource(archive).read_contents().model_info.self_tests[0].inputs["x"]

        first = await handle.get()
        first[:] = -1
        second = await handle.get()

        assert (second >= 0).all()

    @pytest.mark.asyncio
    async def test_corrupt_entry_fails_only_that_access(self, archive):
        """Test that a damaged misc file does not invalidate other values."""
        info = ArchivePackSource(archive).read_contents().model_info
        locator = info.misc_files["README.md"].locator

        raw = bytearray(archive.read_bytes())
        raw[locator.offset] ^= 0xFF
        archive.write_bytes(bytes(raw))

        with pytest.raises(IntegrityMismatch):
            await info.misc_files["README.md"].get()
        x = await info.self_tests[0].inputs["x"].get()
        assert x.shape == (2, 3)


class TestMalformedArchives:
    """Tests for archive error handling."""

    def test_bad_magic(self, tmp_path):
        """Test that a non-carton file is rejected."""
        path = tmp_path / "bad.carton"
        path.write_bytes(b"PK\x03\x04" + b"\x00" * 64)

        with pytest.raises(CorruptArchive):
            ArchiveReader(path).read_manifest()

    def test_truncated(self, archive):
        """Test that a truncated archive is rejected."""
        archive.write_bytes(archive.read_bytes()[:PREAMBLE.size + 5])

        with pytest.raises(CorruptArchive):
            ArchiveReader(archive).read_manifest()

    def test_truncated_body_fails_verification(self, archive):
        """Test that a short body fails the size check."""
        archive.write_bytes(archive.read_bytes()[:-10])

        with pytest.raises(CorruptArchive):
            verify_archive(archive)

    def test_unparsable_manifest(self, tmp_path):
        """Test that garbage in the manifest is rejected."""
        path = tmp_path / "garbage.carton"
        path.write_bytes(PREAMBLE.pack(MAGIC, FORMAT_VERSION, 0, 4) + b"{{{{")

        with pytest.raises(CorruptArchive):
            ArchiveReader(path).read_manifest()

    def test_newer_format_version(self, archive):
        """Test that a future format version is reported as unsupported."""
        raw = bytearray(archive.read_bytes())
        struct.pack_into("<H", raw, 8, FORMAT_VERSION + 1)
        archive.write_bytes(bytes(raw))

        with pytest.raises(UnsupportedFormat) as exc_info:
            ArchiveReader(archive).read_manifest()
        assert exc_info.value.version == FORMAT_VERSION + 1

    def test_nonzero_reserved_field(self, archive):
        """Test that the reserved preamble field must be zero."""
        raw = bytearray(archive.read_bytes())
        struct.pack_into("<H", raw, 10, 1)
        archive.write_bytes(bytes(raw))

        with pytest.raises(CorruptArchive):
            ArchiveReader(archive).read_manifest()

    @pytest.mark.parametrize("edit", [
        lambda m: m.update(format_version=1.9),
        lambda m: m.update(body_length=True),
        lambda m: m["metadata"].update(offset=-1),
        lambda m: m["metadata"].update(sha256=m["metadata"]["sha256"].upper()),
        lambda m: m["payload"].update(offset=m["payload"]["offset"] + 1),
        lambda m: m["metadata"].update(length=m["metadata"]["length"] - 1),
    ])
    def test_invalid_manifest_fields(self, archive, edit):
        """Test that manifest fields are type checked and must tile the body."""
        rewrite_manifest(archive, edit)

        with pytest.raises(CorruptArchive):
            ArchiveReader(archive).read_manifest()

    def test_non_canonical_manifest(self, archive):
        """Test that a re-encoded manifest with the same fields is rejected."""
        rewrite_manifest(archive, lambda m: None, indent=1)

        with pytest.raises(CorruptArchive):
            ArchiveReader(archive).read_manifest()

    def test_verify_checks_metadata_hash(self, archive):
        """Test that verification catches a metadata hash changed in the manifest."""
        def edit(manifest):
            digest = manifest["metadata"]["sha256"]
            manifest["metadata"]["sha256"] = ("0" if digest[0] != "0" else "1") + digest[1:]

        rewrite_manifest(archive, edit)

        with pytest.raises(IntegrityMismatch) as exc_info:
            verify_archive(archive)
        assert exc_info.value.section == "metadata"

    def test_tampered_metadata(self, archive):
        """Test that the metadata section is checked against its own hash."""
        reader = ArchiveReader(archive)
        manifest = reader.read_manifest()
        raw = bytearray(archive.read_bytes())
        raw[reader.body_offset + manifest.metadata.length // 2] ^= 0x01
        archive.write_bytes(bytes(raw))

        with pytest.raises(IntegrityMismatch) as exc_info:
            ArchiveReader(archive).read_metadata()
        assert exc_info.value.section == "metadata"


class TestShortDescription:
    """Tests for the short description length limit."""

    @pytest.mark.asyncio
    async def test_100_characters_accepted(self, carton, model_dir, noop_runner, tmp_path):
        """Test that exactly 100 characters pack fine."""
        info = ModelInfo(short_description="a" * 100)

        path = await carton.pack(model_dir, noop_runner, info, tmp_path / "ok.carton")

        loaded = await carton.get_model_info(path)
        assert loaded.short_description == "a" * 100

    @pytest.mark.asyncio
    async def test_101_characters_rejected(self, carton, model_dir, noop_runner, tmp_path):
        """Test that 101 characters fail validation and write nothing."""
        info = ModelInfo(short_description="a" * 101)
        output = tmp_path / "too-long.carton"

        with pytest.raises(ValidationFailed) as exc_info:
            await carton.pack(model_dir, noop_runner, info, output)

        assert "short_description" in str(exc_info.value)
        assert not output.exists()

    @pytest.mark.asyncio
    async def test_invalid_runner_rejected(self, carton, model_dir, tmp_path):
        """Test that a malformed framework range is rejected at pack time."""
        runner = RunnerInfo(runner_name="noop", required_framework_version="not a range")

        with pytest.raises(ValidationFailed):
            await carton.pack(model_dir, runner, None, tmp_path / "x.carton")
