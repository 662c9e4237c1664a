"""
Pack Loader Module.

Reads carton contents from their two sources:
- Archives (metadata read with bounded range reads, payload lazily)
- Unpacked model directories (same contents synthesized in memory)
"""

import sys
import shutil
import logging
import tempfile
import importlib.util
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Union
from pathlib import Path, PurePosixPath
from abc import ABC, abstractmethod


from modelcarton.core.exceptions import CorruptArchive, RunnerLoadError
from modelcarton.packs.format import MODEL_PREFIX, ArchiveReader, iter_model_files
from modelcarton.packs.lazy import ArchiveRange, LazyFile, LazyTensor, LazyValue
from modelcarton.packs.models import (
    EntryKind,
    EntryRecord,
    Example,
    Manifest,
    ModelInfo,
    RunnerInfo,
    SelfTest,
    TensorSpec,
)


logger = logging.getLogger(__name__)


@dataclass
class ModelPayload:
    """
    The model files of a carton, keyed by relative POSIX path.

    ``local_dir`` is set when the files already live in a directory on disk
    (unpacked models); archive payloads are extracted on demand.
    """
    files: Dict[str, LazyFile] = field(default_factory=dict)
    local_dir: Optional[Path] = None

    def list_files(self) -> List[str]:
        return sorted(self.files)

    async def read(self, rel_path: str) -> bytes:
        return await self.files[rel_path].get()

    def materialize(self) -> Path:
        """
        Return a directory holding the model files (blocking).

        Unpacked payloads return their own directory; everything else is
        extracted into a fresh temporary directory that the caller owns.
        """
        if self.local_dir is not None:
            return self.local_dir

        target = Path(tempfile.mkdtemp(prefix="carton_model_"))
        try:
            for rel_path, handle in self.files.items():
                dest = target.joinpath(*PurePosixPath(rel_path).parts)
                dest.parent.mkdir(parents=True, exist_ok=True)
                dest.write_bytes(handle.locator.read_bytes())
        except BaseException:
            shutil.rmtree(target, ignore_errors=True)
            raise

        logger.debug(f"Extracted {len(self.files)} model files to {target}")
        return target


@dataclass
class PackContents:
    """Everything a loaded carton provides, before a runner is chosen."""
    model_info: ModelInfo
    runner_info: RunnerInfo
    payload: ModelPayload
    manifest: Optional[Manifest] = None
    reference: Optional[str] = None


class PackSource(ABC):
    """Abstract base class for pack sources."""

    @abstractmethod
    def read_contents(self) -> PackContents:
        """Read model info, runner info and the payload index."""
        pass

    @abstractmethod
    def describe(self) -> str:
        """Get a human-readable name for the source."""
        pass


class ArchivePackSource(PackSource):
    """Read a carton archive without touching payload bytes."""

    def __init__(self, path: Union[str, Path], reference: Optional[str] = None):
        self.path = Path(path)
        self.reference = reference or str(path)
        self.reader = ArchiveReader(self.path, self.reference)

    def describe(self) -> str:
        return self.reference

    def read_contents(self) -> PackContents:
        manifest, metadata = self.reader.read_metadata()
        payload_offset = self.reader.payload_offset

        try:
            entries = {
                name: EntryRecord.from_dict(name, record)
                for name, record in metadata["entries"].items()
            }
            runner_info = RunnerInfo.from_dict(metadata["runner"])
        except (KeyError, ValueError, TypeError, AttributeError) as e:
            raise CorruptArchive(self.reference, f"invalid metadata: {e}")

        def resolve(name: str) -> LazyValue:
            record = entries.get(name)
            if record is None:
                raise CorruptArchive(self.reference, f"missing entry '{name}'")
            locator = ArchiveRange(
                path=str(self.path),
                offset=payload_offset + record.pointer.offset,
                length=record.pointer.length,
                sha256=record.pointer.sha256,
                entry=name,
            )
            if record.kind is EntryKind.TENSOR:
                return LazyTensor(locator)
            return LazyFile(locator)

        try:
            model_info = decode_model_info(metadata["model_info"], resolve)
        except (KeyError, ValueError, TypeError, AttributeError) as e:
            raise CorruptArchive(self.reference, f"invalid model info: {e}")
        model_info.content_sha256 = manifest.content_sha256

        files = {}
        for name in entries:
            if entries[name].kind is EntryKind.MODEL:
                files[name[len(MODEL_PREFIX):]] = resolve(name)

        return PackContents(
            model_info=model_info,
            runner_info=runner_info,
            payload=ModelPayload(files=files),
            manifest=manifest,
            reference=self.reference,
        )


class DirectoryPackSource(PackSource):
    """Synthesize carton contents from an unpacked model file or directory."""

    def __init__(
        self,
        source: Union[str, Path],
        runner_info: RunnerInfo,
        model_info: Optional[ModelInfo] = None,
    ):
        self.source = Path(source).resolve()
        self.runner_info = runner_info
        self.model_info = model_info or ModelInfo()

    def describe(self) -> str:
        return str(self.source)

    def read_contents(self) -> PackContents:
        files = {
            rel_path: LazyFile.from_path(path)
            for rel_path, path in iter_model_files(self.source)
        }
        local_dir = self.source if self.source.is_dir() else None

        return PackContents(
            model_info=replace(self.model_info, content_sha256=None),
            runner_info=RunnerInfo.from_dict(self.runner_info.to_dict()),
            payload=ModelPayload(files=files, local_dir=local_dir),
            reference=str(self.source),
        )


def decode_model_info(data: Dict[str, Any], resolve: Callable[[str], LazyValue]) -> ModelInfo:
    """
    Rebuild ModelInfo from its metadata form.

    Args:
        data: The ``model_info`` section of the metadata
        resolve: Turns an entry name into a lazy handle
    """
    def values(mapping: Optional[Dict[str, str]]) -> Optional[Dict[str, LazyValue]]:
        if mapping is None:
            return None
        return {key: resolve(name) for key, name in mapping.items()}

    return ModelInfo(
        model_name=data.get("model_name"),
        short_description=data.get("short_description"),
        model_description=data.get("model_description"),
        license=data.get("license"),
        repository=data.get("repository"),
        homepage=data.get("homepage"),
        required_platforms=set(data.get("required_platforms") or ()),
        inputs=[TensorSpec.from_dict(s) for s in data.get("inputs") or []],
        outputs=[TensorSpec.from_dict(s) for s in data.get("outputs") or []],
        self_tests=[
            SelfTest(
                name=t.get("name"),
                description=t.get("description"),
                inputs=values(t.get("inputs")) or {},
                expected_out=values(t.get("expected_out")),
            )
            for t in data.get("self_tests") or []
        ],
        examples=[
            Example(
                name=e.get("name"),
                description=e.get("description"),
                inputs=values(e.get("inputs")) or {},
                sample_out=values(e.get("sample_out")) or {},
            )
            for e in data.get("examples") or []
        ],
        misc_files=values(data.get("misc_files")) or {},
    )


def load_module(directory: Union[str, Path], module_path: str, runner_name: str = "python") -> Any:
    """
    Import a Python module or package from a model directory.

    Args:
        directory: Directory the module path is relative to
        module_path: Dotted module path (``my_model`` or ``pkg.module``)
        runner_name: Runner reported in errors

    Raises:
        RunnerLoadError: If the module cannot be found or imported
    """
    directory = Path(directory)
    parts = module_path.split(".")

    # Try as a package (directory with __init__.py)
    package_path = directory.joinpath(*parts)
    if package_path.is_dir() and (package_path / "__init__.py").exists():
        module_file = package_path / "__init__.py"
    else:
        module_file = directory.joinpath(*parts[:-1]) / f"{parts[-1]}.py"

    if not module_file.exists():
        raise RunnerLoadError(runner_name, f"module not found: {module_path}")

    # Sibling imports inside the payload resolve against its directory
    model_dir = str(directory)
    if model_dir not in sys.path:
        sys.path.insert(0, model_dir)

    spec = importlib.util.spec_from_file_location(module_path, module_file)
    if spec is None or spec.loader is None:
        raise RunnerLoadError(runner_name, f"could not load module spec: {module_path}")

    module = importlib.util.module_from_spec(spec)
    sys.modules[module_path] = module
    try:
        spec.loader.exec_module(module)
    except Exception as e:
        sys.modules.pop(module_path, None)
        raise RunnerLoadError(runner_name, f"importing {module_path} failed: {e}", e)

    return module


class PackLoader:
    """
    Loads carton contents from archives or unpacked sources.

    Example:
        loader = PackLoader()

        # Metadata only, payload stays lazy
        contents = loader.load_archive("/path/to/model.carton")

        # Same contents without writing an archive
        contents = loader.load_directory("/path/to/model", runner_info, model_info)
    """

    def __init__(self, validate: bool = True):
        """
        Initialize pack loader.

        Args:
            validate: Whether to validate unpacked model metadata
        """
        self.validate = validate

    def load_archive(self, path: Union[str, Path], reference: Optional[str] = None) -> PackContents:
        """Read a local archive's metadata (blocking)."""
        return self._load_from_source(ArchivePackSource(path, reference))

    def load_directory(
        self,
        source: Union[str, Path],
        runner_info: RunnerInfo,
        model_info: Optional[ModelInfo] = None,
    ) -> PackContents:
        """Synthesize contents for an unpacked model (blocking)."""
        if self.validate:
            from modelcarton.packs.validator import PackValidator
            PackValidator().ensure_valid(model_info or ModelInfo(), runner_info)
        return self._load_from_source(DirectoryPackSource(source, runner_info, model_info))

    def _load_from_source(self, source: PackSource) -> PackContents:
        contents = source.read_contents()
        info = contents.model_info
        logger.info(
            f"Read carton: {source.describe()} "
            f"(runner: {contents.runner_info.runner_name}, "
            f"model files: {len(contents.payload.files)}, "
            f"self tests: {len(info.self_tests)}, examples: {len(info.examples)})"
        )
        return contents
