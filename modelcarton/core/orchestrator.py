"""
Load/Pack Orchestrator.

The four top-level operations:

- ``pack``            model directory or file -> archive path
- ``load``            reference -> resolve -> metadata -> runner -> device -> Model
- ``load_unpacked``   same as pack + load without writing an archive
- ``get_model_info``  reference -> resolve -> metadata only
"""

import uuid
import asyncio
import logging
import tempfile
from pathlib import Path
from typing import Any, Mapping, Optional, Union

from modelcarton.config import CartonSettings, get_settings
from modelcarton.core.device import DeviceResolver
from modelcarton.core.exceptions import CartonError, ReferenceNotFound, RunnerLoadError
from modelcarton.core.metrics import get_logger, get_metrics
from modelcarton.core.model import Model
from modelcarton.core.options import LoadOpts
from modelcarton.core.storage import ArchiveStore
from modelcarton.packs.format import ArchiveWriter
from modelcarton.packs.loader import PackContents, PackLoader
from modelcarton.packs.models import ModelInfo, RunnerInfo
from modelcarton.packs.validator import PackValidator
from modelcarton.runners.registry import RunnerContext, RunnerRegistry, default_registry


logger = logging.getLogger(__name__)
log = get_logger(__name__)


Reference = Union[str, Path]
LoadOptsLike = Union[LoadOpts, Mapping[str, Any], None]


class Carton:
    """
    Wires the archive store, runner registry and device resolver together.

    Example:
        carton = Carton()

        path = await carton.pack("./my_model", RunnerInfo("noop", ">=0.0.1"), info)
        info = await carton.get_model_info(path)
        model = await carton.load(path, LoadOpts(visible_device="cpu"))
    """

    def __init__(
        self,
        settings: Optional[CartonSettings] = None,
        store: Optional[ArchiveStore] = None,
        registry: Optional[RunnerRegistry] = None,
        device_resolver: Optional[DeviceResolver] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store or ArchiveStore(settings=self.settings)
        self.registry = registry or default_registry()
        self.device_resolver = device_resolver or DeviceResolver(strict=self.settings.strict_device)
        self.loader = PackLoader(validate=True)
        self.validator = PackValidator()
        self._metrics = get_metrics()

    async def pack(
        self,
        source: Reference,
        runner_info: RunnerInfo,
        model_info: Optional[ModelInfo] = None,
        output_path: Optional[Reference] = None,
    ) -> str:
        """
        Build an archive from a model directory or file.

        Returns:
            Path of the written archive

        Raises:
            ValidationFailed: Invalid model info or runner info
            ReferenceNotFound: Source or a referenced file is missing
        """
        model_info = model_info or ModelInfo()
        self.validator.ensure_valid(model_info, runner_info)

        source = Path(source)
        if not source.exists():
            raise ReferenceNotFound(str(source), "model source not found")

        output = self._output_path(source, output_path)
        with log.context(source=str(source), output=str(output)):
            with self._metrics.tracer.start_span("carton.pack", attributes={"source": str(source)}):
                manifest = await asyncio.to_thread(
                    ArchiveWriter(output).write, source, model_info, runner_info,
                )
            log.info("Packed carton", sha256=manifest.content_sha256, bytes=manifest.body_length)

        self._metrics.increment_counter("carton_packs_total")
        return str(output)

    def _output_path(self, source: Path, output_path: Optional[Reference]) -> Path:
        if output_path is not None:
            return Path(output_path)
        directory = Path(self.settings.pack_output_dir or tempfile.gettempdir())
        directory.mkdir(parents=True, exist_ok=True)
        return directory / f"{source.stem or 'model'}-{uuid.uuid4().hex[:12]}.carton"

    async def get_model_info(self, reference: Reference) -> ModelInfo:
        """Resolve a reference and read only its metadata."""
        path = await self.store.resolve(reference)
        contents = await asyncio.to_thread(self.loader.load_archive, path, str(reference))
        return contents.model_info

    async def load(self, reference: Reference, opts: LoadOptsLike = None) -> Model:
        """
        Resolve, select a runner and device, and instantiate the model.

        Raises:
            ReferenceNotFound, DownloadFailed, IntegrityMismatch, CorruptArchive,
            UnsupportedFormat, NoCompatibleRunner, ValidationFailed, RunnerLoadError
        """
        opts = LoadOpts.coerce(opts)
        with self._metrics.measure_time("carton_load_duration_seconds"):
            with self._metrics.tracer.start_span("carton.load", attributes={"reference": str(reference)}):
                path = await self.store.resolve(reference)
                contents = await asyncio.to_thread(self.loader.load_archive, path, str(reference))
                return await self._instantiate(contents, opts)

    async def load_unpacked(
        self,
        source: Reference,
        runner_info: RunnerInfo,
        model_info: Optional[ModelInfo] = None,
        opts: LoadOptsLike = None,
    ) -> Model:
        """Load a model straight from its directory without writing an archive."""
        opts = LoadOpts.coerce(opts)
        source = Path(source)
        if not source.exists():
            raise ReferenceNotFound(str(source), "model source not found")

        with self._metrics.measure_time("carton_load_duration_seconds"):
            with self._metrics.tracer.start_span("carton.load_unpacked", attributes={"source": str(source)}):
                contents = await asyncio.to_thread(
                    self.loader.load_directory, source, runner_info, model_info,
                )
                return await self._instantiate(contents, opts)

    async def _instantiate(self, contents: PackContents, opts: LoadOpts) -> Model:
        resolved = self.registry.select(contents.runner_info, opts)

        visible_device = opts.visible_device
        if visible_device is None:
            visible_device = self.settings.visible_device
        device, fallback = await asyncio.to_thread(
            self.device_resolver.resolve_with_fallback, visible_device
        )

        context = RunnerContext(
            payload=contents.payload,
            model_info=contents.model_info,
            opts=resolved.opts,
            device=device,
        )
        try:
            backend = await resolved.descriptor.factory(context)
        except CartonError:
            raise
        except Exception as e:
            raise RunnerLoadError(resolved.runner_name, str(e), e)

        logger.info(
            f"Loaded {contents.reference} with runner {resolved.runner_name} on {device}"
        )
        return Model(
            model_info=contents.model_info,
            runner_info=contents.runner_info,
            runner=resolved,
            backend=backend,
            device=device,
            reference=contents.reference,
            device_fallback=fallback,
        )


# -------------------------------------------------------------------------
# Module-level API
# -------------------------------------------------------------------------

_carton: Optional[Carton] = None


def get_carton() -> Carton:
    """Get the global Carton instance."""
    global _carton
    if _carton is None:
        _carton = Carton()
    return _carton


def set_carton(carton: Optional[Carton]) -> None:
    """Set (or with None, reset) the global Carton instance."""
    global _carton
    _carton = carton


def configure_carton(settings: CartonSettings, **kwargs: Any) -> Carton:
    """
    Configure and set the global Carton instance.

    Args:
        settings: Settings to use
        **kwargs: Passed through to Carton (store, registry, device_resolver)

    Returns:
        Configured Carton
    """
    carton = Carton(settings=settings, **kwargs)
    set_carton(carton)
    return carton


async def pack(
    source: Reference,
    runner_info: RunnerInfo,
    model_info: Optional[ModelInfo] = None,
    output_path: Optional[Reference] = None,
) -> str:
    return await get_carton().pack(source, runner_info, model_info, output_path)


async def load(reference: Reference, opts: LoadOptsLike = None) -> Model:
    return await get_carton().load(reference, opts)


async def load_unpacked(
    source: Reference,
    runner_info: RunnerInfo,
    model_info: Optional[ModelInfo] = None,
    opts: LoadOptsLike = None,
) -> Model:
    return await get_carton().load_unpacked(source, runner_info, model_info, opts)


async def get_model_info(reference: Reference) -> ModelInfo:
    return await get_carton().get_model_info(reference)
