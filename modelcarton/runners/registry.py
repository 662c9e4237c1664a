"""
Runner Registry for modelcarton.

A flat table of installed runner descriptors plus a pure selection function.
Descriptors are matched against a pack's runner requirement by name,
compat version and framework version range.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    runtime_checkable,
)

import numpy as np

from modelcarton.core.device import Device
from modelcarton.core.exceptions import NoCompatibleRunner, ValidationFailed
from modelcarton.core.options import LoadOpts
from modelcarton.core.versioning import SemanticVersion, VersionRange
from modelcarton.packs.loader import ModelPayload
from modelcarton.packs.models import ModelInfo, OptValue, RunnerInfo


logger = logging.getLogger(__name__)


ENTRY_POINT_GROUP = "modelcarton.runners"


@dataclass
class RunnerContext:
    """Everything a runner factory gets to build a backend for one model."""
    payload: ModelPayload
    model_info: ModelInfo
    opts: Dict[str, OptValue]
    device: Device


@runtime_checkable
class RunnerBackend(Protocol):
    """A loaded model inside a runner."""

    async def infer(self, tensors: Dict[str, np.ndarray]) -> Dict[str, np.ndarray]:
        ...

    async def close(self) -> None:
        ...


RunnerFactory = Callable[[RunnerContext], Awaitable[RunnerBackend]]


@dataclass(frozen=True)
class RunnerDescriptor:
    """One installed runner."""
    runner_name: str
    framework_version: SemanticVersion
    runner_compat_version: SemanticVersion
    runner_release_version: SemanticVersion
    factory: RunnerFactory = field(compare=False, repr=False)

    def __post_init__(self):
        for attr in ("framework_version", "runner_compat_version", "runner_release_version"):
            object.__setattr__(self, attr, SemanticVersion.parse(getattr(self, attr)))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "runner_name": self.runner_name,
            "framework_version": str(self.framework_version),
            "runner_compat_version": str(self.runner_compat_version),
            "runner_release_version": str(self.runner_release_version),
        }


@dataclass(frozen=True)
class ResolvedRunner:
    """The outcome of runner selection."""
    descriptor: RunnerDescriptor
    opts: Dict[str, OptValue]
    effective_range: str

    @property
    def runner_name(self) -> str:
        return self.descriptor.runner_name


def merge_opts(
    packed: Optional[Mapping[str, OptValue]],
    overrides: Optional[Mapping[str, OptValue]],
) -> Dict[str, OptValue]:
    """
    Overlay ``overrides`` on ``packed`` key by key (flat, not deep).

    Raises:
        ValidationFailed: If a value is not int, float, str or bool
    """
    merged = dict(packed or {})
    merged.update(overrides or {})

    errors = [
        f"opts[{name!r}]: expected int, float, str or bool, got {type(value).__name__}"
        for name, value in merged.items()
        if not isinstance(value, (bool, int, float, str))
    ]
    if errors:
        raise ValidationFailed("runner options", errors)
    return merged


def select_runner(
    descriptors: Sequence[RunnerDescriptor],
    requirement: RunnerInfo,
    overrides: Optional[LoadOpts] = None,
) -> ResolvedRunner:
    """
    Pick the runner for a requirement.

    Filters by name, then compat range, then the effective framework range
    (override or packed). The highest framework version wins; ties go to the
    higher release version, then the higher compat version, then the earlier
    registration.

    Raises:
        NoCompatibleRunner: If nothing is eligible
        ValidationFailed: If a range or an option is malformed
    """
    overrides = overrides or LoadOpts()
    name = overrides.override_runner_name or requirement.runner_name
    effective = overrides.override_required_framework_version or requirement.required_framework_version

    framework_range = VersionRange.parse(effective)
    compat_range = (
        VersionRange.parse(requirement.runner_compat_version)
        if requirement.runner_compat_version is not None
        else None
    )

    named = [d for d in descriptors if d.runner_name == name]
    eligible = [
        (position, d)
        for position, d in enumerate(named)
        if (compat_range is None or compat_range.matches(d.runner_compat_version))
        and framework_range.matches(d.framework_version)
    ]

    if not eligible:
        raise NoCompatibleRunner(
            name,
            effective,
            requirement.runner_compat_version,
            candidates=[d.to_dict() for d in named],
        )

    _, best = max(
        eligible,
        key=lambda item: (
            item[1].framework_version,
            item[1].runner_release_version,
            item[1].runner_compat_version,
            -item[0],
        ),
    )

    return ResolvedRunner(
        descriptor=best,
        opts=merge_opts(requirement.opts, overrides.override_runner_opts),
        effective_range=effective,
    )


class RunnerRegistry:
    """
    Catalog of installed runners.

    Supports:
    - Registration of descriptors (built-ins and entry points)
    - Deterministic selection for a pack requirement
    - Listing for diagnostics

    Example:
        registry = RunnerRegistry()
        registry.register(RunnerDescriptor("noop", "0.0.1", "1", "0.1.0", factory))

        resolved = registry.select(runner_info, LoadOpts(override_runner_opts={"threads": 2}))
    """

    def __init__(self, descriptors: Optional[Sequence[RunnerDescriptor]] = None):
        self._descriptors: List[RunnerDescriptor] = list(descriptors or [])
        self._lock = threading.Lock()

    def register(self, descriptor: RunnerDescriptor) -> None:
        """Register a runner. Re-registering an identical descriptor replaces it in place."""
        with self._lock:
            for i, existing in enumerate(self._descriptors):
                if existing == descriptor:
                    self._descriptors[i] = descriptor
                    return
            self._descriptors.append(descriptor)
        logger.debug(f"Registered runner {descriptor.runner_name} {descriptor.framework_version}")

    def unregister(self, runner_name: str) -> int:
        """Remove every descriptor with this name. Returns how many were removed."""
        with self._lock:
            before = len(self._descriptors)
            self._descriptors = [d for d in self._descriptors if d.runner_name != runner_name]
            return before - len(self._descriptors)

    def descriptors(self) -> List[RunnerDescriptor]:
        with self._lock:
            return list(self._descriptors)

    def list_runners(self) -> List[Dict[str, Any]]:
        return [d.to_dict() for d in self.descriptors()]

    def select(self, requirement: RunnerInfo, overrides: Optional[LoadOpts] = None) -> ResolvedRunner:
        resolved = select_runner(self.descriptors(), requirement, overrides)
        logger.info(
            f"Selected runner {resolved.runner_name} "
            f"(framework {resolved.descriptor.framework_version}, "
            f"release {resolved.descriptor.runner_release_version}) "
            f"for range '{resolved.effective_range}'"
        )
        return resolved

    def load_entry_points(self, group: str = ENTRY_POINT_GROUP) -> int:
        """
        Register runners advertised by installed distributions.

        Each entry point must resolve to a RunnerDescriptor or to a callable
        returning one or a list of them.
        """
        from importlib.metadata import entry_points

        loaded = 0
        for entry_point in entry_points(group=group):
            try:
                target = entry_point.load()
                found = target() if callable(target) and not isinstance(target, RunnerDescriptor) else target
            except Exception as e:
                logger.warning(f"Failed to load runner entry point {entry_point.name}: {e}")
                continue

            for descriptor in found if isinstance(found, (list, tuple)) else [found]:
                if not isinstance(descriptor, RunnerDescriptor):
                    logger.warning(f"Entry point {entry_point.name} did not provide a RunnerDescriptor")
                    continue
                self.register(descriptor)
                loaded += 1
        return loaded

    def __contains__(self, runner_name: str) -> bool:
        return any(d.runner_name == runner_name for d in self.descriptors())

    def __len__(self) -> int:
        return len(self.descriptors())

    def __repr__(self) -> str:
        return f"RunnerRegistry(runners={[d.runner_name for d in self.descriptors()]})"


def default_registry(load_plugins: bool = True) -> RunnerRegistry:
    """A registry with the built-in runners and, optionally, installed plugins."""
    from modelcarton.runners.noop import NOOP_RUNNER
    from modelcarton.runners.python import PYTHON_RUNNER

    registry = RunnerRegistry([NOOP_RUNNER, PYTHON_RUNNER])
    if load_plugins:
        registry.load_entry_points()
    return registry
