"""
Device Resolution.

Maps a user-supplied device selector to a concrete :class:`Device`:

- ``None``            -> GPU 0 if any GPU is present, else CPU
- ``"cpu"``           -> CPU
- ``0``, ``"1"``      -> GPU by index
- ``"GPU-<uuid>"``, ``"MIG-<uuid>"``, ``"MIG-GPU-<uuid>"`` -> GPU by UUID

A well-formed selector for a device that is not present falls back to CPU
with a warning; a malformed selector is a validation error.
"""

import re
import shutil
import logging
import subprocess
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple, Union

from modelcarton.core.exceptions import DeviceUnavailable, ValidationFailed
from modelcarton.core.metrics import get_metrics


logger = logging.getLogger(__name__)


class DeviceKind(str, Enum):
    CPU = "cpu"
    GPU = "gpu"


UUID_PREFIXES = ("MIG-GPU-", "GPU-", "MIG-")
UUID_PATTERN = re.compile(r"^(MIG-GPU-|GPU-|MIG-)[0-9A-Za-z][0-9A-Za-z/-]*$")
NVIDIA_SMI_LINE = re.compile(r"^GPU (\d+): .*\(UUID: (GPU-[0-9A-Za-z-]+)\)")
NVIDIA_SMI_MIG_LINE = re.compile(r"^\s+MIG .*\(UUID: (MIG-[0-9A-Za-z/-]+)\)")


@dataclass(frozen=True)
class Device:
    """A compute device: CPU, or a GPU by index or UUID."""
    kind: DeviceKind
    index: Optional[int] = None
    uuid: Optional[str] = None

    @classmethod
    def cpu(cls) -> "Device":
        return cls(DeviceKind.CPU)

    @classmethod
    def gpu(cls, index: Optional[int] = None, uuid: Optional[str] = None) -> "Device":
        return cls(DeviceKind.GPU, index=index, uuid=uuid)

    @property
    def is_cpu(self) -> bool:
        return self.kind is DeviceKind.CPU

    @classmethod
    def parse(cls, value: Union[str, int]) -> "Device":
        """
        Parse a device selector without checking availability.

        Raises:
            ValidationFailed: If the selector is malformed
        """
        if isinstance(value, bool):
            raise ValidationFailed("visible_device", [f"Invalid device: {value!r}"])

        if isinstance(value, int):
            if value < 0:
                raise ValidationFailed("visible_device", [f"Device index must be >= 0. Got: {value}"])
            return cls.gpu(index=value)

        if not isinstance(value, str):
            raise ValidationFailed("visible_device", [f"Invalid device: {value!r}"])

        text = value.strip()
        if text.lower() == "cpu":
            return cls.cpu()

        if re.fullmatch(r"[+-]?\d+", text):
            index = int(text)
            if index < 0:
                raise ValidationFailed("visible_device", [f"Device index must be >= 0. Got: {text}"])
            return cls.gpu(index=index)

        if UUID_PATTERN.match(text):
            return cls.gpu(uuid=text)

        raise ValidationFailed(
            "visible_device",
            [f"Expected 'cpu', a GPU index or a GPU-/MIG- UUID. Got: {value!r}"],
        )

    def __str__(self) -> str:
        if self.is_cpu:
            return "cpu"
        if self.uuid is not None:
            return self.uuid
        return f"gpu:{self.index}"


@dataclass(frozen=True)
class GpuInfo:
    index: int
    uuid: str
    mig_uuids: tuple = ()


class GpuEnumerator:
    """Lists the GPUs on this host using ``nvidia-smi -L``."""

    def __init__(self, command: str = "nvidia-smi", timeout_s: float = 10.0):
        self.command = command
        self.timeout_s = timeout_s

    def list_gpus(self) -> List[GpuInfo]:
        binary = shutil.which(self.command)
        if binary is None:
            return []

        try:
            result = subprocess.run(
                [binary, "-L"],
                capture_output=True,
                text=True,
                timeout=self.timeout_s,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning(f"GPU enumeration failed: {e}")
            return []

        if result.returncode != 0:
            logger.debug(f"{self.command} -L exited with {result.returncode}")
            return []
        return parse_gpu_listing(result.stdout)


class StaticGpuEnumerator(GpuEnumerator):
    """Enumerator over a fixed GPU list."""

    def __init__(self, gpus: Optional[List[GpuInfo]] = None):
        super().__init__()
        self.gpus = list(gpus or [])

    def list_gpus(self) -> List[GpuInfo]:
        return list(self.gpus)


def parse_gpu_listing(output: str) -> List[GpuInfo]:
    """Parse the output of ``nvidia-smi -L``."""
    gpus: List[GpuInfo] = []
    for line in output.splitlines():
        match = NVIDIA_SMI_LINE.match(line)
        if match:
            gpus.append(GpuInfo(index=int(match.group(1)), uuid=match.group(2)))
            continue
        mig = NVIDIA_SMI_MIG_LINE.match(line)
        if mig and gpus:
            last = gpus[-1]
            gpus[-1] = GpuInfo(last.index, last.uuid, last.mig_uuids + (mig.group(1),))
    return gpus


class DeviceResolver:
    """
    Resolves device selectors against the GPUs present on this host.

    Example:
        resolver = DeviceResolver()
        device = resolver.resolve("GPU-8a0c...")   # CPU if absent
        device = resolver.resolve(None)             # GPU 0 or CPU
    """

    def __init__(self, enumerator: Optional[GpuEnumerator] = None, strict: bool = False):
        """
        Initialize resolver.

        Args:
            enumerator: GPU source (defaults to nvidia-smi)
            strict: Raise DeviceUnavailable instead of falling back to CPU
        """
        self.enumerator = enumerator or GpuEnumerator()
        self.strict = strict
        self._gpus: Optional[List[GpuInfo]] = None

    def gpus(self) -> List[GpuInfo]:
        if self._gpus is None:
            self._gpus = self.enumerator.list_gpus()
        return self._gpus

    def available(self) -> List[str]:
        names = ["cpu"]
        for gpu in self.gpus():
            names.append(f"gpu:{gpu.index}")
            names.append(gpu.uuid)
            names.extend(gpu.mig_uuids)
        return names

    def resolve(self, visible_device: Union[str, int, None] = None) -> Device:
        """
        Resolve a selector to a present device.

        Raises:
            ValidationFailed: Malformed selector
            DeviceUnavailable: Absent device, only when strict
        """
        device, _ = self.resolve_with_fallback(visible_device)
        return device

    def resolve_with_fallback(
        self, visible_device: Union[str, int, None] = None
    ) -> Tuple[Device, Optional[DeviceUnavailable]]:
        """
        Resolve a selector, also returning the error that caused a CPU fallback.

        The second item is None unless the requested device was absent.
        """
        gpus = self.gpus()

        if visible_device is None:
            if gpus:
                return Device.gpu(index=gpus[0].index, uuid=gpus[0].uuid), None
            return Device.cpu(), None

        requested = Device.parse(visible_device)
        if requested.is_cpu:
            return requested, None

        for gpu in gpus:
            if requested.index is not None and gpu.index == requested.index:
                return Device.gpu(index=gpu.index, uuid=gpu.uuid), None
            if requested.uuid is not None:
                if requested.uuid == gpu.uuid or requested.uuid in gpu.mig_uuids:
                    return Device.gpu(index=gpu.index, uuid=requested.uuid), None
                if requested.uuid.startswith("MIG-GPU-") and gpu.uuid == requested.uuid[len("MIG-"):].split("/")[0]:
                    return Device.gpu(index=gpu.index, uuid=requested.uuid), None

        error = DeviceUnavailable(str(requested), self.available())
        if self.strict:
            raise error

        get_metrics().increment_counter("carton_device_fallbacks_total")
        logger.warning(f"Device {requested} is not available, falling back to CPU")
        return Device.cpu(), error
