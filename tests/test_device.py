"""
Tests for device parsing and resolution.
"""

import pytest

from modelcarton.core.device import (
    Device,
    DeviceKind,
    DeviceResolver,
    GpuEnumerator,
    GpuInfo,
    StaticGpuEnumerator,
    parse_gpu_listing,
)
from modelcarton.core.exceptions import DeviceUnavailable, ValidationFailed
from modelcarton.core.metrics import get_metrics


GPU_UUID = "GPU-8a0c6f1e-2b3d-4c5e-9f00-112233445566"
MIG_UUID = "MIG-4b1c3a2d-0000-5555-aaaa-0123456789ab"

NVIDIA_SMI_OUTPUT = (
    f"GPU 0: NVIDIA A100-SXM4-40GB (UUID: {GPU_UUID})\n"
    f"  MIG 1g.5gb      Device  0: (UUID: {MIG_UUID})\n"
    "GPU 1: NVIDIA A100-SXM4-40GB (UUID: GPU-00000000-1111-2222-3333-444444444444)\n"
)


def one_gpu_resolver(**kwargs):
    return DeviceResolver(StaticGpuEnumerator([GpuInfo(0, GPU_UUID)]), **kwargs)


class TestDeviceParse:
    """Tests for Device.parse."""

    @pytest.mark.parametrize("value,expected", [
        ("cpu", Device.cpu()),
        ("CPU", Device.cpu()),
        (0, Device.gpu(index=0)),
        ("3", Device.gpu(index=3)),
        (GPU_UUID, Device.gpu(uuid=GPU_UUID)),
        (MIG_UUID, Device.gpu(uuid=MIG_UUID)),
        ("MIG-GPU-8a0c6f1e/1/0", Device.gpu(uuid="MIG-GPU-8a0c6f1e/1/0")),
    ])
    def test_valid(self, value, expected):
        """Test accepted selectors."""
        assert Device.parse(value) == expected

    @pytest.mark.parametrize("value", [-1, "-2", "gpu", "cuda:0", "", "GPU-", True, 1.5])
    def test_malformed(self, value):
        """Test that malformed selectors raise ValidationFailed."""
        with pytest.raises(ValidationFailed):
            Device.parse(value)

    def test_str(self):
        """Test display forms."""
        assert str(Device.cpu()) == "cpu"
        assert str(Device.gpu(index=2)) == "gpu:2"
        assert str(Device.gpu(index=0, uuid=GPU_UUID)) == GPU_UUID


class TestDeviceResolver:
    """Tests for DeviceResolver."""

    def test_default_without_gpu_is_cpu(self):
        """Test that no GPU and no selector gives CPU."""
        resolver = DeviceResolver(StaticGpuEnumerator([]))

        assert resolver.resolve(None) == Device.cpu()

    def test_default_with_gpu_is_gpu_zero(self):
        """Test that one GPU and no selector gives GPU 0."""
        device = one_gpu_resolver().resolve(None)

        assert device.kind is DeviceKind.GPU
        assert device.index == 0

    def test_explicit_cpu(self):
        """Test that 'cpu' is honored even when GPUs exist."""
        assert one_gpu_resolver().resolve("cpu") == Device.cpu()

    def test_present_gpu_by_index_and_uuid(self):
        """Test selecting an existing GPU."""
        resolver = one_gpu_resolver()

        assert resolver.resolve(0) == Device.gpu(index=0, uuid=GPU_UUID)
        assert resolver.resolve(GPU_UUID) == Device.gpu(index=0, uuid=GPU_UUID)

    def test_absent_uuid_falls_back_to_cpu(self, caplog):
        """Test that an unknown GPU UUID falls back to CPU with a warning."""
        resolver = DeviceResolver(StaticGpuEnumerator([]))

        with caplog.at_level("WARNING"):
            device, fallback = resolver.resolve_with_fallback("GPU-ffffffff-0000-0000-0000-000000000000")

        assert device == Device.cpu()
        assert isinstance(fallback, DeviceUnavailable)
        assert "falling back to CPU" in caplog.text
        assert get_metrics().get_counter("carton_device_fallbacks_total") == 1

    def test_absent_index_falls_back_to_cpu(self):
        """Test that a missing GPU index falls back to CPU."""
        resolver = one_gpu_resolver()

        device, fallback = resolver.resolve_with_fallback(5)

        assert device == Device.cpu()
        assert fallback.device == "gpu:5"

    def test_fallback_is_per_call(self):
        """Test that a successful resolve after a fallback reports no fallback."""
        resolver = one_gpu_resolver()

        assert resolver.resolve_with_fallback(5)[1] is not None
        assert resolver.resolve_with_fallback(0) == (Device.gpu(index=0, uuid=GPU_UUID), None)

    def test_strict_mode_raises(self):
        """Test that strict mode surfaces DeviceUnavailable."""
        resolver = one_gpu_resolver(strict=True)

        with pytest.raises(DeviceUnavailable) as exc_info:
            resolver.resolve(7)
        assert "cpu" in exc_info.value.available

    def test_malformed_selector_raises(self):
        """Test that malformed selectors are not silently degraded."""
        with pytest.raises(ValidationFailed):
            one_gpu_resolver().resolve("-1")

    def test_mig_device(self):
        """Test resolving a MIG instance on an enumerated GPU."""
        resolver = DeviceResolver(StaticGpuEnumerator(parse_gpu_listing(NVIDIA_SMI_OUTPUT)))

        device = resolver.resolve(MIG_UUID)

        assert device == Device.gpu(index=0, uuid=MIG_UUID)


class TestGpuEnumeration:
    """Tests for nvidia-smi parsing."""

    def test_parse_listing(self):
        """Test parsing GPUs and MIG instances."""
        gpus = parse_gpu_listing(NVIDIA_SMI_OUTPUT)

        assert [g.index for g in gpus] == [0, 1]
        assert gpus[0].uuid == GPU_UUID
        assert gpus[0].mig_uuids == (MIG_UUID,)
        assert gpus[1].mig_uuids == ()

    def test_missing_binary(self):
        """Test that a missing nvidia-smi means no GPUs."""
        enumerator = GpuEnumerator(command="definitely-not-nvidia-smi")

        assert enumerator.list_gpus() == []
