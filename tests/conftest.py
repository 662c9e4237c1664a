"""
Shared fixtures for modelcarton tests.
"""

import textwrap

import numpy as np
import pytest

from modelcarton.config import CartonSettings
from modelcarton.core.device import DeviceResolver, StaticGpuEnumerator
from modelcarton.core.metrics import MetricsCollector
from modelcarton.core.orchestrator import Carton, set_carton
from modelcarton.core.storage import ArchiveStore
from modelcarton.packs.models import (
    DType,
    Example,
    ModelInfo,
    RunnerInfo,
    SelfTest,
    TensorSpec,
)
from modelcarton.runners.registry import default_registry


MODEL_SOURCE = textwrap.dedent(
    """
    import numpy as np


    class Doubler:
        def infer_with_tensors(self, tensors):
            return {"y": tensors["x"] * 2}


    def get_model():
        return Doubler()
    """
)


@pytest.fixture(autouse=True)
def reset_metrics():
    """Fresh metrics and no global Carton for every test."""
    MetricsCollector.reset()
    set_carton(None)
    yield
    MetricsCollector.reset()
    set_carton(None)


@pytest.fixture
def settings(tmp_path):
    return CartonSettings(cache_dir=tmp_path / "cache", pack_output_dir=tmp_path / "out")


@pytest.fixture
def carton(settings):
    """A Carton with an isolated cache and no GPUs."""
    return Carton(
        settings=settings,
        store=ArchiveStore(settings=settings),
        registry=default_registry(load_plugins=False),
        device_resolver=DeviceResolver(StaticGpuEnumerator([])),
    )


@pytest.fixture
def model_dir(tmp_path):
    """A small Python model directory."""
    directory = tmp_path / "model"
    (directory / "weights").mkdir(parents=True)
    (directory / "doubler.py").write_text(MODEL_SOURCE)
    (directory / "weights" / "params.bin").write_bytes(b"\x00\x01\x02\x03" * 256)
    return directory


@pytest.fixture
def readme(tmp_path):
    path = tmp_path / "README.md"
    path.write_text("# Doubler\n\nMultiplies its input by two.\n")
    return path


@pytest.fixture
def model_info(readme):
    x = np.arange(6, dtype=np.float32).reshape(2, 3)
    return ModelInfo(
        model_name="doubler",
        short_description="Multiplies a float tensor by two",
        model_description="A tiny model used in tests.",
        license="Apache-2.0",
        repository="https://example.com/doubler",
        required_platforms={"x86_64-unknown-linux-gnu"},
        inputs=[TensorSpec("x", DType.FLOAT32, ["batch", 3], description="input")],
        outputs=[TensorSpec("y", DType.FLOAT32, ["batch", 3])],
        self_tests=[
            SelfTest(name="double", inputs={"x": x}, expected_out={"y": x * 2}),
        ],
        examples=[
            Example(
                name="picture",
                inputs={"x": x},
                sample_out={"y": b"rendered output"},
            ),
        ],
        misc_files={"README.md": readme},
    )


@pytest.fixture
def python_runner():
    return RunnerInfo(
        runner_name="python",
        required_framework_version=">=3.8",
        opts={"entrypoint_package": "doubler", "entrypoint_fn": "get_model"},
    )


@pytest.fixture
def noop_runner():
    return RunnerInfo(runner_name="noop", required_framework_version="0.0.1", opts={"threads": 2})
