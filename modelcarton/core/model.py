"""
Loaded Model.

The handle returned by ``load`` and ``load_unpacked``. Inputs are checked
against the declared signature before anything reaches the runner.
"""

import logging
from typing import Any, Dict, List, Mapping, Optional

import numpy as np
from pydantic import BaseModel, Field

from modelcarton.core.device import Device
from modelcarton.core.exceptions import (
    CartonError,
    DeviceUnavailable,
    ShapeMismatch,
    UnknownInput,
    ValidationFailed,
)
from modelcarton.core.metrics import get_metrics
from modelcarton.packs.models import ModelInfo, RunnerInfo, TensorSpec
from modelcarton.runners.registry import ResolvedRunner, RunnerBackend
from modelcarton.utils.serialization import to_array


logger = logging.getLogger(__name__)


class SelfTestResult(BaseModel):
    """Outcome of one packaged self test."""
    index: int
    name: Optional[str] = None
    passed: bool
    checked_outputs: List[str] = Field(default_factory=list)
    mismatched_outputs: List[str] = Field(default_factory=list)
    error: Optional[str] = None


def check_inputs(specs: List[TensorSpec], inputs: Mapping[str, Any]) -> Dict[str, np.ndarray]:
    """
    Validate inference inputs against declared signatures.

    Symbolic dimensions must bind to the same size across all inputs of one
    call. A model that declares no inputs accepts only an empty mapping.

    Raises:
        UnknownInput: A name is not a declared input
        ValidationFailed: A declared input is missing
        ShapeMismatch: Wrong dtype, rank or dimension
    """
    known = [spec.name for spec in specs]
    unknown = sorted(set(inputs) - set(known))
    if unknown:
        raise UnknownInput(unknown, known)

    missing = [name for name in known if name not in inputs]
    if missing:
        raise ValidationFailed("inference inputs", [f"missing input '{name}'" for name in missing])

    tensors = {name: to_array(inputs[name]) for name in known}
    bindings: Dict[str, int] = {}

    for spec in specs:
        tensor = tensors[spec.name]
        if not spec.dtype.accepts(tensor.dtype):
            raise ShapeMismatch(
                spec.name,
                f"expected dtype {spec.dtype.value}, got {tensor.dtype}",
                spec.dtype.value,
                str(tensor.dtype),
            )

        shape = spec.shape
        if shape is None or isinstance(shape, str):
            continue

        if tensor.ndim != len(shape):
            raise ShapeMismatch(
                spec.name,
                f"expected {len(shape)} dimensions, got {tensor.ndim}",
                shape,
                list(tensor.shape),
            )

        for axis, (dim, size) in enumerate(zip(shape, tensor.shape)):
            if isinstance(dim, int) and dim != size:
                raise ShapeMismatch(
                    spec.name,
                    f"dimension {axis} must be {dim}, got {size}",
                    shape,
                    list(tensor.shape),
                )
            if isinstance(dim, str):
                bound = bindings.setdefault(dim, size)
                if bound != size:
                    raise ShapeMismatch(
                        spec.name,
                        f"dimension '{dim}' is {size} here but {bound} in another input",
                        shape,
                        list(tensor.shape),
                    )

    return tensors


def _outputs_match(actual: np.ndarray, expected: np.ndarray, rtol: float, atol: float) -> bool:
    if actual.shape != expected.shape:
        return False
    if expected.dtype.kind in "USO" or actual.dtype.kind in "USO":
        return bool(np.array_equal(actual, expected))
    return bool(np.allclose(actual, expected, rtol=rtol, atol=atol))


class Model:
    """
    A carton loaded into a runner.

    Example:
        async with await load("model.carton") as model:
            out = await model.infer({"x": np.ones((1, 3), dtype=np.float32)})
            results = await model.run_self_tests()
    """

    def __init__(
        self,
        model_info: ModelInfo,
        runner_info: RunnerInfo,
        runner: ResolvedRunner,
        backend: RunnerBackend,
        device: Device,
        reference: Optional[str] = None,
        device_fallback: Optional[DeviceUnavailable] = None,
    ):
        self.model_info = model_info
        self.runner_info = runner_info
        self.runner = runner
        self.device = device
        self.device_fallback = device_fallback
        self.reference = reference
        self._backend = backend
        self._closed = False
        self._metrics = get_metrics()

    @property
    def closed(self) -> bool:
        return self._closed

    async def infer(self, inputs: Mapping[str, Any]) -> Dict[str, np.ndarray]:
        """
        Run inference.

        Args:
            inputs: Input name to array-like

        Returns:
            Output name to numpy array
        """
        if self._closed:
            raise CartonError("Model is closed", {"reference": self.reference})

        tensors = check_inputs(self.model_info.inputs, inputs)

        with self._metrics.tracer.start_span(
            "carton.infer",
            attributes={"runner": self.runner.runner_name, "inputs": sorted(tensors)},
        ):
            outputs = await self._backend.infer(tensors)

        self._metrics.increment_counter("carton_inferences_total", labels={"runner": self.runner.runner_name})
        return outputs

    async def run_self_tests(self, rtol: float = 1e-5, atol: float = 1e-8) -> List[SelfTestResult]:
        """Run every packaged self test through the model."""
        results = []
        for index, test in enumerate(self.model_info.self_tests):
            results.append(await self._run_self_test(index, test, rtol, atol))

        failed = [r for r in results if not r.passed]
        if failed:
            logger.warning(f"{len(failed)}/{len(results)} self tests failed for {self.reference}")
        return results

    async def _run_self_test(self, index, test, rtol: float, atol: float) -> SelfTestResult:
        try:
            inputs = {name: await handle.get() for name, handle in test.inputs.items()}
            outputs = await self.infer(inputs)
        except CartonError as e:
            return SelfTestResult(index=index, name=test.name, passed=False, error=str(e))

        checked, mismatched = [], []
        for name, handle in sorted((test.expected_out or {}).items()):
            checked.append(name)
            expected = await handle.get()
            actual = outputs.get(name)
            if actual is None or not _outputs_match(np.asarray(actual), expected, rtol, atol):
                mismatched.append(name)

        return SelfTestResult(
            index=index,
            name=test.name,
            passed=not mismatched,
            checked_outputs=checked,
            mismatched_outputs=mismatched,
        )

    async def close(self) -> None:
        """Release runner resources. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        close = getattr(self._backend, "close", None)
        if close is not None:
            await close()

    async def __aenter__(self) -> "Model":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def __repr__(self) -> str:
        name = self.model_info.model_name or self.reference
        return f"Model({name!r}, runner={self.runner.runner_name}, device={self.device})"
