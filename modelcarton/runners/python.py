"""
Python runner: the model payload is Python code.

Runner opts:
    entrypoint_package  module (or package) inside the payload to import
    entrypoint_fn       function in that module returning the model object
                        (default ``get_model``)

The model object performs inference through ``infer_with_tensors``,
``infer`` or ``__call__`` (first one found). Each takes a dict of numpy
arrays and returns a dict of array-likes; sync and async methods both work.
"""

import sys
import shutil
import asyncio
import inspect
import logging
from pathlib import Path
from typing import Any, Callable, Dict, Mapping

import numpy as np

from modelcarton.core.exceptions import RunnerLoadError, ValidationFailed
from modelcarton.packs.loader import load_module
from modelcarton.runners.registry import RunnerContext, RunnerDescriptor


logger = logging.getLogger(__name__)


RUNNER_NAME = "python"
DEFAULT_ENTRYPOINT_FN = "get_model"
INFER_METHODS = ("infer_with_tensors", "infer")


def _infer_callable(model: Any) -> Callable:
    for name in INFER_METHODS:
        method = getattr(model, name, None)
        if callable(method):
            return method
    if callable(model):
        return model
    raise RunnerLoadError(
        RUNNER_NAME,
        f"model object {type(model).__name__} has no infer_with_tensors, infer or __call__",
    )


async def _call(fn: Callable, *args: Any) -> Any:
    if inspect.iscoroutinefunction(fn) or inspect.iscoroutinefunction(getattr(fn, "__call__", None)):
        return await fn(*args)
    result = await asyncio.to_thread(fn, *args)
    if inspect.isawaitable(result):
        result = await result
    return result


class PythonBackend:
    """A model object imported from the payload."""

    def __init__(self, model: Any, module_name: str, model_dir: Path, owns_dir: bool):
        self.model = model
        self.module_name = module_name
        self.model_dir = model_dir
        self.owns_dir = owns_dir
        self._infer = _infer_callable(model)

    async def infer(self, tensors: Dict[str, np.ndarray]) -> Dict[str, np.ndarray]:
        result = await _call(self._infer, tensors)
        if not isinstance(result, Mapping):
            raise ValidationFailed(
                "model output",
                [f"Expected a mapping of output name to tensor. Got {type(result).__name__}"],
            )
        return {str(name): np.asarray(value) for name, value in result.items()}

    async def close(self) -> None:
        close = getattr(self.model, "close", None)
        try:
            if callable(close):
                await _call(close)
        finally:
            sys.modules.pop(self.module_name, None)
            if self.owns_dir:
                await asyncio.to_thread(shutil.rmtree, self.model_dir, True)


async def create_python_backend(context: RunnerContext) -> PythonBackend:
    package = context.opts.get("entrypoint_package")
    if not isinstance(package, str) or not package:
        raise RunnerLoadError(RUNNER_NAME, "opts.entrypoint_package must name a module in the model")
    fn_name = context.opts.get("entrypoint_fn", DEFAULT_ENTRYPOINT_FN)
    if not isinstance(fn_name, str) or not fn_name:
        raise RunnerLoadError(RUNNER_NAME, "opts.entrypoint_fn must be a function name")

    model_dir = await asyncio.to_thread(context.payload.materialize)
    owns_dir = context.payload.local_dir is None

    try:
        module = await asyncio.to_thread(load_module, model_dir, package, RUNNER_NAME)
        entrypoint = getattr(module, fn_name, None)
        if not callable(entrypoint):
            raise RunnerLoadError(RUNNER_NAME, f"{package}.{fn_name} is not a function")
        try:
            model = await _call(entrypoint)
        except Exception as e:
            raise RunnerLoadError(RUNNER_NAME, f"{package}.{fn_name}() failed: {e}", e)
        backend = PythonBackend(model, package, model_dir, owns_dir)
    except BaseException:
        sys.modules.pop(package, None)
        if owns_dir:
            shutil.rmtree(model_dir, ignore_errors=True)
        raise

    logger.info(f"Python model loaded from {package}.{fn_name} on {context.device}")
    return backend


def _interpreter_version() -> str:
    info = sys.version_info
    return f"{info.major}.{info.minor}.{info.micro}"


PYTHON_RUNNER = RunnerDescriptor(
    runner_name=RUNNER_NAME,
    framework_version=_interpreter_version(),
    runner_compat_version="1",
    runner_release_version="0.1.0",
    factory=create_python_backend,
)
