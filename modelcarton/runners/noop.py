"""
No-op runner: returns its inputs unchanged.

Useful for testing packaging and loading without any ML framework.
"""

from typing import Dict

import numpy as np

from modelcarton.runners.registry import RunnerContext, RunnerDescriptor


class NoopBackend:
    """Echoes every input tensor back as an output of the same name."""

    def __init__(self, context: RunnerContext):
        self.context = context

    async def infer(self, tensors: Dict[str, np.ndarray]) -> Dict[str, np.ndarray]:
        return {name: np.array(value, copy=True) for name, value in tensors.items()}

    async def close(self) -> None:
        pass


async def create_noop_backend(context: RunnerContext) -> NoopBackend:
    return NoopBackend(context)


NOOP_RUNNER = RunnerDescriptor(
    runner_name="noop",
    framework_version="0.0.1",
    runner_compat_version="1",
    runner_release_version="0.1.0",
    factory=create_noop_backend,
)
