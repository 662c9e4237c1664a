"""
Runners: the execution backends a carton can be loaded into.

Built-in runners:
- noop: echoes its inputs
- python: imports the model from Python code in the payload

More runners can be installed through the ``modelcarton.runners`` entry point group.
"""

from modelcarton.runners.registry import (
    ENTRY_POINT_GROUP,
    ResolvedRunner,
    RunnerBackend,
    RunnerContext,
    RunnerDescriptor,
    RunnerRegistry,
    default_registry,
    merge_opts,
    select_runner,
)

__all__ = [
    "ENTRY_POINT_GROUP",
    "ResolvedRunner",
    "RunnerBackend",
    "RunnerContext",
    "RunnerDescriptor",
    "RunnerRegistry",
    "default_registry",
    "merge_opts",
    "select_runner",
]
