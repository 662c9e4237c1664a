"""
Tests for runner selection and option merging.
"""

import pytest

from modelcarton.core.exceptions import NoCompatibleRunner, ValidationFailed
from modelcarton.core.options import LoadOpts
from modelcarton.core.versioning import SemanticVersion
from modelcarton.packs.models import RunnerInfo
from modelcarton.runners.registry import (
    RunnerDescriptor,
    RunnerRegistry,
    default_registry,
    merge_opts,
    select_runner,
)


async def _factory(context):
    return None


def descriptor(name="torch", framework="2.1.0", compat="1", release="0.1.0"):
    return RunnerDescriptor(name, framework, compat, release, _factory)


class TestSelectRunner:
    """Tests for the pure selection function."""

    def test_highest_framework_version_wins(self):
        """Test that the highest satisfying framework version is chosen."""
        descriptors = [descriptor(framework="2.0.1"), descriptor(framework="2.2.0"), descriptor(framework="1.13.0")]
        requirement = RunnerInfo("torch", ">=2.0")

        resolved = select_runner(descriptors, requirement)

        assert resolved.descriptor.framework_version == SemanticVersion(2, 2, 0)
        assert resolved.effective_range == ">=2.0"

    def test_selection_is_deterministic(self):
        """Test that repeated selections over any registration order agree."""
        descriptors = [
            descriptor(framework="2.1.0", release="0.1.0"),
            descriptor(framework="2.1.0", release="0.3.0"),
            descriptor(framework="2.1.0", release="0.2.0"),
        ]
        requirement = RunnerInfo("torch", "^2")

        results = {
            select_runner(order, requirement).descriptor.runner_release_version
            for order in (descriptors, list(reversed(descriptors)), descriptors[1:] + descriptors[:1])
            for _ in range(3)
        }

        assert results == {SemanticVersion(0, 3, 0)}

    def test_tie_goes_to_first_registered(self):
        """Test the final tie-break on identical versions."""
        async def other_factory(context):
            return None

        first = descriptor()
        second = RunnerDescriptor("torch", "2.1.0", "1", "0.1.0", other_factory)

        resolved = select_runner([first, second], RunnerInfo("torch", "*"))

        assert resolved.descriptor.factory is _factory

    def test_name_must_match_exactly(self):
        """Test that runner names are compared exactly."""
        with pytest.raises(NoCompatibleRunner):
            select_runner([descriptor(name="torch")], RunnerInfo("Torch", "*"))

    def test_compat_filter(self):
        """Test that the compat range excludes incompatible implementations."""
        descriptors = [descriptor(framework="2.2.0", compat="2"), descriptor(framework="2.1.0", compat="1")]

        resolved = select_runner(descriptors, RunnerInfo("torch", "*", runner_compat_version="=1"))
        assert resolved.descriptor.runner_compat_version == SemanticVersion(1, 0, 0)

        resolved = select_runner(descriptors, RunnerInfo("torch", "*"))
        assert resolved.descriptor.framework_version == SemanticVersion(2, 2, 0)

    def test_framework_override(self):
        """Test that the override range replaces the packed range."""
        descriptors = [descriptor(framework="1.13.1"), descriptor(framework="2.1.0")]
        requirement = RunnerInfo("torch", "^2")

        resolved = select_runner(descriptors, requirement, LoadOpts(override_required_framework_version="<2"))

        assert resolved.descriptor.framework_version == SemanticVersion(1, 13, 1)
        assert resolved.effective_range == "<2"

    def test_runner_name_override(self):
        """Test that the override name replaces the packed runner name."""
        descriptors = [descriptor(name="torch"), descriptor(name="torch-cpu")]

        resolved = select_runner(descriptors, RunnerInfo("torch", "*"), LoadOpts(override_runner_name="torch-cpu"))

        assert resolved.runner_name == "torch-cpu"

    def test_no_compatible_runner(self):
        """Test the diagnostic carried by NoCompatibleRunner."""
        descriptors = [descriptor(framework="1.13.0")]

        with pytest.raises(NoCompatibleRunner) as exc_info:
            select_runner(descriptors, RunnerInfo("torch", ">=2.0", runner_compat_version="1"))

        error = exc_info.value
        assert error.runner_name == "torch"
        assert error.required_framework_version == ">=2.0"
        assert error.candidates == [descriptors[0].to_dict()]
        assert "torch" in str(error)

    def test_empty_registry(self):
        """Test selection with nothing installed."""
        with pytest.raises(NoCompatibleRunner) as exc_info:
            select_runner([], RunnerInfo("torch", "*"))
        assert exc_info.value.candidates == []


class TestMergeOpts:
    """Tests for option overlay."""

    def test_shallow_overlay(self):
        """Test that overrides win per key and other keys are kept."""
        assert merge_opts({"a": 2, "b": 3}, {"a": 1}) == {"a": 1, "b": 3}

    def test_overlay_through_selection(self):
        """Test the overlay applied during selection."""
        requirement = RunnerInfo("torch", "*", opts={"a": 2, "b": 3})

        resolved = select_runner([descriptor()], requirement, LoadOpts(override_runner_opts={"a": 1}))

        assert resolved.opts == {"a": 1, "b": 3}
        assert requirement.opts == {"a": 2, "b": 3}

    def test_no_overrides(self):
        """Test that packed opts are used as-is."""
        assert merge_opts({"threads": 4}, None) == {"threads": 4}
        assert merge_opts(None, None) == {}

    def test_invalid_value_type(self):
        """Test that nested values are rejected."""
        with pytest.raises(ValidationFailed):
            merge_opts({"a": {"nested": True}}, None)

    def test_load_opts_rejects_invalid_values(self):
        """Test that LoadOpts enforces option value types."""
        with pytest.raises(ValidationFailed):
            LoadOpts.coerce({"override_runner_opts": {"a": [1, 2]}})
        with pytest.raises(ValidationFailed):
            LoadOpts.coerce({"unknown_option": 1})

    def test_load_opts_keeps_value_types(self):
        """Test that strict option values are not coerced."""
        opts = LoadOpts.coerce({"override_runner_opts": {"flag": True, "n": 3, "x": 0.5, "s": "3"}})

        assert opts.override_runner_opts == {"flag": True, "n": 3, "x": 0.5, "s": "3"}
        assert isinstance(opts.override_runner_opts["flag"], bool)
        assert isinstance(opts.override_runner_opts["s"], str)


class TestRunnerRegistry:
    """Tests for RunnerRegistry."""

    def test_register_and_select(self):
        """Test registering descriptors and selecting among them."""
        registry = RunnerRegistry()
        registry.register(descriptor(framework="2.0.0"))
        registry.register(descriptor(framework="2.1.0"))

        resolved = registry.select(RunnerInfo("torch", "^2"))

        assert resolved.descriptor.framework_version == SemanticVersion(2, 1, 0)
        assert "torch" in registry
        assert len(registry) == 2

    def test_reregister_replaces(self):
        """Test that registering an identical descriptor does not duplicate it."""
        registry = RunnerRegistry()
        registry.register(descriptor())
        registry.register(descriptor())

        assert len(registry) == 1

    def test_unregister(self):
        """Test removing runners by name."""
        registry = RunnerRegistry([descriptor(), descriptor(framework="2.0.0"), descriptor(name="noop")])

        assert registry.unregister("torch") == 2
        assert [d["runner_name"] for d in registry.list_runners()] == ["noop"]

    def test_default_registry_has_builtins(self):
        """Test the built-in runners."""
        registry = default_registry(load_plugins=False)

        assert "noop" in registry
        assert "python" in registry
