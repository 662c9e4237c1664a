"""
Pack Validator Module.

Validates model info, runner requirements and runner options before a
carton is written or a model is loaded unpacked.
"""

import re
import logging
from typing import Any, Dict, List, Optional, Tuple
from pathlib import PurePosixPath


from modelcarton.core.exceptions import ValidationFailed
from modelcarton.core.versioning import VersionRange
from modelcarton.packs.lazy import LazyFile, LazyTensor, LazyValue
from modelcarton.packs.models import (
    ModelInfo,
    RunnerInfo,
    TensorSpec,
)


logger = logging.getLogger(__name__)


MAX_SHORT_DESCRIPTION = 100


class ValidationIssue:
    """Represents a validation problem."""

    def __init__(
        self,
        code: str,
        message: str,
        path: Optional[str] = None,
        severity: str = "error",
    ):
        self.code = code
        self.message = message
        self.path = path
        self.severity = severity

    def __str__(self) -> str:
        if self.path:
            return f"[{self.code}] {self.path}: {self.message}"
        return f"[{self.code}] {self.message}"


class PackValidator:
    """
    Validates carton metadata.

    Example:
        validator = PackValidator()

        is_valid, errors = validator.validate_model_info(info)
        is_valid, errors = validator.validate_runner_info(runner_info)

        # Or raise ValidationFailed on the first invalid part
        validator.ensure_valid(info, runner_info)
    """

    RUNNER_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
    OPT_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_.-]*$")
    PLATFORM_PATTERN = re.compile(r"^[A-Za-z0-9_.]+(-[A-Za-z0-9_.]+){2,3}$")
    URL_PATTERN = re.compile(r"^https?://\S+$")

    def __init__(self, strict: bool = False):
        """
        Initialize validator.

        Args:
            strict: Also report missing descriptive fields (as warnings)
        """
        self.strict = strict

    def validate_model_info(self, info: ModelInfo) -> Tuple[bool, List[str]]:
        """
        Validate model info.

        Args:
            info: ModelInfo to validate

        Returns:
            Tuple of (is_valid, list of error messages)
        """
        issues: List[ValidationIssue] = []

        if info.short_description is not None:
            length = len(info.short_description)
            if length > MAX_SHORT_DESCRIPTION:
                issues.append(ValidationIssue(
                    "SHORT_DESCRIPTION_TOO_LONG",
                    f"Must be {MAX_SHORT_DESCRIPTION} characters or less. Got {length}",
                    "short_description",
                ))

        if info.model_name is not None and not info.model_name.strip():
            issues.append(ValidationIssue(
                "INVALID_MODEL_NAME",
                "Model name must not be blank",
                "model_name",
            ))

        for attr in ("repository", "homepage"):
            value = getattr(info, attr)
            if value and not self.URL_PATTERN.match(value):
                issues.append(ValidationIssue(
                    "INVALID_URL",
                    f"Expected an http(s) URL. Got: {value}",
                    attr,
                ))

        for platform in sorted(info.required_platforms):
            if not isinstance(platform, str) or not self.PLATFORM_PATTERN.match(platform):
                issues.append(ValidationIssue(
                    "INVALID_PLATFORM",
                    f"Expected a target triple such as x86_64-unknown-linux-gnu. Got: {platform}",
                    "required_platforms",
                ))

        issues.extend(self._validate_specs(info.inputs, "inputs"))
        issues.extend(self._validate_specs(info.outputs, "outputs"))

        # inputs are always checked, since inference rejects undeclared names
        input_names = set(info.list_inputs())
        output_names = set(info.list_outputs()) or None

        for i, test in enumerate(info.self_tests):
            path = f"self_tests[{i}]"
            issues.extend(self._validate_values(
                test.inputs, f"{path}.inputs", tensors_only=True, declared=input_names,
            ))
            if test.expected_out is not None:
                issues.extend(self._validate_values(
                    test.expected_out, f"{path}.expected_out", tensors_only=True, declared=output_names,
                ))

        for i, example in enumerate(info.examples):
            path = f"examples[{i}]"
            issues.extend(self._validate_values(
                example.inputs, f"{path}.inputs", tensors_only=False, declared=input_names,
            ))
            issues.extend(self._validate_values(
                example.sample_out, f"{path}.sample_out", tensors_only=False, declared=output_names,
            ))

        for rel_path, handle in info.misc_files.items():
            issues.extend(self._validate_relative_path(rel_path, f"misc_files[{rel_path!r}]"))
            if not isinstance(handle, LazyFile):
                issues.append(ValidationIssue(
                    "INVALID_MISC_FILE",
                    f"Expected a file handle. Got: {type(handle).__name__}",
                    f"misc_files[{rel_path!r}]",
                ))

        if self.strict:
            if not info.model_name:
                issues.append(ValidationIssue(
                    "MISSING_MODEL_NAME", "Model name is recommended", "model_name", "warning",
                ))
            if not info.short_description:
                issues.append(ValidationIssue(
                    "MISSING_DESCRIPTION", "Short description is recommended", "short_description", "warning",
                ))

        return self._result(issues)

    def validate_runner_info(self, runner: RunnerInfo) -> Tuple[bool, List[str]]:
        """
        Validate a runner requirement.

        Returns:
            Tuple of (is_valid, list of error messages)
        """
        issues: List[ValidationIssue] = []

        if not runner.runner_name or not self.RUNNER_NAME_PATTERN.match(runner.runner_name):
            issues.append(ValidationIssue(
                "INVALID_RUNNER_NAME",
                f"Runner name must be alphanumeric with '_', '.', '-'. Got: {runner.runner_name!r}",
                "runner_name",
            ))

        issues.extend(self._validate_range(
            runner.required_framework_version, "required_framework_version",
        ))
        if runner.runner_compat_version is not None:
            issues.extend(self._validate_range(
                runner.runner_compat_version, "runner_compat_version",
            ))

        issues.extend(self._validate_opts(runner.opts, "opts"))
        return self._result(issues)

    def validate_opts(self, opts: Dict[str, Any]) -> Tuple[bool, List[str]]:
        """Validate a runner option mapping (name -> int/float/str/bool)."""
        return self._result(self._validate_opts(opts, "opts"))

    def ensure_valid(self, info: ModelInfo, runner: RunnerInfo) -> None:
        """
        Validate both parts of a carton.

        Raises:
            ValidationFailed: With every error found
        """
        _, runner_errors = self.validate_runner_info(runner)
        _, info_errors = self.validate_model_info(info)
        errors = runner_errors + info_errors
        if errors:
            raise ValidationFailed("carton", errors)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _result(self, issues: List[ValidationIssue]) -> Tuple[bool, List[str]]:
        for issue in issues:
            if issue.severity == "warning":
                logger.warning(f"Validation warning: {issue}")
        error_messages = [str(i) for i in issues if i.severity == "error"]
        return len(error_messages) == 0, error_messages

    def _validate_specs(self, specs: List[TensorSpec], path: str) -> List[ValidationIssue]:
        issues = []
        names = set()
        for i, spec in enumerate(specs):
            spec_path = f"{path}[{i}]"
            if not spec.name:
                issues.append(ValidationIssue("MISSING_NAME", "Tensor name is required", f"{spec_path}.name"))
            elif spec.name in names:
                issues.append(ValidationIssue(
                    "DUPLICATE_TENSOR", f"Duplicate tensor name: {spec.name}", f"{spec_path}.name",
                ))
            names.add(spec.name)
            issues.extend(self._validate_shape(spec.shape, f"{spec_path}.shape"))
        return issues

    def _validate_shape(self, shape: Any, path: str) -> List[ValidationIssue]:
        if shape is None or isinstance(shape, str):
            return []
        if not isinstance(shape, list):
            return [ValidationIssue(
                "INVALID_SHAPE", f"Shape must be null, a symbol or a list. Got: {shape!r}", path,
            )]
        issues = []
        for i, dim in enumerate(shape):
            valid = (
                dim is None
                or (isinstance(dim, str) and dim)
                or (isinstance(dim, int) and not isinstance(dim, bool) and dim >= 0)
            )
            if not valid:
                issues.append(ValidationIssue(
                    "INVALID_DIMENSION",
                    f"Dimension must be a non-negative int, a symbol or null. Got: {dim!r}",
                    f"{path}[{i}]",
                ))
        return issues

    def _validate_values(
        self,
        values: Dict[str, LazyValue],
        path: str,
        tensors_only: bool,
        declared: Optional[set],
    ) -> List[ValidationIssue]:
        issues = []
        for name, value in values.items():
            allowed = (LazyTensor,) if tensors_only else (LazyTensor, LazyFile)
            if not isinstance(value, allowed):
                issues.append(ValidationIssue(
                    "INVALID_VALUE",
                    f"Expected {'a tensor' if tensors_only else 'a tensor or file'}. Got: {type(value).__name__}",
                    f"{path}[{name!r}]",
                ))
            if declared is not None and name not in declared:
                issues.append(ValidationIssue(
                    "UNDECLARED_TENSOR",
                    f"'{name}' is not a declared tensor",
                    f"{path}[{name!r}]",
                ))
        return issues

    def _validate_relative_path(self, rel_path: str, path: str) -> List[ValidationIssue]:
        posix = PurePosixPath(rel_path)
        if not rel_path or posix.is_absolute() or ".." in posix.parts or "\\" in rel_path:
            return [ValidationIssue(
                "INVALID_PATH", f"Must be a relative POSIX path inside the carton. Got: {rel_path!r}", path,
            )]
        return []

    def _validate_range(self, value: Any, path: str) -> List[ValidationIssue]:
        if not isinstance(value, str):
            return [ValidationIssue("INVALID_VERSION_RANGE", f"Expected a string. Got: {value!r}", path)]
        try:
            VersionRange.parse(value)
        except ValidationFailed as e:
            return [ValidationIssue("INVALID_VERSION_RANGE", "; ".join(e.errors), path)]
        return []

    def _validate_opts(self, opts: Any, path: str) -> List[ValidationIssue]:
        if not isinstance(opts, dict):
            return [ValidationIssue("INVALID_OPTS", "Options must be a mapping", path)]
        issues = []
        for name, value in opts.items():
            if not isinstance(name, str) or not self.OPT_NAME_PATTERN.match(name):
                issues.append(ValidationIssue("INVALID_OPT_NAME", f"Invalid option name: {name!r}", path))
            if not isinstance(value, (bool, int, float, str)):
                issues.append(ValidationIssue(
                    "INVALID_OPT_VALUE",
                    f"Option values must be int, float, str or bool. Got {type(value).__name__}",
                    f"{path}[{name!r}]",
                ))
        return issues

