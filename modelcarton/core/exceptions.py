"""
modelcarton Exception Hierarchy.

Centralized exception definitions for consistent error handling.
"""

from typing import Any, Dict, List, Optional


class CartonError(Exception):
    """Base exception for all modelcarton errors."""

    def __init__(self, message: str, details: dict = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message


# -----------------------------------------------------------------------------
# Reference / Storage Errors
# -----------------------------------------------------------------------------

class ReferenceNotFound(CartonError):
    """Raised when a path or URL does not point to anything usable."""

    def __init__(self, reference: str, message: str = "reference not found"):
        super().__init__(
            f"Cannot resolve '{reference}': {message}",
            {"reference": reference}
        )
        self.reference = reference


class DownloadFailed(CartonError):
    """Raised when fetching a remote archive fails."""

    def __init__(self, url: str, message: str, status: Optional[int] = None):
        super().__init__(
            f"Download of '{url}' failed: {message}",
            {"url": url, "status": status}
        )
        self.url = url
        self.status = status


class IntegrityMismatch(CartonError):
    """Raised when recomputed content hash differs from the declared one."""

    def __init__(
        self,
        reference: str,
        expected: Optional[str],
        actual: Optional[str],
        section: str = "archive",
    ):
        super().__init__(
            f"Integrity check failed for {section} of '{reference}'",
            {
                "reference": reference,
                "section": section,
                "expected_sha256": expected,
                "actual_sha256": actual,
            }
        )
        self.reference = reference
        self.expected = expected
        self.actual = actual
        self.section = section


# -----------------------------------------------------------------------------
# Archive Errors
# -----------------------------------------------------------------------------

class CorruptArchive(CartonError):
    """Raised when an archive is malformed (bad magic, truncated, missing sections)."""

    def __init__(self, reference: str, message: str):
        super().__init__(
            f"Corrupt archive '{reference}': {message}",
            {"reference": reference}
        )
        self.reference = reference


class UnsupportedFormat(CartonError):
    """Raised when an archive uses a format version this library cannot read."""

    def __init__(self, reference: str, version: int, supported: int):
        super().__init__(
            f"Unsupported archive format version {version} in '{reference}'",
            {"reference": reference, "version": version, "max_supported": supported}
        )
        self.reference = reference
        self.version = version
        self.supported = supported


class ValidationFailed(CartonError):
    """Raised when model info, runner info or options fail validation."""

    def __init__(self, subject: str, errors: List[str]):
        super().__init__(
            f"Validation failed for {subject}: {'; '.join(errors)}",
            {"subject": subject, "errors": errors}
        )
        self.subject = subject
        self.errors = errors


# -----------------------------------------------------------------------------
# Runner Errors
# -----------------------------------------------------------------------------

class NoCompatibleRunner(CartonError):
    """Raised when no installed runner satisfies a pack's requirement."""

    def __init__(
        self,
        runner_name: str,
        required_framework_version: str,
        runner_compat_version: Optional[str] = None,
        candidates: Optional[List[Dict[str, Any]]] = None,
    ):
        compat = f", compat {runner_compat_version}" if runner_compat_version else ""
        super().__init__(
            f"No installed runner '{runner_name}' matches framework version "
            f"'{required_framework_version}'{compat}",
            {
                "runner_name": runner_name,
                "required_framework_version": required_framework_version,
                "runner_compat_version": runner_compat_version,
                "candidates": candidates or [],
            }
        )
        self.runner_name = runner_name
        self.required_framework_version = required_framework_version
        self.runner_compat_version = runner_compat_version
        self.candidates = candidates or []


class RunnerLoadError(CartonError):
    """Raised when a selected runner fails to build a backend for a model."""

    def __init__(self, runner_name: str, message: str, original_error: Exception = None):
        super().__init__(
            f"Runner '{runner_name}' failed to load model: {message}",
            {"runner_name": runner_name, "original_error": str(original_error) if original_error else None}
        )
        self.runner_name = runner_name
        self.original_error = original_error


# -----------------------------------------------------------------------------
# Inference Errors
# -----------------------------------------------------------------------------

class UnknownInput(CartonError):
    """Raised when inference inputs contain names the model does not declare."""

    def __init__(self, names: List[str], known: List[str]):
        super().__init__(
            f"Unknown input(s): {', '.join(names)}",
            {"unknown": names, "expected": known}
        )
        self.names = names
        self.known = known


class ShapeMismatch(CartonError):
    """Raised when an input tensor's dtype or shape contradicts its spec."""

    def __init__(self, input_name: str, message: str, expected: Any = None, actual: Any = None):
        super().__init__(
            f"Input '{input_name}': {message}",
            {"input": input_name, "expected": expected, "actual": actual}
        )
        self.input_name = input_name
        self.expected = expected
        self.actual = actual


# -----------------------------------------------------------------------------
# Device Errors
# -----------------------------------------------------------------------------

class DeviceUnavailable(CartonError):
    """A requested device is not present on this host.

    Non-fatal by default: the device resolver logs it and falls back to CPU.
    """

    def __init__(self, device: str, available: List[str]):
        super().__init__(
            f"Device '{device}' is not available",
            {"device": device, "available": available}
        )
        self.device = device
        self.available = available
