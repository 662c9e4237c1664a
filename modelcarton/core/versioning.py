"""
Versioning Module.

Provides semantic versions and version ranges used to match packs against
installed runners:
- Semantic versions with pre-release precedence
- Comparator sets (AND) and range groups (OR, separated by ``||``)
- Caret, tilde, wildcard and hyphen ranges
"""

import re
import logging
from typing import List, Optional, Tuple, Union
from dataclasses import dataclass, field
from enum import Enum

from .exceptions import ValidationFailed


logger = logging.getLogger(__name__)


_VERSION_RE = re.compile(
    r"^v?(?P<major>0|[1-9]\d*)"
    r"(?:\.(?P<minor>0|[1-9]\d*))?"
    r"(?:\.(?P<patch>0|[1-9]\d*))?"
    r"(?:-(?P<pre>[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?"
    r"(?:\+(?P<build>[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?$"
)

_PARTIAL_RE = re.compile(
    r"^v?(?P<major>\d+|[*xX])"
    r"(?:\.(?P<minor>\d+|[*xX]))?"
    r"(?:\.(?P<patch>\d+|[*xX]))?"
    r"(?:-(?P<pre>[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?"
    r"(?:\+[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*)?$"
)

_WILDCARDS = ("*", "x", "X")


def _compare_prerelease(a: Tuple[str, ...], b: Tuple[str, ...]) -> int:
    """Compare pre-release identifier tuples per semver precedence."""
    # No pre-release ranks higher than any pre-release
    if not a and not b:
        return 0
    if not a:
        return 1
    if not b:
        return -1

    for x, y in zip(a, b):
        if x == y:
            continue
        x_num, y_num = x.isdigit(), y.isdigit()
        if x_num and y_num:
            return -1 if int(x) < int(y) else 1
        if x_num:
            return -1
        if y_num:
            return 1
        return -1 if x < y else 1

    if len(a) == len(b):
        return 0
    return -1 if len(a) < len(b) else 1


@dataclass(frozen=True)
class SemanticVersion:
    """
    Semantic version representation (MAJOR.MINOR.PATCH[-PRERELEASE][+BUILD]).

    Build metadata is kept for display but ignored for ordering and equality.
    """
    major: int = 0
    minor: int = 0
    patch: int = 0
    prerelease: Tuple[str, ...] = ()
    build: str = field(default="", compare=False)

    def __str__(self) -> str:
        version = f"{self.major}.{self.minor}.{self.patch}"
        if self.prerelease:
            version += "-" + ".".join(self.prerelease)
        if self.build:
            version += f"+{self.build}"
        return version

    def _cmp(self, other: "SemanticVersion") -> int:
        left = (self.major, self.minor, self.patch)
        right = (other.major, other.minor, other.patch)
        if left != right:
            return -1 if left < right else 1
        return _compare_prerelease(self.prerelease, other.prerelease)

    def __lt__(self, other: "SemanticVersion") -> bool:
        return self._cmp(other) < 0

    def __le__(self, other: "SemanticVersion") -> bool:
        return self._cmp(other) <= 0

    def __gt__(self, other: "SemanticVersion") -> bool:
        return self._cmp(other) > 0

    def __ge__(self, other: "SemanticVersion") -> bool:
        return self._cmp(other) >= 0

    @property
    def release(self) -> Tuple[int, int, int]:
        return (self.major, self.minor, self.patch)

    @classmethod
    def parse(cls, version: Union[str, int, "SemanticVersion"]) -> "SemanticVersion":
        """
        Parse a version string.

        Missing minor/patch components default to zero, so ``"2"`` and
        ``"2.0"`` both parse as ``2.0.0``.

        Raises:
            ValidationFailed: If the string is not a version
        """
        if isinstance(version, SemanticVersion):
            return version
        text = str(version).strip()
        match = _VERSION_RE.match(text)
        if not match:
            raise ValidationFailed("version", [f"Invalid version: '{version}'"])

        pre = match.group("pre")
        return cls(
            major=int(match.group("major")),
            minor=int(match.group("minor") or 0),
            patch=int(match.group("patch") or 0),
            prerelease=tuple(pre.split(".")) if pre else (),
            build=match.group("build") or "",
        )


class Op(str, Enum):
    """Comparator operators."""
    EXACT = "="
    GREATER = ">"
    GREATER_EQ = ">="
    LESS = "<"
    LESS_EQ = "<="
    TILDE = "~"
    CARET = "^"
    WILDCARD = "*"


@dataclass(frozen=True)
class Comparator:
    """
    A single comparator such as ``>=1.2`` or ``^0.3.1``.

    ``minor``/``patch`` are None when the comparator was written as a
    partial version; partial versions widen the match as Cargo does.
    """
    op: Op
    major: Optional[int] = None
    minor: Optional[int] = None
    patch: Optional[int] = None
    prerelease: Tuple[str, ...] = ()

    def __str__(self) -> str:
        if self.op == Op.WILDCARD and self.major is None:
            return "*"
        parts = [str(self.major)]
        if self.minor is not None:
            parts.append(str(self.minor))
        if self.patch is not None:
            parts.append(str(self.patch))
        text = ".".join(parts)
        if self.prerelease:
            text += "-" + ".".join(self.prerelease)
        if self.op == Op.WILDCARD:
            return text + ".*"
        return f"{self.op.value}{text}"

    def _lower(self) -> SemanticVersion:
        return SemanticVersion(
            self.major or 0, self.minor or 0, self.patch or 0, self.prerelease
        )

    def matches(self, version: SemanticVersion) -> bool:
        """Check whether a version satisfies this comparator (ignoring pre-release gating)."""
        op = self.op
        major, minor, patch = self.major, self.minor, self.patch

        if op == Op.WILDCARD:
            if major is None:
                return True
            if version.major != major:
                return False
            return minor is None or version.minor == minor

        if op == Op.EXACT:
            if version.major != major:
                return False
            if minor is None:
                return True
            if version.minor != minor:
                return False
            if patch is None:
                return True
            return version.patch == patch and version.prerelease == self.prerelease

        if op == Op.GREATER:
            if minor is None:
                return version.major > major
            if patch is None:
                return (version.major, version.minor) > (major, minor)
            return version > self._lower()

        if op == Op.GREATER_EQ:
            return version >= self._lower()

        if op == Op.LESS:
            if minor is None:
                return version.major < major
            if patch is None:
                return (version.major, version.minor) < (major, minor)
            return version < self._lower()

        if op == Op.LESS_EQ:
            if minor is None:
                return version.major <= major
            if patch is None:
                return (version.major, version.minor) <= (major, minor)
            return version <= self._lower()

        if op == Op.TILDE:
            if version.major != major:
                return False
            if minor is None:
                return True
            if version.minor != minor:
                return False
            return patch is None or version >= self._lower()

        # Caret: allow changes that don't modify the left-most non-zero component
        if version < self._lower():
            return False
        if version.major != major:
            return False
        if minor is None:
            return True
        if major > 0:
            return True
        if version.minor != minor:
            return False
        if patch is None:
            return True
        if minor > 0:
            return True
        return version.patch == patch

    @classmethod
    def parse(cls, text: str) -> "Comparator":
        """Parse one comparator token."""
        token = text.strip()
        if token in _WILDCARDS:
            return cls(Op.WILDCARD)

        op = None
        if token.startswith("~>"):
            op = Op.TILDE
            token = token[2:].strip()
        else:
            for candidate in (">=", "<=", ">", "<", "=", "~", "^"):
                if token.startswith(candidate):
                    op = Op(candidate)
                    token = token[len(candidate):].strip()
                    break

        match = _PARTIAL_RE.match(token)
        if not match:
            raise ValidationFailed("version range", [f"Invalid comparator: '{text}'"])

        components = [match.group("major"), match.group("minor"), match.group("patch")]
        values: List[Optional[int]] = []
        seen_wildcard = False
        for component in components:
            if component is None or component in _WILDCARDS:
                seen_wildcard = seen_wildcard or component is not None
                values.append(None)
            else:
                if values and values[-1] is None:
                    raise ValidationFailed(
                        "version range", [f"Invalid comparator: '{text}'"]
                    )
                values.append(int(component))

        pre = match.group("pre")
        prerelease = tuple(pre.split(".")) if pre else ()
        if prerelease and values[2] is None:
            raise ValidationFailed(
                "version range",
                [f"Pre-release requires a full version: '{text}'"],
            )

        if values[0] is None:
            return cls(Op.WILDCARD)

        if seen_wildcard and op in (None, Op.EXACT):
            return cls(Op.WILDCARD, values[0], values[1])

        # Bare versions get caret semantics
        return cls(op or Op.CARET, values[0], values[1], values[2], prerelease)


@dataclass(frozen=True)
class ComparatorSet:
    """Comparators that must all match (AND)."""
    comparators: Tuple[Comparator, ...]

    def __str__(self) -> str:
        return ", ".join(str(c) for c in self.comparators) or "*"

    def matches(self, version: SemanticVersion) -> bool:
        if not all(c.matches(version) for c in self.comparators):
            return False

        if not version.prerelease:
            return True

        # Pre-releases only match when a comparator opts into the same release
        return any(
            c.prerelease
            and (c.major, c.minor, c.patch) == version.release
            for c in self.comparators
        )


_HYPHEN_RE = re.compile(r"^(?P<low>\S+)\s+-\s+(?P<high>\S+)$")
_OP_SPACE_RE = re.compile(r"(>=|<=|>|<|=|~>|~|\^)\s+")


@dataclass(frozen=True)
class VersionRange:
    """
    A version requirement such as ``">=1.2, <2.0"`` or ``"^1 || ^2"``.

    Example:
        req = VersionRange.parse(">=1.2,<2.0")
        req.matches("1.4.0")  # True
        req.max_satisfying(["1.0.0", "1.9.3", "2.1.0"])  # 1.9.3
    """
    source: str
    groups: Tuple[ComparatorSet, ...]

    def __str__(self) -> str:
        return self.source

    @classmethod
    def parse(cls, text: Union[str, "VersionRange"]) -> "VersionRange":
        """
        Parse a range string.

        Raises:
            ValidationFailed: If the range cannot be parsed
        """
        if isinstance(text, VersionRange):
            return text
        if not isinstance(text, str) or not text.strip():
            raise ValidationFailed("version range", [f"Empty version range: {text!r}"])

        groups = []
        for raw_group in text.split("||"):
            group = raw_group.strip()
            if not group:
                raise ValidationFailed(
                    "version range", [f"Empty alternative in '{text}'"]
                )

            hyphen = _HYPHEN_RE.match(group)
            if hyphen:
                comparators = (
                    Comparator.parse(">=" + hyphen.group("low")),
                    Comparator.parse("<=" + hyphen.group("high")),
                )
            else:
                normalized = _OP_SPACE_RE.sub(lambda m: m.group(1), group)
                tokens = [t for t in re.split(r"[,\s]+", normalized) if t]
                comparators = tuple(Comparator.parse(t) for t in tokens)

            groups.append(ComparatorSet(comparators))

        return cls(source=text.strip(), groups=tuple(groups))

    def matches(self, version: Union[str, SemanticVersion]) -> bool:
        """Check whether a version satisfies any alternative of this range."""
        parsed = SemanticVersion.parse(version)
        return any(group.matches(parsed) for group in self.groups)

    def max_satisfying(
        self,
        versions: List[Union[str, SemanticVersion]],
    ) -> Optional[SemanticVersion]:
        """Return the highest version that satisfies this range, if any."""
        matching = [
            SemanticVersion.parse(v) for v in versions if self.matches(v)
        ]
        return max(matching) if matching else None


def satisfies(version: Union[str, SemanticVersion], requirement: str) -> bool:
    """Convenience check: does ``version`` satisfy ``requirement``?"""
    return VersionRange.parse(requirement).matches(version)
