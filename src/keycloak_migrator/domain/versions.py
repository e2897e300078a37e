"""
Canonical Keycloak version table and upgrade-path computation.

The table is a sorted constant; a migration path is always a contiguous slice of it, so no
intermediate major version is ever skipped. Each entry also records the Java runtime it
needs and whether its distribution must be built before first start (Quarkus based
releases, 17 and later).
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import total_ordering
from typing import TYPE_CHECKING, Final

from keycloak_migrator.domain.errors import ConfigError, NoPathNeededError, UnknownVersionError

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

_VERSION_RE: Final[re.Pattern[str]] = re.compile(r"^(\d+)\.(\d+)\.(\d+)$")


@total_ordering
@dataclass(frozen=True, slots=True)
class Version:
    """Three-part numeric version; ordering is numeric, not lexical."""

    major: int
    minor: int
    patch: int

    def __post_init__(self) -> None:
        if self.major < 0 or self.minor < 0 or self.patch < 0:
            raise ValueError("version components must be >= 0")

    @classmethod
    def parse(cls, text: str | Version) -> Version:
        if isinstance(text, Version):
            return text
        if not isinstance(text, str):
            raise ConfigError(f"version must be a string, got {type(text).__name__}")
        match = _VERSION_RE.fullmatch(text.strip())
        if match is None:
            raise ConfigError(f"malformed version {text!r}; expected MAJOR.MINOR.PATCH")
        return cls(int(match.group(1)), int(match.group(2)), int(match.group(3)))

    def _key(self) -> tuple[int, int, int]:
        return (self.major, self.minor, self.patch)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self._key() < other._key()

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


@dataclass(frozen=True, slots=True)
class VersionSpec:
    """One row of the version table."""

    version: Version
    java_major: int
    requires_build: bool

    def __post_init__(self) -> None:
        if self.java_major <= 0:
            raise ValueError("java_major must be > 0")

    def __str__(self) -> str:
        return str(self.version)


class VersionTable:
    """Totally ordered, immutable table of supported versions."""

    def __init__(self, entries: Iterable[VersionSpec]) -> None:
        ordered = tuple(entries)
        if not ordered:
            raise ValueError("version table must not be empty")
        for previous, current in zip(ordered, ordered[1:]):
            if not previous.version < current.version:
                raise ValueError(
                    f"version table must be strictly increasing: {previous} !< {current}"
                )
        self._entries = ordered
        self._index = {str(entry.version): position for position, entry in enumerate(ordered)}

    def __iter__(self) -> Iterator[VersionSpec]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, version: object) -> bool:
        if isinstance(version, (Version, VersionSpec)):
            return str(version) in self._index
        if isinstance(version, str):
            return version.strip() in self._index
        return False

    @property
    def versions(self) -> tuple[str, ...]:
        return tuple(str(entry.version) for entry in self._entries)

    def index_of(self, version: str | Version) -> int:
        key = str(version).strip()
        position = self._index.get(key)
        if position is None:
            raise UnknownVersionError(key, self.versions)
        return position

    def spec_for(self, version: str | Version) -> VersionSpec:
        return self._entries[self.index_of(version)]

    def compute_path(
        self, current: str | Version, target: str | Version
    ) -> tuple[VersionSpec, ...]:
        """Return every version after ``current`` up to and including ``target``."""

        start = self.index_of(current)
        end = self.index_of(target)
        if start == end:
            raise NoPathNeededError(str(self._entries[start].version))
        if end < start:
            raise ConfigError(
                f"downgrade from {self._entries[start].version} to "
                f"{self._entries[end].version} is not supported"
            )
        return self._entries[start + 1 : end + 1]

    def predecessor(self, version: str | Version) -> VersionSpec | None:
        position = self.index_of(version)
        if position == 0:
            return None
        return self._entries[position - 1]

    def required_java(self, path: Iterable[VersionSpec]) -> int:
        """Highest Java major needed anywhere along ``path`` (0 for an empty path)."""

        return max((entry.java_major for entry in path), default=0)


KEYCLOAK_VERSIONS: Final[VersionTable] = VersionTable(
    (
        VersionSpec(Version(16, 1, 1), java_major=11, requires_build=False),
        VersionSpec(Version(17, 0, 1), java_major=11, requires_build=True),
        VersionSpec(Version(22, 0, 5), java_major=17, requires_build=True),
        VersionSpec(Version(25, 0, 6), java_major=17, requires_build=True),
        VersionSpec(Version(26, 0, 7), java_major=21, requires_build=True),
    )
)


__all__ = ["KEYCLOAK_VERSIONS", "Version", "VersionSpec", "VersionTable"]
