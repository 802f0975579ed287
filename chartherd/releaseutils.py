"""Version handling and the shared records of discovered and processed Helm releases."""

from __future__ import annotations

import base64
import binascii
import functools
import gzip
import json
import re
import threading
from dataclasses import dataclass
from typing import Any, Iterator

DISCOVERY_METHODS = frozenset({"cattleCRD", "secret", "pgsql"})

_PART = r"[0-9A-Za-z\-~]+"
_VERSION_RE = re.compile(
    r"^v?(?P<segments>[0-9]+(?:\.[0-9]+)*?)"
    rf"(?:-(?P<pre>[0-9]+[0-9A-Za-z\-~]*(?:\.{_PART})*)"
    rf"|-?(?P<pre2>[A-Za-z\-~]+[0-9A-Za-z\-~]*(?:\.{_PART})*))?"
    rf"(?:\+(?P<meta>{_PART}(?:\.{_PART})*))?$"
)


class InvalidVersionError(ValueError):
    """Raised when a string is not a valid version."""


class DuplicateReleaseError(ValueError):
    """Raised when a release with the same name and namespace is added twice."""


class ReleaseDecodeError(ValueError):
    """Raised when Helm release data cannot be decoded."""


def _compare_prerelease(left: str, right: str) -> int:
    if left == right:
        return 0
    if not left:
        return 1
    if not right:
        return -1
    left_parts, right_parts = left.split("."), right.split(".")
    for a, b in zip(left_parts, right_parts):
        if a == b:
            continue
        a_num, b_num = a.isdigit(), b.isdigit()
        if a_num and b_num:
            return -1 if int(a) < int(b) else 1
        if a_num:
            return -1
        if b_num:
            return 1
        return -1 if a < b else 1
    if len(left_parts) == len(right_parts):
        return 0
    return -1 if len(left_parts) < len(right_parts) else 1


@functools.total_ordering
class Version:
    """A version number in the loose semantic-versioning form charts use."""

    def __init__(self, text: str) -> None:
        match = _VERSION_RE.match(text) if isinstance(text, str) else None
        if match is None:
            raise InvalidVersionError(f"Malformed version: {text}")
        segments = [int(s) for s in match.group("segments").split(".")]
        while len(segments) < 3:
            segments.append(0)
        self._original = text
        self.segments = tuple(segments)
        self.prerelease = match.group("pre") or match.group("pre2") or ""
        self.metadata = match.group("meta") or ""

    def original(self) -> str:
        """Return the text the version was parsed from."""
        return self._original

    def __str__(self) -> str:
        text = ".".join(str(s) for s in self.segments)
        if self.prerelease:
            text += f"-{self.prerelease}"
        if self.metadata:
            text += f"+{self.metadata}"
        return text

    def __repr__(self) -> str:
        return f"Version({self._original!r})"

    def _compare(self, other: Version) -> int:
        width = max(len(self.segments), len(other.segments))
        mine = self.segments + (0,) * (width - len(self.segments))
        theirs = other.segments + (0,) * (width - len(other.segments))
        if mine != theirs:
            return -1 if mine < theirs else 1
        return _compare_prerelease(self.prerelease, other.prerelease)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self._compare(other) == 0

    def __lt__(self, other: Version) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self._compare(other) < 0

    def __hash__(self) -> int:
        segments = list(self.segments)
        while len(segments) > 3 and segments[-1] == 0:
            segments.pop()
        return hash((tuple(segments), self.prerelease))


@dataclass(frozen=True)
class DiscoveredChartRelease:
    """An installed chart release together with the newest available version."""

    chart_name: str
    chart_repo: str
    release_name: str
    release_namespace: str
    installed_chart_version: Version
    available_chart_version: Version
    discovery_method: str

    def __post_init__(self) -> None:
        if self.discovery_method not in DISCOVERY_METHODS:
            raise ValueError(f"'{self.discovery_method}' is not a valid discoveryMethod")

    def to_dict(self) -> dict[str, Any]:
        """Return the release in its JSON output form."""
        return {
            "chartName": self.chart_name,
            "chartRepo": self.chart_repo,
            "releaseName": self.release_name,
            "releaseNamespace": self.release_namespace,
            "installedChartVersion": str(self.installed_chart_version),
            "availableChartVersion": str(self.available_chart_version),
            "discoveryMethod": self.discovery_method,
        }


class DiscoveredChartReleases:
    """Thread-safe collection of discovered releases, unique by name and namespace."""

    def __init__(self, include_all: bool = False) -> None:
        self.include_all = include_all
        self._releases: list[DiscoveredChartRelease] = []
        self._seen: set[tuple[str, str]] = set()
        self._lock = threading.Lock()

    def add(self, release: DiscoveredChartRelease) -> None:
        """Record a release; only outdated ones are kept unless include_all is set."""
        key = (release.release_name, release.release_namespace)
        with self._lock:
            if key in self._seen:
                raise DuplicateReleaseError(
                    f"Non-unique chart release: ReleaseName={key[0]}, ReleaseNamespace={key[1]}"
                )
            if self.include_all or release.available_chart_version > release.installed_chart_version:
                self._seen.add(key)
                self._releases.append(release)

    def find(self, release_name: str, release_namespace: str) -> DiscoveredChartRelease | None:
        """Return the stored release with this name and namespace, if any."""
        with self._lock:
            return next(
                (
                    r
                    for r in self._releases
                    if r.release_name == release_name and r.release_namespace == release_namespace
                ),
                None,
            )

    def __iter__(self) -> Iterator[DiscoveredChartRelease]:
        with self._lock:
            return iter(list(self._releases))

    def __len__(self) -> int:
        with self._lock:
            return len(self._releases)

    def to_json(self) -> str:
        """Return the releases as an indented JSON array."""
        return json.dumps([r.to_dict() for r in self], indent=2)


class KnownChartSources:
    """Release name to chart repository, for releases whose source is known."""

    def __init__(self) -> None:
        self._sources: dict[str, str] = {}
        self._lock = threading.Lock()

    def add(self, release_name: str, repo: str) -> None:
        """Record the repository; an existing entry is kept."""
        with self._lock:
            self._sources.setdefault(release_name, repo)

    def get(self, release_name: str) -> str | None:
        with self._lock:
            return self._sources.get(release_name)


@dataclass(frozen=True)
class ProcessedRelease:
    release_name: str
    release_namespace: str


class ProcessedReleases:
    """Thread-safe set of releases already handled by a checker."""

    def __init__(self) -> None:
        self._releases: list[ProcessedRelease] = []
        self._lock = threading.Lock()

    def add(self, release: ProcessedRelease) -> None:
        with self._lock:
            if release not in self._releases:
                self._releases.append(release)

    def contains(self, release_name: str, release_namespace: str) -> bool:
        with self._lock:
            return ProcessedRelease(release_name, release_namespace) in self._releases

    def __len__(self) -> int:
        with self._lock:
            return len(self._releases)


def decode_helm_release(data: bytes | str) -> dict[str, Any]:
    """Decode base64, gzip-compressed JSON Helm release data."""
    try:
        compressed = base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ReleaseDecodeError(f"cannot decode Helm release data: {exc}") from exc
    try:
        raw = gzip.decompress(compressed)
    except (OSError, EOFError) as exc:
        raise ReleaseDecodeError(f"cannot gunzip Helm release data: {exc}") from exc
    try:
        release = json.loads(raw)
    except ValueError as exc:
        raise ReleaseDecodeError(f"cannot unmarshal Helm release data: {exc}") from exc
    if not isinstance(release, dict):
        raise ReleaseDecodeError("cannot unmarshal Helm release data: not an object")
    return release