"""Looking up the newest version of a chart in HTTP repositories and OCI registries."""

from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import dataclass
from typing import Any

import requests
import yaml

from .releaseutils import InvalidVersionError, Version

DEFAULT_REQUEST_TIMEOUT = 30.0
_STRICT_SEMVER = re.compile(
    r"^(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    r"(?:-[0-9A-Za-z\-]+(?:\.[0-9A-Za-z\-]+)*)?"
    r"(?:\+[0-9A-Za-z\-]+(?:\.[0-9A-Za-z\-]+)*)?$"
)
_AUTH_PARAM = re.compile(r'(\w+)="([^"]*)"')


class FetchError(Exception):
    """Raised when the latest version of a chart cannot be determined."""


@dataclass(frozen=True)
class RepositoryEntry:
    """One repository listed in a Helm repositories file."""

    name: str
    url: str


def load_repositories_file(path: str) -> list[RepositoryEntry]:
    """Read the repositories from a Helm repositories.yaml file."""
    with open(path, encoding="utf-8") as handle:
        try:
            data = yaml.safe_load(handle)
        except yaml.YAMLError as exc:
            raise ValueError(f"cannot parse {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError(f"{path} is not a Helm repositories file")
    entries = data.get("repositories") or []
    if not isinstance(entries, list):
        raise ValueError(f"{path}: 'repositories' must be a list")
    return [
        RepositoryEntry(name=str(e.get("name", "")), url=str(e.get("url", "")))
        for e in entries
        if isinstance(e, dict)
    ]


def is_oci(reference: str) -> bool:
    return reference.startswith("oci://")


def parse_repo_index(data: bytes | str) -> dict[str, list[dict[str, Any]]]:
    """Parse a repository index.yaml and return its chart entries."""
    try:
        index = yaml.safe_load(data)
    except yaml.YAMLError as exc:
        raise FetchError(f"cannot parse repository index: {exc}") from exc
    if not isinstance(index, dict) or "apiVersion" not in index:
        raise FetchError("no API version specified")
    entries = index.get("entries") or {}
    if not isinstance(entries, dict):
        raise FetchError("repository index entries are malformed")
    return {name: [v for v in (versions or []) if isinstance(v, dict)] for name, versions in entries.items()}


def latest_chart_version(index: dict[str, list[dict[str, Any]]], chart_name: str) -> str:
    """Return the newest non-prerelease version of a chart in an index."""
    candidates = []
    for entry in index.get(chart_name, []):
        raw = str(entry.get("version", ""))
        try:
            parsed = Version(raw)
        except InvalidVersionError:
            continue
        if not parsed.prerelease:
            candidates.append((parsed, raw))
    if not candidates:
        raise FetchError(f"{chart_name} not found")
    return max(candidates, key=lambda c: c[0])[1]


def sort_tags(tags: list[str]) -> list[str]:
    """Keep the semantic-version tags and order them newest first."""
    versions = []
    for tag in tags:
        candidate = tag.replace("_", "+")
        if _STRICT_SEMVER.match(candidate):
            versions.append((Version(candidate), candidate))
    versions.sort(key=lambda v: v[0], reverse=True)
    return [text for _, text in versions]


class Fetcher:
    """Fetches latest chart versions and caches the answers for one check run."""

    def __init__(self, logger: logging.Logger | None = None, session: requests.Session | None = None) -> None:
        self.logger = logger or logging.getLogger(__name__)
        self.session = session or requests.Session()
        self._cache: dict[tuple[str, str], Version] = {}
        self._lock = threading.Lock()

    def _cached(self, name: str, repo: str) -> Version | None:
        with self._lock:
            return self._cache.get((name, repo))

    def _store(self, name: str, repo: str, version: Version) -> None:
        with self._lock:
            if (name, repo) in self._cache:
                self.logger.debug("%s version for %s/%s chart is already cached", version.original(), repo, name)
                return
            self._cache[(name, repo)] = version
        self.logger.debug("cached %s version for %s/%s chart", version.original(), repo, name)

    @staticmethod
    def _timeout(deadline: float | None) -> float:
        if deadline is None:
            return DEFAULT_REQUEST_TIMEOUT
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise FetchError("context deadline exceeded")
        return remaining

    def _registry_tags(self, reference: str, deadline: float | None) -> list[str]:
        host, _, repository = reference.partition("/")
        if not host or not repository:
            raise FetchError(f"invalid OCI reference: oci://{reference}")
        url = f"https://{host}/v2/{repository}/tags/list"
        response = self.session.get(url, timeout=self._timeout(deadline))
        if response.status_code == 401:
            challenge = response.headers.get("WWW-Authenticate", "")
            if not challenge.lower().startswith("bearer"):
                raise FetchError(f"unauthorized to list tags of oci://{reference}")
            params = dict(_AUTH_PARAM.findall(challenge))
            realm = params.pop("realm", None)
            if not realm:
                raise FetchError(f"unauthorized to list tags of oci://{reference}")
            params.setdefault("scope", f"repository:{repository}:pull")
            token_response = self.session.get(realm, params=params, timeout=self._timeout(deadline))
            if not token_response.ok:
                raise FetchError(f"cannot authenticate to {host}: HTTP {token_response.status_code}")
            body = token_response.json()
            bearer = body.get("token") or body.get("access_token")
            if not bearer:
                raise FetchError(f"cannot authenticate to {host}: no token returned")
            response = self.session.get(
                url, headers={"Authorization": f"Bearer {bearer}"}, timeout=self._timeout(deadline)
            )
        if not response.ok:
            raise FetchError(f"cannot list tags of oci://{reference}: HTTP {response.status_code}")
        return list(response.json().get("tags") or [])

    def fetch_oci_chart_latest_version(self, chart_uri: str, deadline: float | None = None) -> Version:
        """Return the newest tag of an OCI chart."""
        self._timeout(deadline)
        cached = self._cached(chart_uri, "")
        if cached is not None:
            self.logger.debug("got cached version %s for %s chart", cached.original(), chart_uri)
            return cached
        try:
            tags = sort_tags(self._registry_tags(chart_uri.removeprefix("oci://"), deadline))
        except requests.RequestException as exc:
            raise FetchError(str(exc)) from exc
        if not tags:
            raise FetchError(f"no version tags found for {chart_uri}")
        try:
            latest = Version(tags[0])
        except InvalidVersionError as exc:
            raise FetchError(f"invalid '{chart_uri}' chart latest version of {tags[0]}: {exc}") from exc
        self.logger.debug("fetched %s version for %s chart", latest.original(), chart_uri)
        self._store(chart_uri, "", latest)
        return latest

    def fetch_http_chart_latest_version(
        self, repo_uri: str, chart_name: str, deadline: float | None = None
    ) -> Version:
        """Return the newest version of a chart listed in an HTTP repository index."""
        self._timeout(deadline)
        cached = self._cached(chart_name, repo_uri)
        if cached is not None:
            self.logger.debug(
                "got cached version %s for %s chart from %s repo", cached.original(), chart_name, repo_uri
            )
            return cached
        url = repo_uri.rstrip("/") + "/index.yaml"
        try:
            response = self.session.get(url, timeout=self._timeout(deadline))
            response.raise_for_status()
        except requests.RequestException as exc:
            raise FetchError(f"{repo_uri} is not a valid chart repository or cannot be reached: {exc}") from exc
        index = parse_repo_index(response.content)
        try:
            raw = latest_chart_version(index, chart_name)
        except FetchError as exc:
            raise FetchError(f"{chart_name} not found in {repo_uri} repository") from exc
        try:
            latest = Version(raw)
        except InvalidVersionError as exc:
            raise FetchError(f"invalid '{chart_name}' chart latest version of {raw}: {exc}") from exc
        self.logger.debug("fetched %s version for %s chart from %s repo", latest.original(), chart_name, repo_uri)
        self._store(chart_name, repo_uri, latest)
        return latest