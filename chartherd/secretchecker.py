"""Checking charts installed by Helm and recorded in release Secrets."""

from __future__ import annotations

import base64
import binascii
import logging
import re
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Iterable

from .fetchutils import FetchError, Fetcher, RepositoryEntry, is_oci
from .kube import KubeClient, KubeError
from .releaseutils import (
    DiscoveredChartRelease,
    DiscoveredChartReleases,
    DuplicateReleaseError,
    InvalidVersionError,
    KnownChartSources,
    ProcessedRelease,
    ProcessedReleases,
    ReleaseDecodeError,
    Version,
    decode_helm_release,
)

HELM_SECRET_TYPE = "helm.sh/release.v1"
FIELD_SELECTOR = f"type={HELM_SECRET_TYPE}"
DISCOVERY_METHOD = "secret"
_SECRET_NAME_RE = re.compile(r"sh\.helm\.release\.v1\..*\.v\d+")
_INTEGER_RE = re.compile(r"[+-]?[0-9]+")


class InvalidSecretError(ValueError):
    """Raised when a Secret is not a usable Helm release Secret."""


@dataclass(frozen=True)
class ReleaseKey:
    """A Helm release identified by its name and namespace."""

    release_name: str
    release_namespace: str


@dataclass(frozen=True)
class SecretRevision:
    """One stored revision of a release: its number and encoded release data."""

    revision: int
    release_data: bytes


def _metadata(secret: dict[str, Any]) -> dict[str, Any]:
    metadata = secret.get("metadata")
    return metadata if isinstance(metadata, dict) else {}


def check_helm_secret(secret: dict[str, Any]) -> None:
    """Raise InvalidSecretError unless the Secret holds a Helm release."""
    secret_type = secret.get("type", "")
    if secret_type != HELM_SECRET_TYPE:
        raise InvalidSecretError(f"expected a Secret of type '{HELM_SECRET_TYPE}', got {secret_type}")
    name = str(_metadata(secret).get("name", ""))
    if not _SECRET_NAME_RE.search(name):
        raise InvalidSecretError(f"{name} Secret name is not valid for a Helm release Secret")


def _name_parts(secret: dict[str, Any]) -> list[str]:
    check_helm_secret(secret)
    # sh.helm.release.v1.{NAME}.v{REVISION}
    return str(_metadata(secret).get("name", "")).split(".")


def release_key_of(secret: dict[str, Any]) -> ReleaseKey:
    """Return the release name and namespace a Helm Secret belongs to."""
    parts = _name_parts(secret)
    return ReleaseKey(parts[4], str(_metadata(secret).get("namespace", "")))


def revision_of(secret: dict[str, Any]) -> SecretRevision:
    """Return the revision number and release data held by a Helm Secret."""
    parts = _name_parts(secret)
    raw_revision = parts[5].removeprefix("v")
    if not _INTEGER_RE.fullmatch(raw_revision):
        raise InvalidSecretError(f"invalid release revision '{parts[5]}'")
    data = secret.get("data") or {}
    encoded = data.get("release", "") if isinstance(data, dict) else ""
    try:
        release_data = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidSecretError(f"invalid release data: {exc}") from exc
    return SecretRevision(int(raw_revision), release_data)


def group_revisions(
    secrets: Iterable[dict[str, Any]], logger: logging.Logger | None = None
) -> dict[ReleaseKey, list[SecretRevision]]:
    """Group Helm Secrets by release, newest revision first; bad Secrets are logged and skipped."""
    logger = logger or logging.getLogger(__name__)
    grouped: dict[ReleaseKey, list[SecretRevision]] = {}
    for secret in secrets:
        try:
            key = release_key_of(secret)
        except InvalidSecretError as exc:
            logger.error("failed to process release name and namespace: %s", exc)
            continue
        try:
            revision = revision_of(secret)
        except InvalidSecretError as exc:
            logger.error("failed to process release revision: %s", exc)
            continue
        revisions = grouped.setdefault(key, [])
        if any(r.revision == revision.revision for r in revisions):
            logger.error(
                "cannot process release revision: non-unique chart revision: "
                "releaseName=%s, releaseNamespace=%s, revision=%d",
                key.release_name,
                key.release_namespace,
                revision.revision,
            )
            continue
        revisions.append(revision)
    for revisions in grouped.values():
        revisions.sort(key=lambda r: r.revision, reverse=True)
    return grouped


def _remaining(deadline: float | None) -> float | None:
    if deadline is None:
        return None
    left = deadline - time.monotonic()
    if left <= 0:
        raise TimeoutError("context deadline exceeded")
    return left


def _chart_metadata(release: dict[str, Any]) -> dict[str, Any]:
    chart = release.get("chart") or {}
    metadata = chart.get("metadata") if isinstance(chart, dict) else None
    return metadata if isinstance(metadata, dict) else {}


class SecretChecker:
    """Finds updates for Helm releases stored as Kubernetes Secrets."""

    def __init__(
        self,
        logger: logging.Logger | None,
        client: KubeClient,
        use_local_helm_repos: bool,
        local_helm_repos: list[RepositoryEntry] | None,
        check_chart_deps: bool,
        namespace: str,
        concurrent_requests: int,
        discovered: DiscoveredChartReleases,
        processed: ProcessedReleases,
        known_sources: KnownChartSources,
        fetcher: Fetcher,
        timeout: float,
    ) -> None:
        self.logger = logger or logging.getLogger(__name__)
        self.client = client
        self.use_local_helm_repos = use_local_helm_repos
        self.local_helm_repos = list(local_helm_repos or [])
        self.check_chart_deps = check_chart_deps
        self.namespace = namespace
        self.concurrent_requests = concurrent_requests
        self.discovered = discovered
        self.processed = processed
        self.known_sources = known_sources
        self.fetcher = fetcher
        self.timeout = timeout

    def run(self) -> None:
        """Check every Helm release Secret not already handled by another checker."""
        deadline = time.monotonic() + self.timeout
        try:
            secrets = self.client.list_secrets(
                self.namespace, field_selector=FIELD_SELECTOR, timeout=_remaining(deadline)
            )
        except (KubeError, TimeoutError) as exc:
            message = f"failed to list Secret resources, skipping: {exc}"
            self.logger.error("unable to check Secret releases, skipping: %s", message)
            raise KubeError(message) from exc
        grouped = group_revisions(secrets, self.logger)

        self.logger.debug("start checking individual releases")
        with ThreadPoolExecutor(max_workers=max(1, self.concurrent_requests)) as pool:
            futures = []
            for key, revisions in grouped.items():
                if self.processed.contains(key.release_name, key.release_namespace):
                    self.logger.debug(
                        "release '%s' in '%s' namespace has already been processed, skipping",
                        key.release_name,
                        key.release_namespace,
                    )
                    continue
                existing = self.discovered.find(key.release_name, key.release_namespace)
                if existing is not None:
                    self.logger.debug(
                        "update for release '%s' in '%s' namespace has already been discovered via %s, skipping",
                        key.release_name,
                        key.release_namespace,
                        existing.discovery_method,
                    )
                    continue
                futures.append(pool.submit(self.check_release, key, revisions, deadline))
        for future in futures:
            error = future.exception()
            if error is not None:
                self.logger.error("cannot check Secret object: %s", error)
        self.logger.debug("done checking individual Secret objects")

    def _record(
        self,
        chart_name: str,
        chart_repo: str,
        release_name: str,
        release_namespace: str,
        current: Version,
        latest: Version,
    ) -> bool:
        release = DiscoveredChartRelease(
            chart_name, chart_repo, release_name, release_namespace, current, latest, DISCOVERY_METHOD
        )
        try:
            self.discovered.add(release)
        except DuplicateReleaseError as exc:
            self.logger.debug("cannot process %s chart version information: %s", chart_name, exc)
            return False
        return True

    def _fetch(self, repo: str, chart_name: str, deadline: float | None) -> Version:
        if is_oci(repo):
            return self.fetcher.fetch_oci_chart_latest_version(repo, deadline)
        return self.fetcher.fetch_http_chart_latest_version(repo, chart_name, deadline)

    def check_release(
        self, key: ReleaseKey, revisions: list[SecretRevision], deadline: float | None = None
    ) -> None:
        """Find the latest chart version for one release, walking its revisions newest first."""
        name, namespace = key.release_name, key.release_namespace
        if deadline is not None and time.monotonic() >= deadline:
            raise TimeoutError(f"cannot check '{name}' release revision: context deadline exceeded")

        for secret_revision in revisions:
            revision = secret_revision.revision
            self.logger.debug("processing '%s' release in '%s' namespace, revision %d", name, namespace, revision)
            try:
                release = decode_helm_release(secret_revision.release_data)
            except ReleaseDecodeError as exc:
                self.logger.debug("cannot decode '%s' Helm Release data: %s", name, exc)
                continue

            info = release.get("info") or {}
            status = info.get("status", "") if isinstance(info, dict) else ""
            if status == "superseded":
                self.logger.debug(
                    "'%s' release in '%s' namespace, revision %d has status of '%s', "
                    "no more active revisions ahead, skipping this release altogether",
                    name, namespace, revision, status,
                )
                break
            if status != "deployed":
                self.logger.debug(
                    "'%s' release in '%s' namespace, revision %d has status of '%s', skipping this revision",
                    name, namespace, revision, status,
                )
                continue

            metadata = _chart_metadata(release)
            chart_name = str(metadata.get("name", ""))
            raw_version = str(metadata.get("version", ""))
            try:
                current = Version(raw_version)
            except InvalidVersionError as exc:
                self.logger.debug(
                    "invalid '%s' release in '%s' namespace revision %d current version of %s: %s",
                    name, namespace, revision, raw_version, exc,
                )
                continue
            self.logger.debug(
                "'%s' release in '%s' namespace, revision %d: current version %s",
                name, namespace, revision, raw_version,
            )

            known = self.known_sources.get(name)
            if known is not None:
                try:
                    latest = self._fetch(known, chart_name, deadline)
                except FetchError as exc:
                    self.logger.debug(
                        "'%s' release in '%s' namespace, revision %d: could not fetch %s chart version from %s: %s",
                        name, namespace, revision, chart_name, known, exc,
                    )
                    continue
                if self._record(chart_name, known, name, namespace, current, latest):
                    self.logger.debug(
                        "'%s' release in '%s' namespace, revision %d: saved latest version %s",
                        name, namespace, revision, latest.original(),
                    )
                    break

            if self.use_local_helm_repos:
                for entry in self.local_helm_repos:
                    try:
                        latest = self.fetcher.fetch_http_chart_latest_version(entry.url, chart_name, deadline)
                    except FetchError as exc:
                        self.logger.debug(
                            "'%s' release in '%s' namespace, revision %d: could not fetch %s chart version "
                            "from %s repo: %s",
                            name, namespace, revision, chart_name, entry.url, exc,
                        )
                        continue
                    if self._record(chart_name, entry.url, name, namespace, current, latest):
                        self.logger.debug(
                            "'%s' release in '%s' namespace, revision %d: saved latest version %s",
                            name, namespace, revision, latest.original(),
                        )
                        break

            # last resort: guess the chart's source repo from its dependencies
            if self.check_chart_deps and not self.guess_repo_by_dependencies(release, revision, deadline):
                self.logger.debug(
                    "'%s' release in '%s' namespace, revision %d: could not guess chart repo from its dependencies",
                    name, namespace, revision,
                )
                break

        self.processed.add(ProcessedRelease(name, namespace))

    def guess_repo_by_dependencies(
        self, release: dict[str, Any], revision: int, deadline: float | None = None
    ) -> bool:
        """Try the repositories of a chart's dependencies as its own source; True if any answered."""
        name = str(release.get("name", ""))
        namespace = str(release.get("namespace", ""))
        metadata = _chart_metadata(release)
        chart_name = str(metadata.get("name", ""))
        raw_version = str(metadata.get("version", ""))
        tried: list[str] = []
        successful = False

        self.logger.debug(
            "'%s' release in '%s' namespace, revision %d: trying to guess chart repo from its dependencies",
            name, namespace, revision,
        )
        for dependency in metadata.get("dependencies") or []:
            if not isinstance(dependency, dict):
                continue
            try:
                current = Version(raw_version)
            except InvalidVersionError as exc:
                self.logger.debug("invalid '%s' chart version of %s: %s", name, raw_version, exc)
                continue
            repository = str(dependency.get("repository", ""))
            if repository in tried:
                self.logger.debug("%s dependency repo has already been processed", repository)
                continue
            if is_oci(repository):
                chart_repo = f"{repository}/{chart_name}"
                try:
                    latest = self.fetcher.fetch_oci_chart_latest_version(chart_repo, deadline)
                except FetchError as exc:
                    self.logger.debug(
                        "cannot fetch latest version of chart %s: %s [guessed from dependency]", chart_repo, exc
                    )
                    tried.append(repository)
                    continue
            else:
                chart_repo = repository
                try:
                    latest = self.fetcher.fetch_http_chart_latest_version(repository, chart_name, deadline)
                except FetchError as exc:
                    self.logger.debug(
                        "cannot fetch %s chart version from %s repo: %s [guessed from dependency]",
                        chart_name, repository, exc,
                    )
                    tried.append(repository)
                    continue
            successful = True
            self.logger.debug(
                "'%s' release in '%s' namespace, revision %d: latest version %s",
                name, namespace, revision, latest.original(),
            )
            if not self._record(chart_name, chart_repo, name, namespace, current, latest):
                tried.append(repository)
        return successful