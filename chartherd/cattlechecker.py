"""Checking charts installed through helm.cattle.io HelmChart resources."""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any

from .fetchutils import FetchError, Fetcher, is_oci
from .kube import KubeClient, KubeError
from .releaseutils import (
    DiscoveredChartRelease,
    DiscoveredChartReleases,
    DuplicateReleaseError,
    InvalidVersionError,
    KnownChartSources,
    ProcessedRelease,
    ProcessedReleases,
    Version,
)

GROUP_NAME = "helm.cattle.io"
RESOURCE_NAME = "helmcharts"
CRD_NAME = f"{RESOURCE_NAME}.{GROUP_NAME}"
API_PATH = f"/apis/{GROUP_NAME}/v1"
CRD_PATH = f"/apis/apiextensions.k8s.io/v1/customresourcedefinitions/{CRD_NAME}"
DISCOVERY_METHOD = "cattleCRD"


def _remaining(deadline: float | None) -> float | None:
    if deadline is None:
        return None
    left = deadline - time.monotonic()
    if left <= 0:
        raise TimeoutError("context deadline exceeded")
    return left


@dataclass(frozen=True)
class HelmChart:
    """The parts of a HelmChart resource that matter for update checks."""

    name: str
    namespace: str = ""
    chart: str = ""
    repo: str = ""
    version: str = ""
    target_namespace: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HelmChart:
        metadata = data.get("metadata") or {}
        spec = data.get("spec") or {}
        return cls(
            name=str(metadata.get("name", "")),
            namespace=str(metadata.get("namespace", "")),
            chart=str(spec.get("chart", "")),
            repo=str(spec.get("repo", "")),
            version=str(spec.get("version", "")),
            target_namespace=str(spec.get("targetNamespace", "")),
        )


class CattleChecker:
    """Finds updates for charts declared as HelmChart custom resources."""

    def __init__(
        self,
        logger: logging.Logger | None,
        client: KubeClient,
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
        self.namespace = namespace
        self.concurrent_requests = concurrent_requests
        self.discovered = discovered
        self.processed = processed
        self.known_sources = known_sources
        self.fetcher = fetcher
        self.timeout = timeout

    def run(self) -> None:
        """Check every HelmChart resource, if the cluster has the CRD."""
        try:
            exists = self.crd_exists()
        except (KubeError, TimeoutError) as exc:
            raise KubeError(f"cannot check if HelmChart CRD exists: {exc}") from exc
        if exists:
            try:
                self._check_resources()
            except (KubeError, TimeoutError) as exc:
                raise KubeError(f"cannot check HelmChart releases: {exc}") from exc

    def crd_exists(self) -> bool:
        """Tell whether the HelmChart CRD is installed in the cluster."""
        try:
            result = self.client.get_json(CRD_PATH, timeout=self.timeout)
        except KubeError as exc:
            raise KubeError(f"cannot get {CRD_NAME} CRD: {exc}", status=exc.status) from exc
        if not isinstance(result, dict):
            return False
        kind = result.get("kind")
        if kind == "Status" and result.get("code") == 404:
            self.logger.debug("%s CRD not found in the cluster", CRD_NAME)
            return False
        if kind == "CustomResourceDefinition" and (result.get("metadata") or {}).get("name") == CRD_NAME:
            self.logger.debug("%s CRD found in the cluster", CRD_NAME)
            return True
        return False

    def list_resources(self, deadline: float | None = None) -> list[HelmChart]:
        """Return all HelmChart resources in the cluster."""
        path = f"{API_PATH}/{RESOURCE_NAME}"
        try:
            data = self.client.get_json(path, timeout=_remaining(deadline))
        except KubeError as exc:
            raise KubeError(f"cannot list {API_PATH}/{RESOURCE_NAME} resources: {exc}", status=exc.status) from exc
        if not isinstance(data, dict):
            raise KubeError("cannot unmarshal the Kubernetes API response: not an object")
        return [HelmChart.from_dict(item) for item in data.get("items") or [] if isinstance(item, dict)]

    def _check_resources(self) -> None:
        deadline = time.monotonic() + self.timeout
        try:
            resources = self.list_resources(deadline)
        except (KubeError, TimeoutError) as exc:
            raise KubeError(f"cannot list HelmChart custom resources, skipping: {exc}") from exc

        selected = [r for r in resources if not self.namespace or r.target_namespace == self.namespace]
        self.logger.debug("started checking individual HelmChart objects")
        with ThreadPoolExecutor(max_workers=max(1, self.concurrent_requests)) as pool:
            futures = [pool.submit(self.check_resource, resource, deadline) for resource in selected]
        for future in futures:
            error = future.exception()
            if error is not None:
                self.logger.error("cannot check an individual HelmChart object: %s", error)
        self.logger.debug("finished checking individual HelmChart objects")

    def check_resource(self, resource: HelmChart, deadline: float | None = None) -> None:
        """Look up the latest version for one HelmChart and record the result."""
        name, target = resource.name, resource.target_namespace
        if deadline is not None and time.monotonic() >= deadline:
            raise TimeoutError(f"cannot check '{name}' HelmChart object: context deadline exceeded")

        self.logger.debug("processing %s HelmChart", name)
        if not resource.version:
            self.known_sources.add(name, resource.chart if is_oci(resource.chart) else resource.repo)
            self.logger.debug("%s HelmChart is not versioned, we'll discover its version later", name)
            return

        try:
            current = Version(resource.version)
        except InvalidVersionError as exc:
            raise InvalidVersionError(f"invalid '{name}' chart version of {resource.version}: {exc}") from exc
        self.logger.debug("%s HelmChart is versioned", name)

        if is_oci(resource.chart):
            try:
                latest = self.fetcher.fetch_oci_chart_latest_version(resource.chart, deadline)
            except FetchError as exc:
                raise FetchError(f"cannot fetch latest version of chart {resource.chart}: {exc}") from exc
            self.logger.debug("chart %s, current version %s", resource.chart, current.original())
            self.logger.debug("chart %s, latest version %s", resource.chart, latest.original())
            release = DiscoveredChartRelease(name, resource.chart, name, target, current, latest, DISCOVERY_METHOD)
        else:
            try:
                latest = self.fetcher.fetch_http_chart_latest_version(resource.repo, resource.chart, deadline)
            except FetchError as exc:
                raise FetchError(
                    f"'{name}' release in '{target}' namespace: could not fetch {resource.chart} "
                    f"chart version from {resource.repo} repo: {exc}"
                ) from exc
            release = DiscoveredChartRelease(
                resource.chart, resource.repo, name, target, current, latest, DISCOVERY_METHOD
            )

        try:
            self.discovered.add(release)
        except DuplicateReleaseError as exc:
            raise DuplicateReleaseError(f"cannot process {name} chart version information: {exc}") from exc
        self.processed.add(ProcessedRelease(name, target))
        self.logger.debug("'%s' release in '%s' namespace: saved latest version %s", name, target, latest.original())