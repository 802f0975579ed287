"""Running every checker once and reporting the charts that were found."""

from __future__ import annotations

import enum
import json
import logging
import sys
from typing import IO, Iterable

from .cattlechecker import CattleChecker
from .fetchutils import Fetcher, RepositoryEntry
from .kube import KubeClient, KubeError
from .metrics import MetricsExporter
from .releaseutils import (
    DiscoveredChartRelease,
    DiscoveredChartReleases,
    KnownChartSources,
    ProcessedReleases,
)
from .secretchecker import SecretChecker

TABLE_HEADERS = ("Chart name", "Chart repo", "Release name", "Release namespace", "Cur ver", "New ver", "Method")
_TABLE_PADDING = "\t"


class OutputFormat(str, enum.Enum):
    """How the results of a check are printed."""

    TABLE = "table"
    JSON = "json"
    NONE = "none"


def _header(title: str) -> str:
    return title.replace("_", " ").replace(".", " ").strip().upper()


def _row(release: DiscoveredChartRelease) -> tuple[str, ...]:
    return (
        release.chart_name,
        release.chart_repo,
        release.release_name,
        release.release_namespace,
        release.installed_chart_version.original(),
        release.available_chart_version.original(),
        release.discovery_method,
    )


def format_table(releases: Iterable[DiscoveredChartRelease]) -> str:
    """Render releases as a borderless, tab-padded table with a header line."""
    table = [tuple(_header(h) for h in TABLE_HEADERS), *(_row(r) for r in releases)]
    widths = [max(len(cell) for cell in column) for column in zip(*table)]
    return "".join(
        "".join(cell.ljust(width) + _TABLE_PADDING for cell, width in zip(row, widths)) + "\n"
        for row in table
    )


def format_json(releases: Iterable[DiscoveredChartRelease]) -> str:
    """Render releases as an indented JSON array."""
    return json.dumps([r.to_dict() for r in releases], indent=2)


class UpdateChecker:
    """Runs the HelmChart and Secret checkers and reports what needs updating."""

    def __init__(
        self,
        logger: logging.Logger | None,
        client: KubeClient,
        use_local_helm_repos: bool = False,
        local_helm_repos: list[RepositoryEntry] | None = None,
        check_chart_deps: bool = False,
        namespace: str = "",
        concurrent_requests: int = 10,
        timeout: float = 30.0,
        output_format: OutputFormat | str = OutputFormat.TABLE,
        include_all: bool = False,
        metrics_exporter: MetricsExporter | None = None,
        stream: IO[str] | None = None,
    ) -> None:
        self.logger = logger or logging.getLogger(__name__)
        self.client = client
        self.use_local_helm_repos = use_local_helm_repos
        self.local_helm_repos = list(local_helm_repos or [])
        self.check_chart_deps = check_chart_deps
        self.namespace = namespace
        self.concurrent_requests = concurrent_requests
        self.timeout = timeout
        self.output_format = OutputFormat(output_format)
        self.include_all = include_all
        self.metrics_exporter = metrics_exporter
        self.stream = stream
        if metrics_exporter is not None:
            metrics_exporter.run()

    def run(self) -> DiscoveredChartReleases:
        """Perform one full check, publish and print the result, and return it."""
        discovered = DiscoveredChartReleases(self.include_all)
        fetcher = Fetcher(self.logger)
        known_sources = KnownChartSources()
        processed = ProcessedReleases()

        cattle = CattleChecker(
            self.logger,
            self.client,
            self.namespace,
            self.concurrent_requests,
            discovered,
            processed,
            known_sources,
            fetcher,
            self.timeout,
        )
        try:
            cattle.run()
        except (KubeError, TimeoutError) as exc:
            self.logger.error("cannot check Helm releases with cattle CRD backend, skipping: %s", exc)

        secrets = SecretChecker(
            self.logger,
            self.client,
            self.use_local_helm_repos,
            self.local_helm_repos,
            self.check_chart_deps,
            self.namespace,
            self.concurrent_requests,
            discovered,
            processed,
            known_sources,
            fetcher,
            self.timeout,
        )
        try:
            secrets.run()
        except (KubeError, TimeoutError) as exc:
            self.logger.error("cannot to check Helm releases with Secret backend, skipping: %s", exc)

        if self.metrics_exporter is not None:
            self.metrics_exporter.update(discovered)

        try:
            self.write_output(discovered)
        except OSError as exc:
            raise OSError(f"cannot output the update check results: {exc}") from exc
        return discovered

    def write_output(self, releases: Iterable[DiscoveredChartRelease]) -> None:
        """Print the releases in the configured output format."""
        stream = self.stream if self.stream is not None else sys.stdout
        if self.output_format is OutputFormat.JSON:
            stream.write(format_json(releases))
        elif self.output_format is OutputFormat.TABLE:
            stream.write(format_table(releases))
        stream.flush()