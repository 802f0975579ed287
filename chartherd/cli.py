"""Command line entry point: find Helm releases in a cluster that have newer charts."""

from __future__ import annotations

import argparse
import json
import logging
import os
import re
import sys
import time
from fractions import Fraction
from typing import Callable, Mapping, Sequence, TypeVar

from .fetchutils import load_repositories_file
from .kube import (
    IN_CLUSTER_HOST_ENV,
    KubeClient,
    KubeError,
    load_in_cluster_config,
    load_kubeconfig,
    locate_kubeconfig,
)
from .metrics import MetricsExporter
from .updatechecker import OutputFormat, UpdateChecker

DEFAULT_INTERVAL = "1h"
DEFAULT_CONTEXT = "default"
CONTEXT_TIMEOUT = "30s"
DEFAULT_NAMESPACE = ""
DEFAULT_CONCURRENT_REQUESTS = 10
DEFAULT_OUTPUT = "table"
DEFAULT_METRICS_BIND_TO = ":9420"
DEFAULT_METRICS_ROUTE = "/metrics"

_UNIT_NS = {
    "ns": 1,
    "us": 1_000,
    "µs": 1_000,
    "μs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60_000_000_000,
    "h": 3_600_000_000_000,
}
_DURATION_PART = re.compile(r"(\d+\.?\d*|\.\d+)(ns|us|µs|μs|ms|s|m|h)")
_MAX_NS = 2**63 - 1
_TRUE = frozenset({"1", "t", "T", "TRUE", "true", "True"})
_FALSE = frozenset({"0", "f", "F", "FALSE", "false", "False"})

T = TypeVar("T")


def parse_duration(text: str) -> float:
    """Parse a duration such as "1h30m" or "300ms" into seconds."""
    body = text
    sign = 1
    if body[:1] in ("+", "-"):
        sign = -1 if body[0] == "-" else 1
        body = body[1:]
    if body == "0":
        return 0.0
    if not body:
        raise ValueError(f'time: invalid duration "{text}"')
    total = Fraction(0)
    position = 0
    while position < len(body):
        match = _DURATION_PART.match(body, position)
        if match is None:
            raise ValueError(f'time: invalid duration "{text}"')
        total += Fraction(match.group(1)) * _UNIT_NS[match.group(2)]
        position = match.end()
    nanoseconds = int(total)
    if nanoseconds > _MAX_NS:
        raise ValueError(f'time: invalid duration "{text}"')
    return sign * nanoseconds / 1_000_000_000


def _format_duration(seconds: float) -> str:
    nanoseconds = round(abs(seconds) * 1_000_000_000)
    sign = "-" if seconds < 0 else ""
    if nanoseconds == 0:
        return "0s"
    if nanoseconds < 1_000:
        return f"{sign}{nanoseconds}ns"
    if nanoseconds < 1_000_000:
        return f"{sign}{nanoseconds / 1_000:g}µs"
    if nanoseconds < 1_000_000_000:
        return f"{sign}{nanoseconds / 1_000_000:g}ms"
    hours, rest = divmod(nanoseconds, 3_600_000_000_000)
    minutes, rest = divmod(rest, 60_000_000_000)
    secs = f"{rest / 1_000_000_000:.9f}".rstrip("0").rstrip(".")
    if hours:
        return f"{sign}{hours}h{minutes}m{secs}s"
    if minutes:
        return f"{sign}{minutes}m{secs}s"
    return f"{sign}{secs}s"


def _parse_bool(text: str) -> bool:
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ValueError(f'invalid boolean value "{text}"')


def _parse_int(text: str) -> int:
    try:
        return int(text, 0)
    except ValueError:
        return int(text)


def _argument_type(convert: Callable[[str], T]) -> Callable[[str], T]:
    def parse(text: str) -> T:
        try:
            return convert(text)
        except ValueError as exc:
            raise argparse.ArgumentTypeError(str(exc)) from exc

    return parse


def _env_name(flag: str) -> str:
    return flag.upper().replace("-", "_")


def build_parser(environ: Mapping[str, str] | None = None) -> argparse.ArgumentParser:
    """Build the argument parser; environment variables named after the flags supply defaults."""
    environ = os.environ if environ is None else environ
    home = environ.get("HOME", "")

    def default(flag: str, fallback: T, convert: Callable[[str], T]) -> T:
        raw = environ.get(_env_name(flag), "")
        if not raw:
            return fallback
        try:
            return convert(raw)
        except ValueError as exc:
            raise ValueError(f"invalid value for {_env_name(flag)}: {exc}") from exc

    parser = argparse.ArgumentParser(
        prog="chartherd",
        description="Report Helm releases in a Kubernetes cluster that have newer chart versions available.",
        allow_abbrev=False,
    )

    def add_bool(flag: str, help_text: str) -> None:
        parser.add_argument(
            f"--{flag}",
            f"-{flag}",
            nargs="?",
            const=True,
            default=default(flag, False, _parse_bool),
            type=_argument_type(_parse_bool),
            metavar="BOOL",
            help=help_text,
        )

    def add_value(flag: str, fallback: str, help_text: str) -> None:
        parser.add_argument(f"--{flag}", f"-{flag}", default=default(flag, fallback, str), help=help_text)

    add_bool("debug", "Enable debug logging.")
    add_bool(
        "use-local-helm-repos",
        "Use Helm repositories data (repositories.yaml) from the local machine. Every repo from the file "
        "might be queried for any installed chart, so be cautious about rate limiting and leaking your "
        "installed chart names.",
    )
    add_value(
        "helm-repos-path",
        f"{home}/.config/helm/repositories.yaml",
        "Path to Helm repositories data (repositories.yaml) on the local machine.",
    )
    add_bool(
        "check-chart-deps",
        "If a chart's source repo cannot be determined, try looking for it in its dependencies repos.",
    )
    add_bool(
        "daemon",
        "Run continuously in the foreground. If not set and chartherd runs outside of a Kubernetes "
        "cluster, it will execute once and exit.",
    )
    add_value(
        "kubeconfig",
        f"{home}/.kube/config",
        "Path to the kubeconfig file. Can also be set via KUBECONFIG environment variable.",
    )
    add_value("kubeconfig-context", DEFAULT_CONTEXT, "Kubeconfig context to use.")
    add_value("interval", DEFAULT_INTERVAL, "Check interval when running in daemon mode.")
    add_value(
        "namespace",
        DEFAULT_NAMESPACE,
        "Limit the checks to releases in a single namespace. If not set, all namespaces are checked.",
    )
    parser.add_argument(
        "--concurrent-requests",
        "-concurrent-requests",
        default=default("concurrent-requests", DEFAULT_CONCURRENT_REQUESTS, _parse_int),
        type=_argument_type(_parse_int),
        help="Limit the number of Helm releases checked concurrently.",
    )
    add_value("output", DEFAULT_OUTPUT, "Output format of the results: 'table', 'json' or 'none'.")
    add_bool("include-all", "Report all Helm charts instead of only the ones that have an update.")
    add_bool("metrics-enabled", "Export the resulting output as Prometheus metrics.")
    add_value(
        "metrics-http-bind-to",
        DEFAULT_METRICS_BIND_TO,
        "IP address and TCP port to bind the metrics exporter to in [HOST]:PORT format.",
    )
    add_value("metrics-route", DEFAULT_METRICS_ROUTE, "HTTP route for the metrics exporter.")
    return parser


_LEVEL_NAMES = {"WARNING": "WARN", "CRITICAL": "ERROR"}


def _quote(value: str) -> str:
    if value and not any(c.isspace() or c in '"=\\' or not c.isprintable() for c in value):
        return value
    return json.dumps(value, ensure_ascii=False)


class _TextFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        stamp = time.strftime("%Y-%m-%d %H:%M:%S", self.converter(record.created))
        when = f"{stamp}.{int(record.msecs):03d}"
        level = _LEVEL_NAMES.get(record.levelname, record.levelname)
        text = f"time={_quote(when)} level={level} msg={_quote(record.getMessage())}"
        if record.exc_info:
            text += f" error={_quote(self.formatException(record.exc_info))}"
        return text


def configure_logging(debug: bool = False) -> logging.Logger:
    """Send the package's log records to stderr as key=value lines."""
    logger = logging.getLogger("chartherd")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_TextFormatter())
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if debug else logging.INFO)
    logger.propagate = False
    return logger


def _resolve_interval(text: str, logger: logging.Logger) -> float:
    try:
        interval = parse_duration(text)
    except ValueError:
        interval = 0.0
    if interval <= 0:
        logger.error("cannot parse check interval of %s, using default interval %s", text, DEFAULT_INTERVAL)
        interval = parse_duration(DEFAULT_INTERVAL)
    return interval


def _run_once(checker: UpdateChecker, logger: logging.Logger) -> None:
    try:
        checker.run()
    except OSError as exc:
        logger.error("error while performing Helm releases update check: %s", exc)


def main(argv: Sequence[str] | None = None) -> int:
    """Run the update check once, or repeatedly in daemon mode or inside a cluster."""
    environ = os.environ
    try:
        parser = build_parser(environ)
    except ValueError as exc:
        print(f"cannot parse environment variables: {exc}", file=sys.stderr)
        return 2
    args = parser.parse_args(argv)

    try:
        output_format = OutputFormat(args.output)
    except ValueError:
        print(f"unknown output format '{args.output}', exiting", file=sys.stderr)
        return 2

    logger = configure_logging(args.debug)
    timeout = parse_duration(CONTEXT_TIMEOUT)

    local_repos = None
    if args.use_local_helm_repos:
        try:
            local_repos = load_repositories_file(args.helm_repos_path)
        except (OSError, ValueError) as exc:
            logger.error("helm local repo file at %s could not be processed: %s", args.helm_repos_path, exc)
            return 1

    running_in_cluster = bool(environ.get(IN_CLUSTER_HOST_ENV))
    if running_in_cluster:
        logger.info("running in a Kubernetes cluster, proceeding")
        try:
            config = load_in_cluster_config(environ)
        except KubeError as exc:
            logger.error("cannot connect to Kubernetes cluster: %s", exc)
            return 1
    else:
        logger.info("running outside of a Kubernetes, will try to locate the kubeconfig file now")
        try:
            kubeconfig_path = locate_kubeconfig(args.kubeconfig, environ)
        except KubeError as exc:
            logger.error("could not locate a kubeconfig file, exiting: %s", exc)
            return 1
        try:
            config = load_kubeconfig(kubeconfig_path, args.kubeconfig_context)
        except KubeError as exc:
            logger.error(
                "cannot connect to Kubernetes cluster using '%s' kubeconfig file and '%s' context: %s",
                kubeconfig_path,
                args.kubeconfig_context,
                exc,
            )
            return 1

    client = KubeClient(config)
    logger.info("successfully connected to the Kubernetes cluster at %s", config.host)

    exporter = None
    if args.metrics_enabled:
        try:
            exporter = MetricsExporter(logger, args.metrics_http_bind_to, args.metrics_route)
        except ValueError as exc:
            logger.error("cannot initialize update checker: %s", exc)
            return 1

    checker = UpdateChecker(
        logger,
        client,
        args.use_local_helm_repos,
        local_repos,
        args.check_chart_deps,
        args.namespace,
        args.concurrent_requests,
        timeout,
        output_format,
        args.include_all,
        exporter,
    )
    try:
        _run_once(checker, logger)
        if not (args.daemon or running_in_cluster):
            return 0
        interval = _resolve_interval(args.interval, logger)
        next_run = time.monotonic()
        while True:
            logger.info("will perform the next check in %s", _format_duration(interval))
            next_run += interval
            now = time.monotonic()
            while next_run < now:
                next_run += interval
            time.sleep(next_run - now)
            _run_once(checker, logger)
    except KeyboardInterrupt:
        return 0
    finally:
        if exporter is not None:
            exporter.stop()


if __name__ == "__main__":
    sys.exit(main())