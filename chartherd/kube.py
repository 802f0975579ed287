"""Locating cluster credentials and talking to the Kubernetes API."""

from __future__ import annotations

import atexit
import base64
import binascii
import contextlib
import logging
import os
import tempfile
from dataclasses import dataclass
from typing import Any, Mapping

import requests
import yaml

KUBECONFIG_ENV = "KUBECONFIG"
IN_CLUSTER_HOST_ENV = "KUBERNETES_SERVICE_HOST"
IN_CLUSTER_PORT_ENV = "KUBERNETES_SERVICE_PORT"
SERVICE_ACCOUNT_DIR = "/var/run/secrets/kubernetes.io/serviceaccount"
DEFAULT_TIMEOUT = 30.0

_log = logging.getLogger(__name__)


class KubeError(Exception):
    """Raised when the cluster cannot be reached or answers with an error."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


@dataclass(frozen=True)
class ClusterConfig:
    """Where the API server is and how to authenticate to it."""

    host: str
    token: str | None = None
    username: str | None = None
    password: str | None = None
    ca_file: str | None = None
    ca_data: bytes | None = None
    cert_file: str | None = None
    cert_data: bytes | None = None
    key_file: str | None = None
    key_data: bytes | None = None
    insecure: bool = False


def locate_kubeconfig(flag_path: str, environ: Mapping[str, str] | None = None) -> str:
    """Return the kubeconfig path: the environment variable first, then the given path."""
    environ = os.environ if environ is None else environ
    from_env = environ.get(KUBECONFIG_ENV, "")
    if from_env:
        _log.info("file '%s' found from %s environment variable, using it as kubeconfig", from_env, KUBECONFIG_ENV)
        return from_env
    try:
        os.stat(flag_path)
    except OSError as exc:
        _log.warning("file '%s' could not be opened: %s", flag_path, exc)
        raise KubeError(f"could not locate a kubeconfig file: {exc}") from exc
    _log.info("file '%s' found from CLI argument, using it as kubeconfig", flag_path)
    return flag_path


def _named(document: dict[str, Any], section: str, inner: str, name: str) -> dict[str, Any] | None:
    for item in document.get(section) or []:
        if isinstance(item, dict) and item.get("name") == name:
            body = item.get(inner)
            return body if isinstance(body, dict) else {}
    return None


def _decode(value: str, field: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise KubeError(f"invalid base64 in {field}: {exc}") from exc


def _resolve(base: str, path: str | None) -> str | None:
    if not path:
        return None
    return path if os.path.isabs(path) else os.path.join(base, path)


def load_kubeconfig(path: str, context: str) -> ClusterConfig:
    """Read the cluster and user of a kubeconfig context."""
    try:
        with open(path, encoding="utf-8") as handle:
            document = yaml.safe_load(handle)
    except OSError as exc:
        raise KubeError(f"cannot read kubeconfig {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise KubeError(f"cannot parse kubeconfig {path}: {exc}") from exc
    if not isinstance(document, dict):
        raise KubeError(f"{path} is not a kubeconfig file")

    base = os.path.dirname(os.path.abspath(path))
    context_name = context or document.get("current-context") or ""
    ctx = _named(document, "contexts", "context", context_name)
    if ctx is None:
        raise KubeError(f"context was not found for specified context: {context_name}")

    cluster_name = ctx.get("cluster", "")
    cluster = _named(document, "clusters", "cluster", cluster_name)
    if cluster is None:
        raise KubeError(f"cluster {cluster_name!r} was not found for context {context_name!r}")
    server = cluster.get("server")
    if not server:
        raise KubeError(f"no server found for cluster {cluster_name!r}")

    user_name = ctx.get("user", "")
    user: dict[str, Any] = {}
    if user_name:
        found = _named(document, "users", "user", user_name)
        if found is None:
            raise KubeError(f"user {user_name!r} was not found for context {context_name!r}")
        user = found

    token = user.get("token") or None
    token_file = _resolve(base, user.get("tokenFile"))
    if token is None and token_file:
        try:
            with open(token_file, encoding="utf-8") as handle:
                token = handle.read().strip()
        except OSError as exc:
            raise KubeError(f"cannot read token file {token_file}: {exc}") from exc

    ca_data = cluster.get("certificate-authority-data")
    cert_data = user.get("client-certificate-data")
    key_data = user.get("client-key-data")
    return ClusterConfig(
        host=str(server),
        token=token,
        username=user.get("username") or None,
        password=user.get("password") or None,
        ca_file=_resolve(base, cluster.get("certificate-authority")),
        ca_data=_decode(ca_data, "certificate-authority-data") if ca_data else None,
        cert_file=_resolve(base, user.get("client-certificate")),
        cert_data=_decode(cert_data, "client-certificate-data") if cert_data else None,
        key_file=_resolve(base, user.get("client-key")),
        key_data=_decode(key_data, "client-key-data") if key_data else None,
        insecure=bool(cluster.get("insecure-skip-tls-verify", False)),
    )


def load_in_cluster_config(environ: Mapping[str, str] | None = None) -> ClusterConfig:
    """Build the configuration a pod gets from its service account."""
    environ = os.environ if environ is None else environ
    host = environ.get(IN_CLUSTER_HOST_ENV, "")
    port = environ.get(IN_CLUSTER_PORT_ENV, "")
    if not host or not port:
        raise KubeError(
            "unable to load in-cluster configuration, "
            f"{IN_CLUSTER_HOST_ENV} and {IN_CLUSTER_PORT_ENV} must be defined"
        )
    token_path = os.path.join(SERVICE_ACCOUNT_DIR, "token")
    try:
        with open(token_path, encoding="utf-8") as handle:
            token = handle.read().strip()
    except OSError as exc:
        raise KubeError(f"cannot read service account token: {exc}") from exc
    ca_path = os.path.join(SERVICE_ACCOUNT_DIR, "ca.crt")
    if ":" in host:
        host = f"[{host}]"
    return ClusterConfig(
        host=f"https://{host}:{port}",
        token=token,
        ca_file=ca_path if os.path.isfile(ca_path) else None,
    )


def _remove_quietly(path: str) -> None:
    with contextlib.suppress(OSError):
        os.remove(path)


def _write_temp(data: bytes) -> str:
    with tempfile.NamedTemporaryFile(prefix="chartherd-", suffix=".pem", delete=False) as handle:
        handle.write(data)
    atexit.register(_remove_quietly, handle.name)
    return handle.name


class KubeClient:
    """A small read-only client for the Kubernetes REST API."""

    def __init__(self, config: ClusterConfig, session: requests.Session | None = None) -> None:
        self.config = config
        self.host = config.host.rstrip("/")
        self.session = session or requests.Session()
        if config.token:
            self.session.headers["Authorization"] = f"Bearer {config.token}"
        elif config.username:
            self.session.auth = (config.username, config.password or "")

        if config.insecure:
            self.session.verify = False
        elif config.ca_data is not None:
            self.session.verify = _write_temp(config.ca_data)
        elif config.ca_file:
            self.session.verify = config.ca_file

        cert = config.cert_file or (_write_temp(config.cert_data) if config.cert_data is not None else None)
        key = config.key_file or (_write_temp(config.key_data) if config.key_data is not None else None)
        if cert and key:
            self.session.cert = (cert, key)
        elif cert:
            self.session.cert = cert

    def get_json(
        self, path: str, params: Mapping[str, str] | None = None, timeout: float | None = None
    ) -> Any:
        """GET an API path and return the decoded JSON body."""
        url = self.host + path
        try:
            response = self.session.get(url, params=params, timeout=timeout or DEFAULT_TIMEOUT)
        except requests.RequestException as exc:
            raise KubeError(str(exc)) from exc
        if not 200 <= response.status_code <= 206:
            detail = response.reason or ""
            with contextlib.suppress(ValueError):
                body = response.json()
                if isinstance(body, dict) and body.get("message"):
                    detail = body["message"]
            raise KubeError(
                f"the server returned HTTP {response.status_code} for {path}: {detail}",
                status=response.status_code,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise KubeError(f"cannot unmarshal the Kubernetes API response: {exc}") from exc

    def list_secrets(
        self, namespace: str = "", field_selector: str | None = None, timeout: float | None = None
    ) -> list[dict[str, Any]]:
        """List Secret objects in one namespace, or in all of them when none is given."""
        path = f"/api/v1/namespaces/{namespace}/secrets" if namespace else "/api/v1/secrets"
        params = {"fieldSelector": field_selector} if field_selector else None
        try:
            data = self.get_json(path, params=params, timeout=timeout)
        except KubeError as exc:
            raise KubeError(f"cannot list Secret resources: {exc}", status=exc.status) from exc
        if not isinstance(data, dict):
            raise KubeError("cannot list Secret resources: unexpected response")
        return [item for item in data.get("items") or [] if isinstance(item, dict)]