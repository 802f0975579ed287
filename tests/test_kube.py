import base64
import os
from urllib.parse import parse_qs, urlparse

import pytest
import responses

from chartherd import kube
from chartherd.kube import (
    ClusterConfig,
    KubeClient,
    KubeError,
    load_in_cluster_config,
    load_kubeconfig,
    locate_kubeconfig,
)

API = "https://k8s.example.com"

KUBECONFIG = """\
apiVersion: v1
kind: Config
current-context: default
clusters:
- name: main
  cluster:
    server: https://k8s.example.com
    certificate-authority-data: {ca}
- name: other
  cluster:
    server: https://other.example.com
    certificate-authority: certs/ca.crt
    insecure-skip-tls-verify: true
contexts:
- name: default
  context:
    cluster: main
    user: admin
- name: staging
  context:
    cluster: other
    user: admin
- name: broken
  context:
    cluster: missing
    user: admin
users:
- name: admin
  user:
    token: token
"""


@pytest.fixture
def kubeconfig(tmp_path):
    path = tmp_path / "config"
    ca = base64.b64encode(b"ca-pem-data").decode()
    path.write_text(KUBECONFIG.format(ca=ca))
    return str(path)


def test_locate_prefers_environment(tmp_path):
    flag_path = tmp_path / "config"
    flag_path.write_text("x")
    result = locate_kubeconfig(str(flag_path), {"KUBECONFIG": "/from/env"})
    assert result == "/from/env"


def test_locate_uses_existing_flag_path(tmp_path):
    flag_path = tmp_path / "config"
    flag_path.write_text("x")
    assert locate_kubeconfig(str(flag_path), {}) == str(flag_path)


def test_locate_missing_file_raises(tmp_path):
    with pytest.raises(KubeError):
        locate_kubeconfig(str(tmp_path / "absent"), {"KUBECONFIG": ""})


def test_load_named_context(kubeconfig):
    config = load_kubeconfig(kubeconfig, "default")
    assert config.host == "https://k8s.example.com"
    assert config.token == "token"
    assert config.ca_data == b"ca-pem-data"
    assert config.insecure is False


def test_load_empty_context_uses_current(kubeconfig):
    assert load_kubeconfig(kubeconfig, "") == load_kubeconfig(kubeconfig, "default")


def test_load_resolves_relative_paths(kubeconfig):
    config = load_kubeconfig(kubeconfig, "staging")
    assert config.host == "https://other.example.com"
    assert config.insecure is True
    assert config.ca_file == os.path.join(os.path.dirname(kubeconfig), "certs", "ca.crt")


def test_load_unknown_context_raises(kubeconfig):
    with pytest.raises(KubeError, match="context was not found for specified context: nowhere"):
        load_kubeconfig(kubeconfig, "nowhere")


def test_load_missing_cluster_raises(kubeconfig):
    with pytest.raises(KubeError):
        load_kubeconfig(kubeconfig, "broken")


def test_load_unreadable_file_raises(tmp_path):
    with pytest.raises(KubeError):
        load_kubeconfig(str(tmp_path / "absent"), "default")


def test_in_cluster_requires_environment():
    with pytest.raises(KubeError, match="KUBERNETES_SERVICE_HOST"):
        load_in_cluster_config({})


def test_in_cluster_reads_service_account(tmp_path, monkeypatch):
    (tmp_path / "token").write_text("token\n")
    (tmp_path / "ca.crt").write_text("ca")
    monkeypatch.setattr(kube, "SERVICE_ACCOUNT_DIR", str(tmp_path))
    config = load_in_cluster_config({"KUBERNETES_SERVICE_HOST": "10.0.0.1", "KUBERNETES_SERVICE_PORT": "443"})
    assert config.host == "https://10.0.0.1:443"
    assert config.token == "token"
    assert config.ca_file == str(tmp_path / "ca.crt")


def test_in_cluster_brackets_ipv6(tmp_path, monkeypatch):
    (tmp_path / "token").write_text("token")
    monkeypatch.setattr(kube, "SERVICE_ACCOUNT_DIR", str(tmp_path))
    config = load_in_cluster_config({"KUBERNETES_SERVICE_HOST": "fd00::1", "KUBERNETES_SERVICE_PORT": "443"})
    assert config.host == "https://[fd00::1]:443"
    assert config.ca_file is None


def test_in_cluster_missing_token_raises(tmp_path, monkeypatch):
    monkeypatch.setattr(kube, "SERVICE_ACCOUNT_DIR", str(tmp_path))
    with pytest.raises(KubeError):
        load_in_cluster_config({"KUBERNETES_SERVICE_HOST": "10.0.0.1", "KUBERNETES_SERVICE_PORT": "443"})


def test_client_writes_ca_data_to_file(kubeconfig):
    client = KubeClient(load_kubeconfig(kubeconfig, "default"))
    with open(client.session.verify, "rb") as handle:
        assert handle.read() == b"ca-pem-data"


def test_get_json_sends_bearer_token():
    client = KubeClient(ClusterConfig(host=API + "/", token="token"))
    with responses.RequestsMock() as rsps:
        rsps.add(responses.GET, f"{API}/version", json={"major": "1"})
        assert client.get_json("/version") == {"major": "1"}
        assert rsps.calls[0].request.headers["Authorization"] == "Bearer token"


def test_get_json_error_status_raises():
    client = KubeClient(ClusterConfig(host=API, token="token"))
    with responses.RequestsMock() as rsps:
        rsps.add(responses.GET, f"{API}/missing", status=404, json={"kind": "Status", "message": "not found"})
        with pytest.raises(KubeError) as info:
            client.get_json("/missing")
    assert info.value.status == 404


def test_get_json_invalid_body_raises():
    client = KubeClient(ClusterConfig(host=API, token="token"))
    with responses.RequestsMock() as rsps:
        rsps.add(responses.GET, f"{API}/broken", body="not json")
        with pytest.raises(KubeError, match="cannot unmarshal"):
            client.get_json("/broken")


def test_list_secrets_in_namespace():
    client = KubeClient(ClusterConfig(host=API, token="token"))
    items = [{"metadata": {"name": "a"}}, {"metadata": {"name": "b"}}]
    with responses.RequestsMock() as rsps:
        rsps.add(responses.GET, f"{API}/api/v1/namespaces/apps/secrets", json={"items": items})
        result = client.list_secrets("apps", "type=helm.sh/release.v1")
        query = parse_qs(urlparse(rsps.calls[0].request.url).query)
    assert result == items
    assert query == {"fieldSelector": ["type=helm.sh/release.v1"]}


def test_list_secrets_all_namespaces():
    client = KubeClient(ClusterConfig(host=API, token="token"))
    with responses.RequestsMock() as rsps:
        rsps.add(responses.GET, f"{API}/api/v1/secrets", json={"items": None})
        assert client.list_secrets() == []
        assert urlparse(rsps.calls[0].request.url).path == "/api/v1/secrets"