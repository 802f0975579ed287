import time

import pytest
import responses

from chartherd.cattlechecker import CattleChecker, HelmChart
from chartherd.fetchutils import FetchError, Fetcher
from chartherd.kube import ClusterConfig, KubeClient, KubeError
from chartherd.releaseutils import (
    DiscoveredChartReleases,
    InvalidVersionError,
    KnownChartSources,
    ProcessedReleases,
)

API = "https://k8s.example.com"
CRD_URL = f"{API}/apis/apiextensions.k8s.io/v1/customresourcedefinitions/helmcharts.helm.cattle.io"
LIST_URL = f"{API}/apis/helm.cattle.io/v1/helmcharts"
REPO = "https://charts.example.com"
INDEX = """\
apiVersion: v1
entries:
  nginx:
    - version: 1.2.0
    - version: 1.0.0
"""
OCI_CHART = "oci://registry.example.com/charts/app"
OCI_TAGS_URL = "https://registry.example.com/v2/charts/app/tags/list"
CRD_BODY = {"kind": "CustomResourceDefinition", "metadata": {"name": "helmcharts.helm.cattle.io"}}


def make_checker(namespace="", include_all=False):
    checker = CattleChecker(
        None,
        KubeClient(ClusterConfig(host=API, token="token")),
        namespace,
        4,
        DiscoveredChartReleases(include_all),
        ProcessedReleases(),
        KnownChartSources(),
        Fetcher(),
        5.0,
    )
    return checker


def chart_item(name, chart, version="", repo="", target="apps"):
    return {
        "metadata": {"name": name, "namespace": "kube-system"},
        "spec": {"chart": chart, "repo": repo, "version": version, "targetNamespace": target},
    }


def test_helmchart_from_dict():
    resource = HelmChart.from_dict(chart_item("web", "nginx", "1.0.0", REPO))
    assert resource == HelmChart("web", "kube-system", "nginx", REPO, "1.0.0", "apps")


def test_crd_exists_true():
    checker = make_checker()
    with responses.RequestsMock() as rsps:
        rsps.add(responses.GET, CRD_URL, json=CRD_BODY)
        assert checker.crd_exists() is True


def test_crd_other_kind_is_false():
    checker = make_checker()
    with responses.RequestsMock() as rsps:
        rsps.add(responses.GET, CRD_URL, json={"kind": "Status", "code": 404})
        assert checker.crd_exists() is False


def test_run_fails_when_crd_request_fails():
    checker = make_checker()
    with responses.RequestsMock() as rsps:
        rsps.add(responses.GET, CRD_URL, status=404, json={"kind": "Status", "code": 404})
        with pytest.raises(KubeError, match="cannot check if HelmChart CRD exists"):
            checker.run()


def test_run_records_outdated_http_chart():
    checker = make_checker()
    with responses.RequestsMock(assert_all_requests_are_fired=False) as rsps:
        rsps.add(responses.GET, CRD_URL, json=CRD_BODY)
        rsps.add(responses.GET, LIST_URL, json={"items": [chart_item("web", "nginx", "1.0.0", REPO)]})
        rsps.add(responses.GET, f"{REPO}/index.yaml", body=INDEX)
        checker.run()
    found = checker.discovered.find("web", "apps")
    assert found.chart_name == "nginx"
    assert found.chart_repo == REPO
    assert found.available_chart_version.original() == "1.2.0"
    assert found.discovery_method == "cattleCRD"
    assert checker.processed.contains("web", "apps")


def test_run_skips_other_namespaces():
    checker = make_checker(namespace="prod")
    with responses.RequestsMock(assert_all_requests_are_fired=False) as rsps:
        rsps.add(responses.GET, CRD_URL, json=CRD_BODY)
        rsps.add(responses.GET, LIST_URL, json={"items": [chart_item("web", "nginx", "1.0.0", REPO)]})
        checker.run()
        assert len(rsps.calls) == 2
    assert len(checker.discovered) == 0
    assert len(checker.processed) == 0


def test_run_logs_fetch_failures_without_raising():
    checker = make_checker()
    with responses.RequestsMock(assert_all_requests_are_fired=False) as rsps:
        rsps.add(responses.GET, CRD_URL, json=CRD_BODY)
        rsps.add(responses.GET, LIST_URL, json={"items": [chart_item("web", "nginx", "1.0.0", REPO)]})
        rsps.add(responses.GET, f"{REPO}/index.yaml", status=500)
        checker.run()
    assert len(checker.processed) == 0
    assert len(checker.discovered) == 0


def test_unversioned_chart_records_repo():
    checker = make_checker()
    checker.check_resource(HelmChart("web", chart="nginx", repo=REPO, target_namespace="apps"))
    assert checker.known_sources.get("web") == REPO
    assert len(checker.processed) == 0


def test_unversioned_oci_chart_records_chart_uri():
    checker = make_checker()
    checker.check_resource(HelmChart("app", chart=OCI_CHART, repo=REPO, target_namespace="apps"))
    assert checker.known_sources.get("app") == OCI_CHART


def test_versioned_oci_chart_uses_resource_name():
    checker = make_checker()
    with responses.RequestsMock() as rsps:
        rsps.add(responses.GET, OCI_TAGS_URL, json={"tags": ["1.0.0", "2.0.0"]})
        checker.check_resource(HelmChart("app", chart=OCI_CHART, version="1.0.0", target_namespace="apps"))
    found = checker.discovered.find("app", "apps")
    assert found.chart_name == "app"
    assert found.chart_repo == OCI_CHART
    assert found.available_chart_version.original() == "2.0.0"
    assert checker.processed.contains("app", "apps")


def test_up_to_date_chart_is_processed_but_not_reported():
    checker = make_checker()
    with responses.RequestsMock() as rsps:
        rsps.add(responses.GET, f"{REPO}/index.yaml", body=INDEX)
        checker.check_resource(HelmChart("web", chart="nginx", repo=REPO, version="1.2.0", target_namespace="apps"))
    assert checker.discovered.find("web", "apps") is None
    assert checker.processed.contains("web", "apps")


def test_invalid_version_raises():
    checker = make_checker()
    with pytest.raises(InvalidVersionError, match="invalid 'web' chart version of not-a-version"):
        checker.check_resource(HelmChart("web", chart="nginx", repo=REPO, version="not-a-version"))


def test_fetch_failure_raises():
    checker = make_checker()
    with responses.RequestsMock() as rsps:
        rsps.add(responses.GET, f"{REPO}/index.yaml", status=404)
        with pytest.raises(FetchError, match="could not fetch nginx chart version"):
            checker.check_resource(HelmChart("web", chart="nginx", repo=REPO, version="1.0.0"))


def test_expired_deadline_raises():
    checker = make_checker()
    with pytest.raises(TimeoutError):
        checker.check_resource(HelmChart("web", chart="nginx", repo=REPO, version="1.0.0"), time.monotonic() - 1)


def test_list_resources_parses_items():
    checker = make_checker()
    items = [chart_item("web", "nginx", "1.0.0", REPO), chart_item("app", OCI_CHART)]
    with responses.RequestsMock() as rsps:
        rsps.add(responses.GET, LIST_URL, json={"items": items})
        resources = checker.list_resources()
    assert [r.name for r in resources] == ["web", "app"]
    assert resources[1].chart == OCI_CHART