import time

import pytest
import responses

from chartherd.fetchutils import (
    FetchError,
    Fetcher,
    RepositoryEntry,
    is_oci,
    latest_chart_version,
    load_repositories_file,
    parse_repo_index,
    sort_tags,
)
from chartherd.releaseutils import Version

INDEX = """
apiVersion: v1
entries:
  nginx:
    - version: 1.2.0
    - version: 1.10.0
    - version: 2.0.0-rc.1
    - version: garbage
"""


@pytest.fixture
def mocked():
    with responses.RequestsMock(assert_all_requests_are_fired=False) as rsps:
        yield rsps


def test_load_repositories_file(tmp_path):
    path = tmp_path / "repositories.yaml"
    path.write_text(
        "apiVersion: ''\nrepositories:\n- name: stable\n  url: https://charts.example.com\n"
    )
    assert load_repositories_file(str(path)) == [RepositoryEntry("stable", "https://charts.example.com")]


def test_load_repositories_file_missing(tmp_path):
    with pytest.raises(OSError):
        load_repositories_file(str(tmp_path / "nope.yaml"))


def test_is_oci():
    assert is_oci("oci://r.example.com/x")
    assert not is_oci("https://r.example.com")


def test_latest_chart_version_skips_prerelease_and_invalid():
    assert latest_chart_version(parse_repo_index(INDEX), "nginx") == "1.10.0"


def test_latest_chart_version_missing_chart():
    with pytest.raises(FetchError):
        latest_chart_version(parse_repo_index(INDEX), "redis")


def test_parse_repo_index_requires_api_version():
    with pytest.raises(FetchError):
        parse_repo_index("entries: {}\n")


def test_sort_tags_orders_and_filters():
    result = sort_tags(["1.0.0", "latest", "2.0.0", "1.5.0_build1", "v3.0.0"])
    assert result[0] == "2.0.0"
    assert "latest" not in result and "v3.0.0" not in result
    assert "1.5.0+build1" in result
    assert [Version(t) for t in result] == sorted((Version(t) for t in result), reverse=True)


def test_http_fetch_and_cache(mocked):
    mocked.add(responses.GET, "https://charts.example.com/index.yaml", body=INDEX)
    fetcher = Fetcher()
    first = fetcher.fetch_http_chart_latest_version("https://charts.example.com/", "nginx")
    second = fetcher.fetch_http_chart_latest_version("https://charts.example.com/", "nginx")
    assert first.original() == "1.10.0"
    assert second == first
    assert len(mocked.calls) == 1


def test_http_fetch_unknown_chart(mocked):
    mocked.add(responses.GET, "https://charts.example.com/index.yaml", body=INDEX)
    with pytest.raises(FetchError):
        Fetcher().fetch_http_chart_latest_version("https://charts.example.com", "redis")


def test_http_fetch_unreachable(mocked):
    mocked.add(responses.GET, "https://charts.example.com/index.yaml", status=404)
    with pytest.raises(FetchError):
        Fetcher().fetch_http_chart_latest_version("https://charts.example.com", "nginx")


def test_oci_fetch_with_token_challenge(mocked):
    url = "https://registry.example.com/v2/charts/web/tags/list"
    mocked.add(
        responses.GET, url, status=401,
        headers={"WWW-Authenticate": 'Bearer realm="https://registry.example.com/token",service="registry"'},
    )
    mocked.add(responses.GET, "https://registry.example.com/token", json={"token": "token"})
    mocked.add(responses.GET, url, json={"tags": ["0.1.0", "0.3.0", "0.2.0"]})
    fetcher = Fetcher()
    latest = fetcher.fetch_oci_chart_latest_version("oci://registry.example.com/charts/web")
    assert latest.original() == "0.3.0"
    assert mocked.calls[2].request.headers["Authorization"] == "Bearer token"
    assert fetcher.fetch_oci_chart_latest_version("oci://registry.example.com/charts/web") == latest
    assert len(mocked.calls) == 3


def test_oci_fetch_no_tags(mocked):
    mocked.add(responses.GET, "https://registry.example.com/v2/charts/web/tags/list", json={"tags": []})
    with pytest.raises(FetchError):
        Fetcher().fetch_oci_chart_latest_version("oci://registry.example.com/charts/web")


def test_expired_deadline():
    with pytest.raises(FetchError):
        Fetcher().fetch_http_chart_latest_version("https://charts.example.com", "nginx", time.monotonic() - 1)