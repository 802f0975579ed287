import socket
import time
import urllib.error
import urllib.request

import pytest

from chartherd.metrics import MetricsExporter, parse_bind_address
from chartherd.releaseutils import DiscoveredChartRelease, Version


def release(name):
    return DiscoveredChartRelease(
        "nginx", "https://charts.example.com", name, "default",
        Version("v1.0"), Version("1.1.0"), "secret",
    )


def free_port():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def test_parse_bind_address():
    assert parse_bind_address(":9420") == ("", 9420)
    assert parse_bind_address("[::1]:80") == ("::1", 80)


@pytest.mark.parametrize("bad", ["9420", "host:", "host:port", "h:70000"])
def test_parse_bind_address_invalid(bad):
    with pytest.raises(ValueError):
        parse_bind_address(bad)


def test_render_series_and_reset():
    exporter = MetricsExporter(None, ":9420", "/metrics")
    exporter.update([release("a"), release("b")])
    text = exporter.render()
    series = [line for line in text.splitlines() if not line.startswith("#")]
    assert len(series) == 2
    assert 'current_version="v1.0"' in series[0]
    assert 'release_name="a"' in series[0]
    assert all(line.startswith("chartherd_charts{") and line.endswith(" 1") for line in series)
    exporter.update([])
    assert [l for l in exporter.render().splitlines() if not l.startswith("#")] == []


def test_serves_over_http():
    port = free_port()
    exporter = MetricsExporter(None, f"127.0.0.1:{port}", "/metrics")
    exporter.update([release("a")])
    exporter.run()
    try:
        body = None
        for _ in range(50):
            try:
                with urllib.request.urlopen(f"http://127.0.0.1:{port}/metrics", timeout=2) as resp:
                    body = resp.read().decode()
                break
            except urllib.error.URLError:
                time.sleep(0.05)
        assert body == exporter.render()
        with pytest.raises(urllib.error.HTTPError):
            urllib.request.urlopen(f"http://127.0.0.1:{port}/other", timeout=2)
    finally:
        exporter.stop()