"""Tests for the metric sources (local psutil sampling and Prometheus queries)."""

from pathlib import Path
from types import SimpleNamespace
from unittest.mock import patch

import httpx
import pytest
import respx

from audit_recovery.monitor.errors import ObservationFailure
from audit_recovery.monitor.sources import LocalMetricsSource, PrometheusMetricsSource
from audit_recovery.store.sqlite_store import SqliteAuditStore

PROM = "http://prometheus.test:9090"
QUERY_URL = f"{PROM}/api/v1/query"

_MEMORY = SimpleNamespace(used=6 * 1024**3, total=8 * 1024**3)


def _vector(value: str) -> dict[str, object]:
    return {
        "status": "success",
        "data": {"resultType": "vector", "result": [{"metric": {}, "value": [1700000000, value]}]},
    }


_EMPTY = {"status": "success", "data": {"resultType": "vector", "result": []}}


@pytest.fixture
def store(tmp_path: Path) -> SqliteAuditStore:
    s = SqliteAuditStore(str(tmp_path / "audit.sqlite"))
    s.exec("CREATE TABLE permission_audit (id INTEGER PRIMARY KEY)")
    yield s  # type: ignore[misc]
    s.close()


@pytest.fixture
def prom_source(store: SqliteAuditStore) -> PrometheusMetricsSource:
    return PrometheusMetricsSource(
        f"{PROM}/",
        store,
        latency_query="latency_q",
        error_rate_query="errors_q",
        cache_hit_query="cache_q",
        connections_query="conns_q",
    )


class TestLocalMetricsSource:
    async def test_sample(self, store: SqliteAuditStore) -> None:
        with patch("audit_recovery.monitor.sources.psutil.virtual_memory", return_value=_MEMORY):
            snapshot = await LocalMetricsSource(store).sample()

        assert snapshot.memory_usage_ratio == 0.75
        assert snapshot.active_connections == 1
        assert snapshot.db_size_bytes > 0
        assert snapshot.error_rate == 0.0
        assert snapshot.cache_hit_ratio == 1.0

    async def test_os_error_is_observation_failure(self, store: SqliteAuditStore) -> None:
        with (
            patch("audit_recovery.monitor.sources.psutil.virtual_memory", side_effect=OSError("no /proc")),
            pytest.raises(ObservationFailure, match="no /proc"),
        ):
            await LocalMetricsSource(store).sample()


class TestPrometheusMetricsSource:
    @respx.mock
    async def test_sample(self, prom_source: PrometheusMetricsSource) -> None:
        respx.get(QUERY_URL, params={"query": "latency_q"}).mock(return_value=httpx.Response(200, json=_vector("1250.5")))
        respx.get(QUERY_URL, params={"query": "errors_q"}).mock(return_value=httpx.Response(200, json=_vector("0.02")))
        respx.get(QUERY_URL, params={"query": "cache_q"}).mock(return_value=httpx.Response(200, json=_vector("0.9")))
        respx.get(QUERY_URL, params={"query": "conns_q"}).mock(return_value=httpx.Response(200, json=_vector("4")))

        with patch("audit_recovery.monitor.sources.psutil.virtual_memory", return_value=_MEMORY):
            snapshot = await prom_source.sample()

        assert snapshot.query_latency_p95_ms == 1250.5
        assert snapshot.error_rate == 0.02
        assert snapshot.cache_hit_ratio == 0.9
        assert snapshot.active_connections == 4
        assert snapshot.db_size_bytes > 0
        assert snapshot.memory_total_bytes == _MEMORY.total

    @respx.mock
    async def test_missing_series_use_neutral_values(self, prom_source: PrometheusMetricsSource) -> None:
        respx.get(QUERY_URL, params={"query": "latency_q"}).mock(return_value=httpx.Response(200, json=_vector("NaN")))
        respx.get(QUERY_URL).mock(return_value=httpx.Response(200, json=_EMPTY))

        with patch("audit_recovery.monitor.sources.psutil.virtual_memory", return_value=_MEMORY):
            snapshot = await prom_source.sample()

        assert snapshot.query_latency_p95_ms == 0.0
        assert snapshot.error_rate == 0.0
        assert snapshot.cache_hit_ratio == 1.0
        assert snapshot.active_connections == 0

    @respx.mock
    async def test_connect_error(self, prom_source: PrometheusMetricsSource) -> None:
        respx.get(QUERY_URL).mock(side_effect=httpx.ConnectError("Connection refused"))
        with pytest.raises(ObservationFailure, match="Connection refused"):
            await prom_source.sample()

    @respx.mock
    async def test_http_error_status(self, prom_source: PrometheusMetricsSource) -> None:
        respx.get(QUERY_URL).mock(return_value=httpx.Response(503, text="unavailable"))
        with pytest.raises(ObservationFailure):
            await prom_source.sample()

    @respx.mock
    async def test_malformed_body(self, prom_source: PrometheusMetricsSource) -> None:
        respx.get(QUERY_URL).mock(return_value=httpx.Response(200, text="not json"))
        with pytest.raises(ObservationFailure):
            await prom_source.sample()
