"""Metric sources — produce one MetricSnapshot per monitor tick."""

import asyncio
import logging

import httpx
import psutil

from audit_recovery.monitor.errors import ObservationFailure
from audit_recovery.monitor.models import MetricSnapshot
from audit_recovery.store.sqlite_store import SqliteAuditStore

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 15


class LocalMetricsSource:
    """Samples the audit store's own instrumentation plus host memory via psutil."""

    def __init__(self, store: SqliteAuditStore) -> None:
        self.store = store

    def _sample_sync(self) -> MetricSnapshot:
        memory = psutil.virtual_memory()
        return MetricSnapshot(
            query_latency_p95_ms=self.store.latency_p95_ms(),
            error_rate=self.store.error_rate(),
            cache_hit_ratio=self.store.cache.hit_ratio,
            active_connections=self.store.active_connections,
            db_size_bytes=self.store.db_size_bytes(),
            memory_used_bytes=memory.used,
            memory_total_bytes=memory.total,
        )

    async def sample(self) -> MetricSnapshot:
        try:
            return await asyncio.to_thread(self._sample_sync)
        except OSError as exc:
            raise ObservationFailure(f"Local metric sampling failed: {exc}") from exc


class PrometheusMetricsSource:
    """Samples latency, error rate, cache and connection gauges from a Prometheus server.

    Database size always comes from the store file and memory from psutil,
    since both are local facts Prometheus may not scrape.
    """

    def __init__(
        self,
        prometheus_url: str,
        store: SqliteAuditStore,
        *,
        latency_query: str,
        error_rate_query: str,
        cache_hit_query: str,
        connections_query: str,
    ) -> None:
        self.prometheus_url = prometheus_url.rstrip("/")
        self.store = store
        self.latency_query = latency_query
        self.error_rate_query = error_rate_query
        self.cache_hit_query = cache_hit_query
        self.connections_query = connections_query

    async def _query_value(self, client: httpx.AsyncClient, query: str) -> float | None:
        """Run a Prometheus instant query and return a single float value."""
        resp = await client.get(
            f"{self.prometheus_url}/api/v1/query",
            params={"query": query},
            timeout=DEFAULT_TIMEOUT_SECONDS,
        )
        _ = resp.raise_for_status()
        body: dict[str, object] = resp.json()
        data = body.get("data")
        if isinstance(data, dict):
            result = data.get("result")
            if isinstance(result, list) and result:
                first = result[0]
                if isinstance(first, dict):
                    value = first.get("value")
                    if isinstance(value, list) and len(value) >= 2:
                        parsed = float(str(value[1]))
                        # NaN from an empty rate() window carries no signal.
                        return None if parsed != parsed else parsed
        logger.debug("Prometheus query returned no data: %s", query)
        return None

    async def sample(self) -> MetricSnapshot:
        try:
            async with httpx.AsyncClient() as client:
                latency = await self._query_value(client, self.latency_query)
                error_rate = await self._query_value(client, self.error_rate_query)
                cache_hit = await self._query_value(client, self.cache_hit_query)
                connections = await self._query_value(client, self.connections_query)
        except (httpx.HTTPError, ValueError) as exc:
            raise ObservationFailure(f"Prometheus query failed: {exc}") from exc

        memory = psutil.virtual_memory()
        db_size = await asyncio.to_thread(self.store.db_size_bytes)
        return MetricSnapshot(
            query_latency_p95_ms=latency or 0.0,
            error_rate=error_rate or 0.0,
            cache_hit_ratio=cache_hit if cache_hit is not None else 1.0,
            active_connections=int(connections or 0),
            db_size_bytes=db_size,
            memory_used_bytes=memory.used,
            memory_total_bytes=memory.total,
        )
