from __future__ import annotations

import logging
import time
from collections import Counter
from dataclasses import dataclass
from threading import Lock
from typing import Optional

from fastapi import Request

logger = logging.getLogger("ats_pipeline")

PREFIX = "ats_pipeline"


@dataclass
class MetricsSnapshot:
    requests_total: int
    requests_5xx: int
    total_latency_ms: float

    @property
    def avg_latency_ms(self) -> float:
        return self.total_latency_ms / self.requests_total if self.requests_total else 0.0


class MetricsRegistry:
    """In-process counters rendered in Prometheus text format.

    Webhook results are keyed by ``(event_type, result)`` where result is a
    dispatch outcome or ``failed``; sync results by ``(provider, result)``
    where result is ``success``, ``failed`` or ``rate_limited``.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._requests_total = 0
        self._requests_5xx = 0
        self._total_latency_ms = 0.0
        self._routes: Counter[tuple[str, int]] = Counter()
        self._webhooks: Counter[tuple[str, str]] = Counter()
        self._syncs: Counter[tuple[str, str]] = Counter()

    def record(self, *, route: str, status_code: int, latency_ms: float) -> None:
        with self._lock:
            self._requests_total += 1
            if status_code >= 500:
                self._requests_5xx += 1
            self._total_latency_ms += latency_ms
            self._routes[(route, status_code)] += 1

    def record_webhook(self, *, event_type: str, result: str) -> None:
        with self._lock:
            self._webhooks[(event_type, result)] += 1

    def record_sync(self, *, provider: str, result: str) -> None:
        with self._lock:
            self._syncs[(provider, result)] += 1

    def webhook_count(self, *, event_type: str, result: str) -> int:
        with self._lock:
            return self._webhooks[(event_type, result)]

    def sync_count(self, *, provider: str, result: str) -> int:
        with self._lock:
            return self._syncs[(provider, result)]

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            return MetricsSnapshot(
                requests_total=self._requests_total,
                requests_5xx=self._requests_5xx,
                total_latency_ms=self._total_latency_ms,
            )

    def to_prometheus(self, queue_depth: Optional[dict[str, int]] = None) -> str:
        """``queue_depth`` maps webhook status to the number of stored records."""
        snap = self.snapshot()
        lines = [
            f"# HELP {PREFIX}_requests_total Total HTTP requests",
            f"# TYPE {PREFIX}_requests_total counter",
            f"{PREFIX}_requests_total {snap.requests_total}",
            f"# HELP {PREFIX}_requests_5xx_total Total 5xx HTTP requests",
            f"# TYPE {PREFIX}_requests_5xx_total counter",
            f"{PREFIX}_requests_5xx_total {snap.requests_5xx}",
            f"# HELP {PREFIX}_request_avg_latency_ms Average request latency ms",
            f"# TYPE {PREFIX}_request_avg_latency_ms gauge",
            f"{PREFIX}_request_avg_latency_ms {snap.avg_latency_ms:.2f}",
        ]
        with self._lock:
            lines.extend(
                f'{PREFIX}_route_requests_total{{route="{route}",status="{code}"}} {count}'
                for (route, code), count in sorted(self._routes.items())
            )
            lines.append(f"# TYPE {PREFIX}_webhooks_total counter")
            lines.extend(
                f'{PREFIX}_webhooks_total{{event_type="{event_type}",result="{result}"}} {count}'
                for (event_type, result), count in sorted(self._webhooks.items())
            )
            lines.append(f"# TYPE {PREFIX}_syncs_total counter")
            lines.extend(
                f'{PREFIX}_syncs_total{{provider="{provider}",result="{result}"}} {count}'
                for (provider, result), count in sorted(self._syncs.items())
            )
        if queue_depth is not None:
            lines.append(f"# TYPE {PREFIX}_webhook_queue gauge")
            lines.extend(
                f'{PREFIX}_webhook_queue{{status="{status}"}} {count}'
                for status, count in sorted(queue_depth.items())
            )
        return "\n".join(lines) + "\n"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def _route_label(request: Request) -> str:
    # Label by route template so per-connection URLs share one series.
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


async def observe_request(
    request: Request,
    call_next,
    *,
    metrics: MetricsRegistry,
):
    start = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception:
        latency_ms = (time.perf_counter() - start) * 1000.0
        route = _route_label(request)
        metrics.record(route=route, status_code=500, latency_ms=latency_ms)
        logger.exception(
            "request_failed method=%s route=%s latency_ms=%.2f",
            request.method,
            route,
            latency_ms,
        )
        raise
    latency_ms = (time.perf_counter() - start) * 1000.0
    route = _route_label(request)
    metrics.record(route=route, status_code=response.status_code, latency_ms=latency_ms)
    logger.info(
        "request_complete method=%s route=%s status=%s latency_ms=%.2f",
        request.method,
        route,
        response.status_code,
        latency_ms,
    )
    return response
