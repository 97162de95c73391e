from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from threading import Lock

from fastapi import Request

logger = logging.getLogger("campaign_sender")

METRIC_PREFIX = "campaign_sender"


@dataclass
class MetricsSnapshot:
    requests_total: int
    requests_5xx: int
    total_latency_ms: float
    emails_sent: int
    emails_failed: int

    @property
    def avg_latency_ms(self) -> float:
        return self.total_latency_ms / self.requests_total if self.requests_total else 0.0


def _metric(name: str, kind: str, help_text: str, value: str) -> list[str]:
    full_name = f"{METRIC_PREFIX}_{name}"
    return [
        f"# HELP {full_name} {help_text}",
        f"# TYPE {full_name} {kind}",
        f"{full_name} {value}",
    ]


class MetricsRegistry:
    """Process-local counters for HTTP traffic and email delivery."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._snapshot = MetricsSnapshot(
            requests_total=0,
            requests_5xx=0,
            total_latency_ms=0.0,
            emails_sent=0,
            emails_failed=0,
        )
        self._by_route_status: dict[tuple[str, int], int] = {}

    def record(self, *, route: str, status_code: int, latency_ms: float) -> None:
        with self._lock:
            self._snapshot.requests_total += 1
            if status_code >= 500:
                self._snapshot.requests_5xx += 1
            self._snapshot.total_latency_ms += latency_ms
            key = (route, status_code)
            self._by_route_status[key] = self._by_route_status.get(key, 0) + 1

    def record_batch(self, *, sent: int, failed: int) -> None:
        with self._lock:
            self._snapshot.emails_sent += max(sent, 0)
            self._snapshot.emails_failed += max(failed, 0)

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            return MetricsSnapshot(**vars(self._snapshot))

    def to_prometheus(self) -> str:
        snap = self.snapshot()
        lines = [
            *_metric("requests_total", "counter", "Total HTTP requests", str(snap.requests_total)),
            *_metric(
                "requests_5xx_total", "counter", "Total 5xx HTTP requests", str(snap.requests_5xx)
            ),
            *_metric(
                "request_avg_latency_ms",
                "gauge",
                "Average request latency ms",
                f"{snap.avg_latency_ms:.2f}",
            ),
            *_metric(
                "emails_sent_total",
                "counter",
                "Emails accepted by the transport",
                str(snap.emails_sent),
            ),
            *_metric(
                "emails_failed_total",
                "counter",
                "Emails rejected by the transport",
                str(snap.emails_failed),
            ),
        ]
        with self._lock:
            routes = sorted(self._by_route_status.items())
        for (route, status_code), count in routes:
            lines.append(
                f'{METRIC_PREFIX}_route_requests_total{{route="{route}",status="{status_code}"}} {count}'
            )
        return "\n".join(lines) + "\n"


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


async def observe_request(
    request: Request,
    call_next,
    *,
    metrics: MetricsRegistry,
):
    start = time.perf_counter()
    path = request.url.path
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    except Exception:
        logger.exception("request_failed method=%s path=%s", request.method, path)
        raise
    finally:
        latency_ms = (time.perf_counter() - start) * 1000.0
        metrics.record(route=path, status_code=status_code, latency_ms=latency_ms)
        logger.info(
            "request_complete method=%s path=%s status=%s latency_ms=%.2f",
            request.method,
            path,
            status_code,
            latency_ms,
        )
