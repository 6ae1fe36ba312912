from __future__ import annotations

import logging
import time
from threading import Lock
from typing import Callable, Optional

from fastapi import Request
from starlette.routing import Match

logger = logging.getLogger("coaching_crm")


class MetricsRegistry:
    """Request counts per templated route and domain event counters for `/metrics`."""

    def __init__(self, open_sessions: Optional[Callable[[], int]] = None) -> None:
        self._lock = Lock()
        self._by_route_status: dict[tuple[str, int], int] = {}
        self._events: dict[str, int] = {}
        self._open_sessions = open_sessions

    def record(self, *, route: str, status_code: int) -> None:
        key = (route, status_code)
        with self._lock:
            self._by_route_status[key] = self._by_route_status.get(key, 0) + 1

    def increment(self, event: str, count: int = 1) -> None:
        if count <= 0:
            return
        with self._lock:
            self._events[event] = self._events.get(event, 0) + count

    def to_prometheus(self) -> str:
        with self._lock:
            by_route_status = sorted(self._by_route_status.items())
            events = sorted(self._events.items())
        requests_total = sum(count for _, count in by_route_status)
        requests_5xx = sum(count for (_, code), count in by_route_status if code >= 500)
        lines = [
            "# TYPE coaching_crm_requests_total counter",
            f"coaching_crm_requests_total {requests_total}",
            "# TYPE coaching_crm_requests_5xx_total counter",
            f"coaching_crm_requests_5xx_total {requests_5xx}",
        ]
        if self._open_sessions is not None:
            lines.append("# TYPE coaching_crm_open_sessions gauge")
            lines.append(f"coaching_crm_open_sessions {self._open_sessions()}")
        lines.append("# TYPE coaching_crm_events_total counter")
        lines.extend(
            f'coaching_crm_events_total{{event="{event}"}} {count}' for event, count in events
        )
        lines.append("# TYPE coaching_crm_route_requests_total counter")
        lines.extend(
            f'coaching_crm_route_requests_total{{route="{route}",status="{code}"}} {count}'
            for (route, code), count in by_route_status
        )
        return "\n".join(lines) + "\n"


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def _route_label(request: Request) -> str:
    # templated path keeps record ids out of the metric labels
    for route in request.app.router.routes:
        match, _ = route.matches(request.scope)
        if match == Match.FULL:
            return getattr(route, "path", request.url.path)
    return request.url.path


async def observe_request(
    request: Request,
    call_next,
    *,
    metrics: MetricsRegistry,
):
    start = time.perf_counter()
    try:
        response = await call_next(request)
        latency_ms = (time.perf_counter() - start) * 1000.0
        route = _route_label(request)
        metrics.record(route=route, status_code=response.status_code)
        logger.info(
            "request_complete method=%s path=%s status=%s latency_ms=%.2f",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
        )
        return response
    except Exception:
        latency_ms = (time.perf_counter() - start) * 1000.0
        metrics.record(route=_route_label(request), status_code=500)
        logger.exception(
            "request_failed method=%s path=%s latency_ms=%.2f",
            request.method,
            request.url.path,
            latency_ms,
        )
        raise
