"""
Health tracking and the HTTP endpoint for probes, status and metrics.

- /health  liveness (no auth)
- /ready   readiness: price feed up and loops running (no auth)
- /status  loop status board plus extra sections (token if configured)
- /metrics Prometheus text from the keeper registry (token if configured)
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import parse_qs, urlparse

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

log = logging.getLogger("keeper")

StatusExtra = Callable[[], Dict[str, Any]]


@dataclass
class HealthStatus:
    healthy: bool = True
    ready: bool = False
    last_heartbeat_ms: int = 0
    components: Dict[str, bool] = field(default_factory=dict)
    details: Dict[str, Any] = field(default_factory=dict)


class HealthChecker:
    """
    Component health for the probes.

    Components: "price_feed", one entry per loop ("loop:tpsl", ...), "ledger".
    """

    def __init__(self) -> None:
        self._components: Dict[str, bool] = {}
        self._details: Dict[str, Any] = {}
        self._ready = False
        self._last_heartbeat = int(time.time() * 1000)
        self._callbacks: List[Callable[[str, bool], None]] = []

    def set_component_health(self, name: str, healthy: bool, detail: Optional[str] = None) -> None:
        changed = self._components.get(name) != healthy
        self._components[name] = healthy
        if detail:
            self._details[name] = detail
        else:
            self._details.pop(name, None)
        self._last_heartbeat = int(time.time() * 1000)
        if not changed:
            return
        for cb in self._callbacks:
            try:
                cb(name, healthy)
            except Exception as exc:
                log.error(json.dumps({"event": "health_callback_error", "component": name, "error": str(exc)}))

    def set_ready(self, ready: bool) -> None:
        self._ready = ready
        self._last_heartbeat = int(time.time() * 1000)

    def heartbeat(self) -> None:
        self._last_heartbeat = int(time.time() * 1000)

    def register_callback(self, callback: Callable[[str, bool], None]) -> None:
        self._callbacks.append(callback)

    def is_healthy(self) -> bool:
        if not self._components:
            return True
        return all(self._components.values())

    def is_ready(self) -> bool:
        return self._ready and self.is_healthy()

    def get_status(self) -> HealthStatus:
        return HealthStatus(
            healthy=self.is_healthy(),
            ready=self.is_ready(),
            last_heartbeat_ms=self._last_heartbeat,
            components=dict(self._components),
            details=dict(self._details),
        )

    def to_dict(self) -> Dict[str, Any]:
        status = self.get_status()
        return {
            "healthy": status.healthy,
            "ready": status.ready,
            "last_heartbeat_ms": status.last_heartbeat_ms,
            "components": status.components,
            "details": status.details,
        }


def _response(status: bytes, body: bytes, content_type: bytes = b"application/json") -> bytes:
    return (
        b"HTTP/1.1 " + status + b"\r\n"
        b"Content-Type: " + content_type + b"\r\n"
        b"Content-Length: " + str(len(body)).encode() + b"\r\n"
        b"Connection: close\r\n\r\n" + body
    )


async def build_status(status_board=None, extra: Optional[Dict[str, StatusExtra]] = None) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    if status_board is not None:
        out["loops"] = await status_board.snapshot()
    for name, fn in (extra or {}).items():
        out[name] = fn()
    return out


async def start_metrics_server(
    registry,
    port: int,
    status_board=None,
    auth_token: Optional[str] = None,
    health_checker: Optional[HealthChecker] = None,
    status_extra: Optional[Dict[str, StatusExtra]] = None,
    host: str = "0.0.0.0",
) -> asyncio.AbstractServer:
    """
    Start the probe/status/metrics server.

    Args:
        registry: prometheus CollectorRegistry rendered on /metrics
        status_extra: name -> callable, each merged into /status
    """

    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            req = await reader.read(2048)
            writer.write(await _route(req))
            await writer.drain()
        except (ConnectionError, asyncio.IncompleteReadError) as exc:
            log.debug(json.dumps({"event": "metrics_client_error", "error": str(exc)}))
        finally:
            writer.close()

    async def _route(req: bytes) -> bytes:
        header_lines = req.split(b"\r\n") if b"\r\n" in req else []
        path_raw = b"/"
        if header_lines and header_lines[0].count(b" ") >= 1:
            path_raw = header_lines[0].split(b" ")[1]
        headers = {}
        for line in header_lines[1:]:
            if b":" in line:
                k, v = line.split(b":", 1)
                headers[k.strip().lower()] = v.strip()

        parsed = urlparse(path_raw.decode("utf-8", errors="ignore"))
        query = parse_qs(parsed.query)

        if parsed.path == "/health":
            if health_checker is None:
                return _response(b"200 OK", json.dumps({"healthy": True}).encode())
            ok = health_checker.is_healthy()
            return _response(
                b"200 OK" if ok else b"503 Service Unavailable", json.dumps(health_checker.to_dict()).encode()
            )

        if parsed.path == "/ready":
            ready = health_checker.is_ready() if health_checker is not None else True
            return _response(b"200 OK" if ready else b"503 Service Unavailable", json.dumps({"ready": ready}).encode())

        if auth_token:
            header_auth = headers.get(b"authorization", b"").decode("utf-8", errors="ignore")
            if header_auth != f"Bearer {auth_token}" and query.get("token", [""])[0] != auth_token:
                return b"HTTP/1.1 401 Unauthorized\r\nContent-Length: 0\r\nConnection: close\r\n\r\n"

        if parsed.path.startswith("/status"):
            try:
                body = json.dumps(await build_status(status_board, status_extra), default=str).encode()
            except Exception as exc:
                log.error(json.dumps({"event": "status_render_error", "error": str(exc)}))
                return b"HTTP/1.1 500 Internal Server Error\r\nContent-Length: 0\r\nConnection: close\r\n\r\n"
            return _response(b"200 OK", body)

        if parsed.path.startswith("/metrics") or parsed.path == "/":
            return _response(b"200 OK", generate_latest(registry), CONTENT_TYPE_LATEST.encode())

        return b"HTTP/1.1 404 Not Found\r\nContent-Length: 0\r\nConnection: close\r\n\r\n"

    return await asyncio.start_server(handle, host, port)
