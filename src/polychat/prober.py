"""Bounded-timeout reachability checks for local LLM servers.

Local runtimes are usually started out-of-band on conventional ports, so the
prober tries the usual mount points under a short deadline and reports a
usable endpoint or ``None``. It never raises and never mutates shared state.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
import logging

import httpx

LOGGER = logging.getLogger(__name__)

DEFAULT_PROBE_TIMEOUT = 3.0
DEFAULT_DISCOVERY_TIMEOUT = 1.0
DEFAULT_API_KEY = "local"
DISCOVERY_HOSTS = ("http://127.0.0.1", "http://localhost")
DISCOVERY_PORTS = ("8000", "11434", "8080")


class ProbeStatus(str, Enum):
    """Outcome of a single health check."""

    ONLINE = "online"
    UNAUTHORIZED = "unauthorized"
    OFFLINE = "offline"


@dataclass(frozen=True)
class ProbeResult:
    status: ProbeStatus
    endpoint: str | None = None

    @property
    def reachable(self) -> bool:
        return self.status is not ProbeStatus.OFFLINE


def normalize_openai_endpoint(url: str) -> str:
    """Strip trailing slashes and make sure the base ends in ``/v1``."""
    base = url.strip().rstrip("/")
    return base if base.endswith("/v1") else f"{base}/v1"


class ConnectionProber:
    """Health checks for OpenAI-compatible and Ollama servers."""

    def __init__(
        self,
        api_key: str = DEFAULT_API_KEY,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key or DEFAULT_API_KEY
        self._transport = transport

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(timeout), transport=self._transport
        )

    async def check(
        self, url: str, timeout: float = DEFAULT_PROBE_TIMEOUT
    ) -> ProbeResult:
        """Probe ``{base}/models`` then ``{base}/v1/models`` under one deadline.

        HTTP 401 is reported as ``UNAUTHORIZED``: a server answered, but the
        credential was refused.
        """
        base = url.strip().rstrip("/")
        if not base:
            return ProbeResult(ProbeStatus.OFFLINE)
        headers = {"Authorization": f"Bearer {self.api_key}"}
        candidates = (f"{base}/models", f"{base}/v1/models")
        try:
            async with asyncio.timeout(timeout):
                async with self._client(timeout) as client:
                    for candidate in candidates:
                        try:
                            response = await client.get(candidate, headers=headers)
                        except (httpx.HTTPError, httpx.InvalidURL) as exc:
                            LOGGER.debug(
                                "probe.candidate.failed",
                                extra={
                                    "event": "probe.candidate.failed",
                                    "url": candidate,
                                    "error_type": type(exc).__name__,
                                },
                            )
                            continue
                        if response.status_code == 200:
                            return ProbeResult(
                                ProbeStatus.ONLINE, normalize_openai_endpoint(base)
                            )
                        if response.status_code == 401:
                            return ProbeResult(
                                ProbeStatus.UNAUTHORIZED,
                                normalize_openai_endpoint(base),
                            )
        except TimeoutError:
            LOGGER.info(
                "probe.timeout",
                extra={"event": "probe.timeout", "url": base, "timeout": timeout},
            )
        LOGGER.info("probe.offline", extra={"event": "probe.offline", "url": base})
        return ProbeResult(ProbeStatus.OFFLINE)

    async def probe(
        self, url: str, timeout: float = DEFAULT_PROBE_TIMEOUT
    ) -> str | None:
        """Return the normalized endpoint for a reachable server, else ``None``."""
        result = await self.check(url, timeout)
        return result.endpoint if result.reachable else None

    async def probe_ollama(
        self, url: str, timeout: float = DEFAULT_PROBE_TIMEOUT
    ) -> str | None:
        """Return the Ollama base URL when ``/api/tags`` answers 200."""
        base = url.strip().rstrip("/")
        if not base:
            return None
        try:
            async with asyncio.timeout(timeout):
                async with self._client(timeout) as client:
                    response = await client.get(f"{base}/api/tags")
        except (TimeoutError, httpx.HTTPError, httpx.InvalidURL) as exc:
            LOGGER.info(
                "probe.offline",
                extra={
                    "event": "probe.offline",
                    "url": base,
                    "error_type": type(exc).__name__,
                },
            )
            return None
        return base if response.status_code == 200 else None

    async def discover(
        self,
        hosts: Iterable[str] = DISCOVERY_HOSTS,
        ports: Iterable[str] = DISCOVERY_PORTS,
        timeout: float = DEFAULT_DISCOVERY_TIMEOUT,
    ) -> str | None:
        """Return the first conventional local endpoint that answers."""
        port_list = list(ports)
        for host in hosts:
            for port in port_list:
                endpoint = await self.probe(f"{host.rstrip('/')}:{port}", timeout)
                if endpoint is not None:
                    LOGGER.info(
                        "probe.discovered",
                        extra={"event": "probe.discovered", "endpoint": endpoint},
                    )
                    return endpoint
        return None
