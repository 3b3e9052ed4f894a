"""Probe executors - perform one HTTP, TCP, or ping check attempt.

Probes only measure; deciding success or failure is the interpreter's job.
A probe never raises: network errors, DNS errors, timeouts and unexpected
faults all come back as a failed ProbeResult with an error_kind.
"""
import asyncio
import json
import logging
import re
import socket
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

import httpx

from ..config import Settings
from ..schemas.monitor import MonitorSpec

logger = logging.getLogger(__name__)

# error_kind values
TIMEOUT = "timeout"
REFUSED = "refused"
DNS = "dns"
UNREACHABLE = "unreachable"
CONNECT = "connect"
REDIRECT_LOOP = "redirect_loop"
HTTP_ERROR = "http_error"
NO_REPLY = "no_reply"
INVALID_CONFIG = "invalid_config"
UNAVAILABLE = "unavailable"
INTERNAL = "internal"
UNSUPPORTED_TYPE = "unsupported_type"

_DNS_MARKERS = (
    "name or service not known",
    "nodename nor servname",
    "getaddrinfo failed",
    "temporary failure in name resolution",
    "no address associated",
    "unknown host",
    "cannot resolve",
)
_UNREACHABLE_MARKERS = ("network is unreachable", "no route to host", "host is unreachable")


@dataclass
class ProbeResult:
    """Raw outcome of one probe attempt."""
    succeeded: bool  # Target answered: HTTP response, TCP connect, at least one ping reply
    elapsed_ms: Optional[int] = None
    status_code: Optional[int] = None
    error_kind: Optional[str] = None
    raw_body: Optional[str] = None
    details: Optional[str] = None
    packets_sent: Optional[int] = None
    packets_received: Optional[int] = None

    @property
    def packet_loss_percent(self) -> Optional[float]:
        if not self.packets_sent:
            return None
        lost = self.packets_sent - (self.packets_received or 0)
        return 100.0 * lost / self.packets_sent


def classify_network_error(error: BaseException) -> str:
    """Map a connection-level exception (or its cause chain) to an error_kind."""
    current: Optional[BaseException] = error
    seen = set()
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, socket.gaierror):
            return DNS
        if isinstance(current, ConnectionRefusedError):
            return REFUSED
        if isinstance(current, (asyncio.TimeoutError, socket.timeout)):
            return TIMEOUT
        current = current.__cause__ or current.__context__

    text = str(error).lower()
    if any(marker in text for marker in _DNS_MARKERS):
        return DNS
    if "connection refused" in text or "errno 111" in text:
        return REFUSED
    if any(marker in text for marker in _UNREACHABLE_MARKERS):
        return UNREACHABLE
    return CONNECT


def host_from_target(target: str) -> str:
    """Strip scheme, path and port from a target to get a bare host."""
    host = re.sub(r"^[a-zA-Z][a-zA-Z0-9+.-]*://", "", target.strip())
    host = host.split("/", 1)[0]
    if host.startswith("["):
        # [IPv6]:port
        return host[1:].split("]", 1)[0]
    if host.count(":") == 1:
        host = host.split(":", 1)[0]
    return host


def url_from_target(target: str) -> str:
    """Ensure URL has protocol."""
    target = target.strip()
    if not re.match(r"^https?://", target, re.IGNORECASE):
        target = f"http://{target}"
    return target


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


class Probe(ABC):
    """One check type. Subclasses implement _run; run() enforces the deadline."""

    monitor_type: str = ""

    @abstractmethod
    def deadline(self, monitor: MonitorSpec) -> float:
        """Upper bound in seconds for a single attempt."""

    @abstractmethod
    async def _run(self, monitor: MonitorSpec) -> ProbeResult:
        ...

    async def run(self, monitor: MonitorSpec) -> ProbeResult:
        deadline = self.deadline(monitor)
        try:
            return await asyncio.wait_for(self._run(monitor), timeout=deadline)
        except asyncio.TimeoutError:
            return ProbeResult(
                succeeded=False,
                elapsed_ms=int(deadline * 1000),
                error_kind=TIMEOUT,
                details=f"{self.monitor_type.upper()} check timed out after {deadline:g}s",
            )
        except Exception as e:
            logger.exception(f"Unexpected {self.monitor_type} probe failure for monitor {monitor.id}")
            return ProbeResult(succeeded=False, error_kind=INTERNAL, details=f"Probe failed: {e}")


class HttpProbe(Probe):
    """Issue the configured request and capture status, timing and a capped body."""

    monitor_type = "http"

    def __init__(
        self,
        timeout: float = 10,
        max_redirects: int = 5,
        body_cap_bytes: int = 65536,
        verify_tls: bool = False,
        user_agent: str = "pingwatch/1.0",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout = timeout
        self.max_redirects = max_redirects
        self.body_cap_bytes = body_cap_bytes
        self.verify_tls = verify_tls
        self.user_agent = user_agent
        self.transport = transport

    def deadline(self, monitor: MonitorSpec) -> float:
        return self.timeout

    def _request_kwargs(self, monitor: MonitorSpec) -> dict:
        headers = {"User-Agent": self.user_agent}
        if monitor.headers:
            headers.update(monitor.headers)
        kwargs = {"headers": headers}

        if monitor.method == "POST" and monitor.request_body:
            # JSON bodies go out as JSON, anything else as-is
            try:
                kwargs["json"] = json.loads(monitor.request_body)
            except ValueError:
                kwargs["content"] = monitor.request_body
        return kwargs

    async def _read_capped(self, response: httpx.Response) -> str:
        chunks = []
        size = 0
        async for chunk in response.aiter_bytes():
            chunk = chunk[:self.body_cap_bytes - size]
            chunks.append(chunk)
            size += len(chunk)
            if size >= self.body_cap_bytes:
                break
        content = b"".join(chunks)
        try:
            return content.decode(response.charset_encoding or "utf-8", errors="replace")
        except LookupError:
            return content.decode("utf-8", errors="replace")

    async def _run(self, monitor: MonitorSpec) -> ProbeResult:
        url = url_from_target(monitor.target)
        start = time.monotonic()

        try:
            kwargs = self._request_kwargs(monitor)
            async with httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=True,
                max_redirects=self.max_redirects,
                verify=self.verify_tls,
                transport=self.transport,
            ) as client:
                async with client.stream(monitor.method, url, **kwargs) as response:
                    body = await self._read_capped(response)

            return ProbeResult(
                succeeded=True,
                elapsed_ms=_elapsed_ms(start),
                status_code=response.status_code,
                raw_body=body,
                details=f"HTTP {response.status_code}",
            )

        except httpx.TooManyRedirects:
            return ProbeResult(
                succeeded=False,
                elapsed_ms=_elapsed_ms(start),
                error_kind=REDIRECT_LOOP,
                details=f"Exceeded {self.max_redirects} redirects",
            )
        except httpx.TimeoutException:
            return ProbeResult(succeeded=False, elapsed_ms=_elapsed_ms(start), error_kind=TIMEOUT, details="Request timeout")
        except httpx.ConnectError as e:
            return ProbeResult(
                succeeded=False,
                elapsed_ms=_elapsed_ms(start),
                error_kind=classify_network_error(e),
                details=f"Connection error: {e}",
            )
        except (httpx.InvalidURL, httpx.UnsupportedProtocol, TypeError, ValueError) as e:
            return ProbeResult(succeeded=False, error_kind=INVALID_CONFIG, details=f"Invalid request: {e}")
        except httpx.HTTPError as e:
            return ProbeResult(
                succeeded=False,
                elapsed_ms=_elapsed_ms(start),
                error_kind=HTTP_ERROR,
                details=f"HTTP error: {e}",
            )


class TcpProbe(Probe):
    """Open a TCP connection to target:port."""

    monitor_type = "tcp"

    def deadline(self, monitor: MonitorSpec) -> float:
        return monitor.effective_timeout

    async def _run(self, monitor: MonitorSpec) -> ProbeResult:
        host = host_from_target(monitor.target)
        port = monitor.effective_port
        if not host:
            return ProbeResult(succeeded=False, error_kind=INVALID_CONFIG, details=f"No host in target '{monitor.target}'")
        start = time.monotonic()

        try:
            _, writer = await asyncio.open_connection(host, port)
        except OSError as e:
            kind = classify_network_error(e)
            return ProbeResult(
                succeeded=False,
                elapsed_ms=_elapsed_ms(start),
                error_kind=kind,
                details=f"Error connecting to {host}:{port}: {e}",
            )

        elapsed = _elapsed_ms(start)
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass

        return ProbeResult(succeeded=True, elapsed_ms=elapsed, details=f"Port {port} is open on {host}")


class PingProbe(Probe):
    """Send ICMP echo requests with the system ping command."""

    monitor_type = "ping"

    # Example: "3 packets transmitted, 3 received, 0% packet loss, time 2003ms"
    SUMMARY_PATTERN = re.compile(r"(\d+) packets transmitted, (\d+) (?:packets )?received")
    # Example: "rtt min/avg/max/mdev = 14.1/14.5/15.0/0.3 ms"
    RTT_PATTERN = re.compile(r"=\s*[\d.]+/([\d.]+)/[\d.]+")

    def __init__(self, command: str = "ping"):
        self.command = command

    def deadline(self, monitor: MonitorSpec) -> float:
        # One second between packets plus the per-reply wait and a buffer
        return monitor.effective_packet_count + monitor.effective_timeout + 5

    async def _run(self, monitor: MonitorSpec) -> ProbeResult:
        host = host_from_target(monitor.target)
        count = monitor.effective_packet_count
        start = time.monotonic()

        try:
            proc = await asyncio.create_subprocess_exec(
                self.command, "-c", str(count), "-i", "1", "-W", str(monitor.effective_timeout), host,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            return ProbeResult(succeeded=False, error_kind=UNAVAILABLE, details=f"'{self.command}' command not found")

        try:
            stdout, stderr = await proc.communicate()
        finally:
            if proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass

        output = stdout.decode(errors="replace")
        error_output = stderr.decode(errors="replace").strip()
        elapsed = _elapsed_ms(start)

        summary = self.SUMMARY_PATTERN.search(output)
        if not summary:
            text = error_output or output.strip() or f"ping exited with code {proc.returncode}"
            kind = DNS if any(m in text.lower() for m in _DNS_MARKERS) else UNREACHABLE
            return ProbeResult(succeeded=False, elapsed_ms=elapsed, error_kind=kind, details=text[:500])

        sent = int(summary.group(1))
        received = int(summary.group(2))
        rtt = self.RTT_PATTERN.search(output)
        avg_ms = int(float(rtt.group(1))) if rtt else None

        return ProbeResult(
            succeeded=received > 0,
            elapsed_ms=avg_ms if avg_ms is not None else elapsed,
            error_kind=None if received > 0 else NO_REPLY,
            details=f"{received}/{sent} packets received",
            raw_body=output[-1000:],
            packets_sent=sent,
            packets_received=received,
        )


class ProbeRegistry:
    """Single dispatch point from monitor type to probe."""

    def __init__(self, probes: Iterable[Probe]):
        self._probes: Dict[str, Probe] = {probe.monitor_type: probe for probe in probes}

    def get(self, monitor_type: str) -> Optional[Probe]:
        return self._probes.get(monitor_type)

    def deadline(self, monitor: MonitorSpec) -> float:
        probe = self.get(monitor.type)
        return probe.deadline(monitor) if probe else 0

    async def run(self, monitor: MonitorSpec) -> ProbeResult:
        probe = self.get(monitor.type)
        if probe is None:
            return ProbeResult(
                succeeded=False,
                error_kind=UNSUPPORTED_TYPE,
                details=f"Unknown monitor type: {monitor.type}",
            )
        return await probe.run(monitor)


def build_probe_registry(settings: Settings) -> ProbeRegistry:
    """Probe registry configured from application settings."""
    return ProbeRegistry([
        HttpProbe(
            timeout=settings.http_timeout_seconds,
            max_redirects=settings.http_max_redirects,
            body_cap_bytes=settings.http_body_cap_bytes,
            verify_tls=settings.http_verify_tls,
            user_agent=settings.http_user_agent,
        ),
        TcpProbe(),
        PingProbe(),
    ])
