"""Shared outbound connection pool with an in-process DNS cache.

Nothing here is created at import time. The application builds one
:class:`OutboundPool` at startup and attaches it to its upstream clients.
Making it the default for every other client is opt-in through
:meth:`OutboundPool.apply_global`.
"""

import asyncio
import ipaddress
import socket
import time
from typing import Awaitable, Callable, Iterable

import httpcore
import httpx

from shared.helper.HelperConfig import HelperConfig

Resolver = Callable[[str, int], Awaitable[list]]

_global_pool: "OutboundPool | None" = None


def get_global_pool() -> "OutboundPool | None":
    return _global_pool


def reset_global_pool() -> None:
    global _global_pool
    _global_pool = None


async def _default_resolver(host: str, port: int) -> list:
    loop = asyncio.get_running_loop()
    return await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)


class DnsCache:
    """Host name to address cache with a fixed TTL, preferring IPv4 results.

    Args:
        ttl_ms (float): Lifetime of a resolved address.
        resolver (Resolver | None): ``getaddrinfo``-shaped coroutine, injectable for tests.
        clock (Callable[[], float] | None): Millisecond clock.
    """

    def __init__(self, ttl_ms: float = 600_000, resolver: Resolver | None = None, clock: Callable[[], float] | None = None):
        self.ttl_ms = ttl_ms
        self._resolver = resolver or _default_resolver
        self._clock = clock or (lambda: time.monotonic() * 1000)
        self._entries: dict[str, tuple[str, float]] = {}
        self.hits = 0
        self.misses = 0
        self.errors = 0

    async def resolve(self, host: str, port: int) -> str:
        """Return an address for ``host``. IP literals pass through untouched.

        Resolution failures are counted and the host name is returned as is, so
        the connection attempt reports the failure in its usual form.
        """
        if self._is_ip_literal(host):
            return host

        cached = self._entries.get(host)
        now = self._clock()
        if cached is not None and cached[1] > now:
            self.hits += 1
            return cached[0]

        self.misses += 1
        try:
            infos = await self._resolver(host, port)
        except OSError:
            self.errors += 1
            return host
        address = self._pick_address(infos)
        if address is None:
            self.errors += 1
            return host
        self._entries[host] = (address, now + self.ttl_ms)
        return address

    def clear(self) -> None:
        self._entries.clear()

    def get_stats(self) -> dict:
        return {"size": len(self._entries), "hits": self.hits, "misses": self.misses, "errors": self.errors, "ttlMs": self.ttl_ms}

    @staticmethod
    def _is_ip_literal(host: str) -> bool:
        try:
            ipaddress.ip_address(host.strip("[]"))
            return True
        except ValueError:
            return False

    @staticmethod
    def _pick_address(infos: list) -> str | None:
        if not infos:
            return None
        for family, _type, _proto, _canon, sockaddr in infos:
            if family == socket.AF_INET:
                return sockaddr[0]
        return infos[0][4][0]


class CachingNetworkBackend(httpcore.AsyncNetworkBackend):
    """httpcore network backend resolving host names through a :class:`DnsCache`.

    TLS still uses the original host name for SNI and certificate checks since
    httpcore passes it separately from the connect address.
    """

    def __init__(self, dns_cache: DnsCache, backend: httpcore.AsyncNetworkBackend | None = None):
        self._dns_cache = dns_cache
        self._backend = backend or httpcore.AnyIOBackend()

    async def connect_tcp(
        self,
        host: str,
        port: int,
        timeout: float | None = None,
        local_address: str | None = None,
        socket_options: Iterable | None = None,
    ) -> httpcore.AsyncNetworkStream:
        address = await self._dns_cache.resolve(host, port)
        return await self._backend.connect_tcp(
            address, port, timeout=timeout, local_address=local_address, socket_options=socket_options
        )

    async def connect_unix_socket(self, path: str, timeout: float | None = None, socket_options: Iterable | None = None) -> httpcore.AsyncNetworkStream:
        return await self._backend.connect_unix_socket(path, timeout=timeout, socket_options=socket_options)

    async def sleep(self, seconds: float) -> None:
        await self._backend.sleep(seconds)


_CORE_TO_HTTPX_ERRORS: tuple[tuple[type[Exception], type[httpx.TransportError]], ...] = (
    (httpcore.ConnectTimeout, httpx.ConnectTimeout),
    (httpcore.ReadTimeout, httpx.ReadTimeout),
    (httpcore.WriteTimeout, httpx.WriteTimeout),
    (httpcore.PoolTimeout, httpx.PoolTimeout),
    (httpcore.ConnectError, httpx.ConnectError),
    (httpcore.ReadError, httpx.ReadError),
    (httpcore.WriteError, httpx.WriteError),
    (httpcore.RemoteProtocolError, httpx.RemoteProtocolError),
    (httpcore.LocalProtocolError, httpx.LocalProtocolError),
    (httpcore.UnsupportedProtocol, httpx.UnsupportedProtocol),
    (httpcore.ProxyError, httpx.ProxyError),
)
_CORE_ERRORS = tuple(core_type for core_type, _ in _CORE_TO_HTTPX_ERRORS)


def to_httpx_error(error: Exception, request: httpx.Request | None = None) -> Exception:
    """The httpx exception matching an httpcore one, or ``error`` itself."""
    for core_type, httpx_type in _CORE_TO_HTTPX_ERRORS:
        if isinstance(error, core_type):
            return httpx_type(str(error), request=request)
    return error


class _PooledResponseStream(httpx.AsyncByteStream):
    def __init__(self, core_stream, request: httpx.Request):
        self._core_stream = core_stream
        self._request = request

    async def __aiter__(self):
        try:
            async for part in self._core_stream:
                yield part
        except _CORE_ERRORS as e:
            raise to_httpx_error(e, self._request) from e

    async def aclose(self) -> None:
        if hasattr(self._core_stream, "aclose"):
            await self._core_stream.aclose()


class SharedPoolTransport(httpx.AsyncBaseTransport):
    """httpx transport over one process-wide httpcore connection pool.

    Several clients share this transport, so closing a client leaves the pool
    open; :meth:`shutdown` closes it for good.
    """

    def __init__(self, limits: httpx.Limits, network_backend: httpcore.AsyncNetworkBackend):
        self.pool = httpcore.AsyncConnectionPool(
            ssl_context=httpx.create_ssl_context(),
            max_connections=limits.max_connections,
            max_keepalive_connections=limits.max_keepalive_connections,
            keepalive_expiry=limits.keepalive_expiry,
            network_backend=network_backend,
        )

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        core_request = httpcore.Request(
            method=request.method,
            url=httpcore.URL(
                scheme=request.url.raw_scheme,
                host=request.url.raw_host,
                port=request.url.port,
                target=request.url.raw_path,
            ),
            headers=request.headers.raw,
            content=request.stream,
            extensions=request.extensions,
        )
        try:
            core_response = await self.pool.handle_async_request(core_request)
        except _CORE_ERRORS as e:
            raise to_httpx_error(e, request) from e
        return httpx.Response(
            status_code=core_response.status,
            headers=core_response.headers,
            stream=_PooledResponseStream(core_response.stream, request),
            extensions=core_response.extensions,
        )

    async def aclose(self) -> None:
        return None

    async def shutdown(self) -> None:
        await self.pool.aclose()


class OutboundPool:
    """Capped keep-alive connection pool shared by all upstream clients."""

    def __init__(
        self,
        helper_config: HelperConfig,
        max_sockets: int | None = None,
        max_free_sockets: int | None = None,
        keepalive_ms: float | None = None,
        dns_cache: DnsCache | None = None,
    ):
        self.logging = helper_config.get_logger()
        self._helper_config = helper_config
        self.max_sockets = int(max_sockets or helper_config.get_number_val("OUTBOUND_MAX_SOCKETS", default=150))
        self.max_free_sockets = int(max_free_sockets or helper_config.get_number_val("OUTBOUND_MAX_FREE_SOCKETS", default=20))
        self.keepalive_ms = keepalive_ms or helper_config.get_number_val("OUTBOUND_KEEPALIVE_MS", default=45_000)
        self.dns_cache = dns_cache or DnsCache(ttl_ms=helper_config.get_number_val("DNS_CACHE_TTL_MS", default=600_000))
        self.limits = httpx.Limits(
            max_connections=self.max_sockets,
            max_keepalive_connections=self.max_free_sockets,
            keepalive_expiry=self.keepalive_ms / 1000,
        )
        self._transport: SharedPoolTransport | None = None
        self.global_applied = False

    def get_transport(self) -> SharedPoolTransport:
        if self._transport is None:
            self._transport = SharedPoolTransport(self.limits, CachingNetworkBackend(self.dns_cache))
        return self._transport

    def get_pool_options(self) -> dict:
        """Pool settings keyed by the client constructor option that accepts them."""
        return {"transport": self.get_transport(), "limits": self.limits}

    def apply_global(self, force: bool = False) -> bool:
        """Make this pool the default for clients booted without an explicit pool.

        Only happens when ``force`` is set or ``OUTBOUND_USE_GLOBAL_AGENT`` is true.

        Returns:
            bool: Whether the pool is now the global default.
        """
        global _global_pool
        enabled = force or self._helper_config.get_bool_val("OUTBOUND_USE_GLOBAL_AGENT", default=False)
        if not enabled:
            return False
        _global_pool = self
        self.global_applied = True
        self.logging.info("Shared outbound pool applied globally (max %d sockets)", self.max_sockets)
        return True

    async def shutdown(self) -> None:
        global _global_pool
        if _global_pool is self:
            _global_pool = None
            self.global_applied = False
        if self._transport is not None:
            await self._transport.shutdown()
            self._transport = None

    def get_stats(self) -> dict:
        return {
            "maxSockets": self.max_sockets,
            "maxFreeSockets": self.max_free_sockets,
            "keepaliveMs": self.keepalive_ms,
            "globalApplied": self.global_applied,
            "dns": self.dns_cache.get_stats(),
        }
