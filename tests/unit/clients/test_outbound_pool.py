import asyncio
import socket

import httpcore
import httpx

from shared.clients.pool.OutboundPool import (
    DnsCache,
    OutboundPool,
    SharedPoolTransport,
    get_global_pool,
    to_httpx_error,
)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class FakeResolver:
    def __init__(self, infos=None, error: Exception | None = None):
        self.infos = infos if infos is not None else [
            (socket.AF_INET6, socket.SOCK_STREAM, 6, "", ("2001:db8::1", 443, 0, 0)),
            (socket.AF_INET, socket.SOCK_STREAM, 6, "", ("192.0.2.10", 443)),
        ]
        self.error = error
        self.calls = 0

    async def __call__(self, host, port):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.infos


def test_dns_cache_reuses_address_within_ttl_and_prefers_ipv4():
    clock = FakeClock()
    resolver = FakeResolver()
    cache = DnsCache(ttl_ms=1000, resolver=resolver, clock=clock)

    async def scenario():
        first = await cache.resolve("api.example.com", 443)
        second = await cache.resolve("api.example.com", 443)
        clock.now = 1001
        third = await cache.resolve("api.example.com", 443)
        return first, second, third

    first, second, third = asyncio.run(scenario())
    assert first == second == third == "192.0.2.10"
    assert resolver.calls == 2
    assert cache.get_stats()["hits"] == 1


def test_dns_cache_passes_ip_literals_through():
    resolver = FakeResolver()
    cache = DnsCache(resolver=resolver)
    assert asyncio.run(cache.resolve("10.0.0.1", 443)) == "10.0.0.1"
    assert asyncio.run(cache.resolve("::1", 443)) == "::1"
    assert resolver.calls == 0


def test_dns_failure_returns_host_and_counts_error():
    cache = DnsCache(resolver=FakeResolver(error=socket.gaierror("no such host")))
    assert asyncio.run(cache.resolve("missing.example", 443)) == "missing.example"
    assert cache.get_stats()["errors"] == 1
    assert cache.get_stats()["size"] == 0


def test_global_pool_is_opt_in(gateway_env, helper_config):
    pool = OutboundPool(helper_config)
    assert pool.apply_global() is False
    assert get_global_pool() is None

    gateway_env.setenv("OUTBOUND_USE_GLOBAL_AGENT", "true")
    assert pool.apply_global() is True
    assert get_global_pool() is pool

    asyncio.run(pool.shutdown())
    assert get_global_pool() is None


def test_pool_limits_follow_config(gateway_env, helper_config):
    gateway_env.setenv("OUTBOUND_MAX_SOCKETS", "12")
    pool = OutboundPool(helper_config)
    assert pool.limits.max_connections == 12
    assert pool.get_stats()["maxSockets"] == 12


def test_shared_transport_serves_requests_from_its_own_pool():
    backend = httpcore.AsyncMockBackend(
        [b"HTTP/1.1 200 OK\r\n", b"Content-Type: text/plain\r\n", b"Content-Length: 2\r\n", b"\r\n", b"ok"]
    )
    transport = SharedPoolTransport(httpx.Limits(max_connections=2, max_keepalive_connections=1), backend)

    async def scenario():
        async with httpx.AsyncClient(transport=transport) as client:
            response = await client.get("http://upstream.test/ping")
        # closing one client leaves the shared pool usable
        connections = list(transport.pool.connections)
        await transport.shutdown()
        return response, connections

    response, connections = asyncio.run(scenario())

    assert response.status_code == 200
    assert response.text == "ok"
    assert len(connections) == 1
    assert not hasattr(transport, "_pool")


def test_httpcore_errors_surface_as_httpx_errors():
    request = httpx.Request("GET", "http://upstream.test/")

    mapped = to_httpx_error(httpcore.ConnectError("refused"), request)

    assert isinstance(mapped, httpx.ConnectError)
    assert mapped.request is request
    assert isinstance(to_httpx_error(httpcore.ReadTimeout("slow")), httpx.TimeoutException)
    other = ValueError("x")
    assert to_httpx_error(other) is other
