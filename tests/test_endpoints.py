"""
Tests for endpoint resolution and the process-wide endpoint cache.
"""

import pytest

from erp_prime.core.exceptions import InvalidConfigError
from erp_prime.core.state_manager import get_registered_state, reset_all_state
from erp_prime.realtime.endpoints import (
    EndpointCache,
    EndpointResolver,
    get_endpoint_cache,
)


class TestEndpointResolver:
    def test_local_origin(self):
        resolver = EndpointResolver.from_origin("http://localhost:3000")

        assert resolver.server_base_url == "http://localhost:3000"
        assert resolver.health_url == "http://localhost:3000/health"
        assert resolver.websocket_url("abc") == "ws://localhost:3000/ws?token=abc"
        assert resolver.realtime_base_url == "http://localhost:3000/api/realtime"

    def test_loopback_normalises_to_localhost(self):
        resolver = EndpointResolver.from_origin("http://127.0.0.1:8080")
        assert resolver.server_base_url == "http://localhost:8080"
        assert resolver.realtime_base_url == "http://127.0.0.1:8080/api/realtime"

    def test_https_upgrades_to_wss(self):
        resolver = EndpointResolver.from_origin("https://erp.example.com:8443")
        assert resolver.websocket_url("t").startswith("wss://erp.example.com:8443/ws?")

    def test_missing_port_uses_default(self):
        resolver = EndpointResolver.from_origin("https://erp.example.com")
        assert resolver.server_base_url == "https://erp.example.com:3000"
        assert resolver.websocket_url("t") == "wss://erp.example.com:3000/ws?token=t"

    def test_remote_realtime_base_goes_to_backend_port(self):
        resolver = EndpointResolver.from_origin("https://erp.example.com")
        assert resolver.realtime_base_url == "https://erp.example.com:3000/api/realtime"
        assert resolver.heartbeat_url == "https://erp.example.com:3000/api/realtime/heartbeat"

    def test_token_is_url_encoded(self):
        resolver = EndpointResolver.from_origin("http://localhost:3000")
        assert resolver.websocket_url("a+b/c=") == "ws://localhost:3000/ws?token=a%2Bb%2Fc%3D"

    def test_stream_urls(self):
        resolver = EndpointResolver.from_origin("http://localhost:3000")
        assert (
            resolver.stream_url(42, "t")
            == "http://localhost:3000/api/realtime/ticket/42?token=t"
        )
        assert (
            resolver.stream_url(None, "t")
            == "http://localhost:3000/api/realtime/notifications?token=t"
        )

    @pytest.mark.parametrize(
        "origin", ["ftp://erp.example.com", "erp.example.com", "http://", "http://host:notaport"]
    )
    def test_invalid_origin(self, origin):
        with pytest.raises(InvalidConfigError):
            EndpointResolver.from_origin(origin)


class TestEndpointCache:
    def test_lazy_and_shared(self):
        cache = EndpointCache()
        assert len(cache) == 0

        first = cache.get("http://localhost:3000/")
        second = cache.get("http://localhost:3000")

        assert first is second
        assert len(cache) == 1

    def test_options_are_part_of_the_key(self):
        cache = EndpointCache()
        a = cache.get("http://localhost:3000")
        b = cache.get("http://localhost:3000", websocket_path="/socket")
        assert a is not b
        assert b.websocket_url("t").startswith("ws://localhost:3000/socket?")

    def test_invalidate_one_origin(self):
        cache = EndpointCache()
        cache.get("http://localhost:3000")
        cache.get("http://localhost:3000", websocket_path="/socket")
        cache.get("https://erp.example.com")

        cache.invalidate("http://localhost:3000")
        assert len(cache) == 1

        cache.invalidate()
        assert len(cache) == 0

    def test_global_cache_reset_through_state_manager(self):
        cache = get_endpoint_cache()
        assert get_endpoint_cache() is cache
        assert "endpoint_cache" in get_registered_state()

        reset_all_state()
        assert get_endpoint_cache() is not cache
