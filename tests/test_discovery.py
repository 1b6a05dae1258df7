"""Unit tests for Caddy route discovery."""

import json
from pathlib import Path
from typing import Any, Dict, List
from unittest.mock import MagicMock, patch

import pytest
import requests

from dynamic_dns.cli import (
    CaddyAdminRouteSource,
    CaddyConfigFileRouteSource,
    DiscoveryError,
    OtherHandler,
    ReverseProxyHandler,
    SubrouteHandler,
    decode_handler,
    discover_reverse_proxy_hosts,
)


def make_route(hosts: List[str], *handlers: Dict[str, Any]) -> Dict[str, Any]:
    """Create a Caddy route with one host matcher."""
    return {"match": [{"host": hosts}], "handle": list(handlers)}


def make_servers(*routes: Dict[str, Any]) -> Dict[str, Any]:
    return {"srv0": {"listen": [":443"], "routes": list(routes)}}


REVERSE_PROXY = {"handler": "reverse_proxy", "upstreams": [{"dial": "10.0.0.5:8080"}]}
FILE_SERVER = {"handler": "file_server", "root": "/srv"}


class TestDecodeHandler:
    """Tests for handler decoding by discriminator."""

    def test_reverse_proxy(self) -> None:
        assert decode_handler(REVERSE_PROXY) == ReverseProxyHandler()

    def test_subroute(self) -> None:
        handler = decode_handler({"handler": "subroute", "routes": [{"handle": [REVERSE_PROXY]}]})

        assert isinstance(handler, SubrouteHandler)
        assert len(handler.routes) == 1

    def test_other_kind(self) -> None:
        assert decode_handler(FILE_SERVER) == OtherHandler(kind="file_server")

    def test_missing_discriminator_is_ignorable(self) -> None:
        assert decode_handler({"upstreams": []}) == OtherHandler(kind="")

    def test_raw_json_text(self) -> None:
        assert decode_handler(json.dumps(REVERSE_PROXY)) == ReverseProxyHandler()

    @pytest.mark.parametrize("raw", ['{"handler": ', "[1, 2]", 42, None, ["reverse_proxy"]])
    def test_malformed_encoding_raises(self, raw: Any) -> None:
        with pytest.raises(DiscoveryError):
            decode_handler(raw)


class TestDiscoverReverseProxyHosts:
    """Tests for extracting reverse-proxied hostnames from the routing table."""

    def test_strips_zone_suffix(self) -> None:
        servers = make_servers(make_route(["api.example.com"], REVERSE_PROXY))

        observations = discover_reverse_proxy_hosts(servers, "example.com")

        assert len(observations) == 1
        assert observations[0].zone == "example.com"
        assert observations[0].name == "api"
        assert observations[0].hostname == "api.example.com"
        assert observations[0].server == "srv0"

    def test_non_reverse_proxy_handler_contributes_nothing(self) -> None:
        servers = make_servers(make_route(["static.example.com"], FILE_SERVER))

        assert discover_reverse_proxy_hosts(servers, "example.com") == []

    def test_host_outside_zone_kept_whole(self) -> None:
        servers = make_servers(make_route(["app.other.org"], REVERSE_PROXY))

        observations = discover_reverse_proxy_hosts(servers, "example.com")

        assert [o.name for o in observations] == ["app.other.org"]

    def test_zone_itself_is_not_stripped(self) -> None:
        servers = make_servers(make_route(["example.com"], REVERSE_PROXY))

        observations = discover_reverse_proxy_hosts(servers, "example.com")

        assert [o.name for o in observations] == ["example.com"]

    def test_multiple_hosts_and_matcher_sets(self) -> None:
        route = {
            "match": [{"host": ["a.example.com", "b.example.com"]}, {"host": ["c.example.com"]}],
            "handle": [{"handler": "headers"}, REVERSE_PROXY],
        }

        observations = discover_reverse_proxy_hosts(make_servers(route), "example.com")

        assert [o.name for o in observations] == ["a", "b", "c"]

    def test_matcher_set_without_host_is_skipped(self) -> None:
        route = {"match": [{"path": ["/api/*"]}], "handle": [REVERSE_PROXY]}

        assert discover_reverse_proxy_hosts(make_servers(route), "example.com") == []

    def test_reverse_proxy_inside_subroute(self) -> None:
        route = make_route(
            ["app.example.com"],
            {
                "handler": "subroute",
                "routes": [{"handle": [{"handler": "encode"}]}, {"handle": [REVERSE_PROXY]}],
            },
        )

        observations = discover_reverse_proxy_hosts(make_servers(route), "example.com")

        assert [o.name for o in observations] == ["app"]

    def test_subroute_without_reverse_proxy(self) -> None:
        route = make_route(
            ["docs.example.com"], {"handler": "subroute", "routes": [{"handle": [FILE_SERVER]}]}
        )

        assert discover_reverse_proxy_hosts(make_servers(route), "example.com") == []

    def test_multiple_servers(self) -> None:
        servers = {
            "srv0": {"routes": [make_route(["a.example.com"], REVERSE_PROXY)]},
            "srv1": {"routes": [make_route(["b.example.com"], REVERSE_PROXY)]},
        }

        observations = discover_reverse_proxy_hosts(servers, "example.com")

        assert {(o.server, o.name) for o in observations} == {("srv0", "a"), ("srv1", "b")}

    def test_no_http_servers(self) -> None:
        assert discover_reverse_proxy_hosts(None, "example.com") == []
        assert discover_reverse_proxy_hosts({}, "example.com") == []
        assert discover_reverse_proxy_hosts({"srv0": {}}, "example.com") == []

    def test_malformed_handler_fails_whole_discovery(self) -> None:
        servers = make_servers(
            make_route(["good.example.com"], REVERSE_PROXY),
            make_route(["bad.example.com"], "not json"),
        )

        with pytest.raises(DiscoveryError):
            discover_reverse_proxy_hosts(servers, "example.com")

    @pytest.mark.parametrize(
        "servers",
        [
            [],
            {"srv0": "nope"},
            {"srv0": {"routes": {"not": "a list"}}},
            {"srv0": {"routes": ["route"]}},
            {"srv0": {"routes": [{"handle": REVERSE_PROXY}]}},
            {"srv0": {"routes": [{"match": [{"host": "a.example.com"}], "handle": [REVERSE_PROXY]}]}},
        ],
    )
    def test_malformed_table_raises(self, servers: Any) -> None:
        with pytest.raises(DiscoveryError):
            discover_reverse_proxy_hosts(servers, "example.com")


class TestCaddyAdminRouteSource:
    """Tests for reading the routing table from the admin API."""

    def test_get_servers(self) -> None:
        source = CaddyAdminRouteSource("http://caddy:2019/")
        servers = make_servers(make_route(["api.example.com"], REVERSE_PROXY))

        with patch.object(source._session, "get") as mock_get:
            mock_response = MagicMock()
            mock_response.raise_for_status = MagicMock()
            mock_response.json.return_value = servers
            mock_get.return_value = mock_response

            assert source.get_servers() == servers
            mock_get.assert_called_once_with(
                "http://caddy:2019/config/apps/http/servers", timeout=5.0
            )

    def test_connection_error_raises_discovery_error(self) -> None:
        source = CaddyAdminRouteSource("http://caddy:2019")

        with patch.object(source._session, "get") as mock_get:
            mock_get.side_effect = requests.exceptions.ConnectionError("Connection refused")

            with pytest.raises(DiscoveryError, match="failed to get HTTP app"):
                source.get_servers()

    def test_http_error_raises_discovery_error(self) -> None:
        source = CaddyAdminRouteSource("http://caddy:2019")

        with patch.object(source._session, "get") as mock_get:
            mock_response = MagicMock()
            mock_response.raise_for_status.side_effect = requests.exceptions.HTTPError("500")
            mock_get.return_value = mock_response

            with pytest.raises(DiscoveryError):
                source.get_servers()


class TestCaddyConfigFileRouteSource:
    """Tests for reading the routing table from a Caddy JSON file."""

    def test_get_servers_from_file(self, tmp_path: Path) -> None:
        servers = make_servers(make_route(["api.example.com"], REVERSE_PROXY))
        config_file = tmp_path / "caddy.json"
        config_file.write_text(json.dumps({"apps": {"http": {"servers": servers}}}), "utf-8")

        assert CaddyConfigFileRouteSource(str(config_file)).get_servers() == servers

    def test_file_without_http_app(self, tmp_path: Path) -> None:
        config_file = tmp_path / "caddy.json"
        config_file.write_text(json.dumps({"apps": {"tls": {}}}), "utf-8")

        assert CaddyConfigFileRouteSource(str(config_file)).get_servers() is None

    def test_missing_file_raises(self, tmp_path: Path) -> None:
        with pytest.raises(DiscoveryError):
            CaddyConfigFileRouteSource(str(tmp_path / "missing.json")).get_servers()

    def test_invalid_json_raises(self, tmp_path: Path) -> None:
        config_file = tmp_path / "caddy.json"
        config_file.write_text("{not json", "utf-8")

        with pytest.raises(DiscoveryError):
            CaddyConfigFileRouteSource(str(config_file)).get_servers()

    def test_apps_not_an_object_raises(self, tmp_path: Path) -> None:
        config_file = tmp_path / "caddy.json"
        config_file.write_text(json.dumps({"apps": ["http"]}), "utf-8")

        with pytest.raises(DiscoveryError, match="'apps' must be an object"):
            CaddyConfigFileRouteSource(str(config_file)).get_servers()

    def test_http_app_not_an_object_raises(self, tmp_path: Path) -> None:
        config_file = tmp_path / "caddy.json"
        config_file.write_text(json.dumps({"apps": {"http": ["srv0"]}}), "utf-8")

        with pytest.raises(DiscoveryError):
            CaddyConfigFileRouteSource(str(config_file)).get_servers()
