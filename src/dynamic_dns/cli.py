#!/usr/bin/env python3
"""dynamic-dns - CNAME Synchronization for Reverse Proxies

Keeps CNAME records on a Windows DNS server in sync with a declared set of
(zone, name) pairs, optionally extended with the hostnames reverse-proxied by
Caddy. Records are written over SSH with PowerShell's
Add-DnsServerResourceRecordCName, one connection per record.

Environment variables:

    Configuration file:
        DYNAMIC_DNS_CONFIG_PATH  Path to the YAML config file
                                 (default: /config/dynamic-dns.yaml)
                                 Example config file:
                                   dynamic_dns:
                                     domains:
                                       example.com: ["@", "www"]
                                       example.org: []      # same as ["@"]
                                     check_interval: 30m
                                     ttl: 1h
                                     auto_cname_zone: example.com
                                     dns_server:
                                       host: dns01.corp.example.com
                                       user: Administrator
                                       password: secret
                                       port: 22

    DNS server overrides (take precedence over the file):
        DNS_SERVER_HOST        Windows DNS server address
        DNS_SERVER_USER        SSH user
        DNS_SERVER_PASSWORD    SSH password
        SSH_TIMEOUT_SECONDS    SSH connect timeout (default: 10)

    Caddy route discovery (only used when auto_cname_zone is set):
        CADDY_ADMIN_URL        Caddy admin API base URL (default: http://localhost:2019)
        CADDY_CONFIG_PATH      Caddy JSON config file. When set, routes are read
                               from this file instead of the admin API.

    Runtime:
        SYNC_MODE              "once" or "watch" (reconciliation loop) (default: watch)
        LOG_LEVEL              DEBUG, INFO, WARNING, ERROR (default: INFO)

Auto-discovery:
    Every route whose handler chain contains a reverse_proxy handler (directly
    or inside a subroute) contributes the hostnames of its host matchers. The
    ".<auto_cname_zone>" suffix is stripped and the remaining label is added
    under auto_cname_zone:

        "api.example.com" with auto_cname_zone "example.com"  ->  example.com: api
"""

from __future__ import annotations

import json
import logging
import math
import os
import re
import signal
import sys
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Union

import paramiko
import requests
import yaml

# =============================================================================
# Configuration
# =============================================================================

CONFIG_PATH = os.getenv("DYNAMIC_DNS_CONFIG_PATH", "/config/dynamic-dns.yaml")

DNS_SERVER_HOST = os.getenv("DNS_SERVER_HOST", "")
DNS_SERVER_USER = os.getenv("DNS_SERVER_USER", "")
DNS_SERVER_PASSWORD = os.getenv("DNS_SERVER_PASSWORD", "")
SSH_TIMEOUT_SECONDS = float(os.getenv("SSH_TIMEOUT_SECONDS", "10"))

CADDY_ADMIN_URL = os.getenv("CADDY_ADMIN_URL", "http://localhost:2019")
CADDY_CONFIG_PATH = os.getenv("CADDY_CONFIG_PATH", "")

SYNC_MODE = os.getenv("SYNC_MODE", "watch")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

DEFAULT_CHECK_INTERVAL = 30 * 60.0
MIN_CHECK_INTERVAL = 1.0
APEX = "@"

# =============================================================================
# Logging Setup
# =============================================================================

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# =============================================================================
# Exceptions
# =============================================================================


class DynamicDNSError(Exception):
    """Base class for all dynamic-dns errors."""


class ConfigurationError(DynamicDNSError):
    """Invalid configuration. Fatal at provisioning."""


class DiscoveryError(DynamicDNSError):
    """The routing table could not be read or decoded. Fatal at startup."""


class RemoteCommandError(DynamicDNSError):
    """Connecting, authenticating or running the remote command failed."""


class RecordUpdateError(DynamicDNSError):
    """The remote command ran but its output reports an error."""


class FrozenDomainSetError(DynamicDNSError):
    """The domain set was changed after the reconciliation loop took it over."""


# =============================================================================
# Data Classes
# =============================================================================

DomainMap = Dict[str, List[str]]


@dataclass(frozen=True)
class ReconciliationTarget:
    """A single (zone, name) record to push to the DNS server."""

    zone: str
    name: str


@dataclass(frozen=True)
class RouteObservation:
    """A hostname found on a reverse-proxied route."""

    zone: str
    name: str
    hostname: str
    server: str = ""


@dataclass(frozen=True)
class DNSServer:
    """Connection details for the Windows DNS server."""

    host: str = ""
    user: str = ""
    password: str = field(default="", repr=False)
    port: int = 22


@dataclass
class AppConfig:
    """Settings loaded from the config file."""

    domains: DomainMap = field(default_factory=dict)
    check_interval: Optional[float] = None
    ttl: Optional[float] = None
    auto_cname_zone: str = ""
    dns_server: DNSServer = field(default_factory=DNSServer)


@dataclass
class PassResult:
    """Per-target outcomes of one reconciliation pass."""

    succeeded: List[ReconciliationTarget] = field(default_factory=list)
    failed: List[ReconciliationTarget] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return len(self.succeeded) + len(self.failed)


# =============================================================================
# Utility Functions
# =============================================================================

_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h|d)")
_PLAIN_NUMBER_RE = re.compile(r"^(\d+(?:\.\d*)?|\.\d+)$")

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
    "d": 86400.0,
}


def parse_duration(value: Any) -> float:
    """Parse a duration into seconds.

    Accepts plain numbers (seconds) and Go/Caddy duration strings made of
    number+unit parts, e.g. "90s", "1h30m", "500ms", "2d", "-5s".
    """
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str):
        raise ValueError(f"invalid duration: {value!r}")

    text = value.strip()
    if not text:
        raise ValueError("invalid duration: empty string")

    sign = 1.0
    if text[0] in "+-":
        sign = -1.0 if text[0] == "-" else 1.0
        text = text[1:]

    if _PLAIN_NUMBER_RE.match(text):
        return sign * float(text)

    total = 0.0
    pos = 0
    for match in _DURATION_PART_RE.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text) or pos == 0:
        raise ValueError(f"invalid duration: {value!r}")
    return sign * total


def _normalize_domains(raw: Any) -> DomainMap:
    """Turn the `domains` config section into a DomainMap.

    A zone without names stands for its apex.
    """
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigurationError("'domains' must be a mapping of zone -> list of names")

    domains: DomainMap = {}
    for zone, names in raw.items():
        zone = str(zone or "").strip()
        if not zone:
            raise ConfigurationError("'domains' contains an empty zone name")
        if names is None or names == []:
            names = [APEX]
        elif isinstance(names, str):
            names = names.split()
        elif not isinstance(names, list):
            raise ConfigurationError(f"names for zone '{zone}' must be a list")
        domains.setdefault(zone, []).extend(str(n).strip() for n in names if str(n).strip())
    return domains


def _optional_duration(section: Dict[str, Any], key: str) -> Optional[float]:
    value = section.get(key)
    if value is None or value == "":
        return None
    try:
        return parse_duration(value)
    except ValueError as e:
        raise ConfigurationError(f"'{key}': {e}") from e


def parse_config(data: Any) -> AppConfig:
    """Build an AppConfig from parsed YAML.

    The settings may sit at the top level or under a `dynamic_dns` key.
    """
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigurationError("config must be a mapping")
    section = data.get("dynamic_dns", data)
    if not isinstance(section, dict):
        raise ConfigurationError("'dynamic_dns' must be a mapping")

    server = section.get("dns_server") or {}
    if not isinstance(server, dict):
        raise ConfigurationError("'dns_server' must be a mapping")
    try:
        port = int(server.get("port") or 22)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"'dns_server.port': {e}") from e

    return AppConfig(
        domains=_normalize_domains(section.get("domains")),
        check_interval=_optional_duration(section, "check_interval"),
        ttl=_optional_duration(section, "ttl"),
        auto_cname_zone=str(section.get("auto_cname_zone") or "").strip(),
        dns_server=DNSServer(
            host=str(server.get("host") or "").strip(),
            user=str(server.get("user") or "").strip(),
            password=str(server.get("password") or ""),
            port=port,
        ),
    )


def load_config(
    config_path: str,
    *,
    host: str = "",
    user: str = "",
    password: str = "",
) -> AppConfig:
    """Load the YAML config file and apply DNS server overrides."""
    path = Path(config_path)
    data: Any = None
    if path.is_file():
        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Failed to load config from {path}: {e}") from e
    else:
        logger.warning(f"Config file {path} not found, using defaults")

    config = parse_config(data)
    server = config.dns_server
    config.dns_server = DNSServer(
        host=host or server.host,
        user=user or server.user,
        password=password or server.password,
        port=server.port,
    )
    return config


# =============================================================================
# DNS Provider Interface and Implementations
# =============================================================================


class DNSProvider(ABC):
    """Abstract base class for DNS providers."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider name for logging."""
        pass

    @abstractmethod
    def update_cname(self, zone: str, name: str) -> None:
        """Create or overwrite the CNAME `name` in `zone`.

        Raises RemoteCommandError or RecordUpdateError on failure.
        """
        pass


class WindowsDNSProvider(DNSProvider):
    """Windows DNS Server administered over SSH with PowerShell.

    Every call opens its own connection and closes it before returning.
    Success is inferred from the command output: the DnsServer cmdlets
    print errors as text, so any output containing "Error" counts as a
    failed update.
    """

    ERROR_MARKER = "Error"

    def __init__(self, server: DNSServer, timeout_seconds: float = 10.0):
        self._server = server
        self._timeout = timeout_seconds

    @property
    def name(self) -> str:
        return "Windows DNS"

    @staticmethod
    def build_command(zone: str, name: str) -> str:
        cmd = f"Add-DnsServerResourceRecordCName -ZoneName {zone} -Name {name} -HostNameAlias {zone}"
        return f'powershell -Command "{cmd}"'

    def update_cname(self, zone: str, name: str) -> None:
        command = self.build_command(zone, name)
        output = self._run(command)
        if self.ERROR_MARKER in output:
            raise RecordUpdateError(f"DNS record update failed: {output.strip()}")

    def _run(self, command: str) -> str:
        """Run `command` on the DNS server and return its combined output."""
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            try:
                client.connect(
                    hostname=self._server.host,
                    port=self._server.port,
                    username=self._server.user,
                    password=self._server.password,
                    timeout=self._timeout,
                    allow_agent=False,
                    look_for_keys=False,
                )
            except (paramiko.SSHException, OSError, ValueError, EOFError) as e:
                raise RemoteCommandError(f"failed to dial {self._server.host}: {e}") from e

            try:
                transport = client.get_transport()
                if transport is None:
                    raise paramiko.SSHException("no transport")
                channel = transport.open_session()
            except (paramiko.SSHException, OSError, ValueError, EOFError) as e:
                raise RemoteCommandError(f"failed to create session: {e}") from e

            try:
                channel.set_combine_stderr(True)
                channel.exec_command(command)
                output = channel.makefile("rb").read().decode("utf-8", errors="replace")
                status = channel.recv_exit_status()
            except (paramiko.SSHException, OSError, ValueError, EOFError) as e:
                raise RemoteCommandError(f"failed to run command: {e}") from e
            finally:
                channel.close()
        finally:
            client.close()

        if status != 0:
            raise RemoteCommandError(
                f"failed to run command: exit status {status}, output: {output.strip()}"
            )
        return output


# =============================================================================
# Route Discovery
# =============================================================================


@dataclass(frozen=True)
class ReverseProxyHandler:
    """A `reverse_proxy` handler."""


@dataclass(frozen=True)
class SubrouteHandler:
    """A `subroute` handler with its own nested routes."""

    routes: List[Any] = field(default_factory=list)


@dataclass(frozen=True)
class OtherHandler:
    """Any handler kind discovery does not care about."""

    kind: str = ""


Handler = Union[ReverseProxyHandler, SubrouteHandler, OtherHandler]


def decode_handler(raw: Any) -> Handler:
    """Decode one raw route handler by its `handler` discriminator.

    Raw JSON text is accepted as well as an already decoded object. Anything
    that does not decode to an object raises DiscoveryError.
    """
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise DiscoveryError(f"failed to unmarshal handler: {e}") from e
    if not isinstance(raw, dict):
        raise DiscoveryError(f"failed to unmarshal handler: expected object, got {type(raw).__name__}")

    kind = raw.get("handler")
    if kind == "reverse_proxy":
        return ReverseProxyHandler()
    if kind == "subroute":
        routes = raw.get("routes") or []
        if not isinstance(routes, list):
            raise DiscoveryError("subroute handler 'routes' must be a list")
        return SubrouteHandler(routes=routes)
    return OtherHandler(kind=kind if isinstance(kind, str) else "")


def _route_list(routes: Any, where: str) -> List[Dict[str, Any]]:
    if routes is None:
        return []
    if not isinstance(routes, list):
        raise DiscoveryError(f"{where}: 'routes' must be a list")
    for route in routes:
        if not isinstance(route, dict):
            raise DiscoveryError(f"{where}: route must be an object, got {type(route).__name__}")
    return routes


def _proxies(route: Dict[str, Any], where: str) -> bool:
    """Check whether a route's handler chain contains a reverse proxy."""
    handlers = route.get("handle") or []
    if not isinstance(handlers, list):
        raise DiscoveryError(f"{where}: 'handle' must be a list")

    found = False
    for raw in handlers:
        handler = decode_handler(raw)
        if isinstance(handler, ReverseProxyHandler):
            found = True
        elif isinstance(handler, SubrouteHandler):
            for sub in _route_list(handler.routes, f"{where} subroute"):
                if _proxies(sub, f"{where} subroute"):
                    found = True
        else:
            logger.debug(f"{where}: ignoring handler '{handler.kind}'")
    return found


def _route_hosts(route: Dict[str, Any], where: str) -> List[str]:
    """Collect the literal hostnames of every host matcher on a route."""
    matcher_sets = route.get("match") or []
    if not isinstance(matcher_sets, list):
        raise DiscoveryError(f"{where}: 'match' must be a list")

    hosts: List[str] = []
    for matcher_set in matcher_sets:
        if not isinstance(matcher_set, dict):
            raise DiscoveryError(f"{where}: matcher set must be an object")
        host_matcher = matcher_set.get("host")
        if host_matcher is None:
            continue
        if not isinstance(host_matcher, list) or not all(isinstance(h, str) for h in host_matcher):
            raise DiscoveryError(f"{where}: host matcher must be a list of strings")
        hosts.extend(host_matcher)
    return hosts


def discover_reverse_proxy_hosts(servers: Any, zone: str) -> List[RouteObservation]:
    """Find the hostnames of all reverse-proxied routes.

    `servers` is Caddy's `apps.http.servers` object. Each hostname is
    reduced to a label of `zone` by stripping a trailing ".<zone>". The
    whole call fails with DiscoveryError if any part of the table is
    malformed.
    """
    if servers is None:
        return []
    if not isinstance(servers, dict):
        raise DiscoveryError(f"servers must be an object, got {type(servers).__name__}")

    suffix = "." + zone
    observations: List[RouteObservation] = []
    for server_name, server in sorted(servers.items()):
        if not isinstance(server, dict):
            raise DiscoveryError(f"server '{server_name}' must be an object")
        routes = _route_list(server.get("routes"), f"server '{server_name}'")
        for index, route in enumerate(routes):
            where = f"server '{server_name}' route {index}"
            if not _proxies(route, where):
                continue
            for host in _route_hosts(route, where):
                name = host[: -len(suffix)] if host.endswith(suffix) else host
                observations.append(
                    RouteObservation(zone=zone, name=name, hostname=host, server=server_name)
                )
    return observations


class RouteSource(ABC):
    """Abstract base class for sources of the proxy routing table."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the source name for logging."""
        pass

    @abstractmethod
    def get_servers(self) -> Any:
        """Return the `apps.http.servers` object of the proxy config."""
        pass


class CaddyAdminRouteSource(RouteSource):
    """Reads the live routing table from Caddy's admin API."""

    def __init__(self, url: str, timeout_seconds: float = 5.0):
        self._url = url.rstrip("/")
        self._timeout = timeout_seconds
        self._session = requests.Session()

    @property
    def name(self) -> str:
        return f"Caddy admin API ({self._url})"

    def get_servers(self) -> Any:
        try:
            response = self._session.get(
                f"{self._url}/config/apps/http/servers", timeout=self._timeout
            )
            response.raise_for_status()
            return response.json()
        except (requests.exceptions.RequestException, json.JSONDecodeError) as e:
            raise DiscoveryError(f"failed to get HTTP app: {e}") from e


class CaddyConfigFileRouteSource(RouteSource):
    """Reads the routing table from a Caddy JSON config file."""

    def __init__(self, path: str):
        self._path = Path(path)

    @property
    def name(self) -> str:
        return f"Caddy config {self._path}"

    def get_servers(self) -> Any:
        try:
            config = json.loads(self._path.read_text("utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise DiscoveryError(f"failed to read {self._path}: {e}") from e
        if not isinstance(config, dict):
            raise DiscoveryError(f"{self._path}: config must be an object")
        apps = config.get("apps") or {}
        if not isinstance(apps, dict):
            raise DiscoveryError(f"{self._path}: 'apps' must be an object")
        http_app = apps.get("http") or {}
        if not isinstance(http_app, dict):
            raise DiscoveryError(f"{self._path}: 'apps.http' must be an object")
        return http_app.get("servers")


# =============================================================================
# Domain Set Resolver
# =============================================================================


class DomainSetResolver:
    """Holds the desired (zone, name) set.

    Built from static configuration, extended by discovery, then frozen
    before the reconciliation loop starts reading it.
    """

    def __init__(self, domains: Optional[Mapping[str, Iterable[str]]] = None):
        self._domains: Dict[str, Set[str]] = {}
        self._frozen = False
        for zone, names in (domains or {}).items():
            self.add(zone, names)

    @property
    def frozen(self) -> bool:
        return self._frozen

    def add(self, zone: str, names: Iterable[str]) -> None:
        new = set(names) - self._domains.get(zone, set())
        if not new:
            return
        if self._frozen:
            raise FrozenDomainSetError(f"domain set is frozen, cannot add {sorted(new)} to {zone}")
        self._domains.setdefault(zone, set()).update(new)

    def augment(self, observations: Iterable[RouteObservation]) -> int:
        """Add discovered names. Returns how many were new."""
        added = 0
        for obs in observations:
            names = self._domains.get(obs.zone, set())
            if obs.name not in names:
                added += 1
            self.add(obs.zone, [obs.name])
        return added

    def freeze(self) -> None:
        self._frozen = True

    def resolve(self) -> DomainMap:
        """Return the desired domain set with zones and names sorted."""
        return {zone: sorted(names) for zone, names in sorted(self._domains.items()) if names}

    def targets(self) -> List[ReconciliationTarget]:
        return [
            ReconciliationTarget(zone=zone, name=name)
            for zone, names in self.resolve().items()
            for name in names
        ]


# =============================================================================
# Reconciliation Loop
# =============================================================================


class ReconciliationLoop:
    """Pushes every desired record to the DNS provider on a fixed schedule.

    `run()` does one pass right away and then one per tick until `stop()` is
    called. Passes run on the calling thread one after another; ticks that
    fall due while a pass is still running are dropped.
    """

    def __init__(
        self,
        *,
        resolver: DomainSetResolver,
        dns_provider: DNSProvider,
        interval: float,
        stop_event: Optional[threading.Event] = None,
    ):
        self.resolver = resolver
        self.dns_provider = dns_provider
        self.interval = interval
        self._stop_event = stop_event or threading.Event()

    def stop(self) -> None:
        self._stop_event.set()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def run_pass(self) -> PassResult:
        logger.debug("Beginning DNS update")
        result = PassResult()

        for target in self.resolver.targets():
            try:
                self.dns_provider.update_cname(target.zone, target.name)
            except DynamicDNSError as e:
                result.failed.append(target)
                logger.error(
                    f"Failed updating CNAME record {target.name} in {target.zone}: {e}",
                    extra={"zone": target.zone, "record": target.name, "outcome": "failed"},
                )
            except Exception as e:
                result.failed.append(target)
                logger.error(
                    f"Unexpected error updating CNAME record {target.name} in {target.zone}: {e}",
                    exc_info=True,
                    extra={"zone": target.zone, "record": target.name, "outcome": "failed"},
                )
            else:
                result.succeeded.append(target)
                logger.info(
                    f"Updated CNAME record {target.name} in {target.zone}",
                    extra={"zone": target.zone, "record": target.name, "outcome": "updated"},
                )

        logger.info(
            f"Finished updating DNS: {len(result.succeeded)} updated, {len(result.failed)} failed"
        )
        return result

    def run(self) -> None:
        if self._stop_event.is_set():
            return

        next_tick = time.monotonic() + self.interval
        self.run_pass()

        while True:
            timeout = max(0.0, next_tick - time.monotonic())
            if self._stop_event.wait(timeout):
                logger.debug("Reconciliation loop stopped")
                return

            self.run_pass()

            next_tick += self.interval
            now = time.monotonic()
            if next_tick <= now:
                missed = int((now - next_tick) // self.interval) + 1
                logger.debug(f"DNS update overran the check interval, skipping {missed} tick(s)")
                next_tick += missed * self.interval


# =============================================================================
# Lifecycle Controller
# =============================================================================


class DynamicDNSApp:
    """Wires configuration, discovery and the reconciliation loop together."""

    def __init__(
        self,
        *,
        config: AppConfig,
        dns_provider: DNSProvider,
        route_source: Optional[RouteSource] = None,
    ):
        self.config = config
        self.dns_provider = dns_provider
        self.route_source = route_source
        self.resolver = DomainSetResolver(config.domains)
        self.check_interval = DEFAULT_CHECK_INTERVAL
        self.loop: Optional[ReconciliationLoop] = None
        self.thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    def provision(self) -> None:
        """Validate configuration. Raises ConfigurationError."""
        interval = self.config.check_interval
        if interval is None:
            interval = DEFAULT_CHECK_INTERVAL
        if not math.isfinite(interval):
            raise ConfigurationError(f"check interval must be finite, got {interval}")
        if interval < MIN_CHECK_INTERVAL:
            raise ConfigurationError("check interval must be at least 1 second")
        if interval > threading.TIMEOUT_MAX:
            raise ConfigurationError(
                f"check interval must be at most {threading.TIMEOUT_MAX:g} seconds"
            )
        self.check_interval = interval

        if self.config.auto_cname_zone and self.route_source is None:
            raise ConfigurationError("auto_cname_zone is set but no route source is configured")

        server = self.config.dns_server
        if not server.host or not server.user:
            logger.warning("dns_server host/user not set. DNS updates will fail.")
        if self.config.ttl is not None:
            logger.debug(f"TTL {self.config.ttl:g}s is advisory and not sent to the DNS server")

    def discover(self) -> int:
        """Add reverse-proxied hostnames to the domain set.

        Returns the number of new names. No-op without auto_cname_zone.
        """
        zone = self.config.auto_cname_zone
        if not zone or self.route_source is None:
            return 0

        servers = self.route_source.get_servers()
        try:
            observations = discover_reverse_proxy_hosts(servers, zone)
        except DiscoveryError as e:
            raise DiscoveryError(f"failed to add reverse proxy CNAMEs: {e}") from e

        added = self.resolver.augment(observations)
        logger.info(
            f"Discovered {len(observations)} reverse proxy host(s) from "
            f"{self.route_source.name}: {added} new name(s) in {zone}"
        )
        return added

    def start(self) -> None:
        """Run discovery once, then start the loop on a background thread."""
        self.discover()
        self.resolver.freeze()

        self.loop = ReconciliationLoop(
            resolver=self.resolver,
            dns_provider=self.dns_provider,
            interval=self.check_interval,
            stop_event=self._stop_event,
        )
        self.thread = threading.Thread(
            target=self.loop.run, name="dynamic-dns-loop", daemon=True
        )
        self.thread.start()

    def stop(self) -> None:
        """Request shutdown.

        Returns without waiting; the loop exits after its current pass. Join
        `self.thread` to wait for it.
        """
        self._stop_event.set()


# =============================================================================
# Main
# =============================================================================


def create_route_source() -> RouteSource:
    """Factory function to create the configured route source."""
    if CADDY_CONFIG_PATH:
        return CaddyConfigFileRouteSource(CADDY_CONFIG_PATH)
    return CaddyAdminRouteSource(CADDY_ADMIN_URL)


def main():
    """Main entry point."""
    logger.info(f"dynamic-dns: caddy -> windows dns ({SYNC_MODE})")

    if SYNC_MODE not in ("once", "watch"):
        logger.error(f"Invalid SYNC_MODE: {SYNC_MODE}. Use 'once' or 'watch'")
        sys.exit(1)

    try:
        config = load_config(
            CONFIG_PATH,
            host=DNS_SERVER_HOST,
            user=DNS_SERVER_USER,
            password=DNS_SERVER_PASSWORD,
        )
        app = DynamicDNSApp(
            config=config,
            dns_provider=WindowsDNSProvider(config.dns_server, timeout_seconds=SSH_TIMEOUT_SECONDS),
            route_source=create_route_source() if config.auto_cname_zone else None,
        )
        app.provision()
    except ConfigurationError as e:
        logger.error(f"Configuration validation failed: {e}")
        sys.exit(1)

    logger.info(f"DNS server: {config.dns_server.host or '(unset)'}")
    logger.info(f"Check interval: {app.check_interval:g}s")
    if config.auto_cname_zone:
        logger.info(f"Auto CNAME zone: {config.auto_cname_zone}")

    try:
        if SYNC_MODE == "once":
            app.discover()
            app.resolver.freeze()
            ReconciliationLoop(
                resolver=app.resolver,
                dns_provider=app.dns_provider,
                interval=app.check_interval,
            ).run_pass()
            return

        shutdown = threading.Event()

        def handle_signal(signum: int, frame: Optional[object]) -> None:
            logger.info("Shutting down gracefully...")
            shutdown.set()

        signal.signal(signal.SIGTERM, handle_signal)
        signal.signal(signal.SIGINT, handle_signal)

        app.start()
        shutdown.wait()
        app.stop()

    except DiscoveryError as e:
        logger.error(f"Startup failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
