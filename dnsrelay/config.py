"""Relay configuration and its validation."""

from __future__ import annotations

import enum
import ipaddress
import logging
import ssl
from dataclasses import dataclass, field
from typing import Any, Callable

from dnsrelay.context import DNSContext, Upstream

log = logging.getLogger(__name__)

Address = tuple[str, int]
IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network


class UpstreamMode(enum.IntEnum):
    """How upstream servers are used."""

    LOAD_BALANCE = 0
    PARALLEL = 1
    FASTEST_ADDR = 2


class ConfigError(ValueError):
    """The configuration cannot be used to start the relay."""


@dataclass
class UpstreamConfig:
    """A set of upstream servers, general and per-domain."""

    upstreams: list[Upstream] = field(default_factory=list)
    domain_reserved_upstreams: dict[str, list[Upstream]] = field(default_factory=dict)


BeforeRequestHandler = Callable[[Any, DNSContext], bool]
RequestHandler = Callable[[Any, DNSContext], None]
ResponseHandler = Callable[[DNSContext, "BaseException | None"], None]


@dataclass
class Config:
    """All settings of the relay.

    Listener lists that are None disable the corresponding listener; an empty
    list still counts as configured.
    """

    udp_listen_addr: list[Address] | None = None
    tcp_listen_addr: list[Address] | None = None
    https_listen_addr: list[Address] | None = None
    tls_listen_addr: list[Address] | None = None
    quic_listen_addr: list[Address] | None = None
    dnscrypt_udp_listen_addr: list[Address] | None = None
    dnscrypt_tcp_listen_addr: list[Address] | None = None

    tls_config: ssl.SSLContext | None = None
    http3: bool = False
    dnscrypt_provider_name: str = ""
    dnscrypt_resolver_cert: Any = None

    ratelimit: int = 0
    ratelimit_whitelist: list[str] = field(default_factory=list)
    refuse_any: bool = False
    trusted_proxies: list[str] = field(default_factory=list)

    upstream_config: UpstreamConfig | None = None
    private_rdns_upstream_config: UpstreamConfig | None = None
    fallbacks: list[Upstream] = field(default_factory=list)
    upstream_mode: UpstreamMode = UpstreamMode.LOAD_BALANCE
    fastest_ping_timeout: float = 0.0
    bogus_nxdomain: list[IPNetwork] = field(default_factory=list)

    enable_edns_client_subnet: bool = False
    edns_addr: ipaddress.IPv4Address | ipaddress.IPv6Address | None = None

    cache_enabled: bool = False
    cache_size_bytes: int = 0
    cache_min_ttl: int = 0
    cache_max_ttl: int = 0
    cache_optimistic: bool = False

    before_request_handler: BeforeRequestHandler | None = None
    request_handler: RequestHandler | None = None
    response_handler: ResponseHandler | None = None

    max_goroutines: int = 0
    udp_buffer_size: int = 0

    use_dns64: bool = False
    dns64_prefs: list[ipaddress.IPv6Network] | None = None


def has_listen_addrs(config: Config) -> bool:
    """Return True if at least one listener is configured."""
    return any(
        addrs is not None
        for addrs in (
            config.udp_listen_addr,
            config.tcp_listen_addr,
            config.tls_listen_addr,
            config.https_listen_addr,
            config.quic_listen_addr,
            config.dnscrypt_udp_listen_addr,
            config.dnscrypt_tcp_listen_addr,
        )
    )


def validate_listen_addrs(config: Config) -> None:
    """Raise ConfigError if the listeners are not configured properly."""
    if not has_listen_addrs(config):
        raise ConfigError("no listen address specified")

    if config.tls_config is None:
        if config.tls_listen_addr is not None:
            raise ConfigError("cannot create tls listener without tls config")
        if config.https_listen_addr is not None:
            raise ConfigError("cannot create https listener without tls config")
        if config.quic_listen_addr is not None:
            raise ConfigError("cannot create quic listener without tls config")

    wants_dnscrypt = (
        config.dnscrypt_tcp_listen_addr is not None
        or config.dnscrypt_udp_listen_addr is not None
    )
    if wants_dnscrypt and (
        config.dnscrypt_resolver_cert is None or not config.dnscrypt_provider_name
    ):
        raise ConfigError("cannot create dnscrypt listener without dnscrypt config")


def validate_config(config: Config, started: bool) -> None:
    """Raise ConfigError if config cannot be used to start the relay."""
    if started:
        raise ConfigError("server has been already started")

    validate_listen_addrs(config)

    ups = config.upstream_config
    if ups is None:
        raise ConfigError("no default upstreams specified")

    if not ups.upstreams:
        if not ups.domain_reserved_upstreams:
            raise ConfigError("no upstreams specified")
        raise ConfigError("no default upstreams specified")

    if config.cache_min_ttl > 0 or config.cache_max_ttl > 0:
        log.info(
            "Cache TTL override is enabled. Min=%d, Max=%d",
            config.cache_min_ttl,
            config.cache_max_ttl,
        )

    if config.ratelimit > 0:
        log.info("Ratelimit is enabled and set to %d rps", config.ratelimit)

    if config.refuse_any:
        log.info("The server is configured to refuse ANY requests")

    if config.bogus_nxdomain:
        log.info("%d bogus-nxdomain IP specified", len(config.bogus_nxdomain))