"""Per-request state of a DNS query passing through the relay."""

from __future__ import annotations

import abc
import enum
import ipaddress
import socket
import time
from dataclasses import dataclass, field
from typing import Any

import dns.flags
import dns.message

# Default UDP buffer size advertised when the request carries no EDNS0 record.
DEFAULT_UDP_BUF_SIZE = 2048


class Proto(str, enum.Enum):
    """Transport protocol a request arrived over."""

    UDP = "udp"
    TCP = "tcp"
    TLS = "tls"
    HTTPS = "https"
    QUIC = "quic"
    DNSCRYPT = "dnscrypt"


class DoQVersion(enum.IntEnum):
    """Supported DNS-over-QUIC protocol versions."""

    # Old drafts that do not send the 2-octet length prefix.
    V1_DRAFT = 0x00
    # DoQ as standardised in RFC 9250.
    V1 = 0x01


class Upstream(abc.ABC):
    """A DNS server that requests can be forwarded to."""

    @abc.abstractmethod
    def exchange(self, req: dns.message.Message) -> dns.message.Message:
        """Send req and return the server's reply, raising on failure."""

    @abc.abstractmethod
    def address(self) -> str:
        """Return the address the upstream was configured with."""

    def close(self) -> None:
        """Release resources held by the upstream."""


IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network


@dataclass
class DNSContext:
    """A DNS request together with everything known about its processing."""

    proto: Proto = Proto.UDP
    req: dns.message.Message | None = None
    res: dns.message.Message | None = None
    addr: Any = None
    start_time: float = field(default_factory=time.time)
    upstream: Upstream | None = None
    cached_upstream_addr: str = ""
    custom_upstream_config: Any = None
    conn: socket.socket | None = None
    local_ip: ipaddress.IPv4Address | ipaddress.IPv6Address | None = None
    http_request: Any = None
    http_response_writer: Any = None
    dnscrypt_response_writer: Any = None
    quic_stream: Any = None
    quic_connection: Any = None
    doq_version: DoQVersion = DoQVersion.V1_DRAFT
    request_id: int = 0
    req_ecs: IPNetwork | None = None

    ad_bit: bool = field(default=False, init=False)
    has_edns0: bool = field(default=False, init=False)
    do_bit: bool = field(default=False, init=False)
    udp_size: int = field(default=0, init=False)

    def calc_flags_and_size(self) -> None:
        """Compute the request flags and UDP size once, if not yet done."""
        if self.udp_size != 0 or self.req is None:
            return

        self.ad_bit = bool(self.req.flags & dns.flags.AD)
        self.udp_size = DEFAULT_UDP_BUF_SIZE
        if self.req.edns >= 0:
            self.has_edns0 = True
            self.do_bit = bool(self.req.ednsflags & dns.flags.DO)
            self.udp_size = self.req.payload