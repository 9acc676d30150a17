"""Helpers for building synthetic responses and handling client subnets."""

from __future__ import annotations

import ipaddress
import logging
from typing import Iterable

import dns.edns
import dns.flags
import dns.message
import dns.name
import dns.opcode
import dns.rcode
import dns.rdataclass
import dns.rdatatype
import dns.rdtypes.ANY.SOA
import dns.rrset

from dnsrelay.context import DNSContext
from dnsrelay.fastip import ip_from_rr

log = logging.getLogger(__name__)

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address
IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network
IPInterface = ipaddress.IPv4Interface | ipaddress.IPv6Interface

# Retry time of the SOA record in empty NOERROR responses, in seconds.
RETRY_NO_ERROR = 60

# Default ECS mask lengths.  Google's public DNS refuses requests with IPv6
# masks longer than 7 octets.
DEFAULT_ECS_V4 = 24
DEFAULT_ECS_V6 = 56

# EDNS payload size used when a new OPT record has to be created for ECS.
_ECS_UDP_SIZE = 4096

_SOA_NS = "fake-for-negative-caching.adguard.com."
_SOA_SERIAL = 100500
_SOA_REFRESH = 1800
_SOA_EXPIRE = 604800
_SOA_MINTTL = 86400
_SOA_TTL = 10


def check_disabled_aaaa_request(ctx: DNSContext, ipv6_disabled: bool) -> bool:
    """Answer an AAAA request with an empty NOERROR if IPv6 is disabled.

    Returns True if ctx.res was set.
    """
    q = ctx.req.question[0]
    if ipv6_disabled and q.rdtype == dns.rdatatype.AAAA:
        log.debug(
            "IPv6 is disabled. Reply with NoError to %s AAAA request", q.name.to_text()
        )
        ctx.res = gen_empty_no_error(ctx.req)
        return True
    return False


def gen_empty_message(
    request: dns.message.Message, rcode: int, retry: int
) -> dns.message.Message:
    """Build an answerless reply to request with rcode and an SOA record."""
    resp = dns.message.Message(id=request.id)
    resp.flags = dns.flags.QR
    resp.set_opcode(request.opcode())
    if request.opcode() == dns.opcode.QUERY:
        resp.flags |= request.flags & (dns.flags.RD | dns.flags.CD)
    resp.set_rcode(rcode)
    if request.question:
        q = request.question[0]
        resp.question = [dns.rrset.RRset(q.name, q.rdclass, q.rdtype)]
    resp.flags |= dns.flags.RA
    resp.authority = gen_soa(request, retry)
    return resp


def gen_empty_no_error(request: dns.message.Message) -> dns.message.Message:
    """Build an answerless NOERROR reply to request."""
    return gen_empty_message(request, dns.rcode.NOERROR, RETRY_NO_ERROR)


def gen_soa(request: dns.message.Message, retry: int) -> list[dns.rrset.RRset]:
    """Return the authority section holding a synthetic SOA for request."""
    zone = request.question[0].name if request.question else dns.name.root
    mbox = dns.name.Name((b"hostmaster",) + zone.labels)
    soa = dns.rdtypes.ANY.SOA.SOA(
        dns.rdataclass.IN,
        dns.rdatatype.SOA,
        dns.name.from_text(_SOA_NS),
        mbox,
        _SOA_SERIAL,
        _SOA_REFRESH,
        retry,
        _SOA_EXPIRE,
        _SOA_MINTTL,
    )
    return [dns.rrset.from_rdata(zone, _SOA_TTL, soa)]


def ecs_from_msg(msg: dns.message.Message) -> tuple[IPInterface | None, int]:
    """Return the client subnet and scope from msg's ECS option, if any."""
    if msg.edns < 0:
        return None, 0

    for opt in msg.options:
        if not isinstance(opt, dns.edns.ECSOption):
            continue
        if opt.family not in (1, 2):
            continue
        ip = ipaddress.ip_address(opt.address)
        if opt.family == 1 and isinstance(ip, ipaddress.IPv6Address):
            if ip.ipv4_mapped is None:
                continue
            ip = ip.ipv4_mapped
        return ipaddress.ip_interface(f"{ip}/{opt.srclen}"), int(opt.scopelen)

    return None, 0


def set_ecs(
    msg: dns.message.Message, ip: IPAddress | str, scope: int
) -> IPNetwork:
    """Add an ECS option for ip to msg and return the masked subnet."""
    addr = ipaddress.ip_address(ip)
    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is not None:
        addr = addr.ipv4_mapped

    bits = DEFAULT_ECS_V4 if addr.version == 4 else DEFAULT_ECS_V6
    subnet = ipaddress.ip_network(f"{addr}/{bits}", strict=False)
    option = dns.edns.ECSOption(str(subnet.network_address), bits, scope)

    # Servers may answer FORMERR to several OPT records, so reuse the
    # existing one if there is any.
    if msg.edns >= 0:
        msg.use_edns(
            edns=msg.edns,
            ednsflags=msg.ednsflags,
            payload=msg.payload,
            options=list(msg.options) + [option],
        )
    else:
        msg.use_edns(edns=0, payload=_ECS_UDP_SIZE, options=[option])

    return subnet


def _contains_ip(subnets: Iterable[IPNetwork], ip: IPAddress | None) -> bool:
    if ip is None:
        return False
    return any(ip in net for net in subnets)


def is_bogus_nxdomain(
    msg: dns.message.Message | None, subnets: Iterable[IPNetwork]
) -> bool:
    """True if msg answers with an address inside one of subnets."""
    subnets = list(subnets)
    if msg is None or not subnets or not msg.question:
        return False
    if msg.question[0].rdtype not in (dns.rdatatype.A, dns.rdatatype.AAAA):
        return False

    return any(
        _contains_ip(subnets, ip_from_rr(rd)) for rrset in msg.answer for rd in rrset
    )