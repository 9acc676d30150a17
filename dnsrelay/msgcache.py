"""Cache of DNS responses keyed by question and, optionally, client subnet."""

from __future__ import annotations

import ipaddress
import logging
import struct
import threading
import time
from dataclasses import dataclass
from typing import Iterable

import cachetools
import dns.exception
import dns.flags
import dns.message
import dns.rcode
import dns.rdatatype
import dns.rrset

from dnsrelay.context import Upstream

log = logging.getLogger(__name__)

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address
Subnet = (
    ipaddress.IPv4Interface
    | ipaddress.IPv6Interface
    | ipaddress.IPv4Network
    | ipaddress.IPv6Network
)

# Size of the cache in bytes when none is configured.
DEFAULT_CACHE_SIZE = 64 * 1024

# TTL given to expired responses served by an optimistic cache, in seconds.
OPTIMISTIC_TTL = 10

# Maximum TTL for caching SERVFAIL responses, in seconds (RFC 2308, 7.1).
SERVFAIL_MAX_CACHE_TTL = 30

_MAX_UINT32 = 0xFFFFFFFF

# Expiration time (Unix seconds) and the length of the packed message.
_HEADER = struct.Struct(">IH")

# QTYPE, a zero byte, QCLASS and the mask length.
_SUBNET_KEY_HEAD = struct.Struct(">HBHB")

_DNSSEC_TYPES = frozenset(
    {
        dns.rdatatype.NSEC,
        dns.rdatatype.NSEC3,
        dns.rdatatype.DS,
        dns.rdatatype.RRSIG,
        dns.rdatatype.SIG,
        dns.rdatatype.DNSKEY,
    }
)


@dataclass
class CacheItem:
    """A cached response and the address of the upstream that gave it."""

    m: dns.message.Message
    u: str = ""
    ttl: int = 0

    def pack(self) -> bytes:
        """Serialise the item, expiring ttl seconds from now."""
        try:
            wire = self.m.to_wire()
        except (dns.exception.DNSException, ValueError):
            wire = b""
        if len(wire) > 0xFFFF:
            wire = b""
        expire = (int(time.time()) + self.ttl) & _MAX_UINT32
        return _HEADER.pack(expire, len(wire)) + wire + self.u.encode()


def resp_to_item(
    msg: dns.message.Message | None, upstream: Upstream | None
) -> CacheItem | None:
    """Wrap msg into a cache item, or return None if it must not be cached."""
    ttl = cache_ttl(msg)
    if ttl == 0:
        return None
    address = upstream.address() if upstream is not None else ""
    return CacheItem(m=msg, u=address, ttl=ttl)


def _new_store(size: int) -> cachetools.LRUCache:
    max_size = size if size > 0 else DEFAULT_CACHE_SIZE
    return cachetools.LRUCache(maxsize=max_size, getsizeof=len)


def _store(items: cachetools.LRUCache, key: bytes, packed: bytes) -> None:
    try:
        items[key] = packed
    except ValueError:
        log.debug("dnsproxy: cache: item of %d bytes is too large", len(packed))


def _can_look_up(items: cachetools.LRUCache | None, req) -> bool:
    return items is not None and req is not None and len(req.question) == 1


def _split_subnet(subnet: Subnet | None) -> tuple[IPAddress | None, int]:
    if subnet is None:
        return None, 0
    if isinstance(subnet, (ipaddress.IPv4Interface, ipaddress.IPv6Interface)):
        return subnet.ip, subnet.network.prefixlen
    return subnet.network_address, subnet.prefixlen


def _request_do_bit(req: dns.message.Message) -> bool:
    return req.edns >= 0 and bool(req.ednsflags & dns.flags.DO)


class MessageCache:
    """Thread-safe LRU caches of responses, with and without client subnet."""

    def __init__(
        self, size: int = 0, with_ecs: bool = False, optimistic: bool = False
    ) -> None:
        self.items = _new_store(size)
        self._items_lock = threading.RLock()
        self.items_with_subnet = _new_store(size) if with_ecs else None
        self._subnet_lock = threading.RLock()
        self.optimistic = optimistic

    def _unpack_item(
        self, data: bytes, req: dns.message.Message
    ) -> tuple[CacheItem | None, bool]:
        if len(data) < _HEADER.size:
            return None, False

        expire, length = _HEADER.unpack_from(data)
        now = int(time.time())
        expired = expire <= now
        if expired:
            if not self.optimistic:
                return None, True
            ttl = OPTIMISTIC_TTL
        else:
            ttl = expire - now

        if length == 0:
            return None, expired

        body_end = _HEADER.size + length
        try:
            m = dns.message.from_wire(data[_HEADER.size : body_end])
        except Exception:  # noqa: BLE001 - any malformed entry is a miss
            return None, expired

        res = dns.message.Message(id=req.id)
        res.flags = dns.flags.QR | (req.flags & (dns.flags.RD | dns.flags.CD))
        res.set_opcode(req.opcode())
        res.set_rcode(m.rcode())
        if req.question:
            q = req.question[0]
            res.question = [dns.rrset.RRset(q.name, q.rdclass, q.rdtype)]
        for flag in (dns.flags.AD, dns.flags.RA):
            if m.flags & flag:
                res.flags |= flag

        # OPT records are never returned from cache (RFC 6891); DNSSEC
        # records are removed too unless the request has the DO bit.
        filter_msg(
            res, m, bool(req.flags & dns.flags.AD), _request_do_bit(req), ttl
        )

        upstream = data[body_end:].decode(errors="replace")
        return CacheItem(m=res, u=upstream), expired

    def get(
        self, req: dns.message.Message | None
    ) -> tuple[CacheItem | None, bool, bytes | None]:
        """Look up req, returning the item, whether it expired, and the key."""
        with self._items_lock:
            if not _can_look_up(self.items, req):
                return None, False, None

            key = msg_to_key(req)
            data = self.items.get(key)
            if data is None:
                return None, False, key

            item, expired = self._unpack_item(data, req)
            if item is None:
                self.items.pop(key, None)
            return item, expired, key

    def get_with_subnet(
        self, req: dns.message.Message | None, subnet: Subnet | None
    ) -> tuple[CacheItem | None, bool, bytes | None]:
        """Look up req by the longest matching prefix of subnet.

        Searches are made from the subnet's mask length down to zero.
        """
        with self._subnet_lock:
            if not _can_look_up(self.items_with_subnet, req):
                return None, False, None

            ip, bits = _split_subnet(subnet)
            key: bytes | None = None
            data = None
            for mask in range(bits, -1, -1):
                key = msg_to_key_with_subnet(req, ip, mask)
                data = self.items_with_subnet.get(key)
                if data is not None:
                    break

            if data is None:
                return None, False, key

            item, expired = self._unpack_item(data, req)
            if item is None:
                self.items_with_subnet.pop(key, None)
            return item, expired, key

    def set(self, msg: dns.message.Message, upstream: Upstream | None) -> None:
        """Cache msg if it is cacheable."""
        item = resp_to_item(msg, upstream)
        if item is None:
            return
        key = msg_to_key(msg)
        packed = item.pack()
        with self._items_lock:
            _store(self.items, key, packed)

    def set_with_subnet(
        self,
        msg: dns.message.Message,
        upstream: Upstream | None,
        subnet: Subnet | None,
    ) -> None:
        """Cache msg for subnet if it is cacheable."""
        item = resp_to_item(msg, upstream)
        if item is None or self.items_with_subnet is None:
            return
        ip, bits = _split_subnet(subnet)
        key = msg_to_key_with_subnet(msg, ip, bits)
        packed = item.pack()
        with self._subnet_lock:
            _store(self.items_with_subnet, key, packed)

    def clear_items(self) -> None:
        """Empty the cache without subnets."""
        with self._items_lock:
            self.items.clear()

    def clear_items_with_subnet(self) -> None:
        """Empty the subnet cache, if there is one."""
        if self.items_with_subnet is None:
            return
        with self._subnet_lock:
            self.items_with_subnet.clear()


def cache_ttl(msg: dns.message.Message | None) -> int:
    """Return how many seconds msg may be cached, or 0 if it must not be.

    Negative answers follow RFC 2308, sections 2.1 and 2.2.
    """
    if msg is None:
        return 0
    if msg.flags & dns.flags.TC:
        log.debug("dnsproxy: cache: truncated message; not caching")
        return 0
    if len(msg.question) != 1:
        log.debug("dnsproxy: cache: message with wrong number of questions; not caching")
        return 0

    ttl = calculate_ttl(msg)
    if ttl == 0:
        log.debug("dnsproxy: cache: ttl calculated to be 0; not caching")
        return 0

    rcode = msg.rcode()
    if rcode == dns.rcode.NOERROR:
        if _is_cacheable_succeeded(msg):
            return ttl
        log.debug("dnsproxy: cache: not a cacheable noerror response; not caching")
    elif rcode == dns.rcode.NXDOMAIN:
        if _is_cacheable_negative(msg):
            return ttl
        log.debug("dnsproxy: cache: not a cacheable nxdomain response; not caching")
    elif rcode == dns.rcode.SERVFAIL:
        return ttl
    else:
        log.debug(
            "dnsproxy: cache: response code %s; not caching", dns.rcode.to_text(rcode)
        )
    return 0


def _has_ip_answer(msg: dns.message.Message) -> bool:
    return any(
        rrset.rdtype in (dns.rdatatype.A, dns.rdatatype.AAAA) for rrset in msg.answer
    )


def _is_cacheable_succeeded(msg: dns.message.Message) -> bool:
    qtype = msg.question[0].rdtype
    return (
        qtype not in (dns.rdatatype.A, dns.rdatatype.AAAA)
        or _has_ip_answer(msg)
        or _is_cacheable_negative(msg)
    )


def _is_cacheable_negative(msg: dns.message.Message) -> bool:
    """True if the authority section has an SOA record and no NS records."""
    ok = False
    for rrset in msg.authority:
        if rrset.rdtype == dns.rdatatype.SOA:
            ok = True
        elif rrset.rdtype == dns.rdatatype.NS:
            return False
    return ok


def calculate_ttl(msg: dns.message.Message) -> int:
    """Return the lowest TTL among msg's records, or 0 if it has none."""
    ttl = _MAX_UINT32
    for section in (msg.answer, msg.authority, msg.additional):
        for rrset in section:
            if rrset.rdtype == dns.rdatatype.OPT:
                continue
            ttl = min(ttl, rrset.ttl)
            if ttl == 0:
                return 0

    if msg.rcode() == dns.rcode.SERVFAIL and ttl > SERVFAIL_MAX_CACHE_TTL:
        return SERVFAIL_MAX_CACHE_TTL
    if ttl == _MAX_UINT32:
        return 0
    return ttl


def respect_ttl_overrides(ttl: int, min_ttl: int, max_ttl: int) -> int:
    """Clamp ttl to min_ttl and, if non-zero, max_ttl."""
    if ttl < min_ttl:
        return min_ttl
    if max_ttl != 0 and ttl > max_ttl:
        return max_ttl
    return ttl


def _lower_name(msg: dns.message.Message) -> bytes:
    return msg.question[0].name.to_text().lower().encode()


def msg_to_key(msg: dns.message.Message) -> bytes:
    """Build the cache key from QTYPE, QCLASS and the lower-cased QNAME."""
    q = msg.question[0]
    return struct.pack(">HH", q.rdtype, q.rdclass) + _lower_name(msg)


def msg_to_key_with_subnet(
    msg: dns.message.Message, ecs_ip: IPAddress | None, mask: int
) -> bytes:
    """Build the subnet cache key; ecs_ip is expected to be masked already.

    Layout: QTYPE, a zero byte, QCLASS, the mask length, the address when the
    mask is non-zero, and the lower-cased QNAME.
    """
    q = msg.question[0]
    key = _SUBNET_KEY_HEAD.pack(q.rdtype, 0, q.rdclass, mask & 0xFF)
    if mask != 0 and ecs_ip is not None:
        key += ecs_ip.packed
    return key + _lower_name(msg)


def is_dnssec(rr) -> bool:
    """True for NSEC, NSEC3, DS, RRSIG, SIG and DNSKEY records."""
    return rr.rdtype in _DNSSEC_TYPES


def _copy_rrset(rrset: dns.rrset.RRset, ttl: int) -> dns.rrset.RRset:
    new = dns.rrset.RRset(rrset.name, rrset.rdclass, rrset.rdtype, rrset.covers)
    for rd in rrset:
        new.add(rd)
    new.ttl = ttl if ttl != 0 else rrset.ttl
    return new


def filter_rr_slice(
    rrs: Iterable[dns.rrset.RRset], do: bool, ttl: int, except_type: int
) -> list[dns.rrset.RRset]:
    """Return copies of rrs without OPT and, unless do, DNSSEC records.

    Records of except_type are kept regardless; a non-zero ttl replaces
    the TTL of every copy.
    """
    filtered = []
    for rrset in rrs:
        if rrset.rdtype == dns.rdatatype.OPT:
            continue
        if not do and is_dnssec(rrset) and rrset.rdtype != except_type:
            continue
        filtered.append(_copy_rrset(rrset, ttl))
    return filtered


def filter_msg(
    dst: dns.message.Message, msg: dns.message.Message, ad: bool, do: bool, ttl: int
) -> None:
    """Fill dst's sections with msg's filtered records.

    The AD bit of dst is cleared unless the request had AD or DO set
    (RFC 6840).
    """
    if not (ad or do):
        dst.flags &= ~dns.flags.AD

    qtype = msg.question[0].rdtype if msg.question else dns.rdatatype.NONE
    dst.answer = filter_rr_slice(msg.answer, do, ttl, qtype)
    dst.authority = filter_rr_slice(msg.authority, do, ttl, dns.rdatatype.NONE)
    dst.additional = filter_rr_slice(msg.additional, do, ttl, dns.rdatatype.NONE)