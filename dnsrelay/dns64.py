"""DNS64 synthesis of AAAA answers from A records (RFC 6147)."""

from __future__ import annotations

import ipaddress
import logging
from typing import Callable, Iterable, Sequence

import dns.entropy
import dns.message
import dns.rcode
import dns.rdataclass
import dns.rdatatype
import dns.rrset

from dnsrelay.context import Upstream

log = logging.getLogger(__name__)

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address

# Maximum length of a NAT64 prefix in bits (RFC 6147, section 5.2).
MAX_NAT64_PREFIX_BIT_LEN = 96

# Length of a NAT64 prefix in bytes.
NAT64_PREFIX_LENGTH = 16 - 4

# Maximum TTL of synthesized answers when the response has no SOA record
# (RFC 6147, section 5.1.7).
MAX_DNS64_SYN_TTL = 600

# Default prefix for the algorithmic mapping (RFC 6052, section 2.1).
DNS64_WELL_KNOWN_PREF = ipaddress.IPv6Network("64:ff9b::/96")

# Sends a request to upstreams and returns the reply and the upstream used.
Exchange = Callable[
    [dns.message.Message, Sequence[Upstream]], "tuple[dns.message.Message, Upstream]"
]


class DNS64Error(ValueError):
    """DNS64 settings are invalid or DNS64 is used while not configured."""


def setup_dns64(
    use_dns64: bool, prefixes: Iterable[ipaddress.IPv6Network | str] | None
) -> list[ipaddress.IPv6Network]:
    """Return the NAT64 prefixes to use, masked and validated.

    With DNS64 disabled the result is empty.  With no prefixes configured the
    Well-Known Prefix is used.  Raises DNS64Error on a non-IPv6 prefix or one
    longer than 96 bits.
    """
    if not use_dns64:
        return []

    prefixes = list(prefixes or [])
    if not prefixes:
        return [DNS64_WELL_KNOWN_PREF]

    result: list[ipaddress.IPv6Network] = []
    for i, pref in enumerate(prefixes):
        try:
            net = ipaddress.ip_network(pref, strict=False)
        except ValueError as err:
            raise DNS64Error(f"prefix at index {i}: {err}") from err

        if net.version != 6:
            raise DNS64Error(f"prefix at index {i}: {str(pref)!r} is not an IPv6 prefix")
        if net.prefixlen > MAX_NAT64_PREFIX_BIT_LEN:
            raise DNS64Error(
                f"prefix at index {i}: {str(pref)!r} is too long for DNS64"
            )
        result.append(net)

    return result


def _unmap(ip: IPAddress) -> IPAddress:
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


class DNS64:
    """Performs DNS64 using a set of NAT64 prefixes; the first one maps."""

    def __init__(self, prefixes: Iterable[ipaddress.IPv6Network] = ()) -> None:
        self.prefixes = list(prefixes)

    def check(
        self, req: dns.message.Message, resp: dns.message.Message
    ) -> dns.message.Message | None:
        """Return an A request to resolve for DNS64, or None if not needed.

        Answers of resp within the NAT64 prefixes are filtered out.
        """
        if not self.prefixes:
            return None

        q = req.question[0]
        # DNS64 for classes other than IN is undefined.
        if q.rdtype != dns.rdatatype.AAAA or q.rdclass != dns.rdataclass.IN:
            return None

        rcode = resp.rcode()
        if rcode == dns.rcode.NXDOMAIN:
            return None

        if rcode == dns.rcode.NOERROR:
            resp.answer, has_answers = self.filter_nat64_answers(resp.answer)
            if has_answers:
                return None

        dns64_req = dns.message.from_wire(req.to_wire())
        dns64_req.id = dns.entropy.random_16()
        dns64_req.question = [dns.rrset.RRset(q.name, q.rdclass, dns.rdatatype.A)]
        return dns64_req

    def filter_nat64_answers(
        self, rrs: Iterable[dns.rrset.RRset]
    ) -> tuple[list[dns.rrset.RRset], bool]:
        """Drop AAAA records within the NAT64 prefixes.

        The flag is True if at least one AAAA outside the prefixes, or a
        CNAME or DNAME, is left.
        """
        filtered: list[dns.rrset.RRset] = []
        has_answers = False
        for rrset in rrs:
            if rrset.rdtype == dns.rdatatype.AAAA:
                kept = []
                for rd in rrset:
                    try:
                        addr = _unmap(ipaddress.IPv6Address(rd.address))
                    except ValueError as err:
                        log.error("proxy: bad aaaa record: %s", err)
                        continue
                    if self.within(addr):
                        continue
                    kept.append(rd)
                if kept:
                    filtered.append(
                        dns.rrset.from_rdata_list(rrset.name, rrset.ttl, kept)
                    )
                    has_answers = True
            elif rrset.rdtype in (dns.rdatatype.CNAME, dns.rdatatype.DNAME):
                # Chains are not followed, so treat them as passable answers.
                filtered.append(rrset)
                has_answers = True
            else:
                filtered.append(rrset)
        return filtered, has_answers

    def synth(
        self,
        orig_req: dns.message.Message,
        orig_resp: dns.message.Message,
        resp: dns.message.Message,
    ) -> bool:
        """Rewrite orig_resp with AAAA records synthesized from resp.

        Returns True if orig_resp was modified.
        """
        if not resp.answer:
            return False

        soa_ttl = MAX_DNS64_SYN_TTL
        qname = orig_req.question[0].name
        for rrset in orig_resp.authority:
            if rrset.rdtype == dns.rdatatype.SOA and rrset.name == qname:
                soa_ttl = rrset.ttl
                break

        new_answer = []
        for rrset in resp.answer:
            synthesized = self.synth_rr(rrset, soa_ttl)
            if synthesized is None:
                return False
            new_answer.append(synthesized)

        orig_resp.answer = new_answer
        orig_resp.authority = list(resp.authority)
        orig_resp.additional = list(resp.additional)
        return True

    def within(self, ip: IPAddress) -> bool:
        """True if ip is within one of the configured prefixes."""
        return any(ip in net for net in self.prefixes)

    def should_strip(self, ip: IPAddress | str) -> bool:
        """True if DNS64 is enabled and ip is in a configured or well-known prefix.

        Meant for PTR requests (RFC 6147, section 5.3.1).
        """
        if not self.prefixes:
            return False

        try:
            addr = ipaddress.ip_address(ip)
        except ValueError:
            return False
        if not isinstance(addr, ipaddress.IPv6Address):
            return False

        if self.within(addr):
            log.debug("proxy: %s is within DNS64 custom prefix set", addr)
        elif addr in DNS64_WELL_KNOWN_PREF:
            log.debug("proxy: %s is within DNS64 well-known prefix", addr)
        else:
            return False
        return True

    def map_address(self, addr: ipaddress.IPv4Address | str) -> ipaddress.IPv6Address:
        """Map an IPv4 address into the first configured NAT64 prefix."""
        if not self.prefixes:
            raise DNS64Error("no DNS64 prefixes configured")
        v4 = ipaddress.IPv4Address(addr)
        pref = self.prefixes[0].network_address.packed
        return ipaddress.IPv6Address(pref[:NAT64_PREFIX_LENGTH] + v4.packed)

    def synth_rr(
        self, rr: dns.rrset.RRset, soa_ttl: int
    ) -> dns.rrset.RRset | None:
        """Turn an A record set into a synthesized AAAA set.

        Other records are returned as they are; None on invalid A records.
        """
        if rr.rdtype != dns.rdatatype.A:
            return rr

        mapped = []
        for rd in rr:
            try:
                mapped.append(str(self.map_address(rd.address)))
            except ValueError as err:
                log.error("proxy: bad a record: %s", err)
                return None

        return dns.rrset.from_text_list(
            rr.name, min(rr.ttl, soa_ttl), rr.rdclass, dns.rdatatype.AAAA, mapped
        )

    def perform(
        self,
        orig_req: dns.message.Message,
        orig_resp: dns.message.Message | None,
        upstreams: Sequence[Upstream],
        exchange: Exchange,
    ) -> Upstream | None:
        """Do DNS64 for orig_resp if needed.

        Returns the upstream that answered the DNS64 request, or None if no
        synthesis was done.
        """
        if orig_resp is None:
            return None

        dns64_req = self.check(orig_req, orig_resp)
        if dns64_req is None:
            return None

        host = orig_req.question[0].name.to_text()
        log.debug("proxy: received an empty aaaa response for %r, checking dns64", host)

        try:
            dns64_resp, ups = exchange(dns64_req, upstreams)
        except Exception as err:  # noqa: BLE001 - failures only disable synthesis
            log.error("proxy: dns64 request failed: %s", err)
            return None

        if dns64_resp is not None and self.synth(orig_req, orig_resp, dns64_resp):
            log.debug("dnsforward: synthesized aaaa response for %r", host)
            return ups
        return None