"""Query several upstreams and answer with the fastest reachable address.

Every IP address returned by the upstreams is probed with a TCP connection and
the first one that connects is kept in the answer.
"""

from __future__ import annotations

import ipaddress
import logging
import queue
import socket
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Callable, Iterable, Sequence

import dns.message
import dns.rdatatype
import dns.rrset

from dnsrelay.context import Upstream
from dnsrelay.fastip_cache import STATUS_OK, AddrCache

log = logging.getLogger(__name__)

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address

# Default time to wait for ping operations to finish, in seconds.
DEFAULT_PING_WAIT_TIMEOUT = 1.0

# TCP connection timeout.  Higher than the wait timeout since slower
# connections are cached anyway.
PING_TCP_TIMEOUT = 4.0

# Dials host:port within timeout seconds, raising on failure.
Dialer = Callable[[str, int, float], None]


class UpstreamsFailedError(Exception):
    """No upstream managed to answer the request."""

    def __init__(self, errors: Sequence[BaseException]) -> None:
        self.errors = list(errors)
        detail = "; ".join(str(e) for e in self.errors)
        super().__init__(f"all upstreams failed to exchange request: {detail}")
        if self.errors:
            self.__cause__ = self.errors[0]


@dataclass
class PingResult:
    """Outcome of dialing one address and port."""

    addr: IPAddress
    port: int = 0
    latency: int = 0
    success: bool = False


@dataclass
class ExchangeAllResult:
    """A response together with the upstream that gave it."""

    resp: dns.message.Message
    upstream: Upstream


def exchange_all(
    upstreams: Sequence[Upstream], req: dns.message.Message
) -> list[ExchangeAllResult]:
    """Send req to all upstreams concurrently and return every response.

    Results come in the order they arrive.  Raises UpstreamsFailedError if no
    upstream answered.
    """
    if not upstreams:
        raise UpstreamsFailedError([])

    results: list[ExchangeAllResult] = []
    errors: list[BaseException] = []
    with ThreadPoolExecutor(max_workers=len(upstreams)) as pool:
        futures = {pool.submit(u.exchange, req): u for u in upstreams}
        for fut in as_completed(futures):
            ups = futures[fut]
            try:
                resp = fut.result()
            except Exception as err:  # noqa: BLE001 - upstream errors are collected
                errors.append(err)
                continue
            if resp is None:
                errors.append(ValueError(f"upstream {ups.address()} returned no response"))
                continue
            results.append(ExchangeAllResult(resp=resp, upstream=ups))

    if not results:
        raise UpstreamsFailedError(errors)
    return results


def ip_from_rr(rr) -> IPAddress | None:
    """Return the address of an A or AAAA record, or None for other records."""
    if rr.rdtype == dns.rdatatype.A:
        return ipaddress.IPv4Address(rr.address)
    if rr.rdtype == dns.rdatatype.AAAA:
        return ipaddress.IPv6Address(rr.address)
    return None


def _answer_ips(msg: dns.message.Message) -> Iterable[IPAddress]:
    for rrset in msg.answer:
        for rd in rrset:
            ip = ip_from_rr(rd)
            if ip is not None:
                yield ip


def _unmap(ip: IPAddress) -> IPAddress:
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


def _tcp_dial(host: str, port: int, timeout: float) -> None:
    with socket.create_connection((host, port), timeout=timeout):
        pass


class FastestAddr:
    """Finds the fastest address among those returned by several upstreams."""

    def __init__(
        self,
        ping_ports: Sequence[int] = (80, 443),
        ping_wait_timeout: float = DEFAULT_PING_WAIT_TIMEOUT,
        dialer: Dialer | None = None,
        cache: AddrCache | None = None,
    ) -> None:
        self.ping_ports = list(ping_ports)
        self.ping_wait_timeout = ping_wait_timeout
        self.cache = cache if cache is not None else AddrCache()
        self._dialer: Dialer = dialer if dialer is not None else _tcp_dial

    def exchange_fastest(
        self, req: dns.message.Message, upstreams: Sequence[Upstream]
    ) -> tuple[dns.message.Message, Upstream]:
        """Query all upstreams and return the reply with the fastest address.

        Only the A and AAAA records holding the fastest address are left in
        the answer.  Raises UpstreamsFailedError if no upstream answered.
        """
        replies = exchange_all(upstreams, req)
        host = req.question[0].name.to_text().lower()

        ips = list(dict.fromkeys(ip for r in replies for ip in _answer_ips(r.resp)))
        res = self.ping_all(host, ips)
        if res is not None:
            return self._prepare_reply(res, replies)

        log.debug("%s: no fastest IP found, using the first response", host)
        return replies[0].resp, replies[0].upstream

    def _prepare_reply(
        self, res: PingResult, replies: Sequence[ExchangeAllResult]
    ) -> tuple[dns.message.Message, Upstream]:
        ip = res.addr
        chosen = next((r for r in replies if ip in set(_answer_ips(r.resp))), None)
        if chosen is None:
            log.error("found no replies with IP %s, most likely this is a bug", ip)
            return replies[0].resp, replies[0].upstream

        resp = chosen.resp
        answer = []
        for rrset in resp.answer:
            if rrset.rdtype not in (dns.rdatatype.A, dns.rdatatype.AAAA):
                answer.append(rrset)
                continue
            kept = [rd for rd in rrset if ip_from_rr(rd) == ip]
            if kept:
                answer.append(dns.rrset.from_rdata_list(rrset.name, rrset.ttl, kept))
        resp.answer = answer
        return resp, chosen.upstream

    def ping_all(self, host: str, ips: Sequence[IPAddress]) -> PingResult | None:
        """Dial all ips and return the first success, or the best cached one.

        Returns None when nothing succeeded within the wait timeout.
        """
        if not ips:
            return None
        if len(ips) == 1:
            return PingResult(addr=ips[0], port=0, success=True)

        results: queue.Queue[PingResult] = queue.Queue()
        best: PingResult | None = None
        scheduled = 0

        for ip in ips:
            cached = self.cache.find(ip)
            if cached is None:
                for port in self.ping_ports:
                    threading.Thread(
                        target=self._ping_tcp,
                        args=(host, ip, port, results),
                        daemon=True,
                    ).start()
                scheduled += len(self.ping_ports)
                continue
            if cached.status != STATUS_OK:
                continue
            if best is None or cached.latency_msec < best.latency:
                best = PingResult(
                    addr=ip, port=0, latency=cached.latency_msec, success=True
                )

        has_cached = best is not None
        if scheduled == 0:
            if has_cached:
                log.debug("ping_all: %s: return cached response: %s", host, best.addr)
            else:
                log.debug("ping_all: %s: returning nothing", host)
            return best

        deadline = time.monotonic() + self.ping_wait_timeout
        for _ in range(scheduled):
            remaining = deadline - time.monotonic()
            try:
                if remaining <= 0:
                    raise queue.Empty
                res = results.get(timeout=remaining)
            except queue.Empty:
                if has_cached:
                    log.debug(
                        "ping_all: %s: pinging timed out, returning cached: %s",
                        host,
                        best.addr,
                    )
                else:
                    log.debug(
                        "ping_all: %s: ping checks timed out, returning nothing", host
                    )
                return best

            log.debug(
                "ping_all: %s: got result for %s:%d status %s",
                host,
                res.addr,
                res.port,
                res.success,
            )
            if not res.success:
                continue
            if not has_cached or best.latency >= res.latency:
                best = res
            return best

        return best

    def _ping_tcp(
        self, host: str, ip: IPAddress, port: int, results: queue.Queue[PingResult]
    ) -> None:
        log.debug("ping_tcp: %s: connecting to %s:%d", host, ip, port)
        start = time.monotonic()
        error: Exception | None = None
        try:
            self._dialer(str(ip), port, PING_TCP_TIMEOUT)
        except Exception as err:  # noqa: BLE001 - any dial failure counts
            error = err
        latency = int((time.monotonic() - start) * 1000)

        success = error is None
        results.put(PingResult(addr=ip, port=port, latency=latency, success=success))

        addr = _unmap(ip)
        if success:
            log.debug("ping_tcp: %s: elapsed %d ms on %s:%d", host, latency, ip, port)
            self.cache.add_successful(addr, latency)
        else:
            log.debug(
                "ping_tcp: %s: failed to connect to %s:%d, elapsed %d ms: %s",
                host,
                ip,
                port,
                latency,
                error,
            )
            self.cache.add_failure(addr)