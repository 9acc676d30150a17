"""Forwarding of requests to upstreams according to the upstream mode."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Sequence

import dns.message
import dns.rdatatype

from dnsrelay.config import UpstreamMode
from dnsrelay.context import Upstream
from dnsrelay.fastip import FastestAddr, UpstreamsFailedError

log = logging.getLogger(__name__)

# Time after which an upstream request is considered failed, in seconds.
DEFAULT_TIMEOUT = 10.0


class AllUpstreamsFailedError(UpstreamsFailedError):
    """Every upstream tried failed to answer the request."""


def exchange_with_upstream(
    upstream: Upstream, req: dns.message.Message
) -> tuple[dns.message.Message, int]:
    """Exchange req with upstream, returning the reply and elapsed milliseconds."""
    start = time.monotonic()
    question = req.question[0].to_text() if req.question else ""
    try:
        reply = upstream.exchange(req)
    except Exception as err:
        elapsed = time.monotonic() - start
        log.debug(
            "upstream %s failed to exchange %s in %.3fs. Cause: %s",
            upstream.address(),
            question,
            elapsed,
            err,
        )
        raise
    elapsed = time.monotonic() - start
    log.debug(
        "upstream %s successfully finished exchange of %s. Elapsed %.3fs.",
        upstream.address(),
        question,
        elapsed,
    )
    return reply, int(elapsed * 1000)


def _exchange_parallel(
    upstreams: Sequence[Upstream], req: dns.message.Message
) -> tuple[dns.message.Message, Upstream]:
    if not upstreams:
        raise AllUpstreamsFailedError([])
    if len(upstreams) == 1:
        reply, _ = exchange_with_upstream(upstreams[0], req)
        return reply, upstreams[0]

    errors: list[BaseException] = []
    pool = ThreadPoolExecutor(max_workers=len(upstreams))
    try:
        futures = {pool.submit(exchange_with_upstream, u, req): u for u in upstreams}
        for fut in as_completed(futures):
            try:
                reply, _ = fut.result()
            except Exception as err:  # noqa: BLE001 - errors are collected
                errors.append(err)
                continue
            return reply, futures[fut]
    finally:
        pool.shutdown(wait=False, cancel_futures=True)
    raise AllUpstreamsFailedError(errors)


class UpstreamExchanger:
    """Sends requests to upstreams, tracking their round-trip times."""

    def __init__(
        self,
        upstream_mode: UpstreamMode = UpstreamMode.LOAD_BALANCE,
        fastest_addr: FastestAddr | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.upstream_mode = upstream_mode
        self.fastest_addr = fastest_addr if fastest_addr is not None else FastestAddr()
        self.timeout = timeout
        self._rtt_lock = threading.Lock()
        self._rtt_stats: dict[str, int] = {}

    def exchange(
        self, req: dns.message.Message, upstreams: Sequence[Upstream]
    ) -> tuple[dns.message.Message, Upstream]:
        """Send req to upstreams and return the reply and the upstream used."""
        qtype = req.question[0].rdtype
        if self.upstream_mode == UpstreamMode.FASTEST_ADDR and qtype in (
            dns.rdatatype.A,
            dns.rdatatype.AAAA,
        ):
            return self.fastest_addr.exchange_fastest(req, upstreams)

        if self.upstream_mode == UpstreamMode.PARALLEL:
            return _exchange_parallel(upstreams, req)

        if len(upstreams) == 1:
            reply, _ = exchange_with_upstream(upstreams[0], req)
            return reply, upstreams[0]

        errors: list[BaseException] = []
        for ups in self.sorted_upstreams(upstreams):
            try:
                reply, elapsed = exchange_with_upstream(ups, req)
            except Exception as err:  # noqa: BLE001 - try the next upstream
                errors.append(err)
                self.update_rtt(ups.address(), int(self.timeout * 1000))
                continue
            self.update_rtt(ups.address(), elapsed)
            return reply, ups

        raise AllUpstreamsFailedError(errors)

    def sorted_upstreams(self, upstreams: Sequence[Upstream]) -> list[Upstream]:
        """Return upstreams ordered from the fastest to the slowest."""
        with self._rtt_lock:
            stats = dict(self._rtt_stats)
        return sorted(upstreams, key=lambda u: stats.get(u.address(), 0))

    def update_rtt(self, address: str, rtt: int) -> None:
        """Fold rtt milliseconds into the running estimate for address."""
        with self._rtt_lock:
            self._rtt_stats[address] = (self._rtt_stats.get(address, 0) + rtt) // 2