"""Background refresh of expired cached responses."""

from __future__ import annotations

import abc
import logging
import threading

from dnsrelay.context import DNSContext

log = logging.getLogger(__name__)


class CachingResolver(abc.ABC):
    """A resolver that can also store its responses in a cache."""

    @abc.abstractmethod
    def reply_from_upstream(self, dctx: DNSContext | None) -> bool:
        """Resolve dctx's request; return True if the response may be cached."""

    @abc.abstractmethod
    def cache_resp(self, dctx: DNSContext | None) -> None:
        """Store the response from dctx in the cache."""


class OptimisticResolver:
    """Re-resolves expired cached requests, one at a time per key."""

    def __init__(self, resolver: CachingResolver) -> None:
        self._resolver = resolver
        self._lock = threading.Lock()
        self._pending: set[str] = set()

    def resolve_once(self, dctx: DNSContext | None, key: bytes) -> None:
        """Resolve and cache dctx unless a request with key is in progress.

        Meant to be run in its own thread; dctx must not be shared.
        """
        key_hex = key.hex()
        with self._lock:
            if key_hex in self._pending:
                return
            self._pending.add(key_hex)

        try:
            try:
                ok = self._resolver.reply_from_upstream(dctx)
            except Exception as err:  # noqa: BLE001 - failures are only logged
                log.debug("resolving request for optimistic cache: %s", err)
                ok = False

            if ok:
                self._resolver.cache_resp(dctx)
        except Exception:  # noqa: BLE001 - never let a background task crash
            log.exception("optimistic resolver")
        finally:
            with self._lock:
                self._pending.discard(key_hex)