"""Cache of TCP dialing results for the fastest-address algorithm."""

from __future__ import annotations

import ipaddress
import struct
import threading
import time
from dataclasses import dataclass

import cachetools

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address

# How long a dialing result is kept, in seconds.
FASTEST_ADDR_CACHE_TTL_SEC = 10 * 60

# Status values of a cache entry.
STATUS_OK = 0
STATUS_TIMED_OUT = 1

# Maximum total size of cached values, in bytes.
_CACHE_MAX_SIZE = 64 * 1024

# Expiration time (Unix seconds), status byte and latency in milliseconds.
_ENTRY = struct.Struct(">IBH")


@dataclass
class CacheEntry:
    """Outcome of dialing a single address."""

    status: int = STATUS_OK
    latency_msec: int = 0


def pack_cache_entry(entry: CacheEntry, ttl: int) -> bytes:
    """Serialise entry together with its expiration time ttl seconds from now."""
    expire = (int(time.time()) + ttl) & 0xFFFFFFFF
    return _ENTRY.pack(expire, entry.status & 0xFF, entry.latency_msec & 0xFFFF)


def unpack_cache_entry(data: bytes) -> CacheEntry | None:
    """Deserialise data, returning None if the entry has expired."""
    expire, status, latency = _ENTRY.unpack_from(data)
    if expire <= int(time.time()):
        return None
    return CacheEntry(status=status, latency_msec=latency)


class AddrCache:
    """Thread-safe LRU cache of dialing results keyed by IP address."""

    def __init__(self, max_size: int = _CACHE_MAX_SIZE) -> None:
        self._lock = threading.RLock()
        self._items: cachetools.LRUCache[bytes, bytes] = cachetools.LRUCache(
            maxsize=max_size, getsizeof=len
        )

    def find(self, ip: IPAddress) -> CacheEntry | None:
        """Return the unexpired entry for ip, if any."""
        with self._lock:
            data = self._items.get(ip.packed)
        if data is None:
            return None
        return unpack_cache_entry(data)

    def add(self, entry: CacheEntry, ip: IPAddress, ttl: int) -> None:
        """Store entry for ip for ttl seconds."""
        packed = pack_cache_entry(entry, ttl)
        with self._lock:
            self._items[ip.packed] = packed

    def add_failure(self, ip: IPAddress) -> None:
        """Record a failed attempt unless something is already cached for ip."""
        with self._lock:
            if self.find(ip) is None:
                self.add(
                    CacheEntry(status=STATUS_TIMED_OUT), ip, FASTEST_ADDR_CACHE_TTL_SEC
                )

    def add_successful(self, ip: IPAddress, latency: int) -> None:
        """Record a successful attempt if it beats what is cached for ip."""
        with self._lock:
            cached = self.find(ip)
            if (
                cached is None
                or cached.status != STATUS_OK
                or cached.latency_msec > latency
            ):
                self.add(
                    CacheEntry(latency_msec=latency), ip, FASTEST_ADDR_CACHE_TTL_SEC
                )