import logging
import threading

from dnsrelay.optimistic import CachingResolver, OptimisticResolver


class StubResolver(CachingResolver):
    def __init__(self, on_reply, on_cache):
        self._on_reply = on_reply
        self._on_cache = on_cache

    def reply_from_upstream(self, dctx):
        return self._on_reply(dctx)

    def cache_resp(self, dctx):
        self._on_cache(dctx)


def test_resolve_once_deduplicates():
    entered = threading.Event()
    release = threading.Event()
    resolved = []
    cached = []
    primary_ctx = object()
    secondary_ctx = object()

    s = OptimisticResolver(
        StubResolver(
            lambda d: resolved.append(d) or True,
            lambda d: (cached.append(d), entered.set(), release.wait(5)),
        )
    )
    key = bytes([1, 2, 3])

    primary = threading.Thread(target=s.resolve_once, args=(primary_ctx, key))
    primary.start()
    assert entered.wait(5)

    secondary = [
        threading.Thread(target=s.resolve_once, args=(secondary_ctx, key))
        for _ in range(10)
    ]
    for t in secondary:
        t.start()
    for t in secondary:
        t.join(5)

    release.set()
    primary.join(5)

    assert resolved == [primary_ctx]
    assert cached == [primary_ctx]


def test_resolve_once_releases_key():
    resolved = []
    first, second = object(), object()

    s = OptimisticResolver(
        StubResolver(lambda d: resolved.append(d) or False, lambda _: None)
    )
    key = bytes([1, 2, 3])
    s.resolve_once(first, key)
    s.resolve_once(second, key)
    assert resolved == [first, second]


def test_resolve_once_logs_error(caplog):
    caplog.set_level(logging.DEBUG, logger="dnsrelay.optimistic")

    def on_reply(_):
        raise RuntimeError("sample resolving error")

    cached = []
    s = OptimisticResolver(StubResolver(on_reply, lambda d: cached.append(d)))
    s.resolve_once(None, bytes([1, 2, 3]))

    assert "sample resolving error" in caplog.text
    assert cached == []


def test_resolve_once_not_ok():
    cached = []
    s = OptimisticResolver(StubResolver(lambda _: False, lambda d: cached.append(d)))
    s.resolve_once(None, bytes([1, 2, 3]))
    assert cached == []


def test_resolve_once_ok_caches_context():
    cached = []
    marker = object()
    s = OptimisticResolver(StubResolver(lambda _: True, lambda d: cached.append(d)))
    s.resolve_once(marker, bytes([4, 5]))
    assert cached == [marker]