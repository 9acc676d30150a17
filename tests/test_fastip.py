import ipaddress
import socket
import threading
import time

import dns.message
import dns.rdatatype
import dns.rrset
import pytest

from dnsrelay.context import Upstream
from dnsrelay.fastip import (
    FastestAddr,
    UpstreamsFailedError,
    exchange_all,
    ip_from_rr,
)

LOCALHOST = ipaddress.ip_address("127.0.0.1")


class ErrUpstream(Upstream):
    def __init__(self, err):
        self.err = err

    def exchange(self, req):
        raise self.err

    def address(self):
        return "err.upstream"


class AUpstream(Upstream):
    def __init__(self, *ips, cname=None):
        self.ips = list(ips)
        self.cname = cname

    def exchange(self, req):
        resp = dns.message.make_response(req)
        name = req.question[0].name
        if self.cname:
            resp.answer.append(dns.rrset.from_text(name, 60, "IN", "CNAME", self.cname))
        resp.answer.append(dns.rrset.from_text_list(name, 60, "IN", "A", self.ips))
        return resp

    def address(self):
        return ""


def a_request():
    return dns.message.make_query("test.", "A")


def answer_ips(msg):
    return [rd.address for rrset in msg.answer if rrset.rdtype == dns.rdatatype.A for rd in rrset]


@pytest.fixture
def listener_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        sock.listen(64)
        yield sock.getsockname()[1]


def free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def wait_for_status(f, ip, status, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        ent = f.cache.find(ip)
        if ent is not None and ent.status == status:
            return True
        time.sleep(0.05)
    return False


def test_ip_from_rr():
    a = dns.rrset.from_text("x.", 60, "IN", "A", "1.2.3.4")[0]
    aaaa = dns.rrset.from_text("x.", 60, "IN", "AAAA", "::1")[0]
    cname = dns.rrset.from_text("x.", 60, "IN", "CNAME", "y.")[0]
    assert ip_from_rr(a) == ipaddress.IPv4Address("1.2.3.4")
    assert ip_from_rr(aaaa) == ipaddress.IPv6Address("::1")
    assert ip_from_rr(cname) is None


def test_exchange_all_skips_failures():
    good = AUpstream("1.2.3.4")
    bad = ErrUpstream(OSError("boom"))
    results = exchange_all([bad, good], a_request())
    assert len(results) == 1
    assert results[0].upstream is good
    assert answer_ips(results[0].resp) == ["1.2.3.4"]


def test_exchange_fastest_error():
    desired = OSError("this is expected")
    f = FastestAddr()
    with pytest.raises(UpstreamsFailedError) as info:
        f.exchange_fastest(a_request(), [ErrUpstream(desired)])
    assert desired in info.value.errors


def test_exchange_fastest_one_dead(listener_port):
    f = FastestAddr(ping_ports=[listener_port])
    alive = AUpstream("127.0.0.1")
    dead = AUpstream("192.0.2.1")

    resp, ups = f.exchange_fastest(a_request(), [dead, alive])
    assert ups is alive
    assert answer_ips(resp) == ["127.0.0.1"]


def test_exchange_fastest_filters_answer(listener_port):
    f = FastestAddr(ping_ports=[listener_port])
    ups = AUpstream("192.0.2.1", "127.0.0.1", cname="other.")

    resp, got = f.exchange_fastest(a_request(), [ups])
    assert got is ups
    assert answer_ips(resp) == ["127.0.0.1"]
    cnames = [r for r in resp.answer if r.rdtype == dns.rdatatype.CNAME]
    assert len(cnames) == 1


def test_exchange_fastest_all_dead():
    f = FastestAddr(ping_ports=[free_port()])
    ups = AUpstream("127.0.0.1", "127.0.0.2", "127.0.0.3")

    resp, got = f.exchange_fastest(a_request(), [ups])
    assert got is ups
    assert answer_ips(resp)[0] == "127.0.0.1"


def test_ping_all_timeout_isolated():
    release = threading.Event()

    def blocking(host, port, timeout):
        release.wait(5)

    f = FastestAddr(ping_wait_timeout=0.2, dialer=blocking)
    try:
        assert f.ping_all("", [LOCALHOST, LOCALHOST]) is None
    finally:
        release.set()


def test_ping_all_timeout_cached():
    release = threading.Event()

    def blocking(host, port, timeout):
        release.wait(5)

    f = FastestAddr(ping_wait_timeout=0.2, dialer=blocking)
    ip2 = ipaddress.ip_address("127.0.0.2")
    f.cache.add_successful(LOCALHOST, 42)
    try:
        res = f.ping_all("", [LOCALHOST, ip2])
    finally:
        release.set()
    assert res is not None
    assert res.success
    assert res.latency == 42


def test_ping_all_cached_failed():
    f = FastestAddr()
    f.cache.add_failure(LOCALHOST)
    assert f.ping_all("", [LOCALHOST, LOCALHOST]) is None


def test_ping_all_cached_successful():
    f = FastestAddr()
    f.cache.add_successful(LOCALHOST, 1)
    res = f.ping_all("", [LOCALHOST, LOCALHOST])
    assert res is not None
    assert res.success
    assert res.latency == 1


def test_ping_all_not_cached(listener_port):
    calls = []
    lock = threading.Lock()

    def recording(host, port, timeout):
        with lock:
            calls.append((host, port))
        with socket.create_connection((host, port), timeout=timeout):
            pass

    f = FastestAddr(ping_ports=[listener_port], dialer=recording)
    res = f.ping_all("", [LOCALHOST, LOCALHOST])
    assert res is not None
    assert res.success
    assert wait_for_status(f, LOCALHOST, 0)
    deadline = time.monotonic() + 5
    while len(calls) < 2 and time.monotonic() < deadline:
        time.sleep(0.05)
    assert calls == [("127.0.0.1", listener_port)] * 2


def test_ping_all_single():
    f = FastestAddr()
    res = f.ping_all("", [LOCALHOST])
    assert res is not None
    assert res.success
    assert res.addr == LOCALHOST
    assert res.port == 0
    assert f.cache.find(res.addr) is None


def test_ping_all_fastest():
    fast_port, slow_port = 1053, 2053
    release = threading.Event()
    seen = []

    def dialer(host, port, timeout):
        seen.append(port)
        if port != fast_port:
            release.wait(5)

    f = FastestAddr(ping_ports=[fast_port, slow_port], dialer=dialer)
    try:
        res = f.ping_all("", [LOCALHOST, LOCALHOST])
    finally:
        release.set()
    assert res is not None
    assert res.success
    assert res.addr == LOCALHOST
    assert res.port == fast_port
    assert set(seen) <= {fast_port, slow_port}
    assert wait_for_status(f, LOCALHOST, 0)


def test_ping_all_zero():
    assert FastestAddr().ping_all("", []) is None


def test_ping_all_fail():
    f = FastestAddr(ping_ports=[free_port()])
    assert f.ping_all("test", [LOCALHOST, LOCALHOST]) is None
    assert wait_for_status(f, LOCALHOST, 1)