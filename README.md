# dnsrelay

`dnsrelay` is a library of building blocks for a forwarding DNS proxy. It
works with `dns.message.Message` objects from dnspython and is used by
importing it; it has no command of its own.

## Installation

```
pip install .
```

To run the test suite, install the test extra and run pytest:

```
pip install ".[test]"
pytest
```

## Modules

- `dnsrelay.context`: `DNSContext` holds one request, its response and the
  details of its processing; `calc_flags_and_size()` reads the AD bit, the DO
  bit and the EDNS UDP size from the request. `Proto` and `DoQVersion` are the
  protocol enumerations. `Upstream` is the abstract interface an upstream
  resolver implements: `exchange(req)`, `address()` and `close()`.
- `dnsrelay.config`: `Config` and `UpstreamConfig` hold the proxy settings and
  `UpstreamMode` selects load-balance, parallel or fastest-address use of the
  upstreams. `validate_config(config, started)` and
  `validate_listen_addrs(config)` raise `ConfigError` when a configuration is
  not usable; `has_listen_addrs(config)` tells whether any listener is set.
- `dnsrelay.msgcache`: `MessageCache` is a thread-safe LRU cache of responses,
  with an optional second store keyed by client subnet (`get_with_subnet`,
  `set_with_subnet`, longest-prefix lookup) and an optional optimistic mode
  that serves expired entries with a TTL of 10 seconds. `cache_ttl(msg)`
  decides how long a response may be cached, following RFC 2308 for negative
  answers and capping SERVFAIL at 30 seconds. Also provided:
  `calculate_ttl`, `respect_ttl_overrides`, `msg_to_key`,
  `msg_to_key_with_subnet`, `is_dnssec`, `filter_rr_slice` and `filter_msg`.
- `dnsrelay.fastip_cache`: `AddrCache` keeps TCP dialing results per IP
  address for ten minutes; `pack_cache_entry` and `unpack_cache_entry`
  serialise a `CacheEntry`.
- `dnsrelay.fastip`: `FastestAddr.exchange_fastest(req, upstreams)` queries
  every upstream, TCP-dials each returned address on ports 80 and 443 (or the
  ports given) and keeps only the fastest address in the answer.
  `exchange_all` sends a request to all upstreams concurrently and raises
  `UpstreamsFailedError` if none answers.
- `dnsrelay.exchange`: `UpstreamExchanger.exchange(req, upstreams)` forwards a
  request according to its `UpstreamMode`. In load-balance mode it tries the
  upstreams in order of measured round-trip time and raises
  `AllUpstreamsFailedError` if all of them fail.
- `dnsrelay.optimistic`: `OptimisticResolver.resolve_once(dctx, key)` asks a
  `CachingResolver` to resolve and cache a request again, running at most one
  resolution per key at a time.
- `dnsrelay.dns64`: `setup_dns64(use_dns64, prefixes)` validates NAT64
  prefixes (IPv6, at most /96), falling back to `64:ff9b::/96`. `DNS64`
  filters AAAA answers inside the prefixes and synthesises AAAA records from
  A records as RFC 6147 describes; `perform(...)` runs the whole exchange
  through a caller-supplied exchange function.
- `dnsrelay.helpers`: `gen_empty_message`, `gen_empty_no_error` and `gen_soa`
  build answerless replies with a synthetic SOA record;
  `check_disabled_aaaa_request` answers AAAA requests that way when IPv6 is
  disabled; `ecs_from_msg` and `set_ecs` read and add the EDNS Client Subnet
  option; `is_bogus_nxdomain` reports answers containing addresses from given
  networks.
- `dnsrelay.errors`: `is_epipe(err)` reports whether an exception, or one it
  was raised from, is a broken pipe.

## Example

```python
import dns.message
import dns.rrset

from dnsrelay.msgcache import MessageCache

cache = MessageCache(size=4096)

req = dns.message.make_query("example.com.", "A")
resp = dns.message.make_response(req)
resp.answer.append(dns.rrset.from_text("example.com.", 300, "IN", "A", "192.0.2.1"))

cache.set(resp, upstream=None)
item, expired, key = cache.get(req)
```

## What it does not do

The package does not listen on any socket: the listener addresses in `Config`
are only stored and validated, and there is no UDP, TCP, TLS, HTTPS, QUIC or
DNSCrypt server. It ships no concrete `Upstream` implementation, so sending
queries over the network is left to the caller's own `Upstream` subclasses.
It has no command-line program, no configuration file loading and no rate
limiting.