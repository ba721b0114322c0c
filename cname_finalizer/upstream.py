# cname_finalizer/upstream.py
# Version: 1.0.0
# Upstream DNS lookups bound to a request context

"""
Upstream Lookup

Thin wrapper around twisted.names.client.Resolver. Every call honours the
deadline and cancellation of the RequestContext it is issued for: a lookup
started after the deadline fails immediately, one still running when the
deadline passes is cancelled.
"""

import logging
from typing import List, Optional, Tuple

from twisted.internet import defer
from twisted.names import client, dns, error

from cname_finalizer.constants import DNS_QUERY_TIMEOUT
from cname_finalizer.plugin import RequestContext

logger = logging.getLogger(__name__)


class DeadlineExceededError(Exception):
    """The request deadline passed or the request was cancelled"""

    pass


class Upstream:
    """Queries the configured upstream servers on behalf of a request"""

    def __init__(
        self,
        upstream_servers: List[Tuple[str, int]],
        timeout: float = DNS_QUERY_TIMEOUT,
        resolver=None,
        reactor=None,
    ):
        self.upstream_servers = upstream_servers
        self.timeout = timeout
        if resolver is None:
            resolver = client.Resolver(servers=upstream_servers, timeout=(timeout,), reactor=reactor)
        self.resolver = resolver

    def query(self, ctx: RequestContext, query: dns.Query) -> defer.Deferred:
        """
        Send a query upstream

        Returns:
            Deferred firing with (answers, authority, additional)
        """
        if ctx.expired():
            return defer.fail(DeadlineExceededError(f"deadline exceeded before querying {query.name}"))

        d = self.resolver.query(query)
        remaining: Optional[float] = ctx.remaining()
        if remaining is not None:
            d.addTimeout(remaining, ctx.clock)
        return ctx.track(d)

    def lookup(self, ctx: RequestContext, name: str, qtype: int) -> defer.Deferred:
        """
        Look up (name, qtype) upstream

        An NXDOMAIN reply fires with an empty list, like an empty NOERROR one.

        Returns:
            Deferred firing with the list of answer records
        """
        logger.debug(f"Upstream lookup: {name} ({dns.QUERY_TYPES.get(qtype, qtype)})")
        d = self.query(ctx, dns.Query(name, qtype, dns.IN))
        d.addCallback(lambda result: list(result[0]))
        d.addErrback(_no_such_name)
        return d


def _no_such_name(failure):
    failure.trap(error.DNSNameError)
    return []
