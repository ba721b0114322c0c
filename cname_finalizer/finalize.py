# cname_finalizer/finalize.py
# Version: 1.0.0
# Finalize plugin: resolve dangling CNAME chains in responses

"""
Finalize Plugin

Runs the rest of the handler chain against a capturing writer. When the
captured response answers with nothing but CNAME records, the last target is
chased upstream until a terminal record shows up. Only a complete chain
replaces the answer section; every failure sends the response as it was
received.
"""

import logging
import time
from typing import List, Optional

from twisted.internet import defer
from twisted.names import dns

from cname_finalizer.chain import ChainComputationError, ChainState, find_last_target, has_terminal_record, is_cname
from cname_finalizer.constants import DEFAULT_MAX_LOOKUP, PLUGIN_NAME
from cname_finalizer.metrics import MetricsCollector
from cname_finalizer.plugin import (
    Handler,
    NoAnswerReceivedError,
    NonWriter,
    RequestContext,
    ResponseWriter,
    WriteError,
    next_or_failure,
)

logger = logging.getLogger(__name__)


class Finalize(Handler):
    """Handler that flattens responses ending in an unresolved CNAME"""

    def __init__(self, upstream, metrics: Optional[MetricsCollector] = None, max_lookup: int = DEFAULT_MAX_LOOKUP):
        self.upstream = upstream
        self.metrics = metrics or MetricsCollector(enabled=False)
        self.max_lookup = max_lookup
        self.next: Optional[Handler] = None

    def name(self) -> str:
        return PLUGIN_NAME

    @defer.inlineCallbacks
    def serve_dns(self, ctx: RequestContext, writer: ResponseWriter, request: dns.Message):
        """Serve a query through the rest of the chain and finalize the answer"""
        nw = NonWriter()
        yield next_or_failure(self.name(), self.next, ctx, nw, request)

        response = nw.msg
        if response is None:
            raise NoAnswerReceivedError(self.name(), "no answer received")

        if self._needs_finalizing(response, request):
            yield self.finalize(ctx, response, request)

        try:
            writer.write_message(response)
        except Exception as e:
            raise WriteError(self.name(), f"failed to write response: {e}") from e
        return dns.OK

    def _needs_finalizing(self, response: dns.Message, request: dns.Message) -> bool:
        query = _question(response, request)
        if query is None:
            logger.debug("Response carries no question, skipping")
            return False

        if query.type == dns.CNAME:
            logger.debug("Request is a CNAME type question, skipping")
            return False

        if not response.answers:
            logger.debug("No answer received, skipping")
            return False

        for rr in response.answers:
            if not is_cname(rr):
                logger.debug(f"Answer is already finalized: {rr}, skipping")
                return False

        return True

    @defer.inlineCallbacks
    def finalize(self, ctx: RequestContext, response: dns.Message, request: Optional[dns.Message] = None):
        """
        Resolve the CNAME chain of a response in place

        The answer section is replaced only when the chain ends in a terminal
        record; otherwise the response is left untouched.

        Returns:
            Deferred firing with True if the answer section was replaced
        """
        query = _question(response, request)
        qname = str(query.name)
        qtype = query.type

        logger.debug(f"Finalizing CNAME for request: {qname} ({dns.QUERY_TYPES.get(qtype, qtype)})")
        self.metrics.record_request(ctx.server)
        start = time.time()
        try:
            records = yield self._resolve_chain(ctx, response.answers, qname, qtype)
        finally:
            self.metrics.record_duration(ctx.server, start)

        if records is None:
            return False

        response.answers = records
        return True

    @defer.inlineCallbacks
    def _resolve_chain(self, ctx: RequestContext, answers: List[dns.RRHeader], qname: str, qtype: int):
        """Chase the chain upstream; fires with the full answer list, or None on abort"""
        try:
            target = find_last_target(answers, qname)
        except ChainComputationError as e:
            logger.error(f"Failed to find last target in CNAME chain: {e}")
            return None

        state = ChainState(answers, target)
        while True:
            logger.debug(f"Trying to resolve CNAME [{state.target}] via upstream")

            if state.budget_exhausted(self.max_lookup):
                self.metrics.record_max_lookup_reached(ctx.server)
                logger.error(f"Max lookup {self.max_lookup} reached for resolving CNAME records")
                return None

            if state.target in state.visited:
                self.metrics.record_circular_reference(ctx.server)
                logger.error(
                    f"Detected circular reference in CNAME chain. CNAME [{state.target}] already processed"
                )
                return None

            state.lookups += 1
            try:
                lookup_rrs = yield self.upstream.lookup(ctx, state.target, qtype)
            except Exception as e:
                self.metrics.record_upstream_error(ctx.server)
                logger.error(f"Failed to lookup CNAME [{state.target}] from upstream: [{e!r}]")
                return None

            if not lookup_rrs:
                self.metrics.record_dangling_cname(ctx.server)
                logger.error(f"Received no answer from upstream for [{state.target}]")
                return None

            state.records.extend(lookup_rrs)

            if has_terminal_record(lookup_rrs):
                logger.debug(f"Received finalized answer for [{state.target}] after {state.lookups} lookup(s)")
                return state.records

            try:
                state.advance(lookup_rrs)
            except ChainComputationError as e:
                logger.error(f"Failed to find last target in CNAME chain: {e}")
                return None


def _question(response: dns.Message, request: Optional[dns.Message]) -> Optional[dns.Query]:
    if response.queries:
        return response.queries[0]
    if request is not None and request.queries:
        return request.queries[0]
    return None
