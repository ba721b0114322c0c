# cname_finalizer/forward.py
# Version: 1.0.0
# Forward plugin: answer the client question from the upstream servers

"""
Forward Plugin

Last handler of the default chain. Sends the client question upstream and
writes the upstream answer, untouched, to the writer it was given.
"""

import logging

from twisted.internet import defer
from twisted.names import dns, error

from cname_finalizer.plugin import Handler, PluginError, RequestContext, ResponseWriter

logger = logging.getLogger(__name__)

PLUGIN_NAME = "forward"


class Forward(Handler):
    """Handler that forwards the query to the upstream servers"""

    def __init__(self, upstream):
        self.upstream = upstream
        self.next = None

    def name(self) -> str:
        return PLUGIN_NAME

    @defer.inlineCallbacks
    def serve_dns(self, ctx: RequestContext, writer: ResponseWriter, request: dns.Message):
        if not request.queries:
            raise PluginError(self.name(), "request has no question")

        query = request.queries[0]
        response = _response_for(request)
        try:
            answers, authority, additional = yield self.upstream.query(ctx, query)
        except error.DNSNameError as e:
            logger.debug(f"Upstream reports NXDOMAIN for {query.name}")
            response.rCode = dns.ENAME
            response.authority = list(_authority_from(e))
        except error.DNSQueryRefusedError:
            logger.debug(f"Upstream refused query for {query.name}")
            response.rCode = dns.EREFUSED
        else:
            response.answers = list(answers)
            response.authority = list(authority)
            response.additional = list(additional)
            self._log_upstream_response(query, response)

        writer.write_message(response)
        return response.rCode

    def _log_upstream_response(self, query: dns.Query, response: dns.Message):
        """Log details of upstream response"""
        logger.debug(f"Upstream response for {query.name}: {len(response.answers)} answer(s)")
        for i, rr in enumerate(response.answers):
            if rr.type == dns.CNAME:
                logger.debug(f"    [{i}] CNAME: {rr.name} -> {rr.payload.name} (TTL: {rr.ttl})")
            else:
                logger.debug(f"    [{i}] {dns.QUERY_TYPES.get(rr.type, rr.type)}: {rr.name} (TTL: {rr.ttl})")


def _response_for(request: dns.Message) -> dns.Message:
    """Empty response mirroring the header fields of the request"""
    response = dns.Message(
        id=request.id,
        answer=1,
        opCode=request.opCode,
        recDes=request.recDes,
        recAv=1,
    )
    response.queries = list(request.queries)
    return response


def _authority_from(exc: error.DomainError):
    """Authority records carried by a twisted.names error, if any"""
    message = exc.args[0] if exc.args else None
    return getattr(message, "authority", [])
