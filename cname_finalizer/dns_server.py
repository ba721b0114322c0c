# cname_finalizer/dns_server.py
# Version: 1.0.0
# Glue between twisted.names serving and the handler chain

"""
DNS Server Glue

FinalizerServerFactory is a twisted.names DNSServerFactory whose query
handling runs the handler chain. The wire protocols are Twisted's own
DNSDatagramProtocol and DNSProtocol; this module only supplies the writer
that sends the chain's final response back through them.
"""

import logging
import time
from typing import Optional

from twisted.internet import defer
from twisted.names import dns, server

from cname_finalizer.constants import DEFAULT_SERVER_LABEL, REQUEST_TIMEOUT
from cname_finalizer.plugin import Handler, PluginError, RequestContext, ResponseWriter

logger = logging.getLogger(__name__)


class ProtocolWriter(ResponseWriter):
    """Writes a response to the client the request came from"""

    def __init__(self, factory: server.DNSServerFactory, protocol, address, request: dns.Message):
        self.factory = factory
        self.protocol = protocol
        self.address = address
        self.request = request
        self.written = False

    def write_message(self, message: dns.Message):
        message.id = self.request.id
        message.answer = 1
        message.opCode = self.request.opCode
        message.recDes = self.request.recDes
        message.recAv = 1
        if not message.queries:
            message.queries = list(self.request.queries)
        # DNSServerFactory.sendReply logs the processing time from this
        message.timeReceived = getattr(self.request, "timeReceived", time.time())

        self.factory.sendReply(self.protocol, message, self.address)
        self.written = True
        logger.debug(f"Sent response to {self.address or 'tcp peer'} ({len(message.answers)} answer(s))")


class FinalizerServerFactory(server.DNSServerFactory):
    """DNSServerFactory that answers queries through a handler chain"""

    def __init__(
        self,
        handler: Handler,
        server_label: str = DEFAULT_SERVER_LABEL,
        request_timeout: float = REQUEST_TIMEOUT,
        clock=None,
        verbose: int = 0,
    ):
        server.DNSServerFactory.__init__(self, verbose=verbose)
        self.handler = handler
        self.server_label = server_label
        self.request_timeout = request_timeout
        if clock is None:
            from twisted.internet import reactor as clock
        self.clock = clock

    def handleQuery(self, message: dns.Message, protocol, address):
        """Run the handler chain for one query; fires with the response code"""
        query = message.queries[0] if message.queries else None
        if query is not None:
            logger.debug(f"Query from {address or 'tcp peer'}: {query.name} ({dns.QUERY_TYPES.get(query.type, query.type)})")

        ctx = RequestContext.with_timeout(self.server_label, self.request_timeout, clock=self.clock)
        writer = ProtocolWriter(self, protocol, address, message)

        d = defer.maybeDeferred(self.handler.serve_dns, ctx, writer, message)
        d.addErrback(self._handle_error, writer, message)
        return d

    def _handle_error(self, failure, writer: ProtocolWriter, message: dns.Message) -> Optional[int]:
        """Answer with the failure's response code unless a response already went out"""
        if failure.check(PluginError):
            rcode = failure.value.rcode
            logger.error(f"Query failed: {failure.value}")
        else:
            rcode = dns.ESERVER
            logger.error(f"Query failed: {failure.getErrorMessage()}")

        if writer.written:
            return rcode

        error_response = dns.Message(rCode=rcode)
        try:
            writer.write_message(error_response)
        except Exception as e:
            logger.error(f"Failed to send error response to {writer.address or 'tcp peer'}: {e}")
        return rcode
