# cname_finalizer/plugin.py
# Version: 1.0.0
# Handler chain primitives shared by the finalize and forward stages

"""
Handler Chain

A query is served by a chain of handlers. Each handler gets the request
context, a response writer and the query message, and returns a Deferred
firing with the response code. Handlers that post-process a response hand a
NonWriter to the next handler so the message is captured instead of sent.
"""

import logging
from typing import List, Optional

from twisted.internet import defer
from twisted.names import dns

from cname_finalizer.constants import DEFAULT_SERVER_LABEL

logger = logging.getLogger(__name__)


class PluginError(Exception):
    """Error that fails the request with the given response code"""

    rcode = dns.ESERVER

    def __init__(self, plugin_name: str, message: str):
        super().__init__(f"{plugin_name}: {message}")
        self.plugin_name = plugin_name


class NoNextHandlerError(PluginError):
    """The handler chain ended before a response was produced"""

    pass


class NoAnswerReceivedError(PluginError):
    """The rest of the chain returned without writing a response"""

    pass


class WriteError(PluginError):
    """Sending the final response to the client failed"""

    pass


class RequestContext:
    """
    Per-request context passed along the handler chain

    Carries the server identity used as metric label, an optional deadline on
    the given clock, and cancellation of the lookups issued for the request.
    """

    def __init__(self, server: str = DEFAULT_SERVER_LABEL, deadline: Optional[float] = None, clock=None):
        if clock is None:
            from twisted.internet import reactor as clock
        self.server = server
        self.deadline = deadline
        self.clock = clock
        self.cancelled = False
        self._pending: List[defer.Deferred] = []

    @classmethod
    def with_timeout(cls, server: str, timeout: float, clock=None) -> "RequestContext":
        """Create a context whose deadline is timeout seconds from now"""
        if clock is None:
            from twisted.internet import reactor as clock
        return cls(server=server, deadline=clock.seconds() + timeout, clock=clock)

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, None if there is none"""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - self.clock.seconds())

    def expired(self) -> bool:
        if self.cancelled:
            return True
        return self.deadline is not None and self.clock.seconds() >= self.deadline

    def track(self, d: defer.Deferred) -> defer.Deferred:
        """Remember an in-flight Deferred so cancel() can reach it"""
        self._pending.append(d)

        def _untrack(result):
            if d in self._pending:
                self._pending.remove(d)
            return result

        d.addBoth(_untrack)
        return d

    def cancel(self):
        """Cancel the request and every lookup still in flight for it"""
        self.cancelled = True
        for d in list(self._pending):
            d.cancel()


class ResponseWriter:
    """Destination of a handler's response"""

    def write_message(self, message: dns.Message):
        raise NotImplementedError


class NonWriter(ResponseWriter):
    """Writer that keeps the message instead of sending it"""

    def __init__(self):
        self.msg: Optional[dns.Message] = None

    def write_message(self, message: dns.Message):
        self.msg = message


class Handler:
    """Base class for handlers in the chain"""

    next: Optional["Handler"] = None

    def name(self) -> str:
        raise NotImplementedError

    def serve_dns(self, ctx: RequestContext, writer: ResponseWriter, request: dns.Message) -> defer.Deferred:
        raise NotImplementedError


def next_or_failure(
    name: str, next_handler: Optional[Handler], ctx: RequestContext, writer: ResponseWriter, request: dns.Message
) -> defer.Deferred:
    """Run the next handler, failing with SERVFAIL when the chain has ended"""
    if next_handler is None:
        return defer.fail(NoNextHandlerError(name, "no next plugin found"))
    return defer.maybeDeferred(next_handler.serve_dns, ctx, writer, request)


def build_chain(handlers: List[Handler]) -> Handler:
    """Link handlers in order and return the first one"""
    if not handlers:
        raise ValueError("handler chain needs at least one handler")
    for current, following in zip(handlers, handlers[1:]):
        current.next = following
    logger.debug(f"Handler chain: {' -> '.join(h.name() for h in handlers)}")
    return handlers[0]
