#!/usr/bin/env python3
"""
Test the finalize plugin: CNAME chain resolution, skips and failure handling
"""

from unittest.mock import Mock

import pytest
from prometheus_client import CollectorRegistry
from twisted.internet import defer, task
from twisted.names import client, dns, error
from twisted.trial.unittest import SynchronousTestCase

from cname_finalizer.finalize import Finalize
from cname_finalizer.metrics import MetricsCollector
from cname_finalizer.plugin import (
    Handler,
    NoAnswerReceivedError,
    NoNextHandlerError,
    RequestContext,
    ResponseWriter,
    WriteError,
)
from cname_finalizer.upstream import Upstream

SERVER = "dns://127.0.0.1:53"
PREFIX = "cname_finalizer_finalize_cname"


def cname(name, target, ttl=300):
    return dns.RRHeader(name=name, type=dns.CNAME, cls=dns.IN, ttl=ttl, payload=dns.Record_CNAME(target, ttl))


def a_record(name, address, ttl=300):
    return dns.RRHeader(name=name, type=dns.A, cls=dns.IN, ttl=ttl, payload=dns.Record_A(address, ttl))


def make_request(name="a.example.com", qtype=dns.A):
    request = dns.Message(id=1234, recDes=1)
    request.queries = [dns.Query(name, qtype, dns.IN)]
    return request


def make_response(request, answers):
    response = dns.Message(id=request.id, answer=1)
    response.queries = list(request.queries)
    response.answers = list(answers)
    return response


class StubUpstream:
    """Upstream returning canned answers per name"""

    def __init__(self, answers=None):
        self.answers = answers or {}
        self.calls = []

    def lookup(self, ctx, name, qtype):
        self.calls.append((name, qtype))
        result = self.answers.get(name, [])
        if isinstance(result, Exception):
            return defer.fail(result)
        return defer.succeed(list(result))


class NXDomainResolver(client.Resolver):
    """Resolver whose server answers every query with NXDOMAIN"""

    def queryUDP(self, queries, timeout=None):
        message = dns.Message(answer=1, rCode=dns.ENAME)
        message.queries = list(queries)
        return defer.succeed(message)


class StubHandler(Handler):
    """Next handler writing a fixed response, or nothing"""

    def __init__(self, response=None):
        self.response = response

    def name(self):
        return "stub"

    def serve_dns(self, ctx, writer, request):
        if self.response is not None:
            writer.write_message(self.response)
        return defer.succeed(dns.OK)


class RecordingWriter(ResponseWriter):
    def __init__(self):
        self.messages = []

    def write_message(self, message):
        self.messages.append(message)


class FailingWriter(ResponseWriter):
    def write_message(self, message):
        raise OSError("connection reset")


class FinalizeTestCase(SynchronousTestCase):
    def setUp(self):
        self.registry = CollectorRegistry()
        self.metrics = MetricsCollector(registry=self.registry)
        self.ctx = RequestContext(server=SERVER, clock=task.Clock())
        self.writer = RecordingWriter()

    def count(self, name):
        value = self.registry.get_sample_value(f"{PREFIX}_{name}_total", {"server": SERVER})
        return value or 0.0

    def serve(self, answers, upstream, max_lookup=10, request=None):
        request = request or make_request()
        response = make_response(request, answers)
        plugin = Finalize(upstream, metrics=self.metrics, max_lookup=max_lookup)
        plugin.next = StubHandler(response)
        rcode = self.successResultOf(plugin.serve_dns(self.ctx, self.writer, request))
        self.assertEqual(rcode, dns.OK)
        self.assertEqual(len(self.writer.messages), 1)
        return self.writer.messages[0]


class TestChainResolution(FinalizeTestCase):
    """Test resolving dangling CNAME chains through upstream"""

    def test_single_hop(self):
        original = cname("a.example.com", "b.example.com")
        terminal = a_record("b.example.com", "1.2.3.4")
        upstream = StubUpstream({"b.example.com": [terminal]})

        written = self.serve([original], upstream)

        self.assertEqual(written.answers, [original, terminal])
        self.assertEqual(upstream.calls, [("b.example.com", dns.A)])
        self.assertEqual(self.count("request_count"), 1)

    def test_two_hops(self):
        original = cname("a.example.com", "b.example.com")
        intermediate = cname("b.example.com", "c.example.com")
        terminal = a_record("c.example.com", "5.6.7.8")
        upstream = StubUpstream({"b.example.com": [intermediate], "c.example.com": [terminal]})

        written = self.serve([original], upstream, max_lookup=10)

        self.assertEqual(written.answers, [original, intermediate, terminal])
        self.assertEqual(upstream.calls, [("b.example.com", dns.A), ("c.example.com", dns.A)])

    def test_chain_already_partially_resolved(self):
        """The lookup starts from the last target of the received chain"""
        answers = [cname("a.example.com", "b.example.com"), cname("b.example.com", "c.example.com")]
        terminal = a_record("c.example.com", "5.6.7.8")
        upstream = StubUpstream({"c.example.com": [terminal]})

        written = self.serve(answers, upstream)

        self.assertEqual(written.answers, answers + [terminal])
        self.assertEqual(upstream.calls, [("c.example.com", dns.A)])

    def test_lookup_uses_question_type(self):
        original = cname("a.example.com", "b.example.com")
        terminal = dns.RRHeader(
            name="b.example.com", type=dns.AAAA, cls=dns.IN, ttl=300, payload=dns.Record_AAAA("2001:db8::1")
        )
        upstream = StubUpstream({"b.example.com": [terminal]})

        written = self.serve([original], upstream, request=make_request(qtype=dns.AAAA))

        self.assertEqual(upstream.calls, [("b.example.com", dns.AAAA)])
        self.assertEqual(written.answers, [original, terminal])

    def test_upstream_answer_with_chain_and_terminal(self):
        original = cname("a.example.com", "b.example.com")
        upstream_answer = [cname("b.example.com", "c.example.com"), a_record("c.example.com", "5.6.7.8")]
        upstream = StubUpstream({"b.example.com": upstream_answer})

        written = self.serve([original], upstream)

        self.assertEqual(written.answers, [original] + upstream_answer)
        self.assertEqual(len(upstream.calls), 1)

    def test_duration_observed(self):
        upstream = StubUpstream({"b.example.com": [a_record("b.example.com", "1.2.3.4")]})
        self.serve([cname("a.example.com", "b.example.com")], upstream)

        observed = self.registry.get_sample_value(f"{PREFIX}_request_duration_seconds_count", {"server": SERVER})
        self.assertEqual(observed, 1)


class TestChainAborts(FinalizeTestCase):
    """Every failure returns the response as received"""

    def test_max_lookup_reached(self):
        original = cname("a.example.com", "b.example.com")
        upstream = StubUpstream(
            {
                "b.example.com": [cname("b.example.com", "c.example.com")],
                "c.example.com": [a_record("c.example.com", "5.6.7.8")],
            }
        )

        written = self.serve([original], upstream, max_lookup=1)

        self.assertEqual(written.answers, [original])
        self.assertEqual(len(upstream.calls), 1)
        self.assertEqual(self.count("max_lookup_reached_count"), 1)

    def test_unlimited_budget(self):
        original = cname("a.example.com", "b.example.com")
        upstream = StubUpstream(
            {
                "b.example.com": [cname("b.example.com", "c.example.com")],
                "c.example.com": [a_record("c.example.com", "5.6.7.8")],
            }
        )

        written = self.serve([original], upstream, max_lookup=0)

        self.assertEqual(len(written.answers), 3)
        self.assertEqual(self.count("max_lookup_reached_count"), 0)

    def test_dangling_cname(self):
        original = cname("a.example.com", "b.example.com")
        upstream = StubUpstream({"b.example.com": []})

        written = self.serve([original], upstream)

        self.assertEqual(written.answers, [original])
        self.assertEqual(self.count("dangling_cname_count"), 1)

    def test_upstream_error(self):
        original = cname("a.example.com", "b.example.com")
        upstream = StubUpstream({"b.example.com": error.DNSServerError("SERVFAIL")})

        written = self.serve([original], upstream)

        self.assertEqual(written.answers, [original])
        self.assertEqual(self.count("upstream_error_count"), 1)

    def test_nxdomain_target_is_dangling(self):
        original = cname("a.example.com", "b.example.com")
        resolver = NXDomainResolver(servers=[("127.0.0.1", 53)], reactor=task.Clock())

        written = self.serve([original], Upstream([("127.0.0.1", 53)], resolver=resolver))

        self.assertEqual(written.answers, [original])
        self.assertEqual(self.count("dangling_cname_count"), 1)
        self.assertEqual(self.count("upstream_error_count"), 0)

    def test_late_failure_discards_earlier_hops(self):
        original = cname("a.example.com", "b.example.com")
        upstream = StubUpstream(
            {
                "b.example.com": [cname("b.example.com", "c.example.com")],
                "c.example.com": error.DNSServerError("SERVFAIL"),
            }
        )

        written = self.serve([original], upstream)

        self.assertEqual(written.answers, [original])
        self.assertEqual(len(upstream.calls), 2)

    def test_circular_reference_across_responses(self):
        original = cname("a.example.com", "b.example.com")
        upstream = StubUpstream(
            {
                "b.example.com": [cname("b.example.com", "a.example.com")],
                "a.example.com": [cname("a.example.com", "b.example.com")],
            }
        )

        written = self.serve([original], upstream)

        self.assertEqual(written.answers, [original])
        self.assertEqual(upstream.calls, [("b.example.com", dns.A), ("a.example.com", dns.A)])
        self.assertEqual(self.count("circular_reference_count"), 1)

    def test_upstream_answer_without_chain_for_target(self):
        original = cname("a.example.com", "b.example.com")
        upstream = StubUpstream({"b.example.com": [cname("x.example.com", "y.example.com")]})

        written = self.serve([original], upstream)

        self.assertEqual(written.answers, [original])
        self.assertEqual(len(upstream.calls), 1)

    def test_chain_not_starting_at_question(self):
        original = cname("x.example.com", "y.example.com")
        upstream = StubUpstream()

        written = self.serve([original], upstream)

        self.assertEqual(written.answers, [original])
        self.assertEqual(upstream.calls, [])
        self.assertEqual(self.count("request_count"), 1)

    def test_deadline_passed_counts_as_upstream_error(self):
        clock = task.Clock()
        clock.advance(100)
        self.ctx = RequestContext(server=SERVER, deadline=50, clock=clock)
        resolver = Mock()
        original = cname("a.example.com", "b.example.com")

        written = self.serve([original], Upstream([("127.0.0.1", 53)], resolver=resolver))

        self.assertEqual(written.answers, [original])
        resolver.query.assert_not_called()
        self.assertEqual(self.count("upstream_error_count"), 1)

    def test_cancelled_lookup_counts_as_upstream_error(self):
        resolver = Mock()
        resolver.query.return_value = defer.Deferred()
        original = cname("a.example.com", "b.example.com")
        request = make_request()
        plugin = Finalize(Upstream([("127.0.0.1", 53)], resolver=resolver), metrics=self.metrics)
        plugin.next = StubHandler(make_response(request, [original]))

        d = plugin.serve_dns(self.ctx, self.writer, request)
        self.assertNoResult(d)

        self.ctx.cancel()

        self.assertEqual(self.successResultOf(d), dns.OK)
        self.assertEqual(self.writer.messages[0].answers, [original])
        self.assertEqual(self.count("upstream_error_count"), 1)


class TestSkips(FinalizeTestCase):
    """Responses that never start a resolution"""

    def test_cname_question(self):
        original = cname("a.example.com", "b.example.com")
        upstream = StubUpstream()

        written = self.serve([original], upstream, request=make_request(qtype=dns.CNAME))

        self.assertEqual(written.answers, [original])
        self.assertEqual(upstream.calls, [])
        self.assertEqual(self.count("request_count"), 0)

    def test_empty_answer(self):
        upstream = StubUpstream()

        written = self.serve([], upstream)

        self.assertEqual(written.answers, [])
        self.assertEqual(upstream.calls, [])
        self.assertEqual(self.count("request_count"), 0)

    def test_already_finalized(self):
        answers = [cname("a.example.com", "b.example.com"), a_record("b.example.com", "1.2.3.4")]
        upstream = StubUpstream()

        written = self.serve(answers, upstream)

        self.assertEqual(written.answers, answers)
        self.assertEqual(upstream.calls, [])
        self.assertEqual(self.count("request_count"), 0)


class TestFatalErrors(FinalizeTestCase):
    """Failures that fail the request"""

    def test_no_answer_received(self):
        plugin = Finalize(StubUpstream(), metrics=self.metrics)
        plugin.next = StubHandler(None)

        failure = self.failureResultOf(plugin.serve_dns(self.ctx, self.writer, make_request()), NoAnswerReceivedError)

        self.assertEqual(failure.value.rcode, dns.ESERVER)
        self.assertEqual(self.writer.messages, [])

    def test_no_next_handler(self):
        plugin = Finalize(StubUpstream(), metrics=self.metrics)

        self.failureResultOf(plugin.serve_dns(self.ctx, self.writer, make_request()), NoNextHandlerError)

    def test_write_error(self):
        request = make_request()
        plugin = Finalize(StubUpstream(), metrics=self.metrics)
        plugin.next = StubHandler(make_response(request, [a_record("a.example.com", "1.2.3.4")]))

        failure = self.failureResultOf(plugin.serve_dns(self.ctx, FailingWriter(), request), WriteError)

        self.assertEqual(failure.value.rcode, dns.ESERVER)

    def test_next_handler_failure_propagates(self):
        plugin = Finalize(StubUpstream(), metrics=self.metrics)
        plugin.next = Mock()
        plugin.next.serve_dns.return_value = defer.fail(RuntimeError("boom"))

        self.failureResultOf(plugin.serve_dns(self.ctx, self.writer, make_request()), RuntimeError)


def test_plugin_name():
    assert Finalize(StubUpstream()).name() == "finalize_cname"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
