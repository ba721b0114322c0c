#!/usr/bin/env python3
"""Unit tests for CNAME chain target lookup"""

import pytest
from twisted.names import dns

from cname_finalizer.chain import (
    ChainComputationError,
    ChainState,
    CircularReferenceError,
    NoCNAMERecordsError,
    VisitedNames,
    find_last_target,
    has_terminal_record,
)


def cname(name, target, ttl=300):
    return dns.RRHeader(name=name, type=dns.CNAME, cls=dns.IN, ttl=ttl, payload=dns.Record_CNAME(target, ttl))


def a_record(name, address, ttl=300):
    return dns.RRHeader(name=name, type=dns.A, cls=dns.IN, ttl=ttl, payload=dns.Record_A(address, ttl))


class TestFindLastTarget:
    """Test following a CNAME chain within one record set"""

    def test_single_cname(self):
        records = [cname("a.example.com", "b.example.com")]
        assert find_last_target(records, "a.example.com") == "b.example.com"

    def test_valid_cname_chain(self):
        records = [
            cname("a.example.com", "b.example.com"),
            cname("b.example.com", "c.example.com"),
        ]
        assert find_last_target(records, "a.example.com") == "c.example.com"

    def test_unordered_long_chain(self):
        """Record order does not matter, only the edges"""
        records = [
            cname("c.example.com", "d.example.com"),
            cname("a.example.com", "b.example.com"),
            cname("d.example.com", "z.example.com"),
            cname("b.example.com", "c.example.com"),
        ]
        assert find_last_target(records, "a.example.com") == "z.example.com"

    def test_chain_ending_in_terminal_record(self):
        """A chain already complete in the record set returns the terminal name"""
        records = [
            cname("a.example.com", "b.example.com"),
            a_record("b.example.com", "1.2.3.4"),
        ]
        assert find_last_target(records, "a.example.com") == "b.example.com"

    def test_no_cname_records_for_qname(self):
        records = [cname("b.example.com", "c.example.com")]
        with pytest.raises(NoCNAMERecordsError):
            find_last_target(records, "a.example.com")

    def test_circular_reference(self):
        records = [
            cname("a.example.com", "b.example.com"),
            cname("b.example.com", "a.example.com"),
        ]
        with pytest.raises(CircularReferenceError):
            find_last_target(records, "a.example.com")

    def test_self_reference(self):
        with pytest.raises(CircularReferenceError):
            find_last_target([cname("a.example.com", "a.example.com")], "a.example.com")

    def test_no_cname_records(self):
        records = [a_record("a.example.com", "1.2.3.4")]
        with pytest.raises(NoCNAMERecordsError):
            find_last_target(records, "a.example.com")

    def test_empty_record_set(self):
        with pytest.raises(ChainComputationError):
            find_last_target([], "a.example.com")

    def test_name_matching_ignores_case_and_root_dot(self):
        records = [
            cname("A.Example.COM", "b.example.com"),
            cname("b.example.com", "C.example.com"),
        ]
        assert find_last_target(records, "a.example.com.") == "C.example.com"


class TestChainState:
    """Test per-request chain bookkeeping"""

    def test_initial_state(self):
        answers = [cname("a.example.com", "b.example.com")]
        state = ChainState(answers, "b.example.com")

        assert state.lookups == 0
        assert state.target == "b.example.com"
        assert state.records == answers
        assert state.records is not answers
        assert len(state.visited) == 0

    def test_budget(self):
        state = ChainState([], "b.example.com")
        assert state.budget_exhausted(1) is False

        state.lookups = 1
        assert state.budget_exhausted(1) is True
        assert state.budget_exhausted(2) is False

    def test_non_positive_budget_is_unlimited(self):
        state = ChainState([], "b.example.com")
        state.lookups = 1000
        assert state.budget_exhausted(0) is False
        assert state.budget_exhausted(-1) is False

    def test_advance_marks_previous_target_visited(self):
        state = ChainState([], "b.example.com")

        next_target = state.advance([cname("b.example.com", "c.example.com")])

        assert next_target == "c.example.com"
        assert state.target == "c.example.com"
        assert "b.example.com" in state.visited
        assert "c.example.com" not in state.visited

    def test_advance_without_cname_for_target(self):
        state = ChainState([], "b.example.com")
        with pytest.raises(NoCNAMERecordsError):
            state.advance([cname("x.example.com", "y.example.com")])


class TestVisitedNames:
    def test_add_and_contains(self):
        visited = VisitedNames()
        visited.add("b.example.com")
        visited.add("B.EXAMPLE.COM.")

        assert "b.example.com" in visited
        assert "b.example.com." in visited
        assert len(visited) == 1


def test_has_terminal_record():
    assert has_terminal_record([cname("a", "b"), a_record("b", "1.2.3.4")]) is True
    assert has_terminal_record([cname("a", "b")]) is False
    assert has_terminal_record([]) is False


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
