# cname_finalizer/chain.py
# Version: 1.0.0
# CNAME chain target lookup and per-request chain bookkeeping

"""
CNAME Chain Helpers

find_last_target() walks the CNAME records of a single record set to the name
that still needs resolving. ChainState holds what one request accumulates
while that name is chased upstream.
"""

import logging
from typing import Dict, List, Set

from twisted.names import dns

logger = logging.getLogger(__name__)


class ChainComputationError(ValueError):
    """The CNAME chain in a record set cannot be followed"""

    pass


class NoCNAMERecordsError(ChainComputationError):
    """No usable CNAME record for the requested name"""

    pass


class CircularReferenceError(ChainComputationError):
    """The CNAME chain within a record set loops back on itself"""

    pass


def normalize_name(name) -> str:
    """Comparable form of a DNS name: lowercase, without the root dot"""
    if isinstance(name, bytes):
        name = name.decode("ascii", "replace")
    return str(name).rstrip(".").lower()


def is_cname(rr: dns.RRHeader) -> bool:
    return rr.type == dns.CNAME


def has_terminal_record(records: List[dns.RRHeader]) -> bool:
    """True if any record ends a chain (anything that is not a CNAME)"""
    return any(not is_cname(rr) for rr in records)


def find_last_target(records: List[dns.RRHeader], qname) -> str:
    """
    Follow the CNAME chain starting at qname to its last target

    Args:
        records: Resource records to search, usually an answer section
        qname: Name the chain starts from

    Returns:
        The first name in the chain without a CNAME of its own

    Raises:
        NoCNAMERecordsError: No CNAME records at all, or none for qname
        CircularReferenceError: The chain visits more names than there are CNAMEs
    """
    name_to_target: Dict[str, str] = {}
    for rr in records:
        if is_cname(rr):
            name_to_target[normalize_name(rr.name)] = str(rr.payload.name)

    if not name_to_target:
        raise NoCNAMERecordsError("no CNAME records found")

    next_name = str(qname)
    depth = 0
    while True:
        target = name_to_target.get(normalize_name(next_name))
        if target is None:
            if depth == 0:
                raise NoCNAMERecordsError(f"no CNAME records found for {qname}")
            return next_name

        next_name = target
        depth += 1
        if depth > len(name_to_target):
            raise CircularReferenceError("circular reference found in CNAME chain")


class VisitedNames:
    """Set of names already used as a CNAME source while resolving a chain"""

    def __init__(self):
        self._names: Set[str] = set()

    def add(self, name) -> None:
        self._names.add(normalize_name(name))

    def __contains__(self, name) -> bool:
        return normalize_name(name) in self._names

    def __len__(self) -> int:
        return len(self._names)


class ChainState:
    """Request-scoped state of one CNAME chain resolution"""

    def __init__(self, answers: List[dns.RRHeader], target: str):
        self.visited = VisitedNames()
        self.lookups = 0
        # Working copy; only committed to the response on success
        self.records: List[dns.RRHeader] = list(answers)
        self.target = target

    def budget_exhausted(self, max_lookup: int) -> bool:
        """A non-positive budget never runs out"""
        return max_lookup > 0 and self.lookups >= max_lookup

    def advance(self, records: List[dns.RRHeader]) -> str:
        """
        Record an intermediate CNAME answer and move to the next target

        The name just looked up is marked visited before the next target is
        taken from the answer, anchored at that name.
        """
        previous = self.target
        self.visited.add(previous)
        self.target = find_last_target(records, previous)
        logger.debug(f"Next CNAME target after {previous}: {self.target}")
        return self.target
