"""Enumeration types used throughout the extraction service.

``ExtractionStatus`` doubles as the extraction state machine: the allowed
transitions live next to the states so that the record store and the
worker consult one table instead of re-deriving the rules.
"""

from enum import Enum


class ExtractionStatus(str, Enum):
    """Lifecycle states for an extraction."""

    SUBMITTING = "SUBMITTING"
    EXTRACTING = "EXTRACTING"
    EXTRACTED = "EXTRACTED"
    INVALID = "INVALID"
    FAILED = "FAILED"

    def can_transition_to(self, target: "ExtractionStatus") -> bool:
        return target in _TRANSITIONS[self]


# FAILED is provisional while the queue still has attempts left: a later
# attempt of the same job may resolve it to EXTRACTED or INVALID.
_TRANSITIONS: dict[ExtractionStatus, frozenset[ExtractionStatus]] = {
    ExtractionStatus.SUBMITTING: frozenset({ExtractionStatus.EXTRACTING, ExtractionStatus.FAILED}),
    ExtractionStatus.EXTRACTING: frozenset(
        {ExtractionStatus.EXTRACTED, ExtractionStatus.INVALID, ExtractionStatus.FAILED}
    ),
    ExtractionStatus.FAILED: frozenset(
        {ExtractionStatus.FAILED, ExtractionStatus.EXTRACTED, ExtractionStatus.INVALID}
    ),
    ExtractionStatus.EXTRACTED: frozenset(),
    ExtractionStatus.INVALID: frozenset(),
}


class JobPartition(str, Enum):
    """Queue partitions a job can sit in, in lookup order.

    Deletion searches partitions by ``rank``: an ACTIVE job is the one most
    likely to write to the record soon, so it is found (and cancelled)
    before a WAITING copy, a DELAYED retry, or a dead-lettered FAILED entry.
    """

    ACTIVE = "active"
    WAITING = "waiting"
    DELAYED = "delayed"
    FAILED = "failed"

    @property
    def rank(self) -> int:
        return _PARTITION_RANK[self]

    @classmethod
    def search_order(cls) -> list["JobPartition"]:
        return sorted(cls, key=lambda p: p.rank)


_PARTITION_RANK = {
    JobPartition.ACTIVE: 0,
    JobPartition.WAITING: 1,
    JobPartition.DELAYED: 2,
    JobPartition.FAILED: 3,
}
