from __future__ import annotations

import enum
from typing import AbstractSet

from dnslib import QTYPE, DNSRecord

from .route_table import normalize_name

_TRANSFER_QTYPES = frozenset((QTYPE.AXFR, QTYPE.IXFR))


class QueryCategory(enum.Enum):
    """Brief: Dispatch category of an inbound query."""

    TRANSFER = "transfer"
    DELEGATION_SIGNER = "delegation_signer"
    MAIL_EXCHANGE = "mail_exchange"
    NORMAL = "normal"


def is_transfer(request: DNSRecord) -> bool:
    """Brief: True when any question asks for AXFR or IXFR."""
    return any(q.qtype in _TRANSFER_QTYPES for q in request.questions)


def classify(
    request: DNSRecord, mail_zones: AbstractSet[str] = frozenset()
) -> QueryCategory:
    """Brief: Classify a parsed query for the dispatcher.

    Inputs:
      - request: Parsed dnslib DNSRecord with at least one question.
      - mail_zones: Normalized absolute zone names configured for MX
        synthesis (empty when the feature is off).

    Outputs:
      - QueryCategory. Priority across all questions: any AXFR/IXFR wins,
        then any DS; MAIL_EXCHANGE needs exactly one MX question whose name
        equals a mail zone; everything else is NORMAL.
    """

    questions = list(request.questions)
    if is_transfer(request):
        return QueryCategory.TRANSFER
    if any(q.qtype == QTYPE.DS for q in questions):
        return QueryCategory.DELEGATION_SIGNER
    if mail_zones and len(questions) == 1:
        q = questions[0]
        if q.qtype == QTYPE.MX and normalize_name(str(q.qname)) in mail_zones:
            return QueryCategory.MAIL_EXCHANGE
    return QueryCategory.NORMAL
