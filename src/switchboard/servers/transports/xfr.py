from __future__ import annotations

import logging
from typing import Iterator, Optional

from dnslib import QTYPE, RCODE, DNSRecord

from .tcp import TCPError, connect, frame, read_frame

logger = logging.getLogger(__name__)


class TransferError(Exception):
    """Brief: Inbound zone transfer (AXFR/IXFR) error.

    Inputs:
      - message: Short description of the failure.

    Outputs:
      - Exception instance indicating a transfer-specific failure.
    """

    pass


def _soa_serial(rr) -> int:
    return int(rr.rdata.times[0])


def ixfr_client_serial(request: DNSRecord) -> int:
    """Brief: Return the serial from the SOA in an IXFR query's authority section.

    Inputs:
      - request: Parsed IXFR query.

    Outputs:
      - int serial; raises TransferError when no authority SOA is present.
    """

    for rr in request.auth:
        if rr.rtype == QTYPE.SOA:
            return _soa_serial(rr)
    raise TransferError("IXFR query carries no SOA in its authority section")


def _check_first(msg: DNSRecord) -> None:
    if msg.header.rcode != RCODE.NOERROR:
        rcode_name = RCODE.get(msg.header.rcode, f"rcode{msg.header.rcode}")
        raise TransferError(f"transfer refused by backend: {rcode_name}")
    if not msg.rr or msg.rr[0].rtype != QTYPE.SOA:
        raise TransferError("transfer reply does not start with SOA")


class _AXFRTracker:
    """Detects the end of an AXFR stream: a later message ending in SOA."""

    def __init__(self) -> None:
        self._first = True

    def feed(self, msg: DNSRecord) -> bool:
        if self._first:
            _check_first(msg)
            self._first = False
            if len(msg.rr) == 1:
                return False
        return bool(msg.rr) and msg.rr[-1].rtype == QTYPE.SOA


class _IXFRTracker:
    """Detects the end of an IXFR stream.

    The serial of the first SOA is the server's current serial. A reply whose
    serial is not newer than the client's ends immediately; an AXFR-style
    reply ends on the second server-serial SOA, an incremental reply on the
    third.
    """

    def __init__(self, client_serial: int) -> None:
        self._client_serial = client_serial
        self._server_serial: Optional[int] = None
        self._seen = 0
        self._axfr_style = True

    def feed(self, msg: DNSRecord) -> bool:
        if self._server_serial is None:
            _check_first(msg)
            self._server_serial = _soa_serial(msg.rr[0])
            if self._client_serial >= self._server_serial:
                return True
        for rr in msg.rr:
            if rr.rtype != QTYPE.SOA:
                continue
            if _soa_serial(rr) == self._server_serial:
                self._seen += 1
                if (self._axfr_style and self._seen == 2) or self._seen == 3:
                    return True
            elif self._axfr_style:
                self._axfr_style = False
        return False


def transfer_in(
    host: str,
    port: int,
    request: DNSRecord,
    request_wire: bytes,
    *,
    connect_timeout_ms: int = 2000,
    read_timeout_ms: int = 5000,
) -> Iterator[DNSRecord]:
    """Brief: Open an inbound AXFR/IXFR session and yield each message received.

    Inputs:
      - host / port: Backend (master) server.
      - request: Parsed client transfer query; its first question selects
        AXFR or IXFR termination rules.
      - request_wire: Client query bytes, sent to the backend unmodified.
      - connect_timeout_ms / read_timeout_ms: Socket timeouts.

    Outputs:
      - Iterator of parsed DNSRecord messages in arrival order; the iterator
        stops after the terminating message.

    Raises:
      - TransferError on connect/I/O failure, a non-NOERROR or non-SOA first
        message, an unparsable frame, or EOF before the transfer completes.
    """

    if request.q.qtype == QTYPE.IXFR:
        tracker = _IXFRTracker(ixfr_client_serial(request))
    else:
        tracker = _AXFRTracker()

    try:
        sock = connect(host, port, connect_timeout_ms, read_timeout_ms)
    except OSError as exc:
        raise TransferError(f"transfer connect to {host}:{port} failed: {exc}") from exc

    try:
        sock.sendall(frame(request_wire))
        count = 0
        while True:
            body = read_frame(sock)
            if body is None:
                raise TransferError(
                    f"transfer from {host}:{port} closed after {count} message(s)"
                )
            try:
                msg = DNSRecord.parse(body)
            except Exception as exc:
                raise TransferError(f"failed to parse transfer message: {exc}") from exc
            count += 1
            done = tracker.feed(msg)
            yield msg
            if done:
                logger.debug("Transfer from %s:%d complete after %d message(s)", host, port, count)
                return
    except (OSError, TCPError) as exc:
        raise TransferError(f"transfer I/O error from {host}:{port}: {exc}") from exc
    finally:
        sock.close()
