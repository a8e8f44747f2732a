from __future__ import annotations

import logging
from typing import Sequence

from dnslib import DNSRecord

from ..errors import DisallowedOperation, UpstreamUnreachable
from ..routing.route_table import BackendAddress
from .transports import tcp as tcp_transport
from .transports import udp as udp_transport
from .transports import xfr

logger = logging.getLogger("switchboard.proxy")

STRATEGIES = ("first", "failover")


def validate_response(wire: bytes, request_id: int, backend: BackendAddress) -> None:
    """Brief: Reject backend replies that are not a response to our query.

    Inputs:
      - wire: Bytes received from the backend.
      - request_id: DNS ID of the forwarded query.
      - backend: Backend address for error messages.

    Outputs:
      - None; raises UpstreamUnreachable on unparsable data, a mismatched ID,
        or a missing QR bit.
    """

    try:
        parsed = DNSRecord.parse(wire)
    except Exception as exc:
        raise UpstreamUnreachable(f"malformed reply from {backend}: {exc}") from exc
    if parsed.header.id != request_id:
        raise UpstreamUnreachable(
            f"reply from {backend} has id {parsed.header.id}, expected {request_id}"
        )
    if not parsed.header.qr:
        raise UpstreamUnreachable(f"reply from {backend} is not a response")


class ProxyExecutor:
    """Forwards queries to backends over the client's transport.

    Inputs:
      - timeout_ms: Connect/read timeout applied to every backend exchange.
      - strategy: 'first' uses only the first backend of a route; 'failover'
        tries each listed backend once, in order.

    Outputs:
      - exchange() returns the backend's reply bytes unmodified;
        relay_transfer() streams transfer messages to a ResponseWriter.

    The executor holds no per-request state and is shared by all handler
    threads.
    """

    def __init__(self, timeout_ms: int = 2000, strategy: str = "first") -> None:
        strategy = str(strategy).lower()
        if strategy not in STRATEGIES:
            raise ValueError(f"unknown backend strategy {strategy!r}")
        self.timeout_ms = int(timeout_ms)
        self.strategy = strategy

    def _exchange_one(
        self, backend: BackendAddress, transport: str, request_wire: bytes, request_id: int
    ) -> bytes:
        try:
            if transport == "tcp":
                wire = tcp_transport.tcp_query(
                    backend.host,
                    backend.port,
                    request_wire,
                    connect_timeout_ms=self.timeout_ms,
                    read_timeout_ms=self.timeout_ms,
                )
            else:
                wire = udp_transport.udp_query(
                    backend.host, backend.port, request_wire, timeout_ms=self.timeout_ms
                )
        except (udp_transport.UDPError, tcp_transport.TCPError) as exc:
            raise UpstreamUnreachable(f"{transport} exchange with {backend} failed: {exc}") from exc
        validate_response(wire, request_id, backend)
        return wire

    def exchange(
        self,
        backends: Sequence[BackendAddress],
        transport: str,
        request_wire: bytes,
        request_id: int,
    ) -> bytes:
        """Brief: Send one query and return exactly one backend reply.

        Inputs:
          - backends: Candidate backends in route order (non-empty).
          - transport: 'udp' or 'tcp', mirroring the client's transport.
          - request_wire: Client query bytes, forwarded unmodified.
          - request_id: DNS ID of the query, used to validate the reply.

        Outputs:
          - bytes: Backend reply, relayed as-is (truncated replies included).

        Raises:
          - UpstreamUnreachable when every attempted backend failed.
        """

        candidates = list(backends) if self.strategy == "failover" else list(backends)[:1]
        if not candidates:
            raise UpstreamUnreachable("no backends to contact")

        last_error = None
        for backend in candidates:
            try:
                return self._exchange_one(backend, transport, request_wire, request_id)
            except UpstreamUnreachable as exc:
                logger.warning("Backend %s failed: %s", backend, exc)
                last_error = exc
        raise last_error

    def relay_transfer(
        self,
        backend: BackendAddress,
        writer,
        request: DNSRecord,
        request_wire: bytes,
    ) -> int:
        """Brief: Relay an AXFR/IXFR from *backend* to the client.

        Inputs:
          - backend: Transfer source (the default backend).
          - writer: ResponseWriter of the client connection.
          - request: Parsed client transfer query.
          - request_wire: Client query bytes, forwarded unmodified.

        Outputs:
          - int: Number of messages relayed.

        Raises:
          - DisallowedOperation when the client connection is UDP.
          - UpstreamUnreachable when the inbound session or the outbound
            relay fails at any point.
        """

        if writer.transport != "tcp":
            raise DisallowedOperation("zone transfers are only relayed over TCP")

        messages = xfr.transfer_in(
            backend.host,
            backend.port,
            request,
            request_wire,
            connect_timeout_ms=self.timeout_ms,
            read_timeout_ms=self.timeout_ms,
        )
        relayed = 0
        try:
            for msg in messages:
                reply = request.reply()
                reply.add_answer(*msg.rr)
                try:
                    writer.write(reply.pack())
                except OSError as exc:
                    raise UpstreamUnreachable(
                        f"relaying transfer to {writer.client_ip} failed: {exc}"
                    ) from exc
                relayed += 1
        except xfr.TransferError as exc:
            raise UpstreamUnreachable(f"transfer from {backend} failed: {exc}") from exc
        finally:
            messages.close()
        return relayed
