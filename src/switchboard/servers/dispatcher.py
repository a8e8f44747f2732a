from __future__ import annotations

import logging
from typing import Optional, Tuple

from dnslib import QTYPE, RCODE, DNSHeader, DNSRecord

from ..config.settings import ProxySettings
from ..dnssec.keystore import KeyStore
from ..dnssec.mx_signer import synthesize_mx
from ..errors import (
    DisallowedOperation,
    MalformedQuery,
    NoRouteAvailable,
    ProxyError,
    SigningUnavailable,
)
from ..routing.classifier import QueryCategory, classify
from ..routing.route_table import BackendAddress, normalize_name
from .proxy import ProxyExecutor

logger = logging.getLogger("switchboard.dispatcher")


class ResponseWriter:
    """Brief: Sink for the response(s) to one query.

    Inputs:
      - transport: 'udp' or 'tcp'.
      - client_ip: Client address string, used for transfer ACLs and logs.

    Outputs:
      - write(wire) sends one DNS message to the client; raises OSError when
        the client can no longer be reached.
    """

    transport = "udp"

    def __init__(self, client_ip: str = "0.0.0.0") -> None:
        self.client_ip = client_ip

    def write(self, wire: bytes) -> None:  # pragma: no cover - interface
        raise NotImplementedError


def make_servfail_response(request: DNSRecord) -> bytes:
    """Brief: Build the generic SERVFAIL reply used for every refusal.

    Inputs:
      - request: Parsed client query (may have no questions).

    Outputs:
      - bytes: SERVFAIL reply echoing the ID and, when present, the first
        question.
    """

    if request.questions:
        r = request.reply(aa=0)
    else:
        r = DNSRecord(DNSHeader(id=request.header.id, bitmap=request.header.bitmap, qr=1))
        r.header.aa = 0
    r.header.rcode = RCODE.SERVFAIL
    return r.pack()


def _describe(request: DNSRecord) -> Tuple[str, str]:
    if not request.questions:
        return "<none>", "-"
    q = request.questions[0]
    return str(q.qname), QTYPE.get(q.qtype, str(q.qtype))


class Dispatcher:
    """Classify each query, pick a route, then synthesize, proxy or relay.

    Inputs:
      - settings: Immutable ProxySettings.
      - key_store: Loaded KeyStore (empty when MX synthesis has no keys).
      - executor: Optional ProxyExecutor; built from settings when omitted.

    Outputs:
      - handle() writes zero or more responses to the given ResponseWriter.

    A single Dispatcher is shared by every listener thread; it keeps no
    per-request state.
    """

    def __init__(
        self,
        settings: ProxySettings,
        key_store: Optional[KeyStore] = None,
        executor: Optional[ProxyExecutor] = None,
    ) -> None:
        self.settings = settings
        self.key_store = key_store if key_store is not None else KeyStore()
        self.executor = executor or ProxyExecutor(
            settings.timeout_ms, settings.backend_strategy
        )
        self._mail_zone_names = (
            frozenset(settings.mail_zones) if settings.mx_synthesis else frozenset()
        )

    def handle(self, data: bytes, writer: ResponseWriter) -> None:
        """Brief: Process one query end to end.

        Inputs:
          - data: Client query wire bytes.
          - writer: ResponseWriter bound to the client.

        Outputs:
          - None. Unparsable queries are dropped (no ID to answer); every
            ProxyError and unexpected exception becomes one SERVFAIL.
        """

        data = bytes(data)
        try:
            request = DNSRecord.parse(data)
        except Exception as exc:
            logger.warning("Dropping unparsable query from %s: %s", writer.client_ip, exc)
            return

        try:
            self._dispatch(request, data, writer)
        except ProxyError as exc:
            qname, qtype = _describe(request)
            logger.warning(
                "Refused %s %s from %s over %s: %s (%s)",
                qname,
                qtype,
                writer.client_ip,
                writer.transport,
                exc.reason,
                exc,
            )
            self._write_failure(request, writer)
        except OSError as exc:
            logger.warning("Failed to answer %s: %s", writer.client_ip, exc)
        except Exception:
            qname, qtype = _describe(request)
            logger.exception("Unexpected error handling %s %s", qname, qtype)
            self._write_failure(request, writer)

    def _write_failure(self, request: DNSRecord, writer: ResponseWriter) -> None:
        try:
            writer.write(make_servfail_response(request))
        except OSError as exc:
            logger.debug("Could not send SERVFAIL to %s: %s", writer.client_ip, exc)

    def _default_backends(self, why: str) -> Tuple[BackendAddress, ...]:
        if self.settings.default_backend is None:
            raise NoRouteAvailable(f"{why} query needs a default backend")
        return (self.settings.default_backend,)

    def select_backends(self, qname: str) -> Tuple[BackendAddress, ...]:
        """Brief: Route table lookup with default fallback.

        Inputs:
          - qname: Query name.

        Outputs:
          - Tuple of backends; raises NoRouteAvailable when neither a route
            nor a default backend exists.
        """

        backends = self.settings.route_table.lookup(qname)
        if backends:
            return backends
        return self._default_backends("unrouted")

    def _dispatch(self, request: DNSRecord, data: bytes, writer: ResponseWriter) -> None:
        if not request.questions:
            raise MalformedQuery("query has no questions")

        category = classify(request, self._mail_zone_names)
        qname, qtype = _describe(request)

        if category is QueryCategory.TRANSFER:
            self._relay_transfer(request, data, writer)
            return

        if category is QueryCategory.DELEGATION_SIGNER:
            backends = self._default_backends("DS")
        elif category is QueryCategory.MAIL_EXCHANGE:
            wire = self._synthesize(data, qname, writer.transport)
            if wire is not None:
                writer.write(wire)
                return
            backends = self.select_backends(qname)
        else:
            backends = self.select_backends(qname)

        logger.debug(
            "Proxying %s %s (%s) via %s to %s",
            qname,
            qtype,
            category.value,
            writer.transport,
            ", ".join(str(b) for b in backends),
        )
        reply = self.executor.exchange(backends, writer.transport, data, request.header.id)
        writer.write(reply)

    def _synthesize(self, data: bytes, qname: str, transport: str) -> Optional[bytes]:
        zone = self.settings.mail_zones[normalize_name(qname)]
        try:
            return synthesize_mx(data, zone, self.key_store, transport=transport)
        except SigningUnavailable as exc:
            logger.info("MX synthesis for %s unavailable, proxying instead: %s", zone.name, exc)
            return None

    def _relay_transfer(self, request: DNSRecord, data: bytes, writer: ResponseWriter) -> None:
        if not self.settings.transfer_relay:
            raise DisallowedOperation("zone transfer relay is disabled")
        if writer.transport != "tcp":
            raise DisallowedOperation("zone transfer over UDP")
        if not self.settings.transfer_allowed(writer.client_ip):
            raise DisallowedOperation(f"client {writer.client_ip} may not transfer")

        (backend,) = self._default_backends("transfer")
        qname, qtype = _describe(request)
        logger.info("Relaying %s %s for %s from %s", qtype, qname, writer.client_ip, backend)
        count = self.executor.relay_transfer(backend, writer, request, data)
        logger.debug("Relayed %d transfer message(s) for %s", count, qname)
