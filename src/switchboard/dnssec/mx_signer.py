from __future__ import annotations

"""Synthetic MX answers signed with a zone's ECDSA P-384 key.

Brief: Build an authoritative ``<zone> IN MX 10 <mail host>`` answer with A/AAAA
glue and attach one RRSIG per RRset, using dnspython for message/record
handling and cryptography for the ECDSA signature.

Inputs:
  - Client query wire bytes and the MailZone it targets.
  - KeyStore with the zone's SigningKey.

Outputs:
  - Packed DNS response bytes.

Notes:
  - The RRSIG key tag and signer name are copied from the SigningKey rather
    than recomputed from a DNSKEY, so the signature data is assembled here
    (RFC 4034 section 3.1.8.1) instead of via dns.dnssec.sign().
  - Signatures are valid from now - 7h until now + 7d.
"""

import datetime
import logging
import struct
from dataclasses import dataclass, field
from typing import Optional, Tuple

import dns.exception
import dns.flags
import dns.message
import dns.name
import dns.rdataclass
import dns.rdatatype
import dns.rrset
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature
from dns.rdtypes.ANY.RRSIG import RRSIG

from ..errors import MalformedQuery, SigningUnavailable
from ..routing.route_table import normalize_name
from .keystore import P384_SCALAR_LEN, KeyStore, SigningKey

logger = logging.getLogger(__name__)

INCEPTION_OFFSET = datetime.timedelta(hours=7)
SIGNATURE_VALIDITY = datetime.timedelta(days=7)
MX_PREFERENCE = 10
DEFAULT_TTL = 3600
UDP_DEFAULT_PAYLOAD = 512
TCP_MAX_MESSAGE = 65535


@dataclass(frozen=True)
class MailZone:
    """Brief: A zone whose MX answer is synthesized locally.

    Inputs:
      - name: Zone apex (normalized to lower-case absolute form).
      - host: Mail host name; defaults to 'mail.<zone>'.
      - ipv4 / ipv6: Glue addresses for the mail host.
      - ttl: TTL for every synthesized record.

    Outputs:
      - Immutable zone description.
    """

    name: str
    host: str = ""
    ipv4: Tuple[str, ...] = field(default_factory=tuple)
    ipv6: Tuple[str, ...] = field(default_factory=tuple)
    ttl: int = DEFAULT_TTL

    def __post_init__(self) -> None:
        object.__setattr__(self, "name", normalize_name(self.name))
        host = self.host or f"mail.{self.name}"
        object.__setattr__(self, "host", normalize_name(host))


def signature_window(
    now: Optional[datetime.datetime] = None,
) -> Tuple[datetime.datetime, datetime.datetime]:
    """Brief: Return (inception, expiration) for signatures made at *now*."""

    now = now or datetime.datetime.now(datetime.timezone.utc)
    return now - INCEPTION_OFFSET, now + SIGNATURE_VALIDITY


def _rrsig_labels(owner: dns.name.Name) -> int:
    labels = len(owner) - 1 if owner.is_absolute() else len(owner)
    if owner.is_wild():
        labels -= 1
    return labels


def rrsig_signature_data(rrset: dns.rrset.RRset, rrsig: RRSIG) -> bytes:
    """Brief: Build the byte string an RRSIG signature covers.

    Inputs:
      - rrset: Absolute-owner RRset being signed.
      - rrsig: RRSIG rdata whose fixed fields (everything but the signature)
        are final.

    Outputs:
      - bytes: RRSIG RDATA prefix + signer name + canonical RRs sorted by
        canonical RDATA.
    """

    data = struct.pack(
        "!HBBIIIH",
        rrsig.type_covered,
        rrsig.algorithm,
        rrsig.labels,
        rrsig.original_ttl,
        rrsig.expiration,
        rrsig.inception,
        rrsig.key_tag,
    )
    data += rrsig.signer.to_digestable()

    owner = rrset.name.to_digestable()
    fixed = struct.pack("!HHI", rrset.rdtype, rrset.rdclass, rrsig.original_ttl)
    for rdata in sorted(rd.to_digestable() for rd in rrset):
        data += owner + fixed + struct.pack("!H", len(rdata)) + rdata
    return data


def sign_rrset(
    rrset: dns.rrset.RRset,
    key: SigningKey,
    inception: datetime.datetime,
    expiration: datetime.datetime,
) -> RRSIG:
    """Brief: Sign *rrset* with *key* and return the RRSIG rdata.

    Inputs:
      - rrset: RRset to cover; owner must be absolute.
      - key: SigningKey supplying signer name, key tag and private scalar.
      - inception / expiration: Validity window (timezone-aware datetimes).

    Outputs:
      - RRSIG rdata with a 96-byte r||s ECDSA P-384 signature.
    """

    template = RRSIG(
        dns.rdataclass.IN,
        dns.rdatatype.RRSIG,
        rrset.rdtype,
        key.algorithm,
        _rrsig_labels(rrset.name),
        rrset.ttl,
        int(expiration.timestamp()),
        int(inception.timestamp()),
        key.key_tag,
        dns.name.from_text(key.zone_name),
        b"",
    )
    der = key.private_key.sign(
        rrsig_signature_data(rrset, template), ec.ECDSA(hashes.SHA384())
    )
    r, s = decode_dss_signature(der)
    signature = r.to_bytes(P384_SCALAR_LEN, "big") + s.to_bytes(P384_SCALAR_LEN, "big")
    return template.replace(signature=signature)


def _append_signed(section, rrset, key, inception, expiration) -> None:
    section.append(rrset)
    # Only names inside the signer's zone may carry its signatures.
    if not rrset.name.is_subdomain(dns.name.from_text(key.zone_name)):
        return
    rrsig = sign_rrset(rrset, key, inception, expiration)
    section.append(dns.rrset.from_rdata(rrset.name, rrset.ttl, rrsig))


def build_mx_response(
    query: dns.message.Message,
    zone: MailZone,
    key: SigningKey,
    now: Optional[datetime.datetime] = None,
) -> dns.message.Message:
    """Brief: Build the signed synthetic MX response message.

    Inputs:
      - query: Parsed dnspython query (single MX question for zone.name).
      - zone: MailZone configuration.
      - key: SigningKey for the zone.
      - now: Optional clock override for tests.

    Outputs:
      - dns.message.Message with AA set, MX + RRSIG in the answer section and
        A/AAAA glue + RRSIGs in the additional section.
    """

    inception, expiration = signature_window(now)
    response = dns.message.make_response(query)
    response.flags |= dns.flags.AA

    owner = query.question[0].name
    mail_host = dns.name.from_text(zone.host)

    mx = dns.rrset.from_text(
        owner, zone.ttl, "IN", "MX", f"{MX_PREFERENCE} {mail_host.to_text()}"
    )
    _append_signed(response.answer, mx, key, inception, expiration)

    if zone.ipv4:
        glue_a = dns.rrset.from_text(mail_host, zone.ttl, "IN", "A", *zone.ipv4)
        _append_signed(response.additional, glue_a, key, inception, expiration)
    if zone.ipv6:
        glue_aaaa = dns.rrset.from_text(mail_host, zone.ttl, "IN", "AAAA", *zone.ipv6)
        _append_signed(response.additional, glue_aaaa, key, inception, expiration)
    return response


def synthesize_mx(
    request_wire: bytes,
    zone: MailZone,
    key_store: KeyStore,
    *,
    transport: str = "udp",
    now: Optional[datetime.datetime] = None,
) -> bytes:
    """Brief: Synthesize and sign an MX answer for *zone*.

    Inputs:
      - request_wire: Client query bytes.
      - zone: Target MailZone.
      - key_store: Loaded KeyStore.
      - transport: 'udp' or 'tcp'; controls the size limit.
      - now: Optional clock override.

    Outputs:
      - bytes: Packed response. When it does not fit the client's UDP payload
        size an empty TC=1 reply is returned instead.

    Raises:
      - SigningUnavailable when the zone has no active key.
      - MalformedQuery when dnspython cannot parse the query.
    """

    key = key_store.get(zone.name, now=now)
    if key is None:
        raise SigningUnavailable(f"no active signing key for {zone.name}")

    try:
        query = dns.message.from_wire(bytes(request_wire))
    except dns.exception.DNSException as exc:
        raise MalformedQuery(f"cannot parse MX query for {zone.name}: {exc}") from exc

    response = build_mx_response(query, zone, key, now=now)

    if transport == "tcp":
        max_size = TCP_MAX_MESSAGE
    elif query.edns >= 0:
        max_size = max(UDP_DEFAULT_PAYLOAD, query.payload)
    else:
        max_size = UDP_DEFAULT_PAYLOAD

    try:
        wire = response.to_wire(max_size=max_size)
    except dns.exception.TooBig:
        logger.debug("Synthetic MX for %s exceeds %d bytes; truncating", zone.name, max_size)
        truncated = dns.message.make_response(query)
        truncated.flags |= dns.flags.AA | dns.flags.TC
        return truncated.to_wire()

    logger.debug("Synthesized signed MX for %s (key tag %d)", zone.name, key.key_tag)
    return wire
