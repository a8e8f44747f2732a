from __future__ import annotations

"""DNSSEC signing-key loading for MX answer synthesis.

Brief: Read BIND-style private key files from a directory once at startup and
index the usable ECDSA P-384 keys by zone name.

Inputs:
  - Key directory containing files named ``K<zone>.+<alg>+<tag>.private``.

Outputs:
  - KeyStore: read-only mapping of zone name -> active SigningKey.

File format (one ``Field: value`` per line)::

    Private-key-format: v1.3
    Algorithm: 14 (ECDSAP384SHA384)
    PrivateKey: <base64 scalar>
    Created: 20240101000000
    Publish: 20240101000000
    Activate: 20240101000000

Timestamps may be BIND ``YYYYMMDDHHMMSS`` or epoch seconds.
"""

import base64
import binascii
import datetime
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Iterator, List, Optional, Tuple

import dns.dnssec
from cryptography.hazmat.primitives.asymmetric import ec

from ..errors import KeyLoadError
from ..routing.route_table import normalize_name

logger = logging.getLogger(__name__)

ECDSAP384SHA384 = int(dns.dnssec.Algorithm.ECDSAP384SHA384)
P384_SCALAR_LEN = 48

_KEY_FILE_RE = re.compile(r"^K(?P<zone>.*)\+(?P<alg>\d{3})\+(?P<tag>\d{5})\.private$")
_REQUIRED_FIELDS = ("PrivateKey", "Created", "Publish", "Activate")


@dataclass(frozen=True)
class SigningKey:
    """Brief: One loaded zone signing key.

    Inputs:
      - zone_name: Normalized absolute zone name (signer name).
      - key_tag: Key tag from the file name; used verbatim in RRSIGs.
      - private_key: cryptography EllipticCurvePrivateKey on SECP384R1.
      - activation_time: UTC datetime from which the key may sign.
      - algorithm: DNSSEC algorithm number (always 14 here).
      - created / publish: UTC datetimes carried from the file.
      - path: Source file path for diagnostics.

    Outputs:
      - Immutable key record.
    """

    zone_name: str
    key_tag: int
    private_key: ec.EllipticCurvePrivateKey = field(repr=False)
    activation_time: datetime.datetime
    algorithm: int = ECDSAP384SHA384
    created: Optional[datetime.datetime] = None
    publish: Optional[datetime.datetime] = None
    path: Optional[Path] = None

    def is_active(self, now: datetime.datetime) -> bool:
        return self.activation_time <= now


def parse_key_filename(name: str) -> Tuple[str, int, int]:
    """Brief: Split a key file name into (zone, algorithm, key_tag).

    Inputs:
      - name: Base file name, e.g. 'Kexample.re.+014+12345.private'.

    Outputs:
      - (zone_name, algorithm, key_tag) with zone normalized.

    Example:
      >>> parse_key_filename("Kexample.re.+014+12345.private")
      ('example.re.', 14, 12345)
    """

    m = _KEY_FILE_RE.match(name)
    if not m:
        raise KeyLoadError(f"key file name {name!r} does not match K<zone>+<alg>+<tag>.private")
    tag = int(m.group("tag"))
    if tag > 0xFFFF:
        raise KeyLoadError(f"key file name {name!r} has key tag {tag} above 65535")
    return normalize_name(m.group("zone")), int(m.group("alg")), tag


def _parse_timestamp(value: str, field_name: str, path: Path) -> datetime.datetime:
    text = value.strip().split()[0] if value.strip() else ""
    if not text.isdigit():
        raise KeyLoadError(f"{path}: invalid {field_name} timestamp {value!r}")
    try:
        if len(text) == 14:
            parsed = datetime.datetime.strptime(text, "%Y%m%d%H%M%S")
            return parsed.replace(tzinfo=datetime.timezone.utc)
        return datetime.datetime.fromtimestamp(int(text), tz=datetime.timezone.utc)
    except (ValueError, OverflowError, OSError) as exc:
        raise KeyLoadError(f"{path}: invalid {field_name} timestamp {value!r}: {exc}") from exc


def _parse_fields(text: str, path: Path) -> Dict[str, str]:
    fields: Dict[str, str] = {}
    for lineno, line in enumerate(text.splitlines(), 1):
        line = line.strip()
        if not line or line.startswith(";"):
            continue
        if ":" not in line:
            raise KeyLoadError(f"{path}:{lineno}: expected 'Field: value'")
        key, value = line.split(":", 1)
        fields[key.strip()] = value.strip()
    return fields


def _decode_scalar(value: str, path: Path) -> ec.EllipticCurvePrivateKey:
    try:
        raw = base64.b64decode("".join(value.split()), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise KeyLoadError(f"{path}: PrivateKey is not valid base64: {exc}") from exc
    if not raw or len(raw) > P384_SCALAR_LEN:
        raise KeyLoadError(
            f"{path}: PrivateKey decodes to {len(raw)} bytes, expected 1..{P384_SCALAR_LEN}"
        )
    try:
        return ec.derive_private_key(int.from_bytes(raw, "big"), ec.SECP384R1())
    except ValueError as exc:
        raise KeyLoadError(f"{path}: PrivateKey is not a valid P-384 scalar: {exc}") from exc


def load_key_file(path: Path) -> Optional[SigningKey]:
    """Brief: Load one key file.

    Inputs:
      - path: Path to a '.private' key file.

    Outputs:
      - SigningKey, or None when the key uses an algorithm other than
        ECDSAP384SHA384 (skipped, not an error).

    Raises:
      - KeyLoadError on any read/parse problem.
    """

    zone_name, file_alg, key_tag = parse_key_filename(path.name)
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise KeyLoadError(f"{path}: cannot read key file: {exc}") from exc

    fields = _parse_fields(text, path)
    alg_text = fields.get("Algorithm")
    if not alg_text:
        raise KeyLoadError(f"{path}: missing Algorithm field")
    try:
        algorithm = int(alg_text.split()[0])
    except ValueError:
        raise KeyLoadError(f"{path}: invalid Algorithm {alg_text!r}") from None
    if algorithm != file_alg:
        raise KeyLoadError(
            f"{path}: Algorithm {algorithm} does not match file name algorithm {file_alg}"
        )
    if algorithm != ECDSAP384SHA384:
        logger.info(
            "Skipping key %s: algorithm %d is not ECDSAP384SHA384", path.name, algorithm
        )
        return None

    missing = [name for name in _REQUIRED_FIELDS if name not in fields]
    if missing:
        raise KeyLoadError(f"{path}: missing field(s) {', '.join(missing)}")

    return SigningKey(
        zone_name=zone_name,
        key_tag=key_tag,
        private_key=_decode_scalar(fields["PrivateKey"], path),
        activation_time=_parse_timestamp(fields["Activate"], "Activate", path),
        algorithm=algorithm,
        created=_parse_timestamp(fields["Created"], "Created", path),
        publish=_parse_timestamp(fields["Publish"], "Publish", path),
        path=path,
    )


class KeyStore(Mapping):
    """Read-only zone -> SigningKey mapping.

    Indexing returns the key that is active now: the most recently activated
    key whose activation time is not in the future. Iteration and len() cover
    the same zones, so a zone whose keys are all pending is absent until one
    activates. All keys per zone stay available through keys_for() and zones().
    """

    def __init__(self, keys: List[SigningKey] = ()) -> None:
        grouped: Dict[str, List[SigningKey]] = {}
        for key in keys:
            grouped.setdefault(key.zone_name, []).append(key)
        self._keys = MappingProxyType(
            {
                zone: tuple(sorted(ks, key=lambda k: k.activation_time, reverse=True))
                for zone, ks in grouped.items()
            }
        )

    def get(
        self, zone_name: str, default=None, *, now: Optional[datetime.datetime] = None
    ) -> Optional[SigningKey]:
        now = now or datetime.datetime.now(datetime.timezone.utc)
        for key in self._keys.get(normalize_name(zone_name), ()):
            if key.is_active(now):
                return key
        return default

    def __getitem__(self, zone_name: str) -> SigningKey:
        key = self.get(zone_name)
        if key is None:
            raise KeyError(zone_name)
        return key

    def _active_zones(self) -> List[str]:
        now = datetime.datetime.now(datetime.timezone.utc)
        return [z for z, ks in self._keys.items() if any(k.is_active(now) for k in ks)]

    def __iter__(self) -> Iterator[str]:
        return iter(self._active_zones())

    def __len__(self) -> int:
        return len(self._active_zones())

    def zones(self) -> Tuple[str, ...]:
        """Every zone with at least one key, active or not."""
        return tuple(self._keys)

    def keys_for(self, zone_name: str) -> Tuple[SigningKey, ...]:
        return self._keys.get(normalize_name(zone_name), ())


def load_keys(directory) -> KeyStore:
    """Brief: Load every '.private' key file under *directory*.

    Inputs:
      - directory: str or Path of the key directory.

    Outputs:
      - KeyStore with all usable P-384 keys.

    Raises:
      - KeyLoadError if the directory is missing or any key file is malformed;
        no partially loaded store is ever returned.
    """

    key_dir = Path(directory).expanduser()
    if not key_dir.is_dir():
        raise KeyLoadError(f"key directory {key_dir} does not exist")

    keys: List[SigningKey] = []
    for path in sorted(key_dir.iterdir()):
        if not path.is_file() or path.suffix != ".private":
            continue
        key = load_key_file(path)
        if key is None:
            continue
        logger.info("Loaded signing key %s tag %d from %s", key.zone_name, key.key_tag, path.name)
        keys.append(key)

    store = KeyStore(keys)
    now = datetime.datetime.now(datetime.timezone.utc)
    for zone in store.zones():
        if store.get(zone, now=now) is None:
            logger.warning("No key for %s is active yet", zone)
    return store
