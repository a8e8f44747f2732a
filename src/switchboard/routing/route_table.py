from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BackendAddress:
    """Brief: A backend DNS server endpoint.

    Inputs:
      - host: IPv4/IPv6 literal or hostname.
      - port: TCP/UDP port.

    Outputs:
      - Immutable endpoint; str() renders the host:port form used in logs.
    """

    host: str
    port: int = 53

    def __str__(self) -> str:
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


def parse_backend(text: str) -> BackendAddress:
    """Brief: Parse a 'host:port' backend string.

    Inputs:
      - text: 'host:port', '[v6addr]:port', a bare host, or a bare IPv6 literal.

    Outputs:
      - BackendAddress with the port defaulting to 53.

    Example:
      >>> parse_backend("[2001:db8::1]:5353")
      BackendAddress(host='2001:db8::1', port=5353)
      >>> parse_backend("10.0.0.1")
      BackendAddress(host='10.0.0.1', port=53)
    """

    raw = str(text or "").strip()
    if not raw:
        raise ValueError("empty backend address")

    if raw.startswith("["):
        end = raw.find("]")
        if end < 0:
            raise ValueError(f"invalid backend address {text!r}")
        host = raw[1:end]
        rest = raw[end + 1 :]
        if not rest:
            return BackendAddress(host, 53)
        if not rest.startswith(":"):
            raise ValueError(f"invalid backend address {text!r}")
        port_text = rest[1:]
    elif raw.count(":") == 1:
        host, port_text = raw.split(":", 1)
    else:
        # Bare hostname/IPv4 or an unbracketed IPv6 literal.
        return BackendAddress(raw, 53)

    if not host:
        raise ValueError(f"missing host in backend address {text!r}")
    try:
        port = int(port_text)
    except ValueError:
        raise ValueError(f"invalid port in backend address {text!r}") from None
    if not 1 <= port <= 65535:
        raise ValueError(f"port out of range in backend address {text!r}")
    return BackendAddress(host, port)


def normalize_name(name: str) -> str:
    """Brief: Lower-case a domain name and make it absolute.

    Inputs:
      - name: Domain name with or without trailing dot.

    Outputs:
      - str: e.g. 'Example.COM' -> 'example.com.'; '' and '.' -> '.'.
    """

    text = str(name or "").strip().lower().rstrip(".")
    return text + "." if text else "."


def _label_count(name: str) -> int:
    stripped = name.rstrip(".")
    return len(stripped.split(".")) if stripped else 0


@dataclass(frozen=True)
class RouteEntry:
    """Brief: One suffix route.

    Inputs:
      - suffix: Normalized absolute suffix (see normalize_name).
      - backends: Ordered, non-empty tuple of BackendAddress.

    Outputs:
      - Immutable route entry.
    """

    suffix: str
    backends: Tuple[BackendAddress, ...]

    def matches(self, name: str) -> bool:
        if self.suffix == ".":
            return True
        return name == self.suffix or name.endswith("." + self.suffix)


class RouteTable:
    """Immutable suffix -> backends mapping with longest-suffix matching.

    Entries are kept sorted by descending label count; the sort is stable so
    equal-length suffixes keep their configuration order, which is the
    documented tie-break. Instances hold only tuples and are safe to share
    between handler threads without locking.

    Example:
      >>> table = RouteTable.from_pairs([
      ...     ("example.com.", ["192.0.2.1:53"]),
      ...     ("sub.example.com.", ["192.0.2.2:53"]),
      ... ])
      >>> [str(b) for b in table.lookup("www.sub.example.com.")]
      ['192.0.2.2:53']
    """

    def __init__(self, entries: Iterable[RouteEntry] = ()) -> None:
        ordered: List[RouteEntry] = []
        seen = set()
        for entry in entries:
            if entry.suffix in seen:
                raise ValueError(f"duplicate route suffix {entry.suffix!r}")
            if not entry.backends:
                raise ValueError(f"route {entry.suffix!r} has no backends")
            seen.add(entry.suffix)
            ordered.append(entry)
        self._configured: Tuple[RouteEntry, ...] = tuple(ordered)
        self._by_length: Tuple[RouteEntry, ...] = tuple(
            sorted(ordered, key=lambda e: _label_count(e.suffix), reverse=True)
        )

    @classmethod
    def from_pairs(
        cls, pairs: Iterable[Tuple[str, Sequence[str]]]
    ) -> "RouteTable":
        """Brief: Build a table from (suffix, [backend strings]) pairs.

        Inputs:
          - pairs: Iterable of (suffix, backends) in configuration order.

        Outputs:
          - RouteTable; raises ValueError on duplicates or bad addresses.
        """

        return cls(
            RouteEntry(
                normalize_name(suffix),
                tuple(parse_backend(b) for b in backends),
            )
            for suffix, backends in pairs
        )

    @property
    def entries(self) -> Tuple[RouteEntry, ...]:
        """Entries in configuration order."""
        return self._configured

    def __len__(self) -> int:
        return len(self._configured)

    def lookup(self, name: str) -> Optional[Tuple[BackendAddress, ...]]:
        """Brief: Return the backends of the longest matching suffix.

        Inputs:
          - name: Query name (any case, trailing dot optional).

        Outputs:
          - Tuple of BackendAddress, or None when nothing matches or the name
            is empty/malformed.
        """

        raw = str(name or "").strip()
        if not raw or ".." in raw.rstrip("."):
            return None
        q = normalize_name(raw)
        for entry in self._by_length:
            if entry.matches(q):
                return entry.backends
        return None


def expand_route_templates(templates: Iterable[dict]) -> List[Tuple[str, List[str]]]:
    """Brief: Expand '{i}' route templates into concrete (suffix, backends) pairs.

    Inputs:
      - templates: Mappings with 'suffix', 'backends', 'start' and 'end'
        (inclusive); '{i}' in the suffix and each backend is replaced by the
        counter.

    Outputs:
      - list of (suffix, backends) pairs in counter order.

    Example:
      >>> expand_route_templates([
      ...     {"suffix": "{i}.member.example.", "backends": ["10.80.{i}.255:53"],
      ...      "start": 0, "end": 1}
      ... ])
      [('0.member.example.', ['10.80.0.255:53']), ('1.member.example.', ['10.80.1.255:53'])]
    """

    pairs: List[Tuple[str, List[str]]] = []
    for tpl in templates or []:
        suffix_tpl = str(tpl["suffix"])
        backend_tpls = [str(b) for b in tpl["backends"]]
        start = int(tpl.get("start", 0))
        end = int(tpl.get("end", start))
        if end < start:
            raise ValueError(f"route template {suffix_tpl!r} has end < start")
        for i in range(start, end + 1):
            pairs.append(
                (
                    suffix_tpl.replace("{i}", str(i)),
                    [b.replace("{i}", str(i)) for b in backend_tpls],
                )
            )
    return pairs


def build_route_table(
    routes: Iterable[Tuple[str, Sequence[str]]],
    generated: Iterable[Tuple[str, Sequence[str]]] = (),
) -> RouteTable:
    """Brief: Merge explicit and generated routes into one RouteTable.

    Inputs:
      - routes: Explicit (suffix, backends) pairs from configuration.
      - generated: Pairs from expand_route_templates.

    Outputs:
      - RouteTable where explicit routes shadow generated ones with the same
        suffix; duplicate explicit suffixes raise ValueError.
    """

    explicit = list(routes)
    explicit_suffixes = {normalize_name(s) for s, _ in explicit}
    merged = list(explicit)
    for suffix, backends in generated:
        if normalize_name(suffix) in explicit_suffixes:
            logger.debug("Generated route %s shadowed by explicit route", suffix)
            continue
        merged.append((suffix, backends))
    return RouteTable.from_pairs(merged)
