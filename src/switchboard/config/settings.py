from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Optional, Tuple

from ..dnssec.mx_signer import MailZone
from ..routing.route_table import BackendAddress, RouteTable

IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network


@dataclass(frozen=True)
class ProxySettings:
    """Immutable runtime configuration shared by every request handler.

    Inputs (constructor fields):
      - route_table: RouteTable built from explicit and generated routes.
      - default_backend: Backend used when no route matches and for DS and
        transfer queries; None disables the fallback.
      - timeout_ms: Per-exchange connect/read timeout.
      - backend_strategy: 'first' or 'failover'.
      - transfer_relay / mx_synthesis / auto_routes: Feature toggles.
      - transfer_allow: Client networks allowed to request transfers; empty
        means any client.
      - mail_zones: Read-only zone name -> MailZone mapping.
      - key_dir: Directory holding the signing keys.
      - listen_*: Listener address and which transports to start.
      - logging: Raw logging section for init_logging().

    Outputs:
      - Frozen settings object built once at startup.
    """

    route_table: RouteTable = field(default_factory=RouteTable)
    default_backend: Optional[BackendAddress] = None
    timeout_ms: int = 2000
    backend_strategy: str = "first"
    transfer_relay: bool = True
    mx_synthesis: bool = True
    auto_routes: bool = False
    transfer_allow: Tuple[IPNetwork, ...] = ()
    mail_zones: Mapping[str, MailZone] = field(
        default_factory=lambda: MappingProxyType({})
    )
    key_dir: Optional[str] = None
    listen_host: str = "::"
    listen_port: int = 53
    listen_udp: bool = True
    listen_tcp: bool = True
    logging: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    def transfer_allowed(self, client_ip: str) -> bool:
        """Brief: True when *client_ip* may request a zone transfer.

        Inputs:
          - client_ip: Textual client address (IPv4, IPv6 or v4-mapped v6).

        Outputs:
          - bool; an empty allow list admits every client, unparsable
            addresses are never admitted by a non-empty list.
        """

        if not self.transfer_allow:
            return True
        try:
            addr = ipaddress.ip_address(str(client_ip).split("%", 1)[0])
        except ValueError:
            return False
        mapped = getattr(addr, "ipv4_mapped", None)
        if mapped is not None:
            addr = mapped
        return any(addr.version == net.version and addr in net for net in self.transfer_allow)
