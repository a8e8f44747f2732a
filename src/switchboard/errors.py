"""Error taxonomy for the switchboard request pipeline.

Brief:
  Every per-request refusal raised inside the dispatcher pipeline derives from
  ProxyError. The dispatcher catches ProxyError, logs the specific subclass,
  and answers the client with a single generic SERVFAIL so that no routing
  detail leaks to the client.

Inputs:
  - None

Outputs:
  - Exception classes used across routing, proxying and signing.
"""

from __future__ import annotations


class ProxyError(Exception):
    """Brief: Base class for per-request failures that end in SERVFAIL."""

    reason = "proxy_error"


class MalformedQuery(ProxyError):
    """Brief: The query carries no questions (or is otherwise unusable)."""

    reason = "malformed_query"


class DisallowedOperation(ProxyError):
    """Brief: The request asks for something this listener refuses.

    Raised for zone transfers over UDP, for transfers while the relay is
    disabled, and for transfers from clients outside the allow list.
    """

    reason = "disallowed"


class NoRouteAvailable(ProxyError):
    """Brief: No suffix route matched and no default backend is configured."""

    reason = "no_route"


class UpstreamUnreachable(ProxyError):
    """Brief: The backend exchange or transfer session failed.

    Inputs:
      - message: Description including the backend address.

    Outputs:
      - Exception instance; never retried.
    """

    reason = "upstream_unreachable"


class SigningUnavailable(ProxyError):
    """Brief: No usable signing key exists for a mail zone.

    The dispatcher treats this as a fallthrough to ordinary proxying rather
    than a client-visible failure.
    """

    reason = "signing_unavailable"


class KeyLoadError(Exception):
    """Brief: A key file could not be loaded at startup.

    Inputs:
      - message: Description including the offending path.

    Outputs:
      - Exception instance; fatal for process startup.
    """

    pass
