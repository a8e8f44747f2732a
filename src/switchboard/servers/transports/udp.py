import socket


class UDPError(Exception):
    """
    Brief: DNS-over-UDP transport error.

    Inputs:
    - message: description

    Outputs:
    - Exception instance
    """

    pass


def family_for(host: str) -> int:
    return socket.AF_INET6 if ":" in host else socket.AF_INET


def enable_dual_stack(sock: socket.socket) -> None:
    """Let an IPv6 wildcard socket also accept IPv4 peers (as ::ffff:a.b.c.d)."""
    if sock.family == socket.AF_INET6 and hasattr(socket, "IPV6_V6ONLY"):
        sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)


def udp_query(
    host: str,
    port: int,
    query: bytes,
    *,
    timeout_ms: int = 2000,
) -> bytes:
    """
    Brief: Perform a single UDP DNS exchange with a backend.

    Inputs:
    - host: backend host/IP (IPv4 or IPv6 literal)
    - port: backend UDP port
    - query: wire-format DNS query bytes, sent unmodified
    - timeout_ms: socket timeout in milliseconds

    Outputs:
    - bytes: the first datagram received from the backend

    Example:
        >>> try:
        ...     udp_query('127.0.0.1', 9, b'\x00\x01', timeout_ms=10)
        ... except UDPError:
        ...     pass
    """
    try:
        s = socket.socket(family_for(host), socket.SOCK_DGRAM)
        try:
            s.settimeout(timeout_ms / 1000.0)
            s.sendto(query, (host, int(port)))
            data, _ = s.recvfrom(65535)
            return data
        finally:
            s.close()
    except OSError as e:
        raise UDPError(f"UDP error from {host}:{port}: {e}") from e
