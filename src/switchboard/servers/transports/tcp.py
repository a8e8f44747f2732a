import socket


class TCPError(Exception):
    """
    A DNS-over-TCP transport error.

    Inputs:
      - message: Error description.
    Outputs:
      - Exception instance.

    Brief: Raised for connect/read/write or framing errors.
    """

    pass


def recv_exact(sock: socket.socket, n: int) -> bytes:
    """
    Receive exactly n bytes from a blocking socket.

    Inputs:
      - sock: Socket
      - n: Number of bytes
    Outputs:
      - bytes: Exactly n bytes unless EOF occurs.

    Example:
      >>> recv_exact(sock, 2)
    """
    remaining = n
    chunks = []
    while remaining > 0:
        chunk = sock.recv(remaining)
        if not chunk:
            break
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def frame(message: bytes) -> bytes:
    """Prefix a DNS message with its 2-byte length (RFC 7766)."""
    return len(message).to_bytes(2, "big") + message


def read_frame(sock: socket.socket):
    """
    Read one length-prefixed DNS message.

    Inputs:
      - sock: Connected TCP socket.
    Outputs:
      - bytes, or None on a clean EOF before the length header.

    Raises TCPError when the stream ends mid-frame.
    """
    hdr = recv_exact(sock, 2)
    if not hdr:
        return None
    if len(hdr) != 2:
        raise TCPError("short read on length header")
    ln = int.from_bytes(hdr, "big")
    body = recv_exact(sock, ln)
    if len(body) != ln:
        raise TCPError("short read on body")
    return body


def connect(host: str, port: int, connect_timeout_ms: int, read_timeout_ms: int):
    """
    Open a TCP connection to host:port with DNS-friendly socket options.

    Inputs:
      - host, port: Backend endpoint.
      - connect_timeout_ms / read_timeout_ms: Timeouts in milliseconds.
    Outputs:
      - socket.socket ready for framed I/O.
    """
    sock = socket.create_connection((host, int(port)), timeout=connect_timeout_ms / 1000.0)
    sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
    sock.settimeout(read_timeout_ms / 1000.0)
    return sock


def tcp_query(
    host: str,
    port: int,
    query: bytes,
    *,
    connect_timeout_ms: int = 1000,
    read_timeout_ms: int = 1500,
) -> bytes:
    """
    Perform a single DNS-over-TCP query to host:port using length-prefixed framing (RFC 7766).

    Inputs:
      - host: Backend host/IP.
      - port: Backend TCP port (53 typically).
      - query: Wire-format DNS query bytes.
      - connect_timeout_ms: TCP connect timeout.
      - read_timeout_ms: Read timeout per operation.
    Outputs:
      - bytes: Wire-format DNS response.

    Example:
      >>> resp = tcp_query('192.0.2.53', 53, b'\x12\x34...')
    """
    try:
        sock = connect(host, port, connect_timeout_ms, read_timeout_ms)
        try:
            sock.sendall(frame(query))
            resp = read_frame(sock)
            if resp is None:
                raise TCPError("connection closed before response")
            return resp
        finally:
            sock.close()
    except (OSError, TimeoutError) as e:
        raise TCPError(f"Network error from {host}:{port}: {e}") from e
