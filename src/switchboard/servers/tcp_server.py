from __future__ import annotations

import logging
import socket
import socketserver
import threading

from .dispatcher import Dispatcher, ResponseWriter
from .transports.tcp import TCPError, frame, read_frame
from .transports.udp import enable_dual_stack, family_for

logger = logging.getLogger("switchboard.tcp")

IDLE_TIMEOUT = 15.0


class TCPResponseWriter(ResponseWriter):
    """Brief: Writes length-prefixed DNS messages on a client connection.

    Inputs:
      - sock: Accepted client socket.
      - client_ip: Peer address string.

    Outputs:
      - ResponseWriter with transport 'tcp'; may be written many times for a
        relayed zone transfer.
    """

    transport = "tcp"

    def __init__(self, sock: socket.socket, client_ip: str) -> None:
        super().__init__(client_ip)
        self._sock = sock
        self._lock = threading.Lock()

    def write(self, wire: bytes) -> None:
        with self._lock:
            self._sock.sendall(frame(wire))


class DNSTCPHandler(socketserver.BaseRequestHandler):
    """
    Brief: Serves pipelined queries on one connection, one at a time.

    Inputs:
    - request: Accepted socket provided by socketserver
    - client_address: peer address

    Outputs:
    - None; returns on EOF, a zero-length frame, a framing error or the idle
      timeout.
    """

    def handle(self) -> None:
        sock: socket.socket = self.request  # type: ignore[assignment]
        sock.settimeout(getattr(self.server, "idle_timeout", IDLE_TIMEOUT))
        peer_ip = str(self.client_address[0]) if self.client_address else "0.0.0.0"
        writer = TCPResponseWriter(sock, peer_ip)
        while True:
            try:
                query = read_frame(sock)
            except (OSError, TCPError) as exc:
                logger.debug("Closing TCP connection from %s: %s", peer_ip, exc)
                return
            if not query:
                return
            self.server.dispatcher.handle(query, writer)  # type: ignore[attr-defined]


class _ThreadingTCPServer(socketserver.ThreadingTCPServer):
    daemon_threads = True
    allow_reuse_address = True

    def __init__(self, server_address, handler_cls, dispatcher: Dispatcher, idle_timeout: float) -> None:
        self.address_family = family_for(server_address[0])
        self.dispatcher = dispatcher
        self.idle_timeout = idle_timeout
        super().__init__(server_address, handler_cls)

    def server_bind(self) -> None:
        if self.server_address[0] == "::":
            enable_dual_stack(self.socket)
        super().server_bind()


class TCPServer:
    """A threaded TCP listener; one handler thread per client connection."""

    def __init__(
        self, host: str, port: int, dispatcher: Dispatcher, idle_timeout: float = IDLE_TIMEOUT
    ) -> None:
        try:
            self.server = _ThreadingTCPServer((host, port), DNSTCPHandler, dispatcher, idle_timeout)
        except PermissionError as e:
            logger.error(
                "Permission denied when binding to %s:%d. Try a port >1024 or run with elevated privileges. Original error: %s",
                host,
                port,
                e,
            )
            raise
        logger.info("DNS TCP listener bound to %s:%d", *self.server_address[:2])

    @property
    def server_address(self):
        return self.server.server_address

    def serve_forever(self) -> None:
        self.server.serve_forever()

    def stop(self) -> None:
        """Stop accepting connections and close the listening socket."""
        self.server.shutdown()
        self.server.server_close()
