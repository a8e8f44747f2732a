from __future__ import annotations

import logging
import socket
import socketserver
from typing import Tuple

from .dispatcher import Dispatcher, ResponseWriter
from .transports.udp import enable_dual_stack, family_for

logger = logging.getLogger("switchboard.udp")


class UDPResponseWriter(ResponseWriter):
    """Brief: Sends one datagram back to the querying client.

    Inputs:
      - sock: The listener's UDP socket.
      - client_address: (ip, port[, flow, scope]) of the client.

    Outputs:
      - ResponseWriter with transport 'udp'.
    """

    transport = "udp"

    def __init__(self, sock: socket.socket, client_address: Tuple) -> None:
        super().__init__(str(client_address[0]) if client_address else "0.0.0.0")
        self._sock = sock
        self._addr = client_address

    def write(self, wire: bytes) -> None:
        self._sock.sendto(wire, self._addr)


class DNSUDPHandler(socketserver.BaseRequestHandler):
    """
    Brief: Hands each datagram to the server's Dispatcher.

    Inputs:
    - request: (data, socket) tuple provided by socketserver
    - client_address: peer address

    Outputs:
    - None
    """

    def handle(self) -> None:
        data, sock = self.request  # type: ignore
        writer = UDPResponseWriter(sock, self.client_address)
        self.server.dispatcher.handle(data, writer)  # type: ignore[attr-defined]


class _ThreadingUDPServer(socketserver.ThreadingUDPServer):
    daemon_threads = True
    allow_reuse_address = True

    def __init__(self, server_address, handler_cls, dispatcher: Dispatcher) -> None:
        self.address_family = family_for(server_address[0])
        self.dispatcher = dispatcher
        super().__init__(server_address, handler_cls)

    def server_bind(self) -> None:
        if self.server_address[0] == "::":
            enable_dual_stack(self.socket)
        super().server_bind()


class UDPServer:
    """A threaded UDP listener bound to one address.

    Example use:
        >>> import threading
        >>> server = UDPServer("127.0.0.1", 0, dispatcher)  # doctest: +SKIP
        >>> threading.Thread(target=server.serve_forever, daemon=True).start()  # doctest: +SKIP
        >>> server.stop()  # doctest: +SKIP
    """

    def __init__(self, host: str, port: int, dispatcher: Dispatcher) -> None:
        try:
            self.server = _ThreadingUDPServer((host, port), DNSUDPHandler, dispatcher)
        except PermissionError as e:
            logger.error(
                "Permission denied when binding to %s:%d. Try a port >1024 or run with elevated privileges. Original error: %s",
                host,
                port,
                e,
            )
            raise
        logger.info("DNS UDP listener bound to %s:%d", *self.server_address[:2])

    @property
    def server_address(self):
        return self.server.server_address

    def serve_forever(self) -> None:
        self.server.serve_forever()

    def stop(self) -> None:
        """Stop accepting datagrams and close the socket."""
        self.server.shutdown()
        self.server.server_close()
