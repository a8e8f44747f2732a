"""
Brief: Global pytest configuration enforcing per-test 10s timeout.

Inputs:
  - None

Outputs:
  - None
"""

import logging
import os
import signal
import socket
import sys
import threading
import time

import pytest
from dnslib import QTYPE, RR, A, DNSRecord

# Ensure 'src' is on sys.path so 'switchboard' package is importable in tests
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
SRC_DIR = os.path.join(ROOT, "src")
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)


def _a_responder(ip):
    def respond(data):
        req = DNSRecord.parse(data)
        reply = req.reply()
        reply.add_answer(RR(req.q.qname, QTYPE.A, rdata=A(ip), ttl=60))
        return reply.pack()

    return respond


def _recv_exact(sock, n):
    data = b""
    while len(data) < n:
        chunk = sock.recv(n - len(data))
        if not chunk:
            break
        data += chunk
    return data


class _UDPBackendStub:
    """Threaded UDP backend; each datagram is answered on its own thread."""

    def __init__(self, responder, delay=0.0):
        self.responder = responder
        self.delay = delay
        self.queries = []
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.sock.bind(("127.0.0.1", 0))
        self.addr = self.sock.getsockname()
        self._stop = False
        self.thread = threading.Thread(target=self._loop, daemon=True)

    @property
    def backend(self):
        return f"{self.addr[0]}:{self.addr[1]}"

    def start(self):
        self.thread.start()
        time.sleep(0.02)
        return self

    def _loop(self):
        while not self._stop:
            try:
                self.sock.settimeout(0.2)
                data, peer = self.sock.recvfrom(65535)
            except OSError:
                continue
            self.queries.append(data)
            threading.Thread(target=self._answer, args=(data, peer), daemon=True).start()

    def _answer(self, data, peer):
        if self.delay:
            time.sleep(self.delay)
        resp = self.responder(data)
        if resp is None:
            return
        try:
            self.sock.sendto(resp, peer)
        except OSError:
            pass

    def close(self):
        self._stop = True
        self.sock.close()


class _TCPBackendStub:
    """Threaded TCP backend; the responder returns a list of frames per query."""

    def __init__(self, responder, delay=0.0):
        self.responder = responder
        self.delay = delay
        self.queries = []
        self.connections = 0
        self.sock = socket.socket()
        self.sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.sock.bind(("127.0.0.1", 0))
        self.sock.listen(16)
        self.addr = self.sock.getsockname()
        self._stop = False
        self.thread = threading.Thread(target=self._loop, daemon=True)

    @property
    def backend(self):
        return f"{self.addr[0]}:{self.addr[1]}"

    def start(self):
        self.thread.start()
        time.sleep(0.02)
        return self

    def _loop(self):
        while not self._stop:
            try:
                self.sock.settimeout(0.2)
                conn, _ = self.sock.accept()
            except OSError:
                continue
            self.connections += 1
            threading.Thread(target=self._conn, args=(conn,), daemon=True).start()

    def _conn(self, conn):
        with conn:
            while True:
                try:
                    hdr = _recv_exact(conn, 2)
                    if len(hdr) != 2:
                        return
                    body = _recv_exact(conn, int.from_bytes(hdr, "big"))
                except OSError:
                    return
                self.queries.append(body)
                if self.delay:
                    time.sleep(self.delay)
                frames = self.responder(body)
                if frames is None:
                    return
                if isinstance(frames, (bytes, bytearray)):
                    frames = [frames]
                try:
                    for f in frames:
                        conn.sendall(len(f).to_bytes(2, "big") + f)
                except OSError:
                    return

    def close(self):
        self._stop = True
        self.sock.close()


@pytest.fixture
def udp_backend():
    """
    Brief: Factory for local UDP backend stubs, closed after the test.

    Inputs:
      - answer_ip: A record returned for every query (default responder)
      - responder: optional callable(bytes) -> bytes|None
      - delay: seconds to wait before answering

    Outputs:
      - started stub exposing .addr, .backend ('host:port') and .queries
    """
    stubs = []

    def _make(answer_ip="192.0.2.1", responder=None, delay=0.0):
        stub = _UDPBackendStub(responder or _a_responder(answer_ip), delay).start()
        stubs.append(stub)
        return stub

    yield _make
    for s in stubs:
        s.close()


@pytest.fixture
def tcp_backend():
    """
    Brief: Factory for local TCP backend stubs, closed after the test.

    Inputs:
      - answer_ip: A record returned for every query (default responder)
      - responder: optional callable(bytes) -> bytes|list[bytes]|None
      - delay: seconds to wait before answering

    Outputs:
      - started stub exposing .addr, .backend, .queries and .connections
    """
    stubs = []

    def _make(answer_ip="192.0.2.1", responder=None, delay=0.0):
        stub = _TCPBackendStub(responder or _a_responder(answer_ip), delay).start()
        stubs.append(stub)
        return stub

    yield _make
    for s in stubs:
        s.close()


def _alarm_handler(signum, frame):
    """
    Brief: Signal handler that raises TimeoutError when alarm triggers.

    Inputs:
      - signum: signal number (int)
      - frame: current frame (ignored)

    Outputs:
      - None: Raises TimeoutError to fail the test
    """
    raise TimeoutError("Test exceeded 10 seconds")


if hasattr(signal, "SIGALRM"):
    signal.signal(signal.SIGALRM, _alarm_handler)


@pytest.fixture
def write_key_file():
    """
    Brief: Factory writing a BIND-style ECDSA P-384 private key file.

    Inputs:
      - directory: Path of the key directory
      - zone: zone name as it appears in the file name (e.g. 'example.re.')
      - tag: key tag for the file name
      - activate: Activate timestamp (default: 2020-01-01)
      - private_key: optional cryptography key (generated when omitted)

    Outputs:
      - (path, private_key) tuple
    """
    import base64

    from cryptography.hazmat.primitives.asymmetric import ec

    def _write(directory, zone="example.re.", tag=12345, activate="20200101000000", private_key=None):
        key = private_key or ec.generate_private_key(ec.SECP384R1())
        scalar = key.private_numbers().private_value.to_bytes(48, "big")
        path = directory / f"K{zone}+014+{tag:05d}.private"
        path.write_text(
            "Private-key-format: v1.3\n"
            "Algorithm: 14 (ECDSAP384SHA384)\n"
            f"PrivateKey: {base64.b64encode(scalar).decode()}\n"
            "Created: 20200101000000\n"
            "Publish: 20200101000000\n"
            f"Activate: {activate}\n"
        )
        return path, key

    return _write


@pytest.fixture(autouse=True)
def restore_root_logging():
    """
    Brief: Undo init_logging() side effects so tests do not leak handlers.

    Inputs:
      - None

    Outputs:
      - None
    """
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for h in list(root.handlers):
        if h not in handlers:
            root.removeHandler(h)
            h.close()
    for h in handlers:
        if h not in root.handlers:
            root.addHandler(h)
    root.setLevel(level)
    logging.captureWarnings(False)


@pytest.fixture(autouse=True)
def enforce_test_timeout():
    """
    Brief: Enforce a hard 10-second timeout for each test.

    Inputs:
      - None

    Outputs:
      - None: Cancels alarm after test
    """
    if hasattr(signal, "SIGALRM"):
        signal.alarm(10)
        try:
            yield
        finally:
            signal.alarm(0)
    else:
        yield
