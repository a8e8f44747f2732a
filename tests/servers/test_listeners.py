"""
Brief: End-to-end tests for the threaded UDP and TCP listeners.

Inputs:
  - None

Outputs:
  - None
"""

import socket
import threading

import pytest
from dnslib import QTYPE, RCODE, RR, SOA, A, DNSRecord

from switchboard.config.settings import ProxySettings
from switchboard.routing.route_table import RouteTable, parse_backend
from switchboard.servers.dispatcher import Dispatcher
from switchboard.servers.tcp_server import TCPServer
from switchboard.servers.transports.tcp import frame, read_frame
from switchboard.servers.udp_server import UDPServer

pytestmark = pytest.mark.slow


def _axfr_responder(body):
    req = DNSRecord.parse(body)
    soa = RR("example.com.", QTYPE.SOA, rdata=SOA("ns1.example.com.", "admin.example.com.", (9, 1, 1, 1, 1)))
    first = req.reply()
    first.add_answer(soa, RR("www.example.com.", QTYPE.A, rdata=A("192.0.2.1")))
    second = req.reply()
    second.add_answer(RR("mail.example.com.", QTYPE.A, rdata=A("192.0.2.2")))
    third = req.reply()
    third.add_answer(soa)
    return [first.pack(), second.pack(), third.pack()]


def _dispatcher(default_backend):
    settings = ProxySettings(
        route_table=RouteTable(),
        default_backend=parse_backend(default_backend),
        timeout_ms=1000,
    )
    return Dispatcher(settings)


@pytest.fixture
def listener():
    """
    Brief: Factory starting a UDP or TCP listener on an ephemeral port.

    Inputs:
      - cls: UDPServer or TCPServer
      - dispatcher: Dispatcher instance
      - host: bind address (default 127.0.0.1)

    Outputs:
      - (host, port) of the running listener; stopped after the test
    """
    servers = []

    def _start(cls, dispatcher, host="127.0.0.1", **kwargs):
        server = cls(host, 0, dispatcher, **kwargs)
        threading.Thread(target=server.serve_forever, daemon=True).start()
        servers.append(server)
        return server.server_address[:2]

    yield _start
    for s in servers:
        s.stop()


def test_udp_listener_proxies_query(listener, udp_backend):
    backend = udp_backend(answer_ip="192.0.2.53")
    host, port = listener(UDPServer, _dispatcher(backend.backend))
    q = DNSRecord.question("www.example.com.", "A")
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        sock.settimeout(2)
        sock.sendto(q.pack(), (host, port))
        data, _ = sock.recvfrom(65535)
    reply = DNSRecord.parse(data)
    assert reply.header.id == q.header.id
    assert str(reply.rr[0].rdata) == "192.0.2.53"


def test_udp_listener_refuses_transfer(listener, udp_backend, tcp_backend):
    backend = tcp_backend(responder=_axfr_responder)
    host, port = listener(UDPServer, _dispatcher(backend.backend))
    q = DNSRecord.question("example.com.", "AXFR")
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        sock.settimeout(2)
        sock.sendto(q.pack(), (host, port))
        data, _ = sock.recvfrom(65535)
    assert DNSRecord.parse(data).header.rcode == RCODE.SERVFAIL
    assert backend.connections == 0


def test_tcp_listener_serves_pipelined_queries(listener, tcp_backend):
    backend = tcp_backend(answer_ip="192.0.2.54")
    host, port = listener(TCPServer, _dispatcher(backend.backend))
    q1 = DNSRecord.question("a.example.com.", "A")
    q2 = DNSRecord.question("b.example.com.", "A")
    with socket.create_connection((host, port), timeout=2) as sock:
        sock.sendall(frame(q1.pack()) + frame(q2.pack()))
        r1 = DNSRecord.parse(read_frame(sock))
        r2 = DNSRecord.parse(read_frame(sock))
    assert (r1.header.id, r2.header.id) == (q1.header.id, q2.header.id)
    assert str(r2.rr[0].rdata) == "192.0.2.54"


def test_tcp_listener_relays_axfr(listener, tcp_backend):
    backend = tcp_backend(responder=_axfr_responder)
    host, port = listener(TCPServer, _dispatcher(backend.backend))
    q = DNSRecord.question("example.com.", "AXFR")
    with socket.create_connection((host, port), timeout=2) as sock:
        sock.sendall(frame(q.pack()))
        msgs = [DNSRecord.parse(read_frame(sock)) for _ in range(3)]
    assert [m.header.id for m in msgs] == [q.header.id] * 3
    assert msgs[0].rr[0].rtype == QTYPE.SOA
    assert msgs[2].rr[-1].rtype == QTYPE.SOA


def test_tcp_listener_closes_idle_connection(listener, tcp_backend):
    backend = tcp_backend()
    host, port = listener(TCPServer, _dispatcher(backend.backend), idle_timeout=0.2)
    with socket.create_connection((host, port), timeout=2) as sock:
        assert read_frame(sock) is None


def _ipv6_loopback_available():
    if not socket.has_ipv6:
        return False
    try:
        with socket.socket(socket.AF_INET6, socket.SOCK_DGRAM) as s:
            s.bind(("::1", 0))
    except OSError:
        return False
    return True


@pytest.mark.skipif(not _ipv6_loopback_available(), reason="needs IPv6 loopback")
def test_wildcard_listener_answers_ipv4_and_ipv6(listener, udp_backend, tcp_backend):
    """
    Brief: A '::' listener serves clients on both ::1 and 127.0.0.1.

    Inputs:
      - None

    Outputs:
      - None: Asserts UDP answers over each family and a TCP answer over ::1
    """
    backend = udp_backend(answer_ip="192.0.2.55")
    _, port = listener(UDPServer, _dispatcher(backend.backend), host="::")
    q = DNSRecord.question("www.example.com.", "A")
    for family, host in ((socket.AF_INET6, "::1"), (socket.AF_INET, "127.0.0.1")):
        with socket.socket(family, socket.SOCK_DGRAM) as sock:
            sock.settimeout(2)
            sock.sendto(q.pack(), (host, port))
            data, _ = sock.recvfrom(65535)
        assert str(DNSRecord.parse(data).rr[0].rdata) == "192.0.2.55"

    tcp_stub = tcp_backend(answer_ip="192.0.2.56")
    _, tcp_port = listener(TCPServer, _dispatcher(tcp_stub.backend), host="::")
    with socket.create_connection(("::1", tcp_port), timeout=2) as sock:
        sock.sendall(frame(q.pack()))
        reply = DNSRecord.parse(read_frame(sock))
    assert str(reply.rr[0].rdata) == "192.0.2.56"
