import logging
import socket
import time

import pytest

import zappa_gateway as zg

# Linux routes all of 127.0.0.0/8 over lo, so the IPTV side can use its own
# loopback address while the "app" keeps 127.0.0.1 with the same port number.
LAN_IP = "127.0.0.1"
IPTV_IP = "127.0.0.2"


def free_port(host: str = LAN_IP) -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind((host, 0))
        return s.getsockname()[1]


def wait_until(pred, timeout: float = 3.0, interval: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if pred():
            return True
        time.sleep(interval)
    return bool(pred())


def recv_exact(sock: socket.socket, n: int) -> bytes:
    buf = bytearray()
    while len(buf) < n:
        chunk = sock.recv(n - len(buf))
        if not chunk:
            break
        buf.extend(chunk)
    return bytes(buf)


def recv_eof(sock: socket.socket) -> bytes:
    """What a peer sees after the gateway closed its side: b'' (or a reset)."""
    try:
        return sock.recv(1)
    except ConnectionResetError:
        return b""


class FakeListener:
    """Stands in for the joined discovery socket: hands out canned recvfrom() results."""

    def __init__(self, items):
        self.items = list(items)
        self.closed = False

    def recvfrom(self, bufsize):
        item = self.items.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    def close(self):
        self.closed = True


@pytest.fixture
def router():
    return zg.EventRouter(log=logging.getLogger("zappa_gateway_tests"))


@pytest.fixture
def pair_session():
    """A session whose accepted pair is built from socketpairs, no network needed."""
    mcast = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    acc = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    session = zg.Session(port=51000, peer_address=LAN_IP, iptv_address=IPTV_IP, mcast_sock=mcast, accept_sock=acc)
    yield session
    session.close()
