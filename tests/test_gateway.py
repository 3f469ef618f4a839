"""Tests for the Gateway service wrapper, including a loopback end-to-end run."""

import asyncio
import logging
import socket

import pytest

import zappa_gateway as zg
from conftest import IPTV_IP, LAN_IP, recv_eof, recv_exact, wait_until

log = logging.getLogger("zappa_gateway_tests")


class TestGatewayConfig:
    def test_defaults(self):
        gw = zg.Gateway({"lan": LAN_IP, "iptv": IPTV_IP}, log)

        assert gw.lan_address == LAN_IP
        assert gw.iptv_address == IPTV_IP
        assert gw.tick_ms == zg.TICK_MS
        assert gw.scheduler.tick_sec == pytest.approx(0.05)
        assert gw.bridge.buffer_size == zg.BUFFER_SIZE
        assert gw.registry.accept_backlog == 1
        assert gw.relay.group == zg.DISCOVERY_GROUP
        assert gw.relay.port == zg.DISCOVERY_PORT

    def test_values_are_clamped(self):
        cfg = {"lan": LAN_IP, "iptv": IPTV_IP, "relay": {"tick_ms": 0, "buffer_size": "lots"}}

        gw = zg.Gateway(cfg, log)

        assert gw.tick_ms == 1
        assert gw.buffer_size == zg.BUFFER_SIZE

    def test_same_address_is_rejected(self):
        with pytest.raises(zg.SetupError):
            zg.Gateway({"lan": LAN_IP, "iptv": LAN_IP}, log)

    def test_missing_address_is_rejected(self):
        with pytest.raises(zg.SetupError):
            zg.Gateway({"lan": LAN_IP}, log)

    def test_stats_before_start(self):
        gw = zg.Gateway({"lan": LAN_IP, "iptv": IPTV_IP}, log)

        stats = gw.stats_snapshot()

        assert stats["sessions"] == 0
        assert stats["worker_errors"] == 0
        assert gw.list_sessions() == []

    def test_periodic_stats(self, caplog):
        gw = zg.Gateway({"lan": LAN_IP, "iptv": IPTV_IP}, log)
        gw.stats_interval_sec = 0.01

        async def _run():
            task = asyncio.create_task(gw.periodic_stats())
            await asyncio.sleep(0.1)
            task.cancel()

        with caplog.at_level(logging.INFO, logger="zappa_gateway_tests"):
            asyncio.run(_run())

        assert any(r.getMessage().startswith("stats.stats ") for r in caplog.records)


@pytest.fixture
def phone_tcp():
    srv = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    srv.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    srv.bind((LAN_IP, 0))
    srv.listen(4)
    srv.settimeout(3.0)
    yield srv
    srv.close()


@pytest.fixture
def phone_udp(phone_tcp):
    s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    s.bind((LAN_IP, phone_tcp.getsockname()[1]))
    yield s
    s.close()


@pytest.fixture
def gateway():
    gw = zg.Gateway({"lan": LAN_IP, "iptv": IPTV_IP, "relay": {"tick_ms": 10}}, log)
    # a plain socket instead of the joined group; the rest is the real stack
    listener = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    listener.bind((LAN_IP, 0))
    listener.settimeout(0.1)
    gw.relay.sock = listener
    yield gw
    gw.stop()


def test_discovery_to_relay_and_back(gateway, phone_tcp, phone_udp):
    port = phone_udp.getsockname()[1]
    gateway.start()

    phone_udp.sendto(b"HELLO", gateway.relay.sock.getsockname())
    assert wait_until(lambda: gateway.registry.find_by_port(port) is not None)
    session = gateway.registry.find_by_port(port)
    assert session.peer_address == LAN_IP
    assert session.accept_sock.getsockname() == (IPTV_IP, port)

    device = socket.create_connection((IPTV_IP, port), timeout=3)
    phone_conn, _ = phone_tcp.accept()
    phone_conn.settimeout(3.0)
    try:
        assert wait_until(lambda: session.state == zg.ACCEPTED)

        device.sendall(b"stream-data")
        assert recv_exact(phone_conn, 11) == b"stream-data"
        phone_conn.sendall(b"key")
        assert recv_exact(device, 3) == b"key"

        device.close()
        assert wait_until(lambda: session.state == zg.LISTENING)
        assert recv_eof(phone_conn) == b""

        # a second discovery from the same port keeps the single session
        phone_udp.sendto(b"HELLO", gateway.relay.sock.getsockname())
        handled = (f"{zg.ROLE_LISTEN}.ok", f"{zg.ROLE_LISTEN}.error")
        assert wait_until(lambda: sum(n for k, n in gateway.scheduler.outcome_counts().items() if k in handled) >= 2)
        assert len(gateway.registry) == 1

        assert wait_until(lambda: gateway.stats_snapshot()["bytes_to_device"] == 3)
        stats = gateway.stats_snapshot()
        assert stats["sessions"] == 1
        assert stats["accepts"] == 1
        assert stats["disconnects"] == 1
        assert stats["bytes_to_client"] == 11
        assert stats["bytes_to_device"] == 3
    finally:
        device.close()
        phone_conn.close()
