#!/usr/bin/env python3
"""
zappa_gateway.py

Gateway for the Zappa mobile app between a regular LAN and an isolated IPTV
network (router in bridged mode, LAN and IPTV reachable through two separate
interfaces on this host).

How it works:
1. Listen for discovery multicasts to 239.16.16.195:5555 on the LAN interface.
2. The app sends its discovery datagram from a random local port.
3. A session is created for that port: a UDP socket and a TCP listener, both
   bound to (iptv_ip, port). Sessions are kept for the life of the process.
4. The datagram is re-sent unchanged on the IPTV network from that UDP socket.
5. The IPTV box connects back over TCP to (iptv_ip, port).
6. The gateway connects to (app_ip, port) on the LAN and relays bytes both
   ways until one side closes; the session then goes back to listening.

Scheduling:
- One scheduler thread ticks every relay.tick_ms (default 50 ms).
- Each tick makes sure exactly one worker runs per role:
    * mcast_listen          (one datagram per worker)
    * accept                (per session, while listening)
    * forward_to_client     (per session, while accepted)
    * forward_to_device     (per session, while accepted)
- Workers clear their own running flag and report a WorkerResult. Whatever the
  outcome, the role is respawned on a later tick if the session state still
  calls for it. No backoff, no retry budget.

Known limitation:
- No timeouts on relayed connections. A peer that stops sending without
  closing keeps its pump blocked until the process stops.

Usage:
  zappa-gateway 192.168.1.10 10.0.0.5
  zappa-gateway eth0 eth1 --log-level DEBUG
  zappa-gateway --config zappa_gateway.conf
"""

from __future__ import annotations

import argparse
import asyncio
import ipaddress
import json
import logging
import os
import queue
import re
import signal
import socket
import struct
import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, DefaultDict, Dict, List, Optional, Tuple

# --- Scapy (interface name -> IPv4 address) ------------------------------------
try:
    from scapy.all import get_if_addr  # type: ignore
except Exception as e:  # pragma: no cover
    raise SystemExit(
        "Missing scapy. Install with:\n"
        "  pip install scapy\n"
        f"Original error: {e!r}"
    ) from e


# =============================================================================
# Protocol constants
# =============================================================================

DISCOVERY_GROUP = "239.16.16.195"
DISCOVERY_PORT = 5555

BUFFER_SIZE = 4096
DATAGRAM_MAX = 65535
TICK_MS = 50
ACCEPT_BACKLOG = 1
LISTEN_TIMEOUT_SEC = 1.0
STATS_INTERVAL_SEC = 30.0

LISTENING = "listening"
ACCEPTED = "accepted"

ROLE_LISTEN = "mcast_listen"
ROLE_ACCEPT = "accept"
ROLE_TO_CLIENT = "forward_to_client"
ROLE_TO_DEVICE = "forward_to_device"

SESSION_ROLES: Dict[str, Tuple[str, ...]] = {
    LISTENING: (ROLE_ACCEPT,),
    ACCEPTED: (ROLE_TO_CLIENT, ROLE_TO_DEVICE),
}


# =============================================================================
# Errors
# =============================================================================

class GatewayError(Exception):
    pass


class SetupError(GatewayError):
    """Startup problem. The relay must not start."""


class TransientError(GatewayError):
    """Per-worker failure. The role is retried on a later tick."""


# =============================================================================
# Small utilities
# =============================================================================

def monotime() -> float:
    return time.monotonic()


def utc_iso() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


def clamp_int(v: Any, default: int, lo: int, hi: int) -> int:
    try:
        iv = int(v)
    except (TypeError, ValueError):
        return default
    if iv < lo:
        return lo
    if iv > hi:
        return hi
    return iv


def clamp_float(v: Any, default: float, lo: float, hi: float) -> float:
    try:
        fv = float(v)
    except (TypeError, ValueError):
        return default
    return min(max(fv, lo), hi)


def get_path(d: Dict[str, Any], path: str, default: Any = None) -> Any:
    cur: Any = d
    for part in path.split("."):
        if not isinstance(cur, dict):
            return default
        if part not in cur:
            return default
        cur = cur[part]
    return cur


def parse_level(s: Any, default: int) -> int:
    if not s:
        return default
    name = str(s).strip().upper()
    level = getattr(logging, name, default)
    return level if isinstance(level, int) else default


def preview_bytes(data: bytes, limit: int = 64) -> str:
    """
    Printable ASCII is kept as-is, everything else becomes two uppercase hex
    chars. Long payloads are cut at `limit` bytes.
    """
    out_parts: List[str] = []
    for b in data[:limit]:
        if 32 <= b <= 126:
            out_parts.append(chr(b))
        else:
            out_parts.append(f"{b:02X}")
    if len(data) > limit:
        out_parts.append(f"...(+{len(data) - limit})")
    return "".join(out_parts)


def close_socket(sock: Optional[socket.socket], *, shutdown: bool = True) -> None:
    # shutdown() wakes threads blocked in recv()/accept(); close() alone does not.
    if sock is None:
        return
    if shutdown:
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
    try:
        sock.close()
    except OSError:
        pass


def resolve_address(value: Any, what: str) -> str:
    """IPv4 literal, or an interface name resolved to its IPv4 address."""
    s = str(value or "").strip()
    if not s:
        raise SetupError(f"missing {what} address")
    try:
        ip = ipaddress.ip_address(s)
    except ValueError:
        ip = None
    if ip is not None:
        if ip.version != 4:
            raise SetupError(f"{what} address must be IPv4, got {s}")
        return str(ip)

    try:
        addr = get_if_addr(s)
    except Exception as e:
        raise SetupError(f"cannot resolve {what} interface {s!r}: {e}") from e
    if not addr or addr == "0.0.0.0":
        raise SetupError(f"{what} interface {s!r} has no IPv4 address")
    return str(addr)


# =============================================================================
# "json-ish" loader (unquoted keys, comments, trailing commas)
# =============================================================================

_KEY_RE = re.compile(r'(?m)(^|\s|[{,])([A-Za-z_][A-Za-z0-9_-]*)(\s*):')
_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")
_LINE_COMMENT_RE = re.compile(r"(?m)^\s*(//|#).*$")
_BLOCK_COMMENT_RE = re.compile(r"/\*.*?\*/", re.DOTALL)


def _jsonish_to_json(text: str) -> str:
    text = _BLOCK_COMMENT_RE.sub("", text)
    text = _LINE_COMMENT_RE.sub("", text)

    def _repl(m: re.Match) -> str:
        prefix, key, suffix = m.group(1), m.group(2), m.group(3)
        return f'{prefix}"{key}"{suffix}:'

    text = _KEY_RE.sub(_repl, text)
    text = _TRAILING_COMMA_RE.sub(r"\1", text)
    return text


def load_config(path: str) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = f.read()
    except OSError as e:
        raise SetupError(f"cannot read config {path}: {e}") from e

    try:
        cfg = json.loads(raw)
    except ValueError:
        norm = _jsonish_to_json(raw)
        try:
            cfg = json.loads(norm)
        except ValueError as e:
            raise SetupError(f"config parse error for {path}: {e}") from e

    if not isinstance(cfg, dict):
        raise SetupError(f"config {path} must hold an object at top level")
    return cfg


# =============================================================================
# Event router: structured local logs
# =============================================================================

class EventRouter:
    """
    Every event becomes one log line: "<cat>.<event> {payload}".
    Handler levels decide what is visible.
    """
    def __init__(self, *, log: logging.Logger) -> None:
        self.log = log

    def emit(
        self,
        *,
        cat: str,
        event: str,
        level: str = "info",
        payload: Optional[Dict[str, Any]] = None,
        exc_info: bool = False,
    ) -> None:
        msg = f"{cat}.{event}"
        extra = payload or {}
        if level == "debug":
            self.log.debug("%s %s", msg, extra, exc_info=exc_info)
        elif level == "warning":
            self.log.warning("%s %s", msg, extra, exc_info=exc_info)
        elif level == "error":
            self.log.error("%s %s", msg, extra, exc_info=exc_info)
        else:
            self.log.info("%s %s", msg, extra, exc_info=exc_info)


# =============================================================================
# Session model
# =============================================================================

@dataclass
class WorkerResult:
    role: str
    port: Optional[int]  # None for mcast_listen before a datagram was read
    outcome: str  # ok|idle|ignored|disconnect|error
    ts: float = field(default_factory=monotime)
    error: Optional[str] = None
    nbytes: int = 0
    unexpected: bool = False


@dataclass(eq=False)
class Session:
    """
    One discovery port. `port` and `peer_address` never change, and the two
    IPTV-side sockets are bound once at creation. device_conn/client_conn are
    both set while accepted and both None while listening.

    Everything mutable is guarded by `lock`.
    """
    port: int
    peer_address: str
    iptv_address: str
    mcast_sock: socket.socket
    accept_sock: socket.socket

    state: str = LISTENING
    device_conn: Optional[socket.socket] = None
    client_conn: Optional[socket.socket] = None
    generation: int = 0
    running: Dict[str, bool] = field(default_factory=dict)

    created_ts: float = field(default_factory=monotime)
    accepted_ts: Optional[float] = None
    datagrams: int = 0
    accepts: int = 0
    disconnects: int = 0
    bytes_to_client: int = 0
    bytes_to_device: int = 0

    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def claim(self, role: str) -> bool:
        """Mark `role` running if the current state allows it and it isn't already."""
        with self.lock:
            if role not in SESSION_ROLES.get(self.state, ()):
                return False
            if self.running.get(role):
                return False
            self.running[role] = True
            return True

    def release(self, role: str) -> None:
        with self.lock:
            self.running[role] = False

    def is_running(self, role: str) -> bool:
        with self.lock:
            return bool(self.running.get(role))

    def attach(self, device: socket.socket, client: socket.socket) -> bool:
        with self.lock:
            if self.state != LISTENING:
                return False
            self.device_conn = device
            self.client_conn = client
            self.state = ACCEPTED
            self.generation += 1
            self.accepts += 1
            self.accepted_ts = monotime()
            return True

    def detach(self, generation: int) -> Tuple[Optional[socket.socket], Optional[socket.socket]]:
        """Back to listening, only if still accepted on `generation`. Returns the old pair."""
        with self.lock:
            if self.state != ACCEPTED or self.generation != generation:
                return None, None
            device, client = self.device_conn, self.client_conn
            self.device_conn = None
            self.client_conn = None
            self.state = LISTENING
            self.accepted_ts = None
            self.disconnects += 1
            return device, client

    def endpoints(self, role: str) -> Tuple[int, Optional[socket.socket], Optional[socket.socket]]:
        """(generation, src, dst) for a pump role; src/dst are None unless accepted."""
        with self.lock:
            if self.state != ACCEPTED:
                return self.generation, None, None
            if role == ROLE_TO_CLIENT:
                return self.generation, self.device_conn, self.client_conn
            return self.generation, self.client_conn, self.device_conn

    def note_datagram(self) -> None:
        with self.lock:
            self.datagrams += 1

    def note_bytes(self, role: str, n: int) -> None:
        with self.lock:
            if role == ROLE_TO_CLIENT:
                self.bytes_to_client += n
            else:
                self.bytes_to_device += n

    def close(self) -> None:
        with self.lock:
            socks = [self.device_conn, self.client_conn, self.accept_sock]
            self.device_conn = None
            self.client_conn = None
            self.state = LISTENING
        for s in socks:
            close_socket(s)
        close_socket(self.mcast_sock, shutdown=False)

    def to_dict(self) -> Dict[str, Any]:
        with self.lock:
            return {
                "port": self.port,
                "peer": self.peer_address,
                "iptv": self.iptv_address,
                "state": self.state,
                "generation": self.generation,
                "age_sec": round(monotime() - self.created_ts, 1),
                "datagrams": self.datagrams,
                "accepts": self.accepts,
                "disconnects": self.disconnects,
                "bytes_to_client": self.bytes_to_client,
                "bytes_to_device": self.bytes_to_device,
                "running": sorted(r for r, on in self.running.items() if on),
            }


# =============================================================================
# Session registry
# =============================================================================

class SessionRegistry:
    """
    port -> Session. Grows only (the discovery listener creates sessions);
    there is no removal while the gateway runs.
    """
    def __init__(self, *, iptv_address: str, accept_backlog: int = ACCEPT_BACKLOG) -> None:
        self.iptv_address = iptv_address
        self.accept_backlog = accept_backlog
        self._sessions: Dict[int, Session] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def find_by_port(self, port: int) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(port)

    def all(self) -> List[Session]:
        with self._lock:
            return list(self._sessions.values())

    def create(self, port: int, peer_address: str) -> Session:
        return self.get_or_create(port, peer_address)[0]

    def get_or_create(self, port: int, peer_address: str) -> Tuple[Session, bool]:
        with self._lock:
            session = self._sessions.get(port)
            if session is not None:
                return session, False
            session = self._bind(port, peer_address)
            self._sessions[port] = session
            return session, True

    def _bind(self, port: int, peer_address: str) -> Session:
        mcast: Optional[socket.socket] = None
        acc: Optional[socket.socket] = None
        try:
            mcast = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
            mcast.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_IF, socket.inet_aton(self.iptv_address))
            # Never hear our own re-emission on the LAN listener.
            mcast.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_LOOP, 0)
            mcast.bind((self.iptv_address, port))

            acc = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            acc.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            acc.bind((self.iptv_address, port))
            acc.listen(self.accept_backlog)
        except OSError as e:
            close_socket(mcast, shutdown=False)
            close_socket(acc, shutdown=False)
            raise TransientError(f"bind {self.iptv_address}:{port} failed: {e}") from e

        return Session(
            port=port,
            peer_address=peer_address,
            iptv_address=self.iptv_address,
            mcast_sock=mcast,
            accept_sock=acc,
        )

    def close_all(self) -> None:
        for session in self.all():
            session.close()


# =============================================================================
# Discovery: LAN multicast -> IPTV multicast
# =============================================================================

class MulticastRelay:
    def __init__(
        self,
        *,
        lan_address: str,
        iptv_address: str,
        registry: SessionRegistry,
        router: EventRouter,
        group: str = DISCOVERY_GROUP,
        port: int = DISCOVERY_PORT,
        listen_timeout: Optional[float] = LISTEN_TIMEOUT_SEC,
        sock: Optional[Any] = None,
    ) -> None:
        self.lan_address = lan_address
        self.iptv_address = iptv_address
        self.registry = registry
        self.router = router
        self.group = group
        self.port = port
        self.listen_timeout = listen_timeout
        self.sock = sock

    def open(self) -> None:
        if self.sock is not None:
            return

        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        try:
            s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            # Linux only delivers group traffic to sockets bound to the group
            # (or INADDR_ANY); Windows wants a local address.
            bind_ip = self.lan_address if os.name == "nt" else self.group
            s.bind((bind_ip, self.port))

            mreq = struct.pack("4s4s", socket.inet_aton(self.group), socket.inet_aton(self.lan_address))
            s.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, mreq)

            if self.listen_timeout:
                s.settimeout(self.listen_timeout)
        except OSError as e:
            s.close()
            raise SetupError(f"cannot join {self.group}:{self.port} on {self.lan_address}: {e}") from e

        self.sock = s
        self.router.emit(
            cat="discovery",
            event="listening",
            level="info",
            payload={"group": self.group, "port": self.port, "lan": self.lan_address, "iptv": self.iptv_address},
        )

    def close(self) -> None:
        s = self.sock
        if s is not None:
            close_socket(s, shutdown=False)

    def receive_and_forward(self) -> WorkerResult:
        sock = self.sock
        if sock is None:
            return WorkerResult(role=ROLE_LISTEN, port=None, outcome="error", error="listener not open")

        try:
            data, addr = sock.recvfrom(DATAGRAM_MAX)
        except socket.timeout:
            return WorkerResult(role=ROLE_LISTEN, port=None, outcome="idle")
        except OSError as e:
            return WorkerResult(role=ROLE_LISTEN, port=None, outcome="error", error=repr(e))

        src_ip, src_port = str(addr[0]), int(addr[1])
        if src_ip == self.iptv_address:
            self.router.emit(
                cat="discovery",
                event="datagram_ignored",
                level="debug",
                payload={"src": f"{src_ip}:{src_port}", "reason": "own_address"},
            )
            return WorkerResult(role=ROLE_LISTEN, port=src_port, outcome="ignored")

        try:
            session, created = self.registry.get_or_create(src_port, src_ip)
        except TransientError as e:
            return WorkerResult(role=ROLE_LISTEN, port=src_port, outcome="error", error=str(e))

        if created:
            self.router.emit(
                cat="discovery",
                event="session_created",
                level="info",
                payload={"port": src_port, "peer": src_ip, "iptv": f"{self.iptv_address}:{src_port}"},
            )

        try:
            session.mcast_sock.sendto(data, (self.group, self.port))
        except OSError as e:
            return WorkerResult(role=ROLE_LISTEN, port=src_port, outcome="error", error=repr(e))

        session.note_datagram()
        self.router.emit(
            cat="discovery",
            event="datagram_forwarded",
            level="debug",
            payload={"port": src_port, "bytes": len(data), "data": preview_bytes(data)},
        )
        return WorkerResult(role=ROLE_LISTEN, port=src_port, outcome="ok", nbytes=len(data))


# =============================================================================
# TCP bridge: IPTV box <-> app
# =============================================================================

class ConnectionBridge:
    def __init__(self, *, lan_address: Optional[str], router: EventRouter, buffer_size: int = BUFFER_SIZE) -> None:
        self.lan_address = lan_address
        self.router = router
        self.buffer_size = buffer_size

    def _connect_client(self, session: Session) -> socket.socket:
        source = (self.lan_address, 0) if self.lan_address else None
        return socket.create_connection((session.peer_address, session.port), source_address=source)

    def accept(self, session: Session) -> WorkerResult:
        try:
            device, device_addr = session.accept_sock.accept()
        except OSError as e:
            return WorkerResult(role=ROLE_ACCEPT, port=session.port, outcome="error", error=repr(e))

        try:
            client = self._connect_client(session)
        except OSError as e:
            # Never keep a box connection we cannot pair with the app.
            close_socket(device)
            self.router.emit(
                cat="session",
                event="connect_failed",
                level="warning",
                payload={"port": session.port, "peer": session.peer_address, "device": str(device_addr), "error": repr(e)},
            )
            return WorkerResult(role=ROLE_ACCEPT, port=session.port, outcome="error", error=repr(e))

        if not session.attach(device, client):
            close_socket(device)
            close_socket(client)
            return WorkerResult(role=ROLE_ACCEPT, port=session.port, outcome="error", error="session not listening")

        self.router.emit(
            cat="session",
            event="accepted",
            level="info",
            payload={"port": session.port, "device": str(device_addr), "client": f"{session.peer_address}:{session.port}"},
        )
        return WorkerResult(role=ROLE_ACCEPT, port=session.port, outcome="ok")

    def pump(self, session: Session, role: str) -> WorkerResult:
        generation, src, dst = session.endpoints(role)
        if src is None or dst is None:
            return WorkerResult(role=role, port=session.port, outcome="idle")

        total = 0
        try:
            while True:
                data = src.recv(self.buffer_size)
                if not data:
                    self.disconnect(session, generation, reason=f"{role}_eof")
                    return WorkerResult(role=role, port=session.port, outcome="disconnect", nbytes=total)
                dst.sendall(data)
                total += len(data)
                session.note_bytes(role, len(data))
        except OSError as e:
            self.disconnect(session, generation, reason=f"{role}_error")
            return WorkerResult(role=role, port=session.port, outcome="error", error=repr(e), nbytes=total)

    def disconnect(self, session: Session, generation: int, *, reason: str) -> bool:
        device, client = session.detach(generation)
        if device is None and client is None:
            return False
        close_socket(client)
        close_socket(device)
        self.router.emit(
            cat="session",
            event="disconnected",
            level="info",
            payload={"port": session.port, "reason": reason, "generation": generation},
        )
        return True


# =============================================================================
# Workers + scheduler
# =============================================================================

class RoleWorker(threading.Thread):
    def __init__(
        self,
        *,
        role: str,
        port: Optional[int],
        fn: Callable[[], WorkerResult],
        release: Callable[[], None],
        results: "queue.Queue[WorkerResult]",
        router: EventRouter,
    ) -> None:
        super().__init__(name=role if port is None else f"{role}-{port}", daemon=True)
        self.role = role
        self.port = port
        self.fn = fn
        self.release = release
        self.results = results
        self.router = router

    def run(self) -> None:
        # result is queued before release: a cleared flag means the outcome is visible
        try:
            try:
                result = self.fn()
            except Exception as e:
                self.router.emit(
                    cat="worker",
                    event="worker_crashed",
                    level="warning",
                    payload={"role": self.role, "port": self.port, "error": repr(e)},
                    exc_info=True,
                )
                result = WorkerResult(role=self.role, port=self.port, outcome="error", error=repr(e), unexpected=True)
            self.results.put(result)
        finally:
            self.release()


class Scheduler(threading.Thread):
    def __init__(
        self,
        *,
        relay: Any,
        registry: SessionRegistry,
        bridge: Any,
        router: EventRouter,
        tick_sec: float = TICK_MS / 1000.0,
    ) -> None:
        super().__init__(name="scheduler", daemon=True)
        self.relay = relay
        self.registry = registry
        self.bridge = bridge
        self.router = router
        self.tick_sec = tick_sec

        self.results: "queue.Queue[WorkerResult]" = queue.Queue()
        self._stop_event = threading.Event()

        self._listen_lock = threading.Lock()
        self._listen_running = False

        self._stats_lock = threading.Lock()
        self._outcomes: DefaultDict[str, int] = defaultdict(int)
        self.ticks = 0
        self.spawned = 0

    def stop(self) -> None:
        self._stop_event.set()

    @property
    def listen_running(self) -> bool:
        with self._listen_lock:
            return self._listen_running

    def _claim_listen(self) -> bool:
        with self._listen_lock:
            if self._listen_running:
                return False
            self._listen_running = True
            return True

    def _release_listen(self) -> None:
        with self._listen_lock:
            self._listen_running = False

    def _job_for(self, session: Session, role: str) -> Callable[[], WorkerResult]:
        if role == ROLE_ACCEPT:
            return lambda: self.bridge.accept(session)
        return lambda: self.bridge.pump(session, role)

    def _spawn(self, role: str, port: Optional[int], fn: Callable[[], WorkerResult], release: Callable[[], None]) -> bool:
        w = RoleWorker(role=role, port=port, fn=fn, release=release, results=self.results, router=self.router)
        try:
            w.start()
        except RuntimeError as e:
            release()
            self.router.emit(cat="worker", event="spawn_failed", level="warning", payload={"role": role, "port": port, "error": repr(e)})
            return False
        self.spawned += 1
        return True

    def tick(self) -> int:
        """One pass: collect finished workers, then top up every role. Returns spawn count."""
        self.ticks += 1
        self.drain_results()

        spawned = 0
        if self._claim_listen():
            if self._spawn(ROLE_LISTEN, None, self.relay.receive_and_forward, self._release_listen):
                spawned += 1

        for session in self.registry.all():
            for role in (ROLE_ACCEPT, ROLE_TO_CLIENT, ROLE_TO_DEVICE):
                if not session.claim(role):
                    continue
                release = (lambda s=session, r=role: s.release(r))
                if self._spawn(role, session.port, self._job_for(session, role), release):
                    spawned += 1
        return spawned

    def drain_results(self) -> List[WorkerResult]:
        out: List[WorkerResult] = []
        while True:
            try:
                r = self.results.get_nowait()
            except queue.Empty:
                break
            self._on_result(r)
            out.append(r)
        return out

    def _on_result(self, r: WorkerResult) -> None:
        # Retry policy: every outcome is respawned by a later tick from session
        # state alone; results only feed logs and counters.
        with self._stats_lock:
            self._outcomes[f"{r.role}.{r.outcome}"] += 1
            if r.outcome == "error":
                self._outcomes["errors"] += 1

        if r.outcome == "error" and not r.unexpected:
            self.router.emit(
                cat="worker",
                event="worker_error",
                level="debug",
                payload={"role": r.role, "port": r.port, "error": r.error},
            )
        elif r.outcome in ("ok", "disconnect"):
            self.router.emit(
                cat="worker",
                event="worker_done",
                level="debug",
                payload={"role": r.role, "port": r.port, "outcome": r.outcome, "bytes": r.nbytes},
            )

    def outcome_counts(self) -> Dict[str, int]:
        with self._stats_lock:
            return dict(self._outcomes)

    def run(self) -> None:
        self.router.emit(cat="service", event="scheduler_started", level="debug", payload={"tick_ms": int(self.tick_sec * 1000)})
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                self.router.emit(cat="service", event="tick_error", level="error", payload={}, exc_info=True)
            self._stop_event.wait(self.tick_sec)
        self.drain_results()


# =============================================================================
# Service
# =============================================================================

class Gateway:
    def __init__(self, cfg: Dict[str, Any], log: logging.Logger) -> None:
        self.cfg = cfg
        self.log = log

        self.lan_address = resolve_address(cfg.get("lan"), "lan")
        self.iptv_address = resolve_address(cfg.get("iptv"), "iptv")
        if self.lan_address == self.iptv_address:
            raise SetupError(f"lan and iptv addresses must differ (both {self.lan_address})")

        relay_cfg = get_path(cfg, "relay", {}) or {}
        self.tick_ms = clamp_int(relay_cfg.get("tick_ms", TICK_MS), default=TICK_MS, lo=1, hi=10_000)
        self.buffer_size = clamp_int(relay_cfg.get("buffer_size", BUFFER_SIZE), default=BUFFER_SIZE, lo=512, hi=1 << 20)
        self.accept_backlog = clamp_int(relay_cfg.get("accept_backlog", ACCEPT_BACKLOG), default=ACCEPT_BACKLOG, lo=1, hi=128)
        self.listen_timeout = clamp_float(
            relay_cfg.get("listen_timeout_sec", LISTEN_TIMEOUT_SEC), default=LISTEN_TIMEOUT_SEC, lo=0.05, hi=60.0
        )
        self.stats_interval_sec = clamp_float(
            get_path(cfg, "runtime.stats_interval_sec", STATS_INTERVAL_SEC), default=STATS_INTERVAL_SEC, lo=1.0, hi=86400.0
        )

        self.router = EventRouter(log=log)
        self.registry = SessionRegistry(iptv_address=self.iptv_address, accept_backlog=self.accept_backlog)
        self.relay = MulticastRelay(
            lan_address=self.lan_address,
            iptv_address=self.iptv_address,
            registry=self.registry,
            router=self.router,
            listen_timeout=self.listen_timeout,
        )
        self.bridge = ConnectionBridge(lan_address=self.lan_address, router=self.router, buffer_size=self.buffer_size)
        self.scheduler = Scheduler(
            relay=self.relay,
            registry=self.registry,
            bridge=self.bridge,
            router=self.router,
            tick_sec=self.tick_ms / 1000.0,
        )

    def list_sessions(self) -> List[Dict[str, Any]]:
        return [s.to_dict() for s in self.registry.all()]

    def stats_snapshot(self) -> Dict[str, Any]:
        sessions = self.list_sessions()
        outcomes = self.scheduler.outcome_counts()
        return {
            "ts": utc_iso(),
            "sessions": len(sessions),
            "listening": sum(1 for s in sessions if s["state"] == LISTENING),
            "accepted": sum(1 for s in sessions if s["state"] == ACCEPTED),
            "datagrams": sum(s["datagrams"] for s in sessions),
            "accepts": sum(s["accepts"] for s in sessions),
            "disconnects": sum(s["disconnects"] for s in sessions),
            "bytes_to_client": sum(s["bytes_to_client"] for s in sessions),
            "bytes_to_device": sum(s["bytes_to_device"] for s in sessions),
            "worker_errors": outcomes.get("errors", 0),
            "ticks": self.scheduler.ticks,
        }

    def start(self) -> None:
        self.relay.open()
        self.scheduler.start()
        self.router.emit(
            cat="service",
            event="service_started",
            level="info",
            payload={"lan": self.lan_address, "iptv": self.iptv_address, "tick_ms": self.tick_ms},
        )

    def stop(self, timeout: float = 2.0) -> None:
        self.router.emit(cat="service", event="service_stopping", level="info", payload={})
        self.scheduler.stop()
        if self.scheduler.is_alive():
            self.scheduler.join(timeout)
        self.relay.close()
        self.registry.close_all()
        self.router.emit(cat="service", event="service_stopped", level="info", payload=self.stats_snapshot())

    async def periodic_stats(self) -> None:
        while True:
            await asyncio.sleep(self.stats_interval_sec)
            self.router.emit(cat="stats", event="stats", level="info", payload=self.stats_snapshot())
            self.router.emit(cat="stats", event="sessions", level="debug", payload={"sessions": self.list_sessions()})


# =============================================================================
# Logging setup from config (+ optional CLI override)
# =============================================================================

def setup_logging_from_config(cfg: Dict[str, Any], cli_level: Optional[str] = None) -> logging.Logger:
    log = logging.getLogger("zappa_gateway")
    log.propagate = False
    log.handlers.clear()
    log.setLevel(logging.DEBUG)  # handlers gate output

    lc = get_path(cfg, "logging", {}) or {}

    console_cfg = lc.get("console", {}) or {}
    file_cfg = lc.get("file", {}) or {}

    console_level = parse_level(console_cfg.get("verbosity"), logging.INFO)
    if cli_level:
        console_level = parse_level(cli_level, console_level)

    ch = logging.StreamHandler()
    ch.setLevel(console_level)
    ch.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
    log.addHandler(ch)

    if bool(file_cfg.get("enabled", False)):
        path = str(file_cfg.get("path", "zappa_gateway.log"))
        file_level = parse_level(file_cfg.get("verbosity"), logging.INFO)
        fh = logging.FileHandler(path, encoding="utf-8")
        fh.setLevel(file_level)
        fh.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
        log.addHandler(fh)

    return log


# =============================================================================
# CLI + entrypoint
# =============================================================================

def build_argparser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="zappa-gateway",
        description="Relay Zappa discovery multicasts and TCP streams between a LAN and an IPTV network",
    )
    p.add_argument("lan", nargs="?", default=None, help="LAN address or interface name")
    p.add_argument("iptv", nargs="?", default=None, help="IPTV address or interface name")
    p.add_argument("--config", default=None, help="Path to JSON (or json-ish) config file")
    p.add_argument("--log-level", default=None, help="Optional console override: DEBUG/INFO/WARNING/ERROR")
    p.add_argument("--tick-ms", type=int, default=None, help=f"Scheduler tick period (default {TICK_MS})")
    return p


def build_config(args: argparse.Namespace) -> Dict[str, Any]:
    cfg = load_config(args.config) if args.config else {}
    if args.lan:
        cfg["lan"] = args.lan
    if args.iptv:
        cfg["iptv"] = args.iptv
    if args.tick_ms is not None:
        relay = cfg.get("relay")
        if not isinstance(relay, dict):
            relay = {}
            cfg["relay"] = relay
        relay["tick_ms"] = args.tick_ms
    return cfg


async def amain(cfg: Dict[str, Any], cli_level: Optional[str] = None) -> int:
    log = setup_logging_from_config(cfg, cli_level)
    gw = Gateway(cfg, log)

    stop_ev = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _request_stop() -> None:
        if not stop_ev.is_set():
            stop_ev.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _request_stop)
        except NotImplementedError:
            pass

    gw.start()
    stats_task = asyncio.create_task(gw.periodic_stats())
    try:
        await stop_ev.wait()
    finally:
        stats_task.cancel()
        gw.stop()

    return 0


def main(argv: Optional[List[str]] = None) -> None:
    parser = build_argparser()
    args = parser.parse_args(argv)

    try:
        cfg = build_config(args)
    except SetupError as e:
        parser.exit(2, f"{parser.prog}: {e}\n")

    if not cfg.get("lan") or not cfg.get("iptv"):
        parser.error("both <lan> and <iptv> are required (positional or in --config)")

    try:
        rc = asyncio.run(amain(cfg, args.log_level))
    except SetupError as e:
        parser.exit(2, f"{parser.prog}: {e}\n")
    except KeyboardInterrupt:
        rc = 130
    raise SystemExit(rc)


if __name__ == "__main__":
    main()
