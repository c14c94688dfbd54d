#!/usr/bin/env python3
"""
onewaymirror.py

Dual-stack TCP reflector for testing client/server software.

Accepts a connection, connects right back to the peer on the port we are
listening on, and relays bytes both ways between the two sockets, recording
the whole session in a replayable log file.

Flow per connection:
  listener (tcp4 / tcp6) -> dispatcher -> session
    session = connect-back dial + 2 x proxy_bytes + optional SessionLogger

Key behavior:
- Connect-back target is the peer's IP plus OUR local (listening) port.
- Optional banner is sent before anything is relayed.
- Any direction ending tears down the whole session (both sockets closed once).
- A write error stops its direction; no further reads are attempted.
- Proxies hand packets to the logger through depth-1 queues: a slow logger
  slows the relay rather than losing records.
- Replay file: <logdir>/<peer ip>/<RFC3339 start>.owm, records of
      \\n<stamp>\\t<unix sec>.<nsec>\\t<i|o>\\t<len>\\t<payload>
- Process exits when every listener has died, or when the log directory
  cannot be created.

Usage:
  python3 onewaymirror.py --addr :6667 --banner "IRC Test"
  python3 onewaymirror.py --config mirror.conf --no6
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import errno
import ipaddress
import json
import logging
import os
import re
import signal
import socket
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, BinaryIO, Callable, Dict, Iterator, List, Optional, Set, Tuple


DEFAULT_ADDR = ":23"
DEFAULT_LOG_DIR = "onewaymirror"
DEFAULT_BANNER = "Connection proxied by onewaymirror."
DEFAULT_BUFLEN = 1024

INBOUND = "i"   # read from the accepted connection, written to the connect-back leg
OUTBOUND = "o"  # read from the connect-back leg, written to the accepted connection

# Depth of the proxy -> logger queues. 1 keeps the hand-off synchronous.
SINK_DEPTH = 1

REPLAY_SUFFIX = ".owm"


# =============================================================================
# Errors
# =============================================================================

class ConfigError(Exception):
    """Invalid or conflicting configuration."""


class BindError(OSError):
    """A listener could not be resolved, bound or put into listening state."""


class AddressError(ValueError):
    """An endpoint is not an IP + port pair."""


class AllListenersDead(RuntimeError):
    pass


class FatalError(RuntimeError):
    """Systemic failure reported from inside a session (e.g. log dir creation)."""


class ReplayFormatError(ValueError):
    pass


# =============================================================================
# Small utilities
# =============================================================================

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


def as_bool(v: Any, default: bool) -> bool:
    if v is None:
        return default
    if isinstance(v, str):
        return v.strip().lower() in ("1", "true", "yes", "on")
    return bool(v)


def format_endpoint(addr: Any) -> str:
    """host:port, with IPv6 hosts bracketed."""
    if isinstance(addr, tuple) and len(addr) >= 2:
        host, port = addr[0], addr[1]
        if ":" in str(host):
            return f"[{host}]:{port}"
        return f"{host}:{port}"
    return str(addr)


# =============================================================================
# “json-ish” config loader (unquoted keys, comments, trailing commas)
# =============================================================================

_KEY_RE = re.compile(r'(?m)(^|\s|[{,])([A-Za-z_][A-Za-z0-9_-]*)(\s*):')
_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")
_LINE_COMMENT_RE = re.compile(r"(?m)^\s*(//|#).*$")
_BLOCK_COMMENT_RE = re.compile(r"/\*.*?\*/", re.DOTALL)


def _jsonish_to_json(text: str) -> str:
    text = _BLOCK_COMMENT_RE.sub("", text)
    text = _LINE_COMMENT_RE.sub("", text)
    text = _KEY_RE.sub(lambda m: f'{m.group(1)}"{m.group(2)}"{m.group(3)}:', text)
    return _TRAILING_COMMA_RE.sub(r"\1", text)


def load_config(path: str) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = f.read()
    except OSError as e:
        raise ConfigError(f"unable to read config {path}: {e}") from e
    try:
        cfg = json.loads(raw)
    except ValueError:
        norm = _jsonish_to_json(raw)
        try:
            cfg = json.loads(norm)
        except ValueError as e:
            raise ConfigError(f"config parse error for {path}: {e}") from e
    if not isinstance(cfg, dict):
        raise ConfigError(f"config {path} must hold an object at the top level")
    return cfg


# =============================================================================
# Configuration
# =============================================================================

def normalize_banner(text: Optional[str]) -> bytes:
    """Banner as sent on the wire: trailing whitespace dropped, one newline added.

    An empty (or all-whitespace) banner disables it and yields b"".
    """
    stripped = (text or "").rstrip()
    if not stripped:
        return b""
    return (stripped + "\n").encode("utf-8")


@dataclass
class MirrorConfig:
    addr: str = DEFAULT_ADDR
    log_dir: str = DEFAULT_LOG_DIR
    session_logging: bool = True
    ipv4: bool = True
    ipv6: bool = True
    banner: str = DEFAULT_BANNER
    buflen: int = DEFAULT_BUFLEN

    console_verbosity: str = "INFO"
    log_file: Optional[str] = None
    log_file_verbosity: str = "INFO"

    def validate(self) -> None:
        if not self.ipv4 and not self.ipv6:
            raise ConfigError("--no4 and --no6 may not both be specified")
        if self.buflen <= 0:
            raise ConfigError(f"buflen must be positive, got {self.buflen}")
        parse_listen_addr(self.addr)


def config_from_dict(cfg: Dict[str, Any]) -> MirrorConfig:
    d = MirrorConfig()
    try:
        buflen = int(get_path(cfg, "session.buflen", d.buflen))
    except (TypeError, ValueError) as e:
        raise ConfigError(f"session.buflen must be an integer: {e}") from e

    log_file = None
    if as_bool(get_path(cfg, "logging.file.enabled", False), False):
        log_file = str(get_path(cfg, "logging.file.path", "onewaymirror.log"))

    return MirrorConfig(
        addr=str(get_path(cfg, "listen.addr", d.addr)),
        log_dir=str(get_path(cfg, "session_log.dir", d.log_dir)),
        session_logging=as_bool(get_path(cfg, "session_log.enabled", None), d.session_logging),
        ipv4=as_bool(get_path(cfg, "listen.ipv4", None), d.ipv4),
        ipv6=as_bool(get_path(cfg, "listen.ipv6", None), d.ipv6),
        banner=str(get_path(cfg, "session.banner", d.banner)),
        buflen=buflen,
        console_verbosity=str(get_path(cfg, "logging.console.verbosity", d.console_verbosity)),
        log_file=log_file,
        log_file_verbosity=str(get_path(cfg, "logging.file.verbosity", d.log_file_verbosity)),
    )


def build_config(args: argparse.Namespace) -> MirrorConfig:
    """Defaults < --config file < explicit CLI flags."""
    cfg = config_from_dict(load_config(args.config)) if args.config else MirrorConfig()

    if args.addr is not None:
        cfg.addr = args.addr
    if args.logdir is not None:
        cfg.log_dir = args.logdir
    if args.banner is not None:
        cfg.banner = args.banner
    if args.buflen is not None:
        cfg.buflen = args.buflen
    if args.nolog:
        cfg.session_logging = False
    if args.no4:
        cfg.ipv4 = False
    if args.no6:
        cfg.ipv6 = False
    if args.log_level:
        cfg.console_verbosity = args.log_level

    cfg.validate()
    return cfg


# =============================================================================
# Logging
# =============================================================================

def setup_logging(cfg: MirrorConfig) -> logging.Logger:
    log = logging.getLogger("onewaymirror")
    log.propagate = False
    log.handlers.clear()
    log.setLevel(logging.DEBUG)  # handlers gate output

    fmt = logging.Formatter("%(asctime)s %(levelname)s %(message)s")

    ch = logging.StreamHandler()
    ch.setLevel(parse_level(cfg.console_verbosity, logging.INFO))
    ch.setFormatter(fmt)
    log.addHandler(ch)

    if cfg.log_file:
        fh = logging.FileHandler(cfg.log_file, encoding="utf-8")
        fh.setLevel(parse_level(cfg.log_file_verbosity, logging.INFO))
        fh.setFormatter(fmt)
        log.addHandler(fh)

    return log


class EventLog:
    """Routes service events to the logger as "<cat>.<event> {payload}" lines."""

    def __init__(self, log: logging.Logger) -> None:
        self.log = log

    def emit(self, *, cat: str, event: str, level: str = "info", payload: Optional[Dict[str, Any]] = None) -> None:
        self.log.log(parse_level(level, logging.INFO), "%s.%s %s", cat, event, payload or {})


# =============================================================================
# Listener manager
# =============================================================================

FAMILIES = {"tcp4": socket.AF_INET, "tcp6": socket.AF_INET6}
_WILDCARD = {"tcp4": "0.0.0.0", "tcp6": "::"}


def parse_listen_addr(addr: str) -> Tuple[str, int]:
    """Split "[host]:port" into (host, port). An empty host means all interfaces."""
    s = str(addr).strip()
    if s.startswith("["):
        end = s.find("]")
        if end < 0 or s[end + 1:end + 2] != ":":
            raise ConfigError(f"bad listen address {addr!r}")
        host, port_s = s[1:end], s[end + 2:]
    elif ":" in s:
        host, _, port_s = s.rpartition(":")
        if ":" in host:
            raise ConfigError(f"IPv6 listen address must be bracketed: {addr!r}")
    else:
        host, port_s = "", s
    try:
        port = int(port_s)
    except ValueError:
        raise ConfigError(f"bad port in listen address {addr!r}") from None
    if not 0 <= port <= 65535:
        raise ConfigError(f"port out of range in listen address {addr!r}")
    return host, port


@dataclass(eq=False)
class Listener:
    family: str
    sock: socket.socket
    address: Any

    def describe(self) -> str:
        return f"{self.family} {format_endpoint(self.address)}"

    async def accept_loop(self, dispatcher: "Dispatcher") -> None:
        """Hand accepted connections to the dispatcher until accept breaks."""
        loop = asyncio.get_running_loop()
        while True:
            try:
                conn, _peer = await loop.sock_accept(self.sock)
            except OSError as e:
                dispatcher.router.emit(
                    cat="listener",
                    event="accept_failed",
                    level="error",
                    payload={"listener": self.describe(), "error": repr(e)},
                )
                self.close()
                dispatcher.listener_died(self)
                return
            dispatcher.deliver(self, conn)

    def close(self) -> None:
        with contextlib.suppress(OSError):
            self.sock.close()


def open_listener(family: str, addr: str) -> Listener:
    if family not in FAMILIES:
        raise ValueError(f'open_listener() takes "tcp4" or "tcp6", not {family!r}')
    af = FAMILIES[family]
    host, port = parse_listen_addr(addr)

    try:
        infos = socket.getaddrinfo(host or _WILDCARD[family], port, af, socket.SOCK_STREAM, 0, socket.AI_PASSIVE)
    except socket.gaierror as e:
        raise BindError(f"unable to resolve {family} address {addr}: {e}") from e
    sockaddr = infos[0][4]

    sock: Optional[socket.socket] = None
    try:
        sock = socket.socket(af, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        if af == socket.AF_INET6:
            sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 1)
        sock.bind(sockaddr)
        sock.listen(socket.SOMAXCONN)
        sock.setblocking(False)
    except OSError as e:
        if sock is not None:
            sock.close()
        raise BindError(f"unable to listen on {family} {format_endpoint(sockaddr)}: {e}") from e

    return Listener(family=family, sock=sock, address=sock.getsockname())


def open_listeners(cfg: MirrorConfig, router: EventLog) -> List[Listener]:
    """Open every enabled family. At least one must bind."""
    if not cfg.ipv4 and not cfg.ipv6:
        raise ConfigError("--no4 and --no6 may not both be specified")

    out: List[Listener] = []
    for family, enabled in (("tcp4", cfg.ipv4), ("tcp6", cfg.ipv6)):
        if not enabled:
            continue
        try:
            lst = open_listener(family, cfg.addr)
        except BindError as e:
            router.emit(cat="listener", event="bind_failed", level="error", payload={"family": family, "error": str(e)})
            continue
        router.emit(cat="listener", event="listening", payload={"listener": lst.describe()})
        out.append(lst)

    if not out:
        raise BindError(f"unable to create any listeners on {cfg.addr}")
    return out


# =============================================================================
# Dispatcher
# =============================================================================

class Dispatcher:
    """
    Fan-in point for every listener's accept stream.

    Each listener delivers into one inbox in its own accept order, so ordering
    holds per listener but not across families. The dispatcher owns the count
    of live listeners; run() raises AllListenersDead once all have reported.
    """

    def __init__(self, handler: Callable[[socket.socket], Awaitable[None]], router: EventLog) -> None:
        self.handler = handler
        self.router = router
        self._inbox: "asyncio.Queue[Tuple[Listener, Optional[socket.socket]]]" = asyncio.Queue()
        self._live: Set[Listener] = set()
        self.session_tasks: Set["asyncio.Task[None]"] = set()

    def register(self, listener: Listener) -> None:
        self._live.add(listener)

    def deliver(self, listener: Listener, conn: socket.socket) -> None:
        self._inbox.put_nowait((listener, conn))

    def listener_died(self, listener: Listener) -> None:
        self._inbox.put_nowait((listener, None))

    @property
    def live_listeners(self) -> int:
        return len(self._live)

    async def run(self) -> None:
        while self._live:
            listener, conn = await self._inbox.get()
            if conn is None:
                self._live.discard(listener)
                continue
            task = asyncio.create_task(self.handler(conn))
            self.session_tasks.add(task)
            task.add_done_callback(self.session_tasks.discard)

        self.router.emit(cat="service", event="all_listeners_dead", level="critical")
        raise AllListenersDead("all listeners have terminated")

    async def close(self) -> None:
        tasks = list(self.session_tasks)
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


# =============================================================================
# Replay file format
# =============================================================================

_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")


@dataclass
class Packet:
    """One read's worth of relayed data. Only data[:length] is valid."""
    data: bytes
    length: int

    @property
    def payload(self) -> bytes:
        return self.data[:self.length]


@dataclass(frozen=True)
class ReplayRecord:
    human: str
    ts_ns: int
    direction: str
    payload: bytes


def human_timestamp(ts_ns: int) -> str:
    """Local time as "Apr 28 15:04:05.000000000" (day space-padded)."""
    sec, nsec = divmod(ts_ns, 1_000_000_000)
    t = time.localtime(sec)
    return f"{_MONTHS[t.tm_mon - 1]} {t.tm_mday:>2} {t.tm_hour:02d}:{t.tm_min:02d}:{t.tm_sec:02d}.{nsec:09d}"


def rfc3339_nano(ts_ns: int) -> str:
    sec, nsec = divmod(ts_ns, 1_000_000_000)
    iso = datetime.fromtimestamp(sec).astimezone().isoformat(timespec="seconds")
    return f"{iso[:19]}.{nsec:09d}{iso[19:]}"


def encode_record_header(ts_ns: int, direction: str, length: int) -> bytes:
    if direction not in (INBOUND, OUTBOUND):
        raise ValueError(f"bad direction {direction!r}")
    sec, nsec = divmod(ts_ns, 1_000_000_000)
    return f"\n{human_timestamp(ts_ns)}\t{sec}.{nsec:09d}\t{direction}\t{length}\t".encode("ascii")


def encode_record(ts_ns: int, direction: str, payload: bytes) -> bytes:
    return encode_record_header(ts_ns, direction, len(payload)) + payload


def iter_records(data: bytes) -> Iterator[ReplayRecord]:
    pos = 0
    end = len(data)
    while pos < end:
        if data[pos:pos + 1] != b"\n":
            raise ReplayFormatError(f"expected record separator at offset {pos}")
        fields: List[bytes] = []
        cur = pos + 1
        for _ in range(4):
            tab = data.find(b"\t", cur)
            if tab < 0:
                raise ReplayFormatError(f"truncated record header at offset {pos}")
            fields.append(data[cur:tab])
            cur = tab + 1

        human_b, stamp_b, dir_b, len_b = fields
        try:
            sec_s, dot, nsec_s = stamp_b.decode("ascii").partition(".")
            ts_ns = int(sec_s) * 1_000_000_000 + (int(nsec_s) if dot else 0)
            length = int(len_b)
            direction = dir_b.decode("ascii")
            human = human_b.decode("ascii")
        except (UnicodeDecodeError, ValueError) as e:
            raise ReplayFormatError(f"bad record header at offset {pos}: {e}") from e
        if direction not in (INBOUND, OUTBOUND):
            raise ReplayFormatError(f"bad direction {direction!r} at offset {pos}")
        if length < 0 or cur + length > end:
            raise ReplayFormatError(f"truncated payload at offset {pos} (want {length} bytes)")

        yield ReplayRecord(human=human, ts_ns=ts_ns, direction=direction, payload=data[cur:cur + length])
        pos = cur + length


def read_replay_file(path: str) -> List[ReplayRecord]:
    with open(path, "rb") as f:
        return list(iter_records(f.read()))


def direction_payload(records: List[ReplayRecord], direction: str) -> bytes:
    return b"".join(r.payload for r in records if r.direction == direction)


# =============================================================================
# Session logger
# =============================================================================

def replay_file_path(log_dir: str, peer_ip: str, started_ns: int) -> str:
    return os.path.join(log_dir, peer_ip, rfc3339_nano(started_ns) + REPLAY_SUFFIX)


def ensure_log_dir(path: str) -> None:
    try:
        os.makedirs(path, mode=0o755, exist_ok=True)
    except OSError as e:
        raise FatalError(f"unable to create directory {path}: {e}") from e


def open_replay_file(path: str, router: EventLog) -> Optional[BinaryIO]:
    """Create the replay file exclusively. Raises FatalError if its directory can't be made."""
    ensure_log_dir(os.path.dirname(path) or ".")
    try:
        f = open(path, "xb")
    except OSError as e:
        router.emit(cat="replay", event="open_failed", level="error", payload={"path": path, "error": repr(e)})
        return None
    router.emit(cat="replay", event="opened", level="debug", payload={"path": path})
    return f


class SessionLogger:
    """
    Writes both directions of one session into a single replay file.

    Waits on both sinks at once and appends records in arrival order. Only
    returns after each sink delivered its end-of-stream (None). Keeps draining
    the sinks when the file is unavailable so proxies never stall on it.
    """

    def __init__(
        self,
        inbound: "asyncio.Queue[Optional[Packet]]",
        outbound: "asyncio.Queue[Optional[Packet]]",
        path: str,
        router: EventLog,
        on_fatal: Optional[Callable[[BaseException], None]] = None,
    ) -> None:
        self.sinks = {INBOUND: inbound, OUTBOUND: outbound}
        self.path = path
        self.router = router
        self.on_fatal = on_fatal
        self.file: Optional[BinaryIO] = None
        self.records = 0
        self.dropped = 0

    async def run(self) -> None:
        try:
            self.file = open_replay_file(self.path, self.router)
        except FatalError as e:
            self.router.emit(cat="replay", event="dir_failed", level="critical", payload={"error": str(e)})
            if self.on_fatal is not None:
                self.on_fatal(e)

        pending: Dict["asyncio.Future[Optional[Packet]]", str] = {
            asyncio.ensure_future(q.get()): d for d, q in self.sinks.items()
        }
        try:
            while pending:
                finished, _ = await asyncio.wait(set(pending), return_when=asyncio.FIRST_COMPLETED)
                for fut in finished:
                    direction = pending.pop(fut)
                    pkt = fut.result()
                    if pkt is None:
                        continue
                    self.write_packet(pkt, direction, time.time_ns())
                    pending[asyncio.ensure_future(self.sinks[direction].get())] = direction
        finally:
            for fut in pending:
                fut.cancel()
            self.close()

    def write_packet(self, pkt: Packet, direction: str, ts_ns: int) -> None:
        f = self.file
        if f is None or f.closed:
            self.dropped += 1
            return

        meta = encode_record_header(ts_ns, direction, pkt.length)
        for part, what in ((meta, "metadata"), (pkt.payload, "payload")):
            try:
                f.write(part)
                f.flush()
            except OSError as e:
                self.router.emit(
                    cat="replay",
                    event="write_failed",
                    level="error",
                    payload={"path": self.path, "part": what, "bytes": len(part), "error": repr(e)},
                )
                self.close()
                self.dropped += 1
                return
        self.records += 1

    def close(self) -> None:
        f = self.file
        if f is None or f.closed:
            return
        # close() re-flushes; a second failure was already reported by write_packet.
        with contextlib.suppress(OSError):
            f.close()
        self.router.emit(
            cat="replay",
            event="closed",
            level="debug",
            payload={"path": self.path, "records": self.records, "dropped": self.dropped},
        )


# =============================================================================
# Byte proxy
# =============================================================================

@dataclass(frozen=True)
class Completion:
    direction: str
    endpoint: str  # source|destination
    reason: str    # eof|reset|closed|error|write_error


_CLOSED_ERRNOS = {errno.EBADF, errno.ENOTCONN, errno.ESHUTDOWN}


def classify_error(exc: BaseException) -> str:
    """reset | closed | other"""
    code = getattr(exc, "errno", None)
    if isinstance(exc, ConnectionResetError) or code == errno.ECONNRESET:
        return "reset"
    if isinstance(exc, ConnectionAbortedError) or code in _CLOSED_ERRNOS:
        return "closed"
    if str(exc).endswith("closed network connection"):
        return "closed"
    return "other"


async def proxy_bytes(
    src: asyncio.StreamReader,
    dst: asyncio.StreamWriter,
    done: "asyncio.Queue[Completion]",
    buflen: int,
    desc: str,
    router: EventLog,
    *,
    direction: str,
    sink: Optional["asyncio.Queue[Optional[Packet]]"] = None,
) -> None:
    """
    Copy src -> dst until either side fails, then report once on `done`.

    Every way out reports, so the session always closes both legs; the error
    class only picks the log line.
    """
    nread = 0
    written = 0

    def report(endpoint: str, reason: str) -> None:
        done.put_nowait(Completion(direction=direction, endpoint=endpoint, reason=reason))

    while True:
        try:
            data = await src.read(buflen)
        except Exception as e:
            counters = f"{nread} read / {written} written"
            kind = classify_error(e)
            if kind == "reset":
                router.emit(cat="proxy", event="connection_reset", payload={"conn": desc, "counters": counters})
            elif kind == "closed":
                router.emit(cat="proxy", event="connection_closed", payload={"conn": desc, "counters": counters})
            else:
                router.emit(
                    cat="proxy",
                    event="read_error",
                    level="warning",
                    payload={"conn": desc, "counters": counters, "type": type(e).__name__, "error": repr(e)},
                )
                kind = "error"
            report("source", kind)
            return

        if not data:
            router.emit(cat="proxy", event="connection_ended", payload={"conn": desc, "counters": f"{nread} read / {written} written"})
            report("source", "eof")
            return

        nread += len(data)

        if sink is not None:
            await sink.put(Packet(data=data, length=len(data)))

        try:
            dst.write(data)
            await dst.drain()
        except Exception as e:
            router.emit(
                cat="proxy",
                event="write_error",
                level="warning",
                payload={"conn": desc, "counters": f"{nread} read / {written} written", "type": type(e).__name__, "error": repr(e)},
            )
            report("destination", "write_error")
            return
        written += len(data)


# =============================================================================
# Session handler
# =============================================================================

def endpoint_ip_port(addr: Any) -> Tuple[str, int]:
    if not isinstance(addr, tuple) or len(addr) < 2:
        raise AddressError(f"{addr!r} is not a TCP address")
    host, port = addr[0], addr[1]
    try:
        ipaddress.ip_address(str(host).split("%", 1)[0])
    except ValueError:
        raise AddressError(f"{addr!r} is not a TCP address") from None
    if not isinstance(port, int) or not 0 < port <= 65535:
        raise AddressError(f"{addr!r} has no usable port")
    return str(host), port


def connect_back_target(local_addr: Any, remote_addr: Any) -> Tuple[str, int]:
    """Peer IP + the port the connection arrived on (not the peer's port)."""
    ip, _ = endpoint_ip_port(remote_addr)
    _, port = endpoint_ip_port(local_addr)
    return ip, port


@dataclass(frozen=True)
class SessionSettings:
    buflen: int = DEFAULT_BUFLEN
    banner: bytes = b""
    log_dir: Optional[str] = None  # None disables session logging


@dataclass(eq=False)
class Session:
    in_reader: asyncio.StreamReader
    in_writer: asyncio.StreamWriter
    out_reader: asyncio.StreamReader
    out_writer: asyncio.StreamWriter
    target: Tuple[str, int]
    in_desc: str
    out_desc: str
    _closed: Set[str] = field(default_factory=set)

    def close(self) -> None:
        """Close both legs. Safe to call any number of times."""
        for name, writer in (("inbound", self.in_writer), ("outbound", self.out_writer)):
            if name in self._closed:
                continue
            self._closed.add(name)
            abort_writer(writer)


def abort_writer(writer: asyncio.StreamWriter) -> None:
    """Close now, discarding unsent buffered bytes.

    A plain close() waits for the write buffer to flush, which never happens
    when the peer stopped reading; abort() also wakes a pending drain().
    """
    writer.close()
    writer.transport.abort()


async def send_all(writer: asyncio.StreamWriter, data: bytes) -> None:
    writer.write(data)
    await writer.drain()


async def handle_session(
    conn: socket.socket,
    settings: SessionSettings,
    router: EventLog,
    on_fatal: Optional[Callable[[BaseException], None]] = None,
) -> None:
    try:
        remote, local = conn.getpeername(), conn.getsockname()
        target = connect_back_target(local, remote)
    except (OSError, AddressError) as e:
        router.emit(cat="session", event="bad_address", level="error", payload={"error": str(e)})
        conn.close()
        return

    in_desc = f"{format_endpoint(remote)} -> {format_endpoint(local)}"
    router.emit(cat="session", event="connection_got", payload={"conn": in_desc})

    conn.setblocking(False)
    in_writer: Optional[asyncio.StreamWriter] = None
    session: Optional[Session] = None
    # Until the Session exists, the inbound leg is ours to close on every exit,
    # cancellation included.
    try:
        try:
            in_reader, in_writer = await asyncio.open_connection(sock=conn)
        except OSError as e:
            router.emit(cat="session", event="setup_failed", level="warning", payload={"conn": in_desc, "error": repr(e)})
            return

        if settings.banner:
            try:
                await send_all(in_writer, settings.banner)
            except OSError as e:
                router.emit(cat="session", event="banner_failed", level="warning", payload={"conn": in_desc, "error": repr(e)})
                return

        try:
            out_reader, out_writer = await asyncio.open_connection(host=target[0], port=target[1])
        except OSError as e:
            msg = f"Unable to connect back to {format_endpoint(target)}"
            router.emit(cat="session", event="dial_failed", level="warning", payload={"conn": in_desc, "msg": msg, "error": repr(e)})
            try:
                await send_all(in_writer, (msg + "\n").encode("utf-8"))
            except OSError as e2:
                router.emit(cat="session", event="dial_notice_failed", level="warning", payload={"conn": in_desc, "error": repr(e2)})
            return

        out_desc = (
            f"{format_endpoint(out_writer.get_extra_info('sockname'))} -> "
            f"{format_endpoint(out_writer.get_extra_info('peername'))}"
        )
        router.emit(cat="session", event="connection_made", payload={"conn": out_desc})

        session = Session(
            in_reader=in_reader,
            in_writer=in_writer,
            out_reader=out_reader,
            out_writer=out_writer,
            target=target,
            in_desc=in_desc,
            out_desc=out_desc,
        )
    finally:
        if session is None:
            if in_writer is not None:
                abort_writer(in_writer)
            else:
                conn.close()

    await run_session(session, settings, router, on_fatal)


async def run_session(
    session: Session,
    settings: SessionSettings,
    router: EventLog,
    on_fatal: Optional[Callable[[BaseException], None]] = None,
) -> None:
    done: "asyncio.Queue[Completion]" = asyncio.Queue()
    in_sink: Optional["asyncio.Queue[Optional[Packet]]"] = None
    out_sink: Optional["asyncio.Queue[Optional[Packet]]"] = None
    logger_task: Optional["asyncio.Task[None]"] = None

    if settings.log_dir is not None:
        in_sink = asyncio.Queue(maxsize=SINK_DEPTH)
        out_sink = asyncio.Queue(maxsize=SINK_DEPTH)
        path = replay_file_path(settings.log_dir, session.target[0], time.time_ns())
        slog = SessionLogger(in_sink, out_sink, path, router, on_fatal)
        logger_task = asyncio.create_task(slog.run())

    proxies = [
        asyncio.create_task(proxy_bytes(
            session.in_reader, session.out_writer, done, settings.buflen, session.in_desc, router,
            direction=INBOUND, sink=in_sink,
        )),
        asyncio.create_task(proxy_bytes(
            session.out_reader, session.in_writer, done, settings.buflen, session.out_desc, router,
            direction=OUTBOUND, sink=out_sink,
        )),
    ]

    try:
        first = await done.get()
    except asyncio.CancelledError:
        session.close()
        for t in proxies + ([logger_task] if logger_task else []):
            t.cancel()
        raise

    router.emit(
        cat="session",
        event="closing",
        payload={"conn": session.in_desc, "direction": first.direction, "endpoint": first.endpoint, "reason": first.reason},
    )
    session.close()

    # Proxies drain out after the close; only then can the logger be told to stop.
    await asyncio.gather(*proxies, return_exceptions=True)
    if logger_task is not None and in_sink is not None and out_sink is not None:
        await in_sink.put(None)
        await out_sink.put(None)
        await logger_task


# =============================================================================
# Service
# =============================================================================

class Service:
    def __init__(self, cfg: MirrorConfig, log: logging.Logger) -> None:
        self.cfg = cfg
        self.log = log
        self.router = EventLog(log)
        self.settings = SessionSettings(
            buflen=cfg.buflen,
            banner=normalize_banner(cfg.banner),
            log_dir=cfg.log_dir if cfg.session_logging else None,
        )

        self.listeners: List[Listener] = []
        self.dispatcher: Optional[Dispatcher] = None
        self._accept_tasks: List["asyncio.Task[None]"] = []
        self._dispatch_task: Optional["asyncio.Task[None]"] = None
        self._fatal: Optional["asyncio.Future[BaseException]"] = None

    def fatal(self, exc: BaseException) -> None:
        if self._fatal is not None and not self._fatal.done():
            self._fatal.set_result(exc)

    async def _handle(self, conn: socket.socket) -> None:
        await handle_session(conn, self.settings, self.router, on_fatal=self.fatal)

    async def start(self) -> None:
        self._fatal = asyncio.get_running_loop().create_future()

        if self.settings.log_dir is not None:
            ensure_log_dir(self.settings.log_dir)

        self.listeners = open_listeners(self.cfg, self.router)
        self.dispatcher = Dispatcher(self._handle, self.router)
        for lst in self.listeners:
            self.dispatcher.register(lst)
            self._accept_tasks.append(asyncio.create_task(lst.accept_loop(self.dispatcher)))
        self._dispatch_task = asyncio.create_task(self.dispatcher.run())

        self.router.emit(
            cat="service",
            event="started",
            payload={
                "listeners": [lst.describe() for lst in self.listeners],
                "log_dir": self.settings.log_dir,
                "banner": bool(self.settings.banner),
                "buflen": self.settings.buflen,
            },
        )

    async def wait(self) -> None:
        """Return only by raising: AllListenersDead or a reported FatalError."""
        assert self._dispatch_task is not None and self._fatal is not None
        await asyncio.wait({self._dispatch_task, self._fatal}, return_when=asyncio.FIRST_COMPLETED)
        if self._fatal.done():
            raise self._fatal.result()
        self._dispatch_task.result()

    async def stop(self) -> None:
        for t in self._accept_tasks:
            t.cancel()
        if self._dispatch_task is not None:
            self._dispatch_task.cancel()
        await asyncio.gather(*self._accept_tasks, *([self._dispatch_task] if self._dispatch_task else []), return_exceptions=True)

        for lst in self.listeners:
            lst.close()
        if self.dispatcher is not None:
            await self.dispatcher.close()

        self.router.emit(cat="service", event="stopped")


# =============================================================================
# CLI + entrypoint
# =============================================================================

def build_argparser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Accept a connection, connect back to the peer on the same port, and relay both ways, logging the session."
    )
    p.add_argument("--config", help="Path to JSON (or json-ish) config file")
    p.add_argument("--addr", help=f"[Address and] port on which to listen (default {DEFAULT_ADDR})")
    p.add_argument("--logdir", help=f"Directory to which to write session logs (default {DEFAULT_LOG_DIR})")
    p.add_argument("--nolog", action="store_true", help="Disable session logging")
    p.add_argument("--no4", action="store_true", help="Disable IPv4")
    p.add_argument("--no6", action="store_true", help="Disable IPv6")
    p.add_argument(
        "--banner",
        help='Banner sent to connecting clients; a newline is appended. --banner "" disables it.',
    )
    p.add_argument("--buflen", type=int, help=f"Read buffer size (default {DEFAULT_BUFLEN})")
    p.add_argument("--log-level", help="Console log level override (DEBUG, INFO, ...)")
    return p


async def amain(args: argparse.Namespace) -> int:
    try:
        cfg = build_config(args)
    except ConfigError as e:
        raise SystemExit(f"onewaymirror: {e}") from e

    log = setup_logging(cfg)
    svc = Service(cfg, log)

    try:
        await svc.start()
    except (BindError, FatalError) as e:
        log.critical("%s", e)
        await svc.stop()
        return 1

    stop_ev = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_ev.set)
        except NotImplementedError:
            pass

    waiter = asyncio.create_task(svc.wait())
    stopper = asyncio.create_task(stop_ev.wait())
    rc = 0
    try:
        await asyncio.wait({waiter, stopper}, return_when=asyncio.FIRST_COMPLETED)
        if waiter.done():
            try:
                waiter.result()
            except (AllListenersDead, FatalError) as e:
                log.critical("%s", e)
                rc = 1
    finally:
        waiter.cancel()
        stopper.cancel()
        await svc.stop()

    return rc


def main() -> None:
    args = build_argparser().parse_args()
    try:
        rc = asyncio.run(amain(args))
    except KeyboardInterrupt:
        rc = 130
    raise SystemExit(rc)


if __name__ == "__main__":
    main()
