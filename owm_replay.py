#!/usr/bin/env python3
r"""
owm_replay.py

Offline tooling for onewaymirror replay files (.owm).

Commands:
  show     print every record; printable ASCII (plus \t \r \n) as-is, other
           bytes as uppercase hex (no \x). Direction tag colorized on a TTY.
  extract  write the concatenated payload of one direction (i or o)
  pcap     convert the session into a pcap holding a synthetic TCP
           conversation (Ether/IP|IPv6/TCP), one packet per record:
             i records: client -> mirror
             o records: mirror -> client
           Sequence numbers advance per direction by payload length and
           packet times come from the record timestamps.

The client IP defaults to the replay file's parent directory name
(onewaymirror stores sessions as <logdir>/<peer ip>/<start>.owm).

Usage:
  python3 owm_replay.py show onewaymirror/10.0.0.7/2026-10-19T11:00:00.000000000+00:00.owm
  python3 owm_replay.py extract --direction i session.owm --out client.bin
  python3 owm_replay.py pcap session.owm --out session.pcap --mirror 10.0.0.1:6667
"""

from __future__ import annotations

import argparse
import ipaddress
import os
import sys
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

from onewaymirror import (
    INBOUND,
    OUTBOUND,
    ReplayFormatError,
    ReplayRecord,
    direction_payload,
    read_replay_file,
)

# --- Scapy --------------------------------------------------------------------
try:
    from scapy.layers.inet import IP, TCP  # type: ignore
    from scapy.layers.inet6 import IPv6  # type: ignore
    from scapy.layers.l2 import Ether  # type: ignore
    from scapy.packet import Raw  # type: ignore
    from scapy.utils import PcapWriter  # type: ignore
except Exception as e:  # pragma: no cover
    raise SystemExit(
        "Missing scapy. Install with:\n"
        "  pip install scapy\n"
        f"Original error: {e!r}"
    ) from e


# Fixed MACs so scapy never tries to resolve neighbours while building frames.
CLIENT_MAC = "02:00:00:00:00:01"
MIRROR_MAC = "02:00:00:00:00:02"

CLIENT_ISN = 1000
MIRROR_ISN = 5000

DIRECTION_COLORS = {INBOUND: "32", OUTBOUND: "36"}


def escape_bytes_ascii_or_hex(data: bytes) -> str:
    out_parts: List[str] = []
    for b in data:
        if b in (9, 10, 13) or (32 <= b <= 126):
            out_parts.append(chr(b))
        else:
            out_parts.append(f"{b:02X}")
    return "".join(out_parts)


def _use_color() -> bool:
    if os.environ.get("NO_COLOR") is not None:
        return False
    return sys.stdout.isatty()


def colorize(s: str, code: str) -> str:
    if not _use_color():
        return s
    return f"\x1b[{code}m{s}\x1b[0m"


def parse_endpoint(s: str, default_port: int) -> Tuple[str, int]:
    """ip, ip:port or [ipv6]:port"""
    s = s.strip()
    host, port = s, default_port
    if s.startswith("["):
        end = s.find("]")
        if end < 0:
            raise ValueError(f"bad endpoint {s!r}")
        host = s[1:end]
        if s[end + 1:end + 2] == ":":
            port = int(s[end + 2:])
    elif s.count(":") == 1:
        host, _, port_s = s.partition(":")
        port = int(port_s)
    ipaddress.ip_address(host)
    if not 0 < port <= 65535:
        raise ValueError(f"port out of range in {s!r}")
    return host, port


def guess_client_ip(path: str) -> Optional[str]:
    name = os.path.basename(os.path.dirname(os.path.abspath(path)))
    try:
        ipaddress.ip_address(name)
    except ValueError:
        return None
    return name


# =============================================================================
# PCAP conversion
# =============================================================================

@dataclass(frozen=True)
class Conversation:
    client_ip: str
    client_port: int
    mirror_ip: str
    mirror_port: int

    @property
    def is_v6(self) -> bool:
        return ipaddress.ip_address(self.client_ip).version == 6


def default_conversation(path: str, client: Optional[str] = None, mirror: Optional[str] = None) -> Conversation:
    if client:
        client_ip, client_port = parse_endpoint(client, 40000)
    else:
        client_ip, client_port = guess_client_ip(path) or "10.0.0.2", 40000

    v6 = ipaddress.ip_address(client_ip).version == 6
    if mirror:
        mirror_ip, mirror_port = parse_endpoint(mirror, 23)
    else:
        mirror_ip, mirror_port = ("fd00::1" if v6 else "10.0.0.1"), 23

    if ipaddress.ip_address(mirror_ip).version != ipaddress.ip_address(client_ip).version:
        raise ValueError("client and mirror must be in the same address family")
    return Conversation(client_ip=client_ip, client_port=client_port, mirror_ip=mirror_ip, mirror_port=mirror_port)


def build_packets(records: List[ReplayRecord], conv: Conversation) -> List[Any]:
    seq = {INBOUND: CLIENT_ISN, OUTBOUND: MIRROR_ISN}
    l3 = IPv6 if conv.is_v6 else IP
    pkts: List[Any] = []

    for rec in records:
        if rec.direction == INBOUND:
            ether = Ether(src=CLIENT_MAC, dst=MIRROR_MAC)
            ip = l3(src=conv.client_ip, dst=conv.mirror_ip)
            tcp = TCP(sport=conv.client_port, dport=conv.mirror_port, flags="PA",
                      seq=seq[INBOUND], ack=seq[OUTBOUND])
        else:
            ether = Ether(src=MIRROR_MAC, dst=CLIENT_MAC)
            ip = l3(src=conv.mirror_ip, dst=conv.client_ip)
            tcp = TCP(sport=conv.mirror_port, dport=conv.client_port, flags="PA",
                      seq=seq[OUTBOUND], ack=seq[INBOUND])

        pkt = ether / ip / tcp / Raw(load=rec.payload)
        pkt.time = rec.ts_ns / 1e9
        pkts.append(pkt)
        seq[rec.direction] = (seq[rec.direction] + len(rec.payload)) & 0xFFFFFFFF

    return pkts


def write_pcap(records: List[ReplayRecord], conv: Conversation, out_path: str) -> int:
    pkts = build_packets(records, conv)
    w = PcapWriter(out_path, append=False, sync=True)
    try:
        for p in pkts:
            w.write(p)
    finally:
        w.close()
    return len(pkts)


# =============================================================================
# Commands
# =============================================================================

def cmd_show(args: argparse.Namespace) -> int:
    records = read_replay_file(args.file)
    for rec in records:
        tag = colorize(f"[{rec.direction}]", DIRECTION_COLORS[rec.direction])
        sys.stdout.write(f"\n{tag} {rec.human} {len(rec.payload)}\n{escape_bytes_ascii_or_hex(rec.payload)}\n")
    sys.stdout.flush()
    return 0


def cmd_extract(args: argparse.Namespace) -> int:
    data = direction_payload(read_replay_file(args.file), args.direction)
    if args.out:
        with open(args.out, "wb") as f:
            f.write(data)
    else:
        sys.stdout.buffer.write(data)
        sys.stdout.buffer.flush()
    return 0


def cmd_pcap(args: argparse.Namespace) -> int:
    records = read_replay_file(args.file)
    try:
        conv = default_conversation(args.file, client=args.client, mirror=args.mirror)
    except ValueError as e:
        sys.stderr.write(f"owm_replay: {e}\n")
        return 2
    out = args.out or os.path.splitext(args.file)[0] + ".pcap"
    n = write_pcap(records, conv, out)
    sys.stderr.write(f"wrote {n} packets to {out}\n")
    return 0


def build_argparser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Inspect and convert onewaymirror replay files.")
    sub = ap.add_subparsers(dest="cmd", required=True)

    p = sub.add_parser("show", help="Print records")
    p.add_argument("file")
    p.set_defaults(func=cmd_show)

    p = sub.add_parser("extract", help="Write one direction's payload")
    p.add_argument("file")
    p.add_argument("--direction", "-d", choices=(INBOUND, OUTBOUND), required=True)
    p.add_argument("--out", "-o", help="Output path (default: stdout)")
    p.set_defaults(func=cmd_extract)

    p = sub.add_parser("pcap", help="Convert to pcap")
    p.add_argument("file")
    p.add_argument("--out", "-o", help="Output path (default: <file>.pcap)")
    p.add_argument("--client", help="Client endpoint ip[:port] (default: parent dir name, port 40000)")
    p.add_argument("--mirror", help="Mirror endpoint ip[:port] (default port 23)")
    p.set_defaults(func=cmd_pcap)

    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = build_argparser().parse_args(argv)
    try:
        return args.func(args)
    except (OSError, ReplayFormatError) as e:
        sys.stderr.write(f"owm_replay: {e}\n")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
