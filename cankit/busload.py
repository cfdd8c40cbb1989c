"""Monitor the load of one or more CAN buses."""

from __future__ import annotations

import getopt
import re
import selectors
import signal
import socket
import struct
import sys
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, Sequence

from cankit.framelen import CAN_MAX_DLEN, FrameLengthMode, frame_length
from cankit.terminal import ATTRESET, CLR_SCREEN, CSR_HOME, FGBLUE, FGRED

PROG = "canbusload"

MAXSOCK = 16
IFNAMSIZ = 16
MAX_BITRATE = 1000000
PERCENTRES = 5
NUMBAR = 100 // PERCENTRES

CAN_MTU = 16
_CAN_FRAME = struct.Struct("=IB3x8s")

# longest accepted "<ifname>@<bitrate>" argument
_MAX_SPEC_LEN = IFNAMSIZ + len("@1000000") + 1 + 1


@dataclass
class BusStats:
    """Counters of one CAN interface for the current interval."""

    devname: str
    bitrate: int
    recv_frames: int = 0
    recv_bits_total: int = 0
    recv_bits_payload: int = 0
    bitrate_width: int = 0

    def record(self, can_id: int, data: bytes, mode: FrameLengthMode) -> None:
        """Account one received Classical CAN frame."""
        data = bytes(data)
        self.recv_frames += 1
        self.recv_bits_payload += len(data) * 8
        self.recv_bits_total += frame_length(can_id, data, mode)

    def load_percent(self) -> int:
        """Bus load of the interval in percent; may exceed 100."""
        if not self.bitrate:
            return 0
        return (self.recv_bits_total * 100) // self.bitrate

    def reset(self) -> None:
        """Start a new interval."""
        self.recv_frames = 0
        self.recv_bits_total = 0
        self.recv_bits_payload = 0


def _atoi(text: str) -> int:
    match = re.match(r"\s*([+-]?\d+)", text)
    return int(match.group(1)) if match else 0


def parse_interface_spec(spec: str) -> BusStats:
    """Parse ``<ifname>@<bitrate>``; raises ValueError on malformed input."""
    if len(spec) >= _MAX_SPEC_LEN:
        raise ValueError(f"name of CAN device '{spec}' is too long!")
    name, sep, rate_text = spec.partition("@")
    if not sep:
        raise ValueError(f"missing '@<bitrate>' in '{spec}'")
    if len(name) >= IFNAMSIZ:
        raise ValueError(f"name of CAN device '{spec}' is too long!")
    bitrate = _atoi(rate_text)
    if bitrate <= 0 or bitrate > MAX_BITRATE:
        raise ValueError(f"invalid bitrate for CAN device '{spec}'!")
    return BusStats(devname=name, bitrate=bitrate, bitrate_width=len(rate_text))


def bargraph(percent: int) -> str:
    """Bargraph of the load in steps of PERCENTRES percent."""
    filled = min(percent, 100) // PERCENTRES
    return "|" + "X" * filled + "." * (NUMBAR - filled) + "|"


def format_report(
    stats: Sequence[BusStats],
    mode: FrameLengthMode,
    redraw: bool,
    timestamp: bool,
    color: bool,
    show_bargraph: bool,
    prog: str,
    now: Optional[datetime],
) -> str:
    """One statistics block, one line per interface."""
    parts = []
    if redraw:
        parts.append(CSR_HOME)
    if timestamp:
        when = now if now is not None else datetime.now()
        parts.append(f"{prog} {when:%Y-%m-%d %H:%M:%S} ({FrameLengthMode(mode).label})\n")

    name_width = max((len(s.devname) for s in stats), default=0)
    rate_width = max((s.bitrate_width or len(str(s.bitrate)) for s in stats), default=0)

    for index, stat in enumerate(stats):
        if color:
            parts.append(FGRED if index % 2 else FGBLUE)
        percent = stat.load_percent()
        parts.append(
            f" {stat.devname:>{name_width}}@{stat.bitrate:<{rate_width}d} "
            f"{stat.recv_frames:5d} {stat.recv_bits_total:7d} "
            f"{stat.recv_bits_payload:6d} {percent:3d}%"
        )
        if show_bargraph:
            parts.append(" " + bargraph(percent))
        if color:
            parts.append(ATTRESET)
        parts.append("\n")

    parts.append("\n")
    return "".join(parts)


def _usage(prog: str) -> str:
    return (
        f"{prog} - monitor CAN bus load.\n"
        f"\nUsage: {prog} [options] <CAN interface>+\n"
        f"  (use CTRL-C to terminate {prog})\n\n"
        "Options:\n"
        "         -t  (show current time on the first line)\n"
        "         -c  (colorize lines)\n"
        f"         -b  (show bargraph in {PERCENTRES}% resolution)\n"
        "         -r  (redraw the terminal - similar to top)\n"
        "         -i  (ignore bitstuffing in bandwidth calculation)\n"
        "         -e  (exact calculation of stuffed bits)\n"
        "\n"
        f"Up to {MAXSOCK} CAN interfaces with mandatory bitrate can be specified on the \n"
        "commandline in the form: <ifname>@<bitrate>\n\n"
        "The bitrate is mandatory as it is needed to know the CAN bus bitrate to\n"
        "calculate the bus load percentage based on the received CAN frames.\n"
        "Due to the bitstuffing estimation the calculated busload may exceed 100%.\n"
        "For each given interface the data is presented in one line which contains:\n\n"
        "(interface) (received CAN frames) (used bits total) (used bits for payload)\n"
        "\nExamples:\n"
        "\nuser$> canbusload can0@100000 can1@500000 can2@500000 can3@500000 -r -t -b -c\n\n"
        f"{prog} 2014-02-01 21:13:16 (worst case bitstuffing)\n"
        " can0@100000   805   74491  36656  74% |XXXXXXXXXXXXXX......|\n"
        " can1@500000   796   75140  37728  15% |XXX.................|\n"
        " can2@500000     0       0      0   0% |....................|\n"
        " can3@500000    47    4633   2424   0% |....................|\n"
        "\n"
    )


def _interrupt(signo, frame):
    raise KeyboardInterrupt


def _install_signal_handlers() -> None:
    for name in ("SIGTERM", "SIGHUP", "SIGINT"):
        signo = getattr(signal, name, None)
        if signo is None:
            continue
        try:
            signal.signal(signo, _interrupt)
        except ValueError:
            # not running in the main thread
            pass


def _open_sockets(stats: Iterable[BusStats]) -> list[socket.socket]:
    family = getattr(socket, "AF_CAN", None)
    if family is None:
        raise OSError("CAN sockets are not supported on this platform")
    sockets = []
    try:
        for stat in stats:
            sock = socket.socket(family, socket.SOCK_RAW, socket.CAN_RAW)
            sockets.append(sock)
            sock.bind((stat.devname,))
    except OSError:
        for sock in sockets:
            sock.close()
        raise
    return sockets


def _monitor(stats, sockets, mode, redraw, timestamp, color, show_bargraph, out) -> int:
    with selectors.DefaultSelector() as selector:
        for sock, stat in zip(sockets, stats):
            selector.register(sock, selectors.EVENT_READ, stat)

        if redraw:
            out.write(CLR_SCREEN)
        deadline = time.monotonic() + 1.0
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                out.write(
                    format_report(stats, mode, redraw, timestamp, color, show_bargraph, PROG, None)
                )
                out.flush()
                for stat in stats:
                    stat.reset()
                deadline = time.monotonic() + 1.0
                continue
            for key, _ in selector.select(remaining):
                raw = key.fileobj.recv(CAN_MTU)
                if len(raw) < CAN_MTU:
                    sys.stderr.write("read: incomplete CAN frame\n")
                    return 1
                can_id, dlc, payload = _CAN_FRAME.unpack(raw)
                key.data.record(can_id, payload[: min(dlc, CAN_MAX_DLEN)], mode)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the bus load monitor; returns the exit status."""
    args = list(sys.argv[1:] if argv is None else argv)
    err = sys.stderr

    try:
        opts, specs = getopt.gnu_getopt(args, "rtbcieh?")
    except getopt.GetoptError:
        err.write(_usage(PROG))
        return 1

    redraw = timestamp = color = show_bargraph = False
    mode = FrameLengthMode.WORSTCASE
    for opt, _ in opts:
        if opt == "-r":
            redraw = True
        elif opt == "-t":
            timestamp = True
        elif opt == "-b":
            show_bargraph = True
        elif opt == "-c":
            color = True
        elif opt == "-i":
            mode = FrameLengthMode.NO_BITSTUFFING
        elif opt == "-e":
            mode = FrameLengthMode.EXACT
        else:
            err.write(_usage(PROG))
            return 1

    if not specs:
        err.write(_usage(PROG))
        return 0

    if len(specs) > MAXSOCK:
        sys.stdout.write(f"More than {MAXSOCK} CAN devices given on commandline!\n")
        return 1

    stats = []
    for spec in specs:
        if "@" not in spec and len(spec) < _MAX_SPEC_LEN:
            err.write(_usage(PROG))
            return 1
        try:
            stats.append(parse_interface_spec(spec))
        except ValueError as exc:
            sys.stdout.write(f"{exc}\n")
            return 1

    try:
        sockets = _open_sockets(stats)
    except OSError as exc:
        err.write(f"socket: {exc}\n")
        return 1

    _install_signal_handlers()
    try:
        return _monitor(stats, sockets, mode, redraw, timestamp, color, show_bargraph, sys.stdout)
    except KeyboardInterrupt:
        return 0
    finally:
        for sock in sockets:
            sock.close()


if __name__ == "__main__":
    sys.exit(main())