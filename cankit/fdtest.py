"""Full-duplex CAN test: a device under test echoes frames, a host checks them."""

from __future__ import annotations

import errno
import getopt
import signal
import socket
import struct
import sys
import time
from dataclasses import dataclass, field
from typing import Optional, Sequence, TextIO

from cankit.framelen import CAN_MAX_DLEN, CAN_RTR_FLAG

PROG = "canfdtest"

CAN_MSG_ID = 0x77
CAN_MSG_LEN = 8
CAN_MSG_COUNT = 50
CAN_MSG_WAIT = 27

PF_CAN = 29
CAN_RAW = 1
SOL_CAN_RAW = 101
CAN_RAW_RECV_OWN_MSGS = 4

_CAN_FRAME = struct.Struct("=IB3x8s")


@dataclass
class TestFrame:
    """A Classical CAN frame as exchanged by the test."""

    __test__ = False

    can_id: int
    dlc: int
    data: bytes = field(default=bytes(CAN_MAX_DLEN))

    def __post_init__(self) -> None:
        data = bytes(self.data)
        if len(data) > CAN_MAX_DLEN:
            raise ValueError(f"payload exceeds {CAN_MAX_DLEN} bytes")
        self.data = data.ljust(CAN_MAX_DLEN, b"\0")

    @property
    def payload(self) -> bytes:
        return self.data[: min(self.dlc, CAN_MAX_DLEN)]

    def incremented(self) -> "TestFrame":
        """The answer of the device under test: CAN id and payload bytes plus one."""
        used = min(self.dlc, CAN_MAX_DLEN)
        data = bytes((b + 1) & 0xFF for b in self.data[:used]) + self.data[used:]
        return TestFrame((self.can_id + 1) & 0xFFFFFFFF, self.dlc, data)

    def format(self, inc: int = 0) -> str:
        """Text form with ``inc`` added to the id and payload bytes."""
        text = f"{(self.can_id + inc) & 0xFFFFFFFF:04x}: "
        if self.can_id & CAN_RTR_FLAG:
            return text + "remote request"
        return text + f"[{self.dlc}]" + "".join(f" {(b + inc) & 0xFF:02x}" for b in self.payload)

    def pack(self) -> bytes:
        """Wire layout of a SocketCAN ``can_frame``."""
        return _CAN_FRAME.pack(self.can_id, self.dlc, self.data)

    @classmethod
    def unpack(cls, raw: bytes) -> "TestFrame":
        if len(raw) != _CAN_FRAME.size:
            raise ValueError(f"expected {_CAN_FRAME.size} bytes, got {len(raw)}")
        can_id, dlc, data = _CAN_FRAME.unpack(raw)
        return cls(can_id, dlc, data)


def make_test_frame(counter: int) -> TestFrame:
    """Generated frame: fixed id, eight bytes counting up from ``counter``."""
    data = bytes((counter + i) & 0xFF for i in range(CAN_MSG_LEN))
    return TestFrame(CAN_MSG_ID, CAN_MSG_LEN, data)


def check_frame(frame: TestFrame) -> list[str]:
    """Problems of a frame received by the device under test; empty if fine."""
    problems = []
    if frame.can_id != CAN_MSG_ID:
        problems.append(f"unexpected Message ID 0x{frame.can_id:04x}!")
    if frame.dlc != CAN_MSG_LEN:
        problems.append(f"unexpected Message length {frame.dlc}!")
    payload = frame.payload
    for prev, cur in zip(payload, payload[1:]):
        if cur != (prev + 1) & 0xFF:
            problems.append("Frame inconsistent!")
            problems.append(frame.format(0))
            break
    return problems


def _compare_lines(expected: TestFrame, received: TestFrame, inc: int) -> list[str]:
    return [f"expected: {expected.format(inc)}", f"received: {received.format(0)}"]


def compare_frame(expected: TestFrame, received: TestFrame, inc: int) -> list[str]:
    """Mismatch report of ``received`` against ``expected`` plus ``inc``; empty if equal."""
    if received.can_id != (expected.can_id + inc) & 0xFFFFFFFF:
        return ["Message ID mismatch!"] + _compare_lines(expected, received, inc)
    if received.dlc != expected.dlc:
        return ["Message length mismatch!"] + _compare_lines(expected, received, inc)
    lines = []
    for index, (exp, rec) in enumerate(zip(expected.payload, received.payload)):
        if rec != (exp + inc) & 0xFF:
            lines.append(f"Databyte {index:x} mismatch!")
            lines.extend(_compare_lines(expected, received, inc))
    return lines


def _write_lines(out: TextIO, lines: list[str]) -> None:
    for line in lines:
        out.write(line + "\n")


def _echo_progress(value: int, out: TextIO) -> None:
    if value == 0xFF:
        out.write(".")
        out.flush()


def _recv_frame(sock) -> TestFrame:
    raw = sock.recv(_CAN_FRAME.size)
    if len(raw) != _CAN_FRAME.size:
        raise ConnectionError(f"recv returned {len(raw)}")
    return TestFrame.unpack(raw)


def _send_frame(sock, frame: TestFrame, verbose: int, out: TextIO) -> None:
    raw = frame.pack()
    while True:
        try:
            sent = sock.send(raw)
        except OSError as exc:
            if exc.errno != errno.ENOBUFS:
                raise
            if verbose:
                out.write("N")
                out.flush()
            continue
        if sent != len(raw):
            raise ConnectionError(f"send returned {sent}")
        return


def echo_dut(sock, verbose: int = 0, out: Optional[TextIO] = None) -> None:
    """Echo every received frame incremented; runs until receiving fails."""
    out = out if out is not None else sys.stdout
    frame_count = 0
    while True:
        frame = _recv_frame(sock)
        frame_count += 1
        if verbose == 1:
            _echo_progress(frame.data[0], out)
        elif verbose > 1:
            out.write(frame.format(0) + "\n")

        _write_lines(out, check_frame(frame))
        _send_frame(sock, frame.incremented(), verbose, out)

        # interlace the frames of both sides
        if frame_count == CAN_MSG_WAIT:
            frame_count = 0
            time.sleep(0.003)


def echo_gen(
    sock,
    inflight: int = CAN_MSG_COUNT,
    loops: int = 0,
    verbose: int = 0,
    out: Optional[TextIO] = None,
) -> int:
    """Send test frames and check their echoes; returns the number of checked answers.

    Stops after ``loops`` answers (0 means never) or at the first mismatch.
    """
    if inflight < 1:
        raise ValueError("at least one frame must be in flight")
    out = out if out is not None else sys.stdout

    tx_frames: list[Optional[TestFrame]] = [None] * inflight
    recv_tx = [False] * inflight
    counter = 0
    send_pos = recv_rx_pos = recv_tx_pos = unprocessed = done = 0
    running = True

    while running:
        if unprocessed < inflight:
            frame = make_test_frame(counter)
            tx_frames[send_pos] = frame
            recv_tx[send_pos] = False
            _send_frame(sock, frame, verbose, out)

            send_pos = (send_pos + 1) % inflight
            unprocessed += 1
            if verbose == 1:
                _echo_progress(counter, out)
            counter = (counter + 1) & 0xFF
            time.sleep(0.003 if counter % 33 == 0 else 0.001)
            continue

        rx_frame = _recv_frame(sock)
        if verbose > 1:
            out.write(rx_frame.format(0) + "\n")

        if rx_frame.can_id == CAN_MSG_ID:
            # own frame looped back
            mismatch = compare_frame(tx_frames[recv_tx_pos], rx_frame, 0)
            if mismatch:
                _write_lines(out, mismatch)
                running = False
            recv_tx[recv_tx_pos] = True
            recv_tx_pos = (recv_tx_pos + 1) % inflight
            continue

        if not recv_tx[recv_rx_pos]:
            out.write("RX before TX!\n")
            out.write(rx_frame.format(0) + "\n")
            running = False
        mismatch = compare_frame(tx_frames[recv_rx_pos], rx_frame, 1)
        if mismatch:
            _write_lines(out, mismatch)
            running = False
        recv_rx_pos = (recv_rx_pos + 1) % inflight

        done += 1
        if loops and done >= loops:
            break
        unprocessed -= 1

    out.write(f"\nTest messages sent and received: {done}\n")
    return done


def _usage(prog: str) -> str:
    return (
        f"{prog} - Full-duplex test program (DUT and host part).\n"
        f"Usage: {prog} [options] <can-interface>\n"
        "\n"
        "Options:\n"
        f"         -f COUNT (number of frames in flight, default: {CAN_MSG_COUNT})\n"
        "         -g       (generate messages)\n"
        "         -l COUNT (test loop count)\n"
        "         -v       (low verbosity)\n"
        "         -vv      (high verbosity)\n"
        "\n"
        "With the option '-g' CAN messages are generated and checked\n"
        "on <can-interface>, otherwise all messages received on the\n"
        "<can-interface> are sent back incrementing the CAN id and\n"
        "all data bytes. The program can be aborted with ^C.\n"
        "\n"
        "Examples:\n"
        "\ton DUT:\n"
        f"{prog} -v can0\n"
        "\ton Host:\n"
        f"{prog} -g -v can2\n"
    )


def _atoi(text: str) -> int:
    text = text.strip()
    digits = ""
    for index, char in enumerate(text):
        if char.isdigit() or (index == 0 and char in "+-"):
            digits += char
        else:
            break
    try:
        return int(digits)
    except ValueError:
        return 0


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
            pass


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the device under test or, with -g, the generating host."""
    args = list(sys.argv[1:] if argv is None else argv)
    out = sys.stdout

    try:
        opts, rest = getopt.gnu_getopt(args, "f:gl:v?")
    except getopt.GetoptError:
        sys.stderr.write(_usage(PROG))
        return 1

    inflight = CAN_MSG_COUNT
    generate = False
    loops = 0
    verbose = 0
    for opt, value in opts:
        if opt == "-f":
            inflight = _atoi(value)
        elif opt == "-g":
            generate = True
        elif opt == "-l":
            loops = _atoi(value)
        elif opt == "-v":
            verbose += 1
        else:
            sys.stderr.write(_usage(PROG))
            return 1

    if len(rest) != 1:
        sys.stderr.write(_usage(PROG))
        return 1
    ifname = rest[0]

    out.write(
        f"interface = {ifname}, family = {PF_CAN}, "
        f"type = {int(socket.SOCK_RAW)}, proto = {CAN_RAW}\n"
    )

    family = getattr(socket, "AF_CAN", None)
    if family is None:
        sys.stderr.write("socket: CAN sockets are not supported on this platform\n")
        return 1

    try:
        sock = socket.socket(family, socket.SOCK_RAW, CAN_RAW)
    except OSError as exc:
        sys.stderr.write(f"socket: {exc}\n")
        return 1

    with sock:
        try:
            if generate:
                sock.setsockopt(SOL_CAN_RAW, CAN_RAW_RECV_OWN_MSGS, 1)
            socket.if_nametoindex(ifname)
            sock.bind((ifname,))
        except OSError as exc:
            sys.stderr.write(f"bind: {exc}\n")
            return 1

        _install_signal_handlers()
        status = 0
        try:
            if generate:
                echo_gen(sock, inflight, loops, verbose, out)
            else:
                echo_dut(sock, verbose, out)
        except KeyboardInterrupt:
            status = 0
        except (OSError, ValueError) as exc:
            sys.stderr.write(f"{exc}\n")
            status = 1

        if verbose:
            out.write("Exiting...\n")
        return status


if __name__ == "__main__":
    sys.exit(main())