"""TCP server that turns ASCII requests into CAN broadcast manager jobs.

Requests have the form::

    < interface command ival_s ival_us can_id can_dlc [data]* >

``can_id`` and ``data`` are hexadecimal, everything else is decimal.  The
commands 'A'dd, 'U'pdate, 'D'elete and 'S'end control cyclic transmission;
'R'eceive setup, 'F'ilter ID setup and 'X' (delete) control reception.
Received CAN frames are reported to the client as::

    < interface can_id can_dlc [data]* >

followed by a NUL byte.  Closing the client connection ends all jobs.
"""

from __future__ import annotations

import re
import selectors
import socket
import struct
import sys
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence

PORT = 28600
MAXLEN = 100
IFNAMSIZ = 16
CAN_MAX_DLEN = 8

# broadcast manager opcodes
TX_SETUP = 1
TX_DELETE = 2
TX_SEND = 4
RX_SETUP = 5
RX_DELETE = 6

# broadcast manager flags
SETTIMER = 0x0001
STARTTIMER = 0x0002
RX_FILTER_ID = 0x0020

# opcode, flags, count, ival1, ival2, can_id, nframes - padded for the frame
_BCM_HEAD = struct.Struct("@IIILLLLII0q")
_CAN_FRAME = struct.Struct("=IB3x8s")

_ULONG_MASK = (1 << (8 * struct.calcsize("@L"))) - 1
_DEC = re.compile(r"[+-]?\d+")
_HEX = re.compile(r"[+-]?(?:0[xX])?[0-9A-Fa-f]+")


class BcmCommand(Enum):
    """Request commands and the broadcast manager operation they stand for."""

    SEND = "S"
    ADD = "A"
    UPDATE = "U"
    DELETE = "D"
    RECEIVE = "R"
    FILTER = "F"
    RX_DELETE = "X"

    @property
    def opcode(self) -> int:
        return {
            BcmCommand.SEND: TX_SEND,
            BcmCommand.ADD: TX_SETUP,
            BcmCommand.UPDATE: TX_SETUP,
            BcmCommand.DELETE: TX_DELETE,
            BcmCommand.RECEIVE: RX_SETUP,
            BcmCommand.FILTER: RX_SETUP,
            BcmCommand.RX_DELETE: RX_DELETE,
        }[self]

    @property
    def flags(self) -> int:
        return {
            BcmCommand.ADD: SETTIMER | STARTTIMER,
            BcmCommand.RECEIVE: SETTIMER,
            BcmCommand.FILTER: RX_FILTER_ID | SETTIMER,
        }.get(self, 0)


@dataclass(frozen=True)
class BcmRequest:
    """One parsed client request."""

    ifname: str
    command: BcmCommand
    ival_sec: int
    ival_usec: int
    can_id: int
    data: bytes

    def pack(self) -> bytes:
        """Broadcast manager message: header followed by one CAN frame."""
        head = _BCM_HEAD.pack(
            self.command.opcode,
            self.command.flags,
            0,
            0,
            0,
            self.ival_sec & _ULONG_MASK,
            self.ival_usec & _ULONG_MASK,
            self.can_id & 0xFFFFFFFF,
            1,
        )
        frame = _CAN_FRAME.pack(self.can_id & 0xFFFFFFFF, len(self.data), bytes(self.data))
        return head + frame


class _UnknownCommand(ValueError):
    pass


class RequestAssembler:
    """Collects '<' ... '>' delimited requests from a byte stream."""

    def __init__(self) -> None:
        self._buf: Optional[bytearray] = None

    def feed(self, data: bytes) -> list[str]:
        """Add received bytes; returns the requests completed by them.

        Bytes outside a request are ignored, and a request growing beyond
        the buffer size is discarded.
        """
        done = []
        for byte in bytes(data):
            if self._buf is None:
                if byte == ord("<"):
                    self._buf = bytearray(b"<")
                continue
            if len(self._buf) > MAXLEN - 2:
                self._buf = None
                continue
            self._buf.append(byte)
            if byte == ord(">"):
                done.append(self._buf.decode("latin-1"))
                self._buf = None
        return done


def _scan_fields(inner: str) -> list:
    """Fields in request order, stopping at the first one that does not parse."""
    tokens = inner.split()
    fields: list = []
    if not tokens:
        return fields
    if len(tokens[0]) >= IFNAMSIZ:
        raise ValueError(f"interface name '{tokens[0]}' is too long")
    fields.append(tokens[0])
    if len(tokens) < 2 or len(tokens[1]) != 1:
        return fields
    fields.append(tokens[1])

    patterns = [_DEC, _DEC, _HEX, _DEC] + [_HEX] * CAN_MAX_DLEN
    for pattern, token in zip(patterns, tokens[2:]):
        if not pattern.fullmatch(token):
            break
        fields.append(int(token, 16 if pattern is _HEX else 10))
    return fields


def parse_request(text: str) -> BcmRequest:
    """Parse one '< ... >' request; raises ValueError if it is malformed."""
    body = text.strip()
    if not body.startswith("<") or not body.endswith(">"):
        raise ValueError("request must be enclosed in '<' and '>'")
    fields = _scan_fields(body[1:-1])

    if len(fields) < 6:
        raise ValueError("too few items in request")
    dlc = fields[5] & 0xFF
    if dlc > CAN_MAX_DLEN:
        raise ValueError(f"data length {dlc} exceeds {CAN_MAX_DLEN}")
    if len(fields) != 6 + dlc:
        raise ValueError("number of data bytes does not match the data length")

    ifname, cmd, ival_sec, ival_usec, can_id = fields[:5]
    try:
        command = BcmCommand(cmd)
    except ValueError:
        raise _UnknownCommand(f"unknown command '{cmd}'.") from None

    return BcmRequest(
        ifname=ifname,
        command=command,
        ival_sec=ival_sec & _ULONG_MASK,
        ival_usec=ival_usec & _ULONG_MASK,
        can_id=can_id & 0xFFFFFFFF,
        data=bytes(value & 0xFF for value in fields[6:]),
    )


def format_rx_message(ifname: str, can_id: int, data: bytes) -> str:
    """Report of a received frame, without the terminating NUL byte."""
    data = bytes(data)
    payload = "".join(f"{b:02X} " for b in data)
    return f"< {ifname} {can_id & 0xFFFFFFFF:03X} {len(data)} {payload}>"


def _unpack_rx(raw: bytes) -> Optional[tuple[int, bytes]]:
    if len(raw) < _BCM_HEAD.size + _CAN_FRAME.size:
        return None
    head = _BCM_HEAD.unpack_from(raw)
    _, dlc, payload = _CAN_FRAME.unpack_from(raw, _BCM_HEAD.size)
    return head[7], payload[: min(dlc, CAN_MAX_DLEN)]


def serve_client(conn: socket.socket) -> None:
    """Handle one client connection until it closes or sends a bad request."""
    family = getattr(socket, "AF_CAN", None)
    proto = getattr(socket, "CAN_BCM", None)
    if family is None or proto is None:
        raise OSError("CAN broadcast manager sockets are not supported on this platform")

    assembler = RequestAssembler()
    with socket.socket(family, socket.SOCK_DGRAM, proto) as bcm, \
            selectors.DefaultSelector() as selector:
        # interface index 0: the target interface is given on every send
        bcm.connect(("",))
        selector.register(bcm, selectors.EVENT_READ)
        selector.register(conn, selectors.EVENT_READ)

        while True:
            for key, _ in selector.select():
                if key.fileobj is bcm:
                    raw, address = bcm.recvfrom(_BCM_HEAD.size + _CAN_FRAME.size)
                    received = _unpack_rx(raw)
                    if received is None:
                        continue
                    ifname = address[0] if isinstance(address, tuple) and address else ""
                    message = format_rx_message(ifname, *received)
                    # NUL delimiter for XML socket clients
                    conn.sendall(message.encode("latin-1") + b"\0")
                    continue

                chunk = conn.recv(MAXLEN)
                if not chunk:
                    return
                for text in assembler.feed(chunk):
                    try:
                        request = parse_request(text)
                    except _UnknownCommand as exc:
                        print(exc)
                        return
                    except ValueError:
                        return
                    try:
                        bcm.sendto(request.pack(), (request.ifname,))
                    except OSError:
                        # unknown interface: the request is dropped
                        pass


def _run_client(conn: socket.socket) -> None:
    with conn:
        try:
            serve_client(conn)
        except OSError as exc:
            sys.stderr.write(f"bcmsocket: {exc}\n")


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Serve clients on the fixed TCP port; returns the exit status."""
    try:
        listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    except OSError as exc:
        sys.stderr.write(f"inetsocket: {exc}\n")
        return 1

    with listener:
        while True:
            try:
                listener.bind(("", PORT))
                break
            except OSError:
                print(".", end="", flush=True)
                time.sleep(0.1)

        try:
            listener.listen(3)
        except OSError as exc:
            sys.stderr.write(f"listen: {exc}\n")
            return 1

        try:
            while True:
                try:
                    conn, _ = listener.accept()
                except OSError as exc:
                    sys.stderr.write(f"accept: {exc}\n")
                    return 1
                threading.Thread(target=_run_client, args=(conn,), daemon=True).start()
        except KeyboardInterrupt:
            return 0


if __name__ == "__main__":
    sys.exit(main())