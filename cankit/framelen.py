"""Number of bits a CAN frame occupies on the wire, including inter-frame space.

The worst case estimation of stuff bits follows the formulas

    (34 + 8n - 1)/4 + 34 + 8n + 13  => 55 + 10n  for 11 bit identifiers
    (54 + 8n - 1)/4 + 54 + 8n + 13  => 80 + 10n  for 29 bit identifiers

where n is the number of payload bytes.
"""

from __future__ import annotations

from enum import Enum

CAN_EFF_FLAG = 0x80000000
CAN_RTR_FLAG = 0x40000000
CAN_ERR_FLAG = 0x20000000
CAN_SFF_MASK = 0x000007FF
CAN_EFF_MASK = 0x1FFFFFFF
CAN_MAX_DLEN = 8

_CRC15_POLY = 0x4599

# count of leading zeros in 5 bit numbers
_CLZ5 = (5, 4, 3, 3, 2, 2, 2, 2) + (1,) * 8 + (0,) * 16


class FrameLengthMode(Enum):
    """How stuffed bits are taken into account."""

    NO_BITSTUFFING = 0
    WORSTCASE = 1
    EXACT = 2

    @property
    def label(self) -> str:
        """Short human readable description of the mode."""
        return {
            FrameLengthMode.NO_BITSTUFFING: "ignore bitstuffing",
            FrameLengthMode.WORSTCASE: "worst case bitstuffing",
            FrameLengthMode.EXACT: "exact bitstuffing",
        }[self]


def _iter_bits(bitmap: bytes, start: int, end: int):
    for pos in range(start, end):
        yield (bitmap[pos // 8] >> (7 - pos % 8)) & 1


def crc15(bitmap: bytes, start: int, end: int) -> int:
    """CAN CRC-15 over the bits ``start`` up to (not including) ``end``.

    Bits are numbered from the most significant bit of the first byte.
    """
    if not 0 <= start <= end <= len(bitmap) * 8:
        raise ValueError(f"bit range {start}..{end} outside of {len(bitmap)} bytes")
    crc = 0
    for bit in _iter_bits(bitmap, start, end):
        feedback = bool(crc & 0x4000) ^ bool(bit)
        crc = (crc << 1) & 0x7FFF
        if feedback:
            crc ^= _CRC15_POLY
    return crc


def _build_bitmap(can_id: int, data: bytes) -> tuple[bytearray, int, int]:
    dlc = len(data)
    rtr = 1 if can_id & CAN_RTR_FLAG else 0
    bitmap = bytearray(16)
    if can_id & CAN_EFF_FLAG:
        # |.sBBBBBB BBBBBSIE EEEEEEEE EEEEEEEE|ER10DLC4 data...
        bitmap[0] = (can_id & CAN_EFF_MASK) >> 23
        bitmap[1] = ((((can_id >> 18) & 0x3F) << 3) | (3 << 1) | ((can_id >> 17) & 0x01)) & 0xFF
        bitmap[2] = (can_id >> 9) & 0xFF
        bitmap[3] = (can_id >> 1) & 0xFF
        bitmap[4] = ((can_id & 0x1) << 7) | (rtr << 6) | (dlc & 0xF)
        bitmap[5:5 + dlc] = data
        start, end = 1, 40 + 8 * dlc
    else:
        # |.....sII IIIIIIII IRE0DLC4|data...
        bitmap[0] = (can_id & CAN_SFF_MASK) >> 9
        bitmap[1] = (can_id >> 1) & 0xFF
        bitmap[2] = ((can_id << 7) & 0xFF) | (rtr << 6) | (dlc & 0xF)
        bitmap[3:3 + dlc] = data
        start, end = 5, 24 + 8 * dlc
    return bitmap, start, end


def exact_frame_length(can_id: int, data: bytes) -> int:
    """Bits on the wire for a Classical CAN frame, counting the real stuff bits."""
    data = bytes(data)
    if len(data) > CAN_MAX_DLEN:
        raise ValueError(f"Classical CAN payload exceeds {CAN_MAX_DLEN} bytes")

    bitmap, start, end = _build_bitmap(can_id, data)

    crc = crc15(bitmap, start, end)
    bitmap[end // 8:end // 8 + 2] = (crc << 1).to_bytes(2, "big")
    end += 15

    mask = 0x1F
    lookfor = 0
    pos = start
    stuffed = 0
    while pos < end:
        word = (bitmap[pos // 8] << 8) | bitmap[pos // 8 + 1]
        bits = word >> (16 - 5 - pos % 8)
        # alternate between looking for a run of zeros and a run of ones
        lookfor = 0 if lookfor else mask
        change = (bits & mask) ^ lookfor
        if change:
            pos += _CLZ5[change]
            mask = 0x1F
        else:
            pos += 5 if mask == 0x1F else 4
            if pos <= end:
                stuffed += 1
                # the stuffed bit counts as the first of the next run
                mask = 0x1E

    # CRC delimiter, ACK, ACK delimiter, EOF and IFS
    return end - start + stuffed + 3 + 7 + 3


def frame_length(can_id: int, data: bytes, mode: FrameLengthMode, fd: bool = False) -> int:
    """Bits on the wire for a frame in the given mode.

    CAN FD frames are not supported and yield 0.
    """
    if fd:
        return 0
    data = bytes(data)
    eff = bool(can_id & CAN_EFF_FLAG)
    mode = FrameLengthMode(mode)
    if mode is FrameLengthMode.NO_BITSTUFFING:
        return (67 if eff else 47) + len(data) * 8
    if mode is FrameLengthMode.WORSTCASE:
        return (80 if eff else 55) + len(data) * 10
    return exact_frame_length(can_id, data)