"""CAN bit timing calculation for a set of known CAN controllers.

Bit timing values follow the usual CAN terminology: the bit is made of a
synchronisation segment of one time quantum (TQ), a propagation segment and
two phase segments.  Sample points are given in one-tenth of a percent.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Callable, NamedTuple, Optional

UINT_MAX = 0xFFFFFFFF

# maximum bitrate error in one-tenth of a percent
CAN_CALC_MAX_ERROR = 50
CAN_CALC_SYNC_SEG = 1

COMMON_BITRATES = (
    1000000,
    800000,
    500000,
    250000,
    125000,
    100000,
    50000,
    20000,
    10000,
)


def _u32(value: int) -> int:
    return value & UINT_MAX


def _s32(value: int) -> int:
    value = _u32(value)
    return value - (1 << 32) if value & 0x80000000 else value


class BitTimingError(ValueError):
    """The requested bit timing cannot be realised by the controller."""


@dataclass(frozen=True)
class BitTimingConst:
    """Hardware limits of a CAN controller's bit timing registers."""

    name: str
    tseg1_min: int
    tseg1_max: int
    tseg2_min: int
    tseg2_max: int
    sjw_max: int
    brp_min: int
    brp_max: int
    brp_inc: int


@dataclass(frozen=True)
class RefClock:
    """A reference clock a controller is commonly driven with."""

    clk: int
    name: Optional[str] = None


@dataclass(frozen=True)
class BitTiming:
    """Bit timing parameters; zero means "not given"."""

    bitrate: int = 0
    sample_point: int = 0
    tq: int = 0
    prop_seg: int = 0
    phase_seg1: int = 0
    phase_seg2: int = 0
    sjw: int = 0
    brp: int = 0


class SamplePoint(NamedTuple):
    """Best sample point found for a number of time quanta."""

    spt: int
    tseg1: Optional[int]
    tseg2: Optional[int]
    error: int


@dataclass(frozen=True)
class Controller:
    """A CAN controller with its limits, reference clocks and register layout."""

    const: BitTimingConst
    ref_clocks: tuple[RefClock, ...]
    register_header: str = ""
    register_format: Optional[Callable[[BitTiming], str]] = None

    @property
    def name(self) -> str:
        return self.const.name

    def header(self) -> str:
        """Column header for the register values, empty if unknown."""
        return self.register_header

    def registers(self, bt: BitTiming) -> str:
        """Register values for the timing, empty if the layout is unknown."""
        if self.register_format is None:
            return ""
        return self.register_format(bt)


def btr_sja1000(bt: BitTiming) -> str:
    btr0 = (((bt.brp - 1) & 0x3F) | (((bt.sjw - 1) & 0x3) << 6)) & 0xFF
    btr1 = (((bt.prop_seg + bt.phase_seg1 - 1) & 0xF) | (((bt.phase_seg2 - 1) & 0x7) << 4)) & 0xFF
    return f"0x{btr0:02x} 0x{btr1:02x}"


def btr_at91(bt: BitTiming) -> str:
    br = _u32(
        (bt.phase_seg2 - 1)
        | ((bt.phase_seg1 - 1) << 4)
        | ((bt.prop_seg - 1) << 8)
        | ((bt.sjw - 1) << 12)
        | ((bt.brp - 1) << 16)
    )
    return f"0x{br:08x}"


def btr_flexcan(bt: BitTiming) -> str:
    ctrl = _u32(
        ((bt.brp - 1) << 24)
        | ((bt.sjw - 1) << 22)
        | ((bt.phase_seg1 - 1) << 19)
        | ((bt.phase_seg2 - 1) << 16)
        | (bt.prop_seg - 1)
    )
    return f"0x{ctrl:08x}"


def btr_mcp251x(bt: BitTiming) -> str:
    cnf1 = (((bt.sjw - 1) << 6) | (bt.brp - 1)) & 0xFF
    cnf2 = (0x80 | ((bt.phase_seg1 - 1) << 3) | (bt.prop_seg - 1)) & 0xFF
    cnf3 = (bt.phase_seg2 - 1) & 0xFF
    return f"0x{cnf1:02x} 0x{cnf2:02x} 0x{cnf3:02x}"


def btr_mcp251xfd(bt: BitTiming) -> str:
    nbtcfg = _u32(
        ((bt.brp - 1) << 24)
        | ((bt.prop_seg + bt.phase_seg1 - 1) << 16)
        | ((bt.phase_seg2 - 1) << 8)
        | (bt.sjw - 1)
    )
    return f"0x{nbtcfg:08x}"


def btr_ti_hecc(bt: BitTiming) -> str:
    can_btc = (bt.phase_seg2 - 1) & 0x7
    can_btc |= ((bt.phase_seg1 + bt.prop_seg - 1) & 0xF) << 3
    can_btc |= ((bt.sjw - 1) & 0x3) << 8
    can_btc |= ((bt.brp - 1) & 0xFF) << 16
    return f"0x{_u32(can_btc):08x}"


def btr_rcar_can(bt: BitTiming) -> str:
    bcr = (
        (((bt.phase_seg1 + bt.prop_seg - 1) & 0x0F) << 20)
        | (((bt.brp - 1) & 0x3FF) << 8)
        | (((bt.sjw - 1) & 0x3) << 4)
        | ((bt.phase_seg2 - 1) & 0x07)
    )
    return f"0x{_u32(bcr << 8):08x}"


CONTROLLERS: tuple[Controller, ...] = (
    Controller(
        BitTimingConst("sja1000", 1, 16, 1, 8, 4, 1, 64, 1),
        (RefClock(8000000),),
        "BTR0 BTR1",
        btr_sja1000,
    ),
    Controller(
        BitTimingConst("mscan", 4, 16, 2, 8, 4, 1, 64, 1),
        (
            RefClock(32000000),
            RefClock(33000000),
            RefClock(33300000),
            RefClock(33333333),
            RefClock(66660000, "mpc5121"),
            RefClock(66666666, "mpc5121"),
        ),
    ),
    Controller(
        BitTimingConst("at91", 4, 16, 2, 8, 4, 2, 128, 1),
        (RefClock(99532800, "ronetix PM9263"), RefClock(100000000)),
        f"{'CAN_BR':>10}",
        btr_at91,
    ),
    Controller(
        BitTimingConst("flexcan", 4, 16, 2, 8, 4, 1, 256, 1),
        (
            RefClock(24000000, "mx28"),
            RefClock(30000000, "mx6"),
            RefClock(49875000),
            RefClock(66000000),
            RefClock(66500000),
            RefClock(66666666),
            RefClock(83368421, "vybrid"),
        ),
        f"{'CAN_CTRL':>10}",
        btr_flexcan,
    ),
    Controller(
        BitTimingConst("mcp251x", 3, 16, 2, 8, 4, 1, 64, 1),
        # the mcp251x runs on half of the external oscillator clock
        (
            RefClock(8000000 // 2, "8 MHz OSC"),
            RefClock(16000000 // 2, "16 MHz OSC"),
            RefClock(20000000 // 2, "20 MHz OSC"),
        ),
        "CNF1 CNF2 CNF3",
        btr_mcp251x,
    ),
    Controller(
        BitTimingConst("mcp251xfd", 2, 256, 1, 128, 128, 1, 256, 1),
        (RefClock(20000000), RefClock(40000000)),
        "NBTCFG",
        btr_mcp251xfd,
    ),
    Controller(
        BitTimingConst("ti_hecc", 1, 16, 1, 8, 4, 1, 256, 1),
        (RefClock(13000000),),
        f"{'CANBTC':>10}",
        btr_ti_hecc,
    ),
    Controller(
        BitTimingConst("rcar_can", 4, 16, 2, 8, 4, 1, 1024, 1),
        (RefClock(65000000),),
        f"{'CiBCR':>10}",
        btr_rcar_can,
    ),
)


def find_controller(name: str) -> Controller:
    """Look up a controller by name; raises KeyError if unknown."""
    for controller in CONTROLLERS:
        if controller.name == name:
            return controller
    raise KeyError(name)


def cia_sample_point(bitrate: int) -> int:
    """Sample point recommended by CiA for the bitrate."""
    if bitrate > 800000:
        return 750
    if bitrate > 500000:
        return 800
    return 875


def update_sample_point(btc: BitTimingConst, spt_nominal: int, tseg: int) -> SamplePoint:
    """Split ``tseg`` quanta into tseg1/tseg2 closest to, not above, the nominal sample point.

    ``tseg1`` and ``tseg2`` are None when no split meets the nominal value.
    """
    best_spt_error = UINT_MAX
    best_spt = 0
    best_tseg1: Optional[int] = None
    best_tseg2: Optional[int] = None
    total = tseg + CAN_CALC_SYNC_SEG

    for i in (0, 1):
        tseg2 = _u32(total - (spt_nominal * total) // 1000 - i)
        tseg2 = min(max(tseg2, btc.tseg2_min), btc.tseg2_max)
        tseg1 = _u32(tseg - tseg2)
        if tseg1 > btc.tseg1_max:
            tseg1 = btc.tseg1_max
            tseg2 = _u32(tseg - tseg1)

        spt = _u32(1000 * _u32(total - tseg2)) // total
        spt_error = abs(_s32(spt_nominal - spt))

        if spt <= spt_nominal and spt_error < best_spt_error:
            best_spt = spt
            best_spt_error = spt_error
            best_tseg1, best_tseg2 = tseg1, tseg2

    return SamplePoint(best_spt, best_tseg1, best_tseg2, best_spt_error)


def calc_bittiming(clock_freq: int, bt: BitTiming, btc: BitTimingConst) -> BitTiming:
    """Find the bit timing closest to ``bt.bitrate`` and ``bt.sample_point``.

    A zero sample point selects the CiA recommendation.  Raises
    BitTimingError when the bitrate error would exceed 5%.
    """
    if bt.bitrate <= 0:
        raise BitTimingError("bitrate must be positive")

    spt_nominal = bt.sample_point or cia_sample_point(bt.bitrate)

    best_rate_error = UINT_MAX
    best_spt_error = UINT_MAX
    best_tseg = 0
    best_brp = 0
    tseg1 = tseg2 = 0

    # tseg even = round down, odd = round up
    first = (btc.tseg1_max + btc.tseg2_max) * 2 + 1
    last = (btc.tseg1_min + btc.tseg2_min) * 2
    for tseg in range(first, last - 1, -1):
        tsegall = CAN_CALC_SYNC_SEG + tseg // 2

        brp = clock_freq // _u32(tsegall * bt.bitrate) + tseg % 2
        brp = (brp // btc.brp_inc) * btc.brp_inc
        if brp < btc.brp_min or brp > btc.brp_max:
            continue

        rate = clock_freq // (brp * tsegall)
        rate_error = abs(_s32(bt.bitrate - rate))

        if rate_error > best_rate_error:
            continue

        # reset sample point error if we have a better bitrate
        if rate_error < best_rate_error:
            best_spt_error = UINT_MAX

        found = update_sample_point(btc, spt_nominal, tseg // 2)
        if found.tseg1 is not None:
            tseg1, tseg2 = found.tseg1, found.tseg2
        if found.error > best_spt_error:
            continue

        best_spt_error = found.error
        best_rate_error = rate_error
        best_tseg = tseg // 2
        best_brp = brp

        if rate_error == 0 and found.error == 0:
            break

    if best_rate_error:
        error = _u32(best_rate_error * 1000) // bt.bitrate
        if error > CAN_CALC_MAX_ERROR:
            raise BitTimingError(f"bitrate error {error // 10}.{error % 10}% too high")

    final = update_sample_point(btc, spt_nominal, best_tseg)
    if final.tseg1 is not None:
        tseg1, tseg2 = final.tseg1, final.tseg2

    prop_seg = tseg1 // 2

    if not bt.sjw or not btc.sjw_max:
        sjw = 1
    else:
        sjw = min(bt.sjw, btc.sjw_max)
        if tseg2 < sjw:
            sjw = tseg2

    return replace(
        bt,
        sample_point=final.spt,
        tq=_u32(best_brp * 1000 * 1000 * 1000 // clock_freq),
        prop_seg=prop_seg,
        phase_seg1=tseg1 - prop_seg,
        phase_seg2=tseg2,
        sjw=sjw,
        brp=best_brp,
        bitrate=clock_freq // (best_brp * (CAN_CALC_SYNC_SEG + tseg1 + tseg2)),
    )


def fixup_bittiming(clock_freq: int, bt: BitTiming, btc: BitTimingConst) -> BitTiming:
    """Complete explicitly given segment values with bitrate, TQ and sample point.

    Without a prescaler it is derived from ``bt.tq``.  Raises BitTimingError
    when a value exceeds the controller's range.
    """
    tseg1 = bt.prop_seg + bt.phase_seg1
    sjw = bt.sjw or 1
    if (
        sjw > btc.sjw_max
        or tseg1 < btc.tseg1_min
        or tseg1 > btc.tseg1_max
        or bt.phase_seg2 < btc.tseg2_min
        or bt.phase_seg2 > btc.tseg2_max
    ):
        raise BitTimingError("segment values exceed the controller's range")

    brp = bt.brp
    if not brp:
        brp64 = clock_freq * bt.tq
        if btc.brp_inc > 1:
            brp64 //= btc.brp_inc
        brp64 += 500000000 - 1
        brp64 //= 1000000000
        if btc.brp_inc > 1:
            brp64 *= btc.brp_inc
        brp = _u32(brp64)

    # the product is formed in 32 bits before the division
    tq = _u32(brp * 1000 * 1000 * 1000) // clock_freq

    if brp < btc.brp_min or brp > btc.brp_max:
        raise BitTimingError("bit-rate prescaler exceeds the controller's range")

    alltseg = CAN_CALC_SYNC_SEG + bt.prop_seg + bt.phase_seg1 + bt.phase_seg2
    return replace(
        bt,
        sjw=sjw,
        brp=brp,
        tq=tq,
        bitrate=clock_freq // (brp * alltseg),
        sample_point=((CAN_CALC_SYNC_SEG + tseg1) * 1000) // alltseg,
    )