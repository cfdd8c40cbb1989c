"""Command line front end printing CAN bit timing tables."""

from __future__ import annotations

import argparse
import re
import sys
from dataclasses import replace
from typing import Optional, Sequence

from cankit.bittiming import (
    COMMON_BITRATES,
    CONTROLLERS,
    BitTiming,
    BitTimingError,
    Controller,
    RefClock,
    calc_bittiming,
    cia_sample_point,
    fixup_bittiming,
)

PROG = "can-calc-bit-timing"


class UnknownControllerError(LookupError):
    """No controller of the given name is known."""

    def __init__(self, name: str) -> None:
        super().__init__(name)
        self.name = name


def list_controllers() -> list[str]:
    """Names of all supported CAN controllers."""
    return [controller.name for controller in CONTROLLERS]


def _percent(error: int, nominal: int) -> str:
    value = 100.0 * error / nominal
    if value > 99.9:
        return "≥100% "
    return f"{value:4.1f}% "


def format_bit_timing(
    controller: Controller,
    ref_bt: Optional[BitTiming],
    ref_clock: RefClock,
    bitrate_nominal: int,
    spt_nominal: int,
    quiet: bool,
) -> str:
    """One table row, preceded by the table header unless ``quiet``."""
    parts = []
    if not quiet:
        label = f" ({ref_clock.name})" if ref_clock.name is not None else ""
        parts.append(
            f"Bit timing parameters for {controller.name}{label} "
            f"with {ref_clock.clk / 1000000.0:.6f} MHz ref clock\n"
            "nominal                                 real Bitrt   nom  real SampP\n"
            "Bitrate TQ[ns] PrS PhS1 PhS2 SJW BRP Bitrate Error SampP SampP Error "
            f"{controller.header()}\n"
        )

    if ref_bt is not None:
        try:
            bt = fixup_bittiming(ref_clock.clk, ref_bt, controller.const)
        except BitTimingError:
            parts.append(f"{bitrate_nominal:7d} ***parameters exceed controller's range***\n")
            return "".join(parts)
    else:
        request = BitTiming(bitrate=bitrate_nominal, sample_point=spt_nominal)
        try:
            bt = calc_bittiming(ref_clock.clk, request, controller.const)
        except BitTimingError:
            parts.append(f"{bitrate_nominal:7d} ***bitrate not possible***\n")
            return "".join(parts)

    if not spt_nominal:
        spt_nominal = cia_sample_point(bitrate_nominal)

    rate_error = abs(bitrate_nominal - bt.bitrate)
    spt_error = abs(spt_nominal - bt.sample_point)

    parts.append(
        f"{bitrate_nominal:7d} "
        f"{bt.tq:6d} {bt.prop_seg:3d} {bt.phase_seg1:4d} {bt.phase_seg2:4d} "
        f"{bt.sjw:3d} {bt.brp:3d} "
        f"{bt.bitrate:7d} "
    )
    parts.append(_percent(rate_error, bitrate_nominal))
    parts.append(f"{spt_nominal / 10.0:4.1f}% {bt.sample_point / 10.0:4.1f}% ")
    parts.append(_percent(spt_error, spt_nominal))
    parts.append(controller.registers(bt))
    parts.append("\n")
    return "".join(parts)


def calc_report(
    name: Optional[str],
    ref_bt: Optional[BitTiming],
    bitrate_nominal: int,
    spt_nominal: int,
    ref_clock: Optional[RefClock],
    quiet: bool,
) -> str:
    """Tables for one controller (or all when ``name`` is None).

    Without a bitrate all common bitrates are listed; the header is then
    always printed before the first of them.
    """
    parts = []
    found = False
    for controller in CONTROLLERS:
        if name and controller.name != name:
            continue
        found = True
        clocks = (ref_clock,) if ref_clock is not None else controller.ref_clocks
        for clock in clocks:
            if bitrate_nominal:
                parts.append(
                    format_bit_timing(controller, ref_bt, clock, bitrate_nominal, spt_nominal, quiet)
                )
            else:
                for index, bitrate in enumerate(COMMON_BITRATES):
                    parts.append(
                        format_bit_timing(controller, ref_bt, clock, bitrate, spt_nominal, bool(index))
                    )
            parts.append("\n")

    if not found:
        raise UnknownControllerError(name or "")
    return "".join(parts)


def _usage(prog: str) -> str:
    return (
        f"{prog} - calculate CAN bit timing parameters.\n"
        f"Usage: {prog} [options] [<CAN-contoller-name>]\n"
        "Options:\n"
        "\t-q             don't print header line\n"
        "\t-l             list all support CAN controller names\n"
        "\t-b <bitrate>   bit-rate in bits/sec\n"
        "\t-s <samp_pt>   sample-point in one-tenth of a percent\n"
        "\t               or 0 for CIA recommended sample points\n"
        "\t-c <clock>     real CAN system clock in Hz\n"
        "\n"
        "Or supply low level bit timing parameters to decode them:\n"
        "\n"
        "\t--prop-seg     Propagation segment in TQs\n"
        "\t--phase-seg1   Phase buffer segment 1 in TQs\n"
        "\t--phase-seg2   Phase buffer segment 2 in TQs\n"
        "\t--sjw          Synchronisation jump width in TQs\n"
        "\t--brp          Bit-rate prescaler\n"
        "\t--tseg1        Time segment 1 = prop-seg + phase-seg1\n"
        "\t--tseg2        Time segment 2 = phase_seg2\n"
    )


def _c_uint(text: str) -> int:
    """Leading decimal number of ``text`` as a 32 bit unsigned value, 0 if none."""
    match = re.match(r"\s*([+-]?)(\d+)", text)
    if not match:
        return 0
    value = int(match.group(2))
    if match.group(1) == "-":
        value = -value
    return value & 0xFFFFFFFF


class _UsageError(Exception):
    pass


class _Parser(argparse.ArgumentParser):
    def error(self, message):  # noqa: D401 - argparse hook
        raise _UsageError(message)


class _TimingAction(argparse.Action):
    """Collects low level timing options in command line order."""

    def __call__(self, parser, namespace, values, option_string=None):
        items = list(getattr(namespace, self.dest) or [])
        items.append((self.const, values))
        setattr(namespace, self.dest, items)


def _build_parser() -> _Parser:
    parser = _Parser(prog=PROG, add_help=False)
    parser.add_argument("-b", dest="bitrate", default="0")
    parser.add_argument("-c", dest="clock", default="0")
    parser.add_argument("-l", dest="list", action="store_true")
    parser.add_argument("-q", dest="quiet", action="store_true")
    parser.add_argument("-s", dest="sample_point", default="0")
    parser.add_argument("-?", dest="usage", action="store_true")
    for option, key in (
        ("--tq", "tq"),
        ("--prop-seg", "prop_seg"),
        ("--phase-seg1", "phase_seg1"),
        ("--phase-seg2", "phase_seg2"),
        ("--sjw", "sjw"),
        ("--brp", "brp"),
        ("--tseg1", "tseg1"),
        ("--tseg2", "phase_seg2"),
    ):
        parser.add_argument(option, dest="timing", action=_TimingAction, const=key)
    parser.add_argument("names", nargs="*")
    return parser


def _apply_timing(items) -> BitTiming:
    bt = BitTiming()
    for key, text in items or []:
        value = _c_uint(text)
        if key == "tseg1":
            prop = value // 2
            bt = replace(bt, prop_seg=prop, phase_seg1=value - prop)
        else:
            bt = replace(bt, **{key: value})
    return bt


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the bit timing calculator; returns the exit status."""
    args_list = list(sys.argv[1:] if argv is None else argv)
    out = sys.stdout

    try:
        args = _build_parser().parse_intermixed_args(args_list)
    except _UsageError:
        out.write(_usage(PROG))
        return 0

    if args.usage:
        out.write(_usage(PROG))
        return 0

    if len(args.names) > 1:
        out.write(_usage(PROG))
        return 1
    name = args.names[0] if args.names else None

    if args.list:
        out.write("".join(f"{n}\n" for n in list_controllers()))
        return 0

    spt_nominal = _c_uint(args.sample_point)
    if spt_nominal and (spt_nominal >= 1000 or spt_nominal < 100):
        out.write(_usage(PROG))
        return 1

    bt = _apply_timing(args.timing)
    clock = _c_uint(args.clock)
    ref_clock = RefClock(clock, "cmd-line") if clock else None

    try:
        report = calc_report(
            name,
            bt if bt.prop_seg else None,
            _c_uint(args.bitrate),
            spt_nominal,
            ref_clock,
            args.quiet,
        )
    except UnknownControllerError as exc:
        out.write(f"error: unknown CAN controller '{exc.name}', try one of these:\n\n")
        out.write("".join(f"{n}\n" for n in list_controllers()))
        return 1

    out.write(report)
    return 0


if __name__ == "__main__":
    sys.exit(main())