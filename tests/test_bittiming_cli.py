import pytest

from cankit.bittiming import (
    COMMON_BITRATES,
    CONTROLLERS,
    BitTiming,
    RefClock,
    calc_bittiming,
    find_controller,
)
from cankit.bittiming_cli import (
    UnknownControllerError,
    calc_report,
    format_bit_timing,
    list_controllers,
    main,
)

SJA = find_controller("sja1000")


def test_list_controllers_matches_table():
    names = list_controllers()
    assert names == [c.name for c in CONTROLLERS]
    assert "sja1000" in names and "rcar_can" in names


def test_format_quiet_single_row():
    line = format_bit_timing(SJA, None, RefClock(8000000), 500000, 0, True)
    bt = calc_bittiming(8000000, BitTiming(bitrate=500000), SJA.const)
    assert line.count("\n") == 1
    assert line.startswith(" 500000 ")
    assert line.rstrip("\n").endswith(SJA.registers(bt))
    assert " 0.0% " in line
    assert "87.5%" in line


def test_format_header():
    text = format_bit_timing(SJA, None, RefClock(8000000), 500000, 0, False)
    lines = text.splitlines()
    assert lines[0] == "Bit timing parameters for sja1000 with 8.000000 MHz ref clock"
    assert lines[1] == "nominal                                 real Bitrt   nom  real SampP"
    assert lines[2].endswith("SampP Error BTR0 BTR1")
    assert len(lines) == 4


def test_format_header_with_clock_name():
    mcp = find_controller("mcp251x")
    text = format_bit_timing(mcp, None, mcp.ref_clocks[0], 250000, 0, False)
    assert text.startswith("Bit timing parameters for mcp251x (8 MHz OSC) with 4.000000 MHz ref clock\n")


def test_format_bitrate_not_possible():
    line = format_bit_timing(SJA, None, RefClock(8000000), 1, 0, True)
    assert line == f"{1:7d} ***bitrate not possible***\n"


def test_format_parameters_out_of_range():
    ref = BitTiming(prop_seg=10, phase_seg1=10, phase_seg2=2, brp=1)
    line = format_bit_timing(SJA, ref, RefClock(8000000), 500000, 0, True)
    assert line == " 500000 ***parameters exceed controller's range***\n"


def test_format_with_reference_timing():
    calc = calc_bittiming(8000000, BitTiming(bitrate=500000), SJA.const)
    ref = BitTiming(prop_seg=calc.prop_seg, phase_seg1=calc.phase_seg1,
                    phase_seg2=calc.phase_seg2, brp=calc.brp)
    from_ref = format_bit_timing(SJA, ref, RefClock(8000000), 500000, 0, True)
    from_calc = format_bit_timing(SJA, None, RefClock(8000000), 500000, 0, True)
    assert from_ref == from_calc


def test_calc_report_unknown_controller():
    with pytest.raises(UnknownControllerError):
        calc_report("no-such-controller", None, 500000, 0, None, True)


def test_calc_report_common_bitrates():
    report = calc_report("sja1000", None, 0, 0, None, True)
    assert report.count("Bit timing parameters") == 1
    rows = [line for line in report.splitlines() if line[:7].strip().isdigit()]
    assert [int(row[:7]) for row in rows] == list(COMMON_BITRATES)


def test_calc_report_all_controllers():
    report = calc_report(None, None, 500000, 0, None, True)
    rows = [line for line in report.splitlines() if line]
    assert len(rows) == sum(len(c.ref_clocks) for c in CONTROLLERS)
    assert all(row.startswith(" 500000 ") for row in rows)


def test_calc_report_with_own_clock():
    clock = RefClock(16000000, "cmd-line")
    report = calc_report("sja1000", None, 500000, 0, clock, False)
    assert report.count("Bit timing parameters") == 1
    assert "sja1000 (cmd-line) with 16.000000 MHz" in report


def test_main_list(capsys):
    assert main(["-l"]) == 0
    assert capsys.readouterr().out.splitlines() == list_controllers()


def test_main_bad_sample_point(capsys):
    assert main(["-s", "50"]) == 1
    assert "Usage:" in capsys.readouterr().out


def test_main_unknown_controller(capsys):
    assert main(["foo"]) == 1
    out = capsys.readouterr().out
    assert out.startswith("error: unknown CAN controller 'foo', try one of these:\n\n")
    assert out.splitlines()[2:] == list_controllers()


def test_main_too_many_names(capsys):
    assert main(["sja1000", "mscan"]) == 1
    assert "Usage:" in capsys.readouterr().out


def test_main_unknown_option_prints_usage(capsys):
    assert main(["-x"]) == 0
    assert "calculate CAN bit timing parameters" in capsys.readouterr().out


def test_main_single_bitrate(capsys):
    assert main(["-q", "-b", "500000", "-c", "8000000", "sja1000"]) == 0
    expected = format_bit_timing(SJA, None, RefClock(8000000, "cmd-line"), 500000, 0, True) + "\n"
    assert capsys.readouterr().out == expected


def test_main_tseg1_equals_split_segments(capsys):
    common = ["--tseg2", "2", "--brp", "1", "-b", "500000", "-q", "sja1000"]
    assert main(["--tseg1", "13"] + common) == 0
    combined = capsys.readouterr().out
    assert main(["--prop-seg", "6", "--phase-seg1", "7"] + common) == 0
    split = capsys.readouterr().out
    assert combined == split
    assert "***" not in combined
    assert combined.startswith(" 500000 ")