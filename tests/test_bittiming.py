import pytest

from cankit.bittiming import (
    CONTROLLERS,
    BitTiming,
    BitTimingError,
    btr_at91,
    btr_flexcan,
    btr_mcp251x,
    btr_mcp251xfd,
    btr_rcar_can,
    btr_sja1000,
    btr_ti_hecc,
    calc_bittiming,
    cia_sample_point,
    find_controller,
    fixup_bittiming,
    update_sample_point,
)

SJA = find_controller("sja1000")
SAMPLE = BitTiming(brp=3, sjw=2, prop_seg=4, phase_seg1=5, phase_seg2=6)


def test_find_controller_known():
    ctrl = find_controller("mcp251xfd")
    assert ctrl.name == "mcp251xfd"
    assert ctrl.const.tseg1_max == 256


def test_find_controller_unknown():
    with pytest.raises(KeyError):
        find_controller("no-such-controller")


def test_controller_names_unique():
    names = [c.name for c in CONTROLLERS]
    assert len(set(names)) == len(names) == 8
    for name in names:
        assert find_controller(name).name == name


@pytest.mark.parametrize(
    "bitrate, expected",
    [(1000000, 750), (800001, 750), (800000, 800), (500001, 800), (500000, 875), (10000, 875)],
)
def test_cia_sample_point(bitrate, expected):
    assert cia_sample_point(bitrate) == expected


@pytest.mark.parametrize("spt_nominal", [750, 800, 875])
@pytest.mark.parametrize("tseg", range(2, 25))
def test_update_sample_point_invariants(spt_nominal, tseg):
    sp = update_sample_point(SJA.const, spt_nominal, tseg)
    assert sp.tseg1 + sp.tseg2 == tseg
    assert sp.spt <= spt_nominal
    assert sp.error == spt_nominal - sp.spt
    assert SJA.const.tseg2_min <= sp.tseg2 <= SJA.const.tseg2_max


CASES = [
    ("sja1000", 8000000, 500000),
    ("sja1000", 8000000, 125000),
    ("mcp251x", 8000000, 250000),
    ("flexcan", 24000000, 1000000),
    ("mcp251xfd", 40000000, 500000),
    ("rcar_can", 65000000, 500000),
    ("at91", 100000000, 1000000),
]


@pytest.mark.parametrize("name, clock, bitrate", CASES)
def test_calc_bittiming_exact_rates(name, clock, bitrate):
    btc = find_controller(name).const
    bt = calc_bittiming(clock, BitTiming(bitrate=bitrate), btc)
    assert bt.bitrate == bitrate
    tseg1 = bt.prop_seg + bt.phase_seg1
    assert btc.tseg1_min <= tseg1 <= btc.tseg1_max
    assert btc.tseg2_min <= bt.phase_seg2 <= btc.tseg2_max
    assert btc.brp_min <= bt.brp <= btc.brp_max
    assert bt.bitrate == clock // (bt.brp * (1 + tseg1 + bt.phase_seg2))
    assert bt.sample_point <= cia_sample_point(bitrate)
    assert bt.sjw == 1


@pytest.mark.parametrize("name, clock, bitrate", CASES)
def test_calc_then_fixup_round_trip(name, clock, bitrate):
    btc = find_controller(name).const
    calc = calc_bittiming(clock, BitTiming(bitrate=bitrate), btc)
    given = BitTiming(
        prop_seg=calc.prop_seg,
        phase_seg1=calc.phase_seg1,
        phase_seg2=calc.phase_seg2,
        sjw=calc.sjw,
        brp=calc.brp,
    )
    fixed = fixup_bittiming(clock, given, btc)
    assert fixed.bitrate == calc.bitrate
    assert fixed.sample_point == calc.sample_point


def test_calc_does_not_modify_input():
    request = BitTiming(bitrate=500000)
    calc_bittiming(8000000, request, SJA.const)
    assert request == BitTiming(bitrate=500000)


def test_calc_sjw_is_clamped():
    bt = calc_bittiming(8000000, BitTiming(bitrate=500000, sjw=100), SJA.const)
    assert 1 <= bt.sjw <= SJA.const.sjw_max
    assert bt.sjw <= bt.phase_seg2


def test_calc_impossible_bitrate():
    with pytest.raises(BitTimingError):
        calc_bittiming(8000000, BitTiming(bitrate=1), SJA.const)


def test_calc_zero_bitrate():
    with pytest.raises(BitTimingError):
        calc_bittiming(8000000, BitTiming(), SJA.const)


def test_fixup_tseg1_out_of_range():
    with pytest.raises(BitTimingError):
        fixup_bittiming(8000000, BitTiming(prop_seg=10, phase_seg1=10, phase_seg2=2, brp=1), SJA.const)


def test_fixup_sjw_out_of_range():
    with pytest.raises(BitTimingError):
        fixup_bittiming(8000000, BitTiming(prop_seg=2, phase_seg1=2, phase_seg2=2, sjw=9, brp=1), SJA.const)


def test_fixup_brp_out_of_range_without_tq():
    with pytest.raises(BitTimingError):
        fixup_bittiming(8000000, BitTiming(prop_seg=2, phase_seg1=2, phase_seg2=2), SJA.const)


def test_fixup_derives_brp_from_tq():
    bt = fixup_bittiming(8000000, BitTiming(tq=125, prop_seg=6, phase_seg1=7, phase_seg2=2), SJA.const)
    assert bt.brp == 1
    assert bt.tq == 125
    assert bt.sjw == 1
    assert bt.bitrate == 8000000 // (1 + 6 + 7 + 2)


def test_registers_sja1000_layout():
    btr0, btr1 = (int(x, 16) for x in btr_sja1000(SAMPLE).split())
    assert btr0 & 0x3F == SAMPLE.brp - 1
    assert btr0 >> 6 == SAMPLE.sjw - 1
    assert btr1 & 0xF == SAMPLE.prop_seg + SAMPLE.phase_seg1 - 1
    assert btr1 >> 4 == SAMPLE.phase_seg2 - 1


def test_registers_at91_layout():
    br = int(btr_at91(SAMPLE), 16)
    assert br & 0xF == SAMPLE.phase_seg2 - 1
    assert (br >> 4) & 0xF == SAMPLE.phase_seg1 - 1
    assert (br >> 8) & 0xF == SAMPLE.prop_seg - 1
    assert (br >> 12) & 0xF == SAMPLE.sjw - 1
    assert br >> 16 == SAMPLE.brp - 1


def test_registers_flexcan_layout():
    ctrl = int(btr_flexcan(SAMPLE), 16)
    assert ctrl >> 24 == SAMPLE.brp - 1
    assert (ctrl >> 22) & 0x3 == SAMPLE.sjw - 1
    assert (ctrl >> 19) & 0x7 == SAMPLE.phase_seg1 - 1
    assert (ctrl >> 16) & 0x7 == SAMPLE.phase_seg2 - 1
    assert ctrl & 0xFFFF == SAMPLE.prop_seg - 1


def test_registers_mcp251x_layout():
    cnf1, cnf2, cnf3 = (int(x, 16) for x in btr_mcp251x(SAMPLE).split())
    assert cnf1 == ((SAMPLE.sjw - 1) << 6) | (SAMPLE.brp - 1)
    assert cnf2 & 0x80
    assert (cnf2 >> 3) & 0xF == SAMPLE.phase_seg1 - 1
    assert cnf2 & 0x7 == SAMPLE.prop_seg - 1
    assert cnf3 == SAMPLE.phase_seg2 - 1


def test_registers_mcp251xfd_layout():
    nbtcfg = int(btr_mcp251xfd(SAMPLE), 16)
    assert nbtcfg >> 24 == SAMPLE.brp - 1
    assert (nbtcfg >> 16) & 0xFF == SAMPLE.prop_seg + SAMPLE.phase_seg1 - 1
    assert (nbtcfg >> 8) & 0xFF == SAMPLE.phase_seg2 - 1
    assert nbtcfg & 0xFF == SAMPLE.sjw - 1


def test_registers_ti_hecc_layout():
    btc = int(btr_ti_hecc(SAMPLE), 16)
    assert btc & 0x7 == SAMPLE.phase_seg2 - 1
    assert (btc >> 3) & 0xF == SAMPLE.prop_seg + SAMPLE.phase_seg1 - 1
    assert (btc >> 8) & 0x3 == SAMPLE.sjw - 1
    assert btc >> 16 == SAMPLE.brp - 1


def test_registers_rcar_can_layout():
    bcr = int(btr_rcar_can(SAMPLE), 16)
    assert bcr & 0xFF == 0
    assert (bcr >> 8) & 0x7 == SAMPLE.phase_seg2 - 1
    assert (bcr >> 12) & 0x3 == SAMPLE.sjw - 1
    assert (bcr >> 16) & 0x3FF == SAMPLE.brp - 1
    assert bcr >> 28 == SAMPLE.prop_seg + SAMPLE.phase_seg1 - 1


def test_controller_without_register_layout():
    mscan = find_controller("mscan")
    assert mscan.header() == ""
    assert mscan.registers(SAMPLE) == ""


def test_controller_registers_use_its_format():
    assert SJA.header() == "BTR0 BTR1"
    assert SJA.registers(SAMPLE) == btr_sja1000(SAMPLE)
    for name in ("at91", "flexcan", "ti_hecc", "rcar_can"):
        header = find_controller(name).header()
        assert len(header) == 10
        assert header == header.strip().rjust(10)