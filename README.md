# cankit

A small set of Controller Area Network (CAN) tools and the library code
behind them:

- **Bit timing** – compute the prescaler and segment values for a wanted
  bitrate and sample point on a range of CAN controllers, or decode a set
  of low-level timing values you already have.
- **Frame length** – the number of bits a Classical CAN frame takes on the
  wire, with bit stuffing ignored, estimated for the worst case, or
  counted exactly from the frame content and its CRC-15.
- **Bus load** – watch one or more CAN interfaces and print frames, bits
  and load percentage once a second.
- **Full-duplex test** – a device-under-test echo and a host-side generator
  that checks every echoed frame.
- **Broadcast manager server** – a TCP server that turns short ASCII
  messages into broadcast manager send and receive jobs.

The bus tools use Linux SocketCAN interfaces (`can0`, `vcan0`, …) through
Python's `socket` module. The bit timing calculator and the frame length
code need no CAN hardware and run anywhere.

## Commands

### can-calc-bit-timing

List the known controllers (`sja1000`, `mscan`, `at91`, `flexcan`,
`mcp251x`, `mcp251xfd`, `ti_hecc`, `rcar_can`):

    can-calc-bit-timing -l

Show the timing for the common bitrates (1 Mbit/s down to 10 kbit/s) on
every reference clock of a controller, or of all controllers when no name
is given:

    can-calc-bit-timing sja1000

One bitrate, a sample point in tenths of a percent (0 picks the CiA
recommended one) and your own clock in Hz:

    can-calc-bit-timing -b 500000 -s 875 -c 16000000 mcp251x

Decode low-level parameters instead of searching for them:

    can-calc-bit-timing -b 500000 --tq 125 --prop-seg 6 --phase-seg1 7 --phase-seg2 2 --sjw 1 flexcan

`-q` drops the header lines. `--tseg1` and `--tseg2` may be given in place
of the separate segments, and `--brp` in place of `--tq`. A sample point
outside 100..999 is rejected; `-?` prints the usage text.

### canbusload

Each interface is given with its bitrate as `<ifname>@<bitrate>` (up to 16
interfaces, bitrate at most 1000000):

    canbusload can0@100000 can1@500000 -r -t -b -c

Options: `-t` time on the first line, `-c` coloured lines, `-b` a bargraph
in 5 % steps, `-r` redraw the screen like `top`, `-i` ignore bit stuffing,
`-e` count stuffed bits exactly. Worst-case stuffing is the default, so the
load shown may go above 100 %. Stop it with Ctrl-C.

### canfdtest

Run the echo side on the device under test and the generator on the host:

    canfdtest -v can0
    canfdtest -g -v can2

`-f COUNT` sets the number of frames in flight (default 50), `-l COUNT`
stops after that many checked round trips, `-v` and `-vv` raise the
verbosity. The generator stops at the first mismatch it reports.

### bcmserver

    bcmserver

Listens on TCP port 28600 and serves each client in its own thread. A
client sends messages of the form

    < interface command ival_s ival_us can_id can_dlc [data]* >

where `can_id` and the data bytes are hexadecimal. Transmit commands are
`A`dd, `U`pdate, `D`elete and `S`end; receive commands are `R` (watch for
content changes under a mask), `F` (filter on the identifier only) and `X`
(delete a receive job). For example, to send `123#1122334455667788` on
`vcan1` once a second:

    < vcan1 A 1 0 123 8 11 22 33 44 55 66 77 88 >

Received frames come back as `< interface can_id can_dlc [data]* >`,
each followed by a zero byte. A malformed request or an unknown command
ends the client's session, and with it that client's jobs.

## Library

The same logic is importable:

- `cankit.bittiming` – `BitTiming`, `BitTimingConst`, `RefClock` and
  `Controller` describe timings and controllers; `calc_bittiming` and
  `fixup_bittiming` do the calculations, `update_sample_point` and
  `cia_sample_point` help with sample points, `find_controller` looks a
  controller up by name (raising `KeyError`), the `btr_*` functions format
  register values, and `BitTimingError` is raised when a bitrate cannot be
  reached or parameters are out of range.
- `cankit.bittiming_cli` – `list_controllers`, `format_bit_timing`,
  `calc_report` (raising `UnknownControllerError`) and `main`.
- `cankit.framelen` – `frame_length`, `exact_frame_length`, `crc15` and the
  `FrameLengthMode` enumeration.
- `cankit.busload` – `BusStats`, `parse_interface_spec`, `bargraph`,
  `format_report` and `main`.
- `cankit.fdtest` – `TestFrame`, `make_test_frame`, `check_frame`,
  `compare_frame`, `echo_dut`, `echo_gen` and `main`.
- `cankit.bcmserver` – `parse_request`, `BcmRequest`, `BcmCommand`,
  `RequestAssembler`, `format_rx_message`, `serve_client` and `main`.
- `cankit.terminal` – ANSI escape sequences used for coloured output.

## What it does not do

- It has no tools to dump, log, send, generate or replay arbitrary CAN
  traffic, and no log file converters.
- Frame lengths are computed for Classical CAN only: `frame_length` returns
  0 for CAN FD frames, and `canbusload` counts Classical CAN frames only.