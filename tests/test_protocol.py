"""Tests for the sans-IO connection state machine."""

import pytest

from joycon_engine.controller_constants import Button, Side, SubCommand
from joycon_engine.errors import CommandTimeout, JoyConError, ProtocolError
from joycon_engine.protocol import (
    BringUpProgress, ConnectionState, ConnectionStateChanged, JoyConProtocol, StateReceived,
)
from joycon_engine.rumble import NEUTRAL_RUMBLE

from joycon_sim import (
    RESTING_IMU, FakeJoyCon, imu_calibration_block, reply_report, run_protocol, spi_image,
    standard_report, stick_calibration_block,
)

SPI = SubCommand.SPI_FLASH_READ


def _ready(side=Side.LEFT, **kwargs):
    fake = FakeJoyCon(side, **kwargs)
    protocol = JoyConProtocol(side)
    protocol.start()
    run_protocol(protocol, fake)
    assert protocol.state is ConnectionState.READY
    return protocol, fake


def _spi_addresses(fake):
    return [int.from_bytes(payload[:4], 'little') for sub, payload in fake.subcommands() if sub == SPI]


def test_bring_up_order():
    protocol, fake = _ready()
    sent = [(sub, payload) for sub, payload in fake.subcommands()]
    assert [sub for sub, _ in sent] == [
        SubCommand.SET_INPUT_REPORT_MODE,
        SPI, SPI, SPI,
        SPI, SPI, SPI,
        SubCommand.BLUETOOTH_MANUAL_PAIRING,
        SubCommand.BLUETOOTH_MANUAL_PAIRING,
        SubCommand.BLUETOOTH_MANUAL_PAIRING,
        SubCommand.SET_PLAYER_LIGHTS,
        SubCommand.ENABLE_IMU,
        SubCommand.SET_INPUT_REPORT_MODE,
        SubCommand.ENABLE_VIBRATION,
    ]
    assert sent[0][1] == b'\x3f'
    assert [payload for sub, payload in sent[7:10]] == [b'\x01', b'\x02', b'\x03']
    assert sent[10][1] == b'\x01'
    assert sent[11][1] == b'\x01'
    assert sent[12][1] == b'\x30'
    assert sent[13][1] == b'\x01'


def test_missing_user_calibration_falls_back_to_factory():
    protocol, fake = _ready()
    assert _spi_addresses(fake) == [0x8012, 0x603D, 0x6086, 0x8028, 0x6020, 0x6080]
    assert protocol.calibration.stick.x.center == 2048


def test_right_side_uses_right_addresses():
    protocol, fake = _ready(Side.RIGHT)
    assert _spi_addresses(fake) == [0x801D, 0x6046, 0x6098, 0x8028, 0x6020, 0x6080]


def test_user_calibration_takes_precedence():
    image = spi_image(Side.LEFT, user_stick=stick_calibration_block(Side.LEFT, center=2100))
    protocol, fake = _ready(spi=image)
    assert 0x603D not in _spi_addresses(fake)
    assert protocol.calibration.stick.x.center == 2100


def test_user_imu_calibration_takes_precedence():
    image = spi_image(Side.LEFT, user_imu=imu_calibration_block(acc_coeff=8192, gyro_coeff=12000))
    protocol, fake = _ready(spi=image)
    assert 0x6020 not in _spi_addresses(fake)
    assert 0x8028 in _spi_addresses(fake)
    axis = protocol.calibration.imu.x
    assert axis.accelerometer.coefficient == 8192
    assert axis.gyroscope.coefficient == 12000


def test_spi_echo_mismatch_fails_bring_up():
    """A reply for the wrong address is never used as calibration."""
    fake = FakeJoyCon(spi_address_shift=1)
    protocol = JoyConProtocol(Side.LEFT)
    protocol.start()
    run_protocol(protocol, fake)

    assert protocol.state is ConnectionState.CLOSED
    assert isinstance(protocol.error, ProtocolError)
    assert protocol.calibration is None
    assert fake.subcommands()[-3:] == [
        (SubCommand.ENABLE_VIBRATION, b'\x00'),
        (SubCommand.SET_INPUT_REPORT_MODE, b'\x3f'),
        (SubCommand.ENABLE_IMU, b'\x00'),
    ]


def test_pairing_failures_are_not_fatal():
    protocol, fake = _ready(nack={SubCommand.BLUETOOTH_MANUAL_PAIRING})
    assert protocol.error is None


def test_negative_ack_fails_bring_up():
    fake = FakeJoyCon(nack={SubCommand.SET_PLAYER_LIGHTS})
    protocol = JoyConProtocol(Side.LEFT)
    protocol.start()
    run_protocol(protocol, fake)
    assert protocol.state is ConnectionState.CLOSED
    assert isinstance(protocol.error, ProtocolError)


def test_missing_reply_times_out_and_teardown_swallows_timeouts():
    fake = FakeJoyCon(drop={SubCommand.ENABLE_IMU})
    protocol = JoyConProtocol(Side.LEFT, reply_timeout=0.3, teardown_timeout=0.2)
    protocol.start()
    events, now = run_protocol(protocol, fake, step=0.05)

    assert protocol.state is ConnectionState.CLOSED
    assert isinstance(protocol.error, CommandTimeout)
    states = [e.current for e in events if isinstance(e, ConnectionStateChanged)]
    assert ConnectionState.READY not in states
    assert states[-2:] == [ConnectionState.CLOSING, ConnectionState.CLOSED]
    assert (SubCommand.ENABLE_IMU, b'\x00') in fake.subcommands()


def test_only_one_subcommand_in_flight():
    fake = FakeJoyCon(drop={SubCommand.SET_INPUT_REPORT_MODE})
    protocol = JoyConProtocol(Side.LEFT, reply_timeout=1.0)
    protocol.start()
    assert len(protocol.tick(0.0)) == 1
    assert protocol.tick(0.1) == []
    assert protocol.tick(0.5) == []


def test_packet_counter_wraps():
    protocol, fake = _ready()
    for _ in range(4):
        future = protocol.submit(SubCommand.SET_PLAYER_LIGHTS, b'\x01')
        run_protocol(protocol, fake)
        assert future.done()
    counters = [report[1] for report in fake.written]
    assert len(counters) > 16
    assert counters == [i % 16 for i in range(len(counters))]


def test_progress_events_during_bring_up():
    fake = FakeJoyCon()
    protocol = JoyConProtocol(Side.LEFT)
    protocol.start()
    events, _ = run_protocol(protocol, fake)
    progress = [e.percent for e in events if isinstance(e, BringUpProgress)]
    assert progress == sorted(progress)
    assert progress[-1] == 100


def test_no_state_before_calibration():
    protocol = JoyConProtocol(Side.LEFT)
    assert protocol.feed(standard_report(buttons=Button.Y)) == []
    protocol.start()
    events = protocol.feed(standard_report(buttons=Button.Y))
    assert not [e for e in events if isinstance(e, StateReceived)]


def test_standard_reports_produce_state_once_ready():
    protocol, fake = _ready()
    events = protocol.feed(standard_report(buttons=Button.Y))
    states = [e.state for e in events if isinstance(e, StateReceived)]
    assert len(states) == 1
    assert states[0].is_pressed(Button.Y)
    assert (states[0].stick.x, states[0].stick.y) == (0.0, 0.0)


def test_malformed_and_unsolicited_reports_are_ignored():
    protocol, fake = _ready()
    assert protocol.feed(b'\x30\x00\x01') == []
    protocol.feed(reply_report(SubCommand.ENABLE_IMU))
    assert protocol.state is ConnectionState.READY


def test_submit_requires_ready():
    protocol = JoyConProtocol(Side.LEFT)
    with pytest.raises(JoyConError):
        protocol.submit(SubCommand.SET_PLAYER_LIGHTS, b'\x01')
    with pytest.raises(JoyConError):
        protocol.queue_rumble(NEUTRAL_RUMBLE)


def test_user_subcommand_resolves_future():
    protocol, fake = _ready()
    future = protocol.submit(SubCommand.SET_PLAYER_LIGHTS, b'\x0f')
    run_protocol(protocol, fake)
    assert future.result(timeout=0).subcommand == SubCommand.SET_PLAYER_LIGHTS
    assert fake.subcommands()[-1] == (SubCommand.SET_PLAYER_LIGHTS, b'\x0f')


def test_user_subcommand_nack_fails_future():
    protocol, fake = _ready()
    fake.nack.add(SubCommand.SET_PLAYER_LIGHTS)
    future = protocol.submit(SubCommand.SET_PLAYER_LIGHTS, b'\x0f')
    run_protocol(protocol, fake)
    with pytest.raises(ProtocolError):
        future.result(timeout=0)
    assert protocol.state is ConnectionState.READY


def test_rumble_waits_for_pending_subcommand():
    protocol, fake = _ready()
    protocol.submit(SubCommand.SET_PLAYER_LIGHTS, b'\x01')
    protocol.queue_rumble(NEUTRAL_RUMBLE)

    first = protocol.tick(0.0)
    assert [r[0] for r in first] == [0x01]
    fake.write(first[0])
    protocol.feed(fake.pop_reply())
    second = protocol.tick(0.0)
    assert [r[0] for r in second] == [0x10]
    assert second[0][2:] == NEUTRAL_RUMBLE


def test_close_runs_teardown():
    protocol, fake = _ready()
    protocol.close()
    assert protocol.state is ConnectionState.CLOSING
    run_protocol(protocol, fake)
    assert protocol.state is ConnectionState.CLOSED
    assert protocol.error is None
    assert fake.subcommands()[-3:] == [
        (SubCommand.ENABLE_VIBRATION, b'\x00'),
        (SubCommand.SET_INPUT_REPORT_MODE, b'\x3f'),
        (SubCommand.ENABLE_IMU, b'\x00'),
    ]


def test_close_before_start():
    protocol = JoyConProtocol(Side.LEFT)
    protocol.close()
    assert protocol.state is ConnectionState.CLOSED
    assert protocol.tick(0.0) == []


def test_close_during_bring_up_waits_for_outstanding_reply():
    fake = FakeJoyCon()
    protocol = JoyConProtocol(Side.LEFT)
    protocol.start()
    fake.write(protocol.tick(0.0)[0])
    protocol.close()
    assert protocol.tick(0.0) == []
    protocol.feed(fake.pop_reply())
    assert protocol.tick(0.0)[0][10] == SubCommand.ENABLE_VIBRATION
    assert protocol.error is not None


def test_fail_closes_immediately():
    protocol, fake = _ready()
    future = protocol.submit(SubCommand.SET_PLAYER_LIGHTS, b'\x01')
    error = JoyConError("unplugged")
    protocol.fail(error)
    assert protocol.state is ConnectionState.CLOSED
    assert protocol.error is error
    with pytest.raises(JoyConError):
        future.result(timeout=0)
    assert protocol.tick(10.0) == []


def test_start_twice_is_rejected():
    protocol = JoyConProtocol(Side.LEFT)
    protocol.start()
    with pytest.raises(JoyConError):
        protocol.start()


def test_stalled_stream_resends_report_mode():
    """No standard reports for the stream timeout re-sends report mode 0x30."""
    protocol, fake = _ready()
    protocol.feed(standard_report(imu=RESTING_IMU))
    assert protocol.tick(5.0) == []
    assert protocol.tick(6.9) == []

    sent = protocol.tick(7.0)
    assert [(r[10], r[11:]) for r in sent] == [(SubCommand.SET_INPUT_REPORT_MODE, b'\x30')]
    fake.write(sent[0])
    protocol.feed(fake.pop_reply())
    assert not protocol.has_pending
    assert fake.mode == 0x30
    assert protocol.tick(7.5) == []


def test_stream_timeout_is_configurable():
    fake = FakeJoyCon()
    protocol = JoyConProtocol(Side.LEFT, stream_timeout=0.5)
    protocol.start()
    run_protocol(protocol, fake)
    assert protocol.tick(0.4) == []
    assert protocol.tick(0.5)[0][10] == SubCommand.SET_INPUT_REPORT_MODE


def test_reports_without_imu_data_re_enable_imu():
    protocol, fake = _ready()
    protocol.feed(standard_report())
    assert not protocol.imu_streaming

    sent = protocol.tick(1.0)
    assert [(r[10], r[11:]) for r in sent] == [(SubCommand.ENABLE_IMU, b'\x01')]
    fake.write(sent[0])
    protocol.feed(fake.pop_reply())

    # Not repeated before the retry interval, and not at all once IMU data flows
    protocol.feed(standard_report())
    assert protocol.tick(1.5) == []
    protocol.feed(standard_report(imu=RESTING_IMU))
    assert protocol.imu_streaming
    assert protocol.tick(5.0) == []


def test_failed_recovery_keeps_connection_ready():
    protocol, fake = _ready()
    fake.drop.add(SubCommand.ENABLE_IMU)
    protocol.feed(standard_report())
    fake.write(protocol.tick(1.0)[0])
    assert protocol.has_pending
    protocol.feed(standard_report(imu=RESTING_IMU))
    assert protocol.tick(2.0) == []
    assert not protocol.has_pending
    assert protocol.state is ConnectionState.READY


def test_no_recovery_before_ready():
    fake = FakeJoyCon(drop={SubCommand.SET_INPUT_REPORT_MODE})
    protocol = JoyConProtocol(Side.LEFT, reply_timeout=10.0, stream_timeout=0.1)
    protocol.start()
    fake.write(protocol.tick(0.0)[0])
    protocol.feed(standard_report())
    assert protocol.tick(5.0) == []
