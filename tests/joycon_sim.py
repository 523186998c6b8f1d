"""
Simulated Joy-Con

A Transport that answers sub-commands the way a real Joy-Con does, serving
SPI flash reads from an in-memory image and streaming standard reports once
the host switches to report mode 0x30. Streamed reports carry resting IMU
frames while the IMU is enabled.
"""

import struct
import threading
import time
from collections import deque

from joycon_engine.controller_constants import (
    PRODUCT_ID_LEFT, PRODUCT_ID_RIGHT, SPI_IMU_FACTORY_CAL, SPI_IMU_PARAMS, SPI_IMU_USER_CAL,
    Side, SubCommand, stick_factory_calibration_address, stick_parameters_address,
    stick_user_calibration_address,
)
from joycon_engine.errors import TransportError
from joycon_engine.protocol import ConnectionState
from joycon_engine.report_codec import pack_12bit
from joycon_engine.transport import Transport

CENTER = 2048
DEADZONE = 200
STICK_RANGE = 1400
ACC_COEFF = 16384
GYRO_COEFF = 13371

# Three accelerometer + gyroscope frames of a Joy-Con lying flat
RESTING_IMU = struct.pack("<6h", 0, 0, 4096, 0, 0, 0) * 3


def stick_calibration_block(side, center=CENTER, low=STICK_RANGE, high=STICK_RANGE) -> bytes:
    """9-byte stick block in the order the given side stores it."""
    if side is Side.LEFT:
        values = [high, high, center, center, low, low]
    else:
        values = [center, center, low, low, high, high]
    return pack_12bit(values)


def stick_parameters_block(deadzone=DEADZONE) -> bytes:
    params = bytearray(18)
    params[3] = deadzone & 0xFF
    params[4] = (deadzone >> 8) & 0x0F
    return bytes(params)


def imu_calibration_block(acc_origin=0, acc_coeff=ACC_COEFF, gyro_offset=0,
                          gyro_coeff=GYRO_COEFF) -> bytes:
    return struct.pack("<12h", *([acc_origin] * 3 + [acc_coeff] * 3
                                 + [gyro_offset] * 3 + [gyro_coeff] * 3))


def imu_parameters_block() -> bytes:
    return struct.pack("<3h", 350, 0, 4081)


def spi_image(side, user_stick=None, user_imu=None) -> bytearray:
    """Flash image with factory calibration and, optionally, user calibration."""
    image = bytearray(b'\xff' * 0x10000)

    def put(address, block):
        image[address:address + len(block)] = block

    put(stick_factory_calibration_address(side), stick_calibration_block(side))
    put(stick_parameters_address(side), stick_parameters_block())
    put(SPI_IMU_FACTORY_CAL, imu_calibration_block())
    put(SPI_IMU_PARAMS, imu_parameters_block())
    if user_stick is not None:
        put(stick_user_calibration_address(side), user_stick)
    if user_imu is not None:
        put(SPI_IMU_USER_CAL, user_imu)
    return image


def standard_report(buttons=0, left=(CENTER, CENTER), right=(CENTER, CENTER),
                    imu=b'', report_id=0x30, timer=0) -> bytes:
    header = (bytes([report_id, timer & 0xFF, 0x8E])
              + buttons.to_bytes(3, 'little')
              + pack_12bit(left) + pack_12bit(right)
              + b'\x00')
    return (header + imu).ljust(49, b'\x00')


def reply_report(subcommand, data=b'', ack=0x80) -> bytes:
    return standard_report(report_id=0x21, imu=bytes([ack, subcommand]) + data)


class FakeJoyCon(Transport):
    """Scripted Joy-Con answering over an in-memory HID pipe."""

    def __init__(self, side=Side.LEFT, spi=None, nack=(), drop=(),
                 spi_address_shift=0, product_id=None):
        if product_id is None:
            product_id = PRODUCT_ID_LEFT if side is Side.LEFT else PRODUCT_ID_RIGHT
        self._product_id = product_id
        self.side = side
        self.spi = spi if spi is not None else spi_image(side)
        self.nack = set(nack)
        self.drop = set(drop)
        self.spi_address_shift = spi_address_shift

        self.written = []
        self.replies = deque()
        self.mode = 0x3f
        self.buttons = 0
        self.left = (CENTER, CENTER)
        self.right = (CENTER, CENTER)
        self.imu = b''
        self.imu_enabled = False
        self.blocking = True
        self.closed = False
        self.fail_reads = False
        self._timer = 0
        self._lock = threading.Lock()

    @property
    def product_id(self) -> int:
        return self._product_id

    def write(self, data: bytes) -> int:
        with self._lock:
            if self.closed:
                raise TransportError("device closed")
            data = bytes(data)
            self.written.append(data)
            if data[0] == 0x01:
                self._answer(data[10], data[11:])
        return len(data)

    def _answer(self, subcommand, payload):
        if subcommand in self.drop:
            return
        if subcommand in self.nack:
            self.replies.append(reply_report(subcommand, ack=0x00))
            return

        data = b''
        ack = 0x80
        if subcommand == SubCommand.SPI_FLASH_READ:
            address, length = struct.unpack_from("<IB", payload)
            ack = 0x90
            data = (struct.pack("<IB", address + self.spi_address_shift, length)
                    + bytes(self.spi[address:address + length]))
        elif subcommand == SubCommand.SET_INPUT_REPORT_MODE:
            self.mode = payload[0]
        elif subcommand == SubCommand.ENABLE_IMU:
            self.imu_enabled = payload[0] != 0
        self.replies.append(reply_report(subcommand, data, ack))

    def pop_reply(self):
        with self._lock:
            return self.replies.popleft() if self.replies else None

    def current_report(self) -> bytes:
        self._timer = (self._timer + 1) & 0xFF
        imu = self.imu or (RESTING_IMU if self.imu_enabled else b'')
        return standard_report(self.buttons, self.left, self.right, imu, timer=self._timer)

    def read(self, size: int, timeout_ms: int) -> bytes:
        with self._lock:
            if self.closed or self.fail_reads:
                raise TransportError("device unplugged")
            if self.replies:
                return self.replies.popleft()[:size]
            streaming = self.mode == 0x30
        time.sleep(0.001)
        if streaming:
            with self._lock:
                return self.current_report()[:size]
        return b''

    def set_blocking(self, blocking: bool) -> None:
        self.blocking = blocking

    def close(self) -> None:
        self.closed = True

    # ── Inspection helpers ───────────────────────────────────────────

    def subcommands(self):
        """(sub-command, payload) for every sub-command report written so far."""
        with self._lock:
            return [(r[10], r[11:]) for r in self.written if r[0] == 0x01]


def run_protocol(protocol, fake, now=0.0, step=0.0, rounds=200):
    """Drive a JoyConProtocol against a FakeJoyCon without threads.

    Returns every event produced and the final clock value.
    """
    events = []
    for _ in range(rounds):
        for report in protocol.tick(now):
            fake.write(report)
        reply = fake.pop_reply()
        if reply is not None:
            events.extend(protocol.feed(reply))
        elif protocol.state in (ConnectionState.READY, ConnectionState.CLOSED) \
                and not protocol.has_pending:
            break
        now += step
    events.extend(protocol.drain_events())
    return events, now


def wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()
