"""
Report Codec

Pure functions that interpret Joy-Con HID input reports and serialize the
output reports the engine sends.

Input report layout (offsets from the report ID byte):
    [0]      report ID (0x21 sub-command reply, 0x30-0x33 standard input)
    [1]      timer
    [2]      battery (high nibble) + connection info (low nibble)
    [3-5]    buttons (24-bit LE)
    [6-8]    left stick (packed 12-bit X, Y)
    [9-11]   right stick (packed 12-bit X, Y)
    [12]     vibrator report
    [13]     0x21: ack byte            | 0x30-0x33: IMU frames 0-2,
    [14]     0x21: echoed sub-command  |   12 bytes each, six i16 LE
    [15-48]  0x21: reply payload       |   (accX..Z, gyroX..Z)

Output report layout:
    [0]      0x01 sub-command / 0x10 rumble only
    [1]      packet counter (0-15)
    [2-9]    rumble data (4 bytes per motor)
    [10]     sub-command ID (0x01 only)
    [11+]    sub-command payload
"""
from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import List, Sequence, Tuple

from .controller_constants import (
    BatteryLevel, Button, IMU_FRAME_COUNT, IMU_FRAME_LENGTH,
    OFFSET_ACK, OFFSET_BATTERY, OFFSET_BUTTONS, OFFSET_IMU, OFFSET_LEFT_STICK,
    OFFSET_REPLY_DATA, OFFSET_REPLY_SUBCOMMAND, OFFSET_RIGHT_STICK, OFFSET_TIMER,
    OFFSET_VIBRATOR, REPORT_ID_RUMBLE, REPORT_ID_SUBCOMMAND, REPORT_ID_SUBCOMMAND_REPLY,
    SPI_ECHO_LENGTH, SPI_READ_MAX_LENGTH, STANDARD_REPORT_IDS, STANDARD_REPORT_LENGTH,
    SUBCOMMAND_REPLY_MIN_LENGTH,
)
from .errors import MalformedReport, ProtocolError

_IMU_FRAME = struct.Struct("<6h")
_KNOWN_BATTERY_LEVELS = {level.value: level for level in BatteryLevel}


@dataclass(frozen=True)
class BatteryInfo:
    level: BatteryLevel
    charging: bool
    controller_type: int
    powered: bool


@dataclass(frozen=True)
class RawStick:
    x: int
    y: int


@dataclass(frozen=True)
class ImuFrame:
    """One raw 6-axis sample as the sensor reports it."""
    accel_x: int
    accel_y: int
    accel_z: int
    gyro_x: int
    gyro_y: int
    gyro_z: int


@dataclass(frozen=True)
class InputReport:
    """Decoded standard input report (IDs 0x30-0x33)."""
    report_id: int
    timer: int
    battery: BatteryInfo
    buttons: Button
    left_stick: RawStick
    right_stick: RawStick
    vibrator: int
    imu_frames: Tuple[ImuFrame, ImuFrame, ImuFrame]
    imu_active: bool


@dataclass(frozen=True)
class SubCommandReply:
    """Decoded sub-command reply (ID 0x21)."""
    ack: int
    subcommand: int
    data: bytes

    @property
    def is_positive(self) -> bool:
        return (self.ack & 0x80) != 0


# ── 12-bit packing ───────────────────────────────────────────────────

def unpack_12bit(buf: Sequence[int]) -> List[int]:
    """Unpack 12-bit value pairs stored in 3 bytes each.

    Every 3-byte group ``b0 b1 b2`` holds ``a = b0 | (b1 & 0x0F) << 8`` and
    ``b = (b1 >> 4) | b2 << 4``.
    """
    if len(buf) % 3:
        raise ValueError(f"packed 12-bit data must be a multiple of 3 bytes, got {len(buf)}")
    values = []
    for i in range(0, len(buf), 3):
        b0, b1, b2 = buf[i], buf[i + 1], buf[i + 2]
        values.append(((b1 << 8) & 0xF00) | b0)
        values.append((b2 << 4) | (b1 >> 4))
    return values


def pack_12bit(values: Sequence[int]) -> bytes:
    """Inverse of :func:`unpack_12bit`."""
    if len(values) % 2:
        raise ValueError("12-bit values must come in pairs")
    out = bytearray()
    for i in range(0, len(values), 2):
        a, b = values[i], values[i + 1]
        if not (0 <= a <= 0xFFF and 0 <= b <= 0xFFF):
            raise ValueError(f"12-bit value out of range: {a}, {b}")
        out.append(a & 0xFF)
        out.append(((a >> 8) & 0x0F) | ((b & 0x0F) << 4))
        out.append((b >> 4) & 0xFF)
    return bytes(out)


# ── Decoding ─────────────────────────────────────────────────────────

def decode_battery(value: int) -> BatteryInfo:
    high = value >> 4
    low = value & 0x0F
    level = _KNOWN_BATTERY_LEVELS.get(high & 0x0E, BatteryLevel.UNKNOWN)
    return BatteryInfo(
        level=level,
        charging=bool(high & 0x01),
        controller_type=(low >> 1) & 0x03,
        powered=bool(low & 0x01),
    )


def decode_stick(data: Sequence[int], offset: int) -> RawStick:
    x, y = unpack_12bit(data[offset:offset + 3])
    return RawStick(x, y)


def decode_buttons(data: Sequence[int]) -> Button:
    raw = data[OFFSET_BUTTONS] | (data[OFFSET_BUTTONS + 1] << 8) | (data[OFFSET_BUTTONS + 2] << 16)
    return Button(raw)


def decode_input_report(data: bytes) -> InputReport:
    """Decode a standard input report. Raises MalformedReport if truncated."""
    if len(data) < STANDARD_REPORT_LENGTH:
        raise MalformedReport(
            f"standard report 0x{data[0]:02X} needs {STANDARD_REPORT_LENGTH} bytes, got {len(data)}")

    frames = tuple(
        ImuFrame(*_IMU_FRAME.unpack_from(data, OFFSET_IMU + i * IMU_FRAME_LENGTH))
        for i in range(IMU_FRAME_COUNT)
    )
    imu_region = data[OFFSET_IMU:STANDARD_REPORT_LENGTH]

    return InputReport(
        report_id=data[0],
        timer=data[OFFSET_TIMER],
        battery=decode_battery(data[OFFSET_BATTERY]),
        buttons=decode_buttons(data),
        left_stick=decode_stick(data, OFFSET_LEFT_STICK),
        right_stick=decode_stick(data, OFFSET_RIGHT_STICK),
        vibrator=data[OFFSET_VIBRATOR],
        imu_frames=frames,
        imu_active=any(imu_region),
    )


def decode_subcommand_reply(data: bytes) -> SubCommandReply:
    """Decode a 0x21 report. Raises MalformedReport if truncated."""
    if len(data) < SUBCOMMAND_REPLY_MIN_LENGTH:
        raise MalformedReport(
            f"sub-command reply needs {SUBCOMMAND_REPLY_MIN_LENGTH} bytes, got {len(data)}")
    return SubCommandReply(
        ack=data[OFFSET_ACK],
        subcommand=data[OFFSET_REPLY_SUBCOMMAND],
        data=bytes(data[OFFSET_REPLY_DATA:]),
    )


def decode_report(data: bytes):
    """Decode any report the engine understands.

    Returns an InputReport, a SubCommandReply, or None for report IDs the
    engine does not interpret.
    """
    if not data:
        raise MalformedReport("empty report")
    data = bytes(data)
    report_id = data[0]
    if report_id == REPORT_ID_SUBCOMMAND_REPLY:
        return decode_subcommand_reply(data)
    if report_id in STANDARD_REPORT_IDS:
        return decode_input_report(data)
    return None


# ── Encoding ─────────────────────────────────────────────────────────

def _check_rumble(rumble: bytes) -> bytes:
    rumble = bytes(rumble)
    if len(rumble) != 8:
        raise ValueError("Rumble data must be 8 bytes long")
    return rumble


def encode_subcommand(packet_counter: int, rumble: bytes, subcommand: int,
                      payload: bytes = b'') -> bytes:
    """Build a sub-command output report."""
    return (bytes([REPORT_ID_SUBCOMMAND, packet_counter & 0x0F])
            + _check_rumble(rumble)
            + bytes([subcommand & 0xFF])
            + bytes(payload))


def encode_rumble_report(packet_counter: int, rumble: bytes) -> bytes:
    """Build a rumble-only output report (no reply expected)."""
    return bytes([REPORT_ID_RUMBLE, packet_counter & 0x0F]) + _check_rumble(rumble)


def encode_spi_read(address: int, length: int) -> bytes:
    """Build the SPI flash read payload: LE u32 address followed by length."""
    if not 1 <= length <= SPI_READ_MAX_LENGTH:
        raise ValueError(f"SPI read length must be 1..{SPI_READ_MAX_LENGTH}, got {length}")
    return struct.pack("<IB", address, length)


def parse_spi_reply(reply_data: bytes, address: int, length: int) -> bytes:
    """Verify an SPI read reply echoes the request and return its data bytes."""
    if len(reply_data) < SPI_ECHO_LENGTH:
        raise ProtocolError("SPI flash read reply is too short.")
    received_address, received_length = struct.unpack_from("<IB", reply_data, 0)
    if received_address != address:
        raise ProtocolError(
            f"SPI flash read address mismatch (asked 0x{address:04X}, got 0x{received_address:04X}).")
    if received_length != length:
        raise ProtocolError(
            f"SPI flash read length mismatch (asked {length}, got {received_length}).")
    payload = reply_data[SPI_ECHO_LENGTH:SPI_ECHO_LENGTH + length]
    if len(payload) != length:
        raise ProtocolError("SPI flash read reply is missing data bytes.")
    return bytes(payload)
