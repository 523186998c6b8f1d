"""
Calibration

Parses the stick and IMU calibration blocks read from the controller's SPI
flash into immutable calibration values used on the input hot path.

Block layouts follow dekuNukem's Nintendo_Switch_Reverse_Engineering
spi_flash_notes.md.
"""
from __future__ import annotations

import struct
from dataclasses import dataclass

from .controller_constants import (
    IMU_CAL_LENGTH, IMU_PARAMS_LENGTH, STICK_CAL_LENGTH, STICK_PARAMS_LENGTH, Side,
)
from .errors import CalibrationAbsent
from .report_codec import unpack_12bit


@dataclass(frozen=True)
class StickAxisCalibration:
    center: int
    min: int
    max: int


@dataclass(frozen=True)
class StickCalibration:
    x: StickAxisCalibration
    y: StickAxisCalibration
    deadzone: int


@dataclass(frozen=True)
class AccelerometerAxisCalibration:
    origin: int
    horizontal_offset: int
    coefficient: int


@dataclass(frozen=True)
class GyroscopeAxisCalibration:
    offset: int
    coefficient: int


@dataclass(frozen=True)
class ImuAxisCalibration:
    accelerometer: AccelerometerAxisCalibration
    gyroscope: GyroscopeAxisCalibration

    @property
    def accel_scale(self) -> float:
        """Raw accelerometer units to g. Zero when the block is degenerate."""
        span = self.accelerometer.coefficient - self.accelerometer.origin
        return 4.0 / span if span else 0.0

    @property
    def gyro_scale(self) -> float:
        """Raw gyroscope units (offset removed) to deg/s."""
        span = self.gyroscope.coefficient - self.gyroscope.offset
        return 936.0 / span if span else 0.0


@dataclass(frozen=True)
class ImuCalibration:
    x: ImuAxisCalibration
    y: ImuAxisCalibration
    z: ImuAxisCalibration

    @property
    def axes(self):
        return (self.x, self.y, self.z)


@dataclass(frozen=True)
class Calibration:
    stick: StickCalibration
    imu: ImuCalibration


def is_absent(payload: bytes) -> bool:
    """True when a calibration block is erased flash (every byte 0xFF)."""
    return len(payload) > 0 and all(b == 0xFF for b in payload)


def require_present(payload: bytes) -> bytes:
    """Return the payload, or raise CalibrationAbsent if it is erased flash."""
    if is_absent(payload):
        raise CalibrationAbsent("calibration block is unset (all 0xFF)")
    return payload


def _check_length(name: str, payload: bytes, expected: int):
    if len(payload) != expected:
        raise ValueError(f"{name} must be {expected} bytes, got {len(payload)}")


def parse_stick(cal: bytes, params: bytes, side: Side) -> StickCalibration:
    """Decode a 9-byte stick calibration block and 18-byte stick parameters.

    Right sticks store center, min, max; left sticks store max, center, min.
    Min and max are distances from the center, not absolute positions.
    """
    _check_length("stick calibration", cal, STICK_CAL_LENGTH)
    _check_length("stick parameters", params, STICK_PARAMS_LENGTH)

    v = unpack_12bit(cal)
    if side is Side.LEFT:
        x = StickAxisCalibration(center=v[2], min=v[4], max=v[0])
        y = StickAxisCalibration(center=v[3], min=v[5], max=v[1])
    else:
        x = StickAxisCalibration(center=v[0], min=v[2], max=v[4])
        y = StickAxisCalibration(center=v[1], min=v[3], max=v[5])

    deadzone = ((params[4] << 8) & 0xF00) | params[3]
    return StickCalibration(x=x, y=y, deadzone=deadzone)


def parse_imu(cal: bytes, params: bytes) -> ImuCalibration:
    """Decode the 24-byte 6-axis calibration and 6-byte horizontal offsets."""
    _check_length("IMU calibration", cal, IMU_CAL_LENGTH)
    _check_length("IMU parameters", params, IMU_PARAMS_LENGTH)

    acc_origin = struct.unpack_from("<3h", cal, 0)
    acc_coeff = struct.unpack_from("<3h", cal, 6)
    gyro_offset = struct.unpack_from("<3h", cal, 12)
    gyro_coeff = struct.unpack_from("<3h", cal, 18)
    horizontal = struct.unpack_from("<3h", params, 0)

    axes = [
        ImuAxisCalibration(
            accelerometer=AccelerometerAxisCalibration(
                origin=acc_origin[i], horizontal_offset=horizontal[i], coefficient=acc_coeff[i]),
            gyroscope=GyroscopeAxisCalibration(offset=gyro_offset[i], coefficient=gyro_coeff[i]),
        )
        for i in range(3)
    ]
    return ImuCalibration(*axes)


def parse_calibration(stick_cal: bytes, stick_params: bytes,
                      imu_cal: bytes, imu_params: bytes, side: Side) -> Calibration:
    return Calibration(
        stick=parse_stick(stick_cal, stick_params, side),
        imu=parse_imu(imu_cal, imu_params),
    )
