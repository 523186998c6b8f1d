"""
Input Processor

Turns decoded standard input reports into calibrated, normalized State
values: buttons, this side's stick in [-1, 1] with the deadzone applied,
and the three IMU samples of the report in g and deg/s.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import NamedTuple, Optional, Tuple

from .calibration import Calibration, ImuAxisCalibration, ImuCalibration, StickAxisCalibration, \
    StickCalibration
from .controller_constants import Button, Side
from .report_codec import BatteryInfo, ImuFrame, InputReport, RawStick


class Vector2(NamedTuple):
    x: float
    y: float


class Vector3(NamedTuple):
    x: float
    y: float
    z: float


class ImuSample(NamedTuple):
    acceleration: Vector3
    angular_velocity: Vector3


@dataclass(frozen=True)
class State:
    """One calibrated snapshot of a Joy-Con, produced per standard report."""
    buttons: Button
    stick: Vector2
    imu_samples: Tuple[ImuSample, ImuSample, ImuSample]
    battery: Optional[BatteryInfo] = None

    def is_pressed(self, button: Button) -> bool:
        return (self.buttons & button) != 0

    @property
    def latest_imu(self) -> ImuSample:
        return self.imu_samples[-1]


def normalize(value: float) -> float:
    """Clamp a normalized axis value to [-1.0, 1.0]."""
    return max(-1.0, min(1.0, value))


def normalize_axis(raw: int, axis: StickAxisCalibration, deadzone: int) -> float:
    """Normalize one raw 12-bit stick axis against its calibration.

    Positive deflection is divided by the calibrated max distance, negative
    deflection by the min distance.
    """
    diff = raw - axis.center
    if abs(diff) <= deadzone:
        return 0.0
    divisor = axis.max if diff > 0 else axis.min
    if divisor == 0:
        return 0.0
    return normalize(diff / divisor)


def normalize_stick(raw: RawStick, calibration: StickCalibration) -> Vector2:
    return Vector2(
        normalize_axis(raw.x, calibration.x, calibration.deadzone),
        normalize_axis(raw.y, calibration.y, calibration.deadzone),
    )


def _convert_axis(raw_acc: int, raw_gyro: int, axis: ImuAxisCalibration) -> Tuple[float, float]:
    acceleration = raw_acc * axis.accel_scale
    angular_velocity = (raw_gyro - axis.gyroscope.offset) * axis.gyro_scale
    return acceleration, angular_velocity


def convert_imu_frame(frame: ImuFrame, calibration: ImuCalibration) -> ImuSample:
    ax, gx = _convert_axis(frame.accel_x, frame.gyro_x, calibration.x)
    ay, gy = _convert_axis(frame.accel_y, frame.gyro_y, calibration.y)
    az, gz = _convert_axis(frame.accel_z, frame.gyro_z, calibration.z)
    return ImuSample(Vector3(ax, ay, az), Vector3(gx, gy, gz))


def build_state(report: InputReport, calibration: Calibration, side: Side) -> State:
    """Build the State for this side's Joy-Con from a decoded report."""
    raw_stick = report.left_stick if side is Side.LEFT else report.right_stick
    samples = tuple(convert_imu_frame(frame, calibration.imu) for frame in report.imu_frames)
    return State(
        buttons=report.buttons,
        stick=normalize_stick(raw_stick, calibration.stick),
        imu_samples=samples,
        battery=report.battery,
    )
