"""
Joy-Con Engine

Host-side HID protocol engine for Nintendo Joy-Con controllers: bring-up,
calibration, calibrated input state, rumble, and teardown.
"""

from .controller_constants import Button, Side
from .errors import (
    CalibrationAbsent, CommandTimeout, JoyConError, MalformedReport, ProtocolError, TransportError,
)
from .input_processor import ImuSample, State, Vector2, Vector3
from .joycon import JoyCon
from .registry import JoyConRegistry
from .settings_manager import EngineSettings, SettingsManager
from .transport import HidTransport, Transport, enumerate_joycons

__all__ = [
    'Button', 'Side',
    'CalibrationAbsent', 'CommandTimeout', 'JoyConError', 'MalformedReport', 'ProtocolError',
    'TransportError',
    'ImuSample', 'State', 'Vector2', 'Vector3',
    'JoyCon', 'JoyConRegistry', 'EngineSettings', 'SettingsManager',
    'HidTransport', 'Transport', 'enumerate_joycons',
]
