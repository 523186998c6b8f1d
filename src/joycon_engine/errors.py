"""
Errors

Exception hierarchy raised by the protocol engine.
"""


class JoyConError(Exception):
    """Base class for every error raised by the engine."""


class TransportError(JoyConError):
    """The underlying byte stream failed to read or write. Always fatal."""


class ProtocolError(JoyConError):
    """The controller answered with something other than what was asked for."""


class CommandTimeout(ProtocolError):
    """No reply arrived for a sub-command before its deadline."""


class MalformedReport(JoyConError):
    """A report is shorter than its report ID requires."""


class CalibrationAbsent(JoyConError):
    """A calibration block reads back as erased flash (all 0xFF)."""
