"""
Rumble Encoder

Converts a (low frequency, high frequency, low amplitude, high amplitude)
request into the 8-byte rumble field embedded in every output report.
"""

import math

_HF_MIN, _HF_MAX = 81.75177, 1252.572266
_LF_MIN, _LF_MAX = 40.875885, 626.286133
_LF_AMP_MAX = 0.98

# Both motors at rest (160 Hz / 320 Hz, zero amplitude)
NEUTRAL_RUMBLE = bytes([0x00, 0x01, 0x40, 0x40, 0x00, 0x01, 0x40, 0x40])


def _clamp(value, lo, hi):
    return max(lo, min(hi, value))


def _encode_frequency(hz: float) -> int:
    return round(math.log2(hz / 10.0) * 32.0)


def encode_amplitude_index(amp: float) -> int:
    """Three-tier log curve mapping an amplitude in [0, 1] to its index."""
    amp = _clamp(amp, 0.0, 1.0)
    if amp > 0.23:
        return round(math.log2(amp * 8.7) * 32.0)
    if amp > 0.12:
        return round(math.log2(amp * 17.0) * 16.0)
    return 0


def encode_motor(low_freq: float, high_freq: float, low_amp: float, high_amp: float) -> bytes:
    """Encode the 4-byte rumble block for one motor."""
    high_freq = _clamp(high_freq, _HF_MIN, _HF_MAX)
    low_freq = _clamp(low_freq, _LF_MIN, _LF_MAX)
    high_amp = _clamp(high_amp, 0.0, 1.0)
    low_amp = _clamp(low_amp, 0.0, _LF_AMP_MAX)

    hf = ((_encode_frequency(high_freq) - 0x60) * 4) & 0xFFFF
    lf = (_encode_frequency(low_freq) - 0x40) & 0xFF

    ha = (encode_amplitude_index(high_amp) * 2) & 0xFFFF
    # Integer halving drops the low bit of the low-amplitude index
    la = (encode_amplitude_index(low_amp) // 2 + 0x40) & 0xFFFF

    return bytes([
        hf & 0xFF,
        (((hf >> 8) & 0xFF) + (ha & 0xFF)) & 0xFF,
        (lf + ((la >> 8) & 0xFF)) & 0xFF,
        la & 0xFF,
    ])


def encode_rumble(low_freq: float, high_freq: float, low_amp: float, high_amp: float) -> bytes:
    """Encode the 8-byte rumble field (same block for both motors)."""
    block = encode_motor(low_freq, high_freq, low_amp, high_amp)
    return block + block
