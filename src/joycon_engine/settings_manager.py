"""
Settings Manager

Handles loading and saving engine settings to a JSON file.

File format (version 1):
    {"version": 1, "settings": {"read_timeout_ms": 8, ...}}

Unknown keys are ignored and missing keys fall back to the defaults in
controller_constants.DEFAULT_SETTINGS.
"""

import json
import logging
import os
from dataclasses import asdict, dataclass, fields

from .controller_constants import DEFAULT_SETTINGS

log = logging.getLogger(__name__)

SETTINGS_VERSION = 1
SETTINGS_FILENAME = 'joycon_engine_settings.json'


@dataclass(frozen=True)
class EngineSettings:
    """Timing and presentation knobs for one connection."""
    read_timeout_ms: int = DEFAULT_SETTINGS['read_timeout_ms']
    reply_timeout_ms: int = DEFAULT_SETTINGS['reply_timeout_ms']
    teardown_timeout_ms: int = DEFAULT_SETTINGS['teardown_timeout_ms']
    bring_up_timeout_s: float = DEFAULT_SETTINGS['bring_up_timeout_s']
    join_timeout_s: float = DEFAULT_SETTINGS['join_timeout_s']
    stream_timeout_s: float = DEFAULT_SETTINGS['stream_timeout_s']
    player_lights: int = DEFAULT_SETTINGS['player_lights']

    def __post_init__(self):
        for name in ('read_timeout_ms', 'reply_timeout_ms', 'teardown_timeout_ms'):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        for name in ('bring_up_timeout_s', 'join_timeout_s', 'stream_timeout_s'):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if not 0 <= self.player_lights <= 0xFF:
            raise ValueError("player_lights must fit in one byte")

    @property
    def reply_timeout(self) -> float:
        return self.reply_timeout_ms / 1000.0

    @property
    def teardown_timeout(self) -> float:
        return self.teardown_timeout_ms / 1000.0

    @classmethod
    def from_dict(cls, values: dict) -> 'EngineSettings':
        """Build settings from a (possibly partial) dict, coercing types."""
        kwargs = {}
        for f in fields(cls):
            if f.name in values:
                kwargs[f.name] = f.type(values[f.name])
        return cls(**kwargs)

    def to_dict(self) -> dict:
        return asdict(self)


class SettingsManager:
    """Manages persistent engine settings."""

    def __init__(self, settings_dir: str):
        self._settings_file = os.path.join(settings_dir, SETTINGS_FILENAME)
        self.settings = EngineSettings()

    @property
    def path(self) -> str:
        return self._settings_file

    def load(self) -> EngineSettings:
        """Load settings from file, keeping defaults if it is missing or invalid."""
        try:
            if not os.path.exists(self._settings_file):
                return self.settings
            with open(self._settings_file, 'r') as f:
                saved = json.load(f)

            version = saved.get('version', SETTINGS_VERSION)
            if version > SETTINGS_VERSION:
                log.warning("Settings file version %s is newer than %s, reading known keys only",
                            version, SETTINGS_VERSION)
            self.settings = EngineSettings.from_dict(saved.get('settings', {}))
        except (OSError, ValueError, TypeError, AttributeError) as e:
            log.warning("Failed to load settings: %s", e)
        return self.settings

    def save(self):
        """Write settings in the current format. Raises on failure."""
        output = {
            'version': SETTINGS_VERSION,
            'settings': self.settings.to_dict(),
        }

        with open(self._settings_file, 'w') as f:
            json.dump(output, f, indent=2)
