"""
Controller Constants

USB identifiers, report layout offsets, sub-command IDs, SPI flash addresses,
button bits, default settings, and small enums shared across all modules.
"""

from enum import Enum, IntEnum, IntFlag

# Maximum number of simultaneously registered Joy-Cons
MAX_SLOTS = 4

# Joy-Con USB IDs
VENDOR_ID = 0x057e
PRODUCT_ID_LEFT = 0x2006
PRODUCT_ID_RIGHT = 0x2007
PRODUCT_IDS = (PRODUCT_ID_LEFT, PRODUCT_ID_RIGHT)


class Side(Enum):
    """Which half of the controller pair a Joy-Con is."""
    LEFT = 'left'
    RIGHT = 'right'

    @classmethod
    def from_product_id(cls, product_id: int) -> 'Side':
        if product_id == PRODUCT_ID_LEFT:
            return cls.LEFT
        if product_id == PRODUCT_ID_RIGHT:
            return cls.RIGHT
        raise ValueError(f"Invalid product ID (0x{product_id:04X}) for Joy-Con")


# ── Report IDs and lengths ───────────────────────────────────────────

REPORT_ID_SUBCOMMAND = 0x01
REPORT_ID_RUMBLE = 0x10
REPORT_ID_SUBCOMMAND_REPLY = 0x21
STANDARD_REPORT_IDS = (0x30, 0x31, 0x32, 0x33)

# Largest report the engine reads from the transport
REPORT_LENGTH = 0x31

# Standard input report layout
OFFSET_TIMER = 1
OFFSET_BATTERY = 2
OFFSET_BUTTONS = 3
OFFSET_LEFT_STICK = 6
OFFSET_RIGHT_STICK = 9
OFFSET_VIBRATOR = 12
OFFSET_IMU = 13
IMU_FRAME_LENGTH = 12
IMU_FRAME_COUNT = 3
STANDARD_REPORT_LENGTH = OFFSET_IMU + IMU_FRAME_LENGTH * IMU_FRAME_COUNT  # 49

# Sub-command reply layout
OFFSET_ACK = 13
OFFSET_REPLY_SUBCOMMAND = 14
OFFSET_REPLY_DATA = 15
SUBCOMMAND_REPLY_MIN_LENGTH = OFFSET_REPLY_DATA

# SPI read reply echoes 4 address bytes + 1 length byte before the data
SPI_ECHO_LENGTH = 5
SPI_READ_MAX_LENGTH = REPORT_LENGTH - OFFSET_REPLY_DATA - SPI_ECHO_LENGTH  # 0x1D


class SubCommand(IntEnum):
    """Sub-command opcodes used by the engine."""
    BLUETOOTH_MANUAL_PAIRING = 0x01
    SET_INPUT_REPORT_MODE = 0x03
    SPI_FLASH_READ = 0x10
    SET_PLAYER_LIGHTS = 0x30
    ENABLE_IMU = 0x40
    ENABLE_VIBRATION = 0x48


# Input report modes
REPORT_MODE_STANDARD = 0x30
REPORT_MODE_SIMPLE_HID = 0x3f

# Payloads for the three Bluetooth pairing steps
PAIRING_STEPS = (0x01, 0x02, 0x03)


# ── SPI flash addresses ──────────────────────────────────────────────

SPI_LEFT_STICK_USER_CAL = 0x8012
SPI_RIGHT_STICK_USER_CAL = 0x801d
SPI_LEFT_STICK_FACTORY_CAL = 0x603d
SPI_RIGHT_STICK_FACTORY_CAL = 0x6046
SPI_LEFT_STICK_PARAMS = 0x6086
SPI_RIGHT_STICK_PARAMS = 0x6098
SPI_IMU_FACTORY_CAL = 0x6020
SPI_IMU_USER_CAL = 0x8028
SPI_IMU_PARAMS = 0x6080

STICK_CAL_LENGTH = 9
STICK_PARAMS_LENGTH = 18
IMU_CAL_LENGTH = 24
IMU_PARAMS_LENGTH = 6

_STICK_ADDRESSES = {
    Side.LEFT: (SPI_LEFT_STICK_USER_CAL, SPI_LEFT_STICK_FACTORY_CAL, SPI_LEFT_STICK_PARAMS),
    Side.RIGHT: (SPI_RIGHT_STICK_USER_CAL, SPI_RIGHT_STICK_FACTORY_CAL, SPI_RIGHT_STICK_PARAMS),
}


def stick_user_calibration_address(side: Side) -> int:
    return _STICK_ADDRESSES[side][0]


def stick_factory_calibration_address(side: Side) -> int:
    return _STICK_ADDRESSES[side][1]


def stick_parameters_address(side: Side) -> int:
    return _STICK_ADDRESSES[side][2]


# ── Buttons ──────────────────────────────────────────────────────────

class Button(IntFlag):
    """24-bit button mask carried in bytes 3-5 of every input report."""
    Y = 1 << 0
    X = 1 << 1
    B = 1 << 2
    A = 1 << 3
    RIGHT_SR = 1 << 4
    RIGHT_SL = 1 << 5
    R = 1 << 6
    ZR = 1 << 7

    MINUS = 1 << 8
    PLUS = 1 << 9
    RIGHT_STICK = 1 << 10
    LEFT_STICK = 1 << 11
    HOME = 1 << 12
    CAPTURE = 1 << 13
    CHARGING_GRIP = 1 << 15

    DOWN = 1 << 16
    UP = 1 << 17
    RIGHT = 1 << 18
    LEFT = 1 << 19
    LEFT_SL = 1 << 20
    LEFT_SR = 1 << 21
    L = 1 << 22
    ZL = 1 << 23


# Buttons in display order (used by the CLI)
BUTTON_NAMES = [
    (Button.Y, "Y"), (Button.X, "X"), (Button.B, "B"), (Button.A, "A"),
    (Button.RIGHT_SR, "SR(R)"), (Button.RIGHT_SL, "SL(R)"),
    (Button.R, "R"), (Button.ZR, "ZR"),
    (Button.MINUS, "Minus"), (Button.PLUS, "Plus"),
    (Button.RIGHT_STICK, "RStick"), (Button.LEFT_STICK, "LStick"),
    (Button.HOME, "Home"), (Button.CAPTURE, "Capture"),
    (Button.DOWN, "Down"), (Button.UP, "Up"), (Button.RIGHT, "Right"), (Button.LEFT, "Left"),
    (Button.LEFT_SL, "SL(L)"), (Button.LEFT_SR, "SR(L)"),
    (Button.L, "L"), (Button.ZL, "ZL"),
]


class BatteryLevel(Enum):
    EMPTY = 0x0
    CRITICAL = 0x2
    LOW = 0x4
    MEDIUM = 0x6
    FULL = 0x8
    UNKNOWN = -1


# --- LED map (player indicators, slot N lights the first N LEDs) ---
LED_MAP = [0x01, 0x03, 0x07, 0x0F]


# Default engine settings (runtime, overridable from the settings file)
DEFAULT_SETTINGS = {
    'read_timeout_ms': 8,
    'reply_timeout_ms': 300,
    'teardown_timeout_ms': 200,
    'bring_up_timeout_s': 5.0,
    'join_timeout_s': 1.0,
    'stream_timeout_s': 2.0,
    'player_lights': 0x01,
}
