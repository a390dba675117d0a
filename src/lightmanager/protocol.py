"""Frame encoding and decoding for the Light-Manager USB protocol.

Every exchange with the device is one fixed 8-byte frame.  Byte 0 is
the opcode; the meaning of the remaining bytes depends on it:

    FS20        01 hh hl aa cc 00 03 00
    InterTechno 05 ca vv mm dd 00 00 00
    Uniroll     15 aa 74 cc 00 00 00 00
    Scene       0f ss 00 00 00 00 00 00
    Get clock   09 00 00 00 00 00 00 00  -> ss mm hh DD MM ww YY 00
    Set clock   08 ss mm hh DD MM ww YY  (BCD), then 00 00 0d ...,
                then 06 02 01 02 ...
    Get temp    0c 00 00 00 00 00 00 00  -> fd tt ...

Unused trailing bytes are always zero.
"""

import re
from datetime import datetime

from lightmanager.exceptions import MalformedCommand, ParameterOutOfRange

# -- Protocol constants ------------------------------------------------------

FRAME_LEN = 8

OP_FS20 = 0x01
OP_INTERTECHNO = 0x05
OP_SET_CLOCK = 0x08
OP_GET_CLOCK = 0x09
OP_GET_TEMP = 0x0C
OP_SCENE = 0x0F
OP_UNIROLL = 0x15

TEMP_REPLY_MARKER = 0xFD

FS20_DIM_MAX = 16
IT_DIM_MAX = 248
SCENE_MIN = 1
SCENE_MAX = 254
CHANNEL_MIN = 1
CHANNEL_MAX = 16

FS20_COMMANDS = {
    "ON": 0x11, "UP": 0x11, "OPEN": 0x11,
    "OFF": 0x00, "DOWN": 0x00, "CLOSE": 0x00,
    "TOGGLE": 0x12,
    "BRIGHT": 0x13, "+": 0x13,
    "DARK": 0x14, "-": 0x14,
}

UNIROLL_COMMANDS = {
    "STOP": 0x02,
    "UP": 0x01, "+": 0x01,
    "DOWN": 0x04, "-": 0x04,
}

# (value, main command)
IT_COMMANDS = {
    "ON": (0x01, 0x06),
    "OFF": (0x00, 0x06),
    "TOGGLE": (0x02, 0x06),
    "BRIGHT": (0x05, 0x06), "+": (0x05, 0x06),
    "DARK": (0x06, 0x06), "-": (0x06, 0x06),
}
IT_MAIN_DIM = 0x05

_INT_RE = re.compile(r"^-?\d+$")


def new_frame(*data: int) -> bytearray:
    """Return a zeroed frame with *data* written from byte 0 on."""
    frame = bytearray(FRAME_LEN)
    frame[:len(data)] = bytes(data)
    return frame


def parse_int(token: str) -> int | None:
    """Parse a plain decimal integer token, or return None."""
    if _INT_RE.match(token):
        return int(token)
    return None


# -- FS20 address codec ------------------------------------------------------


def fs20_to_int(code: str) -> int:
    """Convert an FS20 code string to an integer.

    Each pair of digits (``1``-``4``) forms one nibble of the result,
    most significant pair first: ``"1111"`` is 0x00, ``"4444"`` is
    0xFF and ``"14213444"`` is 0x39CF.

    Raises:
        ParameterOutOfRange: If the string is empty, has odd length, or
            contains a character outside ``1``-``4``.
    """
    if not code or len(code) % 2 != 0:
        raise ParameterOutOfRange(
            "FS20 code '%s' must have an even number of digits" % code
        )
    if any(c not in "1234" for c in code):
        raise ParameterOutOfRange(
            "FS20 code '%s' must only contain digits 1-4" % code
        )

    result = 0
    for i in range(0, len(code), 2):
        hi = ord(code[i]) - ord("1")
        lo = ord(code[i + 1]) - ord("1")
        result = (result << 4) | (hi * 4 + lo)
    return result


def int_to_fs20(code: int, separator: str = "") -> str:
    """Convert a 16-bit integer to its 8-digit FS20 code string.

    The inverse of :func:`fs20_to_int`.  If *separator* is given it is
    placed between the digit pairs (``"14.21.34.44"``).
    """
    pairs = []
    for shift in (12, 8, 4, 0):
        nibble = (code >> shift) & 0x0F
        pairs.append("%d%d" % (nibble // 4 + 1, nibble % 4 + 1))
    return separator.join(pairs)


def parse_fs20_address(text: str) -> int:
    """Parse an FS20 device address (``ggss``) to a byte.

    Longer codes are accepted as long as the extra leading pairs are
    ``11`` (zero), so ``"11112222"`` is the same address as ``"2222"``.
    """
    if len(text) > 8:
        raise ParameterOutOfRange(
            "FS20 address '%s' has too many digits (1111-4444)" % text
        )
    addr = fs20_to_int(text)
    if addr > 0xFF:
        raise ParameterOutOfRange(
            "FS20 address '%s' out of range (1111-4444)" % text
        )
    return addr


def parse_housecode(text: str) -> int:
    """Parse an 8-digit FS20 housecode to its 16-bit value."""
    if len(text) != 8:
        raise ParameterOutOfRange(
            "housecode '%s' must have 8 digits (11111111-44444444)" % text
        )
    return fs20_to_int(text)


# -- Dim values --------------------------------------------------------------


def parse_dim(token: str, maximum: int) -> int:
    """Parse an absolute (``0``-*maximum*) or percentage (``N%``) dim value.

    A percentage is scaled with integer arithmetic:
    ``dim = maximum * pct // 100``.

    Raises:
        MalformedCommand: If *token* is not a number.
        ParameterOutOfRange: If the resulting value is outside
            0-*maximum*.
    """
    percent = token.endswith("%")
    value = parse_int(token[:-1] if percent else token)
    if value is None:
        raise MalformedCommand("unknown <cmd> parameter '%s'" % token)
    if percent:
        if value < 0 or value > 100:
            raise ParameterOutOfRange(
                "wrong dim level '%s' (must be within 0-%d or 0%%-100%%)"
                % (token, maximum)
            )
        value = (maximum * value) // 100
    if value < 0 or value > maximum:
        raise ParameterOutOfRange(
            "wrong dim level '%s' (must be within 0-%d or 0%%-100%%)"
            % (token, maximum)
        )
    return value


def _require_channel(addr: int) -> None:
    if addr < CHANNEL_MIN or addr > CHANNEL_MAX:
        raise ParameterOutOfRange(
            "<addr> %d out of range (must be within %d-%d)"
            % (addr, CHANNEL_MIN, CHANNEL_MAX)
        )


# -- Encoding ----------------------------------------------------------------


def encode_fs20(housecode: int, addr: int, command: str) -> bytearray:
    """Build an FS20 switch frame.

    *command* is a keyword from ``FS20_COMMANDS`` or a dim value
    accepted by :func:`parse_dim` with a maximum of 16.
    """
    if housecode < 0 or housecode > 0xFFFF:
        raise ParameterOutOfRange("housecode 0x%X out of range" % housecode)
    if addr < 0 or addr > 0xFF:
        raise ParameterOutOfRange("FS20 address 0x%X out of range" % addr)

    code = FS20_COMMANDS.get(command.upper())
    if code is None:
        code = parse_dim(command, FS20_DIM_MAX)

    frame = new_frame(OP_FS20, housecode >> 8, housecode & 0xFF, addr, code)
    frame[6] = 0x03
    return frame


def encode_uniroll(addr: int, command: str) -> bytearray:
    """Build a Uniroll roller-shutter frame for jalousie *addr* (1-16)."""
    _require_channel(addr)
    code = UNIROLL_COMMANDS.get(command.upper())
    if code is None:
        raise MalformedCommand("wrong <cmd> parameter '%s'" % command)
    return new_frame(OP_UNIROLL, addr - 1, 0x74, code)


def parse_it_code(token: str) -> int:
    """Map an InterTechno housecode letter ``A``-``P`` to 0-15."""
    if len(token) != 1 or not ("A" <= token.upper() <= "P"):
        raise ParameterOutOfRange(
            "<code> parameter '%s' out of range (must be within 'A' to 'P')"
            % token
        )
    return ord(token.upper()) - ord("A")


def encode_intertechno(code: int, addr: int, command: str) -> bytearray:
    """Build an InterTechno frame for housecode *code* and channel *addr*.

    Keyword commands use the main command 0x06; an absolute dim value
    (0-248 or ``N%``) uses main command 0x05 and sets the dim flag in
    byte 4.
    """
    if code < 0 or code > 15:
        raise ParameterOutOfRange("<code> %d out of range (must be 0-15)" % code)
    _require_channel(addr)

    dimming = 0
    entry = IT_COMMANDS.get(command.upper())
    if entry is not None:
        value, main = entry
    else:
        value = parse_dim(command, IT_DIM_MAX)
        main = IT_MAIN_DIM
        dimming = 0x01
    return new_frame(OP_INTERTECHNO, code * 16 + (addr - 1), value, main, dimming)


def encode_scene(scene: int) -> bytearray:
    """Build a scene-activation frame for *scene* (1-254)."""
    if scene < SCENE_MIN or scene > SCENE_MAX:
        raise ParameterOutOfRange(
            "parameter <scn> out of range (must be within range %d-%d)"
            % (SCENE_MIN, SCENE_MAX)
        )
    return new_frame(OP_SCENE, scene)


def bcd(value: int) -> int:
    """Pack a two-digit decimal value into one BCD byte."""
    return (value // 10) * 16 + value % 10


def encode_set_clock(when: datetime) -> list[bytearray]:
    """Build the three-frame sequence that sets the device clock.

    The first frame carries seconds, minutes, hours, day, month,
    ISO weekday (1=Monday .. 7=Sunday) and year-2000, each BCD packed.

    Raises:
        ParameterOutOfRange: If the year is outside 2000-2099.
    """
    if when.year < 2000 or when.year > 2099:
        raise ParameterOutOfRange(
            "year %d out of range (must be within 2000-2099)" % when.year
        )
    fields = (
        when.second, when.minute, when.hour, when.day, when.month,
        when.isoweekday(), when.year - 2000,
    )
    first = new_frame(OP_SET_CLOCK, *(bcd(v) for v in fields))
    second = new_frame(0x00, 0x00, 0x0D)
    third = new_frame(0x06, 0x02, 0x01, 0x02)
    return [first, second, third]


def encode_get_clock() -> bytearray:
    """Build the clock request frame."""
    return new_frame(OP_GET_CLOCK)


def encode_get_temp() -> bytearray:
    """Build the temperature request frame."""
    return new_frame(OP_GET_TEMP)


# -- Decoding ----------------------------------------------------------------


def decode_clock(reply: bytes) -> datetime:
    """Decode a clock reply into a datetime.

    Reply layout: ss mm hh DD MM ww YY, the year counted from 2000.

    Raises:
        ValueError: If the reply is not 8 bytes or holds an impossible
            date.
    """
    if len(reply) != FRAME_LEN:
        raise ValueError(
            "clock reply must be {} bytes, got {}".format(FRAME_LEN, len(reply))
        )
    return datetime(
        2000 + reply[6], reply[4], reply[3], reply[2], reply[1], reply[0]
    )


def decode_temp(reply: bytes) -> float:
    """Decode a temperature reply into degrees Celsius.

    Byte 1 holds the temperature in half-degree steps.

    Raises:
        ValueError: If the reply does not start with the 0xFD marker.
    """
    if len(reply) != FRAME_LEN or reply[0] != TEMP_REPLY_MARKER:
        raise ValueError(
            "bad temperature reply: {}".format(bytes(reply).hex(" "))
        )
    return reply[1] / 2
