"""Project-wide configuration constants and config-file loading.

Central place for tuneable parameters shared across modules.
Import individual names where needed.

Example:
    >>> from lightmanager.config import load_config, DEF_PORT
    >>> cfg = load_config("lightmanager.toml")
    >>> cfg["port"]
    3456
"""

import tomllib

PROGNAME = "Lightmanager"
VERSION = "1.3.0"

# jbmedia Light-Manager (Pro) USB identifiers.
LM_VENDOR_ID = 0x16C0
LM_PRODUCT_ID = 0x0A32

# Retry budget, per-transfer timeout and delay between retries for USB.
USB_MAX_RETRY = 5
USB_TIMEOUT_MS = 250
USB_WAIT_ON_ERROR_MS = 250

# Protocol limits on the TCP command line.
INPUT_BUFFER_MAXLEN = 1024
MAX_CMDS = 500

# Longest WAIT a client may request (one hour).
WAIT_MAX_MS = 3600 * 1000

DEF_HOST = "0.0.0.0"
DEF_PORT = 3456
DEF_HOUSECODE = "11111111"
DEF_PIDFILE = "/var/run/lightmanager.pid"

DEFAULTS = {
    "host": DEF_HOST,
    "port": DEF_PORT,
    "housecode": DEF_HOUSECODE,
    "pidfile": DEF_PIDFILE,
    "syslog": False,
    "debug": False,
}


def load_config(path: str | None) -> dict:
    """Read a TOML config file and validate its keys.

    All keys are optional; missing ones take the value from
    ``DEFAULTS``.  With *path* ``None`` the defaults are returned.

    Keys: ``host`` (str), ``port`` (int, 1-65535), ``housecode``
    (str, 8 FS20 digits), ``pidfile`` (str), ``syslog`` (bool),
    ``debug`` (bool).

    Raises:
        ValueError: If a key is unknown, has the wrong type, or is
            out of range.

    Example:
        >>> cfg = load_config("lightmanager.toml")
        >>> cfg["housecode"]
        '14213444'
    """
    result = dict(DEFAULTS)
    if path is None:
        return result

    with open(path, "rb") as f:
        raw = tomllib.load(f)

    for key in raw:
        if key not in DEFAULTS:
            raise ValueError("unknown key: %s" % key)

    for key in ("host", "housecode", "pidfile"):
        if key in raw:
            _require_str(raw, key)
    for key in ("syslog", "debug"):
        if key in raw:
            _require_bool(raw, key)
    if "port" in raw:
        _require_port(raw)
    if "housecode" in raw:
        _require_housecode(raw)

    result.update(raw)
    return result


def _require_port(raw: dict[str, object]) -> None:
    """Validate that port is an int in 1-65535."""
    _require_int(raw, "port")
    if raw["port"] < 1 or raw["port"] > 65535:
        raise ValueError("port must be 1-65535, got %d" % raw["port"])


def _require_housecode(raw: dict[str, object]) -> None:
    """Validate that housecode is 8 FS20 digits (1-4)."""
    code = raw["housecode"]
    if len(code) != 8 or any(c not in "1234" for c in code):
        raise ValueError(
            "housecode must be 8 digits within 1-4, got '%s'" % code
        )


def _require_str(raw: dict[str, object], key: str) -> None:
    """Validate that *key* exists in *raw* and is a str."""
    if key not in raw:
        raise ValueError("missing required key: %s" % key)
    if not isinstance(raw[key], str):
        raise ValueError("%s must be str, got %s" % (key, type(raw[key]).__name__))


def _require_int(raw: dict[str, object], key: str) -> None:
    """Validate that *key* exists in *raw* and is an int."""
    if key not in raw:
        raise ValueError("missing required key: %s" % key)
    if isinstance(raw[key], bool) or not isinstance(raw[key], int):
        raise ValueError("%s must be int, got %s" % (key, type(raw[key]).__name__))


def _require_bool(raw: dict[str, object], key: str) -> None:
    """Validate that *key* exists in *raw* and is a bool."""
    if key not in raw:
        raise ValueError("missing required key: %s" % key)
    if not isinstance(raw[key], bool):
        raise ValueError("%s must be bool, got %s" % (key, type(raw[key]).__name__))
