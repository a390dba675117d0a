"""Process-wide runtime state shared by all client connections.

The FS20 housecode is the only value clients can change at run time.
Reads and writes go through a lock so every connection sees a change
as soon as ``set_housecode`` returns.

Example:
    >>> from lightmanager.runtime import RuntimeConfig
    >>> rt = RuntimeConfig(housecode=0x39CF)
    >>> rt.set_housecode(0x1B1B)
    >>> hex(rt.get_housecode())
    '0x1b1b'
"""

import threading

from lightmanager.config import DEF_HOST, DEF_PORT


class RuntimeConfig:
    """Lock-guarded housecode plus the listen parameters.

    Args:
        housecode: Initial 16-bit FS20 housecode.
        host: Listen address.
        port: Listen port.
    """

    def __init__(self, housecode: int = 0, host: str = DEF_HOST,
                 port: int = DEF_PORT):
        """Initialize with the startup values."""
        self._check(housecode)
        self._housecode = housecode
        self._lock = threading.Lock()
        self.host = host
        self.port = port

    def get_housecode(self) -> int:
        """Return the current housecode."""
        with self._lock:
            return self._housecode

    def set_housecode(self, value: int) -> None:
        """Replace the housecode.

        Raises:
            ValueError: If *value* is not a 16-bit value.
        """
        self._check(value)
        with self._lock:
            self._housecode = value

    @staticmethod
    def _check(value: int) -> None:
        if value < 0 or value > 0xFFFF:
            raise ValueError("housecode must be 0-0xFFFF, got %r" % value)
