"""Device clock handling for ``SET CLOCK``.

The time argument follows ``date -s``: ``MMDDhhmm[[CC]YY][.ss]``.
Fields that are not given keep the current system value.

``SET CLOCK AUTO`` compensates for devices that shift the written time
by whole hours (daylight saving or time zone settings in the device).
It runs a short state machine, one transport call per step:

    PROBE_WRITE -> PROBE_READ -> COMPUTE_HOUR_DELTA -> ADJUSTED_WRITE

Any transport failure aborts the sequence.
"""

import enum
import logging
import re
from datetime import datetime, timedelta

from lightmanager.exceptions import ParameterOutOfRange
from lightmanager.protocol import (
    decode_clock,
    encode_get_clock,
    encode_set_clock,
)

log = logging.getLogger(__name__)

_TIME_RE = re.compile(
    r"^(\d{2})(\d{2})(\d{2})(\d{2})(\d{4}|\d{2})?(?:\.(\d{2}))?$"
)

# Largest offset AUTO will correct; anything beyond is a bad reply.
MAX_HOUR_DELTA = 12


def parse_clock_argument(text: str, now: datetime) -> datetime:
    """Parse ``MMDDhhmm[[CC]YY][.ss]`` relative to *now*.

    Raises:
        ParameterOutOfRange: If the format is wrong or the date does
            not exist.
    """
    m = _TIME_RE.match(text)
    if m is None:
        raise ParameterOutOfRange(
            "wrong time format '%s' (use MMDDhhmm[[CC]YY][.ss])" % text
        )
    month, day, hour, minute = (int(g) for g in m.groups()[:4])
    year = now.year
    if m.group(5) is not None:
        year = int(m.group(5))
        if len(m.group(5)) == 2:
            year += 2000
    second = int(m.group(6)) if m.group(6) is not None else now.second

    try:
        return datetime(year, month, day, hour, minute, second)
    except ValueError as exc:
        raise ParameterOutOfRange("wrong time '%s': %s" % (text, exc)) from None


def set_clock(transport, when: datetime) -> None:
    """Write *when* to the device clock as one transaction."""
    transport.send_all(encode_set_clock(when))


def read_clock(transport) -> datetime:
    """Read the device clock.

    Raises:
        TransportError: If the transfer fails.
        ValueError: If the reply holds an impossible date.
    """
    frame = encode_get_clock()
    transport.send(frame, expect_reply=True)
    return decode_clock(frame)


class ClockState(enum.Enum):
    """Steps of the ``SET CLOCK AUTO`` sequence."""

    PROBE_WRITE = "probe-write"
    PROBE_READ = "probe-read"
    COMPUTE_HOUR_DELTA = "compute-hour-delta"
    ADJUSTED_WRITE = "adjusted-write"
    DONE = "done"


class AutoClockSync:
    """Set the device clock to system time, correcting its hour offset.

    Args:
        transport: The shared :class:`~lightmanager.transport.Transport`.
        now: Callable returning the current local time.

    Example:
        >>> sync = AutoClockSync(transport)
        >>> sync.run()
        -1
    """

    def __init__(self, transport, now=datetime.now):
        """Initialize the sequence in its first state."""
        self._transport = transport
        self._now = now
        self.state = ClockState.PROBE_WRITE
        self.delta_hours = 0
        self._written = None
        self._read = None

    def run(self) -> int:
        """Run all steps and return the hour delta that was corrected.

        Raises:
            TransportError: If any step's transport call fails.
            ParameterOutOfRange: If the read-back is further off than
                ``MAX_HOUR_DELTA`` hours.
        """
        while self.state is not ClockState.DONE:
            log.debug("clock sync: %s", self.state.value)
            self.state = self._step()
        return self.delta_hours

    def _step(self) -> ClockState:
        if self.state is ClockState.PROBE_WRITE:
            self._written = self._now().replace(microsecond=0)
            set_clock(self._transport, self._written)
            return ClockState.PROBE_READ

        if self.state is ClockState.PROBE_READ:
            try:
                self._read = read_clock(self._transport)
            except ValueError as exc:
                raise ParameterOutOfRange("invalid clock data: %s" % exc) from None
            return ClockState.COMPUTE_HOUR_DELTA

        if self.state is ClockState.COMPUTE_HOUR_DELTA:
            seconds = (self._read - self._written).total_seconds()
            self.delta_hours = round(seconds / 3600)
            if abs(self.delta_hours) > MAX_HOUR_DELTA:
                raise ParameterOutOfRange(
                    "device clock is off by %d hours" % self.delta_hours
                )
            log.info("device clock offset: %+d h", self.delta_hours)
            return ClockState.ADJUSTED_WRITE

        if self.state is ClockState.ADJUSTED_WRITE:
            adjusted = self._now().replace(microsecond=0)
            adjusted -= timedelta(hours=self.delta_hours)
            set_clock(self._transport, adjusted)
            return ClockState.DONE

        raise RuntimeError("clock sync already finished")
