"""Command engine -- tokenizes command lines and dispatches them.

A command line holds one or more commands separated by ``,`` or ``;``
(and ``&`` for HTTP requests).  Commands run strictly left to right;
each one gets its own status line::

    FS20 11112222 ON: OK
    SCENE 300: ERROR - parameter <scn> out of range (must be within range 1-254)

A failing command never stops the rest of the line.  ``QUIT`` and
``EXIT`` do, and tell the caller to close the connection or shut the
server down.

Example:
    >>> engine = CommandEngine(transport, RuntimeConfig())
    >>> session = Session(PlainOutput(sys.stdout.write))
    >>> engine.execute("GET HOUSECODE; GET TEMP", session)
    11111111
    GET HOUSECODE: OK
    21.5
    GET TEMP: OK
    <Outcome.CONTINUE: 'continue'>
"""

import enum
import html
import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime

from lightmanager import protocol
from lightmanager.clock import AutoClockSync, parse_clock_argument, read_clock, set_clock
from lightmanager.config import MAX_CMDS, PROGNAME, VERSION, WAIT_MAX_MS
from lightmanager.exceptions import (
    CommandError,
    MalformedCommand,
    ParameterOutOfRange,
    TransportError,
    UnknownCommand,
)

log = logging.getLogger(__name__)

COMMAND_DELIMITERS = ",;"
HTTP_COMMAND_DELIMITERS = ",;&"

_TOKEN_RE = re.compile(r"[ ,;\t\v\f]+")

# First-token aliases; every other family is matched by its own name.
_ALIASES = {
    "H": "HELP",
    "?": "HELP",
    "INTERTECHNO": "IT",
    "Q": "QUIT",
    "E": "EXIT",
}

FAMILIES = (
    "HELP", "VERSION", "VERBOSE", "QUIET", "FS20", "UNI", "IT", "SCENE",
    "GET", "SET", "WAIT", "QUIT", "EXIT",
)


class Outcome(enum.Enum):
    """What the caller should do after a command line has run."""

    CONTINUE = "continue"
    DISCONNECT = "client-disconnect"
    SHUTDOWN = "server-shutdown"
    HTTP = "handled-as-http"


@dataclass
class ParsedCommand:
    """One tokenized command.

    ``family`` is the canonical family name, or None when the first
    token is not a known command.
    """

    family: str | None
    tokens: list[str]
    text: str

    @property
    def args(self) -> list[str]:
        return self.tokens[1:]


def split_commands(line: str, delimiters: str = COMMAND_DELIMITERS) -> list[str]:
    """Split *line* into command substrings, keeping their order."""
    return re.split("[%s]" % re.escape(delimiters), line)


def tokenize(command: str) -> list[str]:
    """Split one command into its tokens."""
    return [t for t in _TOKEN_RE.split(command) if t]


def parse_command(text: str) -> ParsedCommand | None:
    """Tokenize *text*; return None for an empty command."""
    tokens = tokenize(text)
    if not tokens:
        return None
    first = tokens[0].upper()
    first = _ALIASES.get(first, first)
    family = first if first in FAMILIES else None
    return ParsedCommand(family, tokens, text.strip())


# -- Output strategies -------------------------------------------------------


class PlainOutput:
    """Writes result lines as plain text terminated by CR LF.

    Args:
        write: Callable taking one str.
    """

    def __init__(self, write):
        """Initialize with the raw *write* callable."""
        self.write = write

    def line(self, text: str) -> None:
        """Write one result or status line."""
        self.write(text + "\r\n")

    def block(self, text: str) -> None:
        """Write preformatted multi-line text unchanged."""
        self.write(text)


class HtmlOutput(PlainOutput):
    """Writes result lines HTML-escaped, each ended by ``<br />``."""

    def line(self, text: str) -> None:
        """Write one escaped line followed by a line break tag."""
        self.write(html.escape(text) + "<br />\r\n")

    def block(self, text: str) -> None:
        """Write *text* escaped inside a ``<pre>`` block."""
        self.write("<pre>" + html.escape(text) + "</pre>\r\n")


class Session:
    """Per-client state for the command engine.

    Args:
        output: A :class:`PlainOutput` or :class:`HtmlOutput`.
        verbose: Write ``OK`` status lines (``VERBOSE``/``QUIET``).
        suppress_ok: Never write ``OK`` status lines (one-shot mode).
    """

    def __init__(self, output, verbose: bool = True, suppress_ok: bool = False):
        """Initialize the session."""
        self.output = output
        self.verbose = verbose
        self.suppress_ok = suppress_ok
        self.errors = 0


# -- Help --------------------------------------------------------------------


def help_text() -> str:
    """Return the command reference."""
    return "\r\n".join([
        "",
        "%s (%s) help" % (PROGNAME, VERSION),
        "",
        "Light Manager commands",
        "    GET CLOCK         Read the current device date and time",
        "    GET HOUSECODE     Read the current FS20 housecode",
        "    GET TEMP          Read the current device temperature sensor",
        "    SET HOUSECODE adr Set the FS20 housecode where",
        "                        adr  FS20 housecode (11111111-44444444)",
        "    SET CLOCK [time]  Set the device clock to system time or to <time>",
        "                      where time format is MMDDhhmm[[CC]YY][.ss]",
        "    SET CLOCK AUTO    Set the device clock to system time and correct",
        "                      any hour offset the device applies",
        "",
        "Device commands",
        "    FS20 addr cmd     Send a FS20 command where",
        "                        addr FS20 address using the format ggss (1111-4444)",
        "                        cmd  ON|UP|OPEN      switch on or open a jalousie",
        "                             OFF|DOWN|CLOSE  switch off or close a jalousie",
        "                             TOGGLE          toggle the current state",
        "                             BRIGHT|+        regulate dimmer one step up",
        "                             DARK|-          regulate dimmer one step down",
        "                             <dim>           absolute dim value 0 (off)",
        "                                             to 16 (max) or percentage",
        "                                             dim value 0% to 100%",
        "    IT code addr cmd  Send an InterTechno command where",
        "                        code InterTechno housecode (A-P)",
        "                        addr InterTechno channel (1-16)",
        "                        cmd  ON|OFF|TOGGLE|BRIGHT|+|DARK|-|<dim>",
        "                             <dim> is 0-248 or 0%-100%",
        "    UNI addr cmd      Send an Uniroll command where",
        "                        addr Uniroll jalousie number (1-16)",
        "                        cmd  UP|+|DOWN|-|STOP",
        "    SCENE scn         Activate scene <scn> (1-254)",
        "",
        "System commands",
        "    ? or H or HELP    Print this help",
        "    VERSION           Print the program version",
        "    VERBOSE           Report OK after every command (default)",
        "    QUIET             Report errors only",
        "    WAIT ms           Wait for <ms> milliseconds",
        "    QUIT or Q         Disconnect",
        "    EXIT or E         Disconnect and exit the server",
        "",
        "Separate multiple commands by ';' or ','",
        "",
    ])


# -- Engine ------------------------------------------------------------------


def _require(args: list[str], index: int, name: str) -> str:
    if len(args) <= index:
        raise MalformedCommand("missing <%s> parameter" % name)
    return args[index]


def _require_int(args: list[str], index: int, name: str) -> int:
    token = _require(args, index, name)
    value = protocol.parse_int(token)
    if value is None:
        raise MalformedCommand("wrong <%s> parameter '%s'" % (name, token))
    return value


class CommandEngine:
    """Runs command lines against the shared transport and runtime state.

    Args:
        transport: Object with ``send(frame, expect_reply)`` and
            ``send_all(frames)``, normally the process-wide
            :class:`~lightmanager.transport.Transport`.
        runtime: The shared :class:`~lightmanager.runtime.RuntimeConfig`.
        now: Callable returning the current local time.
        sleep: Callable used by ``WAIT``, taking seconds.
    """

    def __init__(self, transport, runtime, now=datetime.now, sleep=time.sleep):
        """Initialize the engine and its family handlers."""
        self._transport = transport
        self._runtime = runtime
        self._now = now
        self._sleep = sleep
        self._handlers = {
            "HELP": self._cmd_help,
            "VERSION": self._cmd_version,
            "VERBOSE": self._cmd_verbose,
            "QUIET": self._cmd_quiet,
            "FS20": self._cmd_fs20,
            "UNI": self._cmd_uniroll,
            "IT": self._cmd_intertechno,
            "SCENE": self._cmd_scene,
            "GET": self._cmd_get,
            "SET": self._cmd_set,
            "WAIT": self._cmd_wait,
            "QUIT": self._cmd_quit,
            "EXIT": self._cmd_exit,
        }

    def execute(self, line: str, session: Session,
                delimiters: str = COMMAND_DELIMITERS) -> Outcome:
        """Run every command in *line* and write results to *session*.

        Returns:
            Outcome: ``DISCONNECT`` or ``SHUTDOWN`` if a ``QUIT`` or
            ``EXIT`` ended the line early, otherwise ``CONTINUE``.
        """
        log.debug("handle input '%s'", line)
        commands = split_commands(line, delimiters)
        if len(commands) > MAX_CMDS:
            log.warning("rejected line with %d commands", len(commands))
            session.errors += 1
            session.output.line("ERROR - too many commands (max %d)" % MAX_CMDS)
            return Outcome.CONTINUE

        for text in commands:
            command = parse_command(text)
            if command is None:
                continue
            outcome = self.run_command(command, session)
            if outcome is not Outcome.CONTINUE:
                return outcome
        return Outcome.CONTINUE

    def run_command(self, command: ParsedCommand, session: Session) -> Outcome:
        """Run one parsed command and write its status line."""
        log.debug("handle cmd '%s'", command.text)
        try:
            if command.family is None:
                raise UnknownCommand("unknown command '%s'" % command.tokens[0])
            outcome = self._handlers[command.family](command.args, session)
        except (CommandError, TransportError) as exc:
            log.debug("cmd '%s' failed: %s", command.text, exc)
            session.errors += 1
            session.output.line("%s: ERROR - %s" % (command.text, exc))
            return Outcome.CONTINUE

        if outcome is not None:
            return outcome
        if session.verbose and not session.suppress_ok:
            session.output.line("%s: OK" % command.text)
        return Outcome.CONTINUE

    # -- System commands -----------------------------------------------------

    def _cmd_help(self, args, session):
        session.output.block(help_text())

    def _cmd_version(self, args, session):
        session.output.line("%s (%s)" % (PROGNAME, VERSION))

    def _cmd_verbose(self, args, session):
        session.verbose = True

    def _cmd_quiet(self, args, session):
        session.verbose = False

    def _cmd_wait(self, args, session):
        ms = _require_int(args, 0, "ms")
        if ms < 0 or ms > WAIT_MAX_MS:
            raise ParameterOutOfRange(
                "parameter <ms> out of range (must be within range 0-%d)" % WAIT_MAX_MS
            )
        self._sleep(ms / 1000.0)

    def _cmd_quit(self, args, session):
        log.debug("client QUIT requested")
        return Outcome.DISCONNECT

    def _cmd_exit(self, args, session):
        log.debug("client EXIT requested")
        return Outcome.SHUTDOWN

    # -- Device commands -----------------------------------------------------

    def _cmd_fs20(self, args, session):
        addr = protocol.parse_fs20_address(_require(args, 0, "addr"))
        command = _require(args, 1, "cmd")
        frame = protocol.encode_fs20(self._runtime.get_housecode(), addr, command)
        self._transport.send(frame)

    def _cmd_uniroll(self, args, session):
        addr = _require_int(args, 0, "addr")
        command = _require(args, 1, "cmd")
        self._transport.send(protocol.encode_uniroll(addr, command))

    def _cmd_intertechno(self, args, session):
        code = protocol.parse_it_code(_require(args, 0, "code"))
        addr = _require_int(args, 1, "addr")
        command = _require(args, 2, "cmd")
        self._transport.send(protocol.encode_intertechno(code, addr, command))

    def _cmd_scene(self, args, session):
        scene = _require_int(args, 0, "scn")
        self._transport.send(protocol.encode_scene(scene))

    # -- GET / SET -----------------------------------------------------------

    def _cmd_get(self, args, session):
        what = _require(args, 0, "parameter").upper()
        if what in ("CLOCK", "TIME"):
            try:
                when = read_clock(self._transport)
            except ValueError as exc:
                raise CommandError("invalid clock data (%s)" % exc) from None
            session.output.line(when.ctime())
        elif what == "TEMP":
            frame = protocol.encode_get_temp()
            self._transport.send(frame, expect_reply=True)
            try:
                temp = protocol.decode_temp(frame)
            except ValueError:
                raise CommandError("invalid temperature data") from None
            session.output.line("%.1f" % temp)
        elif what == "HOUSECODE":
            session.output.line(protocol.int_to_fs20(self._runtime.get_housecode()))
        else:
            raise MalformedCommand("unknown parameter '%s'" % args[0])

    def _cmd_set(self, args, session):
        what = _require(args, 0, "parameter").upper()
        if what in ("CLOCK", "TIME"):
            self._set_clock(args[1] if len(args) > 1 else None)
        elif what == "HOUSECODE":
            code = protocol.parse_housecode(_require(args, 1, "housecode"))
            self._runtime.set_housecode(code)
            log.info("housecode set to %s", protocol.int_to_fs20(code))
        else:
            raise MalformedCommand("unknown parameter '%s'" % args[0])

    def _set_clock(self, argument):
        if argument is not None and argument.upper() == "AUTO":
            AutoClockSync(self._transport, self._now).run()
            return
        now = self._now().replace(microsecond=0)
        when = now if argument is None else parse_clock_argument(argument, now)
        set_clock(self._transport, when)
