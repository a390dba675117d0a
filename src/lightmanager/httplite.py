"""Minimal HTTP support on the command port.

A client may send a single ``GET /cmd=<command line> HTTP/1.x`` request
instead of plain commands.  The URL-decoded command line runs through
the normal command engine with HTML output, and the result goes back
as one complete ``text/html`` response.  The connection is closed
afterwards.

Example:
    $ curl 'http://lightmanager:3456/cmd=GET%20TEMP&GET%20CLOCK'
"""

import html
import logging
import re
from email.utils import formatdate
from urllib.parse import unquote_plus

from lightmanager.config import PROGNAME, VERSION
from lightmanager.engine import (
    HTTP_COMMAND_DELIMITERS,
    HtmlOutput,
    Outcome,
    Session,
    help_text,
)
from lightmanager.exceptions import MalformedHttpRequest

log = logging.getLogger(__name__)

_REQUEST_RE = re.compile(r"^GET\s+(\S+)\s+HTTP/1\.\d\s*$", re.IGNORECASE)
_CMD_MARKER = "/cmd="

USAGE = "Usage: GET /cmd=<command>[&<command>...] HTTP/1.1"


def is_http_request(line: str) -> bool:
    """Return True if *line* looks like an HTTP GET request line."""
    upper = line.lstrip().upper()
    return upper.startswith("GET ") and "HTTP/1." in upper


def parse_request(line: str) -> str:
    """Extract and URL-decode the command line from a request line.

    Raises:
        MalformedHttpRequest: If the request line has no usable path
            or the path has no ``/cmd=`` part.
    """
    m = _REQUEST_RE.match(line.strip())
    if m is None:
        raise MalformedHttpRequest("cannot parse request line '%s'" % line.strip())
    path = m.group(1)
    pos = path.lower().find(_CMD_MARKER)
    if pos < 0:
        raise MalformedHttpRequest("missing %s in '%s'" % (_CMD_MARKER, path))
    return unquote_plus(path[pos + len(_CMD_MARKER):])


def build_response(status: int, reason: str, body: str) -> str:
    """Wrap an HTML *body* fragment in a complete HTTP response."""
    document = (
        "<!DOCTYPE html>\r\n"
        "<html>\r\n"
        "<head><title>%s</title></head>\r\n"
        "<body>\r\n%s</body>\r\n"
        "</html>\r\n" % (html.escape(PROGNAME), body)
    )
    now = formatdate(usegmt=True)
    headers = [
        "HTTP/1.1 %d %s" % (status, reason),
        "Date: %s" % now,
        "Server: %s/%s" % (PROGNAME, VERSION),
        "Last-Modified: %s" % now,
        "Content-Language: en",
        "Cache-Control: no-cache, no-store, must-revalidate",
        "Pragma: no-cache",
        "Expires: 0",
        "Connection: close",
        "Content-Type: text/html",
        "Content-Length: %d" % len(document.encode("utf-8")),
    ]
    return "\r\n".join(headers) + "\r\n\r\n" + document


class HttpFrontEnd:
    """Decorator around a command engine that also answers HTTP requests.

    Plain command lines are passed straight to the wrapped engine.

    Args:
        engine: A :class:`~lightmanager.engine.CommandEngine`.
    """

    def __init__(self, engine):
        """Wrap *engine*."""
        self._engine = engine

    def execute(self, line: str, session: Session) -> Outcome:
        """Run *line* as an HTTP request or as a plain command line."""
        if not is_http_request(line):
            return self._engine.execute(line, session)
        self.handle(line, session)
        return Outcome.HTTP

    def handle(self, line: str, session: Session) -> None:
        """Answer one HTTP request line on *session*'s raw output."""
        try:
            commands = parse_request(line)
        except MalformedHttpRequest as exc:
            log.info("bad HTTP request: %s", exc)
            session.errors += 1
            body = (
                "<p>%s</p>\r\n<pre>%s</pre>\r\n"
                % (html.escape(USAGE), html.escape(help_text()))
            )
            session.output.write(build_response(400, "Bad Request", body))
            return

        log.debug("handle HTTP request '%s'", commands)
        chunks = []
        sub = Session(HtmlOutput(chunks.append), verbose=session.verbose)
        outcome = self._engine.execute(commands, sub, HTTP_COMMAND_DELIMITERS)
        if outcome is not Outcome.CONTINUE:
            log.debug("HTTP request ended early: %s", outcome.value)
        session.errors += sub.errors
        session.output.write(build_response(200, "OK", "".join(chunks)))
