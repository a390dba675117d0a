"""Gateway daemon -- serves Light-Manager commands over TCP.

Supports two modes:
- Server mode: listens for command clients (plain text or HTTP GET)
- One-shot mode (``-c``): runs one command line against stdout and exits

Foreground process configured by an optional TOML file and command
line flags.  Shuts down cleanly on SIGINT, SIGTERM or a client's
``EXIT`` command.

Example:
    Run from the command line::

        lightmanager -p 3456 -H 14213444 -g
        lightmanager -c "GET CLOCK; GET TEMP"
"""

import argparse
import logging
import logging.handlers
import os
import signal
import sys
import threading

from lightmanager.bus import UsbBus
from lightmanager.config import PROGNAME, VERSION, load_config
from lightmanager.engine import CommandEngine, PlainOutput, Session
from lightmanager.httplite import HttpFrontEnd
from lightmanager.protocol import int_to_fs20, parse_housecode
from lightmanager.runtime import RuntimeConfig
from lightmanager.server import Server
from lightmanager.transport import Transport

log = logging.getLogger(__name__)

_shutdown = threading.Event()


def _on_signal(signum: int, frame) -> None:
    """Set the module-level shutdown event on SIGINT/SIGTERM."""
    _shutdown.set()


def run_server(cfg: dict, engine, shutdown: threading.Event) -> None:
    """Serve clients until *shutdown* is set.

    Raises:
        OSError: If the listening socket cannot be bound.
    """
    server = Server(engine, cfg["host"], cfg["port"], shutdown)
    try:
        server.serve_forever()
    finally:
        server.close()


def run_once(engine, line: str, write=None) -> int:
    """Run *line* once with output to stdout.

    ``OK`` status lines are suppressed.  Returns the process exit
    status: 0 if every command succeeded, 1 otherwise.

    Example:
        >>> run_once(engine, "GET TEMP")
        21.5
        0
    """
    session = Session(PlainOutput(write or sys.stdout.write), suppress_ok=True)
    engine.execute(line.strip(), session)
    return 1 if session.errors else 0


def create_pidfile(path: str) -> None:
    """Write the current PID to *path*; failures are only logged."""
    try:
        with open(path, "w") as f:
            f.write("%d\n" % os.getpid())
    except OSError as exc:
        log.warning("cannot write pidfile %s: %s", path, exc)


def remove_pidfile(path: str) -> None:
    """Remove *path* if it exists."""
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        log.warning("cannot remove pidfile %s: %s", path, exc)


def parse_args(argv=None) -> argparse.Namespace:
    """Parse command-line flags."""
    parser = argparse.ArgumentParser(
        prog="lightmanager", description="%s TCP gateway" % PROGNAME,
    )
    parser.add_argument("config", nargs="?", help="path to TOML config file")
    parser.add_argument("-a", "--address", help="listen on this address")
    parser.add_argument("-p", "--port", type=int, help="listen on this TCP port")
    parser.add_argument(
        "-H", "--housecode", help="FS20 housecode (11111111-44444444)",
    )
    parser.add_argument("-f", "--pidfile", help="PID file name and location")
    parser.add_argument(
        "-c", "--command", help="execute command(s) and exit (separate by ';' or ',')",
    )
    parser.add_argument(
        "-s", "--syslog", action="store_true", default=None,
        help="log to syslog instead of stderr",
    )
    parser.add_argument(
        "-g", "--debug", action="store_true", default=None,
        help="enable debug logging",
    )
    parser.add_argument(
        "-V", "--version", action="version",
        version="%s (%s)" % (PROGNAME, VERSION),
    )
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> dict:
    """Merge the config file (if any) with command-line overrides."""
    cfg = load_config(args.config)
    overrides = {
        "host": args.address,
        "port": args.port,
        "housecode": args.housecode,
        "pidfile": args.pidfile,
        "syslog": args.syslog,
        "debug": args.debug,
    }
    for key, value in overrides.items():
        if value is not None:
            cfg[key] = value
    return cfg


def setup_logging(cfg: dict) -> None:
    """Send log output to stderr or syslog."""
    level = logging.DEBUG if cfg["debug"] else logging.INFO
    if cfg["syslog"]:
        handler = logging.handlers.SysLogHandler(address="/dev/log")
        handler.setFormatter(logging.Formatter("lightmanager: %(levelname)s %(name)s: %(message)s"))
        logging.basicConfig(level=level, handlers=[handler])
    else:
        logging.basicConfig(
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            level=level,
        )


def main(argv=None) -> None:
    """CLI entry point -- parse args, open the device, run the daemon."""
    _shutdown.clear()

    args = parse_args(argv)
    try:
        cfg = build_config(args)
        housecode = parse_housecode(cfg["housecode"])
    except (OSError, ValueError) as exc:
        print("lightmanager: %s" % exc, file=sys.stderr)
        sys.exit(2)

    setup_logging(cfg)

    try:
        bus = UsbBus()
    except OSError as exc:
        log.error("cannot open USB device: %s", exc)
        sys.exit(1)

    transport = Transport(bus)
    runtime = RuntimeConfig(housecode, cfg["host"], cfg["port"])
    engine = HttpFrontEnd(CommandEngine(transport, runtime))

    if args.command:
        try:
            rc = run_once(engine, args.command)
        finally:
            transport.close()
        sys.exit(rc)

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)
    create_pidfile(cfg["pidfile"])

    log.info(
        "starting %s (%s): address=%s port=%d housecode=%s",
        PROGNAME, VERSION, cfg["host"], cfg["port"], int_to_fs20(housecode),
    )
    rc = 0
    try:
        run_server(cfg, engine, _shutdown)
    except OSError as exc:
        log.error("cannot listen on %s:%d: %s", cfg["host"], cfg["port"], exc)
        rc = 1
    finally:
        transport.close()
        remove_pidfile(cfg["pidfile"])
        log.info("shutting down")
    sys.exit(rc)


if __name__ == "__main__":
    main()
