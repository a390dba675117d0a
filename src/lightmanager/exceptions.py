"""Exceptions raised by the command, codec and transport layers.

``CommandError`` and its subclasses fail a single command; the engine
reports them as that command's status line and carries on with the
next command in the line.  ``TransportError`` is raised once the
hardware retry budget is exhausted and is handled the same way.
"""


class LightmanagerError(Exception):
    """Base class for all lightmanager exceptions."""


class CommandError(LightmanagerError):
    """A single command could not be executed."""


class MalformedCommand(CommandError):
    """A required token is missing or cannot be parsed."""


class UnknownCommand(CommandError):
    """The first token does not name a known command family."""


class ParameterOutOfRange(CommandError, ValueError):
    """A numeric or enumerated parameter is outside its documented bounds."""


class TransportError(LightmanagerError):
    """A hardware send or receive exhausted its retry budget."""


class MalformedHttpRequest(LightmanagerError):
    """An HTTP request line was recognized but its path cannot be used."""


class LineTooLong(LightmanagerError):
    """A client sent more than the maximum line length without a terminator."""
