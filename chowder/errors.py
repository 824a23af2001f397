"""Errors raised by the clamd protocol client.

Every error is terminal for the operation that raised it; nothing here is
retried. The HTTP layer only ever renders ``str(error)``.
"""


class ClamdError(Exception):
    """Base class for clamd client failures."""

    def __init__(self, message: str, reply: str = ""):
        super().__init__(message)
        self.message = message
        # Reply text is never usable once an operation failed
        self.reply = reply


class ConnectError(ClamdError):
    """The daemon could not be reached."""


class WriteError(ClamdError):
    """A command or stream write did not complete."""


class ReadError(ClamdError):
    """The daemon reply could not be read to completion."""


class InputError(ClamdError):
    """The caller-supplied upload source failed mid-read."""
