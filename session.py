from pathlib import Path
from typing import Any, Optional

from eventlog import log_event
from linereader import LineReader


class SessionClosed(Exception):
    """The peer went away; carries the reason for the disconnect event."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


def split_command(line: bytes) -> tuple[str, str]:
    """Splits a request line into an upper-cased keyword and its argument."""
    text = line.decode("ascii", errors="replace").rstrip("\r\n")
    parts = text.strip(" ").split(" ", 1)
    verb = parts[0].upper()
    arg = parts[1].strip(" ") if len(parts) > 1 else ""
    return verb, arg


def parse_position(arg: str) -> Optional[int]:
    """Converts a 1-based message number to a 0-based position."""
    if not arg.isdigit():
        return None
    n = int(arg)
    if n < 1:
        return None
    return n - 1


class ProtocolSession:
    """Shared plumbing for one connection: replies, request lines, events.

    Subclasses set ``proto`` and ``commands``; the latter maps a keyword to
    the set of states it is legal in (``None`` for any state) and the name
    of the handler method. A handler returns ``False`` to end the session.
    """

    proto = ""
    commands: dict[str, tuple[Optional[frozenset], str]] = {}
    unsupported: frozenset = frozenset()

    def __init__(
        self,
        sock: Any,
        reader: Optional[LineReader] = None,
        log_path: Optional[Path] = None,
        client_ip: Optional[str] = None,
        server_port: Optional[int] = None,
    ):
        self.sock = sock
        self.reader = reader if reader is not None else LineReader(sock)
        self.log_path = log_path
        self.client_ip = client_ip
        self.server_port = server_port
        self.state: Any = None

    def _event(self, event: str, **fields: Any) -> None:
        log_event(
            self.log_path,
            {
                "proto": self.proto,
                "client_ip": self.client_ip,
                "server_port": self.server_port,
                "event": event,
                **fields,
            },
        )

    def reply(self, text: str) -> None:
        self.send_raw(text.encode("ascii", errors="replace") + b"\r\n")

    def send_raw(self, data: bytes) -> None:
        try:
            self.sock.sendall(data)
        except OSError as exc:
            raise SessionClosed(f"write_failed: {exc}") from exc

    def read_line(self) -> bytes:
        """Returns the next complete line, or raises :class:`SessionClosed`.

        Overlong lines are returned in pieces; only the peer closing the
        connection (with or without a partial line) ends the session here.
        """
        try:
            line = self.reader.read_line()
        except OSError as exc:
            raise SessionClosed(f"read_failed: {exc}") from exc
        if line is None:
            raise SessionClosed("eof")
        if not line.endswith(b"\n") and not self.reader.is_overflow(line):
            raise SessionClosed("closed_mid_line")
        return line

    def _discard_rest_of_line(self) -> None:
        while True:
            piece = self.read_line()
            if piece.endswith(b"\n"):
                return

    def run(self) -> None:
        self._event("connect")
        reason = "error"
        try:
            self.greet()
            while True:
                line = self.read_line()
                if self.reader.is_overflow(line):
                    self._discard_rest_of_line()
                    self.line_too_long()
                    continue
                if not self.dispatch(line):
                    reason = "quit"
                    break
        except SessionClosed as exc:
            reason = exc.reason
        finally:
            self.teardown(reason)
            self._event("disconnect", reason=reason)

    def dispatch(self, line: bytes) -> bool:
        verb, arg = split_command(line)
        if not verb:
            self.unrecognized(verb)
            return True
        entry = self.commands.get(verb)
        if entry is None:
            if verb in self.unsupported:
                self.not_implemented(verb)
            else:
                self.unrecognized(verb)
            return True
        states, handler = entry
        if states is not None and self.state not in states:
            self._event("command", cmd=verb, result="bad_sequence")
            self.bad_sequence(verb)
            return True
        self._event("command", cmd=verb)
        return getattr(self, handler)(arg) is not False

    def greet(self) -> None:
        raise NotImplementedError

    def teardown(self, reason: str) -> None:
        pass

    def line_too_long(self) -> None:
        raise NotImplementedError

    def unrecognized(self, verb: str) -> None:
        raise NotImplementedError

    def not_implemented(self, verb: str) -> None:
        self.unrecognized(verb)

    def bad_sequence(self, verb: str) -> None:
        raise NotImplementedError
