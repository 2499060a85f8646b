from typing import Any, Optional

MAX_LINE_LENGTH = 1024


class LineReader:
    """Reads LF-terminated lines from a socket-like object.

    At most ``max_bytes`` bytes are held at a time. A line longer than that is
    returned in pieces of ``max_bytes`` bytes without a terminator; the caller
    can tell such a piece apart with :meth:`is_overflow`. Data left over when
    the peer closes the connection is returned once without a terminator, and
    every later call returns ``None``. Read errors (including timeouts)
    propagate as ``OSError``.
    """

    def __init__(self, sock: Any, max_bytes: int = MAX_LINE_LENGTH):
        if max_bytes < 1:
            raise ValueError("max_bytes must be positive")
        self.sock = sock
        self.max_bytes = max_bytes
        self.buf = bytearray()
        self.closed = False

    def read_line(self) -> Optional[bytes]:
        while True:
            eol = self.buf.find(b"\n")
            if eol >= 0:
                return self._take(eol + 1)
            if len(self.buf) >= self.max_bytes:
                return self._take(self.max_bytes)
            if self.closed:
                break
            chunk = self.sock.recv(self.max_bytes - len(self.buf))
            if not chunk:
                self.closed = True
                break
            self.buf += chunk

        if self.buf:
            return self._take(len(self.buf))
        return None

    def is_overflow(self, line: bytes) -> bool:
        return not line.endswith(b"\n") and len(line) >= self.max_bytes

    def _take(self, n: int) -> bytes:
        line = bytes(self.buf[:n])
        del self.buf[:n]
        return line
