from enum import Enum
from typing import Any, Optional

from mailstore import MailboxSnapshot, MailStore
from session import ProtocolSession, parse_position

POSITIVE = "+OK"
NEGATIVE = "-ERR"


class Pop3State(Enum):
    UNAUTHENTICATED = "unauthenticated"
    USER_PROVIDED = "user_provided"
    AUTHENTICATED = "authenticated"


_AUTHENTICATED = frozenset({Pop3State.AUTHENTICATED})


class RetrievalSession(ProtocolSession):
    """POP3 state machine for one connection.

    Deletions are only committed by QUIT. Any other way out of the session
    (EOF, read or write failure) restores the deleted entries before the
    snapshot is closed, so the mailbox is left as it was.
    """

    proto = "pop3"
    commands = {
        "USER": (frozenset({Pop3State.UNAUTHENTICATED}), "cmd_user"),
        "PASS": (frozenset({Pop3State.USER_PROVIDED}), "cmd_pass"),
        "STAT": (_AUTHENTICATED, "cmd_stat"),
        "LIST": (_AUTHENTICATED, "cmd_list"),
        "RETR": (_AUTHENTICATED, "cmd_retr"),
        "DELE": (_AUTHENTICATED, "cmd_dele"),
        "RSET": (_AUTHENTICATED, "cmd_rset"),
        "NOOP": (None, "cmd_noop"),
        "QUIT": (None, "cmd_quit"),
    }
    unsupported = frozenset({"APOP", "TOP", "UIDL", "CAPA", "STLS", "AUTH"})

    def __init__(self, sock: Any, store: MailStore, **kwargs: Any):
        super().__init__(sock, **kwargs)
        self.store = store
        self.state = Pop3State.UNAUTHENTICATED
        self.username: Optional[str] = None
        self.snapshot: Optional[MailboxSnapshot] = None

    def ok(self, text: str = "") -> None:
        self.reply(f"{POSITIVE} {text}".rstrip())

    def err(self, text: str) -> None:
        self.reply(f"{NEGATIVE} {text}")

    def greet(self) -> None:
        self.ok("POP3 server ready")

    def line_too_long(self) -> None:
        self.err("line too long")

    def unrecognized(self, verb: str) -> None:
        self.err("unknown command")

    def not_implemented(self, verb: str) -> None:
        self.err("command not implemented")

    def bad_sequence(self, verb: str) -> None:
        self.err("command not valid in this state")

    def teardown(self, reason: str) -> None:
        snap = self.snapshot
        self.snapshot = None
        if snap is not None:
            snap.reset_deleted()
            snap.close()

    def _entry_arg(self, arg: str) -> tuple[Optional[int], Any]:
        pos = parse_position(arg)
        if pos is None or self.snapshot is None:
            return None, None
        return pos, self.snapshot.get(pos)

    def cmd_user(self, arg: str) -> None:
        if not arg:
            self.err("missing user name")
            return
        user = self.store.canonical_user(arg)
        self._event("auth", step="user", username=arg, result=user is not None)
        if user is None:
            self.err("invalid user or password")
            return
        self.username = user
        self.state = Pop3State.USER_PROVIDED
        self.ok("user accepted")

    def cmd_pass(self, arg: str) -> None:
        username = self.username
        if not username or not arg or not self.store.is_valid_user(username, arg):
            self._event("auth", step="pass", username=username, result=False)
            self.username = None
            self.state = Pop3State.UNAUTHENTICATED
            self.err("invalid user or password")
            return
        self._event("auth", step="pass", username=username, result=True)
        self.snapshot = self.store.open_snapshot(username)
        self.state = Pop3State.AUTHENTICATED
        self.ok("maildrop ready")

    def cmd_stat(self, arg: str) -> None:
        snap = self.snapshot
        self.ok(f"{snap.count()} {snap.total_size()}")

    def cmd_list(self, arg: str) -> None:
        snap = self.snapshot
        if arg:
            pos, entry = self._entry_arg(arg)
            if entry is None:
                self.err("no such message")
                return
            self.ok(f"{pos + 1} {entry.size}")
            return

        lines = [f"{POSITIVE} {snap.count()} messages ({snap.total_size()} octets)"]
        for i in range(len(snap)):
            entry = snap.get(i)
            if entry is not None:
                lines.append(f"{i + 1} {entry.size}")
        lines.append(".")
        self.send_raw("".join(ln + "\r\n" for ln in lines).encode("ascii"))

    def cmd_retr(self, arg: str) -> None:
        pos, entry = self._entry_arg(arg)
        if entry is None:
            self.err("no such message")
            return
        try:
            with self.snapshot.open_contents(entry) as f:
                data = f.read()
        except OSError:
            self.err("message could not be read")
            return
        if data and not data.endswith(b"\n"):
            data += b"\r\n"
        self.send_raw(f"{POSITIVE} {entry.size} octets\r\n".encode("ascii") + data + b".\r\n")

    def cmd_dele(self, arg: str) -> None:
        pos, entry = self._entry_arg(arg)
        if entry is None:
            self.err("no such message")
            return
        self.snapshot.mark_deleted(entry)
        self.ok(f"message {pos + 1} deleted")

    def cmd_rset(self, arg: str) -> None:
        restored = self.snapshot.reset_deleted()
        self.ok(f"{restored} messages restored")

    def cmd_noop(self, arg: str) -> None:
        self.ok()

    def cmd_quit(self, arg: str) -> bool:
        snap = self.snapshot
        self.snapshot = None
        if snap is not None:
            removed = snap.close()
            self._event("commit", username=self.username, removed=removed)
        self.ok("POP3 server signing off")
        return False
