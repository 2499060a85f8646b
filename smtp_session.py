import re
import socket
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from mailstore import MailStore
from session import ProtocolSession, SessionClosed

SERVER_READY = "220"
QUIT_CODE = "221"
OK = "250"
DATA_START = "354"
LOCAL_ERROR = "451"
INVALID = "500"
INVALID_ARG = "501"
UNSUPPORTED = "502"
BAD_SEQUENCE = "503"
USER_NOT_LOCAL = "551"
USER_AMBIGUOUS = "553"

DATA_END_LINES = (b".\r\n", b".\n")


class SmtpState(Enum):
    INITIAL = "initial"
    GREETED = "greeted"
    SENDER_SET = "sender_set"
    RECIPIENTS_SET = "recipients_set"


@dataclass(frozen=True)
class Address:
    local: str
    domain: str

    def __str__(self) -> str:
        return f"{self.local}@{self.domain}"


_PATH_RE = re.compile(r"^(?P<kw>[A-Za-z]+):\s*<(?P<local>[^<>@\s]+)@(?P<domain>[^<>@\s]+)>(?:\s+.*)?$")
_BARE_ADDR_RE = re.compile(r"^<?(?P<local>[^<>@\s]+)(?:@(?P<domain>[^<>@\s]+))?>?$")


def parse_path(arg: str, keyword: str) -> Optional[Address]:
    """Parses ``FROM:<local@domain>`` / ``TO:<local@domain>`` arguments.

    Trailing ESMTP parameters after the path are accepted and ignored.
    """
    m = _PATH_RE.match(arg.strip())
    if not m or m.group("kw").upper() != keyword.upper():
        return None
    return Address(m.group("local"), m.group("domain"))


def parse_vrfy_name(arg: str) -> Optional[str]:
    m = _BARE_ADDR_RE.match(arg.strip())
    if not m:
        return None
    return m.group("local")


class SubmissionSession(ProtocolSession):
    """SMTP state machine for one connection.

    The accepted body is handed to :meth:`MailStore.deliver` once, for all
    recipients collected since MAIL.
    """

    proto = "smtp"
    commands = {
        "HELO": (None, "cmd_helo"),
        "EHLO": (None, "cmd_helo"),
        "MAIL": (frozenset({SmtpState.GREETED}), "cmd_mail"),
        "RCPT": (frozenset({SmtpState.SENDER_SET, SmtpState.RECIPIENTS_SET}), "cmd_rcpt"),
        "DATA": (frozenset({SmtpState.RECIPIENTS_SET}), "cmd_data"),
        "RSET": (None, "cmd_rset"),
        "VRFY": (None, "cmd_vrfy"),
        "NOOP": (None, "cmd_noop"),
        "QUIT": (None, "cmd_quit"),
    }
    unsupported = frozenset({"EXPN", "HELP", "SEND", "SOML", "SAML", "TURN", "STARTTLS", "AUTH", "BDAT"})

    def __init__(self, sock: Any, store: MailStore, hostname: Optional[str] = None, **kwargs: Any):
        super().__init__(sock, **kwargs)
        self.store = store
        self.hostname = hostname or socket.gethostname()
        self.state = SmtpState.INITIAL
        self.sender: Optional[Address] = None
        self.recipients: list[str] = []

    def send_code(self, code: str, text: str) -> None:
        self.reply(f"{code} {text}")

    def greet(self) -> None:
        self.send_code(SERVER_READY, f"{self.hostname} Simple Mail Transfer Service Ready")

    def line_too_long(self) -> None:
        self.send_code(INVALID, "Line too long")

    def unrecognized(self, verb: str) -> None:
        self.send_code(INVALID, "Syntax error, command unrecognized")

    def not_implemented(self, verb: str) -> None:
        self.send_code(UNSUPPORTED, "Command not implemented")

    def bad_sequence(self, verb: str) -> None:
        self.send_code(BAD_SEQUENCE, "Bad sequence of commands")

    def _clear_transaction(self) -> None:
        self.sender = None
        self.recipients = []

    def cmd_helo(self, arg: str) -> None:
        self._clear_transaction()
        self.state = SmtpState.GREETED
        self.send_code(OK, self.hostname)

    def cmd_mail(self, arg: str) -> None:
        sender = parse_path(arg, "FROM")
        if sender is None:
            self.send_code(INVALID_ARG, "Syntax error in parameters or arguments")
            return
        self.sender = sender
        self.recipients = []
        self.state = SmtpState.SENDER_SET
        self.send_code(OK, "OK")

    def cmd_rcpt(self, arg: str) -> None:
        rcpt = parse_path(arg, "TO")
        if rcpt is None:
            self.send_code(INVALID_ARG, "Syntax error in parameters or arguments")
            return
        user = self.store.canonical_user(rcpt.local)
        if user is None:
            self.send_code(USER_NOT_LOCAL, "User not local")
            return
        self.recipients.append(user)
        self.state = SmtpState.RECIPIENTS_SET
        self.send_code(OK, "OK")

    def _read_body(self) -> bytes:
        lines: list[bytes] = []
        at_line_start = True
        while True:
            line = self.read_line()
            # pieces of an overlong line never terminate the body
            if at_line_start and line in DATA_END_LINES:
                return b"".join(lines)
            lines.append(line)
            at_line_start = line.endswith(b"\n")

    def cmd_data(self, arg: str) -> None:
        if arg:
            self.send_code(INVALID_ARG, "Syntax error in parameters or arguments")
            return
        self.send_code(DATA_START, "Start mail input; end with <CRLF>.<CRLF>")
        try:
            body = self._read_body()
        except SessionClosed:
            self._clear_transaction()
            raise

        recipients = self.recipients
        result = self.store.deliver(body, recipients)
        self._event(
            "data_end",
            bytes=len(body),
            recipients=len(recipients),
            delivered=len(result.delivered),
            failed=len(result.failed),
        )
        self._clear_transaction()
        self.state = SmtpState.GREETED
        if recipients and not result.delivered:
            self.send_code(LOCAL_ERROR, "Requested action aborted: local error in processing")
            return
        self.send_code(OK, "OK")

    def cmd_rset(self, arg: str) -> None:
        self._clear_transaction()
        self.state = SmtpState.GREETED
        self.send_code(OK, "OK")

    def cmd_vrfy(self, arg: str) -> None:
        name = parse_vrfy_name(arg) if arg else None
        if name is None:
            self.send_code(INVALID_ARG, "Syntax error in parameters or arguments")
            return
        user = self.store.canonical_user(name)
        if user is None:
            self.send_code(USER_AMBIGUOUS, "User ambiguous")
            return
        self.send_code(OK, user)

    def cmd_noop(self, arg: str) -> None:
        self.send_code(OK, "OK")

    def cmd_quit(self, arg: str) -> bool:
        self.send_code(QUIT_CODE, f"{self.hostname} Service closing transmission channel")
        return False
