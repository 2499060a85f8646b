import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Iterable, Optional

from eventlog import log_event

USER_FILE_NAME = "users.txt"
MAIL_BASE_DIRECTORY = "mail.store"
MAIL_FILE_SUFFIX = ".mail"


class InvalidMailboxName(ValueError):
    pass


class CredentialStore:
    """Flat file of ``username password`` pairs.

    The file is read on every lookup, so edits take effect for the next
    command without restarting the server. Usernames compare
    case-insensitively, passwords exactly; the first matching line wins.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def _records(self) -> list[tuple[str, str]]:
        try:
            with self.path.open("r", encoding="utf-8", errors="replace") as f:
                lines = f.readlines()
        except OSError:
            return []
        out: list[tuple[str, str]] = []
        for line in lines:
            fields = line.split()
            if len(fields) >= 2:
                out.append((fields[0], fields[1]))
        return out

    def lookup(self, username: str) -> Optional[str]:
        rec = self._find(username)
        return rec[0] if rec is not None else None

    def is_valid(self, username: str, password: Optional[str] = None) -> bool:
        rec = self._find(username)
        if rec is None:
            return False
        return password is None or password == rec[1]

    def _find(self, username: str) -> Optional[tuple[str, str]]:
        wanted = username.casefold()
        for user, pw in self._records():
            if user.casefold() == wanted:
                return user, pw
        return None


@dataclass
class MailEntry:
    path: Path
    size: int
    deleted: bool = False


@dataclass
class DeliveryResult:
    delivered: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


def _sort_key(path: Path) -> tuple[int, int, str]:
    stem = path.name[: -len(MAIL_FILE_SUFFIX)]
    if stem.isdigit():
        return (0, int(stem), path.name)
    return (1, 0, path.name)


class MailboxSnapshot:
    """Point-in-time listing of one mailbox with soft deletion.

    Positions are zero-based and never shift: a deleted entry keeps its slot
    until :meth:`close`, which unlinks every entry still marked deleted.
    """

    def __init__(self, username: str, entries: list[MailEntry], log_path: Optional[Path] = None):
        self.username = username
        self.entries = entries
        self.log_path = log_path
        self.closed = False

    def __enter__(self) -> "MailboxSnapshot":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def __len__(self) -> int:
        return len(self.entries)

    def count(self) -> int:
        return sum(1 for e in self.entries if not e.deleted)

    def total_size(self) -> int:
        return sum(e.size for e in self.entries if not e.deleted)

    def get(self, pos: int) -> Optional[MailEntry]:
        if pos < 0 or pos >= len(self.entries):
            return None
        entry = self.entries[pos]
        return None if entry.deleted else entry

    def open_contents(self, entry: MailEntry) -> BinaryIO:
        return entry.path.open("rb")

    def mark_deleted(self, entry: MailEntry) -> None:
        entry.deleted = True

    def reset_deleted(self) -> int:
        restored = 0
        for e in self.entries:
            if e.deleted:
                restored += 1
                e.deleted = False
        return restored

    def close(self) -> int:
        if self.closed:
            return 0
        self.closed = True
        removed = 0
        for e in self.entries:
            if not e.deleted:
                continue
            try:
                e.path.unlink()
            except FileNotFoundError:
                # Another session committed the same deletion first.
                continue
            except OSError as exc:
                log_event(
                    self.log_path,
                    {"proto": "store", "event": "unlink_failed", "user": self.username, "file": e.path.name, "error": str(exc)},
                )
                continue
            removed += 1
        self.entries = []
        return removed


class MailStore:
    """One directory per user under ``root``, one file per message."""

    def __init__(self, root: Path, credentials: CredentialStore, log_path: Optional[Path] = None):
        self.root = Path(root)
        self.credentials = credentials
        self.log_path = log_path

    def is_valid_user(self, username: str, password: Optional[str] = None) -> bool:
        return self.credentials.is_valid(username, password)

    def canonical_user(self, username: str) -> Optional[str]:
        return self.credentials.lookup(username)

    def mailbox_path(self, username: str) -> Path:
        if not username or username in {".", ".."} or "/" in username or "\\" in username or "\x00" in username:
            raise InvalidMailboxName(username)
        return self.root / username

    def mailboxes(self) -> list[str]:
        if not self.root.is_dir():
            return []
        return sorted(p.name for p in self.root.iterdir() if p.is_dir())

    def deliver(self, message: bytes, recipients: Iterable[str]) -> DeliveryResult:
        """Stores ``message`` once and hard-links it into every recipient's mailbox.

        Each recipient is handled on its own: a failure (unwritable mailbox,
        temporary file on another device) is recorded in the result and the
        remaining recipients are still attempted.
        """
        result = DeliveryResult()
        recipients = list(recipients)
        try:
            tmp_name = self._write_temp(message)
        except OSError as exc:
            # nothing was staged, so every recipient fails
            for user in recipients:
                self._delivery_failed(result, user, exc)
            return result
        try:
            for user in recipients:
                try:
                    self._link_into(Path(tmp_name), user)
                except (OSError, InvalidMailboxName) as exc:
                    self._delivery_failed(result, user, exc)
                    continue
                result.delivered.append(user)
        finally:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
        return result

    def _write_temp(self, message: bytes) -> str:
        self.root.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix="tmp", dir=self.root)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(message)
                f.flush()
                os.fsync(f.fileno())
        except OSError:
            os.unlink(tmp_name)
            raise
        return tmp_name

    def _delivery_failed(self, result: DeliveryResult, user: str, exc: Exception) -> None:
        result.failed.append(user)
        log_event(
            self.log_path,
            {"proto": "store", "event": "delivery_failed", "user": user, "error": str(exc)},
        )

    def _link_into(self, source: Path, username: str) -> Path:
        mailbox = self.mailbox_path(username)
        mailbox.mkdir(parents=True, exist_ok=True)
        seq = 0
        while True:
            target = mailbox / f"{seq}{MAIL_FILE_SUFFIX}"
            try:
                os.link(source, target)
            except FileExistsError:
                seq += 1
                continue
            return target

    def open_snapshot(self, username: str) -> MailboxSnapshot:
        mailbox = self.mailbox_path(username)
        entries: list[MailEntry] = []
        try:
            it = os.scandir(mailbox)
        except (FileNotFoundError, NotADirectoryError):
            return MailboxSnapshot(username, entries, self.log_path)
        with it:
            for de in it:
                if len(de.name) <= len(MAIL_FILE_SUFFIX) or not de.name.endswith(MAIL_FILE_SUFFIX):
                    continue
                try:
                    if not de.is_file(follow_symlinks=False):
                        continue
                    size = de.stat(follow_symlinks=False).st_size
                except OSError:
                    continue
                entries.append(MailEntry(path=Path(de.path), size=size))
        entries.sort(key=lambda e: _sort_key(e.path))
        return MailboxSnapshot(username, entries, self.log_path)
