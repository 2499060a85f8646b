"""Shared fixtures: a temporary mail store and an in-memory connection."""

from pathlib import Path

import pytest

from mailstore import CredentialStore, MailStore

USERS = "bob rightpw\nAlice Secret\ncarol pw3\n"


class FakeConnection:
    """Socket stand-in that replays scripted reads and records writes.

    ``chunks`` items are returned by successive ``recv`` calls (trimmed to
    the requested size, remainder kept for the next call); an exception
    instance in the list is raised instead. Once the script is exhausted
    ``recv`` returns ``b""`` like a closed peer.
    """

    def __init__(self, chunks=(), fail_send=False):
        self.chunks = list(chunks)
        self.sent = bytearray()
        self.recv_sizes = []
        self.fail_send = fail_send

    def recv(self, n):
        self.recv_sizes.append(n)
        if not self.chunks:
            return b""
        chunk = self.chunks.pop(0)
        if isinstance(chunk, BaseException):
            raise chunk
        if len(chunk) > n:
            self.chunks.insert(0, chunk[n:])
            chunk = chunk[:n]
        return chunk

    def sendall(self, data):
        if self.fail_send:
            raise BrokenPipeError("peer gone")
        self.sent += data

    def reply_lines(self):
        return bytes(self.sent).decode("latin-1").split("\r\n")[:-1]


@pytest.fixture
def users_file(tmp_path: Path) -> Path:
    path = tmp_path / "users.txt"
    path.write_text(USERS, encoding="utf-8")
    return path


@pytest.fixture
def events_path(tmp_path: Path) -> Path:
    return tmp_path / "events.jsonl"


@pytest.fixture
def store(tmp_path: Path, users_file: Path, events_path: Path) -> MailStore:
    return MailStore(tmp_path / "mail.store", CredentialStore(users_file), log_path=events_path)


@pytest.fixture
def connection():
    return FakeConnection
