import os

import pytest

from linereader import LineReader
from mailstore import CredentialStore, MailStore
from smtp_session import Address, SmtpState, SubmissionSession, parse_path, parse_vrfy_name


def _script(*commands):
    return [b"".join(c.encode("ascii") + b"\r\n" for c in commands)]


@pytest.fixture
def run_smtp(store, connection, events_path):
    def _run(*commands, chunks=None):
        conn = connection(chunks if chunks is not None else _script(*commands))
        session = SubmissionSession(conn, store, hostname="mx.test", log_path=events_path)
        session.run()
        return session, conn.reply_lines()

    return _run


def _codes(replies):
    return [r[:3] for r in replies]


class TestParsePath:
    def test_from_and_to(self):
        assert parse_path("FROM:<a@x>", "FROM") == Address("a", "x")
        assert parse_path("to:<bob@example.org>", "TO") == Address("bob", "example.org")

    def test_space_after_colon_and_parameters(self):
        assert parse_path("FROM: <a@x> SIZE=100", "FROM") == Address("a", "x")

    @pytest.mark.parametrize(
        "arg",
        ["", "FROM:a@x", "FROM:<ax>", "FROM:<@x>", "FROM:<a@>", "TO:<a@x>", "FROM<a@x>", "FROM:<a@x", "FROM:<a b@x>"],
    )
    def test_malformed(self, arg):
        assert parse_path(arg, "FROM") is None

    def test_vrfy_forms(self):
        assert parse_vrfy_name("bob") == "bob"
        assert parse_vrfy_name("bob@x") == "bob"
        assert parse_vrfy_name("<bob@x>") == "bob"
        assert parse_vrfy_name("two words") is None


def test_greeting_names_host(run_smtp):
    _, replies = run_smtp("QUIT")

    assert replies[0] == "220 mx.test Simple Mail Transfer Service Ready"
    assert replies[1] == "221 mx.test Service closing transmission channel"


def test_submission_scenario(run_smtp, store):
    body = "Subject: hello\r\n\r\nHi Bob.\r\n"
    _, replies = run_smtp(
        "MAIL FROM:<a@x>",
        "HELO client.test",
        "MAIL FROM:<a@x>",
        "RCPT TO:<unknown@x>",
        "RCPT TO:<bob@x>",
        "DATA",
        "Subject: hello",
        "",
        "Hi Bob.",
        ".",
        "QUIT",
    )

    assert _codes(replies) == ["220", "503", "250", "250", "551", "250", "354", "250", "221"]
    assert replies[4] == "551 User not local"
    with store.open_snapshot("bob") as snap:
        assert snap.count() == 1
        with snap.open_contents(snap.get(0)) as f:
            assert f.read() == body.encode("ascii")


def test_delivery_to_several_recipients_and_reset_to_greeted(run_smtp, store):
    session, replies = run_smtp(
        "EHLO c", "MAIL FROM:<a@x>", "RCPT TO:<bob@x>", "RCPT TO:<ALICE@x>", "RCPT TO:<bob@y>", "DATA", "m", ".",
        "MAIL FROM:<b@x>",
    )

    assert _codes(replies) == ["220", "250", "250", "250", "250", "250", "354", "250", "250"]
    assert session.state is SmtpState.SENDER_SET
    assert session.recipients == []
    with store.open_snapshot("bob") as snap:
        assert snap.count() == 2
    with store.open_snapshot("Alice") as snap:
        assert snap.count() == 1


def test_body_is_stored_verbatim(run_smtp, store):
    run_smtp(chunks=[b"HELO c\r\nMAIL FROM:<a@x>\r\nRCPT TO:<carol@x>\r\nDATA\r\n..leading dot\r\nbare lf\n.\r\nQUIT\r\n"])

    with store.open_snapshot("carol") as snap:
        with snap.open_contents(snap.get(0)) as f:
            assert f.read() == b"..leading dot\r\nbare lf\n"


def test_disconnect_during_data_discards_body(run_smtp, store):
    session, replies = run_smtp(chunks=[b"HELO c\r\nMAIL FROM:<a@x>\r\nRCPT TO:<bob@x>\r\nDATA\r\npartial body\r\n"])

    assert replies[-1].startswith("354")
    assert session.recipients == []
    with store.open_snapshot("bob") as snap:
        assert snap.count() == 0


@pytest.mark.parametrize(
    "commands",
    [
        ("RCPT TO:<bob@x>",),
        ("DATA",),
        ("HELO c", "RCPT TO:<bob@x>"),
        ("HELO c", "DATA"),
        ("HELO c", "MAIL FROM:<a@x>", "DATA"),
        ("HELO c", "MAIL FROM:<a@x>", "MAIL FROM:<a@x>"),
    ],
)
def test_out_of_sequence(run_smtp, commands):
    _, replies = run_smtp(*commands)

    assert replies[-1] == "503 Bad sequence of commands"


def test_malformed_arguments(run_smtp):
    session, replies = run_smtp(
        "HELO c", "MAIL FROM:a@x", "MAIL TO:<a@x>", "MAIL FROM:<a@x>", "RCPT TO:bob", "RCPT TO:<bob@x>", "DATA now"
    )

    assert _codes(replies) == ["220", "250", "501", "501", "250", "501", "250", "501"]
    assert session.state is SmtpState.RECIPIENTS_SET


def test_helo_and_rset_clear_transaction(run_smtp):
    session, replies = run_smtp("HELO c", "MAIL FROM:<a@x>", "RCPT TO:<bob@x>", "RSET", "DATA", "RSET", "HELO c")

    assert _codes(replies) == ["220", "250", "250", "250", "250", "503", "250", "250"]
    assert session.state is SmtpState.GREETED
    assert session.sender is None
    assert session.recipients == []


def test_rset_before_helo_greets(run_smtp):
    session, replies = run_smtp("RSET", "MAIL FROM:<a@x>")

    assert _codes(replies) == ["220", "250", "250"]
    assert session.state is SmtpState.SENDER_SET


def test_vrfy(run_smtp):
    _, replies = run_smtp("VRFY alice", "VRFY <bob@x>", "VRFY mallory", "VRFY")

    assert replies[1] == "250 Alice"
    assert replies[2] == "250 bob"
    assert replies[3] == "553 User ambiguous"
    assert replies[4].startswith("501")


def test_unknown_unimplemented_and_noop(run_smtp):
    _, replies = run_smtp("FROB", "EXPN staff", "noop", "")

    assert _codes(replies) == ["220", "500", "502", "250", "500"]


def test_line_too_long(run_smtp):
    _, replies = run_smtp("NOOP " + "x" * 2000, "NOOP")

    assert replies[1] == "500 Line too long"
    assert replies[2].startswith("250")


def test_no_stored_copy_gives_local_error(run_smtp, store, monkeypatch):
    def failing_link(*args, **kwargs):
        raise OSError("disk on fire")

    monkeypatch.setattr(os, "link", failing_link)
    session, replies = run_smtp("HELO c", "MAIL FROM:<a@x>", "RCPT TO:<bob@x>", "DATA", "m", ".")

    assert replies[-1].startswith("451")
    assert session.state is SmtpState.GREETED


def test_data_end_is_logged_without_contents(run_smtp, events_path):
    run_smtp("HELO c", "MAIL FROM:<a@x>", "RCPT TO:<bob@x>", "DATA", "top secret", ".", "QUIT")

    log = events_path.read_text(encoding="utf-8")
    assert '"event":"data_end"' in log
    assert "top secret" not in log


def test_dot_after_overlong_piece_is_body_text(store, connection, events_path):
    body = b"x" * 40 + b".\r\ntail\r\n"
    conn = connection([b"HELO c\r\nMAIL FROM:<a@x>\r\nRCPT TO:<bob@x>\r\nDATA\r\n" + body + b".\r\nQUIT\r\n"])
    session = SubmissionSession(conn, store, hostname="mx.test", reader=LineReader(conn, 40), log_path=events_path)
    session.run()

    assert _codes(conn.reply_lines()) == ["220", "250", "250", "250", "354", "250", "221"]
    with store.open_snapshot("bob") as snap:
        with snap.open_contents(snap.get(0)) as f:
            assert f.read() == body


def test_unusable_store_root_gives_local_error(tmp_path, users_file, connection, events_path):
    root = tmp_path / "mail.store"
    root.write_bytes(b"")
    store = MailStore(root, CredentialStore(users_file), log_path=events_path)
    conn = connection(_script("HELO c", "MAIL FROM:<a@x>", "RCPT TO:<bob@x>", "DATA", "hi", ".", "QUIT"))
    session = SubmissionSession(conn, store, hostname="mx.test", log_path=events_path)
    session.run()

    assert _codes(conn.reply_lines()) == ["220", "250", "250", "250", "354", "451", "221"]
    assert session.state is SmtpState.GREETED
