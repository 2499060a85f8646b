#!/usr/bin/env python3

import argparse
import socket
import socketserver
import threading
import time
from pathlib import Path
from typing import Optional

from eventlog import log_event
from linereader import MAX_LINE_LENGTH, LineReader
from mailstore import MAIL_BASE_DIRECTORY, USER_FILE_NAME, CredentialStore, MailStore
from pop3_session import RetrievalSession
from session import ProtocolSession
from smtp_session import SubmissionSession


class _MailHandler(socketserver.BaseRequestHandler):
    server: "MailServer"  # type: ignore[assignment]

    def make_session(self, sock: socket.socket, **kwargs) -> ProtocolSession:
        raise NotImplementedError

    def handle(self) -> None:
        sock: socket.socket = self.request
        client_ip = self.client_address[0]
        server_port = int(self.server.server_address[1])

        if self.server.timeout_s:
            sock.settimeout(self.server.timeout_s)

        session = self.make_session(
            sock,
            reader=LineReader(sock, self.server.max_line),
            log_path=self.server.log_path,
            client_ip=client_ip,
            server_port=server_port,
        )
        try:
            session.run()
        except Exception as exc:
            log_event(
                self.server.log_path,
                {
                    "proto": session.proto,
                    "client_ip": client_ip,
                    "server_port": server_port,
                    "event": "error",
                    "error": repr(exc),
                },
            )
        finally:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass


class SMTPHandler(_MailHandler):
    def make_session(self, sock: socket.socket, **kwargs) -> ProtocolSession:
        return SubmissionSession(sock, self.server.store, hostname=self.server.hostname, **kwargs)


class POP3Handler(_MailHandler):
    def make_session(self, sock: socket.socket, **kwargs) -> ProtocolSession:
        return RetrievalSession(sock, self.server.store, **kwargs)


class MailServer(socketserver.ThreadingTCPServer):
    allow_reuse_address = True
    daemon_threads = True

    def __init__(
        self,
        server_address: tuple[str, int],
        handler_class: type[socketserver.BaseRequestHandler],
        store: MailStore,
        hostname: str,
        log_path: Optional[Path],
        timeout_s: float = 0,
        max_line: int = MAX_LINE_LENGTH,
    ) -> None:
        super().__init__(server_address, handler_class)
        self.store = store
        self.hostname = hostname
        self.log_path = log_path
        self.timeout_s = timeout_s
        self.max_line = max_line


def _parse_ports(value: str) -> list[int]:
    return [int(p.strip()) for p in value.split(",") if p.strip()]


def main(argv: Optional[list[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="File-backed SMTP and POP3 server")
    ap.add_argument("--listen-host", default="0.0.0.0")
    ap.add_argument("--smtp-ports", default="2525", help="Comma-separated SMTP ports (empty disables SMTP)")
    ap.add_argument("--pop3-ports", default="1100", help="Comma-separated POP3 ports (empty disables POP3)")
    ap.add_argument("--users", default=USER_FILE_NAME, help="Credential file of 'username password' lines")
    ap.add_argument("--mail-root", default=MAIL_BASE_DIRECTORY)
    ap.add_argument("--hostname", default=socket.gethostname())
    ap.add_argument("--log", default="", help="JSON-lines event log (default: stdout)")
    ap.add_argument("--timeout", type=float, default=600, help="Per-connection socket timeout in seconds (0 disables)")
    ap.add_argument("--max-line", type=int, default=MAX_LINE_LENGTH)
    args = ap.parse_args(argv)

    log_path = Path(args.log) if args.log else None
    store = MailStore(Path(args.mail_root), CredentialStore(Path(args.users)), log_path=log_path)

    listeners = [(p, SMTPHandler) for p in _parse_ports(args.smtp_ports)]
    listeners += [(p, POP3Handler) for p in _parse_ports(args.pop3_ports)]
    if not listeners:
        ap.error("no ports to listen on")

    servers: list[MailServer] = []
    threads: list[threading.Thread] = []

    for port, handler in listeners:
        srv = MailServer(
            (args.listen_host, port),
            handler,
            store,
            hostname=args.hostname,
            log_path=log_path,
            timeout_s=args.timeout,
            max_line=args.max_line,
        )
        servers.append(srv)
        threads.append(threading.Thread(target=srv.serve_forever, daemon=True))
        log_event(log_path, {"proto": "smtp" if handler is SMTPHandler else "pop3", "event": "listening", "server_port": port})

    for th in threads:
        th.start()

    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        for srv in servers:
            srv.shutdown()
            srv.server_close()

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
