#!/usr/bin/env python3

import argparse
import html
import json
import socket
from http import HTTPStatus
from pathlib import Path
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, JSONResponse

from eventlog import read_events
from mailstore import MAIL_BASE_DIRECTORY, USER_FILE_NAME, CredentialStore, InvalidMailboxName, MailStore


def _html_page(title: str, body_html: str) -> str:
    return """<!doctype html>
<html lang=\"en\">
<head>
  <meta charset=\"utf-8\" />
  <meta name=\"viewport\" content=\"width=device-width, initial-scale=1\" />
  <title>__TITLE__</title>
  <style>
    * { margin: 0; padding: 0; box-sizing: border-box; }

    :root {
      color-scheme: dark;
      --ocean-primary: #0f172a;
      --ocean-secondary: #1e293b;
      --text-primary: #ffffff;
      --text-secondary: rgba(255, 255, 255, 0.7);
    }

    body {
      font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
      min-height: 100vh;
      background: radial-gradient(ellipse at bottom, var(--ocean-secondary) 0%, var(--ocean-primary) 100%);
      color: var(--text-primary);
      line-height: 1.5;
      padding: 32px;
    }

    h1 { font-size: 34px; font-weight: 700; letter-spacing: -1px; margin-bottom: 10px; }
    h2 { font-size: 20px; font-weight: 650; margin-top: 18px; margin-bottom: 10px; }

    .glass-panel {
      background: rgba(255, 255, 255, 0.03);
      border: 1px solid rgba(255, 255, 255, 0.08);
      border-radius: 20px;
      padding: 16px;
    }

    .row { margin: 12px 0; }
    .muted { color: var(--text-secondary); }

    code, pre {
      background: rgba(255, 255, 255, 0.04);
      border: 1.5px solid rgba(255, 255, 255, 0.08);
      border-radius: 14px;
    }
    code { padding: 3px 10px; display: inline-block; }
    pre { padding: 14px; overflow-x: auto; margin-top: 10px; }

    a { color: #7dd3fc; text-decoration: none; }

    table { border-collapse: collapse; width: 100%; }
    th, td { border-bottom: 1px solid rgba(255,255,255,0.08); padding: 10px; text-align: left; }
    th { color: var(--text-secondary); font-weight: 650; }
  </style>
</head>
<body>
  <div class=\"container\">__BODY__</div>
</body>
</html>""".replace("__TITLE__", html.escape(title)).replace("__BODY__", body_html)


def _mailbox_summary(store: MailStore, user: str, with_entries: bool = False) -> dict[str, Any]:
    # Read-only: the snapshot is closed without marking anything deleted.
    with store.open_snapshot(user) as snap:
        out: dict[str, Any] = {"user": user, "messages": snap.count(), "octets": snap.total_size()}
        if with_entries:
            out["entries"] = [{"pos": i + 1, "size": e.size} for i, e in enumerate(snap.entries)]
    return out


def create_app(hostname: str, store: MailStore, events_path: Path) -> FastAPI:
    app = FastAPI()

    @app.get("/", response_class=HTMLResponse)
    def index() -> str:
        boxes = [_mailbox_summary(store, u) for u in store.mailboxes()]
        events = read_events(events_path, limit_lines=40)

        rows = ["<tr><th>User</th><th>Messages</th><th>Octets</th></tr>"]
        for b in boxes:
            rows.append(
                f"<tr><td><a href=\"/api/mailbox/{html.escape(b['user'])}\"><code>{html.escape(b['user'])}</code></a></td>"
                f"<td>{b['messages']}</td><td>{b['octets']}</td></tr>"
            )
        if not boxes:
            rows.append("<tr><td colspan=\"3\" class=\"muted\">(no mailboxes yet)</td></tr>")

        body = f"""
<h1>Mail store status</h1>
<p class=\"muted\">Host: <code>{html.escape(hostname)}</code></p>

<h2>Mailboxes</h2>
<div class=\"glass-panel\"><table>{''.join(rows)}</table></div>

<h2>Recent events</h2>
<pre>{html.escape(json.dumps(events, indent=2))}</pre>

<div class=\"row\"><a href=\"/\">Refresh</a></div>
"""
        return _html_page("Mail store", body)

    @app.get("/api/health")
    def api_health() -> dict[str, Any]:
        return {"ok": True, "status": "up"}

    @app.get("/api/mailboxes")
    def api_mailboxes() -> JSONResponse:
        boxes = [_mailbox_summary(store, u) for u in store.mailboxes()]
        return JSONResponse({"ok": True, "mailboxes": boxes})

    @app.get("/api/mailbox/{user}")
    def api_mailbox(user: str) -> JSONResponse:
        canonical = store.canonical_user(user)
        if canonical is None:
            return JSONResponse({"ok": False, "error": "unknown user"}, status_code=int(HTTPStatus.NOT_FOUND))
        try:
            summary = _mailbox_summary(store, canonical, with_entries=True)
        except InvalidMailboxName:
            return JSONResponse({"ok": False, "error": "invalid mailbox name"}, status_code=int(HTTPStatus.BAD_REQUEST))
        return JSONResponse({"ok": True, **summary})

    @app.get("/api/events")
    def api_events(limit: int = 200) -> JSONResponse:
        if limit < 1 or limit > 2000:
            return JSONResponse({"ok": False, "error": "invalid limit"}, status_code=int(HTTPStatus.BAD_REQUEST))
        return JSONResponse({"ok": True, "events": read_events(events_path, limit_lines=limit)})

    @app.exception_handler(Exception)
    def _err(_: Request, exc: Exception) -> JSONResponse:
        return JSONResponse({"ok": False, "error": str(exc)}, status_code=int(HTTPStatus.INTERNAL_SERVER_ERROR))

    return app


def main() -> int:
    ap = argparse.ArgumentParser()
    ap.add_argument("--listen-host", default="127.0.0.1")
    ap.add_argument("--port", type=int, default=9000)
    ap.add_argument("--hostname", default=socket.gethostname())
    ap.add_argument("--users", default=USER_FILE_NAME)
    ap.add_argument("--mail-root", default=MAIL_BASE_DIRECTORY)
    ap.add_argument("--events", default="events.jsonl")
    args = ap.parse_args()

    store = MailStore(Path(args.mail_root), CredentialStore(Path(args.users)))
    app = create_app(args.hostname, store, Path(args.events))

    import uvicorn  # local import

    uvicorn.run(app, host=args.listen_host, port=args.port)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
