#!/usr/bin/env python3

import argparse
import os
from pathlib import Path
from typing import Optional

from mailstore import USER_FILE_NAME


def _load(path: Path) -> list[tuple[str, str]]:
    if not path.exists():
        return []
    users: list[tuple[str, str]] = []
    with path.open("r", encoding="utf-8") as f:
        for line in f:
            fields = line.split()
            if len(fields) >= 2:
                users.append((fields[0], fields[1]))
    return users


def _save(path: Path, users: list[tuple[str, str]]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    with tmp.open("w", encoding="utf-8") as f:
        for user, pw in users:
            f.write(f"{user} {pw}\n")
    os.replace(tmp, path)


def _is_token(value: str) -> bool:
    return bool(value) and len(value.split()) == 1 and value == value.strip()


def main(argv: Optional[list[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Edit the mail server credential file")
    ap.add_argument("--users", default=USER_FILE_NAME)
    group = ap.add_mutually_exclusive_group()
    group.add_argument("--add", metavar="NAME", help="Add or replace a user (requires --password)")
    group.add_argument("--remove", metavar="NAME", help="Remove a user (case-insensitive)")
    ap.add_argument("--password")
    ap.add_argument("--show", action="store_true", help="Print the resulting user names")
    args = ap.parse_args(argv)

    path = Path(args.users)
    users = _load(path)

    if args.add:
        if not args.password:
            ap.error("--add requires --password")
        if not _is_token(args.add) or "/" in args.add or args.add in {".", ".."}:
            ap.error("user name must be a single path-safe word")
        if not _is_token(args.password):
            ap.error("password must not contain whitespace")
        # Replace in place so the user keeps its position (first match wins on lookup).
        wanted = args.add.casefold()
        replaced = False
        out: list[tuple[str, str]] = []
        for user, pw in users:
            if user.casefold() == wanted:
                if not replaced:
                    out.append((args.add, args.password))
                    replaced = True
                continue
            out.append((user, pw))
        if not replaced:
            out.append((args.add, args.password))
        users = out
        _save(path, users)
    elif args.remove:
        wanted = args.remove.casefold()
        users = [(u, pw) for u, pw in users if u.casefold() != wanted]
        _save(path, users)

    if args.show:
        for user, _ in users:
            print(user)

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
