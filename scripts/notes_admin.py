#!/usr/bin/env python3
import argparse
import os
import sys

REPO_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

from quicknotes import credentials, storage  # noqa: E402


DEFAULT_NOTES_DIR = os.path.expanduser(os.getenv("APP_NOTES_DIR", "~/quick-notes/notes"))
DEFAULT_HASH_ITERATIONS = int(os.getenv("APP_PASSWORD_HASH_ITERATIONS", "210000"))


def require_username(username):
    normalized = storage.normalize_login(username)
    if not normalized:
        raise ValueError("username must not be empty")
    return normalized


def find_user(notes_dir, username):
    file_path = storage.user_file_path(notes_dir, username)
    if not os.path.exists(file_path):
        raise ValueError(f"user '{username}' not found")
    document = storage.read_user_file(file_path)
    if document is None:
        raise ValueError(f"could not read user data: {file_path}")
    return file_path, document


def cmd_list(args):
    files = storage.list_user_files(args.notes_dir)
    rows = [d for d in (storage.read_user_file(f) for f in files) if d]
    if not rows:
        print("No users found.")
        return 0

    print("{:<20}{:<10}{:<25}{}".format("Username", "Notes", "Created", "Has Password"))
    print("-" * 70)
    for document in rows:
        user = document["user"]
        print(
            "{:<20}{:<10}{:<25}{}".format(
                str(user.get("login") or "unknown"),
                len(document.get("notes") or []),
                str(user.get("created_at") or "unknown"),
                "Yes" if user.get("password_hash") else "No",
            )
        )
    return 0


def cmd_reset(args):
    username = require_username(args.username)
    file_path, document = find_user(args.notes_dir, username)

    recovery_code = credentials.generate_recovery_code()
    document["user"]["password_hash"] = None
    document["user"]["recovery_code"] = credentials.hash_password_pbkdf2(
        recovery_code, args.iterations
    )
    storage.write_json_file(file_path, document)

    print(f"Password reset for user: {document['user'].get('login', username)}")
    print(f"New recovery code: {recovery_code}")
    print("The user will be prompted to create a new password on next login.")
    print("Give them this recovery code if they need to recover their account.")
    return 0


def cmd_delete(args):
    username = require_username(args.username)
    _, document = find_user(args.notes_dir, username)
    login = document["user"].get("login", username)
    notes_count = len(document.get("notes") or [])

    if not args.yes:
        answer = input(
            f"Are you sure you want to delete user '{login}' and their {notes_count} notes? (yes/no): "
        )
        if answer.strip().lower() != "yes":
            print("Cancelled.")
            return 1

    storage.delete_user_document(args.notes_dir, username)
    print(f"User '{login}' and all their notes have been deleted.")
    return 0


def build_parser():
    parser = argparse.ArgumentParser(description="Quick Notes admin CLI")
    parser.add_argument(
        "--notes-dir",
        default=DEFAULT_NOTES_DIR,
        help=f"notes directory (default: {DEFAULT_NOTES_DIR})",
    )
    parser.add_argument(
        "--iterations",
        type=int,
        default=DEFAULT_HASH_ITERATIONS,
        help=f"PBKDF2 iterations (default: {DEFAULT_HASH_ITERATIONS})",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("list", help="list all users").set_defaults(func=cmd_list)

    p_reset = sub.add_parser("reset", help="reset password and issue a new recovery code")
    p_reset.add_argument("username")
    p_reset.set_defaults(func=cmd_reset)

    p_delete = sub.add_parser("delete", help="delete user and all their notes")
    p_delete.add_argument("username")
    p_delete.add_argument("--yes", action="store_true", help="skip confirmation")
    p_delete.set_defaults(func=cmd_delete)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.iterations < 100000:
        raise ValueError("iterations must not be less than 100000")
    return args.func(args)


if __name__ == "__main__":
    try:
        raise SystemExit(main())
    except ValueError as exc:
        print(f"error: {exc}", file=sys.stderr)
        raise SystemExit(2)
