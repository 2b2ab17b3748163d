"""
IMAP Mailbox Backup Script

Backs up all messages of one IMAP mailbox to a local directory.
Each message is stored as a gzip-compressed .eml file (RFC 5322 format):

    <root>/backups/<user>/<mailbox>/email-<seq>_<YYYYMMDDhhmmss>_<from>_<subject>.eml.gz

Features:
- Profile Selection: Pick one of several accounts configured in the environment or a .env file.
- Mailbox Selection: Lists the mailboxes on the server and asks which one to back up.
- Streaming Download: Messages are archived one at a time while the server is still sending.
- Optional Removal: Deletes the backed up messages from the server afterwards. Only messages
  whose compressed archive was written successfully are removed.

Configuration:
  .env in the current directory is loaded when present.
  IMAP_BACKUP_<n>               : Display name of an account profile.
  IMAP_BACKUP_<n>_IMAP_HOST     : IMAP host (or imaps://host:port URL).
  IMAP_BACKUP_<n>_IMAP_PORT     : IMAP port (default 993).
  IMAP_BACKUP_<n>_IMAP_USER     : Username / email.
  IMAP_BACKUP_<n>_IMAP_PASSWORD : Password (or App Password).
  IMAP_HOST, IMAP_PORT, IMAP_USER, IMAP_PASSWORD: Defaults for --host/--port/--user/--pass.
  BACKUP_LOCAL_PATH             : Backup root (default: current directory).

Usage:
  python3 backup_mailbox.py
  python3 backup_mailbox.py --profile "Work" --mailbox INBOX --keep
  python3 backup_mailbox.py --host imap.example.com --user me@example.com --pass secret --remove
"""

from __future__ import annotations

import argparse
import os
import sys
from contextlib import closing
from dataclasses import dataclass, field

import backup_config
import backup_prompt
import imap_common
import imap_oauth2
import imap_session
import message_archiver

STATUS_COMPLETED = "completed"
STATUS_NO_MAILBOXES = "no-mailboxes"
STATUS_NO_MESSAGES = "no-messages"
STATUS_CANCELLED = "cancelled"

BACKUPS_DIR = "backups"


@dataclass
class BackupSummary:
    status: str
    mailbox: str | None = None
    target_dir: str | None = None
    archived: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)
    deleted: bool = False


def get_backup_dir(root_dir, owner, mailbox) -> str:
    return os.path.join(root_dir, BACKUPS_DIR, imap_common.sanitize(owner), imap_common.sanitize(mailbox))


def sort_mailbox_names(names) -> list[str]:
    return sorted(names, key=lambda name: name.strip().lower())


def run_backup(session, root_dir, choose_mailbox, choose_removal, log_fn=imap_common.safe_print) -> BackupSummary:
    """
    Runs one mailbox backup over an unopened MailboxSession.

    Args:
        session: MailboxSession (not yet connected). Always closed on return.
        root_dir: Directory under which backups/<user>/<mailbox> is created.
        choose_mailbox: Callable(list of names) -> name, or None to cancel.
        choose_removal: Callable() -> True/False, or None to cancel.
        log_fn: Progress reporter.

    Session-level failures (connect, login, list, select, fetch) propagate as
    BackupError. Per-message failures are logged and only keep the message
    out of the deletion set.
    """
    owner = session.conf["user"]

    with session:
        log_fn("Loading mailboxes ...")
        session.connect()
        session.authenticate()

        mailbox_names = sort_mailbox_names(session.list_mailboxes())
        if not mailbox_names:
            log_fn("No mailboxes found")
            return BackupSummary(STATUS_NO_MAILBOXES)

        mailbox = choose_mailbox(mailbox_names)
        if not mailbox:
            log_fn("Cancelled.")
            return BackupSummary(STATUS_CANCELLED)

        remove_on_server = choose_removal()
        if remove_on_server is None:
            log_fn("Cancelled.")
            return BackupSummary(STATUS_CANCELLED, mailbox=mailbox)

        target_dir = get_backup_dir(root_dir, owner, mailbox)
        os.makedirs(target_dir, exist_ok=True)
        summary = BackupSummary(STATUS_COMPLETED, mailbox=mailbox, target_dir=target_dir)

        log_fn("Loading messages ...")
        info = session.select_mailbox(mailbox)
        if info.message_count == 0:
            log_fn("No messages available")
            summary.status = STATUS_NO_MESSAGES
            return summary

        log_fn(f"Selecting {info.message_count} messages ...")

        to_delete = set()
        with closing(session.fetch_all()) as messages:
            for message in messages:
                log_fn(f"Handling message {message.seq} ...")
                result = message_archiver.archive_message(message, target_dir, log_fn)
                if result.archived:
                    to_delete.add(message.seq)
                else:
                    summary.failed.append(message.seq)

        summary.archived = sorted(to_delete)

        if remove_on_server:
            log_fn(f"Deleting {len(to_delete)} message(s) ...")
            session.mark_deleted_and_expunge(to_delete)
            summary.deleted = True

    log_fn("Done")
    return summary


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Backup one IMAP mailbox to local .eml.gz files.")

    parser.add_argument("--profile", help="Name of an IMAP_BACKUP_<n> profile (skips the profile menu)")
    parser.add_argument("--host", default=os.getenv("IMAP_HOST"), help="IMAP Server (or IMAP_HOST)")
    parser.add_argument("--port", default=os.getenv("IMAP_PORT"), help="IMAP Port (or IMAP_PORT, default 993)")
    parser.add_argument("--user", default=os.getenv("IMAP_USER"), help="Username (or IMAP_USER)")
    parser.add_argument("--pass", dest="password", default=os.getenv("IMAP_PASSWORD"), help="Password (or IMAP_PASSWORD)")
    parser.add_argument(
        "--oauth2-client-id",
        dest="client_id",
        default=os.getenv("OAUTH2_CLIENT_ID"),
        help="OAuth2 Client ID (or OAUTH2_CLIENT_ID)",
    )
    parser.add_argument(
        "--oauth2-client-secret",
        dest="client_secret",
        default=os.getenv("OAUTH2_CLIENT_SECRET"),
        help="OAuth2 Client Secret, required for Google (or OAUTH2_CLIENT_SECRET)",
    )

    parser.add_argument("--mailbox", help="Mailbox to back up (skips the mailbox menu)")
    removal = parser.add_mutually_exclusive_group()
    removal.add_argument(
        "--remove", dest="remove", action="store_const", const=True, help="Remove messages on server after backup"
    )
    removal.add_argument(
        "--keep", dest="remove", action="store_const", const=False, help="Keep messages on server after backup"
    )

    parser.add_argument(
        "--root",
        default=os.getenv("BACKUP_LOCAL_PATH") or os.getcwd(),
        help="Backup root directory (or BACKUP_LOCAL_PATH, default: current directory)",
    )
    parser.add_argument(
        "--batch",
        type=int,
        default=None,
        help=f"Messages per FETCH command (or FETCH_BATCH_SIZE, default: {imap_session.FETCH_BATCH_SIZE})",
    )
    return parser


def resolve_account(args, environ=None, input_fn=input):
    """
    Picks the account to back up: explicit --host wins, otherwise a profile
    (by --profile or from the menu). Returns None if the operator cancelled.
    """
    if args.host:
        return backup_config.account_from_values(
            args.host, args.port, args.user, args.password, args.client_id, args.client_secret
        )

    profiles = backup_config.get_all_settings(environ)
    if not profiles:
        raise imap_common.ConfigError(
            "No IMAP account configured. Define IMAP_BACKUP_<n> profiles or pass --host/--user/--pass."
        )

    name = args.profile
    if not name:
        name = backup_prompt.choose_profile(backup_config.profile_names(profiles), input_fn=input_fn)
        if not name:
            return None

    settings = backup_config.find_profile(profiles, name)
    if settings is None:
        raise imap_common.ConfigError(f"Unknown profile: {name}")
    return backup_config.account_from_settings(settings)


def run_cli(argv=None):
    """Parses arguments, runs one backup and prints the outcome. Returns the BackupSummary."""
    try:
        backup_config.load_env_if_exists(os.getcwd())
    except imap_common.ConfigError as e:
        print(f"Error: {e}")
        sys.exit(1)

    args = build_parser().parse_args(argv)

    if args.batch is None:
        env_batch = os.getenv("FETCH_BATCH_SIZE") or str(imap_session.FETCH_BATCH_SIZE)
        try:
            args.batch = int(env_batch)
        except ValueError:
            print(f"Error: FETCH_BATCH_SIZE must be an integer, got '{env_batch}'")
            sys.exit(1)

    if args.batch < 1:
        print("Error: --batch must be >= 1")
        sys.exit(1)

    try:
        account = resolve_account(args)
        if account is None:
            print("Cancelled.")
            return
        conf = imap_session.build_imap_conf(
            account["host"],
            account["user"],
            account["password"],
            port=account["port"],
            client_id=account["client_id"],
            client_secret=account["client_secret"],
        )
    except imap_common.BackupError as e:
        print(f"Error: {e}")
        sys.exit(1)

    provider = conf["oauth2"]["provider"] if conf["oauth2"] else None
    print("\n--- Configuration Summary ---")
    print(f"Host            : {account['host']}")
    print(f"Port            : {account['port'] or 'default'}")
    print(f"User            : {account['user']}")
    print(f"Auth Method     : {imap_oauth2.auth_description(provider)}")
    print(f"Backup Root     : {args.root}")
    if args.mailbox:
        print(f"Mailbox         : {args.mailbox}")
    print("-----------------------------\n")

    def preset_mailbox(_names):
        return args.mailbox

    def preset_removal():
        return args.remove

    choose_mailbox = preset_mailbox if args.mailbox else backup_prompt.choose_mailbox
    choose_removal = preset_removal if args.remove is not None else backup_prompt.choose_removal

    session = imap_session.MailboxSession(conf, fetch_batch_size=args.batch)
    try:
        summary = run_backup(session, args.root, choose_mailbox, choose_removal)
    except KeyboardInterrupt:
        print("\nBackup interrupted by user.")
        sys.exit(130)
    except (imap_common.BackupError, OSError) as e:
        print(f"Fatal Error: {e}")
        sys.exit(1)

    if summary.status == STATUS_COMPLETED:
        print(f"\nBackup completed: {len(summary.archived)} archived, {len(summary.failed)} failed.")
        print(f"Backup directory: {summary.target_dir}")
        if summary.failed:
            print(f"Failed messages (kept on server): {', '.join(str(s) for s in summary.failed)}")
    elif summary.status == STATUS_NO_MAILBOXES:
        print("\nNothing to back up: no mailboxes found.")
    elif summary.status == STATUS_NO_MESSAGES:
        print(f"\nNothing to back up: {summary.mailbox} is empty.")
    else:
        print("\nBackup cancelled.")
    return summary


def main(argv=None):
    run_cli(argv)


if __name__ == "__main__":
    main()
