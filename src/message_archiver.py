"""
Message Archiver

Writes one fetched message into the backup directory as
``email-<seq>_<timestamp>_<from>_<subject>.eml``, gzip-compresses it to
``.eml.gz`` and removes the uncompressed file.

Failures are logged and reported through the ArchiveResult; nothing is raised
to the caller. Only an ``archived`` result makes a message eligible for
removal from the server.
"""

from __future__ import annotations

import gzip
import hashlib
import os
import shutil
from dataclasses import dataclass

import imap_common

UNKNOWN_DATE = "unknown-date"
UNKNOWN_SENDER = "unknown"
NO_SUBJECT = "no-subject"
TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"

EML_SUFFIX = ".eml"
GZIP_SUFFIX = ".gz"
COPY_BUFFER_SIZE = 64 * 1024
DIGEST_LENGTH = 12


@dataclass
class ArchiveResult:
    seq: int
    archived: bool
    path: str | None = None
    error: str | None = None


def build_filename(message) -> str:
    """Derives the .eml filename from the sequence number and envelope."""
    subject = NO_SUBJECT
    sender = UNKNOWN_SENDER
    timestamp = UNKNOWN_DATE

    envelope = message.envelope
    if envelope is not None:
        if envelope.subject:
            subject = envelope.subject
        if envelope.from_mailbox or envelope.from_host:
            sender = f"{envelope.from_mailbox or ''}@{envelope.from_host or ''}"
        if envelope.date is not None:
            timestamp = envelope.date.strftime(TIMESTAMP_FORMAT)

    safe_subject = imap_common.sanitize(subject)
    safe_from = imap_common.sanitize(sender)
    safe_timestamp = imap_common.sanitize(timestamp)
    return f"email-{message.seq}_{safe_timestamp}_{safe_from}_{safe_subject}{EML_SUFFIX}"


def body_digest(message) -> str:
    """Short SHA-256 of the message body. Rewinds the body stream afterwards."""
    digest = hashlib.sha256()
    body = message.body
    if body is not None:
        start = body.tell()
        for chunk in iter(lambda: body.read(COPY_BUFFER_SIZE), b""):
            digest.update(chunk)
        body.seek(start)
    return digest.hexdigest()[:DIGEST_LENGTH]


def resolve_archive_path(target_dir, filename, message) -> str:
    """
    Returns the path for the .eml file.

    If an artifact with the same name is already in the directory (typically
    from an earlier run), the body digest is appended to the name instead of
    overwriting it. Identical content maps to the same digest name.
    """
    path = os.path.join(target_dir, filename)
    if not os.path.exists(path) and not os.path.exists(path + GZIP_SUFFIX):
        return path

    stem = filename[: -len(EML_SUFFIX)]
    return os.path.join(target_dir, f"{stem}_{body_digest(message)}{EML_SUFFIX}")


def compress_file(source_path, target_path):
    """Gzip-compresses source_path into target_path (default level)."""
    with open(source_path, "rb") as src, gzip.open(target_path, "wb") as dst:
        shutil.copyfileobj(src, dst, COPY_BUFFER_SIZE)


def _remove_quietly(path, log_fn):
    try:
        if os.path.exists(path):
            os.remove(path)
    except OSError as e:
        log_fn(f"Warning: Could not delete {path}: {e}")


def archive_message(message, target_dir, log_fn=imap_common.safe_print) -> ArchiveResult:
    """Stores one message; see the module docstring for the failure policy."""
    try:
        return _archive(message, target_dir, log_fn)
    except Exception as e:
        log_fn(f"Error: Could not archive message {message.seq}: {e}")
        return ArchiveResult(message.seq, False, error=str(e))


def _archive(message, target_dir, log_fn) -> ArchiveResult:
    filename = build_filename(message)
    eml_path = resolve_archive_path(target_dir, filename, message)
    filename = os.path.basename(eml_path)

    log_fn(f"Saving message to {eml_path} ...")

    # 1. Create the file
    try:
        eml_file = open(eml_path, "wb")
    except OSError as e:
        log_fn(f"Error: Could not create file {filename}: {e}")
        return ArchiveResult(message.seq, False, error=str(e))

    # 2. Copy the raw message. A partially written file is left in place.
    try:
        with eml_file:
            if message.body is not None:
                shutil.copyfileobj(message.body, eml_file, COPY_BUFFER_SIZE)
            eml_file.flush()
    except (OSError, ValueError) as e:
        log_fn(f"Error: Could not write to {filename}: {e}")
        return ArchiveResult(message.seq, False, path=eml_path, error=str(e))

    # 3. Compress
    gz_path = eml_path + GZIP_SUFFIX
    log_fn(f"Zipping message to {gz_path} ...")
    try:
        compress_file(eml_path, gz_path)
    except (OSError, EOFError, ValueError) as e:
        log_fn(f"Error: Could not compress {eml_path}: {e}")
        _remove_quietly(gz_path, log_fn)
        return ArchiveResult(message.seq, False, path=eml_path, error=str(e))

    # 4. Drop the uncompressed copy
    try:
        os.remove(eml_path)
    except OSError as e:
        log_fn(f"Warning: Could not delete {eml_path}: {e}")

    return ArchiveResult(message.seq, True, path=gz_path)
