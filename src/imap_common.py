"""
IMAP Common Utilities

Shared functionality for the mailbox backup: thread-safe status output,
error types, filename sanitizing and small IMAP parsing helpers.
"""

from __future__ import annotations

import base64
import imaplib
import re
import threading
import urllib.parse
from collections.abc import Iterable
from email.header import decode_header

# Standard IMAP flags
FLAG_DELETED_LITERAL = "(\\Deleted)"
FLAG_NOSELECT = "\\Noselect"

# IMAP Commands
OP_ADD_FLAGS_SILENT = "+FLAGS.SILENT"

# Filename sanitizing
MAX_FILENAME_PART = 50
_ILLEGAL_FILENAME_CHARS = re.compile(r'[<>:"/\\|?*\r\n]+')

_print_lock = threading.Lock()


class BackupError(Exception):
    """Base class for errors that abort a backup run."""


class ConfigError(BackupError):
    """Missing or malformed account configuration."""


class ConnectError(BackupError):
    """The transport connection to the server could not be opened."""


class AuthError(BackupError):
    """The server rejected the credentials (or no token could be acquired)."""


class MailboxListError(BackupError):
    """The LIST command failed."""


class SelectError(BackupError):
    """The mailbox could not be selected read-write."""


class FetchError(BackupError):
    """The FETCH stream ended with an error."""


class SessionStateError(BackupError):
    """An operation was called in a session state that does not allow it."""


def safe_print(message: str) -> None:
    """Thread-safe print with short thread names for logs."""
    t_name = threading.current_thread().name
    short_name = t_name.replace("ThreadPoolExecutor-", "T-").replace("MainThread", "MAIN")
    with _print_lock:
        print(f"[{short_name}] {message}")


def sanitize(value: str | None) -> str:
    """
    Makes a string safe to use as part of a filename.

    Strips characters that are illegal in common file systems
    (< > : " / \\ | ? * CR LF), keeps at most 50 characters and at most 50
    bytes of UTF-8 (cut on a character boundary) and trims surrounding
    whitespace.
    """
    if not value:
        return ""
    s = _ILLEGAL_FILENAME_CHARS.sub("", value)[:MAX_FILENAME_PART]
    s = s.encode("utf-8", errors="ignore")[:MAX_FILENAME_PART].decode("utf-8", errors="ignore")
    return s.strip()


def resolve_imap_address(host: str, port: int | None = None, use_ssl: bool = True) -> tuple[str, int, bool]:
    """
    Resolves the host setting into (hostname, port, use_ssl).

    The host may be a plain hostname or a URL such as ``imaps://host:993`` or
    ``imap://host:143`` (plain text, mainly for local test servers). A port in
    the URL wins over the ``port`` argument.
    """
    if not host:
        raise ConfigError("IMAP host is not set")

    resolved_host = host
    if "://" in host:
        parsed = urllib.parse.urlparse(host)
        scheme = parsed.scheme.lower()
        if not scheme or not parsed.hostname:
            raise ConfigError(f"Invalid IMAP host: {host}")
        if scheme in {"imap", "tcp"}:
            use_ssl = False
        elif scheme in {"imaps", "imap+ssl", "imapssl", "ssl"}:
            use_ssl = True
        else:
            raise ConfigError(f"Unsupported IMAP scheme: {scheme}")
        resolved_host = parsed.hostname
        if parsed.port:
            port = parsed.port

    if not port:
        port = imaplib.IMAP4_SSL_PORT if use_ssl else imaplib.IMAP4_PORT
    return resolved_host, port, use_ssl


def quote_mailbox(name: str) -> str:
    """Quotes a mailbox name for use as an IMAP astring argument."""
    escaped = name.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


_MUTF7_CHUNK = re.compile(r"&([^-]*)-")


def decode_modified_utf7(value: str) -> str:
    """
    Decodes an RFC 3501 modified UTF-7 mailbox name (e.g. ``Entw&APw-rfe``).
    Returns the input unchanged if it is not valid modified UTF-7.
    """
    if "&" not in value:
        return value

    def _decode(match):
        chunk = match.group(1)
        if not chunk:
            return "&"
        b64 = chunk.replace(",", "/")
        b64 += "=" * (-len(b64) % 4)
        return base64.b64decode(b64).decode("utf-16-be")

    try:
        return _MUTF7_CHUNK.sub(_decode, value)
    except (ValueError, UnicodeDecodeError):
        return value


def encode_modified_utf7(value: str) -> str:
    """Encodes a mailbox name as RFC 3501 modified UTF-7."""
    out = []
    pending = []

    def _flush():
        if pending:
            raw = "".join(pending).encode("utf-16-be")
            encoded = base64.b64encode(raw).decode("ascii").rstrip("=").replace("/", ",")
            out.append(f"&{encoded}-")
            pending.clear()

    for ch in value:
        if 0x20 <= ord(ch) <= 0x7E:
            _flush()
            out.append("&-" if ch == "&" else ch)
        else:
            pending.append(ch)
    _flush()
    return "".join(out)


# (flags) "delimiter" name  |  (flags) NIL name
_LIST_PATTERN = re.compile(r'^\((?P<flags>[^)]*)\)\s+(?P<delimiter>"(?:[^"\\]|\\.)*"|NIL)\s+(?P<name>.*)$', re.IGNORECASE)


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == '"' and value[-1] == '"':
        return re.sub(r"\\(.)", r"\1", value[1:-1])
    return value


def parse_list_response(entry) -> tuple[str, str] | None:
    """
    Parses one LIST response entry into (flags, raw_name).

    imaplib returns plain entries as bytes and entries whose name was sent as a
    literal as a (prefix, name) tuple. Returns None for entries that cannot be
    parsed.
    """
    if entry is None:
        return None

    literal_name = None
    if isinstance(entry, tuple):
        entry, literal_name = entry[0], entry[1]
        if isinstance(literal_name, bytes):
            literal_name = literal_name.decode("utf-8", errors="ignore")

    if isinstance(entry, bytes):
        entry = entry.decode("utf-8", errors="ignore")

    match = _LIST_PATTERN.match(entry.strip())
    if not match:
        return None

    flags = match.group("flags")
    if literal_name is not None:
        return flags, literal_name
    return flags, _unquote(match.group("name"))


def decode_mime_header(header_value) -> str:
    """
    Decodes MIME encoded headers (Subject, From, etc.) to a unicode string.
    Folded continuation lines are unfolded.
    """
    if not header_value:
        return ""
    unfolded = re.sub(r"\r?\n[ \t]+", " ", str(header_value))
    try:
        text_parts = []
        for data, encoding in decode_header(unfolded):
            if isinstance(data, bytes):
                charset = encoding or "utf-8"
                try:
                    text_parts.append(data.decode(charset, errors="ignore"))
                except LookupError:
                    text_parts.append(data.decode("utf-8", errors="ignore"))
            else:
                text_parts.append(str(data))
        return "".join(text_parts)
    except Exception:
        return unfolded


def compact_sequence_set(numbers: Iterable[int]) -> str:
    """
    Builds an IMAP sequence set from message numbers, collapsing runs into
    ranges: {1, 2, 3, 5} -> "1:3,5". Returns "" for no numbers.
    """
    ordered = sorted(set(numbers))
    parts = []
    i = 0
    while i < len(ordered):
        start = end = ordered[i]
        while i + 1 < len(ordered) and ordered[i + 1] == end + 1:
            i += 1
            end = ordered[i]
        parts.append(str(start) if start == end else f"{start}:{end}")
        i += 1
    return ",".join(parts)
