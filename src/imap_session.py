"""
IMAP Session Management

Owns the connection lifecycle of a mailbox backup: connect, authenticate,
list mailboxes, select a mailbox, stream messages out of it, and flag and
expunge the messages that were archived.

LIST and FETCH are issued by a background producer thread that delivers
results into a bounded queue while the caller consumes them. Completion of
the protocol call is reported on a separate channel which is only checked
once the queue is exhausted, so an error from the call surfaces after every
result delivered before it has been handled.
"""

from __future__ import annotations

import imaplib
import io
import queue
import re
import threading
from dataclasses import dataclass
from datetime import datetime
from email import policy
from email.parser import BytesParser
from email.utils import getaddresses, parsedate_to_datetime
from typing import BinaryIO

import imap_common
import imap_oauth2

STATE_DISCONNECTED = "disconnected"
STATE_CONNECTED = "connected"
STATE_AUTHENTICATED = "authenticated"
STATE_SELECTED = "selected"
STATE_STREAMING = "streaming"
STATE_LOGGED_OUT = "logged-out"

# Channel sizes
LIST_QUEUE_SIZE = 50
FETCH_QUEUE_SIZE = 10

# Messages requested per FETCH command
FETCH_BATCH_SIZE = 50

ENVELOPE_FIELDS = "DATE FROM SUBJECT"
FETCH_ITEMS = f"(BODY.PEEK[HEADER.FIELDS ({ENVELOPE_FIELDS})] BODY.PEEK[])"

_FETCH_START = re.compile(rb"^(\d+) \(")
_BODY_SECTION = re.compile(rb"BODY\[([^\]]*)\]")

_END_OF_STREAM = object()


@dataclass
class Envelope:
    subject: str | None = None
    from_mailbox: str | None = None
    from_host: str | None = None
    date: datetime | None = None


@dataclass
class MailboxInfo:
    name: str
    message_count: int


@dataclass
class MessageHandle:
    """One fetched message. ``body`` is None if the server sent no body."""

    seq: int
    envelope: Envelope | None = None
    body: BinaryIO | None = None


def build_imap_conf(host, user, password, port=None, client_id=None, client_secret=None):
    """
    Build a standard IMAP connection config dict.

    If client_id is provided, acquires an OAuth2 token (raises AuthError on
    failure). Otherwise, builds a password-auth config.

    Returns:
        Dict with keys: host, port, user, password, oauth2_token, oauth2
    """
    oauth2_token = None
    oauth2_info = None

    if client_id:
        oauth2_token, oauth2_provider = imap_oauth2.acquire_token(host, client_id, user, client_secret)
        oauth2_info = {
            "provider": oauth2_provider,
            "client_id": client_id,
            "email": user,
            "client_secret": client_secret,
        }

    return {
        "host": host,
        "port": port,
        "user": user,
        "password": password,
        "oauth2_token": oauth2_token,
        "oauth2": oauth2_info,
    }


def parse_envelope(header_data) -> Envelope | None:
    """Builds an Envelope from the raw DATE/FROM/SUBJECT header block."""
    if not header_data:
        return None
    if isinstance(header_data, str):
        header_data = header_data.encode("utf-8", errors="ignore")

    headers = BytesParser(policy=policy.compat32).parsebytes(header_data, headersonly=True)
    envelope = Envelope()

    raw_subject = headers.get("Subject")
    if raw_subject:
        envelope.subject = imap_common.decode_mime_header(raw_subject)

    raw_from = headers.get("From")
    if raw_from:
        # First From address only
        addresses = [addr for _name, addr in getaddresses([imap_common.decode_mime_header(raw_from)]) if addr]
        address = addresses[0] if addresses else ""
        if address:
            mailbox, _, host = address.rpartition("@")
            if not mailbox:
                mailbox, host = host, ""
            envelope.from_mailbox = mailbox
            envelope.from_host = host

    raw_date = headers.get("Date")
    if raw_date:
        try:
            envelope.date = parsedate_to_datetime(str(raw_date).strip())
        except (TypeError, ValueError, IndexError):
            envelope.date = None

    return envelope


def parse_fetch_response(data) -> dict[int, MessageHandle]:
    """
    Groups an imaplib FETCH response into MessageHandles keyed by sequence number.

    With two literal sections per message imaplib returns items like:
        (b'1 (BODY[HEADER.FIELDS (DATE FROM SUBJECT)] {52}', b'Date: ...'),
        (b' BODY[] {812}', b'...raw message...'),
        b')'
    """
    messages: dict[int, MessageHandle] = {}
    current = None

    for item in data or []:
        if item is None:
            continue
        meta = item[0] if isinstance(item, tuple) else item
        if isinstance(meta, str):
            meta = meta.encode("utf-8", errors="ignore")

        start = _FETCH_START.match(meta)
        if start:
            seq = int(start.group(1))
            current = messages.setdefault(seq, MessageHandle(seq=seq))

        if current is None or not isinstance(item, tuple):
            continue

        sections = _BODY_SECTION.findall(meta)
        if not sections:
            continue
        section = sections[-1].upper()
        payload = item[1] if isinstance(item[1], bytes) else str(item[1]).encode("utf-8")
        if section.startswith(b"HEADER.FIELDS"):
            current.envelope = parse_envelope(payload)
        elif section == b"":
            current.body = io.BytesIO(payload)

    return messages


def _describe(data) -> str:
    parts = []
    for item in data or []:
        if isinstance(item, bytes):
            parts.append(item.decode("utf-8", errors="ignore"))
        elif item is not None:
            parts.append(str(item))
    return " ".join(parts)


class MailboxSession:
    """A single authenticated IMAP session used for one backup run.

    Use as a context manager so the session is logged out on every exit path.
    """

    def __init__(self, conf, log_fn=imap_common.safe_print, fetch_batch_size=FETCH_BATCH_SIZE):
        if fetch_batch_size < 1:
            raise ValueError(f"fetch_batch_size must be >= 1, got {fetch_batch_size}")
        self.conf = conf
        self.log_fn = log_fn
        self.fetch_batch_size = fetch_batch_size
        self.state = STATE_DISCONNECTED
        self.selected_mailbox: MailboxInfo | None = None
        self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def _require_state(self, action, *states):
        if self.state not in states:
            raise imap_common.SessionStateError(f"Cannot {action} while session is {self.state}")

    def connect(self):
        """Opens the (TLS by default) transport connection."""
        self._require_state("connect", STATE_DISCONNECTED)
        host, port, use_ssl = imap_common.resolve_imap_address(
            self.conf["host"], self.conf.get("port"), self.conf.get("ssl", True)
        )
        try:
            if use_ssl:
                self._conn = imaplib.IMAP4_SSL(host, port)
            else:
                self._conn = imaplib.IMAP4(host, port)
        except (imaplib.IMAP4.error, OSError) as e:
            raise imap_common.ConnectError(f"Connection error to {host}:{port}: {e}") from e
        self.state = STATE_CONNECTED

    def authenticate(self):
        """Logs in with the password, or with XOAUTH2 when a token is configured."""
        self._require_state("authenticate", STATE_CONNECTED)
        user = self.conf["user"]
        oauth2_token = self.conf.get("oauth2_token")
        try:
            if oauth2_token:
                auth_string = f"user={user}\x01auth=Bearer {oauth2_token}\x01\x01"
                typ, data = self._conn.authenticate("XOAUTH2", lambda _: auth_string.encode())
            else:
                typ, data = self._conn.login(user, self.conf.get("password") or "")
        except (imaplib.IMAP4.error, OSError) as e:
            raise imap_common.AuthError(f"Login failed for {user}: {e}") from e
        if typ != "OK":
            raise imap_common.AuthError(f"Login failed for {user}: {typ} {_describe(data)}")
        self.state = STATE_AUTHENTICATED

    def list_mailboxes(self):
        """
        Yields the names of all selectable mailboxes (LIST "" "*"), decoded
        from modified UTF-7. Single pass; raises MailboxListError after the
        last name if the LIST command failed.
        """
        self._require_state("list mailboxes", STATE_AUTHENTICATED, STATE_SELECTED)
        return self._stream(self._produce_mailboxes, LIST_QUEUE_SIZE, "list")

    def select_mailbox(self, name) -> MailboxInfo:
        """Selects a mailbox read-write and returns its message count."""
        self._require_state("select a mailbox", STATE_AUTHENTICATED, STATE_SELECTED)
        encoded = imap_common.quote_mailbox(imap_common.encode_modified_utf7(name))
        try:
            typ, data = self._conn.select(encoded, readonly=False)
        except (imaplib.IMAP4.error, OSError) as e:
            raise imap_common.SelectError(f"Could not select mailbox {name}: {e}") from e
        if typ != "OK":
            raise imap_common.SelectError(f"Could not select mailbox {name}: {_describe(data)}")

        try:
            count = int(data[0]) if data and data[0] else 0
        except ValueError as e:
            raise imap_common.SelectError(f"Invalid message count for {name}: {data[0]!r}") from e

        self.selected_mailbox = MailboxInfo(name=name, message_count=count)
        self.state = STATE_SELECTED
        return self.selected_mailbox

    def fetch_all(self):
        """
        Yields a MessageHandle for every message 1..count of the selected
        mailbox in ascending sequence order. Single pass; a FETCH failure is
        raised as FetchError once all messages delivered before it were
        consumed.
        """
        self._require_state("fetch messages", STATE_SELECTED)
        return self._fetch_stream()

    def _fetch_stream(self):
        self.state = STATE_STREAMING
        try:
            yield from self._stream(self._produce_messages, FETCH_QUEUE_SIZE, "fetch")
        finally:
            if self.state == STATE_STREAMING:
                self.state = STATE_SELECTED

    def mark_deleted_and_expunge(self, seqs) -> bool:
        """
        Flags the given sequence numbers as \\Deleted and expunges the mailbox.

        Both steps are best-effort: failures are logged and reported through
        the return value, never raised. An empty set issues no command.
        """
        self._require_state("delete messages", STATE_SELECTED)
        seq_set = imap_common.compact_sequence_set(seqs)
        if not seq_set:
            self.log_fn("No messages to delete.")
            return True

        ok = True
        try:
            typ, data = self._conn.store(seq_set, imap_common.OP_ADD_FLAGS_SILENT, imap_common.FLAG_DELETED_LITERAL)
            if typ != "OK":
                self.log_fn(f"Warning: Could not mark messages as DELETED: {typ} {_describe(data)}")
                ok = False
        except (imaplib.IMAP4.error, OSError) as e:
            self.log_fn(f"Warning: Could not mark messages as DELETED: {e}")
            ok = False

        try:
            typ, data = self._conn.expunge()
            if typ != "OK":
                self.log_fn(f"Warning: Expunge error: {typ} {_describe(data)}")
                ok = False
        except (imaplib.IMAP4.error, OSError) as e:
            self.log_fn(f"Warning: Expunge error: {e}")
            ok = False

        return ok

    def close(self):
        """Logs out and releases the connection. Safe to call more than once."""
        conn = self._conn
        self._conn = None
        self.selected_mailbox = None
        self.state = STATE_LOGGED_OUT
        if conn is None:
            return
        try:
            conn.logout()
        except (imaplib.IMAP4.error, OSError) as e:
            self.log_fn(f"Warning: Logout failed: {e}")

    # -- producers -------------------------------------------------------------

    def _stream(self, produce, maxsize, name):
        channel = queue.Queue(maxsize=maxsize)
        done = queue.Queue(maxsize=1)
        stop = threading.Event()
        worker = threading.Thread(
            target=self._run_producer,
            args=(produce, channel, done, stop),
            name=f"{name}-producer",
            daemon=True,
        )
        worker.start()

        finished = False
        try:
            while True:
                item = channel.get()
                if item is _END_OF_STREAM:
                    break
                yield item
            finished = True
        finally:
            if not finished:
                # Abandoned early: no new commands are issued, but the call in
                # flight must finish so the connection is idle again.
                stop.set()
                while channel.get() is not _END_OF_STREAM:
                    pass

        error = done.get()
        worker.join()
        if error is not None:
            raise error

    @staticmethod
    def _run_producer(produce, channel, done, stop):
        error = None
        try:
            produce(channel, stop)
        except Exception as e:
            error = e
        finally:
            done.put(error)
            channel.put(_END_OF_STREAM)

    def _produce_mailboxes(self, channel, stop):
        try:
            typ, data = self._conn.list('""', "*")
        except (imaplib.IMAP4.error, OSError) as e:
            raise imap_common.MailboxListError(f"Could not list mailboxes: {e}") from e
        if typ != "OK":
            raise imap_common.MailboxListError(f"Could not list mailboxes: {_describe(data)}")

        for entry in data:
            parsed = imap_common.parse_list_response(entry)
            if not parsed:
                continue
            flags, raw_name = parsed
            if imap_common.FLAG_NOSELECT.lower() in flags.lower() or not raw_name:
                continue
            if stop.is_set():
                return
            channel.put(imap_common.decode_modified_utf7(raw_name))

    def _produce_messages(self, channel, stop):
        total = self.selected_mailbox.message_count
        for start in range(1, total + 1, self.fetch_batch_size):
            if stop.is_set():
                return
            end = min(start + self.fetch_batch_size - 1, total)
            try:
                typ, data = self._conn.fetch(f"{start}:{end}", FETCH_ITEMS)
            except (imaplib.IMAP4.error, OSError) as e:
                raise imap_common.FetchError(f"FETCH {start}:{end} failed: {e}") from e
            if typ != "OK":
                raise imap_common.FetchError(f"FETCH {start}:{end} failed: {_describe(data)}")

            messages = parse_fetch_response(data)
            for seq in range(start, end + 1):
                message = messages.get(seq)
                if stop.is_set():
                    return
                if message is None:
                    self.log_fn(f"Warning: Server returned no data for message {seq}")
                    continue
                channel.put(message)
