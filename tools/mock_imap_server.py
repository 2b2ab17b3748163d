import base64
import re
import socketserver
import threading

RESPONSE_SELECT_FIRST = "NO Select first"

HEADER_FIELDS_PATTERN = re.compile(r"BODY(?:\.PEEK)?\[HEADER\.FIELDS \(([^)]*)\)\]", re.IGNORECASE)
BODY_PATTERN = re.compile(r"BODY(?:\.PEEK)?\[\]|RFC822(?![.\w])", re.IGNORECASE)


def _parse_sequence_set(seq_set, total):
    """Expands an IMAP sequence set like "1:3,5,7:*" into a sorted list of numbers."""
    numbers = set()
    for part in seq_set.split(","):
        if ":" in part:
            lo, hi = part.split(":", 1)
            lo = total if lo == "*" else int(lo)
            hi = total if hi == "*" else int(hi)
            if lo > hi:
                lo, hi = hi, lo
            numbers.update(range(lo, hi + 1))
        else:
            numbers.add(total if part == "*" else int(part))
    return sorted(n for n in numbers if 1 <= n <= total)


def _header_fields(content, fields):
    """Returns the raw header lines (with continuations) for the requested fields."""
    head = content.split(b"\r\n\r\n", 1)[0]
    wanted = {f.upper() for f in fields}
    out = []
    keep = False
    for line in head.split(b"\r\n"):
        if line[:1] in (b" ", b"\t"):
            if keep:
                out.append(line)
            continue
        name = line.split(b":", 1)[0].decode("utf-8", errors="ignore").strip().upper()
        keep = name in wanted
        if keep:
            out.append(line)
    return b"\r\n".join(out) + (b"\r\n" if out else b"") + b"\r\n"


def _unquote(value):
    value = value.strip()
    if len(value) >= 2 and value[0] == '"' and value[-1] == '"':
        return re.sub(r"\\(.)", r"\1", value[1:-1])
    return value


class MockIMAPHandler(socketserver.StreamRequestHandler):
    """
    In-process IMAP4rev1 endpoint for the backup tests.

    Understands LOGIN, AUTHENTICATE XOAUTH2, CAPABILITY, LIST, SELECT, FETCH
    (sequence sets, header-field and full body sections), STORE, EXPUNGE,
    NOOP and LOGOUT. Every command line is recorded on the server; commands
    named in ``server.fail_commands`` answer NO.
    """

    def setup(self):
        super().setup()
        self.selected_folder = None
        self.dispatch = {
            "LOGIN": self.handle_login,
            "AUTHENTICATE": self.handle_authenticate,
            "CAPABILITY": self.handle_capability,
            "LIST": self.handle_list,
            "SELECT": self.handle_select,
            "FETCH": self.handle_fetch,
            "STORE": self.handle_store,
            "EXPUNGE": self.handle_expunge,
            "NOOP": self.handle_noop,
        }

    @property
    def folders(self):
        return self.server.folders

    def handle(self):
        self.wfile.write(b"* OK [CAPABILITY IMAP4rev1] Mock IMAP Server Ready\r\n")
        for raw in self.rfile:
            request = raw.decode("utf-8", errors="replace").strip()
            if not request:
                continue
            self.server.commands.append(request)

            tag, _, rest = request.partition(" ")
            verb, _, args = rest.partition(" ")
            verb = verb.upper()

            if verb == "LOGOUT":
                self.wfile.write(b"* BYE Mock IMAP Server logging out\r\n")
                self.send_response(tag, "OK LOGOUT completed")
                return

            handler = self.dispatch.get(verb)
            if handler is None:
                self.send_response(tag, "BAD Command not recognized")
            elif verb in self.server.fail_commands:
                self.send_response(tag, f"NO {verb} failed")
            else:
                try:
                    handler(tag, args)
                except (OSError, ValueError, IndexError) as e:
                    self.send_response(tag, f"BAD {e}")

    def handle_noop(self, tag, args):
        self.send_response(tag, "OK NOOP")

    def handle_capability(self, tag, args):
        self.wfile.write(b"* CAPABILITY IMAP4rev1 AUTH=PLAIN AUTH=XOAUTH2\r\n")
        self.send_response(tag, "OK CAPABILITY completed")

    def handle_login(self, tag, args):
        user, _, password = args.partition(" ")
        user, password = _unquote(user), _unquote(password)
        if self.server.users and self.server.users.get(user) != password:
            self.send_response(tag, "NO [AUTHENTICATIONFAILED] Invalid credentials")
        else:
            self.send_response(tag, "OK LOGIN completed")

    def handle_authenticate(self, tag, args):
        if args.strip().upper() != "XOAUTH2":
            self.send_response(tag, "NO Unsupported mechanism")
            return
        self.wfile.write(b"+ \r\n")
        answer = self.rfile.readline().strip()
        try:
            decoded = base64.b64decode(answer).decode("utf-8")
        except (ValueError, UnicodeDecodeError):
            self.send_response(tag, "BAD Invalid response")
            return
        self.server.auth_strings.append(decoded)
        if "auth=Bearer " in decoded:
            self.send_response(tag, "OK AUTHENTICATE completed")
        else:
            self.send_response(tag, "NO [AUTHENTICATIONFAILED] Invalid token")

    def handle_list(self, tag, args):
        for name in self.folders:
            attrs = "\\Noselect \\HasChildren" if name in self.server.noselect else "\\HasNoChildren"
            self.wfile.write(f'* LIST ({attrs}) "/" "{name}"\r\n'.encode())
        self.send_response(tag, "OK LIST completed")

    def handle_select(self, tag, args):
        name = _unquote(args)
        if name not in self.folders or name in self.server.noselect:
            self.send_response(tag, "NO [NONEXISTENT] Folder not found")
            return
        self.selected_folder = name
        untagged = [
            f"* {len(self.folders[name])} EXISTS",
            "* 0 RECENT",
            "* FLAGS (\\Seen \\Answered \\Flagged \\Deleted \\Draft)",
            "* OK [UIDVALIDITY 1] UIDs valid",
        ]
        self.wfile.write(("\r\n".join(untagged) + "\r\n").encode())
        self.send_response(tag, "OK [READ-WRITE] SELECT completed")

    def _selected_messages(self, tag):
        if self.selected_folder is None:
            self.send_response(tag, RESPONSE_SELECT_FIRST)
            return None
        return self.folders[self.selected_folder]

    def handle_expunge(self, tag, args):
        msgs = self._selected_messages(tag)
        if msgs is None:
            return
        kept = []
        for m in msgs:
            if "\\Deleted" in m["flags"]:
                # later sequence numbers shift down as each message goes
                self.wfile.write(f"* {len(kept) + 1} EXPUNGE\r\n".encode())
            else:
                kept.append(m)
        self.folders[self.selected_folder] = kept
        self.send_response(tag, "OK EXPUNGE completed")

    def handle_fetch(self, tag, args):
        msgs = self._selected_messages(tag)
        if msgs is None:
            return

        seq_set, _, items = args.partition(" ")
        header_match = HEADER_FIELDS_PATTERN.search(items)
        header_fields = header_match.group(1).split() if header_match else None
        wants_body = BODY_PATTERN.search(items) is not None

        for seq in _parse_sequence_set(seq_set, len(msgs)):
            if self.server.fail_fetch_from is not None and seq >= self.server.fail_fetch_from:
                self.send_response(tag, "NO FETCH failed")
                return

            m = msgs[seq - 1]
            content = m["content"]
            sections = []
            literals = []
            if header_fields is not None:
                header_bytes = _header_fields(content, header_fields)
                sections.append(f"BODY[HEADER.FIELDS ({' '.join(header_fields)})] {{{len(header_bytes)}}}")
                literals.append(header_bytes)
            if wants_body:
                if m.get("body_missing"):
                    sections.append("BODY[] NIL")
                    literals.append(None)
                else:
                    sections.append(f"BODY[] {{{len(content)}}}")
                    literals.append(content)
            if not sections:
                sections.append(f"FLAGS ({' '.join(sorted(m['flags']))})")
                literals.append(None)

            out = f"* {seq} FETCH (".encode()
            for i, (section, literal) in enumerate(zip(sections, literals)):
                out += (b" " if i else b"") + section.encode()
                if literal is not None:
                    out += b"\r\n" + literal
            self.wfile.write(out + b")\r\n")

        self.send_response(tag, "OK FETCH completed")

    def handle_store(self, tag, args):
        # <seq-set> (+|-)FLAGS[.SILENT] (<flags>)
        msgs = self._selected_messages(tag)
        if msgs is None:
            return

        seq_set, action, flag_list = args.split(" ", 2)
        action = action.upper()
        flags = set(flag_list.strip().strip("()").split())

        for seq in _parse_sequence_set(seq_set, len(msgs)):
            m = msgs[seq - 1]
            if action.startswith("+FLAGS"):
                m["flags"] |= flags
            elif action.startswith("-FLAGS"):
                m["flags"] -= flags
            if not action.endswith(".SILENT"):
                self.wfile.write(f"* {seq} FETCH (FLAGS ({' '.join(sorted(m['flags']))}))\r\n".encode())
        self.send_response(tag, "OK STORE completed")

    def send_response(self, tag, message):
        self.wfile.write(f"{tag} {message}\r\n".encode())


def _as_message(position, item):
    """Messages are given as raw bytes or as dicts with at least "content"."""
    if isinstance(item, bytes):
        item = {"content": item}
    item.setdefault("uid", position)
    item.setdefault("flags", set())
    return item


class MockIMAPServer(socketserver.ThreadingMixIn, socketserver.TCPServer):
    """
    Threaded mock server. ``initial_folders`` maps folder names to message
    lists; None means a single empty INBOX. ``users`` maps user to password;
    empty accepts any LOGIN.
    """

    allow_reuse_address = True
    daemon_threads = True

    def __init__(self, server_address, request_handler_class, initial_folders=None, users=None):
        super().__init__(server_address, request_handler_class)
        if initial_folders is None:
            initial_folders = {"INBOX": []}
        self.folders = {
            name: [_as_message(pos, item) for pos, item in enumerate(items, 1)]
            for name, items in initial_folders.items()
        }
        self.users = dict(users or {})
        self.noselect = set()
        self.fail_commands = set()
        self.fail_fetch_from = None
        self.commands = []
        self.auth_strings = []

    def commands_named(self, verb):
        """Recorded client command lines for one verb, e.g. "STORE"."""
        return [line for line in self.commands if line.split(" ", 2)[1:2] == [verb.upper()]]


def start_server_thread(port=0, initial_folders=None, users=None):
    """Starts a server on a daemon thread. Returns (server, port)."""
    server = MockIMAPServer(("localhost", port), MockIMAPHandler, initial_folders, users)
    threading.Thread(target=server.serve_forever, name="mock-imap", daemon=True).start()
    return server, server.server_address[1]
