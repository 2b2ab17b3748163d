"""
Shared pytest fixtures and utilities for the mailbox backup tests.
"""

import os
import sys
import time
from contextlib import contextmanager

import pytest

# Ensure src/tools are in path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../src")))
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../tools")))

from mock_imap_server import start_server_thread


def make_message(subject="Hello", sender="Alice <alice@example.com>", date="Mon, 02 Jun 2025 10:15:00 +0000", body="Body"):
    """Builds a raw RFC 5322 message. Pass None to omit a header."""
    lines = []
    if date is not None:
        lines.append(f"Date: {date}")
    if sender is not None:
        lines.append(f"From: {sender}")
    if subject is not None:
        lines.append(f"Subject: {subject}")
    lines.append("Message-ID: <test@example.com>")
    return ("\r\n".join(lines) + "\r\n\r\n" + body).encode("utf-8")


@pytest.fixture
def single_mock_server():
    """
    Creates a single mock IMAP server for tests that need a live IMAP endpoint.
    Servers are shut down after the test.
    """
    servers = []

    def _create(initial_data=None, users=None):
        server, actual_port = start_server_thread(0, initial_data, users)
        time.sleep(0.1)
        servers.append(server)
        return server, actual_port

    yield _create

    for server in servers:
        server.shutdown()
        server.server_close()


def make_mock_conf(port, user="user@example.com", password="pass"):
    """Connection conf pointing at a plain-text mock server."""
    return {
        "host": f"imap://localhost:{port}",
        "port": None,
        "user": user,
        "password": password,
        "oauth2_token": None,
        "oauth2": None,
    }


class LogCollector:
    """Progress reporter that records every message."""

    def __init__(self):
        self.messages = []

    def __call__(self, message):
        self.messages.append(message)

    def contains(self, text):
        return any(text in m for m in self.messages)


@contextmanager
def temp_env(env):
    original = os.environ.copy()
    os.environ.clear()
    os.environ.update(env)
    try:
        yield
    finally:
        os.environ.clear()
        os.environ.update(original)


@pytest.fixture(autouse=True)
def clean_sys_argv():
    """Ensure sys.argv is clean for all tests."""
    original = sys.argv[:]
    sys.argv = ["test_script.py"]
    yield
    sys.argv = original


__all__ = [
    "single_mock_server",
    "make_message",
    "make_mock_conf",
    "LogCollector",
    "temp_env",
]
