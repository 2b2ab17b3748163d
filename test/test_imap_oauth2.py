"""
Tests for imap_oauth2.py

Tests cover:
- OAuth2 provider detection
- Microsoft tenant discovery
- Microsoft token acquisition
- Google token acquisition
- Provider dispatch
"""

import json
import os
import sys
from unittest.mock import MagicMock, patch

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../src")))

import imap_common
import imap_oauth2


def quiet(_message):
    pass


def google_flow_module(token):
    mock_credentials = MagicMock()
    mock_credentials.token = token

    mock_flow = MagicMock()
    mock_flow.run_local_server.return_value = mock_credentials

    mock_module = MagicMock()
    mock_module.InstalledAppFlow.from_client_config.return_value = mock_flow
    return mock_module


class TestDetectOauth2Provider:
    """Tests for detect_oauth2_provider function."""

    def test_microsoft_outlook(self):
        """Test detects Microsoft from outlook host."""
        assert imap_oauth2.detect_oauth2_provider("outlook.office365.com") == "microsoft"

    def test_microsoft_mixed_case(self):
        """Test detects Microsoft case-insensitively."""
        assert imap_oauth2.detect_oauth2_provider("Outlook.Office365.COM") == "microsoft"

    def test_google_gmail(self):
        """Test detects Google from gmail host."""
        assert imap_oauth2.detect_oauth2_provider("imap.gmail.com") == "google"

    def test_unknown_provider(self):
        """Test returns None for unrecognized host."""
        assert imap_oauth2.detect_oauth2_provider("imap.example.com") is None


class TestDiscoverMicrosoftTenant:
    """Tests for discover_microsoft_tenant function."""

    def test_successful_discovery(self):
        """Test successful tenant ID extraction from OpenID config."""
        tenant_id = "12345678-abcd-ef01-2345-67890abcdef0"
        with patch.object(
            imap_oauth2, "_get_json", return_value={"issuer": f"https://sts.windows.net/{tenant_id}/"}
        ) as mock_fetch:
            result = imap_oauth2.discover_microsoft_tenant("user@contoso.com")

        assert result == tenant_id
        host, path = mock_fetch.call_args[0]
        assert host == imap_oauth2.MICROSOFT_LOGIN_HOST
        assert path == "/contoso.com/.well-known/openid-configuration"

    def test_network_error(self):
        """Test network errors become AuthError."""
        with patch.object(imap_oauth2, "_get_json", side_effect=OSError("Connection refused")):
            with pytest.raises(imap_common.AuthError, match="Could not discover"):
                imap_oauth2.discover_microsoft_tenant("user@invalid.example")

    def test_invalid_json(self):
        """Test invalid JSON becomes AuthError."""
        error = json.JSONDecodeError("Expecting value", "not json", 0)
        with patch.object(imap_oauth2, "_get_json", side_effect=error):
            with pytest.raises(imap_common.AuthError):
                imap_oauth2.discover_microsoft_tenant("user@test.com")

    def test_no_tenant_in_issuer(self):
        """Test issuer without a tenant GUID."""
        with patch.object(imap_oauth2, "_get_json", return_value={"issuer": "https://sts.windows.net/x/"}):
            with pytest.raises(imap_common.AuthError, match="Could not extract tenant ID"):
                imap_oauth2.discover_microsoft_tenant("user@test.com")

    def test_missing_domain(self):
        with pytest.raises(imap_common.AuthError):
            imap_oauth2.discover_microsoft_tenant("no-domain")


class TestAcquireMicrosoftOauth2Token:
    """Tests for acquire_microsoft_oauth2_token function."""

    def _msal(self, flow, result):
        mock_msal = MagicMock()
        mock_app = MagicMock()
        mock_app.initiate_device_flow.return_value = flow
        mock_app.acquire_token_by_device_flow.return_value = result
        mock_msal.PublicClientApplication.return_value = mock_app
        return mock_msal

    def test_successful_token(self):
        """Test successful token acquisition with auto-discovery."""
        mock_msal = self._msal({"user_code": "ABC123", "message": "Go to..."}, {"access_token": "test_token"})
        messages = []

        with patch.object(imap_oauth2, "discover_microsoft_tenant", return_value="tenant-123"):
            with patch.dict("sys.modules", {"msal": mock_msal}):
                result = imap_oauth2.acquire_microsoft_oauth2_token("client-id", "user@test.com", messages.append)

        assert result == "test_token"
        assert "Go to..." in messages
        mock_msal.PublicClientApplication.assert_called_once_with(
            "client-id", authority="https://login.microsoftonline.com/tenant-123"
        )

    def test_device_flow_not_started(self):
        mock_msal = self._msal({"error_description": "bad client"}, {})
        with patch.object(imap_oauth2, "discover_microsoft_tenant", return_value="tenant-123"):
            with patch.dict("sys.modules", {"msal": mock_msal}):
                with pytest.raises(imap_common.AuthError, match="bad client"):
                    imap_oauth2.acquire_microsoft_oauth2_token("client-id", "user@test.com", quiet)

    def test_token_denied(self):
        mock_msal = self._msal({"user_code": "X", "message": "m"}, {"error_description": "declined"})
        with patch.object(imap_oauth2, "discover_microsoft_tenant", return_value="tenant-123"):
            with patch.dict("sys.modules", {"msal": mock_msal}):
                with pytest.raises(imap_common.AuthError, match="declined"):
                    imap_oauth2.acquire_microsoft_oauth2_token("client-id", "user@test.com", quiet)

    def test_missing_library(self):
        with patch.object(imap_oauth2, "discover_microsoft_tenant", return_value="tenant-123"):
            with patch.dict("sys.modules", {"msal": None}):
                with pytest.raises(imap_common.AuthError, match="msal"):
                    imap_oauth2.acquire_microsoft_oauth2_token("client-id", "user@test.com", quiet)


class TestAcquireGoogleOauth2Token:
    """Tests for acquire_google_oauth2_token function."""

    def test_successful_token(self):
        """Test successful Google token acquisition."""
        modules = {"google_auth_oauthlib": MagicMock(), "google_auth_oauthlib.flow": google_flow_module("g_token")}
        with patch.dict("sys.modules", modules):
            result = imap_oauth2.acquire_google_oauth2_token("client-id", "client-secret", quiet)

        assert result == "g_token"

    def test_requires_client_secret(self):
        with pytest.raises(imap_common.AuthError, match="--oauth2-client-secret"):
            imap_oauth2.acquire_google_oauth2_token("client-id", None, quiet)

    def test_missing_library(self):
        """Test AuthError when google-auth-oauthlib is not installed."""
        with patch.dict("sys.modules", {"google_auth_oauthlib": None, "google_auth_oauthlib.flow": None}):
            with pytest.raises(imap_common.AuthError, match="google-auth-oauthlib"):
                imap_oauth2.acquire_google_oauth2_token("client-id", "client-secret", quiet)

    def test_no_token_returned(self):
        modules = {"google_auth_oauthlib": MagicMock(), "google_auth_oauthlib.flow": google_flow_module(None)}
        with patch.dict("sys.modules", modules):
            with pytest.raises(imap_common.AuthError):
                imap_oauth2.acquire_google_oauth2_token("client-id", "client-secret", quiet)


class TestAcquireToken:
    """Tests for the acquire_token dispatch function."""

    def test_dispatch_to_microsoft(self):
        with patch.object(imap_oauth2, "acquire_microsoft_oauth2_token", return_value="ms_token") as mock_ms:
            result = imap_oauth2.acquire_token("outlook.office365.com", "cid", "user@test.com", log_fn=quiet)

        assert result == ("ms_token", "microsoft")
        mock_ms.assert_called_once_with("cid", "user@test.com", quiet)

    def test_dispatch_to_google(self):
        with patch.object(imap_oauth2, "acquire_google_oauth2_token", return_value="g_token") as mock_g:
            result = imap_oauth2.acquire_token("imap.gmail.com", "cid", "user@gmail.com", "secret", log_fn=quiet)

        assert result == ("g_token", "google")
        mock_g.assert_called_once_with("cid", "secret", quiet)

    def test_unknown_provider(self):
        with pytest.raises(imap_common.AuthError, match="Could not detect OAuth2 provider"):
            imap_oauth2.acquire_token("imap.example.com", "cid", "user@example.com", log_fn=quiet)


class TestAuthDescription:
    def test_password(self):
        assert imap_oauth2.auth_description(None) == "Basic (password)"

    def test_oauth2(self):
        assert imap_oauth2.auth_description("google") == "OAuth2/google (XOAUTH2)"
