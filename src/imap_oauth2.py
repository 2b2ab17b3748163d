"""
XOAUTH2 Token Acquisition

Obtains an access token for XOAUTH2 login when an OAuth2 client id is
configured instead of a password. The provider is derived from the IMAP
host name:

- microsoft: MSAL device code flow (``msal``). The tenant is looked up from
  the OpenID configuration of the account's e-mail domain.
- google: installed-app flow (``google-auth-oauthlib``). Opens a browser and
  waits for the redirect on a local port; needs the client secret.

Every failure is raised as AuthError.
"""

import http.client
import json
import re
import ssl
import urllib.parse

import imap_common

PROVIDER_MICROSOFT = "microsoft"
PROVIDER_GOOGLE = "google"

# Host name fragments that identify a provider
PROVIDER_HOST_HINTS = {
    PROVIDER_MICROSOFT: ("outlook", "office365", "microsoft"),
    PROVIDER_GOOGLE: ("gmail", "google"),
}

MICROSOFT_LOGIN_HOST = "login.microsoftonline.com"
MICROSOFT_SCOPES = ["https://outlook.office365.com/IMAP.AccessAsUser.All"]
GOOGLE_SCOPES = ["https://mail.google.com/"]
GOOGLE_AUTH_URI = "https://accounts.google.com/o/oauth2/auth"
GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"

_TENANT_ID = re.compile(r"/([0-9a-f]{8}(?:-[0-9a-f]{4}){3}-[0-9a-f]{12})")


def _get_json(host, path, timeout=10):
    """GET https://<host><path> and decode the JSON body."""
    if not host or "\r" in host or "\n" in host:
        raise ValueError(f"Invalid host: {host!r}")

    conn = http.client.HTTPSConnection(host, timeout=timeout, context=ssl.create_default_context())
    try:
        conn.request("GET", path if path.startswith("/") else "/" + path, headers={"Accept": "application/json"})
        response = conn.getresponse()
        status, payload = response.status, response.read()
    finally:
        conn.close()

    if status != 200:
        raise RuntimeError(f"HTTP {status} from {host}")
    return json.loads(payload)


def detect_oauth2_provider(host):
    """Returns PROVIDER_MICROSOFT, PROVIDER_GOOGLE or None for the IMAP host."""
    name = (host or "").lower()
    for provider, hints in PROVIDER_HOST_HINTS.items():
        if any(hint in name for hint in hints):
            return provider
    return None


def discover_microsoft_tenant(email):
    """Looks up the Azure AD tenant id that serves the domain of ``email``."""
    _local, at, domain = email.rpartition("@")
    domain = domain.strip()
    if not at or not domain:
        raise imap_common.AuthError(f"Could not discover Microsoft tenant: no domain in '{email}'")

    path = f"/{urllib.parse.quote(domain, safe='.-')}/.well-known/openid-configuration"
    try:
        config = _get_json(MICROSOFT_LOGIN_HOST, path)
    except (OSError, http.client.HTTPException, ValueError, RuntimeError) as e:
        raise imap_common.AuthError(f"Could not discover Microsoft tenant for domain '{domain}': {e}") from e

    issuer = config.get("issuer", "") if isinstance(config, dict) else ""
    found = _TENANT_ID.search(issuer)
    if found is None:
        raise imap_common.AuthError(f"Could not extract tenant ID from issuer: {issuer}")
    return found.group(1)


def acquire_microsoft_oauth2_token(client_id, email, log_fn=print):
    """Device code flow: the operator enters the displayed code in a browser."""
    tenant_id = discover_microsoft_tenant(email)
    try:
        import msal
    except ImportError as e:
        raise imap_common.AuthError("Microsoft OAuth2 needs the 'msal' package (pip install msal)") from e

    log_fn(f"Discovered Microsoft tenant: {tenant_id}")
    app = msal.PublicClientApplication(client_id, authority=f"https://{MICROSOFT_LOGIN_HOST}/{tenant_id}")

    device_flow = app.initiate_device_flow(scopes=MICROSOFT_SCOPES)
    if "user_code" not in device_flow:
        reason = device_flow.get("error_description", "Unknown error")
        raise imap_common.AuthError(f"Could not initiate device flow: {reason}")
    log_fn(device_flow["message"])

    token_response = app.acquire_token_by_device_flow(device_flow)
    token = token_response.get("access_token")
    if not token:
        reason = token_response.get("error_description", "Unknown error")
        raise imap_common.AuthError(f"Could not acquire token: {reason}")
    return token


def _google_client_config(client_id, client_secret):
    return {
        "installed": {
            "client_id": client_id,
            "client_secret": client_secret,
            "auth_uri": GOOGLE_AUTH_URI,
            "token_uri": GOOGLE_TOKEN_URI,
            "redirect_uris": ["http://localhost"],
        }
    }


def acquire_google_oauth2_token(client_id, client_secret, log_fn=print):
    """Installed-app flow: opens a browser and listens for the redirect."""
    if not client_secret:
        raise imap_common.AuthError(
            "Google OAuth2 needs a client secret: pass --oauth2-client-secret or set OAUTH2_CLIENT_SECRET"
        )
    try:
        from google_auth_oauthlib.flow import InstalledAppFlow
    except ImportError as e:
        raise imap_common.AuthError(
            "Google OAuth2 needs the 'google-auth-oauthlib' package (pip install google-auth-oauthlib)"
        ) from e

    app_flow = InstalledAppFlow.from_client_config(_google_client_config(client_id, client_secret), scopes=GOOGLE_SCOPES)
    log_fn("Opening browser for Google authentication (see the terminal for the URL if none opens)...")
    credentials = app_flow.run_local_server(port=0)

    token = getattr(credentials, "token", None)
    if not token:
        raise imap_common.AuthError("Google did not return an OAuth2 access token")
    return token


def acquire_token(host, client_id, email, client_secret=None, log_fn=print):
    """
    Acquires an access token from the provider serving ``host``.

    Returns:
        (token, provider)
    """
    provider = detect_oauth2_provider(host)
    if provider is None:
        raise imap_common.AuthError(f"Could not detect OAuth2 provider from host '{host}'.")

    log_fn(f"Acquiring OAuth2 token ({provider})...")
    if provider == PROVIDER_MICROSOFT:
        token = acquire_microsoft_oauth2_token(client_id, email, log_fn)
    else:
        token = acquire_google_oauth2_token(client_id, client_secret, log_fn)
    log_fn("OAuth2 token acquired.")
    return token, provider


def auth_description(provider):
    """Auth method line for the configuration summary."""
    return f"OAuth2/{provider} (XOAUTH2)" if provider else "Basic (password)"
