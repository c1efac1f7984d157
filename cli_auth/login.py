"""
Login orchestration for the command line.
login(): GITHUB_TOKEN short-circuit, else local listener + browser + relay round trip, then keyring.
logout() and status() back the `auth logout` / `auth status` commands.
"""
import logging
import os
import threading
import webbrowser
from dataclasses import dataclass
from typing import Callable
from urllib.parse import urlencode

import httpx

from cli_auth.callback_listener import CallbackListener, CallbackResult, FailureKind, SHUTDOWN_TIMEOUT
from cli_auth.config import (
    AUTH_BACKEND_URL,
    CALLBACK_TIMEOUT_SECONDS,
    GITHUB_API_URL,
    GITHUB_AUTHORIZE_URL,
    GITHUB_CLIENT_ID,
    OAUTH_SCOPES,
    TOKEN_ENV_VAR,
)
from cli_auth.credential_store import CredentialStore, StoreUnavailable
from cli_auth.state import encode_state, generate_nonce

logger = logging.getLogger(__name__)

SOURCE_ENVIRONMENT = "environment"
SOURCE_KEYRING = "keyring"

_FAILURE_MESSAGES = {
    FailureKind.PROVIDER_ERROR: "GitHub reported an error: {detail}",
    FailureKind.MISSING_TOKEN: "no token was received from the auth backend.",
    FailureKind.NONCE_MISMATCH: "callback nonce did not match (possible CSRF attack); the token was rejected.",
    FailureKind.TIMEOUT: "timed out waiting for the browser callback.",
}


@dataclass
class AuthStatus:
    authenticated: bool
    username: str | None = None
    scopes: list[str] | None = None
    source: str | None = None


def get_env_token() -> str | None:
    """Pre-authorized token from the environment. Read on every call, never cached."""
    return os.environ.get(TOKEN_ENV_VAR) or None


def resolve_token(store: CredentialStore | None = None) -> tuple[str | None, str | None]:
    """Return (token, source): environment first, then keyring. (None, None) when neither has one."""
    env_token = get_env_token()
    if env_token:
        return env_token, SOURCE_ENVIRONMENT
    store = store or CredentialStore()
    try:
        token = store.get()
    except StoreUnavailable as e:
        logger.warning("Keyring unavailable, treating as not logged in: %s", e)
        return None, None
    if not token:
        return None, None
    return token, SOURCE_KEYRING


def get_token(store: CredentialStore | None = None) -> str | None:
    return resolve_token(store)[0]


def build_authorization_url(
    state: str,
    *,
    client_id: str = GITHUB_CLIENT_ID,
    scope: str = OAUTH_SCOPES,
    redirect_uri: str = f"{AUTH_BACKEND_URL}/callback",
) -> str:
    """GitHub /login/oauth/authorize URL; GitHub redirects to the relay, which redirects to us."""
    params = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "scope": scope,
        "state": state,
    }
    return f"{GITHUB_AUTHORIZE_URL}?{urlencode(params)}"


def describe_failure(result: CallbackResult) -> str:
    template = _FAILURE_MESSAGES.get(result.failure, "{detail}")
    return template.format(detail=result.detail or "unknown error")


def _launch_browser(open_browser: Callable[[str], object], url: str) -> None:
    # Some environments block inside webbrowser.open; never hold up the listener on it
    threading.Thread(target=open_browser, args=(url,), daemon=True).start()


def login(
    store: CredentialStore | None = None,
    *,
    open_browser: Callable[[str], object] | None = webbrowser.open,
    timeout: float = CALLBACK_TIMEOUT_SECONDS,
    on_message: Callable[[str], None] | None = None,
) -> str | None:
    """
    Run one login attempt. Returns the token, or None after reporting why it failed.
    Failures are not raised: the user can simply run login again.
    """
    emit = on_message or logger.info

    env_token = get_env_token()
    if env_token:
        emit(f"Using {TOKEN_ENV_VAR} from environment")
        return env_token

    store = store or CredentialStore()
    nonce = generate_nonce()

    try:
        listener = CallbackListener.start(nonce, timeout=timeout)
    except (OSError, RuntimeError) as e:
        logger.error("Could not start callback listener: %s", e)
        emit(f"Authentication failed: could not start local callback listener: {e}")
        return None

    with listener:
        auth_url = build_authorization_url(encode_state(listener.port, nonce))
        emit("Opening browser for GitHub authentication...")
        emit(f"If browser doesn't open, visit: {auth_url}")
        if open_browser is not None:
            _launch_browser(open_browser, auth_url)
        emit("Waiting for authentication...")
        # The deadline timer always resolves the slot; the margin only guards against a dead timer
        result = listener.result.wait(timeout + SHUTDOWN_TIMEOUT + 5)
        if result is None:
            result = CallbackResult.failed(FailureKind.TIMEOUT)

    if not result.ok:
        if result.failure is FailureKind.NONCE_MISMATCH:
            logger.warning("Login aborted: callback nonce mismatch, possible forgery attempt")
        emit(f"Authentication failed: {describe_failure(result)}")
        return None

    try:
        store.put(result.token, result.scopes)
    except StoreUnavailable as e:
        emit(f"Authentication succeeded but the token could not be stored: {e}")
        return None
    emit("Token stored securely in keychain.")
    return result.token


def logout(store: CredentialStore | None = None) -> None:
    """Remove stored credentials. Safe to call when nothing is stored."""
    (store or CredentialStore()).delete()
    logger.info("Removed stored GitHub credentials")


def _split_scopes(value: str | None) -> list[str] | None:
    if not value:
        return None
    return [s.strip() for s in value.split(",") if s.strip()]


def status(store: CredentialStore | None = None, *, timeout: float = 10.0) -> AuthStatus:
    """
    Resolve the token and confirm it with GET /user. Any rejection or transport failure
    means "not authenticated" rather than an error.
    """
    store = store or CredentialStore()
    token, source = resolve_token(store)
    if not token:
        return AuthStatus(authenticated=False)

    try:
        r = httpx.get(
            f"{GITHUB_API_URL}/user",
            headers={"Authorization": f"Bearer {token}", "Accept": "application/vnd.github+json"},
            timeout=timeout,
        )
    except httpx.HTTPError as e:
        logger.warning("Could not verify token with GitHub: %s", e)
        return AuthStatus(authenticated=False, source=source)

    if r.status_code in (401, 403):
        logger.info("GitHub rejected the %s token (%d)", source, r.status_code)
        return AuthStatus(authenticated=False, source=source)
    if r.status_code != 200:
        logger.warning("Unexpected status %d from GitHub /user", r.status_code)
        return AuthStatus(authenticated=False, source=source)

    try:
        user = r.json()
    except ValueError:
        user = None
    if not isinstance(user, dict):
        logger.warning("GitHub /user returned an unreadable body")
        return AuthStatus(authenticated=False, source=source)

    if source == SOURCE_KEYRING:
        try:
            scopes = store.get_scopes()
        except StoreUnavailable as e:
            logger.warning("Could not read stored scopes: %s", e)
            scopes = None
    else:
        # GitHub echoes a classic token's scopes in X-OAuth-Scopes
        scopes = r.headers.get("x-oauth-scopes")

    return AuthStatus(
        authenticated=True,
        username=user.get("login"),
        scopes=_split_scopes(scopes),
        source=source,
    )
