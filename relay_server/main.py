"""
Relay backend for CLI logins.
GitHub redirects here with ?code&state; we exchange the code (we hold the client secret) and
redirect the browser to http://localhost:<port>/callback with the token and the original nonce.
State format: <port>:<nonce>. The nonce is opaque here; the CLI's listener checks it.
"""
import html
import logging
from datetime import datetime, timezone
from urllib.parse import urlencode

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, RedirectResponse

from relay_server.config import (
    EXCHANGE_TIMEOUT,
    GITHUB_CLIENT_ID,
    GITHUB_CLIENT_SECRET,
    GITHUB_TOKEN_URL,
    MIN_NONCE_LENGTH,
    PORT,
    PORT_MAX,
    PORT_MIN,
    RATE_LIMIT_CALLBACK_PER_MINUTE,
)
from relay_server.rate_limit import SlidingWindowLimiter

logger = logging.getLogger(__name__)

app = FastAPI(title="github-mcp Auth Relay", version="1.0.0")
app.state.callback_limiter = SlidingWindowLimiter(RATE_LIMIT_CALLBACK_PER_MINUTE)


class TokenExchangeError(Exception):
    """GitHub did not hand out an access token for the code."""


def _error_page(heading: str, message: str, status_code: int) -> HTMLResponse:
    return HTMLResponse(
        f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Auth Error</title></head>
<body>
  <h1>{html.escape(heading)}</h1>
  <p>{html.escape(message)}</p>
  <p>Please close this window and try again.</p>
</body>
</html>""",
        status_code=status_code,
    )


def _parse_state(state: str) -> tuple[int | None, str | None, str | None]:
    """Split "<port>:<nonce>" at the first colon. Returns (port, nonce, None) or (None, None, error)."""
    port_str, _, nonce = state.partition(":")
    if not port_str.isascii() or not port_str.isdigit():
        return None, None, "Invalid state: bad port"
    port = int(port_str)
    if port < PORT_MIN or port > PORT_MAX:
        return None, None, "Invalid state: bad port"
    if len(nonce) < MIN_NONCE_LENGTH:
        return None, None, "Invalid state: bad nonce"
    return port, nonce, None


def exchange_code(code: str) -> dict:
    """POST the code to GitHub's token endpoint. Returns the token response; raises TokenExchangeError."""
    try:
        r = httpx.post(
            GITHUB_TOKEN_URL,
            json={
                "client_id": GITHUB_CLIENT_ID,
                "client_secret": GITHUB_CLIENT_SECRET,
                "code": code,
            },
            headers={"Accept": "application/json"},
            timeout=EXCHANGE_TIMEOUT,
        )
    except httpx.HTTPError as e:
        raise TokenExchangeError(f"GitHub token exchange failed: {e}") from e
    if r.status_code != 200:
        raise TokenExchangeError(f"GitHub token exchange failed: {r.status_code}")
    try:
        data = r.json()
    except ValueError as e:
        raise TokenExchangeError("GitHub token exchange returned an invalid response") from e
    if not isinstance(data, dict):
        raise TokenExchangeError("GitHub token exchange returned an invalid response")
    if data.get("error"):
        raise TokenExchangeError(data.get("error_description") or data["error"])
    if not data.get("access_token"):
        raise TokenExchangeError("No access token in response")
    return data


def build_local_redirect(port: int, token: str, nonce: str, scope: str | None) -> str:
    params = {"token": token, "nonce": nonce}
    if scope:
        params["scope"] = scope
    return f"http://localhost:{port}/callback?{urlencode(params)}"


@app.get("/health")
def health():
    """Health check endpoint."""
    return {
        "status": "ok",
        "service": "relay_server",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/", response_class=HTMLResponse)
def home():
    return HTMLResponse(
        """<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <title>github-mcp Auth</title>
  <style>
    body { font-family: system-ui, sans-serif; max-width: 600px; margin: 50px auto; padding: 20px; }
    h1 { color: #333; }
    code { background: #f4f4f4; padding: 2px 6px; border-radius: 4px; }
  </style>
</head>
<body>
  <h1>github-mcp Auth Backend</h1>
  <p>This service handles OAuth callbacks for github-mcp.</p>
  <p>To authenticate, run:</p>
  <pre><code>github-mcp-auth login</code></pre>
</body>
</html>"""
    )


@app.get("/callback")
def callback(
    request: Request,
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
    error_description: str | None = None,
):
    """
    OAuth redirect from GitHub. Validates state shape only, exchanges the code,
    then 302s to the CLI's local listener. Failures render an HTML page instead.
    """
    client_ip = request.client.host if request.client else "unknown"
    allowed, retry_after = request.app.state.callback_limiter.check_and_consume(client_ip)
    if not allowed:
        logger.warning("Rate limit exceeded for %s on /callback", client_ip)
        return HTMLResponse(
            "<h1>Too many requests</h1><p>Please wait and try again.</p>",
            status_code=429,
            headers={"Retry-After": str(retry_after)},
        )

    if error:
        return _error_page("Authentication Error", error_description or error, 400)

    if not code:
        return HTMLResponse("Missing authorization code", status_code=400)
    if not state:
        return HTMLResponse("Missing state parameter", status_code=400)

    port, nonce, state_error = _parse_state(state)
    if state_error:
        logger.warning("Rejected callback from %s: %s", client_ip, state_error)
        return HTMLResponse(state_error, status_code=400)

    if not GITHUB_CLIENT_ID or not GITHUB_CLIENT_SECRET:
        logger.error("Missing GITHUB_CLIENT_ID or GITHUB_CLIENT_SECRET")
        return HTMLResponse("Server configuration error", status_code=500)

    try:
        data = exchange_code(code)
    except TokenExchangeError as e:
        logger.error("Token exchange error: %s", e)
        return _error_page("Authentication Failed", str(e), 500)

    logger.info("Token exchanged; redirecting browser to local port %d", port)
    return RedirectResponse(
        url=build_local_redirect(port, data["access_token"], nonce, data.get("scope")),
        status_code=302,
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "relay_server.main:app",
        host="0.0.0.0",
        port=PORT,
    )
