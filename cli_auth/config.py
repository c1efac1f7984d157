"""
CLI auth configuration. Public identifiers only; the OAuth client secret lives in the relay.
The pre-authorized token variable is named here but read at call time (see login.get_token).
"""
import os

# GitHub OAuth App client_id (public)
GITHUB_CLIENT_ID = os.environ.get("GITHUB_CLIENT_ID", "Ov23liEtc0pnj6t2b6Jr")

# Relay backend that performs the code -> token exchange and redirects back to localhost
AUTH_BACKEND_URL = os.environ.get("AUTH_BACKEND_URL", "https://gh-mcp-auth.fly.dev").rstrip("/")

# Requested scopes, comma-separated as GitHub expects
OAUTH_SCOPES = os.environ.get("GITHUB_OAUTH_SCOPES", "repo,read:org,read:user,gist,notifications,workflow")

GITHUB_AUTHORIZE_URL = "https://github.com/login/oauth/authorize"
GITHUB_API_URL = os.environ.get("GITHUB_API_URL", "https://api.github.com").rstrip("/")

# Local callback listener; port is always OS-assigned
CALLBACK_HOST = "127.0.0.1"
CALLBACK_PATH = "/callback"
CALLBACK_TIMEOUT_SECONDS = float(os.environ.get("GITHUB_AUTH_TIMEOUT", "300"))

# OS keyring entries
KEYRING_SERVICE = "github-mcp"
KEYRING_TOKEN_ACCOUNT = "github-oauth-token"
KEYRING_SCOPES_ACCOUNT = "github-oauth-scopes"

# Environment variable holding a pre-authorized token; wins over the keyring
TOKEN_ENV_VAR = "GITHUB_TOKEN"
