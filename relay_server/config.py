"""
Relay backend configuration. The OAuth client secret comes from the environment only.
"""
import os

# GitHub OAuth App credentials; the secret never leaves this service
GITHUB_CLIENT_ID = os.environ.get("GITHUB_CLIENT_ID")
GITHUB_CLIENT_SECRET = os.environ.get("GITHUB_CLIENT_SECRET")

GITHUB_TOKEN_URL = os.environ.get("GITHUB_TOKEN_URL", "https://github.com/login/oauth/access_token")

# Seconds allowed for the code -> token exchange with GitHub
EXCHANGE_TIMEOUT = float(os.environ.get("RELAY_EXCHANGE_TIMEOUT", "10"))

PORT = int(os.environ.get("PORT", "8080"))

# Per-IP callbacks per minute (0 disables)
RATE_LIMIT_CALLBACK_PER_MINUTE = int(os.environ.get("RELAY_RATE_LIMIT_CALLBACK_PER_MINUTE", "30"))

# State token rules shared with the CLI: "<port>:<nonce>"
PORT_MIN = 1024
PORT_MAX = 65535
MIN_NONCE_LENGTH = 16
