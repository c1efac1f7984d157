"""
Command surface: python -m cli_auth {login,logout,status,token}
Diagnostics go to stderr so `token` output can be piped.
"""
import argparse
import logging
import sys
import webbrowser

from cli_auth.config import CALLBACK_TIMEOUT_SECONDS, TOKEN_ENV_VAR
from cli_auth.credential_store import CredentialStore, StoreUnavailable
from cli_auth.login import SOURCE_ENVIRONMENT, get_env_token, get_token, login, logout, status


def _err(message: str) -> None:
    print(message, file=sys.stderr)


def cmd_login(args, store: CredentialStore) -> int:
    token = login(
        store,
        open_browser=None if args.no_browser else webbrowser.open,
        timeout=args.timeout,
        on_message=_err,
    )
    return 0 if token else 1


def cmd_logout(args, store: CredentialStore) -> int:
    try:
        logout(store)
    except StoreUnavailable as e:
        _err(f"Could not remove credentials: {e}")
        return 1
    _err("Logged out. Token removed from keychain.")
    if get_env_token():
        _err(f"Note: {TOKEN_ENV_VAR} is still set in the environment and will keep being used.")
    return 0


def cmd_status(args, store: CredentialStore) -> int:
    result = status(store)
    if not result.authenticated:
        _err("Not authenticated")
        if result.source:
            _err("   Token is invalid or expired")
        _err("   Run: github-mcp-auth login")
        return 1
    _err("Authenticated")
    _err(f"   User: {result.username or 'unknown'}")
    if result.scopes:
        _err(f"   Scopes: {', '.join(result.scopes)}")
    if result.source == SOURCE_ENVIRONMENT:
        _err(f"   Source: {TOKEN_ENV_VAR} environment variable")
    else:
        _err("   Source: OS keychain")
    return 0


def cmd_token(args, store: CredentialStore) -> int:
    token = get_token(store)
    if not token:
        _err("No token available. Run: github-mcp-auth login")
        return 1
    print(token)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="github-mcp-auth", description="GitHub authentication for github-mcp")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p_login = sub.add_parser("login", help="Log in through the browser")
    p_login.add_argument("--no-browser", action="store_true", help="Only print the authorization URL")
    p_login.add_argument(
        "--timeout",
        type=float,
        default=CALLBACK_TIMEOUT_SECONDS,
        help=f"Seconds to wait for the browser callback (default: {CALLBACK_TIMEOUT_SECONDS:g})",
    )
    p_login.set_defaults(func=cmd_login)

    sub.add_parser("logout", help="Remove stored credentials").set_defaults(func=cmd_logout)
    sub.add_parser("status", help="Show authentication status").set_defaults(func=cmd_status)
    sub.add_parser("token", help="Print the token in use").set_defaults(func=cmd_token)
    return parser


def main(argv: list[str] | None = None, store: CredentialStore | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    return args.func(args, store or CredentialStore())


if __name__ == "__main__":
    sys.exit(main())
