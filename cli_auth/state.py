"""
Nonce generation and the "<port>:<nonce>" state token carried through GitHub's state parameter.
The relay only splits it back apart; the listener's port and the nonce both come home in the redirect.
"""
import re
import secrets
from dataclasses import dataclass

PORT_MIN = 1024
PORT_MAX = 65535
MIN_NONCE_LENGTH = 16
SEPARATOR = ":"

_DECIMAL = re.compile(r"^[0-9]+$")


class InvalidState(ValueError):
    """State token cannot be built from, or parsed into, a (port, nonce) pair."""


@dataclass(frozen=True)
class StateToken:
    port: int
    nonce: str


def generate_nonce() -> str:
    """Single-use value binding the callback to this login attempt (24 random bytes, URL-safe)."""
    return secrets.token_urlsafe(24)


def encode_state(port: int, nonce: str) -> str:
    """Build the state token. Raises InvalidState for an out-of-range port or empty nonce."""
    if isinstance(port, bool) or not isinstance(port, int) or not PORT_MIN <= port <= PORT_MAX:
        raise InvalidState(f"port must be an integer in [{PORT_MIN}, {PORT_MAX}], got {port!r}")
    if not nonce:
        raise InvalidState("nonce must not be empty")
    return f"{port}{SEPARATOR}{nonce}"


def decode_state(state: str | None) -> tuple[StateToken | None, str | None]:
    """
    Parse a state token. Returns (StateToken, None) or (None, reason); never raises.
    Only the first separator counts: anything after it is nonce.
    """
    if not state or SEPARATOR not in state:
        return None, "missing separator"
    port_str, _, nonce = state.partition(SEPARATOR)
    if not _DECIMAL.match(port_str):
        return None, "port is not a decimal integer"
    port = int(port_str)
    if not PORT_MIN <= port <= PORT_MAX:
        return None, f"port out of range [{PORT_MIN}, {PORT_MAX}]"
    if len(nonce) < MIN_NONCE_LENGTH:
        return None, f"nonce shorter than {MIN_NONCE_LENGTH} characters"
    return StateToken(port=port, nonce=nonce), None
