"""
Single-use local listener for the relay redirect: http://localhost:<port>/callback?token=...&nonce=...
Binds 127.0.0.1 on an OS-assigned port, serves the callback app with uvicorn in a background thread,
and hands exactly one outcome to the waiting login through a write-once ResultSlot.
"""
import html
import logging
import secrets
import socket
import threading
import time
from dataclasses import dataclass
from enum import Enum

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse
from starlette.background import BackgroundTask

from cli_auth.config import CALLBACK_HOST, CALLBACK_PATH, CALLBACK_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)

# Seconds to wait for uvicorn to come up / wind down
STARTUP_TIMEOUT = 5.0
SHUTDOWN_TIMEOUT = 5.0


class FailureKind(str, Enum):
    PROVIDER_ERROR = "provider_error"
    MISSING_TOKEN = "missing_token"
    NONCE_MISMATCH = "nonce_mismatch"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class CallbackResult:
    """Outcome of one login attempt: a token (and granted scopes) or a failure kind."""

    token: str | None = None
    scopes: str | None = None
    failure: FailureKind | None = None
    detail: str | None = None

    @property
    def ok(self) -> bool:
        return self.failure is None and bool(self.token)

    @classmethod
    def success(cls, token: str, scopes: str | None = None) -> "CallbackResult":
        return cls(token=token, scopes=scopes or None)

    @classmethod
    def failed(cls, failure: FailureKind, detail: str | None = None) -> "CallbackResult":
        return cls(failure=failure, detail=detail)


class ResultSlot:
    """
    Write-once result cell shared by the HTTP handler and the deadline timer.
    The first resolve() wins and wakes the waiter; every later resolve() is a no-op returning False.

    claim() reserves the slot ahead of a deferred resolve(): whoever claims first owns the outcome,
    so the page a handler renders always matches the result the waiter sees.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._resolved = threading.Event()
        self._claimed = False
        self._result: CallbackResult | None = None

    def claim(self) -> bool:
        """Reserve the slot. False if another writer already claimed or resolved it."""
        with self._lock:
            if self._claimed:
                return False
            self._claimed = True
            return True

    def resolve(self, result: CallbackResult) -> bool:
        with self._lock:
            if self._resolved.is_set():
                return False
            self._claimed = True
            self._result = result
            self._resolved.set()
        return True

    @property
    def done(self) -> bool:
        return self._resolved.is_set()

    def wait(self, timeout: float | None = None) -> CallbackResult | None:
        """Block until resolved. Returns None only when the given timeout elapses first."""
        if not self._resolved.wait(timeout):
            return None
        return self._result


def _page(title: str, heading: str, message: str, status_code: int, background: BackgroundTask | None = None) -> HTMLResponse:
    return HTMLResponse(
        f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>{html.escape(title)}</title></head>
<body style="font-family: system-ui, sans-serif; text-align: center; padding: 50px;">
  <h1>{html.escape(heading)}</h1>
  <p>{html.escape(message)}</p>
  <p>You can close this window.</p>
</body>
</html>""",
        status_code=status_code,
        background=background,
    )


def _success_page(background: BackgroundTask) -> HTMLResponse:
    return HTMLResponse(
        """<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <title>Authentication Successful</title>
  <style>
    body { font-family: system-ui, sans-serif; display: flex; justify-content: center;
           align-items: center; height: 100vh; margin: 0;
           background: linear-gradient(135deg, #667eea 0%, #764ba2 100%); }
    .card { background: white; padding: 40px; border-radius: 16px;
            box-shadow: 0 10px 40px rgba(0,0,0,0.2); text-align: center; }
    .checkmark { font-size: 64px; margin-bottom: 20px; }
    h1 { color: #333; margin: 0 0 10px 0; }
    p { color: #666; margin: 0; }
  </style>
</head>
<body>
  <div class="card">
    <div class="checkmark">&#10003;</div>
    <h1>Authenticated!</h1>
    <p>You can close this window and return to your terminal.</p>
  </div>
</body>
</html>""",
        background=background,
    )


def _failure(slot: ResultSlot, kind: FailureKind, detail: str) -> HTMLResponse:
    # Resolve in a background task so the browser has its page before the waiter wakes up
    return _page(
        "Auth Error",
        "Authentication Failed",
        detail,
        400,
        background=BackgroundTask(slot.resolve, CallbackResult.failed(kind, detail)),
    )


def create_callback_app(expected_nonce: str, slot: ResultSlot) -> FastAPI:
    """FastAPI app with a single GET /callback route bound to one nonce and one result slot."""
    app = FastAPI(title="Callback Listener", docs_url=None, redoc_url=None, openapi_url=None)

    @app.get(CALLBACK_PATH, response_class=HTMLResponse)
    def callback(
        request: Request,
        token: str | None = None,
        nonce: str | None = None,
        scope: str | None = None,
        error: str | None = None,
        error_description: str | None = None,
    ):
        if not slot.claim():
            return _page(
                "Auth Error",
                "Login already finished",
                "This login attempt has already completed. Run the login command again if needed.",
                409,
            )

        if error:
            logger.info("Provider reported an error: %s", error)
            return _failure(slot, FailureKind.PROVIDER_ERROR, error_description or error)

        if not token:
            return _failure(slot, FailureKind.MISSING_TOKEN, "No token received.")

        if nonce is None or not secrets.compare_digest(nonce.encode("utf-8"), expected_nonce.encode("utf-8")):
            client_host = request.client.host if request.client else "unknown"
            logger.warning("Rejected callback from %s: nonce mismatch (possible CSRF attempt)", client_host)
            return _failure(slot, FailureKind.NONCE_MISMATCH, "Invalid nonce - possible CSRF attack.")

        return _success_page(BackgroundTask(slot.resolve, CallbackResult.success(token, scope)))

    return app


class CallbackListener:
    """
    One pending login: a bound port, a result slot and a deadline.

    Use CallbackListener.start(nonce) as a context manager so close() runs on every exit path:

        with CallbackListener.start(nonce) as listener:
            ... embed listener.port in the state token ...
            result = listener.result.wait()
    """

    def __init__(
        self,
        expected_nonce: str,
        *,
        timeout: float = CALLBACK_TIMEOUT_SECONDS,
        host: str = CALLBACK_HOST,
    ) -> None:
        self.result = ResultSlot()
        self.timeout = timeout
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            self._sock.bind((host, 0))
            self._sock.listen(16)
        except OSError:
            self._sock.close()
            raise
        self.port: int = self._sock.getsockname()[1]

        config = uvicorn.Config(
            create_callback_app(expected_nonce, self.result),
            loop="asyncio",
            http="h11",
            lifespan="off",
            log_config=None,
            log_level="warning",
            access_log=False,
            timeout_graceful_shutdown=1,
        )
        self._server = uvicorn.Server(config)
        self._thread = threading.Thread(
            target=self._server.run,
            kwargs={"sockets": [self._sock]},
            name=f"callback-listener-{self.port}",
            daemon=True,
        )
        self._deadline = threading.Timer(timeout, self._expire)
        self._deadline.daemon = True
        self._close_lock = threading.Lock()
        self._closed = False

    @classmethod
    def start(cls, expected_nonce: str, *, timeout: float = CALLBACK_TIMEOUT_SECONDS) -> "CallbackListener":
        """Bind, arm the deadline and serve. Returns once the listener accepts connections."""
        listener = cls(expected_nonce, timeout=timeout)
        listener._serve()
        return listener

    def _serve(self) -> None:
        self._deadline.start()
        self._thread.start()
        give_up = time.monotonic() + STARTUP_TIMEOUT
        while not self._server.started:
            if not self._thread.is_alive() or time.monotonic() > give_up:
                self.close()
                raise RuntimeError(f"Callback listener on port {self.port} failed to start")
            time.sleep(0.01)
        logger.debug("Callback listener on %s:%d (deadline %gs)", CALLBACK_HOST, self.port, self.timeout)

    def _expire(self) -> None:
        if not self.result.claim():
            return
        logger.info("No callback received within %g seconds", self.timeout)
        # Release the port before waking the waiter
        self.close()
        self.result.resolve(CallbackResult.failed(FailureKind.TIMEOUT, f"No callback received within {self.timeout:g} seconds"))

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Stop serving and release the port. Idempotent."""
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        self._deadline.cancel()
        self._server.should_exit = True
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(SHUTDOWN_TIMEOUT)
        self._sock.close()
        logger.debug("Callback listener on port %d closed", self.port)

    def __enter__(self) -> "CallbackListener":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
