"""Tests for the local callback listener: request validation, write-once result, deadline, port release."""
import logging
import socket
import threading

import httpx
import pytest
from fastapi.testclient import TestClient

from cli_auth.callback_listener import (
    CallbackListener,
    CallbackResult,
    FailureKind,
    ResultSlot,
    create_callback_app,
)

NONCE = "abcdefghijklmnopqrst"


@pytest.fixture
def slot():
    return ResultSlot()


@pytest.fixture
def client(slot):
    return TestClient(create_callback_app(NONCE, slot))


def _port_is_free(port: int) -> bool:
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    try:
        s.bind(("127.0.0.1", port))
        return True
    except OSError:
        return False
    finally:
        s.close()


# --- ResultSlot ---


def test_slot_first_writer_wins(slot):
    assert slot.resolve(CallbackResult.failed(FailureKind.NONCE_MISMATCH)) is True
    assert slot.resolve(CallbackResult.success("tok")) is False
    assert slot.wait(0).failure is FailureKind.NONCE_MISMATCH


def test_slot_wait_times_out_when_unresolved(slot):
    assert slot.done is False
    assert slot.wait(0.01) is None


def test_slot_concurrent_writers_only_one_wins(slot):
    outcomes = []
    barrier = threading.Barrier(8)

    def writer(i):
        barrier.wait()
        outcomes.append(slot.resolve(CallbackResult.success(f"tok{i}")))

    threads = [threading.Thread(target=writer, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert outcomes.count(True) == 1
    assert slot.wait(0).token.startswith("tok")


def test_slot_claim_is_exclusive(slot):
    assert slot.claim() is True
    assert slot.claim() is False
    assert slot.done is False
    # The claimant still delivers its outcome
    assert slot.resolve(CallbackResult.success("tok")) is True
    assert slot.wait(0).ok


def test_slot_resolve_blocks_later_claims(slot):
    slot.resolve(CallbackResult.failed(FailureKind.TIMEOUT))
    assert slot.claim() is False


def test_slot_concurrent_claims_only_one_wins(slot):
    outcomes = []
    barrier = threading.Barrier(8)

    def claimer():
        barrier.wait()
        outcomes.append(slot.claim())

    threads = [threading.Thread(target=claimer) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert outcomes.count(True) == 1


def test_callback_result_ok():
    assert CallbackResult.success("tok", "repo").ok is True
    assert CallbackResult.success("tok", "").scopes is None
    assert CallbackResult.failed(FailureKind.TIMEOUT).ok is False


# --- Callback app ---


def test_callback_success(client, slot):
    r = client.get("/callback", params={"token": "tok123", "nonce": NONCE, "scope": "repo,read:org"})
    assert r.status_code == 200
    assert "Authenticated" in r.text
    result = slot.wait(1)
    assert result.ok
    assert (result.token, result.scopes) == ("tok123", "repo,read:org")


def test_callback_success_without_scope(client, slot):
    r = client.get("/callback", params={"token": "tok123", "nonce": NONCE})
    assert r.status_code == 200
    assert slot.wait(1).scopes is None


def test_callback_unknown_path_is_404_and_not_resolved(client, slot):
    r = client.get("/favicon.ico")
    assert r.status_code == 404
    assert slot.done is False


def test_callback_provider_error(client, slot):
    r = client.get("/callback", params={"error": "access_denied", "error_description": "User denied access"})
    assert r.status_code == 400
    assert "User denied access" in r.text
    result = slot.wait(1)
    assert result.failure is FailureKind.PROVIDER_ERROR
    assert result.detail == "User denied access"


def test_callback_error_is_escaped(client, slot):
    r = client.get("/callback", params={"error": "<script>alert(1)</script>"})
    assert r.status_code == 400
    assert "<script>" not in r.text
    assert "&lt;script&gt;" in r.text


def test_callback_missing_token(client, slot):
    r = client.get("/callback", params={"nonce": NONCE})
    assert r.status_code == 400
    assert "No token" in r.text
    assert slot.wait(1).failure is FailureKind.MISSING_TOKEN


def test_callback_empty_token_counts_as_missing(client, slot):
    r = client.get("/callback", params={"token": "", "nonce": NONCE})
    assert r.status_code == 400
    assert slot.wait(1).failure is FailureKind.MISSING_TOKEN


def test_callback_nonce_mismatch_is_rejected_and_logged(client, slot, caplog):
    with caplog.at_level(logging.WARNING, logger="cli_auth.callback_listener"):
        r = client.get("/callback", params={"token": "evil", "nonce": "zyxwvutsrqponmlkjihg"})
    assert r.status_code == 400
    assert "CSRF" in r.text
    assert slot.wait(1).failure is FailureKind.NONCE_MISMATCH
    assert any("nonce mismatch" in rec.message for rec in caplog.records)


def test_callback_missing_nonce_is_mismatch(client, slot):
    r = client.get("/callback", params={"token": "tok"})
    assert r.status_code == 400
    assert slot.wait(1).failure is FailureKind.NONCE_MISMATCH


def test_callback_non_ascii_nonce_is_mismatch(client, slot):
    r = client.get("/callback", params={"token": "tok", "nonce": "ñññññññññññññññññññ"})
    assert r.status_code == 400
    assert slot.wait(1).failure is FailureKind.NONCE_MISMATCH


def test_callback_while_another_is_pending_gets_409(client, slot):
    # A handler that claimed the slot but whose deferred resolve has not run yet
    assert slot.claim() is True
    r = client.get("/callback", params={"token": "tok123", "nonce": NONCE})
    assert r.status_code == 409
    assert "Authenticated" not in r.text
    assert slot.done is False


def test_legitimate_callback_after_mismatch_is_ignored(client, slot):
    client.get("/callback", params={"token": "evil", "nonce": "wrong-nonce-wrong-nonce"})
    r = client.get("/callback", params={"token": "tok123", "nonce": NONCE})
    assert r.status_code == 409
    result = slot.wait(1)
    assert result.failure is FailureKind.NONCE_MISMATCH
    assert result.token is None


# --- Real listener on a socket ---


def test_listener_binds_os_assigned_loopback_port():
    with CallbackListener.start(NONCE, timeout=30) as listener:
        assert 1024 <= listener.port <= 65535
        r = httpx.get(f"http://127.0.0.1:{listener.port}/health", timeout=5)
        assert r.status_code == 404
        assert listener.result.done is False


def test_listener_end_to_end_success():
    with CallbackListener.start(NONCE, timeout=30) as listener:
        r = httpx.get(
            f"http://127.0.0.1:{listener.port}/callback",
            params={"token": "tok123", "nonce": NONCE, "scope": "repo,read:org"},
            timeout=5,
        )
        assert r.status_code == 200
        result = listener.result.wait(5)
    assert result.ok
    assert (result.token, result.scopes) == ("tok123", "repo,read:org")


def test_listener_times_out_and_frees_port():
    listener = CallbackListener.start(NONCE, timeout=0.2)
    result = listener.result.wait(10)
    assert result.failure is FailureKind.TIMEOUT
    assert listener.closed
    assert _port_is_free(listener.port)
    listener.close()


def test_listener_close_is_idempotent_and_frees_port():
    listener = CallbackListener.start(NONCE, timeout=30)
    port = listener.port
    listener.close()
    listener.close()
    assert _port_is_free(port)


def test_listener_closed_on_exception():
    with pytest.raises(RuntimeError):
        with CallbackListener.start(NONCE, timeout=30) as listener:
            raise RuntimeError("boom")
    assert listener.closed
    assert _port_is_free(listener.port)


def test_timeout_after_success_is_a_no_op():
    listener = CallbackListener.start(NONCE, timeout=1.0)
    try:
        httpx.get(
            f"http://127.0.0.1:{listener.port}/callback",
            params={"token": "tok123", "nonce": NONCE},
            timeout=5,
        )
        first = listener.result.wait(5)
        threading.Event().wait(1.5)
        assert listener.result.wait(0) is first
        assert first.ok
    finally:
        listener.close()


def test_two_listeners_are_independent():
    with CallbackListener.start(NONCE, timeout=30) as a, CallbackListener.start("another-nonce-0123456", timeout=30) as b:
        assert a.port != b.port
        httpx.get(f"http://127.0.0.1:{a.port}/callback", params={"token": "t", "nonce": NONCE}, timeout=5)
        assert a.result.wait(5).ok
        assert b.result.done is False


def test_concurrent_forged_and_legitimate_callbacks_page_matches_result():
    with CallbackListener.start(NONCE, timeout=30) as listener:
        url = f"http://127.0.0.1:{listener.port}/callback"
        responses = {}
        barrier = threading.Barrier(2)

        def send(name, params):
            barrier.wait()
            responses[name] = httpx.get(url, params=params, timeout=5)

        threads = [
            threading.Thread(target=send, args=("forged", {"token": "evil", "nonce": "zyxwvutsrqponmlkjihg"})),
            threading.Thread(target=send, args=("legit", {"token": "tok123", "nonce": NONCE})),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        result = listener.result.wait(5)

    codes = {name: r.status_code for name, r in responses.items()}
    assert sorted(codes.values()) in ([200, 409], [400, 409])
    if result.ok:
        assert codes == {"legit": 200, "forged": 409}
        assert "Authenticated" in responses["legit"].text
    else:
        assert result.failure is FailureKind.NONCE_MISMATCH
        assert codes == {"forged": 400, "legit": 409}
        assert "Authenticated" not in responses["legit"].text


def test_deadline_does_not_override_claimed_callback():
    listener = CallbackListener(NONCE, timeout=30)
    try:
        assert listener.result.claim() is True
        listener._expire()
        assert listener.result.done is False
        assert listener.closed is False
        listener.result.resolve(CallbackResult.success("tok123"))
        assert listener.result.wait(0).token == "tok123"
    finally:
        listener.close()
