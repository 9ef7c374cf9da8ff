"""Unit tests for app/utils/crypto.py."""

from datetime import UTC, datetime, timedelta

from app.utils.crypto import (
    build_signature_message,
    generate_keypair,
    generate_nonce,
    is_timestamp_valid,
    sign_request,
    verify_signature,
)


def test_generate_keypair_format() -> None:
    priv, pub = generate_keypair()
    assert len(priv) == 64  # 32 bytes hex
    assert len(pub) == 64
    bytes.fromhex(priv)
    bytes.fromhex(pub)


def test_signature_message_layout() -> None:
    message = build_signature_message("user_1", "2026-01-01T00:00:00+00:00", "POST", "/bids/1/accept", b"")
    lines = message.decode().split("\n")
    assert lines[:4] == ["user_1", "2026-01-01T00:00:00+00:00", "POST", "/bids/1/accept"]
    # sha256 of the empty body
    assert lines[4] == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"


def test_sign_verify_round_trip() -> None:
    priv, pub = generate_keypair()
    ts = datetime.now(UTC).isoformat()
    sig = sign_request(priv, ts, "POST", "/assignments", b'{"a":1}', subject="user_1")
    assert verify_signature(pub, sig, ts, "POST", "/assignments", b'{"a":1}', subject="user_1")


def test_verify_tampered_body() -> None:
    priv, pub = generate_keypair()
    ts = datetime.now(UTC).isoformat()
    sig = sign_request(priv, ts, "POST", "/assignments", b'{"a":1}', subject="user_1")
    assert not verify_signature(pub, sig, ts, "POST", "/assignments", b'{"a":2}', subject="user_1")


def test_verify_other_subject_rejected() -> None:
    priv, pub = generate_keypair()
    ts = datetime.now(UTC).isoformat()
    sig = sign_request(priv, ts, "GET", "/users/me", b"", subject="user_1")
    assert not verify_signature(pub, sig, ts, "GET", "/users/me", b"", subject="user_2")


def test_verify_wrong_key_rejected() -> None:
    priv1, _ = generate_keypair()
    _, pub2 = generate_keypair()
    ts = datetime.now(UTC).isoformat()
    sig = sign_request(priv1, ts, "GET", "/users/me", b"", subject="user_1")
    assert not verify_signature(pub2, sig, ts, "GET", "/users/me", b"", subject="user_1")


def test_verify_wrong_method_rejected() -> None:
    priv, pub = generate_keypair()
    ts = datetime.now(UTC).isoformat()
    sig = sign_request(priv, ts, "GET", "/users/me", b"", subject="user_1")
    assert not verify_signature(pub, sig, ts, "POST", "/users/me", b"", subject="user_1")


def test_verify_garbage_signature() -> None:
    _, pub = generate_keypair()
    ts = datetime.now(UTC).isoformat()
    assert not verify_signature(pub, "not-hex", ts, "GET", "/users/me", b"", subject="user_1")


def test_verify_without_public_key() -> None:
    priv, _ = generate_keypair()
    ts = datetime.now(UTC).isoformat()
    sig = sign_request(priv, ts, "GET", "/users/me", b"", subject="user_1")
    assert not verify_signature("", sig, ts, "GET", "/users/me", b"", subject="user_1")


def test_timestamp_valid_naive_rejected() -> None:
    assert not is_timestamp_valid("2026-01-01T00:00:00", 30)


def test_timestamp_valid_garbage_rejected() -> None:
    assert not is_timestamp_valid("not-a-date", 30)
    assert not is_timestamp_valid("", 30)


def test_timestamp_valid_in_window() -> None:
    assert is_timestamp_valid(datetime.now(UTC).isoformat(), 30)


def test_timestamp_valid_expired() -> None:
    ts = (datetime.now(UTC) - timedelta(seconds=60)).isoformat()
    assert not is_timestamp_valid(ts, 30)


def test_generate_nonce_format() -> None:
    n = generate_nonce()
    assert len(n) == 32
    bytes.fromhex(n)


def test_generate_nonce_unique() -> None:
    nonces = {generate_nonce() for _ in range(100)}
    assert len(nonces) == 100
