from datetime import datetime, timedelta, timezone

from flask_jwt_extended import decode_token

from auth_session import cookie_domain, gen_session, password_fingerprint


def test_session_token_carries_rank_and_fingerprint(app, fake_db):
    user = fake_db.add_user("alice", "pw", rank=7)
    expiration = datetime.now(timezone.utc) + timedelta(days=2)

    with app.app_context():
        claims = decode_token(gen_session(user, expiration))
        fingerprint = password_fingerprint(user["password"])

    assert claims["sub"] == "alice"
    assert claims["rank"] == 7
    assert claims["pwv"] == fingerprint
    assert abs(claims["exp"] - int(expiration.timestamp())) <= 2


def test_fingerprint_changes_with_password_hash(app):
    with app.app_context():
        assert password_fingerprint("hash-a") != password_fingerprint("hash-b")
        assert len(password_fingerprint("hash-a")) == 32


def test_cookie_domain():
    settings = {"root_domain": "example.com"}
    assert cookie_domain(settings, host="www.example.com") == ".example.com"
    assert cookie_domain(settings, host="example.com:8080") == ".example.com"
    assert cookie_domain(settings, host="alt.example") is None
    assert cookie_domain({"root_domain": "localhost"}, host="localhost") is None


def test_garbage_cookie_is_ignored(client):
    client.set_cookie("auth", "garbage")

    resp = client.get("/account/channels")

    assert resp.status_code == 200
    assert b"My channels" not in resp.data


def test_session_for_deleted_account_is_ignored(client, fake_db, login):
    fake_db.add_user("alice", "pw")
    login(client, "alice", "pw")
    del fake_db.users["alice"]

    assert b"My channels" not in client.get("/account/channels").data


def test_security_headers(client):
    resp = client.get("/login")

    assert resp.headers["X-Content-Type-Options"] == "nosniff"
    assert resp.headers["X-Frame-Options"] == "DENY"
    assert "Content-Security-Policy" in resp.headers
    assert "script-src 'self';" in resp.headers["Content-Security-Policy"]


def test_socketio_defaults_to_threading(app):
    assert app.config["CHANSYNC_SOCKETIO_ASYNC_MODE"] == "threading"
