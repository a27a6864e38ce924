from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

from auth_session import gen_session


def _set_cookie_headers(resp, name):
    return [h for h in resp.headers.getlist("Set-Cookie") if h.startswith(f"{name}=")]


def _cookie_value(resp, name):
    header = _set_cookie_headers(resp, name)[0]
    return header.split(";", 1)[0].split("=", 1)[1]


# -- login ---------------------------------------------------------------

def test_login_sets_auth_and_rank_cookies(client, fake_db):
    fake_db.add_user("alice", "hunter22", rank=2)

    resp = client.post("/login", data={"name": "alice", "password": "hunter22"})

    assert resp.status_code == 200
    assert b"Logged in as alice" in resp.data
    assert _set_cookie_headers(resp, "auth")
    assert _cookie_value(resp, "rank") == "2"


def test_login_is_case_insensitive_on_name(client, fake_db):
    fake_db.add_user("Alice", "hunter22")

    resp = client.post("/login", data={"name": "alice", "password": "hunter22"})

    assert b"Logged in as Alice" in resp.data


def test_login_bad_password_shows_error_and_logs(client, fake_db, events):
    fake_db.add_user("alice", "hunter22")

    resp = client.post("/login", data={"name": "alice", "password": "wrong"})

    assert resp.status_code == 200
    assert b"Invalid username/password combination" in resp.data
    assert not _set_cookie_headers(resp, "auth")
    assert events.actions() == ["loginfail"]
    assert "alice@" in events.events[0]["details"]


def test_login_missing_field_is_bad_request(client):
    assert client.post("/login", data={"name": "alice"}).status_code == 400
    assert client.post("/login", data={"password": "x"}).status_code == 400


def test_login_truncates_long_password(client, fake_db):
    fake_db.add_user("alice", "a" * 100)

    resp = client.post("/login", data={"name": "alice", "password": "a" * 150})

    assert b"Logged in as alice" in resp.data


def test_login_redirects_to_local_target(client, fake_db):
    fake_db.add_user("alice", "hunter22")

    resp = client.post(
        "/login",
        data={"name": "alice", "password": "hunter22", "redirect": "/account/channels"},
    )

    assert resp.status_code == 302
    assert resp.headers["Location"].endswith("/account/channels")
    assert _set_cookie_headers(resp, "auth")


def test_login_does_not_redirect_back_to_login(client, fake_db):
    fake_db.add_user("alice", "hunter22")

    resp = client.post("/login", data={"name": "alice", "password": "hunter22", "redirect": "/login"})

    assert resp.status_code == 200
    assert b"Logged in as alice" in resp.data


def test_login_refuses_foreign_redirect(client, fake_db):
    fake_db.add_user("alice", "hunter22")

    resp = client.post(
        "/login",
        data={"name": "alice", "password": "hunter22", "redirect": "http://evil.example/steal"},
    )

    assert resp.status_code == 200
    assert b"Logged in as alice" in resp.data


def test_login_to_alt_domain_goes_through_shimcookie(make_app, settings, fake_db):
    settings["alt_domains"] = ["alt.example"]
    app, _ = make_app(settings)
    client = app.test_client()
    fake_db.add_user("alice", "hunter22", rank=3)

    resp = client.post(
        "/login",
        data={"name": "alice", "password": "hunter22", "redirect": "http://alt.example/r/lobby"},
    )

    assert resp.status_code == 302
    location = urlparse(resp.headers["Location"])
    assert location.netloc == "alt.example"
    assert location.path == "/shimcookie"
    query = parse_qs(location.query)
    assert query["rank"] == ["3"]
    assert query["redirect"] == ["http://alt.example/r/lobby"]
    assert query["auth"] == [_cookie_value(resp, "auth")]


def test_login_page_when_already_logged_in(client, fake_db, login):
    fake_db.add_user("alice", "hunter22")
    login(client, "alice", "hunter22")

    resp = client.get("/login")

    assert b"already logged in as alice" in resp.data


# -- shim cookie ---------------------------------------------------------

def test_shimcookie_requires_all_params(client):
    assert client.get("/shimcookie?auth=x&rank=1").status_code == 400
    assert client.get("/shimcookie?rank=1&redirect=/").status_code == 400


def test_shimcookie_rejects_bad_token(client):
    resp = client.get("/shimcookie", query_string={"auth": "not-a-token", "rank": "1", "redirect": "/"})
    assert resp.status_code == 400


def test_shimcookie_sets_session(app, client, fake_db):
    user = fake_db.add_user("alice", "hunter22")
    with app.test_request_context():
        token = gen_session(user, datetime.now(timezone.utc) + timedelta(days=1))

    resp = client.get(
        "/shimcookie",
        query_string={"auth": token, "rank": "1", "redirect": "/account/channels"},
    )

    assert resp.status_code == 302
    assert _cookie_value(resp, "auth") == token
    page = client.get("/account/channels")
    assert b"My channels" in page.data


# -- logout --------------------------------------------------------------

def test_logout_clears_session(client, fake_db, login):
    fake_db.add_user("alice", "hunter22")
    login(client, "alice", "hunter22")

    resp = client.get("/logout")

    assert resp.status_code == 200
    assert b"You have been logged out" in resp.data
    assert _set_cookie_headers(resp, "auth")
    assert b"My channels" not in client.get("/account/channels").data


def test_logout_from_foreign_host_bounces_to_shimlogout(client):
    resp = client.get("/logout", base_url="http://other.example")

    assert resp.status_code == 302
    assert resp.headers["Location"].startswith("http://localhost/shimlogout?redirect=")


def test_logout_bounce_uses_configured_domain(make_app, settings):
    settings.update({"public_base_url": "", "root_domain": "chan.example"})
    app, _ = make_app(settings)

    resp = app.test_client().get("/logout", base_url="http://other.example")

    assert resp.headers["Location"].startswith("http://chan.example/shimlogout?redirect=")


def test_shimlogout_requires_redirect(client):
    assert client.get("/shimlogout").status_code == 400


def test_shimlogout_redirects_to_local_target(client):
    resp = client.get("/shimlogout", query_string={"redirect": "/account/edit"})

    assert resp.status_code == 302
    assert resp.headers["Location"].endswith("/account/edit")


# -- register ------------------------------------------------------------

def test_register_creates_account(client, fake_db, events):
    resp = client.post("/register", data={"name": "bob", "password": "pw123", "email": "bob@example.com"})

    assert resp.status_code == 200
    assert b"Thanks for registering, bob" in resp.data
    assert fake_db.get_user("bob")["email"] == "bob@example.com"
    assert events.actions() == ["register"]
    assert "bob <bob@example.com>" in events.events[0]["details"]


def test_register_without_email(client, fake_db):
    resp = client.post("/register", data={"name": "bob", "password": "pw123"})

    assert b"Thanks for registering" in resp.data
    assert fake_db.get_email("bob") == ""


def test_register_missing_field_is_bad_request(client):
    assert client.post("/register", data={"name": "bob"}).status_code == 400


def test_register_validation_errors(client, fake_db):
    cases = [
        ({"name": "", "password": "pw"}, b"Username must not be empty"),
        ({"name": "admin", "password": "pw"}, b"That username is reserved"),
        ({"name": "bob", "password": ""}, b"Password must not be empty"),
        ({"name": "bob", "password": "pw", "email": "not-an-email"}, b"Invalid email address"),
    ]
    for data, message in cases:
        resp = client.post("/register", data=data)
        assert message in resp.data
    assert fake_db.users == {}


def test_register_duplicate_name(client, fake_db):
    fake_db.add_user("bob", "pw")

    resp = client.post("/register", data={"name": "BOB", "password": "pw2"})

    assert b"Username is already registered" in resp.data


def test_register_per_ip_quota(client, fake_db):
    for name in ("one", "two", "three"):
        fake_db.add_user(name, "pw", ip="127.0.0.1")

    resp = client.post("/register", data={"name": "four", "password": "pw"})

    assert b"too many accounts" in resp.data


def test_register_page_when_logged_in(client, fake_db, login):
    fake_db.add_user("alice", "hunter22")
    login(client, "alice", "hunter22")

    resp = client.get("/register")

    assert b"already logged in as alice" in resp.data


# -- CSRF ----------------------------------------------------------------

def test_forms_reject_missing_csrf_token(make_app, settings, fake_db):
    settings["csrf_enabled"] = True
    app, _ = make_app(settings)
    client = app.test_client()
    fake_db.add_user("alice", "hunter22")

    assert client.post("/login", data={"name": "alice", "password": "hunter22"}).status_code == 400
    assert client.post("/register", data={"name": "bob", "password": "pw"}).status_code == 400
    assert client.post("/account/edit", data={"action": "change_email"}).status_code == 400
