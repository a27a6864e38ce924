import os
import sys
from datetime import datetime, timezone
from pathlib import Path

# Socket.IO runs in threading mode under the test client.
os.environ["CHANSYNC_SOCKETIO_ASYNC"] = "threading"
os.environ.setdefault("CHANSYNC_PERSIST_SECRETS", "0")

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest

import auth_session
import database
import routes_account
import routes_auth
import server_init
from database import INVALID_LOGIN, AccountError
from realtime import channels as realtime_channels
from realtime.state import LOADED_CHANNELS


class FakeDB:
    """In-memory stand-in for the Postgres-backed account operations."""

    def __init__(self):
        self.users = {}
        self.channels = {}
        self.resets = {}
        self._next_id = 1
        self._pw_version = 0

    # -- helpers --------------------------------------------------------
    def _hash(self, password):
        self._pw_version += 1
        return f"fake${self._pw_version}${password}"

    def _user(self, name):
        if not isinstance(name, str):
            return None
        return self.users.get(name.lower())

    def add_user(self, name, password, email="", rank=1, ip="127.0.0.1"):
        row = {
            "id": self._next_id,
            "name": name,
            "password": self._hash(password),
            "global_rank": rank,
            "email": email,
            "profile_image": "",
            "profile_text": "",
            "ip": ip,
            "created_at": datetime.now(timezone.utc),
        }
        self._next_id += 1
        self.users[name.lower()] = row
        return row

    def add_channel(self, name, owner):
        row = {"id": self._next_id, "name": name, "owner": owner, "created_at": datetime.now(timezone.utc)}
        self._next_id += 1
        self.channels[name.lower()] = row
        return row

    def password_of(self, name):
        return self._user(name)["password"].split("$", 2)[2]

    # -- database API ---------------------------------------------------
    def get_user(self, name):
        row = self._user(name)
        if row is None:
            raise AccountError("User does not exist")
        return dict(row)

    def verify_login(self, name, password):
        row = self._user(name)
        if row is None or self.password_of(name) != password[:100]:
            raise AccountError(INVALID_LOGIN)
        return dict(row)

    def register_user(self, name, password, email, ip, max_accounts_per_ip=None):
        if not database.is_valid_user_name(name):
            raise AccountError("Invalid username")
        if self._user(name) is not None:
            raise AccountError("Username is already registered")
        if max_accounts_per_ip and sum(1 for u in self.users.values() if u["ip"] == ip) >= max_accounts_per_ip:
            raise AccountError("You have registered too many accounts from this computer.")
        return dict(self.add_user(name, password, email=email, ip=ip))

    def set_password(self, name, password):
        row = self._user(name)
        if row is None:
            raise AccountError("User does not exist")
        row["password"] = self._hash(password)

    def get_email(self, name):
        row = self._user(name)
        if row is None:
            raise AccountError("User does not exist")
        return row["email"] or ""

    def set_email(self, name, email):
        row = self._user(name)
        if row is None:
            raise AccountError("User does not exist")
        row["email"] = email

    def get_profile(self, name):
        row = self._user(name)
        if row is None:
            raise AccountError("User does not exist")
        return {"image": row["profile_image"], "text": row["profile_text"]}

    def set_profile(self, name, profile):
        row = self._user(name)
        if row is None:
            raise AccountError("User does not exist")
        row["profile_image"] = profile["image"][:255]
        row["profile_text"] = profile["text"][:255]

    def list_user_channels(self, owner):
        return [dict(c) for c in self.channels.values() if c["owner"].lower() == owner.lower()]

    def lookup_channel(self, name):
        if not database.is_valid_channel_name(name):
            raise AccountError("Invalid channel name")
        row = self.channels.get(name.lower())
        if row is None:
            raise AccountError("Channel does not exist")
        return dict(row)

    def register_channel(self, name, owner):
        if not name:
            raise AccountError("Channel name must not be empty")
        if not database.is_valid_channel_name(name):
            raise AccountError("Invalid channel name")
        if name.lower() in self.channels:
            raise AccountError(f"Channel '{name}' is already registered")
        return dict(self.add_channel(name, owner))

    def drop_channel(self, name):
        if self.channels.pop(name.lower(), None) is None:
            raise AccountError("Channel does not exist")

    def add_password_reset(self, *, ip, name, email, hash, expire):
        user = self._user(name)
        if user is None:
            raise AccountError("User does not exist")
        for h, row in list(self.resets.items()):
            if row["name"].lower() == name.lower():
                del self.resets[h]
        self.resets[hash] = {"ip": ip, "name": user["name"], "email": email, "hash": hash, "expire": expire}

    def lookup_password_reset(self, hash):
        row = self.resets.get(hash)
        if row is None:
            raise AccountError("Invalid password reset link")
        return dict(row)

    def delete_password_reset(self, hash):
        self.resets.pop(hash, None)


_PATCHED = {
    routes_auth: ("register_user", "verify_login"),
    routes_account: (
        "add_password_reset",
        "delete_password_reset",
        "drop_channel",
        "get_email",
        "get_profile",
        "get_user",
        "list_user_channels",
        "lookup_channel",
        "lookup_password_reset",
        "register_channel",
        "set_email",
        "set_password",
        "set_profile",
        "verify_login",
    ),
    auth_session: ("get_user",),
    realtime_channels: ("lookup_channel",),
}


class EventRecorder:
    def __init__(self):
        self.events = []

    def __call__(self, actor, action, target=None, details=None):
        self.events.append({"actor": actor, "action": action, "target": target, "details": details})

    def actions(self):
        return [e["action"] for e in self.events]


@pytest.fixture
def fake_db(monkeypatch):
    db = FakeDB()
    for module, names in _PATCHED.items():
        for name in names:
            monkeypatch.setattr(module, name, getattr(db, name))
    return db


@pytest.fixture
def events(monkeypatch):
    recorder = EventRecorder()
    monkeypatch.setattr(routes_auth, "log_audit_event", recorder)
    monkeypatch.setattr(routes_account, "log_audit_event", recorder)
    return recorder


@pytest.fixture(autouse=True)
def _clear_loaded_channels():
    LOADED_CHANNELS.clear()
    yield
    LOADED_CHANNELS.clear()


@pytest.fixture
def settings():
    return {
        "server_name": "TestSync",
        "secret_key": "test-secret-key",
        "jwt_secret": "test-jwt-secret-0123456789abcdef0123456789abcdef",
        "root_domain": "localhost",
        "csrf_enabled": False,
        "rate_limit_enabled": False,
        "max_channels_per_user": 2,
        "max_accounts_per_ip": 3,
        "auth_cookie_days": 7,
        "password_reset_hours": 24,
        "public_base_url": "http://localhost",
        "smtp_enabled": False,
    }


@pytest.fixture
def make_app(monkeypatch, fake_db, events):
    monkeypatch.setattr(server_init, "init_db_pool", lambda **kwargs: None)
    monkeypatch.setattr(server_init, "init_database", lambda: None)
    monkeypatch.setattr(server_init, "get_db_identity", lambda: {})

    def _make(settings):
        app, socketio = server_init.create_app(settings)
        app.config["TESTING"] = True
        return app, socketio

    return _make


@pytest.fixture
def app_and_socketio(make_app, settings):
    return make_app(settings)


@pytest.fixture
def app(app_and_socketio):
    return app_and_socketio[0]


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def login():
    def _login(client, name, password):
        resp = client.post("/login", data={"name": name, "password": password})
        assert resp.status_code == 200
        assert b"Logged in as" in resp.data
        return resp

    return _login
