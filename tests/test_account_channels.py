import pytest

from realtime.channels import add_user, get_channel, is_channel_loaded


class FakeSocketServer:
    def __init__(self):
        self.left = []
        self.disconnected = []

    def leave_room(self, sid, room, namespace=None):
        self.left.append((sid, room))

    def disconnect(self, sid, namespace=None):
        self.disconnected.append(sid)


class FakeSocketIO:
    def __init__(self):
        self.emitted = []
        self.server = FakeSocketServer()

    def emit(self, event, data, to=None):
        self.emitted.append((event, data, to))


@pytest.fixture
def fake_socketio(app):
    sio = FakeSocketIO()
    app.config["CHANSYNC_SOCKETIO"] = sio
    return sio


def test_channels_page_requires_login(client):
    resp = client.get("/account/channels")

    assert resp.status_code == 200
    assert b"must be" in resp.data
    assert b"My channels" not in resp.data


def test_channels_page_lists_only_own_channels(client, fake_db, login):
    fake_db.add_user("alice", "pw")
    fake_db.add_channel("alicechan", "alice")
    fake_db.add_channel("bobchan", "bob")
    login(client, "alice", "pw")

    resp = client.get("/account/channels")

    assert b"alicechan" in resp.data
    assert b"bobchan" not in resp.data


def test_unknown_channel_action_is_bad_request(client):
    assert client.post("/account/channels", data={"action": "rename", "name": "x"}).status_code == 400


def test_new_channel_missing_name_is_bad_request(client):
    assert client.post("/account/channels", data={"action": "new_channel"}).status_code == 400


def test_new_channel_when_logged_out_shows_nothing(client, fake_db):
    resp = client.post("/account/channels", data={"action": "new_channel", "name": "mine"})

    assert resp.status_code == 200
    assert fake_db.channels == {}


def test_new_channel(client, fake_db, events, login):
    fake_db.add_user("alice", "pw")
    login(client, "alice", "pw")

    resp = client.post("/account/channels", data={"action": "new_channel", "name": "movienight"})

    assert resp.status_code == 200
    assert b"movienight" in resp.data
    assert fake_db.lookup_channel("movienight")["owner"] == "alice"
    assert events.events[-1]["action"] == "channel"
    assert "registered channel movienight" in events.events[-1]["details"]


def test_new_channel_reserved_name(client, fake_db, login):
    fake_db.add_user("alice", "pw")
    login(client, "alice", "pw")

    resp = client.post("/account/channels", data={"action": "new_channel", "name": "admin"})

    assert b"That channel name is reserved" in resp.data
    assert fake_db.channels == {}


def test_new_channel_invalid_name(client, fake_db, login):
    fake_db.add_user("alice", "pw")
    login(client, "alice", "pw")

    resp = client.post("/account/channels", data={"action": "new_channel", "name": "bad name!"})

    assert b"Invalid channel name" in resp.data
    assert fake_db.channels == {}


def test_new_channel_already_registered(client, fake_db, login):
    fake_db.add_user("alice", "pw")
    fake_db.add_channel("taken", "bob")
    login(client, "alice", "pw")

    resp = client.post("/account/channels", data={"action": "new_channel", "name": "taken"})

    assert b"is already registered" in resp.data


def test_new_channel_quota(client, fake_db, login):
    fake_db.add_user("alice", "pw")
    fake_db.add_channel("one", "alice")
    fake_db.add_channel("two", "alice")
    login(client, "alice", "pw")

    resp = client.post("/account/channels", data={"action": "new_channel", "name": "three"})

    assert b"You are not allowed to register more than 2 channels." in resp.data
    assert "three" not in fake_db.channels


def test_new_channel_quota_does_not_apply_to_site_admins(client, fake_db, login):
    fake_db.add_user("root", "pw", rank=255)
    fake_db.add_channel("one", "root")
    fake_db.add_channel("two", "root")
    login(client, "root", "pw")

    client.post("/account/channels", data={"action": "new_channel", "name": "three"})

    assert fake_db.lookup_channel("three")["owner"] == "root"


def test_new_channel_reloads_loaded_channel(client, fake_db, fake_socketio, login):
    fake_db.add_user("alice", "pw")
    login(client, "alice", "pw")
    add_user("movienight", "sid-1", "", registered=False)
    add_user("movienight", "sid-2", "carol", registered=False)

    client.post("/account/channels", data={"action": "new_channel", "name": "movienight"})

    kicks = [(to, data["reason"]) for event, data, to in fake_socketio.emitted if event == "kick"]
    assert sorted(kicks) == [("sid-1", "Channel reloading"), ("sid-2", "Channel reloading")]
    assert sorted(fake_socketio.server.disconnected) == ["sid-1", "sid-2"]
    assert not is_channel_loaded("movienight")


def test_delete_own_channel(client, fake_db, events, login):
    fake_db.add_user("alice", "pw")
    fake_db.add_channel("mine", "alice")
    fake_db.add_channel("keep", "alice")
    login(client, "alice", "pw")

    resp = client.post("/account/channels", data={"action": "delete_channel", "name": "mine"})

    assert "mine" not in fake_db.channels
    assert b"keep" in resp.data
    assert "deleted channel mine" in events.events[-1]["details"]


def test_delete_someone_elses_channel_is_refused(client, fake_db, login):
    fake_db.add_user("alice", "pw")
    fake_db.add_channel("bobchan", "bob")
    fake_db.add_channel("alicechan", "alice")
    login(client, "alice", "pw")

    resp = client.post("/account/channels", data={"action": "delete_channel", "name": "bobchan"})

    assert b"You do not have permission to delete this channel" in resp.data
    assert b"alicechan" in resp.data
    assert "bobchan" in fake_db.channels


def test_site_admin_can_delete_any_channel(client, fake_db, login):
    fake_db.add_user("root", "pw", rank=255)
    fake_db.add_channel("bobchan", "bob")
    login(client, "root", "pw")

    client.post("/account/channels", data={"action": "delete_channel", "name": "bobchan"})

    assert "bobchan" not in fake_db.channels


def test_delete_missing_channel(client, fake_db, login):
    fake_db.add_user("alice", "pw")
    fake_db.add_channel("keep", "alice")
    login(client, "alice", "pw")

    resp = client.post("/account/channels", data={"action": "delete_channel", "name": "ghost"})

    assert b"Channel does not exist" in resp.data
    assert b"keep" not in resp.data
    assert "keep" in fake_db.channels


def test_delete_kicks_everyone_from_loaded_channel(client, fake_db, fake_socketio, login):
    fake_db.add_user("alice", "pw")
    fake_db.add_channel("mine", "alice")
    login(client, "alice", "pw")
    add_user("mine", "sid-9", "dave", registered=True)
    assert get_channel("mine")["registered"] is True

    client.post("/account/channels", data={"action": "delete_channel", "name": "mine"})

    assert ("kick", {"reason": "This channel has been deleted"}, "sid-9") in fake_socketio.emitted
    assert fake_socketio.server.disconnected == ["sid-9"]
    assert not is_channel_loaded("mine")
