import gc


def test_login_is_rate_limited_after_app_factory_returns(make_app, settings, fake_db):
    settings.update({"rate_limit_enabled": True, "rate_limit_login": "2 per minute"})
    app, _ = make_app(settings)
    client = app.test_client()
    fake_db.add_user("alice", "hunter22")
    gc.collect()

    codes = [client.post("/login", data={"name": "alice", "password": "wrong"}).status_code for _ in range(3)]

    assert codes == [200, 200, 429]


def test_limited_account_forms_still_work(make_app, settings, fake_db, login):
    settings["rate_limit_enabled"] = True
    app, _ = make_app(settings)
    client = app.test_client()
    fake_db.add_user("alice", "pw", email="old@example.com")
    gc.collect()

    login(client, "alice", "pw")
    resp = client.post(
        "/account/edit",
        data={"action": "change_email", "name": "alice", "password": "pw", "email": "new@example.com"},
    )

    assert resp.status_code == 200
    assert fake_db.get_email("alice") == "new@example.com"
    assert app.extensions["chansync_limiter"] is not None
