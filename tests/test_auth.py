import config


def test_register_and_login(client):
    res = client.post("/auth/register", json={"name": "Dana", "email": "Dana@Example.com", "password": "secret123"})
    assert res.status_code == 201
    body = res.json()
    assert body["email"] == "dana@example.com"
    assert body["is_public"] is True
    assert body["skills_offered"] == [] and body["verified_skills"] == []
    assert "password_hash" not in body

    res = client.post("/auth/login", json={"email": "dana@example.com", "password": "secret123"})
    assert res.status_code == 200
    token = res.json()["access_token"]
    me = client.get("/me", headers={"Authorization": f"Bearer {token}"}).json()
    assert me["name"] == "Dana"
    assert me["is_admin"] is False


def test_duplicate_email_rejected(client, make_user):
    acct = make_user("Eve")
    res = client.post("/auth/register", json={"name": "Eve2", "email": acct.email, "password": "secret123"})
    assert res.status_code == 400


def test_wrong_password(client, make_user):
    acct = make_user("Finn")
    res = client.post("/auth/login", json={"email": acct.email, "password": "nope-nope"})
    assert res.status_code == 400


def test_bad_token(client):
    assert client.get("/me", headers={"Authorization": "Bearer garbage"}).status_code == 401
    assert client.get("/me").status_code == 401


def test_banned_user_locked_out(client, db, make_user):
    acct = make_user("Gus")
    db["user"].update_one({"email": acct.email}, {"$set": {"is_banned": True}})
    assert client.get("/me", headers=acct.headers).status_code == 403
    res = client.post("/auth/login", json={"email": acct.email, "password": "secret123"})
    assert res.status_code == 403


def test_admin_login_requires_admin_record(client, make_user):
    plain = make_user("Hana")
    res = client.post("/admin/login", json={"email": plain.email, "password": "secret123"})
    assert res.status_code == 403

    admin = make_user("Ivan", admin=True)
    res = client.post("/admin/login", json={"email": admin.email, "password": "secret123"})
    assert res.status_code == 200
    assert res.json()["user"]["is_admin"] is True


def test_admin_emails_bootstrap(client, db, monkeypatch):
    monkeypatch.setattr(config, "ADMIN_EMAILS", ["boss@example.com"])
    res = client.post("/auth/register", json={"name": "Boss", "email": "boss@example.com", "password": "secret123"})
    record = db["admin"].find_one({"_id": res.json()["id"]})
    assert record["email"] == "boss@example.com" and record["created_at"] is not None
