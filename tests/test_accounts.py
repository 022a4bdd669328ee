import stripe

from accounts import accounts
from shared import discord


def seed_user_data(db, user_id):
    for table in accounts.USER_DATA_TABLES:
        db.tables.setdefault(table, []).append({"user_id": user_id})


def test_delete_account_purges_everything(db, monkeypatch):
    cancelled = []
    monkeypatch.setattr(stripe.Subscription, "cancel", lambda sid: cancelled.append(sid))
    db.add_user("u1", "a@example.com", stripe_subscription_id="sub_1")
    db.add_user("u2", "b@example.com")
    seed_user_data(db, "u1")
    seed_user_data(db, "u2")

    body, status = accounts.delete_account({"user_id": "u1", "email": "a@example.com"})

    assert status == 200
    assert body["success"] is True
    assert cancelled == ["sub_1"]
    assert [u["id"] for u in db.tables["users"]] == ["u2"]
    for table in accounts.USER_DATA_TABLES:
        assert db.tables[table] == [{"user_id": "u2"}]
    assert db.auth.admin.deleted == ["u1"]


def test_delete_account_refuses_other_users(db):
    body, status = accounts.delete_account({"user_id": "u1", "email": "a@example.com"}, "u2")
    assert status == 403
    assert body["error"] == "You can only delete your own account"


def test_delete_account_refuses_admins(db):
    db.add_user("admin", "boss@example.com", is_admin=True)
    body, status = accounts.delete_account({"user_id": "admin", "email": "boss@example.com"})
    assert status == 403
    assert db.tables["users"]


def test_delete_account_reports_pending_auth_cleanup(db):
    db.add_user("u1", "a@example.com")
    db.auth.admin.error = RuntimeError("auth api down")
    body, status = accounts.delete_account({"user_id": "u1", "email": "a@example.com"})
    assert status == 200
    assert body["warning"] == "Profile deleted but auth cleanup pending"


def test_cancel_stripe_subscription_tolerates_missing(monkeypatch):
    def gone(sid):
        raise stripe.InvalidRequestError("No such subscription", "id", code="resource_missing")

    monkeypatch.setattr(stripe.Subscription, "cancel", gone)
    accounts.cancel_stripe_subscription("sub_gone")


def test_admin_delete_user(db):
    admin = {"user_id": "admin", "email": "boss@example.com", "is_admin": True}
    db.add_user("admin", "boss@example.com", is_admin=True)
    db.add_user("other-admin", "co@example.com", is_admin=True)
    db.add_user("u1", "a@example.com")

    assert accounts.admin_delete_user(admin, None)[1] == 400
    assert accounts.admin_delete_user(admin, "admin")[1] == 400
    assert accounts.admin_delete_user(admin, "ghost")[1] == 404
    assert accounts.admin_delete_user(admin, "other-admin")[1] == 403

    body, status = accounts.admin_delete_user(admin, "u1")
    assert status == 200
    assert body["message"] == "User a@example.com deleted"
    assert [u["id"] for u in db.tables["users"]] == ["admin", "other-admin"]


def test_create_api_key_requires_enterprise(db):
    db.add_user("u1", "a@example.com", subscription="professional")
    body, status = accounts.create_api_key("u1", "CI")
    assert status == 403
    assert body["error"] == "API access requires Enterprise plan"


def test_api_key_lifecycle(db):
    db.add_user("u1", "a@example.com", subscription="enterprise")

    body, status = accounts.create_api_key("u1", "  CI key  ")
    assert status == 201
    created = body["data"]
    assert created["key"].startswith("llm_sk_")
    assert created["keyPrefix"] == created["key"][:12]
    stored = db.tables["api_keys"][0]
    assert stored["name"] == "CI key"
    assert "key" not in stored
    assert stored["key_hash"] != created["key"]

    body, status = accounts.list_api_keys("u1")
    assert status == 200
    assert [k["keyPrefix"] for k in body["data"]] == [created["keyPrefix"]]
    assert "key" not in body["data"][0]

    assert accounts.revoke_api_key("u2", created["id"])[1] == 404
    assert accounts.revoke_api_key("u1", created["id"])[1] == 200
    assert db.tables["api_keys"][0]["revoked_at"]


def test_notify_admin_lead_validates(db):
    assert accounts.notify_admin_lead({"email": "a@example.com"})[1] == 400
    body, status = accounts.notify_admin_lead({"email": "a@example.com", "type": "spam"})
    assert status == 400
    assert body["error"] == "Invalid type: spam"


def test_notify_admin_lead_saves_free_report(db, monkeypatch):
    sent = []
    monkeypatch.setenv("DISCORD_LEADS_WEBHOOK", "https://discord.test/hook")
    monkeypatch.setattr(discord.requests, "post", lambda url, json=None, timeout=None: sent.append((url, json)))

    body, status = accounts.notify_admin_lead({
        "email": "lead@example.com",
        "type": "free_report",
        "website": "example.com",
        "aiScore": 72,
        "citationRate": 33.3,
    })

    assert status == 200
    assert body == {"success": True, "notified": True}
    lead = db.tables["free_report_leads"][0]
    assert lead["is_cited"] is True
    assert lead["competitor_count"] == 0
    url, payload = sent[0]
    embed = payload["embeds"][0]
    assert embed["title"] == "New Free Report Lead: lead@example.com"
    assert {"name": "Citation Rate", "value": "33%", "inline": True} in embed["fields"]


def test_notify_admin_lead_without_webhook(db):
    body, status = accounts.notify_admin_lead({"email": "new@example.com", "type": "signup", "name": "New"})
    assert status == 200
    assert body["notified"] is False
    assert "free_report_leads" not in db.tables
