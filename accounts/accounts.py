import os
from datetime import datetime, timezone

import stripe

from shared import discord
from shared.auth import generate_api_key
from shared.db import get_supabase


# child tables first, they reference users
USER_DATA_TABLES = ["fraud_checks", "api_usage", "api_keys", "analyses", "projects", "payments"]
LEAD_TYPES = {"free_report", "signup"}


def _now_iso():
    return datetime.now(timezone.utc).isoformat()


def _user_row(user_id, columns="*"):
    resp = get_supabase().table("users").select(columns).eq("id", user_id).limit(1).execute()
    return resp.data[0] if resp.data else None


def cancel_stripe_subscription(subscription_id):
    try:
        stripe.Subscription.cancel(subscription_id)
        print("Cancelled Stripe subscription", subscription_id)
    except stripe.InvalidRequestError as e:
        if e.code == "resource_missing":
            print("Stripe subscription already gone:", subscription_id)
        else:
            print("Failed to cancel Stripe subscription:", e)
    except stripe.StripeError as e:
        print("Error calling Stripe API:", e)


def purge_user(user_id):
    """Delete every row owned by ``user_id``, then the profile and auth user.

    Returns ``(body, status)``. A failure to remove the auth user after the
    profile is gone is reported as a partial success.
    """
    supabase = get_supabase()
    for table in USER_DATA_TABLES:
        try:
            supabase.table(table).delete().eq("user_id", user_id).execute()
        except Exception as e:
            print(f"Error deleting from {table}:", e)

    try:
        supabase.table("users").delete().eq("id", user_id).execute()
    except Exception as e:
        print("Error deleting user profile:", e)
        return {"success": False, "error": "Failed to delete user profile"}, 500

    try:
        supabase.auth.admin.delete_user(user_id)
    except Exception as e:
        print("Error deleting auth account:", e)
        return {
            "success": True,
            "warning": "Profile deleted but auth cleanup pending",
            "message": "The account data has been deleted.",
        }, 200

    return {"success": True}, 200


def delete_account(identity, requested_user_id=None):
    user_id = identity["user_id"]
    if requested_user_id and requested_user_id != user_id:
        print("User attempted to delete another user's account:", user_id)
        return {"success": False, "error": "You can only delete your own account"}, 403

    try:
        profile = _user_row(user_id, "stripe_subscription_id,stripe_customer_id,is_admin") or {}
    except Exception as e:
        print("Could not fetch user profile:", e)
        profile = {}

    if profile.get("is_admin"):
        return {"success": False, "error": "Admin accounts cannot self-delete. Please contact support."}, 403

    if profile.get("stripe_subscription_id"):
        cancel_stripe_subscription(profile["stripe_subscription_id"])

    body, status = purge_user(user_id)
    if status == 200 and "warning" not in body:
        body["message"] = "Your account and all associated data have been permanently deleted."
    return body, status


def admin_delete_user(admin_identity, target_user_id):
    if not target_user_id:
        return {"success": False, "error": "Missing userIdToDelete"}, 400
    if target_user_id == admin_identity["user_id"]:
        return {"success": False, "error": "Admins cannot delete their own account"}, 400

    try:
        target = _user_row(target_user_id, "id,email,is_admin,stripe_subscription_id")
    except Exception as e:
        print("User lookup failed:", e)
        target = None
    if not target:
        return {"success": False, "error": "User not found"}, 404
    if target.get("is_admin"):
        return {"success": False, "error": "Cannot delete admin accounts"}, 403

    if target.get("stripe_subscription_id"):
        cancel_stripe_subscription(target["stripe_subscription_id"])

    body, status = purge_user(target_user_id)
    if status == 200 and "warning" not in body:
        body["message"] = f"User {target.get('email') or target_user_id} deleted"
    return body, status


def _require_enterprise(user_id):
    try:
        user = _user_row(user_id, "subscription") or {}
    except Exception as e:
        print("Subscription lookup failed:", e)
        user = {}
    return user.get("subscription") == "enterprise"


def create_api_key(user_id, name=None):
    if not _require_enterprise(user_id):
        return {"success": False, "error": "API access requires Enterprise plan"}, 403

    plaintext, key_hash, prefix = generate_api_key()
    resp = get_supabase().table("api_keys").insert({
        "user_id": user_id,
        "name": (name or "Default").strip()[:100],
        "key_hash": key_hash,
        "key_prefix": prefix,
        "created_at": _now_iso(),
    }).execute()
    row = resp.data[0] if resp.data else {}
    return {
        "success": True,
        "data": {
            "id": row.get("id"),
            "name": row.get("name"),
            "keyPrefix": prefix,
            # only ever returned here
            "key": plaintext,
            "createdAt": row.get("created_at"),
        },
    }, 201


def list_api_keys(user_id):
    resp = (
        get_supabase().table("api_keys")
        .select("id,name,key_prefix,created_at,last_used_at,revoked_at")
        .eq("user_id", user_id)
        .order("created_at", desc=True)
        .execute()
    )
    keys = [{
        "id": k.get("id"),
        "name": k.get("name"),
        "keyPrefix": k.get("key_prefix"),
        "createdAt": k.get("created_at"),
        "lastUsedAt": k.get("last_used_at"),
        "revokedAt": k.get("revoked_at"),
    } for k in resp.data or []]
    return {"success": True, "data": keys}, 200


def revoke_api_key(user_id, key_id):
    resp = (
        get_supabase().table("api_keys")
        .update({"revoked_at": _now_iso()})
        .eq("id", key_id)
        .eq("user_id", user_id)
        .execute()
    )
    if not resp.data:
        return {"success": False, "error": "API key not found"}, 404
    return {"success": True}, 200


def _lead_fields(body):
    fields = [discord.field("Email", body["email"])]
    if body["type"] == "free_report":
        citation_rate = body.get("citationRate")
        fields += [
            discord.field("Website", body.get("website") or "N/A"),
            discord.field("AI Score", body.get("aiScore") if body.get("aiScore") is not None else "N/A"),
            discord.field("Citation Rate", f"{round(citation_rate)}%" if citation_rate else "N/A"),
            discord.field("Industry", body.get("industry") or "N/A"),
        ]
    else:
        fields.insert(0, discord.field("Name", body.get("name") or "N/A"))
    return fields


def notify_admin_lead(body):
    if not body.get("email") or not body.get("type"):
        return {"success": False, "error": "Missing required fields: email and type"}, 400
    if body["type"] not in LEAD_TYPES:
        return {"success": False, "error": f"Invalid type: {body['type']}"}, 400

    if body["type"] == "free_report":
        try:
            get_supabase().table("free_report_leads").insert({
                "email": body["email"],
                "website": body.get("website") or "",
                "is_cited": bool(body.get("citationRate")),
                "ai_score": body.get("aiScore"),
                "citation_rate": body.get("citationRate"),
                "industry": body.get("industry"),
                "competitor_count": body.get("competitorCount") or 0,
            }).execute()
        except Exception as e:
            print("Failed to save free report lead:", e)

    title = f"New Free Report Lead: {body['email']}" if body["type"] == "free_report" else f"New Account Signup: {body['email']}"
    color = discord.BLUE if body["type"] == "free_report" else discord.GREEN
    sent = discord.send_embed(os.environ.get("DISCORD_LEADS_WEBHOOK"), title, color, _lead_fields(body))
    return {"success": True, "notified": sent}, 200
