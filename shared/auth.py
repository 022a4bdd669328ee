import hashlib
import secrets
from datetime import datetime, timezone

from shared.db import get_supabase


API_KEY_PREFIX = "llm_sk_"


class AuthError(Exception):
    """Raised when a request cannot be authenticated or authorized."""

    def __init__(self, message, status=401):
        super().__init__(message)
        self.message = message
        self.status = status


def _bearer_token(auth_header):
    if not auth_header or not auth_header.startswith("Bearer "):
        raise AuthError("Missing or invalid Authorization header", 401)
    return auth_header[len("Bearer "):].strip()


def verify_user_from_jwt(auth_header):
    token = _bearer_token(auth_header)
    try:
        response = get_supabase().auth.get_user(token)
    except Exception as e:
        print("JWT verification failed:", e)
        raise AuthError("Invalid or expired token", 401)
    user = getattr(response, "user", None)
    if user is None:
        raise AuthError("Invalid or expired token", 401)
    return {"user_id": user.id, "email": user.email}


def verify_admin_from_jwt(auth_header):
    identity = verify_user_from_jwt(auth_header)
    try:
        resp = get_supabase().table("users").select("is_admin").eq("id", identity["user_id"]).limit(1).execute()
        row = resp.data[0] if resp.data else {}
    except Exception as e:
        print("Admin lookup failed:", e)
        row = {}
    if not row.get("is_admin"):
        raise AuthError("User is not an admin", 403)
    identity["is_admin"] = True
    return identity


def hash_api_key(key: str) -> str:
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def generate_api_key():
    """Return ``(plaintext, key_hash, key_prefix)`` for a new API key.

    The plaintext is shown to the user exactly once; only the hash and the
    display prefix are stored.
    """
    plaintext = API_KEY_PREFIX + secrets.token_hex(24)
    return plaintext, hash_api_key(plaintext), plaintext[:12]


def validate_api_key(auth_header):
    if not auth_header:
        raise AuthError("Missing Authorization header", 401)
    parts = auth_header.split(" ")
    if len(parts) != 2 or parts[0] != "Bearer":
        raise AuthError("Invalid Authorization header format. Use: Bearer <api_key>", 401)
    api_key = parts[1]
    if not api_key.startswith(API_KEY_PREFIX) or len(api_key) < 20:
        raise AuthError("Invalid API key format", 401)

    supabase = get_supabase()
    try:
        resp = (
            supabase.table("api_keys")
            .select("id,user_id,revoked_at,users!inner(id,email,subscription)")
            .eq("key_hash", hash_api_key(api_key))
            .is_("revoked_at", "null")
            .limit(1)
            .execute()
        )
        key_row = resp.data[0] if resp.data else None
    except Exception as e:
        print("API key lookup failed:", e)
        key_row = None
    if not key_row:
        raise AuthError("Invalid or revoked API key", 401)

    user = key_row.get("users") or {}
    if user.get("subscription") != "enterprise":
        raise AuthError("API access requires Enterprise plan", 403)

    try:
        supabase.table("api_keys").update({
            "last_used_at": datetime.now(timezone.utc).isoformat()
        }).eq("id", key_row["id"]).execute()
    except Exception as e:
        print("Failed to update api key last_used_at:", e)

    return {
        "id": user.get("id"),
        "email": user.get("email"),
        "subscription": user.get("subscription"),
        "key_id": key_row["id"],
    }
