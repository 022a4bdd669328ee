import os


DEFAULT_ALLOWED_ORIGINS = [
    "https://llmsearchinsight.com",
    "https://www.llmsearchinsight.com",
    "http://localhost:5173",
    "http://localhost:3000",
    "http://127.0.0.1:5173",
    "http://127.0.0.1:3000",
]

ALLOWED_HEADERS = "authorization, x-client-info, apikey, content-type"
ALLOWED_METHODS = "GET, POST, PUT, DELETE, OPTIONS"


def allowed_origins():
    extra = [o.strip() for o in (os.environ.get("ALLOWED_ORIGINS") or "").split(",") if o.strip()]
    return DEFAULT_ALLOWED_ORIGINS + extra


def is_origin_allowed(origin):
    if not origin:
        return False
    return origin in allowed_origins() or origin.endswith(".netlify.app")


def cors_headers(origin):
    allowed = origin if is_origin_allowed(origin) else allowed_origins()[0]
    return {
        "Access-Control-Allow-Origin": allowed,
        "Access-Control-Allow-Headers": ALLOWED_HEADERS,
        "Access-Control-Allow-Methods": ALLOWED_METHODS,
        "Access-Control-Max-Age": "86400",
    }


# Stripe and API-key clients call these without a browser origin, and the
# public API is meant to be reachable from anywhere.
PERMISSIVE_PATH_PREFIXES = ("/stripe-webhook", "/api/")

PERMISSIVE_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": ALLOWED_HEADERS + ", stripe-signature",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
}


def is_permissive_path(path):
    return path.startswith(PERMISSIVE_PATH_PREFIXES)
