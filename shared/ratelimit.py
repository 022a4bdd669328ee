import hashlib
import math
import threading
import time
from functools import wraps

from flask import g, jsonify, request


RATE_LIMITS = {
    "expensive": {"window_sec": 60, "max_requests": 10},
    "standard": {"window_sec": 60, "max_requests": 30},
    "webhook": {"window_sec": 60, "max_requests": 100},
    # public API, keyed by user id rather than by request
    "api": {"window_sec": 60, "max_requests": 10},
}

# client_id -> {"count": int, "reset_time": float}
_WINDOWS = {}
_LOCK = threading.Lock()
MAX_TRACKED_CLIENTS = 10000


def get_client_id(headers):
    auth_header = headers.get("Authorization")
    if auth_header:
        token_hash = hashlib.sha256(auth_header.encode("utf-8")).hexdigest()[:16]
        return f"user:{token_hash}"
    forwarded = headers.get("X-Forwarded-For", "")
    if forwarded:
        return "ip:" + forwarded.split(",")[0].strip()
    real_ip = headers.get("X-Real-IP")
    if real_ip:
        return f"ip:{real_ip}"
    return "ip:unknown"


def check_rate_limit(client_id, tier="standard", now=None):
    config = RATE_LIMITS[tier]
    now = time.time() if now is None else now
    key = f"{tier}:{client_id}"
    with _LOCK:
        entry = _WINDOWS.get(key)
        if entry and now > entry["reset_time"]:
            del _WINDOWS[key]
            entry = None

        if entry is None:
            reset_time = now + config["window_sec"]
            _WINDOWS[key] = {"count": 1, "reset_time": reset_time}
            return {
                "allowed": True,
                "remaining": config["max_requests"] - 1,
                "reset_time": reset_time,
                "retry_after": None,
            }

        if entry["count"] >= config["max_requests"]:
            return {
                "allowed": False,
                "remaining": 0,
                "reset_time": entry["reset_time"],
                "retry_after": math.ceil(entry["reset_time"] - now),
            }

        entry["count"] += 1
        return {
            "allowed": True,
            "remaining": config["max_requests"] - entry["count"],
            "reset_time": entry["reset_time"],
            "retry_after": None,
        }


def rate_limit_headers(result, tier):
    return {
        "X-RateLimit-Limit": str(RATE_LIMITS[tier]["max_requests"]),
        "X-RateLimit-Remaining": str(result["remaining"]),
        "X-RateLimit-Reset": str(math.ceil(result["reset_time"])),
    }


def rate_limit_exceeded(retry_after):
    body = jsonify({
        "success": False,
        "error": "Rate limit exceeded",
        "message": f"Too many requests. Please try again in {retry_after} seconds.",
        "retryAfter": retry_after,
    })
    return body, 429, {"Retry-After": str(retry_after)}


def rate_limited(tier):
    """Gate a route behind the fixed-window limiter for ``tier``.

    Allowed requests get the X-RateLimit-* headers attached on the way out
    (see ``main.add_cors_headers``).
    """
    def decorator(view):
        @wraps(view)
        def wrapper(*args, **kwargs):
            if len(_WINDOWS) > MAX_TRACKED_CLIENTS:
                cleanup()
            result = check_rate_limit(get_client_id(request.headers), tier)
            if not result["allowed"]:
                print(f"Rate limit exceeded for {request.path}")
                return rate_limit_exceeded(result["retry_after"] or 60)
            g.rate_limit_headers = rate_limit_headers(result, tier)
            return view(*args, **kwargs)
        return wrapper
    return decorator


def cleanup(now=None):
    now = time.time() if now is None else now
    with _LOCK:
        for key in [k for k, v in _WINDOWS.items() if now > v["reset_time"]]:
            del _WINDOWS[key]


def reset():
    with _LOCK:
        _WINDOWS.clear()
