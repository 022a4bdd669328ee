from flask import Flask, request, jsonify, g
from dotenv import load_dotenv
import os
import threading
import uuid
from functools import wraps
import stripe

from accounts import accounts
from analyses import analyses
from analyses.analyses import AnalysisError
from billing import billing
from billing.webhooks import handle_webhook
from citations import citations, providers
from crawler.crawler import FetchError, crawl_website
from shared import cors
from shared.auth import AuthError, validate_api_key, verify_admin_from_jwt, verify_user_from_jwt
from shared.ratelimit import check_rate_limit, rate_limit_headers, rate_limited


load_dotenv()


ANALYSIS_JOBS = {}
_JOBS_LOCK = threading.Lock()

STRIPE_SECRET = os.environ.get("STRIPE_SECRET_KEY")
if STRIPE_SECRET:
    stripe.api_key = STRIPE_SECRET

app = Flask(__name__)
app.config["MAX_CONTENT_LENGTH"] = 1024 * 1024


def _body():
    return request.get_json(silent=True) or {}


def _error(error, status, **extra):
    payload = {"success": False, "error": error}
    payload.update(extra)
    return jsonify(payload), status


def _auth_failed(e):
    print(f"Auth failed for {request.path}:", e.message)
    return _error(e.message, e.status)


@app.before_request
def cors_guard():
    if cors.is_permissive_path(request.path):
        if request.method == "OPTIONS":
            return "ok", 200, cors.PERMISSIVE_HEADERS
        return None

    origin = request.headers.get("Origin")
    if request.method == "OPTIONS":
        if origin and not cors.is_origin_allowed(origin):
            print("Blocked preflight from origin:", origin)
            return "Forbidden", 403, {"Content-Type": "text/plain"}
        return "ok", 200, cors.cors_headers(origin)

    # server-to-server calls carry no Origin
    if origin and not cors.is_origin_allowed(origin):
        print("Blocked request from origin:", origin)
        return _error(
            "Origin not allowed",
            403,
            message="This API can only be accessed from authorized domains",
        )
    return None


@app.after_request
def add_cors_headers(response):
    if cors.is_permissive_path(request.path):
        headers = cors.PERMISSIVE_HEADERS
    else:
        headers = cors.cors_headers(request.headers.get("Origin"))
    for key, value in headers.items():
        response.headers.setdefault(key, value)
    for key, value in (g.get("rate_limit_headers") or {}).items():
        response.headers[key] = value
    return response


# -- citations & crawl ------------------------------------------------------

@app.route("/check-citations", methods=["POST"])
@rate_limited("expensive")
def check_citations_route():
    body = _body()
    error = citations.validate_request(body)
    if error:
        return _error(error, 400)

    api_keys = providers.api_keys_from_env()
    missing = citations.missing_key(body["providers"], api_keys)
    if missing:
        return _error(f"Missing API key for {missing}", 500)

    print(f"Checking citations for {body['website']} with {len(body['prompts'])} prompts across {', '.join(body['providers'])}")
    try:
        result = citations.check_citations(
            body["prompts"],
            body["website"],
            body["providers"],
            body.get("brandName"),
            api_keys,
        )
    except Exception as e:
        print("Citation check failed:", e)
        return _error(str(e) or "Unknown error occurred", 500)
    return jsonify({"success": True, "data": result})


@app.route("/crawl-website", methods=["POST"])
@rate_limited("standard")
def crawl_website_route():
    body = _body()
    if not body.get("url"):
        return _error("URL is required", 400)
    try:
        data = crawl_website(body["url"], body.get("keywords") or [])
    except ValueError:
        return _error("Invalid URL format", 400)
    except FetchError as e:
        print("Failed to fetch homepage:", e)
        return _error(str(e), 400)
    except Exception as e:
        print("Crawl error:", e)
        return _error(str(e) or "Unknown error occurred", 500)
    return jsonify({"success": True, "data": data})


# -- billing ----------------------------------------------------------------

@app.route("/create-payment-intent", methods=["POST"])
def create_payment_intent():
    body = _body()
    try:
        result = billing.create_payment_intent(body.get("amount"), body.get("currency"), body.get("metadata"))
    except Exception as e:
        print("Payment intent failed:", e)
        return jsonify({"error": str(e)}), 400
    return jsonify(result)


@app.route("/create-subscription", methods=["POST"])
def create_subscription():
    body = _body()
    try:
        result = billing.create_subscription(
            body.get("userId"),
            body.get("email"),
            body.get("plan"),
            body.get("priceId"),
            body.get("paymentMethodId"),
        )
    except Exception as e:
        print("Create subscription failed:", e)
        return jsonify({"error": str(e)}), 400
    return jsonify(result)


@app.route("/create-subscription-after-setup", methods=["POST"])
def create_subscription_after_setup():
    body = _body()
    try:
        result = billing.create_subscription_after_setup(
            body.get("customerId"),
            body.get("priceId"),
            body.get("userId"),
            body.get("plan"),
        )
    except Exception as e:
        print("Create subscription after setup failed:", e)
        return jsonify({"error": str(e)}), 400
    return jsonify(result)


@app.route("/cancel-subscription", methods=["POST"])
def cancel_subscription():
    try:
        identity = verify_user_from_jwt(request.headers.get("Authorization"))
    except AuthError as e:
        return jsonify({"error": e.message}), e.status
    try:
        body, status = billing.cancel_subscription(identity["user_id"], _body().get("subscriptionId"))
    except Exception as e:
        print("Cancel subscription error:", e)
        return jsonify({"error": "Internal server error", "details": str(e)}), 500
    return jsonify(body), status


@app.route("/stripe-webhook", methods=["POST"])
@rate_limited("webhook")
def stripe_webhook():
    body, status = handle_webhook(request.get_data(), request.headers)
    return jsonify(body), status


# -- accounts ---------------------------------------------------------------

@app.route("/delete-account", methods=["POST"])
def delete_account():
    try:
        identity = verify_user_from_jwt(request.headers.get("Authorization"))
    except AuthError as e:
        return _auth_failed(e)
    try:
        body, status = accounts.delete_account(identity, _body().get("userId"))
    except Exception as e:
        print("Delete account error:", e)
        return _error("Internal server error", 500)
    return jsonify(body), status


@app.route("/admin/delete-user", methods=["POST"])
def admin_delete_user():
    try:
        admin = verify_admin_from_jwt(request.headers.get("Authorization"))
    except AuthError as e:
        return _auth_failed(e)
    try:
        body, status = accounts.admin_delete_user(admin, _body().get("userIdToDelete"))
    except Exception as e:
        print("Delete user error:", e)
        return _error("Internal server error", 500, details=str(e))
    return jsonify(body), status


@app.route("/api-keys", methods=["GET", "POST"])
def api_keys():
    try:
        identity = verify_user_from_jwt(request.headers.get("Authorization"))
    except AuthError as e:
        return _auth_failed(e)
    try:
        if request.method == "POST":
            body, status = accounts.create_api_key(identity["user_id"], _body().get("name"))
        else:
            body, status = accounts.list_api_keys(identity["user_id"])
    except Exception as e:
        print("API key request failed:", e)
        return _error("Failed to process API key request", 500)
    return jsonify(body), status


@app.route("/api-keys/<key_id>", methods=["DELETE"])
def revoke_api_key(key_id):
    try:
        identity = verify_user_from_jwt(request.headers.get("Authorization"))
    except AuthError as e:
        return _auth_failed(e)
    try:
        body, status = accounts.revoke_api_key(identity["user_id"], key_id)
    except Exception as e:
        print("Failed to revoke API key:", e)
        return _error("Failed to revoke API key", 500)
    return jsonify(body), status


@app.route("/notify-admin-lead", methods=["POST"])
def notify_admin_lead():
    try:
        body, status = accounts.notify_admin_lead(_body())
    except Exception as e:
        print("Error in notify-admin-lead:", e)
        return _error(str(e), 500)
    return jsonify(body), status


# -- analyses ---------------------------------------------------------------

def run_analysis_job(job_id, user, url, prompts, brand_name, requested_providers):
    try:
        outcome = analyses.run_analysis(user, url, prompts, brand_name, requested_providers, source="analysis")
        ANALYSIS_JOBS[job_id]["status"] = "done"
        ANALYSIS_JOBS[job_id]["analysis_id"] = outcome["record"]["id"]
        ANALYSIS_JOBS[job_id]["result"] = {
            "analysis": outcome["record"],
            "citationResults": outcome["results"],
            "summary": outcome["summary"],
        }
    except AnalysisError as e:
        ANALYSIS_JOBS[job_id]["status"] = "error"
        ANALYSIS_JOBS[job_id]["error"] = e.message
        analyses.send_analysis_webhook(status="error", reason=e.message[:200], url=url, user_id=user["id"], plan=user.get("subscription"))
    except Exception as e:
        print("Analysis job failed:", e)
        ANALYSIS_JOBS[job_id]["status"] = "error"
        ANALYSIS_JOBS[job_id]["error"] = str(e)
        analyses.send_analysis_webhook(status="error", reason=str(e)[:200], url=url, user_id=user["id"], plan=user.get("subscription"))


@app.route("/analyses", methods=["POST"])
@rate_limited("expensive")
def start_analysis():
    try:
        identity = verify_user_from_jwt(request.headers.get("Authorization"))
    except AuthError as e:
        return _auth_failed(e)

    body = _body()
    url = (body.get("url") or "").strip()
    prompts = body.get("prompts")
    requested = body.get("providers") or analyses.DEFAULT_PROVIDERS
    error = analyses.validate_analysis_request(url, prompts, requested)
    if error:
        return _error(error, 400)

    try:
        user = analyses.load_user(identity["user_id"])
    except Exception as e:
        print("Failed to load user:", e)
        return _error("Failed to load user profile", 500)
    if not user:
        return _error("User not found", 404)

    with _JOBS_LOCK:
        for existing_id, job in ANALYSIS_JOBS.items():
            if job.get("user_id") == user["id"] and job["status"] == "running":
                return _error("An analysis is already running", 409, jobId=existing_id)

        job_id = str(uuid.uuid4())
        ANALYSIS_JOBS[job_id] = {
            "status": "running",
            "result": None,
            "error": None,
            "url": url,
            "user_id": user["id"],
        }

    thread = threading.Thread(
        target=run_analysis_job,
        args=(job_id, user, url, prompts, body.get("brandName"), requested),
    )
    thread.daemon = True
    thread.start()

    return jsonify({"success": True, "jobId": job_id, "status": "running"}), 202


@app.route("/analyses/jobs/<job_id>")
def analysis_status(job_id):
    with _JOBS_LOCK:
        job = ANALYSIS_JOBS.get(job_id)
        # finished jobs are handed out once
        if job and job["status"] in ("done", "error"):
            del ANALYSIS_JOBS[job_id]
    if not job:
        return jsonify({"status": "not_found"}), 404
    resp = {
        "status": job["status"],
        "error": job.get("error"),
        "analysis_id": job.get("analysis_id"),
    }
    if job["status"] == "done":
        resp["result"] = job["result"]
    return jsonify(resp)


# -- public API -------------------------------------------------------------

def api_key_required(view):
    @wraps(view)
    def wrapper(*args, **kwargs):
        try:
            g.api_user = validate_api_key(request.headers.get("Authorization"))
        except AuthError as e:
            return _error(e.message, e.status)

        result = check_rate_limit(f"user:{g.api_user['id']}", "api")
        if not result["allowed"]:
            retry_after = result["retry_after"] or 60
            return jsonify({
                "success": False,
                "error": f"Rate limit exceeded. Try again in {retry_after} seconds.",
            }), 429, {"Retry-After": str(retry_after)}
        g.rate_limit_headers = rate_limit_headers(result, "api")
        return view(*args, **kwargs)
    return wrapper


@app.route("/api/analyze", methods=["POST"])
@api_key_required
def api_analyze():
    body = request.get_json(silent=True)
    if body is None:
        return _error("Invalid JSON body", 400)
    user = g.api_user
    try:
        outcome = analyses.run_analysis(
            user,
            body.get("url"),
            body.get("prompts"),
            body.get("brandName"),
            body.get("providers") or analyses.DEFAULT_PROVIDERS,
        )
    except AnalysisError as e:
        return _error(e.message, e.status)
    except Exception as e:
        print("API Error:", e)
        return _error(str(e) or "Internal server error", 500)
    return jsonify({"success": True, "data": analyses.public_result(outcome["record"], outcome["results"], body)})


@app.route("/api/analyses")
@api_key_required
def api_list_analyses():
    try:
        limit, offset = analyses.parse_page_args(request.args)
    except AnalysisError as e:
        return _error(e.message, e.status)
    try:
        data = analyses.list_analyses(g.api_user["id"], limit, offset)
    except Exception as e:
        print("Failed to list analyses:", e)
        return _error("Failed to retrieve analyses", 500)
    return jsonify({"success": True, "data": data})


@app.route("/api/analyses/<analysis_id>")
@api_key_required
def api_get_analysis(analysis_id):
    try:
        data = analyses.get_analysis(g.api_user["id"], analysis_id)
    except Exception as e:
        print("Failed to load analysis:", e)
        data = None
    if not data:
        return _error("Analysis not found", 404)
    return jsonify({"success": True, "data": data})


@app.errorhandler(404)
def not_found(e):
    return _error("Not found", 404)


@app.errorhandler(405)
def method_not_allowed(e):
    return _error("Method not allowed", 405)


@app.errorhandler(413)
def too_large(e):
    return _error("Request body too large", 413)


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", 1500)))
