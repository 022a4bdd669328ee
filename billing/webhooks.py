import json
import os
import time
import uuid
from datetime import datetime, timezone

import stripe

from billing.billing import plan_for_amount
from shared.db import get_supabase


SIGNATURE_HEADERS = ("stripe-signature", "x-stripe-signature", "webhook-signature", "x-webhook-signature")


class WebhookError(Exception):
    """Raised for a webhook that cannot be verified or lacks metadata."""

    def __init__(self, message, status=400, details=None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.details = details


def _now_iso():
    return datetime.now(timezone.utc).isoformat()


def dev_bypass_enabled():
    return (
        os.environ.get("ALLOW_WEBHOOK_TEST_BYPASS") == "true"
        and os.environ.get("ENVIRONMENT") == "development"
    )


def find_signature(headers):
    for name in SIGNATURE_HEADERS:
        value = headers.get(name)
        if value:
            return value
    return None


def is_live_mode(headers):
    if headers.get("stripe-mode") == "live" or headers.get("x-stripe-mode") == "live":
        return True
    return (os.environ.get("STRIPE_SECRET_KEY") or "").startswith("sk_live_")


def webhook_secret(live):
    live_secret = os.environ.get("STRIPE_LIVE_WEBHOOK_SECRET")
    if live and live_secret:
        return live_secret
    return os.environ.get("STRIPE_WEBHOOK_SECRET")


def _test_event(body):
    data = body.get("data") or {}
    return {
        "type": body.get("type") or "test_event",
        "id": f"test_{int(time.time() * 1000)}",
        "created": int(time.time()),
        "data": {"object": data.get("object") or {
            "id": f"test_pi_{int(time.time() * 1000)}",
            "metadata": {"userId": "test-user", "plan": "starter"},
            "amount": 2900,
            "currency": "usd",
            "status": "succeeded",
        }},
        "livemode": False,
    }


def read_event(payload, headers):
    """Verify and decode a webhook request into ``(event, live)``.

    The unsigned development bypass only applies outside live mode.
    """
    if isinstance(payload, bytes):
        payload = payload.decode("utf-8")
    live = is_live_mode(headers)
    signature = find_signature(headers)
    bypass = dev_bypass_enabled() and not live

    if not signature and not bypass:
        print("Rejecting webhook without a Stripe signature")
        raise WebhookError(
            "No stripe signature found in headers",
            status=401,
            details="Valid Stripe webhook signature is required. Test bypass is disabled in production.",
        )

    if not signature:
        try:
            return _test_event(json.loads(payload)), live
        except ValueError:
            raise WebhookError("Webhook signature verification failed", details="Invalid test request format")

    secret = webhook_secret(live)
    if not secret:
        print("Missing", "STRIPE_LIVE_WEBHOOK_SECRET" if live else "STRIPE_WEBHOOK_SECRET")
        raise WebhookError("Missing webhook secret", status=500)

    try:
        stripe.WebhookSignature.verify_header(payload, signature, secret)
        return json.loads(payload), live
    except (stripe.SignatureVerificationError, ValueError) as e:
        print("Webhook signature verification failed:", e)
        if bypass:
            try:
                body = json.loads(payload)
                return {
                    "type": body.get("type") or "test_event",
                    "id": f"test_{int(time.time() * 1000)}",
                    "data": {"object": body},
                    "livemode": False,
                }, live
            except ValueError:
                pass
        raise WebhookError("Webhook signature verification failed", details=str(e))


def _is_admin(supabase, user_id):
    resp = supabase.table("users").select("is_admin").eq("id", user_id).limit(1).execute()
    return bool(resp.data and resp.data[0].get("is_admin"))


def _log_payment_event(supabase, row):
    try:
        supabase.table("payment_logs").insert(row).execute()
    except Exception as e:
        print("Failed to log payment event:", e)


def handle_checkout_completed(session, live):
    metadata = session.get("metadata") or {}
    user_id = metadata.get("userId") or session.get("client_reference_id")
    plan = metadata.get("plan")
    if not user_id or not plan:
        raise WebhookError("Missing required metadata", details="userId and plan are required in checkout session metadata")
    if session.get("payment_status") != "paid":
        print("Checkout session not paid yet:", session.get("id"))
        return

    supabase = get_supabase()
    if _is_admin(supabase, user_id):
        print("Skipping admin user", user_id)
        return

    supabase.table("users").update({
        "subscription": plan,
        "payment_method_added": True,
        "stripe_customer_id": session.get("customer"),
        "stripe_subscription_id": session.get("subscription"),
        "cancel_at_period_end": False,
        "subscription_ends_at": None,
        "updated_at": _now_iso(),
    }).eq("id", user_id).execute()

    _log_payment_event(supabase, {
        "event_type": "checkout.session.completed",
        "event_id": session.get("id"),
        "payment_intent_id": session.get("payment_intent"),
        "subscription_id": session.get("subscription"),
        "user_id": user_id,
        "amount": session.get("amount_total"),
        "currency": session.get("currency"),
        "status": session.get("payment_status"),
        "live_mode": live,
        "metadata": metadata,
    })


def _record_payment(supabase, user_id, intent_id, plan, amount, currency, live):
    supabase.table("payments").upsert({
        "user_id": user_id,
        "stripe_payment_intent_id": intent_id,
        "plan": plan,
        "amount": amount,
        "currency": currency,
        "status": "succeeded",
        "created_at": _now_iso(),
        "live_mode": live,
        "webhook_event_id": str(uuid.uuid4()),
    }, on_conflict="stripe_payment_intent_id").execute()


def handle_payment_succeeded(intent, live):
    metadata = intent.get("metadata") or {}
    user_id = metadata.get("userId")
    plan = metadata.get("plan")
    amount = intent.get("amount") or 0
    currency = intent.get("currency") or "usd"
    supabase = get_supabase()

    manual = not user_id or not plan
    if manual:
        user_id = intent.get("client_reference_id")
        if not user_id:
            print("Missing userId or plan in payment intent metadata:", list(metadata))
            raise WebhookError("Missing required metadata", details="userId and plan are required in payment intent metadata")

    if _is_admin(supabase, user_id):
        print("Skipping admin user", user_id)
        return

    if manual:
        plan = plan or "starter"
        supabase.table("users").update({
            "subscription": plan,
            "payment_method_added": True,
            "updated_at": _now_iso(),
        }).eq("id", user_id).execute()
        _record_payment(supabase, user_id, f"manual_{int(time.time() * 1000)}", plan, amount, currency, live)
        return

    # The amount charged is authoritative over the metadata plan.
    final_plan = plan_for_amount(amount) or plan

    supabase.table("users").update({
        "subscription": final_plan,
        "payment_method_added": True,
        "updated_at": _now_iso(),
    }).eq("id", user_id).execute()

    try:
        _record_payment(supabase, user_id, intent.get("id"), final_plan, amount, currency, live)
    except Exception as e:
        print("Error recording payment:", e)

    _log_payment_event(supabase, {
        "event_type": "payment_intent.succeeded",
        "event_id": str(uuid.uuid4()),
        "payment_intent_id": intent.get("id"),
        "user_id": user_id,
        "amount": amount,
        "currency": currency,
        "status": "succeeded",
        "live_mode": live,
        "metadata": metadata,
    })


def handle_subscription_change(subscription, live):
    metadata = subscription.get("metadata") or {}
    user_id = metadata.get("userId")
    if not user_id:
        raise WebhookError("Missing userId in subscription metadata")

    supabase = get_supabase()
    if _is_admin(supabase, user_id):
        print("Skipping admin user", user_id)
        return

    if subscription.get("status") in ("active", "trialing"):
        plan = metadata.get("plan") or "starter"
    else:
        plan = "free"
    period_end = subscription.get("current_period_end")

    supabase.table("users").update({
        "subscription": plan,
        "current_period_end": datetime.fromtimestamp(period_end, tz=timezone.utc).isoformat() if period_end else None,
        "updated_at": _now_iso(),
    }).eq("id", user_id).execute()

    _log_payment_event(supabase, {
        "event_type": "customer.subscription.updated",
        "event_id": str(uuid.uuid4()),
        "subscription_id": subscription.get("id"),
        "user_id": user_id,
        "status": subscription.get("status"),
        "live_mode": live,
        "metadata": metadata,
    })


def handle_subscription_deleted(subscription, live):
    metadata = subscription.get("metadata") or {}
    user_id = metadata.get("userId")
    if not user_id:
        raise WebhookError("Missing userId in subscription metadata")

    supabase = get_supabase()
    if _is_admin(supabase, user_id):
        print("Skipping admin user", user_id)
        return

    supabase.table("users").update({
        "subscription": "trial",
        "cancel_at_period_end": False,
        "subscription_ends_at": None,
        "stripe_subscription_id": None,
        "updated_at": _now_iso(),
    }).eq("id", user_id).execute()

    _log_payment_event(supabase, {
        "event_type": "customer.subscription.deleted",
        "event_id": str(uuid.uuid4()),
        "subscription_id": subscription.get("id"),
        "user_id": user_id,
        "status": "cancelled",
        "live_mode": live,
        "metadata": metadata,
    })


def handle_payment_failed(invoice, live):
    customer_id = invoice.get("customer")
    try:
        customer = stripe.Customer.retrieve(customer_id)
        if customer.get("deleted"):
            print("Customer was deleted:", customer_id)
            return
        user_id = (customer.get("metadata") or {}).get("userId")
        if not user_id:
            print("No userId in customer metadata for", customer_id)
            return

        intent_id = invoice.get("payment_intent")
        subscription_id = invoice.get("subscription")
        supabase = get_supabase()
        supabase.table("payments").insert({
            "user_id": user_id,
            "stripe_payment_intent_id": str(intent_id) if intent_id else None,
            "stripe_subscription_id": str(subscription_id) if subscription_id else None,
            "amount": invoice.get("amount_due"),
            "currency": invoice.get("currency"),
            "status": "failed",
            "created_at": _now_iso(),
            "live_mode": live,
            "webhook_event_id": str(uuid.uuid4()),
        }).execute()
        _log_payment_event(supabase, {
            "event_type": "invoice.payment_failed",
            "event_id": str(uuid.uuid4()),
            "payment_intent_id": str(intent_id) if intent_id else None,
            "subscription_id": str(subscription_id) if subscription_id else None,
            "user_id": user_id,
            "amount": invoice.get("amount_due"),
            "currency": invoice.get("currency"),
            "status": "failed",
            "live_mode": live,
            "error_message": "Payment failed",
            "metadata": {"customerId": customer_id},
        })
    except Exception as e:
        # A failed invoice never fails the webhook.
        print("Error handling payment failure:", e)


HANDLERS = {
    "checkout.session.completed": handle_checkout_completed,
    "payment_intent.succeeded": handle_payment_succeeded,
    "customer.subscription.created": handle_subscription_change,
    "customer.subscription.updated": handle_subscription_change,
    "customer.subscription.deleted": handle_subscription_deleted,
    "invoice.payment_failed": handle_payment_failed,
}


def dispatch(event, live=False):
    event_type = event.get("type") or "unknown"
    live = live or bool(event.get("livemode"))
    handler = HANDLERS.get(event_type)
    if handler is None:
        print("Unhandled webhook event type:", event_type)
    else:
        print(f"Processing {event_type} ({event.get('id')})")
        handler((event.get("data") or {}).get("object") or {}, live)
    return {
        "received": True,
        "eventType": event_type,
        "eventId": event.get("id") or "unknown",
        "liveMode": live,
    }


def handle_webhook(payload, headers):
    """Verify, dispatch and answer one Stripe webhook as ``(body, status)``."""
    try:
        event, live = read_event(payload, headers)
    except WebhookError as e:
        body = {"error": e.message}
        if e.details:
            body["details" if e.status != 401 else "message"] = e.details
        return body, e.status

    if event.get("type") == "test_event" and dev_bypass_enabled() and not live:
        return {
            "received": True,
            "message": "[DEV ONLY] Test event processed successfully",
            "eventType": event["type"],
            "eventId": event["id"],
        }, 200

    try:
        return dispatch(event, live), 200
    except WebhookError as e:
        print("Webhook rejected:", e.message)
        return {"error": e.message, "details": e.details}, e.status
    except Exception as e:
        print("Webhook handler error:", e, event.get("type"), event.get("id"))
        return {"error": "Webhook handler error", "details": str(e)}, 500
