from datetime import datetime, timezone

import stripe

from shared.db import get_supabase


PLANS = {
    "starter": {"name": "Starter", "amount": 2900, "analyses": 10, "budget": 2.00},
    "professional": {"name": "Professional", "amount": 9900, "analyses": 50, "budget": 10.00},
    "enterprise": {"name": "Enterprise", "amount": 29900, "analyses": 400, "budget": 200.00},
}
# free and trial accounts are not metered
UNMETERED_PLANS = {"free", "trial"}


def _now_iso():
    return datetime.now(timezone.utc).isoformat()


def plan_amount(plan):
    """Monthly price of ``plan`` in cents, or None for unpaid plans."""
    entry = PLANS.get((plan or "").lower())
    return entry["amount"] if entry else None


def plan_for_amount(amount):
    for key, entry in PLANS.items():
        if entry["amount"] == amount:
            return key
    return None


def analysis_limit(plan):
    """Monthly analysis quota for ``plan``; None means unlimited."""
    plan = (plan or "trial").lower()
    if plan in UNMETERED_PLANS:
        return None
    entry = PLANS.get(plan)
    return entry["analyses"] if entry else 0


def monthly_budget(plan):
    """Monthly provider spend allowed for ``plan`` in USD; None means unlimited."""
    plan = (plan or "trial").lower()
    if plan in UNMETERED_PLANS:
        return None
    entry = PLANS.get(plan)
    return entry["budget"] if entry else 0


def find_or_create_customer(email, user_id=None, name=None):
    existing = stripe.Customer.list(email=email, limit=1)
    if existing.data:
        customer = existing.data[0]
        print("Found existing Stripe customer:", customer.id)
        if name and customer.get("name") != name:
            stripe.Customer.modify(customer.id, name=name)
            print("Updated customer name to:", name)
        return customer

    params = {"email": email, "metadata": {"userId": user_id or "unknown"}}
    if name:
        params["name"] = name
    customer = stripe.Customer.create(**params)
    print("Created new Stripe customer:", customer.id)
    return customer


def create_payment_intent(amount, currency, metadata=None):
    metadata = metadata or {}
    email = metadata.get("email")
    customer_id = None
    if email:
        customer = find_or_create_customer(email, metadata.get("userId"), metadata.get("customerName"))
        customer_id = customer.id

    params = {
        "amount": amount,
        "currency": currency,
        "metadata": metadata,
        "setup_future_usage": "off_session",
        "automatic_payment_methods": {"enabled": True},
    }
    if customer_id:
        params["customer"] = customer_id
    if email:
        params["receipt_email"] = email
    intent = stripe.PaymentIntent.create(**params)
    return {
        "clientSecret": intent.client_secret,
        "amount": intent.amount,
        "currency": intent.currency,
        "metadata": dict(intent.metadata or {}),
    }


def _subscription_summary(subscription, price_id):
    price = subscription["items"]["data"][0]["price"]
    recurring = price.get("recurring") or {}
    return {
        "id": subscription.id,
        "status": subscription.status,
        "current_period_start": subscription.get("current_period_start"),
        "current_period_end": subscription.get("current_period_end"),
        "plan": {
            "id": price_id,
            "amount": price.get("unit_amount"),
            "currency": price.get("currency"),
            "interval": recurring.get("interval"),
        },
    }


def create_subscription(user_id, email, plan, price_id, payment_method_id):
    """Subscribe a card to ``price_id``.

    When the first invoice needs 3-D Secure, ``requiresAction`` is set and
    ``clientSecret`` carries the payment intent secret for the browser.
    """
    customer = find_or_create_customer(email, user_id)
    stripe.PaymentMethod.attach(payment_method_id, customer=customer.id)
    stripe.Customer.modify(customer.id, invoice_settings={"default_payment_method": payment_method_id})

    subscription = stripe.Subscription.create(
        customer=customer.id,
        items=[{"price": price_id}],
        default_payment_method=payment_method_id,
        metadata={"userId": user_id, "plan": plan},
        expand=["latest_invoice.payment_intent"],
    )

    client_secret = None
    requires_action = False
    invoice = subscription.get("latest_invoice")
    intent = invoice.get("payment_intent") if invoice else None
    if intent and intent.get("status") == "requires_action":
        client_secret = intent.get("client_secret")
        requires_action = True

    return {
        "subscription": _subscription_summary(subscription, price_id),
        "requiresAction": requires_action,
        "clientSecret": client_secret,
    }


def create_subscription_after_setup(customer_id, price_id, user_id, plan):
    customer = stripe.Customer.retrieve(customer_id)
    settings = customer.get("invoice_settings") or {}
    default_pm = settings.get("default_payment_method")
    if not default_pm:
        raise ValueError("No default payment method found for customer")

    subscription = stripe.Subscription.create(
        customer=customer_id,
        items=[{"price": price_id}],
        default_payment_method=default_pm,
        metadata={"userId": user_id, "plan": plan},
        expand=["latest_invoice.payment_intent"],
    )

    try:
        get_supabase().table("users").update({
            "stripe_subscription_id": subscription.id,
            "stripe_customer_id": customer_id,
            "subscription": plan,
            "updated_at": _now_iso(),
        }).eq("id", user_id).execute()
    except Exception as e:
        print("Failed to update user subscription:", e)

    return {"subscription": _subscription_summary(subscription, price_id)}


def _cancel_locally(user_id):
    get_supabase().table("users").update({
        "subscription": "trial",
        "cancel_at_period_end": False,
        "subscription_ends_at": None,
        "stripe_subscription_id": None,
        "updated_at": _now_iso(),
    }).eq("id", user_id).execute()


def cancel_subscription(user_id, subscription_id=None):
    """Cancel the user's subscription at the end of the billing period.

    Returns ``(body, status)``. Without a Stripe subscription, or when Stripe
    no longer knows it, the user drops back to ``trial`` immediately.
    """
    supabase = get_supabase()
    try:
        resp = supabase.table("users").select("*").eq("id", user_id).limit(1).execute()
        user = resp.data[0] if resp.data else None
    except Exception as e:
        print("Failed to load user:", e)
        user = None
    if not user:
        return {"error": "User not found"}, 404

    stripe_subscription_id = subscription_id or user.get("stripe_subscription_id")
    if not stripe_subscription_id:
        print("No Stripe subscription id, cancelling locally for", user_id)
        try:
            _cancel_locally(user_id)
        except Exception as e:
            print("Failed to cancel subscription locally:", e)
            return {"error": "Failed to cancel subscription"}, 500
        return {
            "success": True,
            "message": "Subscription cancelled immediately",
            "cancelAtPeriodEnd": False,
            "subscriptionEndsAt": None,
        }, 200

    try:
        subscription = stripe.Subscription.modify(stripe_subscription_id, cancel_at_period_end=True)
    except stripe.InvalidRequestError as e:
        if e.code != "resource_missing":
            print("Stripe error:", e)
            return {"error": "Failed to cancel subscription", "details": str(e)}, 500
        print("Subscription not found in Stripe, cancelling locally")
        try:
            _cancel_locally(user_id)
        except Exception as db_error:
            print("Failed to cancel subscription locally:", db_error)
        return {
            "success": True,
            "message": "Subscription cancelled",
            "cancelAtPeriodEnd": False,
            "subscriptionEndsAt": None,
        }, 200
    except stripe.StripeError as e:
        print("Stripe error:", e)
        return {"error": "Failed to cancel subscription", "details": str(e)}, 500

    period_end = subscription.get("current_period_end")
    ends_at = datetime.fromtimestamp(period_end, tz=timezone.utc).isoformat() if period_end else None
    try:
        supabase.table("users").update({
            "cancel_at_period_end": True,
            "subscription_ends_at": ends_at,
            "updated_at": _now_iso(),
        }).eq("id", user_id).execute()
    except Exception as e:
        # Stripe already accepted the cancellation
        print("Failed to record cancellation:", e)

    return {
        "success": True,
        "message": "Subscription will cancel at end of billing period",
        "cancelAtPeriodEnd": True,
        "subscriptionEndsAt": ends_at,
    }, 200
