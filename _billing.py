#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
_billing.py

Premium tier plumbing: Stripe checkout / customer portal and the Supabase
``subscribers`` table that mirrors each user's subscription state.

Every public call takes the raw ``Authorization`` header of the request; the
bearer token is resolved to a Supabase user first and the user's e-mail is the
join key towards Stripe.
"""

from __future__ import annotations
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import stripe
from supabase import Client, create_client

from _base import AuthError, BillingError, ConfigError, Logger as LoggerProto
from _logging import log as default_log

PRODUCT_NAME = "Premium Subscription"
PRODUCT_DESCRIPTION = "Access to all premium features"
PREMIUM_TIER = "Premium"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _field(obj: Any, name: str, default: Any = None) -> Any:
    # Stripe/Supabase objects expose attributes; plain dicts are accepted too
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


class Billing:
    def __init__(
        self,
        stripe_key: Optional[str],
        supabase_url: Optional[str],
        supabase_key: Optional[str],
        *,
        price_cents: int = 999,
        currency: str = "usd",
        stripe_module: Any = None,
        supabase_client: Optional[Client] = None,
        logger: Optional[LoggerProto] = None,
    ) -> None:
        self.stripe_key = (stripe_key or "").strip()
        self.supabase_url = (supabase_url or "").strip()
        self.supabase_key = (supabase_key or "").strip()
        self.price_cents = int(price_cents)
        self.currency = (currency or "usd").lower()
        self._stripe = stripe_module or stripe
        self._db: Optional[Client] = supabase_client
        self._log = (logger or default_log).child("billing")

    # ---- clients ----
    def _stripe_api(self) -> Any:
        if not self.stripe_key:
            raise ConfigError("STRIPE_SECRET_KEY environment variable is not set")
        self._stripe.api_key = self.stripe_key
        return self._stripe

    def _supabase(self) -> Client:
        if self._db is None:
            if not (self.supabase_url and self.supabase_key):
                raise ConfigError("SUPABASE_URL / SUPABASE_SERVICE_ROLE_KEY are not set")
            self._db = create_client(self.supabase_url, self.supabase_key)
        return self._db

    # ---- auth ----
    def authenticate(self, authorization: Optional[str]) -> Any:
        if not authorization:
            raise AuthError("No authorization header provided")
        token = authorization.replace("Bearer ", "", 1).strip()
        if not token:
            raise AuthError("No authorization header provided")
        db = self._supabase()
        try:
            resp = db.auth.get_user(token)
        except Exception as e:
            raise AuthError(f"Authentication error: {e}") from e
        user = _field(resp, "user", None) if resp is not None else None
        if not user or not _field(user, "email"):
            raise AuthError("User not authenticated or email not available")
        self._log.debug(f"authenticated {_field(user, 'email')}")
        return user

    # ---- stripe helpers ----
    def _customer_id(self, api: Any, email: str) -> Optional[str]:
        try:
            customers = api.Customer.list(email=email, limit=1)
        except stripe.StripeError as e:
            raise BillingError(f"Stripe customer lookup failed: {e.user_message or e}") from e
        data = _field(customers, "data", []) or []
        return _field(data[0], "id") if data else None

    # ---- checkout / portal ----
    def create_checkout(self, authorization: Optional[str], origin: str) -> Dict[str, str]:
        user = self.authenticate(authorization)
        api = self._stripe_api()
        email = _field(user, "email")
        customer = self._customer_id(api, email)
        base = (origin or "").rstrip("/")
        try:
            session = api.checkout.Session.create(
                customer=customer,
                customer_email=None if customer else email,
                line_items=[
                    {
                        "price_data": {
                            "currency": self.currency,
                            "product_data": {"name": PRODUCT_NAME, "description": PRODUCT_DESCRIPTION},
                            "unit_amount": self.price_cents,
                            "recurring": {"interval": "month"},
                        },
                        "quantity": 1,
                    }
                ],
                mode="subscription",
                success_url=f"{base}/success?payment=success",
                cancel_url=f"{base}/premium?payment=cancelled",
            )
        except stripe.StripeError as e:
            raise BillingError(f"Stripe checkout error: {e.user_message or e}") from e
        url = _field(session, "url")
        if not url:
            raise BillingError("Stripe did not return a checkout URL")
        self._log.info(f"checkout session created for {email}")
        return {"url": url}

    def customer_portal(self, authorization: Optional[str], origin: str) -> Dict[str, str]:
        user = self.authenticate(authorization)
        api = self._stripe_api()
        customer = self._customer_id(api, _field(user, "email"))
        if not customer:
            raise BillingError("No Stripe customer found for this user")
        try:
            portal = api.billing_portal.Session.create(
                customer=customer,
                return_url=f"{(origin or '').rstrip('/')}/settings",
            )
        except stripe.StripeError as e:
            raise BillingError(f"Stripe portal error: {e.user_message or e}") from e
        return {"url": _field(portal, "url")}

    # ---- subscription ----
    @staticmethod
    def _period_end(sub: Any) -> Optional[str]:
        end = _field(sub, "current_period_end")
        if end is None:
            items = _field(_field(sub, "items", {}), "data", []) or []
            end = _field(items[0], "current_period_end") if items else None
        if end is None:
            return None
        return datetime.fromtimestamp(int(end), timezone.utc).isoformat().replace("+00:00", "Z")

    def check_subscription(self, authorization: Optional[str]) -> Dict[str, Any]:
        user = self.authenticate(authorization)
        api = self._stripe_api()
        email = _field(user, "email")
        customer = self._customer_id(api, email)

        active = None
        if customer:
            try:
                subs = api.Subscription.list(customer=customer, status="active", limit=1)
            except stripe.StripeError as e:
                raise BillingError(f"Stripe subscription lookup failed: {e.user_message or e}") from e
            data = _field(subs, "data", []) or []
            active = data[0] if data else None

        now = _now_iso()
        row = {
            "email": email,
            "user_id": _field(user, "id"),
            "stripe_customer_id": customer,
            "subscribed": active is not None,
            "subscription_tier": PREMIUM_TIER if active is not None else None,
            "subscription_end": self._period_end(active) if active is not None else None,
            "updated_at": now,
        }
        try:
            self._supabase().table("subscribers").upsert(row, on_conflict="email").execute()
        except Exception as e:
            raise BillingError(f"Could not store subscription state: {e}") from e

        self._log.info(f"subscription for {email}: {'active' if active is not None else 'inactive'}")
        return {
            "subscribed": row["subscribed"],
            "subscription_status": "active" if active is not None else "inactive",
            "subscription_tier": row["subscription_tier"],
            "subscription_end": row["subscription_end"],
            "email": email,
            "checked_at": now,
        }

    # ---- profile ----
    def update_profile(
        self, authorization: Optional[str], full_name: Optional[str] = None, avatar_url: Optional[str] = None
    ) -> Dict[str, Any]:
        user = self.authenticate(authorization)
        patch: Dict[str, Any] = {"updated_at": _now_iso()}
        if full_name is not None:
            patch["full_name"] = full_name.strip()
        if avatar_url is not None:
            patch["avatar_url"] = avatar_url.strip() or None
        try:
            self._supabase().table("profiles").update(patch).eq("id", _field(user, "id")).execute()
        except Exception as e:
            raise BillingError(f"Could not update profile: {e}") from e
        return {"ok": True, "profile": {k: v for k, v in patch.items() if k != "updated_at"}}


__all__ = ["Billing", "PRODUCT_NAME", "PREMIUM_TIER"]
