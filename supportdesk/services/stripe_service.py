"""Stripe adapter for subscription disputes and subscription checks."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import stripe

logger = logging.getLogger(__name__)

OPEN_DISPUTE_STATUSES = {"needs_response", "warning_needs_response"}


@dataclass
class DisputeSummary:
    """Flattened dispute shape returned to the UI."""

    id: str
    status: str
    reason: str | None
    amount: int
    currency: str
    created: int | None
    due_by: int | None
    charge_id: str | None
    customer_email: str | None
    customer_name: str | None


@dataclass
class DisputeMetrics:
    active_disputes: int
    response_drafts: int
    has_stripe_key: bool


def _field(obj: Any, name: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def summarize_dispute(dispute: Any) -> DisputeSummary:
    charge = _field(dispute, "charge")
    customer = _field(charge, "customer") if not isinstance(charge, str) else None
    billing = _field(charge, "billing_details") if not isinstance(charge, str) else None
    if isinstance(customer, str):
        customer = None
    return DisputeSummary(
        id=str(_field(dispute, "id") or ""),
        status=str(_field(dispute, "status") or ""),
        reason=_field(dispute, "reason"),
        amount=int(_field(dispute, "amount") or 0),
        currency=str(_field(dispute, "currency") or "usd"),
        created=_field(dispute, "created"),
        due_by=_field(_field(dispute, "evidence_details"), "due_by"),
        charge_id=charge if isinstance(charge, str) else _field(charge, "id"),
        customer_email=_field(customer, "email") or _field(billing, "email"),
        customer_name=_field(customer, "name") or _field(billing, "name"),
    )


class StripeService:
    """Lists open disputes with a per-user key; checks subscriptions with the platform key."""

    def __init__(self, *, platform_api_key: str | None = None) -> None:
        self._platform_api_key = platform_api_key

    @property
    def has_platform_key(self) -> bool:
        return bool(self._platform_api_key)

    def list_open_disputes(self, api_key: str) -> list[DisputeSummary]:
        """Disputes still awaiting a response (``needs_response`` / ``warning_needs_response``)."""

        disputes = stripe.Dispute.list(
            api_key=api_key,
            limit=100,
            expand=["data.charge", "data.charge.customer"],
        )
        return [
            summarize_dispute(d)
            for d in _field(disputes, "data") or []
            if _field(d, "status") in OPEN_DISPUTE_STATUSES
        ]

    def dispute_metrics(self, api_key: str | None) -> DisputeMetrics:
        if not api_key:
            return DisputeMetrics(active_disputes=0, response_drafts=0, has_stripe_key=False)
        disputes = self.list_open_disputes(api_key)
        return DisputeMetrics(
            active_disputes=sum(1 for d in disputes if d.status == "needs_response"),
            response_drafts=sum(1 for d in disputes if d.status == "warning_needs_response"),
            has_stripe_key=True,
        )

    def has_active_subscription(self, customer_id: str) -> tuple[bool, dict[str, Any] | None]:
        if not self._platform_api_key:
            raise RuntimeError("STRIPE_SECRET_KEY is not configured.")
        subscriptions = stripe.Subscription.list(
            api_key=self._platform_api_key,
            customer=customer_id,
            status="active",
            limit=1,
        )
        data = list(_field(subscriptions, "data") or [])
        if not data:
            return False, None
        first = data[0]
        return True, {
            "id": _field(first, "id"),
            "status": _field(first, "status"),
            "current_period_end": _field(first, "current_period_end"),
        }
