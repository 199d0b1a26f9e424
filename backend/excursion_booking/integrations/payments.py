from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol

import stripe

PAYMENT_SUCCEEDED = "succeeded"
# PaymentIntent states that may still settle; the booking waits for the webhook.
PAYMENT_IN_FLIGHT = frozenset({"processing", "requires_action", "requires_capture", "requires_confirmation"})


@dataclass(frozen=True)
class PaymentIntent:
    reference: str
    client_secret: str | None
    amount_minor: int
    currency: str


@dataclass(frozen=True)
class PaymentVerification:
    reference: str
    status: str
    amount_minor: int
    currency: str
    metadata: Mapping[str, str] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == PAYMENT_SUCCEEDED

    @property
    def in_flight(self) -> bool:
        return self.status in PAYMENT_IN_FLIGHT


@dataclass(frozen=True)
class PaymentEvent:
    type: str
    reference: str | None
    fully_refunded: bool = False


class WebhookSignatureError(Exception):
    pass


class PaymentAuthorityError(Exception):
    """The payment provider could not be reached or rejected the call."""


class PaymentAuthority(Protocol):
    async def create_charge(
        self,
        *,
        amount_minor: int,
        currency: str,
        metadata: Mapping[str, str],
        receipt_email: str | None,
        description: str,
    ) -> PaymentIntent: ...

    async def retrieve(self, reference: str) -> PaymentVerification: ...

    def parse_webhook(self, payload: bytes, signature: str | None) -> PaymentEvent: ...


class StripePaymentAuthority:
    def __init__(self, *, secret_key: str, webhook_secret: str | None = None) -> None:
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret

    async def create_charge(
        self,
        *,
        amount_minor: int,
        currency: str,
        metadata: Mapping[str, str],
        receipt_email: str | None,
        description: str,
    ) -> PaymentIntent:
        params: dict[str, Any] = {
            "amount": amount_minor,
            "currency": currency,
            "metadata": dict(metadata),
            "description": description,
            "automatic_payment_methods": {"enabled": True},
        }
        if receipt_email:
            params["receipt_email"] = receipt_email
        try:
            intent = await asyncio.to_thread(stripe.PaymentIntent.create, api_key=self.secret_key, **params)
        except stripe.StripeError as exc:
            raise PaymentAuthorityError(str(exc)) from exc
        return PaymentIntent(
            reference=intent.id,
            client_secret=getattr(intent, "client_secret", None),
            amount_minor=int(intent.amount),
            currency=str(intent.currency),
        )

    async def retrieve(self, reference: str) -> PaymentVerification:
        try:
            intent = await asyncio.to_thread(stripe.PaymentIntent.retrieve, reference, api_key=self.secret_key)
        except stripe.InvalidRequestError:
            # Unknown reference: treat it like a payment that never happened.
            return PaymentVerification(reference=reference, status="not_found", amount_minor=0, currency="")
        except stripe.StripeError as exc:
            raise PaymentAuthorityError(str(exc)) from exc
        return PaymentVerification(
            reference=intent.id,
            status=str(intent.status),
            amount_minor=int(intent.amount),
            currency=str(intent.currency),
            metadata={str(key): str(value) for key, value in (getattr(intent, "metadata", None) or {}).items()},
        )

    def parse_webhook(self, payload: bytes, signature: str | None) -> PaymentEvent:
        if not self.webhook_secret:
            raise WebhookSignatureError("webhook secret not configured")
        if not signature:
            raise WebhookSignatureError("missing Stripe-Signature header")
        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as exc:
            raise WebhookSignatureError("invalid webhook signature") from exc
        # Signature verified; read the plain JSON body rather than the StripeObject.
        return event_from_payload(json.loads(payload))


def event_from_payload(event: Mapping[str, Any]) -> PaymentEvent:
    event_type = str(event["type"])
    obj = event["data"]["object"]
    if event_type.startswith("charge."):
        amount = int(obj.get("amount") or 0)
        refunded = int(obj.get("amount_refunded") or 0)
        return PaymentEvent(
            type=event_type,
            reference=obj.get("payment_intent"),
            fully_refunded=bool(obj.get("refunded")) or (amount > 0 and refunded >= amount),
        )
    return PaymentEvent(type=event_type, reference=obj.get("id"))
