import hashlib
import hmac
import json
import time
from types import SimpleNamespace
from typing import Any

import pytest
import stripe
from excursion_booking.integrations.payments import (
    PaymentAuthorityError,
    StripePaymentAuthority,
    WebhookSignatureError,
    event_from_payload,
)

WEBHOOK_SECRET = "whsec_test"


def _signed(payload: bytes, secret: str = WEBHOOK_SECRET) -> str:
    timestamp = int(time.time())
    signed = f"{timestamp}.".encode() + payload
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def _event(event_type: str, obj: dict[str, Any]) -> bytes:
    return json.dumps({"id": "evt_1", "object": "event", "type": event_type, "data": {"object": obj}}).encode()


def test_payment_intent_events_reference_the_intent() -> None:
    event = event_from_payload({"type": "payment_intent.succeeded", "data": {"object": {"id": "pi_1"}}})
    assert event.type == "payment_intent.succeeded"
    assert event.reference == "pi_1"
    assert not event.fully_refunded


@pytest.mark.parametrize(
    ("charge", "fully_refunded"),
    [
        ({"payment_intent": "pi_1", "amount": 33000, "amount_refunded": 33000, "refunded": True}, True),
        ({"payment_intent": "pi_1", "amount": 33000, "amount_refunded": 16500, "refunded": False}, False),
        ({"payment_intent": "pi_1", "amount": 33000, "amount_refunded": 33000}, True),
    ],
)
def test_charge_refund_events_reference_the_intent(charge: dict[str, Any], fully_refunded: bool) -> None:
    event = event_from_payload({"type": "charge.refunded", "data": {"object": {"id": "ch_1", **charge}}})
    assert event.reference == "pi_1"
    assert event.fully_refunded is fully_refunded


def test_webhook_with_valid_signature_is_parsed() -> None:
    authority = StripePaymentAuthority(secret_key="sk_test", webhook_secret=WEBHOOK_SECRET)
    payload = _event("payment_intent.succeeded", {"id": "pi_1", "object": "payment_intent"})
    event = authority.parse_webhook(payload, _signed(payload))
    assert event.type == "payment_intent.succeeded"
    assert event.reference == "pi_1"


@pytest.mark.parametrize("signature", [None, "", "t=1,v1=deadbeef"])
def test_webhook_with_bad_signature_is_rejected(signature: Any) -> None:
    authority = StripePaymentAuthority(secret_key="sk_test", webhook_secret=WEBHOOK_SECRET)
    payload = _event("payment_intent.succeeded", {"id": "pi_1", "object": "payment_intent"})
    with pytest.raises(WebhookSignatureError):
        authority.parse_webhook(payload, signature)


def test_webhook_signed_with_another_secret_is_rejected() -> None:
    authority = StripePaymentAuthority(secret_key="sk_test", webhook_secret=WEBHOOK_SECRET)
    payload = _event("payment_intent.succeeded", {"id": "pi_1", "object": "payment_intent"})
    with pytest.raises(WebhookSignatureError):
        authority.parse_webhook(payload, _signed(payload, secret="whsec_other"))


def test_webhook_without_configured_secret_is_rejected() -> None:
    authority = StripePaymentAuthority(secret_key="sk_test")
    payload = _event("payment_intent.succeeded", {"id": "pi_1", "object": "payment_intent"})
    with pytest.raises(WebhookSignatureError):
        authority.parse_webhook(payload, _signed(payload))


@pytest.mark.asyncio
async def test_retrieve_maps_intent_fields(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_retrieve(reference: str, **kwargs: Any) -> SimpleNamespace:
        assert kwargs["api_key"] == "sk_test"
        return SimpleNamespace(
            id=reference,
            status="succeeded",
            amount=33000,
            currency="usd",
            metadata={"adults": "2", "session": "09:00"},
        )

    monkeypatch.setattr(stripe.PaymentIntent, "retrieve", fake_retrieve)
    verification = await StripePaymentAuthority(secret_key="sk_test").retrieve("pi_1")
    assert verification.succeeded
    assert verification.amount_minor == 33000
    assert verification.currency == "usd"
    assert verification.metadata == {"adults": "2", "session": "09:00"}


@pytest.mark.asyncio
async def test_retrieve_unknown_reference_is_not_a_success(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_retrieve(reference: str, **kwargs: Any) -> SimpleNamespace:
        raise stripe.InvalidRequestError("No such payment_intent", "intent")

    monkeypatch.setattr(stripe.PaymentIntent, "retrieve", fake_retrieve)
    verification = await StripePaymentAuthority(secret_key="sk_test").retrieve("pi_missing")
    assert not verification.succeeded
    assert not verification.in_flight


@pytest.mark.asyncio
async def test_retrieve_connection_failure_raises_authority_error(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_retrieve(reference: str, **kwargs: Any) -> SimpleNamespace:
        raise stripe.APIConnectionError("network down")

    monkeypatch.setattr(stripe.PaymentIntent, "retrieve", fake_retrieve)
    with pytest.raises(PaymentAuthorityError):
        await StripePaymentAuthority(secret_key="sk_test").retrieve("pi_1")


@pytest.mark.asyncio
async def test_create_charge_passes_amount_and_metadata(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[dict[str, Any]] = []

    def fake_create(**kwargs: Any) -> SimpleNamespace:
        calls.append(kwargs)
        return SimpleNamespace(id="pi_new", client_secret="pi_new_secret", amount=kwargs["amount"], currency="usd")

    monkeypatch.setattr(stripe.PaymentIntent, "create", fake_create)
    intent = await StripePaymentAuthority(secret_key="sk_test").create_charge(
        amount_minor=49500,
        currency="usd",
        metadata={"date": "2030-03-10"},
        receipt_email=None,
        description="Excursion for 3",
    )
    assert intent.reference == "pi_new"
    assert intent.client_secret == "pi_new_secret"
    assert calls[0]["amount"] == 49500
    assert calls[0]["metadata"] == {"date": "2030-03-10"}
    assert "receipt_email" not in calls[0]
