import json
from decimal import Decimal
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

import referral_ledger.api as api_module
from referral_ledger.api import create_app
from referral_ledger.exceptions import UpstreamProviderError
from referral_ledger.storage import InMemoryStorage

VALID_SIGNATURE = "valid-signature"


@pytest.fixture
def client(settings, provider):
    app = create_app(settings=settings, storage=InMemoryStorage(), payment_provider=provider)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def users(client):
    referrer_id, referred_id = uuid4(), uuid4()
    referrer = client.post("/accounts", json={"email": "r@example.com", "user_id": str(referrer_id)}).json()
    client.post("/accounts", json={"email": "u@example.com", "user_id": str(referred_id)})
    return referrer, str(referred_id)


def as_user(user_id):
    return {"X-User-Id": str(user_id)}


def signup(client, referrer, referred_id, tier="tier-monthly", amount="20.00"):
    return client.post(
        "/referrals",
        json={"referral_code": referrer["referral_code"], "subscription_tier": tier, "subscription_amount": amount},
        headers=as_user(referred_id),
    )


def post_event(client, event, signature=VALID_SIGNATURE):
    return client.post(
        "/webhooks/stripe",
        content=json.dumps(event),
        headers={"Stripe-Signature": signature, "Content-Type": "application/json"},
    )


def first_invoice_event(referrer, referred_id, payment_intent, event_id="evt_inv"):
    return {
        "id": event_id,
        "type": "invoice.paid",
        "data": {"object": {
            "id": "in_1",
            "billing_reason": "subscription_create",
            "payment_intent": payment_intent,
            "subscription": "sub_1",
            "amount_paid": 2000,
            "subscription_details": {"metadata": {
                "userId": referred_id,
                "tierId": "tier-monthly",
                "referralCode": referrer["referral_code"],
            }},
        }},
    }


def pay_first_invoice(client, referrer, referred_id, payment_intent):
    return post_event(client, first_invoice_event(referrer, referred_id, payment_intent))


class TestSystem:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_no_app_built_at_import(self):
        assert not hasattr(api_module, "app")


class TestAccountEndpoints:
    """Tests for account routes."""

    def test_create_and_fetch(self, client):
        user_id = uuid4()

        created = client.post("/accounts", json={"email": "a@example.com", "user_id": str(user_id)})
        me = client.get("/accounts/me", headers=as_user(user_id))

        assert created.status_code == 201
        assert me.status_code == 200
        assert me.json()["referral_code"] == created.json()["referral_code"]

    def test_duplicate_email_conflict(self, client, users):
        response = client.post("/accounts", json={"email": "r@example.com"})

        assert response.status_code == 409
        assert response.json()["error"] == "DuplicateAccountError"

    def test_identity_required(self, client):
        assert client.get("/accounts/me").status_code == 422
        assert client.get("/accounts/me", headers={"X-User-Id": "not-a-uuid"}).status_code == 401

    def test_unknown_account(self, client):
        assert client.get("/accounts/me", headers=as_user(uuid4())).status_code == 404

    def test_custom_code(self, client, users):
        referrer, _ = users

        ok = client.put("/accounts/me/custom-code", json={"custom_code": "rfriends"}, headers=as_user(referrer["id"]))
        bad = client.put("/accounts/me/custom-code", json={"custom_code": "no"}, headers=as_user(referrer["id"]))

        assert ok.json()["custom_referral_code"] == "RFRIENDS"
        assert bad.status_code == 400
        assert client.get("/referral-codes/rfriends").json()["referrer_id"] == referrer["id"]

    def test_unknown_code(self, client):
        assert client.get("/referral-codes/ZZZZ9999").status_code == 404


class TestReferralEndpoints:
    """Tests for the referral lifecycle over HTTP."""

    def test_signup_payment_and_stats(self, client, users):
        referrer, referred_id = users

        created = signup(client, referrer, referred_id)
        paid = pay_first_invoice(client, referrer, referred_id, "pi_api")
        referral = client.get(f"/referrals/{created.json()['referral']['id']}", headers=as_user(referred_id)).json()
        stats = client.get("/stats", headers=as_user(referrer["id"])).json()

        assert created.status_code == 201
        assert created.json()["referral"]["status"] == "pending"
        assert Decimal(created.json()["referral"]["commission_amount"]) == Decimal("4.00")
        assert paid.json()["outcome"] == "processed"
        assert referral["status"] == "completed"
        assert Decimal(stats["available_balance"]) == Decimal("4.00")
        assert Decimal(stats["stats"]["conversion_rate"]) == Decimal("100.00")

    def test_no_completion_route(self, client, users):
        referrer, referred_id = users
        referral_id = signup(client, referrer, referred_id).json()["referral"]["id"]

        response = client.post(
            f"/referrals/{referral_id}/complete",
            json={"payment_intent_id": "pi_forged"},
            headers=as_user(referred_id),
        )

        assert response.status_code in (404, 405)
        referral = client.get(f"/referrals/{referral_id}", headers=as_user(referrer["id"])).json()
        assert referral["status"] == "pending"
        me = client.get("/accounts/me", headers=as_user(referrer["id"])).json()
        assert Decimal(me["available_balance"]) == Decimal("0.00")

    def test_referral_routes_require_identity(self, client, users):
        referrer, referred_id = users
        referral_id = signup(client, referrer, referred_id).json()["referral"]["id"]
        bad_identity = {"X-User-Id": "not-a-uuid"}

        assert client.get(f"/referrals/{referral_id}").status_code == 422
        assert client.get(f"/referrals/{referral_id}", headers=bad_identity).status_code == 401
        assert client.get(f"/referrals/{referral_id}/refund-eligibility").status_code == 422
        assert client.post(f"/referrals/{referral_id}/fail", json={"reason": "x"}).status_code == 422
        assert client.post(
            f"/referrals/{referral_id}/fail", json={"reason": "x"}, headers=bad_identity
        ).status_code == 401
        assert client.get("/stats").status_code == 422

    def test_outsider_cannot_touch_referral(self, client, users):
        referrer, referred_id = users
        referral_id = signup(client, referrer, referred_id).json()["referral"]["id"]
        outsider = as_user(uuid4())

        assert client.get(f"/referrals/{referral_id}", headers=outsider).status_code == 403
        assert client.get(f"/referrals/{referral_id}/refund-eligibility", headers=outsider).status_code == 403
        failed = client.post(f"/referrals/{referral_id}/fail", json={"reason": "x"}, headers=outsider)

        assert failed.status_code == 403
        referral = client.get(f"/referrals/{referral_id}", headers=as_user(referred_id)).json()
        assert referral["status"] == "pending"

    def test_participant_can_fail_pending(self, client, users):
        referrer, referred_id = users
        referral_id = signup(client, referrer, referred_id).json()["referral"]["id"]

        response = client.post(
            f"/referrals/{referral_id}/fail", json={"reason": "card declined"}, headers=as_user(referred_id)
        )

        assert response.status_code == 200
        assert response.json()["referral"]["status"] == "failed"

    def test_replayed_payment_is_duplicate(self, client, users):
        referrer, referred_id = users
        signup(client, referrer, referred_id)
        pay_first_invoice(client, referrer, referred_id, "pi_api")

        replay = post_event(client, first_invoice_event(referrer, referred_id, "pi_api", event_id="evt_inv_2"))

        assert replay.status_code == 200
        assert replay.json()["outcome"] == "duplicate"
        stats = client.get("/stats", headers=as_user(referrer["id"])).json()
        assert Decimal(stats["available_balance"]) == Decimal("4.00")

    def test_self_referral_conflict(self, client, users):
        referrer, _ = users

        response = signup(client, referrer, referrer["id"])

        assert response.status_code == 409
        assert response.json()["error"] == "SelfReferralError"

    def test_leaderboard(self, client, users):
        referrer, referred_id = users
        signup(client, referrer, referred_id)

        board = client.get("/leaderboard").json()

        assert [entry["user_id"] for entry in board] == [referrer["id"]]


class TestMoneyEndpoints:
    """Tests for refund and payout routes."""

    def test_refund_via_api(self, client, provider, users):
        referrer, referred_id = users
        signup(client, referrer, referred_id)
        pay_first_invoice(client, referrer, referred_id, "pi_r")

        response = client.post("/refunds", json={"payment_intent_id": "pi_r"}, headers=as_user(referred_id))
        metrics = client.get("/refunds/metrics", headers=as_user(referrer["id"])).json()

        assert response.json()["referral"]["status"] == "refunded"
        assert provider.refunds == ["pi_r"]
        assert metrics["total_refunds"] == 1

    def test_refund_requires_identity(self, client, provider, users):
        referrer, referred_id = users
        signup(client, referrer, referred_id)
        pay_first_invoice(client, referrer, referred_id, "pi_r")

        missing = client.post("/refunds", json={"payment_intent_id": "pi_r"})
        malformed = client.post("/refunds", json={"payment_intent_id": "pi_r"}, headers={"X-User-Id": "nobody"})

        assert missing.status_code == 422
        assert malformed.status_code == 401
        assert provider.refunds == []

    def test_only_payer_can_refund(self, client, provider, users):
        referrer, referred_id = users
        signup(client, referrer, referred_id)
        pay_first_invoice(client, referrer, referred_id, "pi_r")

        by_referrer = client.post("/refunds", json={"payment_intent_id": "pi_r"}, headers=as_user(referrer["id"]))
        by_outsider = client.post("/refunds", json={"payment_intent_id": "pi_r"}, headers=as_user(uuid4()))

        assert by_referrer.status_code == 403
        assert by_outsider.status_code == 403
        assert provider.refunds == []
        me = client.get("/accounts/me", headers=as_user(referrer["id"])).json()
        assert Decimal(me["available_balance"]) == Decimal("4.00")

    def test_refund_unknown_payment(self, client, users):
        _, referred_id = users

        response = client.post("/refunds", json={"payment_intent_id": "pi_missing"}, headers=as_user(referred_id))

        assert response.status_code == 404

    def test_provider_failure_maps_to_bad_gateway(self, client, provider, users):
        referrer, referred_id = users
        signup(client, referrer, referred_id)
        pay_first_invoice(client, referrer, referred_id, "pi_r")
        provider.fail_with = UpstreamProviderError("Stripe refund failed", status=402, code="card_declined")

        response = client.post("/refunds", json={"payment_intent_id": "pi_r"}, headers=as_user(referred_id))

        assert response.status_code == 502
        assert response.json()["provider_code"] == "card_declined"

    def test_payout_below_minimum(self, client, users):
        referrer, _ = users
        client.put("/accounts/me/payout-account", json={"account_id": "acct_1"}, headers=as_user(referrer["id"]))

        response = client.post("/payouts", json={"amount": "10.00"}, headers=as_user(referrer["id"]))

        assert response.status_code == 400
        assert response.json()["error"] == "AmountOutOfRangeError"
        me = client.get("/accounts/me", headers=as_user(referrer["id"])).json()
        assert Decimal(me["available_balance"]) == Decimal("0.00")


class TestStripeWebhook:
    """Tests for the webhook endpoint."""

    def test_bad_signature(self, client):
        response = post_event(client, {"id": "evt_1", "type": "invoice.paid"}, signature="forged")

        assert response.status_code == 400

    def test_unhandled_event_acknowledged(self, client):
        response = post_event(client, {"id": "evt_1", "type": "customer.created", "data": {"object": {}}})

        assert response.status_code == 200
        assert response.json()["outcome"] == "ignored"

    def test_initial_invoice(self, client, users):
        referrer, referred_id = users
        event = first_invoice_event(referrer, referred_id, "pi_hook")

        first = post_event(client, event)
        second = post_event(client, event)

        assert first.json()["outcome"] == "processed"
        assert second.status_code == 200
        assert second.json()["outcome"] == "duplicate"

    def test_unknown_subscription_status(self, client, users):
        _, referred_id = users
        post_event(client, {
            "id": "evt_checkout",
            "type": "checkout.session.completed",
            "data": {"object": {
                "id": "cs_1",
                "subscription": "sub_1",
                "metadata": {"userId": referred_id, "tierId": "tier-monthly"},
            }},
        })
        event = {
            "id": "evt_sub",
            "type": "customer.subscription.updated",
            "data": {"object": {"id": "sub_1", "status": "some_new_status", "cancel_at_period_end": True}},
        }

        response = post_event(client, event)

        assert response.status_code == 200
        assert response.json()["outcome"] == "processed"
        me = client.get("/accounts/me", headers=as_user(referred_id))
        assert me.status_code == 200
        assert me.json()["subscription"]["status"] == "active"
        assert me.json()["subscription"]["cancel_at_period_end"] is True
        assert client.get("/leaderboard").status_code == 200

    def test_malformed_event(self, client):
        response = post_event(client, {"id": "evt_1", "type": "charge.refunded", "data": {"object": {}}})

        assert response.status_code == 400

    def test_not_configured(self, settings):
        app = create_app(settings=settings, storage=InMemoryStorage())
        with TestClient(app) as client:
            response = client.post("/webhooks/stripe", content=b"{}", headers={"Stripe-Signature": "x"})

        assert response.status_code == 503
