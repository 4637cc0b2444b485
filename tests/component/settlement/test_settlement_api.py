"""
Settlement API Component Tests

HTTP surface of the settlement service: routing, status code mapping of
domain errors and webhook signature headers. The engine behind the app is
the mocked one from conftest; the lifespan is not run.

Usage:
    pytest tests/component/settlement/test_settlement_api.py -v
"""

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from microservices.settlement_service import main
from microservices.settlement_service.main import app

from .mocks import WEBHOOK_SIGNATURE, make_webhook_body

pytestmark = [pytest.mark.component, pytest.mark.asyncio]

API = "/api/v1/settlement"


@pytest_asyncio.fixture
async def client(components, monkeypatch):
    """HTTP client against the app wired to the mocked engine"""
    monkeypatch.setattr(main, "components", components)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture
async def uninitialized_client(monkeypatch):
    monkeypatch.setattr(main, "components", None)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


class TestServiceState:
    """Health and initialization"""

    async def test_routes_unavailable_before_startup(self, uninitialized_client):
        response = await uninitialized_client.get(f"{API}/campaigns/camp_1/summary")

        assert response.status_code == 503

    async def test_health_reports_dependencies(self, uninitialized_client):
        response = await uninitialized_client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["service"] == "settlement_service"
        assert body["dependencies"]["database"] == "unhealthy"
        assert body["status"] == "degraded"


class TestCampaignRoutes:
    """Campaign registration and queries"""

    async def test_register_campaign(self, client, data_factory):
        campaign = data_factory.make_campaign()

        response = await client.post(f"{API}/campaigns", json=campaign.model_dump(mode="json"))

        assert response.status_code == 200
        body = response.json()
        assert [m["amount_in_pence"] for m in body] == [40000, 40000, 40000]
        assert body[0]["status"] == "PENDING"

    async def test_unknown_campaign_is_404(self, client):
        response = await client.get(f"{API}/campaigns/camp_missing/summary")

        assert response.status_code == 404
        assert response.json()["error"] == "CampaignNotFoundError"

    async def test_conflicting_schedule_is_409(self, client, seed_campaign):
        campaign, _ = await seed_campaign()

        response = await client.post(
            f"{API}/campaigns/{campaign.id}/milestones", json={"number_of_milestones": 5}
        )

        assert response.status_code == 409

    async def test_campaign_summary(self, client, paid_milestone):
        campaign, _ = await paid_milestone()

        response = await client.get(f"{API}/campaigns/{campaign.id}/summary")

        assert response.status_code == 200
        assert response.json()["outstanding_amount_in_pence"] == 80000

    async def test_edit_milestone_amount(self, client, seed_campaign):
        campaign, milestones = await seed_campaign()

        response = await client.patch(f"{API}/milestones/{milestones[0].id}", json={"amount_in_pence": 50000})

        assert response.status_code == 200
        assert response.json()["amount_in_pence"] == 50000
        schedule = (await client.get(f"{API}/campaigns/{campaign.id}/milestones")).json()
        assert [m["amount_in_pence"] for m in schedule] == [50000, 40000, 30000]

    async def test_edit_that_breaks_schedule_is_400(self, client, seed_campaign):
        campaign, milestones = await seed_campaign()

        response = await client.put(f"{API}/milestones/{milestones[0].id}", json={"amount_in_pence": 90000})

        assert response.status_code == 400
        assert response.json()["error"] == "InvalidAmountError"

    async def test_delete_milestone_cancels_it(self, client, seed_campaign):
        campaign, milestones = await seed_campaign()

        response = await client.delete(f"{API}/milestones/{milestones[1].id}")
        again = await client.delete(f"{API}/milestones/{milestones[1].id}")

        assert response.status_code == 200
        assert response.json()["status"] == "CANCELLED"
        assert again.status_code == 409


class TestChargeRoutes:
    """Charges and their error mapping"""

    async def test_charge_without_saved_method_is_400(self, client, seed_campaign):
        campaign, milestones = await seed_campaign()

        response = await client.post(f"{API}/milestones/{milestones[0].id}/charge")

        assert response.status_code == 400
        assert response.json()["error"] == "PaymentMethodRequiredError"

    async def test_charge_paid_milestone_is_409(self, client, paid_milestone):
        campaign, milestones = await paid_milestone()

        response = await client.post(f"{API}/milestones/{milestones[0].id}/charge")

        assert response.status_code == 409

    async def test_charge_with_saved_method(self, client, seed_campaign, save_card):
        campaign, milestones = await seed_campaign()
        await save_card(campaign.brand_id)

        response = await client.post(f"{API}/milestones/{milestones[0].id}/charge")

        assert response.status_code == 200
        body = response.json()
        assert body["transaction_status"] == "COMPLETED"

        status = await client.get(f"{API}/payments/{body['transaction_reference']}")
        assert status.json()["total_amount_in_pence"] == 40800

    async def test_unknown_payment_is_404(self, client):
        response = await client.get(f"{API}/payments/INF-20260101-00000000")

        assert response.status_code == 404

    async def test_pay_full(self, client, seed_campaign, save_card, mock_repository):
        campaign, milestones = await seed_campaign()
        await save_card(campaign.brand_id)

        response = await client.post(f"{API}/campaigns/{campaign.id}/pay-full", json={"payer_id": campaign.brand_id})

        assert response.status_code == 200
        assert [r["transaction_status"] for r in response.json()] == ["COMPLETED"] * 3
        assert mock_repository.campaigns[campaign.id].paid_amount_in_pence == 120000

    async def test_pay_full_without_saved_method_is_400(self, client, seed_campaign):
        campaign, _ = await seed_campaign()

        response = await client.post(f"{API}/campaigns/{campaign.id}/pay-full", json={"payer_id": campaign.brand_id})

        assert response.status_code == 400
        assert response.json()["error"] == "PaymentMethodRequiredError"


class TestPaymentMethodRoutes:
    """Saved payment methods of a payer"""

    async def test_list_hides_authorization(self, client, save_card, data_factory):
        brand_id = data_factory.make_brand_id()
        card = await save_card(brand_id)

        response = await client.get(f"{API}/payment-methods", params={"user_id": brand_id})

        assert response.status_code == 200
        body = response.json()
        assert [m["id"] for m in body] == [card.id]
        assert body[0]["last4"] == "4242"
        assert body[0]["is_default"] is True
        assert "authorization_code" not in body[0]
        assert card.authorization_code not in response.text

    async def test_set_default_and_delete(self, client, save_card, data_factory, mock_repository):
        brand_id = data_factory.make_brand_id()
        first = await save_card(brand_id)
        second = await save_card(brand_id)

        chosen = await client.post(f"{API}/payment-methods/{first.id}/default", params={"user_id": brand_id})
        removed = await client.delete(f"{API}/payment-methods/{first.id}", params={"user_id": brand_id})

        assert chosen.status_code == 200
        assert chosen.json()["is_default"] is True
        assert removed.status_code == 200
        listed = (await client.get(f"{API}/payment-methods", params={"user_id": brand_id})).json()
        assert [m["id"] for m in listed] == [second.id]
        assert listed[0]["is_default"] is True

    async def test_other_users_method_is_404(self, client, save_card, data_factory):
        card = await save_card(data_factory.make_brand_id())

        response = await client.delete(f"{API}/payment-methods/{card.id}", params={"user_id": "brand_other"})

        assert response.status_code == 404
        assert response.json()["error"] == "PaymentMethodNotFoundError"

    async def test_user_id_required(self, client):
        response = await client.get(f"{API}/payment-methods")

        assert response.status_code == 422


class TestPayoutRoutes:
    """Payout release, balance and withdrawals"""

    async def test_release_by_other_brand_is_403(self, client, paid_milestone, mock_repository):
        campaign, milestones = await paid_milestone()
        payout = await mock_repository.get_payout_by_milestone(milestones[0].id)

        response = await client.post(f"{API}/payouts/{payout.id}/release", json={"brand_id": "brand_other"})

        assert response.status_code == 403

    async def test_balance_requires_currency(self, client):
        response = await client.get(f"{API}/influencers/inf_1/balance")

        assert response.status_code == 422

    async def test_withdrawal_over_balance_is_409(self, client, paid_milestone, mock_repository, data_factory):
        campaign, _ = await paid_milestone()
        account = await mock_repository.create_bank_account(data_factory.make_bank_account(campaign.influencer_id))

        response = await client.post(
            f"{API}/withdrawals",
            json={"influencer_id": campaign.influencer_id, "bank_account_id": account.id, "amount_in_pence": 50000},
        )

        assert response.status_code == 409
        assert response.json()["error"] == "InsufficientBalanceError"
        balance = await client.get(f"{API}/influencers/{campaign.influencer_id}/balance", params={"currency": "GBP"})
        assert balance.json()["available_in_pence"] == 39200

    async def test_influencer_history(self, client, paid_milestone, mock_repository, data_factory):
        campaign, _ = await paid_milestone()
        influencer = f"{API}/influencers/{campaign.influencer_id}"
        account = await mock_repository.create_bank_account(data_factory.make_bank_account(campaign.influencer_id))
        await client.post(
            f"{API}/withdrawals",
            json={"influencer_id": campaign.influencer_id, "bank_account_id": account.id, "amount_in_pence": 10000},
        )

        payouts = await client.get(f"{influencer}/payouts")
        waiting = await client.get(f"{influencer}/payouts", params={"status": "PENDING_RELEASE"})
        withdrawals = await client.get(f"{influencer}/withdrawals", params={"currency": "GBP"})
        accounts = await client.get(f"{influencer}/bank-accounts")

        assert [p["net_amount_in_pence"] for p in payouts.json()] == [39200]
        assert waiting.json() == []
        assert [w["amount_in_pence"] for w in withdrawals.json()] == [10000]
        assert [a["id"] for a in accounts.json()] == [account.id]

    async def test_unknown_payout_status_is_422(self, client):
        response = await client.get(f"{API}/influencers/inf_1/payouts", params={"status": "SOMETIME"})

        assert response.status_code == 422


class TestWebhookRoute:
    """Raw body and signature header reach the reconciler"""

    async def test_verified_unmatched_webhook_acknowledged(self, client):
        response = await client.post(
            f"{API}/webhooks/stripe",
            content=make_webhook_body(kind="charge", outcome="succeeded", reference="INF-20260101-ABCDEF12"),
            headers={"Stripe-Signature": WEBHOOK_SIGNATURE},
        )

        assert response.status_code == 200
        assert response.json()["action"] == "unmatched"

    async def test_paystack_signature_header(self, client):
        response = await client.post(
            f"{API}/webhooks/paystack",
            content=make_webhook_body(),
            headers={"x-paystack-signature": WEBHOOK_SIGNATURE},
        )

        assert response.status_code == 200

    async def test_bad_signature_is_401(self, client):
        response = await client.post(
            f"{API}/webhooks/truelayer",
            content=make_webhook_body(),
            headers={"Tl-Signature": "forged"},
        )

        assert response.status_code == 401

    async def test_unknown_gateway_is_404(self, client):
        response = await client.post(f"{API}/webhooks/bogus", content=b"{}")

        assert response.status_code == 404

    async def test_unparseable_body_is_400(self, client):
        response = await client.post(
            f"{API}/webhooks/stripe", content=b"<xml/>", headers={"Stripe-Signature": WEBHOOK_SIGNATURE}
        )

        assert response.status_code == 400


class TestOperationsRoutes:
    """Settings and manual sweep"""

    async def test_unknown_setting_is_400(self, client):
        response = await client.put(f"{API}/settings/NotASetting", json={"setting_value": "1.0"})

        assert response.status_code == 400

    async def test_update_and_read_settings(self, client):
        response = await client.put(
            f"{API}/settings/BrandPlatformFeePercent", json={"setting_value": "3.5", "updated_by": "admin"}
        )
        settings = await client.get(f"{API}/settings")

        assert response.status_code == 200
        assert settings.json()["BrandPlatformFeePercent"] == "3.5"

    async def test_manual_sweep(self, client):
        response = await client.post(f"{API}/sweep")

        assert response.status_code == 200
        assert response.json()["errors"] == 0
