"""Tests for WebhookReconciler: idempotency, ordering, attempt ceiling and timeouts."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from premarket_platform.app.config import GrantAccessConfig
from premarket_platform.domain.enums import ReconcileResult
from premarket_platform.domain.errors import PaymentNotFound, ValidationError
from premarket_platform.domain.models import PaymentCharge, ProcessedWebhookEvent
from premarket_platform.domain.schemas import PaymentWebhookEvent


def _event(event_id: str, outcome: str, reference: str = "ch_1") -> PaymentWebhookEvent:
    return PaymentWebhookEvent(
        provider_event_id=event_id,
        provider_reference=reference,
        outcome=outcome,
        timestamp=datetime.now(timezone.utc),
    )


@pytest.fixture
async def charged_grant(make_request, make_grant_service):
    """Request R1 priced at $50 for agent A1, charge ch_1 outstanding."""
    request = await make_request()
    return await make_grant_service().create_grant(request.request_id, "A1")


# ---------------------------------------------------------------------------
# Success path and replay
# ---------------------------------------------------------------------------


class TestSuccess:
    async def test_success_then_replay(self, charged_grant, make_reconciler, notifier_mock):
        assert charged_grant.status == "approved"
        reconciler = make_reconciler()

        first = await reconciler.handle_webhook(_event("E1", "succeeded"))
        assert first.result == ReconcileResult.APPLIED
        assert first.grant.status == "paid"
        assert first.grant.unlocked_at is not None
        assert first.payment.status == "succeeded"
        assert first.payment.attempt_count == 0

        replay = await reconciler.handle_webhook(_event("E1", "succeeded"))
        assert replay.result == ReconcileResult.DUPLICATE
        assert notifier_mock.sent == [("access_unlocked", charged_grant.id)]

    async def test_success_after_one_failure(self, charged_grant, make_reconciler):
        reconciler = make_reconciler()
        await reconciler.handle_webhook(_event("E1", "failed"))
        outcome = await reconciler.handle_webhook(_event("E2", "succeeded"))
        assert outcome.result == ReconcileResult.APPLIED
        assert outcome.grant.status == "paid"
        assert outcome.payment.attempt_count == 1

    async def test_dict_payload_accepted(self, charged_grant, make_reconciler):
        outcome = await make_reconciler().handle_webhook(
            {
                "provider_event_id": "E1",
                "provider_reference": "ch_1",
                "outcome": "succeeded",
                "timestamp": "2026-01-01T00:00:00Z",
            }
        )
        assert outcome.result == ReconcileResult.APPLIED


# ---------------------------------------------------------------------------
# Failures and the attempt ceiling
# ---------------------------------------------------------------------------


class TestFailures:
    async def test_failure_with_attempts_remaining(self, charged_grant, make_reconciler, notifier_mock):
        outcome = await make_reconciler().handle_webhook(_event("E1", "failed"))

        assert outcome.result == ReconcileResult.RETRY_PENDING
        assert outcome.grant.status == "approved"
        assert outcome.grant.attempts == 1
        assert outcome.payment.status == "pending"
        assert outcome.payment.charge_requested_at is None
        assert notifier_mock.sent == []

    async def test_replayed_failure_counts_once(self, charged_grant, make_reconciler):
        reconciler = make_reconciler()
        await reconciler.handle_webhook(_event("E1", "failed"))
        replay = await reconciler.handle_webhook(_event("E1", "failed"))

        assert replay.result == ReconcileResult.DUPLICATE
        assert (await reconciler.handle_timeout(charged_grant.id)).payment.attempt_count == 1

    async def test_three_failures_then_late_success(self, db_session, charged_grant, make_reconciler, notifier_mock):
        reconciler = make_reconciler()

        results = [
            (await reconciler.handle_webhook(_event(event_id, "failed"))).result
            for event_id in ("E1", "E2", "E3")
        ]
        assert results == [
            ReconcileResult.RETRY_PENDING,
            ReconcileResult.RETRY_PENDING,
            ReconcileResult.EXHAUSTED,
        ]

        late = await reconciler.handle_webhook(_event("E4", "succeeded"))
        assert late.result == ReconcileResult.IGNORED
        assert late.grant.status == "rejected"
        assert late.grant.rejection_reason == "payment_attempts_exhausted"
        assert late.payment.status == "failed"
        assert late.payment.attempt_count == 3
        assert notifier_mock.sent == [("payment_failed", charged_grant.id)]

        ledger = await db_session.execute(
            select(ProcessedWebhookEvent).where(ProcessedWebhookEvent.provider_event_id == "E4")
        )
        assert ledger.scalar_one().applied is False

    async def test_custom_ceiling(self, make_request, make_grant_service, make_reconciler):
        config = GrantAccessConfig(default_charge_amount=20, max_payment_attempts=1)
        request = await make_request()
        await make_grant_service(config).create_grant(request.request_id, "A1")

        outcome = await make_reconciler(config).handle_webhook(_event("E1", "failed"))

        assert outcome.result == ReconcileResult.EXHAUSTED
        assert outcome.payment.attempt_count == 1


class TestBadInput:
    async def test_unknown_reference(self, charged_grant, make_reconciler):
        with pytest.raises(PaymentNotFound):
            await make_reconciler().handle_webhook(_event("E1", "succeeded", reference="ch_unknown"))

    async def test_invalid_outcome(self, make_reconciler):
        with pytest.raises(ValidationError):
            await make_reconciler().handle_webhook(
                {"provider_event_id": "E1", "provider_reference": "ch_1", "outcome": "maybe", "timestamp": "2026-01-01T00:00:00Z"}
            )


# ---------------------------------------------------------------------------
# Timeouts
# ---------------------------------------------------------------------------


class TestTimeout:
    async def test_not_due_before_window(self, charged_grant, make_reconciler):
        outcome = await make_reconciler().handle_timeout(charged_grant.id)
        assert outcome.result == ReconcileResult.NOT_DUE
        assert outcome.payment.attempt_count == 0

    async def test_timeout_records_first_attempt(self, charged_grant, make_reconciler):
        reconciler = make_reconciler()
        later = datetime.now(timezone.utc) + timedelta(seconds=6)

        outcome = await reconciler.handle_timeout(charged_grant.id, now=later)

        assert outcome.result == ReconcileResult.RETRY_PENDING
        assert outcome.grant.status == "approved"
        assert outcome.grant.attempts == 1
        assert outcome.payment.status == "pending"

    async def test_repeated_timeout_is_noop_until_next_charge(self, charged_grant, make_reconciler):
        reconciler = make_reconciler()
        later = datetime.now(timezone.utc) + timedelta(seconds=6)

        await reconciler.handle_timeout(charged_grant.id, now=later)
        again = await reconciler.handle_timeout(charged_grant.id, now=later + timedelta(seconds=10))

        assert again.result == ReconcileResult.NOT_DUE
        assert again.payment.attempt_count == 1

    async def test_failure_webhook_stops_timeout(self, charged_grant, make_reconciler):
        reconciler = make_reconciler()
        await reconciler.handle_webhook(_event("E1", "failed"))
        outcome = await reconciler.handle_timeout(charged_grant.id, now=datetime.now(timezone.utc) + timedelta(minutes=1))
        assert outcome.result == ReconcileResult.NOT_DUE

    async def test_timeouts_exhaust_attempts(self, charged_grant, make_grant_service, make_reconciler, notifier_mock):
        reconciler = make_reconciler()
        service = make_grant_service()
        results = []
        for _ in range(3):
            later = datetime.now(timezone.utc) + timedelta(seconds=6)
            results.append((await reconciler.handle_timeout(charged_grant.id, now=later)).result)
            if results[-1] == ReconcileResult.RETRY_PENDING:
                await service.retry_charge(charged_grant.id)

        assert results[-1] == ReconcileResult.EXHAUSTED
        grant = await service.get_grant(charged_grant.id)
        assert grant.status == "rejected"
        assert notifier_mock.sent == [("payment_failed", charged_grant.id)]

    async def test_late_success_after_timeout_still_unlocks(self, charged_grant, make_reconciler):
        reconciler = make_reconciler()
        await reconciler.handle_timeout(charged_grant.id, now=datetime.now(timezone.utc) + timedelta(seconds=6))

        outcome = await reconciler.handle_webhook(_event("E1", "succeeded"))

        assert outcome.result == ReconcileResult.APPLIED
        assert outcome.grant.status == "paid"

    async def test_free_grant_never_times_out(self, make_request, make_grant_service, make_reconciler):
        request = await make_request()
        grant = await make_grant_service(GrantAccessConfig()).create_grant(request.request_id, "A1")
        outcome = await make_reconciler().handle_timeout(grant.id, now=datetime.now(timezone.utc) + timedelta(days=1))
        assert outcome.result == ReconcileResult.NOT_DUE


class TestReplacedCharge:
    """Webhooks for a charge that a retry replaced still resolve to the payment."""

    async def _timeout_and_retry(self, grant_id, make_grant_service, make_reconciler):
        service = make_grant_service()
        await make_reconciler().handle_timeout(grant_id, now=datetime.now(timezone.utc) + timedelta(seconds=6))
        await service.retry_charge(grant_id)
        payment = await service.get_payment(grant_id)
        assert payment.provider_reference == "ch_2"
        return service

    async def test_late_success_for_first_charge_unlocks(
        self, charged_grant, make_grant_service, make_reconciler, notifier_mock
    ):
        grant_id = charged_grant.id
        service = await self._timeout_and_retry(grant_id, make_grant_service, make_reconciler)
        reconciler = make_reconciler()

        outcome = await reconciler.handle_webhook(_event("E1", "succeeded", reference="ch_1"))

        assert outcome.result == ReconcileResult.APPLIED
        assert outcome.grant.status == "paid"
        assert outcome.payment.status == "succeeded"
        assert outcome.payment.charge_requested_at is None
        assert (await service.get_grant(grant_id)).status == "paid"
        assert notifier_mock.sent == [("access_unlocked", grant_id)]

        second = await reconciler.handle_webhook(_event("E2", "succeeded", reference="ch_2"))
        assert second.result == ReconcileResult.IGNORED

    async def test_late_failure_for_first_charge_not_counted(
        self, charged_grant, make_grant_service, make_reconciler
    ):
        grant_id = charged_grant.id
        await self._timeout_and_retry(grant_id, make_grant_service, make_reconciler)

        outcome = await make_reconciler().handle_webhook(_event("E1", "failed", reference="ch_1"))

        assert outcome.result == ReconcileResult.IGNORED
        assert outcome.payment.attempt_count == 1
        assert outcome.payment.status == "pending"
        assert outcome.payment.charge_requested_at is not None

    async def test_every_issued_reference_is_kept(
        self, db_session, charged_grant, make_grant_service, make_reconciler
    ):
        grant_id = charged_grant.id
        service = await self._timeout_and_retry(grant_id, make_grant_service, make_reconciler)
        payment = await service.get_payment(grant_id)

        result = await db_session.execute(
            select(PaymentCharge.provider_reference, PaymentCharge.attempt)
            .where(PaymentCharge.payment_id == payment.id)
            .order_by(PaymentCharge.attempt)
        )
        assert [tuple(row) for row in result.all()] == [("ch_1", 1), ("ch_2", 2)]


class TestSweep:
    async def test_sweep_times_out_overdue_charges(self, make_request, make_grant_service, make_reconciler):
        request = await make_request()
        service = make_grant_service()
        first = await service.create_grant(request.request_id, "A1")
        second = await service.create_grant(request.request_id, "A2")
        reconciler = make_reconciler()

        assert await reconciler.sweep_timeouts() == 0
        assert await reconciler.sweep_timeouts(now=datetime.now(timezone.utc) + timedelta(seconds=6)) == 2

        for grant_id in (first.id, second.id):
            grant = await service.get_grant(grant_id)
            assert grant.attempts == 1
            assert grant.status == "approved"

    async def test_sweep_skips_settled_payments(self, charged_grant, make_reconciler):
        reconciler = make_reconciler()
        await reconciler.handle_webhook(_event("E1", "succeeded"))
        assert await reconciler.sweep_timeouts(now=datetime.now(timezone.utc) + timedelta(minutes=5)) == 0
