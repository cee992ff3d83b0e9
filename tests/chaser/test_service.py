"""ChaseService operations: evaluate_one, expedite, pause, listings and preview."""

from datetime import timedelta

import pytest

from agents.chaser.config import ChaseConfig
from agents.chaser.dto import ChaseEmailStatus, ChaseState, InvoiceStatus
from agents.chaser.errors import (
    ChaseDeliveryError,
    ContentGenerationError,
    DeliveryError,
    InvoiceNotFoundError,
)
from agents.chaser.service import ChaseService


@pytest.fixture
def service(db_engine, generator, sender, clock):
    return ChaseService(db_engine, generator, sender, clock=clock, base_config=ChaseConfig())


class TestEvaluateOne:
    def test_sends_when_due(self, service, make_invoice):
        invoice = make_invoice(days_overdue=12)

        outcome = service.evaluate_one(invoice.id)

        assert outcome.sent is True
        assert service.invoices.get(invoice.id).chase_count == 1

    def test_unknown_invoice(self, service):
        with pytest.raises(InvoiceNotFoundError):
            service.evaluate_one(9999)

    def test_delivery_error_reaches_caller(self, service, make_invoice, sender):
        invoice = make_invoice(days_overdue=12)
        sender.error = DeliveryError("rejected")

        with pytest.raises(ChaseDeliveryError) as excinfo:
            service.evaluate_one(invoice.id)

        assert excinfo.value.record.status is ChaseEmailStatus.FAILED

    def test_uses_app_config_snapshot(self, service, make_invoice, clock):
        invoice = make_invoice(days_overdue=12)
        service.app_config.set("chase_enabled", "false", clock.now)

        outcome = service.evaluate_one(invoice.id)

        assert outcome.sent is False
        assert outcome.state is ChaseState.DISABLED


class TestExpedite:
    def test_ignores_pause_and_interval(self, service, make_invoice):
        invoice = make_invoice(days_overdue=8, chase_count=1, last_chase_hours_ago=2, paused=True)

        outcome = service.expedite(invoice.id)

        assert outcome.sent is True
        stored = service.invoices.get(invoice.id)
        assert stored.chase_count == 2
        assert stored.chase_paused is True

    def test_never_exceeds_cap(self, service, make_invoice):
        invoice = make_invoice(days_overdue=12, chase_count=4, last_chase_hours_ago=48)

        outcome = service.expedite(invoice.id)

        assert outcome.sent is False
        assert outcome.state is ChaseState.CAPPED

    def test_below_threshold_is_not_sent(self, service, make_invoice, sender):
        invoice = make_invoice(days_overdue=3)

        outcome = service.expedite(invoice.id)

        assert outcome.sent is False
        assert outcome.state is ChaseState.NOT_YET_DUE
        assert sender.sent == []


class TestPause:
    def test_pause_and_resume(self, service, make_invoice):
        invoice = make_invoice(days_overdue=12)

        assert service.pause(invoice.id).chase_paused is True
        assert service.evaluate_one(invoice.id).state is ChaseState.PAUSED

        assert service.pause(invoice.id, paused=False).chase_paused is False
        assert service.evaluate_one(invoice.id).sent is True

    def test_pause_is_idempotent(self, service, make_invoice):
        invoice = make_invoice()

        service.pause(invoice.id)

        assert service.pause(invoice.id).chase_paused is True

    def test_pause_does_not_touch_chase_fields(self, service, make_invoice):
        invoice = make_invoice(chase_count=2, last_chase_hours_ago=5)

        paused = service.pause(invoice.id)

        assert paused.chase_count == 2
        assert paused.last_chase_at == invoice.last_chase_at

    def test_pause_terminal_invoice_is_allowed(self, service, make_invoice):
        invoice = make_invoice(status=InvoiceStatus.PAID)

        assert service.pause(invoice.id).chase_paused is True

    def test_pause_unknown(self, service):
        with pytest.raises(InvoiceNotFoundError):
            service.pause(404)


class TestReads:
    def test_list_overdue_has_projection(self, service, make_invoice, clock):
        never = make_invoice(days_overdue=12)
        waiting = make_invoice(days_overdue=8, chase_count=1, last_chase_hours_ago=12)
        make_invoice(days_overdue=12, status=InvoiceStatus.PAID)

        items = {item["id"]: item for item in service.list_overdue()}

        assert set(items) == {never.id, waiting.id}
        assert items[never.id]["days_overdue"] == 12
        assert items[never.id]["days_until_next_chase"] == 0
        assert items[waiting.id]["days_until_next_chase"] == 2
        assert items[waiting.id]["next_chase_date"] == (
            clock.now + timedelta(hours=36)
        ).isoformat()

    def test_next_chase_info(self, service, make_invoice, clock):
        invoice = make_invoice(days_overdue=6, chase_count=1, last_chase_hours_ago=24)

        info = service.next_chase_info(invoice)

        assert info.next_chase_at == clock.now + timedelta(hours=48)
        assert info.days_until_next_chase == 2

    def test_chase_history(self, service, make_invoice):
        invoice = make_invoice(days_overdue=12)
        service.evaluate_one(invoice.id)

        history = service.chase_history(invoice.id)

        assert [record.status for record in history] == [ChaseEmailStatus.SENT]

    def test_chase_history_unknown(self, service):
        with pytest.raises(InvoiceNotFoundError):
            service.chase_history(123)

    def test_preview_has_no_side_effects(self, service, make_invoice, sender):
        invoice = make_invoice(days_overdue=12)

        preview = service.preview_next(invoice.id)

        assert preview["subject"] == f"Reminder: invoice {invoice.external_id}"
        assert preview["overdue_days"] == 12
        assert preview["days_until_next_chase"] == 0
        assert sender.sent == []
        assert service.chase_history(invoice.id) == []

    def test_preview_generation_failure(self, service, make_invoice, generator):
        invoice = make_invoice(days_overdue=12)
        generator.error = ContentGenerationError("template broken")

        with pytest.raises(ContentGenerationError):
            service.preview_next(invoice.id)

    def test_status(self, service, make_invoice):
        make_invoice(days_overdue=12, paused=True)
        make_invoice(days_overdue=12, chase_count=4)
        make_invoice(days_overdue=12)

        status = service.status()

        assert status["candidates"] == 3
        assert status["paused"] == 1
        assert status["capped"] == 1
        assert status["config"]["max_chase_count"] == 4


def test_batch_through_service(service, make_invoice):
    make_invoice(days_overdue=12)
    make_invoice(days_overdue=1)

    result = service.run_batch()

    assert result.sent == 1
    assert result.skipped == 1
