"""Chase email content: template rendering, LLM drafting and helpers."""

import json
from datetime import date
from decimal import Decimal
from unittest.mock import Mock

import pytest

from agents.chaser.content import (
    DEFAULT_SUBJECT,
    LlmContentGenerator,
    TemplateContentGenerator,
    build_content_generator,
    derive_first_name,
    select_tone,
    strip_signature,
)
from agents.chaser.dto import Invoice, InvoiceStatus
from agents.chaser.errors import ContentGenerationError
from backend.core.config import Settings
from backend.integrations.llm_client import LlmResponse, extract_json


def _invoice(**overrides):
    values = {
        "id": 7,
        "external_id": "INV-2026-0042",
        "recipient": "jane.doe@customer.example",
        "customer_name": "Jane Doe",
        "amount": Decimal("1250.00"),
        "currency": "EUR",
        "due_date": date(2026, 3, 8),
        "status": InvoiceStatus.OVERDUE,
        "payment_link": "https://pay.example/INV-2026-0042",
    }
    values.update(overrides)
    return Invoice(**values)


class TestHelpers:
    @pytest.mark.parametrize(
        "customer_name, recipient, expected",
        [
            ("Jane Doe", "ap@customer.example", "Jane"),
            ("jane", "ap@customer.example", "Jane"),
            ("Acme Ltd", "accounts.payable@acme.example", "Accounts"),
            ("Northwind GmbH", "billing@northwind.example", "Billing"),
            ("Cora Smith", "x@y.example", "Cora"),
            (None, "", "there"),
        ],
    )
    def test_derive_first_name(self, customer_name, recipient, expected):
        invoice = _invoice(customer_name=customer_name, recipient=recipient)

        assert derive_first_name(invoice) == expected

    def test_strip_signature(self):
        text = "Dear Jane,\n\nPlease pay.\n\nBest regards,\nBob\nAcme"

        assert strip_signature(text) == "Dear Jane,\n\nPlease pay."

    def test_strip_signature_leaves_plain_text(self):
        assert strip_signature("  Dear Jane,\n\nPlease pay.  ") == "Dear Jane,\n\nPlease pay."

    @pytest.mark.parametrize(
        "days, tone",
        [(1, "warm"), (3, "polite"), (7, "firm but courteous"), (12, "firm and concise")],
    )
    def test_tone_hardens_with_age(self, days, tone):
        assert select_tone(days).startswith(tone)


class TestTemplateContentGenerator:
    @pytest.fixture
    def generator(self):
        return TemplateContentGenerator(company_name="Acme Supplies")

    def test_long_overdue_wording(self, generator):
        email = generator.generate(_invoice(), 12)

        assert email.subject == "Overdue: Acme Supplies invoice INV-2026-0042"
        assert email.body.startswith("Dear Jane,")
        assert "EUR 1,250.00 is now 12 days overdue" in email.body
        assert "https://pay.example/INV-2026-0042" in email.body
        assert "Subject:" not in email.body

    def test_follow_up_wording_includes_due_date(self, generator):
        email = generator.generate(_invoice(), 8)

        assert email.subject.startswith("Reminder:")
        assert "due on 08 March 2026" in email.body
        assert "8 days overdue" in email.body

    def test_gentle_wording(self, generator):
        email = generator.generate(_invoice(), 5)

        assert "still open" in email.body

    def test_no_payment_link(self, generator):
        email = generator.generate(_invoice(payment_link=None), 12)

        assert "pay online" not in email.body

    def test_body_has_no_signature(self, generator):
        email = generator.generate(_invoice(), 12)

        assert "regards" not in email.body.lower()

    def test_missing_template_raises(self):
        generator = TemplateContentGenerator(template_name="missing.jinja.txt")

        with pytest.raises(ContentGenerationError):
            generator.generate(_invoice(), 12)

    def test_template_without_subject_uses_default(self, tmp_path):
        (tmp_path / "plain.txt").write_text("Dear {{ first_name }}, please pay.\n")
        generator = TemplateContentGenerator(template_name="plain.txt", template_dirs=[tmp_path])

        email = generator.generate(_invoice(), 12)

        assert email.subject == DEFAULT_SUBJECT
        assert email.body == "Dear Jane, please pay."


class TestLlmContentGenerator:
    def _client(self, content=None, success=True, error=None):
        client = Mock()
        client.complete.return_value = LlmResponse(success=success, content=content, error=error)
        return client

    def test_generates_from_json(self):
        content = json.dumps(
            {
                "subject": "Invoice INV-2026-0042 is overdue",
                "body": "Dear Jane,\n\nPlease pay via {payment_link}.\n\nKind regards,\nSam",
            }
        )
        generator = LlmContentGenerator(self._client(content), company_name="Acme Supplies")

        email = generator.generate(_invoice(), 12)

        assert email.subject == "Invoice INV-2026-0042 is overdue"
        assert email.body == "Dear Jane,\n\nPlease pay via https://pay.example/INV-2026-0042."

    def test_prompt_carries_invoice_facts(self):
        generator = LlmContentGenerator(self._client(), company_name="Acme Supplies")

        prompt = generator.build_prompt(_invoice(), 12)

        assert '"Dear Jane,"' in prompt
        assert "INV-2026-0042" in prompt
        assert "1250.00" in prompt
        assert "Overdue days: 12" in prompt
        assert "Acme Supplies" in prompt

    def test_non_json_reply_becomes_body(self):
        generator = LlmContentGenerator(self._client("Dear Jane, please settle the invoice."))

        email = generator.generate(_invoice(), 6)

        assert email.subject == DEFAULT_SUBJECT
        assert email.body == "Dear Jane, please settle the invoice."

    def test_endpoint_failure_raises(self):
        generator = LlmContentGenerator(self._client(success=False, error="LLM API error: 500"))

        with pytest.raises(ContentGenerationError, match="500"):
            generator.generate(_invoice(), 12)

    def test_missing_body_raises(self):
        generator = LlmContentGenerator(self._client(json.dumps({"subject": "Hi"})))

        with pytest.raises(ContentGenerationError):
            generator.generate(_invoice(), 12)


class TestExtractJson:
    def test_plain_object(self):
        assert extract_json('{"subject": "a", "body": "b"}') == {"subject": "a", "body": "b"}

    def test_object_wrapped_in_prose(self):
        assert extract_json('Here you go:\n{"subject": "a"}\nThanks') == {"subject": "a"}

    @pytest.mark.parametrize("text", ["no json here", "[1, 2]", "{broken"])
    def test_not_an_object(self, text):
        assert extract_json(text) is None


class TestFactory:
    def test_template_without_llm_key(self):
        generator = build_content_generator(Settings(LLM_API_KEY="", COMPANY_NAME="Acme"))

        assert isinstance(generator, TemplateContentGenerator)
        assert generator.company_name == "Acme"

    def test_llm_with_key(self):
        generator = build_content_generator(Settings(LLM_API_KEY="sk-test"))

        assert isinstance(generator, LlmContentGenerator)
        generator.client.close()
