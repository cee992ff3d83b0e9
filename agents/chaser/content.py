"""Chase email content generation.

Generators return a subject and a body without any signature block; the
delivery layer appends the signature. Two implementations exist: a Jinja2
template renderer and a chat-completions drafter.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Protocol

from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateError

from backend.core.config import Settings, settings as default_settings
from backend.integrations.llm_client import LlmClient, extract_json

from .dto import GeneratedEmail, Invoice
from .errors import ContentGenerationError

TEMPLATE_DIR = Path(__file__).parent / "templates"
DEFAULT_SUBJECT = "Payment reminder"
PAYMENT_LINK_PLACEHOLDER = "{payment_link}"

_CORPORATE = re.compile(
    r"\b(llc|inc|ltd|plc|gmbh|pty|company|co|corp|corporation|limited|sa|ag)\b\.?",
    re.IGNORECASE,
)
_SIGNATURE_PATTERNS = (
    re.compile(r"\n+best regards[,\s]*[\s\S]*$", re.IGNORECASE),
    re.compile(r"\n+kind regards[,\s]*[\s\S]*$", re.IGNORECASE),
    re.compile(r"\n+regards[,\s]*[\s\S]*$", re.IGNORECASE),
    re.compile(r"\n+thanks[,\s]*[\s\S]*$", re.IGNORECASE),
)


class ContentGenerator(Protocol):
    def generate(self, invoice: Invoice, overdue_days: int) -> GeneratedEmail: ...


def derive_first_name(invoice: Invoice) -> str:
    """Best-effort first name for the greeting.

    Uses the customer name unless it looks like a company, then the local
    part of the email address, then "there".
    """
    name = (invoice.customer_name or "").strip()
    if name and not _CORPORATE.search(name):
        first = name.split()[0]
        if re.search(r"[a-z]", first, re.IGNORECASE):
            return first[0].upper() + first[1:]

    local = (invoice.recipient or "").strip().split("@")[0]
    guess = re.split(r"[._+\-]", local)[0] if local else ""
    if guess:
        return guess[0].upper() + guess[1:]
    return "there"


def strip_signature(text: str) -> str:
    """Remove a trailing closing ("Best regards", "Thanks", ...) and what follows it."""
    result = str(text or "")
    for pattern in _SIGNATURE_PATTERNS:
        result = pattern.sub("", result)
    return result.strip()


def select_tone(overdue_days: int) -> str:
    if overdue_days <= 1:
        return "warm and friendly reminder"
    if overdue_days <= 3:
        return "polite and clear follow-up"
    if overdue_days <= 7:
        return "firm but courteous"
    return "firm and concise, still courteous"


def _fill_payment_link(text: str, invoice: Invoice) -> str:
    if invoice.payment_link:
        return text.replace(PAYMENT_LINK_PLACEHOLDER, invoice.payment_link)
    return text


class TemplateContentGenerator:
    """Jinja2 template engine for chase emails."""

    def __init__(
        self,
        template_name: str = "chase.jinja.txt",
        template_dirs: list[str | Path] | None = None,
        company_name: str | None = None,
    ):
        self.template_name = template_name
        self.company_name = company_name or default_settings.COMPANY_NAME
        self.logger = logging.getLogger(__name__)

        self.env = Environment(
            loader=FileSystemLoader(template_dirs or [TEMPLATE_DIR / "default"]),
            undefined=StrictUndefined,
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self.env.filters["money"] = self._money_filter
        self.env.filters["datefmt"] = self._datefmt_filter

    @staticmethod
    def _money_filter(amount) -> str:
        return f"{amount:,.2f}"

    @staticmethod
    def _datefmt_filter(date_obj, format_str: str = "%d %B %Y") -> str:
        if hasattr(date_obj, "strftime"):
            return date_obj.strftime(format_str)
        return str(date_obj)

    def generate(self, invoice: Invoice, overdue_days: int) -> GeneratedEmail:
        """Render the chase template.

        The first ``Subject:`` line becomes the subject and is removed from
        the body.

        Raises:
            ContentGenerationError: If the template is missing or fails to render
        """
        try:
            template = self.env.get_template(self.template_name)
            rendered = template.render(
                invoice=invoice,
                overdue_days=overdue_days,
                first_name=derive_first_name(invoice),
                tone=select_tone(overdue_days),
                company_name=self.company_name,
                payment_link=invoice.payment_link,
            )
        except TemplateError as e:
            raise ContentGenerationError(
                f"Template '{self.template_name}' failed to render: {e}"
            ) from e

        subject, body = self._split_subject(rendered)
        return GeneratedEmail(subject=subject, body=strip_signature(body))

    @staticmethod
    def _split_subject(content: str) -> tuple[str, str]:
        lines = content.split("\n")
        for index, line in enumerate(lines):
            if line.startswith("Subject:"):
                subject = line.replace("Subject:", "", 1).strip()
                body = "\n".join(lines[:index] + lines[index + 1 :])
                return subject or DEFAULT_SUBJECT, body.strip()
        return DEFAULT_SUBJECT, content.strip()


SYSTEM_PROMPT = "You generate concise, professional credit control emails for a small company."


class LlmContentGenerator:
    """Drafts chase emails through an OpenAI-compatible completions endpoint."""

    def __init__(
        self,
        client: LlmClient,
        company_name: str | None = None,
        signature_name: str | None = None,
    ):
        self.client = client
        self.company_name = company_name or default_settings.COMPANY_NAME
        self.signature_name = signature_name or default_settings.SIGNATURE_NAME
        self.logger = logging.getLogger(__name__)

    def build_prompt(self, invoice: Invoice, overdue_days: int) -> str:
        first_name = derive_first_name(invoice)
        company = self.company_name
        return "\n".join(
            [
                "You are an assistant that drafts concise, professional and friendly "
                "credit control emails for a very small business.",
                f"- Company: {company}, signed as {self.signature_name}.",
                "- Audience: business customers who have overdue invoices.",
                f"- Tone: {select_tone(overdue_days)}. Keep it human, brief and polite.",
                f'- Start the body with exactly: "Dear {first_name},".',
                f"- Make clear early on that the invoice is payable to {company}.",
                "- Do NOT include any closing or signature; the system appends one.",
                "",
                "Write a subject and an email body for this invoice:",
                f"- Customer email: {invoice.recipient}",
                f"- Invoice number: {invoice.external_id}",
                f"- Amount due ({invoice.currency}): {invoice.amount:.2f}",
                f"- Due date: {invoice.due_date.isoformat()}",
                f"- Overdue days: {overdue_days}",
                f"- Payment link: {invoice.payment_link or PAYMENT_LINK_PLACEHOLDER}",
                "",
                "Constraints:",
                "- Subject: max ~80 characters.",
                "- Body: 120-220 words, short paragraphs, clear call to action.",
                "",
                "Return strict JSON with keys: subject, body.",
            ]
        )

    def generate(self, invoice: Invoice, overdue_days: int) -> GeneratedEmail:
        """Draft one chase email.

        Raises:
            ContentGenerationError: If the endpoint fails or the draft lacks a subject or body
        """
        response = self.client.complete(SYSTEM_PROMPT, self.build_prompt(invoice, overdue_days))
        if not response.success:
            raise ContentGenerationError(response.error or "LLM request failed")

        parsed = extract_json(response.content or "")
        if parsed is None:
            self.logger.warning(
                "llm_response_not_json", extra={"invoice_id": invoice.id}
            )
            parsed = {"subject": DEFAULT_SUBJECT, "body": response.content}

        subject = str(parsed.get("subject") or "").strip()
        body = strip_signature(str(parsed.get("body") or ""))
        if not subject or not body:
            raise ContentGenerationError("LLM response missing required fields (subject/body)")

        return GeneratedEmail(subject=subject, body=_fill_payment_link(body, invoice))


def build_content_generator(source: Settings | None = None) -> ContentGenerator:
    """Pick the LLM drafter when an API key is configured, else the template."""
    source = source or default_settings
    if source.LLM_API_KEY:
        return LlmContentGenerator(
            LlmClient(
                api_key=source.LLM_API_KEY,
                base_url=source.LLM_BASE_URL,
                model=source.LLM_MODEL,
                timeout=source.LLM_TIMEOUT_S,
            ),
            company_name=source.COMPANY_NAME,
            signature_name=source.SIGNATURE_NAME,
        )
    return TemplateContentGenerator(company_name=source.COMPANY_NAME)
