# src/billo/notifications.py
"""
Settlement emails.

Sending is best effort: every send goes through ``send_email_safely`` which
logs failures and never raises, so a broken mail provider can not fail or
roll back the settlement change that triggered it.

Payloads are plain dataclasses built while the database session is still
open; the senders themselves never touch the database.
"""
from dataclasses import dataclass
from typing import List, Optional, Protocol

import requests
from loguru import logger

from . import config


@dataclass
class EmailMessage:
    to: str
    subject: str
    html: str


@dataclass
class Party:
    user_id: str
    name: str
    email: str
    wants_settlement_emails: bool = True
    wants_payment_emails: bool = True


@dataclass
class SettlementNotice:
    settlement_id: int
    debtor: Party
    creditor: Party
    amount: str
    currency: str
    merchant_name: str
    group_name: Optional[str] = None
    settled_at: Optional[str] = None


class EmailSender(Protocol):
    def send(self, message: EmailMessage) -> None: ...


class ResendEmailSender:
    """Posts messages to the Resend HTTP API."""

    def __init__(self, api_key: str, api_url: str = config.RESEND_API_URL, timeout: float = config.EMAIL_TIMEOUT_SECONDS):
        self.api_key = api_key
        self.api_url = api_url
        self.timeout = timeout

    def send(self, message: EmailMessage) -> None:
        response = requests.post(
            self.api_url,
            headers={"Authorization": f"Bearer {self.api_key}"},
            json={
                "from": f"{config.EMAIL_FROM_NAME} <{config.EMAIL_FROM_ADDRESS}>",
                "to": message.to,
                "subject": message.subject,
                "html": message.html,
            },
            timeout=self.timeout,
        )
        response.raise_for_status()


class LogEmailSender:
    """Used when no email provider is configured."""

    def send(self, message: EmailMessage) -> None:
        logger.info(f"[Email disabled] Would send '{message.subject}' to {message.to}")


email_sender_instance = None


def get_email_sender() -> EmailSender:
    global email_sender_instance
    if email_sender_instance is None:
        if config.RESEND_API_KEY:
            email_sender_instance = ResendEmailSender(config.RESEND_API_KEY)
        else:
            logger.warning("RESEND_API_KEY not set, emails will only be logged.")
            email_sender_instance = LogEmailSender()
    return email_sender_instance


def send_email_safely(sender: EmailSender, message: EmailMessage, context: str) -> bool:
    try:
        sender.send(message)
    except Exception:
        logger.exception(f"[Email Error - {context}] sending to {message.to} failed")
        return False
    logger.info(f"[Email] {context} sent to {message.to}")
    return True


def format_amount(amount: str, currency: str) -> str:
    return f"{amount} {currency}"


def _unsubscribe_url(user_id: str, category: str) -> str:
    return f"{config.APP_BASE_URL}/api/email/unsubscribe?userId={user_id}&type={category}"


def _render(heading: str, lines: List[str], unsubscribe_url: str) -> str:
    body = "".join(f"<p>{line}</p>" for line in lines)
    return (
        f"<h1>{heading}</h1>{body}"
        f"<p><a href=\"{config.APP_BASE_URL}/dashboard/settle\">Open Billo</a></p>"
        f"<p style=\"font-size:12px\"><a href=\"{unsubscribe_url}\">Unsubscribe</a></p>"
    )


def send_settlement_emails(sender: EmailSender, notices: List[SettlementNotice]) -> None:
    """New debts: tell the debtor what they owe and the payer what they are owed."""
    for notice in notices:
        amount = format_amount(notice.amount, notice.currency)
        where = f" in {notice.group_name}" if notice.group_name else ""
        context = f"Settlement {notice.debtor.user_id}->{notice.creditor.user_id}"

        if notice.debtor.wants_settlement_emails:
            send_email_safely(sender, EmailMessage(
                to=notice.debtor.email,
                subject=f"You owe {amount} to {notice.creditor.name}",
                html=_render(
                    "New settlement",
                    [f"Hi {notice.debtor.name},", f"You owe {notice.creditor.name} {amount} for {notice.merchant_name}{where}."],
                    _unsubscribe_url(notice.debtor.user_id, "settlements"),
                ),
            ), context)
        else:
            logger.info(f"Email skipped - user {notice.debtor.user_id} has disabled settlement emails")

        if notice.creditor.wants_settlement_emails:
            send_email_safely(sender, EmailMessage(
                to=notice.creditor.email,
                subject=f"{notice.debtor.name} owes you {amount}",
                html=_render(
                    "New settlement",
                    [f"Hi {notice.creditor.name},", f"{notice.debtor.name} owes you {amount} for {notice.merchant_name}{where}."],
                    _unsubscribe_url(notice.creditor.user_id, "settlements"),
                ),
            ), context)
        else:
            logger.info(f"Email skipped - user {notice.creditor.user_id} has disabled settlement emails")


def _send_payment_pair(sender: EmailSender, notice: SettlementNotice, heading: str,
                       debtor_subject: str, creditor_subject: str,
                       debtor_line: str, creditor_line: str, context: str) -> None:
    for party, subject, line in (
        (notice.debtor, debtor_subject, debtor_line),
        (notice.creditor, creditor_subject, creditor_line),
    ):
        if not party.wants_payment_emails:
            logger.info(f"Email skipped - user {party.user_id} has disabled payment emails")
            continue
        send_email_safely(sender, EmailMessage(
            to=party.email,
            subject=subject,
            html=_render(heading, [f"Hi {party.name},", line], _unsubscribe_url(party.user_id, "payments")),
        ), context)


def send_payment_confirmation(sender: EmailSender, notice: SettlementNotice) -> None:
    amount = format_amount(notice.amount, notice.currency)
    _send_payment_pair(
        sender, notice, "Payment confirmed",
        "Payment Confirmed", "Payment Received",
        f"Your payment of {amount} to {notice.creditor.name} for {notice.merchant_name} was confirmed on {notice.settled_at}.",
        f"{notice.debtor.name} paid you {amount} for {notice.merchant_name} on {notice.settled_at}.",
        f"Payment Confirmation {notice.settlement_id}",
    )


def send_payment_unmarked(sender: EmailSender, notice: SettlementNotice) -> None:
    amount = format_amount(notice.amount, notice.currency)
    _send_payment_pair(
        sender, notice, "Payment unmarked",
        "Payment Unmarked", "Payment Unmarked",
        f"Your payment of {amount} to {notice.creditor.name} for {notice.merchant_name} is pending again.",
        f"The {amount} payment from {notice.debtor.name} for {notice.merchant_name} is pending again.",
        f"Payment Unmarked {notice.settlement_id}",
    )
