"""Confirmation emails sent after a purchase is recorded.

Delivery is best effort: a failed send is logged and never undoes the
purchase it describes.
"""
import logging
import smtplib
from email.message import EmailMessage
from typing import Any, Dict, List

from config import Config

logger = logging.getLogger(__name__)


def _details(kind: str, record: Dict[str, Any]) -> List[str]:
    if kind == "order":
        return [
            f"- {item.get('name') or item.get('product')}: R {float(item.get('price') or 0):.2f} x {item.get('quantity')}"
            for item in record.get("items", [])
        ]
    if kind == "booking":
        return [
            f"Service: {record.get('serviceName')}",
            f"Date: {record.get('date')}",
            f"Time: {record.get('time')}",
            f"Special requests: {record.get('specialRequests') or 'None'}",
        ]
    if kind == "gift":
        return [
            f"Recipient: {record.get('recipientName')} <{record.get('recipientEmail')}>",
            f"Gift package: {record.get('packageName')}",
            f"Delivery date: {record.get('deliveryDate')}",
            f"Message: {record.get('message')}",
        ]
    return []


def build_messages(user: Dict[str, Any], kind: str, reference: str, amount: float, record: Dict[str, Any]) -> List[EmailMessage]:
    summary = [
        f"Order reference: {reference}",
        f"Order type: {kind}",
        f"Amount: R {float(amount or 0):.2f}",
        "",
        *_details(kind, record),
    ]

    business = EmailMessage()
    business["From"] = Config.EMAIL_USER
    business["To"] = Config.BUSINESS_EMAIL
    business["Subject"] = f"New {kind} Order - {reference}"
    business.set_content("\n".join([
        f"Customer: {user.get('name')}",
        f"Email: {user.get('email')}",
        f"Phone: {user.get('phone') or 'Not provided'}",
        *summary,
    ]))

    messages = [business]
    if user.get("email"):
        customer = EmailMessage()
        customer["From"] = Config.EMAIL_USER
        customer["To"] = user["email"]
        customer["Subject"] = f"Tassel Group Order Confirmation - {reference}"
        customer.set_content("\n".join([
            f"Dear {user.get('name') or 'Customer'},",
            "",
            f"We have received your {kind} order and will process it shortly.",
            "",
            *summary,
            "",
            f"Questions? Contact us at {Config.BUSINESS_EMAIL}",
        ]))
        messages.append(customer)
    return messages


def send_confirmation_emails(user: Dict[str, Any], kind: str, reference: str, amount: float, record: Dict[str, Any]) -> None:
    if not Config.EMAIL_USER or not Config.EMAIL_PASS:
        logger.info(f"Email credentials not set - skipping confirmation emails for {reference}")
        return

    try:
        messages = build_messages(user, kind, reference, amount, record)
        with smtplib.SMTP(Config.EMAIL_HOST, Config.EMAIL_PORT, timeout=10) as smtp:
            smtp.starttls()
            smtp.login(Config.EMAIL_USER, Config.EMAIL_PASS)
            for message in messages:
                smtp.send_message(message)
        logger.info(f"Confirmation emails sent for {reference}")
    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Email sending error for {reference}: {e}")
