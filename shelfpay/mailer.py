"""Transactional email: order confirmation, digital delivery, shipping.

HTML bodies are Jinja2 templates; delivery is plain SMTP (STARTTLS, or
implicit TLS when SMTP_SECURE=true) run off the event loop. Credentials come
from env vars and are never logged.
"""

from __future__ import annotations

import asyncio
import logging
import os
import smtplib
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Iterable, Optional

from jinja2 import DictLoader, Environment, select_autoescape

from .model.types import Order

logger = logging.getLogger(__name__)

SMTP_HOST = os.environ.get("SMTP_HOST", "")
SMTP_PORT = int(os.environ.get("SMTP_PORT", "587"))
SMTP_SECURE = os.environ.get("SMTP_SECURE", "false").lower() == "true"
SMTP_USER = os.environ.get("SMTP_USER", "")
SMTP_PASSWORD = os.environ.get("SMTP_PASSWORD", "")
EMAIL_FROM_NAME = os.environ.get("EMAIL_FROM_NAME", "The Bookstore")
EMAIL_FROM_ADDRESS = os.environ.get("EMAIL_FROM_ADDRESS", SMTP_USER)
COMPANY_EMAIL = os.environ.get("COMPANY_EMAIL", "")


TEMPLATES = {
    "base.html": """<!doctype html>
<html><body style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; color: #333;">
  {% block body %}{% endblock %}
  <p style="font-size: 11px; color: #999; margin-top: 24px;">{{ from_name }}</p>
</body></html>
""",
    "order_confirmation.html": """{% extends "base.html" %}{% block body %}
<h2>Thank you for your order!</h2>
<p>Order reference: <strong>#{{ reference }}</strong></p>
<table style="width: 100%; border-collapse: collapse;">
  {% for item in items %}
  <tr>
    <td style="padding: 4px 0;">{{ item.title or item.book_id }} &times; {{ item.quantity }}</td>
    <td style="padding: 4px 0; text-align: right;">{{ format }}</td>
  </tr>
  {% endfor %}
</table>
<p><strong>Total: {{ total }}</strong></p>
{% if shipping_address %}<p>Shipping to: {{ shipping_address }}</p>{% endif %}
{% if estimated_delivery %}<p>Estimated delivery: {{ estimated_delivery }}</p>{% endif %}
{% endblock %}
""",
    "digital_delivery.html": """{% extends "base.html" %}{% block body %}
<h2>Your copy of {{ book_title }} is ready</h2>
<p><a href="{{ download_url }}" style="background: #1a73e8; color: #fff; padding: 10px 16px; text-decoration: none; border-radius: 4px;">Download now</a></p>
<p>This link expires on {{ expires_at }}.</p>
<p style="font-size: 12px;">Order reference: #{{ reference }}</p>
{% endblock %}
""",
    "shipping_confirmation.html": """{% extends "base.html" %}{% block body %}
<h2>Your order is on its way</h2>
<p>Order #{{ reference }} has shipped.</p>
{% if tracking_url %}<p><a href="{{ tracking_url }}">Track your package</a></p>{% endif %}
{% endblock %}
""",
}

env = Environment(
    loader=DictLoader(TEMPLATES),
    autoescape=select_autoescape(["html"]),
)


def format_amount(minor: int, currency: str) -> str:
    return f"{currency.upper()} {minor / 100:,.2f}"


class Mailer:
    """SMTP mailer. Every send returns True when handed to the server,
    False when SMTP is not configured. Transport errors propagate."""

    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        user: Optional[str] = None,
        password: Optional[str] = None,
        secure: Optional[bool] = None,
        from_name: Optional[str] = None,
        from_address: Optional[str] = None,
        company_email: Optional[str] = None,
    ):
        self._host = host if host is not None else SMTP_HOST
        self._port = port or SMTP_PORT
        self._user = user if user is not None else SMTP_USER
        self._password = password if password is not None else SMTP_PASSWORD
        self._secure = SMTP_SECURE if secure is None else secure
        self._from_name = from_name or EMAIL_FROM_NAME
        self._from_address = from_address or EMAIL_FROM_ADDRESS
        self._company_email = (
            company_email if company_email is not None else COMPANY_EMAIL
        )

    @property
    def is_configured(self) -> bool:
        return bool(self._host and self._from_address)

    def render(self, template: str, **ctx) -> str:
        return env.get_template(template).render(from_name=self._from_name,
                                                 **ctx)

    def build(self, to: Iterable[str], subject: str,
              html: str) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f'"{self._from_name}" <{self._from_address}>'
        msg["To"] = ", ".join(to)
        msg.attach(MIMEText(html, "html"))
        return msg

    def _deliver(self, msg: MIMEMultipart) -> None:
        if self._secure:
            server = smtplib.SMTP_SSL(self._host, self._port, timeout=15)
        else:
            server = smtplib.SMTP(self._host, self._port, timeout=15)
        with server:
            if not self._secure:
                server.starttls()
            if self._user and self._password:
                server.login(self._user, self._password)
            server.send_message(msg)

    async def send(self, msg: MIMEMultipart) -> bool:
        if not self.is_configured:
            logger.warning("SMTP not configured; dropping email %r to %s",
                           msg["Subject"], msg["To"])
            return False
        await asyncio.to_thread(self._deliver, msg)
        logger.info("Email sent: %r to %s", msg["Subject"], msg["To"])
        return True

    # ---- messages

    async def send_order_confirmation(
        self, order: Order, estimated_delivery: Optional[str] = None
    ) -> bool:
        html = self.render(
            "order_confirmation.html",
            reference=order.payment_reference,
            items=order.items,
            format=order.mode.kind,
            total=format_amount(order.amount, order.currency),
            shipping_address=order.address,
            estimated_delivery=estimated_delivery,
        )
        to = [order.customer_email]
        if self._company_email:
            to.append(self._company_email)
        return await self.send(self.build(
            to, f"Order Confirmation - #{order.payment_reference}", html
        ))

    async def send_digital_delivery(
        self,
        to: str,
        book_title: str,
        download_url: str,
        expires_at: datetime,
        order_reference: str,
    ) -> bool:
        html = self.render(
            "digital_delivery.html",
            book_title=book_title,
            download_url=download_url,
            expires_at=expires_at.strftime("%Y-%m-%d %H:%M %Z"),
            reference=order_reference,
        )
        return await self.send(self.build(
            [to], f"Your Digital Download for {book_title}", html
        ))

    async def send_shipping_confirmation(
        self, to: str, order_reference: str, tracking_url: str
    ) -> bool:
        html = self.render(
            "shipping_confirmation.html",
            reference=order_reference,
            tracking_url=tracking_url,
        )
        return await self.send(self.build(
            [to], f"Your order #{order_reference} has shipped!", html
        ))
