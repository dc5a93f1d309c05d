"""
Subscription email notifications.

Notifier is the interface the checkout orchestrator and the scheduler talk
to. EmailNotifier renders each message with Jinja2 and delivers it over
SMTP; without SMTP_HOST it only logs the message it would have sent.

Sends raise on failure. Callers decide whether a failed email matters
(reminders must not be marked as sent, everything else is best-effort).
"""
import asyncio
import smtplib
from abc import ABC, abstractmethod
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

import structlog
from jinja2 import DictLoader, Environment, select_autoescape

from premium_api.core import config
from premium_api.core.discount import format_currency
from premium_api.models.user import User
from premium_api.models.user_subscription import UserSubscription

logger = structlog.get_logger(__name__)


_LAYOUT = """<!DOCTYPE html>
<html>
<body style="font-family:'Segoe UI',Arial,sans-serif;background-color:#f7f7fb;margin:0;padding:32px;">
  <table width="100%" cellpadding="0" cellspacing="0" style="max-width:640px;margin:0 auto;background:#ffffff;border-radius:16px;padding:32px;">
    <tr><td>
      <h2 style="margin-top:0;color:#111827;">Hi {{ user_name or 'there' }},</h2>
      {% block body %}{% endblock %}
      {% if cta_url %}
      <div style="margin-top:28px;">
        <a href="{{ cta_url }}" style="display:inline-block;padding:12px 28px;border-radius:8px;background:#4f46e5;color:#ffffff;text-decoration:none;">{{ cta_label }}</a>
      </div>
      {% endif %}
    </td></tr>
  </table>
</body>
</html>
"""

TEMPLATES = {
    "layout.html": _LAYOUT,
    "subscription_activated": {
        "subject": "Your {{ plan_name }} subscription is live!",
        "html": """{% extends "layout.html" %}{% block body %}
<p>Thank you for upgrading to the <strong>{{ plan_name }}</strong> plan. Premium access is now unlocked.</p>
<div style="margin:24px 0;padding:16px;border-radius:12px;background:#f3f4f6;">
  <p style="margin:0;font-weight:600;">Plan summary</p>
  <p style="margin:8px 0 0;">Amount paid: <strong>{{ amount }}</strong></p>
  <p style="margin:4px 0 0;">Expires on: <strong>{{ expires_on or 'N/A' }}</strong></p>
  <p style="margin:4px 0 0;">Auto renew: <strong>{{ 'Enabled' if auto_renew else 'Disabled' }}</strong></p>
</div>
<p>You can manage your subscription anytime from the account dashboard.</p>
{% endblock %}""",
    },
    "auto_renew_changed": {
        "subject": "{{ plan_name }} auto renew {{ 'enabled' if auto_renew else 'disabled' }}",
        "html": """{% extends "layout.html" %}{% block body %}
<p style="font-weight:600;">Auto renew has been turned {{ 'ON' if auto_renew else 'OFF' }}</p>
{% if auto_renew %}
<p>You will be charged automatically on the next renewal date.</p>
{% else %}
<p>You will retain premium access until the expiry date. Renew manually to avoid interruption.</p>
{% endif %}
<p>Current plan: <strong>{{ plan_name }}</strong><br/>Expiry date: <strong>{{ expires_on or 'N/A' }}</strong></p>
{% endblock %}""",
    },
    "subscription_canceled": {
        "subject": "Your {{ plan_name }} subscription was canceled",
        "html": """{% extends "layout.html" %}{% block body %}
<p>Your <strong>{{ plan_name }}</strong> subscription has been canceled and will not renew.</p>
<p>Your premium access remains active until <strong>{{ expires_on or 'the current expiry date' }}</strong>.</p>
{% endblock %}""",
    },
    "renewal_reminder": {
        "subject": "{{ plan_name }} renews soon",
        "html": """{% extends "layout.html" %}{% block body %}
<p>Your <strong>{{ plan_name }}</strong> subscription is set to renew automatically on <strong>{{ expires_on or 'the upcoming cycle' }}</strong>.</p>
<div style="margin:20px 0;padding:16px;border-radius:12px;background:#eef2ff;">
  <p style="margin:0;font-weight:600;">Upcoming charge</p>
  <p style="margin:6px 0;">{{ amount }}</p>
</div>
<p>No action is needed to keep premium access. You can manage auto renew anytime from your dashboard.</p>
{% endblock %}""",
    },
    "expiry_reminder": {
        "subject": "{{ plan_name }} access ends soon",
        "html": """{% extends "layout.html" %}{% block body %}
<p>Your <strong>{{ plan_name }}</strong> subscription will expire on <strong>{{ expires_on or 'soon' }}</strong>.</p>
<p>Renew now to keep uninterrupted premium access.</p>
{% endblock %}""",
    },
    "subscription_expired": {
        "subject": "{{ plan_name }} subscription expired",
        "html": """{% extends "layout.html" %}{% block body %}
<p>Your <strong>{{ plan_name }}</strong> subscription ended on <strong>{{ expires_on or 'recently' }}</strong>.</p>
<p>We'd love to have you back. Renew anytime to regain premium access.</p>
{% endblock %}""",
    },
}


class Notifier(ABC):
    """Outbound subscription notices, one method per lifecycle event."""

    @abstractmethod
    async def send_subscription_activated(self, user: User, subscription: UserSubscription) -> None: ...

    @abstractmethod
    async def send_auto_renew_changed(self, user: User, subscription: UserSubscription) -> None: ...

    @abstractmethod
    async def send_subscription_canceled(self, user: User, subscription: UserSubscription) -> None: ...

    @abstractmethod
    async def send_renewal_reminder(self, user: User, subscription: UserSubscription) -> None: ...

    @abstractmethod
    async def send_expiry_reminder(self, user: User, subscription: UserSubscription) -> None: ...

    @abstractmethod
    async def send_subscription_expired(self, user: User, subscription: UserSubscription) -> None: ...


class EmailNotifier(Notifier):
    """Jinja2-rendered HTML email delivered through smtplib."""

    def __init__(
        self,
        host: Optional[str] = None,
        port: int = 587,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = True,
        from_email: str = "noreply@example.com",
        timeout: float = 10,
        frontend_url: str = "http://localhost:3000",
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.from_email = from_email
        self.timeout = timeout
        self.frontend_url = frontend_url.rstrip("/")

        templates = {"layout.html": TEMPLATES["layout.html"]}
        for name, parts in TEMPLATES.items():
            if isinstance(parts, dict):
                templates[f"{name}.subject"] = parts["subject"]
                templates[f"{name}.html"] = parts["html"]
        self.env = Environment(
            loader=DictLoader(templates),
            autoescape=select_autoescape(enabled_extensions=("html",), default_for_string=True),
        )

    async def send_subscription_activated(self, user, subscription):
        await self._send("subscription_activated", user, subscription, cta="/profile", cta_label="Open dashboard")

    async def send_auto_renew_changed(self, user, subscription):
        await self._send("auto_renew_changed", user, subscription)

    async def send_subscription_canceled(self, user, subscription):
        await self._send("subscription_canceled", user, subscription, cta="/profile", cta_label="Open dashboard")

    async def send_renewal_reminder(self, user, subscription):
        await self._send("renewal_reminder", user, subscription)

    async def send_expiry_reminder(self, user, subscription):
        await self._send("expiry_reminder", user, subscription, cta="/pricing", cta_label="Renew subscription")

    async def send_subscription_expired(self, user, subscription):
        await self._send("subscription_expired", user, subscription, cta="/pricing", cta_label="Choose a plan")

    def render(self, template: str, context: dict) -> tuple[str, str]:
        """Render (subject, html) for one template."""
        subject = self.env.get_template(f"{template}.subject").render(**context).strip()
        html = self.env.get_template(f"{template}.html").render(**context)
        return subject, html

    def build_context(self, user: User, subscription: UserSubscription) -> dict:
        plan = subscription.plan
        expires_at: Optional[datetime] = subscription.expires_at
        return {
            "user_name": user.name,
            "plan_name": plan.name if plan else "Premium",
            "amount": format_currency(subscription.amount_cents),
            "expires_on": expires_at.strftime("%d %b %Y") if expires_at else None,
            "auto_renew": subscription.auto_renew,
        }

    async def _send(
        self,
        template: str,
        user: User,
        subscription: UserSubscription,
        cta: Optional[str] = None,
        cta_label: Optional[str] = None,
    ) -> None:
        context = self.build_context(user, subscription)
        context["cta_url"] = f"{self.frontend_url}{cta}" if cta else None
        context["cta_label"] = cta_label
        subject, html = self.render(template, context)

        if not self.host:
            logger.info(
                "email_simulated",
                template=template,
                to=user.email,
                subject=subject,
                subscription_id=subscription.id,
            )
            return

        await asyncio.to_thread(self._deliver, user.email, subject, html)
        logger.info("email_sent", template=template, to=user.email, subscription_id=subscription.id)

    def _deliver(self, to_email: str, subject: str, html: str) -> None:
        msg = MIMEMultipart("alternative")
        msg["From"] = self.from_email
        msg["To"] = to_email
        msg["Subject"] = subject
        msg.attach(MIMEText(html, "html", "utf-8"))

        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
            if self.use_tls:
                server.starttls()
            if self.username:
                server.login(self.username, self.password or "")
            server.send_message(msg)


def get_notifier() -> Notifier:
    """FastAPI dependency: SMTP notifier built from the environment."""
    return EmailNotifier(
        host=config.SMTP_HOST,
        port=config.SMTP_PORT,
        username=config.SMTP_USERNAME,
        password=config.SMTP_PASSWORD,
        use_tls=config.SMTP_USE_TLS,
        from_email=config.SMTP_FROM_EMAIL,
        timeout=config.SMTP_TIMEOUT_SECONDS,
        frontend_url=config.FRONTEND_URL,
    )
