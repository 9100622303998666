"""
Email Notification Service

Sends billing lifecycle emails (renewal reminders, payment retries,
failures, suspension and reactivation notices) via SMTP.
"""

import asyncio
import html
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, Optional

import structlog

from billing_engine.shared.core.config import get_settings

logger = structlog.get_logger()


def escape_html(text: Any) -> str:
    """Escape tenant-provided content to prevent HTML injection."""
    if text is None or text == "":
        return ""
    return html.escape(str(text))


# kind -> (subject, headline, body). Bodies are formatted with escaped context values.
TEMPLATES: Dict[str, tuple] = {
    "renewal_reminder": (
        "Tu suscripción vence en {days_left} día(s)",
        "Recordatorio de renovación",
        "Tu {plan_name} vence el {due_date}. Renová ahora por {amount} {currency} para no perder el servicio.",
    ),
    "payment_retry": (
        "No pudimos cobrar tu suscripción",
        "Pago pendiente",
        "Tu {plan_name} venció el {due_date} y el pago sigue pendiente. "
        "Completalo antes del {grace_deadline} para evitar la suspensión.",
    ),
    "payment_failed": (
        "Falló el pago de tu suscripción",
        "Pago rechazado",
        "No pudimos procesar el pago de tu {plan_name}. Volveremos a intentarlo en los próximos días.",
    ),
    "subscription_suspended": (
        "Tu suscripción fue suspendida",
        "Suscripción suspendida",
        "Tu cuenta pasó al plan gratuito por falta de pago. Pagá la renovación para recuperar tu {plan_name}.",
    ),
    "subscription_reactivated": (
        "Tu suscripción está activa nuevamente",
        "Pago recibido",
        "Recibimos tu pago. Tu {plan_name} está activo hasta el {due_date}.",
    ),
}


class _SafeDict(dict):
    def __missing__(self, key):
        return ""


class EmailService:
    """
    Email notification sender for subscription lifecycle events.

    Implements the notification sender contract: `send()` never raises and
    reports delivery with a bool.
    """

    def __init__(
        self,
        smtp_host: Optional[str] = None,
        smtp_port: Optional[int] = None,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        from_email: Optional[str] = None,
    ):
        settings = get_settings()
        self.smtp_host = smtp_host or settings.SMTP_HOST
        self.smtp_port = smtp_port or settings.SMTP_PORT
        self.smtp_user = smtp_user or settings.SMTP_USER
        self.smtp_password = smtp_password or settings.SMTP_PASSWORD
        self.from_email = from_email or settings.SMTP_FROM

    async def send(self, contact: Optional[str], kind: str, context: Dict[str, Any]) -> bool:
        """
        Send a lifecycle email.

        Args:
            contact: Tenant email address
            kind: Template name (see TEMPLATES)
            context: Values rendered into the template

        Returns:
            True if email sent successfully
        """
        if not contact:
            logger.warning("email_notification_skipped", kind=kind, reason="No recipient")
            return False
        if kind not in TEMPLATES:
            logger.error("email_unknown_template", kind=kind)
            return False
        if not self.smtp_host:
            logger.warning("email_notification_skipped", kind=kind, reason="SMTP not configured")
            return False

        try:
            subject, html_body = self.render(kind, context)

            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = self.from_email
            msg["To"] = contact
            msg.attach(MIMEText(html_body, "html"))

            await asyncio.to_thread(self._deliver, contact, msg.as_string())

            logger.info("billing_email_sent", kind=kind, tenant_id=context.get("tenant_id"))
            return True

        except Exception as e:
            logger.error("billing_email_failed", kind=kind, error=str(e))
            return False

    def _deliver(self, recipient: str, message: str) -> None:
        with smtplib.SMTP(self.smtp_host, self.smtp_port) as server:
            server.starttls()
            if self.smtp_user:
                server.login(self.smtp_user, self.smtp_password)
            server.sendmail(self.from_email, [recipient], message)

    def render(self, kind: str, context: Dict[str, Any]) -> tuple:
        """Build subject and HTML body for a template."""
        values = _SafeDict({k: escape_html(v) for k, v in context.items()})
        subject_tpl, headline, body_tpl = TEMPLATES[kind]
        subject = subject_tpl.format_map(values)
        body = body_tpl.format_map(values)

        checkout_url = context.get("checkout_url")
        button = ""
        if checkout_url:
            button = f'<p><a class="button" href="{escape_html(checkout_url)}">Pagar ahora</a></p>'

        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 20px; }}
        .header {{ background: #0f172a; color: white; padding: 20px; border-radius: 8px 8px 0 0; }}
        .content {{ background: #f8fafc; padding: 20px; border-radius: 0 0 8px 8px; }}
        .button {{ background: #2563eb; color: white; padding: 12px 20px; border-radius: 6px; text-decoration: none; }}
    </style>
</head>
<body>
    <div class="container">
        <div class="header"><h2>{escape_html(headline)}</h2></div>
        <div class="content">
            <p>Hola {values['tenant_name']},</p>
            <p>{body}</p>
            {button}
        </div>
    </div>
</body>
</html>
"""
        return subject, html_body
