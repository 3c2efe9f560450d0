"""
Vendorflow — Delivery channels (Gmail SMTP + Telegram).

Notifier is the NotificationChannel used by SEND tasks and for operator
review alerts.

SMTP setup:
1. Go to https://myaccount.google.com/apppasswords
2. Generate an App Password for "Mail"
3. Set SMTP_EMAIL and SMTP_APP_PASSWORD in .env

With DELIVERY_DRY_RUN=true nothing leaves the process: drafts are logged and
a ``dry-run-…`` delivery id is returned.
"""

import asyncio
import logging
import re
import smtplib
import uuid
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid

import aiohttp

from vendorflow.config import Settings, settings
from vendorflow.errors import DeliveryError, ValidationError
from vendorflow.schemas import Channel
from vendorflow.services.capabilities import NotificationChannel

logger = logging.getLogger(__name__)

SMTP_HOST = "smtp.gmail.com"
SMTP_PORT = 587
TELEGRAM_TIMEOUT = aiohttp.ClientTimeout(total=10)


def _esc_md(s: str) -> str:
    """Escape MarkdownV2 special characters."""
    return re.sub(r"([_*\[\]()~`>#+\-=|{}.!\\])", r"\\\1", str(s))


def build_email(sender: str, sender_name: str, to: str, subject: str, body: str) -> MIMEMultipart:
    """Plain-text email with a simple HTML alternative."""
    msg = MIMEMultipart("alternative")
    msg["From"] = f"{sender_name} <{sender}>"
    msg["To"] = to
    msg["Subject"] = subject
    msg["Message-ID"] = make_msgid()

    html = "".join(f"<p>{line}</p>" for line in body.split("\n") if line.strip())
    msg.attach(MIMEText(body, "plain"))
    msg.attach(MIMEText(html, "html"))
    return msg


class Notifier(NotificationChannel):
    def __init__(self, config: Settings | None = None, dry_run: bool | None = None):
        self._config = config or settings
        self._dry_run = self._config.delivery_dry_run if dry_run is None else dry_run

    async def send(self, channel: str, recipient: str, content: dict) -> str:
        channel = str(channel).upper()
        subject = content.get("subject") or ""
        body = content.get("body") or ""

        if self._dry_run:
            logger.warning("DRY-RUN %s to %s | %s | %s", channel, recipient, subject, body[:200])
            return f"dry-run-{uuid.uuid4().hex[:12]}"

        if channel == Channel.EMAIL.value:
            return await self._send_email(recipient, subject, body)
        if channel == Channel.TELEGRAM.value:
            text = f"*{_esc_md(subject)}*\n\n{_esc_md(body)}" if subject else _esc_md(body)
            return await self._send_telegram(recipient, text)
        if channel == Channel.SMS.value:
            raise ValidationError("SMS delivery is not configured for this deployment")
        raise ValidationError(f"Unknown delivery channel: {channel}")

    async def notify_operator(self, text: str) -> bool:
        """Send Telegram alert to the operator chat. Returns True on success."""
        chat_id = self._config.telegram_chat_id
        if not self._config.telegram_bot_token or not chat_id:
            logger.warning("Telegram not configured — skipping operator alert")
            return False
        try:
            await self._send_telegram(chat_id, _esc_md(text))
            return True
        except DeliveryError as e:
            logger.error("Operator alert failed: %s", e)
            return False

    # ── Email ──────────────────────────────────────────────────────────

    async def _send_email(self, to: str, subject: str, body: str) -> str:
        sender = self._config.smtp_email
        password = self._config.smtp_app_password
        if not sender or not password:
            raise DeliveryError("SMTP credentials not configured. Set SMTP_EMAIL and SMTP_APP_PASSWORD.")

        msg = build_email(sender, self._config.sender_name, to, subject, body)
        await asyncio.to_thread(self._smtp_send, sender, password, to, msg)
        logger.info("✅ Email sent to %s: %s", to, subject)
        return msg["Message-ID"]

    @staticmethod
    def _smtp_send(sender: str, password: str, to: str, msg: MIMEMultipart) -> None:
        try:
            with smtplib.SMTP(SMTP_HOST, SMTP_PORT, timeout=15) as server:
                server.ehlo()
                server.starttls()
                server.ehlo()
                server.login(sender, password)
                server.sendmail(sender, [to], msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            raise DeliveryError("SMTP authentication failed. Check your App Password.") from e
        except (smtplib.SMTPException, OSError) as e:
            raise DeliveryError(f"Email failed: {e}") from e

    # ── Telegram ───────────────────────────────────────────────────────

    async def _send_telegram(self, chat_id: str, text: str) -> str:
        """Low-level Telegram sendMessage wrapper. Returns the message id."""
        token = self._config.telegram_bot_token
        if not token:
            raise DeliveryError("Telegram bot token not configured")
        payload = {"chat_id": chat_id, "text": text, "parse_mode": "MarkdownV2"}
        url = f"https://api.telegram.org/bot{token}/sendMessage"
        try:
            async with aiohttp.ClientSession(timeout=TELEGRAM_TIMEOUT) as session:
                async with session.post(url, json=payload) as resp:
                    body = await resp.text()
                    if resp.status != 200:
                        raise DeliveryError(f"Telegram API {resp.status}: {body[:200]}")
                    data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise DeliveryError(f"Telegram failed: {e}") from e

        message_id = (data.get("result") or {}).get("message_id")
        logger.info("Telegram message sent to %s", chat_id)
        return f"tg-{message_id}"
