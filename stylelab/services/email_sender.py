"""
Email sender - SendGrid outbound for experiment messages.
Every message carries custom_args (campaign_id, subscriber_id) so tracking
events can be matched back to the style_emails row.
Retries transient SendGrid errors with exponential backoff.
"""
import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Optional

from stylelab.config import get_settings
from stylelab.errors import ProviderError
from stylelab.services.subscriber_directory import SubscriberRecord

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
RETRYABLE_STATUS_CODES = (429, 500, 502, 503)


@dataclass
class Sender:
    name: str
    email: str


def _plain_text(body_html: str) -> str:
    text = re.sub(r"<br\s*/?>|</p>", "\n", body_html)
    text = re.sub(r"<[^>]+>", "", text)
    return re.sub(r"[ \t]+", " ", text).strip()


def _personalize(body: str, subscriber: SubscriberRecord) -> str:
    return body.replace("{first_name}", subscriber.first_name or "there")


async def send_email(
    campaign_id: str,
    subscriber: SubscriberRecord,
    subject: str,
    body: str,
    sender: Sender,
    custom_args: Optional[dict] = None,
) -> dict:
    """
    Send one message via SendGrid.

    Returns:
        {"message_id": str, "status": "sent"}

    Raises:
        ProviderError: misconfiguration, bad recipient, or retries exhausted.
    """
    settings = get_settings()

    to_email = "".join((subscriber.email or "").split()).lower()
    if not to_email or "@" not in to_email:
        raise ProviderError("invalid recipient email", provider="sendgrid")

    if not settings.sendgrid_api_key:
        logger.error("SendGrid API key not configured")
        raise ProviderError("SendGrid not configured", provider="sendgrid")

    from sendgrid import SendGridAPIClient
    from sendgrid.helpers.mail import (
        Mail, Email, To, Content, CustomArg,
        TrackingSettings, OpenTracking, ClickTracking,
    )

    html = _personalize(body, subscriber)
    message = Mail(
        from_email=Email(sender.email or settings.sendgrid_from_email, sender.name or settings.sendgrid_from_name),
        to_emails=To(to_email, subscriber.first_name or None),
        subject=subject,
    )
    # text/plain must precede text/html
    message.content = [
        Content("text/plain", _plain_text(html)),
        Content("text/html", html),
    ]

    args = {"campaign_id": campaign_id, "subscriber_id": subscriber.id}
    args.update(custom_args or {})
    for key, value in args.items():
        message.custom_arg = CustomArg(key, str(value))

    message.tracking_settings = TrackingSettings(
        open_tracking=OpenTracking(enable=True),
        click_tracking=ClickTracking(enable=True, enable_text=False),
    )

    sg = SendGridAPIClient(api_key=settings.sendgrid_api_key)

    response = None
    for attempt in range(MAX_RETRIES):
        try:
            loop = asyncio.get_running_loop()
            response = await loop.run_in_executor(None, lambda: sg.send(message))
            break
        except Exception as send_err:
            status_code = getattr(send_err, "status_code", None)
            retryable = status_code in RETRYABLE_STATUS_CODES if status_code else True
            if not retryable or attempt == MAX_RETRIES - 1:
                logger.error(
                    "SendGrid send failed: to=%s error=%s",
                    to_email[:20] + "***", str(send_err),
                    extra={"provider": "sendgrid"},
                )
                raise ProviderError(f"SendGrid send failed: {send_err}", provider="sendgrid") from send_err
            wait_seconds = 2 ** (attempt + 1)  # 2s, 4s
            logger.warning(
                "SendGrid send attempt %d failed (status=%s), retrying in %ds",
                attempt + 1, status_code, wait_seconds,
            )
            await asyncio.sleep(wait_seconds)

    message_id = response.headers.get("X-Message-Id", "") if response is not None else ""
    logger.debug(
        "Email sent: to=%s subject=%s message_id=%s",
        to_email[:20] + "***", subject[:30], message_id[:12],
    )
    return {"message_id": message_id, "status": "sent"}
