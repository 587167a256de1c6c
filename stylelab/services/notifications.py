"""
Owner notifications - transactional SendGrid emails when a process finishes.
Uses the transactional sender identity, no tracking. Never raises: a failed
notification is logged and reported in the returned dict.
"""
import asyncio
import logging

from stylelab.config import get_settings

logger = logging.getLogger(__name__)


async def _send_transactional(
    to_email: str,
    subject: str,
    html_content: str,
    text_content: str,
) -> dict:
    """
    Returns: {"message_id": str|None, "status": str, "error": str|None}
    """
    settings = get_settings()
    api_key = settings.sendgrid_transactional_key or settings.sendgrid_api_key
    from_email = settings.from_email_transactional or settings.sendgrid_from_email

    if not api_key:
        logger.error("No SendGrid API key configured for transactional email")
        return {"message_id": None, "status": "error", "error": "SendGrid not configured"}

    try:
        from sendgrid import SendGridAPIClient
        from sendgrid.helpers.mail import Mail, Email, To, Content

        message = Mail(
            from_email=Email(from_email, settings.sendgrid_from_name),
            to_emails=To(to_email),
            subject=subject,
        )
        message.content = [
            Content("text/plain", text_content),
            Content("text/html", html_content),
        ]

        sg = SendGridAPIClient(api_key=api_key)
        loop = asyncio.get_running_loop()
        response = await loop.run_in_executor(None, lambda: sg.send(message))
        message_id = response.headers.get("X-Message-Id", "")

        logger.info(
            "Transactional email sent: to=%s subject=%s",
            to_email[:20] + "***", subject[:40],
        )
        return {"message_id": message_id, "status": "sent", "error": None}

    except Exception as e:
        logger.error(
            "Transactional email failed: to=%s error=%s",
            to_email[:20] + "***", str(e),
        )
        return {"message_id": None, "status": "error", "error": str(e)}


def _style_line(params: dict) -> str:
    return " / ".join(
        str(params.get(k, "-"))
        for k in ("copywriting_style", "writing_style", "tone", "personality")
    )


async def notify_completion(user_email: str, process_id: str, result: dict) -> dict:
    """Tell the owner their optimization finished and which style won."""
    best = result.get("best_parameters") or {}
    conversion = float(best.get("conversion_rate", 0.0)) * 100
    click = float(best.get("click_rate", 0.0)) * 100
    rounds = f"{result.get('completed_rounds', 0)}/{result.get('total_rounds', 0)}"
    status_url = f"{get_settings().app_base_url}/api/v1/optimizations/{process_id}/tree"

    html = f"""
    <div style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; max-width: 520px; margin: 0 auto; padding: 32px 20px;">
      <h2 style="color: #111; font-size: 20px;">Your style optimization is complete</h2>
      <p style="color: #555; font-size: 15px; line-height: 1.6;">
        Rounds completed: <strong>{rounds}</strong><br/>
        Winning style: <strong>{_style_line(best)}</strong><br/>
        Conversion rate: <strong>{conversion:.2f}%</strong> &middot; Click rate: <strong>{click:.2f}%</strong>
      </p>
      <p><a href="{status_url}" style="color: #2563eb;">View the full round breakdown</a></p>
    </div>
    """
    text = (
        "Your style optimization is complete\n\n"
        f"Rounds completed: {rounds}\n"
        f"Winning style: {_style_line(best)}\n"
        f"Conversion rate: {conversion:.2f}%  Click rate: {click:.2f}%\n\n"
        f"Full breakdown: {status_url}\n"
    )
    return await _send_transactional(user_email, "Your email style optimization is complete", html, text)


async def notify_failure(user_email: str, process_id: str, reason: str) -> dict:
    """Tell the owner their optimization could not produce a result."""
    html = f"""
    <div style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; max-width: 520px; margin: 0 auto; padding: 32px 20px;">
      <h2 style="color: #111; font-size: 20px;">Your style optimization failed</h2>
      <p style="color: #555; font-size: 15px; line-height: 1.6;">
        Process <code>{process_id[:8]}</code> finished without a completed round.<br/>
        Reason: {reason}
      </p>
    </div>
    """
    text = (
        "Your style optimization failed\n\n"
        f"Process {process_id[:8]} finished without a completed round.\n"
        f"Reason: {reason}\n"
    )
    return await _send_transactional(user_email, "Your email style optimization failed", html, text)
