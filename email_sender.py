# email_sender.py - delivers download links by SMTP, HTTP email APIs, or the log
import html
import logging
import smtplib
from email.message import EmailMessage
from typing import Dict, List, Tuple

import requests

from errors import EmailDeliveryError
from settings import Settings

log = logging.getLogger("email_sender")


def send_download_email(settings: Settings, to: str, subject: str, html_content: str, text: str) -> None:
    """Send one message through the configured transport.

    Raises EmailDeliveryError with a readable detail on any failure.
    """
    mode = settings.email_mode
    if mode == "console":
        send_via_console(to, subject, text)
    elif mode == "smtp":
        send_via_smtp(settings, to, subject, html_content, text)
    elif mode == "resend":
        send_via_resend(settings, to, subject, html_content)
    elif mode == "sendgrid":
        send_via_sendgrid(settings, to, subject, html_content)
    elif mode == "mailgun":
        send_via_mailgun(settings, to, subject, html_content)
    else:
        raise EmailDeliveryError(f"Unknown email mode: {mode}")


def send_via_console(to: str, subject: str, text: str) -> None:
    log.info("EMAIL_MODE=console\nTO: %s\nSUBJECT: %s\nTEXT: %s", to, subject, text)


def _from_header(settings: Settings) -> str:
    sender = settings.smtp_from
    if not sender:
        raise EmailDeliveryError("Email not configured - missing SMTP_FROM")
    if settings.from_name and "<" not in sender:
        return f"{settings.from_name} <{sender}>"
    return sender


def send_via_smtp(settings: Settings, to: str, subject: str, html_content: str, text: str) -> None:
    if not settings.smtp_host:
        raise EmailDeliveryError("Email not configured - missing SMTP_HOST")

    msg = EmailMessage()
    msg["From"] = _from_header(settings)
    msg["To"] = to
    msg["Subject"] = subject
    msg.set_content(text)
    msg.add_alternative(html_content, subtype="html")

    try:
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=settings.email_timeout) as smtp:
            smtp.ehlo()
            if smtp.has_extn("starttls"):
                smtp.starttls()
                smtp.ehlo()
            if settings.smtp_user:
                smtp.login(settings.smtp_user, settings.smtp_pass)
            smtp.send_message(msg)
    except (smtplib.SMTPException, OSError) as e:
        raise EmailDeliveryError(f"SMTP delivery failed: {e}") from e
    log.info("✅ Email sent via SMTP to %s", to)


def _post(url: str, ok_status: int, provider: str, timeout: int, **kwargs) -> None:
    try:
        response = requests.post(url, timeout=timeout, **kwargs)
    except requests.RequestException as e:
        raise EmailDeliveryError(f"{provider} request failed: {e}") from e
    if response.status_code != ok_status:
        log.error("❌ %s API error %s: %s", provider, response.status_code, response.text[:200])
        raise EmailDeliveryError(f"{provider} API error {response.status_code}")


def _require_api_key(settings: Settings) -> None:
    if not settings.email_api_key or not settings.smtp_from:
        raise EmailDeliveryError("Email not configured - missing EMAIL_API_KEY or SMTP_FROM")


def send_via_resend(settings: Settings, to_email: str, subject: str, html_content: str) -> None:
    _require_api_key(settings)
    _post(
        "https://api.resend.com/emails",
        200,
        "Resend",
        settings.email_timeout,
        headers={"Authorization": f"Bearer {settings.email_api_key}", "Content-Type": "application/json"},
        json={"from": _from_header(settings), "to": [to_email], "subject": subject, "html": html_content},
    )
    log.info("✅ Email sent via Resend to %s", to_email)


def send_via_sendgrid(settings: Settings, to_email: str, subject: str, html_content: str) -> None:
    _require_api_key(settings)
    _post(
        "https://api.sendgrid.com/v3/mail/send",
        202,
        "SendGrid",
        settings.email_timeout,
        headers={"Authorization": f"Bearer {settings.email_api_key}", "Content-Type": "application/json"},
        json={
            "personalizations": [{"to": [{"email": to_email}], "subject": subject}],
            "from": {"email": settings.smtp_from, "name": settings.from_name},
            "content": [{"type": "text/html", "value": html_content}],
        },
    )
    log.info("✅ Email sent via SendGrid to %s", to_email)


def send_via_mailgun(settings: Settings, to_email: str, subject: str, html_content: str) -> None:
    _require_api_key(settings)
    if not settings.mailgun_domain:
        raise EmailDeliveryError("MAILGUN_DOMAIN not set")
    _post(
        f"https://api.mailgun.net/v3/{settings.mailgun_domain}/messages",
        200,
        "Mailgun",
        settings.email_timeout,
        auth=("api", settings.email_api_key),
        data={"from": _from_header(settings), "to": to_email, "subject": subject, "html": html_content},
    )
    log.info("✅ Email sent via Mailgun to %s", to_email)


def build_link_email(intro: str, links: List[Dict]) -> Tuple[str, str]:
    """HTML and plain-text bodies listing each link with its expiry."""
    items = []
    lines = []
    for link in links:
        title = link.get("title") or "Your ebook"
        expires = link.get("expires_at", "")
        items.append(
            f'<li style="margin-bottom: 12px;">'
            f'<a href="{html.escape(link["url"], quote=True)}" style="color: #204b3a; font-weight: 600;">'
            f"{html.escape(title)}</a> (expires {html.escape(expires)})</li>"
        )
        lines.append(f"{title}: {link['url']} (expires {expires})")

    html_content = f"""
    <!DOCTYPE html>
    <html>
    <head><meta charset="UTF-8"><title>Your ebook download</title></head>
    <body style="font-family: 'Segoe UI', Arial, sans-serif; color: #121212; background: #f6f4ef; padding: 24px;">
        <div style="max-width: 560px; margin: 0 auto; background: #ffffff; border: 1px solid #e3ded3; border-radius: 14px; padding: 24px;">
            <p>{html.escape(intro)}</p>
            <ul>{''.join(items)}</ul>
            <p style="color: #6b6b6b; font-size: 13px;">Links are personal and expire shortly. If a link stops working you can request a new one from your order page.</p>
        </div>
    </body>
    </html>
    """
    text = intro + "\n" + "\n".join(lines)
    return html_content, text
