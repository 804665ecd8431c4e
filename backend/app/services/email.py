from __future__ import annotations

import logging
import smtplib
from email.mime.text import MIMEText
from email.utils import formatdate
from html import escape as html_escape

import boto3
import resend
from botocore.exceptions import BotoCoreError, ClientError, EndpointConnectionError, NoCredentialsError

from app.core.config import settings
from app.models.one_time_code import CodePurpose

logger = logging.getLogger(__name__)


class EmailNotConfiguredError(RuntimeError):
    pass


class EmailDeliveryError(RuntimeError):
    """
    Raised when a provider is configured but delivery fails.
    """


def _normalize_provider(raw: str | None) -> str:
    """
    Supported providers:
    - resend (default when unset)
    - ses
    - smtp
    """
    provider = (raw or "").strip().lower()
    if not provider:
        return "resend"
    if provider in {"resend", "ses", "smtp"}:
        return provider
    raise EmailNotConfiguredError(
        f"Unsupported EMAIL_PROVIDER={provider!r}. Supported: resend (default), ses, smtp."
    )


def _require_from_email() -> str:
    if not settings.FROM_EMAIL:
        raise EmailNotConfiguredError("FROM_EMAIL is not set")
    return settings.FROM_EMAIL


def _send_email_ses(to_email: str, subject: str, body: str) -> str | None:
    region = (settings.AWS_REGION or "").strip()
    if not region:
        raise EmailNotConfiguredError("AWS_REGION is not set (required for SES)")
    from_email = _require_from_email()

    try:
        client = boto3.client("ses", region_name=region)
        res = client.send_email(
            Source=from_email,
            Destination={"ToAddresses": [to_email]},
            Message={
                "Subject": {"Data": subject, "Charset": "UTF-8"},
                "Body": {"Text": {"Data": body, "Charset": "UTF-8"}},
            },
        )
    except NoCredentialsError as e:
        raise EmailDeliveryError("SES email failed: AWS credentials not available") from e
    except EndpointConnectionError as e:
        raise EmailDeliveryError("SES email failed: could not connect to SES endpoint") from e
    except ClientError as e:
        code = (e.response or {}).get("Error", {}).get("Code", "ClientError")
        raise EmailDeliveryError(f"SES email failed: {code}") from e
    except BotoCoreError as e:
        raise EmailDeliveryError("SES email failed") from e

    msg_id = res.get("MessageId")
    logger.info("SES email sent: to=%s msg_id=%s", to_email, msg_id)
    return msg_id


def _send_email_resend(to_email: str, subject: str, body: str) -> str | None:
    api_key = (settings.RESEND_API_KEY or "").strip()
    if not api_key:
        raise EmailNotConfiguredError("RESEND_API_KEY is not set")
    from_email = _require_from_email()

    payload = {
        "from": from_email,
        "to": [to_email],
        "subject": subject,
        "text": body,
        "html": f"<pre>{html_escape(body)}</pre>",
    }

    try:
        resend.api_key = api_key
        res = resend.Emails.send(payload)  # type: ignore[attr-defined]
    except Exception as e:  # noqa: BLE001 - the SDK raises its own runtime-specific errors
        raise EmailDeliveryError(f"Resend send failed: {e}") from e

    msg_id: str | None = None
    if isinstance(res, dict):
        if res.get("error"):
            raise EmailDeliveryError(f"Resend API error: {res.get('error')}")
        v = res.get("id")
        if isinstance(v, str) and v.strip():
            msg_id = v.strip()

    logger.info("Resend email sent: to=%s msg_id=%s", to_email, msg_id)
    return msg_id


def _send_email_smtp(to_email: str, subject: str, body: str) -> None:
    if not settings.SMTP_HOST:
        raise EmailNotConfiguredError("SMTP_HOST is not set")
    from_email = _require_from_email()

    msg = MIMEText(body, "plain", "utf-8")
    msg["From"] = from_email
    msg["To"] = to_email
    msg["Subject"] = subject
    msg["Date"] = formatdate(localtime=True)

    try:
        if settings.SMTP_USE_SSL:
            server: smtplib.SMTP = smtplib.SMTP_SSL(settings.SMTP_HOST, settings.SMTP_PORT, timeout=10)
        else:
            server = smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT, timeout=10)
    except OSError as e:
        raise EmailDeliveryError(f"SMTP connect failed: {e}") from e

    try:
        server.ehlo()
        if settings.SMTP_USE_TLS and not settings.SMTP_USE_SSL:
            server.starttls()
            server.ehlo()
        if settings.SMTP_USERNAME:
            server.login(settings.SMTP_USERNAME, settings.SMTP_PASSWORD)
        server.sendmail(from_email, [to_email], msg.as_string())
    except (smtplib.SMTPException, OSError) as e:
        # Socket timeouts and resets are OSError, not SMTPException.
        raise EmailDeliveryError(f"SMTP send failed: {e}") from e
    finally:
        try:
            server.quit()
        except (smtplib.SMTPException, OSError):
            pass
    logger.info("SMTP email sent: to=%s", to_email)


def send_email(to_email: str, subject: str, body: str) -> str | None:
    """
    Sends email using configured provider.
    - EMAIL_PROVIDER=resend (default): Resend API
    - EMAIL_PROVIDER=ses: AWS SES via boto3
    - EMAIL_PROVIDER=smtp: SMTP via stdlib
    """
    provider = _normalize_provider(settings.EMAIL_PROVIDER)
    if provider == "smtp":
        _send_email_smtp(to_email=to_email, subject=subject, body=body)
        return None
    if provider == "ses":
        return _send_email_ses(to_email=to_email, subject=subject, body=body)
    return _send_email_resend(to_email=to_email, subject=subject, body=body)


def render_code_email(code: str, purpose: CodePurpose, expires_minutes: int) -> tuple[str, str]:
    app_name = settings.APP_NAME
    expires_text = f"{expires_minutes} minute{'s' if expires_minutes != 1 else ''}"
    if purpose is CodePurpose.PASSWORD_RESET:
        subject = f"Reset your {app_name} password"
        intro = "Use this code to reset your password"
        outro = "If you didn't ask to reset your password, you can ignore this email."
    else:
        subject = f"Verify your {app_name} email"
        intro = "Use this code to verify your email"
        outro = "If you did not create this account, you can ignore this email."

    body = "\n".join([f"{intro} (expires in {expires_text}):", "", code, "", outro])
    return subject, body


def send_one_time_code(to_email: str, code: str, purpose: CodePurpose, expires_minutes: int) -> None:
    """Delivers a one-time code. With EMAIL_ENABLED off the message is dropped (and the code never logged)."""
    if not settings.EMAIL_ENABLED:
        logger.info("Email disabled; suppressed %s code email to=%s", purpose.value, to_email)
        return
    subject, body = render_code_email(code, purpose, expires_minutes)
    send_email(to_email=to_email, subject=subject, body=body)


def deliver_one_time_code(to_email: str, code: str, purpose: CodePurpose, expires_minutes: int) -> None:
    """
    Fire-and-forget delivery used by the auth service: failures are logged, never raised,
    so a flaky provider can't fail a registration or reset request.
    """
    try:
        send_one_time_code(to_email, code, purpose, expires_minutes)
    except (EmailNotConfiguredError, EmailDeliveryError):
        logger.exception("Failed to deliver %s code to=%s", purpose.value, to_email)
    except Exception:  # noqa: BLE001 - provider SDKs raise outside our error types
        logger.exception("Unexpected error delivering %s code to=%s", purpose.value, to_email)
