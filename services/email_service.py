import os
import logging
from email.message import EmailMessage
import aiosmtplib
from aiosmtplib import send
from dotenv import load_dotenv
from services.errors import delivery_failure

# Use development env by default if not set
env_file = ".env.dev" if os.getenv("ENV") == "dev" else ".env"
load_dotenv(env_file)

logger = logging.getLogger(__name__)

# SMTP reply codes the server uses to ask for a later retry
RATE_LIMIT_CODES = {421, 450, 451, 452}

class EmailService:
    """SMTP delivery for lead automations. Settings come from the `smtp` integration config."""

    SMTP_TIMEOUT = int(os.getenv("SMTP_TIMEOUT", "30"))

    @classmethod
    async def send_email(cls, smtp: dict, to: str, subject: str, body: str):
        """Sends a plain text email; provider failures are raised as AutomationDeliveryError."""
        if not smtp.get("host") or not smtp.get("username") or not smtp.get("password"):
            logger.error("Email settings missing: SMTP host/username/password not configured.")
            raise delivery_failure("email", "EAUTH")

        from_email = smtp.get("from_email") or smtp["username"]
        message = EmailMessage()
        message["From"] = f"{smtp['from_name']} <{from_email}>" if smtp.get("from_name") else from_email
        message["To"] = to
        message["Subject"] = subject
        message.set_content(body)

        port = int(smtp.get("port") or 587)
        encryption = (smtp.get("encryption") or "TLS").upper()
        try:
            await send(
                message,
                hostname=smtp["host"],
                port=port,
                username=smtp["username"],
                password=smtp["password"],
                use_tls=encryption == "SSL",
                start_tls=encryption == "TLS",
                timeout=cls.SMTP_TIMEOUT,
            )
        except aiosmtplib.SMTPException as e:
            raise smtp_error_to_failure(e) from e
        except OSError as e:
            logger.error(f"Failed to reach SMTP server {smtp['host']}:{port}: {e}")
            raise delivery_failure("email", "ECONNREFUSED") from e

        logger.info(f"Email sent successfully to {to}")

def smtp_error_to_failure(e: Exception):
    # SMTPConnectTimeoutError is both a timeout and a connect error; timeouts win
    if isinstance(e, aiosmtplib.SMTPTimeoutError):
        return delivery_failure("email", "ETIMEDOUT")
    if isinstance(e, aiosmtplib.SMTPAuthenticationError):
        return delivery_failure("email", "EAUTH")
    if isinstance(e, (aiosmtplib.SMTPConnectError, aiosmtplib.SMTPServerDisconnected)):
        return delivery_failure("email", "ECONNREFUSED")
    if isinstance(e, aiosmtplib.SMTPResponseException):
        if e.code in RATE_LIMIT_CODES:
            return delivery_failure("email", "ERATELIMIT")
        # 4xx replies are transient, 5xx are permanent
        return delivery_failure("email", "EPROVIDER", f"SMTP server replied {e.code}: {e.message}", retryable=400 <= e.code < 500)
    logger.error(f"Unexpected SMTP failure: {e}")
    return delivery_failure("email", "EPROVIDER", str(e))

email_service = EmailService()
