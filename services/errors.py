class CRMError(Exception):
    """Base class for engine errors surfaced to the immediate caller."""

class DuplicateLeadError(CRMError):
    def __init__(self, phone_normalized: str, existing_lead_id: str):
        self.phone_normalized = phone_normalized
        self.existing_lead_id = existing_lead_id
        super().__init__(f"Duplicate lead detected for {phone_normalized} (existing lead {existing_lead_id})")

class ConflictError(CRMError):
    def __init__(self, lead_id: str, expected_version: int, current_version: int):
        self.lead_id = lead_id
        self.expected_version = expected_version
        self.current_version = current_version
        super().__init__(
            f"Conflict detected! Lead {lead_id} was updated by someone else "
            f"(you have v{expected_version}, current is v{current_version}). Please reload."
        )

class NotFoundError(CRMError):
    pass

class ValidationError(CRMError):
    pass

class LastSuperAdminError(CRMError):
    pass

class AutomationDeliveryError(CRMError):
    def __init__(self, channel: str, code: str, message: str, retryable: bool):
        self.channel = channel
        self.code = code
        self.detail = message
        self.retryable = retryable
        label = "Email" if channel == "email" else "WhatsApp"
        super().__init__(f"{label} Failed: {message}")

# code -> (default message per channel, retryable)
DELIVERY_FAILURES = {
    "EAUTH": ({
        "email": "Email authentication failed. Please check SMTP credentials in Settings.",
        "whatsapp": "WhatsApp authentication failed. Please check the API token in Settings.",
    }, False),
    "ETIMEDOUT": ({
        "email": "Email server timed out. Safe to retry.",
        "whatsapp": "WhatsApp provider timed out. Safe to retry.",
    }, True),
    "ECONNREFUSED": ({
        "email": "Cannot connect to email server. Check SMTP host and port.",
        "whatsapp": "Cannot connect to WhatsApp provider. Check the integration settings.",
    }, False),
    "ERATELIMIT": ({
        "email": "Email rate limit exceeded. Retry in 1 hour.",
        "whatsapp": "WhatsApp rate limit exceeded. Retry in 1 hour.",
    }, True),
}

def delivery_failure(channel: str, code: str, message: str = None, retryable: bool = None) -> AutomationDeliveryError:
    """Builds a taxonomy error; unknown codes are provider rejections (EPROVIDER)."""
    messages, default_retryable = DELIVERY_FAILURES.get(code, ({}, False))
    return AutomationDeliveryError(
        channel,
        code,
        message or messages.get(channel, "Provider rejected the message."),
        default_retryable if retryable is None else retryable,
    )
