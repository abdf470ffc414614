import os
import logging
import httpx
from services.errors import delivery_failure

logger = logging.getLogger(__name__)

GRAPH_API_URL = os.getenv("WHATSAPP_GRAPH_API_URL", "https://graph.facebook.com/v17.0")
WHATSAPP_TIMEOUT = float(os.getenv("WHATSAPP_TIMEOUT_SECONDS", "15"))

async def send_whatsapp_message(config: dict, to_number: str, text: str, template_id: str = None, client: httpx.AsyncClient = None):
    """
    Sends a WhatsApp Cloud API message. Provider failures are raised as
    AutomationDeliveryError on the taxonomy.
    """
    api_token = config.get("access_token")
    phone_id = config.get("phone_number_id")
    if not api_token or not phone_id:
        logger.error("WhatsApp credentials missing: phone_number_id/access_token not configured")
        raise delivery_failure("whatsapp", "EAUTH")

    url = f"{GRAPH_API_URL}/{phone_id}/messages"
    headers = {
        "Authorization": f"Bearer {api_token}",
        "Content-Type": "application/json"
    }
    if template_id:
        payload = {
            "messaging_product": "whatsapp",
            "to": to_number,
            "type": "template",
            "template": {"name": template_id, "language": {"code": config.get("language", "en")}},
        }
    else:
        payload = {
            "messaging_product": "whatsapp",
            "to": to_number,
            "text": {"body": text}
        }

    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=WHATSAPP_TIMEOUT)
    try:
        response = await client.post(url, headers=headers, json=payload)
    except httpx.TimeoutException as e:
        raise delivery_failure("whatsapp", "ETIMEDOUT") from e
    except httpx.TransportError as e:
        logger.error(f"WhatsApp transport error: {e}")
        raise delivery_failure("whatsapp", "ECONNREFUSED") from e
    finally:
        if owns_client:
            await client.aclose()

    if response.status_code in (401, 403):
        raise delivery_failure("whatsapp", "EAUTH")
    if response.status_code == 429:
        raise delivery_failure("whatsapp", "ERATELIMIT")
    if response.status_code >= 400:
        logger.error(f"WhatsApp Send Failed: {response.text}")
        raise delivery_failure(
            "whatsapp", "EPROVIDER",
            f"WhatsApp provider replied {response.status_code}",
            retryable=response.status_code >= 500,
        )

    logger.info(f"WhatsApp message sent to {to_number}")
    return response.json()
