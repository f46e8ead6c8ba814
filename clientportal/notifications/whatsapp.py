import logging
import re
from typing import Optional

import requests
from django.conf import settings

logger = logging.getLogger(__name__)


def _normalize_phone(phone: str) -> Optional[str]:
    """Return a digits/plus only phone or None."""
    if not phone:
        return None
    cleaned = re.sub(r'[^0-9+]', '', phone)
    return cleaned if cleaned else None


def _get_config():
    """Return token, phone number id and API version, or None when sending is disabled."""
    if not getattr(settings, 'WHATSAPP_ENABLED', False):
        return None
    token = (getattr(settings, 'WHATSAPP_TOKEN', '') or '').strip()
    number_id = (getattr(settings, 'WHATSAPP_PHONE_NUMBER_ID', '') or '').strip()
    if not token or not number_id:
        return None
    return {
        'token': token,
        'phone_number_id': number_id,
        'api_version': getattr(settings, 'WHATSAPP_API_VERSION', 'v19.0') or 'v19.0',
    }


def send_text(to_phone: str, body: str) -> bool:
    """
    Send a WhatsApp text message via WhatsApp Cloud API.
    Returns True on API success, False otherwise. Safe no-op if not configured.
    """
    config = _get_config()
    if not config:
        return False
    to = _normalize_phone(to_phone)
    if not to:
        logger.info("WhatsApp skip: invalid phone for %s", to_phone)
        return False

    url = f"https://graph.facebook.com/{config['api_version']}/{config['phone_number_id']}/messages"
    headers = {
        "Authorization": f"Bearer {config['token']}",
        "Content-Type": "application/json",
    }
    payload = {
        "messaging_product": "whatsapp",
        "to": to,
        "type": "text",
        "text": {"body": body[:1024]},
    }
    try:
        resp = requests.post(url, headers=headers, json=payload, timeout=10)
    except requests.RequestException as exc:
        logger.warning("WhatsApp send error: %s", exc)
        return False
    if resp.status_code >= 400:
        logger.warning("WhatsApp send failed %s: %s", resp.status_code, resp.text)
        return False
    return True
