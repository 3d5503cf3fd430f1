import base64
import hashlib
import hmac
import logging

import requests

import config

logger = logging.getLogger(__name__)

PUSH_URL = "https://api.line.me/v2/bot/message/push"
REPLY_URL = "https://api.line.me/v2/bot/message/reply"


class LineDeliveryError(Exception):
    pass


def _post(url, payload):
    headers = {
        "Authorization": f"Bearer {config.LINE_CHANNEL_ACCESS_TOKEN}",
        "Content-Type": "application/json",
    }
    try:
        response = requests.post(url, headers=headers, json=payload, timeout=config.LINE_TIMEOUT_SECONDS)
    except requests.RequestException as e:
        raise LineDeliveryError(f"LINE connection error: {e}") from e

    # Check if LINE actually accepted it
    if not response.ok:
        raise LineDeliveryError(f"LINE {response.status_code}: {response.text}")


def push_text(to, text):
    _post(PUSH_URL, {"to": to, "messages": [{"type": "text", "text": text}]})
    logger.debug("📤 Pushed %d chars to %s", len(text), to)


def reply_text(reply_token, text):
    _post(REPLY_URL, {"replyToken": reply_token, "messages": [{"type": "text", "text": text}]})


def verify_signature(raw_body: bytes, signature: str) -> bool:
    """Check the x-line-signature header against the channel secret."""
    if not config.LINE_CHANNEL_SECRET or not signature:
        return False
    digest = hmac.new(config.LINE_CHANNEL_SECRET.encode(), raw_body, hashlib.sha256).digest()
    expected = base64.b64encode(digest).decode()
    return hmac.compare_digest(expected, signature)
