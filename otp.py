"""
One-time codes delivered over the WhatsApp Business Graph API.

Codes are stored hashed in the `otp` collection, one per phone number, next to
the phone's send-rate window. Without WhatsApp credentials the code is logged
instead of sent, and only in development.
"""
import hashlib
import logging
import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

import requests

import config
from database import as_utc, get_collection, now_utc

logger = logging.getLogger(__name__)


@dataclass
class DeliveryResult:
    success: bool
    error: Optional[str] = None
    message_id: Optional[str] = None
    error_code: Optional[str] = None


class RateLimited(Exception):
    def __init__(self, retry_after: int):
        super().__init__(f"Too many codes requested, retry in {retry_after}s")
        self.retry_after = retry_after


def generate_code() -> str:
    return str(100000 + secrets.randbelow(900000))


def hash_code(code: str) -> str:
    return hashlib.sha256(code.encode()).hexdigest()


def format_phone(phone: str) -> str:
    formatted = phone.strip()
    if formatted.startswith("whatsapp:"):
        formatted = formatted[len("whatsapp:"):]
    if not formatted.startswith("+"):
        formatted = f"+{formatted}"
    return formatted


def build_payload(phone: str, code: str) -> dict:
    if config.WHATSAPP_OTP_TEMPLATE_NAME:
        return {
            "messaging_product": "whatsapp",
            "to": phone,
            "type": "template",
            "template": {
                "name": config.WHATSAPP_OTP_TEMPLATE_NAME,
                "language": {"code": config.WHATSAPP_OTP_TEMPLATE_LANGUAGE},
                "components": [
                    {"type": "body", "parameters": [{"type": "text", "text": code}]},
                ],
            },
        }
    # free-form text only reaches users inside the 24h customer service window
    return {
        "messaging_product": "whatsapp",
        "recipient_type": "individual",
        "to": phone,
        "type": "text",
        "text": {
            "preview_url": False,
            "body": f"Your DevConnect verification code is {code}. It expires in {config.OTP_TTL_MINUTES} minutes.",
        },
    }


def send_whatsapp_otp(phone: str, code: str) -> DeliveryResult:
    if not config.WHATSAPP_ACCESS_TOKEN or not config.WHATSAPP_PHONE_NUMBER_ID:
        if not config.IS_PRODUCTION:
            logger.warning("WhatsApp credentials not configured; OTP for %s is %s", phone, code)
            return DeliveryResult(success=True)
        return DeliveryResult(
            success=False,
            error="WhatsApp Business API credentials not configured",
            error_code="not_configured",
        )

    url = f"{config.GRAPH_API_BASE_URL}/{config.WHATSAPP_PHONE_NUMBER_ID}/messages"
    headers = {
        "Authorization": f"Bearer {config.WHATSAPP_ACCESS_TOKEN}",
        "Content-Type": "application/json",
    }
    try:
        response = requests.post(url, json=build_payload(format_phone(phone), code), headers=headers, timeout=10)
    except requests.RequestException as e:
        logger.error("WhatsApp request failed: %s", e)
        return DeliveryResult(success=False, error=str(e), error_code="network_error")

    try:
        body = response.json()
    except ValueError:
        body = {}

    if not response.ok:
        err = body.get("error") or {}
        logger.error("WhatsApp API error %s: %s", response.status_code, err.get("message"))
        return DeliveryResult(
            success=False,
            error=err.get("message") or f"HTTP {response.status_code}",
            error_code=str(err.get("code") or response.status_code),
        )

    messages = body.get("messages") or [{}]
    return DeliveryResult(success=True, message_id=messages[0].get("id"))


def issue_code(phone: str, purpose: str = "login") -> str:
    """Create and store a fresh code for `phone`, enforcing the send-rate window."""
    codes = get_collection("otp")
    now = now_utc()
    existing = codes.find_one({"phone": phone})

    window_started = as_utc(existing.get("window_started_at")) if existing else None
    send_count = existing.get("send_count", 0) if existing else 0
    window = timedelta(minutes=config.OTP_RATE_WINDOW_MINUTES)
    if window_started is None or now > window_started + window:
        window_started = now
        send_count = 0
    if send_count >= config.OTP_MAX_SENDS:
        raise RateLimited(int((window_started + window - now).total_seconds()) + 1)

    code = generate_code()
    codes.update_one(
        {"phone": phone},
        {"$set": {
            "phone": phone,
            "code_hash": hash_code(code),
            "purpose": purpose,
            "attempts": 0,
            "expires_at": now + timedelta(minutes=config.OTP_TTL_MINUTES),
            "send_count": send_count + 1,
            "window_started_at": window_started,
            "updated_at": now,
        }},
        upsert=True,
    )
    return code


def verify_code(phone: str, code: str, purpose: Optional[str] = None) -> bool:
    codes = get_collection("otp")
    entry = codes.find_one({"phone": phone, "code_hash": {"$ne": None}})
    if not entry:
        return False
    if purpose and entry.get("purpose") != purpose:
        return False

    clear = {"$set": {"code_hash": None, "attempts": 0}}
    if now_utc() > as_utc(entry["expires_at"]) or entry.get("attempts", 0) >= config.OTP_MAX_ATTEMPTS:
        codes.update_one({"_id": entry["_id"]}, clear)
        return False
    if not secrets.compare_digest(entry["code_hash"], hash_code(code)):
        codes.update_one({"_id": entry["_id"]}, {"$inc": {"attempts": 1}})
        return False

    codes.update_one({"_id": entry["_id"]}, clear)
    return True
