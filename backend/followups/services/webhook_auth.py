from __future__ import annotations

import hmac
import logging
from typing import Optional

from starlette.datastructures import Headers

logger = logging.getLogger("followup_engine.webhooks")

TOKEN_HEADERS = ["x-timerex-authorization", "x-booking-authorization"]


class TokenVerificationError(Exception):
    pass


def _header_value(headers: Headers, candidates: list[str]) -> Optional[str]:
    for key in candidates:
        value = headers.get(key)
        if value:
            return value.strip()
    return None


def validate_webhook_token(provided: Optional[str], secret: str) -> bool:
    if not secret:
        logger.warning("booking_webhook_token_not_configured rejecting request")
        return False
    if not provided:
        return False
    return hmac.compare_digest(secret.encode("utf-8"), provided.strip().encode("utf-8"))


def verify_booking_webhook_token(headers: Headers, secret: str) -> None:
    token = _header_value(headers, TOKEN_HEADERS)
    if not token:
        raise TokenVerificationError("missing booking webhook token")
    if not validate_webhook_token(token, secret):
        raise TokenVerificationError("invalid booking webhook token")
