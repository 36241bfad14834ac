"""Shared dependencies for API endpoints.

Authentication happens upstream; the gateway forwards the resolved
identity in headers and endpoints read it from here. The payment
collaborator calls back directly and signs its requests instead.
"""

import hashlib
import hmac
import logging
from typing import Any, Dict, Optional

from fastapi import Header, HTTPException, Request, status

from .config import get_cached_settings

logger = logging.getLogger(__name__)


async def get_current_actor(
    x_user_id: Optional[str] = Header(None),
    x_org_id: Optional[str] = Header(None),
    x_platform_admin: Optional[str] = Header(None),
) -> Dict[str, Any]:
    """Return the calling user as a dictionary with ``id``, ``org_id`` and ``is_admin``."""
    if not x_user_id or not x_org_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing caller identity",
        )
    return {
        "id": x_user_id,
        "org_id": x_org_id,
        "is_admin": (x_platform_admin or "").lower() in ("1", "true", "yes"),
    }


def sign_payment_body(body: bytes, secret: str) -> str:
    """HMAC-SHA256 signature expected in ``X-Payment-Signature``."""
    digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


async def verify_payment_signature(
    request: Request,
    x_payment_signature: Optional[str] = Header(None),
) -> None:
    """Reject payment callbacks that are not signed with the shared secret."""
    secret = get_cached_settings().PAYMENT_WEBHOOK_SECRET
    if not secret:
        logger.warning("Payment callback rejected: PAYMENT_WEBHOOK_SECRET is not configured")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Payment callbacks are not enabled",
        )
    if not x_payment_signature:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing payment signature",
        )

    expected = sign_payment_body(await request.body(), secret)
    if not hmac.compare_digest(expected, x_payment_signature):
        logger.warning(f"Payment callback for {request.url.path} has an invalid signature")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid payment signature",
        )
