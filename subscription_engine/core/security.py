"""Shared-secret authentication for service-to-service callers.

End-user identity comes from the upstream auth gateway as an opaque user_id;
this module only checks that the caller is the scheduler or a trusted backend.
"""

import hashlib
import hmac

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from subscription_engine.core.config import get_settings
from subscription_engine.core.logging import get_security_logger

_bearer_scheme = HTTPBearer(auto_error=False)

security_log = get_security_logger()


def hmac_sha256_hex(secret: str, message: bytes) -> str:
    """Hex HMAC-SHA256 digest, the format Razorpay uses for signatures."""
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def signature_matches(secret: str, message: bytes, signature: str | None) -> bool:
    """Constant-time comparison of a supplied signature against the expected digest."""
    if not secret or not signature:
        return False
    expected = hmac_sha256_hex(secret, message)
    return hmac.compare_digest(expected, signature.strip())


def _check_bearer(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None,
    secret: str,
    purpose: str,
) -> None:
    if not secret:
        raise HTTPException(status_code=503, detail=f"{purpose} endpoint is not configured")

    if credentials is None:
        raise HTTPException(status_code=401, detail="Missing authorization header")

    if not hmac.compare_digest(credentials.credentials.encode("utf-8"), secret.encode("utf-8")):
        security_log.warning(
            "service_token_rejected",
            purpose=purpose,
            path=request.url.path,
            client=request.client.host if request.client else None,
        )
        raise HTTPException(status_code=401, detail="Unauthorized")


async def require_cron_secret(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> None:
    """FastAPI dependency for scheduler-triggered endpoints.

    Usage::

        @router.post("/cron/expire-subscriptions", dependencies=[Depends(require_cron_secret)])
    """
    _check_bearer(request, credentials, get_settings().cron_secret, "Cron")


async def require_internal_token(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> None:
    """FastAPI dependency for calls from the dashboard backend."""
    _check_bearer(request, credentials, get_settings().internal_api_token, "Internal API")
