"""FastAPI dependencies for inbound call authentication.

Cron triggers present ``Authorization: Bearer <CRON_SECRET>``; webhook
senders present ``X-Webhook-Secret: <WEBHOOK_SECRET>``. An unset secret
rejects every call.
"""

from __future__ import annotations

import hmac

from fastapi import Depends, HTTPException, Request, status

from src.synchub.config import Settings, get_settings


def _secret_matches(presented: str | None, expected: str) -> bool:
    if not presented or not expected:
        return False
    return hmac.compare_digest(presented.encode(), expected.encode())


async def verify_cron_secret(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> None:
    """Require the cron Bearer secret.

    Raises:
        HTTPException(401): Missing or wrong secret.
    """
    auth_header = request.headers.get("Authorization") or ""
    token = auth_header[7:] if auth_header.startswith("Bearer ") else None
    if not _secret_matches(token, settings.CRON_SECRET):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def verify_webhook_secret(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> None:
    """Require the shared webhook secret header.

    Raises:
        HTTPException(401): Missing or wrong secret.
    """
    if not _secret_matches(request.headers.get("X-Webhook-Secret"), settings.WEBHOOK_SECRET):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook secret",
        )
