"""Inbound webhook endpoint.

Notion posts page events here. The raw body is passed through untouched so
signatures are verified over exactly the bytes that were signed.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Request, status

from src.delivery_sync.sync.errors import AuthenticationFailure, ValidationFailure
from src.delivery_sync.sync.schemas import WebhookReceipt

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _get_sync_service(request: Request) -> Any:
    """Retrieve SyncService from app.state, 503 if not available."""
    service = getattr(request.app.state, "sync_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Notion sync not initialized",
        )
    return service


@router.post("/{provider}", response_model=WebhookReceipt)
async def receive_webhook(provider: str, request: Request) -> WebhookReceipt:
    """Receive one change notification.

    Returns 200 for every authenticated event, including duplicates and
    event types that are ignored, so the provider does not redeliver them.
    """
    service = _get_sync_service(request)
    if provider not in service.receiver.providers:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown webhook provider: {provider}",
        )

    raw_body = await request.body()
    try:
        return await service.handle_webhook(provider, raw_body, request.headers)
    except AuthenticationFailure as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc
    except ValidationFailure as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
