"""Inbound webhook router.

POST reads the raw body untouched so signatures verify over the exact
bytes the provider signed. The gateway never raises; its result carries
the status code returned to the provider.
"""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.dependencies import get_gateway
from api.middleware import get_current_workspace
from core.integrations.errors import UnsupportedProviderError
from core.integrations.webhooks import WebhookGateway

router = APIRouter()


@router.post("/{provider}")
async def receive_webhook(
    provider: str,
    request: Request,
    gateway: WebhookGateway = Depends(get_gateway),
):
    """Verify, dedupe and apply one provider event."""
    raw_body = await request.body()
    result = await gateway.handle(
        provider,
        raw_body,
        dict(request.headers),
        workspace_id=get_current_workspace(),
    )
    return JSONResponse(status_code=result.status_code, content=result.to_dict())


@router.get("/{provider}")
async def describe_webhook(
    provider: str,
    gateway: WebhookGateway = Depends(get_gateway),
):
    """Endpoint info for provider dashboards: status, events and callback URL."""
    try:
        return await gateway.describe(provider, workspace_id=get_current_workspace())
    except UnsupportedProviderError as e:
        return JSONResponse(
            status_code=400,
            content={"error": "Unsupported provider", "supportedProviders": list(e.supported)},
        )
