from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from webpush_service.api.dependencies import get_dispatcher
from webpush_service.api.schemas import (
    EndpointValidationRequest,
    EndpointValidationResponse,
    VapidKeys,
    VapidKeysResponse,
)
from webpush_service.push.dispatcher import PushDispatcher

router = APIRouter()

SERVICE_NAME = "webpush-service"
SERVICE_VERSION = "0.1.0"


@router.get(
    "/vapid-keys",
    response_model=VapidKeysResponse,
    summary="Public VAPID key and subject for client-side subscription",
)
async def get_vapid_keys(dispatcher: PushDispatcher = Depends(get_dispatcher)):
    return VapidKeysResponse(vapid_keys=VapidKeys(**dispatcher.get_public_vapid_key()))


@router.post(
    "/validate-endpoint",
    response_model=EndpointValidationResponse,
    summary="Syntactic validation of a push endpoint URL",
)
async def validate_endpoint(body: EndpointValidationRequest):
    return EndpointValidationResponse(
        endpoint=body.endpoint,
        valid=PushDispatcher.validate_endpoint(body.endpoint),
    )


@router.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
    }
