from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from rq import Queue
from starlette.responses import JSONResponse

from webpush_service.api.dependencies import get_dispatcher, get_settings
from webpush_service.api.schemas import (
    NotificationIn,
    SendRequest,
    SendResponse,
    SendToTopicRequest,
    SendToUserRequest,
)
from webpush_service.config import Settings
from webpush_service.push.dispatcher import PushDispatcher
from webpush_service.push.errors import InvalidPayloadError
from webpush_service.queue.redis_conn import get_queue
from webpush_service.workers.dispatch_worker import TARGET_ALL, TARGET_TOPIC, TARGET_USER

router = APIRouter()

_SENT_MESSAGES = {
    TARGET_USER: "Notification sent to {count} device(s)",
    TARGET_ALL: "Broadcast notification sent to {count} device(s)",
    TARGET_TOPIC: "Topic notification sent to {count} device(s)",
}


async def _send(
    target_type: str,
    target: Optional[str],
    body: NotificationIn,
    dispatcher: PushDispatcher,
    settings: Settings,
    queue: Queue,
):
    payload = body.to_payload()
    try:
        if settings.queue_enabled:
            # Reject bad input now rather than inside the worker.
            dispatcher.encoder.encode(payload)
            job = queue.enqueue(
                "webpush_service.workers.dispatch_worker.process_dispatch_sync",
                target_type,
                target,
                payload.to_dict(),
            )
            return JSONResponse(
                status_code=status.HTTP_202_ACCEPTED,
                content={
                    "success": True,
                    "job_id": job.id,
                    "message": "Notification queued for delivery",
                },
            )

        if target_type == TARGET_USER:
            sent_count = await dispatcher.send_to_user(target, payload)
        elif target_type == TARGET_TOPIC:
            sent_count = await dispatcher.send_to_topic(target, payload)
        else:
            sent_count = await dispatcher.send_to_all(payload)
    except InvalidPayloadError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(exc),
        )

    return SendResponse(
        sent_count=sent_count,
        message=_SENT_MESSAGES[target_type].format(count=sent_count),
    )


@router.post(
    "/send-to-user",
    response_model=SendResponse,
    summary="Send a notification to every active subscription of a user",
)
async def send_to_user(
    body: SendToUserRequest,
    dispatcher: PushDispatcher = Depends(get_dispatcher),
    settings: Settings = Depends(get_settings),
    queue: Queue = Depends(get_queue),
):
    return await _send(TARGET_USER, body.user_id, body, dispatcher, settings, queue)


@router.post(
    "/send-to-all",
    response_model=SendResponse,
    summary="Broadcast a notification to every active subscription",
)
async def send_to_all(
    body: NotificationIn,
    dispatcher: PushDispatcher = Depends(get_dispatcher),
    settings: Settings = Depends(get_settings),
    queue: Queue = Depends(get_queue),
):
    return await _send(TARGET_ALL, None, body, dispatcher, settings, queue)


@router.post(
    "/send-to-topic",
    response_model=SendResponse,
    summary="Send a notification to every active subscription of a topic",
)
async def send_to_topic(
    body: SendToTopicRequest,
    dispatcher: PushDispatcher = Depends(get_dispatcher),
    settings: Settings = Depends(get_settings),
    queue: Queue = Depends(get_queue),
):
    return await _send(TARGET_TOPIC, body.topic, body, dispatcher, settings, queue)


@router.post(
    "/send",
    response_model=SendResponse,
    summary="Send a notification to a user, a topic, or everyone",
)
async def send(
    body: SendRequest,
    dispatcher: PushDispatcher = Depends(get_dispatcher),
    settings: Settings = Depends(get_settings),
    queue: Queue = Depends(get_queue),
):
    target = None if body.type == TARGET_ALL else body.target
    return await _send(body.type, target, body, dispatcher, settings, queue)
