from fastapi import APIRouter, Depends, HTTPException, Response, status
from typing import Optional
from uuid import UUID

from webpush_service.api.dependencies import get_store
from webpush_service.api.schemas import (
    SubscriptionCreate,
    SubscriptionList,
    SubscriptionOut,
    SubscriptionWriteResponse,
    UnsubscribeRequest,
)
from webpush_service.db.subscription_store import SqlAlchemySubscriptionStore

router = APIRouter()


@router.post(
    "/subscriptions",
    response_model=SubscriptionWriteResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register a push subscription (updates it if the endpoint is known)",
)
async def create_subscription(
    subscription_in: SubscriptionCreate,
    response: Response,
    store: SqlAlchemySubscriptionStore = Depends(get_store),
):
    sub, created = await store.upsert(**subscription_in.model_dump())

    if not created:
        response.status_code = status.HTTP_200_OK
        message = "Subscription updated successfully"
    else:
        message = "Subscription created successfully"

    return SubscriptionWriteResponse(
        message=message,
        subscription=SubscriptionOut.model_validate(sub),
    )


@router.get("/subscriptions", response_model=SubscriptionList)
async def list_subscriptions(
    user_id: Optional[str] = None,
    skip: int = 0,
    limit: int = 100,
    store: SqlAlchemySubscriptionStore = Depends(get_store),
):
    subs = await store.list_subscriptions(user_id=user_id, skip=skip, limit=limit)
    return SubscriptionList(
        subscriptions=[SubscriptionOut.model_validate(s) for s in subs],
        count=len(subs),
    )


@router.get("/subscriptions/{subscription_id}", response_model=SubscriptionOut)
async def read_subscription(
    subscription_id: UUID,
    store: SqlAlchemySubscriptionStore = Depends(get_store),
):
    sub = await store.get(subscription_id)
    if not sub:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Subscription not found",
        )
    return SubscriptionOut.model_validate(sub)


@router.delete(
    "/subscriptions/{subscription_id}",
    status_code=status.HTTP_204_NO_CONTENT,
)
async def delete_subscription(
    subscription_id: UUID,
    store: SqlAlchemySubscriptionStore = Depends(get_store),
):
    sub = await store.get(subscription_id)
    if not sub:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Subscription not found",
        )

    await store.delete(subscription_id)

    # No return needed for 204
    return


@router.post(
    "/unsubscribe",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Remove a subscription by its endpoint",
)
async def unsubscribe(
    body: UnsubscribeRequest,
    store: SqlAlchemySubscriptionStore = Depends(get_store),
):
    if not await store.delete_by_endpoint(body.endpoint):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Subscription not found",
        )
    return
