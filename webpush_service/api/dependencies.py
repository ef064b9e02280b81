from fastapi import Request

from webpush_service.config import Settings
from webpush_service.db.subscription_store import SqlAlchemySubscriptionStore
from webpush_service.push.dispatcher import PushDispatcher


# Populated once by the app lifespan; tests replace these via dependency_overrides.
def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_store(request: Request) -> SqlAlchemySubscriptionStore:
    return request.app.state.store


def get_dispatcher(request: Request) -> PushDispatcher:
    return request.app.state.dispatcher
