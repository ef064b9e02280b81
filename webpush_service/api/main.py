from dotenv import load_dotenv

# Load environment variables first, before importing modules that depend on them
load_dotenv()

from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from webpush_service.api.routes.notifications import router as notifications_router
from webpush_service.api.routes.subscriptions import router as subs_router
from webpush_service.api.routes.vapid import router as vapid_router
from webpush_service.config import load_settings
from webpush_service.db.session import create_tables
from webpush_service.db.subscription_store import SqlAlchemySubscriptionStore
from webpush_service.push.dispatcher import PushDispatcher


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Invalid VAPID configuration raises here and the app never starts.
    settings = load_settings()
    await create_tables()

    store = SqlAlchemySubscriptionStore()
    timeout = httpx.Timeout(settings.request_timeout, connect=settings.connect_timeout)
    async with httpx.AsyncClient(timeout=timeout) as http_client:
        app.state.settings = settings
        app.state.store = store
        app.state.dispatcher = PushDispatcher.from_settings(settings, store, http_client=http_client)
        yield


app = FastAPI(
    title="Web Push Delivery Service",
    version="0.1.0",
    openapi_url="/openapi.json",
    docs_url="/docs",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Subscription registration
app.include_router(
    subs_router,
    prefix="/push",
    tags=["subscriptions"],
)

# Notification sending
app.include_router(
    notifications_router,
    prefix="/push",
    tags=["notifications"],
)

# VAPID public key, endpoint validation, health
app.include_router(
    vapid_router,
    prefix="/push",
    tags=["vapid"],
)
