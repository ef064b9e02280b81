"""
Fan-out of one notification to many subscriptions.

Every public send resolves its candidates from the store, encodes the
payload once, then delivers to each subscription concurrently (bounded by a
semaphore). Each delivery is authorized, encrypted, sent, and its result
handed to the lifecycle manager independently, so a failing endpoint never
stops delivery to the others. The return value is the number of
subscriptions that confirmed delivery.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

import httpx
from pydantic import AnyHttpUrl, TypeAdapter, ValidationError

from webpush_service.config import Settings
from webpush_service.push.client import DeliveryClient
from webpush_service.push.errors import WebPushError
from webpush_service.push.lifecycle import SubscriptionLifecycleManager
from webpush_service.push.payload import EncodedPayload, PayloadEncoder, PayloadEncrypter
from webpush_service.push.store import SubscriptionStore
from webpush_service.push.types import (
    DeliveryOutcome,
    DeliveryResult,
    NotificationPayload,
    Subscription,
    utcnow,
)
from webpush_service.push.vapid import VapidAuthenticator

logger = logging.getLogger(__name__)

_ENDPOINT_URL = TypeAdapter(AnyHttpUrl)


def validate_endpoint(endpoint: str) -> bool:
    """Syntactic check of a push endpoint URL. Not a liveness check."""
    if not isinstance(endpoint, str) or not endpoint or endpoint != endpoint.strip():
        return False
    try:
        _ENDPOINT_URL.validate_python(endpoint)
    except ValidationError:
        return False
    return True


@dataclass
class DispatchReport:
    results: List[DeliveryResult] = field(default_factory=list)
    # Candidates never attempted because the batch was cancelled.
    skipped: int = 0

    @property
    def sent_count(self) -> int:
        return sum(1 for r in self.results if r.delivered)

    def count(self, outcome: DeliveryOutcome) -> int:
        return sum(1 for r in self.results if r.outcome is outcome)


class PushDispatcher:
    def __init__(
        self,
        store: SubscriptionStore,
        authenticator: VapidAuthenticator,
        encoder: PayloadEncoder,
        client: DeliveryClient,
        lifecycle: SubscriptionLifecycleManager,
        encrypter: Optional[PayloadEncrypter] = None,
        encrypt_payloads: bool = True,
        max_concurrency: int = 10,
        clock: Callable[[], datetime] = utcnow,
    ):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.store = store
        self.authenticator = authenticator
        self.encoder = encoder
        self.client = client
        self.lifecycle = lifecycle
        self.encrypter = encrypter or PayloadEncrypter()
        self.encrypt_payloads = encrypt_payloads
        self.max_concurrency = max_concurrency
        self.clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: SubscriptionStore,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> "PushDispatcher":
        return cls(
            store=store,
            authenticator=VapidAuthenticator(settings.vapid),
            encoder=PayloadEncoder(
                default_ttl=settings.ttl,
                default_urgency=settings.urgency,
                default_icon=settings.icon,
                default_badge=settings.badge,
            ),
            client=DeliveryClient(
                request_timeout=settings.request_timeout,
                connect_timeout=settings.connect_timeout,
                user_agent=settings.user_agent,
                http_client=http_client,
            ),
            lifecycle=SubscriptionLifecycleManager(store, log_deliveries=settings.log_deliveries),
            encrypt_payloads=settings.encrypt_payloads,
            max_concurrency=settings.max_concurrency,
        )

    async def send_to_user(
        self,
        user_id: str,
        payload: NotificationPayload,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> int:
        subscriptions = await self.store.find_active_by_user(user_id)
        report = await self.dispatch(subscriptions, payload, cancel_event)
        return report.sent_count

    async def send_to_all(
        self,
        payload: NotificationPayload,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> int:
        subscriptions = await self.store.find_active()
        report = await self.dispatch(subscriptions, payload, cancel_event)
        return report.sent_count

    async def send_to_topic(
        self,
        topic: str,
        payload: NotificationPayload,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> int:
        subscriptions = await self.store.find_active_by_topic(topic)
        report = await self.dispatch(
            [s for s in subscriptions if s.topic == topic], payload, cancel_event
        )
        return report.sent_count

    def get_public_vapid_key(self) -> Dict[str, str]:
        key_pair = self.authenticator.key_pair
        return {"public_key": key_pair.public_key_b64, "subject": key_pair.subject}

    @staticmethod
    def validate_endpoint(endpoint: str) -> bool:
        return validate_endpoint(endpoint)

    async def dispatch(
        self,
        subscriptions: Iterable[Subscription],
        payload: NotificationPayload,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> DispatchReport:
        candidates = self._eligible(subscriptions)
        if not candidates:
            return DispatchReport()

        # Rejects bad caller input before any endpoint is contacted.
        encoded = self.encoder.encode(payload)

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def run(subscription: Subscription) -> Optional[DeliveryResult]:
            async with semaphore:
                if cancel_event is not None and cancel_event.is_set():
                    return None
                result = await self._attempt(subscription, encoded)
                await self.lifecycle.on_result(subscription, result)
                return result

        outcomes = await asyncio.gather(
            *(run(s) for s in candidates), return_exceptions=True
        )

        report = DispatchReport()
        errors = []
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                errors.append(outcome)
            elif outcome is None:
                report.skipped += 1
            else:
                report.results.append(outcome)

        logger.info(
            f"Dispatched push to {len(candidates)} subscription(s): "
            f"{report.sent_count} delivered, {len(report.results) - report.sent_count} failed, "
            f"{report.skipped} skipped"
        )
        if errors:
            # Lifecycle side effects need the store; losing it fails the call.
            raise errors[0]
        return report

    async def deliver_one(
        self, subscription: Subscription, payload: NotificationPayload
    ) -> Optional[DeliveryResult]:
        """
        Deliver to a single subscription and apply the lifecycle.

        Returns None when the subscription is no longer eligible (expired or
        missing keys), in which case nothing is sent.
        """
        if not self._eligible([subscription]):
            return None
        encoded = self.encoder.encode(payload)
        result = await self._attempt(subscription, encoded)
        await self.lifecycle.on_result(subscription, result)
        return result

    async def _attempt(self, subscription: Subscription, encoded: EncodedPayload) -> DeliveryResult:
        try:
            authorization = self.authenticator.authorize(subscription.endpoint, self.clock())
            prepared = self.encrypter.prepare(encoded, subscription, enabled=self.encrypt_payloads)
        except WebPushError as exc:
            return DeliveryResult.transient(subscription.id, str(exc))
        return await self.client.deliver(
            subscription, authorization, prepared.body, prepared.headers
        )

    def _eligible(self, subscriptions: Iterable[Subscription]) -> List[Subscription]:
        now = self.clock()
        seen = set()
        eligible = []
        for subscription in subscriptions:
            if subscription.endpoint in seen:
                continue
            seen.add(subscription.endpoint)
            if subscription.is_expired(now):
                continue
            if not subscription.has_keys():
                logger.warning(f"Skipping subscription {subscription.id}: missing p256dh/auth keys")
                continue
            eligible.append(subscription)
        return eligible
