"""Process-wide service instances, created on first use.

Routers take these through FastAPI `Depends`, so tests can swap them with
`app.dependency_overrides`.
"""

from typing import Optional

from fastapi import Header, HTTPException

from courier.config import settings
from courier.redis_client import get_redis
from courier.services.batcher import MessageBatcher
from courier.services.delivery_queue import DeliveryQueue
from courier.services.transport import TransportRegistry
from courier.services.webhook_poster import WebhookPoster

_delivery_queue: DeliveryQueue | None = None
_batcher: MessageBatcher | None = None
_transport_registry: TransportRegistry | None = None
_poster: WebhookPoster | None = None


def get_delivery_queue() -> DeliveryQueue:
    global _delivery_queue
    if _delivery_queue is None:
        _delivery_queue = DeliveryQueue(get_redis())
    return _delivery_queue


def get_batcher() -> MessageBatcher:
    global _batcher
    if _batcher is None:
        _batcher = MessageBatcher(get_redis(), get_delivery_queue())
    return _batcher


def get_transport_registry() -> TransportRegistry:
    global _transport_registry
    if _transport_registry is None:
        _transport_registry = TransportRegistry(queue=get_delivery_queue(), batcher=get_batcher())
    return _transport_registry


def get_poster() -> WebhookPoster:
    global _poster
    if _poster is None:
        _poster = WebhookPoster()
    return _poster


def reset_services() -> None:
    global _delivery_queue, _batcher, _transport_registry, _poster
    _delivery_queue = None
    _batcher = None
    _transport_registry = None
    _poster = None


def require_admin_token(x_admin_token: Optional[str] = Header(None)) -> None:
    expected = settings.admin_token
    if not expected:
        raise HTTPException(status_code=500, detail="ADMIN_TOKEN not configured")
    if not x_admin_token or x_admin_token != expected:
        raise HTTPException(status_code=401, detail="Invalid admin token")
