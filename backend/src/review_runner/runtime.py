from __future__ import annotations

import logging
from dataclasses import dataclass

from .config import Settings, get_settings
from .delivery import DeliveryAdapter, create_delivery_adapter
from .dispatch_queue import DispatchQueue, create_dispatch_queue
from .scheduling import SchedulingService, SendTimePolicy
from .state_machine import RequestStateMachine
from .store import ReviewStore
from .store_backends import create_review_store

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Process-owned collaborators shared by the HTTP app and the dispatch worker."""

    settings: Settings
    store: ReviewStore
    queue: DispatchQueue
    adapter: DeliveryAdapter
    state_machine: RequestStateMachine
    scheduling: SchedulingService

    def reset(self) -> None:
        self.store.reset()
        self.queue.reset()
        reset_adapter = getattr(self.adapter, "reset", None)
        if callable(reset_adapter):
            reset_adapter()

    def close(self) -> None:
        try:
            self.queue.close()
        finally:
            self.store.close()
        logger.info("runtime.closed")


def build_runtime(
    settings: Settings | None = None,
    *,
    store: ReviewStore | None = None,
    queue: DispatchQueue | None = None,
    adapter: DeliveryAdapter | None = None,
    send_time_policy: SendTimePolicy | None = None,
) -> Runtime:
    resolved = settings or get_settings()
    resolved_store = store or create_review_store(
        backend=resolved.store_backend,
        database_url=resolved.database_url,
    )
    resolved_queue = queue or create_dispatch_queue(
        backend=resolved.queue_backend,
        database_url=resolved.database_url,
    )
    resolved_adapter = adapter or create_delivery_adapter(resolved)
    state_machine = RequestStateMachine(resolved_store, resolved_adapter, resolved)
    scheduling = SchedulingService(
        resolved_store,
        resolved_queue,
        state_machine,
        resolved,
        send_time_policy=send_time_policy,
    )
    logger.info(
        "runtime.built",
        extra={
            "store_backend": resolved.store_backend,
            "queue_backend": resolved.queue_backend,
            "delivery_adapter": resolved.delivery_adapter,
        },
    )
    return Runtime(
        settings=resolved,
        store=resolved_store,
        queue=resolved_queue,
        adapter=resolved_adapter,
        state_machine=state_machine,
        scheduling=scheduling,
    )
