"""
Process-wide engine services.

The HTTP client, job router and request queues hold in-memory state that
only makes sense within one process (job-id routing, per-tenant rate
limits). They are built once, owned by EngineServices, and passed to
executors through the RunContext instead of living in module globals.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
from sqlalchemy.orm import Session

from ..config import Settings
from ..models import GalleryItem
from .circuit_breaker import CircuitBreaker
from .job_router import ComputeJobRouter
from .request_queue import PerTenantQueue

logger = logging.getLogger(__name__)


class DatabaseGallerySink:
    """Writes save_to_gallery output as GalleryItem rows."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def save(
        self,
        agency_id: int,
        media_ref: str,
        media_type: str = "image",
        model_id: Optional[int] = None,
        run_id: Optional[int] = None,
        caption: Optional[str] = None,
        tags: Optional[List[str]] = None,
    ) -> int:
        session = self.session_factory()
        try:
            item = GalleryItem(
                agency_id=agency_id,
                model_id=model_id,
                run_id=run_id,
                media_type=media_type,
                media_ref=media_ref,
                caption=caption,
                tags=list(tags or []),
            )
            session.add(item)
            session.commit()
            return item.id
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


@dataclass
class EngineServices:
    settings: Settings
    http_client: httpx.AsyncClient
    job_router: ComputeJobRouter
    wavespeed_queue: PerTenantQueue
    gallery: Any
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    owns_http_client: bool = field(default=True, repr=False)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session_factory: Callable[[], Session],
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> "EngineServices":
        owns_client = http_client is None
        client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(60.0, connect=10.0))

        job_router = ComputeJobRouter(
            client,
            settings.runpod_dedicated_url,
            settings.runpod_serverless_url,
            settings.runpod_api_key,
            dedicated_timeout=settings.dedicated_timeout_seconds,
            poll_interval=settings.job_poll_interval_seconds,
            max_poll_attempts=settings.job_max_poll_attempts,
            job_ttl=settings.job_map_ttl_seconds,
            eviction_interval=settings.job_map_eviction_interval_seconds,
            breaker=CircuitBreaker("dedicated"),
        )
        wavespeed_queue = PerTenantQueue(
            settings.wavespeed_min_delay_seconds,
            idle_timeout=settings.queue_idle_timeout_seconds,
            name="wavespeed",
        )

        return cls(
            settings=settings,
            http_client=client,
            job_router=job_router,
            wavespeed_queue=wavespeed_queue,
            gallery=DatabaseGallerySink(session_factory),
            owns_http_client=owns_client,
        )

    def start(self) -> None:
        """Start background housekeeping. Must be called from a running event loop."""
        self.job_router.start()
        self.wavespeed_queue.start()

    async def aclose(self) -> None:
        await self.job_router.stop()
        await self.wavespeed_queue.stop()
        if self.owns_http_client:
            await self.http_client.aclose()

    def stats(self) -> Dict[str, Any]:
        return {
            "job_router": self.job_router.stats(),
            "wavespeed_queue": self.wavespeed_queue.stats(),
        }
