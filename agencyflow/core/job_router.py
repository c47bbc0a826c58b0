"""
Compute Job Router

Routes ComfyUI jobs between two RunPod-compatible pools:

- dedicated: warm capacity, tried first. The submission timeout doubles as
  the health check; there is no separate probe call.
- serverless: always available, used when the dedicated pool fails, times
  out, is not configured, or its circuit breaker is open.

The router remembers which pool accepted each job id so status polls go to
the right place. The map lives in process memory and is swept periodically;
a job id the router does not know (e.g. after a restart) is polled on the
serverless pool.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import httpx

from .circuit_breaker import CircuitBreaker
from .exceptions import (
    BackendError,
    BackendUnavailableError,
    JobFailedError,
    JobTimeoutError,
    UnrecognizedOutputFormatError,
)
from .output_normalizer import MediaResult, map_job_status, normalize_job_output

logger = logging.getLogger(__name__)

DEDICATED = "dedicated"
SERVERLESS = "serverless"


@dataclass
class JobSubmission:
    """Tagged result of ComputeJobRouter.submit()."""

    success: bool
    job_id: Optional[str] = None
    pool: Optional[str] = None
    status: Optional[str] = None
    used_fallback: bool = False
    fallback_reason: Optional[str] = None
    error: Optional[str] = None


@dataclass
class _TrackedJob:
    pool: str
    submitted_at: float


class ComputeJobRouter:

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        dedicated_url: Optional[str],
        serverless_url: Optional[str],
        api_key: Optional[str] = None,
        *,
        dedicated_timeout: float = 30.0,
        request_timeout: float = 60.0,
        poll_interval: float = 3.0,
        max_poll_attempts: int = 200,
        job_ttl: float = 3600.0,
        eviction_interval: float = 300.0,
        breaker: Optional[CircuitBreaker] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.http_client = http_client
        self.dedicated_url = dedicated_url.rstrip("/") if dedicated_url else None
        self.serverless_url = serverless_url.rstrip("/") if serverless_url else None
        self.api_key = api_key
        self.dedicated_timeout = dedicated_timeout
        self.request_timeout = request_timeout
        self.poll_interval = poll_interval
        self.max_poll_attempts = max_poll_attempts
        self.job_ttl = job_ttl
        self.eviction_interval = eviction_interval
        self.breaker = breaker or CircuitBreaker(DEDICATED)
        self._clock = clock
        self._sleep = sleep

        self._jobs: Dict[str, _TrackedJob] = {}
        self._eviction_task: Optional[asyncio.Task] = None

    # ========================================================================
    # SUBMISSION
    # ========================================================================

    def _pool_url(self, pool: str) -> Optional[str]:
        return self.dedicated_url if pool == DEDICATED else self.serverless_url

    def _headers(self, pool: str) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        # Only the serverless endpoint is behind the RunPod API key
        if pool == SERVERLESS and self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _submit_to(self, pool: str, payload: Dict[str, Any]) -> Tuple[str, Optional[str]]:
        response = await self.http_client.post(
            f"{self._pool_url(pool)}/run",
            json={"input": payload},
            headers=self._headers(pool),
            timeout=self.request_timeout,
        )
        response.raise_for_status()
        data = response.json()
        job_id = data.get("id")
        if not job_id:
            raise BackendError(f"{pool} pool returned no job id", backend=pool)
        return str(job_id), data.get("status")

    async def submit(self, payload: Dict[str, Any]) -> JobSubmission:
        """
        Submit a job, dedicated pool first, serverless on failure.

        Args:
            payload: Worker input, e.g. {"workflow": {...}, "images": [...]}

        Returns:
            JobSubmission. success=False only when no pool accepted the job.
        """
        used_fallback = False
        fallback_reason = None

        if self.dedicated_url:
            if self.breaker.allow_request():
                try:
                    job_id, status = await asyncio.wait_for(
                        self._submit_to(DEDICATED, payload), timeout=self.dedicated_timeout
                    )
                except (asyncio.TimeoutError, httpx.TimeoutException):
                    self.breaker.record_failure()
                    fallback_reason = f"Dedicated pool timed out after {self.dedicated_timeout:g}s"
                except (httpx.HTTPError, BackendError, ValueError) as e:
                    self.breaker.record_failure()
                    fallback_reason = f"Dedicated pool error: {e}"
                else:
                    self.breaker.record_success()
                    self._track(job_id, DEDICATED)
                    logger.info(f"Job {job_id} submitted to dedicated pool")
                    return JobSubmission(success=True, job_id=job_id, pool=DEDICATED, status=status)
            else:
                fallback_reason = "Dedicated pool circuit open"

            used_fallback = True
            logger.warning(f"Falling back to serverless pool: {fallback_reason}")

        if not self.serverless_url:
            return JobSubmission(
                success=False,
                used_fallback=used_fallback,
                fallback_reason=fallback_reason,
                error="No serverless endpoint configured",
            )

        try:
            job_id, status = await self._submit_to(SERVERLESS, payload)
        except (httpx.HTTPError, BackendError, ValueError) as e:
            logger.error(f"Serverless submission failed: {e}")
            return JobSubmission(
                success=False,
                pool=SERVERLESS,
                used_fallback=used_fallback,
                fallback_reason=fallback_reason,
                error=str(e),
            )

        self._track(job_id, SERVERLESS)
        logger.info(
            f"Job {job_id} submitted to serverless pool",
            extra={"used_fallback": used_fallback},
        )
        return JobSubmission(
            success=True,
            job_id=job_id,
            pool=SERVERLESS,
            status=status,
            used_fallback=used_fallback,
            fallback_reason=fallback_reason,
        )

    # ========================================================================
    # STATUS POLLING
    # ========================================================================

    def pool_for(self, job_id: str) -> str:
        tracked = self._jobs.get(job_id)
        if tracked is None or self._pool_url(tracked.pool) is None:
            return SERVERLESS
        return tracked.pool

    async def get_job_status(self, job_id: str) -> Dict[str, Any]:
        pool = self.pool_for(job_id)
        response = await self.http_client.get(
            f"{self._pool_url(pool)}/status/{job_id}",
            headers=self._headers(pool),
            timeout=self.request_timeout,
        )
        response.raise_for_status()
        return response.json()

    async def wait_for_completion(self, job_id: str) -> Dict[str, Any]:
        """
        Poll a job until it reaches a terminal state.

        Returns:
            The job's "output" object

        Raises:
            JobFailedError: job FAILED or was CANCELLED
            JobTimeoutError: still not terminal after max_poll_attempts
        """
        for attempt in range(1, self.max_poll_attempts + 1):
            try:
                status = await self.get_job_status(job_id)
            except (httpx.HTTPError, ValueError) as e:
                logger.warning(f"Status poll {attempt} for job {job_id} failed: {e}")
                status = None

            if status:
                state = map_job_status(status.get("status"))
                if state == "completed":
                    self.forget(job_id)
                    return status.get("output") or {}
                if state in ("failed", "cancelled"):
                    self.forget(job_id)
                    raise JobFailedError(
                        f"Job {state}: {status.get('error') or 'unknown error'}",
                        job_id=job_id,
                    )

            await self._sleep(self.poll_interval)

        raise JobTimeoutError(
            f"Job {job_id} did not finish after {self.max_poll_attempts} polls",
            job_id=job_id,
            attempts=self.max_poll_attempts,
        )

    async def run_job(self, payload: Dict[str, Any]) -> MediaResult:
        """Submit, wait, and normalize one job. Raises if no media comes back."""
        submission = await self.submit(payload)
        if not submission.success:
            reason = submission.error
            if submission.fallback_reason:
                reason = f"{submission.fallback_reason}; serverless: {submission.error}"
            raise BackendUnavailableError(f"No compute pool accepted the job ({reason})")

        output = await self.wait_for_completion(submission.job_id)
        media = normalize_job_output(output)
        if media.is_empty:
            raise UnrecognizedOutputFormatError(
                f"No image in output of job {submission.job_id}", backend=submission.pool
            )
        return media

    # ========================================================================
    # JOB MAP LIFECYCLE
    # ========================================================================

    def _track(self, job_id: str, pool: str) -> None:
        self._jobs[job_id] = _TrackedJob(pool=pool, submitted_at=self._clock())

    def forget(self, job_id: str) -> None:
        self._jobs.pop(job_id, None)

    def evict_stale(self, now: Optional[float] = None) -> int:
        now = self._clock() if now is None else now
        stale = [job_id for job_id, job in self._jobs.items() if now - job.submitted_at > self.job_ttl]
        for job_id in stale:
            del self._jobs[job_id]
        if stale:
            logger.info(f"Evicted {len(stale)} stale job routes")
        return len(stale)

    async def _eviction_loop(self) -> None:
        while True:
            await asyncio.sleep(self.eviction_interval)
            self.evict_stale()

    def start(self) -> None:
        if self._eviction_task is None or self._eviction_task.done():
            self._eviction_task = asyncio.create_task(self._eviction_loop(), name="job-router-eviction")

    async def stop(self) -> None:
        if self._eviction_task is not None:
            self._eviction_task.cancel()
            try:
                await self._eviction_task
            except asyncio.CancelledError:
                pass
            self._eviction_task = None

    def stats(self) -> Dict[str, Any]:
        return {
            "tracked_jobs": len(self._jobs),
            "dedicated_configured": self.dedicated_url is not None,
            "breaker": self.breaker.get_status(),
        }
