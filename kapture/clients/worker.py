"""HTTP client for the media-extraction worker.

Every request goes through the worker's circuit breaker and carries an
overall deadline, so a hung worker can never stall a sweep.
"""

import asyncio
import email.utils
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional
from urllib.parse import quote

import httpx
import structlog

from kapture.clients.base import JobWorkerClient, WorkerFile, WorkerStatus
from kapture.clients.exceptions import (
    NotFoundUpstreamError,
    RateLimitedError,
    TerminalJobFailure,
    TransientDependencyError,
)
from kapture.core.circuit_breaker import CircuitBreaker

logger = structlog.get_logger(__name__)

DEPENDENCY = "worker"
KNOWN_STATES = frozenset({"pending", "processing", "completed", "failed"})
AUXILIARY_SUFFIXES = (".info.json", ".mhtml", ".description")


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Convert a Retry-After header value into a delay in seconds."""
    if not value:
        return None

    try:
        delay = float(int(value))
    except ValueError:
        try:
            dt = email.utils.parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        delay = (dt - datetime.now(timezone.utc)).total_seconds()

    return max(0.0, delay)


def _coerce_progress(value: Any) -> int:
    try:
        return max(0, min(100, int(round(float(value)))))
    except (TypeError, ValueError):
        return 0


def _optional_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def parse_status_payload(payload: Dict[str, Any]) -> WorkerStatus:
    """Normalize a worker status document.

    Unknown states are read as ``processing`` so they never end a job.
    """
    state = str(payload.get("status") or "processing").lower()
    if state not in KNOWN_STATES:
        state = "processing"

    metadata = payload.get("metadata") or {}
    if not isinstance(metadata, dict):
        metadata = {}

    return WorkerStatus(
        state=state,
        progress=_coerce_progress(payload.get("progress")),
        error=_optional_str(payload.get("error")),
        title=_optional_str(metadata.get("title")),
        thumbnail=_optional_str(metadata.get("thumbnail")),
        phase=_optional_str(payload.get("phase") or metadata.get("phase")),
        speed=_optional_str(payload.get("speed") or metadata.get("speed")),
        eta=_optional_str(payload.get("eta") or metadata.get("eta")),
    )


def parse_file_entry(entry: Dict[str, Any]) -> WorkerFile:
    name = str(entry.get("name", ""))
    is_media = entry.get("isVideo")
    if is_media is None:
        is_media = not name.endswith(AUXILIARY_SUFFIXES)
    return WorkerFile(
        name=name,
        size=int(entry.get("size") or 0),
        display_name=_optional_str(entry.get("displayName")),
        is_media=bool(is_media),
    )


class HTTPJobWorkerClient(JobWorkerClient):
    """JobWorkerClient speaking the worker's JSON/HTTP API."""

    # The worker answered; these do not count against its breaker
    BREAKER_EXCLUDED = (NotFoundUpstreamError, TerminalJobFailure)

    def __init__(
        self,
        base_url: str,
        breaker: Optional[CircuitBreaker] = None,
        request_timeout: float = 15.0,
        connect_timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: Worker root URL, e.g. ``http://worker:3001``.
            breaker: Circuit breaker scoped to the worker.
            request_timeout: Overall deadline for one request in seconds.
            connect_timeout: TCP connect timeout in seconds.
            transport: Optional httpx transport (tests use MockTransport).
        """
        self.base_url = base_url.rstrip("/")
        self.request_timeout = request_timeout
        self._breaker = breaker or CircuitBreaker(
            DEPENDENCY, excluded_exceptions=self.BREAKER_EXCLUDED
        )
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(request_timeout, connect=connect_timeout),
            transport=transport,
        )

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    async def aclose(self) -> None:
        await self._client.aclose()

    async def submit(self, url: str, format_spec: str, user_id: Optional[str] = None) -> str:
        response = await self._call(
            "POST",
            "/download",
            json={"url": url, "format": format_spec, "extract_info": True, "userId": user_id},
        )
        payload = self._json(response)
        job_id = payload.get("id")
        if not job_id:
            raise TransientDependencyError("Worker response did not include a job id", DEPENDENCY)

        logger.info("worker_job_submitted", job_id=job_id, format_spec=format_spec)
        return str(job_id)

    async def status(self, job_id: str) -> WorkerStatus:
        response = await self._call("GET", f"/download/{quote(job_id, safe='')}/status")
        return parse_status_payload(self._json(response))

    async def cancel(self, job_id: str) -> None:
        await self._call("POST", f"/download/{quote(job_id, safe='')}/cancel")
        logger.info("worker_job_cancelled", job_id=job_id)

    async def list_files(self, job_id: str) -> List[WorkerFile]:
        try:
            response = await self._call("GET", f"/download/{quote(job_id, safe='')}/files")
        except NotFoundUpstreamError:
            # The worker answers 404 when the job produced no output directory
            return []

        entries = self._json(response).get("files") or []
        return [parse_file_entry(entry) for entry in entries if isinstance(entry, dict)]

    async def fetch_file(self, job_id: str, name: str) -> AsyncIterator[bytes]:
        path = f"/download/{quote(job_id, safe='')}/file/{quote(name, safe='')}"
        response = await self._call("GET", path, stream=True)
        try:
            async for chunk in response.aiter_bytes():
                yield chunk
        except httpx.TransportError as e:
            raise TransientDependencyError(f"Worker stream interrupted: {e}", DEPENDENCY) from e
        finally:
            await response.aclose()

    async def _call(self, method: str, path: str, stream: bool = False, **kwargs: Any) -> httpx.Response:
        return await self._breaker.call(self._send, method, path, stream, **kwargs)

    async def _send(self, method: str, path: str, stream: bool, **kwargs: Any) -> httpx.Response:
        request = self._client.build_request(method, path, **kwargs)
        try:
            response = await asyncio.wait_for(
                self._client.send(request, stream=stream),
                timeout=self.request_timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise TransientDependencyError(
                f"Worker request timed out: {method} {path}", DEPENDENCY
            ) from e
        except httpx.TransportError as e:
            raise TransientDependencyError(f"Worker unreachable: {e}", DEPENDENCY) from e

        if response.status_code < 400:
            return response

        if stream:
            await response.aread()
            await response.aclose()

        message = self._error_message(response)
        if response.status_code == 404:
            raise NotFoundUpstreamError(message, DEPENDENCY)
        if response.status_code == 429:
            raise RateLimitedError(
                message,
                DEPENDENCY,
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
            )
        if response.status_code in (400, 422):
            raise TerminalJobFailure(message, DEPENDENCY)
        raise TransientDependencyError(
            f"Worker returned {response.status_code}: {message}", DEPENDENCY
        )

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as e:
            raise TransientDependencyError("Worker returned invalid JSON", DEPENDENCY) from e
        if not isinstance(payload, dict):
            raise TransientDependencyError("Worker returned an unexpected payload", DEPENDENCY)
        return payload

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            payload = response.json()
        except ValueError:
            return response.text[:200] or response.reason_phrase
        if isinstance(payload, dict) and payload.get("error"):
            return str(payload["error"])
        return response.reason_phrase
