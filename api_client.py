"""
🌐 API Client
=============
Thin aiohttp wrapper used by journeys and the stress generator to call the
application's products/orders/reservations/health/settings endpoints.

Network errors and timeouts are returned as failed CallResults, never raised,
so a dead collaborator shows up as error outcomes rather than a crashed loop.
"""

import asyncio
import json
import random
import time
import uuid
from dataclasses import dataclass, field
from typing import Optional, Dict, Any

import aiohttp


@dataclass(frozen=True)
class EndpointCall:
    """A single HTTP call: method, path and optional JSON body."""
    method: str
    path: str
    payload: Optional[Dict[str, Any]] = None
    name: str = ""

    @property
    def label(self) -> str:
        return self.name or f"{self.method} {self.path}"


@dataclass
class CallResult:
    """Outcome of one HTTP call."""
    call: EndpointCall
    status_code: int
    latency_ms: float
    success: bool
    error: Optional[str] = None
    response_data: Any = None
    request_id: str = ""
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "method": self.call.method,
            "endpoint": self.call.path,
            "statusCode": self.status_code,
            "responseTimeMs": round(self.latency_ms),
            "success": self.success,
            "error": self.error,
            "requestId": self.request_id,
        }


class ApiClient:
    """
    Shared aiohttp session for one generator.

    The session is created lazily on the first call (it must be created inside
    the running event loop) and closed with `close()`.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        default_headers: Optional[Dict[str, str]] = None,
        connection_limit: int = 100,
    ):
        self.base_url = base_url.rstrip('/')
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.headers = default_headers or {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": "WorkloadFaultEngine/1.0",
        }
        self.connection_limit = connection_limit
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def closed(self) -> bool:
        return self._session is None or self._session.closed

    def _get_session(self) -> aiohttp.ClientSession:
        if self.closed:
            connector = aiohttp.TCPConnector(limit=self.connection_limit)
            self._session = aiohttp.ClientSession(timeout=self.timeout, connector=connector)
        return self._session

    async def close(self):
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "ApiClient":
        self._get_session()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def call(self, call: EndpointCall, extra_headers: Optional[Dict[str, str]] = None) -> CallResult:
        """Perform one call. Any status below 400 counts as success."""
        session = self._get_session()
        request_id = str(uuid.uuid4())
        headers = {**self.headers, "X-Request-ID": request_id}
        if extra_headers:
            headers.update(extra_headers)

        url = f"{self.base_url}{call.path}"
        start = time.perf_counter()

        try:
            async with session.request(
                call.method,
                url,
                headers=headers,
                json=call.payload if call.method in ("POST", "PUT", "PATCH") else None,
            ) as response:
                body = await response.read()
                latency = (time.perf_counter() - start) * 1000

                response_data = None
                if body:
                    try:
                        response_data = json.loads(body)
                    except (json.JSONDecodeError, UnicodeDecodeError):
                        response_data = None

                success = response.status < 400
                error = None
                if not success:
                    error = f"HTTP {response.status}"
                    if isinstance(response_data, dict) and response_data.get("error"):
                        error = f"HTTP {response.status}: {response_data['error']}"

                return CallResult(
                    call=call,
                    status_code=response.status,
                    latency_ms=latency,
                    success=success,
                    error=error,
                    response_data=response_data,
                    request_id=request_id,
                )

        except asyncio.TimeoutError:
            return CallResult(
                call=call,
                status_code=0,
                latency_ms=(time.perf_counter() - start) * 1000,
                success=False,
                error="Timeout",
                request_id=request_id,
            )
        except aiohttp.ClientError as e:
            return CallResult(
                call=call,
                status_code=0,
                latency_ms=(time.perf_counter() - start) * 1000,
                success=False,
                error=str(e)[:80] or e.__class__.__name__,
                request_id=request_id,
            )

    async def call_with_retry(
        self,
        call: EndpointCall,
        extra_headers: Optional[Dict[str, str]] = None,
        retries: int = 1,
        retry_delay: float = 1.0,
        time_scale: float = 1.0,
        rng: Optional[random.Random] = None,
    ) -> CallResult:
        """
        Like call(), but transport failures (status 0) are retried with
        jittered exponential backoff. HTTP error responses are returned as-is.
        """
        rng = rng or random
        attempts = 0
        while True:
            result = await self.call(call, extra_headers)
            if result.status_code != 0 or attempts >= retries:
                return result
            attempts += 1
            # exponential backoff, ±50% jitter
            delay = retry_delay * (2 ** (attempts - 1)) * rng.uniform(0.5, 1.5)
            await asyncio.sleep(delay * time_scale)
