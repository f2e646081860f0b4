# provisioning/core/rate_limit.py
import time
from collections import deque
from typing import Callable, Deque, Dict, Tuple

from fastapi import HTTPException, Request, status

from provisioning.core.config import Settings


class SimpleRateLimiter:
    """
    In-memory sliding-window limiter keyed by (key, client_ip).

    Guards anonymous endpoints (registration) on a single instance. The
    per-user verification issuance limit is a different thing: it is counted
    from persisted codes, see VerificationService.

    Keep call signatures clean (no *args/**kwargs), otherwise FastAPI
    will treat them as query params.
    """

    def __init__(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.key = key
        self.limit = int(limit)
        self.window_seconds = int(window_seconds)
        self._clock = clock
        self._hits: Dict[Tuple[str, str], Deque[float]] = {}

    @staticmethod
    def _client_ip(request: Request) -> str:
        # X-Forwarded-For may contain several hops: "client, proxy1, proxy2"
        xff = request.headers.get("x-forwarded-for")
        if xff:
            return xff.split(",")[0].strip() or "unknown"
        if request.client and request.client.host:
            return request.client.host
        return "unknown"

    def check(self, client_ip: str) -> None:
        now = self._clock()
        hits = self._hits.setdefault((self.key, client_ip), deque())
        while hits and hits[0] <= now - self.window_seconds:
            hits.popleft()

        if len(hits) >= self.limit:
            retry_after = max(1, int(hits[0] + self.window_seconds - now))
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail={"code": "rate_limited", "message": "Too many requests, please slow down."},
                headers={"Retry-After": str(retry_after)},
            )
        hits.append(now)

    async def hit(self, request: Request) -> None:
        self.check(self._client_ip(request))

    def reset(self) -> None:
        self._hits.clear()

    async def __call__(self, request: Request) -> None:
        await self.hit(request)


def build_register_limiter(app_settings: Settings) -> SimpleRateLimiter:
    return SimpleRateLimiter(
        "register",
        app_settings.register_rate_limit,
        app_settings.register_rate_window_seconds,
    )


async def register_rate_limit(request: Request) -> None:
    # One limiter per app, built in create_app from its own settings.
    await request.app.state.register_limiter.hit(request)
