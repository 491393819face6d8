"""FastAPI/Starlette middleware enforcing limiter verdicts on HTTP requests."""

import logging
from collections.abc import Callable

from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from gatekeeper.limiter import Limiter

logger = logging.getLogger(__name__)


def client_ip_key(request: Request) -> str:
    """Default client key: the peer address, ``ip:<host>``."""
    host = request.client.host if request.client else "unknown"
    return f"ip:{host}"


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Reject requests over quota with ``429 Too Many Requests``.

    The rule for a request comes from ``route_rules`` (exact path match)
    or ``default_rule_id``; requests matching neither pass through
    untouched. Client identity comes from ``key_func``.
    """

    def __init__(
        self,
        app,
        limiter: Limiter,
        route_rules: dict[str, str] | None = None,
        default_rule_id: str | None = None,
        key_func: Callable[[Request], str] = client_ip_key,
    ) -> None:
        """
        Initialize rate limit middleware.

        Args:
            app: FastAPI application
            limiter: Limiter deciding each request
            route_rules: Path to rule id mapping
            default_rule_id: Rule for paths not in ``route_rules``
            key_func: Derives the client key from the request

        Raises:
            ConfigurationError: If a referenced rule id is not registered
        """
        super().__init__(app)
        self._limiter = limiter
        self._route_rules = dict(route_rules or {})
        self._default_rule_id = default_rule_id
        self._key_func = key_func

        referenced = set(self._route_rules.values())
        if default_rule_id is not None:
            referenced.add(default_rule_id)
        limiter.registry.require(referenced)

    def _rule_for(self, request: Request) -> str | None:
        return self._route_rules.get(request.url.path, self._default_rule_id)

    async def dispatch(self, request: Request, call_next: Callable):
        """Check the request against its rule before handing it on."""
        rule_id = self._rule_for(request)
        if rule_id is None:
            return await call_next(request)

        client_key = self._key_func(request)
        verdict = await self._limiter.check(client_key, rule_id)

        if not verdict.allowed:
            logger.info(f"Rate limited {client_key} on {request.url.path} by rule {rule_id}")
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={
                    "error": "Too many requests",
                    "limited_by": verdict.limited_by,
                    "retry_after_seconds": verdict.retry_after_seconds,
                },
                headers=verdict.headers(),
            )

        response = await call_next(request)
        for name, value in verdict.headers().items():
            response.headers[name] = value
        return response
