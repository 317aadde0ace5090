"""Application factory for the FastAPI service."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from .config import Settings, get_settings
from .errors import ErrorReporter
from .logging_setup import configure_logging
from .orchestrator import NarrationOrchestrator
from .providers.factory import ProviderFactory
from .resilience.circuit_breaker import CircuitBreakerRegistry
from .resilience.rate_limiter import RateLimitService
from .routers.health import router as health_router
from .routers.narration import router as narration_router
from .services.situational import HolidayService
from .services.wikipedia import WikipediaService

logger = logging.getLogger(__name__)

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
}

CORS_ALLOWED_HEADERS = ["authorization", "x-client-info", "apikey", "content-type"]
RATE_LIMIT_HEADERS = [
    "X-RateLimit-Limit",
    "X-RateLimit-Remaining",
    "X-RateLimit-Reset",
    "Retry-After",
    "X-Request-ID",
]


def create_app(
    settings: Optional[Settings] = None,
    *,
    provider_factory: Optional[ProviderFactory] = None,
    breakers: Optional[CircuitBreakerRegistry] = None,
    rate_limits: Optional[RateLimitService] = None,
    wikipedia: Optional[WikipediaService] = None,
    holidays: Optional[HolidayService] = None,
    configure_logs: bool = True,
) -> FastAPI:
    """Build the service; every collaborator can be injected for tests."""

    settings = settings or get_settings()
    if configure_logs:
        configure_logging(
            settings.log_level,
            log_file=settings.log_file,
            json_output=settings.is_production,
        )

    breakers = breakers or CircuitBreakerRegistry()
    rate_limits = rate_limits or RateLimitService(sweep_interval=settings.rate_limit_sweep_interval)
    provider_factory = provider_factory or ProviderFactory.from_settings(settings)
    wikipedia = wikipedia or WikipediaService(settings, breakers)
    holidays = holidays or HolidayService(settings, breakers)
    reporter = ErrorReporter(include_stack=not settings.is_production)
    orchestrator = NarrationOrchestrator(
        settings,
        provider_factory,
        breakers,
        wikipedia,
        holidays=holidays,
        reporter=reporter,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        rate_limits.start()
        logger.info(
            "Narration service started (providers: %s, wikipedia: %s, holidays: %s)",
            ", ".join(provider_factory.available()) or "none",
            "on" if wikipedia.enabled else "off",
            "on" if holidays.enabled else "off",
        )
        try:
            yield
        finally:
            await rate_limits.stop()
            try:
                await asyncio.wait_for(provider_factory.aclose(), timeout=10.0)
            except asyncio.TimeoutError:
                logger.warning("Provider shutdown timed out after 10s")
            except Exception as exc:
                logger.warning("Error during provider shutdown: %s", exc)
            await wikipedia.aclose()
            await holidays.aclose()

    app = FastAPI(
        title="Attraction Narration Backend",
        version="0.1.0",
        description="Narration text and speech for points of interest.",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.breakers = breakers
    app.state.rate_limits = rate_limits
    app.state.provider_factory = provider_factory
    app.state.wikipedia = wikipedia
    app.state.holidays = holidays
    app.state.orchestrator = orchestrator

    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        return response

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allowed_origins,
        allow_credentials=False,
        allow_methods=["POST", "OPTIONS"],
        allow_headers=CORS_ALLOWED_HEADERS,
        expose_headers=RATE_LIMIT_HEADERS,
    )

    app.include_router(health_router)
    app.include_router(narration_router)

    return app


__all__ = ["create_app"]
