"""Service health and resilience statistics."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Request

from ..logging_setup import get_log_stats_handler
from ..resilience.circuit_breaker import CircuitState

router = APIRouter(tags=["health"])


@router.get("/health")
async def healthcheck(request: Request) -> dict[str, Any]:
    state = request.app.state
    breakers = state.breakers.health()
    degraded = any(snapshot["state"] != CircuitState.CLOSED.value for snapshot in breakers.values())
    log_stats = get_log_stats_handler()

    body: dict[str, Any] = {
        "status": "degraded" if degraded else "ok",
        "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "providers": state.provider_factory.available(),
        "circuitBreakers": breakers,
        "rateLimits": state.rate_limits.stats(),
        "errors": state.orchestrator.reporter.stats(),
        "logs": {**log_stats.stats(), "recentErrors": log_stats.recent(limit=10, level="ERROR")},
    }
    wikipedia = getattr(state, "wikipedia", None)
    if wikipedia is not None:
        body["wikipedia"] = {"enabled": wikipedia.enabled, "budget": wikipedia.budget_stats()}
    holidays = getattr(state, "holidays", None)
    if holidays is not None:
        body["holidayLookup"] = {"enabled": holidays.enabled}
    return body
