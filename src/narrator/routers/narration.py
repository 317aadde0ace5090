"""Narration endpoints: attraction narration (JSON or ndjson) and single-chunk audio."""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from typing import Any, AsyncIterator, Optional

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import TypeAdapter, ValidationError

from ..errors import ErrorReporter, ErrorType, NarrationError, ValidationFailure
from ..logging_setup import (
    log_security_event,
    request_context,
    request_id_var,
    request_timer,
    user_id_var,
)
from ..orchestrator import NarrationOrchestrator
from ..resilience.rate_limiter import RateLimitService, get_client_ip, get_user_id
from ..schemas.narration import AudioChunkRequest, NarrationRequest

logger = logging.getLogger(__name__)

router = APIRouter(tags=["narration"])

NDJSON_MEDIA_TYPE = "application/x-ndjson"


def generate_request_id() -> str:
    return f"req_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def _client_ip(request: Request) -> str:
    ip = get_client_ip(request.headers)
    if ip == "unknown" and request.client is not None:
        return request.client.host
    return ip


async def _read_payload(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except (ValueError, UnicodeDecodeError) as exc:
        raise ValidationFailure("Request body must be valid JSON") from exc
    if not isinstance(payload, dict):
        raise ValidationFailure("Request body must be a JSON object")
    return payload


_BOOL = TypeAdapter(bool)


def _flag(payload: dict[str, Any], key: str) -> bool:
    """Lenient boolean read of a raw field; anything unparseable counts as False."""

    try:
        return _BOOL.validate_python(payload.get(key, False))
    except ValidationError:
        return False


def _error_response(
    reporter: ErrorReporter,
    exc: BaseException,
    *,
    status_code: int,
    headers: dict[str, str],
    request_id: str,
    user_id: Optional[str],
    context: str,
    error_type: Optional[ErrorType] = None,
    message: Optional[str] = None,
    extra: Optional[dict[str, Any]] = None,
) -> JSONResponse:
    body = reporter.create_error_response(
        exc,
        context=context,
        request_id=request_id,
        user_id=user_id,
        error_type=error_type,
    )
    if message:
        body["error"] = message
    if extra:
        body.update(extra)
    return JSONResponse(body, status_code=status_code, headers=headers)


async def _ndjson(
    orchestrator: NarrationOrchestrator,
    payload: NarrationRequest,
    request_id: str,
    user_id: Optional[str],
) -> AsyncIterator[str]:
    # Runs inside the response task, whose context is separate from the handler's
    request_id_var.set(request_id)
    user_id_var.set(user_id)
    async for frame in orchestrator.stream(payload):
        yield json.dumps(frame, ensure_ascii=False) + "\n"


@router.post("/attraction-info", response_model=None)
@router.post("/", response_model=None, include_in_schema=False)
async def attraction_info(request: Request) -> Response:
    """Generate narration (and optionally audio) for an attraction."""

    orchestrator: NarrationOrchestrator = request.app.state.orchestrator
    rate_limits: RateLimitService = request.app.state.rate_limits
    reporter = orchestrator.reporter

    request_id = generate_request_id()
    client_ip = _client_ip(request)
    user_id = get_user_id(request.headers)

    with request_context(request_id, user_id):
        base_headers = {"X-Request-ID": request_id}
        try:
            raw = await _read_payload(request)
        except ValidationFailure as exc:
            log_security_event("malformed_request", ip=client_ip, requestId=request_id)
            return _error_response(
                reporter,
                exc,
                status_code=status.HTTP_400_BAD_REQUEST,
                headers=base_headers,
                request_id=request_id,
                user_id=user_id,
                context="request parsing",
                error_type=ErrorType.VALIDATION_ERROR,
            )

        generate_audio = _flag(raw, "generateAudio")
        decision = rate_limits.check(
            client_ip,
            user_id,
            generate_audio=generate_audio,
            stream_audio=generate_audio and _flag(raw, "streamAudio"),
        )
        headers = {**base_headers, **decision.headers()}
        if not decision.allowed:
            log_security_event(
                "rate_limit_exceeded",
                ip=client_ip,
                user=user_id,
                requestId=request_id,
                message=decision.message,
            )
            return _error_response(
                reporter,
                NarrationError(decision.message or "rate limit exceeded"),
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                headers=headers,
                request_id=request_id,
                user_id=user_id,
                context="rate limiting",
                error_type=ErrorType.RATE_LIMIT_EXCEEDED,
                message=decision.message,
            )

        try:
            payload = NarrationRequest.model_validate(raw)
        except ValidationError as exc:
            log_security_event(
                "validation_failed",
                ip=client_ip,
                requestId=request_id,
                fields=[".".join(str(part) for part in err["loc"]) for err in exc.errors()],
            )
            return _error_response(
                reporter,
                ValidationFailure(str(exc)),
                status_code=status.HTTP_400_BAD_REQUEST,
                headers=headers,
                request_id=request_id,
                user_id=user_id,
                context="request validation",
                error_type=ErrorType.VALIDATION_ERROR,
            )

        logger.info(
            "Narration request for %r (audio=%s stream=%s chunked=%s provider=%s)",
            payload.attraction_name,
            payload.generate_audio,
            payload.wants_stream,
            payload.use_chunked_audio,
            payload.ai_provider or "default",
        )

        if payload.wants_stream:
            return StreamingResponse(
                _ndjson(orchestrator, payload, request_id, user_id),
                media_type=NDJSON_MEDIA_TYPE,
                headers={**headers, "Cache-Control": "no-cache"},
            )

        try:
            with request_timer("attraction info", logger):
                result = await orchestrator.generate_batch(payload)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return _error_response(
                reporter,
                exc,
                status_code=reporter.status_code_for(exc),
                headers=headers,
                request_id=request_id,
                user_id=user_id,
                context="attraction info",
            )
        return JSONResponse(result.as_dict(), headers=headers)


def _chunk_position(payload: dict[str, Any]) -> dict[str, Any]:
    index = payload.get("chunkIndex", 0)
    total = payload.get("totalChunks", 1)
    return {
        "chunkIndex": index if isinstance(index, int) and not isinstance(index, bool) else 0,
        "totalChunks": total if isinstance(total, int) and not isinstance(total, bool) else 1,
    }


@router.post("/generate-audio-chunk", response_model=None)
async def generate_audio_chunk(request: Request) -> Response:
    """Synthesize a single pre-split chunk of narration text."""

    orchestrator: NarrationOrchestrator = request.app.state.orchestrator
    rate_limits: RateLimitService = request.app.state.rate_limits
    reporter = orchestrator.reporter

    request_id = generate_request_id()
    client_ip = _client_ip(request)
    user_id = get_user_id(request.headers)

    with request_context(request_id, user_id):
        base_headers = {"X-Request-ID": request_id}
        try:
            raw = await _read_payload(request)
        except ValidationFailure as exc:
            log_security_event("malformed_request", ip=client_ip, requestId=request_id)
            return _error_response(
                reporter,
                exc,
                status_code=status.HTTP_400_BAD_REQUEST,
                headers=base_headers,
                request_id=request_id,
                user_id=user_id,
                context="request parsing",
                error_type=ErrorType.VALIDATION_ERROR,
                extra=_chunk_position({}),
            )

        position = _chunk_position(raw)
        decision = rate_limits.check(client_ip, user_id, generate_audio=True)
        headers = {**base_headers, **decision.headers()}
        if not decision.allowed:
            log_security_event(
                "rate_limit_exceeded",
                ip=client_ip,
                user=user_id,
                requestId=request_id,
                message=decision.message,
            )
            return _error_response(
                reporter,
                NarrationError(decision.message or "rate limit exceeded"),
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                headers=headers,
                request_id=request_id,
                user_id=user_id,
                context="rate limiting",
                error_type=ErrorType.RATE_LIMIT_EXCEEDED,
                message=decision.message,
                extra=position,
            )

        try:
            payload = AudioChunkRequest.model_validate(raw)
        except ValidationError as exc:
            log_security_event(
                "validation_failed",
                ip=client_ip,
                requestId=request_id,
                fields=[".".join(str(part) for part in err["loc"]) for err in exc.errors()],
            )
            return _error_response(
                reporter,
                ValidationFailure(str(exc)),
                status_code=status.HTTP_400_BAD_REQUEST,
                headers=headers,
                request_id=request_id,
                user_id=user_id,
                context="request validation",
                error_type=ErrorType.VALIDATION_ERROR,
                extra=position,
            )

        logger.info(
            "Audio chunk %d/%d requested (%d chars, voice=%s)",
            payload.chunk_index + 1,
            payload.total_chunks,
            len(payload.text),
            payload.voice_style,
        )
        try:
            with request_timer("audio chunk", logger):
                body = await orchestrator.synthesize_chunk(payload)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return _error_response(
                reporter,
                exc,
                status_code=reporter.status_code_for(exc),
                headers=headers,
                request_id=request_id,
                user_id=user_id,
                context="audio chunk",
                extra={"chunkIndex": payload.chunk_index, "totalChunks": payload.total_chunks},
            )
        return JSONResponse(body, headers=headers)


__all__ = ["router", "generate_request_id"]
