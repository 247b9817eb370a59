"""FastAPI surface: streamed chat turns, manual memories, summaries."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

from ..engine import ChatEngine
from ..types import (
    BillingError,
    DurableSummary,
    PersonaContextError,
    TurnEvent,
    TurnRequest,
    TurnValidationError,
)

logger = logging.getLogger(__name__)


def summary_to_dict(summary: DurableSummary) -> dict:
    return {
        "id": summary.id,
        "conversation_id": summary.conversation_id,
        "character_id": summary.character_id,
        "user_id": summary.user_id,
        "title": summary.title,
        "prose": summary.prose,
        "keywords": summary.keywords,
        "boundary": summary.boundary,
        "is_automatic": summary.is_automatic,
        "created_at": summary.created_at.isoformat(),
        "updated_at": summary.updated_at.isoformat(),
    }


def format_sse(event: TurnEvent) -> str:
    if event.kind == "done":
        payload = {"done": True, "metadata": event.metadata}
    else:
        payload = {"content": event.content}
    return f"data: {json.dumps(payload)}\n\n"


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def create_app(engine: ChatEngine) -> FastAPI:
    """Create the FastAPI application around a ready ChatEngine."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
        yield
        await engine.aclose()

    app = FastAPI(title="persona-context", lifespan=lifespan)
    app.state.engine = engine

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "active_summaries": len(engine.locks),
            "background_pending": engine.dispatcher.pending,
        }

    @app.post("/conversations/{conversation_id}/messages")
    async def send_message(conversation_id: str, request: Request):
        try:
            body = await request.json()
        except json.JSONDecodeError:
            return _error(400, "Request body must be JSON")
        if not isinstance(body, dict):
            return _error(400, "Request body must be a JSON object")

        user_id = body.get("user_id")
        character_id = body.get("character_id")
        if not isinstance(user_id, str) or not isinstance(character_id, str) or not user_id or not character_id:
            return _error(400, "user_id and character_id are required strings")

        turn = TurnRequest(
            conversation_id=conversation_id,
            user_id=user_id,
            character_id=character_id,
            message=body.get("message") or "",
            persona_id=body.get("persona_id"),
            world_info_id=body.get("world_info_id"),
        )
        try:
            handle = await engine.start_turn(turn)
        except TurnValidationError as e:
            return _error(400, str(e))
        except BillingError as e:
            return JSONResponse(
                status_code=402,
                content={"error": str(e), "required": e.required},
            )

        async def stream() -> AsyncGenerator[str]:
            # The turn task keeps running if the client goes away.
            async for event in handle.events():
                yield format_sse(event)

        return StreamingResponse(
            stream(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Message-Id": handle.placeholder.id},
        )

    @app.post("/conversations/{conversation_id}/memories")
    async def create_memory(conversation_id: str, request: Request):
        try:
            body = await request.json()
        except json.JSONDecodeError:
            return _error(400, "Request body must be JSON")
        user_id = body.get("user_id") if isinstance(body, dict) else None
        if not user_id:
            return _error(400, "user_id is required")

        try:
            summary = await engine.create_memory(conversation_id, user_id)
        except TurnValidationError as e:
            return _error(400, str(e))
        except BillingError as e:
            return JSONResponse(
                status_code=402,
                content={"error": str(e), "required": e.required},
            )
        except PersonaContextError as e:
            logger.error("Memory creation failed for %s: %s", conversation_id, e)
            return _error(502, str(e))
        return summary_to_dict(summary)

    @app.get("/conversations/{conversation_id}/summary")
    async def get_summary(conversation_id: str):
        summary = await engine.get_latest_summary(conversation_id)
        if summary is None:
            return _error(404, f"No summary for conversation {conversation_id}")
        return summary_to_dict(summary)

    return app
