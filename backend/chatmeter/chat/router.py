"""Chat API router: quota-gated streaming chat turns."""
import logging
from collections.abc import AsyncIterator, Callable, Sequence

import anyio
from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from chatmeter.billing.billing_router import get_quota_guard
from chatmeter.billing.metering import record_usage
from chatmeter.billing.quota import Denied, QuotaGuard
from chatmeter.chat.completion import (
    CompletionClient,
    CompletionError,
    get_completion_client,
)
from chatmeter.chat.conversations import (
    ConversationNotFoundError,
    create_conversation,
    get_conversation,
    save_message,
)
from chatmeter.chat.schemas import ChatRequest, QuotaExceededResponse
from chatmeter.core.auth import CurrentUser, require_user
from chatmeter.core.config import Settings, get_settings
from chatmeter.core.logging import report_anomaly
from chatmeter.database import get_db, get_session_factory

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["chat"])

CONVERSATION_HEADER = "x-conversation-id"


def get_chat_client() -> CompletionClient:
    """Completion client, or 500 when the provider is not configured."""
    try:
        return get_completion_client()
    except CompletionError as exc:
        logger.error("chat.not_configured", extra={"error_message": str(exc)})
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": "AI provider is not configured"},
        ) from exc


def _finish_turn(
    session_factory: Callable[[], Session],
    user_id: str,
    conversation_id: str,
    content: str,
    completed: bool,
) -> None:
    """Persist the assistant reply and, for completed turns only, count usage."""
    db = session_factory()
    try:
        if content or completed:
            try:
                save_message(db, conversation_id, user_id, "assistant", content)
                db.commit()
            except SQLAlchemyError:
                db.rollback()
                logger.exception(
                    "chat.reply_save_failed",
                    extra={"user_id": user_id, "conversation_id": conversation_id},
                )

        if not completed:
            logger.info(
                "chat.turn_incomplete",
                extra={"user_id": user_id, "conversation_id": conversation_id, "chars": len(content)},
            )
            return

        try:
            record_usage(db, user_id)
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.exception("usage.record_failed", extra={"user_id": user_id})
            report_anomaly("usage_write_failed", "Completed chat turn was not counted", user_id=user_id)
    finally:
        db.close()


async def stream_turn(
    client: CompletionClient,
    history: Sequence[dict[str, str]],
    session_factory: Callable[[], Session],
    user_id: str,
    conversation_id: str,
) -> AsyncIterator[str]:
    """Forward completion chunks to the client, then settle the turn.

    A turn counts against quota only if the provider stream ran to its end.
    Provider errors and client disconnects keep whatever text was produced.
    """
    chunks: list[str] = []
    completed = False
    try:
        async for chunk in client.stream(history):
            chunks.append(chunk)
            yield chunk
        completed = True
    except CompletionError as exc:
        logger.warning(
            "chat.stream_failed",
            extra={"user_id": user_id, "conversation_id": conversation_id, "error_message": str(exc)},
        )
    finally:
        # A disconnect cancels the stream task; the reply must still be settled
        with anyio.CancelScope(shield=True):
            await run_in_threadpool(
                _finish_turn, session_factory, user_id, conversation_id, "".join(chunks), completed
            )


@router.post("/chat")
def chat(
    request: ChatRequest,
    user: CurrentUser = Depends(require_user),
    guard: QuotaGuard = Depends(get_quota_guard),
    settings: Settings = Depends(get_settings),
    db: Session = Depends(get_db),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    client: CompletionClient = Depends(get_chat_client),
):
    """Run one chat turn and stream the reply as plain text."""
    decision = guard.admit(user.user_id)
    if isinstance(decision, Denied):
        body = QuotaExceededResponse(
            limit=decision.limit,
            count=decision.count,
            upgrade_url=f"{settings.app_url}/pricing",
        )
        return JSONResponse(status_code=status.HTTP_429_TOO_MANY_REQUESTS, content=body.model_dump())

    prompt = request.messages[-1].content
    try:
        if request.conversation_id:
            conversation = get_conversation(db, user.user_id, request.conversation_id)
        else:
            conversation = create_conversation(db, user.user_id, prompt)
        conversation_id = conversation.conversation_id
        save_message(db, conversation_id, user.user_id, "user", prompt)
        db.commit()
    except ConversationNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": str(exc)},
        ) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("chat.prompt_save_failed", extra={"user_id": user.user_id})
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": "Failed to process chat request"},
        ) from exc

    history = [message.model_dump() for message in request.messages]
    logger.info(
        "chat.turn_started",
        extra={"user_id": user.user_id, "conversation_id": conversation_id, "plan": decision.plan.value},
    )
    return StreamingResponse(
        stream_turn(client, history, session_factory, user.user_id, conversation_id),
        media_type="text/plain; charset=utf-8",
        headers={CONVERSATION_HEADER: conversation_id},
    )
