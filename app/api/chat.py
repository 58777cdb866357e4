"""
Chat API - conversations and the streaming turn endpoint

POST /conversations/{id}/messages streams Server-Sent Events:
- "content": visible text fragments
- "done": settlement metadata (message id, tokens, credit cost)
- "error": generic failure signal (never names the provider)
followed by the "data: [DONE]" end-of-stream sentinel.
"""

import json
import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import StreamingResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.db import get_db, Conversation, Message, User, DEFAULT_CONVERSATION_TITLE
from app.schemas import (
    ConversationCreate, ConversationUpdate, ConversationResponse, ConversationDetailResponse,
    MessageResponse, SendMessageRequest,
)
from app.api.auth import get_current_user
from app.services.credit_service import CreditLedger, get_credit_ledger
from app.services.generation_service import (
    ConversationNotFoundError, GenerationPipeline, TurnStream, get_generation_pipeline,
)
from app.services.llm_service import ProviderUnavailableError
from app.services.prompt_builder import ChatMode

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/conversations", tags=["chat"])

DONE_SENTINEL = "data: [DONE]\n\n"


def sse(event_type: str, data) -> str:
    return f"data: {json.dumps({'type': event_type, 'data': data})}\n\n"


async def _get_owned_conversation(db: AsyncSession, conversation_id: str, user_id: str) -> Conversation:
    result = await db.execute(
        select(Conversation).where(
            Conversation.id == conversation_id,
            Conversation.user_id == user_id,
        )
    )
    conversation = result.scalar_one_or_none()
    if not conversation:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
    return conversation


@router.post("", response_model=ConversationResponse, status_code=status.HTTP_201_CREATED)
async def create_conversation(
    body: Optional[ConversationCreate] = None,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    conversation = Conversation(
        user_id=current_user.id,
        title=(body.title if body and body.title else DEFAULT_CONVERSATION_TITLE),
    )
    db.add(conversation)
    await db.commit()
    return conversation


@router.get("", response_model=List[ConversationResponse])
async def list_conversations(
    limit: int = Query(50, ge=1, le=200),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Conversations, most recently active first"""
    result = await db.execute(
        select(Conversation)
        .where(Conversation.user_id == current_user.id)
        .order_by(Conversation.updated_at.desc())
        .limit(limit)
    )
    return result.scalars().all()


@router.get("/{conversation_id}", response_model=ConversationDetailResponse)
async def get_conversation(
    conversation_id: str,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    result = await db.execute(
        select(Conversation)
        .options(selectinload(Conversation.messages))
        .where(Conversation.id == conversation_id, Conversation.user_id == current_user.id)
    )
    conversation = result.scalar_one_or_none()
    if not conversation:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
    return conversation


@router.patch("/{conversation_id}", response_model=ConversationResponse)
async def rename_conversation(
    conversation_id: str,
    body: ConversationUpdate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    conversation = await _get_owned_conversation(db, conversation_id, current_user.id)
    conversation.title = body.title
    conversation.updated_at = datetime.utcnow()
    await db.commit()
    return conversation


@router.delete("/{conversation_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_conversation(
    conversation_id: str,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    result = await db.execute(
        select(Conversation)
        .options(selectinload(Conversation.messages))
        .where(Conversation.id == conversation_id, Conversation.user_id == current_user.id)
    )
    conversation = result.scalar_one_or_none()
    if not conversation:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
    await db.delete(conversation)
    await db.commit()


@router.get("/{conversation_id}/messages", response_model=List[MessageResponse])
async def list_messages(
    conversation_id: str,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Messages in insertion order"""
    await _get_owned_conversation(db, conversation_id, current_user.id)
    result = await db.execute(
        select(Message)
        .where(Message.conversation_id == conversation_id)
        .order_by(Message.created_at.asc())
    )
    return result.scalars().all()


@router.post("/{conversation_id}/messages")
async def send_message(
    conversation_id: str,
    body: SendMessageRequest,
    mode: Optional[str] = Query(None, description="chat | concept | deep"),
    current_user: User = Depends(get_current_user),
    ledger: CreditLedger = Depends(get_credit_ledger),
    pipeline: GenerationPipeline = Depends(get_generation_pipeline),
):
    """
    Send a message and stream the assistant response.

    The turn keeps running and settles even if the client disconnects.
    """
    if not await ledger.can_afford(current_user.id, Decimal("1")):
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail="Insufficient credits. Please top up to continue.",
        )

    try:
        turn = await pipeline.start_turn(
            current_user.id, conversation_id, body.content, ChatMode.parse(mode),
        )
    except ConversationNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
    except ProviderUnavailableError:
        logger.error("Chat request rejected: no LLM provider configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Generation is currently unavailable",
        )

    return StreamingResponse(
        _event_stream(turn),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


async def _event_stream(turn: TurnStream):
    async for event in turn:
        yield sse(event.type, event.data)
    yield DONE_SENTINEL
