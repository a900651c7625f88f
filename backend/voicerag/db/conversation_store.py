"""
Idempotent storage of voice conversation snapshots.
"""

import logging

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from voicerag.db.models import VoiceConversation, VoiceExchange, VoiceMessage
from voicerag.models import SaveConversationRequest, SaveConversationResponse

logger = logging.getLogger(__name__)


async def save_conversation(db: AsyncSession, request: SaveConversationRequest) -> SaveConversationResponse:
    """
    Store a full transcript snapshot, replacing any earlier snapshot of the
    same session. Commit is left to the caller's session scope.
    """
    conversation = await db.get(VoiceConversation, request.session_id)
    if conversation is None:
        conversation = VoiceConversation(session_id=request.session_id)
        db.add(conversation)

    conversation.source = request.source
    conversation.variant = request.variant
    conversation.message_count = len(request.messages)

    # Flush first so the parent row exists before children reference it
    await db.flush()
    await db.execute(delete(VoiceMessage).where(VoiceMessage.session_id == request.session_id))
    await db.execute(delete(VoiceExchange).where(VoiceExchange.session_id == request.session_id))

    db.add_all([
        VoiceMessage(
            session_id=request.session_id,
            position=position,
            role=message.role,
            content=message.content,
            created_at=message.created_at,
        )
        for position, message in enumerate(request.messages)
    ])
    db.add_all([
        VoiceExchange(
            session_id=request.session_id,
            position=position,
            question=exchange.question,
            answer=exchange.answer,
            created_at=exchange.created_at,
        )
        for position, exchange in enumerate(request.exchanges)
    ])
    await db.flush()

    logger.info(
        f"💾 Stored conversation {request.session_id}: "
        f"{len(request.messages)} messages, {len(request.exchanges)} exchanges"
    )
    return SaveConversationResponse(
        session_id=request.session_id,
        stored_messages=len(request.messages),
        stored_exchanges=len(request.exchanges),
    )
