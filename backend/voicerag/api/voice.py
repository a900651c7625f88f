"""
Voice session API endpoints: signaling proxy, context retrieval and
conversation persistence.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse, Response
from sqlalchemy.ext.asyncio import AsyncSession

from voicerag.db.conversation_store import save_conversation
from voicerag.db.postgres import get_db_session
from voicerag.dependencies import get_backend_client, get_context_service
from voicerag.errors import NegotiationError, RetrievalError
from voicerag.models import (
    DEFAULT_ICE_SERVERS,
    ContextRequest,
    ContextResponse,
    EphemeralKeyResponse,
    ErrorResponse,
    IceServersResponse,
    OfferRequest,
    SaveConversationRequest,
    SaveConversationResponse,
)
from voicerag.prompts import get_system_prompt
from voicerag.rag.context_service import ContextService
from voicerag.realtime.upstream import RealtimeBackendClient

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/voice", tags=["voice"])


def get_optional_context_service() -> Optional[ContextService]:
    """Context service, or None when the vector store is not configured."""
    try:
        return get_context_service()
    except RetrievalError as e:
        logger.error(f"Context service unavailable: {e}")
        return None


def _failure_response(error: NegotiationError) -> JSONResponse:
    return JSONResponse(status_code=error.failure.status, content=error.failure.to_payload())


@router.post(
    "/offer",
    response_class=Response,
    responses={200: {"content": {"application/sdp": {}}}, 502: {"model": ErrorResponse}},
)
async def create_offer(
    request: OfferRequest,
    client: RealtimeBackendClient = Depends(get_backend_client),
):
    """
    Proxy an SDP offer to the realtime backend.

    Returns:
        The backend's SDP answer as application/sdp, or a classified error
        body ({error, code, details, suggestion})
    """
    instructions = request.instructions or get_system_prompt()
    try:
        answer = await client.create_call(request.sdp, instructions, request.voice)
    except NegotiationError as e:
        logger.error(f"Offer failed [{e.code.value}]: {e.failure.error}")
        return _failure_response(e)

    return Response(content=answer, media_type="application/sdp")


@router.get("/ice-servers", response_model=IceServersResponse)
async def get_ice_servers(client: RealtimeBackendClient = Depends(get_backend_client)):
    """ICE servers from the backend, or the public defaults when unavailable."""
    try:
        servers = await client.fetch_ice_servers()
    except NegotiationError as e:
        logger.warning(f"ICE server fetch failed [{e.code.value}], using defaults")
        servers = list(DEFAULT_ICE_SERVERS)
    return IceServersResponse(ice_servers=servers)


@router.post("/ephemeral-key", response_model=EphemeralKeyResponse)
async def create_ephemeral_key(client: RealtimeBackendClient = Depends(get_backend_client)):
    try:
        token = await client.fetch_ephemeral_key()
    except NegotiationError as e:
        logger.error(f"Ephemeral key failed [{e.code.value}]: {e.failure.error}")
        return _failure_response(e)
    return EphemeralKeyResponse(token=token)


@router.post("/rag-context", response_model=ContextResponse)
async def get_rag_context(
    request: ContextRequest,
    service: Optional[ContextService] = Depends(get_optional_context_service),
):
    """
    Relevance-gated context for one utterance.

    Retrieval failures are reported in the `error` field with
    `context: null`; they never fail the request.
    """
    if not request.question or not request.question.strip():
        raise HTTPException(status_code=400, detail="Question is required")

    if service is None:
        return ContextResponse(instructions=get_system_prompt(), error="Retrieval is not configured")
    return await service.get_context(request)


@router.post("/conversations", response_model=SaveConversationResponse)
async def store_conversation(
    request: SaveConversationRequest,
    db: AsyncSession = Depends(get_db_session),
):
    """Save (or replace) the transcript of one voice session."""
    return await save_conversation(db, request)
