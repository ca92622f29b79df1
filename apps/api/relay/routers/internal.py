"""Internal endpoints used by the identity service and the sign-up migration flow."""
from __future__ import annotations

import hmac
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Response, status

from ..core.config import settings
from ..core.dependencies import get_guest_buffer, get_identity_directory, get_message_sink
from ..schemas import guest as guest_schema
from ..services.guest_buffer import GuestBuffer
from ..services.identity import IdentityDirectory
from ..services.messages import MessageSink, migrate_guest_conversation

logger = logging.getLogger(__name__)

router = APIRouter()


async def require_internal_secret(authorization: str | None = Header(default=None)) -> None:
    """Reject callers that do not present ``Bearer <INTERNAL_API_SECRET>``."""

    secret = settings.internal_api_secret
    expected = f"Bearer {secret}"
    if not secret or not authorization or not hmac.compare_digest(authorization, expected):
        logger.warning("Rejected internal API call with bad credentials")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


@router.post(
    "/identities",
    response_model=guest_schema.IdentityRegistered,
    dependencies=[Depends(require_internal_secret)],
)
async def register_identity(
    payload: guest_schema.IdentityRegistration,
    directory: IdentityDirectory = Depends(get_identity_directory),
) -> guest_schema.IdentityRegistered:
    """Register or refresh a session token and the user's plan."""

    await directory.register(payload.token, payload.user_id, payload.plan)
    return guest_schema.IdentityRegistered(user_id=payload.user_id, plan=payload.plan)


@router.get(
    "/guest-buffer/{guest_id}",
    response_model=guest_schema.GuestBufferResponse,
    dependencies=[Depends(require_internal_secret)],
)
async def read_guest_buffer(
    guest_id: str,
    buffer: GuestBuffer = Depends(get_guest_buffer),
) -> guest_schema.GuestBufferResponse:
    """Return the buffered conversation and clear it; a second read is a 404."""

    entry = buffer.take(guest_id)
    if entry is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No buffered conversation")
    logger.info("Guest buffer for %s retrieved and cleared", guest_id)
    return guest_schema.GuestBufferResponse(
        guest_id=guest_id,
        messages=[guest_schema.BufferedMessage(**message) for message in entry.messages],
        summary=entry.summary,
        timestamp=entry.timestamp,
    )


@router.delete(
    "/guest-buffer/{guest_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_internal_secret)],
)
async def delete_guest_buffer(
    guest_id: str,
    buffer: GuestBuffer = Depends(get_guest_buffer),
) -> Response:
    buffer.clear(guest_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/guest-buffer/{guest_id}/claim",
    response_model=guest_schema.ClaimResponse,
    dependencies=[Depends(require_internal_secret)],
)
async def claim_guest_buffer(
    guest_id: str,
    payload: guest_schema.ClaimRequest,
    buffer: GuestBuffer = Depends(get_guest_buffer),
    sink: MessageSink = Depends(get_message_sink),
) -> guest_schema.ClaimResponse:
    """Move the guest's buffered exchange into a new conversation owned by the user."""

    result = await migrate_guest_conversation(guest_id, payload.user_id, buffer=buffer, sink=sink)
    return guest_schema.ClaimResponse(
        conversation_id=result.conversation_id,
        migrated=result.migrated,
        summary=result.summary,
    )


@router.delete(
    "/identities/{token}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_internal_secret)],
)
async def revoke_identity(
    token: str,
    directory: IdentityDirectory = Depends(get_identity_directory),
) -> Response:
    """Forget a session token; sockets already open keep their identity."""

    await directory.revoke(token)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
