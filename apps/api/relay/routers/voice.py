"""Voice relay websocket."""
from __future__ import annotations

import logging
from contextlib import suppress

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from fastapi.websockets import WebSocketState

from ..core.dependencies import get_identity_directory, get_session_services
from ..services.identity import IdentityDirectory, IdentityRejected
from ..services.voice_session import CLOSE_NORMAL, ConnectionSession, SessionServices

logger = logging.getLogger(__name__)

router = APIRouter()

CLOSE_UNAUTHENTICATED = 4401


@router.websocket("/ws")
async def voice_endpoint(
    websocket: WebSocket,
    directory: IdentityDirectory = Depends(get_identity_directory),
    services: SessionServices = Depends(get_session_services),
) -> None:
    """Relay PCM frames and control messages for one caller.

    Binary frames are microphone audio; text frames are tagged JSON control messages.
    """

    await websocket.accept()
    try:
        identity = await directory.resolve(
            token=websocket.query_params.get("token"),
            guest_id=websocket.query_params.get("guestId"),
        )
    except IdentityRejected as exc:
        logger.info("Voice socket rejected: %s", exc)
        await websocket.close(code=CLOSE_UNAUTHENTICATED, reason=str(exc))
        return

    async def close_socket(code: int) -> None:
        if websocket.application_state != WebSocketState.DISCONNECTED:
            await websocket.close(code=code)

    session = ConnectionSession(
        identity,
        services,
        send=websocket.send_json,
        close_socket=close_socket,
    )
    logger.info("Voice socket %s opened for %s", session.session_id, identity.ledger_key)

    try:
        while not session.closed:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            if message.get("bytes") is not None:
                await session.handle_audio(message["bytes"])
            elif message.get("text") is not None:
                await session.handle_text(message["text"])
    except WebSocketDisconnect:
        pass
    finally:
        await session.close(reason="disconnect")
        with suppress(Exception):
            await close_socket(CLOSE_NORMAL)
