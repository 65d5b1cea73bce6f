"""Relay router providing the WebSocket endpoint.

This module provides:
    - WebSocket /ws: Real-time conversation relay

Handshake:
    The bearer credential is read from the ``token`` query parameter (name
    configurable) or an ``Authorization: Bearer`` header. It is resolved to
    an identity before the socket is accepted; failure closes the socket
    with code 1008 and no relay state is touched.

After the handshake the server sends ``connected`` and then processes
client frames (see app.chat.protocol) until the socket closes.
"""
import logging
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from app.auth.service import TokenVerifier
from app.config import get_config

from .engine import get_engine
from .errors import AuthenticationError, RequestValidationError, error_event

logger = logging.getLogger(__name__)

router = APIRouter()

# WebSocket close code for policy violation (authentication failure)
CLOSE_POLICY_VIOLATION = 1008


def _read_token(websocket: WebSocket, query_param: str) -> Optional[str]:
    token = websocket.query_params.get(query_param)
    if token:
        return token
    return TokenVerifier.extract_bearer(websocket.headers.get("authorization"))


def authenticate(websocket: WebSocket) -> str:
    """Resolve the handshake credential to an existing identity id.

    Raises:
        AuthenticationError: Missing, invalid or expired token, or an
            identity the store does not know.
    """
    config = get_config()
    token = _read_token(websocket, config.auth.token_query_param)
    if not token:
        raise AuthenticationError("Missing bearer token")
    verifier = TokenVerifier(
        secret_key=config.secrets.jwt.secret_key,
        algorithm=config.secrets.jwt.algorithm,
        identity_claim=config.auth.identity_claim,
    )
    identity_id = verifier.verify(token)
    if not get_engine().store.identity_exists(identity_id):
        raise AuthenticationError("Unknown identity")
    return identity_id


@router.websocket("/ws")
async def relay_websocket(websocket: WebSocket) -> None:
    """WebSocket endpoint for the conversation relay.

    Protocol:
        1. Client connects with its bearer token
        2. Server validates it (closes with 1008 on failure)
        3. Server sends ``connected`` with the identity and its conversation ids
        4. Client sends ``joinRooms`` and then any other request
        5. Server replies with ``ack``/``error`` and pushes room events

    Example client frames:
        {"type": "joinRooms", "conversationIds": []}
        {"type": "sendMessage", "conversationId": "c1", "text": "hi", "requestId": "r1"}
        {"type": "markConversationRead", "conversationId": "c1"}
    """
    try:
        identity_id = authenticate(websocket)
    except AuthenticationError as e:
        logger.warning(f"[WS] Handshake rejected: {e.message}")
        await websocket.close(code=CLOSE_POLICY_VIOLATION)  # 1008 = Policy Violation
        return

    await websocket.accept()
    engine = get_engine()
    connection = engine.connect(websocket, identity_id)
    connection.start()
    logger.info(f"[WS] {identity_id} connected as {connection.id}")

    try:
        while True:
            try:
                data = await websocket.receive_json()
            except (ValueError, KeyError):
                # Not a JSON text frame (binary frames raise KeyError); reject it and keep going
                connection.send(error_event(RequestValidationError("Frame is not valid JSON")))
                continue
            await engine.handle(connection, data)
    except WebSocketDisconnect:
        logger.info(f"[WS] {identity_id} disconnected ({connection.id})")
    finally:
        engine.disconnect(connection)
        await connection.stop()
