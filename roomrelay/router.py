"""Frame routing and chat broadcast for the relay."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from .constants import (
    CLIENT_FRAME_TYPES,
    F_CHAT,
    F_ERROR,
    F_JOIN,
    F_PING,
    F_PONG,
    R_NOT_IN_ROOM,
)
from .envelope import ChatAck, InvalidEnvelope, JoinAck, validate_envelope
from .session import Connection

if TYPE_CHECKING:
    from .service import RelayService

logger = logging.getLogger(__name__)


def error_frame(text: str) -> dict[str, Any]:
    return {"type": F_ERROR, "error": text}


class MessageRouter:
    """Routes decoded client frames against the relay's shared state.

    Every step is synchronous: validation, membership check, dedup and
    fan-out only touch in-memory state, and outbound frames are queued on
    each connection's outbox. A frame is therefore processed to completion
    before the caller reads the next one from the same connection.
    """

    def __init__(self, service: RelayService):
        self.service = service

    def route(self, connection: Connection, frame: dict) -> None:
        """Dispatch one decoded frame from a connection.

        Args:
            connection: Sending connection
            frame: Decoded frame dictionary
        """
        msg_type = frame.get("type")
        if not isinstance(msg_type, str) or msg_type not in CLIENT_FRAME_TYPES:
            logger.warning("Invalid frame type conn=%s type=%r", connection.conn_id, msg_type)
            connection.deliver(error_frame("Invalid message type"))
            return

        if msg_type == F_JOIN:
            ack = self.handle_join(connection, frame.get("room"))
            connection.deliver(ack.to_frame())
        elif msg_type == F_CHAT:
            ack = self.handle_chat(connection, frame.get("envelope"))
            connection.deliver(ack.to_frame())
        elif msg_type == F_PING:
            connection.deliver({"type": F_PONG, "body": frame.get("body")})

    def handle_join(self, connection: Connection, raw_room: object) -> JoinAck:
        ack = self.service.rooms.join(connection, raw_room)
        if ack.ok:
            self.service.inc("joins")
        else:
            self.service.inc("joins_rejected")
        return ack

    def handle_chat(self, connection: Connection, raw: object) -> ChatAck:
        """Validate, authorize, dedup and broadcast one envelope.

        The envelope is delivered to every current member of its room,
        including the sender; the sender's copy doubles as delivery
        confirmation. The returned ack is for the sender only.

        Args:
            connection: Sending connection
            raw: Unvalidated envelope value

        Returns:
            ChatAck for the sender
        """
        try:
            env = validate_envelope(raw)
        except InvalidEnvelope as e:
            logger.info(
                "reject conn=%s msgId=%s reason=%s detail=%s",
                connection.conn_id,
                e.msg_id,
                e.reason,
                e.detail,
            )
            self.service.inc("msgs_invalid")
            return ChatAck(id=e.msg_id, ok=False, reason=e.reason, detail=e.detail)

        rooms = self.service.rooms
        if not rooms.is_member(connection, env.room):
            logger.info(
                "deny conn=%s msgId=%s room=%s reason=%s",
                connection.conn_id,
                env.id,
                env.room,
                R_NOT_IN_ROOM,
            )
            self.service.inc("msgs_denied")
            return ChatAck(id=env.id, ok=False, reason=R_NOT_IN_ROOM)

        if self.service.dedup.check_and_mark(env.id):
            logger.info("dedupe msgId=%s room=%s sender=%s", env.id, env.room, env.sender)
            self.service.inc("msgs_deduped")
            return ChatAck(id=env.id, ok=True)

        logger.info(
            "chat msgId=%s room=%s sender=%s createdAt=%s bytes=%d",
            env.id,
            env.room,
            env.sender,
            env.created_at,
            len(env.body),
        )

        frame = {"type": F_CHAT, "envelope": env.to_dict()}
        delivered = 0
        for member in rooms.members(env.room):
            if member.deliver(frame):
                delivered += 1

        self.service.inc("msgs_forwarded")
        self.service.inc("deliveries", delivered)
        return ChatAck(id=env.id, ok=True)
