# app/routers/realtime.py
# 세션 실시간 채널 (WebSocket)
# - 연결 1개 = 세션 토픽 + 채팅 토픽 + 개인 큐 구독
# - 서버 -> 클라이언트 프레임: {"destination": ..., "payload": {...}}
import asyncio
import json
import logging

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect, status
from fastapi.encoders import jsonable_encoder
from starlette.concurrency import run_in_threadpool

from app.db.base import SessionLocal, epoch_millis
from app.services import session_service as ss
from app.services.auth import resolve_user
from app.services.realtime import hub, session_messages_topic, session_topic, user_queue
from app.services.session_timer import timer_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])

# 클라이언트 이벤트 -> 세션 토픽 이벤트
RELAYED_TYPES = {
    "JOIN": "USER_JOINED",
    "LEAVE": "USER_LEFT",
    "STATUS": "STATUS_CHANGE",
}


def _authenticate(code: str, token: str | None):
    """(user_id, user_name) 또는 None. 세션 참가 이력이 있어야 구독 가능."""
    if not token:
        return None
    with SessionLocal() as db:
        try:
            user = resolve_user(db, token)
        except ValueError as e:
            logger.info("[WS] rejected token for %s: %s", code, e)
            return None
        session = ss.find_by_code(db, code)
        if session is None or ss.get_participant(session, user.id) is None:
            logger.info("[WS] user=%s is not a participant of %s", user.id, code)
            return None
        db.commit()  # Supabase 사용자 최초 연결 시 생성분 반영
        return user.id, user.name


def handle_client_message(code: str, user_id: int, user_name: str, data: dict) -> None:
    msg_type = str(data.get("type") or "").upper()

    if msg_type == "MESSAGE":
        hub.publish(session_messages_topic(code), {
            "type": "MESSAGE",
            "sessionCode": code,
            "senderId": user_id,
            "senderName": user_name,
            "content": data.get("content") or data.get("message") or "",
            "timestamp": epoch_millis(),
        })
    elif msg_type == "PING":
        timer_service.track_user_activity(code, user_id)
        hub.send_to_user(user_id, code, {"type": "PONG", "sessionCode": code, "serverTimestamp": epoch_millis()})
    elif msg_type in RELAYED_TYPES:
        payload = {k: v for k, v in data.items() if k != "type"}
        payload.update({
            "type": RELAYED_TYPES[msg_type],
            "sessionCode": code,
            "userId": user_id,
            "userName": user_name,
            "timestamp": epoch_millis(),
        })
        hub.broadcast(code, payload)
    else:
        logger.debug("[WS] ignoring message type=%r in %s", msg_type, code)


async def _pump(websocket: WebSocket, queue: asyncio.Queue) -> None:
    while True:
        frame = await queue.get()
        await websocket.send_json(jsonable_encoder(frame))


@router.websocket("/ws/sessions/{code}")
async def session_socket(websocket: WebSocket, code: str, token: str | None = Query(None)):
    identity = await run_in_threadpool(_authenticate, code, token)
    if identity is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    user_id, user_name = identity

    await websocket.accept()
    queue = hub.subscribe([session_topic(code), session_messages_topic(code), user_queue(user_id, code)])
    writer = asyncio.create_task(_pump(websocket, queue))
    timer_service.track_user_activity(code, user_id)
    logger.info("[WS] user=%s connected to %s", user_id, code)

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except ValueError:
                logger.info("[WS] malformed frame from user=%s in %s", user_id, code)
                continue
            if isinstance(data, dict):
                await run_in_threadpool(handle_client_message, code, user_id, user_name, data)
    except WebSocketDisconnect:
        logger.info("[WS] user=%s disconnected from %s", user_id, code)
    finally:
        hub.unsubscribe(queue)
        writer.cancel()
        try:
            await writer
        except asyncio.CancelledError:
            pass
        except Exception:
            # 전송 실패로 writer 가 먼저 죽은 경우
            logger.exception("[WS] writer failed for user=%s in %s", user_id, code)
