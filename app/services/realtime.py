# app/services/realtime.py
# 세션 코드별 토픽(pub/sub) 허브
# - 구독자는 WebSocket 연결마다 asyncio.Queue 하나
# - publish 는 요청 스레드/타이머 스레드 어디서든 호출 가능 (call_soon_threadsafe)
import asyncio
import logging
import threading
from collections import defaultdict
from typing import Any, Callable

logger = logging.getLogger(__name__)

Listener = Callable[[str, dict], None]


def session_topic(code: str) -> str:
    return f"/topic/session/{code}"


def session_messages_topic(code: str) -> str:
    return f"/topic/session/{code}/messages"


def user_queue(user_id: Any, code: str) -> str:
    return f"/user/{user_id}/queue/session/{code}"


class SessionEventHub:
    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers: dict[str, list[tuple[asyncio.AbstractEventLoop, asyncio.Queue]]] = defaultdict(list)
        self._listeners: list[Listener] = []

    # ----------------------------
    # 구독
    # ----------------------------
    def subscribe(self, destinations: list[str], loop: asyncio.AbstractEventLoop | None = None) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        loop = loop or asyncio.get_running_loop()
        with self._lock:
            for dest in destinations:
                self._subscribers[dest].append((loop, queue))
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        with self._lock:
            for dest in list(self._subscribers):
                remaining = [s for s in self._subscribers[dest] if s[1] is not queue]
                if remaining:
                    self._subscribers[dest] = remaining
                else:
                    del self._subscribers[dest]

    def subscriber_count(self, destination: str) -> int:
        with self._lock:
            return len(self._subscribers.get(destination, ()))

    def add_listener(self, listener: Listener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    # ----------------------------
    # 발행
    # ----------------------------
    def publish(self, destination: str, payload: dict) -> None:
        frame = {"destination": destination, "payload": payload}
        with self._lock:
            targets = list(self._subscribers.get(destination, ()))
            listeners = list(self._listeners)

        for listener in listeners:
            listener(destination, payload)

        for loop, queue in targets:
            try:
                loop.call_soon_threadsafe(queue.put_nowait, frame)
            except RuntimeError:
                # 이벤트 루프가 이미 닫힌 연결
                logger.debug("[WS] dropping frame for closed loop dest=%s", destination)
                self.unsubscribe(queue)

    def broadcast(self, code: str, payload: dict) -> None:
        self.publish(session_topic(code), payload)

    def send_to_user(self, user_id: Any, code: str, payload: dict) -> None:
        self.publish(user_queue(user_id, code), payload)


hub = SessionEventHub()
