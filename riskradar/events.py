import asyncio
from datetime import datetime, timezone
from typing import List


class EventBus:
    """In-memory fan-out for SSE subscribers. Nothing is persisted."""

    def __init__(self) -> None:
        self.subscribers: List[asyncio.Queue] = []
        self.lock = asyncio.Lock()
        self.seq = 0

    async def emit(self, event_type: str, payload: dict) -> dict:
        async with self.lock:
            self.seq += 1
            event = {
                "seq": self.seq,
                "event_type": event_type,
                "created_at": datetime.now(timezone.utc).isoformat(),
                "payload": dict(payload or {}),
            }
            queues = list(self.subscribers)
        for q in queues:
            await q.put(event)
        return event

    async def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        async with self.lock:
            self.subscribers.append(queue)
        return queue

    async def unsubscribe(self, queue: asyncio.Queue) -> None:
        async with self.lock:
            if queue in self.subscribers:
                self.subscribers.remove(queue)
