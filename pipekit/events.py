import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pipekit.constants import HOST_NAME

logger = logging.getLogger(HOST_NAME)

EventEmitter = Callable[[Dict[str, Any]], Awaitable[Any]]


class EventRecorder:
    """`__event_emitter__` that records events and forwards them downstream"""

    def __init__(self, downstream: Optional[EventEmitter] = None):
        self.downstream = downstream
        self.events: List[Dict[str, Any]] = []

    async def __call__(self, event: Dict[str, Any]):
        self.events.append(event)
        if self.downstream is None:
            return None
        try:
            result = self.downstream(event)
            if asyncio.iscoroutine(result):
                result = await result
            return result
        except Exception as e:
            logger.error(f"Error forwarding event {event.get('type')}: {e}")
            return None

    def of_type(self, event_type: str) -> List[Dict[str, Any]]:
        return [e for e in self.events if e.get("type") == event_type]


async def emit_status(
    emitter: Optional[EventEmitter],
    description: str,
    *,
    level: str = "info",
    done: bool = False,
):
    """Emit a status message to the client"""
    if emitter is None:
        return
    try:
        await emitter(
            {
                "type": "status",
                "data": {
                    "status": "complete" if done else "in_progress",
                    "level": level,
                    "description": description,
                    "done": done,
                },
            }
        )
    except Exception as e:
        logger.error(f"Error emitting status: {e}")


async def emit_message(emitter: Optional[EventEmitter], content: str):
    """Emit a message to the client"""
    if emitter is None:
        return
    try:
        await emitter({"type": "message", "data": {"content": content}})
    except Exception as e:
        logger.error(f"Error emitting message: {e}")
