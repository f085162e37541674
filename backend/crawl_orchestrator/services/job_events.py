import asyncio
import logging
from typing import Any

logger = logging.getLogger(__name__)

ALL_TARGETS = "*"

# Registry: target_url (or "*") -> list of subscriber queues
_subscribers: dict[str, list[asyncio.Queue]] = {}


def subscribe(target_url: str = ALL_TARGETS) -> asyncio.Queue:
    queue: asyncio.Queue = asyncio.Queue(maxsize=1000)
    _subscribers.setdefault(target_url, []).append(queue)
    return queue


def unsubscribe(target_url: str, queue: asyncio.Queue):
    if target_url in _subscribers:
        try:
            _subscribers[target_url].remove(queue)
        except ValueError:
            pass
        if not _subscribers[target_url]:
            del _subscribers[target_url]


def publish(event: dict[str, Any]):
    keys = (event.get("target_url"), ALL_TARGETS)
    for key in keys:
        for queue in _subscribers.get(key, []):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                # Drop the oldest event so slow readers see the newest.
                try:
                    queue.get_nowait()
                    queue.put_nowait(event)
                except asyncio.QueueEmpty:
                    pass
