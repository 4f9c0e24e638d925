# notify.py
import asyncio
import json
import logging
import os
from typing import Any, Dict, Set

import httpx
from fastapi import WebSocket

WEBHOOK_URL = os.getenv("NOTIFY_WEBHOOK_URL")     # optional, receives terminal session events
WEBHOOK_STAGES = {"REGISTERED", "REGISTRATION_FAILED", "CANCELLED", "DEMO_FALLBACK"}

logger = logging.getLogger(__name__)


class ConnectionManager:
    """WebSocket subscribers grouped by the tx_ref they watch."""

    def __init__(self) -> None:
        self.subscribers: Dict[str, Set[WebSocket]] = {}
        self._lock = asyncio.Lock()

    async def connect(self, tx_ref: str, websocket: WebSocket):
        await websocket.accept()
        async with self._lock:
            self.subscribers.setdefault(tx_ref, set()).add(websocket)

    async def disconnect(self, tx_ref: str, websocket: WebSocket) -> int:
        """Drop one subscriber; returns how many are left for tx_ref."""
        async with self._lock:
            subs = self.subscribers.get(tx_ref)
            if not subs:
                return 0
            subs.discard(websocket)
            if not subs:
                del self.subscribers[tx_ref]
                return 0
            return len(subs)

    async def broadcast(self, tx_ref: str, message: Dict[str, Any]):
        # prune closed sockets
        dead = []
        for ws in list(self.subscribers.get(tx_ref, ())):
            try:
                await ws.send_text(json.dumps(message, default=str))
            except Exception as e:
                logger.debug("Dropping subscriber for %s: %s", tx_ref, e)
                dead.append(ws)
        for ws in dead:
            await self.disconnect(tx_ref, ws)

manager = ConnectionManager()

async def notify_webhook(event: dict) -> None:
    if not WEBHOOK_URL:
        return
    try:
        async with httpx.AsyncClient(timeout=10) as client:
            await client.post(WEBHOOK_URL, json=event)
    except httpx.HTTPError as e:
        # session outcome does not depend on delivery
        logger.warning("Webhook delivery failed for %s: %s", event.get("stage"), e)

async def emit(stage: str, tx_ref: str, payload: Dict[str, Any] | None = None):
    data = {"type": "checkout_event", "stage": stage, "tx_ref": tx_ref}
    if payload:
        data.update(payload)
    await manager.broadcast(tx_ref, data)
    if stage in WEBHOOK_STAGES or (stage == "STATUS" and data.get("status") == "failed"):
        await notify_webhook(data)
