"""WebSocket connection manager for market event broadcasts."""

import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from fastapi import WebSocket
from pydantic import BaseModel

from energy_market.core.logger.logger import logger


class MarketEvent:
    NEW_LISTING = "new_listing"
    LISTING_UPDATED = "listing_updated"
    NEW_TRANSACTION = "new_transaction"
    TRANSACTION_COMPLETED = "transaction_completed"


@dataclass
class MarketClient:
    websocket: WebSocket
    wallet_address: Optional[str] = None


def _to_payload(data: Any) -> Any:
    if isinstance(data, BaseModel):
        return data.model_dump(mode="json", by_alias=True)
    return data


class ConnectionManager:
    """Manages WebSocket connections and pushes ledger events to them."""

    def __init__(self):
        self.active_connections: List[MarketClient] = []

    async def connect(self, websocket: WebSocket, wallet_address: Optional[str] = None) -> MarketClient:
        """
        Accept a new WebSocket connection.

        Args:
            websocket: The WebSocket connection
            wallet_address: Wallet of the signed-in session, if any
        """
        await websocket.accept()
        client = MarketClient(websocket=websocket, wallet_address=wallet_address)
        self.active_connections.append(client)

        await websocket.send_json(self._envelope("connected", {"authenticated": wallet_address is not None}))
        logger.info("Market WebSocket client connected", extra={"wallet_address": wallet_address})
        return client

    def disconnect(self, websocket: WebSocket):
        for client in list(self.active_connections):
            if client.websocket is websocket:
                self.active_connections.remove(client)
                logger.info("Market WebSocket client disconnected")

    @staticmethod
    def _envelope(event: str, data: Any) -> Dict[str, Any]:
        return {"event": event, "data": _to_payload(data), "timestamp": int(time.time() * 1000)}

    async def _send(self, clients: List[MarketClient], message: Dict[str, Any]) -> None:
        disconnected = []
        for client in clients:
            try:
                await client.websocket.send_json(message)
            except Exception as e:
                logger.debug("WebSocket send failed", extra={"error": str(e)})
                disconnected.append(client.websocket)

        for websocket in disconnected:
            self.disconnect(websocket)

    async def broadcast(self, event: str, data: Any):
        """Send an event to every connected client."""
        await self._send(list(self.active_connections), self._envelope(event, data))

    async def send_to_wallet(self, wallet_address: str, event: str, data: Any):
        wallet = wallet_address.lower()
        targets = [c for c in self.active_connections if c.wallet_address and c.wallet_address.lower() == wallet]
        if targets:
            await self._send(targets, self._envelope(event, data))

    async def notify_new_listing(self, listing):
        await self.broadcast(MarketEvent.NEW_LISTING, listing)

    async def notify_listing_updated(self, listing):
        await self.broadcast(MarketEvent.LISTING_UPDATED, listing)

    async def notify_transaction(self, transaction, buyer_wallet: str, seller_wallet: str):
        await self.broadcast(MarketEvent.NEW_TRANSACTION, transaction)

        payload = _to_payload(transaction)
        await self.send_to_wallet(buyer_wallet, MarketEvent.TRANSACTION_COMPLETED, {**payload, "type": "purchase"})
        await self.send_to_wallet(seller_wallet, MarketEvent.TRANSACTION_COMPLETED, {**payload, "type": "sale"})

    def get_connection_count(self) -> int:
        return len(self.active_connections)
