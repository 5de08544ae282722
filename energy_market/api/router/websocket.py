"""WebSocket router for live market events."""

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from energy_market.core.logger.logger import logger

router = APIRouter()


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """
    Push-only market feed: new_listing, listing_updated and new_transaction
    for everyone, transaction_completed for the signed-in wallet involved.
    """
    container = websocket.app.state.container
    manager = container.ws_manager

    wallet_address = None
    session_id = websocket.cookies.get(container.settings.SESSION_COOKIE_NAME)
    if session_id:
        session = await container.session_store.get_session(session_id)
        if session is not None and session.is_authenticated:
            wallet_address = session.wallet_address

    await manager.connect(websocket, wallet_address)

    try:
        while True:
            # Client messages are not part of the protocol
            data = await websocket.receive_text()
            logger.debug("Ignored WebSocket message", extra={"size": len(data)})

    except WebSocketDisconnect:
        manager.disconnect(websocket)
    except Exception as e:
        logger.error("WebSocket error", extra={"error": str(e)})
        manager.disconnect(websocket)
