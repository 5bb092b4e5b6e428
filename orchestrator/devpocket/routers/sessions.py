"""
Sessions Router

WebSocket entry point for environment terminals and log streams.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, WebSocket

from ..services.orchestration.context import OrchestratorContext, get_orchestrator_context
from ..services.session_router import SessionRouter

logger = logging.getLogger(__name__)
router = APIRouter()


@router.websocket("/ws/{path:path}")
async def environment_session(
    websocket: WebSocket,
    path: str,
    token: Optional[str] = Query(None),
    context: OrchestratorContext = Depends(get_orchestrator_context),
):
    """/ws/terminal/<environment id>?token=... or /ws/logs/<environment id>?token=..."""
    await SessionRouter(context).handle(websocket, path, token)
