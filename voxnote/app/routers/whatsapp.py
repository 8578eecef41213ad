# voxnote/app/routers/whatsapp.py
"""
Connection routes: status, pairing code, disconnect.
"""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from voxnote.app.deps import CurrentUser, get_current_user, get_session_manager
from voxnote.app.domain.errors import SessionError
from voxnote.app.services.session_manager import SessionManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/whatsapp", tags=["WhatsApp"])


class ConnectionStatusResponse(BaseModel):
    connected: bool


class PairingResponse(BaseModel):
    status: str = Field(..., description="connected, pending or initializing")
    qr: Optional[str] = Field(None, description="PNG data URL of the pairing QR code")
    message: Optional[str] = None


class DisconnectResponse(BaseModel):
    success: bool


@router.get("/status", response_model=ConnectionStatusResponse)
async def get_status(
    user: CurrentUser = Depends(get_current_user),
    sessions: SessionManager = Depends(get_session_manager),
) -> ConnectionStatusResponse:
    return ConnectionStatusResponse(**sessions.get_connection_status(user.id))


@router.get("/qr", response_model=PairingResponse, response_model_exclude_none=True)
async def get_pairing_code(
    user: CurrentUser = Depends(get_current_user),
    sessions: SessionManager = Depends(get_session_manager),
) -> PairingResponse:
    try:
        result = await sessions.request_pairing_artifact(user.id)
    except SessionError as error:
        logger.warning("Pairing failed: user=%s, error=%s", user.id, error)
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(error))
    except Exception:
        logger.exception("Unexpected pairing error: user=%s", user.id)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Pairing failed")

    return PairingResponse(**result.to_dict())


@router.post("/disconnect", response_model=DisconnectResponse)
async def disconnect(
    user: CurrentUser = Depends(get_current_user),
    sessions: SessionManager = Depends(get_session_manager),
) -> DisconnectResponse:
    try:
        return DisconnectResponse(**await sessions.disconnect(user.id))
    except SessionError as error:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(error))
