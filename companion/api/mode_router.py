"""System mode API Router."""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from ..core.system_mode import SystemMode
from .dependencies import get_mode_controller

logger = logging.getLogger("companion.api.mode")

router = APIRouter(prefix="/mode", tags=["mode"])


class ModeUpdate(BaseModel):
    mode: SystemMode
    reason: Optional[str] = None


def _describe(controller) -> Dict[str, Any]:
    return {"mode": controller.get_mode().value, "advisory": controller.advisory()}


@router.get("")
async def get_mode(controller=Depends(get_mode_controller)) -> Dict[str, Any]:
    return _describe(controller)


@router.put("")
async def put_mode(update: ModeUpdate, controller=Depends(get_mode_controller)) -> Dict[str, Any]:
    previous = controller.set_mode(update.mode, update.reason)
    logger.info(f"Mode set via API: {previous.value} → {update.mode.value}")
    return {**_describe(controller), "previous": previous.value}
