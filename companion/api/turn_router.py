"""
Turn API Router

One conversational turn per request, plus cancellation of an in-flight turn
and a read-only view of the state kept for an identity.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from ..conversation.types import IdentityKey, TurnMeta
from ..conversation.ux_policy import build_ux_policy
from ..utils.datetime import isoformat_epoch
from .dependencies import get_config, get_conversation_service, get_services, identity_from_path

logger = logging.getLogger("companion.api.turn")

router = APIRouter(tags=["turn"])


class TurnRequest(BaseModel):
    synth_id: str = Field(..., min_length=1)
    host_id: str = Field(..., min_length=1)
    message: str = Field(..., min_length=1)
    platform: str = "desktop"
    conversation_id: Optional[str] = None
    presence_mode: bool = False
    allow_local_fallback: bool = True
    demo_mode: Optional[bool] = None
    exhaustion_mode: Optional[bool] = None


class OutcomeModel(BaseModel):
    kind: str
    engine_used: str
    failure_class: Optional[str] = None


class TurnResponse(BaseModel):
    text: str
    outcome: OutcomeModel
    committed: bool
    interrupted: bool
    bypassed: bool = False
    tone_applied: Optional[str] = None
    pending_tool_intents: List[str] = []
    guardrails: Optional[Dict[str, Any]] = None
    ambient: List[str] = []


@router.post("/turn", response_model=TurnResponse)
async def post_turn(
    request: TurnRequest,
    conversation=Depends(get_conversation_service),
    config=Depends(get_config),
) -> Dict[str, Any]:
    """Run one turn and return the finalized reply."""
    identity = IdentityKey(request.synth_id, request.host_id)
    meta = TurnMeta(
        platform=request.platform,
        ux_policy=build_ux_policy(request.platform, request.message, config.shaping_tuning),
        conversation_id=request.conversation_id,
        presence_mode=request.presence_mode,
        allow_local_fallback=request.allow_local_fallback,
        demo_mode=config.demo_mode if request.demo_mode is None else request.demo_mode,
        exhaustion_mode=config.exhaustion_mode if request.exhaustion_mode is None else request.exhaustion_mode,
    )

    reply = await conversation.handle_message(identity, request.message, meta)
    payload = reply.to_dict()
    payload["ambient"] = conversation.drain_ambient(identity)
    return payload


@router.post("/turn/{synth_id}/{host_id}/cancel")
async def cancel_turn(synth_id: str, host_id: str, conversation=Depends(get_conversation_service)) -> Dict[str, Any]:
    identity = identity_from_path(synth_id, host_id)
    cancelled = conversation.cancel(identity, reason="cancelled by client")
    return {"identity": identity.key, "cancelled": cancelled}


@router.get("/state/{synth_id}/{host_id}")
async def get_state(synth_id: str, host_id: str, services: Dict[str, Any] = Depends(get_services)) -> Dict[str, Any]:
    """
    Snapshot of everything stored for an identity.

    Returns:
        emotional snapshot and climate, bond, synchrony, recent sentiment trend
        and the number of remembered moments
    """
    identity = identity_from_path(synth_id, host_id)
    try:
        emotions = services["emotions"]
        snapshot = await emotions.get_snapshot(identity)
        climate = await emotions.get_climate(identity)
        bond = await services["bonds"].get(identity)
        synchrony = await services["synchrony"].get(identity)
        trend = await services["trends"].points(identity, limit=10)
        memories = await services["memory_log"].all(identity)
    except Exception as e:
        logger.error(f"Failed to read state for {identity}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to read state")

    last_active = services["conversation"].last_activity.get(identity)
    return {
        "identity": identity.key,
        "emotional_snapshot": snapshot.to_dict() if snapshot else None,
        "emotional_climate": climate.to_dict(),
        "bond": bond.to_dict(),
        "synchrony": synchrony,
        "sentiment_trend": [p.to_dict() for p in trend],
        "memory_count": len(memories),
        "last_active": isoformat_epoch(last_active) if last_active is not None else None,
    }
