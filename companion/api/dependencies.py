"""
API Dependencies

FastAPI dependency functions that hand route handlers the services built
during lifespan startup (``app.state.services``).
"""

import logging
from typing import Any, Dict

from fastapi import HTTPException, Request

from ..conversation.types import IdentityKey

logger = logging.getLogger("companion.api.dependencies")


def get_services(request: Request) -> Dict[str, Any]:
    services = getattr(request.app.state, "services", None)
    if not services:
        logger.warning("Request received before services were initialized")
        raise HTTPException(status_code=503, detail="Service is starting up")
    return services


def get_service(request: Request, name: str) -> Any:
    service = get_services(request).get(name)
    if service is None:
        raise HTTPException(status_code=503, detail=f"{name} unavailable")
    return service


def get_conversation_service(request: Request):
    return get_service(request, "conversation")


def get_mode_controller(request: Request):
    return get_service(request, "mode_controller")


def get_config(request: Request):
    return get_service(request, "config")


def identity_from_path(synth_id: str, host_id: str) -> IdentityKey:
    if not synth_id.strip() or not host_id.strip():
        raise HTTPException(status_code=422, detail="synth_id and host_id must be non-empty")
    return IdentityKey(synth_id, host_id)
