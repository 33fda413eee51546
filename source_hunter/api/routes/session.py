"""Session state endpoints.

- GET /session: Current session (API key masked)
- PUT /session: Replace the session value
- DELETE /session: Clear the session
"""

from typing import Any, Dict

from fastapi import APIRouter, Request

from source_hunter.api.models import SessionUpdate
from source_hunter.api.responses import wrap_response
from source_hunter.backend.utils.logging_config import get_logger
from source_hunter.models.comment_models import SessionState

router = APIRouter(prefix="/session", tags=["session"])
logger = get_logger(__name__)


def _public(state: SessionState) -> Dict[str, Any]:
    """Session as returned to clients: the key itself never leaves the server."""
    return {
        "has_api_key": bool(state.api_key),
        "active_tab": state.active_tab,
        "container_id": state.container_id,
    }


@router.get("")
async def get_session(request: Request):
    return wrap_response(_public(request.app.state.session.read()))


@router.put("")
async def put_session(request: Request, body: SessionUpdate):
    state = request.app.state.session.init(SessionState(
        api_key=body.api_key,
        active_tab=body.active_tab,
        container_id=body.container_id
    ))
    return wrap_response(_public(state))


@router.delete("")
async def clear_session(request: Request):
    request.app.state.session.clear()
    return wrap_response(_public(SessionState()))
