"""Translate FlowOutcome values into HTTP responses.

Flow steps that move the browser on answer with 303 See Other; steps
that stay on the page answer with the standard {"data": ...} envelope.
Either way the cookies the outcome asks for are applied here, so the
services never touch responses.
"""

from typing import Any

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.responses import Response

from barfly.core.auth import clear_handoff_cookie, set_handoff_cookie, set_session_cookie
from barfly.core.responses import DataResponse
from barfly.services.verification_service import FlowOutcome


def outcome_data(outcome: FlowOutcome) -> dict[str, Any]:
    """Public view of an outcome. Never includes the issued code."""
    return {
        "state": outcome.state.value,
        "type": outcome.type.value,
        "target": outcome.target,
        "redirect_to": outcome.redirect_to,
        **outcome.data,
    }


def apply_outcome_cookies(response: Response, outcome: FlowOutcome) -> None:
    """Set or clear the session and handoff cookies an outcome asks for."""
    if outcome.session is not None:
        set_session_cookie(
            response,
            session_id=outcome.session.id,
            user_id=outcome.session.user_id,
            expires_at=outcome.session.expires_at,
            remember=outcome.remember,
        )
    if outcome.handoff is not None:
        handoff_id, expires_at = outcome.handoff
        set_handoff_cookie(response, handoff_id=handoff_id, expires_at=expires_at)
    elif outcome.clear_handoff:
        clear_handoff_cookie(response)


def outcome_response(outcome: FlowOutcome, *, redirect: bool = True) -> Response:
    """Build the response for a flow step.

    Args:
        outcome: Result of the flow step.
        redirect: Answer with 303 when the outcome names a next URL.

    Returns:
        RedirectResponse or JSONResponse with cookies applied.
    """
    response: Response
    if redirect and outcome.redirect_to:
        response = RedirectResponse(url=outcome.redirect_to, status_code=303)
    else:
        response = JSONResponse(
            content=jsonable_encoder(DataResponse(data=outcome_data(outcome)))
        )
    apply_outcome_cookies(response, outcome)
    return response
