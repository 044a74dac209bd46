from fastapi import status
from fastapi.responses import JSONResponse

from app.services.result import Result

ERROR_STATUS = {
    "case_not_found": status.HTTP_404_NOT_FOUND,
    "pendency_not_found": status.HTTP_404_NOT_FOUND,
    "punch_not_found": status.HTTP_404_NOT_FOUND,
    "instance_not_found": status.HTTP_404_NOT_FOUND,
    "not_presence_case": status.HTTP_400_BAD_REQUEST,
    "presence_disabled": status.HTTP_403_FORBIDDEN,
    "whatsapp_clocking_disabled": status.HTTP_403_FORBIDDEN,
    "already_exited": status.HTTP_409_CONFLICT,
    "invalid_sequence": status.HTTP_409_CONFLICT,
    "day_closed": status.HTTP_409_CONFLICT,
    "already_closed": status.HTTP_409_CONFLICT,
    "blocked_pending_justification": status.HTTP_409_CONFLICT,
    "no_open_pendency": status.HTTP_409_CONFLICT,
    "pendency_not_open": status.HTTP_409_CONFLICT,
    "invalid_state": status.HTTP_409_CONFLICT,
}


def failure_response(result: Result) -> JSONResponse:
    """Business refusal as ``{"ok": false, "error": code, ...}``; unknown codes are 422."""
    code = ERROR_STATUS.get(result.error_code, status.HTTP_422_UNPROCESSABLE_ENTITY)
    return JSONResponse(status_code=code, content=result.to_error_body())
