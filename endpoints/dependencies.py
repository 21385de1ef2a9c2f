from fastapi import HTTPException, Request

from service.code_registry_service import CodeRegistry
from service.connection_manager_service import ConnectionManager
from service.exceptions import (AccessCodeError, CodeNotFoundError, CodeRevokedError, MalformedInputError,
                                SessionNotFoundError, SessionRejectedError, StorageUnavailableError)
from service.session_service import SessionService


def get_registry(request: Request) -> CodeRegistry:
    return request.app.state.registry


def get_sessions(request: Request) -> SessionService:
    return request.app.state.sessions


def get_connection_manager(request: Request) -> ConnectionManager:
    return request.app.state.manager


def to_http_exception(error: AccessCodeError) -> HTTPException:
    if isinstance(error, (CodeNotFoundError, SessionNotFoundError)):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, CodeRevokedError):
        return HTTPException(status_code=403, detail=str(error))
    if isinstance(error, SessionRejectedError):
        status = {"not_found": 404, "revoked": 403}.get(error.reason, 503)
        return HTTPException(status_code=status, detail={"reason": error.reason, "message": str(error)})
    if isinstance(error, StorageUnavailableError):
        return HTTPException(status_code=503, detail=str(error))
    if isinstance(error, MalformedInputError):
        return HTTPException(status_code=422, detail=str(error))
    return HTTPException(status_code=500, detail=str(error))
