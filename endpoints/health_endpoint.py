from fastapi import APIRouter, Depends

from endpoints.dependencies import get_connection_manager, get_registry
from models.code_models import CodeStatus
from service.code_registry_service import CodeRegistry
from service.connection_manager_service import ConnectionManager

router = APIRouter(tags=["Health"])


@router.get("/health")
async def health_check(registry: CodeRegistry = Depends(get_registry),
                       manager: ConnectionManager = Depends(get_connection_manager)):
    return {
        "status": "healthy",
        "codes": len(registry),
        "active_codes": len(registry.list_codes(CodeStatus.ACTIVE)),
        "active_rooms": len(manager.active_connections),
        "total_connections": manager.connection_count(),
    }
