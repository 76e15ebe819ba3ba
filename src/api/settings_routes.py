"""
Display settings API routes
"""

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, ConfigDict
from typing import Dict, List
import logging

logger = logging.getLogger(__name__)

# Request models
class GroupMappingsRequest(BaseModel):
    mappings: Dict[str, str]

class VisibleModelsRequest(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    model_ids: List[str]

class GroupMappingsResponse(BaseModel):
    grouping_enabled: bool
    mappings: Dict[str, str]


def create_settings_routes(server):
    """Create display settings routes"""
    router = APIRouter(prefix="/api/settings", tags=["settings"])

    @router.get("/group-mappings", response_model=GroupMappingsResponse)
    async def get_group_mappings():
        settings = server.settings_store.get_settings()
        return GroupMappingsResponse(grouping_enabled=settings.grouping_enabled, mappings=settings.group_mappings)

    @router.put("/group-mappings", response_model=GroupMappingsResponse)
    async def put_group_mappings(request: GroupMappingsRequest):
        """Replace the saved model to group mapping"""
        try:
            settings = await server.set_group_mappings(request.mappings)
            return GroupMappingsResponse(grouping_enabled=settings.grouping_enabled, mappings=settings.group_mappings)
        except (KeyError, ValueError) as e:
            raise HTTPException(status_code=400, detail=str(e))
        except Exception as e:
            logger.error(f"Error saving group mappings: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @router.post("/auto-group", response_model=GroupMappingsResponse)
    async def auto_group():
        """Recalculate group mappings from the latest quota signatures"""
        try:
            mappings = await server.auto_group()
            settings = server.settings_store.get_settings()
            return GroupMappingsResponse(grouping_enabled=settings.grouping_enabled, mappings=mappings)
        except Exception as e:
            logger.error(f"Error auto-grouping models: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @router.put("/visible-models")
    async def put_visible_models(request: VisibleModelsRequest):
        """Replace the visible model allow-list (empty shows everything)"""
        try:
            settings = await server.set_visible_models(request.model_ids)
            return {"visible_models": settings.visible_models}
        except (KeyError, ValueError) as e:
            raise HTTPException(status_code=400, detail=str(e))
        except Exception as e:
            logger.error(f"Error saving visible models: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    return router
