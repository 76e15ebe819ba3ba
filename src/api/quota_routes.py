"""
Quota snapshot API routes
"""

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, ConfigDict
from typing import Dict, List, Optional
from datetime import datetime, timezone
import logging

from telemetry.models import QuotaGroup, QuotaModel, QuotaSnapshot, quota_level

logger = logging.getLogger(__name__)

# Response models
class ModelQuotaResponse(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    model_id: str
    label: str
    display_name: str
    remaining_percentage: Optional[float]
    remaining_fraction: Optional[float]
    is_exhausted: bool
    reset_time: datetime
    reset_time_valid: bool
    seconds_until_reset: float
    level: str
    is_recommended: Optional[bool] = None
    supports_images: Optional[bool] = None
    tag_title: Optional[str] = None

class GroupQuotaResponse(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    group_id: str
    name: str
    remaining_percentage: float
    reset_time: Optional[datetime]
    is_exhausted: bool
    level: str
    model_ids: List[str]

class PromptCreditsResponse(BaseModel):
    available: float
    monthly: float
    used_percentage: float
    remaining_percentage: float

class UserInfoResponse(BaseModel):
    name: str
    email: str
    plan_name: str
    tier: str
    tier_id: str
    tier_description: str
    monthly_prompt_credits: float
    monthly_flow_credits: float
    available_prompt_credits: float
    available_flow_credits: float
    capabilities: Dict[str, bool]

class SnapshotResponse(BaseModel):
    timestamp: datetime
    connected: bool
    source: str
    error: Optional[str] = None
    models: List[ModelQuotaResponse]
    all_model_ids: List[str]
    groups: Optional[List[GroupQuotaResponse]] = None
    prompt_credits: Optional[PromptCreditsResponse] = None
    user_info: Optional[UserInfoResponse] = None


def _model_response(model: QuotaModel, now: datetime, warning: float, critical: float) -> ModelQuotaResponse:
    return ModelQuotaResponse(
        model_id=model.model_id,
        label=model.label,
        display_name=model.display_name or model.label,
        remaining_percentage=model.remaining_percentage,
        remaining_fraction=model.remaining_fraction,
        is_exhausted=model.is_exhausted,
        reset_time=model.reset_time,
        reset_time_valid=model.reset_time_valid,
        seconds_until_reset=model.seconds_until_reset(now),
        level=quota_level(model.remaining_percentage, warning, critical).value,
        is_recommended=model.is_recommended,
        supports_images=model.supports_images,
        tag_title=model.tag_title,
    )

def _group_response(group: QuotaGroup, warning: float, critical: float) -> GroupQuotaResponse:
    return GroupQuotaResponse(
        group_id=group.group_id,
        name=group.name,
        remaining_percentage=group.aggregate_remaining,
        reset_time=group.reset_time,
        is_exhausted=group.is_exhausted,
        level=quota_level(group.aggregate_remaining, warning, critical).value,
        model_ids=[m.model_id for m in group.members],
    )

def snapshot_to_response(snapshot: QuotaSnapshot, settings) -> SnapshotResponse:
    """Convert a snapshot into its API representation"""
    now = datetime.now(timezone.utc)
    warning, critical = settings.warning_threshold, settings.critical_threshold

    groups = None
    if snapshot.groups is not None:
        groups = [_group_response(g, warning, critical) for g in snapshot.groups]

    credits = snapshot.prompt_credits
    user = snapshot.user_info
    return SnapshotResponse(
        timestamp=snapshot.timestamp,
        connected=snapshot.connected,
        source=snapshot.source,
        error=snapshot.error,
        models=[_model_response(m, now, warning, critical) for m in snapshot.models],
        all_model_ids=[m.model_id for m in snapshot.all_models],
        groups=groups,
        prompt_credits=PromptCreditsResponse(**vars(credits)) if credits else None,
        user_info=UserInfoResponse(**vars(user)) if user else None,
    )


def create_quota_routes(server):
    """Create quota snapshot routes"""
    router = APIRouter(prefix="/api/quota", tags=["quota"])

    @router.get("/snapshot", response_model=SnapshotResponse)
    async def get_snapshot():
        """Latest published snapshot (offline snapshot when nothing was synced yet)"""
        return snapshot_to_response(server.get_snapshot(), server.settings_store.get_settings())

    @router.post("/refresh", response_model=SnapshotResponse)
    async def refresh_snapshot():
        """Sync with the language server now"""
        try:
            snapshot = await server.refresh()
            return snapshot_to_response(snapshot, server.settings_store.get_settings())
        except Exception as e:
            logger.error(f"Error refreshing quota: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @router.post("/reprocess", response_model=SnapshotResponse)
    async def reprocess_snapshot():
        """Re-derive the snapshot from the cached response under current settings"""
        try:
            snapshot = await server.reprocess()
            return snapshot_to_response(snapshot, server.settings_store.get_settings())
        except Exception as e:
            logger.error(f"Error reprocessing quota: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    return router
