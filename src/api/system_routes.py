"""
System health and monitoring API routes
"""

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel
from typing import Any, Dict, List, Optional
from datetime import datetime, timezone
import logging

logger = logging.getLogger(__name__)

# Response models
class SystemStatusResponse(BaseModel):
    state: str
    running: bool
    connected: bool
    generation: int
    port: Optional[int]
    verified: Optional[bool]
    has_successful_sync: bool
    refresh_interval_seconds: float
    cache_age_seconds: Optional[float]
    consecutive_failures: int
    rediscovery_in_progress: bool
    credentials: Optional[Dict[str, Any]] = None
    last_error: Optional[str] = None

class DiagnosticsResponse(BaseModel):
    method: str
    target_process: str
    platform: str
    attempts: int
    candidates_found: int
    probed_ports: List[int]
    verified_port: Optional[int]
    verified: bool
    guidance: List[str]

class NotificationResponse(BaseModel):
    level: str
    kind: str
    message: str
    timestamp: datetime
    guidance: List[str]
    details: Dict[str, Any]

def create_system_routes(server):
    """Create system monitoring routes"""
    router = APIRouter(prefix="/api/system", tags=["system"])

    @router.get("/status", response_model=SystemStatusResponse)
    async def get_system_status():
        """Engine state, connection and last error"""
        return SystemStatusResponse(**server.status())

    @router.get("/diagnostics", response_model=DiagnosticsResponse)
    async def get_diagnostics():
        """Diagnostics of the last discovery run"""
        diagnostics = server.discovery.last_diagnostics
        if diagnostics is None:
            raise HTTPException(status_code=404, detail="No discovery has run yet")
        return DiagnosticsResponse(**diagnostics.to_dict(), guidance=server.discovery.error_guidance())

    @router.get("/notifications", response_model=List[NotificationResponse])
    async def get_notifications():
        """Recent user-facing notifications, oldest first"""
        return [NotificationResponse(**n.to_dict()) for n in server.reporter.get_notifications()]

    @router.post("/rediscover")
    async def trigger_rediscovery():
        """Trigger a rediscovery of the language server"""
        started = server.schedule_rediscovery()
        return {
            "message": "Rediscovery initiated" if started else "Rediscovery already in progress",
            "started": started,
            "timestamp": datetime.now(timezone.utc)
        }

    @router.get("/health")
    async def system_health():
        """System health check"""
        status = server.status()
        return {
            "status": "healthy" if status['connected'] and status['has_successful_sync'] else "degraded",
            "state": status['state'],
            "last_error": status['last_error'],
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

    return router
