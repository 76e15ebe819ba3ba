"""
Main FastAPI application setup
Local HTTP API exposing the quota snapshot, diagnostics and display settings
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from typing import Dict
import logging

# Import modular route factories
from .quota_routes import create_quota_routes
from .system_routes import create_system_routes
from .settings_routes import create_settings_routes

logger = logging.getLogger(__name__)


class CockpitAPI:
    """Local HTTP API for the presentation collaborator"""

    def __init__(self, server, config: Dict):
        self.server = server
        self.config = config
        self.app = FastAPI(
            title="Quota Cockpit",
            description="Local API for language server quota snapshots, diagnostics and grouping settings",
            version="1.0.0"
        )

        cors_origins = config.get('api', {}).get('cors_origins', [])
        if cors_origins:
            self.app.add_middleware(
                CORSMiddleware,
                allow_origins=cors_origins,
                allow_methods=["*"],
                allow_headers=["*"],
            )

        self._setup_routes()

    def _setup_routes(self):
        """Setup FastAPI routes using modular approach"""
        self.app.include_router(create_quota_routes(self.server))
        self.app.include_router(create_system_routes(self.server))
        self.app.include_router(create_settings_routes(self.server))
