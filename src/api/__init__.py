"""
API module for quota snapshots, system status and display settings
"""

from .main_api import CockpitAPI
from .quota_routes import create_quota_routes, snapshot_to_response
from .system_routes import create_system_routes
from .settings_routes import create_settings_routes

__all__ = ['CockpitAPI', 'create_quota_routes', 'snapshot_to_response', 'create_system_routes',
           'create_settings_routes']
