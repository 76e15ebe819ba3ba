"""
Services module: server orchestration and user-facing status reporting
"""

from .reporter import StatusReporter, Notification

__all__ = ['StatusReporter', 'Notification']
