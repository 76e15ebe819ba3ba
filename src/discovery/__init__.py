"""
Discovery module for language server process discovery
"""

from .manager import ProcessDiscovery, CommandResult, run_shell_command
from .models import ConnectionCredentials, ProcessCandidate, ScanDiagnostics
from .platform_probe import PlatformProbe, WindowsProbe, MacProbe, LinuxProbe, select_probe

__all__ = ['ProcessDiscovery', 'CommandResult', 'run_shell_command', 'ConnectionCredentials',
           'ProcessCandidate', 'ScanDiagnostics', 'PlatformProbe', 'WindowsProbe', 'MacProbe',
           'LinuxProbe', 'select_probe']
