"""
Per-platform process and port probes
Each probe pairs a shell command with the parser for its output
"""

import json
import logging
import platform
import re
from typing import List, Optional, Tuple

from .models import ProcessCandidate

logger = logging.getLogger(__name__)

PROCESS_NAMES = {
    'windows': 'language_server_windows_x64.exe',
    'darwin_arm': 'language_server_macos_arm',
    'darwin_x64': 'language_server_macos',
    'linux': 'language_server_linux',
}

APP_DATA_DIR_FLAG = re.compile(r'--app_data_dir\s+antigravity\b', re.IGNORECASE)
EXTENSION_PORT_ARG = re.compile(r'--extension_server_port[=\s]+(\d+)')
CSRF_TOKEN_ARG = re.compile(r'--csrf_token[=\s]+([a-zA-Z0-9\-]+)')

# Listening socket row formats
NETSTAT_WINDOWS_ROW = re.compile(
    r'TCP\s+(?:127\.0\.0\.1|0\.0\.0\.0|\[::1?\]):(\d+)\s+\S+\s+LISTENING\s+(\d+)', re.IGNORECASE)
SS_ROW = re.compile(r'LISTEN\s+\d+\s+\d+\s+(?:\*|[\d.]+|\[[\da-fA-F:]*\](?:%\S+)?):(\d+)\b')
SS_PID = re.compile(r'pid=(\d+)')
LSOF_ROW = re.compile(r'^\S+\s+(\d+)\s.*?TCP\s+(?:\*|[\d.]+|\[[\da-fA-F:]*\]):(\d+)\s+\(LISTEN\)')
NETSTAT_LINUX_ROW = re.compile(
    r'^tcp6?\s+\d+\s+\d+\s+(?:[\d.]+|::1?|:::|\[[\da-fA-F:]*\]):(\d+)\s+\S+\s+LISTEN\s+(\d+)/')


def is_target_process(command_line: str) -> bool:
    """True if the command line belongs to the target IDE (not another product sharing the binary name)"""
    if APP_DATA_DIR_FLAG.search(command_line):
        return True
    lower_cmd = command_line.lower()
    return '\\antigravity\\' in lower_cmd or '/antigravity/' in lower_cmd


def candidate_from_command_line(pid: int, command_line: str) -> Optional[ProcessCandidate]:
    """Extract credentials from a command line; None when it is not usable"""
    if not is_target_process(command_line):
        logger.debug(f"[PROBE] Skipping PID {pid}: not an Antigravity process")
        return None

    token_match = CSRF_TOKEN_ARG.search(command_line)
    if not token_match:
        logger.warning(f"[PROBE] PID {pid}: could not extract CSRF token from command line")
        return None

    port_match = EXTENSION_PORT_ARG.search(command_line)
    extension_port = int(port_match.group(1)) if port_match else 0
    return ProcessCandidate(pid=pid, extension_port=extension_port,
                            csrf_token=token_match.group(1), command_line=command_line)


def parse_listening_ports(output: str, pid: Optional[int] = None) -> List[int]:
    """
    Parse listening ports from netstat (Windows/Linux), ss or lsof output.
    Rows owned by another pid are skipped when pid is given.
    Returns de-duplicated ports in ascending order.
    """
    ports = set()
    for line in output.splitlines():
        line = line.strip()
        if not line or 'LISTEN' not in line.upper():
            continue

        owner = None
        port = None

        match = NETSTAT_WINDOWS_ROW.search(line)
        if match:
            port, owner = int(match.group(1)), int(match.group(2))
        else:
            match = SS_ROW.search(line)
            if match:
                port = int(match.group(1))
                pid_match = SS_PID.search(line)
                owner = int(pid_match.group(1)) if pid_match else None
            else:
                match = LSOF_ROW.search(line)
                if match:
                    owner, port = int(match.group(1)), int(match.group(2))
                else:
                    match = NETSTAT_LINUX_ROW.search(line)
                    if match:
                        port, owner = int(match.group(1)), int(match.group(2))

        if port is None:
            continue
        if pid is not None and owner is not None and owner != pid:
            continue
        ports.add(port)

    result = sorted(ports)
    logger.debug(f"[PROBE] Parsed {len(result)} listening ports: {result}")
    return result


class PlatformProbe:
    """Capability set for listing candidate processes and their listening ports"""

    name = "generic"

    def list_processes_command(self, process_name: str) -> str:
        raise NotImplementedError

    def parse_candidates(self, output: str) -> List[ProcessCandidate]:
        raise NotImplementedError

    def list_ports_command(self, pid: int) -> str:
        raise NotImplementedError

    def parse_ports(self, output: str, pid: Optional[int] = None) -> List[int]:
        return parse_listening_ports(output, pid)

    def error_guidance(self) -> List[str]:
        """Requirements shown to the user when discovery fails"""
        return []


class WindowsProbe(PlatformProbe):
    """PowerShell CIM query with a legacy wmic listing as fallback"""

    name = "windows"

    def __init__(self):
        self.use_powershell = True

    def use_legacy_listing(self):
        """Switch to wmic, e.g. after PowerShell was blocked by execution policy"""
        if self.use_powershell:
            logger.warning("[PROBE] Switching process listing from PowerShell to wmic")
        self.use_powershell = False

    def list_processes_command(self, process_name: str) -> str:
        if self.use_powershell:
            return (
                'powershell -NoProfile -Command "Get-CimInstance Win32_Process '
                f'-Filter \\"name=\'{process_name}\'\\" | Select-Object ProcessId,CommandLine | ConvertTo-Json"'
            )
        return f'wmic process where "name=\'{process_name}\'" get ProcessId,CommandLine /format:list'

    def parse_candidates(self, output: str) -> List[ProcessCandidate]:
        text = output.strip()
        if not text:
            return []

        if text.startswith('{') or text.startswith('['):
            try:
                return self._parse_json(json.loads(text))
            except ValueError as e:
                logger.debug(f"[PROBE] JSON parse failed, trying key/value blocks: {e}")

        return self._parse_key_value_blocks(text)

    def _parse_json(self, data) -> List[ProcessCandidate]:
        entries = data if isinstance(data, list) else [data]
        candidates = []
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            pid = entry.get('ProcessId')
            command_line = entry.get('CommandLine') or ''
            if not pid or not command_line:
                continue
            candidate = candidate_from_command_line(int(pid), command_line)
            if candidate:
                candidates.append(candidate)

        logger.info(f"[PROBE] Found {len(entries)} language_server processes, {len(candidates)} belong to Antigravity")
        return candidates

    def _parse_key_value_blocks(self, text: str) -> List[ProcessCandidate]:
        candidates = []
        for block in re.split(r'\n\s*\n', text):
            pid_match = re.search(r'ProcessId=(\d+)', block)
            command_line_match = re.search(r'CommandLine=(.+)', block)
            if not pid_match or not command_line_match:
                continue
            candidate = candidate_from_command_line(int(pid_match.group(1)), command_line_match.group(1).strip())
            if candidate:
                candidates.append(candidate)

        logger.info(f"[PROBE] wmic: {len(candidates)} Antigravity candidates")
        return candidates

    def list_ports_command(self, pid: int) -> str:
        return f'netstat -ano | findstr "{pid}" | findstr "LISTENING"'

    def error_guidance(self) -> List[str]:
        return [
            'Antigravity is running',
            f"{PROCESS_NAMES['windows']} process is running",
            'The system has permission to run PowerShell (or wmic) and netstat commands',
            'If PowerShell is blocked, run: Set-ExecutionPolicy -Scope CurrentUser RemoteSigned',
            'If WMI is unavailable, make sure the "Windows Management Instrumentation" service is running',
        ]


class UnixProbe(PlatformProbe):
    """pgrep-based listing shared by macOS and Linux"""

    pgrep_flags = '-af'

    def list_processes_command(self, process_name: str) -> str:
        return f'pgrep {self.pgrep_flags} {process_name}'

    def parse_candidates(self, output: str) -> List[ProcessCandidate]:
        candidates = []
        lines = [line for line in output.splitlines() if line.strip()]
        for line in lines:
            parts = line.strip().split(None, 1)
            if len(parts) < 2 or not parts[0].isdigit():
                continue
            candidate = candidate_from_command_line(int(parts[0]), parts[1])
            if candidate:
                candidates.append(candidate)

        logger.info(f"[PROBE] {self.name}: {len(lines)} matching processes, {len(candidates)} usable candidates")
        return candidates

    def error_guidance(self) -> List[str]:
        return [
            'Antigravity is running',
            'pgrep is available on PATH',
            'lsof, ss or netstat is available to list listening ports',
        ]


class MacProbe(UnixProbe):
    name = "darwin"
    pgrep_flags = '-fl'

    def list_ports_command(self, pid: int) -> str:
        # lsof -p is unreliable without elevated permissions, so filter by the PID column instead
        return f'lsof -iTCP -sTCP:LISTEN -n -P 2>/dev/null | grep -E "^\\S+\\s+{pid}\\s"'


class LinuxProbe(UnixProbe):
    name = "linux"
    pgrep_flags = '-af'

    def list_ports_command(self, pid: int) -> str:
        return (
            f'ss -tlnp 2>/dev/null | grep "pid={pid}," '
            f'|| lsof -iTCP -sTCP:LISTEN -n -P 2>/dev/null | grep -E "^\\S+\\s+{pid}\\s" '
            f'|| netstat -tlnp 2>/dev/null | grep " {pid}/"'
        )


def select_probe(system: Optional[str] = None, machine: Optional[str] = None) -> Tuple[PlatformProbe, str]:
    """Pick the probe and target process name for the running platform"""
    system = (system or platform.system()).lower()
    machine = (machine or platform.machine()).lower()

    if system.startswith('win'):
        probe, target = WindowsProbe(), PROCESS_NAMES['windows']
    elif system == 'darwin':
        arm = machine in ('arm64', 'aarch64')
        probe, target = MacProbe(), PROCESS_NAMES['darwin_arm' if arm else 'darwin_x64']
    else:
        probe, target = LinuxProbe(), PROCESS_NAMES['linux']

    logger.debug(f"[PROBE] Platform {system}/{machine}: using {probe.name} probe, target {target}")
    return probe, target
