"""
Process discovery manager
Locates the language server process, extracts its credentials and verifies a reachable port
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from errors import ProcessCommandError, ProcessCommandTimeout
from language_server import GET_UNLEASH_DATA, LanguageServerClient, is_reachable_status
from .models import ConnectionCredentials, ProcessCandidate, ScanDiagnostics
from .platform_probe import PlatformProbe, WindowsProbe, select_probe

logger = logging.getLogger(__name__)

# Windows listing failures recognised from command output
EXECUTION_POLICY_PATTERN = re.compile(
    r'execution polic|running scripts is disabled|PSSecurityException|UnauthorizedAccess', re.IGNORECASE)
SERVICE_UNAVAILABLE_PATTERN = re.compile(
    r'RPC server is unavailable|0x800706BA|Invalid class|service (?:is )?not (?:running|started)|WinMgmt',
    re.IGNORECASE)


@dataclass
class CommandResult:
    """Output of a shell command"""
    stdout: str
    stderr: str
    returncode: int


async def run_shell_command(command: str, timeout_seconds: float) -> CommandResult:
    """
    Run a shell command with a bounded timeout.
    Raises ProcessCommandTimeout if the command does not finish in time.
    """
    process = await asyncio.create_subprocess_shell(
        command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout_seconds)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise ProcessCommandTimeout(f"Command timed out after {timeout_seconds}s", command=command)

    return CommandResult(
        stdout=stdout.decode('utf-8', errors='replace'),
        stderr=stderr.decode('utf-8', errors='replace'),
        returncode=process.returncode,
    )


class ProcessDiscovery:
    """Discovery service for the local language server"""

    def __init__(self, config: Dict, probe: Optional[PlatformProbe] = None, target_process: Optional[str] = None,
                 command_runner=run_shell_command, client_factory=LanguageServerClient, sleep=asyncio.sleep):
        self.config = config
        if probe is None:
            probe, default_target = select_probe()
            target_process = target_process or default_target
        self.probe = probe
        self.target_process = target_process or ''

        self.process_timeout = config.get('process_timeout_seconds', 15)
        self.verify_timeout = config.get('verify_timeout_seconds', 2)
        self.retry_delay = config.get('retry_delay_seconds', 0.1)
        self.cold_start_wait = config.get('cold_start_wait_seconds', 3)
        self.require_verified_port = config.get('require_verified_port', False)
        self.verify_path = config.get('verify_path', GET_UNLEASH_DATA)

        self._run_command = command_runner
        self._client_factory = client_factory
        self._sleep = sleep

        self.last_diagnostics: Optional[ScanDiagnostics] = None

    # ================== DISCOVERY ==================

    async def discover(self, max_attempts: int = 3) -> Tuple[Optional[ConnectionCredentials], ScanDiagnostics]:
        """
        Scan for the language server up to max_attempts times.
        Returns (credentials, diagnostics); credentials is None when nothing usable was found.
        """
        diagnostics = ScanDiagnostics(method='process_name', target_process=self.target_process,
                                      platform=self.probe.name)
        self.last_diagnostics = diagnostics
        logger.info(f"[SCAN] Scanning for {self.target_process} (max attempts: {max_attempts})")

        attempt = 0
        cold_start_retry_used = False

        while attempt < max_attempts:
            attempt += 1
            diagnostics.attempts = attempt
            logger.debug(f"[SCAN] Attempt {attempt}/{max_attempts}")

            try:
                credentials = await self._scan_once(diagnostics)
                if credentials:
                    return credentials, diagnostics

            except ProcessCommandTimeout as e:
                if not cold_start_retry_used:
                    # Cold start: first WMI/PowerShell query can be very slow, retry without counting it as an attempt
                    cold_start_retry_used = True
                    attempt -= 1
                    logger.warning(f"[SCAN] Process listing timed out, waiting {self.cold_start_wait}s before retrying: {e}")
                    await self._sleep(self.cold_start_wait)
                    continue
                logger.error(f"[SCAN] Process listing timed out again: {e}")

            except ProcessCommandError as e:
                self._handle_command_failure(e)

            if attempt < max_attempts:
                await self._sleep(self.retry_delay)

        logger.warning(
            f"[SCAN] Discovery failed after {diagnostics.attempts} attempts "
            f"({diagnostics.candidates_found} candidates, ports probed: {diagnostics.probed_ports})"
        )
        return None, diagnostics

    async def _scan_once(self, diagnostics: ScanDiagnostics) -> Optional[ConnectionCredentials]:
        """One listing + verification pass"""
        command = self.probe.list_processes_command(self.target_process)
        logger.debug(f"[SCAN] Executing: {command}")
        result = await self._run_command(command, self.process_timeout)

        if result.stderr.strip():
            failure = self._classify_stderr(result.stderr)
            if failure:
                raise ProcessCommandError(failure, command=command, stderr=result.stderr,
                                          returncode=result.returncode)
            logger.debug(f"[SCAN] StdErr: {result.stderr.strip()[:200]}")

        if not result.stdout.strip():
            logger.info(f"[SCAN] {self.target_process} not running yet")
            return None

        candidates = self.probe.parse_candidates(result.stdout)
        diagnostics.candidates_found = len(candidates)

        for candidate in candidates:
            logger.info(f"[SCAN] Candidate PID={candidate.pid}, ExtPort={candidate.extension_port}")
            credentials = await self._resolve_candidate(candidate, diagnostics)
            if credentials:
                return credentials

        return None

    async def _resolve_candidate(self, candidate: ProcessCandidate, diagnostics: ScanDiagnostics) -> Optional[ConnectionCredentials]:
        """Find a reachable port for a candidate; embedded port first, then its listening ports"""
        if candidate.extension_port:
            if await self._verify_port(candidate.extension_port, candidate.csrf_token, diagnostics):
                return self._credentials(candidate, candidate.extension_port, True, diagnostics)

        ports = await self.identify_ports(candidate.pid)
        logger.debug(f"[SCAN] PID {candidate.pid} listening ports: {ports}")

        for port in ports:
            if port == candidate.extension_port:
                continue
            if await self._verify_port(port, candidate.csrf_token, diagnostics):
                return self._credentials(candidate, port, True, diagnostics)

        if ports and not self.require_verified_port:
            logger.warning(f"[SCAN] No port verified for PID {candidate.pid}, using unverified port {ports[0]}")
            return self._credentials(candidate, ports[0], False, diagnostics)

        return None

    def _credentials(self, candidate: ProcessCandidate, port: int, verified: bool,
                     diagnostics: ScanDiagnostics) -> ConnectionCredentials:
        diagnostics.verified_port = port if verified else None
        diagnostics.verified = verified
        if verified:
            logger.info(f"[OK] Connection verified: PID={candidate.pid}, port={port}")
        return ConnectionCredentials(
            process_id=candidate.pid,
            listening_port=port,
            auth_token=candidate.csrf_token,
            extension_port=candidate.extension_port,
            verified=verified,
        )

    # ================== PORTS ==================

    async def identify_ports(self, pid: int) -> List[int]:
        """List the candidate's listening ports (ascending)"""
        command = self.probe.list_ports_command(pid)
        try:
            result = await self._run_command(command, self.process_timeout)
        except ProcessCommandError as e:
            logger.error(f"[SCAN] Port identification failed for PID {pid}: {e}")
            return []
        return self.probe.parse_ports(result.stdout, pid)

    async def _verify_port(self, port: int, token: str, diagnostics: ScanDiagnostics) -> bool:
        """Minimal authenticated POST; 200/400/401/403 means a live language server"""
        diagnostics.probed_ports.append(port)
        client = self._client_factory(port, token, self.verify_timeout)
        try:
            status = await client.probe(self.verify_path, timeout_seconds=self.verify_timeout)
        finally:
            await client.close()

        reachable = is_reachable_status(status)
        logger.debug(f"[SCAN] Port {port} probe status={status} reachable={reachable}")
        return reachable

    # ================== FAILURE HANDLING ==================

    def _classify_stderr(self, stderr: str) -> Optional[str]:
        """Map recognised Windows listing failures to a message; None for harmless stderr"""
        if not isinstance(self.probe, WindowsProbe):
            return None
        if EXECUTION_POLICY_PATTERN.search(stderr):
            return "PowerShell blocked by execution policy"
        if SERVICE_UNAVAILABLE_PATTERN.search(stderr):
            return "Windows Management Instrumentation service unavailable"
        return None

    def _handle_command_failure(self, error: ProcessCommandError):
        """Log actionable guidance; the attempt still counts"""
        message = str(error)
        if isinstance(self.probe, WindowsProbe) and 'execution policy' in message:
            logger.error(
                f"[SCAN] {message}. Run 'Set-ExecutionPolicy -Scope CurrentUser RemoteSigned' "
                "or allow PowerShell for this user; falling back to wmic."
            )
            self.probe.use_legacy_listing()
        elif 'Management Instrumentation' in message:
            logger.error(
                f"[SCAN] {message}. Start the 'Windows Management Instrumentation' (WinMgmt) service "
                "and try again."
            )
        else:
            logger.error(f"[SCAN] Process listing failed: {message}")

    def error_guidance(self) -> List[str]:
        return self.probe.error_guidance()
