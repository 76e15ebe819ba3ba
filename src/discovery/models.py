"""
Discovery data structures and models
"""

from typing import List, Optional
from dataclasses import dataclass, field, asdict

@dataclass
class ProcessCandidate:
    """A language server process parsed from the process listing"""
    pid: int
    extension_port: int  # 0 when the command line carries no port
    csrf_token: str
    command_line: str = ""

@dataclass(frozen=True)
class ConnectionCredentials:
    """Connection parameters for one language server launch"""
    process_id: int
    listening_port: int
    auth_token: str
    extension_port: int = 0
    verified: bool = True

    def redacted(self) -> dict:
        """Credentials safe to log or expose over the API"""
        return {
            "process_id": self.process_id,
            "listening_port": self.listening_port,
            "extension_port": self.extension_port,
            "verified": self.verified,
            "auth_token": f"{self.auth_token[:4]}..." if self.auth_token else "",
        }

@dataclass
class ScanDiagnostics:
    """Observability record for one discovery run"""
    method: str  # "process_name"
    target_process: str
    platform: str
    attempts: int = 0
    candidates_found: int = 0
    probed_ports: List[int] = field(default_factory=list)
    verified_port: Optional[int] = None
    verified: bool = False

    def to_dict(self) -> dict:
        return asdict(self)
