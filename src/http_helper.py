# HTTP Helper for language server connections
# Loopback-only HTTPS sessions: the language server presents a self-signed certificate

import aiohttp
import ssl
import logging

logger = logging.getLogger(__name__)

def create_loopback_ssl_context() -> ssl.SSLContext:
    """
    SSL context for 127.0.0.1 calls with certificate validation disabled.
    The language server's certificate is self-signed and never leaves the host.
    """
    ssl_context = ssl.create_default_context()
    ssl_context.check_hostname = False
    ssl_context.verify_mode = ssl.CERT_NONE
    return ssl_context

def create_language_server_session(timeout_seconds: float = 10) -> aiohttp.ClientSession:
    """
    Create properly configured aiohttp session for local language server connections
    Prevents connection leaks with proper cleanup and limits
    """
    connector = aiohttp.TCPConnector(
        limit_per_host=2,           # Discovery and sync never run more than one request at a time
        ssl=create_loopback_ssl_context(),
        force_close=True,           # Force connection cleanup
        enable_cleanup_closed=True  # Additional cleanup
    )

    return aiohttp.ClientSession(
        connector=connector,
        timeout=aiohttp.ClientTimeout(total=timeout_seconds),
        trust_env=False             # Never route loopback traffic through a proxy
    )
