#!/usr/bin/env python3
"""
WebAR asset server configuration
Defaults come from the environment (and an optional .env file), CLI flags override
"""

import os
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Optional, Tuple


# Load .env file if it exists
def load_env_file(env_path=".env"):
    """Load environment variables from .env file"""
    if os.path.exists(env_path):
        with open(env_path, 'r') as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith('#') and '=' in line:
                    key, value = line.split('=', 1)
                    # Only set if not already in environment
                    if key not in os.environ:
                        os.environ[key] = value


# Load .env from current directory or parent directories
for env_file in [".env", "../.env", "../../.env"]:
    if os.path.exists(env_file):
        load_env_file(env_file)
        break

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

DEFAULT_SUBJECT = "/C=US/ST=State/L=City/O=Organization/CN=localhost"

DEFAULT_CONTENT_TYPE = "application/octet-stream"

DEFAULT_MIME_TYPES: Mapping[str, str] = MappingProxyType({
    '.html': 'text/html',
    '.js': 'text/javascript',
    '.css': 'text/css',
    '.json': 'application/json',
    '.png': 'image/png',
    '.jpg': 'image/jpg',
    '.gif': 'image/gif',
    '.svg': 'image/svg+xml',
    '.wav': 'audio/wav',
    '.mp4': 'video/mp4',
    '.woff': 'application/font-woff',
    '.ttf': 'application/font-ttf',
    '.eot': 'application/vnd.ms-fontobject',
    '.otf': 'application/font-otf',
    '.wasm': 'application/wasm',
})


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def _env_port(name: str, default: str) -> Optional[int]:
    """Port from the environment; empty or 0 means disabled"""
    value = os.getenv(name, default).strip()
    if not value or value == "0":
        return None
    return int(value)


def _env_list(name: str) -> Tuple[str, ...]:
    return tuple(item.strip() for item in os.getenv(name, "").split(",") if item.strip())


@dataclass
class ServerConfig:
    """Asset server configuration"""
    # Listener settings
    host: str = os.getenv("APP_HOST", "0.0.0.0")
    port: int = int(os.getenv("APP_PORT", "8001"))
    redirect_port: Optional[int] = _env_port("HTTP_REDIRECT_PORT", "8000")
    redirect_host: Optional[str] = os.getenv("REDIRECT_HOST") or None

    # Static files
    root: str = os.getenv("STATIC_ROOT", ".")
    default_document: str = os.getenv("DEFAULT_DOCUMENT", "index.html")
    mime_types: Mapping[str, str] = field(default_factory=lambda: DEFAULT_MIME_TYPES)

    # TLS settings
    tls_enabled: bool = _env_bool("TLS_ENABLED", "true")
    ssl_cert_path: str = os.getenv("APP_SSL_CERT", "cert.pem")
    ssl_key_path: str = os.getenv("APP_SSL_KEY", "key.pem")

    # Certificate bootstrap
    bootstrap_certs: bool = _env_bool("CERT_BOOTSTRAP", "true")
    cert_reuse: bool = _env_bool("CERT_REUSE", "false")
    cert_days: int = int(os.getenv("CERT_DAYS", "365"))
    cert_subject: str = os.getenv("CERT_SUBJECT", DEFAULT_SUBJECT)
    cert_hosts: Tuple[str, ...] = _env_list("CERT_HOSTS")
    openssl_bin: str = os.getenv("OPENSSL_BIN", "openssl")

    # Logging
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    log_file: Optional[str] = os.getenv("LOG_FILE") or None

    def __post_init__(self):
        # Normalise the table so lookups by lowercase extension always work
        self.mime_types = MappingProxyType(
            {ext.lower(): ctype for ext, ctype in self.mime_types.items()}
        )
        self.cert_hosts = tuple(self.cert_hosts)

    @property
    def scheme(self) -> str:
        return "https" if self.tls_enabled else "http"


def setup_logging(config: ServerConfig):
    """Configure root logging from the server config"""
    log_level = getattr(logging, config.log_level.upper(), logging.INFO)

    handlers = [logging.StreamHandler()]
    file_error = None
    if config.log_file:
        try:
            handlers.append(logging.FileHandler(config.log_file))
        except OSError as e:
            # Fallback to console-only logging if file logging fails
            file_error = e

    logging.basicConfig(
        level=log_level,
        format=LOG_FORMAT,
        handlers=handlers
    )

    if file_error is not None:
        logger.warning(f"Cannot write to log file {config.log_file} ({file_error}), using console only")
