#!/usr/bin/env python3
"""
WebAR development server entry point
Bootstraps the self-signed certificate, then serves the demo assets over HTTPS
"""

import argparse
import asyncio
import dataclasses
import logging
import sys
from typing import List, Optional

try:
    from .config import ServerConfig, setup_logging
    from .certs import CertificateBootstrapError, bootstrap_certificates
    from .static_server import StaticAssetServer, TLSConfigurationError
except ImportError:
    # Fallback for when running as standalone script
    from src.webar.config import ServerConfig, setup_logging
    from src.webar.certs import CertificateBootstrapError, bootstrap_certificates
    from src.webar.static_server import StaticAssetServer, TLSConfigurationError

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Serve the WebAR demo over HTTPS")
    parser.add_argument("--host", help="Bind address")
    parser.add_argument("--port", type=int, help="HTTPS port")
    parser.add_argument("--redirect-port", type=int, help="Plain HTTP redirect port (0 disables)")
    parser.add_argument("--redirect-host", help="Host to put in redirect Location headers")
    parser.add_argument("--root", help="Directory to serve")
    parser.add_argument("--cert", help="Certificate PEM path")
    parser.add_argument("--key", help="Private key PEM path")
    parser.add_argument("--no-tls", action="store_true", help="Serve plain HTTP")
    parser.add_argument("--no-bootstrap", action="store_true", help="Use the existing cert/key as-is")
    parser.add_argument("--reuse-certs", action="store_true", help="Keep a valid existing cert/key pair")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING, ...")
    return parser.parse_args(argv)


def config_from_args(args: argparse.Namespace, base: Optional[ServerConfig] = None) -> ServerConfig:
    """Overlay CLI flags on the environment-derived config"""
    config = base or ServerConfig()
    overrides = {
        "host": args.host,
        "port": args.port,
        "redirect_host": args.redirect_host,
        "root": args.root,
        "ssl_cert_path": args.cert,
        "ssl_key_path": args.key,
        "log_level": args.log_level,
    }
    changes = {name: value for name, value in overrides.items() if value is not None}

    if args.redirect_port is not None:
        changes["redirect_port"] = args.redirect_port or None
    if args.no_tls:
        changes["tls_enabled"] = False
    if args.no_bootstrap:
        changes["bootstrap_certs"] = False
    if args.reuse_certs:
        changes["cert_reuse"] = True

    return dataclasses.replace(config, **changes)


def prepare_certificates(config: ServerConfig):
    """Run the certificate bootstrap when TLS is on; raises CertificateBootstrapError"""
    if not (config.tls_enabled and config.bootstrap_certs):
        return None
    return bootstrap_certificates(
        config.ssl_cert_path,
        config.ssl_key_path,
        days=config.cert_days,
        subject=config.cert_subject,
        hosts=config.cert_hosts,
        openssl_bin=config.openssl_bin,
        reuse_existing=config.cert_reuse,
    )


async def run(config: ServerConfig):
    server = StaticAssetServer(config)
    try:
        await server.serve_forever()
    finally:
        await server.stop()


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for standalone execution"""
    config = config_from_args(parse_args(argv))
    setup_logging(config)

    try:
        prepare_certificates(config)
    except CertificateBootstrapError as e:
        logger.error(f"Certificate bootstrap failed, not starting: {e}")
        return 1

    try:
        asyncio.run(run(config))
    except TLSConfigurationError as e:
        logger.error(f"Cannot start HTTPS listener: {e}")
        return 1
    except OSError as e:
        logger.error(f"Cannot bind listener: {e}")
        return 1
    except KeyboardInterrupt:
        logger.info("Received interrupt signal")
    return 0


def cli():
    sys.exit(main())


if __name__ == "__main__":
    cli()
