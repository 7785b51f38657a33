#!/usr/bin/env python3
"""
Generate the self-signed TLS pair used by the WebAR server.
Tries openssl first, falls back to the cryptography library.
"""
import logging
import sys
from pathlib import Path

# Add repo root to path for imports
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from src.webar.certs import CertificateBootstrapError, bootstrap_certificates
from src.webar.config import ServerConfig, setup_logging


def main():
    if len(sys.argv) > 3:
        print("Usage: generate_cert.py [cert_file] [key_file]")
        sys.exit(1)

    config = ServerConfig()
    cert_file = sys.argv[1] if len(sys.argv) > 1 else config.ssl_cert_path
    key_file = sys.argv[2] if len(sys.argv) > 2 else config.ssl_key_path

    setup_logging(config)

    try:
        result = bootstrap_certificates(
            cert_file,
            key_file,
            days=config.cert_days,
            subject=config.cert_subject,
            hosts=config.cert_hosts,
            openssl_bin=config.openssl_bin,
        )
    except CertificateBootstrapError as e:
        logging.error(f"Error: {e}")
        sys.exit(1)

    print(f"Certificate: {result.cert_path}")
    print(f"Key: {result.key_path}")
    print(f"Generated with: {result.method}")


if __name__ == "__main__":
    main()
