#!/usr/bin/env python3
"""
Self-signed TLS certificate bootstrap
Prefers the openssl CLI and falls back to an in-process X.509 builder,
always leaving key.pem and cert.pem as a matching pair
"""

import os
import ipaddress
import logging
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable, Tuple, Union

from cryptography import x509
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa

try:
    from .config import DEFAULT_SUBJECT
except ImportError:
    # Fallback for when running as standalone script
    from src.webar.config import DEFAULT_SUBJECT

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

OPENSSL_KEY_BITS = 4096
FALLBACK_KEY_BITS = 2048

# openssl -subj field names
_SUBJECT_OIDS = {
    "C": NameOID.COUNTRY_NAME,
    "ST": NameOID.STATE_OR_PROVINCE_NAME,
    "L": NameOID.LOCALITY_NAME,
    "O": NameOID.ORGANIZATION_NAME,
    "OU": NameOID.ORGANIZATIONAL_UNIT_NAME,
    "CN": NameOID.COMMON_NAME,
    "emailAddress": NameOID.EMAIL_ADDRESS,
}

_DEFAULT_HOSTS = ("localhost", "127.0.0.1", "::1")


class CertificateBootstrapError(RuntimeError):
    """Neither openssl nor the in-process fallback produced a key/cert pair"""


@dataclass
class CommandResult:
    """Outcome of an external command, with captured output"""
    args: Tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


@dataclass
class BootstrapResult:
    """Where the pair came from and where it lives"""
    method: str  # "openssl", "cryptography" or "existing"
    cert_path: Path
    key_path: Path


def parse_subject(subject: str) -> x509.Name:
    """Parse an openssl-style subject ("/C=US/O=Org/CN=localhost") into an x509.Name"""
    attributes = []
    for part in subject.strip("/").split("/"):
        if not part:
            continue
        if "=" not in part:
            raise ValueError(f"Malformed subject component: {part!r}")
        name, value = part.split("=", 1)
        oid = _SUBJECT_OIDS.get(name.strip())
        if oid is None:
            raise ValueError(f"Unsupported subject field: {name!r}")
        attributes.append(x509.NameAttribute(oid, value.strip()))

    if not attributes:
        raise ValueError("Subject must contain at least one field")
    return x509.Name(attributes)


def _subject_alternative_names(hosts: Iterable[str]) -> x509.SubjectAlternativeName:
    names = []
    seen = set()
    for host in list(_DEFAULT_HOSTS) + list(hosts):
        if host in seen:
            continue
        seen.add(host)
        try:
            names.append(x509.IPAddress(ipaddress.ip_address(host)))
        except ValueError:
            names.append(x509.DNSName(host))
    return x509.SubjectAlternativeName(names)


def generate_self_signed(
    subject: str = DEFAULT_SUBJECT,
    days: int = 365,
    hosts: Iterable[str] = (),
    key_bits: int = FALLBACK_KEY_BITS,
) -> Tuple[bytes, bytes]:
    """
    Build an RSA key and a minimal self-signed certificate in process

    Args:
        subject: openssl-style distinguished name, used as subject and issuer
        days: validity window starting now
        hosts: extra DNS names or IP addresses for the SAN extension
        key_bits: RSA modulus size

    Returns:
        (key_pem, cert_pem); the key is unencrypted PKCS#8
    """
    key = rsa.generate_private_key(public_exponent=65537, key_size=key_bits)
    name = parse_subject(subject)
    now = datetime.now(timezone.utc)

    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=5))
        .not_valid_after(now + timedelta(days=days))
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(_subject_alternative_names(hosts), critical=False)
        .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False)
        .sign(key, hashes.SHA256())
    )

    key_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    cert_pem = cert.public_bytes(serialization.Encoding.PEM)
    return key_pem, cert_pem


def run_openssl(
    cert_path: PathLike,
    key_path: PathLike,
    days: int = 365,
    subject: str = DEFAULT_SUBJECT,
    openssl_bin: str = "openssl",
    key_bits: int = OPENSSL_KEY_BITS,
) -> CommandResult:
    """Ask the openssl CLI for a self-signed certificate; never raises on tool failure"""
    args = (
        openssl_bin, "req", "-x509",
        "-newkey", f"rsa:{key_bits}",
        "-keyout", str(key_path),
        "-out", str(cert_path),
        "-days", str(days),
        "-nodes",
        "-subj", subject,
    )

    try:
        proc = subprocess.run(args, capture_output=True, text=True, check=False)
    except FileNotFoundError:
        return CommandResult(args, 127, stderr=f"{openssl_bin}: command not found")
    except OSError as e:
        return CommandResult(args, 126, stderr=str(e))

    return CommandResult(args, proc.returncode, proc.stdout, proc.stderr)


def _log_command_output(result: CommandResult):
    level = logging.INFO if result.ok else logging.WARNING
    for stream in (result.stdout, result.stderr):
        for line in stream.splitlines():
            if line.strip():
                logger.log(level, f"openssl: {line}")


def certificate_pair_is_valid(cert_path: PathLike, key_path: PathLike) -> bool:
    """True when both files parse, the keys match and the certificate is still valid"""
    try:
        cert = x509.load_pem_x509_certificate(Path(cert_path).read_bytes())
        key = serialization.load_pem_private_key(Path(key_path).read_bytes(), password=None)
    except (OSError, ValueError, TypeError) as e:
        logger.debug(f"Existing certificate pair unusable: {e}")
        return False

    cert_public = cert.public_key().public_bytes(
        serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
    )
    key_public = key.public_key().public_bytes(
        serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
    )
    if cert_public != key_public:
        logger.warning(f"Certificate {cert_path} does not match key {key_path}")
        return False

    now = datetime.now(timezone.utc)
    if not (cert.not_valid_before_utc <= now < cert.not_valid_after_utc):
        logger.warning(f"Certificate {cert_path} is outside its validity window")
        return False

    return True


def _is_staged(*paths: Path) -> bool:
    return all(p.is_file() and p.stat().st_size > 0 for p in paths)


def _install_pair(staged_key: Path, staged_cert: Path, key_path: Path, cert_path: Path):
    """Move a staged pair into place; neither file moves unless both exist and are non-empty"""
    if not _is_staged(staged_key, staged_cert):
        raise CertificateBootstrapError("Staged key or certificate missing or empty")

    key_path.parent.mkdir(parents=True, exist_ok=True)
    cert_path.parent.mkdir(parents=True, exist_ok=True)
    shutil.move(str(staged_key), str(key_path))
    shutil.move(str(staged_cert), str(cert_path))
    os.chmod(key_path, 0o600)


def bootstrap_certificates(
    cert_path: PathLike = "cert.pem",
    key_path: PathLike = "key.pem",
    *,
    days: int = 365,
    subject: str = DEFAULT_SUBJECT,
    hosts: Iterable[str] = (),
    openssl_bin: str = "openssl",
    reuse_existing: bool = False,
) -> BootstrapResult:
    """
    Make sure a usable key/certificate pair exists before the listener starts

    Args:
        cert_path: destination of the PEM certificate
        key_path: destination of the PEM private key
        days: certificate validity
        subject: openssl-style distinguished name
        hosts: extra SAN entries for the in-process fallback
        openssl_bin: openssl executable to try first
        reuse_existing: keep a valid existing pair instead of regenerating

    Returns:
        BootstrapResult naming the method that produced the pair

    Raises:
        CertificateBootstrapError: both openssl and the fallback failed
    """
    cert_path = Path(cert_path)
    key_path = Path(key_path)
    hosts = tuple(hosts)

    if reuse_existing and certificate_pair_is_valid(cert_path, key_path):
        logger.info(f"Reusing existing certificate {cert_path}")
        return BootstrapResult("existing", cert_path, key_path)

    key_path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.TemporaryDirectory(prefix=".certs-", dir=key_path.parent) as staging:
        staged_key = Path(staging) / "key.pem"
        staged_cert = Path(staging) / "cert.pem"

        logger.info("Generating SSL certificate with openssl...")
        result = run_openssl(staged_cert, staged_key, days=days, subject=subject, openssl_bin=openssl_bin)
        _log_command_output(result)

        if result.ok and _is_staged(staged_key, staged_cert):
            method = "openssl"
        else:
            logger.warning(
                f"openssl unavailable or failed (exit {result.returncode}), "
                f"generating certificate with cryptography"
            )
            try:
                key_pem, cert_pem = generate_self_signed(subject=subject, days=days, hosts=hosts)
                staged_key.write_bytes(key_pem)
                staged_cert.write_bytes(cert_pem)
            except (ValueError, OverflowError, OSError) as e:
                logger.error(f"Certificate fallback failed: {e}")
                raise CertificateBootstrapError(f"Could not generate TLS material: {e}") from e
            method = "cryptography"

        _install_pair(staged_key, staged_cert, key_path, cert_path)

    logger.info(f"SSL certificate generated via {method}: {cert_path}, key: {key_path}")
    return BootstrapResult(method, cert_path, key_path)
