#!/usr/bin/env python3
"""
Pytest tests for the certificate bootstrap (openssl path, cryptography fallback, failure policy)
"""

import shutil
import ssl
import sys
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.x509.oid import NameOID

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.webar import certs
from src.webar.certs import (
    BootstrapResult,
    CertificateBootstrapError,
    CommandResult,
    bootstrap_certificates,
    certificate_pair_is_valid,
    generate_self_signed,
    parse_subject,
    run_openssl,
)

MISSING_OPENSSL = "webar-test-no-such-openssl"


@pytest.fixture
def paths(tmp_path):
    return tmp_path / "cert.pem", tmp_path / "key.pem"


def failing_openssl(*args, **kwargs):
    return CommandResult(("openssl",), 1, stderr="req: unable to load config")


def load_cert(path) -> x509.Certificate:
    return x509.load_pem_x509_certificate(Path(path).read_bytes())


def test_parse_subject_default():
    name = parse_subject("/C=US/ST=State/L=City/O=Organization/CN=localhost")

    assert name.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value == "localhost"
    assert name.get_attributes_for_oid(NameOID.ORGANIZATION_NAME)[0].value == "Organization"
    assert name.get_attributes_for_oid(NameOID.COUNTRY_NAME)[0].value == "US"


@pytest.mark.parametrize("subject", ["", "/", "/CN", "/XX=nope"])
def test_parse_subject_rejects_garbage(subject):
    with pytest.raises(ValueError):
        parse_subject(subject)


def test_run_openssl_missing_binary_is_a_result(paths):
    cert, key = paths
    result = run_openssl(cert, key, openssl_bin=MISSING_OPENSSL)

    assert not result.ok
    assert result.returncode == 127
    assert MISSING_OPENSSL in result.stderr


def test_generate_self_signed_is_a_real_certificate():
    key_pem, cert_pem = generate_self_signed(hosts=("192.168.1.20", "ar.local"))

    assert b"BEGIN PRIVATE KEY" in key_pem
    cert = x509.load_pem_x509_certificate(cert_pem)
    assert cert.subject == cert.issuer
    assert cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value == "localhost"

    san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    assert set(san.get_values_for_type(x509.DNSName)) == {"localhost", "ar.local"}
    assert {str(ip) for ip in san.get_values_for_type(x509.IPAddress)} == {"127.0.0.1", "::1", "192.168.1.20"}

    validity = cert.not_valid_after_utc - cert.not_valid_before_utc
    assert 365 <= validity.days <= 366


def test_fallback_when_openssl_missing(paths):
    cert, key = paths
    result = bootstrap_certificates(cert, key, openssl_bin=MISSING_OPENSSL)

    assert result == BootstrapResult("cryptography", cert, key)
    assert cert.stat().st_size > 0
    assert key.stat().st_size > 0
    assert certificate_pair_is_valid(cert, key)

    # The pair must be usable by a TLS listener
    ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER).load_cert_chain(str(cert), str(key))


def test_fallback_when_openssl_exits_nonzero(paths, monkeypatch):
    cert, key = paths
    monkeypatch.setattr(certs, "run_openssl", failing_openssl)

    result = bootstrap_certificates(cert, key)

    assert result.method == "cryptography"
    assert certificate_pair_is_valid(cert, key)


@pytest.mark.skipif(shutil.which("openssl") is None, reason="openssl not installed")
def test_openssl_path(paths):
    cert, key = paths
    result = bootstrap_certificates(cert, key, days=30)

    assert result.method == "openssl"
    assert certificate_pair_is_valid(cert, key)
    assert load_cert(cert).subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value == "localhost"


def test_bootstrap_overwrites_previous_pair(paths):
    cert, key = paths
    bootstrap_certificates(cert, key, openssl_bin=MISSING_OPENSSL)
    first_serial = load_cert(cert).serial_number

    bootstrap_certificates(cert, key, openssl_bin=MISSING_OPENSSL)

    assert load_cert(cert).serial_number != first_serial
    assert certificate_pair_is_valid(cert, key)


def test_both_paths_fail(paths, monkeypatch):
    cert, key = paths

    def broken_fallback(**kwargs):
        raise ValueError("no entropy")

    monkeypatch.setattr(certs, "run_openssl", failing_openssl)
    monkeypatch.setattr(certs, "generate_self_signed", broken_fallback)

    with pytest.raises(CertificateBootstrapError):
        bootstrap_certificates(cert, key)

    assert not cert.exists()
    assert not key.exists()


def test_failed_bootstrap_keeps_previous_pair(paths, monkeypatch):
    cert, key = paths
    bootstrap_certificates(cert, key, openssl_bin=MISSING_OPENSSL)
    old_cert, old_key = cert.read_bytes(), key.read_bytes()

    monkeypatch.setattr(certs, "run_openssl", failing_openssl)
    with pytest.raises(CertificateBootstrapError):
        bootstrap_certificates(cert, key, subject="/not-a-field")

    assert cert.read_bytes() == old_cert
    assert key.read_bytes() == old_key


def test_reuse_existing_valid_pair(paths, monkeypatch):
    cert, key = paths
    bootstrap_certificates(cert, key, openssl_bin=MISSING_OPENSSL)
    before = cert.read_bytes()

    def unexpected(*args, **kwargs):
        raise AssertionError("openssl should not run when the pair is reused")

    monkeypatch.setattr(certs, "run_openssl", unexpected)
    result = bootstrap_certificates(cert, key, reuse_existing=True)

    assert result.method == "existing"
    assert cert.read_bytes() == before


def test_reuse_regenerates_mismatched_pair(paths, tmp_path):
    cert, key = paths
    bootstrap_certificates(cert, key, openssl_bin=MISSING_OPENSSL)
    other_key, _ = generate_self_signed()
    key.write_bytes(other_key)
    assert not certificate_pair_is_valid(cert, key)

    result = bootstrap_certificates(cert, key, openssl_bin=MISSING_OPENSSL, reuse_existing=True)

    assert result.method == "cryptography"
    assert certificate_pair_is_valid(cert, key)


def test_pair_invalid_when_missing_or_public_key_only(paths):
    cert, key = paths
    assert not certificate_pair_is_valid(cert, key)

    # A bare public key where the certificate belongs is not a certificate
    key_pem, _ = generate_self_signed()
    private = serialization.load_pem_private_key(key_pem, password=None)
    cert.write_bytes(private.public_key().public_bytes(
        serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
    ))
    key.write_bytes(key_pem)

    assert not certificate_pair_is_valid(cert, key)


def test_out_of_range_validity_is_a_bootstrap_error(paths):
    cert, key = paths

    with pytest.raises(CertificateBootstrapError):
        bootstrap_certificates(cert, key, days=10**9, openssl_bin=MISSING_OPENSSL)

    assert not cert.exists()
    assert not key.exists()
