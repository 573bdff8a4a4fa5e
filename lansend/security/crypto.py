"""
Security module: self-signed device certificates and their fingerprints.

The fingerprint is the SHA-256 digest of the certificate's public key
(DER SubjectPublicKeyInfo), upper-case hex. It stays stable as long as the
key pair is kept, even if the certificate is re-issued.
"""

import datetime
import hashlib
import hmac
import logging
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

logger = logging.getLogger(__name__)

# Self-signed certificates are never rotated by the protocol
CERT_VALIDITY_DAYS = 3650


def generate_self_signed(
    common_name: str,
) -> tuple[ec.EllipticCurvePrivateKey, x509.Certificate]:
    """
    Generate a P-256 key pair and a self-signed certificate for it.

    Returns:
        (private_key, certificate)
    """
    private_key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name or "lansend")])
    now = datetime.datetime.now(datetime.timezone.utc)

    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=CERT_VALIDITY_DAYS))
        .sign(private_key, hashes.SHA256())
    )
    return private_key, certificate


def public_key_fingerprint(certificate: x509.Certificate) -> str:
    """SHA-256 of the certificate's SubjectPublicKeyInfo, upper-case hex."""
    spki = certificate.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return hashlib.sha256(spki).hexdigest().upper()


def fingerprint_from_der(certificate_der: bytes) -> str:
    """Fingerprint of a DER certificate as presented on a TLS connection."""
    return public_key_fingerprint(x509.load_der_x509_certificate(certificate_der))


def fingerprints_match(a: str, b: str) -> bool:
    return hmac.compare_digest(a.strip().upper().encode(), b.strip().upper().encode())


def save_pem(
    private_key: ec.EllipticCurvePrivateKey,
    certificate: x509.Certificate,
    key_path: Path,
    cert_path: Path,
) -> None:
    key_path.parent.mkdir(parents=True, exist_ok=True)
    key_path.write_bytes(
        private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
    )
    cert_path.write_bytes(certificate.public_bytes(serialization.Encoding.PEM))


def load_pem(
    key_path: Path, cert_path: Path
) -> tuple[ec.EllipticCurvePrivateKey, x509.Certificate]:
    """Load a key/certificate pair; raises ValueError if they do not belong together."""
    private_key = serialization.load_pem_private_key(key_path.read_bytes(), password=None)
    certificate = x509.load_pem_x509_certificate(cert_path.read_bytes())

    ours = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    theirs = certificate.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    if ours != theirs:
        raise ValueError("certificate does not match private key")
    return private_key, certificate
