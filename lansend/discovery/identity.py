"""
Identity Provider: this device's self-signed certificate and fingerprint.
"""

import logging
from pathlib import Path

from cryptography import x509

from lansend.config import DEVICE_ALIAS, DEVICE_MODEL, PROTOCOL_VERSION
from lansend.discovery.models import DeviceInfo, DeviceType, ProtocolType
from lansend.security.crypto import (
    fingerprint_from_der,
    fingerprints_match,
    generate_self_signed,
    load_pem,
    public_key_fingerprint,
    save_pem,
)

logger = logging.getLogger(__name__)


class IdentityProvider:
    """Holds the device certificate; the fingerprint is fixed for the process lifetime."""

    def __init__(self, storage_dir: Path | None = None, alias: str = DEVICE_ALIAS):
        self.alias = alias
        self._storage_dir = storage_dir
        self._private_key, self._certificate = self._load_or_generate()
        self._fingerprint = public_key_fingerprint(self._certificate)

        logger.info(f"Initialized IdentityProvider for {self.alias}, fingerprint {self._fingerprint[:16]}...")

    @property
    def key_path(self) -> Path | None:
        return self._storage_dir / "key.pem" if self._storage_dir else None

    @property
    def cert_path(self) -> Path | None:
        return self._storage_dir / "cert.pem" if self._storage_dir else None

    @property
    def certificate(self) -> x509.Certificate:
        return self._certificate

    def _load_or_generate(self):
        """Loads the stored key pair or creates (and stores) a new one."""
        if self._storage_dir is None:
            return generate_self_signed(self.alias)

        if self.key_path.exists() and self.cert_path.exists():
            try:
                return load_pem(self.key_path, self.cert_path)
            except (ValueError, OSError) as e:
                logger.warning(f"Failed to load existing certificate: {e}. Generating new one.")

        private_key, certificate = generate_self_signed(self.alias)
        save_pem(private_key, certificate, self.key_path, self.cert_path)
        return private_key, certificate

    def fingerprint(self) -> str:
        return self._fingerprint

    def is_self(self, fingerprint: str) -> bool:
        return fingerprints_match(fingerprint, self._fingerprint)

    def verify(self, peer_fingerprint: str, connection_certificate: bytes | None) -> bool:
        """
        Check that the certificate presented on an HTTPS connection belongs to
        the device that announced `peer_fingerprint`.

        Only meaningful over HTTPS. Plain HTTP transfers have no certificate to
        check and rely on LAN trust alone; callers must not treat that as a
        successful verification.
        """
        if not connection_certificate:
            return False
        try:
            presented = fingerprint_from_der(connection_certificate)
        except ValueError as e:
            logger.warning(f"Peer presented an unreadable certificate: {e}")
            return False
        return fingerprints_match(presented, peer_fingerprint)

    def device_info(self, port: int, https: bool = False, download: bool = False) -> DeviceInfo:
        """This device as it is announced and sent in prepare-upload requests."""
        return DeviceInfo(
            alias=self.alias,
            version=PROTOCOL_VERSION,
            device_model=DEVICE_MODEL,
            device_type=DeviceType.HEADLESS,
            fingerprint=self._fingerprint,
            port=port,
            protocol=ProtocolType.HTTPS if https else ProtocolType.HTTP,
            download=download,
        )
