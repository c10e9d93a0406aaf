"""
Client certificate loading

Builds a mutual-TLS client identity from a single PEM file holding a PKCS#8
private key and a leaf certificate. The key/certificate pairing is checked here
instead of relying on the TLS stack to do it at handshake time.
"""

import base64
import binascii
import logging
import os
import ssl
import tempfile
from dataclasses import dataclass
from typing import Any, Optional

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization

from sysupdate_dl import constants
from sysupdate_dl.errors import (
    ConfigurationError,
    IdentityAssemblyFailed,
    SectionFooterMissing,
    SectionHeaderMissing,
)


@dataclass(frozen=True)
class ClientIdentity:
    """
    A certificate and its matching private key.

    Attributes:
        certificate: Leaf X.509 certificate
        private_key: Private key matching the certificate's public key
    """
    certificate: x509.Certificate
    private_key: Any

    @property
    def subject(self) -> str:
        return self.certificate.subject.rfc4514_string()

    def to_pem(self) -> bytes:
        """Serialize as a single PEM blob (key first, then certificate)."""
        key_pem = self.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
        cert_pem = self.certificate.public_bytes(serialization.Encoding.PEM)
        return key_pem + cert_pem

    def to_ssl_context(self) -> ssl.SSLContext:
        """
        Create a client SSL context presenting this identity.

        The CDN's server certificate is not signed by a CA in the default trust
        store, so server verification is turned off on the returned context.
        """
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE

        # load_cert_chain only accepts file paths
        fd, path = tempfile.mkstemp(suffix=".pem")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(self.to_pem())
            context.load_cert_chain(path)
        finally:
            os.remove(path)

        return context


class PemBundle:
    """
    Locates labelled sections inside PEM text.

    Usage:
        bundle = PemBundle.from_file("nx_tls_client_cert.pem")
        identity = bundle.assemble()
    """

    def __init__(self, text: str):
        self.text = text
        self.logger = logging.getLogger("sysupdate_dl.certs")

    @classmethod
    def from_file(cls, path: str) -> "PemBundle":
        """
        Read PEM text from a file.

        Raises:
            ConfigurationError: If the file cannot be read
        """
        try:
            with open(path, "r", encoding="ascii") as f:
                return cls(f.read())
        except (OSError, UnicodeDecodeError) as e:
            raise ConfigurationError(f"Cannot read certificate file {path}: {e}") from e

    @staticmethod
    def _header(label: str) -> str:
        return f"-----BEGIN {label}-----"

    @staticmethod
    def _footer(label: str) -> str:
        return f"-----END {label}-----"

    def has_section(self, label: str) -> bool:
        """Check whether both markers of a section are present."""
        start = self.text.find(self._header(label))
        if start < 0:
            return False
        return self.text.find(self._footer(label), start) >= 0

    def locate(self, label: str) -> bytes:
        """
        Return the decoded bytes of a PEM section.

        Args:
            label: Section label (e.g. "CERTIFICATE")

        Returns:
            DER bytes between the BEGIN and END markers

        Raises:
            SectionHeaderMissing: If the BEGIN marker is absent
            SectionFooterMissing: If the END marker is absent
            ConfigurationError: If the section body is not valid base64
        """
        header = self._header(label)
        start = self.text.find(header)
        if start < 0:
            raise SectionHeaderMissing(label)
        start += len(header)

        end = self.text.find(self._footer(label), start)
        if end < 0:
            raise SectionFooterMissing(label)

        body = "".join(self.text[start:end].split())
        try:
            return base64.b64decode(body, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ConfigurationError(f"PEM section '{label}' is not valid base64: {e}") from e

    def assemble(self) -> ClientIdentity:
        """
        Combine the PRIVATE KEY and CERTIFICATE sections into a ClientIdentity.

        Raises:
            SectionHeaderMissing / SectionFooterMissing: If a section is missing
            IdentityAssemblyFailed: If either section cannot be parsed or the
                key does not belong to the certificate
        """
        key_der = self.locate(constants.PEM_PRIVATE_KEY)
        cert_der = self.locate(constants.PEM_CERTIFICATE)

        try:
            private_key = serialization.load_der_private_key(key_der, password=None)
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise IdentityAssemblyFailed(f"Cannot load PKCS#8 private key: {e}") from e

        try:
            certificate = x509.load_der_x509_certificate(cert_der)
        except ValueError as e:
            raise IdentityAssemblyFailed(f"Cannot load certificate: {e}") from e

        if _public_key_bytes(private_key.public_key()) != _public_key_bytes(certificate.public_key()):
            raise IdentityAssemblyFailed("Private key does not match the certificate's public key")

        identity = ClientIdentity(certificate=certificate, private_key=private_key)
        self.logger.debug(f"Loaded client certificate: {identity.subject}")
        return identity


def load_identity(path: str, logger: Optional[logging.Logger] = None) -> ClientIdentity:
    """
    Load a client identity from a PEM file.

    Args:
        path: Path to the PEM file
        logger: Optional logger to report through

    Returns:
        ClientIdentity ready to be handed to CdnClient
    """
    bundle = PemBundle.from_file(path)
    if logger is not None:
        bundle.logger = logger
    return bundle.assemble()


def _public_key_bytes(public_key: Any) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
