"""Key and certificate generation for the ephemeral control plane."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from ipaddress import ip_address
from typing import Self

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    PublicFormat,
)
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

__all__ = ["RSAKeyPair", "generate_serving_certificate"]


class RSAKeyPair:
    """An RSA key pair with some simple helper functions.

    Notes
    -----
    Created by calling :py:meth:`~RSAKeyPair.generate` rather than the
    constructor.
    """

    @classmethod
    def generate(cls) -> Self:
        """Generate a new RSA key pair.

        Returns
        -------
        RSAKeyPair
            Newly-generated key pair.
        """
        private_key = rsa.generate_private_key(
            public_exponent=65537, key_size=2048
        )
        return cls(private_key)

    def __init__(self, private_key: rsa.RSAPrivateKey) -> None:
        self.private_key = private_key

    def private_key_as_pem(self) -> bytes:
        """Return the serialized private key.

        Returns
        -------
        bytes
            Private key encoded using PKCS#8 with no encryption.
        """
        return self.private_key.private_bytes(
            Encoding.PEM, PrivateFormat.PKCS8, NoEncryption()
        )

    def public_key_as_pem(self) -> bytes:
        """Return the PEM-encoded public key.

        Returns
        -------
        bytes
            The public key in PEM encoding and SubjectPublicKeyInfo format.
        """
        public_key = self.private_key.public_key()
        return public_key.public_bytes(
            Encoding.PEM, PublicFormat.SubjectPublicKeyInfo
        )


def generate_serving_certificate(
    keypair: RSAKeyPair,
    *,
    hosts: list[str],
    lifetime: timedelta = timedelta(days=1),
) -> bytes:
    """Generate a self-signed serving certificate for the API server.

    The certificate is its own certificate authority, so clients can verify
    the API server by trusting the certificate directly.

    Parameters
    ----------
    keypair
        Key pair whose public key is certified and whose private key signs.
    hosts
        Host names and IP addresses to include as subject alternative names.
        The first one is also used as the common name.
    lifetime
        How long the certificate is valid.

    Returns
    -------
    bytes
        The PEM-encoded certificate.
    """
    names: list[x509.GeneralName] = []
    for host in hosts:
        try:
            names.append(x509.IPAddress(ip_address(host)))
        except ValueError:
            names.append(x509.DNSName(host))
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, hosts[0])])
    now = datetime.now(tz=UTC)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(keypair.private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=5))
        .not_valid_after(now + lifetime)
        .add_extension(
            x509.BasicConstraints(ca=True, path_length=None), critical=True
        )
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=True,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(
            x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]),
            critical=False,
        )
        .add_extension(x509.SubjectAlternativeName(names), critical=False)
        .sign(keypair.private_key, hashes.SHA256())
    )
    return certificate.public_bytes(Encoding.PEM)
