"""
talos_provisioner/secrets/pki.py

Generates the cluster PKI with the `cryptography` package:
 - certificate authorities for the machine API, Kubernetes, the Kubernetes
   aggregation layer and etcd
 - the Kubernetes service-account signing key
 - an admin client certificate signed by the machine API CA
 - cluster id/secret and join tokens from the OS CSPRNG

Keys are ECDSA P-256 and encoded as PKCS#8 PEM, certificates as PEM.
"""

from __future__ import annotations

import base64
import ipaddress
import secrets
import string
from datetime import datetime, timedelta, timezone
from typing import Iterable, Sequence

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from talos_provisioner.models.secrets import (
    CertAndKey,
    ClusterSecrets,
    MachineSecretsData,
)

CA_VALIDITY = timedelta(days=3650)
LEAF_VALIDITY = timedelta(days=365)
# Tolerate small clock differences between this host and the machines.
CLOCK_SKEW = timedelta(minutes=5)

ADMIN_ORGANIZATION = "os:admin"
_TOKEN_ALPHABET = string.ascii_lowercase + string.digits


def _generate_key() -> ec.EllipticCurvePrivateKey:
    return ec.generate_private_key(ec.SECP256R1())


def _key_pem(key: ec.EllipticCurvePrivateKey) -> str:
    return key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode("ascii")


def _cert_pem(cert: x509.Certificate) -> str:
    return cert.public_bytes(serialization.Encoding.PEM).decode("ascii")


def _name(common_name: str, organizations: Iterable[str] = ()) -> x509.Name:
    return x509.Name(
        [x509.NameAttribute(NameOID.ORGANIZATION_NAME, org) for org in organizations]
        + [x509.NameAttribute(NameOID.COMMON_NAME, common_name)]
    )


def generate_ca(
    common_name: str,
    organization: str,
    *,
    valid_for: timedelta = CA_VALIDITY,
) -> CertAndKey:
    """Generate a self-signed certificate authority."""
    key = _generate_key()
    name = _name(common_name, [organization])
    now = datetime.now(timezone.utc)
    ski = x509.SubjectKeyIdentifier.from_public_key(key.public_key())
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .not_valid_before(now - CLOCK_SKEW)
        .not_valid_after(now + valid_for)
        .serial_number(x509.random_serial_number())
        .public_key(key.public_key())
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=True,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(ski, critical=False)
        .sign(key, hashes.SHA256())
    )
    return CertAndKey(crt=_cert_pem(cert), key=_key_pem(key))


def issue_certificate(
    ca: CertAndKey,
    common_name: str,
    *,
    organizations: Sequence[str] = (),
    ip_sans: Sequence[str] = (),
    dns_sans: Sequence[str] = (),
    client: bool = True,
    server: bool = False,
    valid_for: timedelta = LEAF_VALIDITY,
) -> CertAndKey:
    """
    Issue a leaf certificate signed by `ca`.

    Args:
        ca: Issuing authority, with its private key.
        common_name: Subject CN.
        organizations: Subject O values (roles, e.g. "os:admin").
        ip_sans: IP subject alternative names.
        dns_sans: DNS subject alternative names.
        client: Include the clientAuth extended key usage.
        server: Include the serverAuth extended key usage.
        valid_for: Validity period.

    Raises:
        ValueError: If the CA material cannot be parsed or an IP SAN is invalid.
    """
    ca_cert = x509.load_pem_x509_certificate(ca.crt.encode("ascii"))
    ca_key = serialization.load_pem_private_key(ca.key.encode("ascii"), password=None)
    if not isinstance(ca_key, ec.EllipticCurvePrivateKey):
        raise ValueError("issuing CA key must be an ECDSA key")

    key = _generate_key()
    now = datetime.now(timezone.utc)
    usages = [
        oid
        for oid, wanted in (
            (ExtendedKeyUsageOID.CLIENT_AUTH, client),
            (ExtendedKeyUsageOID.SERVER_AUTH, server),
        )
        if wanted
    ]
    builder = (
        x509.CertificateBuilder()
        .subject_name(_name(common_name, organizations))
        .issuer_name(ca_cert.subject)
        .not_valid_before(now - CLOCK_SKEW)
        .not_valid_after(now + valid_for)
        .serial_number(x509.random_serial_number())
        .public_key(key.public_key())
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=False,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_key.public_key()),
            critical=False,
        )
    )
    if usages:
        builder = builder.add_extension(x509.ExtendedKeyUsage(usages), critical=False)
    alt_names = [x509.IPAddress(ipaddress.ip_address(ip)) for ip in ip_sans] + [
        x509.DNSName(dns) for dns in dns_sans
    ]
    if alt_names:
        builder = builder.add_extension(
            x509.SubjectAlternativeName(alt_names), critical=False
        )
    cert = builder.sign(ca_key, hashes.SHA256())
    return CertAndKey(crt=_cert_pem(cert), key=_key_pem(key))


def issue_admin_client(os_ca: CertAndKey) -> CertAndKey:
    """Client certificate carrying the machine API admin role."""
    return issue_certificate(
        os_ca, "admin", organizations=[ADMIN_ORGANIZATION], client=True
    )


def generate_token() -> str:
    """A join token of the form [a-z0-9]{6}.[a-z0-9]{16}."""
    head = "".join(secrets.choice(_TOKEN_ALPHABET) for _ in range(6))
    tail = "".join(secrets.choice(_TOKEN_ALPHABET) for _ in range(16))
    return f"{head}.{tail}"


def random_secret(num_bytes: int = 32) -> str:
    """Base64 encoding of `num_bytes` random bytes."""
    return base64.b64encode(secrets.token_bytes(num_bytes)).decode("ascii")


def generate_machine_secrets() -> MachineSecretsData:
    """Generate a complete, fresh machine secrets bundle for one cluster."""
    return MachineSecretsData(
        cluster=ClusterSecrets(id=random_secret(), secret=random_secret()),
        bootstrap_token=generate_token(),
        trustd_token=generate_token(),
        secretbox_encryption_secret=random_secret(),
        os_ca=generate_ca("talos", "talos"),
        k8s_ca=generate_ca("kubernetes", "kubernetes"),
        k8s_aggregator_ca=generate_ca("front-proxy", "kubernetes"),
        etcd_ca=generate_ca("etcd", "etcd"),
        k8s_service_account_key=_key_pem(_generate_key()),
    )
