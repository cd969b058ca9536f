"""
talos_provisioner/machine/tls.py

Builds the TLS contexts used to reach a machine's RPC endpoint:
 - maintenance mode: no client certificate and no server verification,
   since a freshly imaged machine has no certificates yet
 - authenticated mode: the bundle's CA pinned as the only trust anchor,
   the bundle's client certificate presented, and the server certificate
   checked against the target address
"""

from __future__ import annotations

import ssl

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from talos_provisioner.errors import CredentialError
from talos_provisioner.models.credentials import CredentialBundle
from talos_provisioner.utils.ephemeral_file import ephemeral_files


def insecure_context() -> ssl.SSLContext:
    """TLS context for the unauthenticated maintenance channel."""
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    return context


def validate_bundle(bundle: CredentialBundle) -> None:
    """
    Check that the bundle holds a parseable CA certificate, client certificate
    and client private key.

    Raises:
        CredentialError: If any of the three cannot be parsed.
    """
    for label, pem in (
        ("CA certificate", bundle.ca_certificate),
        ("client certificate", bundle.client_certificate),
    ):
        try:
            x509.load_pem_x509_certificate(pem.encode("utf-8"))
        except ValueError as exc:
            raise CredentialError(f"{label} is not a valid PEM certificate") from exc
    try:
        serialization.load_pem_private_key(
            bundle.client_key.encode("utf-8"), password=None
        )
    except (ValueError, TypeError) as exc:
        raise CredentialError("client key is not a valid unencrypted PEM key") from exc


async def authenticated_context(
    bundle: CredentialBundle,
    *,
    scratch_dir: str = "/dev/shm",
) -> ssl.SSLContext:
    """
    TLS context presenting the bundle's client certificate and trusting only
    the bundle's CA. Callers must pass the target address as the server
    hostname so the server certificate is matched against it.

    The certificate and key only touch disk for the duration of
    `load_cert_chain`, inside a private scratch directory.

    Raises:
        CredentialError: If the material is malformed or the key does not
            match the certificate.
    """
    validate_bundle(bundle)

    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    context.check_hostname = True
    context.verify_mode = ssl.CERT_REQUIRED
    try:
        context.load_verify_locations(cadata=bundle.ca_certificate)
    except ssl.SSLError as exc:
        raise CredentialError(f"CA certificate rejected: {exc.reason}") from exc

    async with ephemeral_files(
        {
            "client.crt": bundle.client_certificate.encode("utf-8"),
            "client.key": bundle.client_key.encode("utf-8"),
        },
        prefix="machine-tls-",
        parent_dir=scratch_dir,
    ) as paths:
        try:
            context.load_cert_chain(paths["client.crt"], paths["client.key"])
        except ssl.SSLError as exc:
            raise CredentialError(
                f"client certificate and key rejected: {exc.reason}"
            ) from exc
    return context
