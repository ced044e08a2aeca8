"""
Credential Resolver - Turns a registry auth strategy into usable credentials.

Secrets are read fresh on every call so that rotated credentials take
effect on the next reconcile. Nothing is cached.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from models import AuthStrategy, BasicAuth, BearerAuth, MutualTLSAuth
from store import NotFoundError, ResourceStore

logger = logging.getLogger(__name__)

REASON_AUTH_LOAD_FAILED = "AuthLoadFailed"


class ConfigurationError(Exception):
    """
    Raised when credentials or client settings cannot be assembled.

    Only a spec or secret change can fix these, so reconcilers surface
    them as a condition instead of retrying quickly.
    """

    def __init__(self, message: str, reason: str = REASON_AUTH_LOAD_FAILED):
        super().__init__(message)
        self.reason = reason


@dataclass
class CredentialBundle:
    """Resolved credentials for one reconcile pass. Never persisted."""

    auth_type: str = "NONE"
    username: Optional[str] = None
    password: Optional[str] = None
    token: Optional[str] = None
    client_cert: Optional[bytes] = None  # PEM
    client_key: Optional[bytes] = None  # PEM
    ca_certs: Optional[bytes] = None  # PEM bundle

    @property
    def has_client_cert(self) -> bool:
        return self.client_cert is not None and self.client_key is not None


async def _read_secret(
    store: ResourceStore, namespace: str, name: str, purpose: str
) -> Dict[str, bytes]:
    try:
        return await store.get_secret(namespace, name)
    except NotFoundError as e:
        raise ConfigurationError(f'failed to get {purpose} secret "{name}": {e}')


def _require(data: Dict[str, bytes], key: str, secret_name: str) -> bytes:
    value = data.get(key)
    if not value:
        raise ConfigurationError(f'secret "{secret_name}" is missing key "{key}"')
    return value


def _require_text(data: Dict[str, bytes], key: str, secret_name: str) -> str:
    """Decode a secret value that ends up in an HTTP header."""
    try:
        value = _require(data, key, secret_name).decode("utf-8")
    except UnicodeDecodeError:
        raise ConfigurationError(
            f'secret "{secret_name}" key "{key}" is not valid UTF-8'
        )
    # kubectl create secret --from-file keeps the trailing newline
    if any(ch < " " or ch == "\x7f" for ch in value):
        raise ConfigurationError(
            f'secret "{secret_name}" key "{key}" contains control characters'
        )
    return value


def _load_key_pair(cert_pem: bytes, key_pem: bytes) -> None:
    """Check that the certificate and private key parse and belong together."""
    try:
        cert = x509.load_pem_x509_certificate(cert_pem)
        key = serialization.load_pem_private_key(key_pem, password=None)
    except (ValueError, TypeError) as e:
        raise ConfigurationError(f"failed to parse client certificate: {e}")

    fmt = serialization.PublicFormat.SubjectPublicKeyInfo
    cert_public = cert.public_key().public_bytes(serialization.Encoding.PEM, fmt)
    key_public = key.public_key().public_bytes(serialization.Encoding.PEM, fmt)
    if cert_public != key_public:
        raise ConfigurationError(
            "failed to parse client certificate: private key does not match certificate"
        )


def _load_ca_bundle(ca_pem: bytes, secret_name: str) -> Optional[bytes]:
    try:
        certs = x509.load_pem_x509_certificates(ca_pem)
    except ValueError as e:
        logger.warning(f'Ignoring unparsable ca.crt in secret "{secret_name}": {e}')
        return None
    return b"".join(c.public_bytes(serialization.Encoding.PEM) for c in certs)


async def resolve_credentials(
    auth: AuthStrategy, namespace: str, store: ResourceStore
) -> CredentialBundle:
    """
    Resolve an auth strategy against the secrets in ``namespace``.

    Args:
        auth: The parsed auth strategy of a SchemaRegistry.
        namespace: Namespace of the SchemaRegistry; secrets are looked up there.
        store: Resource store providing secret lookup.

    Returns:
        A CredentialBundle holding exactly the fields the strategy implies.

    Raises:
        ConfigurationError: If a required secret or key is missing, a header value
            is not clean UTF-8 text, or the client certificate pair cannot be
            parsed.
    """
    if isinstance(auth, BasicAuth):
        data = await _read_secret(store, namespace, auth.secret_ref, "basic auth")
        return CredentialBundle(
            auth_type=auth.type,
            username=_require_text(data, "username", auth.secret_ref),
            password=_require_text(data, "password", auth.secret_ref),
        )

    if isinstance(auth, BearerAuth):
        data = await _read_secret(store, namespace, auth.secret_ref, "bearer auth")
        return CredentialBundle(
            auth_type=auth.type,
            token=_require_text(data, "token", auth.secret_ref),
        )

    if isinstance(auth, MutualTLSAuth):
        data = await _read_secret(
            store, namespace, auth.cert_secret_ref, "client cert"
        )
        cert_pem = _require(data, "tls.crt", auth.cert_secret_ref)
        key_pem = _require(data, "tls.key", auth.cert_secret_ref)
        _load_key_pair(cert_pem, key_pem)

        bundle = CredentialBundle(
            auth_type=auth.type, client_cert=cert_pem, client_key=key_pem
        )

        if auth.ca_secret_ref:
            ca_data = await _read_secret(
                store, namespace, auth.ca_secret_ref, "CA cert"
            )
            ca_pem = ca_data.get("ca.crt")
            if ca_pem:
                bundle.ca_certs = _load_ca_bundle(ca_pem, auth.ca_secret_ref)
            else:
                logger.warning(
                    f'Secret "{auth.ca_secret_ref}" has no ca.crt, '
                    f"using system trust roots"
                )

        return bundle

    return CredentialBundle()
