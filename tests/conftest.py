"""Pytest configuration and fixtures."""

import datetime
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from config import Config
from events import EventBus
from store import InMemoryStore


@pytest.fixture
def config():
    """Default configuration with a fast backoff."""
    cfg = Config.default()
    cfg.controller.backoff_base_delay = 0.01
    cfg.controller.backoff_max_delay = 0.05
    return cfg


@pytest.fixture
def event_bus():
    return EventBus(queue_size=64)


@pytest.fixture
def store():
    """Store without an event bus."""
    return InMemoryStore()


@pytest.fixture
def registry_resource():
    """A SchemaRegistry with basic auth."""
    return {
        "kind": "SchemaRegistry",
        "metadata": {"name": "main", "namespace": "kafka"},
        "spec": {
            "url": "http://registry:8081",
            "auth": {"type": "BASIC", "basicAuth": {"secretRef": "registry-creds"}},
        },
    }


@pytest.fixture
def schema_resource():
    """A Schema pointing at the 'main' registry."""
    return {
        "kind": "Schema",
        "metadata": {"name": "users", "namespace": "kafka"},
        "spec": {
            "subject": "users-value",
            "schemaType": "AVRO",
            "schema": json.dumps(
                {
                    "type": "record",
                    "name": "User",
                    "fields": [{"name": "id", "type": "string"}],
                }
            ),
            "registryRef": {"name": "main"},
        },
    }


def _response(status, body):
    resp = AsyncMock()
    resp.status = status
    resp.text = AsyncMock(
        return_value=body if isinstance(body, str) else json.dumps(body)
    )
    return AsyncMock(
        __aenter__=AsyncMock(return_value=resp),
        __aexit__=AsyncMock(return_value=False),
    )


@pytest.fixture
def mock_registry_http():
    """
    Build a ClientSession double answering with the given (status, body) pairs
    in order. Returns ``(session_cls, session)``; ``session.request`` records
    every call.

    Usage::

        with patch("registry_client.aiohttp.ClientSession") as session_cls:
            session = mock_registry_http(session_cls, [(200, {"id": 1})])
    """

    def _install(session_cls, responses):
        session = AsyncMock()
        session.request = MagicMock(
            side_effect=[_response(status, body) for status, body in responses]
        )
        session_cls.return_value = AsyncMock(
            __aenter__=AsyncMock(return_value=session),
            __aexit__=AsyncMock(return_value=False),
        )
        return session

    return _install


def _make_cert(common_name, key, issuer_name=None, issuer_key=None, ca=False):
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.datetime.now(datetime.timezone.utc)
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer_name or subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=1))
        .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
    )
    return builder.sign(issuer_key or key, hashes.SHA256())


@pytest.fixture(scope="session")
def tls_material():
    """Throwaway CA plus a client certificate/key pair it signed, all PEM."""
    ca_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    ca_cert = _make_cert("test-ca", ca_key, ca=True)

    client_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    client_cert = _make_cert(
        "schema-operator", client_key, issuer_name=ca_cert.subject, issuer_key=ca_key
    )

    other_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)

    def pem_key(key):
        return key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )

    return {
        "ca.crt": ca_cert.public_bytes(serialization.Encoding.PEM),
        "tls.crt": client_cert.public_bytes(serialization.Encoding.PEM),
        "tls.key": pem_key(client_key),
        "other.key": pem_key(other_key),
    }
