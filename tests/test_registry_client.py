"""Unit tests for the Schema Registry protocol client."""

import base64
import json
import ssl
from unittest.mock import patch

import aiohttp
import pytest

from credentials import CredentialBundle
from models import RegistryEndpoint, SchemaReference, SchemaType
from registry_client import (
    CONTENT_TYPE,
    RegisteredSchema,
    RegistryError,
    SchemaRegistryClient,
    build_ssl_context,
)

BASE_URL = "http://registry:8081"

USER_SCHEMA = json.dumps(
    {"type": "record", "name": "User", "fields": [{"name": "id", "type": "string"}]}
)


def make_client(**kwargs) -> SchemaRegistryClient:
    return SchemaRegistryClient(BASE_URL, **kwargs)


class TestClientConstruction:
    """Tests for client settings."""

    def test_zero_timeout_uses_default(self):
        """Test that a zero timeout falls back to the default."""
        assert make_client(timeout=0).timeout == 30

    def test_negative_timeout_uses_default(self):
        """Test that a negative timeout falls back to the default."""
        assert make_client(timeout=-5).timeout == 30

    def test_explicit_timeout(self):
        assert make_client(timeout=7).timeout == 7

    def test_custom_default_timeout(self):
        """Test a custom default timeout."""
        assert make_client(timeout=0, default_timeout=12).timeout == 12

    def test_from_endpoint(self):
        """Test building a client from an endpoint."""
        endpoint = RegistryEndpoint.model_validate(
            {"url": "https://registry/", "timeout": 5}
        )
        client = SchemaRegistryClient.from_endpoint(endpoint, CredentialBundle())
        assert client.base_url == "https://registry"
        assert client.timeout == 5

    def test_basic_auth_header(self):
        """Test the basic auth header."""
        client = make_client(
            credentials=CredentialBundle(
                auth_type="BASIC", username="alice", password="s3cret"
            )
        )
        expected = base64.b64encode(b"alice:s3cret").decode()
        assert client._get_headers()["Authorization"] == f"Basic {expected}"

    def test_bearer_auth_header(self):
        """Test the bearer auth header."""
        client = make_client(
            credentials=CredentialBundle(auth_type="BEARER", token="abc")
        )
        assert client._get_headers()["Authorization"] == "Bearer abc"

    def test_no_auth_header(self):
        """Test that no auth sends no Authorization header."""
        assert "Authorization" not in make_client()._get_headers()

    def test_mtls_sends_no_auth_header(self, tls_material):
        """Test that mutual TLS sends no Authorization header."""
        client = make_client(
            credentials=CredentialBundle(
                auth_type="MTLS",
                client_cert=tls_material["tls.crt"],
                client_key=tls_material["tls.key"],
            )
        )
        assert "Authorization" not in client._get_headers()


class TestBuildSSLContext:
    """Tests for TLS settings."""

    def test_default_verification(self):
        """Test that default verification uses system trust."""
        assert build_ssl_context(CredentialBundle()) is True

    def test_insecure_without_certificates(self):
        """Test that insecure mode disables verification."""
        assert build_ssl_context(CredentialBundle(), insecure_skip_verify=True) is False

    def test_client_certificate_loaded(self, tls_material):
        """Test an SSL context with a client certificate and CA."""
        context = build_ssl_context(
            CredentialBundle(
                auth_type="MTLS",
                client_cert=tls_material["tls.crt"],
                client_key=tls_material["tls.key"],
                ca_certs=tls_material["ca.crt"],
            )
        )
        assert isinstance(context, ssl.SSLContext)
        assert context.verify_mode == ssl.CERT_REQUIRED

    def test_insecure_with_client_certificate(self, tls_material):
        """Test insecure mode still presents the client certificate."""
        context = build_ssl_context(
            CredentialBundle(
                auth_type="MTLS",
                client_cert=tls_material["tls.crt"],
                client_key=tls_material["tls.key"],
            ),
            insecure_skip_verify=True,
        )
        assert context.check_hostname is False
        assert context.verify_mode == ssl.CERT_NONE


@pytest.mark.asyncio
class TestHealthCheck:
    """Tests for health_check()."""

    async def test_healthy(self, mock_registry_http):
        """Test a healthy registry."""
        with patch("registry_client.aiohttp.ClientSession") as session_cls:
            session = mock_registry_http(session_cls, [(200, ["users-value"])])
            await make_client().health_check()

        method, url = session.request.call_args.args
        assert method == "GET"
        assert url == f"{BASE_URL}/subjects"

    async def test_non_200_is_unreachable(self, mock_registry_http):
        """Test that a non-200 response raises with status and body."""
        with patch("registry_client.aiohttp.ClientSession") as session_cls:
            mock_registry_http(session_cls, [(503, "Service Unavailable")])
            with pytest.raises(RegistryError) as exc_info:
                await make_client().health_check()

        assert exc_info.value.status == 503
        assert exc_info.value.body == "Service Unavailable"
        assert "503" in str(exc_info.value)
        assert "Service Unavailable" in str(exc_info.value)

    async def test_transport_error(self):
        """Test that a connection error becomes a RegistryError."""
        with patch("registry_client.aiohttp.ClientSession") as session_cls:
            session_cls.side_effect = aiohttp.ClientConnectionError(
                "Connection refused"
            )
            with pytest.raises(RegistryError) as exc_info:
                await make_client().health_check()

        assert exc_info.value.status is None
        assert "Connection refused" in str(exc_info.value)

    async def test_rejected_header_value(self, mock_registry_http):
        """Test a header value aiohttp refuses surfaces as a RegistryError."""
        client = make_client(
            credentials=CredentialBundle(auth_type="BEARER", token="abc\n")
        )
        with patch("registry_client.aiohttp.ClientSession") as session_cls:
            session = mock_registry_http(session_cls, [])
            session.request.side_effect = ValueError(
                "Forbidden control character detected in headers"
            )
            with pytest.raises(RegistryError) as exc_info:
                await client.health_check()

        assert exc_info.value.status is None
        assert "Forbidden control character" in str(exc_info.value)

    async def test_session_timeout_applied(self, mock_registry_http):
        """Test that the session uses the client timeout."""
        with patch("registry_client.aiohttp.ClientSession") as session_cls:
            mock_registry_http(session_cls, [(200, [])])
            await make_client(timeout=0).health_check()

        timeout = session_cls.call_args.kwargs["timeout"]
        assert timeout.total == 30

    async def test_auth_header_sent(self, mock_registry_http):
        """Test that the auth header is sent on requests."""
        client = make_client(
            credentials=CredentialBundle(auth_type="BEARER", token="abc")
        )
        with patch("registry_client.aiohttp.ClientSession") as session_cls:
            session = mock_registry_http(session_cls, [(200, [])])
            await client.health_check()

        headers = session.request.call_args.kwargs["headers"]
        assert headers["Authorization"] == "Bearer abc"


@pytest.mark.asyncio
class TestRegisterSchema:
    """Tests for register_schema()."""

    async def test_register_returns_id_and_version(self, mock_registry_http):
        """Test registering returns the ID and the latest version."""
        with patch("registry_client.aiohttp.ClientSession") as session_cls:
            session = mock_registry_http(
                session_cls,
                [
                    (200, {"id": 42}),
                    (
                        200,
                        {
                            "subject": "users-value",
                            "id": 42,
                            "version": 3,
                            "schema": USER_SCHEMA,
                        },
                    ),
                ],
            )
            result = await make_client().register_schema(
                "users-value", USER_SCHEMA, SchemaType.AVRO
            )

        assert result == RegisteredSchema(id=42, version=3)

        post, latest = session.request.call_args_list
        assert post.args == ("POST", f"{BASE_URL}/subjects/users-value/versions")
        assert post.kwargs["headers"]["Content-Type"] == CONTENT_TYPE
        assert json.loads(post.kwargs["data"]) == {
            "schema": USER_SCHEMA,
            "schemaType": "AVRO",
        }
        assert latest.args == (
            "GET",
            f"{BASE_URL}/subjects/users-value/versions/latest",
        )

    async def test_register_with_references(self, mock_registry_http):
        """Test that references and schema type are sent."""
        refs = [SchemaReference(name="Address", subject="address-value", version=1)]
        with patch("registry_client.aiohttp.ClientSession") as session_cls:
            session = mock_registry_http(
                session_cls, [(200, {"id": 7}), (200, {"id": 7, "version": 1})]
            )
            await make_client().register_schema(
                "users-value", "syntax = \"proto3\";", SchemaType.PROTOBUF, refs
            )

        body = json.loads(session.request.call_args_list[0].kwargs["data"])
        assert body["schemaType"] == "PROTOBUF"
        assert body["references"] == [
            {"name": "Address", "subject": "address-value", "version": 1}
        ]

    async def test_register_is_idempotent(self, mock_registry_http):
        """Test that registering the same schema twice returns the same ID."""
        with patch("registry_client.aiohttp.ClientSession") as session_cls:
            mock_registry_http(
                session_cls,
                [
                    (200, {"id": 42}),
                    (200, {"id": 42, "version": 3}),
                    (200, {"id": 42}),
                    (200, {"id": 42, "version": 3}),
                ],
            )
            client = make_client()
            first = await client.register_schema("users-value", USER_SCHEMA)
            second = await client.register_schema("users-value", USER_SCHEMA)

        assert first.id == second.id == 42

    async def test_version_lookup_failure_is_not_fatal(self, mock_registry_http):
        """Test that a failed version lookup leaves the version unset."""
        with patch("registry_client.aiohttp.ClientSession") as session_cls:
            mock_registry_http(session_cls, [(200, {"id": 42}), (500, "oops")])
            result = await make_client().register_schema("users-value", USER_SCHEMA)

        assert result == RegisteredSchema(id=42, version=None)

    async def test_registration_failure(self, mock_registry_http):
        """Test that a rejected registration raises."""
        body = '{"error_code":409,"message":"Schema being registered is incompatible"}'
        with patch("registry_client.aiohttp.ClientSession") as session_cls:
            session = mock_registry_http(session_cls, [(409, body)])
            with pytest.raises(RegistryError) as exc_info:
                await make_client().register_schema("users-value", USER_SCHEMA)

        assert exc_info.value.status == 409
        assert "incompatible" in str(exc_info.value)
        assert session.request.call_count == 1

    async def test_subject_is_url_encoded(self, mock_registry_http):
        """Test that the subject is URL-encoded in the path."""
        with patch("registry_client.aiohttp.ClientSession") as session_cls:
            session = mock_registry_http(
                session_cls, [(200, {"id": 1}), (200, {"version": 1})]
            )
            await make_client().register_schema("team/users value", USER_SCHEMA)

        _, url = session.request.call_args_list[0].args
        assert url == f"{BASE_URL}/subjects/team%2Fusers%20value/versions"


@pytest.mark.asyncio
class TestSetCompatibility:
    """Tests for set_compatibility()."""

    async def test_set_compatibility(self, mock_registry_http):
        """Test setting the compatibility level."""
        with patch("registry_client.aiohttp.ClientSession") as session_cls:
            session = mock_registry_http(
                session_cls, [(200, {"compatibility": "BACKWARD"})]
            )
            await make_client().set_compatibility("users-value", "BACKWARD")

        call = session.request.call_args
        assert call.args == ("PUT", f"{BASE_URL}/config/users-value")
        assert json.loads(call.kwargs["data"]) == {"compatibility": "BACKWARD"}
        assert call.kwargs["headers"]["Content-Type"] == CONTENT_TYPE

    async def test_invalid_level_error_carries_body(self, mock_registry_http):
        """Test that a rejected level raises with the response body."""
        body = '{"error_code":42203,"message":"Invalid compatibility level"}'
        with patch("registry_client.aiohttp.ClientSession") as session_cls:
            mock_registry_http(session_cls, [(422, body)])
            with pytest.raises(RegistryError) as exc_info:
                await make_client().set_compatibility("users-value", "INVALID")

        assert exc_info.value.status == 422
        assert "Invalid compatibility level" in str(exc_info.value)


@pytest.mark.asyncio
class TestDeleteSubject:
    """Tests for delete_subject()."""

    async def test_delete(self, mock_registry_http):
        """Test deleting a subject."""
        with patch("registry_client.aiohttp.ClientSession") as session_cls:
            session = mock_registry_http(session_cls, [(200, [1, 2, 3])])
            await make_client().delete_subject("users-value")

        assert session.request.call_args.args == (
            "DELETE",
            f"{BASE_URL}/subjects/users-value",
        )

    async def test_missing_subject_is_success(self, mock_registry_http):
        """Test that deleting a missing subject succeeds."""
        with patch("registry_client.aiohttp.ClientSession") as session_cls:
            mock_registry_http(
                session_cls,
                [(404, '{"error_code":40401,"message":"Subject not found."}')],
            )
            await make_client().delete_subject("users-value")

    async def test_delete_twice_never_errors(self, mock_registry_http):
        """Test that deleting twice does not raise."""
        with patch("registry_client.aiohttp.ClientSession") as session_cls:
            mock_registry_http(session_cls, [(200, [1]), (404, "not found")])
            client = make_client()
            await client.delete_subject("users-value")
            await client.delete_subject("users-value")

    async def test_server_error(self, mock_registry_http):
        """Test that a server error on delete raises."""
        with patch("registry_client.aiohttp.ClientSession") as session_cls:
            mock_registry_http(session_cls, [(500, "Internal Server Error")])
            with pytest.raises(RegistryError) as exc_info:
                await make_client().delete_subject("users-value")

        assert exc_info.value.status == 500
        assert "Internal Server Error" in str(exc_info.value)
