"""
Registry Protocol Client - REST client for a Confluent-compatible Schema Registry.

The client is stateless apart from its endpoint and credentials: every call
opens its own session bounded by the configured timeout, so a client can
be built per reconcile and dropped afterwards.
"""

import asyncio
import base64
import json
import logging
import os
import ssl
import tempfile
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union
from urllib.parse import quote

import aiohttp

from credentials import ConfigurationError, CredentialBundle
from models import RegistryEndpoint, SchemaReference, SchemaType

logger = logging.getLogger(__name__)

CONTENT_TYPE = "application/vnd.schemaregistry.v1+json"
DEFAULT_TIMEOUT = 30  # seconds

REASON_CLIENT_CREATE_FAILED = "ClientCreateFailed"


class RegistryError(Exception):
    """A failed registry call: transport error, timeout or unexpected status."""

    def __init__(self, message: str, status: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status = status
        self.body = body


@dataclass
class RegisteredSchema:
    """Result of a registration. ``version`` is best-effort and may be None."""

    id: int
    version: Optional[int] = None


def build_ssl_context(
    credentials: CredentialBundle, insecure_skip_verify: bool = False
) -> Union[ssl.SSLContext, bool]:
    """
    Build the TLS settings passed to aiohttp as ``ssl=``.

    Returns True (default verification) when no client certificate, CA or
    verification override is involved.

    Raises:
        ConfigurationError: If the certificate material is rejected by ssl.
    """
    if not credentials.has_client_cert and not credentials.ca_certs:
        return False if insecure_skip_verify else True

    try:
        if credentials.ca_certs:
            context = ssl.create_default_context(
                cadata=credentials.ca_certs.decode("ascii")
            )
        else:
            context = ssl.create_default_context()

        if insecure_skip_verify:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE

        if credentials.has_client_cert:
            # ssl only loads certificate chains from files
            with tempfile.TemporaryDirectory() as tmp:
                cert_path = os.path.join(tmp, "tls.crt")
                key_path = os.path.join(tmp, "tls.key")
                with open(cert_path, "wb") as f:
                    f.write(credentials.client_cert)
                with open(key_path, "wb") as f:
                    f.write(credentials.client_key)
                context.load_cert_chain(cert_path, key_path)
    except ssl.SSLError as e:
        raise ConfigurationError(
            f"failed to build TLS configuration: {e}",
            reason=REASON_CLIENT_CREATE_FAILED,
        )

    return context


class SchemaRegistryClient:
    """
    Client for the subset of the Schema Registry REST API the operator uses.

    Every non-2xx response outside the documented idempotent cases raises
    RegistryError carrying the HTTP status and response body.
    """

    def __init__(
        self,
        base_url: str,
        credentials: Optional[CredentialBundle] = None,
        timeout: int = 0,
        insecure_skip_verify: bool = False,
        default_timeout: int = DEFAULT_TIMEOUT,
    ):
        self.base_url = base_url.rstrip("/")
        self.credentials = credentials or CredentialBundle()
        # 0 means "use the default", never "no timeout"
        self.timeout = timeout if timeout and timeout > 0 else default_timeout
        self._ssl = build_ssl_context(self.credentials, insecure_skip_verify)

    @classmethod
    def from_endpoint(
        cls,
        endpoint: RegistryEndpoint,
        credentials: CredentialBundle,
        default_timeout: int = DEFAULT_TIMEOUT,
    ) -> "SchemaRegistryClient":
        return cls(
            endpoint.url,
            credentials,
            timeout=endpoint.timeout,
            insecure_skip_verify=endpoint.insecure_skip_verify,
            default_timeout=default_timeout,
        )

    def _get_headers(self, with_body: bool = False) -> Dict[str, str]:
        headers = {"Accept": CONTENT_TYPE}
        if with_body:
            headers["Content-Type"] = CONTENT_TYPE

        creds = self.credentials
        if creds.auth_type == "BASIC":
            userpass = f"{creds.username}:{creds.password}".encode()
            headers["Authorization"] = f"Basic {base64.b64encode(userpass).decode()}"
        elif creds.auth_type == "BEARER":
            headers["Authorization"] = f"Bearer {creds.token}"
        return headers

    async def _request(
        self, method: str, path: str, payload: Optional[Dict[str, Any]] = None
    ) -> Tuple[int, str]:
        """
        Perform one request and return ``(status, body)``.

        Raises:
            RegistryError: On transport errors, rejected request values and timeouts.
        """
        url = f"{self.base_url}{path}"
        data = json.dumps(payload) if payload is not None else None
        timeout = aiohttp.ClientTimeout(total=self.timeout)

        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.request(
                    method,
                    url,
                    headers=self._get_headers(with_body=data is not None),
                    data=data,
                    ssl=self._ssl,
                ) as response:
                    return response.status, await response.text()
        except asyncio.TimeoutError:
            raise RegistryError(
                f"{method} {url} timed out after {self.timeout}s"
            )
        except (aiohttp.ClientError, ValueError) as e:
            # aiohttp rejects malformed header values with a bare ValueError
            raise RegistryError(f"{method} {url} failed: {e}")

    @staticmethod
    def _subject_path(subject: str) -> str:
        return quote(subject, safe="")

    # ==================== Operations ====================

    async def health_check(self) -> None:
        """
        Check that the registry answers the subject listing with 200.

        Raises:
            RegistryError: If the registry is unreachable or returns non-200.
        """
        status, body = await self._request("GET", "/subjects")
        if status != 200:
            raise RegistryError(
                f"health check failed with status {status}: {body}",
                status=status,
                body=body,
            )

    async def register_schema(
        self,
        subject: str,
        content: str,
        schema_type: SchemaType = SchemaType.AVRO,
        references: Optional[List[SchemaReference]] = None,
    ) -> RegisteredSchema:
        """
        Register a schema under ``subject``.

        Registering identical content again returns the existing id. The
        version comes from a follow-up read of the latest version and is
        left as None if that read fails.

        Raises:
            RegistryError: If the registration itself fails.
        """
        payload: Dict[str, Any] = {
            "schema": content,
            "schemaType": SchemaType(schema_type).value,
        }
        if references:
            payload["references"] = [ref.to_wire() for ref in references]

        status, body = await self._request(
            "POST", f"/subjects/{self._subject_path(subject)}/versions", payload
        )
        if status != 200:
            raise RegistryError(
                f"schema registration failed with status {status}: {body}",
                status=status,
                body=body,
            )

        try:
            schema_id = int(json.loads(body)["id"])
        except (ValueError, KeyError, TypeError) as e:
            raise RegistryError(
                f"failed to decode register response: {e}", status=status, body=body
            )

        try:
            version = await self.get_latest_version(subject)
        except RegistryError as e:
            logger.warning(
                f"Registered {subject} with ID {schema_id} but could not "
                f"read its version: {e}"
            )
            version = None

        return RegisteredSchema(id=schema_id, version=version)

    async def get_latest_version(self, subject: str) -> int:
        """
        Return the latest version number registered under ``subject``.

        Raises:
            RegistryError: If the read fails or the body has no version.
        """
        status, body = await self._request(
            "GET", f"/subjects/{self._subject_path(subject)}/versions/latest"
        )
        if status != 200:
            raise RegistryError(
                f"get latest version failed with status {status}: {body}",
                status=status,
                body=body,
            )
        try:
            return int(json.loads(body)["version"])
        except (ValueError, KeyError, TypeError) as e:
            raise RegistryError(
                f"failed to decode latest version response: {e}",
                status=status,
                body=body,
            )

    async def set_compatibility(self, subject: str, level: str) -> None:
        """
        Set the compatibility level of ``subject``.

        Raises:
            RegistryError: If the registry rejects the level.
        """
        status, body = await self._request(
            "PUT",
            f"/config/{self._subject_path(subject)}",
            {"compatibility": level},
        )
        if status != 200:
            raise RegistryError(
                f"set compatibility failed with status {status}: {body}",
                status=status,
                body=body,
            )

    async def delete_subject(self, subject: str) -> None:
        """
        Delete every version of ``subject``. A missing subject is not an error.

        Raises:
            RegistryError: If the registry returns anything but 200 or 404.
        """
        status, body = await self._request(
            "DELETE", f"/subjects/{self._subject_path(subject)}"
        )
        if status == 404:
            logger.debug(f"Subject {subject} already absent from registry")
            return
        if status != 200:
            raise RegistryError(
                f"delete subject failed with status {status}: {body}",
                status=status,
                body=body,
            )
