"""
Snapshot upload client for the CyberArk Discovery and Context API.

A snapshot is delivered in two phases:

1. The inventory API is asked for a presigned object storage URL, given
   the cluster ID and the SHA-256 checksum of the snapshot JSON.
2. The exact same JSON bytes are PUT to that URL with the checksum in an
   X-Amz-Checksum-Sha256 header, so the object store verifies that the
   payload arrived intact.

Presigned URLs are single-use and short-lived, so a failed upload is never
retried here; callers retry by calling put_snapshot again.
"""

import base64
import hashlib
import io
import json
from typing import Callable, Optional
from urllib.parse import urlencode

import httpx

from .audit_logger import AuditLogger
from .enums import LogLevel, UploadPhase
from .exceptions import (
    ConfigurationError,
    DiscoAgentError,
    ResponseParseError,
    UploadError,
)
from .models import PresignedUpload, Snapshot
from .responses import open_response, read_error_body, read_limited_json
from .telemetry import Telemetry

# Path of the snapshot-links endpoint, which returns an AWS presigned URL
API_PATH_SNAPSHOT_LINKS = "/ingestions/kubernetes/snapshot-links"

MAX_RETRIEVE_PRESIGNED_UPLOAD_URL_BODY_BYTES = 10 * 1024

UPLOAD_TYPE = "k8s_snapshot"
VENDOR = "k8s"

COMPONENT = "upload"

# Signs a request and returns the principal the credential belongs to
RequestSigner = Callable[[httpx.Request], str]


class EncodedSnapshot:
    """Serialized snapshot bytes and the SHA-256 digest of exactly those bytes."""

    def __init__(self, body: bytes, digest: bytes) -> None:
        self.body = body
        self.digest = digest

    @property
    def checksum_hex(self) -> str:
        return self.digest.hex()

    @property
    def checksum_base64(self) -> str:
        return base64.b64encode(self.digest).decode("ascii")

    @property
    def size(self) -> int:
        return len(self.body)


def encode_snapshot(snapshot: Snapshot) -> EncodedSnapshot:
    """
    Serialize a snapshot to JSON and hash it in the same pass.

    Each chunk produced by the encoder is written to the body buffer and
    fed to the hash, so the digest covers precisely the bytes that are
    uploaded. The document ends with a newline.

    Raises:
        UploadError: If the snapshot holds a value JSON can't represent,
            such as NaN or infinity
    """
    buffer = io.BytesIO()
    hasher = hashlib.sha256()

    encoder = json.JSONEncoder(ensure_ascii=False, allow_nan=False, separators=(",", ":"))
    try:
        for chunk in encoder.iterencode(snapshot.to_dict()):
            data = chunk.encode("utf-8")
            buffer.write(data)
            hasher.update(data)
    except (TypeError, ValueError) as e:
        raise UploadError(
            f"failed to encode snapshot as JSON: {e}",
            details={"cluster_id": snapshot.cluster_id},
        ) from e
    buffer.write(b"\n")
    hasher.update(b"\n")

    return EncodedSnapshot(body=buffer.getvalue(), digest=hasher.digest())


def build_tagging_header(
    agent_version: str,
    tenant_id: str,
    cluster_id: str,
    username: str,
) -> str:
    """URL-encoded object tags used for cost and audit attribution."""
    return urlencode(sorted({
        "agent_version": agent_version,
        "tenant_id": tenant_id,
        "upload_type": UPLOAD_TYPE,
        "uploader_id": cluster_id,
        "username": username,
        "vendor": VENDOR,
    }.items()))


class UploadClient:
    """
    Client that uploads snapshots through presigned URLs.

    Requests to the inventory API carry the bearer token from the signer
    and the telemetry header; the PUT to the presigned URL carries neither.
    """

    def __init__(
        self,
        inventory_api: str,
        tenant_id: str,
        sign: RequestSigner,
        telemetry: Telemetry,
        http_client: Optional[httpx.AsyncClient] = None,
        logger: Optional[AuditLogger] = None,
        timeout: float = 60.0,
    ) -> None:
        """
        Initialize the upload client.

        Args:
            inventory_api: Base URL of the Discovery and Context API
            tenant_id: Tenant UUID from service discovery, used as an object tag
            sign: Adds the Authorization header and returns the principal
            telemetry: Telemetry header value for inventory API requests
            http_client: Optional shared HTTP client; one is created if omitted
            logger: Optional audit logger
            timeout: Request timeout in seconds for an owned HTTP client
        """
        self._inventory_api = inventory_api.rstrip("/")
        self._tenant_id = tenant_id
        self._sign = sign
        self._telemetry = telemetry
        self._logger = logger
        self._timeout = timeout

        self._client = http_client
        self._owns_client = http_client is None

    async def __aenter__(self) -> "UploadClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                verify=True,
                timeout=httpx.Timeout(self._timeout),
            )
        return self._client

    async def put_snapshot(self, snapshot: Snapshot) -> None:
        """
        Upload a snapshot to object storage via a presigned URL.

        Args:
            snapshot: The snapshot to upload; cluster_id must be set

        Raises:
            ConfigurationError: If the snapshot has no cluster ID
            UploadError: If either phase fails, with the cause chained
        """
        if snapshot.cluster_id == "":
            raise ConfigurationError(
                "programmer mistake: the snapshot cluster ID cannot be left empty"
            )

        encoded = encode_snapshot(snapshot)
        agent_version = snapshot.agent_version or self._telemetry.agent_version

        self._log(LogLevel.INFO, "uploading snapshot", {
            "cluster_id": snapshot.cluster_id,
            "size_bytes": encoded.size,
            "checksum_sha256": encoded.checksum_hex,
        })

        try:
            presigned, username = await self._retrieve_presigned_upload_url(
                cluster_id=snapshot.cluster_id,
                checksum_hex=encoded.checksum_hex,
                agent_version=agent_version,
                file_size=encoded.size,
            )
        except DiscoAgentError as e:
            raise self._phase_error(UploadPhase.RETRIEVE_URL, "while retrieving snapshot upload URL", e) from e

        try:
            await self._put_object(presigned, encoded, snapshot.cluster_id, agent_version, username)
        except DiscoAgentError as e:
            raise self._phase_error(UploadPhase.PUT_OBJECT, "while uploading snapshot", e) from e

        self._log(LogLevel.INFO, "uploaded snapshot", {
            "cluster_id": snapshot.cluster_id,
            "size_bytes": encoded.size,
        })

    def _phase_error(self, phase: UploadPhase, context: str, error: DiscoAgentError) -> UploadError:
        details = {"phase": phase.value, "cause": error.to_dict()}
        if "status_code" in error.details:
            details["status_code"] = error.details["status_code"]
        wrapped = UploadError(f"{context}: {error.message}", details=details)
        if self._logger:
            self._logger.log_error(COMPONENT, "snapshot upload failed", error=wrapped,
                                   additional_data={"phase": phase.value})
        return wrapped

    async def _retrieve_presigned_upload_url(
        self,
        cluster_id: str,
        checksum_hex: str,
        agent_version: str,
        file_size: int,
    ) -> tuple[PresignedUpload, str]:
        client = self._http()
        request = client.build_request(
            "POST",
            self._inventory_api + API_PATH_SNAPSHOT_LINKS,
            content=json.dumps({
                "cluster_id": cluster_id,
                "checksum_sha256": checksum_hex,
                "agent_version": agent_version,
                "file_size": file_size,
            }).encode("utf-8"),
            headers={
                "Content-Type": "application/json",
                "User-Agent": self._telemetry.user_agent,
            },
        )

        try:
            username = self._sign(request)
        except DiscoAgentError as e:
            raise UploadError(f"failed to authenticate request: {e.message}") from e

        self._telemetry.apply(request)

        async with open_response(client, request, "snapshot-links") as response:
            if not response.is_success:
                body = await read_error_body(response)
                raise UploadError(
                    f"received response with status code {response.status_code}: {body}",
                    details={"status_code": response.status_code},
                )
            decoded = await read_limited_json(
                response,
                MAX_RETRIEVE_PRESIGNED_UPLOAD_URL_BODY_BYTES,
                "start data upload",
            )

        url = decoded.get("url") if isinstance(decoded, dict) else None
        if not isinstance(url, str) or not url:
            raise ResponseParseError("snapshot-links response did not contain a presigned URL")

        self._log(LogLevel.DEBUG, "retrieved presigned upload URL", {"cluster_id": cluster_id})
        return PresignedUpload(url=url), username

    async def _put_object(
        self,
        presigned: PresignedUpload,
        encoded: EncodedSnapshot,
        cluster_id: str,
        agent_version: str,
        username: str,
    ) -> None:
        client = self._http()
        request = client.build_request(
            "PUT",
            presigned.url,
            content=encoded.body,
            headers={
                "X-Amz-Checksum-Sha256": encoded.checksum_base64,
                "X-Amz-Server-Side-Encryption": "AES256",
                "X-Amz-Tagging": build_tagging_header(
                    agent_version=agent_version,
                    tenant_id=self._tenant_id,
                    cluster_id=cluster_id,
                    username=username,
                ),
                "User-Agent": self._telemetry.user_agent,
            },
        )

        async with open_response(client, request, "presigned upload URL") as response:
            if not response.is_success:
                body = await read_error_body(response)
                raise UploadError(
                    f"received response with status code {response.status_code}: {body}",
                    details={"status_code": response.status_code},
                )

    def _log(self, level: LogLevel, message: str, data: dict) -> None:
        if self._logger:
            self._logger.log(level, COMPONENT, message, data)

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
