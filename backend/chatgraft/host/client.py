"""HTTP client for the host chat application's REST API.

Wraps an httpx.AsyncClient. Every failed request surfaces as NetworkError.
Conversation reads and completion bodies can pass through an ordered list of
interceptors; internal reads are raw unless a caller asks otherwise.
"""

import logging
import re
from typing import Any
from urllib.parse import urlsplit
from uuid import uuid4

import httpx

from chatgraft.models import HostedFile, InlineAttachment, SandboxFile

logger = logging.getLogger(__name__)

DIRECT_UPLOAD_EXTENSIONS = ("png", "jpg", "jpeg", "gif", "webp", "svg", "pdf")

MIME_TYPES = {
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "gif": "image/gif",
    "webp": "image/webp",
    "svg": "image/svg+xml",
    "pdf": "application/pdf",
}

STREAM_END_MARKER = "event: message_stop"

SANDBOX_SCHEME = "sandbox://"

EXPORT_STORAGE_URL = re.compile(r"https://storage\.googleapis\.com/user-data-export-production/[^\"\s]+")


class NetworkError(Exception):
    """Raised when a request to the host fails or returns an error status."""

    def __init__(self, operation: str, detail: str, status_code: int | None = None) -> None:
        self.operation = operation
        self.status_code = status_code
        super().__init__(f"{operation} failed: {detail}")


class ConversationInterceptor:
    """Hook into conversation reads and completion requests.

    Subclasses override what they need; the defaults pass data through.
    """

    async def on_conversation(self, conversation_id: str, data: dict[str, Any]) -> dict[str, Any]:
        return data

    async def on_completion(self, conversation_id: str, body: dict[str, Any]) -> dict[str, Any]:
        return body


def sandbox_locator(conversation_id: str, path: str) -> str:
    """Internal download locator for a file inside a conversation's sandbox."""
    return f"{SANDBOX_SCHEME}{conversation_id}/{path.lstrip('/')}"


def parse_sandbox_locator(locator: str) -> tuple[str, str]:
    """Split a sandbox locator into (conversation id, absolute path)."""
    rest = locator[len(SANDBOX_SCHEME):]
    conversation_id, _, path = rest.partition("/")
    return conversation_id, "/" + path


class HostClient:
    """Organization-scoped access to conversations and files on the host."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        org_id: str,
        interceptors: list[ConversationInterceptor] | None = None,
    ) -> None:
        self._http = http
        self.org_id = org_id
        self.interceptors: list[ConversationInterceptor] = list(interceptors or [])

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _conversations_url(self, conversation_id: str | None = None) -> str:
        base = f"/api/organizations/{self.org_id}/chat_conversations"
        return f"{base}/{conversation_id}" if conversation_id else base

    async def _request(self, operation: str, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._http.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise NetworkError(operation, str(e) or type(e).__name__) from e
        if response.is_error:
            raise NetworkError(operation, f"HTTP {response.status_code}", response.status_code)
        return response

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def create_conversation(
        self,
        name: str,
        *,
        model: str | None = None,
        project_uuid: str | None = None,
        paprika_mode: bool = False,
    ) -> str:
        """Create a conversation and return its id."""
        conversation_id = str(uuid4())
        body: dict[str, Any] = {
            "uuid": conversation_id,
            "name": name,
            "include_conversation_preferences": True,
            "project_uuid": project_uuid,
        }
        if model:
            body["model"] = model
        if paprika_mode:
            body["paprika_mode"] = "extended"
        await self._request("create conversation", "POST", self._conversations_url(), json=body)
        logger.info("Created conversation %s (%s)", conversation_id, name)
        return conversation_id

    async def list_conversations(self) -> list[dict[str, Any]]:
        response = await self._request("list conversations", "GET", self._conversations_url())
        return response.json()

    async def get_conversation(
        self,
        conversation_id: str,
        *,
        tree: bool = False,
        apply_interceptors: bool = False,
    ) -> dict[str, Any]:
        """Fetch a conversation's data, optionally as the full message tree."""
        response = await self._request(
            "get conversation",
            "GET",
            self._conversations_url(conversation_id),
            params={
                "tree": "true" if tree else "false",
                "rendering_mode": "messages",
                "render_all_tools": "true",
                "skip_uuid_injection": "true",
            },
        )
        data = response.json()
        if apply_interceptors:
            for interceptor in self.interceptors:
                data = await interceptor.on_conversation(conversation_id, data)
        return data

    async def send_completion(self, conversation_id: str, body: dict[str, Any]) -> None:
        """Post a completion request and read the stream until it ends."""
        for interceptor in self.interceptors:
            body = await interceptor.on_completion(conversation_id, body)

        url = f"{self._conversations_url(conversation_id)}/completion"
        try:
            async with self._http.stream("POST", url, json=body) as response:
                if response.is_error:
                    await response.aread()
                    raise NetworkError(
                        "send completion",
                        f"HTTP {response.status_code}: {response.text[:200]}",
                        response.status_code,
                    )
                tail = ""
                async for chunk in response.aiter_text():
                    window = tail + chunk
                    if STREAM_END_MARKER in window:
                        break
                    tail = window[-len(STREAM_END_MARKER):]
        except httpx.HTTPError as e:
            raise NetworkError("send completion", str(e) or type(e).__name__) from e

    async def set_current_leaf(self, conversation_id: str, leaf_id: str) -> None:
        await self._request(
            "set current leaf",
            "PUT",
            f"{self._conversations_url(conversation_id)}/current_leaf_message_uuid",
            json={"current_leaf_message_uuid": leaf_id},
        )

    async def delete_conversation(self, conversation_id: str) -> bool:
        """Delete a conversation. Failure is logged, not raised."""
        try:
            await self._request("delete conversation", "DELETE", self._conversations_url(conversation_id))
        except NetworkError as e:
            logger.warning("Failed to delete conversation %s: %s", conversation_id, e)
            return False
        return True

    # ------------------------------------------------------------------
    # Data export
    # ------------------------------------------------------------------

    async def request_data_export(self) -> str:
        """Ask the host to prepare a full account export. Returns its nonce."""
        response = await self._request(
            "request data export", "POST", f"/api/organizations/{self.org_id}/export_data", json={},
        )
        nonce = response.json().get("nonce")
        if not nonce:
            raise NetworkError("request data export", "response carries no nonce")
        logger.info("Requested data export %s", nonce)
        return nonce

    async def poll_data_export(self, nonce: str) -> str | None:
        """Storage URL of a finished export, or None while it is being prepared."""
        response = await self._request(
            "poll data export", "GET", f"/export/{self.org_id}/download/{nonce}",
        )
        match = EXPORT_STORAGE_URL.search(response.text)
        if match is None:
            return None
        return match.group(0).replace("\\u0026", "&")

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    async def upload_file(self, data: bytes, file_name: str) -> HostedFile | InlineAttachment:
        """Upload to the hosted file store.

        Images and PDFs are stored as binary files; anything else goes
        through document conversion and comes back as an inline attachment.
        """
        ext = file_name.lower().rsplit(".", 1)[-1]
        if ext in DIRECT_UPLOAD_EXTENSIONS:
            mime = MIME_TYPES.get(ext, "application/octet-stream")
            response = await self._request(
                "upload file", "POST", f"/api/{self.org_id}/upload",
                files={"file": (file_name, data, mime)},
            )
            return HostedFile.model_validate(response.json())

        response = await self._request(
            "convert document", "POST", f"/api/{self.org_id}/convert_document",
            files={"file": (file_name, data, "application/octet-stream")},
        )
        return InlineAttachment.model_validate(response.json())

    async def upload_to_sandbox(self, conversation_id: str, data: bytes, file_name: str) -> SandboxFile:
        """Upload into a conversation's code-execution sandbox."""
        response = await self._request(
            "upload to sandbox",
            "POST",
            f"/api/organizations/{self.org_id}/conversations/{conversation_id}/wiggle/upload-file",
            files={"file": (file_name, data, "application/octet-stream")},
        )
        return SandboxFile.model_validate({**response.json(), "conversation_id": conversation_id})

    async def download(self, locator: str) -> bytes:
        """Download bytes from an asset URL or a sandbox locator."""
        if locator.startswith(SANDBOX_SCHEME):
            conversation_id, path = parse_sandbox_locator(locator)
            response = await self._request(
                "download sandbox file",
                "GET",
                f"/api/organizations/{self.org_id}/conversations/{conversation_id}/wiggle/download-file",
                params={"path": path},
            )
            return response.content

        if not urlsplit(locator).scheme and not locator.startswith("/"):
            locator = "/" + locator
        response = await self._request("download file", "GET", locator)
        return response.content
