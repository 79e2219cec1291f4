"""Notes/Tasks REST API 封装（内容同步协议的客户端侧）。

说明：
- 每个 SyncOperation 只对应一次 REST 调用（见 SyncQueueManager）
- PATCH /items/{id} 带 expectedVersion；服务端版本不一致时返回 409，
  body 形如 {serverVersion, serverItem}（也兼容放在 details 里的 ErrorResponse）
- 网络错误/超时/5xx 视为可重试；其它 4xx 视为永久失败
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from flow_sync.schemas_sync import ContentPatch, VersionConflict

logger = logging.getLogger(__name__)


class SyncClientError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientNetworkError(SyncClientError):
    """Fetch failure, timeout, 408/429/5xx. Retry candidate."""


class PermanentClientError(SyncClientError):
    """4xx other than 409, or a malformed operation. Never retried."""


class VersionConflictError(SyncClientError):
    """409 version mismatch. Never retried automatically."""

    def __init__(self, message: str, *, conflict: VersionConflict) -> None:
        super().__init__(message, status_code=409)
        self.conflict = conflict


_TRANSIENT_STATUS = {408, 425, 429}


def _error_message(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return f"HTTP {resp.status_code} {resp.text}".strip()
    if isinstance(data, dict):
        for field in ("message", "error"):
            value = data.get(field)
            if isinstance(value, str) and value:
                return value
    return f"HTTP {resp.status_code}"


def parse_version_conflict(
    item_id: str, body: object, *, client_version: int | None
) -> VersionConflict | None:
    """Extract {serverVersion, serverItem} from a 409 body.

    Common shapes:
    - {"serverVersion": 5, "serverItem": {...}}
    - {"error": "conflict", "message": "...", "details": {"serverVersion": 5, ...}}
    """
    if not isinstance(body, dict):
        return None
    candidates: list[dict[str, Any]] = [body]
    details = body.get("details")
    if isinstance(details, dict):
        candidates.append(details)
    for data in candidates:
        server_version = data.get("serverVersion")
        if isinstance(server_version, bool) or not isinstance(server_version, int):
            continue
        server_item = data.get("serverItem")
        return VersionConflict(
            item_id=item_id,
            client_version=client_version,
            server_version=server_version,
            server_item=server_item if isinstance(server_item, dict) else {},
        )
    return None


class SyncApiClient:
    def __init__(
        self,
        base_url: str,
        *,
        token: str = "",
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._token = token.strip()
        self._timeout = timeout_seconds
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        if not self._token:
            return {}
        return {"Authorization": f"Bearer {self._token}"}

    async def _send(self, method: str, path: str, payload: dict[str, Any] | None) -> httpx.Response:
        url = f"{self._base_url}{path}"
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            return await client.request(method, url, headers=self._headers(), json=payload)

    async def _request(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None = None,
        *,
        conflict_item_id: str | None = None,
        client_version: int | None = None,
    ) -> dict[str, Any]:
        try:
            # httpx timeouts are per phase; wait_for bounds the whole request.
            resp = await asyncio.wait_for(self._send(method, path, payload), timeout=self._timeout)
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise TransientNetworkError(f"{method} {path} timed out") from exc
        except httpx.TransportError as exc:
            raise TransientNetworkError(f"{method} {path} network error: {exc}") from exc

        if 200 <= resp.status_code < 300:
            if resp.status_code == 204 or not resp.content:
                return {}
            try:
                data = resp.json()
            except ValueError as exc:
                raise PermanentClientError(
                    f"{method} {path} succeeded but cannot parse response",
                    status_code=resp.status_code,
                ) from exc
            if isinstance(data, dict):
                return data
            return {"data": data}

        message = _error_message(resp)
        if resp.status_code == 409 and conflict_item_id is not None:
            try:
                body: object = resp.json()
            except ValueError:
                body = None
            conflict = parse_version_conflict(
                conflict_item_id, body, client_version=client_version
            )
            if conflict is not None:
                raise VersionConflictError(message, conflict=conflict)

        if resp.status_code >= 500 or resp.status_code in _TRANSIENT_STATUS:
            raise TransientNetworkError(
                f"{method} {path} failed. {resp.status_code} {message}",
                status_code=resp.status_code,
            )
        raise PermanentClientError(
            f"{method} {path} failed. {resp.status_code} {message}",
            status_code=resp.status_code,
        )

    # Notes
    async def create_note(self, data: dict[str, Any]) -> dict[str, Any]:
        return await self._request("POST", "/notes", data)

    async def update_note(self, note_id: str, data: dict[str, Any]) -> dict[str, Any]:
        return await self._request("PUT", f"/notes/{note_id}", data)

    async def delete_note(self, note_id: str) -> dict[str, Any]:
        return await self._request("DELETE", f"/notes/{note_id}")

    # Tasks
    async def create_task(self, data: dict[str, Any]) -> dict[str, Any]:
        return await self._request("POST", "/tasks", data)

    async def update_task(self, task_id: str, data: dict[str, Any]) -> dict[str, Any]:
        return await self._request("PUT", f"/tasks/{task_id}", data)

    async def delete_task(self, task_id: str) -> dict[str, Any]:
        return await self._request("DELETE", f"/tasks/{task_id}")

    # Content sync
    async def patch_item(self, item_id: str, patch: ContentPatch) -> dict[str, Any]:
        payload = patch.model_dump(by_alias=True, exclude_none=True)
        logger.debug("PATCH /items/%s content_len=%d", item_id, len(patch.content))
        return await self._request(
            "PATCH",
            f"/items/{item_id}",
            payload,
            conflict_item_id=item_id,
            client_version=patch.expected_version,
        )
