"""Durable persistence layer for board objects (REST over HTTP)."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any

import aiohttp
from pydantic import ValidationError

from board_sync.core.board_object import SharedObject, changes_to_patch
from board_sync.storage.models import BoardObjectModel, MutationResponse

logger = logging.getLogger(__name__)


class PersistenceError(Exception):
    """A persistence call failed or the server answered with an error."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404


class ObjectPersistence(ABC):
    """Contract of the slow, durable store behind the realtime channel.

    Every call may take network latency and may fail by raising
    :class:`PersistenceError`. Calls are safe to retry.
    """

    @abstractmethod
    async def fetch_all(self, board_id: str) -> list[SharedObject]:
        """Full authoritative object set for the board."""

    @abstractmethod
    async def create(self, obj: SharedObject) -> None:
        """Insert a new object."""

    @abstractmethod
    async def patch(self, board_id: str, object_id: str, changes: dict[str, Any]) -> None:
        """Apply a partial update (attribute names) to an existing object."""

    @abstractmethod
    async def delete(self, board_id: str, object_id: str) -> None:
        """Remove an object."""


class HttpObjectPersistence(ObjectPersistence):
    """
    aiohttp client for the board objects REST API.

    Endpoints:
        GET    /api/boards/{board_id}/objects
        POST   /api/boards/{board_id}/objects
        PATCH  /api/boards/{board_id}/objects/{object_id}
        DELETE /api/boards/{board_id}/objects/{object_id}

    Usage:
        async with HttpObjectPersistence("http://localhost:3000", token=t) as api:
            objects = await api.fetch_all("board-1")
    """

    def __init__(
        self,
        api_url: str,
        *,
        token: str | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._api_url = api_url.rstrip("/")
        self._token = token
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: aiohttp.ClientSession | None = None

    @property
    def api_url(self) -> str:
        return self._api_url

    async def connect(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> HttpObjectPersistence:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        await self.close()

    def _get_headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_data: dict[str, Any] | None = None,
    ) -> Any:
        if not self._session:
            await self.connect()

        assert self._session is not None

        url = f"{self._api_url}{path}"
        try:
            async with self._session.request(
                method, url, json=json_data, headers=self._get_headers()
            ) as response:
                if response.status >= 400:
                    text = await response.text()
                    raise PersistenceError(
                        f"{method} {path} failed: {text}", status_code=response.status
                    )
                if response.content_type == "application/json":
                    return await response.json()
                return None
        except aiohttp.ClientError as e:
            raise PersistenceError(f"Connection error: {e}") from e

    @staticmethod
    def _objects_path(board_id: str) -> str:
        return f"/api/boards/{board_id}/objects"

    async def fetch_all(self, board_id: str) -> list[SharedObject]:
        data = await self._request("GET", self._objects_path(board_id))
        if not isinstance(data, list):
            raise PersistenceError("Unexpected response for object list")

        objects: list[SharedObject] = []
        for raw in data:
            try:
                objects.append(BoardObjectModel.model_validate(raw).to_shared_object())
            except ValidationError:
                logger.warning("Skipping malformed object in board %s: %r", board_id, raw)
        return objects

    async def _mutate(
        self,
        method: str,
        path: str,
        *,
        json_data: dict[str, Any] | None = None,
    ) -> None:
        """Run a create/patch/delete; a JSON body with ``ok: false`` is a failure."""
        data = await self._request(method, path, json_data=json_data)
        if not isinstance(data, dict):
            return
        try:
            result = MutationResponse.model_validate(data)
        except ValidationError:
            return
        if not result.ok:
            raise PersistenceError(f"{method} {path} rejected: {result.error or 'unknown error'}")

    async def create(self, obj: SharedObject) -> None:
        await self._mutate("POST", self._objects_path(obj.board_id), json_data=obj.to_dict())

    async def patch(self, board_id: str, object_id: str, changes: dict[str, Any]) -> None:
        await self._mutate(
            "PATCH",
            f"{self._objects_path(board_id)}/{object_id}",
            json_data=changes_to_patch(changes),
        )

    async def delete(self, board_id: str, object_id: str) -> None:
        await self._mutate("DELETE", f"{self._objects_path(board_id)}/{object_id}")
