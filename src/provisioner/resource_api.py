"""Resource API client: document pools, search indices, promptlets, chatbots.

This module defines:
- ``ResourceAPI``: the contract the provisioning saga depends on
- ``HttpResourceAPI``: an ``httpx.AsyncClient`` implementation
- ``ResourceAPIError`` and subclasses, convertible to an
  :class:`~provisioner.classification.ErrorResponse`

All requests are tenant scoped (``{base_url}/{tenant}/api{path}``) and carry
the ``x-api-key`` header.  The key itself is never logged.
"""

from __future__ import annotations

import abc
import asyncio
import json
import logging
from collections.abc import Sequence
from typing import Any, TypeVar
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ValidationError

from provisioner.classification import ErrorResponse
from provisioner.models import (
    Chatbot,
    Document,
    DocumentPool,
    Promptlet,
    SearchIndex,
    UploadFile,
)

logger = logging.getLogger(__name__)

API_KEY_HEADER = "x-api-key"
DEFAULT_TIMEOUT_SECONDS = 30.0

# Retry on 429 Too Many Requests and 503 Service Unavailable with exponential backoff.
RATE_LIMIT_RETRY_STATUS_CODES = {429, 503}
RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BASE_BACKOFF_SECONDS = 1.0

ModelT = TypeVar("ModelT", bound=BaseModel)


class ResourceAPIError(RuntimeError):
    """Base error raised by Resource API calls."""

    def to_error_response(self) -> ErrorResponse:
        return ErrorResponse(raw_message=str(self))


class ResourceRequestError(ResourceAPIError):
    """Raised when the Resource API answers with a non-2xx status."""

    def __init__(self, *, method: str, path: str, status_code: int, body: Any = None) -> None:
        self.method = method
        self.path = path
        self.status_code = status_code
        self.body = body
        super().__init__(f"{method} {path} failed with HTTP {status_code}")

    def to_error_response(self) -> ErrorResponse:
        return ErrorResponse(status_code=self.status_code, body=self.body, raw_message=str(self))


class ResourceResponseError(ResourceAPIError):
    """Raised when a 2xx response body does not have the expected shape."""

    def __init__(
        self, *, method: str, path: str, status_code: int, reason: str, body: Any = None
    ) -> None:
        self.method = method
        self.path = path
        self.status_code = status_code
        self.reason = reason
        self.body = body
        super().__init__(f"{method} {path} returned an unexpected body: {reason}")

    def to_error_response(self) -> ErrorResponse:
        return ErrorResponse(status_code=self.status_code, raw_message=str(self))


class ResourceTransportError(ResourceAPIError):
    """Raised when no response could be obtained (connect error, timeout, ...)."""

    def __init__(self, *, method: str, path: str, reason: str) -> None:
        self.method = method
        self.path = path
        self.reason = reason
        super().__init__(f"{method} {path} failed: {reason}")


class ResourceAPI(abc.ABC):
    """Remote operations the provisioning saga relies on."""

    # ---- document pools ----

    @abc.abstractmethod
    async def create_document_pool(self, name: str) -> DocumentPool: ...

    @abc.abstractmethod
    async def delete_document_pool(self, name: str) -> None: ...

    # ---- search indices ----

    @abc.abstractmethod
    async def create_search_index(self, index: SearchIndex) -> SearchIndex: ...

    @abc.abstractmethod
    async def get_search_index(self, name: str) -> SearchIndex: ...

    @abc.abstractmethod
    async def rebuild_search_index(self, name: str) -> None: ...

    @abc.abstractmethod
    async def delete_search_index(self, name: str) -> None: ...

    # ---- promptlets ----

    @abc.abstractmethod
    async def create_promptlet(self, promptlet: Promptlet) -> Promptlet: ...

    @abc.abstractmethod
    async def update_promptlet(self, name: str, promptlet: Promptlet) -> Promptlet: ...

    @abc.abstractmethod
    async def delete_promptlet(self, name: str) -> None: ...

    # ---- chatbots ----

    @abc.abstractmethod
    async def create_chatbot(self, chatbot: Chatbot) -> Chatbot: ...

    @abc.abstractmethod
    async def delete_chatbot(self, name: str) -> None: ...

    # ---- documents ----

    @abc.abstractmethod
    async def list_documents(self, document_pool: str | None = None) -> list[Document]: ...

    @abc.abstractmethod
    async def upload_documents(self, document_pool: str, files: Sequence[UploadFile]) -> None: ...

    @abc.abstractmethod
    async def delete_document(self, name: str) -> None: ...

    async def aclose(self) -> None:
        """Release transport resources."""
        return None


def extract_list_items(payload: Any) -> list[Any]:
    """Return the item list from a list-endpoint response.

    The service answers list requests with a bare array, a page object with a
    ``content`` array, or an object holding the items under some other key.
    """
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        content = payload.get("content")
        if isinstance(content, list):
            return content
        for value in payload.values():
            if isinstance(value, list):
                return value
    return []


class HttpResourceAPI(ResourceAPI):
    """Resource API over HTTP using ``httpx.AsyncClient``.

    Create and update calls return the model that was sent; the service's echo
    varies in shape and is not read.  Bodies of ``get_*``/``list_*`` calls that
    do not fit their model raise :class:`ResourceResponseError`.

    Parameters
    ----------
    base_url:
        Service root, e.g. ``https://assistants.example.com``.
    tenant:
        Tenant path segment.
    api_key:
        Value for the ``x-api-key`` header.
    http_client:
        Optional pre-built client (tests inject one with a ``MockTransport``).
        A client created here is owned and closed by :meth:`aclose`.
    timeout_s:
        Request timeout for an owned client.
    max_retries:
        Retries for 429/503 responses before the error is surfaced.
    """

    def __init__(
        self,
        *,
        base_url: str,
        tenant: str,
        api_key: str,
        http_client: httpx.AsyncClient | None = None,
        timeout_s: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = RATE_LIMIT_MAX_RETRIES,
    ) -> None:
        self._api_root = f"{base_url.rstrip('/')}/{quote(tenant, safe='')}/api"
        self._api_key = api_key
        self._max_retries = max_retries
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout_s)

    async def __aenter__(self) -> HttpResourceAPI:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    def url(self, path: str) -> str:
        normalized_path = path if path.startswith("/") else f"/{path}"
        return f"{self._api_root}{normalized_path}"

    # ------------------------------------------------------------------
    # Request helpers
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: Any = None,
        params: dict[str, Any] | None = None,
        files: list[tuple[str, tuple[str, bytes, str]]] | None = None,
    ) -> Any:
        """Send one request and return the decoded JSON body (``None`` when empty)."""
        _, payload = await self._exchange(
            method, path, json_body=json_body, params=params, files=files
        )
        return payload

    async def _exchange(
        self,
        method: str,
        path: str,
        *,
        json_body: Any = None,
        params: dict[str, Any] | None = None,
        files: list[tuple[str, tuple[str, bytes, str]]] | None = None,
    ) -> tuple[int, Any]:
        response = await self._send_with_retry(
            method, path, json_body=json_body, params=params, files=files
        )

        if response.status_code < 200 or response.status_code >= 300:
            raise ResourceRequestError(
                method=method,
                path=path,
                status_code=response.status_code,
                body=_decode_body(response),
            )

        if response.status_code == 204:
            return response.status_code, None
        return response.status_code, _decode_body(response)

    async def _get_model(self, path: str, model: type[ModelT], name: str) -> ModelT:
        status_code, payload = await self._exchange("GET", path)
        if not isinstance(payload, dict):
            payload = {}
        payload.setdefault("name", name)
        return _parse(model, payload, method="GET", path=path, status_code=status_code)

    async def _list_models(
        self, path: str, model: type[ModelT], *, params: dict[str, Any] | None = None
    ) -> list[ModelT]:
        status_code, payload = await self._exchange("GET", path, params=params)
        return [
            _parse(model, item, method="GET", path=path, status_code=status_code)
            for item in extract_list_items(payload)
            if isinstance(item, dict)
        ]

    async def _send_with_retry(
        self,
        method: str,
        path: str,
        *,
        json_body: Any,
        params: dict[str, Any] | None,
        files: list[tuple[str, tuple[str, bytes, str]]] | None,
    ) -> httpx.Response:
        response = await self._send_once(
            method, path, json_body=json_body, params=params, files=files
        )

        retry = 0
        while response.status_code in RATE_LIMIT_RETRY_STATUS_CODES and retry < self._max_retries:
            backoff = RATE_LIMIT_BASE_BACKOFF_SECONDS * (2**retry)
            if response.status_code == 429:
                retry_after_header = response.headers.get("Retry-After")
                if retry_after_header is not None:
                    try:
                        backoff = float(retry_after_header)
                    except ValueError:
                        pass
            logger.warning(
                "Resource API rate-limited (status=%d) on %s %s, retrying in %.1fs "
                "(attempt %d/%d)",
                response.status_code,
                method,
                path,
                backoff,
                retry + 1,
                self._max_retries,
            )
            await asyncio.sleep(backoff)
            response = await self._send_once(
                method, path, json_body=json_body, params=params, files=files
            )
            retry += 1

        return response

    async def _send_once(
        self,
        method: str,
        path: str,
        *,
        json_body: Any,
        params: dict[str, Any] | None,
        files: list[tuple[str, tuple[str, bytes, str]]] | None,
    ) -> httpx.Response:
        headers = {API_KEY_HEADER: self._api_key}
        try:
            return await self._http_client.request(
                method,
                self.url(path),
                json=json_body,
                params=params,
                files=files,
                headers=headers,
            )
        except httpx.HTTPError as exc:
            raise ResourceTransportError(method=method, path=path, reason=str(exc)) from exc

    # ------------------------------------------------------------------
    # Document pools
    # ------------------------------------------------------------------

    async def list_document_pools(self) -> list[DocumentPool]:
        return await self._list_models("/documentpools", DocumentPool)

    async def create_document_pool(self, name: str) -> DocumentPool:
        pool = DocumentPool(name=name, system_pool=False)
        await self._request("POST", "/documentpools", json_body=pool.to_payload())
        return pool

    async def delete_document_pool(self, name: str) -> None:
        await self._request("DELETE", f"/documentpools/{_segment(name)}")

    # ------------------------------------------------------------------
    # Search indices
    # ------------------------------------------------------------------

    async def list_search_indices(self) -> list[SearchIndex]:
        return await self._list_models("/searchindices", SearchIndex)

    async def create_search_index(self, index: SearchIndex) -> SearchIndex:
        await self._request("POST", "/searchindices", json_body=index.to_payload())
        return index

    async def get_search_index(self, name: str) -> SearchIndex:
        return await self._get_model(f"/searchindices/{_segment(name)}", SearchIndex, name)

    async def rebuild_search_index(self, name: str) -> None:
        await self._request("POST", f"/searchindices/{_segment(name)}/rebuild", json_body={})

    async def delete_search_index(self, name: str) -> None:
        await self._request("DELETE", f"/searchindices/{_segment(name)}")

    # ------------------------------------------------------------------
    # Promptlets
    # ------------------------------------------------------------------

    async def list_promptlets(self) -> list[Promptlet]:
        return await self._list_models("/promptlets", Promptlet)

    async def create_promptlet(self, promptlet: Promptlet) -> Promptlet:
        await self._request("POST", "/promptlets", json_body=promptlet.to_payload())
        return promptlet

    async def get_promptlet(self, name: str) -> Promptlet:
        return await self._get_model(f"/promptlets/{_segment(name)}", Promptlet, name)

    async def update_promptlet(self, name: str, promptlet: Promptlet) -> Promptlet:
        await self._request(
            "PUT", f"/promptlets/{_segment(name)}", json_body=promptlet.to_payload()
        )
        return promptlet

    async def delete_promptlet(self, name: str) -> None:
        await self._request("DELETE", f"/promptlets/{_segment(name)}")

    # ------------------------------------------------------------------
    # Chatbots
    # ------------------------------------------------------------------

    async def list_chatbots(self) -> list[Chatbot]:
        return await self._list_models("/chatbots", Chatbot)

    async def create_chatbot(self, chatbot: Chatbot) -> Chatbot:
        await self._request("POST", "/chatbots", json_body=chatbot.to_payload())
        return chatbot

    async def get_chatbot(self, name: str) -> Chatbot:
        return await self._get_model(f"/chatbots/{_segment(name)}", Chatbot, name)

    async def update_chatbot(self, name: str, chatbot: Chatbot) -> Chatbot:
        await self._request("PUT", f"/chatbots/{_segment(name)}", json_body=chatbot.to_payload())
        return chatbot

    async def delete_chatbot(self, name: str) -> None:
        await self._request("DELETE", f"/chatbots/{_segment(name)}")

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    async def list_documents(self, document_pool: str | None = None) -> list[Document]:
        params = {"documentPool": document_pool} if document_pool else None
        return await self._list_models("/documents", Document, params=params)

    async def upload_documents(self, document_pool: str, files: Sequence[UploadFile]) -> None:
        metadata = json.dumps(
            [
                {
                    "initialDocumentPools": [document_pool],
                    "additionalDocumentPools": [document_pool],
                }
            ]
        )
        parts: list[tuple[str, tuple[str, bytes, str]]] = [
            ("files", (upload.filename, upload.content, upload.content_type)) for upload in files
        ]
        parts.append(("metadata", ("metadata.json", metadata.encode(), "application/json")))
        await self._request("POST", "/documents", files=parts)

    async def delete_document(self, name: str) -> None:
        await self._request("DELETE", f"/documents/{_segment(name)}")


def _segment(value: str) -> str:
    return quote(value, safe="")


def _decode_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


def _parse(
    model: type[ModelT], payload: dict[str, Any], *, method: str, path: str, status_code: int
) -> ModelT:
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise ResourceResponseError(
            method=method,
            path=path,
            status_code=status_code,
            reason=f"{exc.error_count()} invalid field(s) for {model.__name__}",
            body=payload,
        ) from exc
