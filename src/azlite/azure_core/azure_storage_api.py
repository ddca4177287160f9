from __future__ import annotations

import dataclasses
import datetime
import enum
import logging
import urllib.parse
import xml.dom.minidom
import xml.parsers.expat
from typing import Any, Dict, List, Optional

from azlite.azure_core.azure_exceptions import (
    StorageError,
    StorageParseError,
    raise_for_status,
)
from azlite.azure_core.azure_identity import CredentialProvider
from azlite.azure_core.transport import (
    AiohttpTransport,
    AsyncHttpTransport,
    HttpResponse,
    HttpTransport,
    RequestsTransport,
    TransportError,
)
from azlite.config import (
    HTTP_TIMEOUT_SECS,
    RFC1123_FORMAT,
    STORAGE_API_VERSION,
    STORAGE_RESOURCE,
)


@dataclasses.dataclass(frozen=True)
class ContainerInfo:
    name: str


@dataclasses.dataclass(frozen=True)
class BlobInfo:
    name: str
    last_modified: datetime.datetime
    creation_time: datetime.datetime
    content_length: Optional[int] = None


class BlobType(enum.Enum):
    BLOCK = "BlockBlob"
    PAGE = "PageBlob"
    APPEND = "AppendBlob"


@dataclasses.dataclass(frozen=True)
class BlobContent:
    data: bytes
    blob_type: BlobType
    last_modified: Optional[datetime.datetime]


class DeleteType(enum.Enum):
    # the blob can still be undeleted until the retention period runs out
    SOFT = "soft"
    PERMANENT = "permanent"


def _get_now_rfc1123() -> str:
    """
    This is a specific datetime format required by the storage APIs. We don't use
    strftime because %a and %b depend on the locale.
    """
    # Based on
    # https://github.com/Azure/azure-sdk-for-python/blob/1d5096eb1bc8cbd77223ecc7a628738a5f88751c/sdk/storage/azure-storage-file-datalake/azure/storage/filedatalake/_serialize.py#L45
    dt = datetime.datetime.now(datetime.timezone.utc)

    weekday = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"][dt.weekday()]
    month = [
        "Jan",
        "Feb",
        "Mar",
        "Apr",
        "May",
        "Jun",
        "Jul",
        "Aug",
        "Sep",
        "Oct",
        "Nov",
        "Dec",
    ][dt.month - 1]
    return (
        f"{weekday}, {dt.day:02d} {month} {dt.year:04d} "
        f"{dt.hour:02d}:{dt.minute:02d}:{dt.second:02d} GMT"
    )


def _parse_rfc1123(value: str) -> datetime.datetime:
    return datetime.datetime.strptime(value, RFC1123_FORMAT).replace(
        tzinfo=datetime.timezone.utc
    )


def _url_path(container: Optional[str], blob: Optional[str]) -> str:
    if container is None:
        return ""
    path = urllib.parse.quote(container, safe="")
    if blob is not None:
        # slashes in blob names are "virtual directories" and stay as they are
        path += "/" + urllib.parse.quote(blob, safe="/")
    return path


def _prepare_request(
    method: str,
    base_url: str,
    token: str,
    container: Optional[str],
    blob: Optional[str],
    *,
    query_parameters: Optional[Dict[str, str]] = None,
    additional_headers: Optional[Dict[str, str]] = None,
    data: Optional[bytes] = None,
    timeout: float = HTTP_TIMEOUT_SECS,
) -> Dict[str, Any]:
    headers = {
        "Authorization": f"Bearer {token}",
        "x-ms-version": STORAGE_API_VERSION,
        "Date": _get_now_rfc1123(),
    }
    if additional_headers:
        headers.update(additional_headers)

    return {
        "method": method,
        "url": base_url + _url_path(container, blob),
        "params": query_parameters,
        "headers": headers,
        "data": data,
        "timeout": timeout,
    }


def _child_elements(node: Any, name: str) -> List[Any]:
    return [child for child in node.childNodes if child.nodeName == name]


def _child_element(node: Any, name: str) -> Any:
    children = _child_elements(node, name)
    if len(children) != 1:
        raise ValueError(f"Expected exactly one {name} in {node.nodeName}")
    return children[0]


def _text(node: Any) -> str:
    return "".join(
        child.nodeValue
        for child in node.childNodes
        if child.nodeType == child.TEXT_NODE
    )


def _parse_enumeration_results(body: bytes) -> Any:
    root_node = xml.dom.minidom.parseString(body).documentElement
    if root_node.nodeName != "EnumerationResults":
        raise ValueError("Expected root element to be EnumerationResults")
    return root_node


def _parse_container_list(body: bytes) -> List[ContainerInfo]:
    # https://learn.microsoft.com/en-us/rest/api/storageservices/list-containers2
    try:
        containers_node = _child_element(
            _parse_enumeration_results(body), "Containers"
        )
        return [
            ContainerInfo(_text(_child_element(container_node, "Name")))
            for container_node in _child_elements(containers_node, "Container")
        ]
    except (ValueError, xml.parsers.expat.ExpatError) as e:
        raise StorageParseError(
            f"Cannot parse container list XML ({e}): "
            + body.decode("utf-8", errors="replace")
        ) from e


def _parse_blob_list(body: bytes) -> List[BlobInfo]:
    # https://learn.microsoft.com/en-us/rest/api/storageservices/list-blobs
    try:
        blobs_node = _child_element(_parse_enumeration_results(body), "Blobs")
        results = []
        for blob_node in _child_elements(blobs_node, "Blob"):
            properties_node = _child_element(blob_node, "Properties")
            content_length_nodes = _child_elements(properties_node, "Content-Length")
            results.append(
                BlobInfo(
                    _text(_child_element(blob_node, "Name")),
                    _parse_rfc1123(
                        _text(_child_element(properties_node, "Last-Modified"))
                    ),
                    _parse_rfc1123(
                        _text(_child_element(properties_node, "Creation-Time"))
                    ),
                    int(_text(content_length_nodes[0]))
                    if content_length_nodes
                    else None,
                )
            )
        return results
    except (ValueError, xml.parsers.expat.ExpatError) as e:
        raise StorageParseError(
            f"Cannot parse blob list XML ({e}): "
            + body.decode("utf-8", errors="replace")
        ) from e


def _blob_content_from_response(response: HttpResponse) -> BlobContent:
    blob_type_header = response.headers.get("x-ms-blob-type")
    if blob_type_header == BlobType.PAGE.value:
        blob_type = BlobType.PAGE
    elif blob_type_header == BlobType.APPEND.value:
        blob_type = BlobType.APPEND
    else:
        blob_type = BlobType.BLOCK

    last_modified_header = response.headers.get("Last-Modified")
    if last_modified_header is None:
        last_modified = None
    else:
        try:
            last_modified = _parse_rfc1123(last_modified_header)
        except ValueError as e:
            raise StorageParseError(
                f"Cannot parse Last-Modified header {last_modified_header}"
            ) from e

    return BlobContent(response.body, blob_type, last_modified)


def _delete_type_from_response(response: HttpResponse) -> DeleteType:
    if response.headers.get("x-ms-delete-type-permanent") == "false":
        return DeleteType.SOFT
    return DeleteType.PERMANENT


_CONTAINER_PARAMETERS = {"restype": "container"}


def _list_blobs_parameters(prefix: Optional[str]) -> Dict[str, str]:
    parameters = {"restype": "container", "comp": "list"}
    if prefix:
        parameters["prefix"] = prefix
    return parameters


def _put_blob_headers(data: bytes) -> Dict[str, str]:
    return {
        "x-ms-blob-type": BlobType.BLOCK.value,
        "Content-Length": str(len(data)),
        "Content-Type": "application/octet-stream",
    }


class _StorageClientBase:
    def __init__(
        self,
        credential_provider: CredentialProvider,
        base_url: str,
        timeout: float = HTTP_TIMEOUT_SECS,
    ):
        # the provider is shared with whoever else uses it, we don't close it
        self._credential_provider = credential_provider
        if not base_url.endswith("/"):
            base_url += "/"
        self._base_url = base_url
        self._timeout = timeout


class StorageClient(_StorageClientBase):
    """
    Supports the blob storage APIs for listing, creating and deleting containers and
    listing, getting, putting and deleting blobs. base_url is the blob endpoint of a
    storage account, e.g. https://<account>.blob.core.windows.net/
    """

    def __init__(
        self,
        credential_provider: CredentialProvider,
        base_url: str,
        transport: Optional[HttpTransport] = None,
        timeout: float = HTTP_TIMEOUT_SECS,
    ):
        super().__init__(credential_provider, base_url, timeout)
        self._transport = transport or RequestsTransport()

    def _request(
        self,
        method: str,
        container: Optional[str] = None,
        blob: Optional[str] = None,
        *,
        query_parameters: Optional[Dict[str, str]] = None,
        additional_headers: Optional[Dict[str, str]] = None,
        data: Optional[bytes] = None,
    ) -> HttpResponse:
        token = self._credential_provider.get_access_token(STORAGE_RESOURCE)
        request = _prepare_request(
            method,
            self._base_url,
            token,
            container,
            blob,
            query_parameters=query_parameters,
            additional_headers=additional_headers,
            data=data,
            timeout=self._timeout,
        )
        logging.debug(f"{method} {request['url']}")
        try:
            response = self._transport.request(**request)
        except TransportError as e:
            raise StorageError(str(e)) from e
        raise_for_status(response)
        return response

    def list_containers(self) -> List[ContainerInfo]:
        return _parse_container_list(
            self._request("GET", query_parameters={"comp": "list"}).body
        )

    def create_container(self, container: str) -> None:
        # https://learn.microsoft.com/en-us/rest/api/storageservices/create-container
        self._request("PUT", container, query_parameters=_CONTAINER_PARAMETERS)

    def delete_container(self, container: str) -> None:
        self._request("DELETE", container, query_parameters=_CONTAINER_PARAMETERS)

    def list_blobs(
        self, container: str, prefix: Optional[str] = None
    ) -> List[BlobInfo]:
        return _parse_blob_list(
            self._request(
                "GET", container, query_parameters=_list_blobs_parameters(prefix)
            ).body
        )

    def get_blob(self, container: str, blob: str) -> BlobContent:
        return _blob_content_from_response(self._request("GET", container, blob))

    def put_blob(self, container: str, blob: str, data: bytes) -> None:
        # https://learn.microsoft.com/en-us/rest/api/storageservices/put-blob
        self._request(
            "PUT",
            container,
            blob,
            additional_headers=_put_blob_headers(data),
            data=data,
        )

    def delete_blob(self, container: str, blob: str) -> DeleteType:
        return _delete_type_from_response(self._request("DELETE", container, blob))


class AsyncStorageClient(_StorageClientBase):
    """The same as StorageClient, but with aiohttp"""

    def __init__(
        self,
        credential_provider: CredentialProvider,
        base_url: str,
        transport: Optional[AsyncHttpTransport] = None,
        timeout: float = HTTP_TIMEOUT_SECS,
    ):
        super().__init__(credential_provider, base_url, timeout)
        self._transport = transport or AiohttpTransport()

    async def _request(
        self,
        method: str,
        container: Optional[str] = None,
        blob: Optional[str] = None,
        *,
        query_parameters: Optional[Dict[str, str]] = None,
        additional_headers: Optional[Dict[str, str]] = None,
        data: Optional[bytes] = None,
    ) -> HttpResponse:
        token = await self._credential_provider.get_access_token_async(
            STORAGE_RESOURCE
        )
        request = _prepare_request(
            method,
            self._base_url,
            token,
            container,
            blob,
            query_parameters=query_parameters,
            additional_headers=additional_headers,
            data=data,
            timeout=self._timeout,
        )
        logging.debug(f"{method} {request['url']}")
        try:
            response = await self._transport.request(**request)
        except TransportError as e:
            raise StorageError(str(e)) from e
        raise_for_status(response)
        return response

    async def list_containers(self) -> List[ContainerInfo]:
        response = await self._request("GET", query_parameters={"comp": "list"})
        return _parse_container_list(response.body)

    async def create_container(self, container: str) -> None:
        await self._request("PUT", container, query_parameters=_CONTAINER_PARAMETERS)

    async def delete_container(self, container: str) -> None:
        await self._request(
            "DELETE", container, query_parameters=_CONTAINER_PARAMETERS
        )

    async def list_blobs(
        self, container: str, prefix: Optional[str] = None
    ) -> List[BlobInfo]:
        response = await self._request(
            "GET", container, query_parameters=_list_blobs_parameters(prefix)
        )
        return _parse_blob_list(response.body)

    async def get_blob(self, container: str, blob: str) -> BlobContent:
        return _blob_content_from_response(
            await self._request("GET", container, blob)
        )

    async def put_blob(self, container: str, blob: str, data: bytes) -> None:
        await self._request(
            "PUT",
            container,
            blob,
            additional_headers=_put_blob_headers(data),
            data=data,
        )

    async def delete_blob(self, container: str, blob: str) -> DeleteType:
        return _delete_type_from_response(
            await self._request("DELETE", container, blob)
        )
