from __future__ import annotations

import xml.dom.minidom
import xml.parsers.expat
from typing import TYPE_CHECKING, Optional, Type

if TYPE_CHECKING:
    from azlite.azure_core.transport import HttpResponse


class CredentialError(Exception):
    """Base class for everything that can go wrong while getting a token"""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class BadEnvironmentVariable(CredentialError):
    def __init__(self, variable: str):
        super().__init__(f"Environment variable {variable} is not set")
        self.variable = variable


class CredentialConnectionError(CredentialError):
    """
    The identity endpoint could not be reached, or it returned an error status. status
    is None in the first case.
    """

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class CredentialDecodeError(CredentialError):
    pass


class CredentialOtherError(CredentialError):
    """message is whatever diagnostic text we could capture, e.g. stderr from az"""


class StorageError(Exception):
    """A storage request could not be completed"""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class StorageParseError(StorageError, ValueError):
    """The storage API returned something we don't know how to read"""


class AzureRestApiError(StorageError):
    """
    status is the integer http status code. message is the raw body of the response,
    which for the storage APIs is usually an XML document with a Code and a Message.
    code is the Code from that document if we could find it, something like
    "ContainerNotFound".
    """

    def __init__(self, status: int, code: Optional[str], message: str):
        super().__init__(message)
        self.status = status
        self.code = code


class ResourceNotFoundError(AzureRestApiError):
    pass


class ResourceExistsError(AzureRestApiError):
    pass


def _get_code_from_xml(response_text: str) -> Optional[str]:
    try:
        parsed = xml.dom.minidom.parseString(response_text)
    except xml.parsers.expat.ExpatError:
        return None

    code_nodes = parsed.documentElement.getElementsByTagName("Code")
    if code_nodes and code_nodes[0].firstChild is not None:
        return code_nodes[0].firstChild.nodeValue
    return None


def _exception_type_from_code(code: Optional[str]) -> Type[AzureRestApiError]:
    if code in ("ResourceNotFound", "ContainerNotFound", "BlobNotFound"):
        return ResourceNotFoundError
    elif code in ("ContainerAlreadyExists", "BlobAlreadyExists"):
        return ResourceExistsError
    else:
        return AzureRestApiError


def raise_for_status(response: HttpResponse) -> None:
    """
    Like requests' response.raise_for_status, but raises AzureRestApiError with the
    body of the response as the message
    """
    if not response.ok:
        message = response.text()
        code = response.headers.get("x-ms-error-code")
        if code is None and response.headers.get("Content-Type", "").startswith(
            "application/xml"
        ):
            code = _get_code_from_xml(message)

        raise _exception_type_from_code(code)(response.status, code, message)
