from __future__ import annotations

import asyncio
import dataclasses
import datetime
import json
import logging
import os
import shlex
import threading
import time
from typing import Any, Callable, Dict, Mapping, Optional, Union

from azlite.azure_core.azure_exceptions import (
    BadEnvironmentVariable,
    CredentialConnectionError,
    CredentialDecodeError,
    CredentialError,
    CredentialOtherError,
)
from azlite.azure_core.transport import (
    AiohttpTransport,
    AsyncHttpTransport,
    AsyncProcessRunner,
    CompletedCommand,
    HttpResponse,
    HttpTransport,
    ProcessRunner,
    RequestsTransport,
    TransportError,
    run_shell_command,
    run_shell_command_async,
)
from azlite.config import (
    CLI_TOKEN_COMMAND_LINE,
    CLI_TOKEN_EXPIRES_ON_FORMAT,
    CLI_TOKEN_TIMEOUT_SECS,
    MANAGED_IDENTITY_API_VERSION,
    MANAGED_IDENTITY_SECRET_HEADER,
    MANAGED_IDENTITY_TIMEOUT_SECS,
    TOKEN_REFRESH_MARGIN_SECS,
    EnvironmentVariables,
)


@dataclasses.dataclass(frozen=True)
class CredentialToken:
    access_token: str
    # unix seconds
    expires_at: int
    resource: str


def _scope_to_resource(scope: str) -> str:
    """
    Based on
    https://github.com/Azure/azure-sdk-for-python/blob/83964018f39b7702659d208cd2640f5eea7400fc/sdk/identity/azure-identity/azure/identity/_internal/__init__.py#L97

    which says "Convert an AADv2 scope to an AADv1 resource"
    """
    if scope.endswith("/.default"):
        return scope[: -len("/.default")]
    else:
        return scope


def _parse_unix_seconds(value: str) -> Optional[int]:
    try:
        return int(value)
    except ValueError:
        return None


# based on
# https://github.com/Azure/azure-sdk-for-python/blob/main/sdk/identity/azure-identity/azure/identity/_credentials/app_service.py


class ManagedIdentityTokenFetcher:
    """
    Gets tokens from the endpoint that App Service, Functions, Container Apps, etc.
    expose to the code running on them via IDENTITY_ENDPOINT and IDENTITY_HEADER.
    """

    def __init__(
        self,
        transport: Optional[HttpTransport] = None,
        async_transport: Optional[AsyncHttpTransport] = None,
        environ: Optional[Mapping[str, str]] = None,
        timeout: float = MANAGED_IDENTITY_TIMEOUT_SECS,
    ):
        self._transport = transport or RequestsTransport()
        self._async_transport = async_transport or AiohttpTransport()
        # None means read os.environ at the time of each fetch
        self._environ = environ
        self._timeout = timeout

    def _prepare_request(self, resource: str) -> Dict[str, Any]:
        environ = self._environ if self._environ is not None else os.environ

        url = environ.get(EnvironmentVariables.IDENTITY_ENDPOINT)
        if not url:
            raise BadEnvironmentVariable(EnvironmentVariables.IDENTITY_ENDPOINT)
        secret = environ.get(EnvironmentVariables.IDENTITY_HEADER)
        if not secret:
            raise BadEnvironmentVariable(EnvironmentVariables.IDENTITY_HEADER)

        parameters = {
            "api-version": MANAGED_IDENTITY_API_VERSION,
            "resource": _scope_to_resource(resource),
        }
        # only needed for user-assigned identities
        azure_client_id = environ.get(EnvironmentVariables.AZURE_CLIENT_ID)
        if azure_client_id:
            parameters["client_id"] = azure_client_id

        return {
            "method": "GET",
            "url": url,
            "params": parameters,
            "headers": {MANAGED_IDENTITY_SECRET_HEADER: secret},
            "timeout": self._timeout,
        }

    def fetch(self, resource: str) -> CredentialToken:
        request_parameters = self._prepare_request(resource)
        logging.info(f"Getting a managed identity token for {resource}")
        try:
            response = self._transport.request(**request_parameters)
        except TransportError as e:
            raise CredentialConnectionError(str(e)) from e
        return _decode_managed_identity_response(response, resource)

    async def fetch_async(self, resource: str) -> CredentialToken:
        request_parameters = self._prepare_request(resource)
        logging.info(f"Getting a managed identity token for {resource}")
        try:
            response = await self._async_transport.request(**request_parameters)
        except TransportError as e:
            raise CredentialConnectionError(str(e)) from e
        return _decode_managed_identity_response(response, resource)


_MANAGED_IDENTITY_FIELDS = (
    "access_token",
    "expires_on",
    "resource",
    "token_type",
    "client_id",
)


def _decode_managed_identity_response(
    response: HttpResponse, resource: str
) -> CredentialToken:
    if not response.ok:
        raise CredentialConnectionError(
            f"Managed identity endpoint returned {response.status}: "
            + response.text(),
            response.status,
        )

    try:
        response_json = response.json()
    except ValueError as e:
        raise CredentialDecodeError(
            f"Managed identity endpoint returned invalid JSON: {e}"
        ) from e

    if not isinstance(response_json, dict):
        raise CredentialDecodeError(
            "Managed identity endpoint returned JSON that was not an object"
        )
    for field in _MANAGED_IDENTITY_FIELDS:
        if not isinstance(response_json.get(field), str):
            raise CredentialDecodeError(
                f"Managed identity response is missing the {field} field"
            )

    expires_at = _parse_unix_seconds(response_json["expires_on"])
    if expires_at is None:
        logging.warning(
            f"Could not parse expires_on {response_json['expires_on']}, treating the "
            "token as expired"
        )
        expires_at = 0

    return CredentialToken(response_json["access_token"], expires_at, resource)


# roughly based on
# https://github.com/Azure/azure-sdk-for-python/blob/main/sdk/identity/azure-identity/azure/identity/_credentials/azure_cli.py


class AzureCliTokenFetcher:
    """Gets tokens for whoever is logged in to the Azure CLI (az login)"""

    def __init__(
        self,
        run_command: ProcessRunner = run_shell_command,
        run_command_async: AsyncProcessRunner = run_shell_command_async,
        timeout: float = CLI_TOKEN_TIMEOUT_SECS,
    ):
        self._run_command = run_command
        self._run_command_async = run_command_async
        self._timeout = timeout

    @staticmethod
    def command_line(resource: str) -> str:
        return CLI_TOKEN_COMMAND_LINE.format(
            shlex.quote(_scope_to_resource(resource))
        )

    def fetch(self, resource: str) -> CredentialToken:
        logging.info(f"Getting an Azure CLI token for {resource}")
        try:
            result = self._run_command(self.command_line(resource), self._timeout)
        except TransportError as e:
            raise CredentialOtherError(str(e)) from e
        return _decode_cli_output(result, resource)

    async def fetch_async(self, resource: str) -> CredentialToken:
        logging.info(f"Getting an Azure CLI token for {resource}")
        try:
            result = await self._run_command_async(
                self.command_line(resource), self._timeout
            )
        except TransportError as e:
            raise CredentialOtherError(str(e)) from e
        return _decode_cli_output(result, resource)


def _cli_expires_at(json_output: Dict[str, Any]) -> int:
    # newer versions of the CLI also give us expires_on as an integer, which avoids
    # guessing the time zone
    expires_on = json_output.get("expires_on")
    if isinstance(expires_on, int) and not isinstance(expires_on, bool):
        return expires_on

    value = json_output["expiresOn"]
    expires_at = _parse_unix_seconds(value)
    if expires_at is not None:
        return expires_at

    # according to https://github.com/Azure/azure-sdk-for-net/issues/15801
    # this will be a local datetime
    try:
        return int(
            datetime.datetime.strptime(value, CLI_TOKEN_EXPIRES_ON_FORMAT).timestamp()
        )
    except ValueError:
        logging.warning(f"Could not parse expiresOn {value}, treating it as expired")
        return 0


def _decode_cli_output(result: CompletedCommand, resource: str) -> CredentialToken:
    if result.returncode != 0:
        raise CredentialOtherError(
            result.stderr.strip()
            or f"az account get-access-token exited with status {result.returncode}"
        )

    try:
        json_output = json.loads(result.stdout)
    except ValueError as e:
        raise CredentialDecodeError(f"Unable to parse Azure CLI output: {e}") from e

    if not isinstance(json_output, dict):
        raise CredentialDecodeError("Azure CLI output was not a JSON object")
    for field in ("accessToken", "expiresOn"):
        if not isinstance(json_output.get(field), str):
            raise CredentialDecodeError(f"Azure CLI output is missing {field}")

    return CredentialToken(
        json_output["accessToken"], _cli_expires_at(json_output), resource
    )


TokenFetcher = Union[ManagedIdentityTokenFetcher, AzureCliTokenFetcher]


class CredentialProvider:
    """
    Hands out access tokens from a single TokenFetcher, caching one token per resource
    until it is within refresh_margin_secs of expiring.

    Refreshing a resource is serialized, so concurrent callers asking for the same
    resource will only cause one fetch. get_access_token and get_access_token_async
    share the same cache but not the same locks.
    """

    def __init__(
        self,
        fetcher: TokenFetcher,
        clock: Callable[[], float] = time.time,
        refresh_margin_secs: float = TOKEN_REFRESH_MARGIN_SECS,
    ):
        self._fetcher = fetcher
        self._clock = clock
        self._refresh_margin_secs = refresh_margin_secs
        self._cache: Dict[str, CredentialToken] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_lock = threading.Lock()
        self._async_locks: Dict[str, asyncio.Lock] = {}
        self._async_locks_loop: Optional[asyncio.AbstractEventLoop] = None
        self._closed = False

    @property
    def fetcher(self) -> TokenFetcher:
        return self._fetcher

    def _check_open(self) -> None:
        if self._closed:
            raise CredentialError("CredentialProvider has been closed")

    def _get_valid_cached(self, resource: str) -> Optional[str]:
        self._check_open()
        token = self._cache.get(resource)
        if (
            token is not None
            and token.expires_at > self._clock() + self._refresh_margin_secs
        ):
            logging.debug(f"Using cached token for {resource}")
            return token.access_token
        return None

    def _store(self, resource: str, token: CredentialToken) -> str:
        self._check_open()
        self._cache[resource] = token
        return token.access_token

    def _lock_for(self, resource: str) -> threading.Lock:
        with self._locks_lock:
            return self._locks.setdefault(resource, threading.Lock())

    def get_access_token(self, resource: str) -> str:
        access_token = self._get_valid_cached(resource)
        if access_token is not None:
            return access_token

        with self._lock_for(resource):
            # someone else may have refreshed the token while we were waiting
            access_token = self._get_valid_cached(resource)
            if access_token is not None:
                return access_token

            # if this raises, the cache keeps whatever it had before
            return self._store(resource, self._fetcher.fetch(resource))

    async def get_access_token_async(self, resource: str) -> str:
        access_token = self._get_valid_cached(resource)
        if access_token is not None:
            return access_token

        # asyncio.Lock binds to the loop that first waits on it, so a new loop (e.g. a
        # second asyncio.run) gets a fresh set of locks
        loop = asyncio.get_running_loop()
        if loop is not self._async_locks_loop:
            self._async_locks = {}
            self._async_locks_loop = loop
        lock = self._async_locks.setdefault(resource, asyncio.Lock())
        async with lock:
            access_token = self._get_valid_cached(resource)
            if access_token is not None:
                return access_token

            return self._store(resource, await self._fetcher.fetch_async(resource))

    def cached_token(self, resource: str) -> Optional[CredentialToken]:
        """Returns the cached token for resource whether or not it has expired"""
        return self._cache.get(resource)

    def clear(self, resource: Optional[str] = None) -> None:
        if resource is None:
            self._cache.clear()
        else:
            self._cache.pop(resource, None)

    def close(self) -> None:
        self._cache.clear()
        self._locks.clear()
        self._async_locks.clear()
        self._async_locks_loop = None
        self._closed = True

    def __enter__(self) -> CredentialProvider:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


def default_credential_provider() -> CredentialProvider:
    """
    Uses managed identity if we're running somewhere that provides it (i.e.
    IDENTITY_ENDPOINT is set), otherwise the Azure CLI. There is no fallback from one
    to the other.
    """
    if os.environ.get(EnvironmentVariables.IDENTITY_ENDPOINT):
        logging.debug("IDENTITY_ENDPOINT is set, using managed identity")
        return CredentialProvider(ManagedIdentityTokenFetcher())
    else:
        return CredentialProvider(AzureCliTokenFetcher())
