"""
The only places where azlite touches the network or spawns processes. Everything else
takes one of these as a constructor argument so that tests can swap in fakes.
"""
from __future__ import annotations

import asyncio
import asyncio.subprocess
import dataclasses
import json
import subprocess
from typing import Any, Awaitable, Callable, Mapping, Optional, Union

import aiohttp
import multidict
import requests
from typing_extensions import Protocol

from azlite.config import HTTP_TIMEOUT_SECS


class TransportError(Exception):
    """The request could not be sent or the process could not be run"""


@dataclasses.dataclass
class HttpResponse:
    status: int
    headers: multidict.CIMultiDict[str]
    body: bytes = b""

    def __post_init__(self) -> None:
        # so that callers (and tests) can pass a plain dict
        if not isinstance(self.headers, multidict.CIMultiDict):
            self.headers = multidict.CIMultiDict(self.headers)

    @property
    def ok(self) -> bool:
        return self.status < 400

    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> Any:
        return json.loads(self.body)


RequestData = Union[bytes, str, None]


class HttpTransport(Protocol):
    def request(
        self,
        method: str,
        url: str,
        *,
        params: Optional[Mapping[str, str]] = None,
        headers: Optional[Mapping[str, str]] = None,
        data: RequestData = None,
        timeout: float = HTTP_TIMEOUT_SECS,
    ) -> HttpResponse:
        ...


class AsyncHttpTransport(Protocol):
    async def request(
        self,
        method: str,
        url: str,
        *,
        params: Optional[Mapping[str, str]] = None,
        headers: Optional[Mapping[str, str]] = None,
        data: RequestData = None,
        timeout: float = HTTP_TIMEOUT_SECS,
    ) -> HttpResponse:
        ...


class RequestsTransport:
    """Sends each request on its own with requests.request, no pooling"""

    def request(
        self,
        method: str,
        url: str,
        *,
        params: Optional[Mapping[str, str]] = None,
        headers: Optional[Mapping[str, str]] = None,
        data: RequestData = None,
        timeout: float = HTTP_TIMEOUT_SECS,
    ) -> HttpResponse:
        try:
            response = requests.request(
                method, url, params=params, headers=headers, data=data, timeout=timeout
            )
        except requests.RequestException as e:
            raise TransportError(f"{method} {url} failed: {e}") from e

        return HttpResponse(
            response.status_code,
            multidict.CIMultiDict(response.headers),
            response.content,
        )


class AiohttpTransport:
    async def request(
        self,
        method: str,
        url: str,
        *,
        params: Optional[Mapping[str, str]] = None,
        headers: Optional[Mapping[str, str]] = None,
        data: RequestData = None,
        timeout: float = HTTP_TIMEOUT_SECS,
    ) -> HttpResponse:
        try:
            async with aiohttp.request(
                method,
                url,
                params=params,
                headers=headers,
                data=data,
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as response:
                return HttpResponse(
                    response.status,
                    multidict.CIMultiDict(response.headers),
                    await response.read(),
                )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportError(f"{method} {url} failed: {e!r}") from e


@dataclasses.dataclass(frozen=True)
class CompletedCommand:
    returncode: int
    stdout: str
    stderr: str


ProcessRunner = Callable[[str, float], CompletedCommand]
AsyncProcessRunner = Callable[[str, float], Awaitable[CompletedCommand]]


def run_shell_command(command: str, timeout: float) -> CompletedCommand:
    """Runs command with /bin/sh -c, capturing stdout and stderr separately"""
    try:
        result = subprocess.run(
            command,
            shell=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            timeout=timeout,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        raise TransportError(f"Unable to run {command}: {e}") from e

    return CompletedCommand(
        result.returncode,
        result.stdout.decode(errors="replace"),
        result.stderr.decode(errors="replace"),
    )


async def run_shell_command_async(command: str, timeout: float) -> CompletedCommand:
    try:
        proc = await asyncio.subprocess.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise TransportError(f"Unable to run {command}: {e}") from e

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout)
    except asyncio.TimeoutError as e:
        proc.kill()
        await proc.wait()
        raise TransportError(f"{command} did not finish in {timeout}s") from e

    # communicate() only returns once the process has exited
    returncode = proc.returncode if proc.returncode is not None else -1
    return CompletedCommand(
        returncode, stdout.decode(errors="replace"), stderr.decode(errors="replace")
    )
