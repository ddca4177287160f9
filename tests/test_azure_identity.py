from __future__ import annotations

import asyncio
import datetime
import json
import threading
from typing import List

import pytest

from azlite.azure_core.azure_exceptions import (
    BadEnvironmentVariable,
    CredentialConnectionError,
    CredentialDecodeError,
    CredentialError,
    CredentialOtherError,
)
from azlite.azure_core.azure_identity import (
    AzureCliTokenFetcher,
    CredentialProvider,
    CredentialToken,
    ManagedIdentityTokenFetcher,
    default_credential_provider,
)
from azlite.azure_core.transport import (
    CompletedCommand,
    TransportError,
    run_shell_command,
    run_shell_command_async,
)
from fakes import (
    NOW,
    FakeAsyncProcessRunner,
    FakeAsyncTransport,
    FakeProcessRunner,
    FakeTokenFetcher,
    FakeTransport,
    SlowTokenFetcher,
    ok_response,
)

RESOURCE = "https://storage.azure.com/"


def _provider(fetcher: FakeTokenFetcher) -> CredentialProvider:
    return CredentialProvider(fetcher, clock=lambda: NOW)  # type: ignore[arg-type]


# CredentialProvider. A cached token is only used if it has more than 5 minutes left.
# (Written as expires_at < now - 300, the check would do the opposite: refetch
# far-future tokens and keep long-expired ones. These tests pin down that it doesn't.)


def test_far_future_token_is_served_from_cache() -> None:
    fetcher = FakeTokenFetcher()
    provider = _provider(fetcher)
    provider._cache[RESOURCE] = CredentialToken("cached", NOW + 3600, RESOURCE)

    assert provider.get_access_token(RESOURCE) == "cached"
    assert fetcher.calls == []


@pytest.mark.parametrize("expires_at", [NOW + 299, NOW + 300, NOW, NOW - 3600])
def test_expiring_or_expired_token_is_refetched(expires_at: int) -> None:
    new_token = CredentialToken("new", NOW + 3600, RESOURCE)
    fetcher = FakeTokenFetcher(new_token)
    provider = _provider(fetcher)
    provider._cache[RESOURCE] = CredentialToken("old", expires_at, RESOURCE)

    assert provider.get_access_token(RESOURCE) == "new"
    assert fetcher.calls == [RESOURCE]
    assert provider.cached_token(RESOURCE) is new_token


def test_token_just_outside_margin_is_used() -> None:
    fetcher = FakeTokenFetcher()
    provider = _provider(fetcher)
    provider._cache[RESOURCE] = CredentialToken("cached", NOW + 301, RESOURCE)

    assert provider.get_access_token(RESOURCE) == "cached"
    assert fetcher.calls == []


def test_repeated_calls_fetch_once() -> None:
    fetcher = FakeTokenFetcher(CredentialToken("token", NOW + 3600, RESOURCE))
    provider = _provider(fetcher)

    tokens = [provider.get_access_token(RESOURCE) for _ in range(3)]

    assert tokens == ["token", "token", "token"]
    assert tokens[0] is tokens[1] is tokens[2]
    assert fetcher.calls == [RESOURCE]


def test_resources_are_cached_separately() -> None:
    fetcher = FakeTokenFetcher(
        CredentialToken("storage", NOW + 3600, RESOURCE),
        CredentialToken("graph", NOW + 3600, "https://graph.microsoft.com"),
    )
    provider = _provider(fetcher)

    assert provider.get_access_token(RESOURCE) == "storage"
    assert provider.get_access_token("https://graph.microsoft.com") == "graph"
    assert provider.get_access_token(RESOURCE) == "storage"
    assert len(fetcher.calls) == 2


def test_failed_fetch_leaves_empty_cache_empty() -> None:
    error = CredentialOtherError("az: command not found")
    provider = _provider(FakeTokenFetcher(error))

    with pytest.raises(CredentialOtherError) as exc_info:
        provider.get_access_token(RESOURCE)

    assert exc_info.value is error
    assert provider.cached_token(RESOURCE) is None


def test_failed_fetch_keeps_previous_token() -> None:
    provider = _provider(
        FakeTokenFetcher(CredentialConnectionError("endpoint is down", 503))
    )
    previous = CredentialToken("old", NOW - 10, RESOURCE)
    provider._cache[RESOURCE] = previous

    with pytest.raises(CredentialConnectionError):
        provider.get_access_token(RESOURCE)

    assert provider.cached_token(RESOURCE) is previous


def test_clear_forces_refetch() -> None:
    fetcher = FakeTokenFetcher(
        CredentialToken("first", NOW + 3600, RESOURCE),
        CredentialToken("second", NOW + 3600, RESOURCE),
    )
    provider = _provider(fetcher)

    assert provider.get_access_token(RESOURCE) == "first"
    provider.clear(RESOURCE)
    assert provider.get_access_token(RESOURCE) == "second"


def test_closed_provider_is_unusable() -> None:
    fetcher = FakeTokenFetcher(CredentialToken("token", NOW + 3600, RESOURCE))
    with _provider(fetcher) as provider:
        provider.get_access_token(RESOURCE)

    assert provider.cached_token(RESOURCE) is None
    with pytest.raises(CredentialError):
        provider.get_access_token(RESOURCE)


@pytest.mark.asyncio
async def test_async_uses_same_cache() -> None:
    fetcher = FakeTokenFetcher(CredentialToken("token", NOW + 3600, RESOURCE))
    provider = _provider(fetcher)

    assert await provider.get_access_token_async(RESOURCE) == "token"
    assert provider.get_access_token(RESOURCE) == "token"
    assert fetcher.calls == [RESOURCE]


@pytest.mark.asyncio
async def test_concurrent_async_callers_fetch_once() -> None:
    fetcher = FakeTokenFetcher(CredentialToken("token", NOW + 3600, RESOURCE))
    provider = _provider(fetcher)

    tokens = await asyncio.gather(
        *(provider.get_access_token_async(RESOURCE) for _ in range(5))
    )

    assert tokens == ["token"] * 5
    assert fetcher.calls == [RESOURCE]


def test_concurrent_threads_fetch_once() -> None:
    fetcher = SlowTokenFetcher(CredentialToken("token", NOW + 3600, RESOURCE))
    provider = _provider(fetcher)
    tokens: List[str] = []

    def get_token() -> None:
        tokens.append(provider.get_access_token(RESOURCE))

    threads = [threading.Thread(target=get_token) for _ in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert tokens == ["token"] * 5
    assert fetcher.calls == [RESOURCE]


def test_async_provider_reused_across_event_loops() -> None:
    fetcher = FakeTokenFetcher(
        CredentialToken("first", NOW + 3600, RESOURCE),
        CredentialToken("second", NOW + 3600, RESOURCE),
    )
    provider = _provider(fetcher)

    async def get_tokens() -> List[str]:
        return await asyncio.gather(
            *(provider.get_access_token_async(RESOURCE) for _ in range(5))
        )

    assert asyncio.run(get_tokens()) == ["first"] * 5
    provider.clear()
    assert asyncio.run(get_tokens()) == ["second"] * 5
    assert fetcher.calls == [RESOURCE, RESOURCE]


# ManagedIdentityTokenFetcher

_ENVIRON = {
    "IDENTITY_ENDPOINT": "http://localhost:42356/msi/token",
    "IDENTITY_HEADER": "secret-header",
}


def _managed_identity_body(**overrides: str) -> bytes:
    body = {
        "access_token": "mi-token",
        "expires_on": str(NOW + 3600),
        "resource": RESOURCE,
        "token_type": "Bearer",
        "client_id": "00000000-0000-0000-0000-000000000000",
    }
    body.update(overrides)
    return json.dumps(body).encode()


@pytest.mark.parametrize("missing", ["IDENTITY_ENDPOINT", "IDENTITY_HEADER"])
def test_managed_identity_missing_environment_variable(missing: str) -> None:
    environ = {key: value for key, value in _ENVIRON.items() if key != missing}
    transport = FakeTransport()
    fetcher = ManagedIdentityTokenFetcher(transport=transport, environ=environ)

    with pytest.raises(BadEnvironmentVariable) as exc_info:
        fetcher.fetch(RESOURCE)

    assert exc_info.value.variable == missing
    assert transport.requests == []


def test_managed_identity_reads_os_environ(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("IDENTITY_ENDPOINT", "http://localhost:42356/msi/token")
    monkeypatch.delenv("IDENTITY_HEADER", raising=False)
    transport = FakeTransport()

    with pytest.raises(BadEnvironmentVariable):
        ManagedIdentityTokenFetcher(transport=transport).fetch(RESOURCE)
    assert transport.requests == []


def test_managed_identity_success() -> None:
    transport = FakeTransport(ok_response(_managed_identity_body()))
    fetcher = ManagedIdentityTokenFetcher(transport=transport, environ=_ENVIRON)

    token = fetcher.fetch(RESOURCE)

    assert token == CredentialToken("mi-token", NOW + 3600, RESOURCE)
    (request,) = transport.requests
    assert request["method"] == "GET"
    assert request["url"] == "http://localhost:42356/msi/token"
    assert request["headers"] == {"X-IDENTITY-HEADER": "secret-header"}
    assert request["params"] == {"api-version": "2019-08-01", "resource": RESOURCE}


def test_managed_identity_user_assigned_and_scope() -> None:
    transport = FakeTransport(ok_response(_managed_identity_body()))
    environ = dict(_ENVIRON, AZURE_CLIENT_ID="my-client-id")
    fetcher = ManagedIdentityTokenFetcher(transport=transport, environ=environ)

    token = fetcher.fetch("https://storage.azure.com/.default")

    assert token.resource == "https://storage.azure.com/.default"
    assert transport.requests[0]["params"] == {
        "api-version": "2019-08-01",
        "resource": "https://storage.azure.com",
        "client_id": "my-client-id",
    }


def test_managed_identity_forbidden() -> None:
    transport = FakeTransport(ok_response(b"Forbidden", status=403))
    fetcher = ManagedIdentityTokenFetcher(transport=transport, environ=_ENVIRON)

    with pytest.raises(CredentialConnectionError) as exc_info:
        fetcher.fetch(RESOURCE)
    assert exc_info.value.status == 403


def test_managed_identity_transport_failure() -> None:
    transport = FakeTransport(TransportError("connection refused"))
    fetcher = ManagedIdentityTokenFetcher(transport=transport, environ=_ENVIRON)

    with pytest.raises(CredentialConnectionError) as exc_info:
        fetcher.fetch(RESOURCE)
    assert exc_info.value.status is None


@pytest.mark.parametrize(
    "body",
    [
        b"<html>not json</html>",
        b"[]",
        json.dumps({"access_token": "mi-token", "expires_on": "1"}).encode(),
    ],
)
def test_managed_identity_bad_body(body: bytes) -> None:
    transport = FakeTransport(ok_response(body))
    fetcher = ManagedIdentityTokenFetcher(transport=transport, environ=_ENVIRON)

    with pytest.raises(CredentialDecodeError):
        fetcher.fetch(RESOURCE)


def test_managed_identity_bad_expires_on_is_expired() -> None:
    transport = FakeTransport(ok_response(_managed_identity_body(expires_on="soon")))
    fetcher = ManagedIdentityTokenFetcher(transport=transport, environ=_ENVIRON)

    assert fetcher.fetch(RESOURCE).expires_at == 0


@pytest.mark.asyncio
async def test_managed_identity_async() -> None:
    transport = FakeAsyncTransport(ok_response(_managed_identity_body()))
    fetcher = ManagedIdentityTokenFetcher(async_transport=transport, environ=_ENVIRON)

    token = await fetcher.fetch_async(RESOURCE)

    assert token.access_token == "mi-token"
    assert transport.requests[0]["headers"] == {"X-IDENTITY-HEADER": "secret-header"}


# AzureCliTokenFetcher


def _cli_output(**fields: object) -> str:
    output = {
        "accessToken": "cli-token",
        "expiresOn": str(NOW + 3600),
        "subscription": "sub",
        "tenant": "tenant",
        "tokenType": "Bearer",
    }
    output.update(fields)
    return json.dumps(output)


def test_cli_success() -> None:
    runner = FakeProcessRunner(CompletedCommand(0, _cli_output(), ""))
    fetcher = AzureCliTokenFetcher(run_command=runner)

    token = fetcher.fetch(RESOURCE)

    assert token == CredentialToken("cli-token", NOW + 3600, RESOURCE)
    assert runner.commands == [
        "az account get-access-token --resource https://storage.azure.com/"
    ]


def test_cli_resource_is_quoted() -> None:
    runner = FakeProcessRunner(CompletedCommand(0, _cli_output(), ""))
    AzureCliTokenFetcher(run_command=runner).fetch("x; rm -rf /")

    assert runner.commands == ["az account get-access-token --resource 'x; rm -rf /'"]


def test_cli_command_not_found() -> None:
    runner = FakeProcessRunner(CompletedCommand(1, "", "az: command not found"))
    fetcher = AzureCliTokenFetcher(run_command=runner)

    with pytest.raises(CredentialOtherError) as exc_info:
        fetcher.fetch(RESOURCE)
    assert exc_info.value.message == "az: command not found"
    assert str(exc_info.value) == "az: command not found"


def test_cli_cannot_spawn() -> None:
    runner = FakeProcessRunner(TransportError("Unable to run az: No such file"))
    fetcher = AzureCliTokenFetcher(run_command=runner)

    with pytest.raises(CredentialOtherError, match="No such file"):
        fetcher.fetch(RESOURCE)


@pytest.mark.parametrize(
    "stdout",
    [
        "Please run 'az login' to setup account.",
        json.dumps({"accessToken": "cli-token"}),
        json.dumps({"accessToken": 5, "expiresOn": "1"}),
    ],
)
def test_cli_bad_output(stdout: str) -> None:
    runner = FakeProcessRunner(CompletedCommand(0, stdout, ""))

    with pytest.raises(CredentialDecodeError):
        AzureCliTokenFetcher(run_command=runner).fetch(RESOURCE)


def _shell_fetcher(command: str) -> AzureCliTokenFetcher:
    """Runs command through a real shell instead of az"""
    return AzureCliTokenFetcher(
        run_command=lambda _, timeout: run_shell_command(command, timeout),
        run_command_async=lambda _, timeout: run_shell_command_async(command, timeout),
    )


def test_cli_non_utf8_stderr() -> None:
    fetcher = _shell_fetcher("printf 'Fehler: \\374ber' >&2; exit 1")

    with pytest.raises(CredentialOtherError, match="Fehler: .ber"):
        fetcher.fetch(RESOURCE)


def test_cli_non_utf8_stdout() -> None:
    fetcher = _shell_fetcher("printf '\\377\\376'")

    with pytest.raises(CredentialDecodeError):
        fetcher.fetch(RESOURCE)


@pytest.mark.asyncio
async def test_cli_non_utf8_output_async() -> None:
    with pytest.raises(CredentialOtherError, match="Fehler: .ber"):
        await _shell_fetcher("printf 'Fehler: \\374ber' >&2; exit 1").fetch_async(
            RESOURCE
        )
    with pytest.raises(CredentialDecodeError):
        await _shell_fetcher("printf '\\377\\376'").fetch_async(RESOURCE)


def test_cli_expires_on_formats() -> None:
    runner = FakeProcessRunner(
        CompletedCommand(0, _cli_output(expiresOn="not a time"), ""),
        CompletedCommand(0, _cli_output(expiresOn="2023-01-02 03:04:05.000000"), ""),
        CompletedCommand(
            0, _cli_output(expiresOn="2023-01-02 03:04:05.000000", expires_on=NOW), ""
        ),
    )
    fetcher = AzureCliTokenFetcher(run_command=runner)

    assert fetcher.fetch(RESOURCE).expires_at == 0
    assert (
        fetcher.fetch(RESOURCE).expires_at
        == datetime.datetime(2023, 1, 2, 3, 4, 5).timestamp()
    )
    assert fetcher.fetch(RESOURCE).expires_at == NOW


@pytest.mark.asyncio
async def test_cli_async() -> None:
    runner = FakeAsyncProcessRunner(CompletedCommand(0, _cli_output(), ""))
    fetcher = AzureCliTokenFetcher(run_command_async=runner)

    assert (await fetcher.fetch_async(RESOURCE)).access_token == "cli-token"
    assert len(runner.commands) == 1


# default_credential_provider


def test_default_provider_uses_managed_identity(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("IDENTITY_ENDPOINT", "http://localhost:42356/msi/token")

    provider = default_credential_provider()

    assert isinstance(provider.fetcher, ManagedIdentityTokenFetcher)


def test_default_provider_uses_cli(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("IDENTITY_ENDPOINT", raising=False)
    monkeypatch.setenv("IDENTITY_HEADER", "secret-header")

    provider = default_credential_provider()

    assert isinstance(provider.fetcher, AzureCliTokenFetcher)
