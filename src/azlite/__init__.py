from azlite.azure_core.azure_exceptions import (
    AzureRestApiError,
    BadEnvironmentVariable,
    CredentialConnectionError,
    CredentialDecodeError,
    CredentialError,
    CredentialOtherError,
    ResourceExistsError,
    ResourceNotFoundError,
    StorageError,
    StorageParseError,
)
from azlite.azure_core.azure_identity import (
    AzureCliTokenFetcher,
    CredentialProvider,
    CredentialToken,
    ManagedIdentityTokenFetcher,
    TokenFetcher,
    default_credential_provider,
)
from azlite.azure_core.azure_storage_api import (
    AsyncStorageClient,
    BlobContent,
    BlobInfo,
    BlobType,
    ContainerInfo,
    DeleteType,
    StorageClient,
)

__all__ = [
    "AsyncStorageClient",
    "AzureCliTokenFetcher",
    "AzureRestApiError",
    "BadEnvironmentVariable",
    "BlobContent",
    "BlobInfo",
    "BlobType",
    "ContainerInfo",
    "CredentialConnectionError",
    "CredentialDecodeError",
    "CredentialError",
    "CredentialOtherError",
    "CredentialProvider",
    "CredentialToken",
    "DeleteType",
    "ManagedIdentityTokenFetcher",
    "ResourceExistsError",
    "ResourceNotFoundError",
    "StorageClient",
    "StorageError",
    "StorageParseError",
    "TokenFetcher",
    "default_credential_provider",
]
