# Constants shared by the identity and storage code. Runtime configuration otherwise
# comes from environment variables (see EnvironmentVariables) and constructor arguments.

# https://learn.microsoft.com/en-us/rest/api/storageservices/versioning-for-the-azure-storage-services
STORAGE_API_VERSION = "2024-11-04"
STORAGE_RESOURCE = "https://storage.azure.com/"

# the App Service flavor of managed identity
MANAGED_IDENTITY_API_VERSION = "2019-08-01"
MANAGED_IDENTITY_SECRET_HEADER = "X-IDENTITY-HEADER"
MANAGED_IDENTITY_TIMEOUT_SECS = 10

# a cached token is only handed out if it is valid for at least this much longer
TOKEN_REFRESH_MARGIN_SECS = 5 * 60

CLI_TOKEN_COMMAND_LINE = "az account get-access-token --resource {}"
CLI_TOKEN_TIMEOUT_SECS = 10
# what older versions of the Azure CLI put in expiresOn, in local time
CLI_TOKEN_EXPIRES_ON_FORMAT = "%Y-%m-%d %H:%M:%S.%f"

HTTP_TIMEOUT_SECS = 60

# the format of Last-Modified and Creation-Time in storage responses
RFC1123_FORMAT = "%a, %d %b %Y %H:%M:%S GMT"


class EnvironmentVariables:
    IDENTITY_ENDPOINT = "IDENTITY_ENDPOINT"
    IDENTITY_HEADER = "IDENTITY_HEADER"
    AZURE_CLIENT_ID = "AZURE_CLIENT_ID"

    # only read by the command line
    AZLITE_ACCOUNT_URL = "AZLITE_ACCOUNT_URL"
    AZLITE_ACCOUNT_NAME = "AZLITE_ACCOUNT_NAME"
