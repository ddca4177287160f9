from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import Optional, Sequence

from azlite.azure_core.azure_exceptions import CredentialError, StorageError
from azlite.azure_core.azure_identity import default_credential_provider
from azlite.azure_core.azure_storage_api import StorageClient
from azlite.config import EnvironmentVariables


def _get_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="azlite", description="Work with containers and blobs in Azure Storage"
    )
    parser.add_argument(
        "--account-url",
        help="The blob endpoint of the storage account, e.g. "
        "https://<account>.blob.core.windows.net/. Defaults to "
        f"${EnvironmentVariables.AZLITE_ACCOUNT_URL}",
    )
    parser.add_argument(
        "--account-name",
        help="The name of the storage account, used if --account-url is not "
        f"provided. Defaults to ${EnvironmentVariables.AZLITE_ACCOUNT_NAME}",
    )
    parser.add_argument("--verbose", "-v", action="store_true")

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("list-containers", help="Lists the containers")

    create_container_parser = subparsers.add_parser(
        "create-container", help="Creates a container"
    )
    create_container_parser.add_argument("container")

    delete_container_parser = subparsers.add_parser(
        "delete-container", help="Deletes a container and everything in it"
    )
    delete_container_parser.add_argument("container")

    list_blobs_parser = subparsers.add_parser(
        "list-blobs", help="Lists the blobs in a container"
    )
    list_blobs_parser.add_argument("container")
    list_blobs_parser.add_argument(
        "--prefix", help="Only list blobs whose names start with this"
    )

    get_blob_parser = subparsers.add_parser(
        "get-blob", help="Downloads a blob, by default to stdout"
    )
    get_blob_parser.add_argument("container")
    get_blob_parser.add_argument("blob")
    get_blob_parser.add_argument("--output", "-o", help="The file to write to")

    put_blob_parser = subparsers.add_parser(
        "put-blob", help="Uploads a local file as a block blob"
    )
    put_blob_parser.add_argument("container")
    put_blob_parser.add_argument("blob")
    put_blob_parser.add_argument("file")

    delete_blob_parser = subparsers.add_parser(
        "delete-blob",
        help="Deletes a blob, prints whether the delete was soft or permanent",
    )
    delete_blob_parser.add_argument("container")
    delete_blob_parser.add_argument("blob")

    return parser


def _get_account_url(args: argparse.Namespace) -> Optional[str]:
    account_url = args.account_url or os.environ.get(
        EnvironmentVariables.AZLITE_ACCOUNT_URL
    )
    if account_url:
        return account_url

    account_name = args.account_name or os.environ.get(
        EnvironmentVariables.AZLITE_ACCOUNT_NAME
    )
    if account_name:
        return f"https://{account_name}.blob.core.windows.net/"

    return None


def _run_command(args: argparse.Namespace, client: StorageClient) -> None:
    if args.command == "list-containers":
        for container in client.list_containers():
            print(container.name)
    elif args.command == "create-container":
        client.create_container(args.container)
        print(f"Created container {args.container}")
    elif args.command == "delete-container":
        client.delete_container(args.container)
        print(f"Deleted container {args.container}")
    elif args.command == "list-blobs":
        for blob in client.list_blobs(args.container, args.prefix):
            print(f"{blob.name}\t{blob.last_modified.isoformat()}")
    elif args.command == "get-blob":
        content = client.get_blob(args.container, args.blob)
        if args.output:
            with open(args.output, "wb") as file:
                file.write(content.data)
        else:
            sys.stdout.buffer.write(content.data)
            sys.stdout.buffer.flush()
    elif args.command == "put-blob":
        with open(args.file, "rb") as file:
            data = file.read()
        client.put_blob(args.container, args.blob, data)
        print(f"Uploaded {len(data)} bytes to {args.container}/{args.blob}")
    elif args.command == "delete-blob":
        print(client.delete_blob(args.container, args.blob).value)
    else:
        raise ValueError(f"Unrecognized command: {args.command}")


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = _get_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    account_url = _get_account_url(args)
    if account_url is None:
        parser.error(
            "One of --account-url, --account-name, "
            f"${EnvironmentVariables.AZLITE_ACCOUNT_URL} or "
            f"${EnvironmentVariables.AZLITE_ACCOUNT_NAME} must be provided"
        )

    with default_credential_provider() as credential_provider:
        client = StorageClient(credential_provider, account_url)
        try:
            _run_command(args, client)
        except (CredentialError, StorageError, OSError) as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)


if __name__ == "__main__":
    main()
