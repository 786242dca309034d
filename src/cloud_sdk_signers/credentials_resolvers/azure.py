#  Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
#  SPDX-License-Identifier: Apache-2.0
import json
import logging
from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from typing import Final

from .._http import URI, Field, Fields, encode_query
from ..config import ConfigStore, ResolverContext
from ..credentials import (
    DEFAULT_EXPIRE_THRESHOLD,
    AccessToken,
    AzureCredentials,
    ResolvedAzureCredentials,
    SASToken,
    SharedKey,
)
from ..exceptions import CloudHTTPError, CredentialsRetrievalException
from .container import USER_AGENT_FIELD, get_metadata
from .environment import (
    azure_config_file,
    azure_environment_variables,
    azure_vm_environment_variables,
)
from .imds import can_connect

logger: Final = logging.getLogger(__name__)

AZURE_VM_TOKEN_PATH: Final = "/metadata/identity/oauth2/token"
AZURE_VM_API_VERSION: Final = "2018-02-01"
AZURE_STORAGE_RESOURCE: Final = "https://storage.azure.com/"

# Store keys forwarded to the identity endpoint to select a managed identity.
_IDENTITY_SELECTORS: Final = ("object_id", "client_id", "mi_res_id")


class AzureVMCredentialsSource:
    """A Storage access token for the managed identity of an Azure VM.

    The identity endpoint is probed on every resolution. An unreachable endpoint
    or an unparseable response contributes nothing.
    """

    def __init__(self, context: ResolverContext):
        self._context = context

    def load(self, store: ConfigStore) -> Mapping[str, str]:
        base = URI.from_string(self._context.azure_vm_host)
        port = base.port or (443 if base.scheme == "https" else 80)
        if not can_connect(base.host, port, self._context.probe_timeout):
            logger.debug("Azure VM identity endpoint %s is unreachable", base.host)
            return {}

        params = [
            ("api-version", AZURE_VM_API_VERSION),
            ("resource", AZURE_STORAGE_RESOURCE),
        ]
        params.extend(
            (key, value) for key in _IDENTITY_SELECTORS if (value := store.get(key))
        )
        uri = URI(
            scheme=base.scheme,
            host=base.host,
            port=base.port,
            path=AZURE_VM_TOKEN_PATH,
            query=encode_query(params),
        )
        fields = Fields([USER_AGENT_FIELD, Field(name="Metadata", values=["true"])])
        try:
            body = get_metadata(self._context.get_metadata_http_client(), uri, fields)
            document = json.loads(body)
        except (CloudHTTPError, CredentialsRetrievalException, ValueError) as e:
            logger.debug("Unable to load Azure VM credentials: %s", e)
            return {}
        if not isinstance(document, Mapping) or not document.get("access_token"):
            logger.debug("Azure VM identity response has no access_token")
            return {}
        values = {"access_token": str(document["access_token"])}
        if expires_on := document.get("expires_on"):
            values["expiration"] = str(expires_on)
        return values


def parse_unix_expiration(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromtimestamp(int(float(value)), UTC)
    except (ValueError, OverflowError) as e:
        raise CredentialsRetrievalException(
            f"Invalid token expiration {value!r}."
        ) from e


class AzureCredentialsResolver:
    """Walks the Azure credential chain.

    Sources, from highest to lowest precedence, are the managed identity hints
    in the environment, the ``AZURE_*`` environment variables, the ``[defaults]``
    and ``[storage]`` sections of ``~/.azure/config`` and finally the VM identity
    endpoint. The first available of a SAS token, an access token and a shared
    key is used. With none of them the credentials are anonymous.

    :param context: The environment, files and HTTP clients to resolve against.
    """

    def __init__(self, context: ResolverContext | None = None):
        self._context = context or ResolverContext()

    def resolve(self) -> ResolvedAzureCredentials:
        context = self._context
        store = ConfigStore().load(
            azure_vm_environment_variables(context),
            azure_environment_variables(context),
            *azure_config_file(context),
        )
        store.fill(AzureVMCredentialsSource(context))

        if sas_token := store.get("sas_token"):
            return ResolvedAzureCredentials(auth=SASToken(sas_token))
        if access_token := store.get("access_token"):
            return ResolvedAzureCredentials(
                auth=AccessToken(access_token),
                expiration=parse_unix_expiration(store.get("expiration")),
            )
        account, key = store.get("account", ""), store.get("key", "")
        if not key:
            logger.debug("No Azure credentials found, using anonymous access")
        return ResolvedAzureCredentials(auth=SharedKey(account, key))


def load_azure_credentials(
    *,
    context: ResolverContext | None = None,
    expire_threshold: timedelta = DEFAULT_EXPIRE_THRESHOLD,
) -> AzureCredentials:
    """Resolve Azure credentials and bind them to the same chain for refreshing."""
    resolver = AzureCredentialsResolver(context)
    return AzureCredentials.from_resolved(
        resolver.resolve(),
        expire_threshold=expire_threshold,
        refresh_using=resolver.resolve,
    )
