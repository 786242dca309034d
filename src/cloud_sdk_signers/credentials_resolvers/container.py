#  Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
#  SPDX-License-Identifier: Apache-2.0
import json
import logging
from collections.abc import Mapping
from types import MappingProxyType
from typing import Any, Final

from .. import __version__
from .._http import URI, Field, Fields, HTTPRequest
from ..config import ConfigStore, ResolverContext
from ..exceptions import CloudHTTPError, CredentialsRetrievalException
from ..interfaces.http import HTTPClient

logger: Final = logging.getLogger(__name__)

RELATIVE_URI_ENV_VAR: Final = "AWS_CONTAINER_CREDENTIALS_RELATIVE_URI"

USER_AGENT_FIELD: Final = Field(
    name="User-Agent", values=[f"cloud-sdk-signers/{__version__}"]
)

# The ``RoleArn`` in a metadata document names the role whose credentials the
# document already holds. It is kept as ``source_role_arn`` because a
# ``role_arn`` would make the chain assume that same role again through STS.
METADATA_CREDENTIAL_KEYS: Final = MappingProxyType(
    {
        "AccessKeyId": "aws_access_key_id",
        "SecretAccessKey": "aws_secret_access_key",
        "Token": "aws_session_token",
        "Expiration": "expiration",
        "RoleArn": "source_role_arn",
    }
)


def credential_values(document: Mapping[str, Any]) -> dict[str, str]:
    """Rename the fields of a metadata credentials document to config keys."""
    return {
        key: str(document[name])
        for name, key in METADATA_CREDENTIAL_KEYS.items()
        if document.get(name)
    }


def get_metadata(
    http_client: HTTPClient, uri: URI, fields: Fields | None = None
) -> bytes:
    """Send a GET to a metadata endpoint and return the body of a 200 response."""
    request = HTTPRequest(destination=uri, fields=fields or Fields([USER_AGENT_FIELD]))
    response = http_client.send(request)
    if response.status != 200:
        raise CredentialsRetrievalException(
            f"Metadata request to {uri.build()} failed with status {response.status}.",
            status=response.status,
        )
    return response.body


class ContainerCredentialsSource:
    """Credentials served to ECS tasks by the container agent.

    The source is only consulted when ``AWS_CONTAINER_CREDENTIALS_RELATIVE_URI``
    is set. Failures are logged and contribute nothing.
    """

    def __init__(self, context: ResolverContext):
        self._context = context

    def load(self, store: ConfigStore) -> Mapping[str, str]:
        relative_uri = self._context.environ.get(RELATIVE_URI_ENV_VAR)
        if not relative_uri:
            return {}
        uri = URI.from_string(f"{self._context.ecs_host}{relative_uri}")
        try:
            body = get_metadata(self._context.get_metadata_http_client(), uri)
            document = json.loads(body)
        except (CloudHTTPError, CredentialsRetrievalException, ValueError) as e:
            logger.debug("Unable to load container credentials: %s", e)
            return {}
        if not isinstance(document, Mapping):
            logger.debug("Container credentials response is not a JSON object")
            return {}
        return credential_values(document)
