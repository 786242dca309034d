#  Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
#  SPDX-License-Identifier: Apache-2.0
import json
import logging
import socket
from collections.abc import Mapping
from typing import Final

from .._http import URI, Field, Fields, HTTPRequest
from ..config import ConfigStore, ResolverContext
from ..exceptions import CloudHTTPError, CredentialsRetrievalException
from .container import USER_AGENT_FIELD, credential_values, get_metadata

logger: Final = logging.getLogger(__name__)

TOKEN_TTL_SECONDS: Final = 21600


def can_connect(host: str, port: int, timeout: float) -> bool:
    """Whether a TCP connection to ``host:port`` is accepted within ``timeout``."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


class InstanceMetadataCredentialsSource:
    """Credentials and region of the role attached to an EC2 instance.

    The metadata host is probed first so that resolution off EC2 does not wait
    on HTTP timeouts. A session token is requested before reading metadata and
    the token-less protocol is used when the service does not issue one.
    """

    _TOKEN_PATH = "/latest/api/token"  # noqa: S105
    _METADATA_PATH_BASE = "/latest/meta-data/iam/security-credentials/"
    _REGION_PATH = "/latest/meta-data/placement/region"

    def __init__(self, context: ResolverContext):
        self._context = context

    def load(self, store: ConfigStore) -> Mapping[str, str]:
        host, port = self._context.ec2_host, self._context.ec2_port
        if not can_connect(host, port, self._context.probe_timeout):
            logger.debug("Instance metadata at %s:%s is unreachable", host, port)
            return {}
        try:
            fields = self._fields()
            role = self._get(self._METADATA_PATH_BASE, fields).splitlines()[0]
            region = self._region(fields)
            credentials = self._get(f"{self._METADATA_PATH_BASE}{role}", fields)
            document = json.loads(credentials)
        except (
            CloudHTTPError,
            CredentialsRetrievalException,
            IndexError,
            ValueError,
        ) as e:
            logger.debug("Unable to load instance metadata credentials: %s", e)
            return {}
        if not isinstance(document, Mapping):
            logger.debug("Instance credentials response is not a JSON object")
            return {}
        values = credential_values(document)
        if region:
            values["region"] = region
        return values

    def _uri(self, path: str) -> URI:
        return URI(
            scheme="http",
            host=self._context.ec2_host,
            port=self._context.ec2_port,
            path=path,
        )

    def _fields(self) -> Fields:
        fields = Fields([USER_AGENT_FIELD])
        request = HTTPRequest(
            destination=self._uri(self._TOKEN_PATH),
            method="PUT",
            fields=Fields(
                [
                    USER_AGENT_FIELD,
                    Field(
                        name="x-aws-ec2-metadata-token-ttl-seconds",
                        values=[str(TOKEN_TTL_SECONDS)],
                    ),
                ]
            ),
        )
        response = self._context.get_metadata_http_client().send(request)
        if response.status == 200 and response.body:
            fields.set_field(
                Field(name="x-aws-ec2-metadata-token", values=[response.body.decode()])
            )
        else:
            logger.debug(
                "No instance metadata session token (status %s)", response.status
            )
        return fields

    def _get(self, path: str, fields: Fields) -> str:
        client = self._context.get_metadata_http_client()
        return get_metadata(client, self._uri(path), fields).decode("utf-8")

    def _region(self, fields: Fields) -> str:
        """Read the instance's region. A failure here leaves the credentials usable."""
        try:
            return self._get(self._REGION_PATH, fields).strip()
        except (CloudHTTPError, CredentialsRetrievalException, ValueError) as e:
            logger.debug("Unable to read the instance metadata region: %s", e)
            return ""
