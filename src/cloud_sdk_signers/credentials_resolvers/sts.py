#  Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
#  SPDX-License-Identifier: Apache-2.0
"""Temporary credentials for a role from the AWS Security Token Service."""

import logging
import time
import xml.etree.ElementTree as ET
from datetime import UTC, datetime
from pathlib import Path
from types import MappingProxyType
from typing import Final

from .._http import URI, HTTPRequest
from ..config import ConfigSource, ConfigStore, ResolverContext
from ..credentials import AWSCredentialIdentity
from ..exceptions import CredentialsRetrievalException, InvalidConfigurationException
from ..http.signing import AWSSigningHTTPClient
from ..interfaces.http import HTTPClient
from ..signers.sigv4 import DEFAULT_REGION, SigV4SigningProperties
from .container import ContainerCredentialsSource
from .environment import aws_environment_variables, aws_profile_files
from .imds import InstanceMetadataCredentialsSource

logger: Final = logging.getLogger(__name__)

STS_API_VERSION: Final = "2011-06-15"
ROLE_SESSION_PREFIX: Final = "cloud-sdk-signers"
MIN_DURATION_SECONDS: Final = 900
MAX_DURATION_SECONDS: Final = 43200

_CREDENTIAL_ELEMENTS: Final = MappingProxyType(
    {
        "AccessKeyId": "aws_access_key_id",
        "SecretAccessKey": "aws_secret_access_key",
        "SessionToken": "aws_session_token",
        "Expiration": "expiration",
    }
)


def default_role_session_name(now: datetime | None = None) -> str:
    if now is None:
        now = datetime.now(UTC)
    return f"{ROLE_SESSION_PREFIX}-{now.strftime('%Y%m%dT%H%M%SZ')}-{time.time_ns()}"


def assume_role(store: ConfigStore, context: ResolverContext) -> dict[str, str]:
    """Exchange the source credentials in ``store`` for credentials of its
    ``role_arn``.

    With ``web_identity_token_file`` set the call is an unsigned
    ``AssumeRoleWithWebIdentity`` carrying the token. Otherwise it is an
    ``AssumeRole`` signed with the credentials of ``source_profile``, of
    ``credential_source``, or the credentials already in ``store``.

    :returns: The temporary credentials, keyed like the other credential sources.
    :raises InvalidConfigurationException: If ``duration_seconds`` is invalid or no
        source credentials are available.
    :raises CredentialsRetrievalException: If STS does not return credentials.
    """
    role_arn = store["role_arn"]
    params = {
        "Action": "AssumeRole",
        "Version": STS_API_VERSION,
        "RoleArn": role_arn,
        "RoleSessionName": store.get("role_session_name")
        or default_role_session_name(),
    }
    if (duration := store.get("duration_seconds")) is not None:
        params["DurationSeconds"] = str(_validate_duration(duration))
    if external_id := store.get("external_id"):
        params["ExternalId"] = external_id

    client: HTTPClient = context.get_http_client()
    if token_file := store.get("web_identity_token_file"):
        params["Action"] = "AssumeRoleWithWebIdentity"
        params["WebIdentityToken"] = _read_token_file(token_file)
        params.pop("ExternalId", None)
    else:
        client = AWSSigningHTTPClient(
            client,
            credentials=_source_credentials(store, context),
            signing_properties=SigV4SigningProperties(
                service="sts", region=DEFAULT_REGION
            ),
        )

    logger.debug("Calling STS %s for %s", params["Action"], role_arn)
    request = HTTPRequest(
        destination=URI.from_string(context.sts_endpoint), method="POST", body=params
    )
    response = client.send(request)
    if response.status != 200:
        raise CredentialsRetrievalException(
            f"STS {params['Action']} for {role_arn} failed with status "
            f"{response.status}: {response.body.decode('utf-8', 'replace')}",
            status=response.status,
        )
    return parse_credentials(response.body)


def parse_credentials(body: bytes) -> dict[str, str]:
    """Read the ``Credentials`` element of an STS response."""
    try:
        root = ET.fromstring(body)
    except ET.ParseError as e:
        raise CredentialsRetrievalException(
            f"Unable to parse STS response: {e}"
        ) from e
    element = root.find(".//{*}Credentials")
    if element is None:
        raise CredentialsRetrievalException("STS response has no Credentials element.")
    values = {
        key: text.strip()
        for name, key in _CREDENTIAL_ELEMENTS.items()
        if (text := element.findtext(f"{{*}}{name}"))
    }
    if "aws_access_key_id" not in values or "aws_secret_access_key" not in values:
        raise CredentialsRetrievalException(
            "STS response is missing AccessKeyId or SecretAccessKey."
        )
    return values


def _validate_duration(duration: str) -> int:
    try:
        seconds = int(duration)
    except ValueError as e:
        raise InvalidConfigurationException(
            f"duration_seconds must be an integer, got {duration!r}."
        ) from e
    if not MIN_DURATION_SECONDS <= seconds <= MAX_DURATION_SECONDS:
        raise InvalidConfigurationException(
            f"duration_seconds must be between {MIN_DURATION_SECONDS} and "
            f"{MAX_DURATION_SECONDS}, got {seconds}."
        )
    return seconds


def _read_token_file(path: str) -> str:
    try:
        return Path(path).expanduser().read_text(encoding="utf-8").strip()
    except OSError as e:
        raise CredentialsRetrievalException(
            f"Unable to read web identity token file {path}."
        ) from e


def _source_credentials(
    store: ConfigStore, context: ResolverContext
) -> AWSCredentialIdentity:
    source_profile = store.get("source_profile")
    credential_source = store.get("credential_source")
    if source_profile:
        source = ConfigStore().load(
            *aws_profile_files(
                context,
                source_profile,
                credentials_file=store.get("aws_shared_credentials_file"),
                config_file=store.get("aws_config_file"),
            )
        )
    elif credential_source:
        source = ConfigStore().load(_credential_source(credential_source, context))
    else:
        source = store

    access_key_id = source.get("aws_access_key_id")
    secret_access_key = source.get("aws_secret_access_key")
    if not access_key_id or not secret_access_key:
        raise InvalidConfigurationException(
            f"No source credentials are available to assume {store['role_arn']}."
        )
    return AWSCredentialIdentity(
        access_key_id=access_key_id,
        secret_access_key=secret_access_key,
        session_token=source.get("aws_session_token"),
    )


def _credential_source(name: str, context: ResolverContext) -> ConfigSource:
    match name:
        case "Environment":
            return aws_environment_variables(context)
        case "EcsContainer":
            return ContainerCredentialsSource(context)
        case "Ec2InstanceMetadata":
            return InstanceMetadataCredentialsSource(context)
        case _:
            raise InvalidConfigurationException(
                f"Unsupported credential_source {name!r}. Expected Environment, "
                "EcsContainer or Ec2InstanceMetadata."
            )
