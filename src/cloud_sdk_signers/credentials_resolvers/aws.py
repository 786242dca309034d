#  Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
#  SPDX-License-Identifier: Apache-2.0
import logging
from datetime import UTC, datetime, timedelta
from functools import partial
from typing import Final

from ..config import ConfigSource, ConfigStore, ResolverContext, StaticValues
from ..credentials import (
    DEFAULT_EXPIRE_THRESHOLD,
    AWSCredentials,
    ResolvedAWSCredentials,
)
from ..exceptions import CredentialsRetrievalException
from .container import ContainerCredentialsSource
from .environment import (
    DEFAULT_PROFILE,
    aws_environment_variables,
    aws_location_sources,
    aws_profile_files,
    aws_program_arguments,
)
from .imds import InstanceMetadataCredentialsSource
from .sts import assume_role

logger: Final = logging.getLogger(__name__)

# Any of these gives an assumed role its own source credentials.
_ROLE_SOURCE_KEYS: Final = (
    "source_profile",
    "credential_source",
    "web_identity_token_file",
)


def parse_expiration(value: str | None) -> datetime | None:
    """Parse an ISO 8601 expiration. Naive timestamps are taken to be UTC."""
    if not value:
        return None
    try:
        expiration = datetime.fromisoformat(value)
    except ValueError as e:
        raise CredentialsRetrievalException(
            f"Invalid credential expiration {value!r}."
        ) from e
    if expiration.tzinfo is None:
        return expiration.replace(tzinfo=UTC)
    return expiration.astimezone(UTC)


def _profile_store(
    context: ResolverContext, profile: str, *overrides: ConfigSource
) -> tuple[ConfigStore, str]:
    """Load everything but metadata services for ``profile``, or for the profile
    named by ``AWS_PROFILE`` or ``--profile``."""
    store = ConfigStore().load(*aws_location_sources(context))
    profile = profile or store.get("profile") or DEFAULT_PROFILE
    store.load(
        *overrides,
        aws_environment_variables(context),
        aws_program_arguments(context),
        *aws_profile_files(
            context,
            profile,
            credentials_file=store.get("aws_shared_credentials_file"),
            config_file=store.get("aws_config_file"),
        ),
    )
    return store, profile


class AWSCredentialsResolver:
    """Walks the AWS credential chain.

    Sources are consulted from highest to lowest precedence:

    1. Explicitly supplied keys.
    2. Environment variables such as ``AWS_ACCESS_KEY_ID``.
    3. Program arguments such as ``--region``.
    4. The shared credentials file, ``~/.aws/credentials``.
    5. The config file, ``~/.aws/config``.
    6. ECS container credentials and EC2 instance metadata, only when none of
       the above supplied an access key.

    If the merged configuration names a ``role_arn``, the resolved credentials
    are exchanged for the role's through STS. Finding no credentials at all
    resolves to empty, anonymous credentials.

    :param context: The environment, files and HTTP clients to resolve against.
    """

    def __init__(self, context: ResolverContext | None = None):
        self._context = context or ResolverContext()

    def resolve(
        self,
        profile: str = "",
        *,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
        session_token: str | None = None,
    ) -> ResolvedAWSCredentials:
        context = self._context
        store, profile = _profile_store(
            context,
            profile,
            StaticValues(
                {
                    "aws_access_key_id": access_key_id,
                    "aws_secret_access_key": secret_access_key,
                    "aws_session_token": session_token,
                }
            ),
        )

        if "aws_access_key_id" not in store and not self._role_has_source(store):
            logger.debug("No static AWS credentials, checking metadata services")
            store.fill(
                ContainerCredentialsSource(context),
                InstanceMetadataCredentialsSource(context),
            )

        if "role_arn" in store:
            store.load(StaticValues(assume_role(store, context)))

        if "aws_access_key_id" not in store:
            logger.debug("No AWS credentials found for profile %r", profile)
        return ResolvedAWSCredentials(
            access_key_id=store.get("aws_access_key_id", ""),
            secret_access_key=store.get("aws_secret_access_key", ""),
            session_token=store.get("aws_session_token", ""),
            expiration=parse_expiration(store.get("expiration")),
            region=store.get("region") or store.get("default_region"),
            profile=profile,
        )

    def _role_has_source(self, store: ConfigStore) -> bool:
        return "role_arn" in store and any(key in store for key in _ROLE_SOURCE_KEYS)


def resolve_region(
    profile: str = "", *, context: ResolverContext | None = None
) -> str | None:
    """Resolve only the region for ``profile``.

    ``region`` from ``AWS_REGION``, ``--region`` or the shared files wins over
    ``AWS_DEFAULT_REGION``. Metadata services are not consulted.
    """
    store, _ = _profile_store(context or ResolverContext(), profile)
    return store.get("region") or store.get("default_region")


def load_aws_credentials(
    profile: str = "",
    *,
    context: ResolverContext | None = None,
    expire_threshold: timedelta = DEFAULT_EXPIRE_THRESHOLD,
) -> AWSCredentials:
    """Resolve credentials for ``profile`` and bind them to the same chain for
    refreshing."""
    resolver = AWSCredentialsResolver(context)
    resolved = resolver.resolve(profile)
    return AWSCredentials.from_resolved(
        resolved,
        expire_threshold=expire_threshold,
        refresh_using=partial(resolver.resolve, resolved.profile),
    )
