# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0
"""Credential values and the lock-guarded cache that keeps them fresh.

Credentials are long-lived, shared objects. Signers never read their fields
directly. Instead they ask for an immutable snapshot through
:meth:`AWSCredentials.get_identity` or :meth:`AzureCredentials.get_auth`, which
refresh the credential under its lock when it is within ``expire_threshold`` of
expiring.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Final, TypeAlias
from urllib.parse import quote

from ._http import encode_query, parse_query

logger: Final = logging.getLogger(__name__)

DEFAULT_EXPIRE_THRESHOLD: Final = timedelta(minutes=5)
REDACTED: Final = "****"


def is_stale(
    expiration: datetime | None,
    expire_threshold: timedelta,
    now: datetime | None = None,
) -> bool:
    """Whether a value expiring at ``expiration`` is due for a refresh.

    A value without an expiration is never stale.
    """
    if expiration is None:
        return False
    if now is None:
        now = datetime.now(UTC)
    return now > expiration - expire_threshold


def _redact(value: str | None) -> str:
    """Mask a secret for rendering. Empty and missing values are masked too."""
    return REDACTED


def redact_secrets(text: str, *secrets: str | None) -> str:
    """Replace each of ``secrets`` in ``text``, raw or URL encoded, for logging."""
    for secret in secrets:
        if secret:
            text = text.replace(secret, REDACTED)
            text = text.replace(quote(secret, safe=""), REDACTED)
    return text


@dataclass(kw_only=True, frozen=True)
class AWSCredentialIdentity:
    """An immutable snapshot of AWS credentials used for a single signing call."""

    access_key_id: str
    secret_access_key: str
    session_token: str | None = None
    expiration: datetime | None = None

    @property
    def is_expired(self) -> bool:
        """Whether ``expiration`` has passed. Unlike :func:`is_stale` there is no
        threshold."""
        return is_stale(self.expiration, timedelta(0))

    @property
    def is_anonymous(self) -> bool:
        """Whether these credentials carry no key material at all."""
        return not self.access_key_id and not self.secret_access_key

    def __repr__(self) -> str:
        return (
            f"AWSCredentialIdentity(access_key_id={self.access_key_id!r}, "
            f"secret_access_key={_redact(self.secret_access_key)!r}, "
            f"session_token={_redact(self.session_token)!r}, "
            f"expiration={self.expiration!r})"
        )

    __str__ = __repr__


@dataclass(kw_only=True, frozen=True)
class ResolvedAWSCredentials:
    """The result of walking the AWS credential chain once."""

    access_key_id: str = ""
    secret_access_key: str = ""
    session_token: str = ""
    expiration: datetime | None = None
    region: str | None = None
    profile: str = ""

    def __repr__(self) -> str:
        return (
            f"ResolvedAWSCredentials(access_key_id={self.access_key_id!r}, "
            f"secret_access_key={_redact(self.secret_access_key)!r}, "
            f"session_token={_redact(self.session_token)!r}, "
            f"expiration={self.expiration!r}, region={self.region!r}, "
            f"profile={self.profile!r})"
        )

    __str__ = __repr__


class AWSCredentials:
    """AWS credentials shared between signers and refreshed in place.

    :param access_key_id: A unique identifier for an AWS user or role.
    :param secret_access_key: The secret paired with ``access_key_id``.
    :param session_token: Optional token for temporary credentials.
    :param expiration: When the credentials expire. ``None`` never expires.
    :param profile: The profile the credentials were resolved for. Refreshing
        re-resolves the same profile.
    :param region: The region resolved alongside the credentials, if any.
    :param expire_threshold: How long before ``expiration`` to refresh.
    :param refresh_using: Callable that re-resolves the credentials. Defaults to
        the AWS credential chain for ``profile``.
    """

    def __init__(
        self,
        access_key_id: str = "",
        secret_access_key: str = "",
        session_token: str = "",
        expiration: datetime | None = None,
        *,
        profile: str = "",
        region: str | None = None,
        expire_threshold: timedelta = DEFAULT_EXPIRE_THRESHOLD,
        refresh_using: Callable[[], ResolvedAWSCredentials] | None = None,
    ):
        self._lock = threading.Lock()
        self._access_key_id = access_key_id
        self._secret_access_key = secret_access_key
        self._session_token = session_token
        self._expiration = expiration
        self._profile = profile
        self._region = region
        self._expire_threshold = expire_threshold
        self._refresh_using = refresh_using

    @classmethod
    def from_resolved(
        cls,
        resolved: ResolvedAWSCredentials,
        *,
        expire_threshold: timedelta = DEFAULT_EXPIRE_THRESHOLD,
        refresh_using: Callable[[], ResolvedAWSCredentials] | None = None,
    ) -> AWSCredentials:
        return cls(
            resolved.access_key_id,
            resolved.secret_access_key,
            resolved.session_token,
            resolved.expiration,
            profile=resolved.profile,
            region=resolved.region,
            expire_threshold=expire_threshold,
            refresh_using=refresh_using,
        )

    @property
    def profile(self) -> str:
        return self._profile

    @property
    def expire_threshold(self) -> timedelta:
        return self._expire_threshold

    @property
    def region(self) -> str | None:
        with self._lock:
            return self._region

    @property
    def expiration(self) -> datetime | None:
        with self._lock:
            return self._expiration

    @property
    def is_stale(self) -> bool:
        with self._lock:
            return is_stale(self._expiration, self._expire_threshold)

    def get_identity(self) -> AWSCredentialIdentity:
        """Return a snapshot of the current credentials, refreshing them first if
        they are stale.

        Concurrent callers block on the credential's lock while a refresh is in
        flight and then observe the refreshed values.
        """
        with self._lock:
            if is_stale(self._expiration, self._expire_threshold):
                self._refresh()
            return AWSCredentialIdentity(
                access_key_id=self._access_key_id,
                secret_access_key=self._secret_access_key,
                session_token=self._session_token or None,
                expiration=self._expiration,
            )

    def _refresh(self) -> None:
        logger.debug(
            "Refreshing AWS credentials for profile %r expiring at %s",
            self._profile,
            self._expiration,
        )
        refresh_using = self._refresh_using or self._default_refresher()
        resolved = refresh_using()
        self._access_key_id = resolved.access_key_id
        self._secret_access_key = resolved.secret_access_key
        self._session_token = resolved.session_token
        self._expiration = resolved.expiration
        if resolved.region is not None:
            self._region = resolved.region

    def _default_refresher(self) -> Callable[[], ResolvedAWSCredentials]:
        from .credentials_resolvers.aws import AWSCredentialsResolver

        resolver = AWSCredentialsResolver()
        profile = self._profile
        return lambda: resolver.resolve(profile)

    def __repr__(self) -> str:
        with self._lock:
            return (
                f"AWSCredentials(access_key_id={self._access_key_id!r}, "
                f"secret_access_key={_redact(self._secret_access_key)!r}, "
                f"session_token={_redact(self._session_token)!r}, "
                f"profile={self._profile!r}, expiration={self._expiration!r})"
            )

    __str__ = __repr__


@dataclass(frozen=True)
class SharedKey:
    """An Azure storage account name and its base64 encoded account key.

    Both empty signals anonymous access.
    """

    account: str
    key: str

    @property
    def is_anonymous(self) -> bool:
        return not self.key

    def __repr__(self) -> str:
        return f"SharedKey(account={self.account!r}, key={_redact(self.key)!r})"


@dataclass(frozen=True)
class AccessToken:
    """An OAuth bearer token for Azure storage."""

    token: str

    def __repr__(self) -> str:
        return f"AccessToken(token={_redact(self.token)!r})"


@dataclass(frozen=True)
class SASToken:
    """A pre-signed Azure shared access signature query string.

    The query is normalized on construction: a leading ``?`` and empty segments
    are dropped and each parameter appears once, so re-using a token taken from
    a previously signed URL never duplicates ``sig``.
    """

    query: str

    def __post_init__(self) -> None:
        params = dict(parse_query(self.query.strip().lstrip("?")))
        object.__setattr__(self, "query", encode_query(params.items()))

    def params(self) -> list[tuple[str, str]]:
        return parse_query(self.query)

    def __repr__(self) -> str:
        return f"SASToken(query={_redact(self.query)!r})"


AzureAuth: TypeAlias = SharedKey | AccessToken | SASToken


@dataclass(kw_only=True, frozen=True)
class ResolvedAzureCredentials:
    """The result of walking the Azure credential chain once."""

    auth: AzureAuth
    expiration: datetime | None = None


class AzureCredentials:
    """Azure credentials holding exactly one auth variant, refreshed in place.

    Refreshing may switch the variant, for example from a shared key to a bearer
    token. The whole variant is replaced under the credential's lock.
    """

    def __init__(
        self,
        auth: AzureAuth,
        expiration: datetime | None = None,
        *,
        expire_threshold: timedelta = DEFAULT_EXPIRE_THRESHOLD,
        refresh_using: Callable[[], ResolvedAzureCredentials] | None = None,
    ):
        self._lock = threading.Lock()
        self._auth = auth
        self._expiration = expiration
        self._expire_threshold = expire_threshold
        self._refresh_using = refresh_using

    @classmethod
    def shared_key(cls, account: str, key: str) -> AzureCredentials:
        return cls(SharedKey(account, key))

    @classmethod
    def access_token(
        cls, token: str, expiration: datetime | None = None
    ) -> AzureCredentials:
        return cls(AccessToken(token), expiration)

    @classmethod
    def sas_token(cls, query: str) -> AzureCredentials:
        return cls(SASToken(query))

    @classmethod
    def from_resolved(
        cls,
        resolved: ResolvedAzureCredentials,
        *,
        expire_threshold: timedelta = DEFAULT_EXPIRE_THRESHOLD,
        refresh_using: Callable[[], ResolvedAzureCredentials] | None = None,
    ) -> AzureCredentials:
        return cls(
            resolved.auth,
            resolved.expiration,
            expire_threshold=expire_threshold,
            refresh_using=refresh_using,
        )

    @property
    def expiration(self) -> datetime | None:
        with self._lock:
            return self._expiration

    @property
    def is_stale(self) -> bool:
        with self._lock:
            return is_stale(self._expiration, self._expire_threshold)

    def get_auth(self) -> AzureAuth:
        """Return the current auth variant, refreshing it first if it is stale."""
        with self._lock:
            if is_stale(self._expiration, self._expire_threshold):
                self._refresh()
            return self._auth

    def _refresh(self) -> None:
        logger.debug("Refreshing Azure credentials expiring at %s", self._expiration)
        refresh_using = self._refresh_using or self._default_refresher()
        resolved = refresh_using()
        self._auth = resolved.auth
        self._expiration = resolved.expiration

    def _default_refresher(self) -> Callable[[], ResolvedAzureCredentials]:
        from .credentials_resolvers.azure import AzureCredentialsResolver

        return AzureCredentialsResolver().resolve

    def __repr__(self) -> str:
        with self._lock:
            return (
                f"AzureCredentials(auth={self._auth!r}, "
                f"expiration={self._expiration!r})"
            )

    __str__ = __repr__
