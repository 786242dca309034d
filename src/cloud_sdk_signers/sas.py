# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0
"""Azure Storage shared access signatures.

Three kinds of token are supported:

* account SAS, signed with a storage account key;
* service SAS, signed with a storage account key and scoped to a single
  container, blob, file share, queue or table;
* user delegation SAS, signed with a short-lived key fetched from the storage
  account with an OAuth access token.

Each generator builds a string to sign whose field order is fixed per token
kind and per storage service, signs it with HMAC-SHA256 and merges the token
fields and the ``sig`` parameter into the URL's existing query.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import re
import threading
import xml.etree.ElementTree as ET
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Final
from urllib.parse import unquote

from ._http import URI, HTTPRequest, encode_query, parse_query
from .config import ResolverContext
from .credentials import (
    DEFAULT_EXPIRE_THRESHOLD,
    REDACTED,
    AccessToken,
    AzureCredentials,
    is_stale,
)
from .exceptions import (
    CredentialsRetrievalException,
    InvalidConfigurationException,
    MissingExpectedParameterException,
)
from .http.signing import AzureSigningHTTPClient

logger: Final = logging.getLogger(__name__)

SAS_VERSION: Final = "2020-12-06"
SAS_TIME_FORMAT: Final = "%Y-%m-%dT%H:%M:%SZ"
SIGNED_PROTOCOLS: Final = ("https,http", "https")
DEFAULT_SAS_LIFETIME: Final = timedelta(days=1)

_PRODUCTION_HOST: Final = re.compile(
    r"(?P<account>[^.]+)\.(?P<service>[^.]+)\.core\.windows\.net"
)
_EMULATOR_HOSTS: Final = ("127.0.0.1", "localhost")
_TABLE_ENTITY_KEY: Final = re.compile(r"(?P<table>.*?)(?:\(PartitionKey=.*\))?")
_USER_DELEGATION_KEY_QUERY: Final = "restype=service&comp=userdelegationkey"


def signed_services(
    *, blob: bool = True, queue: bool = False, table: bool = False, file: bool = False
) -> str:
    """The ``ss`` field of an account SAS."""
    return "".join(
        flag
        for enabled, flag in ((blob, "b"), (queue, "q"), (table, "t"), (file, "f"))
        if enabled
    )


def signed_resource_types(
    *, service: bool = False, container: bool = False, object: bool = True
) -> str:
    """The ``srt`` field of an account SAS."""
    return "".join(
        flag
        for enabled, flag in ((service, "s"), (container, "c"), (object, "o"))
        if enabled
    )


def signed_permission(
    *,
    read: bool = True,
    add: bool = False,
    create: bool = False,
    write: bool = False,
    update: bool = False,
    delete: bool = False,
    delete_version: bool = False,
    permanent_delete: bool = False,
    list: bool = False,
    tag: bool = False,
    find: bool = False,
    move: bool = False,
    execute: bool = False,
    ownership: bool = False,
    permissions: bool = False,
    process: bool = False,
    filter: bool = False,
    set_immutability_policy: bool = False,
) -> str:
    """The ``sp`` field.

    Account SAS permissions are ``r``, ``w``, ``d``, ``y``, ``l``, ``a``, ``c``,
    ``u``, ``p`` (process), ``t``, ``f`` (filter) and ``i``. Service SAS
    permissions add ``x``, ``f`` (find), ``m``, ``e``, ``o`` and ``p``
    (permissions). A character is only emitted once.
    """
    flags = (
        (read, "r"),
        (add, "a"),
        (create, "c"),
        (write, "w"),
        (update, "u"),
        (delete, "d"),
        (delete_version, "x"),
        (permanent_delete, "y"),
        (list, "l"),
        (tag, "t"),
        (find, "f"),
        (move, "m"),
        (execute, "e"),
        (ownership, "o"),
        (permissions, "p"),
        (process, "p"),
        (filter, "f"),
        (set_immutability_policy, "i"),
    )
    permission = ""
    for enabled, flag in flags:
        if enabled and flag not in permission:
            permission += flag
    return permission


def signed_resource(
    *,
    container: bool = False,
    blob: bool = True,
    blob_version: bool = False,
    blob_snapshot: bool = False,
    directory: bool = False,
    file: bool = False,
    share: bool = False,
) -> str:
    """The ``sr`` field of a service or user delegation SAS."""
    return "".join(
        flag
        for enabled, flag in (
            (container, "c"),
            (blob, "b"),
            (blob_version, "bv"),
            (blob_snapshot, "bs"),
            (directory, "d"),
            (file, "f"),
            (share, "s"),
        )
        if enabled
    )


def signed_ip(first: str, last: str | None = None) -> str:
    """The ``sip`` field: a single address or an inclusive range."""
    return first if last is None else f"{first}-{last}"


def format_sas_time(value: datetime | str) -> str:
    """Format a SAS timestamp. Naive datetimes are taken to be UTC and strings are
    passed through."""
    if isinstance(value, str):
        return value
    if value.tzinfo is not None:
        value = value.astimezone(UTC)
    return value.strftime(SAS_TIME_FORMAT)


def _default_expiry() -> str:
    return format_sas_time(datetime.now(UTC) + DEFAULT_SAS_LIFETIME)


def _optional_str(value: int | None) -> str | None:
    return None if value is None else str(value)


@dataclass(kw_only=True)
class _SASOptions:
    version: str = SAS_VERSION
    """``sv``: the storage service version that interprets the token."""

    permission: str = field(default_factory=signed_permission)
    """``sp``: see :func:`signed_permission`."""

    start: datetime | str | None = None
    """``st``: when the token becomes valid. Immediately when ``None``."""

    expiry: datetime | str = field(default_factory=_default_expiry)
    """``se``: when the token expires. One day from now by default."""

    ip: str | None = None
    """``sip``: see :func:`signed_ip`."""

    protocol: str | None = None
    """``spr``: either ``https,http`` or ``https``."""

    encryption_scope: str | None = None
    """``ses``: the encryption scope for content written with the token."""

    def __post_init__(self) -> None:
        if self.protocol is not None and self.protocol not in SIGNED_PROTOCOLS:
            raise InvalidConfigurationException(
                f"Invalid SAS protocol {self.protocol!r}, valid values are "
                f"{' or '.join(repr(p) for p in SIGNED_PROTOCOLS)}."
            )
        if self.start is not None:
            self.start = format_sas_time(self.start)
        self.expiry = format_sas_time(self.expiry)


@dataclass(kw_only=True)
class AccountSASOptions(_SASOptions):
    """Fields of an account SAS."""

    services: str = field(default_factory=signed_services)
    """``ss``: see :func:`signed_services`."""

    resource_types: str = field(default_factory=signed_resource_types)
    """``srt``: see :func:`signed_resource_types`."""

    def string_to_sign(self, account: str) -> str:
        return "\n".join(
            [
                account,
                self.permission,
                self.services,
                self.resource_types,
                self.start or "",
                str(self.expiry),
                self.ip or "",
                self.protocol or "",
                self.version,
                self.encryption_scope or "",
                "",
            ]
        )

    def query_params(self) -> list[tuple[str, str | None]]:
        return [
            ("sv", self.version),
            ("ss", self.services),
            ("srt", self.resource_types),
            ("sp", self.permission),
            ("st", self.start),
            ("se", str(self.expiry)),
            ("sip", self.ip),
            ("spr", self.protocol),
            ("ses", self.encryption_scope),
        ]


@dataclass(kw_only=True)
class _ResourceSASOptions(_SASOptions):
    resource: str = field(default_factory=signed_resource)
    """``sr``: see :func:`signed_resource`."""

    snapshot_time: str | None = None
    """``sst``: the blob snapshot the token grants access to."""

    directory_depth: int | None = None
    """``sdd``: the depth of the directory named by a hierarchical namespace
    ``sr=d`` token. Sent in the query only."""

    cache_control: str | None = None
    """``rscc``: ``Cache-Control`` to return with the resource."""

    content_disposition: str | None = None
    """``rscd``: ``Content-Disposition`` to return with the resource."""

    content_encoding: str | None = None
    """``rsce``: ``Content-Encoding`` to return with the resource."""

    content_language: str | None = None
    """``rscl``: ``Content-Language`` to return with the resource."""

    content_type: str | None = None
    """``rsct``: ``Content-Type`` to return with the resource."""

    def _blob_fields(self) -> list[str]:
        return [
            self.resource,
            self.snapshot_time or "",
            self.encryption_scope or "",
            self.cache_control or "",
            self.content_disposition or "",
            self.content_encoding or "",
            self.content_language or "",
            self.content_type or "",
        ]

    def _blob_params(self) -> list[tuple[str, str | None]]:
        return [
            ("sr", self.resource),
            ("sdd", _optional_str(self.directory_depth)),
            ("sst", self.snapshot_time),
            ("ses", self.encryption_scope),
            ("rscc", self.cache_control),
            ("rscd", self.content_disposition),
            ("rsce", self.content_encoding),
            ("rscl", self.content_language),
            ("rsct", self.content_type),
        ]


@dataclass(kw_only=True)
class ServiceSASOptions(_ResourceSASOptions):
    """Fields of a service SAS.

    Blob and file tokens sign the resource and response header fields, table
    tokens sign the partition and row key range, and queue tokens sign neither.
    """

    identifier: str | None = None
    """``si``: a stored access policy on the container, share, queue or table."""

    table_name: str | None = None
    """``tn``: the table the token grants access to."""

    start_pk: str | None = None
    """``spk``: lowest accessible partition key."""

    start_rk: str | None = None
    """``srk``: lowest accessible row key."""

    end_pk: str | None = None
    """``epk``: highest accessible partition key."""

    end_rk: str | None = None
    """``erk``: highest accessible row key."""

    def string_to_sign(self, resource: StorageResource) -> str:
        fields = [
            self.permission,
            self.start or "",
            str(self.expiry),
            canonicalized_resource(resource),
            self.identifier or "",
            self.ip or "",
            self.protocol or "",
            self.version,
        ]
        match resource.service:
            case "queue":
                pass
            case "table":
                fields.extend(
                    [
                        self.start_pk or "",
                        self.start_rk or "",
                        self.end_pk or "",
                        self.end_rk or "",
                    ]
                )
            case _:
                fields.extend(self._blob_fields())
        return "\n".join(fields)

    def query_params(self, resource: StorageResource) -> list[tuple[str, str | None]]:
        params: list[tuple[str, str | None]] = [
            ("sv", self.version),
            ("sp", self.permission),
            ("st", self.start),
            ("se", str(self.expiry)),
            ("sip", self.ip),
            ("spr", self.protocol),
        ]
        match resource.service:
            case "queue":
                pass
            case "table":
                params.extend(
                    [
                        ("tn", self.table_name),
                        ("spk", self.start_pk),
                        ("srk", self.start_rk),
                        ("epk", self.end_pk),
                        ("erk", self.end_rk),
                    ]
                )
            case _:
                params.extend(self._blob_params())
        params.append(("si", self.identifier))
        return params


@dataclass(kw_only=True)
class UserDelegationSASOptions(_ResourceSASOptions):
    """Fields of a user delegation SAS for blobs."""

    authorized_object_id: str | None = None
    """``saoid``: the object ID the token is issued to, checked against POSIX
    ACLs without a further authorization check."""

    unauthorized_object_id: str | None = None
    """``suoid``: the object ID the token is issued to, checked against POSIX
    ACLs."""

    correlation_id: str | None = None
    """``scid``: a value to correlate storage audit logs with the issuer's logs."""

    def string_to_sign(
        self, resource: StorageResource, key: UserDelegationKey
    ) -> str:
        return "\n".join(
            [
                self.permission,
                self.start or "",
                str(self.expiry),
                canonicalized_resource(resource),
                key.signed_oid,
                key.signed_tid,
                key.signed_start,
                key.signed_expiry,
                key.signed_service,
                key.signed_version,
                self.authorized_object_id or "",
                self.unauthorized_object_id or "",
                self.correlation_id or "",
                self.ip or "",
                self.protocol or "",
                self.version,
                *self._blob_fields(),
            ]
        )

    def query_params(self, key: UserDelegationKey) -> list[tuple[str, str | None]]:
        return [
            ("sp", self.permission),
            ("st", self.start),
            ("se", str(self.expiry)),
            ("sip", self.ip),
            ("spr", self.protocol),
            ("sv", self.version),
            *self._blob_params(),
            ("skoid", key.signed_oid),
            ("sktid", key.signed_tid),
            ("skt", key.signed_start),
            ("ske", key.signed_expiry),
            ("sks", key.signed_service),
            ("skv", key.signed_version),
            ("saoid", self.authorized_object_id),
            ("suoid", self.unauthorized_object_id),
            ("scid", self.correlation_id),
        ]


@dataclass(kw_only=True, frozen=True)
class StorageResource:
    """The parts of a storage URL that are signed."""

    account: str
    service: str
    container: str = ""
    blob: str = ""


def _to_uri(url: str | URI) -> URI:
    return URI.from_string(url) if isinstance(url, str) else url


def _is_emulator(uri: URI) -> bool:
    return uri.host in _EMULATOR_HOSTS


def parse_storage_url(url: str | URI) -> StorageResource:
    """Split a storage URL into account, service, container and blob.

    Production URLs have the form
    ``https://{account}.{service}.core.windows.net/{container}/{blob}``. Emulator
    URLs have the form ``http://127.0.0.1:10000/{account}/{container}/{blob}`` and
    always address the blob service.

    :raises MissingExpectedParameterException: If no account can be determined.
    """
    uri = _to_uri(url)
    path = unquote((uri.path or "").lstrip("/"))
    if _is_emulator(uri):
        account, _, path = path.partition("/")
        service = "blob"
    elif host := _PRODUCTION_HOST.fullmatch(uri.host):
        account, service = host["account"], host["service"]
    else:
        account = ""
    if not account:
        raise MissingExpectedParameterException(
            f"Unable to parse an Azure storage account from {uri.host!r}."
        )
    container, _, blob = path.partition("/")
    return StorageResource(
        account=account, service=service, container=container, blob=blob
    )


def canonicalized_resource(resource: StorageResource | str | URI) -> str:
    """The ``/{service}/{account}/{container}/{blob}`` resource of a service or
    user delegation SAS.

    Table names are lowercased and stripped of any entity key suffix such as
    ``(PartitionKey='pk',RowKey='rk')``.
    """
    if not isinstance(resource, StorageResource):
        resource = parse_storage_url(resource)
    container = resource.container
    if resource.service == "table":
        table = _TABLE_ENTITY_KEY.fullmatch(container)
        container = (table["table"] if table else container).lower()
    parts = (resource.service, resource.account, container, resource.blob)
    return ("/" + "/".join(part for part in parts if part)).rstrip("/")


def _sign(key: str, string_to_sign: str) -> str:
    logger.debug("Computed SAS string to sign:\n%s", string_to_sign)
    digest = hmac.new(
        key=base64.b64decode(key),
        msg=string_to_sign.encode("utf-8"),
        digestmod=hashlib.sha256,
    ).digest()
    return base64.b64encode(digest).decode()


def _merge_query(
    uri: URI, params: Iterable[tuple[str, str | None]], signature: str
) -> str:
    # Keyed merge so that a URL which already carries a token ends up with one
    # value per field and a single trailing ``sig``.
    query = dict(parse_query(uri.query))
    query.pop("sig", None)
    query.update((key, value) for key, value in params if value)
    query["sig"] = signature
    return encode_query(query.items())


def generate_account_sas_token(
    url: str | URI, key: str, options: AccountSASOptions | None = None
) -> str:
    """Build an account SAS query string for ``url``.

    :param url: Any URL of the storage account. Its existing query is kept.
    :param key: The base64 encoded storage account key.
    :param options: The token fields. Defaults grant read access to blobs for a
        day.
    """
    uri = _to_uri(url)
    options = options or AccountSASOptions()
    account = parse_storage_url(uri).account
    signature = _sign(key, options.string_to_sign(account))
    return _merge_query(uri, options.query_params(), signature)


def generate_account_sas_uri(
    url: str | URI, key: str, options: AccountSASOptions | None = None
) -> str:
    uri = _to_uri(url)
    return uri.with_query(generate_account_sas_token(uri, key, options)).build()


def generate_service_sas_token(
    url: str | URI, key: str, options: ServiceSASOptions | None = None
) -> str:
    """Build a service SAS query string scoped to the resource ``url`` names.

    :param url: The container, blob, share, file, queue or table URL.
    :param key: The base64 encoded storage account key.
    :param options: The token fields.
    """
    uri = _to_uri(url)
    options = options or ServiceSASOptions()
    resource = parse_storage_url(uri)
    signature = _sign(key, options.string_to_sign(resource))
    return _merge_query(uri, options.query_params(resource), signature)


def generate_service_sas_uri(
    url: str | URI, key: str, options: ServiceSASOptions | None = None
) -> str:
    uri = _to_uri(url)
    return uri.with_query(generate_service_sas_token(uri, key, options)).build()


@dataclass(kw_only=True, frozen=True)
class UserDelegationKey:
    """A key issued by a storage account for signing user delegation SAS tokens."""

    signed_oid: str
    signed_tid: str
    signed_start: str
    signed_expiry: str
    signed_service: str
    signed_version: str
    value: str
    """The base64 encoded key."""

    @property
    def expiration(self) -> datetime | None:
        try:
            expiration = datetime.fromisoformat(self.signed_expiry)
        except ValueError:
            return None
        if expiration.tzinfo is None:
            return expiration.replace(tzinfo=UTC)
        return expiration

    def __repr__(self) -> str:
        return (
            f"UserDelegationKey(signed_oid={self.signed_oid!r}, "
            f"signed_tid={self.signed_tid!r}, signed_start={self.signed_start!r}, "
            f"signed_expiry={self.signed_expiry!r}, "
            f"signed_service={self.signed_service!r}, "
            f"signed_version={self.signed_version!r}, value={REDACTED!r})"
        )

    __str__ = __repr__


_DELEGATION_KEY_ELEMENTS: Final = (
    ("SignedOid", "signed_oid"),
    ("SignedTid", "signed_tid"),
    ("SignedStart", "signed_start"),
    ("SignedExpiry", "signed_expiry"),
    ("SignedService", "signed_service"),
    ("SignedVersion", "signed_version"),
    ("Value", "value"),
)


def parse_user_delegation_key(body: bytes) -> UserDelegationKey:
    """Read a ``UserDelegationKey`` response document."""
    try:
        root = ET.fromstring(body)
    except ET.ParseError as e:
        raise CredentialsRetrievalException(
            f"Unable to parse user delegation key response: {e}"
        ) from e
    values = {
        key: (root.findtext(f"{{*}}{name}") or "").strip()
        for name, key in _DELEGATION_KEY_ELEMENTS
    }
    if not values["value"]:
        raise CredentialsRetrievalException(
            "User delegation key response has no Value element."
        )
    return UserDelegationKey(**values)


def _user_delegation_key_uri(url: str | URI) -> URI:
    uri = _to_uri(url)
    path = "/"
    if _is_emulator(uri):
        path = f"/{parse_storage_url(uri).account}/"
    return URI(
        scheme=uri.scheme,
        host=uri.host,
        port=uri.port,
        path=path,
        query=_USER_DELEGATION_KEY_QUERY,
    )


def get_user_delegation_key(
    url: str | URI,
    credentials: AzureCredentials | AccessToken,
    *,
    start: datetime | str | None = None,
    expiry: datetime | str | None = None,
    context: ResolverContext | None = None,
) -> UserDelegationKey:
    """Fetch a user delegation key from the storage account ``url`` belongs to.

    :param url: Any URL of the storage account.
    :param credentials: An OAuth access token for the account.
    :param start: When the key becomes valid. Defaults to now.
    :param expiry: When the key expires. Defaults to one day from now.
    :param context: Supplies the HTTP client for the request.
    :raises InvalidConfigurationException: If the credentials are not an access
        token.
    :raises CredentialsRetrievalException: If the account does not return a key.
    """
    auth = (
        credentials.get_auth()
        if isinstance(credentials, AzureCredentials)
        else credentials
    )
    if not isinstance(auth, AccessToken):
        raise InvalidConfigurationException(
            "Generating a user delegation SAS requires access token credentials."
        )
    now = datetime.now(UTC)
    body = (
        f"<KeyInfo><Start>{format_sas_time(start or now)}</Start>"
        f"<Expiry>{format_sas_time(expiry or now + DEFAULT_SAS_LIFETIME)}</Expiry>"
        "</KeyInfo>"
    )
    context = context or ResolverContext()
    client = AzureSigningHTTPClient(context.get_http_client(), credentials=auth)
    request = HTTPRequest(
        destination=_user_delegation_key_uri(url), method="POST", body=body
    )
    response = client.send(request)
    if response.status != 200:
        raise CredentialsRetrievalException(
            f"User delegation key request to {request.destination.host} failed "
            f"with status {response.status}: "
            f"{response.body.decode('utf-8', 'replace')}",
            status=response.status,
        )
    return parse_user_delegation_key(response.body)


class UserDelegationKeyCache:
    """Holds a user delegation key and fetches a new one when it nears expiry.

    :param url: Any URL of the storage account.
    :param credentials: An OAuth access token for the account.
    :param lifetime: How long each fetched key is valid for.
    :param expire_threshold: How long before the key's expiry to replace it.
    :param context: Supplies the HTTP client for key requests.
    """

    def __init__(
        self,
        url: str | URI,
        credentials: AzureCredentials | AccessToken,
        *,
        lifetime: timedelta = DEFAULT_SAS_LIFETIME,
        expire_threshold: timedelta = DEFAULT_EXPIRE_THRESHOLD,
        context: ResolverContext | None = None,
    ):
        self._lock = threading.Lock()
        self._url = url
        self._credentials = credentials
        self._lifetime = lifetime
        self._expire_threshold = expire_threshold
        self._context = context
        self._key: UserDelegationKey | None = None

    def get_key(self) -> UserDelegationKey:
        with self._lock:
            if self._key is None or is_stale(
                self._key.expiration, self._expire_threshold
            ):
                logger.debug("Fetching a user delegation key")
                now = datetime.now(UTC)
                self._key = get_user_delegation_key(
                    self._url,
                    self._credentials,
                    start=now,
                    expiry=now + self._lifetime,
                    context=self._context,
                )
            return self._key


def _resolve_delegation_key(
    url: str | URI,
    key: UserDelegationKey | UserDelegationKeyCache | AzureCredentials | AccessToken,
    options: UserDelegationSASOptions,
    context: ResolverContext | None,
) -> UserDelegationKey:
    match key:
        case UserDelegationKey():
            return key
        case UserDelegationKeyCache():
            return key.get_key()
        case _:
            return get_user_delegation_key(
                url,
                key,
                start=options.start,
                expiry=options.expiry,
                context=context,
            )


def generate_user_delegation_sas_token(
    url: str | URI,
    key: UserDelegationKey | UserDelegationKeyCache | AzureCredentials | AccessToken,
    options: UserDelegationSASOptions | None = None,
    *,
    context: ResolverContext | None = None,
) -> str:
    """Build a user delegation SAS query string scoped to the resource ``url``
    names.

    :param url: The container or blob URL.
    :param key: A delegation key, a cache of one, or access token credentials to
        fetch one with. A fetched key is valid for the token's own validity
        window.
    :param options: The token fields.
    :param context: Supplies the HTTP client when a key has to be fetched.
    """
    uri = _to_uri(url)
    options = options or UserDelegationSASOptions()
    delegation_key = _resolve_delegation_key(uri, key, options, context)
    resource = parse_storage_url(uri)
    signature = _sign(
        delegation_key.value, options.string_to_sign(resource, delegation_key)
    )
    return _merge_query(uri, options.query_params(delegation_key), signature)


def generate_user_delegation_sas_uri(
    url: str | URI,
    key: UserDelegationKey | UserDelegationKeyCache | AzureCredentials | AccessToken,
    options: UserDelegationSASOptions | None = None,
    *,
    context: ResolverContext | None = None,
) -> str:
    uri = _to_uri(url)
    token = generate_user_delegation_sas_token(uri, key, options, context=context)
    return uri.with_query(token).build()
