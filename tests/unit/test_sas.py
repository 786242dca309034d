#  Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
#  SPDX-License-Identifier: Apache-2.0
import base64
import hashlib
import hmac
from datetime import UTC, datetime, timedelta, timezone

import pytest
from cloud_sdk_signers._http import parse_query
from cloud_sdk_signers.config import ResolverContext
from cloud_sdk_signers.credentials import AccessToken, AzureCredentials
from cloud_sdk_signers.exceptions import (
    CredentialsRetrievalException,
    InvalidConfigurationException,
    MissingExpectedParameterException,
)
from cloud_sdk_signers.sas import (
    AccountSASOptions,
    ServiceSASOptions,
    StorageResource,
    UserDelegationKey,
    UserDelegationKeyCache,
    UserDelegationSASOptions,
    canonicalized_resource,
    format_sas_time,
    generate_account_sas_token,
    generate_account_sas_uri,
    generate_service_sas_token,
    generate_user_delegation_sas_token,
    get_user_delegation_key,
    parse_storage_url,
    parse_user_delegation_key,
    signed_ip,
    signed_permission,
    signed_resource,
    signed_resource_types,
    signed_services,
)
from cloud_sdk_signers.testing import MockHTTPClient

ACCOUNT_KEY = base64.b64encode(b"storage-account-key").decode()
EXPIRY = "2030-01-01T00:00:00Z"
BLOB_URL = "https://account.blob.core.windows.net/container/dir/blob.csv"

DELEGATION_KEY = UserDelegationKey(
    signed_oid="oid",
    signed_tid="tid",
    signed_start="2024-01-01T00:00:00Z",
    signed_expiry="2024-01-02T00:00:00Z",
    signed_service="b",
    signed_version="2020-12-06",
    value=base64.b64encode(b"delegation-key").decode(),
)


def _delegation_key_response(expiry: str) -> bytes:
    return (
        '<?xml version="1.0" encoding="utf-8"?>'
        "<UserDelegationKey>"
        "<SignedOid>oid</SignedOid>"
        "<SignedTid>tid</SignedTid>"
        "<SignedStart>2024-01-01T00:00:00Z</SignedStart>"
        f"<SignedExpiry>{expiry}</SignedExpiry>"
        "<SignedService>b</SignedService>"
        "<SignedVersion>2020-12-06</SignedVersion>"
        f"<Value>{DELEGATION_KEY.value}</Value>"
        "</UserDelegationKey>"
    ).encode()


def _signature(key: str, string_to_sign: str) -> str:
    digest = hmac.new(
        base64.b64decode(key), string_to_sign.encode(), hashlib.sha256
    ).digest()
    return base64.b64encode(digest).decode()


def _keys(query: str) -> list[str]:
    return [key for key, _ in parse_query(query)]


def test_signed_field_builders() -> None:
    assert signed_services() == "b"
    assert signed_services(blob=True, queue=True, table=True, file=True) == "bqtf"
    assert signed_resource_types(service=True, container=True) == "sco"
    assert signed_resource(blob=False, container=True) == "c"
    assert signed_ip("168.1.5.60", "168.1.5.70") == "168.1.5.60-168.1.5.70"
    assert signed_ip("168.1.5.65") == "168.1.5.65"


@pytest.mark.parametrize(
    "flags, expected",
    [
        ({}, "r"),
        ({"write": True, "list": True, "delete": True}, "rwdl"),
        ({"read": False, "find": True, "filter": True}, "f"),
        ({"permissions": True, "process": True}, "rp"),
        ({"add": True, "create": True, "set_immutability_policy": True}, "raci"),
    ],
)
def test_signed_permission(flags: dict[str, bool], expected: str) -> None:
    assert signed_permission(**flags) == expected


@pytest.mark.parametrize(
    "value, expected",
    [
        (datetime(2030, 1, 1, 12, 30), "2030-01-01T12:30:00Z"),
        (
            datetime(2030, 1, 1, 14, 30, tzinfo=timezone(timedelta(hours=2))),
            "2030-01-01T12:30:00Z",
        ),
        ("2030-01-01", "2030-01-01"),
    ],
)
def test_format_sas_time(value: datetime | str, expected: str) -> None:
    assert format_sas_time(value) == expected


def test_invalid_protocol() -> None:
    with pytest.raises(InvalidConfigurationException):
        AccountSASOptions(protocol="http")


def test_default_expiry_is_one_day() -> None:
    options = AccountSASOptions()
    expiry = datetime.strptime(str(options.expiry), "%Y-%m-%dT%H:%M:%SZ")
    delta = expiry.replace(tzinfo=UTC) - datetime.now(UTC)
    assert timedelta(hours=23) < delta <= timedelta(days=1)


@pytest.mark.parametrize(
    "url, expected",
    [
        (
            BLOB_URL,
            StorageResource(
                account="account",
                service="blob",
                container="container",
                blob="dir/blob.csv",
            ),
        ),
        (
            "https://account.file.core.windows.net/share/my%20file.txt",
            StorageResource(
                account="account",
                service="file",
                container="share",
                blob="my file.txt",
            ),
        ),
        (
            "https://account.queue.core.windows.net",
            StorageResource(account="account", service="queue"),
        ),
        (
            "http://127.0.0.1:10000/devstoreaccount1/container/blob.txt",
            StorageResource(
                account="devstoreaccount1",
                service="blob",
                container="container",
                blob="blob.txt",
            ),
        ),
    ],
)
def test_parse_storage_url(url: str, expected: StorageResource) -> None:
    assert parse_storage_url(url) == expected


@pytest.mark.parametrize(
    "url", ["https://example.com/container", "http://localhost:10000/"]
)
def test_parse_storage_url_requires_account(url: str) -> None:
    with pytest.raises(MissingExpectedParameterException):
        parse_storage_url(url)


@pytest.mark.parametrize(
    "url, expected",
    [
        (BLOB_URL, "/blob/account/container/dir/blob.csv"),
        ("https://account.blob.core.windows.net/container", "/blob/account/container"),
        ("https://account.blob.core.windows.net/", "/blob/account"),
        (
            "https://account.table.core.windows.net"
            "/MyTable(PartitionKey='a',RowKey='b')",
            "/table/account/mytable",
        ),
        ("https://account.table.core.windows.net/MyTable", "/table/account/mytable"),
    ],
)
def test_canonicalized_resource(url: str, expected: str) -> None:
    assert canonicalized_resource(url) == expected


class TestAccountSAS:
    def _options(self) -> AccountSASOptions:
        return AccountSASOptions(
            permission=signed_permission(list=True),
            resource_types=signed_resource_types(service=True, container=True),
            expiry=EXPIRY,
            protocol="https",
        )

    def test_string_to_sign(self) -> None:
        assert self._options().string_to_sign("account") == "\n".join(
            [
                "account",
                "rl",
                "b",
                "sco",
                "",
                EXPIRY,
                "",
                "https",
                "2020-12-06",
                "",
                "",
            ]
        )

    def test_token(self) -> None:
        options = self._options()
        token = generate_account_sas_token(BLOB_URL, ACCOUNT_KEY, options)
        params = parse_query(token)
        assert params == [
            ("sv", "2020-12-06"),
            ("ss", "b"),
            ("srt", "sco"),
            ("sp", "rl"),
            ("se", EXPIRY),
            ("spr", "https"),
            ("sig", _signature(ACCOUNT_KEY, options.string_to_sign("account"))),
        ]

    def test_uri_keeps_existing_query_and_a_single_signature(self) -> None:
        url = f"{BLOB_URL}?snapshot=2024-01-01T00%3A00%3A00Z"
        signed = generate_account_sas_uri(url, ACCOUNT_KEY, self._options())
        resigned = generate_account_sas_uri(signed, ACCOUNT_KEY, self._options())

        assert signed == resigned
        query = signed.split("?", 1)[1]
        assert _keys(query)[0] == "snapshot"
        assert _keys(query)[-1] == "sig"
        assert _keys(query).count("sig") == 1


class TestServiceSAS:
    def test_blob_string_to_sign(self) -> None:
        options = ServiceSASOptions(
            expiry=EXPIRY,
            identifier="policy",
            content_type="text/csv",
            directory_depth=1,
        )
        resource = parse_storage_url(BLOB_URL)
        assert options.string_to_sign(resource) == "\n".join(
            [
                "r",
                "",
                EXPIRY,
                "/blob/account/container/dir/blob.csv",
                "policy",
                "",
                "",
                "2020-12-06",
                "b",
                "",
                "",
                "",
                "",
                "",
                "",
                "text/csv",
            ]
        )

    def test_blob_token(self) -> None:
        options = ServiceSASOptions(
            expiry=EXPIRY,
            identifier="policy",
            content_type="text/csv",
            directory_depth=1,
        )
        token = generate_service_sas_token(BLOB_URL, ACCOUNT_KEY, options)
        assert _keys(token) == ["sv", "sp", "se", "sr", "sdd", "rsct", "si", "sig"]
        resource = parse_storage_url(BLOB_URL)
        assert dict(parse_query(token))["sig"] == _signature(
            ACCOUNT_KEY, options.string_to_sign(resource)
        )

    def test_queue_token(self) -> None:
        url = "https://account.queue.core.windows.net/messages"
        options = ServiceSASOptions(
            permission=signed_permission(read=False, process=True), expiry=EXPIRY
        )
        resource = parse_storage_url(url)
        assert options.string_to_sign(resource) == "\n".join(
            ["p", "", EXPIRY, "/queue/account/messages", "", "", "", "2020-12-06"]
        )
        token = generate_service_sas_token(url, ACCOUNT_KEY, options)
        assert _keys(token) == ["sv", "sp", "se", "sig"]

    def test_table_token(self) -> None:
        url = "https://account.table.core.windows.net/Orders"
        options = ServiceSASOptions(
            expiry=EXPIRY,
            table_name="orders",
            start_pk="a",
            end_pk="m",
        )
        resource = parse_storage_url(url)
        assert options.string_to_sign(resource).split("\n")[3:] == [
            "/table/account/orders",
            "",
            "",
            "",
            "2020-12-06",
            "a",
            "",
            "m",
            "",
        ]
        token = generate_service_sas_token(url, ACCOUNT_KEY, options)
        assert _keys(token) == ["sv", "sp", "se", "tn", "spk", "epk", "sig"]


class TestUserDelegationSAS:
    def test_string_to_sign(self) -> None:
        options = UserDelegationSASOptions(
            expiry=EXPIRY, correlation_id="cid", protocol="https,http"
        )
        resource = parse_storage_url(BLOB_URL)
        assert options.string_to_sign(resource, DELEGATION_KEY) == "\n".join(
            [
                "r",
                "",
                EXPIRY,
                "/blob/account/container/dir/blob.csv",
                "oid",
                "tid",
                "2024-01-01T00:00:00Z",
                "2024-01-02T00:00:00Z",
                "b",
                "2020-12-06",
                "",
                "",
                "cid",
                "",
                "https,http",
                "2020-12-06",
                "b",
                "",
                "",
                "",
                "",
                "",
                "",
                "",
            ]
        )

    def test_token_with_key(self) -> None:
        options = UserDelegationSASOptions(expiry=EXPIRY)
        token = generate_user_delegation_sas_token(BLOB_URL, DELEGATION_KEY, options)
        params = dict(parse_query(token))
        assert _keys(token) == [
            "sp",
            "se",
            "sv",
            "sr",
            "skoid",
            "sktid",
            "skt",
            "ske",
            "sks",
            "skv",
            "sig",
        ]
        resource = parse_storage_url(BLOB_URL)
        assert params["sig"] == _signature(
            DELEGATION_KEY.value, options.string_to_sign(resource, DELEGATION_KEY)
        )

    def test_token_fetches_key_with_access_token(
        self, context: ResolverContext, http_client: MockHTTPClient
    ) -> None:
        http_client.add_response(body=_delegation_key_response(EXPIRY))
        token = generate_user_delegation_sas_token(
            BLOB_URL,
            AzureCredentials.access_token("TOKEN"),
            UserDelegationSASOptions(expiry=EXPIRY),
            context=context,
        )
        assert dict(parse_query(token))["skoid"] == "oid"
        (request,) = http_client.captured_requests
        assert f"<Expiry>{EXPIRY}</Expiry>" in str(request.body)


class TestUserDelegationKey:
    def test_parse(self) -> None:
        key = parse_user_delegation_key(
            _delegation_key_response("2024-01-02T00:00:00Z")
        )
        assert key == DELEGATION_KEY
        assert key.expiration == datetime(2024, 1, 2, tzinfo=UTC)

    @pytest.mark.parametrize(
        "body", [b"<broken", b"<UserDelegationKey></UserDelegationKey>"]
    )
    def test_parse_rejects_incomplete_responses(self, body: bytes) -> None:
        with pytest.raises(CredentialsRetrievalException):
            parse_user_delegation_key(body)

    def test_repr_redacts_value(self) -> None:
        assert DELEGATION_KEY.value not in repr(DELEGATION_KEY)
        assert DELEGATION_KEY.value not in str(DELEGATION_KEY)

    def test_get_key(
        self, context: ResolverContext, http_client: MockHTTPClient
    ) -> None:
        http_client.add_response(body=_delegation_key_response(EXPIRY))

        key = get_user_delegation_key(
            BLOB_URL,
            AccessToken("TOKEN"),
            start=datetime(2024, 1, 1, tzinfo=UTC),
            expiry=datetime(2024, 1, 2, tzinfo=UTC),
            context=context,
        )

        assert key.signed_expiry == EXPIRY
        (request,) = http_client.captured_requests
        assert request.method == "POST"
        assert request.destination.build() == (
            "https://account.blob.core.windows.net/"
            "?restype=service&comp=userdelegationkey"
        )
        assert request.fields.get_value("Authorization") == "Bearer TOKEN"
        assert request.body == (
            "<KeyInfo><Start>2024-01-01T00:00:00Z</Start>"
            "<Expiry>2024-01-02T00:00:00Z</Expiry></KeyInfo>"
        )

    def test_get_key_from_emulator(
        self, context: ResolverContext, http_client: MockHTTPClient
    ) -> None:
        http_client.add_response(body=_delegation_key_response(EXPIRY))
        get_user_delegation_key(
            "http://127.0.0.1:10000/devstoreaccount1/container",
            AccessToken("TOKEN"),
            context=context,
        )
        (request,) = http_client.captured_requests
        assert request.destination.path == "/devstoreaccount1/"

    def test_get_key_requires_access_token(self, context: ResolverContext) -> None:
        with pytest.raises(InvalidConfigurationException):
            get_user_delegation_key(
                BLOB_URL,
                AzureCredentials.shared_key("account", ACCOUNT_KEY),
                context=context,
            )

    def test_get_key_error_status(
        self, context: ResolverContext, http_client: MockHTTPClient
    ) -> None:
        http_client.add_response(status=403, body=b"<Error/>")
        with pytest.raises(CredentialsRetrievalException) as exc_info:
            get_user_delegation_key(BLOB_URL, AccessToken("TOKEN"), context=context)
        assert exc_info.value.status == 403

    def test_cache_refetches_stale_keys(
        self, context: ResolverContext, http_client: MockHTTPClient
    ) -> None:
        http_client.add_response(body=_delegation_key_response("2000-01-01T00:00:00Z"))
        http_client.add_response(body=_delegation_key_response(EXPIRY))
        cache = UserDelegationKeyCache(
            BLOB_URL, AccessToken("TOKEN"), context=context
        )

        assert cache.get_key().signed_expiry == "2000-01-01T00:00:00Z"
        assert cache.get_key().signed_expiry == EXPIRY
        assert cache.get_key().signed_expiry == EXPIRY
        assert http_client.call_count == 2

        token = generate_user_delegation_sas_token(
            BLOB_URL, cache, UserDelegationSASOptions(expiry=EXPIRY)
        )
        assert dict(parse_query(token))["ske"] == EXPIRY
        assert http_client.call_count == 2
