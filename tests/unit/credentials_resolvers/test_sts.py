#  Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
#  SPDX-License-Identifier: Apache-2.0
from datetime import UTC, datetime
from pathlib import Path

import pytest
from cloud_sdk_signers._http import parse_query, serialize_body
from cloud_sdk_signers.config import ConfigStore, ResolverContext
from cloud_sdk_signers.credentials_resolvers import AWSCredentialsResolver, assume_role
from cloud_sdk_signers.credentials_resolvers.sts import (
    default_role_session_name,
    parse_credentials,
)
from cloud_sdk_signers.exceptions import (
    CredentialsRetrievalException,
    InvalidConfigurationException,
)
from cloud_sdk_signers.interfaces.http import Request
from cloud_sdk_signers.testing import MockHTTPClient

ROLE_ARN = "arn:aws:iam::123456789012:role/reader"

STS_RESPONSE = b"""\
<AssumeRoleResponse xmlns="https://sts.amazonaws.com/doc/2011-06-15/">
  <AssumeRoleResult>
    <Credentials>
      <AccessKeyId>ASIAROLE</AccessKeyId>
      <SecretAccessKey>ROLESECRET</SecretAccessKey>
      <SessionToken>ROLETOKEN</SessionToken>
      <Expiration>2030-01-01T00:00:00Z</Expiration>
    </Credentials>
  </AssumeRoleResult>
</AssumeRoleResponse>
"""

STS_ERROR = b"""\
<ErrorResponse xmlns="https://sts.amazonaws.com/doc/2011-06-15/">
  <Error><Code>AccessDenied</Code></Error>
</ErrorResponse>
"""


def _params(request: Request) -> dict[str, str]:
    return dict(parse_query(serialize_body(request.body).decode()))


def _store(**values: str) -> ConfigStore:
    return ConfigStore({"role_arn": ROLE_ARN, **values})


def test_assume_role_signs_with_store_credentials(
    context: ResolverContext, http_client: MockHTTPClient
) -> None:
    http_client.add_response(body=STS_RESPONSE)
    store = _store(
        aws_access_key_id="SOURCEKEY",
        aws_secret_access_key="SOURCESECRET",
        role_session_name="session",
        duration_seconds="3600",
        external_id="external",
    )

    values = assume_role(store, context)

    assert values == {
        "aws_access_key_id": "ASIAROLE",
        "aws_secret_access_key": "ROLESECRET",
        "aws_session_token": "ROLETOKEN",
        "expiration": "2030-01-01T00:00:00Z",
    }
    (request,) = http_client.captured_requests
    assert request.method == "POST"
    assert request.destination.build() == "https://sts.amazonaws.com/"
    assert _params(request) == {
        "Action": "AssumeRole",
        "Version": "2011-06-15",
        "RoleArn": ROLE_ARN,
        "RoleSessionName": "session",
        "DurationSeconds": "3600",
        "ExternalId": "external",
    }
    authorization = request.fields.get_value("Authorization")
    assert authorization.startswith("AWS4-HMAC-SHA256 Credential=SOURCEKEY/")
    assert "/us-east-1/sts/aws4_request" in authorization


def test_assume_role_with_web_identity_is_unsigned(
    tmp_path: Path, context: ResolverContext, http_client: MockHTTPClient
) -> None:
    token_file = tmp_path / "token"
    token_file.write_text("WEBIDENTITYTOKEN\n")
    http_client.add_response(body=STS_RESPONSE)
    store = _store(web_identity_token_file=str(token_file), external_id="dropped")

    assert assume_role(store, context)["aws_access_key_id"] == "ASIAROLE"

    (request,) = http_client.captured_requests
    params = _params(request)
    assert params["Action"] == "AssumeRoleWithWebIdentity"
    assert params["WebIdentityToken"] == "WEBIDENTITYTOKEN"
    assert params["RoleSessionName"].startswith("cloud-sdk-signers-")
    assert "ExternalId" not in params
    assert "Authorization" not in request.fields


def test_missing_token_file(tmp_path: Path, context: ResolverContext) -> None:
    store = _store(web_identity_token_file=str(tmp_path / "missing"))
    with pytest.raises(CredentialsRetrievalException):
        assume_role(store, context)


@pytest.mark.parametrize("duration", ["899", "43201", "an hour"])
def test_invalid_duration(context: ResolverContext, duration: str) -> None:
    store = _store(
        aws_access_key_id="SOURCEKEY",
        aws_secret_access_key="SOURCESECRET",
        duration_seconds=duration,
    )
    with pytest.raises(InvalidConfigurationException):
        assume_role(store, context)


def test_missing_source_credentials(context: ResolverContext) -> None:
    with pytest.raises(InvalidConfigurationException):
        assume_role(_store(), context)


def test_unsupported_credential_source(context: ResolverContext) -> None:
    with pytest.raises(InvalidConfigurationException):
        assume_role(_store(credential_source="Somewhere"), context)


def test_environment_credential_source(
    context: ResolverContext, environ: dict[str, str], http_client: MockHTTPClient
) -> None:
    environ.update({"AWS_ACCESS_KEY_ID": "ENVKEY", "AWS_SECRET_ACCESS_KEY": "ENV"})
    http_client.add_response(body=STS_RESPONSE)
    assume_role(_store(credential_source="Environment"), context)
    (request,) = http_client.captured_requests
    assert "Credential=ENVKEY/" in request.fields.get_value("Authorization")


def test_error_status(context: ResolverContext, http_client: MockHTTPClient) -> None:
    http_client.add_response(status=403, body=STS_ERROR)
    store = _store(aws_access_key_id="KEY", aws_secret_access_key="SECRET")
    with pytest.raises(CredentialsRetrievalException) as exc_info:
        assume_role(store, context)
    assert exc_info.value.status == 403


@pytest.mark.parametrize(
    "body",
    [
        b"<not xml",
        STS_ERROR,
        b"<Response><Credentials><AccessKeyId>A</AccessKeyId></Credentials>"
        b"</Response>",
    ],
)
def test_parse_credentials_rejects_incomplete_responses(body: bytes) -> None:
    with pytest.raises(CredentialsRetrievalException):
        parse_credentials(body)


def test_default_role_session_name() -> None:
    name = default_role_session_name(datetime(2024, 1, 2, 3, 4, 5, tzinfo=UTC))
    assert name.startswith("cloud-sdk-signers-20240102T030405Z-")


@pytest.mark.usefixtures("no_metadata_hosts")
def test_resolver_assumes_role_from_source_profile(
    tmp_path: Path, context: ResolverContext, http_client: MockHTTPClient
) -> None:
    aws_dir = tmp_path / ".aws"
    aws_dir.mkdir()
    (aws_dir / "credentials").write_text(
        "[base]\naws_access_key_id = BASEKEY\naws_secret_access_key = BASESECRET\n"
    )
    (aws_dir / "config").write_text(
        f"[profile reader]\nrole_arn = {ROLE_ARN}\nsource_profile = base\n"
        "region = eu-west-3\n"
    )
    http_client.add_response(body=STS_RESPONSE)

    resolved = AWSCredentialsResolver(context).resolve("reader")

    assert resolved.access_key_id == "ASIAROLE"
    assert resolved.session_token == "ROLETOKEN"
    assert resolved.expiration == datetime(2030, 1, 1, tzinfo=UTC)
    assert resolved.region == "eu-west-3"
    (request,) = http_client.captured_requests
    assert "Credential=BASEKEY/" in request.fields.get_value("Authorization")


@pytest.mark.usefixtures("no_metadata_hosts")
def test_resolver_assumes_role_with_web_identity_from_environment(
    tmp_path: Path,
    context: ResolverContext,
    environ: dict[str, str],
    http_client: MockHTTPClient,
) -> None:
    token_file = tmp_path / "token"
    token_file.write_text("WEBIDENTITYTOKEN")
    environ.update(
        {"AWS_ROLE_ARN": ROLE_ARN, "AWS_WEB_IDENTITY_TOKEN_FILE": str(token_file)}
    )
    http_client.add_response(body=STS_RESPONSE)

    assert AWSCredentialsResolver(context).resolve().access_key_id == "ASIAROLE"
