#  Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
#  SPDX-License-Identifier: Apache-2.0
import json
import socket

import pytest
from cloud_sdk_signers.config import ConfigStore, ResolverContext
from cloud_sdk_signers.credentials_resolvers import (
    ContainerCredentialsSource,
    InstanceMetadataCredentialsSource,
)
from cloud_sdk_signers.credentials_resolvers.imds import can_connect
from cloud_sdk_signers.exceptions import CloudHTTPError
from cloud_sdk_signers.testing import MockHTTPClient

CREDENTIALS_DOCUMENT = {
    "Code": "Success",
    "AccessKeyId": "ASIAMETADATA",
    "SecretAccessKey": "METADATASECRET",
    "Token": "METADATATOKEN",
    "Expiration": "2030-01-01T00:00:00Z",
}


@pytest.fixture
def reachable_metadata_hosts(monkeypatch: pytest.MonkeyPatch) -> list[tuple]:
    probes: list[tuple] = []

    def probe(host: str, port: int, timeout: float) -> bool:
        probes.append((host, port, timeout))
        return True

    monkeypatch.setattr(
        "cloud_sdk_signers.credentials_resolvers.imds.can_connect", probe
    )
    return probes


class TestContainerCredentialsSource:
    def test_skipped_without_relative_uri(
        self, context: ResolverContext, metadata_http_client: MockHTTPClient
    ) -> None:
        assert ContainerCredentialsSource(context).load(ConfigStore()) == {}
        assert metadata_http_client.call_count == 0

    def test_loads_credentials(
        self,
        context: ResolverContext,
        environ: dict[str, str],
        metadata_http_client: MockHTTPClient,
    ) -> None:
        environ["AWS_CONTAINER_CREDENTIALS_RELATIVE_URI"] = "/v2/credentials/id"
        context.ecs_host = "http://127.0.0.1:50397"
        metadata_http_client.add_response(
            body=json.dumps(
                {**CREDENTIALS_DOCUMENT, "RoleArn": "arn:aws:iam::1:role/task"}
            ).encode()
        )
        values = ContainerCredentialsSource(context).load(ConfigStore())
        assert values == {
            "aws_access_key_id": "ASIAMETADATA",
            "aws_secret_access_key": "METADATASECRET",
            "aws_session_token": "METADATATOKEN",
            "expiration": "2030-01-01T00:00:00Z",
            "source_role_arn": "arn:aws:iam::1:role/task",
        }
        (request,) = metadata_http_client.captured_requests
        assert request.destination.build() == (
            "http://127.0.0.1:50397/v2/credentials/id"
        )
        assert request.fields.get_value("User-Agent").startswith("cloud-sdk-signers/")

    @pytest.mark.parametrize(
        "status, body",
        [
            (500, b"oops"),
            (200, b"not json"),
            (200, b"[1, 2]"),
        ],
    )
    def test_bad_responses_contribute_nothing(
        self,
        context: ResolverContext,
        environ: dict[str, str],
        metadata_http_client: MockHTTPClient,
        status: int,
        body: bytes,
    ) -> None:
        environ["AWS_CONTAINER_CREDENTIALS_RELATIVE_URI"] = "/v2/credentials/id"
        metadata_http_client.add_response(status=status, body=body)
        assert ContainerCredentialsSource(context).load(ConfigStore()) == {}

    def test_transport_errors_contribute_nothing(
        self,
        context: ResolverContext,
        environ: dict[str, str],
        metadata_http_client: MockHTTPClient,
    ) -> None:
        environ["AWS_CONTAINER_CREDENTIALS_RELATIVE_URI"] = "/v2/credentials/id"
        metadata_http_client.add_error(CloudHTTPError("connection refused"))
        assert ContainerCredentialsSource(context).load(ConfigStore()) == {}


class TestInstanceMetadataCredentialsSource:
    def _queue_metadata(self, client: MockHTTPClient) -> None:
        client.add_response(body=b"my-role\nother-role\n")
        client.add_response(body=b"us-east-2\n")
        client.add_response(body=json.dumps(CREDENTIALS_DOCUMENT).encode())

    def test_unreachable_host_is_not_queried(
        self,
        context: ResolverContext,
        metadata_http_client: MockHTTPClient,
        no_metadata_hosts: None,
    ) -> None:
        assert InstanceMetadataCredentialsSource(context).load(ConfigStore()) == {}
        assert metadata_http_client.call_count == 0

    def test_loads_credentials_with_session_token(
        self,
        context: ResolverContext,
        metadata_http_client: MockHTTPClient,
        reachable_metadata_hosts: list[tuple],
    ) -> None:
        metadata_http_client.add_response(body=b"SESSIONTOKEN")
        self._queue_metadata(metadata_http_client)

        values = InstanceMetadataCredentialsSource(context).load(ConfigStore())

        assert values == {
            "aws_access_key_id": "ASIAMETADATA",
            "aws_secret_access_key": "METADATASECRET",
            "aws_session_token": "METADATATOKEN",
            "expiration": "2030-01-01T00:00:00Z",
            "region": "us-east-2",
        }
        assert reachable_metadata_hosts == [("169.254.169.254", 80, 0.01)]

        token, roles, region, credentials = metadata_http_client.captured_requests
        assert token.method == "PUT"
        assert token.destination.path == "/latest/api/token"
        assert token.fields.get_value("x-aws-ec2-metadata-token-ttl-seconds") == (
            "21600"
        )
        assert roles.destination.build() == (
            "http://169.254.169.254:80/latest/meta-data/iam/security-credentials/"
        )
        assert region.destination.path == "/latest/meta-data/placement/region"
        assert credentials.destination.path == (
            "/latest/meta-data/iam/security-credentials/my-role"
        )
        for request in (roles, region, credentials):
            assert request.method == "GET"
            assert request.fields.get_value("x-aws-ec2-metadata-token") == (
                "SESSIONTOKEN"
            )

    def test_falls_back_without_session_token(
        self,
        context: ResolverContext,
        metadata_http_client: MockHTTPClient,
        reachable_metadata_hosts: list[tuple],
    ) -> None:
        metadata_http_client.add_response(status=404)
        self._queue_metadata(metadata_http_client)

        values = InstanceMetadataCredentialsSource(context).load(ConfigStore())

        assert values["aws_access_key_id"] == "ASIAMETADATA"
        for request in metadata_http_client.captured_requests[1:]:
            assert "x-aws-ec2-metadata-token" not in request.fields

    def test_missing_role_contributes_nothing(
        self,
        context: ResolverContext,
        metadata_http_client: MockHTTPClient,
        reachable_metadata_hosts: list[tuple],
    ) -> None:
        metadata_http_client.add_response(body=b"SESSIONTOKEN")
        metadata_http_client.add_response(body=b"")
        assert InstanceMetadataCredentialsSource(context).load(ConfigStore()) == {}

    @pytest.mark.parametrize(
        "queue_region",
        [
            lambda client: client.add_response(status=404),
            lambda client: client.add_error(CloudHTTPError("connection reset")),
        ],
        ids=["error-status", "transport-error"],
    )
    def test_region_failure_keeps_credentials(
        self,
        context: ResolverContext,
        metadata_http_client: MockHTTPClient,
        reachable_metadata_hosts: list[tuple],
        queue_region,
    ) -> None:
        metadata_http_client.add_response(body=b"SESSIONTOKEN")
        metadata_http_client.add_response(body=b"my-role\n")
        queue_region(metadata_http_client)
        metadata_http_client.add_response(
            body=json.dumps(CREDENTIALS_DOCUMENT).encode()
        )

        values = InstanceMetadataCredentialsSource(context).load(ConfigStore())

        assert values["aws_access_key_id"] == "ASIAMETADATA"
        assert values["aws_session_token"] == "METADATATOKEN"
        assert "region" not in values
        assert metadata_http_client.call_count == 4

    def test_error_status_contributes_nothing(
        self,
        context: ResolverContext,
        metadata_http_client: MockHTTPClient,
        reachable_metadata_hosts: list[tuple],
    ) -> None:
        metadata_http_client.add_response(body=b"SESSIONTOKEN")
        metadata_http_client.add_response(status=404)
        assert InstanceMetadataCredentialsSource(context).load(ConfigStore()) == {}


def test_can_connect() -> None:
    with socket.create_server(("127.0.0.1", 0)) as server:
        port = server.getsockname()[1]
        assert can_connect("127.0.0.1", port, 1.0)
    assert not can_connect("127.0.0.1", port, 1.0)
