#  Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
#  SPDX-License-Identifier: Apache-2.0
from pathlib import Path

import pytest
from cloud_sdk_signers.config import ResolverContext
from cloud_sdk_signers.testing import MockHTTPClient


@pytest.fixture
def http_client() -> MockHTTPClient:
    return MockHTTPClient()


@pytest.fixture
def metadata_http_client() -> MockHTTPClient:
    return MockHTTPClient()


@pytest.fixture
def environ() -> dict[str, str]:
    return {}


@pytest.fixture
def context(
    tmp_path: Path,
    environ: dict[str, str],
    http_client: MockHTTPClient,
    metadata_http_client: MockHTTPClient,
) -> ResolverContext:
    return ResolverContext(
        environ=environ,
        argv=[],
        home=tmp_path,
        http_client=http_client,
        metadata_http_client=metadata_http_client,
        probe_timeout=0.01,
    )


@pytest.fixture
def no_metadata_hosts(monkeypatch: pytest.MonkeyPatch) -> None:
    """Treat the EC2 and Azure VM metadata hosts as unreachable."""
    monkeypatch.setattr(
        "cloud_sdk_signers.credentials_resolvers.imds.can_connect",
        lambda host, port, timeout: False,
    )
    monkeypatch.setattr(
        "cloud_sdk_signers.credentials_resolvers.azure.can_connect",
        lambda host, port, timeout: False,
    )
