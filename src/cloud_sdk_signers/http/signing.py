# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0
"""HTTP clients that sign each request immediately before sending it.

Signing as late as possible keeps the signed timestamps fresh across retries
and lets a refreshed credential take effect on the next request.
"""

import logging
from typing import Final

from ..credentials import (
    AWSCredentialIdentity,
    AWSCredentials,
    AzureAuth,
    AzureCredentials,
)
from ..interfaces.http import HTTPClient, HTTPResponse, Request
from ..signers.azure import AzureSigner
from ..signers.sigv4 import SigV4Signer, SigV4SigningProperties

logger: Final = logging.getLogger(__name__)


class AWSSigningHTTPClient:
    """Wraps an :class:`HTTPClient` and applies SigV4 to every request.

    :param http_client: The client that sends the signed requests.
    :param credentials: The credentials to sign with. ``None`` sends unsigned.
    :param signing_properties: Properties passed to every signature. Service and
        region are parsed from each request's host when omitted.
    """

    def __init__(
        self,
        http_client: HTTPClient,
        *,
        credentials: AWSCredentials | AWSCredentialIdentity | None,
        signing_properties: SigV4SigningProperties | None = None,
        signer: SigV4Signer | None = None,
    ):
        self._http_client = http_client
        self._credentials = credentials
        self._signing_properties = signing_properties
        self._signer = signer or SigV4Signer()

    def send(self, request: Request) -> HTTPResponse:
        self._signer.sign(
            request=request,
            credentials=self._credentials,
            signing_properties=(
                SigV4SigningProperties(**self._signing_properties)
                if self._signing_properties
                else None
            ),
        )
        logger.debug("Sending SigV4 signed %r", request)
        return self._http_client.send(request)


class AzureSigningHTTPClient:
    """Wraps an :class:`HTTPClient` and authorizes every request for Azure Storage.

    :param http_client: The client that sends the signed requests.
    :param credentials: The credentials to sign with. ``None`` sends unsigned.
    :param add_content_md5: Set ``Content-MD5`` on each request before signing.
    """

    def __init__(
        self,
        http_client: HTTPClient,
        *,
        credentials: AzureCredentials | AzureAuth | None,
        add_content_md5: bool = False,
        signer: AzureSigner | None = None,
    ):
        self._http_client = http_client
        self._credentials = credentials
        self._add_content_md5 = add_content_md5
        self._signer = signer or AzureSigner()

    def send(self, request: Request) -> HTTPResponse:
        self._signer.sign(
            request=request,
            credentials=self._credentials,
            add_content_md5=self._add_content_md5,
        )
        logger.debug("Sending Azure signed %r", request)
        return self._http_client.send(request)
