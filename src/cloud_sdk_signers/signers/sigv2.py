# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0
import base64
import datetime
import hmac
import logging
from collections.abc import Mapping
from hashlib import sha256
from typing import Final

from .._http import encode_query, parse_query
from ..credentials import AWSCredentialIdentity, AWSCredentials, redact_secrets
from ..exceptions import UnsupportedRequestException
from ..interfaces.http import Request

logger: Final = logging.getLogger(__name__)

SIGV2_TIMESTAMP_FORMAT: Final = "%Y-%m-%dT%H:%M:%S"


class SigV2Signer:
    """Request signer for the legacy AWS Signature Version 2 algorithm.

    ``GET`` requests are signed over their query parameters and ``POST`` requests
    over a structured form body. The signature is added to whichever of the two
    was signed.
    """

    def sign(
        self,
        *,
        request: Request,
        credentials: AWSCredentials | AWSCredentialIdentity | None,
        version: str | None = None,
        timestamp: datetime.datetime | None = None,
    ) -> None:
        """Generate and apply a SigV2 signature to the supplied request in place.

        :param request: The request to sign.
        :param credentials: The credentials to sign with. Signing is skipped when
            ``None``.
        :param version: The API version to sign for, added as ``Version``.
        :param timestamp: Override for the signing time. Defaults to now.
        """
        if credentials is None:
            return
        params = self._request_params(request)
        if isinstance(credentials, AWSCredentials):
            identity = credentials.get_identity()
        else:
            identity = credentials
        if identity.is_anonymous:
            logger.debug("Skipping SigV2 signing for anonymous credentials")
            return

        params["AWSAccessKeyId"] = identity.access_key_id
        params["SignatureVersion"] = "2"
        params["SignatureMethod"] = "HmacSHA256"
        if version is not None:
            params["Version"] = version
        if timestamp is None:
            timestamp = datetime.datetime.now(datetime.UTC)
        params["Timestamp"] = timestamp.strftime(SIGV2_TIMESTAMP_FORMAT)
        if identity.session_token:
            params["SecurityToken"] = identity.session_token

        sorted_params = sorted(params.items(), key=lambda item: item[0])
        string_to_sign = self.string_to_sign(request=request, params=sorted_params)
        logger.debug(
            "Computed SigV2 string to sign:\n%s",
            redact_secrets(string_to_sign, identity.session_token),
        )
        signature = self._signature(
            string_to_sign=string_to_sign, secret_key=identity.secret_access_key
        )

        if request.method == "GET":
            sorted_params.append(("Signature", signature))
            request.destination = request.destination.with_query(
                encode_query(sorted_params)
            )
        else:
            request.body = {**dict(sorted_params), "Signature": signature}

    def string_to_sign(
        self, *, request: Request, params: list[tuple[str, str]]
    ) -> str:
        """Build the SigV2 string to sign:
            <HTTPMethod>\n
            <lowercased host>\n
            <path, or "/">\n
            <sorted, escaped parameters>
        """
        return (
            f"{request.method}\n"
            f"{request.destination.host.lower()}\n"
            f"{request.destination.path or '/'}\n"
            f"{encode_query(params)}"
        )

    def _signature(self, *, string_to_sign: str, secret_key: str) -> str:
        digest = hmac.new(
            key=secret_key.encode(), msg=string_to_sign.encode(), digestmod=sha256
        ).digest()
        return base64.b64encode(digest).decode().strip()

    def _request_params(self, request: Request) -> dict[str, str]:
        if request.method == "GET":
            return dict(parse_query(request.destination.query))
        if request.method != "POST":
            raise UnsupportedRequestException(
                f"Unsupported method for AWS SigV2 request signing: {request.method}"
            )
        if not isinstance(request.body, Mapping):
            raise UnsupportedRequestException(
                "AWS SigV2 POST request signing requires a mapping request body, "
                f"received {type(request.body)}."
            )
        return {str(k): str(v) for k, v in request.body.items()}
