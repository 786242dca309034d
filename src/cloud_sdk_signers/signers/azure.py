# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0
import base64
import datetime
import hashlib
import hmac
import logging
import re
from email.utils import formatdate
from typing import Final, assert_never

from .._http import Field, encode_query, parse_query, serialize_body
from ..credentials import (
    AccessToken,
    AzureAuth,
    AzureCredentials,
    SASToken,
    SharedKey,
)
from ..exceptions import MissingExpectedParameterException
from ..interfaces.http import Request

logger: Final = logging.getLogger(__name__)

AZURE_API_VERSION: Final = "2020-04-08"

_WHITESPACE_RUNS: Final = re.compile(r"\s{2,}")

# Standard headers included, in order, in the Shared Key string to sign. The
# Date line is always blank because x-ms-date is signed instead.
_SIGNED_STANDARD_HEADERS: Final = (
    "Content-Encoding",
    "Content-Language",
    "Content-Length",
    "Content-MD5",
    "Content-Type",
    "Date",
    "If-Modified-Since",
    "If-Match",
    "If-None-Match",
    "If-Unmodified-Since",
    "Range",
)


def http_date(value: datetime.datetime) -> str:
    """Format ``value`` as an RFC 1123 date such as ``Sun, 30 Aug 2015 12:36:00 GMT``.

    Day and month names are English regardless of the process locale. Naive values
    are taken to be UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=datetime.UTC)
    return formatdate(value.timestamp(), usegmt=True)


class AzureSigner:
    """Request signer for Azure Storage.

    Shared keys produce a ``SharedKey`` signature, bearer tokens are attached as
    is, and SAS tokens are merged into the request's query.
    """

    def sign(
        self,
        *,
        request: Request,
        credentials: AzureCredentials | AzureAuth | None,
        add_content_md5: bool = False,
        date: datetime.datetime | None = None,
    ) -> None:
        """Authorize the supplied request in place.

        :param request: The request to sign.
        :param credentials: The credentials to sign with. Signing is skipped when
            ``None`` or when the credentials are an empty shared key.
        :param add_content_md5: Set ``Content-MD5`` from the body before signing.
        :param date: Override for the signing time. Defaults to now.
        """
        if credentials is None:
            return
        if isinstance(credentials, AzureCredentials):
            auth = credentials.get_auth()
        else:
            auth = credentials
        if isinstance(auth, SharedKey) and auth.is_anonymous:
            logger.debug("Skipping Azure signing for anonymous credentials")
            return

        if "Authorization" in request.fields:
            del request.fields["Authorization"]
        if date is None:
            date = datetime.datetime.now(datetime.UTC)
        request.fields.set_field(
            Field(name="x-ms-date", values=[http_date(date)])
        )
        request.fields.set_field(
            Field(name="x-ms-version", values=[AZURE_API_VERSION])
        )
        body = serialize_body(request.body)
        # The service signs the Content-Length it receives.
        if body and "Content-Length" not in request.fields:
            request.fields.set_field(
                Field(name="Content-Length", values=[str(len(body))])
            )
        if add_content_md5:
            digest = hashlib.md5(body).digest()
            request.fields.set_field(
                Field(name="Content-MD5", values=[base64.b64encode(digest).decode()])
            )

        match auth:
            case AccessToken(token=token):
                request.fields.set_field(
                    Field(name="Authorization", values=[f"Bearer {token}"])
                )
            case SASToken():
                self._apply_sas_token(request=request, token=auth)
            case SharedKey(account=account, key=key):
                self._apply_shared_key(request=request, account=account, key=key)
            case _:
                assert_never(auth)

    def _apply_sas_token(self, *, request: Request, token: SASToken) -> None:
        params = dict(parse_query(request.destination.query))
        # Token parameters win over any already on the request.
        params.update(token.params())
        request.destination = request.destination.with_query(
            encode_query(params.items())
        )

    def _apply_shared_key(self, *, request: Request, account: str, key: str) -> None:
        if not account:
            raise MissingExpectedParameterException(
                "Unable to determine the Azure storage account for a request to "
                f"{request.destination.host}."
            )
        string_to_sign = self.string_to_sign(request=request, account=account)
        logger.debug("Computed Shared Key string to sign:\n%s", string_to_sign)
        signature = base64.b64encode(
            hmac.new(
                key=base64.b64decode(key),
                msg=string_to_sign.encode(),
                digestmod=hashlib.sha256,
            ).digest()
        ).decode()
        request.fields.set_field(
            Field(name="Authorization", values=[f"SharedKey {account}:{signature}"])
        )

    def string_to_sign(self, *, request: Request, account: str) -> str:
        """Build the Shared Key string to sign.

        The block is the method, the standard headers in fixed order (a zero
        ``Content-Length`` and ``Date`` are left blank), the canonicalized
        ``x-ms-`` headers and the canonicalized resource, joined by newlines.
        """
        lines = [request.method.upper()]
        for name in _SIGNED_STANDARD_HEADERS:
            field = request.fields.get(name) if name != "Date" else None
            value = "" if field is None else field.as_string()
            if name == "Content-Length" and value == "0":
                value = ""
            lines.append(value)
        lines.append(self.canonicalized_headers(request=request))
        lines.append(self.canonicalized_resource(request=request, account=account))
        return "\n".join(lines)

    def canonicalized_headers(self, *, request: Request) -> str:
        headers = {
            field.name.strip().lower(): ",".join(
                _WHITESPACE_RUNS.sub(" ", value).strip() for value in field.values
            )
            for field in request.fields
            if field.name.strip().lower().startswith("x-ms-")
        }
        return "\n".join(f"{name}:{value}" for name, value in sorted(headers.items()))

    def canonicalized_resource(self, *, request: Request, account: str) -> str:
        params: dict[str, list[str]] = {}
        for key, value in parse_query(request.destination.query):
            params.setdefault(key.lower(), []).append(value)
        resource = f"/{account}{request.destination.path or '/'}"
        for key in sorted(params):
            resource += f"\n{key}:{','.join(sorted(params[key]))}"
        return resource
