# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0
# ruff: noqa: S101
import datetime
import hmac
import logging
import re
from hashlib import sha256
from typing import Final, TypedDict
from urllib.parse import quote, unquote

from .._http import URI, Field, encode_query, parse_query, serialize_body
from ..config import ResolverContext
from ..credentials import AWSCredentialIdentity, AWSCredentials, redact_secrets
from ..exceptions import MissingExpectedParameterException
from ..interfaces.http import Request

logger: Final = logging.getLogger(__name__)

DEFAULT_REGION: Final = "us-east-1"
DEFAULT_PORTS: Final[dict[str, int]] = {"http": 80, "https": 443}

SIGV4_TIMESTAMP_FORMAT: Final = "%Y%m%dT%H%M%SZ"
EMPTY_SHA256_HASH: Final = (
    "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
)

# Services whose paths are encoded exactly once.
_SINGLE_ENCODED_PATH_SERVICES: Final = ("s3", "service")
_REPEATED_SPACES: Final = re.compile(r"[ ]{2,}")


class SigV4SigningProperties(TypedDict, total=False):
    service: str
    region: str
    date: str
    include_content_sha256: bool
    debug: bool


def url_service_region(host: str) -> tuple[str | None, str | None]:
    """Parse the service and region from an AWS host name.

    Recognized forms are ``service.amazonaws.com``,
    ``service.region.amazonaws.com``, ``bucket.service.region.amazonaws.com`` and
    the VPC endpoint form ``bucket.vpce-id.service.region.vpce.amazonaws.com``.
    Components that can't be determined are returned as ``None``.
    """
    parts = host.split(".")
    match len(parts):
        case 5 if not _is_numeric(parts[1]) and not _is_numeric(parts[2]):
            return parts[1], parts[2]
        case 4 if not _is_numeric(parts[0]) and not _is_numeric(parts[1]):
            return parts[0], parts[1]
        case 3 if not _is_numeric(parts[0]):
            return parts[0], None
        case 7 if parts[4:] == ["vpce", "amazonaws", "com"]:
            return parts[2], parts[3]
    return None, None


def _is_numeric(value: str) -> bool:
    return all(c.isdigit() for c in value)


def _trim_all(value: str) -> str:
    return _REPEATED_SPACES.sub(" ", value).strip()


class SigV4Signer:
    """Request signer for applying the AWS Signature Version 4 algorithm.

    :param context: Where to look up a region when neither the signing properties,
        the host nor the credentials supply one. Defaults to the process
        environment and the files under the home directory.
    """

    def __init__(self, context: ResolverContext | None = None) -> None:
        self._context = context

    def sign(
        self,
        *,
        request: Request,
        credentials: AWSCredentials | AWSCredentialIdentity | None,
        signing_properties: SigV4SigningProperties | None = None,
    ) -> None:
        """Generate and apply a SigV4 signature to the supplied request in place.

        Signing is skipped for ``None`` or empty credentials so that public
        resources can be requested anonymously.

        :param request: The request to sign prior to sending it to the service.
        :param credentials: A set of credentials representing an AWS Identity or role
            capacity.
        :param signing_properties: SigV4SigningProperties to define signing
            primitives such as the target service, region, and date. The service
            and region are parsed from the request's host when not supplied.
        """
        if credentials is None:
            return
        identity = self._get_identity(credentials)
        if identity.is_anonymous:
            logger.debug("Skipping SigV4 signing for anonymous credentials")
            return

        new_signing_properties = self._normalize_signing_properties(
            request=request,
            signing_properties=signing_properties or SigV4SigningProperties(),
            credentials=credentials,
        )
        log_level = (
            logging.INFO if new_signing_properties.get("debug") else logging.DEBUG
        )
        logger.log(
            log_level,
            "Computed service %r, region %r for %s",
            new_signing_properties["service"],
            new_signing_properties["region"],
            request.destination.host,
        )
        self._apply_required_fields(
            request=request,
            signing_properties=new_signing_properties,
            identity=identity,
        )

        # Construct core signing components
        canonical_request = self.canonical_request(
            signing_properties=new_signing_properties,
            request=request,
        )
        logger.log(
            log_level,
            "Computed canonical request:\n%s",
            redact_secrets(canonical_request, identity.session_token),
        )
        string_to_sign = self.string_to_sign(
            canonical_request=canonical_request,
            signing_properties=new_signing_properties,
        )
        logger.log(log_level, "Computed string to sign:\n%s", string_to_sign)
        signature = self._signature(
            string_to_sign=string_to_sign,
            secret_key=identity.secret_access_key,
            signing_properties=new_signing_properties,
        )

        signing_fields = self._normalize_signing_fields(request=request)
        credential_scope = self._scope(signing_properties=new_signing_properties)
        credential = f"{identity.access_key_id}/{credential_scope}"
        authorization = self.generate_authorization_field(
            credential=credential,
            signed_headers=list(signing_fields.keys()),
            signature=signature,
        )
        request.fields.set_field(authorization)

    def generate_authorization_field(
        self, *, credential: str, signed_headers: list[str], signature: str
    ) -> Field:
        """Generate the `Authorization` field.

        :param credential:
            Credential scope string for generating the Authorization header.
            Defined as:
                <access_key>/<date>/<region>/<service>/<request_type>
        :param signed_headers:
            A list of the field names used in signing.
        :param signature:
            Final hash of the SigV4 signing algorithm generated from the
            canonical request and string to sign.
        """
        signed_headers_str = ";".join(signed_headers)
        auth_str = (
            f"AWS4-HMAC-SHA256 Credential={credential}, "
            f"SignedHeaders={signed_headers_str}, Signature={signature}"
        )
        return Field(name="Authorization", values=[auth_str])

    def signing_key(
        self, *, secret_key: str, signing_properties: SigV4SigningProperties
    ) -> bytes:
        """Derive the signing key scoped to the date, region and service."""

        # Components of Signing Key Calculation
        #
        # DateKey              = HMAC-SHA256("AWS4"+"<SecretAccessKey>", "<YYYYMMDD>")
        # DateRegionKey        = HMAC-SHA256(<DateKey>, "<aws-region>")
        # DateRegionServiceKey = HMAC-SHA256(<DateRegionKey>, "<aws-service>")
        # SigningKey = HMAC-SHA256(<DateRegionServiceKey>, "aws4_request")
        assert "date" in signing_properties
        k_date = self._hash(
            key=f"AWS4{secret_key}".encode(), value=signing_properties["date"][0:8]
        )
        k_region = self._hash(key=k_date, value=signing_properties["region"])
        k_service = self._hash(key=k_region, value=signing_properties["service"])
        return self._hash(key=k_service, value="aws4_request")

    def _signature(
        self,
        *,
        string_to_sign: str,
        secret_key: str,
        signing_properties: SigV4SigningProperties,
    ) -> str:
        """Sign the string to sign.

        In SigV4, a signing key is created that is scoped to a specific region and
        service. The date, region, service and resulting signing key are individually
        hashed, then the composite hash is used to sign the string to sign.
        """
        k_signing = self.signing_key(
            secret_key=secret_key, signing_properties=signing_properties
        )
        return self._hash(key=k_signing, value=string_to_sign).hex()

    def _hash(self, key: bytes, value: str) -> bytes:
        return hmac.new(key=key, msg=value.encode(), digestmod=sha256).digest()

    def _get_identity(
        self, credentials: AWSCredentials | AWSCredentialIdentity
    ) -> AWSCredentialIdentity:
        if isinstance(credentials, AWSCredentials):
            return credentials.get_identity()
        if not isinstance(credentials, AWSCredentialIdentity):
            raise ValueError(
                "Received unexpected value for credentials parameter. Expected "
                f"AWSCredentials or AWSCredentialIdentity but received "
                f"{type(credentials)}."
            )
        if credentials.is_expired:
            raise ValueError(
                f"Provided identity expired at {credentials.expiration}. Please "
                "refresh the credentials or update the expiration parameter."
            )
        return credentials

    def _normalize_signing_properties(
        self,
        *,
        request: Request,
        signing_properties: SigV4SigningProperties,
        credentials: AWSCredentials | AWSCredentialIdentity,
    ) -> SigV4SigningProperties:
        # Create copy of signing properties to avoid mutating the original
        new_signing_properties = SigV4SigningProperties(**signing_properties)
        parsed_service, parsed_region = url_service_region(request.destination.host)

        service = new_signing_properties.get("service") or parsed_service
        if not service:
            raise MissingExpectedParameterException(
                "Unable to determine the AWS service for a request to "
                f"{request.destination.host}; pass a service in signing_properties."
            )
        new_signing_properties["service"] = service.lower()

        region = new_signing_properties.get("region") or parsed_region
        if not region and isinstance(credentials, AWSCredentials):
            region = credentials.region
        if not region:
            region = self._configured_region(credentials)
        new_signing_properties["region"] = region or DEFAULT_REGION

        if "date" not in new_signing_properties:
            date_obj = datetime.datetime.now(datetime.UTC)
            new_signing_properties["date"] = date_obj.strftime(SIGV4_TIMESTAMP_FORMAT)
        return new_signing_properties

    def _configured_region(
        self, credentials: AWSCredentials | AWSCredentialIdentity
    ) -> str | None:
        from ..credentials_resolvers.aws import resolve_region

        profile = credentials.profile if isinstance(credentials, AWSCredentials) else ""
        return resolve_region(profile, context=self._context)

    def _apply_required_fields(
        self,
        *,
        request: Request,
        signing_properties: SigV4SigningProperties,
        identity: AWSCredentialIdentity,
    ) -> None:
        assert "date" in signing_properties
        # A stale Authorization from an earlier attempt would otherwise be signed.
        if "Authorization" in request.fields:
            del request.fields["Authorization"]
        request.fields.set_field(
            Field(name="X-Amz-Date", values=[signing_properties["date"]])
        )
        if identity.session_token:
            request.fields.set_field(
                Field(name="X-Amz-Security-Token", values=[identity.session_token])
            )

    def canonical_request(
        self, *, signing_properties: SigV4SigningProperties, request: Request
    ) -> str:
        """The canonical request is a standardized string laying out the components used
        in the SigV4 signing algorithm. This is useful to quickly compare inputs to find
        signature mismatches and unintended variances.

        The SigV4 specification defines the canonical request to be:
            <HTTPMethod>\n
            <CanonicalURI>\n
            <CanonicalQueryString>\n
            <CanonicalHeaders>\n
            <SignedHeaders>\n
            <HashedPayload>

        :param signing_properties:
            SigV4SigningProperties to define signing primitives such as
            the target service, region, and date.
        :param request:
            A request to use for generating a SigV4 signature.
        """
        # We generate the payload first to ensure any field modifications
        # are in place before choosing the canonical fields.
        canonical_payload = self._format_canonical_payload(
            request=request, signing_properties=signing_properties
        )
        canonical_path = self._format_canonical_path(
            path=request.destination.path, service=signing_properties["service"]
        )
        canonical_query = self._format_canonical_query(query=request.destination.query)
        normalized_fields = self._normalize_signing_fields(request=request)
        canonical_fields = self._format_canonical_fields(fields=normalized_fields)
        return (
            f"{request.method.upper()}\n"
            f"{canonical_path}\n"
            f"{canonical_query}\n"
            f"{canonical_fields}\n"
            f"{';'.join(normalized_fields)}\n"
            f"{canonical_payload}"
        )

    def string_to_sign(
        self,
        *,
        canonical_request: str,
        signing_properties: SigV4SigningProperties,
    ) -> str:
        """The string to sign is the second step of our signing algorithm which
        concatenates the formal identifier of our signing algorithm, the signing
        DateTime, the scope of our credentials, and a hash of our previously generated
        canonical request.

        The SigV4 specification defines the string to sign as:
            Algorithm \n
            RequestDateTime \n
            CredentialScope  \n
            HashedCanonicalRequest

        :param canonical_request:
            String generated from the `canonical_request` method.
        :param signing_properties:
            SigV4SigningProperties to define signing primitives such as
            the target service, region, and date.
        """
        date = signing_properties.get("date")
        if date is None:
            raise MissingExpectedParameterException(
                "Cannot generate string_to_sign without a valid date "
                f"in your signing_properties. Current value: {date}"
            )
        return (
            "AWS4-HMAC-SHA256\n"
            f"{date}\n"
            f"{self._scope(signing_properties=signing_properties)}\n"
            f"{sha256(canonical_request.encode()).hexdigest()}"
        )

    def _scope(self, signing_properties: SigV4SigningProperties) -> str:
        assert "date" in signing_properties
        formatted_date = signing_properties["date"][0:8]
        region = signing_properties["region"]
        service = signing_properties["service"]
        # Scope format: <YYYYMMDD>/<AWS Region>/<AWS Service>/aws4_request
        return f"{formatted_date}/{region}/{service}/aws4_request"

    def _format_canonical_path(self, *, path: str | None, service: str) -> str:
        if not path:
            path = "/"

        if service in _SINGLE_ENCODED_PATH_SERVICES:
            # S3 object keys are signed as given: escape sequences already in the
            # path are decoded first, and repeated slashes are significant.
            encoded_path = quote(string=unquote(path), safe="/")
            return _remove_dot_segments(encoded_path, remove_consecutive_slashes=False)
        encoded_path = quote(string=path, safe="/")
        return _remove_dot_segments(encoded_path)

    def _format_canonical_query(self, *, query: str | None) -> str:
        query_params = parse_query(query)
        # Pairs are ordered by key and value together, not by key alone.
        query_params.sort(key=lambda pair: f"{pair[0]}{pair[1]}")
        return encode_query(query_params)

    def _normalize_signing_fields(self, *, request: Request) -> dict[str, str]:
        normalized_fields = {
            field.name.strip().lower(): ",".join(_trim_all(v) for v in field.values)
            for field in request.fields
        }
        if "host" not in normalized_fields:
            normalized_fields["host"] = self._normalize_host_field(
                uri=request.destination
            )

        return dict(sorted(normalized_fields.items()))

    def _normalize_host_field(self, *, uri: URI) -> str:
        if uri.port is not None and DEFAULT_PORTS.get(uri.scheme) == uri.port:
            uri_dict = uri.to_dict()
            uri_dict.update({"port": None})
            uri = URI(**uri_dict)
        return uri.netloc

    def _format_canonical_fields(self, *, fields: dict[str, str]) -> str:
        return "".join(f"{key}:{value}\n" for key, value in fields.items())

    def _format_canonical_payload(
        self,
        *,
        request: Request,
        signing_properties: SigV4SigningProperties,
    ) -> str:
        payload_hash = self._compute_payload_hash(request=request)
        if signing_properties.get("include_content_sha256", True):
            request.fields.set_field(
                Field(name="X-Amz-Content-SHA256", values=[payload_hash])
            )
        return payload_hash

    def _compute_payload_hash(self, *, request: Request) -> str:
        if request.body is None:
            return EMPTY_SHA256_HASH
        return sha256(serialize_body(request.body)).hexdigest()


def _remove_dot_segments(path: str, remove_consecutive_slashes: bool = True) -> str:
    """Removes dot segments from a path per :rfc:`3986#section-5.2.4`.

    Optionally removes consecutive slashes, true by default.
    :param path: The path to modify.
    :param remove_consecutive_slashes: Whether to remove consecutive slashes.
    :returns: The path with dot segments removed.
    """
    output: list[str] = []
    for segment in path.split("/"):
        if segment == ".":
            continue
        elif segment != "..":
            output.append(segment)
        elif output:
            output.pop()
    if path.startswith("/") and (not output or output[0]):
        output.insert(0, "")
    if output and path.endswith(("/.", "/..")):
        output.append("")
    result = "/".join(output)
    if remove_consecutive_slashes:
        result = result.replace("//", "/")
    return result
