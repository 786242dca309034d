# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

from collections import OrderedDict
from collections.abc import Iterator, Mapping
from enum import Enum
from typing import Protocol, TypeAlias, runtime_checkable

RequestBody: TypeAlias = bytes | bytearray | str | Mapping[str, str] | None
"""A fully materialized request body.

A mapping is a structured form body, serialized as
``application/x-www-form-urlencoded`` when sent.
"""


class FieldPosition(Enum):
    """The type of a field.

    Defines its placement in a request or response.
    """

    HEADER = 0
    """Header field.

    In HTTP this is a header as defined in RFC 9110 Section 6.3.
    """

    TRAILER = 1
    """Trailer field.

    In HTTP this is a trailer as defined in RFC 9110 Section 6.5.
    """


class Field(Protocol):
    """A name-value pair representing a single field in a request or response.

    All field names are case insensitive and case-variance must be treated as
    equivalent. Names may be normalized but should be preserved for accuracy during
    transmission.
    """

    name: str
    values: list[str]
    kind: FieldPosition = FieldPosition.HEADER

    def add(self, value: str) -> None:
        """Append a value to a field."""
        ...

    def set(self, values: list[str]) -> None:
        """Overwrite existing field values."""
        ...


class Fields(Protocol):
    """Mapping of key-value pair request metadata, such as HTTP fields."""

    # Entries are keyed off the name of a provided Field
    entries: OrderedDict[str, Field]

    def set_field(self, field: Field) -> None:
        """Alias for __setitem__ to utilize the field.name for the entry key."""
        ...

    def __setitem__(self, name: str, field: Field) -> None:
        """Set entry for a Field name."""
        ...

    def __getitem__(self, name: str) -> Field:
        """Retrieve Field entry."""
        ...

    def __delitem__(self, name: str) -> None:
        """Delete entry from collection."""
        ...

    def __iter__(self) -> Iterator[Field]:
        """Allow iteration over entries."""
        ...

    def __len__(self) -> int:
        """Get total number of Field entries."""
        ...

    def __contains__(self, key: str) -> bool: ...

    def get(self, key: str, default: Field | None = None) -> Field | None: ...


@runtime_checkable
class URI(Protocol):
    """Universal Resource Identifier, target location for a :py:class:`Request`."""

    scheme: str
    """For example ``http`` or ``https``."""

    username: str | None
    """Username part of the userinfo URI component."""

    password: str | None
    """Password part of the userinfo URI component."""

    host: str
    """The hostname, for example ``amazonaws.com``."""

    port: int | None
    """An explicit port number."""

    path: str | None
    """Path component of the URI."""

    query: str | None
    """Query component of the URI as string."""

    fragment: str | None
    """Part of the URI specification, but may not be transmitted by a client."""

    def build(self) -> str:
        """Construct URI string representation.

        Returns a string of the form
        ``{scheme}://{username}:{password}@{host}:{port}{path}?{query}#{fragment}``
        """
        ...

    @property
    def netloc(self) -> str:
        """Construct netloc string in format ``{username}:{password}@{host}:{port}``"""
        ...

    def with_query(self, query: str | None) -> URI:
        """Return a copy of this URI with its query replaced."""
        ...


class Request(Protocol):
    """A request whose destination, fields and body are mutated by signers."""

    destination: URI
    method: str
    body: RequestBody
    fields: Fields


class HTTPResponse(Protocol):
    """An HTTP response with a fully read body."""

    @property
    def status(self) -> int:
        """The 3 digit response status code (1xx, 2xx, 3xx, 4xx, 5xx)."""
        ...

    @property
    def fields(self) -> Fields:
        """List of HTTP header fields."""
        ...

    @property
    def body(self) -> bytes:
        """The response payload."""
        ...


class HTTPClient(Protocol):
    """A synchronous HTTP client interface."""

    def send(self, request: Request) -> HTTPResponse:
        """Send HTTP request and block until the response has been read.

        :param request: The request including destination URI, fields, payload.
        """
        ...
