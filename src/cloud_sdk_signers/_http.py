# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

from collections import Counter, OrderedDict
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from functools import cached_property
from typing import TypedDict
from urllib.parse import quote, unquote, urlencode, urlsplit, urlunparse

import cloud_sdk_signers.interfaces.http as interfaces_http
from cloud_sdk_signers.interfaces.http import RequestBody


class Field(interfaces_http.Field):
    """A name-value pair representing a single field in an HTTP Request or Response.

    The kind will dictate metadata placement within an HTTP message.

    All field names are case insensitive and case-variance must be treated as
    equivalent. Names may be normalized but should be preserved for accuracy during
    transmission.
    """

    def __init__(
        self,
        *,
        name: str,
        values: Iterable[str] | None = None,
        kind: interfaces_http.FieldPosition = interfaces_http.FieldPosition.HEADER,
    ):
        self.name = name
        self.values: list[str] = list(values) if values is not None else []
        self.kind = kind

    def add(self, value: str) -> None:
        """Append a value to a field."""
        self.values.append(value)

    def set(self, values: list[str]) -> None:
        """Overwrite existing field values."""
        self.values = values

    def as_string(self, delimiter: str = ",") -> str:
        """Get delimited string of all values.

        If the ``Field`` has zero values, the empty string is returned. If the ``Field``
        has exactly one value, the value is returned unmodified.

        For ``Field``s with more than one value, any values that already contain
        commas or double quotes will be surrounded by double quotes. Within any values
        that get quoted, pre-existing double quotes and backslashes are escaped with a
        backslash.
        """
        value_count = len(self.values)
        if value_count == 0:
            return ""
        if value_count == 1:
            return self.values[0]
        return delimiter.join(quote_and_escape_field_value(val) for val in self.values)

    def __eq__(self, other: object) -> bool:
        """Name, values, and kind must match.

        Values order must match.
        """
        if not isinstance(other, Field):
            return False
        return (
            self.name == other.name
            and self.kind is other.kind
            and self.values == other.values
        )

    def __repr__(self) -> str:
        return f"Field(name={self.name!r}, value={self.values!r}, kind={self.kind!r})"


class Fields(interfaces_http.Fields):
    def __init__(self, initial: Iterable[interfaces_http.Field] | None = None):
        """Collection of header and trailer entries mapped by name.

        :param initial: Initial list of ``Field`` objects. Names must be unique once
            normalized. ``Field``s can also be added and later removed.
        """
        init_fields = list(initial) if initial is not None else []
        init_field_names = [self._normalize_field_name(fld.name) for fld in init_fields]
        fname_counter = Counter(init_field_names)
        repeated_names_exist = (
            len(init_fields) > 0 and fname_counter.most_common(1)[0][1] > 1
        )
        if repeated_names_exist:
            non_unique_names = [name for name, num in fname_counter.items() if num > 1]
            raise ValueError(
                "Field names of the initial list of fields must be unique. The "
                "following normalized field names appear more than once: "
                f"{', '.join(non_unique_names)}."
            )
        init_tuples = zip(init_field_names, init_fields)
        self.entries: OrderedDict[str, interfaces_http.Field] = OrderedDict(init_tuples)

    @classmethod
    def from_pairs(cls, pairs: Iterable[tuple[str, str]]) -> Fields:
        """Build a collection from ``(name, value)`` pairs.

        Repeated names are collected into a single multi-valued ``Field``.
        """
        fields = cls()
        for name, value in pairs:
            fields.add(name, value)
        return fields

    def add(self, name: str, value: str) -> None:
        """Append ``value`` to the field called ``name``, creating it if needed."""
        if name in self:
            self[name].add(value)
        else:
            self.set_field(Field(name=name, values=[value]))

    def set_field(self, field: interfaces_http.Field) -> None:
        """Alias for __setitem__ to utilize the field.name for the entry key."""
        self.__setitem__(field.name, field)

    def __setitem__(self, name: str, field: interfaces_http.Field) -> None:
        """Set or override entry for a Field name."""
        normalized_name = self._normalize_field_name(name)
        normalized_field_name = self._normalize_field_name(field.name)
        if normalized_name != normalized_field_name:
            raise ValueError(
                f"Supplied key {name} does not match Field.name "
                f"provided: {normalized_field_name}"
            )
        self.entries[normalized_name] = field

    def get(
        self, key: str, default: interfaces_http.Field | None = None
    ) -> interfaces_http.Field | None:
        return self[key] if key in self else default

    def get_value(self, key: str, default: str = "") -> str:
        """Get the single-line value of a field, or ``default`` if it is absent."""
        field = self.get(key)
        return default if field is None else field.as_string()

    def remove(self, name: str) -> None:
        """Delete an entry if it is present."""
        if name in self:
            del self[name]

    def __getitem__(self, name: str) -> interfaces_http.Field:
        """Retrieve Field entry."""
        normalized_name = self._normalize_field_name(name)
        return self.entries[normalized_name]

    def __delitem__(self, name: str) -> None:
        """Delete entry from collection."""
        normalized_name = self._normalize_field_name(name)
        del self.entries[normalized_name]

    def _normalize_field_name(self, name: str) -> str:
        """Normalize field names.

        For use as key in ``entries``.
        """
        return name.lower()

    def __iter__(self) -> Iterator[interfaces_http.Field]:
        yield from self.entries.values()

    def __len__(self) -> int:
        return len(self.entries)

    def __repr__(self) -> str:
        return f"Fields({self.entries})"

    def __contains__(self, key: str) -> bool:
        return self._normalize_field_name(key) in self.entries


@dataclass(kw_only=True, frozen=True)
class URI(interfaces_http.URI):
    """Universal Resource Identifier, target location for a :py:class:`HTTPRequest`."""

    scheme: str = "https"
    """For example ``http`` or ``https``."""

    username: str | None = None
    """Username part of the userinfo URI component."""

    password: str | None = None
    """Password part of the userinfo URI component."""

    host: str
    """The hostname, for example ``amazonaws.com``."""

    port: int | None = None
    """An explicit port number."""

    path: str | None = None
    """Path component of the URI, as it appears on the wire."""

    query: str | None = None
    """Query component of the URI as string."""

    fragment: str | None = None
    """Part of the URI specification, but may not be transmitted by a client."""

    @classmethod
    def from_string(cls, url: str) -> URI:
        """Parse an absolute URL such as ``https://host:port/path?query``."""
        parsed = urlsplit(url)
        if not parsed.hostname:
            raise ValueError(f"Unable to determine a host from URL {url!r}.")
        return cls(
            scheme=parsed.scheme or "https",
            username=parsed.username,
            password=parsed.password,
            host=parsed.hostname,
            port=parsed.port,
            path=parsed.path or None,
            query=parsed.query or None,
            fragment=parsed.fragment or None,
        )

    @property
    def netloc(self) -> str:
        """Construct netloc string in format ``{username}:{password}@{host}:{port}``

        ``username``, ``password``, and ``port`` are only included if set. ``password``
        is ignored, unless ``username`` is also set.
        """
        return self._netloc

    # cached_property does NOT behave like property, it actually allows for setting.
    # Therefore we need a layer of indirection.
    @cached_property
    def _netloc(self) -> str:
        if self.username is not None:
            password = "" if self.password is None else f":{self.password}"
            userinfo = f"{self.username}{password}@"
        else:
            userinfo = ""

        if self.port is not None:
            port = f":{self.port}"
        else:
            port = ""

        return f"{userinfo}{self.host}{port}"

    def build(self) -> str:
        """Construct URI string representation.

        Returns a string of the form
        ``{scheme}://{username}:{password}@{host}:{port}{path}?{query}#{fragment}``
        """
        components = (
            self.scheme,
            self.netloc,
            self.path or "",
            "",  # params
            self.query,
            self.fragment,
        )
        return urlunparse(components)

    def to_dict(self) -> URIParameters:
        return {
            "scheme": self.scheme,
            "host": self.host,
            "port": self.port,
            "path": self.path,
            "query": self.query,
            "username": self.username,
            "password": self.password,
            "fragment": self.fragment,
        }

    def with_query(self, query: str | None) -> URI:
        """Return a copy of this URI with its query replaced."""
        uri_dict = self.to_dict()
        uri_dict["query"] = query or None
        return URI(**uri_dict)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, URI):
            return False
        return (
            self.scheme == other.scheme
            and self.host == other.host
            and self.port == other.port
            and self.path == other.path
            and self.query == other.query
            and self.username == other.username
            and self.password == other.password
            and self.fragment == other.fragment
        )


class URIParameters(TypedDict):
    """TypedDict representing the parameters for the URI class.

    These need to be kept in sync for the `to_dict` method.
    """

    scheme: str
    username: str | None
    password: str | None
    host: str
    port: int | None
    path: str | None
    query: str | None
    fragment: str | None


class HTTPRequest(interfaces_http.Request):
    """A request that signers mutate in place."""

    def __init__(
        self,
        *,
        destination: URI,
        method: str = "GET",
        body: RequestBody = None,
        fields: Fields | None = None,
    ):
        self.destination = destination
        self.method = method
        self.body = body
        self.fields = fields if fields is not None else Fields()

    def __repr__(self) -> str:
        # Field values and the query may carry signatures or tokens.
        return (
            f"HTTPRequest(method={self.method!r}, host={self.destination.host!r}, "
            f"path={self.destination.path!r}, fields={[f.name for f in self.fields]!r})"
        )


@dataclass(kw_only=True, frozen=True)
class HTTPResponse(interfaces_http.HTTPResponse):
    status: int
    """The 3 digit response status code (1xx, 2xx, 3xx, 4xx, 5xx)."""

    fields: Fields
    """List of HTTP header fields."""

    body: bytes = b""
    """The response payload."""


def serialize_body(body: RequestBody) -> bytes:
    match body:
        case None:
            return b""
        case bytes():
            return body
        case bytearray():
            return bytes(body)
        case str():
            return body.encode("utf-8")
        case Mapping():
            return encode_query(body.items()).encode("utf-8")
        case _:
            raise TypeError(
                "Request bodies must be fully materialized bytes, str, or a mapping "
                f"of form values. Received {type(body)}."
            )


def parse_query(query: str | None) -> list[tuple[str, str]]:
    """Split a raw query string into decoded ``(key, value)`` pairs.

    Unlike :func:`urllib.parse.parse_qsl`, a ``+`` is kept as a literal plus sign
    and blank values are preserved.
    """
    if not query:
        return []
    pairs: list[tuple[str, str]] = []
    for segment in query.split("&"):
        if not segment:
            continue
        key, _, value = segment.partition("=")
        pairs.append((unquote(key), unquote(value)))
    return pairs


def encode_query(pairs: Iterable[tuple[str, str]]) -> str:
    """Join ``(key, value)`` pairs into a query, escaping everything but unreserved
    characters."""
    return urlencode(list(pairs), quote_via=quote, safe="")


def quote_and_escape_field_value(value: str) -> str:
    """Escapes and quotes a single :class:`Field` value if necessary.

    See :func:`Field.as_string` for quoting and escaping logic.
    """
    chars_to_quote = (",", '"')
    if any(char in chars_to_quote for char in value):
        escaped = value.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    else:
        return value
