# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0
"""Key/value configuration sources and the per-resolution store that merges them."""

from __future__ import annotations

import configparser
import logging
import os
import sys
import threading
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Final, Protocol

from .interfaces.http import HTTPClient

logger: Final = logging.getLogger(__name__)

DEFAULT_PROBE_TIMEOUT: Final = 1.0
DEFAULT_METADATA_CONNECT_TIMEOUT_MS: Final = 1000


class ConfigSource(Protocol):
    """A provider of configuration keys and values."""

    def load(self, store: ConfigStore) -> Mapping[str, str]:
        """Return the keys this source contributes.

        :param store: The values loaded so far. Sources may consult it, for example
            to find a file location or an endpoint, but must not modify it.
        """
        ...


class ConfigStore:
    """A key/value store built up from an ordered list of sources."""

    def __init__(self, initial: Mapping[str, str] | None = None):
        self._values: dict[str, str] = dict(initial or {})

    def load(self, *sources: ConfigSource) -> ConfigStore:
        """Merge ``sources`` into the store.

        Sources are listed from highest to lowest precedence: the first source
        providing a key wins. The merged values override keys already in the store.
        """
        merged: dict[str, str] = {}
        for source in sources:
            for key, value in source.load(self).items():
                merged.setdefault(key, value)
        self._values.update(merged)
        return self

    def fill(self, *sources: ConfigSource) -> ConfigStore:
        """Merge ``sources`` into the store without overriding keys it already has.

        Used for lower precedence sources that are only consulted after the
        store has been loaded from higher precedence ones.
        """
        merged: dict[str, str] = {}
        for source in sources:
            for key, value in source.load(self).items():
                merged.setdefault(key, value)
        for key, value in merged.items():
            self._values.setdefault(key, value)
        return self

    def get(self, key: str, default: str | None = None) -> str | None:
        return self._values.get(key, default)

    def as_dict(self) -> dict[str, str]:
        return dict(self._values)

    def __getitem__(self, key: str) -> str:
        return self._values[key]

    def __contains__(self, key: object) -> bool:
        return key in self._values

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        # Values may hold secrets, so only the keys are shown.
        return f"ConfigStore(keys={sorted(self._values)!r})"


class StaticValues:
    """Explicitly supplied values. ``None`` and empty values are skipped."""

    def __init__(self, values: Mapping[str, str | None]):
        self._values = {k: v for k, v in values.items() if v}

    def load(self, store: ConfigStore) -> Mapping[str, str]:
        return self._values


class EnvironmentVariables:
    """Selects environment variables and renames them to config keys.

    :param mapping: Environment variable name to config key.
    :param environ: The environment to read. Defaults to ``os.environ``.
    """

    def __init__(
        self, mapping: Mapping[str, str], environ: Mapping[str, str] | None = None
    ):
        self._mapping = mapping
        self._environ = environ

    def load(self, store: ConfigStore) -> Mapping[str, str]:
        environ = os.environ if self._environ is None else self._environ
        return {
            key: environ[name]
            for name, key in self._mapping.items()
            if environ.get(name)
        }


class ProgramArguments:
    """Reads ``--name=value`` and ``--name value`` options from the command line.

    :param mapping: Option name, without leading dashes, to config key.
    :param argv: Arguments to scan. Defaults to ``sys.argv[1:]``.
    """

    def __init__(self, mapping: Mapping[str, str], argv: Sequence[str] | None = None):
        self._mapping = mapping
        self._argv = argv

    def load(self, store: ConfigStore) -> Mapping[str, str]:
        argv = sys.argv[1:] if self._argv is None else self._argv
        values: dict[str, str] = {}
        args = iter(argv)
        for arg in args:
            if not arg.startswith("--"):
                continue
            name, sep, value = arg[2:].partition("=")
            if not sep:
                value = next(args, "")
            if name in self._mapping and value:
                values[self._mapping[name]] = value
        return values


class IniFile:
    """A single section of an ini file. A missing file or section contributes
    nothing."""

    def __init__(self, path: str | Path, section: str):
        self._path = Path(path).expanduser()
        self._section = section

    def load(self, store: ConfigStore) -> Mapping[str, str]:
        parser = configparser.ConfigParser(interpolation=None)
        try:
            with self._path.open(encoding="utf-8") as f:
                parser.read_file(f)
        except FileNotFoundError:
            logger.debug("Config file %s does not exist", self._path)
            return {}
        except (OSError, configparser.Error) as e:
            logger.debug("Unable to read config file %s: %s", self._path, e)
            return {}
        if not parser.has_section(self._section):
            logger.debug("Config file %s has no [%s]", self._path, self._section)
            return {}
        return {k: v for k, v in parser.items(self._section) if v}


def _default_metadata_client() -> HTTPClient:
    from .http.crt import CRTHTTPClient, CRTHTTPClientConfig

    return CRTHTTPClient(
        client_config=CRTHTTPClientConfig(
            connect_timeout_ms=DEFAULT_METADATA_CONNECT_TIMEOUT_MS
        )
    )


def _default_http_client() -> HTTPClient:
    from .http.crt import CRTHTTPClient

    return CRTHTTPClient()


@dataclass(kw_only=True)
class ResolverContext:
    """Everything a credential resolution reads from the outside world.

    Contexts are constructed by the caller and passed to resolvers explicitly.
    Independent contexts share no state, so resolutions against them may run
    concurrently.
    """

    environ: Mapping[str, str] = field(default_factory=lambda: os.environ)
    """Environment variables to read."""

    argv: Sequence[str] = field(default_factory=lambda: sys.argv[1:])
    """Program arguments to read."""

    home: Path = field(default_factory=Path.home)
    """Directory holding the ``.aws`` and ``.azure`` configuration directories."""

    http_client: HTTPClient | None = None
    """Client for STS and user delegation key requests."""

    metadata_http_client: HTTPClient | None = None
    """Client for instance and container metadata endpoints. It should use a short
    connect timeout."""

    ecs_host: str = "http://169.254.170.2"
    ec2_host: str = "169.254.169.254"
    ec2_port: int = 80
    azure_vm_host: str = "http://169.254.169.254"
    sts_endpoint: str = "https://sts.amazonaws.com/"

    probe_timeout: float = DEFAULT_PROBE_TIMEOUT
    """Seconds to wait for the EC2 metadata host to accept a connection."""

    _client_lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False, compare=False
    )

    def get_http_client(self) -> HTTPClient:
        """Return ``http_client``, creating a default client on first use.

        Threads sharing a context share one client.
        """
        with self._client_lock:
            if self.http_client is None:
                self.http_client = _default_http_client()
            return self.http_client

    def get_metadata_http_client(self) -> HTTPClient:
        with self._client_lock:
            if self.metadata_http_client is None:
                self.metadata_http_client = _default_metadata_client()
            return self.metadata_http_client
