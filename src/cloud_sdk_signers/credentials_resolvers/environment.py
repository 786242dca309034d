#  Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
#  SPDX-License-Identifier: Apache-2.0
"""Environment variable, program argument and ini file sources for both chains."""

from pathlib import Path
from types import MappingProxyType
from typing import Final

from ..config import EnvironmentVariables, IniFile, ProgramArguments, ResolverContext

DEFAULT_PROFILE: Final = "default"

AWS_LOCATION_ENV_VARS: Final = MappingProxyType(
    {
        "AWS_CONFIG_FILE": "aws_config_file",
        "AWS_SHARED_CREDENTIALS_FILE": "aws_shared_credentials_file",
        "AWS_PROFILE": "profile",
    }
)

AWS_ENV_VARS: Final = MappingProxyType(
    {
        "AWS_ACCESS_KEY_ID": "aws_access_key_id",
        "AWS_SECRET_ACCESS_KEY": "aws_secret_access_key",
        "AWS_SESSION_TOKEN": "aws_session_token",
        "AWS_CA_BUNDLE": "ca_bundle",
        "AWS_MAX_ATTEMPTS": "max_attempts",
        "AWS_DEFAULT_OUTPUT": "output",
        "AWS_REGION": "region",
        "AWS_DEFAULT_REGION": "default_region",
        "AWS_RETRY_MODE": "retry_mode",
        "AWS_ROLE_ARN": "role_arn",
        "AWS_ROLE_SESSION_NAME": "role_session_name",
        "AWS_WEB_IDENTITY_TOKEN_FILE": "web_identity_token_file",
    }
)

AWS_PROGRAM_ARGUMENTS: Final = MappingProxyType(
    {
        "ca-bundle": "ca_bundle",
        "output": "output",
        "region": "region",
        "profile": "profile",
    }
)

AZURE_VM_ENV_VARS: Final = MappingProxyType(
    {
        "AZURE_TOKEN_OBJECT_ID": "object_id",
        "AZURE_TOKEN_CLIENT_ID": "client_id",
        "AZURE_TOKEN_MI_RES_ID": "mi_res_id",
    }
)

AZURE_ENV_VARS: Final = MappingProxyType(
    {
        "AZURE_CLIENT_ID": "client_id",
        "AZURE_CLIENT_SECRET": "client_secret",
        "AZURE_TENANT_ID": "tenant_id",
        "AZURE_DEFAULTS_GROUP": "group",
        "AZURE_DEFAULTS_LOCATION": "location",
        "AZURE_STORAGE_ACCOUNT": "account",
        "AZURE_STORAGE_KEY": "key",
        "AZURE_STORAGE_SAS_TOKEN": "sas_token",
    }
)


def aws_location_sources(
    context: ResolverContext,
) -> tuple[EnvironmentVariables, ProgramArguments]:
    """Sources for alternate config file locations and the active profile."""
    return (
        EnvironmentVariables(AWS_LOCATION_ENV_VARS, context.environ),
        ProgramArguments({"profile": "profile"}, context.argv),
    )


def aws_environment_variables(context: ResolverContext) -> EnvironmentVariables:
    return EnvironmentVariables(AWS_ENV_VARS, context.environ)


def aws_program_arguments(context: ResolverContext) -> ProgramArguments:
    return ProgramArguments(AWS_PROGRAM_ARGUMENTS, context.argv)


def aws_credentials_file_section(profile: str) -> str:
    """The shared credentials file names sections after the bare profile."""
    return profile


def aws_config_file_section(profile: str) -> str:
    """The config file prefixes every section but ``default`` with ``profile``."""
    return profile if profile == DEFAULT_PROFILE else f"profile {profile}"


def aws_profile_files(
    context: ResolverContext,
    profile: str,
    *,
    credentials_file: str | Path | None = None,
    config_file: str | Path | None = None,
) -> tuple[IniFile, IniFile]:
    """The shared credentials and config file sections for ``profile``."""
    aws_dir = context.home / ".aws"
    return (
        IniFile(
            credentials_file or aws_dir / "credentials",
            aws_credentials_file_section(profile),
        ),
        IniFile(config_file or aws_dir / "config", aws_config_file_section(profile)),
    )


def azure_vm_environment_variables(context: ResolverContext) -> EnvironmentVariables:
    return EnvironmentVariables(AZURE_VM_ENV_VARS, context.environ)


def azure_environment_variables(context: ResolverContext) -> EnvironmentVariables:
    return EnvironmentVariables(AZURE_ENV_VARS, context.environ)


def azure_config_file(context: ResolverContext) -> tuple[IniFile, IniFile]:
    """The ``[defaults]`` and ``[storage]`` sections of ``~/.azure/config``."""
    config_file = context.home / ".azure" / "config"
    return IniFile(config_file, "defaults"), IniFile(config_file, "storage")
