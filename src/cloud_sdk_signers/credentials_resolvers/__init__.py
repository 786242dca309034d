#  Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
#  SPDX-License-Identifier: Apache-2.0
from .aws import AWSCredentialsResolver, load_aws_credentials, resolve_region
from .azure import (
    AzureCredentialsResolver,
    AzureVMCredentialsSource,
    load_azure_credentials,
)
from .container import ContainerCredentialsSource
from .imds import InstanceMetadataCredentialsSource
from .sts import assume_role

__all__ = (
    "AWSCredentialsResolver",
    "AzureCredentialsResolver",
    "AzureVMCredentialsSource",
    "ContainerCredentialsSource",
    "InstanceMetadataCredentialsSource",
    "assume_role",
    "load_aws_credentials",
    "load_azure_credentials",
    "resolve_region",
)
