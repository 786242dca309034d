#  Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
#  SPDX-License-Identifier: Apache-2.0

__version__ = "0.1.0"

from ._http import URI, Field, Fields, HTTPRequest, HTTPResponse
from .credentials import (
    AccessToken,
    AWSCredentials,
    AzureCredentials,
    SASToken,
    SharedKey,
)
from .credentials_resolvers import load_aws_credentials, load_azure_credentials
from .signers import AzureSigner, SigV2Signer, SigV4Signer

__all__ = (
    "URI",
    "AWSCredentials",
    "AccessToken",
    "AzureCredentials",
    "AzureSigner",
    "Field",
    "Fields",
    "HTTPRequest",
    "HTTPResponse",
    "SASToken",
    "SharedKey",
    "SigV2Signer",
    "SigV4Signer",
    "load_aws_credentials",
    "load_azure_credentials",
)
