# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0
from .azure import AzureSigner
from .sigv2 import SigV2Signer
from .sigv4 import SigV4Signer, SigV4SigningProperties, url_service_region

__all__ = (
    "AzureSigner",
    "SigV2Signer",
    "SigV4Signer",
    "SigV4SigningProperties",
    "url_service_region",
)
