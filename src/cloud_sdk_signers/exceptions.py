# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0


class BaseCloudSDKException(Exception):
    """Top-level exception to capture SDK-related errors."""


class MissingExpectedParameterException(BaseCloudSDKException, ValueError):
    """Signing requires identifying values, such as a service or account, that could
    not be determined."""


class InvalidConfigurationException(BaseCloudSDKException, ValueError):
    """A configured value is outside of the range accepted by the service."""


class UnsupportedRequestException(BaseCloudSDKException, ValueError):
    """The request's method or body shape can't be signed by the chosen signer."""


class CloudHTTPError(BaseCloudSDKException):
    """An error that occurred while sending or receiving an HTTP message."""


class CredentialsRetrievalException(BaseCloudSDKException):
    """A credentials or signing key endpoint failed to return usable material."""

    def __init__(self, message: str, *, status: int | None = None):
        super().__init__(message)
        self.status = status
