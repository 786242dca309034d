#  Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
#  SPDX-License-Identifier: Apache-2.0

from collections import deque
from copy import copy
from typing import Any

from ._http import Fields, HTTPResponse
from .interfaces.http import HTTPClient, Request


class MockHTTPClient(HTTPClient):
    """Implementation of :py:class:`.interfaces.http.HTTPClient` solely for testing
    purposes.

    Responses are queued in FIFO order and requests are captured for inspection.
    """

    def __init__(self) -> None:
        self._response_queue: deque[HTTPResponse | Exception] = deque()
        self._captured_requests: list[Request] = []

    def add_response(
        self,
        status: int = 200,
        headers: list[tuple[str, str]] | None = None,
        body: bytes = b"",
    ) -> None:
        """Queue a response for the next request.

        :param status: HTTP status code.
        :param headers: HTTP response headers as list of (name, value) tuples.
        :param body: Response body as bytes.
        """
        self._response_queue.append(
            HTTPResponse(
                status=status, fields=Fields.from_pairs(headers or []), body=body
            )
        )

    def add_error(self, error: Exception) -> None:
        """Queue an exception to raise from the next request."""
        self._response_queue.append(error)

    def send(self, request: Request) -> HTTPResponse:
        """Capture the request and return the next queued response.

        :raises MockHTTPClientError: If no responses are queued.
        """
        self._captured_requests.append(copy(request))
        if not self._response_queue:
            raise MockHTTPClientError(
                "No responses queued in MockHTTPClient. Use add_response() to "
                "queue responses."
            )
        response = self._response_queue.popleft()
        if isinstance(response, Exception):
            raise response
        return response

    @property
    def call_count(self) -> int:
        """The number of requests made to this client."""
        return len(self._captured_requests)

    @property
    def captured_requests(self) -> list[Request]:
        """The list of all requests captured by this client."""
        return self._captured_requests.copy()

    def __deepcopy__(self, memo: Any) -> "MockHTTPClient":
        return self


class MockHTTPClientError(Exception):
    """Exception raised by MockHTTPClient for test setup issues."""
