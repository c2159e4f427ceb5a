"""GraphQL client for the RSC API built on the azure-core pipeline.

The azure-core pipeline supplies the transport-level concerns: headers,
user agent, retry of the HTTP exchange, bearer token injection and network
tracing. Membership-level retry is never done here; a rejected mutation is
surfaced to the executor unchanged.

SECURITY: Timeouts are enforced on every request to prevent indefinite hangs.
"""

from __future__ import annotations

import asyncio
import logging
from functools import partial
from typing import Any

from azure.core import PipelineClient
from azure.core.credentials import TokenCredential
from azure.core.exceptions import AzureError
from azure.core.pipeline.policies import (
    BearerTokenCredentialPolicy,
    HeadersPolicy,
    NetworkTraceLoggingPolicy,
    RetryPolicy,
    UserAgentPolicy,
)
from azure.core.rest import HttpRequest

from .credentials import USER_AGENT

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT_SECONDS = 60
GRAPHQL_PATH = "/graphql"
# RSC tokens are not scoped, the policy still requires one
TOKEN_SCOPE = "rsc"


class GraphQLError(AzureError):
    """Raised when a GraphQL response carries errors."""

    def __init__(self, operation: str, errors: list[dict[str, Any]]) -> None:
        messages = [str(e.get("message", e)) for e in errors]
        super().__init__(f"{operation}: {'; '.join(messages)}")
        self.operation = operation
        self.errors = errors

    @property
    def is_not_found(self) -> bool:
        return any("not found" in str(e.get("message", "")).lower() for e in self.errors)


class PolarisClient:
    """Executes GraphQL operations against an RSC account."""

    def __init__(
        self,
        api_url: str,
        credential: TokenCredential,
        request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        pipeline_client: PipelineClient | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            api_url: Base URL of the RSC API (https://<account>.my.rubrik.com/api).
            credential: Token credential used for bearer authentication.
            request_timeout_seconds: Upper bound for a single GraphQL request.
            pipeline_client: Preconfigured pipeline client (tests).
        """
        self._api_url = api_url.rstrip("/")
        self._timeout = request_timeout_seconds
        self._client = pipeline_client or PipelineClient(
            base_url=self._api_url,
            policies=[
                HeadersPolicy({"Accept": "application/json"}),
                UserAgentPolicy(USER_AGENT),
                RetryPolicy(),
                BearerTokenCredentialPolicy(credential, TOKEN_SCOPE),
                NetworkTraceLoggingPolicy(),
            ],
        )

    @property
    def api_url(self) -> str:
        return self._api_url

    def execute_sync(
        self,
        operation: str,
        query: str,
        variables: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Execute a GraphQL operation and return its data payload.

        Raises:
            HttpResponseError: If the HTTP exchange fails.
            GraphQLError: If the response carries GraphQL errors.
        """
        request = HttpRequest(
            "POST",
            self._client.format_url(GRAPHQL_PATH),
            json={"operationName": operation, "query": query, "variables": variables or {}},
        )
        response = self._client.send_request(request)
        response.raise_for_status()
        body = response.json()

        errors = body.get("errors")
        if errors:
            logger.warning(
                "GraphQL operation returned errors",
                extra={"operation": operation, "error_count": len(errors)},
            )
            raise GraphQLError(operation, errors)

        return body.get("data") or {}

    async def execute(
        self,
        operation: str,
        query: str,
        variables: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Execute a GraphQL operation without blocking the event loop.

        The pipeline is synchronous, so the call runs in the default executor
        with a timeout.

        Raises:
            TimeoutError: If the request exceeds the configured timeout.
            HttpResponseError: If the HTTP exchange fails.
            GraphQLError: If the response carries GraphQL errors.
        """
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(
                    None, partial(self.execute_sync, operation, query, variables)
                ),
                timeout=self._timeout,
            )
        except TimeoutError:
            logger.error(
                "GraphQL operation timed out",
                extra={"operation": operation, "timeout_seconds": self._timeout},
            )
            raise

    def close(self) -> None:
        self._client.close()
