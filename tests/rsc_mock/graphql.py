"""Scripted GraphQL client.

Stands in for PolarisClient in backend tests: responses are registered per
operation name, either as a fixed payload or as a callable of the variables.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

from polaris_operator.client import GraphQLError

Response = dict[str, Any] | Callable[[dict[str, Any]], dict[str, Any]]


def not_found(operation: str) -> GraphQLError:
    """GraphQL error as returned by RSC for a missing object."""
    return GraphQLError(operation, [{"message": "object not found"}])


class MockGraphQLClient:
    """Records executed operations and returns scripted payloads."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._responses: dict[str, Response] = {}

    def respond(self, operation: str, response: Response) -> None:
        """Register the payload (or payload factory) for an operation."""
        self._responses[operation] = response

    def operations(self) -> list[str]:
        return [name for name, _ in self.calls]

    def variables(self, operation: str) -> list[dict[str, Any]]:
        return [v for name, v in self.calls if name == operation]

    async def execute(
        self,
        operation: str,
        query: str,
        variables: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        variables = variables or {}
        self.calls.append((operation, variables))

        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            # Yield so concurrent callers overlap
            await asyncio.sleep(0)
        finally:
            self.in_flight -= 1

        if operation not in self._responses:
            raise AssertionError(f"Unexpected GraphQL operation: {operation}")

        response = self._responses[operation]
        if callable(response):
            return response(variables)
        return response
