"""Service account authentication for the RSC GraphQL API.

A service account is a client id and secret issued by RSC together with the
URI that exchanges them for a short-lived bearer token. The credential below
implements the azure-core TokenCredential protocol so it plugs straight into
BearerTokenCredentialPolicy.

SECURITY INVARIANTS:
1. The client secret is never logged, only a masked client id
2. Tokens are cached in memory only and refreshed shortly before expiry
3. Service account files larger than MAX_SERVICE_ACCOUNT_FILE_BYTES are rejected
"""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

from azure.core import PipelineClient
from azure.core.credentials import AccessToken
from azure.core.exceptions import AzureError, HttpResponseError
from azure.core.pipeline.policies import HeadersPolicy, RetryPolicy, UserAgentPolicy
from azure.core.rest import HttpRequest

logger = logging.getLogger(__name__)

ENV_SERVICE_ACCOUNT_FILE = "RUBRIK_POLARIS_SERVICEACCOUNT_FILE"
ENV_CLIENT_ID = "RUBRIK_POLARIS_SERVICEACCOUNT_CLIENTID"
ENV_CLIENT_SECRET = "RUBRIK_POLARIS_SERVICEACCOUNT_CLIENTSECRET"
ENV_ACCESS_TOKEN_URI = "RUBRIK_POLARIS_SERVICEACCOUNT_ACCESSTOKENURI"
ENV_NAME = "RUBRIK_POLARIS_SERVICEACCOUNT_NAME"

MAX_SERVICE_ACCOUNT_FILE_BYTES = 64 * 1024

# Refresh tokens this many seconds before they expire
TOKEN_REFRESH_MARGIN_SECONDS = 60
DEFAULT_TOKEN_LIFETIME_SECONDS = 3600

USER_AGENT = "polaris-operator"


class CredentialError(Exception):
    """Raised when a service account cannot be loaded or exchanged for a token."""

    pass


def _mask(value: str) -> str:
    return value[:8] + "..." if len(value) > 8 else value


@dataclass(frozen=True)
class ServiceAccount:
    """RSC service account as downloaded from the RSC UI."""

    name: str
    client_id: str
    client_secret: str
    access_token_uri: str

    def __post_init__(self) -> None:
        errors: list[str] = []
        if not self.client_id:
            errors.append("client_id is required")
        if not self.client_secret:
            errors.append("client_secret is required")
        if not self.access_token_uri:
            errors.append("access_token_uri is required")
        elif urlsplit(self.access_token_uri).scheme != "https":
            errors.append(f"access_token_uri must use https: {self.access_token_uri}")
        if errors:
            raise CredentialError("Invalid service account: " + "; ".join(errors))

    def __repr__(self) -> str:
        return (
            f"ServiceAccount(name={self.name!r}, client_id={_mask(self.client_id)!r}, "
            f"access_token_uri={self.access_token_uri!r})"
        )

    @property
    def api_url(self) -> str:
        """Base URL of the RSC API, derived from the token URI.

        https://acme.my.rubrik.com/api/client_token -> https://acme.my.rubrik.com/api
        """
        return self.access_token_uri.rsplit("/", 1)[0]

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ServiceAccount:
        return cls(
            name=str(data.get("name", "")),
            client_id=str(data.get("client_id", "")),
            client_secret=str(data.get("client_secret", "")),
            access_token_uri=str(data.get("access_token_uri", "")),
        )

    @classmethod
    def from_file(cls, path: Path) -> ServiceAccount:
        """Load a service account JSON file.

        Raises:
            CredentialError: If the file is missing, too large or malformed.
        """
        if not path.is_file():
            raise CredentialError(f"Service account file not found: {path}")
        size = path.stat().st_size
        if size > MAX_SERVICE_ACCOUNT_FILE_BYTES:
            raise CredentialError(
                f"Service account file too large: {size} bytes "
                f"(max {MAX_SERVICE_ACCOUNT_FILE_BYTES})"
            )
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise CredentialError(f"Failed to read service account file {path}: {e}") from e
        if not isinstance(data, dict):
            raise CredentialError(f"Service account file must contain a JSON object: {path}")

        # Individual env vars override values from the file
        overrides = {
            "name": os.environ.get(ENV_NAME),
            "client_id": os.environ.get(ENV_CLIENT_ID),
            "client_secret": os.environ.get(ENV_CLIENT_SECRET),
            "access_token_uri": os.environ.get(ENV_ACCESS_TOKEN_URI),
        }
        data.update({k: v for k, v in overrides.items() if v})
        return cls.from_dict(data)

    @classmethod
    def from_env(cls) -> ServiceAccount:
        """Load the service account from the environment.

        RUBRIK_POLARIS_SERVICEACCOUNT_FILE takes precedence; otherwise all of
        the individual RUBRIK_POLARIS_SERVICEACCOUNT_* variables must be set.

        Raises:
            CredentialError: If no complete service account is configured.
        """
        file_path = os.environ.get(ENV_SERVICE_ACCOUNT_FILE)
        if file_path:
            account = cls.from_file(Path(file_path))
            source = "file"
        else:
            account = cls(
                name=os.environ.get(ENV_NAME, ""),
                client_id=os.environ.get(ENV_CLIENT_ID, ""),
                client_secret=os.environ.get(ENV_CLIENT_SECRET, ""),
                access_token_uri=os.environ.get(ENV_ACCESS_TOKEN_URI, ""),
            )
            source = "env"

        logger.info(
            "Loaded service account",
            extra={
                "source": source,
                "service_account": account.name,
                "client_id": _mask(account.client_id),
            },
        )
        return account


class ServiceAccountCredential:
    """TokenCredential exchanging a service account for RSC bearer tokens."""

    def __init__(
        self,
        account: ServiceAccount,
        client: PipelineClient | None = None,
    ) -> None:
        self._account = account
        self._client = client or PipelineClient(
            base_url=account.access_token_uri,
            policies=[
                HeadersPolicy({"Accept": "application/json"}),
                UserAgentPolicy(USER_AGENT),
                RetryPolicy(),
            ],
        )
        self._token: AccessToken | None = None
        self._lock = threading.Lock()

    @property
    def account(self) -> ServiceAccount:
        return self._account

    def get_token(
        self,
        *scopes: str,
        claims: str | None = None,
        tenant_id: str | None = None,
        enable_cae: bool = False,
        **kwargs: Any,
    ) -> AccessToken:
        """Return a cached token, exchanging the service account when stale.

        Scopes are accepted for protocol compatibility; RSC tokens are not scoped.
        """
        with self._lock:
            if self._token is None or self._token.expires_on - TOKEN_REFRESH_MARGIN_SECONDS <= int(
                time.time()
            ):
                self._token = self._request_token()
            return self._token

    def _request_token(self) -> AccessToken:
        request = HttpRequest(
            "POST",
            self._account.access_token_uri,
            json={
                "client_id": self._account.client_id,
                "client_secret": self._account.client_secret,
            },
        )
        try:
            response = self._client.send_request(request)
            response.raise_for_status()
            body = response.json()
        except HttpResponseError as e:
            logger.error(
                "Service account token exchange rejected",
                extra={"client_id": _mask(self._account.client_id), "status_code": e.status_code},
            )
            raise CredentialError(f"Token exchange rejected: {e.status_code}") from e
        except (AzureError, ValueError) as e:
            raise CredentialError(f"Token exchange failed: {e}") from e

        token = body.get("access_token") if isinstance(body, dict) else None
        if not token:
            raise CredentialError("Token exchange response has no access_token")

        expires_in = body.get("expires_in") or DEFAULT_TOKEN_LIFETIME_SECONDS
        logger.debug(
            "Obtained access token",
            extra={"client_id": _mask(self._account.client_id), "expires_in": expires_in},
        )
        return AccessToken(token, int(time.time()) + int(expires_in))

    def close(self) -> None:
        self._client.close()
