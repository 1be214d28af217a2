"""Microsoft Graph client for directory reads and membership writes.

This module provides the transport the reconciler needs:
1. Token acquisition from the managed identity credential
2. Cursor pagination over listing endpoints (@odata.nextLink)
3. Throttling-aware retries (429/503/504, Retry-After)
4. Typed wrappers for the group, device and membership endpoints

Listing calls never raise on a mid-listing failure. They return a
FetchResult holding the records gathered so far plus the error, and the
caller decides whether a partial listing is usable. Authentication
failures are the exception: they always raise, since nothing can proceed
without directory access.
"""

from __future__ import annotations

import logging
import random
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

import requests
from azure.core.credentials import TokenCredential
from azure.core.exceptions import AzureError, ClientAuthenticationError
from pydantic import BaseModel, ValidationError

from .config import (
    MAX_GRAPH_RETRIES,
    MAX_PAGES_PER_LISTING,
    MAX_RETRY_AFTER_SECONDS,
    RETRY_BACKOFF_BASE_SECONDS,
    Config,
)
from .models import DeviceRecord, DirectoryGroup, GroupMember
from .security import GRAPH_TOKEN_SCOPE

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

RETRYABLE_STATUS_CODES = frozenset({429, 503, 504})

# Transport failures worth another attempt; any other RequestException fails fast
TRANSIENT_TRANSPORT_ERRORS = (
    requests.ConnectionError,
    requests.Timeout,
    requests.exceptions.ChunkedEncodingError,
)

# Refresh the token this long before Entra says it expires
TOKEN_REFRESH_MARGIN_SECONDS = 300

GROUP_SELECT = "id,displayName,description"
MEMBER_SELECT = "id,displayName,deviceId"
DEVICE_SELECT = "id,azureADDeviceId,enrolledDateTime,deviceName"


class GraphError(Exception):
    """Raised when a Graph request fails.

    Attributes:
        status_code: HTTP status, None for transport-level failures.
        code: Graph error code from the response body, if any.
        path: Request path or URL.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        code: str | None = None,
        path: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.path = path


class GraphAuthenticationError(GraphError):
    """Raised when the credential cannot obtain a token or Graph rejects it."""

    pass


@dataclass
class FetchResult(Generic[T]):
    """Result of a paginated listing.

    Attributes:
        items: Records in the order Graph returned them.
        error: The failure that stopped pagination, if any.
        pages: Number of pages fetched successfully.
        skipped: Rows dropped because they failed validation.
    """

    items: list[T] = field(default_factory=list)
    error: GraphError | None = None
    pages: int = 0
    skipped: int = 0

    @property
    def complete(self) -> bool:
        return self.error is None


def escape_odata_string(value: str) -> str:
    """Escape a value for use inside a single-quoted OData string literal."""
    return value.replace("'", "''")


class GraphClient:
    """Microsoft Graph client used by the reconciler.

    Calls are synchronous and sequential. Graph throttles per tenant and
    per app, so requests are never issued in parallel.
    """

    def __init__(
        self,
        credential: TokenCredential,
        config: Config,
        session: requests.Session | None = None,
        *,
        sleep: Callable[[float], None] | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        """Initialize the Graph client.

        Args:
            credential: Azure credential (must be Managed Identity).
            config: Reconciler configuration.
            session: HTTP session, injectable for tests.
            sleep: Backoff sleep function, injectable for tests.
            log: Logger to use (defaults to this module's logger).
        """
        self._credential = credential
        self._config = config
        self._base_url = config.graph_base_url.rstrip("/")
        self._session = session or requests.Session()
        self._sleep = sleep or time.sleep
        self._log = log or logger
        self._token: str | None = None
        self._token_expires_on = 0.0

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    def _get_token(self) -> str:
        """Return a cached bearer token, refreshing it close to expiry.

        Raises:
            GraphAuthenticationError: If the credential cannot issue a token.
        """
        if self._token and time.time() < self._token_expires_on - TOKEN_REFRESH_MARGIN_SECONDS:
            return self._token

        try:
            access_token = self._credential.get_token(GRAPH_TOKEN_SCOPE)
        except ClientAuthenticationError as e:
            raise GraphAuthenticationError(f"Failed to acquire Graph token: {e}") from e
        except AzureError as e:
            raise GraphAuthenticationError(f"Credential error acquiring Graph token: {e}") from e

        self._token = access_token.token
        self._token_expires_on = float(access_token.expires_on)
        return self._token

    def _url(self, path_or_url: str) -> str:
        if path_or_url.startswith("https://"):
            return path_or_url
        return f"{self._base_url}/{path_or_url.lstrip('/')}"

    def _request(
        self,
        method: str,
        path_or_url: str,
        *,
        params: dict[str, str] | None = None,
        body: dict[str, Any] | None = None,
    ) -> requests.Response:
        """Send a request, retrying throttled and transient failures.

        Raises:
            GraphAuthenticationError: On token failure or HTTP 401.
            GraphError: On any other non-2xx response or transport failure.
        """
        url = self._url(path_or_url)
        last_error: GraphError | None = None

        for attempt in range(1, MAX_GRAPH_RETRIES + 1):
            client_request_id = str(uuid.uuid4())
            headers = {
                "Authorization": f"Bearer {self._get_token()}",
                "Accept": "application/json",
                "client-request-id": client_request_id,
            }

            retry_after: float | None = None
            try:
                response = self._session.request(
                    method,
                    url,
                    params=params,
                    json=body,
                    headers=headers,
                    timeout=self._config.graph_timeout_seconds,
                )
            except TRANSIENT_TRANSPORT_ERRORS as e:
                last_error = GraphError(f"{method} {path_or_url} failed: {e}", path=path_or_url)
            except requests.RequestException as e:
                raise GraphError(f"{method} {path_or_url} failed: {e}", path=path_or_url) from e
            else:
                if response.ok:
                    return response

                error = self._error_from_response(method, path_or_url, response)
                if response.status_code not in RETRYABLE_STATUS_CODES:
                    raise error
                last_error = error
                retry_after = self._parse_retry_after(response)

            if attempt < MAX_GRAPH_RETRIES:
                # Exponential backoff with jitter, unless Graph told us how long to wait
                if retry_after is not None:
                    wait_time = retry_after
                else:
                    backoff = RETRY_BACKOFF_BASE_SECONDS * (2 ** (attempt - 1))
                    wait_time = backoff + random.uniform(0, backoff * 0.2)

                self._log.warning(
                    "Graph request failed, retrying",
                    extra={
                        "method": method,
                        "path": path_or_url,
                        "attempt": attempt,
                        "max_attempts": MAX_GRAPH_RETRIES,
                        "wait_seconds": round(wait_time, 2),
                        "status_code": last_error.status_code,
                        "client_request_id": client_request_id,
                    },
                )
                self._sleep(wait_time)

        # Loop runs at least once, so last_error is set here
        assert last_error is not None, "Retry loop completed without setting last_error"
        raise last_error

    @staticmethod
    def _parse_retry_after(response: requests.Response) -> float | None:
        value = response.headers.get("Retry-After")
        if not value:
            return None
        try:
            return min(float(value), MAX_RETRY_AFTER_SECONDS)
        except ValueError:
            return None

    @staticmethod
    def _error_from_response(
        method: str, path_or_url: str, response: requests.Response
    ) -> GraphError:
        code: str | None = None
        message = response.reason or ""
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
            code = payload["error"].get("code")
            message = payload["error"].get("message") or message

        error_cls = GraphAuthenticationError if response.status_code == 401 else GraphError
        return error_cls(
            f"{method} {path_or_url} returned {response.status_code}: {message}",
            status_code=response.status_code,
            code=code,
            path=path_or_url,
        )

    # -------------------------------------------------------------------------
    # Paginated Fetcher
    # -------------------------------------------------------------------------

    def fetch_all(
        self,
        path: str,
        model: type[T],
        params: dict[str, str] | None = None,
    ) -> FetchResult[T]:
        """Fetch every page of a listing endpoint.

        Follows @odata.nextLink until Graph stops returning one. A failure
        part-way through is logged and returned alongside the records
        already collected.

        Args:
            path: Listing path relative to the Graph base URL.
            model: Model each record is validated into.
            params: Query parameters for the first page.

        Returns:
            FetchResult with the records and any error.

        Raises:
            GraphAuthenticationError: If authentication fails on any page.
        """
        result: FetchResult[T] = FetchResult()
        next_url: str | None = path
        page_params = params

        while next_url:
            if result.pages >= MAX_PAGES_PER_LISTING:
                result.error = GraphError(
                    f"Listing {path} exceeded {MAX_PAGES_PER_LISTING} pages", path=path
                )
                break

            try:
                response = self._request("GET", next_url, params=page_params)
                payload = response.json()
            except GraphAuthenticationError:
                raise
            except GraphError as e:
                result.error = e
                break
            except ValueError as e:
                result.error = GraphError(f"Invalid JSON from {path}: {e}", path=path)
                break

            rows = payload.get("value", []) if isinstance(payload, dict) else None
            if not isinstance(rows, list):
                result.error = GraphError(f"Unexpected page shape from {path}", path=path)
                break

            # nextLink already carries the query string
            page_params = None
            result.pages += 1

            for row in rows:
                try:
                    result.items.append(model.model_validate(row))
                except ValidationError as e:
                    result.skipped += 1
                    self._log.warning(
                        "Skipping malformed record",
                        extra={"path": path, "model": model.__name__, "error": str(e)},
                    )

            next_link = payload.get("@odata.nextLink")
            next_url = next_link if isinstance(next_link, str) else None

        if result.error is not None:
            self._log.warning(
                "Listing incomplete",
                extra={
                    "path": path,
                    "records_fetched": len(result.items),
                    "pages_fetched": result.pages,
                    "records_skipped": result.skipped,
                    "status_code": result.error.status_code,
                    "error": str(result.error),
                },
            )
        else:
            self._log.debug(
                "Listing complete",
                extra={
                    "path": path,
                    "records": len(result.items),
                    "pages": result.pages,
                    "skipped": result.skipped,
                },
            )

        return result

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def list_groups_by_prefix(self, prefix: str) -> FetchResult[DirectoryGroup]:
        """List groups whose display name starts with prefix."""
        return self.fetch_all(
            "groups",
            DirectoryGroup,
            params={
                "$filter": f"startswith(displayName,'{escape_odata_string(prefix)}')",
                "$select": GROUP_SELECT,
            },
        )

    def find_groups_by_name(self, display_name: str) -> list[DirectoryGroup]:
        """Find groups with exactly this display name.

        Raises:
            GraphError: If the lookup does not complete.
        """
        result = self.fetch_all(
            "groups",
            DirectoryGroup,
            params={
                "$filter": f"displayName eq '{escape_odata_string(display_name)}'",
                "$select": GROUP_SELECT,
            },
        )
        if result.error is not None:
            raise result.error
        # Graph compares case-insensitively; the pairing contract is exact
        return [g for g in result.items if g.display_name == display_name]

    def list_managed_devices(self) -> FetchResult[DeviceRecord]:
        """List the full Intune device inventory (selected fields only)."""
        return self.fetch_all(
            "deviceManagement/managedDevices",
            DeviceRecord,
            params={"$select": DEVICE_SELECT},
        )

    def list_group_members(self, group_id: str) -> FetchResult[GroupMember]:
        """List direct members of a group."""
        return self.fetch_all(
            f"groups/{group_id}/members",
            GroupMember,
            params={"$select": MEMBER_SELECT},
        )

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def create_group(
        self,
        display_name: str,
        description: str,
        mail_nickname: str,
    ) -> DirectoryGroup:
        """Create a security-enabled, mail-disabled group.

        Raises:
            GraphError: If Graph rejects the request.
        """
        response = self._request(
            "POST",
            "groups",
            body={
                "displayName": display_name,
                "description": description,
                "securityEnabled": True,
                "mailEnabled": False,
                "mailNickname": mail_nickname,
            },
        )
        try:
            return DirectoryGroup.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise GraphError(
                f"Unexpected create-group response for '{display_name}': {e}", path="groups"
            ) from e

    def add_member(self, group_id: str, member_id: str) -> bool:
        """Add a directory object to a group.

        Returns:
            True if added, False if Graph reports it was already a member.

        Raises:
            GraphError: If the add fails for any other reason.
        """
        try:
            self._request(
                "POST",
                f"groups/{group_id}/members/$ref",
                body={"@odata.id": f"{self._base_url}/directoryObjects/{member_id}"},
            )
        except GraphAuthenticationError:
            raise
        except GraphError as e:
            if e.status_code == 400 and "already exist" in str(e).lower():
                return False
            raise
        return True

    def remove_member(self, group_id: str, member_id: str) -> bool:
        """Remove a directory object from a group.

        Returns:
            True if removed, False if it was not a member.

        Raises:
            GraphError: If the remove fails for any other reason.
        """
        try:
            self._request("DELETE", f"groups/{group_id}/members/{member_id}/$ref")
        except GraphAuthenticationError:
            raise
        except GraphError as e:
            if e.status_code == 404:
                return False
            raise
        return True
