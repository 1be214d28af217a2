"""Graph mock context for integration testing.

Provides a context manager that patches the credential and HTTP session
the reconciler creates, so it talks to an in-memory directory.
"""

from __future__ import annotations

from collections.abc import Generator
from contextlib import contextmanager
from typing import Any
from unittest import mock

from .credential import MockManagedIdentityCredential, create_mock_credential
from .directory import MockDirectoryState, MockGraphSession


class MockGraphContext:
    """Context manager for Graph mocking in integration tests.

    Patches:
    - azure.identity.ManagedIdentityCredential → MockManagedIdentityCredential
    - requests.Session (as used by the Graph client) → MockGraphSession
    - time.sleep in the Graph client → no-op

    Usage:
        with MockGraphContext() as ctx:
            ctx.state.add_group("Autopilot - Sales")
            result = Reconciler(config).run_once()
            assert ctx.session.count("POST", "groups") == 1
    """

    def __init__(
        self,
        *,
        client_id: str | None = None,
        fail_auth: bool = False,
        state: MockDirectoryState | None = None,
        page_size: int = 2,
    ) -> None:
        self._client_id = client_id
        self._fail_auth = fail_auth
        self._initial_state = state
        self._page_size = page_size

        # These are set when context is entered
        self._state: MockDirectoryState | None = None
        self._session: MockGraphSession | None = None
        self._credential: MockManagedIdentityCredential | None = None
        self._patches: list[Any] = []

    @property
    def state(self) -> MockDirectoryState:
        """Get the mock directory state.

        Raises:
            RuntimeError: If accessed outside of context.
        """
        if self._state is None:
            raise RuntimeError("MockGraphContext must be used as a context manager")
        return self._state

    @property
    def session(self) -> MockGraphSession:
        if self._session is None:
            raise RuntimeError("MockGraphContext must be used as a context manager")
        return self._session

    @property
    def credential(self) -> MockManagedIdentityCredential:
        if self._credential is None:
            raise RuntimeError("MockGraphContext must be used as a context manager")
        return self._credential

    def __enter__(self) -> MockGraphContext:
        """Enter the mock context, applying patches."""
        self._state = self._initial_state or MockDirectoryState()
        self._session = MockGraphSession(self._state, page_size=self._page_size)
        self._credential = create_mock_credential(client_id=self._client_id)

        if self._fail_auth:
            self._credential.set_failure(True, "Simulated authentication failure")

        self._patches = [
            mock.patch(
                "delaysync.security.ManagedIdentityCredential",
                return_value=self._credential,
            ),
            mock.patch(
                "delaysync.graph_client.requests.Session",
                return_value=self._session,
            ),
            mock.patch("delaysync.graph_client.time.sleep"),
        ]
        for patch in self._patches:
            patch.start()

        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Exit the mock context, removing patches."""
        for patch in reversed(self._patches):
            patch.stop()
        self._patches.clear()


@contextmanager
def mock_graph_context(
    *,
    client_id: str | None = None,
    fail_auth: bool = False,
    state: MockDirectoryState | None = None,
) -> Generator[MockGraphContext, None, None]:
    """Convenience function for creating a mock Graph context."""
    ctx = MockGraphContext(client_id=client_id, fail_auth=fail_auth, state=state)
    with ctx:
        yield ctx
