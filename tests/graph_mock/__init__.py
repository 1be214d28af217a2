"""Microsoft Graph mock for integration testing.

This module provides an in-memory stand-in for the Graph endpoints the
reconciler uses, so full runs can be tested without tenant connectivity.

Key Features:
- In-memory groups, device objects, memberships and Intune inventory
- @odata.nextLink pagination with a configurable page size
- Failure injection per method and path (throttling, Retry-After, 5xx)
- Managed Identity simulation

Usage:
    from graph_mock import MockGraphContext

    with MockGraphContext() as ctx:
        source_id = ctx.state.add_group("Autopilot - Sales")
        device = ctx.state.add_device("LAPTOP-1", "2024-01-01T00:00:00Z")
        ctx.state.add_member(source_id, device)

        result = Reconciler(config).run_once()

        assert ctx.state.group_by_name("Autopilot - Sales - Delayed")
"""

from .context import MockGraphContext, mock_graph_context
from .credential import MockAccessToken, MockManagedIdentityCredential, create_mock_credential
from .directory import (
    ALREADY_EXISTS_MESSAGE,
    FakeResponse,
    MockDirectoryState,
    MockGraphSession,
    graph_error,
)

__all__ = [
    "ALREADY_EXISTS_MESSAGE",
    "FakeResponse",
    "MockAccessToken",
    "MockDirectoryState",
    "MockGraphContext",
    "MockGraphSession",
    "MockManagedIdentityCredential",
    "create_mock_credential",
    "graph_error",
    "mock_graph_context",
]
