"""Security enforcement for secretless Graph access.

The reconciler writes group memberships in the tenant directory, so the
identity it runs as is privileged (GroupMember.ReadWrite.All,
Group.Create, DeviceManagementManagedDevices.Read.All). It authenticates
with a Managed Identity only:
- NO client secrets, certificates or passwords in the environment
- ManagedIdentityCredential is the ONLY credential type used
- Tokens are short-lived and issued by Entra ID

SECURITY INVARIANTS:
1. AZURE_CLIENT_SECRET (and siblings) must never be present in the environment
2. Credentials are obtained only through get_managed_identity_credential()
"""

from __future__ import annotations

import logging
import os

from azure.identity import ManagedIdentityCredential

logger = logging.getLogger(__name__)

# Environment variables that indicate credential leakage
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
)

# Token scope for Microsoft Graph application permissions
GRAPH_TOKEN_SCOPE = "https://graph.microsoft.com/.default"

SECRETLESS_VIOLATION_MESSAGE = """
SECURITY VIOLATION: {env_var} is set.

This reconciler authenticates to Microsoft Graph with a Managed Identity.
Service principal secrets, certificates and passwords are NOT ALLOWED.

RESOLUTION:
  1. Remove all credential environment variables
  2. Assign a managed identity to the host running the reconciler
  3. Grant it GroupMember.ReadWrite.All, Group.Create and
     DeviceManagementManagedDevices.Read.All on Microsoft Graph
"""


class SecretlessViolationError(Exception):
    """Raised when secretless architecture is violated.

    This is a fatal security error that prevents startup.
    """

    pass


def enforce_secretless_architecture() -> None:
    """Refuse to start when any forbidden credential variable is set.

    Raises:
        SecretlessViolationError: If any credential environment variables detected.
    """
    for env_var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        if os.environ.get(env_var):
            logger.critical(
                "Credential secret found in environment, refusing to start",
                extra={
                    "security_event": "credential_detected",
                    "env_var": env_var,
                    "action": "startup_blocked",
                },
            )
            raise SecretlessViolationError(SECRETLESS_VIOLATION_MESSAGE.format(env_var=env_var))

    logger.info(
        "No credential secrets in environment",
        extra={
            "security_event": "secretless_verified",
            "credential_type": "ManagedIdentity",
        },
    )


def get_managed_identity_credential(
    client_id: str | None = None,
) -> ManagedIdentityCredential:
    """Credential the Graph client authenticates with.

    Checks the environment first, then returns a user-assigned identity
    when client_id (AZURE_CLIENT_ID) is set, else the system-assigned one.

    Raises:
        SecretlessViolationError: If credential environment variables detected.
    """
    enforce_secretless_architecture()

    if client_id:
        logger.info(
            "Using user-assigned managed identity",
            extra={"client_id": client_id[:8] + "..." if len(client_id) > 8 else client_id},
        )
        return ManagedIdentityCredential(client_id=client_id)

    logger.info("Using system-assigned managed identity")
    return ManagedIdentityCredential()


def log_security_audit_event(
    event_type: str,
    target_group: str,
    target_object: str | None = None,
    action: str | None = None,
    result: str | None = None,
    audit_logger: logging.Logger | None = None,
) -> None:
    """Log a directory write as a structured audit event.

    Args:
        event_type: Type of event (membership_change, group_created, ...).
        target_group: Id or name of the group being modified.
        target_object: Directory object added or removed.
        action: Action being performed (add, remove, create).
        result: Result of the action (success, failure, planned).
        audit_logger: Logger to emit on (defaults to this module's logger).
    """
    (audit_logger or logger).info(
        f"Security audit: {event_type}",
        extra={
            "security_audit": True,
            "event_type": event_type,
            "target_group": target_group,
            "target_object": target_object,
            "action": action,
            "result": result,
        },
    )
