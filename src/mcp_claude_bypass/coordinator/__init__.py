"""Permission coordinator package.

This package ties the permission cache to the interactive approval flow:

- PermissionCoordinator: state machine running approval sessions and the
  retry loop, reacting to granted/revoked transitions.

- Collaborator protocols (ApprovalUI, PrivilegedProcessLauncher,
  UserPrompter) implemented by the host surface.
"""

from .interfaces import (
    ApprovalUI,
    ApprovalUIUnavailableError,
    LauncherError,
    PrivilegedProcessLauncher,
    ProcessHandle,
    UserPrompter,
)
from .permission_coordinator import PermissionCoordinator

__all__ = [
    "ApprovalUI",
    "ApprovalUIUnavailableError",
    "LauncherError",
    "PermissionCoordinator",
    "PrivilegedProcessLauncher",
    "ProcessHandle",
    "UserPrompter",
]
