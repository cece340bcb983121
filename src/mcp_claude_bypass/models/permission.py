"""Permission state models for bypass-mode approval.

This module provides models for:
- Flag transitions observed by the permission cache
- Coordinator states and approval session lifecycle
- User choices offered after a cancelled approval
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


@dataclass(frozen=True)
class PermissionTransition:
    """A change of the cached permission flag between two refreshes.

    Only emitted when previous != current; first population never
    produces a transition.

    Attributes:
        previous: Cached value before the refresh
        current: Value read by the refresh
    """

    previous: bool
    current: bool

    @property
    def granted(self) -> bool:
        """True for a false -> true transition."""
        return not self.previous and self.current

    @property
    def revoked(self) -> bool:
        """True for a true -> false transition."""
        return self.previous and not self.current


class CoordinatorState(Enum):
    """States of the permission coordinator."""

    UNINITIALIZED = "uninitialized"
    CHECKING = "checking"
    GRANTED = "granted"
    NOT_GRANTED = "not_granted"
    AWAITING_APPROVAL = "awaiting_approval"
    CANCELLED = "cancelled"
    GAVE_UP = "gave_up"


class ApprovalStatus(Enum):
    """Lifecycle of a single approval session."""

    ACTIVE = "active"
    CANCELLED = "cancelled"
    GRANTED = "granted"
    GAVE_UP = "gave_up"


class RetryChoice(Enum):
    """User-facing options shown after an approval session is cancelled.

    These are the exact strings shown to users in the retry prompt.
    """

    TRY_AGAIN = "Try Again"
    OPT_OUT = "Opt Out"
    ABANDON = "Abandon"

    @classmethod
    def all_options(cls) -> list[str]:
        """Get all retry options as a list of strings for elicitation."""
        return [opt.value for opt in cls]

    @classmethod
    def from_string(cls, value: str) -> "RetryChoice":
        """Convert string to RetryChoice enum.

        Args:
            value: String value like "Try Again"

        Returns:
            Corresponding RetryChoice enum

        Raises:
            ValueError: If value doesn't match any option
        """
        for opt in cls:
            if opt.value == value:
                return opt
        raise ValueError(f"Invalid retry choice: {value}")


@dataclass
class ApprovalSession:
    """One run of the interactive approval flow.

    The session owns the UI and process handles it opened; both are
    released exactly once when the session leaves ACTIVE.

    Attributes:
        attempts: 1-based attempt number within the retry loop
        status: Current session status
        outcome: Future resolved with True on grant, False otherwise
        ui: Approval UI handle, if one was created
        process: Visible privileged process handle, if one was launched
    """

    attempts: int
    outcome: asyncio.Future = field(repr=False)
    status: ApprovalStatus = ApprovalStatus.ACTIVE
    ui: Any = field(default=None, repr=False)
    process: Any = field(default=None, repr=False)

    @property
    def active(self) -> bool:
        """True while the session has not been resolved."""
        return self.status is ApprovalStatus.ACTIVE
