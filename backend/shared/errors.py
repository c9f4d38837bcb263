"""
Exception hierarchy for the match logger.

Local computation (clock math, ordering, disciplinary folds) never raises;
these types cover operator commands and network outcomes only.
"""
from __future__ import annotations

from typing import Any, Optional


class LoggerError(Exception):
    """Base class for every error surfaced to the operator."""

    code = "logger_error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message}


class TransportError(LoggerError):
    """Network failure. The affected entry stays pending and can be retried."""

    code = "transport_error"

    def __init__(self, message: str = "", retryable: bool = True, status: Optional[int] = None) -> None:
        super().__init__(message or "Transport unavailable")
        self.retryable = retryable
        self.status = status

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "retryable": self.retryable}


class DuplicateEvent(LoggerError):
    """
    Reconciliation outcome, not a failure: a draft matches an existing entry on
    (team_id, type, period, match_clock).
    """

    code = "duplicate_event"

    def __init__(
        self,
        key: tuple[str, str, int, str],
        existing_client_id: Optional[str] = None,
        existing_server_id: Optional[str] = None,
    ) -> None:
        team_id, event_type, period, clock = key
        super().__init__(f"Duplicate {event_type} for team {team_id} at P{period} {clock}")
        self.key = key
        self.existing_client_id = existing_client_id
        self.existing_server_id = existing_server_id

    def to_dict(self) -> dict[str, Any]:
        return {
            **super().to_dict(),
            "existing_client_id": self.existing_client_id,
            "existing_server_id": self.existing_server_id,
        }


class ValidationError(LoggerError):
    """Server rejected a draft. Field-level reasons are preserved."""

    code = "validation_error"

    def __init__(self, message: str, field_errors: Optional[dict[str, str]] = None) -> None:
        super().__init__(message)
        self.field_errors = field_errors or {}

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "field_errors": self.field_errors}


class InvalidTransition(LoggerError):
    code = "invalid_transition"

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Cannot transition from {current} to {target}")
        self.current = current
        self.target = target


class TransitionGuardError(LoggerError):
    """Phase change blocked by the minimum-duration guard."""

    code = "transition_guard"

    def __init__(self, current: str, target: str, remaining_seconds: float) -> None:
        minutes, seconds = divmod(int(round(remaining_seconds)), 60)
        super().__init__(
            f"Cannot transition from {current} to {target}: {minutes:02d}:{seconds:02d} remaining"
        )
        self.current = current
        self.target = target
        self.remaining_seconds = remaining_seconds

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "remaining_seconds": self.remaining_seconds}


class PlayerExpelled(LoggerError):
    code = "player_expelled"

    def __init__(self, player_id: str) -> None:
        super().__init__(f"Player {player_id} has been sent off")
        self.player_id = player_id


class UndoUnavailable(LoggerError):
    code = "undo_unavailable"

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class ResetBlocked(LoggerError):
    code = "reset_blocked"

    def __init__(self, queued: int, pending: int) -> None:
        super().__init__(
            f"Reset refused: {pending} event(s) awaiting acknowledgement, {queued} unsent"
        )
        self.queued = queued
        self.pending = pending

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "queued": self.queued, "pending": self.pending}


class ConfirmationMismatch(LoggerError):
    code = "confirmation_mismatch"

    def __init__(self, expected: str) -> None:
        super().__init__(f'Type "{expected}" to confirm')
        self.expected = expected


class SessionLocked(LoggerError):
    """Event submission refused while the match is closed."""

    code = "session_locked"

    def __init__(self, status: str) -> None:
        super().__init__(f"Logging is locked while match is {status}")
        self.status = status
