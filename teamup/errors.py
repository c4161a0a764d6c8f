"""Error taxonomy shared by the ledger, the channel and the HTTP layer."""

from __future__ import annotations


class TeamUpError(Exception):
    """Base class for failures scoped to a single operation."""

    status_code = 400
    code = "TeamUpError"
    message = "The request could not be completed."

    def __init__(self, message: str | None = None):
        super().__init__(message or self.message)

    def to_payload(self) -> dict[str, str]:
        return {"error": self.code, "message": str(self)}


class NotFoundError(TeamUpError):
    status_code = 404
    code = "NotFound"
    message = "The requested resource does not exist."


class EventNotFoundError(NotFoundError):
    code = "EventNotFound"
    message = "Event not found."


class UserNotFoundError(NotFoundError):
    code = "UserNotFound"
    message = "User not found."


class MessageNotFoundError(NotFoundError):
    code = "MessageNotFound"
    message = "Message not found."


class NotRegisteredError(NotFoundError):
    code = "NotRegistered"
    message = "You are not registered for this event."


class ParticipationNotFoundError(NotFoundError):
    code = "ParticipationNotFound"
    message = "Registration not found."


class ConflictError(TeamUpError):
    code = "Conflict"


class AlreadyRegisteredError(ConflictError):
    code = "AlreadyRegistered"
    message = "You are already registered for this event."


class SelfJoinAsOrganizerError(ConflictError):
    code = "SelfJoinAsOrganizer"
    message = "Organizers are enrolled automatically and cannot join their own event."


class CapacityExceededError(ConflictError):
    code = "CapacityExceeded"
    message = "This event has reached its maximum number of participants."


class OrganizerCannotLeaveError(ConflictError):
    status_code = 409
    code = "OrganizerCannotLeave"
    message = "The organizer cannot leave their own event; delete it instead."


class DuplicateOrganizerError(ConflictError):
    status_code = 409
    code = "DuplicateOrganizer"
    message = "An event has exactly one organizer and that role cannot be reassigned."


class JoinConflictError(ConflictError):
    status_code = 409
    code = "JoinConflict"
    message = "Too many concurrent registrations; please try again."


class UnauthorizedError(TeamUpError):
    status_code = 403
    code = "Unauthorized"
    message = "You are not allowed to perform this action."


class EmptyContentError(TeamUpError):
    code = "EmptyContent"
    message = "Message content is required."


class InvalidRoleError(TeamUpError):
    code = "InvalidRole"
    message = "Unknown participation role."


class ApiRequestError(TeamUpError):
    """Raised client-side when the server answers with a non-2xx status."""

    code = "ApiRequestError"

    def __init__(self, status_code: int, payload: dict | None = None):
        payload = payload or {}
        detail = payload.get("message") or payload.get("detail") or payload.get("error")
        super().__init__(str(detail or f"Request failed with status {status_code}"))
        self.status_code = status_code
        self.payload = payload
        self.code = str(payload.get("error") or self.code)
