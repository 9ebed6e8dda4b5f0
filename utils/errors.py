"""Domain error taxonomy shared by the lifecycle engine, reporting and storage helpers."""


class MetronixError(Exception):
    """Base class for errors surfaced to the HTTP boundary."""

    status_code = 500

    def __init__(self, message: str = "", **details) -> None:
        super().__init__(message)
        self.message = message or self.__class__.__name__
        self.details = details

    def to_payload(self) -> dict:
        payload = {"error": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(MetronixError):
    """Malformed, missing or out-of-enum input."""

    status_code = 400


class AccessDeniedError(MetronixError):
    """Role or ownership mismatch for the acting user."""

    status_code = 403


class NotFoundError(MetronixError):
    status_code = 404


class ConflictError(MetronixError):
    """A concurrent change won the race (e.g. assignment by another solver)."""

    status_code = 409


class InternalError(MetronixError):
    """Persistence or storage collaborator failure."""

    status_code = 500
