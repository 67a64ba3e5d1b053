"""Exception hierarchy for the reasoning engine."""


class SciReasonError(Exception):
    """Base class for all engine errors."""


class ModelUnavailableError(SciReasonError):
    """Every provider and key failed to produce a response."""


class JSONExtractionError(SciReasonError):
    """No parseable JSON object could be recovered from a model response."""


class SessionNotFoundError(SciReasonError):
    """The requested session does not exist in the store."""

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class AuthError(SciReasonError):
    """Base class for authentication failures."""


class InvalidCredentialsError(AuthError):
    """Email/password pair did not match a registered user."""


class EmailAlreadyRegisteredError(AuthError):
    """Registration attempted with an email that is already taken."""


class InvalidTokenError(AuthError):
    """Bearer token is missing, malformed, or expired."""


class SessionAlreadyExistsError(SciReasonError):
    """A session with this id is already stored."""

    def __init__(self, session_id: str):
        super().__init__(f"Session already exists: {session_id}")
        self.session_id = session_id
