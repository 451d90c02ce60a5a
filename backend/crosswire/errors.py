class CrossWireError(Exception):
    """Base class for failures surfaced to the user as a notification."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class AuthFailure(CrossWireError):
    """Credentials were rejected or the identity service could not be reached."""


class EmailNotVerified(AuthFailure):
    """Sign-in succeeded but the account's email has not been verified yet."""


class StoreFailure(CrossWireError):
    """A read, write, list or delete against Firestore or GCS failed."""


class AiFlowFailure(CrossWireError):
    """The model call failed or its output did not match the flow schema."""
