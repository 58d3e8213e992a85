"""
Matching and queue errors.

Retried by the queue:
- JobTimeoutError
- anything not listed here (store timeouts, dropped connections)

Never retried:
- PayloadValidationError and its subclasses
- QueueNotRegisteredError

StaleMatchError never leaves the matching service; it is turned into a
superseded outcome.
"""


class MatchingError(Exception):
    """Base exception for the matching core"""
    pass


class PayloadValidationError(MatchingError):
    """Raised when a job payload does not match its schema"""

    def __init__(self, job_type: str, message: str):
        self.job_type = job_type
        super().__init__(f"Invalid payload for {job_type}: {message}")


class AnchorNotFoundError(PayloadValidationError):
    """Raised when a job references a document or transaction that does not exist for the team"""

    def __init__(self, kind: str, anchor_id: str, team_id: str):
        self.kind = kind
        self.anchor_id = anchor_id
        self.team_id = team_id
        MatchingError.__init__(self, f"{kind} {anchor_id} not found for team {team_id}")


class RegistryError(MatchingError):
    """Base exception for queue registry configuration errors"""
    pass


class QueueNotRegisteredError(RegistryError):
    """Raised when a job type or queue cannot be resolved"""
    pass


class DuplicateRegistrationError(RegistryError):
    """Raised when a job type or queue is registered twice"""
    pass


class JobTimeoutError(MatchingError):
    """Raised when a job exceeds its maximum duration"""

    def __init__(self, job_id: str, max_duration_seconds: float):
        self.job_id = job_id
        self.max_duration_seconds = max_duration_seconds
        super().__init__(f"Job {job_id} exceeded {max_duration_seconds}s")


class StaleMatchError(MatchingError):
    """Raised when a compare-and-set status write finds the row already moved on"""

    def __init__(self, kind: str, entity_id: str):
        self.kind = kind
        self.entity_id = entity_id
        super().__init__(f"{kind} {entity_id} is no longer in an open match status")


class ReviewError(MatchingError):
    """Raised when a review action (confirm, decline, flag, exclude) is not allowed"""
    pass


class SuggestionNotFoundError(ReviewError):
    """Raised when a suggestion does not exist for the team"""

    def __init__(self, suggestion_id: str, team_id: str):
        self.suggestion_id = suggestion_id
        self.team_id = team_id
        super().__init__(f"Suggestion {suggestion_id} not found for team {team_id}")
