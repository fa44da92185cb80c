"""
Failure kinds the conversation core understands.

Raw transport exceptions (Twilio SDK, httpx, requests) are converted into
these at the gateway boundary; nothing above the gateway sees the raw ones.
"""


class ProviderError(Exception):
    """Base class for classified messaging provider failures."""

    def __init__(self, message: str, status_code=None, code=None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class TransientProviderError(ProviderError):
    """Rate limited, 5xx, timeout or connection failure. Safe to retry."""
    pass


class PermanentProviderError(ProviderError):
    """Bad credentials, invalid recipient, missing media. Never retried."""
    pass


class DuplicateAnswer(Exception):
    """Raised when a voice note arrives for an already answered question."""

    def __init__(self, trial_id, question_index: int, reason: str = 'already answered'):
        super().__init__(f"Question {question_index} of trial {trial_id}: {reason}")
        self.trial_id = trial_id
        self.question_index = question_index
        self.reason = reason


class RetryExhausted(Exception):
    """Raised when a trial has used up its readiness retries."""

    def __init__(self, trial_id, retry_count: int, max_retries: int):
        super().__init__(
            f"Trial {trial_id} exhausted readiness retries ({retry_count}/{max_retries})"
        )
        self.trial_id = trial_id
        self.retry_count = retry_count
        self.max_retries = max_retries
