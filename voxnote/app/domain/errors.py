from __future__ import annotations


class VoxnoteError(Exception):
    pass


# =============================================================================
# Entitlement errors: user-facing, never retried
# =============================================================================

class EntitlementError(VoxnoteError):
    pass


class SubscriptionInactiveError(EntitlementError):
    def __init__(self, user_id: str):
        super().__init__(f"Subscription inactive for user {user_id}")
        self.user_id = user_id


class QuotaExceededError(EntitlementError):
    def __init__(self, message: str = "Monthly quota exceeded", minutes_remaining: float = 0.0):
        super().__init__(message)
        self.minutes_remaining = minutes_remaining


class AudioTooLongError(EntitlementError):
    def __init__(self, duration_seconds: float, max_seconds: int):
        super().__init__(f"Audio too long: {duration_seconds:.1f}s (max {max_seconds}s)")
        self.duration_seconds = duration_seconds
        self.max_seconds = max_seconds


# =============================================================================
# Collaborator errors: logged, retryable by the work queue
# =============================================================================

class CollaboratorError(VoxnoteError):
    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


class MediaDownloadError(CollaboratorError):
    def __init__(self, message_id: str, reason: str = "Download failed"):
        super().__init__(f"Failed to download media for {message_id}: {reason}", retryable=True)
        self.message_id = message_id
        self.reason = reason


class MediaProbeError(CollaboratorError):
    def __init__(self, path: str, reason: str):
        super().__init__(f"Could not probe duration of {path}: {reason}", retryable=False)
        self.path = path
        self.reason = reason


class AudioConversionError(CollaboratorError):
    def __init__(self, path: str, reason: str):
        super().__init__(f"Could not convert {path}: {reason}", retryable=False)
        self.path = path
        self.reason = reason


class TranscriptionProcessingError(CollaboratorError):
    pass


class TranscriptionTimeoutError(TranscriptionProcessingError):
    def __init__(self, timeout_seconds: float):
        super().__init__(f"Transcription timed out after {timeout_seconds}s", retryable=True)
        self.timeout_seconds = timeout_seconds


class SummaryGenerationError(CollaboratorError):
    pass


# =============================================================================
# Session errors: always end in full handle teardown
# =============================================================================

class SessionError(VoxnoteError):
    pass


class SessionInitializationError(SessionError):
    def __init__(self, user_id: str, reason: str):
        super().__init__(f"Could not start session for user {user_id}: {reason}")
        self.user_id = user_id
        self.reason = reason


class InvalidSessionTransitionError(SessionError):
    def __init__(self, current: str, target: str):
        super().__init__(f"Invalid session transition: {current} -> {target}")
        self.current = current
        self.target = target


class SessionNotReadyError(SessionError):
    def __init__(self, user_id: str):
        super().__init__(f"No ready session for user {user_id}")
        self.user_id = user_id


class PairingUnavailableError(SessionError):
    def __init__(self, user_id: str, reason: str = "Connection failed. Please try again."):
        super().__init__(reason)
        self.user_id = user_id
        self.reason = reason


# =============================================================================
# Persistence errors
# =============================================================================

class RepositoryError(VoxnoteError):
    def __init__(self, operation: str, reason: str):
        super().__init__(f"Repository error during {operation}: {reason}")
        self.operation = operation
        self.reason = reason


class DuplicateTranscriptError(RepositoryError):
    def __init__(self, message_id: str):
        super().__init__("create_transcript", f"message {message_id} already has a transcript")
        self.message_id = message_id


class LedgerCommitError(RepositoryError):
    def __init__(self, user_id: str, reason: str):
        super().__init__("ledger_commit", f"user {user_id}: {reason}")
        self.user_id = user_id


class ConfigurationError(VoxnoteError):
    def __init__(self, errors: list[str]):
        super().__init__(f"Configuration errors: {', '.join(errors)}")
        self.errors = errors
