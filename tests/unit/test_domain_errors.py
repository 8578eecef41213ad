from __future__ import annotations

import pytest

from voxnote.app.domain.errors import (
    AudioConversionError,
    AudioTooLongError,
    CollaboratorError,
    ConfigurationError,
    DuplicateTranscriptError,
    EntitlementError,
    InvalidSessionTransitionError,
    LedgerCommitError,
    MediaDownloadError,
    MediaProbeError,
    PairingUnavailableError,
    QuotaExceededError,
    RepositoryError,
    SessionError,
    SessionInitializationError,
    SessionNotReadyError,
    SubscriptionInactiveError,
    SummaryGenerationError,
    TranscriptionProcessingError,
    TranscriptionTimeoutError,
    VoxnoteError,
)


class TestVoxnoteError:
    def test_base_exception(self) -> None:
        error = VoxnoteError("Base error")
        assert str(error) == "Base error"
        assert isinstance(error, Exception)


class TestQuotaExceededError:
    def test_default_message(self) -> None:
        error = QuotaExceededError()
        assert str(error) == "Monthly quota exceeded"
        assert error.minutes_remaining == 0.0

    def test_custom_message_and_minutes(self) -> None:
        error = QuotaExceededError("Custom message", minutes_remaining=0.5)
        assert str(error) == "Custom message"
        assert error.minutes_remaining == 0.5


class TestAudioTooLongError:
    def test_includes_duration_and_limit(self) -> None:
        error = AudioTooLongError(700.0, 600)
        assert "700.0" in str(error)
        assert "600" in str(error)
        assert error.max_seconds == 600


class TestCollaboratorErrors:
    def test_download_is_retryable(self) -> None:
        error = MediaDownloadError("msg-1", "timeout")
        assert "msg-1" in str(error)
        assert error.reason == "timeout"
        assert error.retryable is True

    def test_probe_and_conversion_are_not_retryable(self) -> None:
        assert MediaProbeError("/tmp/a.ogg", "no stream").retryable is False
        assert AudioConversionError("/tmp/a.ogg", "bad codec").retryable is False

    def test_processing_retryable_default_true(self) -> None:
        assert TranscriptionProcessingError("Processing failed").retryable is True
        assert TranscriptionProcessingError("Bad audio", retryable=False).retryable is False

    def test_timeout_error(self) -> None:
        error = TranscriptionTimeoutError(120)
        assert "120" in str(error)
        assert error.timeout_seconds == 120
        assert error.retryable is True


class TestSessionErrors:
    def test_invalid_transition_names_both_states(self) -> None:
        error = InvalidSessionTransitionError("READY", "PAIRING_PENDING")
        assert "READY -> PAIRING_PENDING" in str(error)

    def test_pairing_unavailable_default_reason(self) -> None:
        error = PairingUnavailableError("user-1")
        assert str(error) == "Connection failed. Please try again."
        assert error.user_id == "user-1"

    def test_initialization_error_keeps_reason(self) -> None:
        error = SessionInitializationError("user-1", "browser crashed")
        assert "browser crashed" in str(error)
        assert error.reason == "browser crashed"


class TestRepositoryErrors:
    def test_includes_operation_and_reason(self) -> None:
        error = RepositoryError("get_month", "Connection refused")
        assert "get_month" in str(error)
        assert "Connection refused" in str(error)
        assert error.operation == "get_month"

    def test_duplicate_transcript(self) -> None:
        error = DuplicateTranscriptError("msg-1")
        assert error.message_id == "msg-1"
        assert error.operation == "create_transcript"

    def test_ledger_commit_error(self) -> None:
        error = LedgerCommitError("user-1", "timeout")
        assert error.user_id == "user-1"
        assert error.operation == "ledger_commit"


class TestConfigurationError:
    def test_includes_all_errors(self) -> None:
        errors = ["SUPABASE_URL is required", "QUOTA_SCAN_INTERVAL must be positive"]
        error = ConfigurationError(errors)
        assert "SUPABASE_URL is required" in str(error)
        assert error.errors == errors


class TestExceptionHierarchy:
    @pytest.mark.parametrize(
        "error_type",
        [SubscriptionInactiveError, QuotaExceededError, AudioTooLongError],
    )
    def test_entitlement_errors(self, error_type: type) -> None:
        assert issubclass(error_type, EntitlementError)
        assert not issubclass(error_type, CollaboratorError)

    @pytest.mark.parametrize(
        "error_type",
        [MediaDownloadError, MediaProbeError, AudioConversionError, TranscriptionTimeoutError, SummaryGenerationError],
    )
    def test_collaborator_errors(self, error_type: type) -> None:
        assert issubclass(error_type, CollaboratorError)

    def test_session_errors(self) -> None:
        assert issubclass(SessionNotReadyError, SessionError)
        assert issubclass(PairingUnavailableError, SessionError)

    def test_everything_is_a_voxnote_error(self) -> None:
        for error_type in (EntitlementError, CollaboratorError, SessionError, RepositoryError, ConfigurationError):
            assert issubclass(error_type, VoxnoteError)
