"""Tests for taskspine.core.errors module."""

from pathlib import Path

import pytest

from taskspine.core.errors import (
    AuthenticationError,
    ErrorCategory,
    HandlerNotFoundError,
    InvalidTransitionError,
    PollTimeoutError,
    SignatureMismatchError,
    TaskNotFoundError,
    TaskSpineError,
    UnknownTaskTypeError,
    error_payload,
    redact_paths,
)


class TestTaskSpineError:
    """Test the base error type."""

    def test_default_category_is_internal(self):
        err = TaskSpineError("boom")
        assert err.category == ErrorCategory.INTERNAL
        assert str(err) == "boom"

    def test_to_dict_includes_context_and_cause(self):
        cause = RuntimeError("disk full")
        err = TaskSpineError("write failed", context={"task_id": "t1"}, cause=cause)
        data = err.to_dict()
        assert data == {
            "error_type": "TaskSpineError",
            "message": "write failed",
            "category": "INTERNAL",
            "context": {"task_id": "t1"},
            "cause": "disk full",
        }
        assert err.__cause__ is cause

    def test_with_context_chains(self):
        err = TaskSpineError("x").with_context(task_type="export")
        assert err.context == {"task_type": "export"}


class TestConcreteErrors:
    """Test categories and messages of concrete errors."""

    def test_unknown_task_type(self):
        err = UnknownTaskTypeError("export")
        assert err.category == ErrorCategory.CONFIG
        assert err.task_type == "export"
        assert "export" in err.message

    def test_invalid_transition_is_value_error(self):
        err = InvalidTransitionError("success", "pending", task_id="t1")
        assert isinstance(err, ValueError)
        assert err.category == ErrorCategory.STATE
        assert err.message == "Invalid TaskStatus transition: success → pending"
        assert err.context["task_id"] == "t1"

    def test_task_not_found_is_lookup_error(self):
        err = TaskNotFoundError("t9")
        assert isinstance(err, LookupError)
        assert err.category == ErrorCategory.NOT_FOUND

    def test_handler_not_found(self):
        err = HandlerNotFoundError("export", "index")
        assert err.category == ErrorCategory.RESOLUTION
        assert err.context == {"task_type": "export", "script_name": "index"}

    def test_signature_mismatch_is_auth(self):
        err = SignatureMismatchError("t1")
        assert isinstance(err, AuthenticationError)
        assert err.category == ErrorCategory.AUTH

    def test_poll_timeout(self):
        err = PollTimeoutError(3)
        assert err.max_attempts == 3
        assert err.category == ErrorCategory.EXECUTION


class TestRedactPaths:
    """Test absolute path redaction."""

    def test_posix_path(self):
        assert redact_paths('File "/srv/app/tasks/export.py", line 3') == 'File "<path>/export.py", line 3'

    def test_windows_path(self):
        assert redact_paths(r"at C:\Users\dev\app\run.py") == "at <path>/run.py"

    def test_directory_with_spaces(self):
        assert redact_paths('File "/home/my user/app/x.py"') == 'File "<path>/x.py"'

    def test_two_paths_in_one_message(self):
        assert redact_paths("copy /a/b.txt to /c/d/e.txt") == "copy <path>/b.txt to <path>/e.txt"

    def test_relative_path_untouched(self):
        assert redact_paths("tasks/export/index.py") == "tasks/export/index.py"

    def test_url_untouched(self):
        assert redact_paths("see https://example.com/docs/page") == "see https://example.com/docs/page"


class TestErrorPayload:
    """Test persisted error payloads."""

    def test_plain_exception(self):
        try:
            raise ValueError("bad input")
        except ValueError as exc:
            payload = error_payload(exc)
        assert payload["error_type"] == "ValueError"
        assert payload["message"] == "bad input"
        assert "category" not in payload
        assert "ValueError: bad input" in payload["trace"]

    def test_trace_has_no_local_directories(self):
        try:
            raise RuntimeError("handler exploded")
        except RuntimeError as exc:
            payload = error_payload(exc)
        here = str(Path(__file__).resolve().parent)
        assert here not in payload["trace"]
        assert "<path>/test_errors.py" in payload["trace"]

    def test_spine_error_keeps_category(self):
        try:
            raise HandlerNotFoundError("export", "index")
        except HandlerNotFoundError as exc:
            payload = error_payload(exc)
        assert payload["category"] == "RESOLUTION"
        assert payload["error_type"] == "HandlerNotFoundError"

    def test_message_is_redacted(self):
        payload = error_payload(FileNotFoundError("missing /opt/app/data/in.csv"))
        assert payload["message"] == "missing <path>/in.csv"


@pytest.mark.parametrize(
    "exc_type",
    [UnknownTaskTypeError, TaskNotFoundError, SignatureMismatchError],
)
def test_single_argument_errors_are_spine_errors(exc_type):
    assert isinstance(exc_type("x"), TaskSpineError)
