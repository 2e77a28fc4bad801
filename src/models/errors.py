"""Failure taxonomy for the accountability core.

Every exception carries a plain-language ``user_message`` and a concrete
``next_step`` so that whatever crosses the component boundary can be
shown to a citizen as-is.  Internal detail (stack traces, provider
names, infrastructure codes) stays in the structured logs and in
``str(exc)``; it is never part of :class:`UserFacingError`.
"""

from __future__ import annotations

from datetime import date

from pydantic import BaseModel


class UserFacingError(BaseModel):
    """The only failure shape stored on sessions or returned over HTTP."""

    code: str
    message: str
    next_step: str
    recoverable: bool = True
    field: str | None = None


class AccountabilityError(Exception):
    """Base class for all domain failures."""

    code: str = "internal_error"
    recoverable: bool = True
    user_message: str = "Something went wrong while processing your request."
    next_step: str = "Please try again in a few minutes."

    def __init__(self, detail: str = "", *, field: str | None = None) -> None:
        super().__init__(detail or self.user_message)
        self.field = field

    def to_user_error(self) -> UserFacingError:
        return UserFacingError(
            code=self.code,
            message=self.user_message,
            next_step=self.next_step,
            recoverable=self.recoverable,
            field=self.field,
        )


# ---------------------------------------------------------------------------
# Input errors -- rejected immediately, never coerced
# ---------------------------------------------------------------------------


class InputError(AccountabilityError):
    code = "invalid_input"
    user_message = "Some of the details you gave could not be accepted."
    next_step = "Please check the highlighted detail and enter it again."

    def __init__(self, field: str, reason: str) -> None:
        super().__init__(f"{field}: {reason}", field=field)
        self.reason = reason
        self.user_message = f"The {field.replace('_', ' ')} could not be accepted: {reason}."


class FutureSubmissionDate(InputError):
    code = "future_submission_date"
    next_step = "Please enter the date on which you actually submitted the application."

    def __init__(self, submission_date: date, today: date) -> None:
        super().__init__(
            "submission_date",
            f"{submission_date.isoformat()} is after today ({today.isoformat()})",
        )
        self.submission_date = submission_date


class InvalidRule(InputError):
    code = "invalid_rule"
    next_step = "Please enter the number of days the service is promised in."

    def __init__(self, reason: str) -> None:
        super().__init__("duration_units", reason)


class MissingField(InputError):
    code = "missing_field"
    next_step = "Please provide the missing detail."

    def __init__(self, field: str) -> None:
        super().__init__(field, "this detail is required")


class UnexpectedInput(InputError):
    code = "unexpected_input"

    def __init__(self, expected: str, received: str) -> None:
        super().__init__("input_type", f"expected {expected}, received {received}")
        self.user_message = "That is not what we asked for."
        self.next_step = f"Please provide the {expected.replace('_', ' ')}."


class InvalidDateRange(InputError):
    code = "invalid_date_range"

    def __init__(self, start: date, end: date) -> None:
        super().__init__("date_range", f"{end.isoformat()} is before {start.isoformat()}")


# ---------------------------------------------------------------------------
# Recoverable branches
# ---------------------------------------------------------------------------


class ExtractionLowConfidence(AccountabilityError):
    code = "extraction_low_confidence"
    user_message = "Some details on your document could not be read clearly."
    next_step = "Please type the missing details yourself."

    def __init__(self, fields: list[str]) -> None:
        super().__init__(f"low confidence fields: {', '.join(fields)}")
        self.fields = fields


class UnclearInput(AccountabilityError):
    code = "unclear_input"
    user_message = "Sorry, we could not understand that."
    next_step = "Please say it again slowly, or type it instead."


class CollaboratorUnavailable(AccountabilityError):
    code = "service_unavailable"
    user_message = "A service we depend on is not responding right now."
    next_step = "You can enter the details yourself, or try again later."

    def __init__(self, capability: str, detail: str = "") -> None:
        super().__init__(f"{capability} unavailable {detail}".strip())
        self.capability = capability


class TimelineRuleNotFound(AccountabilityError):
    code = "timeline_not_found"
    user_message = "We could not find the official time limit for this service."
    next_step = "If you know the promised number of days, please enter it."

    def __init__(self, service_identifier: str, jurisdiction: str) -> None:
        super().__init__(f"no timeline rule for {service_identifier} in {jurisdiction}")
        self.service_identifier = service_identifier
        self.jurisdiction = jurisdiction


class ConcurrencyConflict(AccountabilityError):
    code = "concurrent_update"
    user_message = "Your information was being updated from somewhere else at the same time."
    next_step = "Please repeat your last step."

    def __init__(self, kind: str, key: str, detail: str = "") -> None:
        super().__init__(f"stale write on {kind}/{key} {detail}".strip())
        self.kind = kind
        self.key = key


# ---------------------------------------------------------------------------
# Fatal / administrative
# ---------------------------------------------------------------------------


class CalendarDataMissing(AccountabilityError):
    code = "calendar_data_missing"
    recoverable = False
    user_message = "The official holiday list for this area and year is not available yet."
    next_step = (
        "We cannot count working days without it. Please check again after the "
        "holiday list has been published, or contact your nearest CSC."
    )

    def __init__(self, jurisdiction: str, year: int) -> None:
        super().__init__(f"no holiday calendar for {jurisdiction}/{year}")
        self.jurisdiction = jurisdiction
        self.year = year


class RecordNotFound(AccountabilityError):
    code = "not_found"
    user_message = "We could not find that record."
    next_step = "Please check the reference number and try again."

    def __init__(self, kind: str, key: str) -> None:
        super().__init__(f"{kind} {key} not found")
        self.kind = kind
        self.key = key


class SessionNotFound(RecordNotFound):
    code = "session_not_found"
    user_message = "Your earlier conversation could not be found. It may have expired."
    next_step = "Please start a new conversation."

    def __init__(self, session_id: str) -> None:
        super().__init__("session", session_id)


class OwnershipViolation(AccountabilityError):
    code = "forbidden"
    user_message = "That record does not belong to you."
    next_step = "Please use a reference number from your own applications."

    def __init__(self, kind: str, key: str) -> None:
        super().__init__(f"{kind} {key} accessed across owners")


class InvalidTransition(AccountabilityError):
    code = "invalid_transition"
    user_message = "That action is not possible at this point in the conversation."
    next_step = "Please finish or cancel the current task first."
