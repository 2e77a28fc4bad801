from src.models.application import ApplicationRecord
from src.models.calendar import Holiday, HolidayCalendar
from src.models.enums import (
    ApplicationStatus,
    AreaUnit,
    CalendarBasis,
    Capability,
    DurationUnit,
    EventType,
    HolidayKind,
    InputType,
    LandCategory,
    LanguageCode,
    NextActionType,
    Weekday,
    WorkflowFlow,
    WorkflowState,
)
from src.models.errors import (
    AccountabilityError,
    CalendarDataMissing,
    CollaboratorUnavailable,
    ConcurrencyConflict,
    ExtractionLowConfidence,
    InputError,
    InvalidTransition,
    OwnershipViolation,
    RecordNotFound,
    SessionNotFound,
    TimelineRuleNotFound,
    UnclearInput,
    UserFacingError,
)
from src.models.land import LandHolding, LandParcel
from src.models.scheme import SchemeCondition, SchemeRule
from src.models.session import (
    FlowResult,
    NextAction,
    PendingExternalCall,
    Prompt,
    WorkflowEvent,
    WorkflowSession,
)
from src.models.timeline import TimelineRule

__all__ = [
    "AccountabilityError",
    "ApplicationRecord",
    "ApplicationStatus",
    "AreaUnit",
    "CalendarBasis",
    "CalendarDataMissing",
    "Capability",
    "CollaboratorUnavailable",
    "ConcurrencyConflict",
    "DurationUnit",
    "EventType",
    "ExtractionLowConfidence",
    "FlowResult",
    "Holiday",
    "HolidayCalendar",
    "HolidayKind",
    "InputError",
    "InputType",
    "InvalidTransition",
    "LandCategory",
    "LandHolding",
    "LandParcel",
    "LanguageCode",
    "NextAction",
    "NextActionType",
    "OwnershipViolation",
    "PendingExternalCall",
    "Prompt",
    "RecordNotFound",
    "SchemeCondition",
    "SchemeRule",
    "SessionNotFound",
    "TimelineRule",
    "TimelineRuleNotFound",
    "UnclearInput",
    "UserFacingError",
    "Weekday",
    "WorkflowEvent",
    "WorkflowFlow",
    "WorkflowSession",
    "WorkflowState",
]
