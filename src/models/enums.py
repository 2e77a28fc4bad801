from __future__ import annotations

from enum import IntEnum, StrEnum


class HolidayKind(StrEnum):
    __slots__ = ()

    NATIONAL = "national"
    REGIONAL = "regional"
    OPTIONAL = "optional"


class Weekday(IntEnum):
    """ISO-compatible weekday numbers (``date.weekday()`` values)."""

    MONDAY = 0
    TUESDAY = 1
    WEDNESDAY = 2
    THURSDAY = 3
    FRIDAY = 4
    SATURDAY = 5
    SUNDAY = 6


class DurationUnit(StrEnum):
    __slots__ = ()

    CALENDAR_DAYS = "calendar_days"
    WORKING_DAYS = "working_days"


class CalendarBasis(StrEnum):
    """Which holiday set a working-day computation was bound to."""

    __slots__ = ()

    JURISDICTION = "jurisdiction"
    NATIONAL_FALLBACK = "national_fallback"
    NOT_APPLICABLE = "not_applicable"  # calendar-day rules


class ApplicationStatus(StrEnum):
    __slots__ = ()

    PENDING = "pending"
    BREACHED = "breached"
    COMPLETED = "completed"


class AreaUnit(StrEnum):
    __slots__ = ()

    ACRE = "acre"
    HECTARE = "hectare"
    GUNTHA = "guntha"
    CENT = "cent"
    SQUARE_METRE = "sq_m"


class LandCategory(StrEnum):
    __slots__ = ()

    IRRIGATED = "irrigated"
    DRY = "dry"
    ORCHARD = "orchard"
    FALLOW = "fallow"
    RESIDENTIAL = "residential"
    FOREST = "forest"
    OTHER = "other"


class WorkflowFlow(StrEnum):
    __slots__ = ()

    DEADLINE_CHECK = "deadline_check"
    ELIGIBILITY_CHECK = "eligibility_check"
    DOCUMENT_EXPLANATION = "document_explanation"
    GRIEVANCE_DRAFT = "grievance_draft"


class WorkflowState(StrEnum):
    __slots__ = ()

    IDLE = "idle"
    AWAITING_INPUT = "awaiting_input"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR_RECOVERABLE = "error_recoverable"
    ERROR_FATAL = "error_fatal"


class InputType(StrEnum):
    """Shape of the input a session is waiting for."""

    __slots__ = ()

    SERVICE_DETAILS = "service_details"  # service identifier + jurisdiction
    DATE = "date"
    TIMELINE = "timeline"  # manual SLA entry: duration + unit
    LAND_PARCELS = "land_parcels"
    DOCUMENT = "document"
    FREE_TEXT = "free_text"
    CHOICE = "choice"
    CONFIRMATION = "confirmation"


class EventType(StrEnum):
    __slots__ = ()

    START_FLOW = "start_flow"
    DOCUMENT_SUBMITTED = "document_submitted"
    TEXT_INPUT = "text_input"
    VOICE_INPUT = "voice_input"
    TIMER_ELAPSED = "timer_elapsed"
    RESUME = "resume"
    CANCEL = "cancel"


class Capability(StrEnum):
    """External collaborator capabilities the core waits on."""

    __slots__ = ()

    EXTRACTION = "extraction"
    SPEECH = "speech"
    RETRIEVAL = "retrieval"
    GENERATION = "generation"


class NextActionType(StrEnum):
    __slots__ = ()

    CHECK_DEADLINE = "check_deadline"
    CHECK_ELIGIBILITY = "check_eligibility"
    EXPLAIN_DOCUMENT = "explain_document"
    DRAFT_GRIEVANCE = "draft_grievance"
    LIST_APPLICATIONS = "list_applications"
    CALL_HELPLINE = "call_helpline"
    VISIT_CSC = "visit_csc"
    END_SESSION = "end_session"


class LanguageCode(StrEnum):
    """ISO 639-1 codes for 22 scheduled languages of India + English."""

    __slots__ = ()

    hi = "hi"       # Hindi
    bn = "bn"       # Bengali
    te = "te"       # Telugu
    mr = "mr"       # Marathi
    ta = "ta"       # Tamil
    ur = "ur"       # Urdu
    gu = "gu"       # Gujarati
    kn = "kn"       # Kannada
    or_lang = "or"  # Odia: 'or' is a Python keyword
    ml = "ml"       # Malayalam
    pa = "pa"       # Punjabi
    as_lang = "as"  # Assamese: 'as' is a Python keyword
    mai = "mai"     # Maithili
    sat = "sat"     # Santali
    ks = "ks"       # Kashmiri
    ne = "ne"       # Nepali
    sd = "sd"       # Sindhi
    kok = "kok"     # Konkani
    doi = "doi"     # Dogri
    mni = "mni"     # Manipuri
    brx = "brx"     # Bodo
    sa = "sa"       # Sanskrit
    en = "en"       # English
