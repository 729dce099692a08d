"""Data models for the filing reminder engine.

All models are plain dataclasses with type hints.  No ORM, no Pydantic --
the SQLite store in ``store.py`` maps rows to and from these classes.

Entities follow the practice's data model: clients, their filing
assignments and deadline overrides, reminder schedules with ordered steps,
email templates, and the reminder queue that ties them together.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Iterable


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class FilingRemindersError(Exception):
    """Base class for errors raised by the reminder engine."""


class RolloverError(FilingRemindersError):
    """Rollover was asked to do something its inputs cannot support.

    This is a programming-contract violation (e.g. an annual rollover with
    no year-end date), not a data-completeness skip.
    """


class UnknownFilingTypeError(RolloverError, ValueError):
    """A filing type id outside the closed FilingTypeId set."""


class TemplateRenderError(FilingRemindersError):
    """An email template's structured body could not be rendered."""


class StoreError(FilingRemindersError):
    """The persistent store failed to read or write."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class FilingTypeId(str, Enum):
    """The five UK statutory obligations the practice tracks."""

    CORPORATION_TAX_PAYMENT = "corporation_tax_payment"
    CT600_FILING = "ct600_filing"
    COMPANIES_HOUSE = "companies_house"
    VAT_RETURN = "vat_return"
    SELF_ASSESSMENT = "self_assessment"

    @classmethod
    def parse(cls, value: FilingTypeId | str) -> FilingTypeId:
        """Coerce a raw id string into the enum.

        Raises:
            UnknownFilingTypeError: If ``value`` is not one of the five ids.
        """
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise UnknownFilingTypeError(f"Unknown filing type: {value!r}") from None

    @property
    def display_name(self) -> str:
        return FILING_TYPES[self].name


class ReminderStatus(str, Enum):
    """Lifecycle states for a ReminderQueueEntry.

        SCHEDULED -> PENDING -> SENT
                 |           |-> FAILED
                 |-> CANCELLED
    """

    SCHEDULED = "scheduled"
    PENDING = "pending"
    SENT = "sent"
    CANCELLED = "cancelled"
    FAILED = "failed"


class ScheduleType(str, Enum):
    FILING = "filing"
    CUSTOM = "custom"


class RecurrenceRule(str, Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUALLY = "annually"


class SkipReason(str, Enum):
    """Why the queue builder did not create a reminder."""

    CLIENT_PAUSED = "client_paused"
    RECORDS_RECEIVED = "records_received"
    MISSING_METADATA = "missing_metadata"
    NO_SCHEDULE = "no_schedule"
    NO_STEPS = "no_steps"
    MISSING_TEMPLATE = "missing_template"
    STEP_SKIPPED = "step_skipped"
    ALREADY_QUEUED = "already_queued"
    NO_TARGET_DATE = "no_target_date"
    EXCLUDED = "excluded"


VAT_STAGGER_GROUPS: tuple[int, ...] = (1, 2, 3)

MAX_DELAY_DAYS: int = 365
MAX_SCHEDULE_NAME_LENGTH: int = 100


# ---------------------------------------------------------------------------
# Reference data
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FilingType:
    """Immutable description of one filing obligation."""

    id: FilingTypeId
    name: str
    applicable_client_types: tuple[str, ...]
    deadline_rule: str


FILING_TYPES: dict[FilingTypeId, FilingType] = {
    FilingTypeId.CORPORATION_TAX_PAYMENT: FilingType(
        id=FilingTypeId.CORPORATION_TAX_PAYMENT,
        name="Corporation Tax Payment",
        applicable_client_types=("Limited Company", "LLP"),
        deadline_rule="Year-end + 9 months + 1 day",
    ),
    FilingTypeId.CT600_FILING: FilingType(
        id=FilingTypeId.CT600_FILING,
        name="CT600 Filing",
        applicable_client_types=("Limited Company", "LLP"),
        deadline_rule="Year-end + 12 months",
    ),
    FilingTypeId.COMPANIES_HOUSE: FilingType(
        id=FilingTypeId.COMPANIES_HOUSE,
        name="Companies House Accounts",
        applicable_client_types=("Limited Company", "LLP"),
        deadline_rule="Year-end + 9 months",
    ),
    FilingTypeId.VAT_RETURN: FilingType(
        id=FilingTypeId.VAT_RETURN,
        name="VAT Return",
        applicable_client_types=("Limited Company", "Sole Trader", "Partnership", "LLP"),
        deadline_rule="Quarter-end + 1 month + 7 days",
    ),
    FilingTypeId.SELF_ASSESSMENT: FilingType(
        id=FilingTypeId.SELF_ASSESSMENT,
        name="Self Assessment",
        applicable_client_types=("Sole Trader", "Partnership"),
        deadline_rule="31 January following the tax year",
    ),
}


def _filing_type_set(values: Iterable[FilingTypeId | str] | None) -> set[FilingTypeId]:
    return {FilingTypeId.parse(v) for v in (values or ())}


# ---------------------------------------------------------------------------
# Clients
# ---------------------------------------------------------------------------

@dataclass
class Client:
    """A practice client.

    ``year_end_date`` drives the three annual filings and is advanced by
    one year on rollover.  ``vat_stagger_group`` (1, 2 or 3) drives VAT.
    """

    id: str
    company_name: str
    client_type: str = "Limited Company"
    email: str = ""
    year_end_date: date | None = None
    vat_stagger_group: int | None = None
    reminders_paused: bool = False
    records_received_for: set[FilingTypeId] = field(default_factory=set)
    completed_for: set[FilingTypeId] = field(default_factory=set)

    def __post_init__(self) -> None:
        if self.vat_stagger_group is not None and self.vat_stagger_group not in VAT_STAGGER_GROUPS:
            raise ValueError(
                f"vat_stagger_group must be one of {VAT_STAGGER_GROUPS}, "
                f"got {self.vat_stagger_group!r}"
            )
        self.records_received_for = _filing_type_set(self.records_received_for)
        self.completed_for = _filing_type_set(self.completed_for)

    def has_received(self, filing_type: FilingTypeId) -> bool:
        return filing_type in self.records_received_for


@dataclass
class ClientFilingAssignment:
    """Which filing types apply to a client."""

    client_id: str
    filing_type_id: FilingTypeId
    is_active: bool = True

    def __post_init__(self) -> None:
        self.filing_type_id = FilingTypeId.parse(self.filing_type_id)


@dataclass
class ClientDeadlineOverride:
    """An explicit deadline that replaces the calculated one."""

    client_id: str
    filing_type_id: FilingTypeId
    override_date: date
    reason: str | None = None

    def __post_init__(self) -> None:
        self.filing_type_id = FilingTypeId.parse(self.filing_type_id)


# ---------------------------------------------------------------------------
# Schedules and templates
# ---------------------------------------------------------------------------

@dataclass
class ScheduleStep:
    """One reminder in a schedule, fired ``delay_days`` before the target."""

    step_number: int
    email_template_id: str
    delay_days: int


@dataclass
class Schedule:
    """A named, ordered sequence of reminder steps.

    Filing schedules are bound to one filing type.  Custom schedules target
    either a one-off ``custom_date`` or a recurrence (``recurrence_rule``
    anchored at ``recurrence_anchor``), optionally at their own send hour.
    """

    id: str
    name: str
    schedule_type: ScheduleType = ScheduleType.FILING
    filing_type_id: FilingTypeId | None = None
    custom_date: date | None = None
    recurrence_rule: RecurrenceRule | None = None
    recurrence_anchor: date | None = None
    send_hour: int | None = None
    is_active: bool = True
    description: str = ""
    steps: list[ScheduleStep] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.schedule_type = ScheduleType(self.schedule_type)
        if self.filing_type_id is not None:
            self.filing_type_id = FilingTypeId.parse(self.filing_type_id)
        if self.recurrence_rule is not None:
            self.recurrence_rule = RecurrenceRule(self.recurrence_rule)
        if self.schedule_type is ScheduleType.FILING and self.filing_type_id is None:
            raise ValueError(f"Filing schedule {self.id!r} needs a filing_type_id")

    @property
    def is_custom(self) -> bool:
        return self.schedule_type is ScheduleType.CUSTOM

    @property
    def ordered_steps(self) -> list[ScheduleStep]:
        return sorted(self.steps, key=lambda s: s.step_number)

    def get_step(self, step_number: int) -> ScheduleStep | None:
        for step in self.steps:
            if step.step_number == step_number:
                return step
        return None

    def validate(self) -> None:
        """Raise ValueError if the schedule cannot be saved as-is."""
        if not self.name or len(self.name) > MAX_SCHEDULE_NAME_LENGTH:
            raise ValueError(
                f"Schedule name must be 1-{MAX_SCHEDULE_NAME_LENGTH} characters"
            )
        if self.is_custom:
            if self.filing_type_id is not None:
                raise ValueError("Custom schedules cannot be bound to a filing type")
            if self.custom_date is None and (
                self.recurrence_rule is None or self.recurrence_anchor is None
            ):
                raise ValueError(
                    "Custom schedules require either a target date "
                    "or a recurrence rule with anchor date"
                )
        elif self.send_hour is not None:
            raise ValueError("Only custom schedules may override the send hour")
        if self.send_hour is not None and not 0 <= self.send_hour <= 23:
            raise ValueError(f"send_hour must be between 0 and 23, got {self.send_hour!r}")

        seen: set[int] = set()
        for step in self.steps:
            if step.step_number in seen:
                raise ValueError(f"Duplicate step number {step.step_number}")
            seen.add(step.step_number)
            if not 0 <= step.delay_days <= MAX_DELAY_DAYS:
                raise ValueError(
                    f"delay_days must be between 0 and {MAX_DELAY_DAYS}, got {step.delay_days!r}"
                )


@dataclass
class EmailTemplate:
    """Subject plus structured body, both may hold ``{{placeholder}}`` tokens."""

    id: str
    name: str
    subject: str
    body: dict[str, Any] = field(default_factory=lambda: {"type": "doc", "content": []})
    is_active: bool = True


@dataclass
class ClientScheduleOverride:
    """Per-client tweak to one schedule step: new lead time, or skip it."""

    client_id: str
    schedule_id: str
    step_number: int
    delay_days_override: int | None = None
    is_skipped: bool = False


@dataclass
class ClientEmailOverride:
    """Per-client replacement of a template's subject and/or body."""

    client_id: str
    email_template_id: str
    subject_override: str | None = None
    body_override: dict[str, Any] | None = None

    def apply(self, template: EmailTemplate) -> EmailTemplate:
        """Merge onto ``template``; fields left as None come from the base."""
        return EmailTemplate(
            id=template.id,
            name=template.name,
            subject=self.subject_override if self.subject_override is not None else template.subject,
            body=self.body_override if self.body_override is not None else template.body,
            is_active=template.is_active,
        )


# ---------------------------------------------------------------------------
# Reminder queue
# ---------------------------------------------------------------------------

def make_idempotency_key(
    client_id: str,
    filing_type_id: FilingTypeId | None,
    schedule_id: str,
    step_index: int,
    deadline_date: date,
) -> str:
    """Build the uniqueness key for one logical reminder occurrence.

    Filing reminders are keyed by (client, filing type, step, deadline).
    Custom reminders have no filing type, so the schedule id takes its
    place to keep two custom schedules from colliding.
    """
    filing_part = filing_type_id.value if filing_type_id is not None else ""
    schedule_part = schedule_id if filing_type_id is None else ""
    return "|".join([
        client_id,
        filing_part,
        schedule_part,
        str(step_index),
        deadline_date.isoformat(),
    ])


@dataclass
class ReminderQueueEntry:
    """One dated reminder for one client.

    ``template_id`` holds the owning schedule's id.  ``step_index`` is the
    schedule step's ``step_number``.
    """

    client_id: str
    template_id: str
    step_index: int
    deadline_date: date
    send_date: date
    filing_type_id: FilingTypeId | None = None
    status: ReminderStatus = ReminderStatus.SCHEDULED
    id: int | None = None
    resolved_subject: str | None = None
    resolved_body: str | None = None
    html_body: str | None = None
    queued_at: datetime | None = None
    sent_at: datetime | None = None
    created_at: datetime | None = None

    def __post_init__(self) -> None:
        if self.filing_type_id is not None:
            self.filing_type_id = FilingTypeId.parse(self.filing_type_id)
        self.status = ReminderStatus(self.status)

    @property
    def is_custom(self) -> bool:
        return self.filing_type_id is None

    @property
    def idempotency_key(self) -> str:
        return make_idempotency_key(
            self.client_id,
            self.filing_type_id,
            self.template_id,
            self.step_index,
            self.deadline_date,
        )


# ---------------------------------------------------------------------------
# Result containers
# ---------------------------------------------------------------------------

@dataclass
class BuildResult:
    """Counts from one queue-building pass.  Soft failures never raise."""

    created: int = 0
    skipped: int = 0
    skip_reasons: dict[str, int] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)

    def skip(self, reason: SkipReason) -> None:
        self.skipped += 1
        self.skip_reasons[reason.value] = self.skip_reasons.get(reason.value, 0) + 1

    def merge(self, other: BuildResult) -> BuildResult:
        """Fold ``other`` into this result and return self."""
        self.created += other.created
        self.skipped += other.skipped
        for reason, count in other.skip_reasons.items():
            self.skip_reasons[reason] = self.skip_reasons.get(reason, 0) + count
        self.errors.extend(other.errors)
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "created": self.created,
            "skipped": self.skipped,
            "skip_reasons": dict(self.skip_reasons),
            "errors": list(self.errors),
        }


@dataclass
class ProcessResult:
    """Outcome of one scheduler batch run."""

    queued: int = 0
    rendered: int = 0
    rolled_over: int = 0
    errors: list[str] = field(default_factory=list)
    skipped_wrong_hour: bool = False
    lock_held: bool = False
    build: BuildResult | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "queued": self.queued,
            "rendered": self.rendered,
            "rolled_over": self.rolled_over,
            "errors": list(self.errors),
            "skipped_wrong_hour": self.skipped_wrong_hour,
            "lock_held": self.lock_held,
            "build": self.build.to_dict() if self.build else None,
        }


@dataclass
class RolloverResult:
    """Outcome of rolling one client's filing over to its next cycle."""

    client_id: str
    filing_type_id: FilingTypeId
    success: bool = True
    old_year_end: date | None = None
    new_year_end: date | None = None
    next_deadline: date | None = None
    error: str | None = None
