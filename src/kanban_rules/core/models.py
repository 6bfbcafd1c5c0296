"""Rule definitions and runtime values shared by the engine components."""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from dataclasses import dataclass, field

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class ValidationType(str, Enum):
    REQUIRED_FIELD = "required_field"
    REQUIRED_CHECKLIST = "required_checklist"
    REQUIRED_DOCUMENT = "required_document"
    REQUIRED_RELATIONSHIP = "required_relationship"
    CUSTOM_CONDITION = "custom_condition"


class ValidationBehavior(str, Enum):
    BLOCK = "block"
    WARN = "warn"
    MARK_INCOMPLETE = "mark_incomplete"


class ActionTrigger(str, Enum):
    ON_ENTER = "on_enter"
    ON_EXIT = "on_exit"
    ON_STAY = "on_stay"


class ColorOperator(str, Enum):
    GREATER_THAN = "greater_than"
    GREATER_THAN_OR_EQUAL = "greater_than_or_equal"
    LESS_THAN = "less_than"
    LESS_THAN_OR_EQUAL = "less_than_or_equal"
    EQUAL = "equal"
    BETWEEN = "between"


class ActionType(str, Enum):
    """Known action kinds. Hosts may register types outside this catalog."""
    CREATE_PROPERTY = "create_property"
    CREATE_CLIENT = "create_client"
    CREATE_DOCUMENT = "create_document"
    CREATE_VISTORIA = "create_vistoria"
    CREATE_RENTAL = "create_rental"
    CREATE_NOTE = "create_note"
    CREATE_APPOINTMENT = "create_appointment"
    CREATE_TRANSACTION = "create_transaction"
    UPDATE_PROPERTY = "update_property"
    UPDATE_CLIENT = "update_client"
    UPDATE_DOCUMENT = "update_document"
    SEND_EMAIL = "send_email"
    SEND_SMS = "send_sms"
    SEND_NOTIFICATION = "send_notification"
    SEND_CHAT_MESSAGE = "send_chat_message"
    ASSIGN_USER = "assign_user"
    ADD_TAG = "add_tag"
    SET_PRIORITY = "set_priority"
    SET_DUE_DATE = "set_due_date"
    ADD_COMMENT = "add_comment"
    SET_CUSTOM_FIELD = "set_custom_field"
    CREATE_TASK = "create_task"
    ARCHIVE_DOCUMENTS = "archive_documents"
    UPDATE_RELATIONSHIP = "update_relationship"
    SCHEDULE_EMAIL = "schedule_email"
    SCHEDULE_TASK = "schedule_task"
    START_EMAIL_SEQUENCE = "start_email_sequence"
    UPDATE_SCORE = "update_score"


_ENTER_ONLY = frozenset({ActionTrigger.ON_ENTER})
_ENTER_EXIT_STAY = frozenset(ActionTrigger)
_ENTER_STAY = frozenset({ActionTrigger.ON_ENTER, ActionTrigger.ON_STAY})

ALLOWED_TRIGGERS_BY_ACTION_TYPE: dict[str, frozenset] = {
    action_type.value: _ENTER_ONLY for action_type in ActionType
}
ALLOWED_TRIGGERS_BY_ACTION_TYPE.update({
    ActionType.SEND_EMAIL.value: _ENTER_EXIT_STAY,
    ActionType.SEND_NOTIFICATION.value: _ENTER_EXIT_STAY,
    ActionType.UPDATE_SCORE.value: _ENTER_STAY,
})

HEX_COLOR = re.compile(r"^#[0-9A-Fa-f]{6}$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ==================== Rule definitions ====================


class _Rule(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = Field(min_length=1)
    order: int = 0
    is_active: bool = True


class ValidationRule(_Rule):
    """Gate evaluated before a card may enter ``column_id``."""
    column_id: str = Field(min_length=1)
    # Left as a plain string so stored rules of an unknown type can still be
    # loaded and skipped at evaluation time.
    type: str
    behavior: ValidationBehavior
    message: str
    config: dict[str, Any] = Field(default_factory=dict)
    from_column_id: Optional[str] = None
    require_adjacent_position: bool = False

    @field_validator("message")
    @classmethod
    def _message_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("message must not be empty")
        return value


class ActionRule(_Rule):
    """Side effect fired on column entry, exit, or periodically while a card stays."""
    column_id: str = Field(min_length=1)
    trigger: ActionTrigger
    type: str = Field(min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)
    conditions: list[dict[str, Any]] = Field(default_factory=list)
    from_column_id: Optional[str] = None
    require_adjacent_position: bool = False
    interval_hours: Optional[float] = None
    max_executions: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _check_periodic_settings(self) -> "ActionRule":
        if self.trigger == ActionTrigger.ON_STAY:
            if self.interval_hours is None or self.interval_hours <= 0:
                raise ValueError("interval_hours must be > 0 for on_stay actions")
        else:
            self.interval_hours = None
            self.max_executions = 0
        return self


class ColorRule(_Rule):
    """Maps a card's elapsed days since last update to a display color."""
    team_id: str = Field(min_length=1)
    project_id: Optional[str] = None
    name: str = ""
    description: str = ""
    operator: ColorOperator
    days: int = Field(ge=0)
    days_to: Optional[int] = None
    color: str

    @field_validator("color")
    @classmethod
    def _hex_color(cls, value: str) -> str:
        if not HEX_COLOR.match(value):
            raise ValueError(f"color must be #RRGGBB, got {value!r}")
        return value.upper()

    @model_validator(mode="after")
    def _check_range(self) -> "ColorRule":
        if self.operator == ColorOperator.BETWEEN:
            if self.days_to is None:
                raise ValueError("days_to is required for the between operator")
            if self.days_to < self.days:
                raise ValueError("days_to must be >= days")
        else:
            self.days_to = None
        return self


@dataclass
class RuleSet:
    """A batch of rule definitions, e.g. loaded from config files."""
    validations: list[ValidationRule] = field(default_factory=list)
    actions: list[ActionRule] = field(default_factory=list)
    color_rules: list[ColorRule] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.validations) + len(self.actions) + len(self.color_rules)


# ==================== Card facts ====================


@dataclass
class ChecklistState:
    total_items: int = 0
    completed_item_ids: set[str] = field(default_factory=set)

    @property
    def completed_items(self) -> int:
        return len(self.completed_item_ids)


@dataclass
class DocumentInfo:
    document_id: str
    document_type: Optional[str] = None
    status: Optional[str] = None
    category: Optional[str] = None


@dataclass
class CardSnapshot:
    """Point-in-time facts about a card, supplied by the board per call."""
    card_id: str
    column_id: str
    last_updated_at: Optional[datetime] = None
    team_id: Optional[str] = None
    project_id: Optional[str] = None
    fields: dict[str, Any] = field(default_factory=dict)
    custom_fields: dict[str, Any] = field(default_factory=dict)
    checklists: dict[str, ChecklistState] = field(default_factory=dict)
    documents: list[DocumentInfo] = field(default_factory=list)
    relationships: dict[str, list[str]] = field(default_factory=dict)


# ==================== Scheduler state ====================


@dataclass
class ActionExecutionState:
    """Periodic schedule of one on_stay action for one card during one dwell period."""
    card_id: str
    action_rule_id: str
    column_id: str
    dwell_id: str
    entered_column_at: datetime
    interval_hours: float
    max_executions: int = 0
    times_executed: int = 0
    last_executed_at: Optional[datetime] = None
    next_due_at: Optional[datetime] = None

    @property
    def cap_reached(self) -> bool:
        return self.max_executions > 0 and self.times_executed >= self.max_executions
