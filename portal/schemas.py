"""Pydantic request/response schemas for the portal API.

Field names are snake_case in Python and camelCase on the wire.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Annotated, Any, ClassVar, Literal

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator
from pydantic.alias_generators import to_camel

Role = Literal["admin", "investor"]
UpdateType = Literal["Monthly", "Quarterly"]
StakeholderType = Literal["Founder", "Investor", "Options", "Employee"]
MilestoneStatus = Literal["Planned", "In Progress", "Completed"]
DocumentCategory = Literal["Legal", "Financial", "Pitch"]
DocumentType = Literal["pdf", "excel", "powerpoint", "word"]
AskCategory = Literal["Intros", "Hiring", "Advice"]
Urgency = Literal["High", "Medium", "Low"]

NonEmptyStr = Annotated[str, Field(min_length=1)]


class _Schema(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class _Patch(_Schema):
    """Partial update body: only fields present in the request are applied.

    ``null`` is rejected for every field not listed in ``nullable``.
    """

    nullable: ClassVar[frozenset[str]] = frozenset()

    @model_validator(mode="after")
    def _reject_null(self):
        for name in self.model_fields_set:
            if getattr(self, name) is None and name not in self.nullable:
                raise ValueError(f"{to_camel(name)} may not be null")
        return self

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    email: str = Field(min_length=1, max_length=254)
    password: str = Field(min_length=1, max_length=128)


class Principal(_Schema):
    id: str
    email: str
    first_name: str = ""
    last_name: str = ""
    role: Role = "investor"
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @computed_field
    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class SessionRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    principal_id: str
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    @classmethod
    def new(cls, session_id: str, principal_id: str, now: datetime, ttl: timedelta) -> SessionRecord:
        return cls(id=session_id, principal_id=principal_id, created_at=now, expires_at=now + ttl)


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


# The metrics record is a singleton stored under this id.
METRICS_ID = 1

METRICS_DEFAULTS: dict[str, Any] = {
    "mrr": 0, "runway": 0, "burn_rate": 0, "active_users": 0, "cac": 0, "ltv": 0,
    "churn": 0.0, "team_size": 0, "open_positions": 0, "cash_balance": 0,
    "last_fundraise": "Pre-seed",
}


class Metrics(_Schema):
    id: int | None = None
    mrr: int
    runway: int
    burn_rate: int
    active_users: int
    cac: int
    ltv: int
    churn: float
    team_size: int
    open_positions: int
    cash_balance: int
    last_fundraise: str
    updated_at: datetime | None = None

    @classmethod
    def zero(cls) -> Metrics:
        return cls(**METRICS_DEFAULTS)


class MetricsPatch(_Patch):
    mrr: int | None = None
    runway: int | None = None
    burn_rate: int | None = None
    active_users: int | None = None
    cac: int | None = None
    ltv: int | None = None
    churn: float | None = None
    team_size: int | None = None
    open_positions: int | None = None
    cash_balance: int | None = None
    last_fundraise: str | None = None


# ---------------------------------------------------------------------------
# Company updates
# ---------------------------------------------------------------------------


class CompanyUpdateCreate(_Schema):
    title: NonEmptyStr
    content: NonEmptyStr
    author: NonEmptyStr
    type: UpdateType


class CompanyUpdatePatch(_Patch):
    title: str | None = Field(None, min_length=1)
    content: str | None = Field(None, min_length=1)
    author: str | None = Field(None, min_length=1)
    type: UpdateType | None = None


class CompanyUpdate(CompanyUpdateCreate):
    id: int
    attachments: int = 0
    comments: int = 0
    views: int = 0
    created_at: datetime


# ---------------------------------------------------------------------------
# Cap table
# ---------------------------------------------------------------------------


class StakeholderCreate(_Schema):
    name: NonEmptyStr
    title: NonEmptyStr
    type: StakeholderType
    shares: int = Field(ge=0)
    percentage: float = Field(ge=0)
    security_type: NonEmptyStr
    initials: str = Field(min_length=1, max_length=10)


class StakeholderPatch(_Patch):
    name: str | None = Field(None, min_length=1)
    title: str | None = Field(None, min_length=1)
    type: StakeholderType | None = None
    shares: int | None = Field(None, ge=0)
    percentage: float | None = Field(None, ge=0)
    security_type: str | None = Field(None, min_length=1)
    initials: str | None = Field(None, min_length=1, max_length=10)


class Stakeholder(StakeholderCreate):
    id: int


# ---------------------------------------------------------------------------
# Fundraising timeline
# ---------------------------------------------------------------------------


class MilestoneCreate(_Schema):
    title: NonEmptyStr
    description: NonEmptyStr
    date: NonEmptyStr
    status: MilestoneStatus
    amount: int | None = None
    investors: int | None = None
    icon: NonEmptyStr


class MilestonePatch(_Patch):
    nullable = frozenset({"amount", "investors"})

    title: str | None = Field(None, min_length=1)
    description: str | None = Field(None, min_length=1)
    date: str | None = Field(None, min_length=1)
    status: MilestoneStatus | None = None
    amount: int | None = None
    investors: int | None = None
    icon: str | None = Field(None, min_length=1)


class Milestone(MilestoneCreate):
    id: int


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------


class DocumentCreate(_Schema):
    name: NonEmptyStr
    description: str | None = None
    category: DocumentCategory
    type: DocumentType
    url: str = Field(min_length=1, max_length=2048)
    source: NonEmptyStr


class Document(DocumentCreate):
    id: int
    date: datetime


# ---------------------------------------------------------------------------
# Asks and responses
# ---------------------------------------------------------------------------


class AskCreate(_Schema):
    title: NonEmptyStr
    description: NonEmptyStr
    category: AskCategory
    urgency: Urgency
    icon: NonEmptyStr


class AskPatch(_Patch):
    title: str | None = Field(None, min_length=1)
    description: str | None = Field(None, min_length=1)
    category: AskCategory | None = None
    urgency: Urgency | None = None
    icon: str | None = Field(None, min_length=1)


class Ask(AskCreate):
    id: int
    responses: int = 0
    views: int = 0
    created_at: datetime


class ResponseCreate(_Schema):
    content: NonEmptyStr
    author: str | None = Field(None, min_length=1)


class AskResponse(_Schema):
    id: int
    ask_id: int
    author: str
    content: str
    created_at: datetime


class Success(BaseModel):
    success: bool = True


class LoginResult(_Schema):
    success: bool = True
    user: Principal
