"""
Typed high-risk admin actions.

Each action type carries its own payload schema; the discriminated union
keyed by ``action_type`` replaces an open payload map so the digest never
depends on caller key order or on optional fields left unset.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Mapping, Optional, Sequence, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StringConstraints,
    TypeAdapter,
    ValidationError,
    field_validator,
)

from app.models.admin_approval import ApprovalActionType
from app.modules.approvals.domain.fingerprint import compute_request_hash
from app.shared.core.exceptions import InvalidRequestError


class ContentType(str, Enum):
    JOB = "job"
    RESULT = "result"
    ADMIT_CARD = "admit-card"
    SYLLABUS = "syllabus"
    ANSWER_KEY = "answer-key"
    ADMISSION = "admission"


class AnnouncementStatus(str, Enum):
    DRAFT = "draft"
    PENDING = "pending"
    SCHEDULED = "scheduled"
    PUBLISHED = "published"
    ARCHIVED = "archived"


TargetId = Annotated[str, StringConstraints(min_length=1, max_length=128)]
ShortText = Annotated[str, StringConstraints(max_length=1000)]


class _Payload(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class AnnouncementPublishPayload(_Payload):
    status: Optional[AnnouncementStatus] = None
    type: Optional[ContentType] = None
    note: Optional[ShortText] = None


class AnnouncementBulkPublishPayload(_Payload):
    status: Optional[AnnouncementStatus] = None
    types: Optional[list[ContentType]] = None
    note: Optional[ShortText] = None


class AnnouncementDeletePayload(_Payload):
    type: Optional[ContentType] = None
    reason: Optional[ShortText] = None


class AnnouncementBulkStatusPayload(_Payload):
    status: AnnouncementStatus
    types: Optional[list[ContentType]] = None
    note: Optional[ShortText] = None


class _Action(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    endpoint: Annotated[str, StringConstraints(min_length=1, max_length=512)]
    method: Annotated[str, StringConstraints(min_length=1, max_length=16)]
    target_ids: list[TargetId] = Field(default_factory=list, max_length=1000)

    @field_validator("method")
    @classmethod
    def _upper_method(cls, value: str) -> str:
        return value.strip().upper()

    @property
    def kind(self) -> ApprovalActionType:
        return ApprovalActionType(getattr(self, "action_type"))

    def payload_dict(self) -> dict[str, Any]:
        payload: _Payload = getattr(self, "payload")
        return payload.model_dump(mode="json", exclude_none=True)

    def request_hash(self) -> str:
        return compute_request_hash(
            self.kind,
            self.endpoint,
            self.method,
            self.target_ids,
            self.payload_dict(),
        )


class AnnouncementPublishAction(_Action):
    action_type: Literal["announcement_publish"]
    payload: AnnouncementPublishPayload = Field(default_factory=AnnouncementPublishPayload)


class AnnouncementBulkPublishAction(_Action):
    action_type: Literal["announcement_bulk_publish"]
    payload: AnnouncementBulkPublishPayload = Field(
        default_factory=AnnouncementBulkPublishPayload
    )


class AnnouncementDeleteAction(_Action):
    action_type: Literal["announcement_delete"]
    payload: AnnouncementDeletePayload = Field(default_factory=AnnouncementDeletePayload)


class AnnouncementBulkStatusAction(_Action):
    action_type: Literal["announcement_bulk_status"]
    payload: AnnouncementBulkStatusPayload


ApprovalAction = Annotated[
    Union[
        AnnouncementPublishAction,
        AnnouncementBulkPublishAction,
        AnnouncementDeleteAction,
        AnnouncementBulkStatusAction,
    ],
    Field(discriminator="action_type"),
]

_ACTION_ADAPTER: TypeAdapter[Any] = TypeAdapter(ApprovalAction)


def parse_action(data: Mapping[str, Any]) -> ApprovalAction:
    """Validate raw input into a typed action; schema errors raise ``InvalidRequestError``."""
    try:
        return _ACTION_ADAPTER.validate_python(dict(data))
    except ValidationError as exc:
        raise InvalidRequestError(
            "Invalid admin action",
            code="invalid_action",
            details={
                "errors": [
                    {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
                    for err in exc.errors()
                ]
            },
        ) from exc


def build_action(
    action_type: str | ApprovalActionType,
    endpoint: str,
    method: str,
    target_ids: Sequence[str],
    payload: Mapping[str, Any] | None = None,
) -> ApprovalAction:
    action_value = (
        action_type.value if isinstance(action_type, ApprovalActionType) else action_type
    )
    return parse_action(
        {
            "action_type": action_value,
            "endpoint": endpoint,
            "method": method,
            "target_ids": list(target_ids),
            "payload": dict(payload or {}),
        }
    )
