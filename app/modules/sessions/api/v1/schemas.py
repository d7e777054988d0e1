from typing import List

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from app.modules.sessions.domain.records import SessionView


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class OpenSessionResponse(_CamelModel):
    session_id: str
    is_new_device: bool
    session: SessionView


class StepUpResponse(_CamelModel):
    session_id: str
    session: SessionView


class SessionListResponse(_CamelModel):
    sessions: List[SessionView]
    current_session_id: str


class TerminateSessionRequest(_CamelModel):
    session_id: str = Field(..., min_length=8, max_length=128)


class TerminateSessionResponse(_CamelModel):
    success: bool
    session_id: str


class TerminateOthersResponse(_CamelModel):
    success: bool
    terminated_count: int
