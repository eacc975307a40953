"""Request bodies for the review HTTP surface."""
from typing import Any, Dict, List, Optional

from pydantic import Field, field_validator

from reviewdesk.core.models import Action, EntityKind, Role
from reviewdesk.models.base import RDBaseModel


class ScopeModel(RDBaseModel):
    entity_id: str = Field(..., min_length=1)
    agency_id: Optional[str] = None
    entity_ids: List[str] = Field(default_factory=list)


class ActorModel(RDBaseModel):
    user_id: str = Field(..., min_length=1)
    role: Role


class OpenSessionRequest(RDBaseModel):
    kind: EntityKind
    entity_id: str = Field(..., min_length=1)
    actor: ActorModel
    scope: ScopeModel
    initial: Optional[Dict[str, Any]] = None


class ActionRequest(RDBaseModel):
    action: Action
    remarks: Optional[str] = None
    extra: Dict[str, Any] = Field(default_factory=dict)
    follow: bool = False

    @field_validator("extra")
    @classmethod
    def extra_cannot_set_status(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        if "status" in value:
            raise ValueError("status is derived from the action")
        return value


class NavigateRequest(RDBaseModel):
    step: int = Field(..., ge=-1, le=1)


class SwitchRequest(RDBaseModel):
    entity_id: str = Field(..., min_length=1)
    kind: Optional[EntityKind] = None


class SendCommentRequest(RDBaseModel):
    message: str = ""


class VisibleCommentsRequest(RDBaseModel):
    comment_ids: List[str] = Field(default_factory=list)


class CollaboratorRequest(RDBaseModel):
    user_id: Optional[str] = None
