from reviewdesk.models.base import RDBaseModel
from reviewdesk.models.requests import (
    ActionRequest,
    ActorModel,
    CollaboratorRequest,
    NavigateRequest,
    OpenSessionRequest,
    ScopeModel,
    SendCommentRequest,
    SwitchRequest,
    VisibleCommentsRequest,
)

__all__ = [
    "ActionRequest",
    "ActorModel",
    "CollaboratorRequest",
    "NavigateRequest",
    "OpenSessionRequest",
    "RDBaseModel",
    "ScopeModel",
    "SendCommentRequest",
    "SwitchRequest",
    "VisibleCommentsRequest",
]
