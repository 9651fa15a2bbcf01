from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, Optional

from cutterworks.domain.stages import BAKER_EDITABLE_STAGES, COMPLETION_STAGES, Role, Stage


class Capability(str, Enum):
    VIEW_ORDER = "view_order"
    EDIT_ORDER = "edit_order"
    DELETE_ORDER = "delete_order"
    CHANGE_STAGE = "change_stage"
    ADD_ITEM = "add_item"
    EDIT_ITEM = "edit_item"
    DELETE_ITEM = "delete_item"
    UPLOAD_INSPIRATION = "upload_inspiration"
    DELETE_INSPIRATION = "delete_inspiration"
    UPLOAD_PREVIEW = "upload_preview"
    DELETE_PREVIEW = "delete_preview"
    UPLOAD_STL = "upload_stl"
    DELETE_STL = "delete_stl"
    SET_COMPLETION = "set_completion"
    CONFIRM_COMPLETION = "confirm_completion"
    REQUEST_UPDATE = "request_update"
    RESOLVE_UPDATE = "resolve_update"


@dataclass(frozen=True)
class Actor:
    """Authenticated caller as handed to us by the identity layer."""

    user_id: str
    role: Role
    email: str = ""
    baker_id: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "role", Role(self.role))

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    def owns(self, baker_id: str) -> bool:
        return self.role == Role.BAKER and self.baker_id is not None and self.baker_id == baker_id


_ADMIN = frozenset(Capability) - {
    Capability.SET_COMPLETION,
    Capability.CONFIRM_COMPLETION,
    Capability.REQUEST_UPDATE,
}

_OWNER_ALWAYS = frozenset({Capability.VIEW_ORDER, Capability.CHANGE_STAGE})

_OWNER_EDITABLE = frozenset({
    Capability.EDIT_ORDER,
    Capability.DELETE_ORDER,
    Capability.ADD_ITEM,
    Capability.EDIT_ITEM,
    Capability.DELETE_ITEM,
    Capability.UPLOAD_INSPIRATION,
    Capability.DELETE_INSPIRATION,
    Capability.DELETE_STL,
})

_OWNER_COMPLETION = frozenset({
    Capability.SET_COMPLETION,
    Capability.CONFIRM_COMPLETION,
    Capability.REQUEST_UPDATE,
})

# Which capability guards adding/removing each kind of file.
UPLOAD_CAPABILITY = {
    "inspiration": Capability.UPLOAD_INSPIRATION,
    "preview": Capability.UPLOAD_PREVIEW,
    "stl": Capability.UPLOAD_STL,
}
DELETE_CAPABILITY = {
    "inspiration": Capability.DELETE_INSPIRATION,
    "preview": Capability.DELETE_PREVIEW,
    "stl": Capability.DELETE_STL,
}


def capabilities_for(actor: Actor, owner_baker_id: str, stage: Stage) -> FrozenSet[Capability]:
    """Capability set for `actor` on an order owned by `owner_baker_id` in `stage`.

    Evaluated from role, ownership and stage only; sub-workflow state such as
    a confirmed completion lock is checked by the aggregate itself.
    """
    if actor.is_admin:
        return _ADMIN
    if not actor.owns(owner_baker_id):
        return frozenset()

    caps = set(_OWNER_ALWAYS)
    stage = Stage(stage)
    if stage in BAKER_EDITABLE_STAGES:
        caps |= _OWNER_EDITABLE
    if stage in COMPLETION_STAGES:
        caps |= _OWNER_COMPLETION
    return frozenset(caps)
