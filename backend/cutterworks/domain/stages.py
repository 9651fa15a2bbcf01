"""Order stage graph.

Pure data plus lookups: which stage an actor of a given role may request
next, and which gates must hold before the order may enter it. Nothing here
knows about a particular order instance.
"""
from enum import Enum
from typing import Dict, FrozenSet, Tuple


class Stage(str, Enum):
    DRAFT = "Draft"
    SUBMITTED = "Submitted"
    UNDER_REVIEW = "Under Review"
    REQUIRES_APPROVAL = "Requires Approval"
    REQUESTED_CHANGES = "Requested Changes"
    READY_TO_PRINT = "Ready to Print"
    PRINTING = "Printing"
    COMPLETED = "Completed"
    DELIVERED = "Delivered"


class Role(str, Enum):
    ADMIN = "admin"
    BAKER = "baker"


class TransitionGate(str, Enum):
    PRICE = "price"
    INSPIRATION_IMAGES = "inspiration_images"
    CONFIRMATION = "confirmation"
    COMPLETION_CONFIRMED = "completion_confirmed"


# Declared total order used for progress reporting. Requested Changes is a
# side stage; it sits after the stage that sends orders into it.
STAGE_SEQUENCE: Tuple[Stage, ...] = (
    Stage.DRAFT,
    Stage.SUBMITTED,
    Stage.UNDER_REVIEW,
    Stage.REQUIRES_APPROVAL,
    Stage.REQUESTED_CHANGES,
    Stage.READY_TO_PRINT,
    Stage.PRINTING,
    Stage.COMPLETED,
    Stage.DELIVERED,
)

# Stages in which the owning baker may edit items and images.
BAKER_EDITABLE_STAGES: FrozenSet[Stage] = frozenset({Stage.DRAFT, Stage.REQUESTED_CHANGES})

# Stages in which completion details (collection/payment) are captured.
COMPLETION_STAGES: FrozenSet[Stage] = frozenset({Stage.COMPLETED, Stage.DELIVERED})

BAKER_TRANSITIONS: Dict[Stage, Tuple[Stage, ...]] = {
    Stage.DRAFT: (Stage.SUBMITTED,),
    Stage.REQUIRES_APPROVAL: (Stage.REQUESTED_CHANGES, Stage.READY_TO_PRINT),
    Stage.REQUESTED_CHANGES: (Stage.SUBMITTED,),
}

ADMIN_TRANSITIONS: Dict[Stage, Tuple[Stage, ...]] = {
    Stage.DRAFT: (Stage.SUBMITTED, Stage.UNDER_REVIEW),
    Stage.SUBMITTED: (Stage.DRAFT, Stage.UNDER_REVIEW),
    Stage.UNDER_REVIEW: (Stage.SUBMITTED, Stage.REQUIRES_APPROVAL, Stage.REQUESTED_CHANGES),
    Stage.REQUIRES_APPROVAL: (Stage.UNDER_REVIEW, Stage.REQUESTED_CHANGES, Stage.READY_TO_PRINT),
    Stage.REQUESTED_CHANGES: (Stage.UNDER_REVIEW, Stage.REQUIRES_APPROVAL),
    Stage.READY_TO_PRINT: (Stage.REQUIRES_APPROVAL, Stage.PRINTING),
    Stage.PRINTING: (Stage.READY_TO_PRINT, Stage.COMPLETED),
    Stage.COMPLETED: (Stage.PRINTING, Stage.DELIVERED),
    Stage.DELIVERED: (Stage.COMPLETED,),
}

_TRANSITIONS: Dict[Role, Dict[Stage, Tuple[Stage, ...]]] = {
    Role.ADMIN: ADMIN_TRANSITIONS,
    Role.BAKER: BAKER_TRANSITIONS,
}

# Gates keyed by (target stage, role). A gate applies only to the role that
# requests the move into the stage.
_GATES: Dict[Tuple[Stage, Role], FrozenSet[TransitionGate]] = {
    (Stage.SUBMITTED, Role.BAKER): frozenset({TransitionGate.INSPIRATION_IMAGES}),
    (Stage.REQUIRES_APPROVAL, Role.ADMIN): frozenset({TransitionGate.PRICE}),
    (Stage.READY_TO_PRINT, Role.BAKER): frozenset({TransitionGate.CONFIRMATION}),
    (Stage.DELIVERED, Role.ADMIN): frozenset({TransitionGate.COMPLETION_CONFIRMED}),
}


def allowed_next_stages(stage: Stage, role: Role) -> Tuple[Stage, ...]:
    """Stages `role` may request from `stage`, in declared sequence order."""
    targets = _TRANSITIONS.get(Role(role), {}).get(Stage(stage), ())
    return tuple(s for s in STAGE_SEQUENCE if s in targets)


def is_allowed(stage: Stage, role: Role, target: Stage) -> bool:
    return Stage(target) in allowed_next_stages(stage, role)


def gates_for(target: Stage, role: Role) -> FrozenSet[TransitionGate]:
    return _GATES.get((Stage(target), Role(role)), frozenset())


def stage_progress(stage: Stage) -> Tuple[int, int]:
    """Return (position, total) of `stage` in the declared sequence, 1-based."""
    return STAGE_SEQUENCE.index(Stage(stage)) + 1, len(STAGE_SEQUENCE)
