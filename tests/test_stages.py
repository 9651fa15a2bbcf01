import pytest

from cutterworks.domain.stages import (
    ADMIN_TRANSITIONS,
    BAKER_TRANSITIONS,
    STAGE_SEQUENCE,
    Role,
    Stage,
    TransitionGate,
    allowed_next_stages,
    gates_for,
    is_allowed,
    stage_progress,
)


def test_sequence_declares_every_stage_once():
    assert len(STAGE_SEQUENCE) == len(set(STAGE_SEQUENCE)) == len(Stage)
    assert STAGE_SEQUENCE[0] == Stage.DRAFT
    assert STAGE_SEQUENCE[-1] == Stage.DELIVERED


def test_baker_can_only_submit_from_draft():
    assert allowed_next_stages(Stage.DRAFT, Role.BAKER) == (Stage.SUBMITTED,)


@pytest.mark.parametrize("stage", [Stage.SUBMITTED, Stage.UNDER_REVIEW, Stage.READY_TO_PRINT, Stage.PRINTING, Stage.COMPLETED])
def test_baker_has_no_moves_while_admin_owns_the_order(stage):
    assert allowed_next_stages(stage, Role.BAKER) == ()


def test_baker_approves_or_requests_changes():
    assert allowed_next_stages(Stage.REQUIRES_APPROVAL, Role.BAKER) == (
        Stage.REQUESTED_CHANGES,
        Stage.READY_TO_PRINT,
    )
    assert allowed_next_stages(Stage.REQUESTED_CHANGES, Role.BAKER) == (Stage.SUBMITTED,)


def test_admin_moves_follow_declared_order():
    for stage, targets in ADMIN_TRANSITIONS.items():
        allowed = allowed_next_stages(stage, Role.ADMIN)
        assert set(allowed) == set(targets)
        positions = [STAGE_SEQUENCE.index(s) for s in allowed]
        assert positions == sorted(positions)


def test_no_transition_targets_its_own_stage():
    for table in (ADMIN_TRANSITIONS, BAKER_TRANSITIONS):
        for stage, targets in table.items():
            assert stage not in targets


def test_is_allowed_accepts_plain_strings():
    assert is_allowed("Printing", "admin", "Completed")
    assert not is_allowed("Printing", "baker", "Completed")


def test_gates():
    assert gates_for(Stage.REQUIRES_APPROVAL, Role.ADMIN) == {TransitionGate.PRICE}
    assert gates_for(Stage.SUBMITTED, Role.BAKER) == {TransitionGate.INSPIRATION_IMAGES}
    assert gates_for(Stage.SUBMITTED, Role.ADMIN) == frozenset()
    assert gates_for(Stage.READY_TO_PRINT, Role.BAKER) == {TransitionGate.CONFIRMATION}
    assert gates_for(Stage.DELIVERED, Role.ADMIN) == {TransitionGate.COMPLETION_CONFIRMED}


def test_stage_progress():
    assert stage_progress(Stage.DRAFT) == (1, len(STAGE_SEQUENCE))
    assert stage_progress(Stage.COMPLETED) == (STAGE_SEQUENCE.index(Stage.COMPLETED) + 1, len(STAGE_SEQUENCE))
