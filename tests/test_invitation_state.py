from __future__ import annotations

from datetime import timedelta

import pytest

from contacthub.core.errors import InvalidTransitionError, TokenError
from contacthub.models import DeliveryMethod, Invitation, InvitationAction, InvitationStatus, InvitationType
from contacthub.services.invitation_state import InvitationStateMachine, can_transition


def make_invitation(clock, status: InvitationStatus = InvitationStatus.SENT) -> Invitation:
    now = clock()
    return Invitation(
        id=1,
        owner_id="owner-1",
        recipient_phone="5550101234",
        invitation_type=InvitationType.FRIEND,
        delivery_method=DeliveryMethod.SMS,
        invite_token="token",
        status=status,
        created_at=now,
        updated_at=now,
        expires_at=now + timedelta(days=7),
        resent_count=0,
    )


def test_terminal_states_allow_no_transitions() -> None:
    for terminal in (
        InvitationStatus.ACCEPTED,
        InvitationStatus.EXPIRED,
        InvitationStatus.CANCELLED,
        InvitationStatus.FAILED,
    ):
        assert not any(can_transition(terminal, target) for target in InvitationStatus)
    assert can_transition(InvitationStatus.PENDING, InvitationStatus.SENT)
    assert not can_transition(InvitationStatus.PENDING, InvitationStatus.ACCEPTED)


def test_accepting_a_sent_invitation_records_the_implicit_click(clock) -> None:
    machine = InvitationStateMachine(clock)
    invitation = make_invitation(clock)

    logs = machine.accept(invitation, {"user_id": "new-user"})

    assert [log.action for log in logs] == [InvitationAction.CLICKED, InvitationAction.ACCEPTED]
    assert invitation.status is InvitationStatus.ACCEPTED
    assert invitation.clicked_at == clock.now
    assert invitation.accepted_at == clock.now
    assert invitation.acceptance_data == {"user_id": "new-user"}


def test_token_cannot_be_used_twice(clock) -> None:
    machine = InvitationStateMachine(clock)
    invitation = make_invitation(clock)
    machine.accept(invitation)

    with pytest.raises(TokenError) as excinfo:
        machine.accept(invitation)

    assert excinfo.value.code == "TOKEN_ALREADY_USED"
    assert invitation.status is InvitationStatus.ACCEPTED


def test_expiry_is_reached_exactly_at_expires_at(clock) -> None:
    machine = InvitationStateMachine(clock)
    invitation = make_invitation(clock)

    clock.advance(days=7, seconds=-1)
    assert machine.expire_if_due(invitation) is None

    clock.advance(seconds=1)
    log = machine.expire_if_due(invitation)
    assert log is not None and log.action is InvitationAction.EXPIRED
    assert invitation.status is InvitationStatus.EXPIRED

    with pytest.raises(TokenError) as excinfo:
        machine.click(invitation)
    assert excinfo.value.code == "TOKEN_EXPIRED"
    assert excinfo.value.status_code == 410


def test_rejected_transition_leaves_invitation_untouched(clock) -> None:
    machine = InvitationStateMachine(clock)
    invitation = make_invitation(clock, InvitationStatus.ACCEPTED)

    with pytest.raises(InvalidTransitionError):
        machine.cancel(invitation)

    assert invitation.status is InvitationStatus.ACCEPTED
    assert invitation.cancelled_at is None


def test_repeat_click_is_logged_without_state_change(clock) -> None:
    machine = InvitationStateMachine(clock)
    invitation = make_invitation(clock)
    machine.click(invitation)
    first_click = invitation.clicked_at

    clock.advance(minutes=5)
    logs = machine.click(invitation)

    assert invitation.clicked_at == first_click
    assert logs[0].details["repeat"] is True


def test_resend_renews_expiry_of_failed_invitation(clock) -> None:
    machine = InvitationStateMachine(clock)
    invitation = make_invitation(clock, InvitationStatus.FAILED)
    clock.advance(days=10)

    logs = machine.reopen_for_resend(invitation, window_days=30, expires_in_days=7)
    assert logs[0].action is InvitationAction.RESENT
    assert invitation.resent_count == 1
    assert invitation.expires_at == clock.now + timedelta(days=7)

    revived = machine.mark_resent(invitation, delivered=True)
    assert invitation.status is InvitationStatus.SENT
    assert revived[0].details == {"resend": True, "from": "failed"}


def test_resend_outside_window_is_rejected(clock) -> None:
    machine = InvitationStateMachine(clock)
    invitation = make_invitation(clock, InvitationStatus.EXPIRED)
    clock.advance(days=31)

    with pytest.raises(InvalidTransitionError) as excinfo:
        machine.reopen_for_resend(invitation, window_days=30, expires_in_days=7)

    assert excinfo.value.code == "RESEND_WINDOW_EXPIRED"
    assert invitation.resent_count == 0
