"""
Tests for the Intervention Tracker.

Covers:
- Recording interventions with and without an alert link
- Cross-member / cross-box alert links are rejected
- Follow-up completion is a one-shot compare-and-swap
- Pending follow-up listing
"""

import uuid
from datetime import timedelta

import pytest
from pydantic import ValidationError

from boxpulse.db.compat import utcnow
from boxpulse.errors import CrossEntityMismatchError, InvalidTransitionError, NotFoundError
from boxpulse.interventions.schemas import InterventionCreate, InterventionType
from boxpulse.interventions.tracker import InterventionTracker
from tests.helpers import add_alert


@pytest.fixture
def tracker():
    return InterventionTracker()


@pytest.mark.asyncio
async def test_record_intervention(db, athlete, coach, tracker):
    intervention = await tracker.record(
        db,
        box_id=athlete.box_id,
        membership_id=athlete.id,
        coach_id=coach.id,
        intervention_type=InterventionType.PHONE_CALL,
        description="Called about missed classes",
    )
    assert intervention.id is not None
    assert intervention.title == "Phone Call"
    assert intervention.alert_id is None
    assert intervention.follow_up_completed is False
    assert intervention.intervention_date is not None


@pytest.mark.asyncio
async def test_record_linked_to_own_alert(db, athlete, coach, tracker):
    alert = await add_alert(db, athlete)
    intervention = await tracker.record(
        db,
        box_id=athlete.box_id,
        membership_id=athlete.id,
        coach_id=coach.id,
        intervention_type=InterventionType.IN_PERSON_CHAT,
        description="Chat after class",
        alert_id=alert.id,
        title="Post-WOD chat",
    )
    assert intervention.alert_id == alert.id
    assert intervention.title == "Post-WOD chat"


@pytest.mark.asyncio
async def test_alert_of_another_member_rejected(db, athlete, second_athlete, coach, tracker):
    alert = await add_alert(db, second_athlete)
    with pytest.raises(CrossEntityMismatchError) as exc:
        await tracker.record(
            db,
            box_id=athlete.box_id,
            membership_id=athlete.id,
            coach_id=coach.id,
            intervention_type=InterventionType.CHECK_IN_MESSAGE,
            description="Wrong member",
            alert_id=alert.id,
        )
    assert exc.value.status_code == 422


@pytest.mark.asyncio
async def test_unknown_alert_not_found(db, athlete, coach, tracker):
    with pytest.raises(NotFoundError):
        await tracker.record(
            db,
            box_id=athlete.box_id,
            membership_id=athlete.id,
            coach_id=coach.id,
            intervention_type=InterventionType.OTHER,
            description="x",
            alert_id=uuid.uuid4(),
        )


@pytest.mark.asyncio
async def test_member_from_other_box_not_found(db, athlete, other_box_coach, tracker):
    with pytest.raises(NotFoundError):
        await tracker.record(
            db,
            box_id=other_box_coach.box_id,
            membership_id=athlete.id,
            coach_id=other_box_coach.id,
            intervention_type=InterventionType.OTHER,
            description="x",
        )


@pytest.mark.asyncio
async def test_athlete_cannot_record(db, athlete, second_athlete, tracker):
    with pytest.raises(NotFoundError):
        await tracker.record(
            db,
            box_id=athlete.box_id,
            membership_id=athlete.id,
            coach_id=second_athlete.id,
            intervention_type=InterventionType.OTHER,
            description="x",
        )


# ── Follow-ups ─────────────────────────────────────────────────────────


async def _with_follow_up(db, tracker, athlete, coach, days: int):
    return await tracker.record(
        db,
        box_id=athlete.box_id,
        membership_id=athlete.id,
        coach_id=coach.id,
        intervention_type=InterventionType.GOAL_SETTING,
        description="Set a 6-week squat goal",
        follow_up_required=True,
        follow_up_at=utcnow() + timedelta(days=days),
    )


@pytest.mark.asyncio
async def test_complete_follow_up_once(db, athlete, coach, tracker):
    intervention = await _with_follow_up(db, tracker, athlete, coach, days=3)

    done = await tracker.complete_follow_up(db, athlete.box_id, intervention.id)
    assert done.follow_up_completed is True
    assert done.follow_up_completed_at is not None

    with pytest.raises(InvalidTransitionError):
        await tracker.complete_follow_up(db, athlete.box_id, intervention.id)


@pytest.mark.asyncio
async def test_complete_without_follow_up_conflicts(db, athlete, coach, tracker):
    intervention = await tracker.record(
        db,
        box_id=athlete.box_id,
        membership_id=athlete.id,
        coach_id=coach.id,
        intervention_type=InterventionType.SOCIAL_INVITE,
        description="Invited to Saturday partner WOD",
    )
    with pytest.raises(InvalidTransitionError):
        await tracker.complete_follow_up(db, athlete.box_id, intervention.id)


@pytest.mark.asyncio
async def test_pending_follow_ups(db, athlete, coach, second_coach, tracker):
    later = await _with_follow_up(db, tracker, athlete, coach, days=5)
    sooner = await _with_follow_up(db, tracker, athlete, coach, days=1)
    done = await _with_follow_up(db, tracker, athlete, coach, days=2)
    await tracker.complete_follow_up(db, athlete.box_id, done.id)

    pending = await tracker.pending_follow_ups(db, athlete.box_id, coach.id)
    assert [i.id for i in pending] == [sooner.id, later.id]
    assert await tracker.pending_follow_ups(db, athlete.box_id, second_coach.id) == []

    due = await tracker.pending_follow_ups(
        db, athlete.box_id, coach.id, due_before=utcnow() + timedelta(days=2)
    )
    assert [i.id for i in due] == [sooner.id]


@pytest.mark.asyncio
async def test_list_for_member_newest_first(db, athlete, coach, tracker):
    now = utcnow()
    for days in (10, 3, 6):
        await tracker.record(
            db,
            box_id=athlete.box_id,
            membership_id=athlete.id,
            coach_id=coach.id,
            intervention_type=InterventionType.CHECK_IN_MESSAGE,
            description=f"Check-in {days} days ago",
            intervention_at=now - timedelta(days=days),
        )
    rows = await tracker.list_for_member(db, athlete.box_id, athlete.id)
    dates = [i.intervention_date for i in rows]
    assert dates == sorted(dates, reverse=True)


def test_follow_up_date_requires_flag():
    with pytest.raises(ValidationError):
        InterventionCreate(
            membership_id="m",
            intervention_type="phone_call",
            title="Call",
            description="x",
            follow_up_at=utcnow(),
        )
