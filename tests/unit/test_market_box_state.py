from datetime import datetime, timedelta, timezone

import pytest

from marketplace.market_boxes import state
from marketplace.errors import PickupTransitionError

NOW = datetime(2026, 10, 18, 15, 0, tzinfo=timezone.utc)

def _pickup(**overrides):
    row = {
        "id": "p1",
        "status": "ready",
        "scheduled_date": "2026-10-18",
        "ready_at": None,
        "vendor_confirmed_at": None,
        "buyer_confirmed_at": None,
        "confirmation_window_expires_at": None,
        "is_extension": False,
    }
    row.update(overrides)
    return row

def _apply(pickup, updates):
    return {**pickup, **updates}

def test_first_confirmation_opens_window_without_completing():
    updates, response = state.confirm(_pickup(), state.VENDOR, NOW)
    assert response == {"waitingForBuyer": True}
    assert "status" not in updates
    assert updates["vendor_confirmed_at"] == NOW.isoformat()
    assert updates["confirmation_window_expires_at"] == (NOW + timedelta(seconds=30)).isoformat()

@pytest.mark.parametrize("first,second", [(state.VENDOR, state.BUYER), (state.BUYER, state.VENDOR)])
def test_both_parties_within_window_complete_pickup(first, second):
    pickup = _apply(_pickup(), state.confirm(_pickup(), first, NOW)[0])
    updates, response = state.confirm(pickup, second, NOW + timedelta(seconds=20))
    done = _apply(pickup, updates)
    assert response == {"completed": True}
    assert done["status"] == state.PICKED_UP
    assert done["vendor_confirmed_at"] and done["buyer_confirmed_at"]
    assert done["picked_up_at"]

def test_lapsed_window_keeps_pickup_open_and_restarts():
    pickup = _apply(_pickup(), state.confirm(_pickup(), state.VENDOR, NOW)[0])
    later = NOW + timedelta(seconds=31)
    assert state.confirmation_status(pickup, later) == "expired"

    updates, response = state.confirm(pickup, state.BUYER, later)
    reopened = _apply(pickup, updates)
    assert response == {"waitingForVendor": True}
    assert reopened["status"] == "ready"
    assert reopened["vendor_confirmed_at"] is None
    assert state.confirmation_status(reopened, later) == "awaiting"

def test_confirmation_status_values():
    assert state.confirmation_status(_pickup(), NOW) == "awaiting"
    assert state.confirmation_status(_pickup(status="picked_up"), NOW) == "completed"

def test_cannot_confirm_twice_after_completion():
    with pytest.raises(PickupTransitionError) as out:
        state.confirm(_pickup(status="picked_up"), state.BUYER, NOW)
    assert out.value.code == "ALREADY_CONFIRMED"

def test_ready_only_from_scheduled():
    updates, _ = state.vendor_action(_pickup(status="scheduled"), "ready", NOW)
    assert updates["status"] == "ready"
    with pytest.raises(PickupTransitionError):
        state.vendor_action(_pickup(status="ready"), "ready", NOW)

def test_missed_requires_past_date():
    with pytest.raises(PickupTransitionError) as out:
        state.vendor_action(_pickup(scheduled_date="2026-10-18"), "missed", NOW)
    assert out.value.code == "PICKUP_NOT_PAST"
    updates, _ = state.vendor_action(_pickup(scheduled_date="2026-10-11"), "missed", NOW)
    assert updates["status"] == "missed"

def test_reschedule_only_after_miss_and_needs_date():
    with pytest.raises(PickupTransitionError):
        state.vendor_action(_pickup(status="ready"), "reschedule", NOW, reschedule_to="2026-10-25")
    with pytest.raises(PickupTransitionError) as out:
        state.vendor_action(_pickup(status="missed"), "reschedule", NOW)
    assert out.value.code == "RESCHEDULE_DATE_REQUIRED"
    updates, _ = state.vendor_action(_pickup(status="missed"), "reschedule", NOW, reschedule_to="2026-10-25")
    assert updates == {"status": "rescheduled", "rescheduled_to": "2026-10-25"}

def test_unknown_action():
    with pytest.raises(PickupTransitionError) as out:
        state.vendor_action(_pickup(), "teleport", NOW)
    assert out.value.code == "INVALID_ACTION"

def test_notes_only_update():
    updates, response = state.vendor_action(_pickup(), None, NOW, vendor_notes="Extra eggs this week")
    assert updates == {"vendor_notes": "Extra eggs this week"}
    assert response == {}

def test_skip_rules():
    state.ensure_skippable(_pickup(status="scheduled"))
    with pytest.raises(PickupTransitionError):
        state.ensure_skippable(_pickup(status="picked_up"))
    with pytest.raises(PickupTransitionError) as out:
        state.ensure_skippable(_pickup(is_extension=True))
    assert out.value.code == "EXTENSION_NOT_SKIPPABLE"
