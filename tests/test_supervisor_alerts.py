from datetime import timedelta

import pytest

from conftest import make_fix
from geofence import GPS_DENIED, LATE_SYNC, OUT_OF_RADIUS, POOR_ACCURACY, evaluate
from kv_store import SUPERVISOR_ALERTS, TIME_ENTRIES
from models import JobSite, TimeEntry, utcnow
from supervisor_alerts import AlertGenerator, AlertNotFoundError, alert_id_for

SITE = JobSite(id="site-1", name="Broadway Renovation", location={"lat": 36.1627, "lng": -86.7816}, radius=328.0)


def entry_for(fix, result):
    return TimeEntry(
        id="entry-1",
        worker_id="worker-1",
        worker_name="Sam Rivera",
        site_id=SITE.id,
        site_name=SITE.name,
        clock_in_at=utcnow(),
        accuracy=getattr(fix, "accuracy", None),
        distance=result.distance,
        within_radius=result.within_radius,
    )


def test_clean_accept_raises_nothing():
    fix = make_fix(0)
    result = evaluate(fix, SITE)
    assert AlertGenerator().on_verification_result(result, entry_for(fix, result)) == []


def test_out_of_radius_alert_carries_distance():
    fix = make_fix(500, accuracy=20)
    result = evaluate(fix, SITE)
    [alert] = AlertGenerator().on_verification_result(result, entry_for(fix, result))

    assert alert.type == OUT_OF_RADIUS
    assert alert.id == alert_id_for("entry-1", OUT_OF_RADIUS)
    assert alert.distance == pytest.approx(500, abs=0.5)
    assert alert.entry_id == "entry-1"
    assert alert.site_name == "Broadway Renovation"
    assert alert.acknowledged is False


def test_every_reason_gets_its_own_alert():
    fix = make_fix(900, accuracy=400)
    result = evaluate(fix, SITE)
    alerts = AlertGenerator().on_verification_result(result, entry_for(fix, result))

    assert [a.type for a in alerts] == [POOR_ACCURACY, OUT_OF_RADIUS]
    assert alerts[0].accuracy == 400


def test_denied_alert(denied):
    result = evaluate(denied, SITE)
    [alert] = AlertGenerator().on_verification_result(result, entry_for(denied, result))

    assert alert.type == GPS_DENIED
    assert alert.distance is None


def test_late_sync_threshold():
    generator = AlertGenerator(late_sync_threshold=timedelta(minutes=15))
    fix = make_fix(0)
    entry = entry_for(fix, evaluate(fix, SITE))
    captured = utcnow()

    assert generator.on_replay(entry, captured, captured + timedelta(minutes=15)) is None
    alert = generator.on_replay(entry, captured, captured + timedelta(minutes=42))
    assert alert.type == LATE_SYNC
    assert "42 min" in alert.detail


async def test_inbox_lists_newest_first_and_filters(clock, inbox):
    await clock.clock_in("worker-1", "site-1", make_fix(600))
    await clock.clock_in("worker-2", "site-1", make_fix(0, accuracy=900))

    alerts = await inbox.list()
    assert [a.type for a in alerts] == [POOR_ACCURACY, OUT_OF_RADIUS]
    assert [a.type for a in await inbox.list(alert_type=OUT_OF_RADIUS)] == [OUT_OF_RADIUS]
    assert await inbox.unread_count() == 2


async def test_acknowledge_is_idempotent(clock, inbox):
    result = await clock.clock_in("worker-1", "site-1", make_fix(600))
    alert_id = result.alerts[0].id

    first = await inbox.acknowledge(alert_id, "supervisor-1")
    second = await inbox.acknowledge(alert_id, "supervisor-2")

    assert first.acknowledged is True
    assert second.acknowledged_by == "supervisor-1"
    assert second.acknowledged_at == first.acknowledged_at
    assert await inbox.unread_count() == 0
    assert await inbox.list(unacknowledged_only=True) == []


async def test_acknowledge_leaves_time_entry_alone(clock, inbox, store):
    result = await clock.clock_in("worker-1", "site-1", make_fix(600))
    before = await store.get(TIME_ENTRIES, result.entry.id)

    await inbox.acknowledge(result.alerts[0].id, "supervisor-1")

    assert await store.get(TIME_ENTRIES, result.entry.id) == before


async def test_dismiss_removes_alert(clock, inbox, store):
    result = await clock.clock_in("worker-1", "site-1", make_fix(600))
    alert_id = result.alerts[0].id

    await inbox.dismiss(alert_id)

    assert await store.get(SUPERVISOR_ALERTS, alert_id) is None
    assert (await clock.get_entry(result.entry.id)).status == "flagged"
    with pytest.raises(AlertNotFoundError):
        await inbox.dismiss(alert_id)


async def test_acknowledge_unknown_alert(inbox):
    with pytest.raises(AlertNotFoundError):
        await inbox.acknowledge("alert-missing", "supervisor-1")


async def test_subscribe_pushes_alert_feed(clock, inbox):
    seen = []
    unsubscribe = inbox.subscribe(seen.append)

    await clock.clock_in("worker-1", "site-1", make_fix(600))
    unsubscribe()
    await clock.clock_in("worker-2", "site-1", make_fix(600))

    assert seen[0] == []
    assert [a.type for a in seen[-1]] == [OUT_OF_RADIUS]
