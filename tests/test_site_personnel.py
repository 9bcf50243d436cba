import random

from conftest import make_fix
from site_personnel import ActiveSessionAggregator, load_site_personnel


async def test_aggregator_groups_live_sessions_by_site(clock, store):
    aggregator = ActiveSessionAggregator(store)
    aggregator.start()
    assert aggregator.total_count == 0

    await clock.clock_in("worker-1", "site-1", make_fix(0))
    await clock.clock_in("worker-2", "site-1", make_fix(0))
    await clock.clock_in("worker-3", "site-2", make_fix(0))

    assert aggregator.count("site-1") == 2
    assert aggregator.count("site-2") == 1
    assert aggregator.total_count == 3
    # Newest clock-in first
    assert [s.worker_id for s in aggregator.personnel("site-1")] == ["worker-2", "worker-1"]

    await clock.clock_out("worker-1")
    assert [s.worker_id for s in aggregator.personnel("site-1")] == ["worker-2"]
    aggregator.stop()


async def test_flagged_clock_ins_are_counted_as_on_site(clock, store):
    aggregator = ActiveSessionAggregator(store)
    aggregator.start()

    await clock.clock_in("worker-1", "site-1", make_fix(5000))

    assert aggregator.count("site-1") == 1
    aggregator.stop()


async def test_aggregate_always_equals_active_sessions(clock, store):
    aggregator = ActiveSessionAggregator(store)
    aggregator.start()
    rng = random.Random(7)
    workers = ["worker-1", "worker-2", "worker-3"]

    for _ in range(40):
        worker_id = rng.choice(workers)
        if await clock.get_active_session(worker_id):
            if rng.random() < 0.5:
                await clock.clock_out(worker_id)
            else:
                await clock.force_clock_out(worker_id, performed_by="supervisor-1")
        else:
            await clock.clock_in(worker_id, rng.choice(["site-1", "site-2"]), make_fix(rng.uniform(0, 800)))

        sessions = await store.all("active_sessions")
        assert aggregator.total_count == len(sessions)
        for site_id in ("site-1", "site-2"):
            expected = sorted(w for w, s in sessions.items() if s["site_id"] == site_id)
            assert sorted(s.worker_id for s in aggregator.personnel(site_id)) == expected
            mirror = await load_site_personnel(store, site_id)
            assert sorted(p.worker_id for p in mirror) == expected

    aggregator.stop()


async def test_listener_receives_current_state_and_updates(clock, store):
    aggregator = ActiveSessionAggregator(store)
    aggregator.start()
    seen = []
    remove = aggregator.add_listener(lambda by_site: seen.append({k: len(v) for k, v in by_site.items()}))

    await clock.clock_in("worker-1", "site-2", make_fix(0))
    remove()
    await clock.clock_out("worker-1")

    assert seen == [{}, {"site-2": 1}]
    assert aggregator.by_site == {}
    aggregator.stop()


async def test_stopped_aggregator_no_longer_updates(clock, store):
    aggregator = ActiveSessionAggregator(store)
    aggregator.start()
    aggregator.stop()

    await clock.clock_in("worker-1", "site-1", make_fix(0))
    assert aggregator.total_count == 0


async def test_site_personnel_mirror_carries_entry_reference(clock, store):
    result = await clock.clock_in("worker-2", "site-1", make_fix(0))

    [person] = await load_site_personnel(store, "site-1")
    assert person.entry_id == result.entry.id
    assert person.worker_name == "Alex Chen"
    assert await load_site_personnel(store, "site-2") == []
