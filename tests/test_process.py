import pytest

from labsim.common import SimulationError
from labsim.core import (
    Event,
    Process,
    ProcessStatus,
    SimContext,
    Simulator,
)
from labsim.resource import AdmissionPolicy, DepletableResource, Resource


def _run_next(ctx: SimContext) -> Event:
    event = ctx.get_event()
    ctx.advance_simtime(event.time)
    event.run()
    return event


def test_process_lifecycle():
    ctx = SimContext()

    def coro():
        yield proc.hold(1)

    proc = Process(ctx, coro())
    assert proc.status == ProcessStatus.CREATED
    assert proc.name == f"Process_{proc.proc_id}"

    proc.start()
    assert proc.status == ProcessStatus.SCHEDULED

    _run_next(ctx)
    assert proc.status == ProcessStatus.SUSPENDED_HOLD
    assert proc.pending is not None
    assert proc.pending.time == 1

    _run_next(ctx)
    assert proc.status == ProcessStatus.TERMINATED
    assert not proc.is_alive
    assert ctx.now == 1


def test_process_resume_wrong_event_raises():
    ctx = SimContext()

    def coro():
        yield proc.hold(1)

    proc = Process(ctx, coro())
    proc.start()
    _run_next(ctx)

    stray = Event(ctx, time=1)
    stray.schedule()
    with pytest.raises(SimulationError, match="Wrong"):
        proc.resume(stray)


def test_process_yielding_non_event_raises():
    ctx = SimContext()
    sim = Simulator(ctx)

    def coro():
        yield 5

    Process(ctx, coro())
    with pytest.raises(SimulationError, match="instead of an event"):
        sim.run()


def test_process_hold_negative_raises():
    ctx = SimContext()
    sim = Simulator(ctx)

    def coro():
        yield proc.hold(-1)

    proc = Process(ctx, coro())
    with pytest.raises(SimulationError, match="Negative delay"):
        sim.run()


def test_process_passivate_and_activate_at():
    ctx = SimContext()
    sim = Simulator(ctx)
    resumed_at = []

    def sleeper():
        yield sleeper_proc.passivate()
        resumed_at.append(ctx.now)

    def waker():
        yield waker_proc.hold(2)
        assert sleeper_proc.is_passive
        assert sleeper_proc.pending is None
        assert sleeper_proc.activate(at=5)

    sleeper_proc = Process(ctx, sleeper())
    waker_proc = Process(ctx, waker())
    sim.run()

    assert resumed_at == [5]
    assert sleeper_proc.status == ProcessStatus.TERMINATED


def test_process_activate_is_idempotent():
    """
    A process never has more than one resumption entry in the timeline.
    """
    ctx = SimContext()

    def coro():
        yield proc.passivate()

    proc = Process(ctx, coro())
    assert proc.activate()
    assert not proc.activate()
    assert not proc.activate(at=10)
    assert len(ctx.pending_events(proc)) == 1


def test_process_activate_holding_is_noop():
    ctx = SimContext()
    sim = Simulator(ctx)
    resumed_at = []

    def holder():
        yield holder_proc.hold(10)
        resumed_at.append(ctx.now)

    def poker():
        yield poker_proc.hold(3)
        assert not holder_proc.activate()

    holder_proc = Process(ctx, holder())
    poker_proc = Process(ctx, poker())
    sim.run()

    assert resumed_at == [10]


def test_process_activate_terminated_is_noop():
    ctx = SimContext()
    sim = Simulator(ctx)

    def coro():
        yield proc.hold(1)

    proc = Process(ctx, coro())
    sim.run()

    assert proc.status == ProcessStatus.TERMINATED
    assert not proc.activate()
    assert ctx.pending_events() == []


def test_process_cancel_drops_pending_resumption():
    ctx = SimContext()
    sim = Simulator(ctx)
    trace = []

    def victim():
        yield victim_proc.hold(10)
        trace.append("resumed")

    def killer():
        yield killer_proc.hold(1)
        victim_proc.cancel()

    victim_proc = Process(ctx, victim())
    killer_proc = Process(ctx, killer())
    sim.run()

    assert trace == []
    assert victim_proc.status == ProcessStatus.CANCELLED
    assert ctx.now == 1


def test_process_cancel_withdraws_waiting_request():
    ctx = SimContext()
    sim = Simulator(ctx)
    resource = Resource(ctx, capacity=1)

    def owner():
        yield owner_proc.request(resource)
        yield owner_proc.hold(10)
        resource.release()

    def waiter():
        yield waiter_proc.request(resource)

    def killer():
        yield killer_proc.hold(1)
        assert len(resource.waiting) == 1
        waiter_proc.cancel()
        assert resource.waiting == []

    owner_proc = Process(ctx, owner())
    waiter_proc = Process(ctx, waiter())
    killer_proc = Process(ctx, killer())
    sim.run()

    assert waiter_proc.status == ProcessStatus.CANCELLED
    assert resource.claimed == 0
    assert resource.claimed_by(waiter_proc) == 0


def test_process_interrupt_waiting_request():
    """
    Activating a process that waits on a request withdraws the request and
    resumes the process now with `failed` set.
    """
    ctx = SimContext()
    sim = Simulator(ctx)
    resource = Resource(ctx, capacity=1)
    outcome = {}

    def owner():
        yield owner_proc.request(resource)
        yield owner_proc.hold(10)
        resource.release()

    def waiter():
        granted = yield waiter_proc.request(resource)
        outcome["granted"] = granted
        outcome["failed"] = waiter_proc.failed
        outcome["time"] = ctx.now

    def interrupter():
        yield interrupter_proc.hold(4)
        assert waiter_proc.status == ProcessStatus.SUSPENDED_REQUEST
        assert waiter_proc.activate()

    owner_proc = Process(ctx, owner())
    waiter_proc = Process(ctx, waiter())
    interrupter_proc = Process(ctx, interrupter())
    sim.run()

    assert outcome == {"granted": False, "failed": True, "time": 4}
    assert resource.waiting == []
    assert resource.claimed == 0


def test_process_failed_reflects_latest_suspension_point():
    ctx = SimContext()
    sim = Simulator(ctx)
    bottle = DepletableResource(ctx, capacity=10, level=1)
    flags = []

    def coro():
        yield proc.take(bottle, 5, AdmissionPolicy.FAIL)
        flags.append(proc.failed)
        yield proc.hold(1)
        flags.append(proc.failed)

    proc = Process(ctx, coro())
    sim.run()

    assert flags == [True, False]
    assert bottle.level == 1


def test_process_body_runs_atomically_between_suspension_points():
    ctx = SimContext()
    sim = Simulator(ctx)
    log = []

    def make(tag):
        def coro():
            log.append((tag, "a"))
            yield ctx.active_process.hold(1)
            log.append((tag, "b"))
            log.append((tag, "c"))

        return coro()

    Process(ctx, make("p1"))
    Process(ctx, make("p2"))
    sim.run()

    assert log == [
        ("p1", "a"),
        ("p2", "a"),
        ("p1", "b"),
        ("p1", "c"),
        ("p2", "b"),
        ("p2", "c"),
    ]


def test_schedule_at_activates_passive_process():
    ctx = SimContext()
    sim = Simulator(ctx)
    resumed_at = []

    def coro():
        yield proc.passivate()
        resumed_at.append(ctx.now)

    proc = Process(ctx, coro())
    sim.run()
    assert proc.is_passive

    assert ctx.schedule_at(7, 10, proc)
    sim.run()
    assert resumed_at == [7]
