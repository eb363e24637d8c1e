import pytest

from labsim.common import Priority, SimulationError
from labsim.core import Process, SimContext, Simulator
from labsim.resource import (
    AdmissionPolicy,
    BaseResource,
    DepletableResource,
    PriorityQueue,
    Resource,
    State,
)

from tests.common import _close


def test_base_resource_is_abstract():
    ctx = SimContext()
    with pytest.raises(TypeError):
        BaseResource(ctx)


@pytest.mark.parametrize("capacity", [0, -1])
def test_resource_non_positive_capacity_raises(capacity):
    ctx = SimContext()
    with pytest.raises(SimulationError, match="capacity must be positive"):
        Resource(ctx, capacity=capacity)


def test_resource_uncontended_request_granted_without_wait():
    ctx = SimContext()
    sim = Simulator(ctx)
    resource = Resource(ctx, capacity=1, name="Analyzer")
    record = {}

    def coro():
        record["requested"] = ctx.now
        granted = yield proc.request(resource)
        record["granted"] = granted
        record["granted_at"] = ctx.now
        record["claimed"] = resource.claimed_by(proc)
        yield proc.hold(5)
        resource.release()

    proc = Process(ctx, coro())
    sim.run()

    assert record == {"requested": 0, "granted": True, "granted_at": 0, "claimed": 1}
    assert resource.claimed == 0
    assert resource.available == 1


def test_resource_fifo_under_contention():
    ctx = SimContext()
    sim = Simulator(ctx)
    resource = Resource(ctx, capacity=1)
    granted_at = {}

    def make(tag):
        def coro():
            yield ctx.active_process.request(resource)
            granted_at[tag] = ctx.now
            yield ctx.active_process.hold(10)
            resource.release()

        return coro()

    for tag in ("p1", "p2", "p3"):
        Process(ctx, make(tag), name=tag)
    sim.run()

    assert granted_at == {"p1": 0, "p2": 10, "p3": 20}
    assert resource.stat.cur_stat_frame.total_requested_count == 3
    assert resource.stat.cur_stat_frame.total_granted_count == 3
    assert resource.stat.cur_stat_frame.total_released_count == 3
    assert resource.stat.cur_stat_frame.max_waiting == 2


def test_resource_more_urgent_request_served_first():
    ctx = SimContext()
    sim = Simulator(ctx)
    resource = Resource(ctx, capacity=1)
    granted_at = {}

    def holder():
        yield holder_proc.request(resource)
        yield holder_proc.hold(10)
        resource.release()

    def normal():
        yield normal_proc.hold(1)
        yield normal_proc.request(resource, priority=Priority.NORMAL)
        granted_at["normal"] = ctx.now
        yield normal_proc.hold(5)
        resource.release()

    def critical():
        yield critical_proc.hold(2)
        yield critical_proc.request(resource, priority=Priority.CRITICAL)
        granted_at["critical"] = ctx.now
        yield critical_proc.hold(5)
        resource.release()

    holder_proc = Process(ctx, holder())
    normal_proc = Process(ctx, normal())
    critical_proc = Process(ctx, critical())
    sim.run()

    assert granted_at == {"critical": 10, "normal": 15}


def test_resource_only_strictly_more_urgent_request_bypasses_waiters():
    ctx = SimContext()
    sim = Simulator(ctx)
    resource = Resource(ctx, capacity=2)
    granted_at = {}

    def make(tag, delay, quantity, priority, hold):
        def coro():
            proc = ctx.active_process
            yield proc.hold(delay)
            yield proc.request(resource, quantity, priority)
            granted_at[tag] = ctx.now
            yield proc.hold(hold)
            resource.release()

        return coro()

    Process(ctx, make("p1", 0, 1, Priority.NORMAL, 100))
    Process(ctx, make("p2", 1, 2, Priority.NORMAL, 1))
    Process(ctx, make("p3", 2, 1, Priority.CRITICAL, 1))
    Process(ctx, make("p4", 4, 1, Priority.NORMAL, 1))
    sim.run()

    assert granted_at == {"p1": 0, "p3": 2, "p2": 100, "p4": 101}


def test_resource_claims_never_exceed_capacity():
    ctx = SimContext()
    sim = Simulator(ctx)
    resource = Resource(ctx, capacity=3)
    observed = []

    def make(quantity):
        def coro():
            proc = ctx.active_process
            yield proc.request(resource, quantity)
            observed.append(resource.claimed)
            yield proc.hold(quantity)
            resource.release()

        return coro()

    for quantity in (2, 2, 1, 3, 1):
        Process(ctx, make(quantity))
    sim.run()

    assert len(observed) == 5
    assert all(claimed <= 3 for claimed in observed)
    assert resource.claimed == 0


def test_resource_partial_release():
    ctx = SimContext()
    sim = Simulator(ctx)
    resource = Resource(ctx, capacity=3)

    def coro():
        yield proc.request(resource, 3)
        resource.release(1)
        assert resource.claimed_by(proc) == 2
        assert resource.available == 1
        resource.release()
        assert resource.claimed == 0

    proc = Process(ctx, coro())
    sim.run()


@pytest.mark.parametrize("quantity", [0, -1, 2])
def test_resource_request_invalid_quantity_raises(quantity):
    ctx = SimContext()
    resource = Resource(ctx, capacity=1)
    with pytest.raises(SimulationError, match="Cannot request"):
        resource.request(quantity)


def test_resource_release_more_than_held_raises():
    ctx = SimContext()
    resource = Resource(ctx, capacity=2)
    proc = Process(ctx, iter(()))

    with pytest.raises(SimulationError, match="holds 0"):
        resource.release(process=proc)

    resource.request(1, process=proc)
    with pytest.raises(SimulationError, match="holds 1"):
        resource.release(2, process=proc)


def test_depletable_fail_put_over_capacity_leaves_level():
    ctx = SimContext()
    sim = Simulator(ctx)
    waste = DepletableResource(ctx, capacity=20000, level=19800, name="Waste")
    record = {}

    def coro():
        record["ok"] = yield proc.put(waste, 500, AdmissionPolicy.FAIL)
        record["failed"] = proc.failed

    proc = Process(ctx, coro())
    sim.run()

    assert record == {"ok": False, "failed": True}
    assert waste.level == 19800
    assert waste.stat.cur_stat_frame.total_failed_count == 1
    assert waste.waiting == []


def test_depletable_fail_take_underflow():
    ctx = SimContext()
    bottle = DepletableResource(ctx, capacity=10, level=3)
    take = bottle.take(4, AdmissionPolicy.FAIL)

    assert take.immediate
    assert not take.ok
    assert bottle.level == 3

    take = bottle.take(3, AdmissionPolicy.FAIL)
    assert take.ok
    assert bottle.is_empty


def test_depletable_scheduled_take_waits_for_put():
    ctx = SimContext()
    sim = Simulator(ctx)
    bottle = DepletableResource(ctx, capacity=10, level=0)
    record = {}

    def consumer():
        record["ok"] = yield consumer_proc.take(bottle, 4, AdmissionPolicy.SCHEDULE)
        record["at"] = ctx.now

    def producer():
        yield producer_proc.hold(3)
        yield producer_proc.put(bottle, 5)

    consumer_proc = Process(ctx, consumer())
    producer_proc = Process(ctx, producer())
    sim.run()

    assert record == {"ok": True, "at": 3}
    _close(bottle.level, 1)


def test_depletable_scheduled_put_waits_for_space():
    ctx = SimContext()
    sim = Simulator(ctx)
    waste = DepletableResource(ctx, capacity=10, level=8)
    record = {}

    def filler():
        yield filler_proc.put(waste, 5)
        record["at"] = ctx.now

    def emptier():
        yield emptier_proc.hold(2)
        yield emptier_proc.take(waste, 4)

    filler_proc = Process(ctx, filler())
    emptier_proc = Process(ctx, emptier())
    sim.run()

    assert record == {"at": 2}
    _close(waste.level, 9)


def test_depletable_level_callbacks_on_successful_changes_only():
    ctx = SimContext()
    bottle = DepletableResource(ctx, capacity=10, level=5)
    levels = []
    bottle.add_level_callback(lambda resource, level: levels.append(level))

    bottle.take(2, AdmissionPolicy.FAIL)
    bottle.take(5, AdmissionPolicy.FAIL)
    bottle.put(7, AdmissionPolicy.FAIL)

    assert levels == [3, 10]
    assert bottle.is_full
    _close(bottle.fill_pct, 100)
    _close(bottle.shortfall, 0)


def test_depletable_fill_pct_and_shortfall():
    ctx = SimContext()
    bottle = DepletableResource(ctx, capacity=200, level=50)
    _close(bottle.fill_pct, 25)
    _close(bottle.shortfall, 150)


@pytest.mark.parametrize("quantity", [-1, 11])
def test_depletable_invalid_quantity_raises(quantity):
    ctx = SimContext()
    bottle = DepletableResource(ctx, capacity=10)
    with pytest.raises(SimulationError, match="outside"):
        bottle.put(quantity)
    with pytest.raises(SimulationError, match="outside"):
        bottle.take(quantity)


def test_depletable_invalid_initial_level_raises():
    ctx = SimContext()
    with pytest.raises(SimulationError, match="Initial level"):
        DepletableResource(ctx, capacity=10, level=11)


def test_priority_queue_order():
    ctx = SimContext()
    queue = PriorityQueue(ctx, name="Autoloader")
    queue.add("a", Priority.NORMAL)
    queue.add("b", Priority.IMPORTANT)
    queue.add("c", Priority.NORMAL)
    queue.add("d", Priority.CRITICAL)
    ctx.advance_simtime(5)
    queue.add("e", Priority.IMPORTANT)

    assert list(queue) == ["d", "b", "e", "a", "c"]
    assert queue.peek() == "d"
    assert [queue.poll() for _ in range(len(queue))] == ["d", "b", "e", "a", "c"]
    assert queue.poll() is None
    assert queue.is_empty


def test_priority_queue_rejects_when_full():
    ctx = SimContext()
    queue = PriorityQueue(ctx, capacity=2)

    assert queue.add("x")
    assert queue.add("y")
    assert queue.is_full
    assert not queue.add("z")

    assert len(queue) == 2
    assert "z" not in queue
    assert queue.stat.cur_stat_frame.total_rejected_count == 1
    assert queue.stat.cur_stat_frame.max_queue_len == 2


def test_priority_queue_add_ignoring_capacity():
    ctx = SimContext()
    queue = PriorityQueue(ctx, capacity=1)

    assert queue.add("x")
    assert queue.add("urgent", Priority.IMPORTANT, ignore_capacity=True)
    assert len(queue) == 2
    assert queue.stat.cur_stat_frame.total_rejected_count == 0
    assert not queue.add("y")
    assert queue.poll() == "urgent"
    assert queue.poll() == "x"


def test_priority_queue_remove():
    ctx = SimContext()
    queue = PriorityQueue(ctx)
    lengths = []
    queue.add_length_callback(lambda q, length: lengths.append(length))
    queue.add("a")
    queue.add("b")

    assert queue.remove("a")
    assert not queue.remove("a")
    assert list(queue) == ["b"]
    assert lengths == [1, 2, 1]


def test_priority_queue_blocking_get():
    ctx = SimContext()
    sim = Simulator(ctx)
    queue = PriorityQueue(ctx)
    record = {}

    def consumer():
        record["item"] = yield queue.get()
        record["at"] = ctx.now

    def producer():
        yield producer_proc.hold(5)
        queue.add("X")

    Process(ctx, consumer())
    producer_proc = Process(ctx, producer())
    sim.run()

    assert record == {"item": "X", "at": 5}
    assert queue.is_empty


def test_priority_queue_blocking_put():
    ctx = SimContext()
    sim = Simulator(ctx)
    queue = PriorityQueue(ctx, capacity=1)
    queue.add("A")
    record = {}

    def producer():
        record["ok"] = yield queue.put("B")
        record["at"] = ctx.now

    def consumer():
        yield consumer_proc.hold(3)
        record["polled"] = queue.poll()

    Process(ctx, producer())
    consumer_proc = Process(ctx, consumer())
    sim.run()

    assert record == {"ok": True, "at": 3, "polled": "A"}
    assert list(queue) == ["B"]


def test_priority_queue_average_length():
    ctx = SimContext()
    sim = Simulator(ctx)
    queue = PriorityQueue(ctx, name="Q")

    def coro():
        queue.add("a")
        yield proc.hold(10)
        queue.poll()
        yield proc.hold(10)

    proc = Process(ctx, coro())
    sim.run()

    frame = sim.stat.resource_stat_samples["Q"][(0, 20)]
    _close(frame.integral_queue_sum, 10)
    _close(frame.avg_queue_len, 0.5)


def test_state_notifies_on_every_set():
    ctx = SimContext()
    state = State(ctx, "IDLE", name="Status")
    changes = []
    callback = lambda s, old, new: changes.append((old, new))
    state.subscribe(callback)

    state.set("BUSY")
    state.value = "BUSY"
    state.unsubscribe(callback)
    state.set("IDLE")

    assert changes == [("IDLE", "BUSY"), ("BUSY", "BUSY")]
    assert state.value == "IDLE"
    assert [value for _, value in state.history] == ["IDLE", "BUSY", "BUSY", "IDLE"]


def test_state_durations():
    ctx = SimContext()
    state = State(ctx, "A")
    ctx.advance_simtime(5)
    state.set("B")
    ctx.advance_simtime(8)
    state.set("A")

    assert state.durations(until=10) == {"A": 7, "B": 3}
    ctx.advance_simtime(12)
    assert state.durations() == {"A": 9, "B": 3}
