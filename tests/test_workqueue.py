from hyperfleet_controller.state_machine import Observation
from hyperfleet_controller.workqueue import WorkQueue


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_duplicate_adds_collapse():
    queue = WorkQueue()
    queue.add("a")
    queue.add("a")
    queue.add("b")
    assert queue.pending() == 2
    assert queue.get(timeout=0)[0] == "a"
    assert queue.get(timeout=0)[0] == "b"
    assert queue.get(timeout=0) is None


def test_key_is_not_handed_out_twice_while_processing():
    queue = WorkQueue()
    queue.add("a")
    key, _ = queue.get(timeout=0)
    queue.add("a")
    assert queue.get(timeout=0) is None

    queue.done(key)
    assert queue.get(timeout=0)[0] == "a"


def test_observation_travels_with_key():
    queue = WorkQueue()
    queue.add("a", Observation("stopped"))
    key, observation = queue.get(timeout=0)
    assert key == "a"
    assert observation.power_state == "stopped"

    queue.done(key)
    queue.add("a")
    assert queue.get(timeout=0)[1] is None


def test_add_after_waits_for_clock():
    clock = FakeClock()
    queue = WorkQueue(clock=clock)
    queue.add_after("a", 30)
    assert queue.delayed() == 1
    assert queue.get(timeout=0) is None

    clock.now += 31
    assert queue.get(timeout=0)[0] == "a"
    assert queue.delayed() == 0


def test_shutdown_releases_waiters():
    queue = WorkQueue()
    queue.shutdown()
    queue.add("a")
    assert queue.get() is None
