import threading

from incident_capture.phase_locks import PhaseLockRegistry


def test_same_key_is_exclusive():
    locks = PhaseLockRegistry()
    inside = []
    overlap = []
    barrier = threading.Barrier(4)

    def worker():
        barrier.wait()
        with locks.hold("I1", "before_event"):
            if inside:
                overlap.append(True)
            inside.append(1)
            inside.pop()

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert overlap == []


def test_different_keys_do_not_block():
    locks = PhaseLockRegistry()
    with locks.hold("I1", "before_event"):
        with locks.hold("I1", "during_event"):
            assert sorted(locks.snapshot()) == [("I1", "before_event"), ("I1", "during_event")]


def test_sweep_removes_only_idle_entries():
    locks = PhaseLockRegistry()
    with locks.hold("I1", "before_event"):
        pass
    with locks.hold("I2", "end_event"):
        assert locks.sweep_idle() == 1
        assert locks.snapshot() == [("I2", "end_event")]
    assert locks.sweep_idle() == 1
    assert locks.snapshot() == []
