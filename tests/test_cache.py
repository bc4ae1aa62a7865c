from streamguard.core.cache import InMemoryNotificationQueue, LocalPubSub, MemoryActiveSessionStore


class FakeClock:
    def __init__(self):
        self.t = 1000.0

    def __call__(self):
        return self.t


def test_active_sessions_expire_after_ttl():
    clock = FakeClock()
    store = MemoryActiveSessionStore(ttl_sec=60, clock=clock)
    assert store.get_active_sessions() is None

    store.set_active_sessions([{"id": 1}])
    clock.t += 30
    assert store.get_active_sessions() == [{"id": 1}]
    clock.t += 31
    assert store.get_active_sessions() is None


def test_store_returns_copies():
    store = MemoryActiveSessionStore()
    store.set_active_sessions([{"id": 1, "state": "playing"}])
    store.get_active_sessions()[0]["state"] = "paused"
    assert store.get_active_sessions()[0]["state"] == "playing"


def test_user_index():
    store = MemoryActiveSessionStore()
    store.add_user_session(7, 1)
    store.add_user_session(7, 2)
    store.remove_user_session(7, 1)
    assert store.get_user_session_ids(7) == {2}
    store.clear()
    assert store.get_user_session_ids(7) == set()


def test_pubsub_isolates_failing_subscriber():
    bus = LocalPubSub()
    got = []

    def broken(event, payload):
        raise RuntimeError("boom")

    bus.subscribe("session:started", broken)
    unsubscribe = bus.subscribe("session:started", lambda e, p: got.append(p))
    bus.publish("session:started", {"id": 1})
    assert got == [{"id": 1}]

    unsubscribe()
    bus.publish("session:started", {"id": 2})
    assert got == [{"id": 1}]


def test_notification_queue_drain():
    q = InMemoryNotificationQueue(maxlen=2)
    for i in range(3):
        q.enqueue("violation", i)
    assert q.drain() == [("violation", 1), ("violation", 2)]
    assert q.drain() == []
