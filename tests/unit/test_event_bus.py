import threading
from miyoo.infrastructure.event_bus import EventBus
from miyoo.domain.events import Event, JobCancelled, JobCompleted

class MockEvent(Event):
    message: str

def test_event_bus_subscribe_publish():
    bus = EventBus()
    received_events = []

    def callback(event: MockEvent):
        received_events.append(event)

    bus.subscribe(MockEvent, callback)

    event = MockEvent(message="hello")
    bus.publish(event)

    assert len(received_events) == 1
    assert received_events[0].message == "hello"

def test_event_bus_multiple_subscribers():
    bus = EventBus()
    results = {"a": False, "b": False}

    bus.subscribe(MockEvent, lambda e: results.update({"a": True}))
    bus.subscribe(MockEvent, lambda e: results.update({"b": True}))

    bus.publish(MockEvent(message="test"))

    assert results["a"] is True
    assert results["b"] is True

def test_event_bus_decorator_subscribe():
    bus = EventBus()
    received = []

    @bus.subscribe(MockEvent)
    def on_event(event: MockEvent):
        received.append(event)

    bus.publish(MockEvent(message="decorator"))
    assert len(received) == 1
    assert received[0].message == "decorator"

def test_event_bus_dispatches_by_exact_type():
    bus = EventBus()
    completed = []
    bus.subscribe(JobCompleted, completed.append)

    bus.publish(JobCancelled())
    bus.publish(JobCompleted(succeeded=1, total=2))

    assert completed == [JobCompleted(succeeded=1, total=2)]

def test_event_bus_unsubscribe():
    bus = EventBus()
    received = []
    bus.subscribe(MockEvent, received.append)
    bus.unsubscribe(MockEvent, received.append)
    bus.unsubscribe(MockEvent, received.append)

    bus.publish(MockEvent(message="ignored"))
    assert received == []

def test_event_bus_subscribe_during_publish():
    bus = EventBus()
    late = []

    def first(event):
        bus.subscribe(MockEvent, late.append)

    bus.subscribe(MockEvent, first)
    bus.publish(MockEvent(message="one"))
    assert late == []
    bus.publish(MockEvent(message="two"))
    assert [e.message for e in late] == ["two"]

def test_event_bus_publish_from_threads():
    bus = EventBus()
    received = []
    lock = threading.Lock()

    def record(event):
        with lock:
            received.append(event.message)

    bus.subscribe(MockEvent, record)
    threads = [
        threading.Thread(target=lambda n=n: [bus.publish(MockEvent(message=f"{n}-{i}")) for i in range(100)])
        for n in range(4)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(received) == 400
