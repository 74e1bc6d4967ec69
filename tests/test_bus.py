"""Test event bus, dispatcher and event factories."""

from hypothesis import given
from hypothesis import strategies as st

from imgate.bus import Bus
from imgate.events import (
    Dispatcher,
    IncomingMessage,
    SessionLog,
    StatusChange,
    incoming_message,
    session_log,
    status_change,
)


class MockTarget:
    """Mock event target for testing."""

    def __init__(self, accept_filter=None):
        self.received_events = []
        self.accept_filter = accept_filter or (lambda s, e: True)

    def accept_event(self, source: str, evt: object) -> bool:
        return self.accept_filter(source, evt)

    def push_event(self, source: str, evt: object) -> None:
        self.received_events.append((source, evt))


class TestDispatcher:
    """Test event dispatcher."""

    def test_register_and_unregister(self):
        dispatcher = Dispatcher()
        target = MockTarget()
        dispatcher.register(target)
        assert target in dispatcher._targets
        dispatcher.unregister(target)
        assert target not in dispatcher._targets

    def test_unregister_nonexistent_target_is_safe(self):
        Dispatcher().unregister(MockTarget())

    def test_dispatch_not_to_rejecting_target(self):
        dispatcher = Dispatcher()
        target = MockTarget(accept_filter=lambda s, e: False)
        dispatcher.register(target)
        _, evt = session_log("s1", "info", "hello")
        dispatcher.dispatch("s1", evt)
        assert target.received_events == []

    def test_failing_target_does_not_block_others(self):
        # Arrange
        dispatcher = Dispatcher()

        class Broken(MockTarget):
            def push_event(self, source, evt):
                raise RuntimeError("boom")

        good = MockTarget()
        dispatcher.register(Broken())
        dispatcher.register(good)
        _, evt = session_log("s1", "info", "hello")

        # Act
        dispatcher.dispatch("s1", evt)

        # Assert
        assert good.received_events == [("s1", evt)]


class TestBus:
    """Bus wraps a dispatcher."""

    def test_publish_reaches_targets(self):
        # Arrange
        bus = Bus()
        target = MockTarget(accept_filter=lambda s, e: isinstance(e, StatusChange))
        bus.register(target)

        # Act
        bus.publish("s1", status_change("s1", True, identity="42")[1])
        bus.publish("s1", session_log("s1", "info", "ignored")[1])

        # Assert
        assert len(target.received_events) == 1
        assert target.received_events[0][1].identity == "42"

    def test_unregistered_target_gets_nothing(self):
        # Arrange
        bus = Bus()
        target = MockTarget()
        bus.register(target)

        # Act
        bus.unregister(target)
        bus.publish("s1", session_log("s1", "info", "dropped")[1])

        # Assert
        assert target.received_events == []

    @given(st.lists(st.text(min_size=1), min_size=1, max_size=50))
    def test_publish_order(self, messages):
        # Arrange
        bus = Bus()
        target = MockTarget()
        bus.register(target)

        # Act
        for msg in messages:
            bus.publish("s1", session_log("s1", "info", msg)[1])

        # Assert
        assert [evt.message for _, evt in target.received_events] == messages


class TestFactories:
    """@event factories return (type, event)."""

    def test_type_names(self):
        name, evt = incoming_message("s1", "dev", "42", "ok", time=1)
        assert name == "incoming_message"
        assert isinstance(evt, IncomingMessage)
        assert incoming_message.TYPE == "incoming_message"

    @given(st.text(), st.sampled_from(["debug", "info", "warning", "error"]), st.text())
    def test_session_log_preserves_fields(self, session_id, level, message):
        _, evt = session_log(session_id, level, message)
        assert isinstance(evt, SessionLog)
        assert (evt.session_id, evt.level, evt.message) == (session_id, level, message)
