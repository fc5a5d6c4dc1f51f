"""
Unit tests for scheduling notifications
Tests: subscribe/unsubscribe, failure isolation, persistence hook, recent event log
"""

import json

from engine.notifications import NotificationPublisher, SchedulingEventType

from conftest import OTHER_TENANT, TENANT


class RecordingTable:
    def __init__(self, rows, fail=False):
        self.rows = rows
        self.fail = fail
        self._pending = None

    def insert(self, row):
        self._pending = row
        return self

    def execute(self):
        if self.fail:
            raise ConnectionError("db down")
        self.rows.append(self._pending)


class RecordingClient:
    """table().insert().execute() 호출만 기록하는 클라이언트"""

    def __init__(self, fail=False):
        self.rows = []
        self.fail = fail
        self.tables = []

    def table(self, name):
        self.tables.append(name)
        return RecordingTable(self.rows, self.fail)


class TestSubscribers:
    """구독자 호출"""

    def test_subscriber_receives_matching_events(self):
        publisher = NotificationPublisher()
        received = []
        publisher.subscribe(SchedulingEventType.REGISTRATION_PROMOTED, received.append)

        publisher.emit(SchedulingEventType.REGISTRATION_PROMOTED, TENANT, "registration", "r1", event_id="e1")
        publisher.emit(SchedulingEventType.REGISTRATION_CANCELLED, TENANT, "registration", "r2")

        assert [e.entity_id for e in received] == ["r1"]
        assert received[0].data == {"event_id": "e1"}

    def test_failing_subscriber_is_isolated(self):
        publisher = NotificationPublisher()
        received = []

        def broken(event):
            raise RuntimeError("subscriber bug")

        publisher.subscribe(SchedulingEventType.BOOKING_CREATED, broken)
        publisher.subscribe(SchedulingEventType.BOOKING_CREATED, received.append)
        publisher.emit(SchedulingEventType.BOOKING_CREATED, TENANT, "booking", "b1")

        assert len(received) == 1

    def test_unsubscribe(self):
        publisher = NotificationPublisher()
        received = []
        publisher.subscribe(SchedulingEventType.BOOKING_CREATED, received.append)
        publisher.unsubscribe(SchedulingEventType.BOOKING_CREATED, received.append)
        publisher.emit(SchedulingEventType.BOOKING_CREATED, TENANT, "booking", "b1")
        assert received == []


class TestPersistence:
    """DB 저장"""

    def test_events_are_stored(self):
        client = RecordingClient()
        publisher = NotificationPublisher(db_client=client)
        publisher.emit(SchedulingEventType.SERIES_CREATED, TENANT, "event", "m1", title="에페 클럽")

        assert client.tables == ["scheduling_events"]
        assert client.rows[0]["event_type"] == "series.created"
        assert client.rows[0]["data"] == {"title": "에페 클럽"}

    def test_db_failure_does_not_raise(self):
        publisher = NotificationPublisher(db_client=RecordingClient(fail=True))
        event = publisher.emit(SchedulingEventType.SERIES_CREATED, TENANT, "event", "m1")
        assert publisher.get_recent_events() == [event]


class TestEventLog:
    """최근 알림 로그"""

    def test_filters_and_limit(self):
        publisher = NotificationPublisher(max_log_size=3)
        for i in range(4):
            publisher.emit(SchedulingEventType.BOOKING_CREATED, TENANT, "booking", f"b{i}")
        publisher.emit(SchedulingEventType.BOOKING_CANCELLED, OTHER_TENANT, "booking", "x")

        assert [e.entity_id for e in publisher.get_recent_events()] == ["b2", "b3", "x"]
        assert [e.entity_id for e in publisher.get_recent_events(tenant_id=TENANT, limit=1)] == ["b3"]
        assert publisher.get_recent_events(event_type=SchedulingEventType.BOOKING_CANCELLED)[0].tenant_id == OTHER_TENANT

    def test_to_json(self):
        publisher = NotificationPublisher()
        event = publisher.emit(SchedulingEventType.OCCURRENCE_CANCELLED, TENANT, "event", "o1", reason="체육관 점검")
        payload = json.loads(event.to_json())
        assert payload["event_type"] == "occurrence.cancelled"
        assert payload["data"]["reason"] == "체육관 점검"
