"""
Tests for the broadcast hub and progress event schema.

Tests cover:
- Per-user rooms: every connection of the user, nobody else
- No replay of events published before a connection joined
- Bounded outboxes drop the oldest event instead of blocking
- Event normalization and wire format
"""

import json
import threading

import pytest

from apps.realtime.events import SUBJECT_COLLECTION, SUBJECT_JOB, ProgressEvent
from apps.realtime.hub import BroadcastHub, Subscription


def job_update(job_id='job-1', status='running', percent=20, **kwargs):
    return ProgressEvent(subject_id=job_id, subject_kind=SUBJECT_JOB, status=status, percent=percent, **kwargs)


@pytest.fixture
def hub():
    return BroadcastHub(outbox_size=8)


# ============================================================================
# Rooms
# ============================================================================

class TestRooms:

    def test_publish_reaches_every_connection_of_the_user(self, hub):
        tab_one = hub.subscribe(1)
        tab_two = hub.subscribe(1)
        stranger = hub.subscribe(2)

        delivered = hub.publish(1, job_update())

        assert delivered == 2
        assert [e.subject_id for e in tab_one.drain()] == ['job-1']
        assert [e.subject_id for e in tab_two.drain()] == ['job-1']
        assert stranger.drain() == []

    def test_user_without_connections_is_not_an_error(self, hub):
        assert hub.publish(42, job_update()) == 0

    def test_no_replay_for_late_subscribers(self, hub):
        hub.publish(1, job_update(percent=5))

        late = hub.subscribe(1)
        hub.publish(1, job_update(percent=20))

        assert [e.percent for e in late.drain()] == [20]

    def test_unsubscribe_stops_delivery(self, hub):
        subscription = hub.subscribe('1')

        assert hub.unsubscribe(subscription.connection_id) is True
        hub.publish(1, job_update())

        assert subscription.closed
        assert subscription.drain() == []
        assert hub.room(1) == []
        assert hub.connection_count() == 0

    def test_unsubscribe_unknown_connection(self, hub):
        assert hub.unsubscribe('missing') is False

    def test_user_ids_are_compared_as_strings(self, hub):
        subscription = hub.subscribe(7)

        hub.publish('7', job_update())

        assert subscription.pending() == 1

    def test_clear_closes_everything(self, hub):
        subscriptions = [hub.subscribe(i) for i in range(3)]

        hub.clear()

        assert hub.connection_count() == 0
        assert all(s.closed for s in subscriptions)

    def test_concurrent_publishers(self, hub):
        subscription = hub.subscribe(1, Subscription(1, maxsize=1000))

        def publish_many(worker):
            for i in range(50):
                hub.publish(1, job_update(job_id=f'{worker}-{i}'))

        threads = [threading.Thread(target=publish_many, args=(w,)) for w in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert subscription.pending() == 200


# ============================================================================
# Backpressure
# ============================================================================

class TestOutbox:

    def test_full_outbox_drops_oldest(self):
        subscription = Subscription(1, maxsize=2)

        assert subscription.offer(job_update(percent=5)) is True
        assert subscription.offer(job_update(percent=20)) is True
        assert subscription.offer(job_update(percent=40)) is False

        assert [e.percent for e in subscription.drain()] == [20, 40]
        assert subscription.dropped == 1

    def test_slow_connection_does_not_affect_others(self, hub):
        slow = hub.subscribe(1, Subscription(1, maxsize=1))
        fast = hub.subscribe(1, Subscription(1, maxsize=10))

        for percent in (5, 20, 40):
            hub.publish(1, job_update(percent=percent))

        assert [e.percent for e in slow.drain()] == [40]
        assert [e.percent for e in fast.drain()] == [5, 20, 40]

    def test_closed_subscription_rejects_events(self):
        subscription = Subscription(1, maxsize=2)
        subscription.close()

        assert subscription.offer(job_update()) is False
        assert subscription.pending() == 0


# ============================================================================
# Events
# ============================================================================

class TestProgressEvent:

    def test_percent_is_clamped(self):
        assert job_update(percent=140).percent == 100
        assert job_update(percent=-3).percent == 0

    def test_unknown_subject_kind(self):
        with pytest.raises(ValueError):
            ProgressEvent(subject_id='x', subject_kind='page', status='running', percent=0)

    def test_terminal_statuses(self):
        assert job_update(status='completed', percent=100).is_terminal
        assert job_update(status='failed').is_terminal
        assert not job_update(status='running').is_terminal

        done = ProgressEvent(
            subject_id='c-1', subject_kind=SUBJECT_COLLECTION, status='completed_with_errors', percent=100
        )
        assert done.is_terminal
        assert done.key == (SUBJECT_COLLECTION, 'c-1')

    def test_wire_format_omits_empty_fields(self):
        event = job_update(stage='Rendering', project_id='p-1')

        payload = json.loads(event.to_json())

        assert payload['subject_id'] == 'job-1'
        assert payload['stage'] == 'Rendering'
        assert payload['project_id'] == 'p-1'
        assert 'error' not in payload
        assert 'total_expected' not in payload
        assert 'timestamp' in payload

    def test_from_dict_ignores_unknown_keys(self):
        event = ProgressEvent.from_dict({
            'type': 'progress',
            'subject_id': 'job-9',
            'subject_kind': 'job',
            'status': 'failed',
            'percent': 40,
            'error': {'code': 'DNS_ERROR', 'message': 'no such host'},
        })

        assert event.subject_id == 'job-9'
        assert event.error['code'] == 'DNS_ERROR'
