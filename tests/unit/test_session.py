"""Tests for the producer session state machine."""

import logging

import pytest

from logmet_client.errors import BufferFullError, FatalAuthError
from logmet_client.producer.session import (
    BytesReceived,
    CloseTransport,
    ConnectFailed,
    ConnectionState,
    HandshakeCompleted,
    OpenTransport,
    ScheduleReconnect,
    TransportFailed,
    TransportOpened,
    TransportRejected,
    WriteFrame,
)
from logmet_client.protocol.frames import (
    DATA_FRAME,
    WINDOW_FRAME,
    encode_authentication,
    encode_identification,
)

from conftest import CLIENT_ID, TENANT_ID, TOKEN, UNAUTHORIZED_FRAME, decode_data, encode_ack


def written(effects):
    return [effect.frame for effect in effects if isinstance(effect, WriteFrame)]


def data_frames(effects):
    return [decode_data(frame) for frame in written(effects) if frame[:2] == DATA_FRAME]


def field(pairs, key):
    return dict(pairs)[key]


def handshake(session, ack=0):
    """Drive a session from DISCONNECTED through a completed handshake."""
    assert session.start_connect() == [OpenTransport()]
    session.handle(TransportOpened())
    return session.handle(BytesReceived(encode_ack(ack)))


def ack(session, number):
    return session.handle(BytesReceived(encode_ack(number)))


class TestHandshake:
    """Connecting and authenticating."""

    def test_start_connect(self, make_session):
        session = make_session()

        assert session.start_connect() == [OpenTransport()]
        assert session.state is ConnectionState.CONNECTING
        assert session.stats['connection_attempts'] == 1

    def test_start_connect_while_connecting_is_ignored(self, make_session):
        session = make_session()
        session.start_connect()

        assert session.start_connect() == []

    def test_opened_writes_identification_then_authentication(self, make_session):
        session = make_session()
        session.start_connect()

        effects = session.handle(TransportOpened())

        assert written(effects) == [
            encode_identification(CLIENT_ID),
            encode_authentication(TENANT_ID, TOKEN),
        ]
        assert session.state is ConnectionState.CONNECTING

    def test_handshake_ack_connects(self, make_session):
        session = make_session()

        effects = handshake(session)

        assert HandshakeCompleted() in effects
        assert session.state is ConnectionState.CONNECTED
        assert session.connection_active is True
        assert session.handshake_completed is True

    def test_handshake_notified_once(self, make_session):
        session = make_session()
        handshake(session)
        session.handle(TransportFailed('error'))

        effects = handshake(session)

        assert HandshakeCompleted() not in effects
        assert session.state is ConnectionState.CONNECTED

    def test_repeated_ack_zero_on_same_connection_does_not_notify(self, make_session):
        session = make_session()
        handshake(session)

        assert HandshakeCompleted() not in ack(session, 0)

    def test_unauthorized_before_handshake_is_fatal(self, make_session):
        session = make_session()
        session.start_connect()
        session.handle(TransportOpened())

        effects = session.handle(BytesReceived(UNAUTHORIZED_FRAME))

        assert effects[0] == CloseTransport()
        assert isinstance(effects[1], ConnectFailed)
        assert isinstance(effects[1].error, FatalAuthError)
        assert session.fatal_error is effects[1].error
        assert session.state is ConnectionState.DISCONNECTED
        assert session.start_connect() == []

    def test_tls_rejection_before_handshake_is_fatal(self, make_session):
        session = make_session()
        session.start_connect()

        effects = session.handle(TransportRejected("certificate verify failed"))

        assert isinstance(effects[-1], ConnectFailed)
        assert "certificate verify failed" in str(effects[-1].error)

    def test_unauthorized_after_handshake_is_retried(self, make_session):
        session = make_session()
        handshake(session)
        session.handle(TransportFailed('error'))
        session.start_connect()
        session.handle(TransportOpened())

        effects = session.handle(BytesReceived(UNAUTHORIZED_FRAME))

        assert not any(isinstance(effect, ConnectFailed) for effect in effects)
        assert effects == [CloseTransport(), ScheduleReconnect(4.0)]
        assert session.fatal_error is None

    def test_tls_rejection_after_handshake_is_retried(self, make_session):
        session = make_session()
        handshake(session)
        session.handle(TransportFailed('error'))
        session.start_connect()

        effects = session.handle(TransportRejected("certificate verify failed"))

        assert not any(isinstance(effect, ConnectFailed) for effect in effects)
        assert effects == [CloseTransport(), ScheduleReconnect(4.0)]
        assert session.fatal_error is None
        assert session.state is ConnectionState.DISCONNECTED

    def test_unknown_frames_are_logged(self, make_session, caplog):
        session = make_session()
        handshake(session)

        with caplog.at_level(logging.ERROR):
            effects = session.handle(BytesReceived(b"1Z"))

        assert effects == []
        assert session.state is ConnectionState.CONNECTED
        assert "unknown ACK type" in caplog.text


class TestSend:
    """Buffering, backpressure and transmission."""

    def test_send_while_disconnected_buffers(self, make_session):
        session = make_session()

        result, effects = session.enqueue({"msg": "x"}, "syslog", TENANT_ID)

        assert result.connection_active is False
        assert effects == []
        assert len(session.pending) == 1

    def test_buffer_full_rejects_third_record(self, make_session):
        session = make_session(max_pending=2)
        session.enqueue({"n": 1}, "t", TENANT_ID)
        session.enqueue({"n": 2}, "t", TENANT_ID)

        with pytest.raises(BufferFullError) as exc_info:
            session.enqueue({"n": 3}, "t", TENANT_ID)

        assert exc_info.value.connection_active is False
        assert exc_info.value.capacity == 2
        assert len(session.pending) == 2
        assert session.stats['records_rejected'] == 1

    def test_send_while_connected_writes_window_and_data(self, make_session):
        session = make_session()
        handshake(session)

        result, effects = session.enqueue({"msg": "x"}, "syslog", TENANT_ID)

        frames = written(effects)
        assert result.connection_active is True
        assert frames[0][:2] == WINDOW_FRAME
        sequence, pairs = decode_data(frames[1])
        assert sequence == 1
        assert pairs == [("msg", "x"), ("ALCH_TENANT_ID", TENANT_ID), ("type", "syslog")]
        assert len(session.window) == 1

    def test_buffered_records_drain_on_handshake(self, make_session):
        session = make_session()
        for i in range(3):
            session.enqueue({"n": i}, "t", TENANT_ID)

        effects = handshake(session)

        assert [field(pairs, "n") for _, pairs in data_frames(effects)] == ["0", "1", "2"]
        assert len(session.pending) == 0
        assert len(session.window) == 3

    def test_fifo_order_and_sequences(self, make_session):
        session = make_session(max_unacked=2)
        handshake(session)
        effects = []
        for i in range(5):
            effects.extend(session.enqueue({"n": i}, "t", TENANT_ID)[1])
        for number in range(1, 4):
            effects.extend(ack(session, number))

        frames = data_frames(effects)
        assert [sequence for sequence, _ in frames] == [1, 2, 3, 4, 5]
        assert [field(pairs, "n") for _, pairs in frames] == ["0", "1", "2", "3", "4"]

    def test_window_never_exceeds_max_unacked(self, make_session):
        session = make_session(max_unacked=3)
        handshake(session)

        for i in range(10):
            session.enqueue({"n": i}, "t", TENANT_ID)
            assert len(session.window) <= 3

        assert len(session.window) == 3
        assert len(session.pending) == 7

    def test_cumulative_ack_pops_difference(self, make_session):
        session = make_session(max_unacked=10)
        handshake(session)
        for i in range(10):
            session.enqueue({"n": i}, "t", TENANT_ID)

        ack(session, 2)
        assert len(session.window) == 8
        ack(session, 5)

        assert len(session.window) == 5
        assert session.stats['records_acked'] == 5
        assert session.window.in_flight[0].fields["n"] == 5

    def test_single_in_flight_variant(self, make_session):
        session = make_session(max_unacked=1)
        handshake(session)

        _, effects = session.enqueue({"n": 0}, "t", TENANT_ID)
        assert len(data_frames(effects)) == 1
        _, effects = session.enqueue({"n": 1}, "t", TENANT_ID)
        assert data_frames(effects) == []

        effects = ack(session, 1)
        assert [field(pairs, "n") for _, pairs in data_frames(effects)] == ["1"]

    def test_oversized_record_is_dropped(self, make_session, caplog):
        session = make_session(max_frame_size=200)
        handshake(session)

        with caplog.at_level(logging.ERROR):
            _, effects = session.enqueue({"blob": "x" * 500}, "t", TENANT_ID)

        assert written(effects) == []
        assert len(session.window) == 0
        assert len(session.pending) == 0
        assert session.stats['records_dropped'] == 1
        assert "Rejecting data element" in caplog.text

        _, effects = session.enqueue({"n": 1}, "t", TENANT_ID)
        assert [sequence for sequence, _ in data_frames(effects)] == [1]

    def test_send_after_fatal_error_still_buffers(self, make_session):
        session = make_session()
        session.start_connect()
        session.handle(TransportRejected("bad certificate"))

        result, effects = session.enqueue({"n": 1}, "t", TENANT_ID)

        assert result.connection_active is False
        assert effects == []
        assert len(session.pending) == 1


class TestReconnect:
    """Connection loss, backoff and retransmission."""

    def test_failure_schedules_backoff(self, make_session):
        session = make_session()
        handshake(session)

        effects = session.handle(TransportFailed('error'))

        assert effects == [CloseTransport(), ScheduleReconnect(2.0)]
        assert session.state is ConnectionState.DISCONNECTED

    def test_consecutive_failures_double_the_delay(self, make_session):
        session = make_session()
        delays = []
        for _ in range(4):
            session.start_connect()
            delays.append(session.handle(TransportFailed('error'))[-1].delay)

        assert delays == [2.0, 4.0, 8.0, 16.0]

    def test_handshake_resets_backoff(self, make_session):
        session = make_session()
        for _ in range(3):
            session.start_connect()
            session.handle(TransportFailed('error'))

        handshake(session)
        effects = session.handle(TransportFailed('end'))

        assert effects[-1] == ScheduleReconnect(2.0)

    def test_idle_timeout_reconnects_immediately(self, make_session):
        session = make_session()
        handshake(session)

        effects = session.handle(TransportFailed('timeout', idle=True))

        assert effects == [CloseTransport(), ScheduleReconnect(0.0)]
        assert session.backoff.failures == 0

    def test_failure_while_disconnected_is_ignored(self, make_session):
        session = make_session()
        handshake(session)
        session.handle(TransportFailed('error'))

        assert session.handle(TransportFailed('close')) == []
        assert session.stats['reconnects'] == 1

    def test_in_flight_records_are_retransmitted(self, make_session):
        session = make_session()
        handshake(session)
        for i in range(3):
            session.enqueue({"n": i}, "t", TENANT_ID)
        ack(session, 1)
        session.handle(TransportFailed('error'))

        effects = handshake(session)

        frames = data_frames(effects)
        assert [sequence for sequence, _ in frames] == [1, 2]
        assert [field(pairs, "n") for _, pairs in frames] == ["1", "2"]
        assert session.stats['frames_retransmitted'] == 2

    def test_acks_from_new_connection_count_from_zero(self, make_session):
        session = make_session()
        handshake(session)
        for i in range(4):
            session.enqueue({"n": i}, "t", TENANT_ID)
        ack(session, 3)
        session.handle(TransportFailed('error'))
        handshake(session)

        ack(session, 1)

        assert len(session.window) == 0

    def test_sequence_exhaustion_forces_reconnect(self, make_session):
        session = make_session(max_sequence=2)
        handshake(session)
        session.enqueue({"n": 0}, "t", TENANT_ID)
        session.enqueue({"n": 1}, "t", TENANT_ID)
        ack(session, 2)

        _, effects = session.enqueue({"n": 2}, "t", TENANT_ID)

        assert effects == [CloseTransport(), ScheduleReconnect(2.0)]
        assert session.state is ConnectionState.DISCONNECTED
        assert len(session.window) == 1

        frames = data_frames(handshake(session))
        assert [(sequence, field(pairs, "n")) for sequence, pairs in frames] == [(1, "2")]


class TestTermination:
    """Drain-then-close."""

    def test_terminate_when_drained_closes_at_once(self, make_session):
        session = make_session()
        handshake(session)

        assert session.request_termination() == [CloseTransport(final=True)]
        assert session.terminated is True
        assert session.state is ConnectionState.DISCONNECTED

    def test_terminate_waits_for_pending_and_in_flight(self, make_session):
        session = make_session(max_unacked=1)
        handshake(session)
        session.enqueue({"n": 0}, "t", TENANT_ID)
        session.enqueue({"n": 1}, "t", TENANT_ID)

        assert session.request_termination() == []
        assert session.poll_termination() == []

        ack(session, 1)
        assert session.poll_termination() == []
        ack(session, 2)

        assert session.poll_termination() == [CloseTransport(final=True)]
        assert session.poll_termination() == []
        assert session.request_termination() == []

    def test_terminate_after_fatal_error_discards(self, make_session, caplog):
        session = make_session()
        session.enqueue({"n": 0}, "t", TENANT_ID)
        session.start_connect()
        session.handle(TransportRejected("bad certificate"))

        effects = session.request_termination()

        assert effects == [CloseTransport(final=True)]
        assert "Discarding 1 records" in caplog.text

    def test_no_reconnect_after_termination(self, make_session):
        session = make_session()
        handshake(session)
        session.request_termination()

        assert session.start_connect() == []
        assert session.handle(TransportFailed('close')) == []


class TestSnapshot:

    def test_snapshot_reports_queues(self, make_session):
        session = make_session(max_pending=4, max_unacked=1)
        handshake(session)
        session.enqueue({"n": 0}, "t", TENANT_ID)
        session.enqueue({"n": 1}, "t", TENANT_ID)

        snapshot = session.snapshot()

        assert snapshot['state'] == 'connected'
        assert snapshot['pending'] == 1
        assert snapshot['in_flight'] == 1
        assert snapshot['max_pending'] == 4
        assert snapshot['records_sent'] == 1
        assert snapshot['next_retry_delay_seconds'] == 2.0
