"""Tests for relay.client: channel lifecycle, topology, publishing, consuming and confirms."""

from unittest.mock import MagicMock

import pytest

from relay import Client, Destination, Exchange, Handler, Message, Queue, SessionPolicy, Signal
from relay.exceptions import TransientConnectionException, ValidationException
from relay.testing import InMemoryBroker
from tests.mocks import Recorder, declare_queues, make_client, no_backoff_retry, publish_all

# =====================================================================
#   Channel lifecycle
# =====================================================================


class TestChannelLifecycle:
    def test_channel_is_created_lazily(self):
        client = make_client()
        assert client.session.channels == []

        channel = client.get_channel()

        assert client.session.channels == [channel]
        assert client.get_channel() is channel

    def test_new_channel_gets_confirm_mode_and_qos(self):
        client = make_client(policy=SessionPolicy(prefetch_count=25, prefetch_global=True))
        channel = client.get_channel()

        assert channel.confirm_mode is True
        assert channel.prefetch_count == 25
        assert channel.global_qos is True

    def test_confirm_mode_can_be_disabled(self):
        client = make_client(policy=SessionPolicy(publisher_confirms=False))
        assert client.get_channel().confirm_mode is False

    def test_reconnect_reapplies_channel_settings(self):
        client = make_client().set_prefetch_count(5)
        old = client.get_channel()

        client.reconnect()
        new = client.get_channel()

        assert new is not old
        assert old.is_open is False
        assert new.prefetch_count == 5
        assert new.confirm_mode is True
        assert client.session.reconnects == 1

    def test_reconnect_swallows_channel_close_failures(self):
        client = make_client()
        broken = MagicMock()
        broken.close.side_effect = RuntimeError("already closed")
        client._channel = broken

        client.reconnect()

        assert client.get_channel() is not broken
        assert client.session.reconnects == 1

    def test_failed_reconnect_propagates(self):
        broker = InMemoryBroker()
        client = make_client(broker)
        after = Recorder()
        client.after_reconnect(after)

        broker.fail_next("reconnect_connection")
        with pytest.raises(TransientConnectionException):
            client.reconnect()
        assert after.count == 0

    def test_set_prefetch_count_applies_immediately(self):
        client = make_client()
        channel = client.get_channel()

        client.set_prefetch_count(3, global_qos=True)

        assert client.prefetch_count == 3
        assert channel.prefetch_count == 3
        assert channel.global_qos is True

    def test_close(self):
        client = make_client()
        channel = client.get_channel()
        client.close()
        assert channel.is_open is False


# =====================================================================
#   Topology
# =====================================================================


class TestTopology:
    def test_declare_lazy_durable_queue(self):
        client = make_client()
        queue = client.declare_queue(client.create_queue("orders"))

        assert queue == Queue("orders")
        assert client.broker.queue_arguments["orders"] == {"x-queue-mode": "lazy"}

    def test_lazy_queues_can_be_disabled(self):
        client = make_client(policy=SessionPolicy(lazy_queues=False))
        client.declare_queue(Queue("orders"))
        assert client.broker.queue_arguments["orders"] is None

    def test_fanout_exchange_with_bindings(self):
        client = make_client()
        exchange = client.declare_exchange(client.create_exchange("events"))
        first, second = declare_queues(client, "audit", "billing")
        client.bind(exchange, first).bind(exchange, second)

        client.publish(exchange, Message.make({"event": "created"}))

        assert client.broker.exchanges["events"] == "fanout"
        assert client.broker.message_count(first) == 1
        assert client.broker.message_count(second) == 1

    def test_purge_and_delete(self):
        client = make_client()
        (queue,) = declare_queues(client, "orders")
        publish_all(client, queue, [{}, {}])

        client.purge_queue(queue)
        assert client.broker.message_count(queue) == 0

        client.delete_queue(queue)
        assert "orders" not in client.broker.queues


# =====================================================================
#   Publishing
# =====================================================================


class TestPublishing:
    def test_publish_returns_the_message(self):
        client = make_client()
        (queue,) = declare_queues(client, "orders")
        message = Message.make({"foo": "bar"})

        assert client.publish(queue, message) is message
        assert [m.get_data() for m in client.broker.messages(queue)] == [{"foo": "bar"}]

    def test_publish_batch(self):
        client = make_client()
        (queue,) = declare_queues(client, "orders")
        messages = [Message.make({"i": i}) for i in range(3)]

        assert client.publish_batch(queue, messages) == messages
        assert [m.get_data() for m in client.broker.messages(queue)] == [{"i": 0}, {"i": 1}, {"i": 2}]

    def test_batch_is_buffered_until_flushed(self):
        client = make_client()
        (queue,) = declare_queues(client, "orders")

        client.add_batch_message(queue, Message.make({}))
        assert client.broker.message_count(queue) == 0
        assert client.get_channel().batch_size == 1

        client.flush_batch_publishes()
        assert client.broker.message_count(queue) == 1

    def test_batch_survives_reconnect_during_flush(self):
        broker = InMemoryBroker()
        client = make_client(broker, retry=no_backoff_retry())
        (queue,) = declare_queues(client, "orders")
        messages = [Message.make({"i": i}) for i in range(3)]
        acked = Recorder()
        for message in messages:
            client.on_message_publish_ack(message, acked)

        broker.fail_next("flush_batch")
        assert client.publish_batch(queue, messages) == messages

        assert client.await_pending_publish_confirms() is True
        assert [m.get_data() for m in broker.messages(queue)] == [{"i": 0}, {"i": 1}, {"i": 2}]
        assert [call[0].id for call in acked.calls] == [m.id for m in messages]
        assert client.session.reconnects == 1

    def test_batch_survives_reconnect_while_buffering(self):
        broker = InMemoryBroker()
        client = make_client(broker, retry=no_backoff_retry())
        (queue,) = declare_queues(client, "orders")

        client.add_batch_message(queue, Message.make({"i": 0}))
        broker.fail_next("publish")
        client.add_batch_message(queue, Message.make({"i": 1}))
        client.flush_batch_publishes()

        assert [m.get_data() for m in broker.messages(queue)] == [{"i": 0}, {"i": 1}]

    def test_failed_flush_without_retry_keeps_the_batch(self):
        broker = InMemoryBroker()
        client = make_client(broker)
        (queue,) = declare_queues(client, "orders")
        client.add_batch_message(queue, Message.make({"i": 0}))

        broker.fail_next("flush_batch")
        with pytest.raises(TransientConnectionException):
            client.flush_batch_publishes()
        assert broker.message_count(queue) == 0

        client.flush_batch_publishes()
        assert [m.get_data() for m in broker.messages(queue)] == [{"i": 0}]

    def test_discard_batch(self):
        client = make_client()
        (queue,) = declare_queues(client, "orders")
        client.add_batch_message(queue, Message.make({}))
        client.add_batch_message(queue, Message.make({}))

        assert client.discard_batch() == 2
        assert client.get_channel().batch_size == 0
        client.flush_batch_publishes()

        assert client.broker.message_count(queue) == 0

    def test_publish_to_unknown_destination_type(self):
        client = make_client()
        with pytest.raises(ValidationException):
            client.publish(Destination("orders"), Message.make({}))

    def test_publish_without_message_id(self):
        client = make_client()
        (queue,) = declare_queues(client, "orders")
        with pytest.raises(ValidationException):
            client.publish(queue, Message(b"{}"))
        assert client.broker.message_count(queue) == 0


# =====================================================================
#   Publisher confirms
# =====================================================================


class TestPublisherConfirms:
    def test_ack_handlers(self):
        client = make_client()
        (queue,) = declare_queues(client, "orders")
        on_ack, on_message_ack = Recorder(), Recorder()
        client.on_publish_ack(on_ack)
        message = Message.make({})
        client.on_message_publish_ack(message, on_message_ack)

        client.publish(queue, message)
        assert client.await_pending_publish_confirms() is True

        assert on_ack.count == 1
        assert on_message_ack.count == 1
        confirmed, passed_client = on_message_ack.calls[0]
        assert confirmed.id == message.id
        assert passed_client is client
        client.assert_has_no_message_ack_handler(message)

    def test_nack_handlers(self):
        broker = InMemoryBroker()
        client = make_client(broker)
        (queue,) = declare_queues(client, "orders")
        on_nack, on_message_ack = Recorder(), Recorder()
        client.on_publish_nack(on_nack)
        message = Message.make({})
        client.on_message_publish_ack(message, on_message_ack)

        broker.nack_publishes = True
        client.publish(queue, message)
        client.await_pending_publish_confirms()

        assert on_nack.count == 1
        assert on_message_ack.count == 0
        assert message not in client.confirms

    def test_withheld_confirms_time_out(self):
        broker = InMemoryBroker()
        client = make_client(broker)
        (queue,) = declare_queues(client, "orders")
        on_ack = Recorder()
        client.on_publish_ack(on_ack)

        broker.withhold_confirms = True
        client.publish(queue, Message.make({}))

        assert client.await_pending_publish_confirms(timeout=0.01) is False
        assert on_ack.count == 0

        client.get_channel().release_withheld_confirms()
        assert client.await_pending_publish_confirms() is True
        assert on_ack.count == 1

    def test_fake_confirms_and_handler_assertions(self):
        client = make_client()
        message = Message.make({})
        on_ack = Recorder()
        client.on_message_publish_ack(message, on_ack)
        client.on_message_publish_nack(message, Recorder())

        client.assert_has_message_ack_handler(message, 1)
        client.assert_has_message_nack_handler(message.id)

        client.fake_ack(message)

        assert on_ack.calls == [(message, client)]
        client.assert_has_no_message_ack_handler(message)
        client.assert_has_no_message_nack_handler(message)

    def test_handler_assertion_fails_when_missing(self):
        client = make_client()
        with pytest.raises(AssertionError):
            client.assert_has_message_handler(Message.make({}), Signal.ACK)


# =====================================================================
#   Consuming
# =====================================================================


class TestConsuming:
    def test_subscribe_and_consume(self):
        client = make_client()
        (queue,) = declare_queues(client, "orders")
        publish_all(client, queue, [{"i": 0}, {"i": 1}])
        received = []

        def on_message(message, c):
            received.append(message.get_data())
            message.ack()

        client.subscribe(queue, on_message)
        client.consume(timeout=0.05)

        assert received == [{"i": 0}, {"i": 1}]
        assert client.get_channel().unacked_count == 0

    def test_delivered_messages_are_bound_to_their_channel(self):
        client = make_client()
        (queue,) = declare_queues(client, "orders")
        publish_all(client, queue, [{}])
        received = []
        client.subscribe(queue, lambda message, c: received.append(message))

        client.consume(timeout=0.05)

        assert received[0].channel is client.get_channel()
        assert received[0].delivery_tag == 1

    def test_handler_subscription(self):
        class AckHandler(Handler):
            def __init__(self):
                self.handled = []

            def handle_message(self, message):
                self.handled.append(message)
                message.ack()

        client = make_client()
        (queue,) = declare_queues(client, "orders")
        publish_all(client, queue, [{}])
        handler = AckHandler()

        client.subscribe(queue, handler)
        client.consume(timeout=0.05)

        assert len(handler.handled) == 1

    def test_consume_without_subscriptions_returns(self):
        client = make_client()
        assert client.is_consuming() is False
        client.consume()

    def test_consume_zero_timeout_stops_when_nothing_happens(self):
        client = make_client()
        (queue,) = declare_queues(client, "orders")
        client.subscribe(queue, Recorder())
        # the in-memory channel raises a wait timeout when idle without a time limit
        client.consume(0)

    def test_unacked_deliveries_are_requeued_on_reconnect(self):
        client = make_client()
        (queue,) = declare_queues(client, "orders")
        publish_all(client, queue, [{"i": 0}])
        received = []
        client.subscribe(queue, lambda message, c: received.append(message))

        client.consume(timeout=0.05)
        client.reconnect()
        client.consume(timeout=0.05)

        assert len(received) == 2
        assert received[0].get_data() == received[1].get_data() == {"i": 0}
        assert received[1].channel is client.get_channel()

    def test_subscriptions_survive_reconnect_on_wait_fault(self):
        broker = InMemoryBroker()
        client = make_client(broker, retry=no_backoff_retry())
        (queue,) = declare_queues(client, "orders")
        publish_all(client, queue, [{"i": 0}])
        received = Recorder()
        client.subscribe(queue, received)

        broker.fail_next("wait_for_next_frame")
        client.consume(timeout=0.05)

        assert received.count == 1
        assert client.session.reconnects == 1

    def test_persistent_fault_inside_callback_surfaces_after_one_retry(self):
        broker = InMemoryBroker()
        client = make_client(broker, retry=no_backoff_retry())
        source, target = declare_queues(client, "orders", "audit")
        publish_all(client, source, [{"i": 0}])
        client.subscribe(source, lambda message, c: c.publish(target, message.clone({"seen": True})))

        broker.fail_next("publish", times=2)
        with pytest.raises(TransientConnectionException):
            client.consume(timeout=0.2)

        assert client.session.reconnects == 1
        assert broker.message_count(target) == 0
        # the delivery was requeued by the reconnect
        assert broker.message_count(source) == 1

    def test_callback_errors_are_not_retried(self):
        client = make_client(retry=no_backoff_retry())
        (queue,) = declare_queues(client, "orders")
        publish_all(client, queue, [{}])

        def on_message(message, c):
            raise OSError("disk full")

        client.subscribe(queue, on_message)
        with pytest.raises(OSError, match="disk full"):
            client.consume(timeout=0.2)

        assert client.session.reconnects == 0

    def test_confirm_handler_errors_surface_from_the_wait(self):
        client = make_client(retry=no_backoff_retry())
        (queue,) = declare_queues(client, "orders")

        def on_ack(message, c):
            raise ValueError("bad bookkeeping")

        client.on_publish_ack(on_ack)
        client.publish(queue, Message.make({}))

        with pytest.raises(ValueError, match="bad bookkeeping"):
            client.await_pending_publish_confirms()
        assert client.session.reconnects == 0

    def test_no_resubscribe_when_disabled(self):
        client = make_client(policy=SessionPolicy(resubscribe_on_reconnect=False))
        (queue,) = declare_queues(client, "orders")
        client.subscribe(queue, Recorder())

        client.reconnect()

        assert client.is_consuming() is False

    def test_fake_incoming_message(self):
        client = make_client()
        (queue,) = declare_queues(client, "orders")
        received = Recorder()
        client.subscribe(queue, received)
        message = Message.make({"fake": True})

        client.fake_incoming_message(queue, message)
        client.fake_incoming_message(Queue("other"), message)

        assert received.calls == [(message, client)]


def test_client_is_usable_without_test_helpers():
    client = Client(make_client().session)
    assert isinstance(client.create_exchange("events"), Exchange)
