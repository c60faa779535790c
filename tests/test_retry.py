"""Tests for relay.retry: reconnect and retry exactly once on transient faults."""

from unittest.mock import patch

import pytest

from relay import Message, Queue, RetryPolicy, run_with_reconnect
from relay.exceptions import TransientConnectionException, ValidationException
from relay.testing import InMemoryBroker
from tests.mocks import FlakyOperation, Recorder, declare_queues, make_client, no_backoff_retry

# =====================================================================
#   run_with_reconnect
# =====================================================================


class TestRunWithReconnect:
    def test_success_does_not_reconnect(self):
        operation, reconnect = FlakyOperation(failures=0), Recorder()

        assert run_with_reconnect(operation, reconnect, no_backoff_retry()) == "ok"
        assert operation.calls == 1
        assert reconnect.count == 0

    def test_transient_fault_reconnects_and_retries_once(self):
        operation, reconnect = FlakyOperation(failures=1, result="second"), Recorder()

        assert run_with_reconnect(operation, reconnect, no_backoff_retry()) == "second"
        assert operation.calls == 2
        assert reconnect.count == 1

    def test_second_fault_propagates(self):
        operation, reconnect = FlakyOperation(failures=2), Recorder()

        with pytest.raises(TransientConnectionException, match="call 2"):
            run_with_reconnect(operation, reconnect, no_backoff_retry())
        assert operation.calls == 2
        assert reconnect.count == 1

    def test_disabled_policy_propagates_without_reconnect(self):
        operation, reconnect = FlakyOperation(failures=1), Recorder()

        with pytest.raises(TransientConnectionException, match="call 1"):
            run_with_reconnect(operation, reconnect, RetryPolicy(enabled=False))
        assert operation.calls == 1
        assert reconnect.count == 0

    def test_other_faults_are_not_retried(self):
        reconnect = Recorder()

        def invalid():
            raise ValidationException("never going to work")

        with pytest.raises(ValidationException):
            run_with_reconnect(invalid, reconnect, no_backoff_retry())
        assert reconnect.count == 0

    def test_failing_reconnect_propagates(self):
        operation = FlakyOperation(failures=1)

        def reconnect():
            raise TransientConnectionException("broker is down")

        with pytest.raises(TransientConnectionException, match="broker is down"):
            run_with_reconnect(operation, reconnect, no_backoff_retry())
        assert operation.calls == 1

    @patch("relay.utils.time.sleep")
    def test_backs_off_before_reconnecting(self, mock_sleep):
        order = []
        operation = FlakyOperation(failures=1)
        mock_sleep.side_effect = lambda delay: order.append(("sleep", delay))

        run_with_reconnect(operation, lambda: order.append(("reconnect",)), RetryPolicy(enabled=True, backoff=0.2))

        assert order == [("sleep", 0.2), ("reconnect",)]


# =====================================================================
#   RetryableChannel through the Client
# =====================================================================


class TestRetryableChannel:
    def test_publish_is_retried_on_a_new_channel(self):
        broker = InMemoryBroker()
        client = make_client(broker, retry=no_backoff_retry())
        (queue,) = declare_queues(client, "orders")
        first_channel = client.get_channel()

        broker.fail_next("publish")
        client.publish(queue, Message.make({"n": 1}))

        assert client.get_channel() is not first_channel
        assert first_channel.is_open is False
        assert broker.message_count(queue) == 1
        assert client.session.reconnects == 1

    def test_hooks_fire_in_order_around_reconnect(self):
        broker = InMemoryBroker()
        client = make_client(broker, retry=no_backoff_retry())
        (queue,) = declare_queues(client, "orders")
        order = []
        client.before_reconnect(lambda: order.append("before"))
        client.after_reconnect(lambda: order.append("after"))

        broker.fail_next("publish")
        client.publish(queue, Message.make({}))

        assert order == ["before", "after"]

    def test_without_retry_the_fault_propagates(self):
        broker = InMemoryBroker()
        client = make_client(broker)
        (queue,) = declare_queues(client, "orders")
        hook = Recorder()
        client.before_reconnect(hook)

        broker.fail_next("publish")
        with pytest.raises(TransientConnectionException):
            client.publish(queue, Message.make({}))

        assert hook.count == 0
        assert client.session.reconnects == 0
        assert broker.message_count(queue) == 0

    def test_enable_reconnect_on_connection_error(self):
        broker = InMemoryBroker()
        client = make_client(broker, retry=RetryPolicy(backoff=0))
        assert client.enable_reconnect_on_connection_error() is client
        (queue,) = declare_queues(client, "orders")

        broker.fail_next("publish")
        client.publish(queue, Message.make({}))

        assert broker.message_count(queue) == 1

    def test_persistent_outage_surfaces_after_single_retry(self):
        broker = InMemoryBroker()
        client = make_client(broker, retry=no_backoff_retry())
        (queue,) = declare_queues(client, "orders")

        broker.fail_next("publish", times=2)
        with pytest.raises(TransientConnectionException):
            client.publish(queue, Message.make({}))
        assert client.session.reconnects == 1

    def test_declarations_are_retried(self):
        broker = InMemoryBroker()
        client = make_client(broker, retry=no_backoff_retry())

        broker.fail_next("declare_queue")
        client.declare_queue(Queue("orders"))

        assert "orders" in broker.queues

    @patch("relay.utils.time.sleep")
    def test_consecutive_faults_back_off_longer(self, mock_sleep):
        broker = InMemoryBroker()
        client = make_client(broker, retry=RetryPolicy(enabled=True, backoff=0.1, backoff_multiplier=2))
        (queue,) = declare_queues(client, "orders")

        broker.fail_next("publish", times=2)
        with pytest.raises(TransientConnectionException):
            client.publish(queue, Message.make({}))

        broker.fail_next("publish")
        client.publish(queue, Message.make({}))

        # a clean operation resets the count
        client.publish(queue, Message.make({}))
        broker.fail_next("publish")
        client.publish(queue, Message.make({}))

        assert [c.args[0] for c in mock_sleep.call_args_list] == [0.1, 0.2, 0.1]
        assert broker.message_count(queue) == 3
