import asyncio
import threading

from live import Broker


def test_publish_reaches_only_topic_subscribers():
    async def scenario():
        broker = Broker()
        a = broker.subscribe("chat:1")
        b = broker.subscribe("chat:2")
        assert broker.publish("chat:1", {"n": 1}) == 1
        assert await a.get(timeout=1) == {"n": 1}
        assert b._queue.empty()

    asyncio.run(scenario())


def test_unsubscribe_stops_delivery():
    async def scenario():
        broker = Broker()
        sub = broker.subscribe("requests:u1")
        sub.unsubscribe()
        sub.unsubscribe()
        assert broker.subscriber_count("requests:u1") == 0
        assert broker.publish("requests:u1", {"n": 1}) == 0

    asyncio.run(scenario())


def test_publish_from_worker_thread():
    async def scenario():
        broker = Broker()
        sub = broker.subscribe("chat:x")
        worker = threading.Thread(target=broker.publish, args=("chat:x", {"from": "thread"}))
        worker.start()
        event = await sub.get(timeout=2)
        worker.join()
        assert event == {"from": "thread"}

    asyncio.run(scenario())


class _ClosingLoop:
    """Reports open, then refuses the hand-off as a loop closed mid-publish would."""

    def is_closed(self):
        return False

    def call_soon_threadsafe(self, callback, *args):
        raise RuntimeError("Event loop is closed")


def test_publish_survives_loop_closing_mid_delivery():
    async def scenario():
        broker = Broker()
        sub = broker.subscribe("chat:gone")
        sub._loop = _ClosingLoop()
        assert broker.publish("chat:gone", {"n": 1}) == 1
        assert sub.active is False
        assert broker.subscriber_count("chat:gone") == 0

    asyncio.run(scenario())


def test_publish_after_loop_closed_drops_subscriber():
    broker = Broker()

    async def scenario():
        return broker.subscribe("requests:u2")

    sub = asyncio.run(scenario())
    broker.publish("requests:u2", {"n": 1})
    assert sub.active is False
    assert broker.subscriber_count("requests:u2") == 0
