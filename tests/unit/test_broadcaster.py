# Copyright 2025 Gowtham Rao <rao@ohdsi.org>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

import asyncio
import json
from datetime import datetime, timezone

import pytest

from py_ingest_trials.broadcaster import WELCOME_MESSAGE, EventBroadcaster
from py_ingest_trials.exceptions import SubscriberLimitReached
from py_ingest_trials.models import AnomalyType, OutlierEvent, OutlierLog

pytestmark = pytest.mark.unit


def outlier_event() -> OutlierEvent:
    return OutlierEvent(
        data=OutlierLog(
            id=1,
            patient_id="P001",
            message="Symptom: Headache (severity 9)",
            type=AnomalyType.SYMPTOM,
            reported_date=datetime(2024, 3, 2, tzinfo=timezone.utc),
            created_at=datetime(2024, 6, 1, tzinfo=timezone.utc),
            severity=9,
        )
    )


@pytest.mark.asyncio
async def test_subscriber_is_welcomed():
    broadcaster = EventBroadcaster()

    subscription = broadcaster.subscribe()
    welcome = json.loads(await subscription.receive(timeout=1))

    assert welcome == {"type": "connection", "data": {"message": WELCOME_MESSAGE}}
    assert broadcaster.subscriber_count == 1


@pytest.mark.asyncio
async def test_broadcast_reaches_every_subscriber():
    """Tests the serialized payload seen by subscribers."""
    broadcaster = EventBroadcaster()
    first, second = broadcaster.subscribe(), broadcaster.subscribe()
    first.drain()
    second.drain()

    assert broadcaster.broadcast(outlier_event()) == 2

    payload = json.loads(await first.receive(timeout=1))
    assert payload["type"] == "outlier"
    assert payload["data"]["patientId"] == "P001"
    assert payload["data"]["message"] == "Symptom: Headache (severity 9)"
    assert payload["data"]["type"] == "symptom"
    assert payload["data"]["severity"] == 9
    assert "reportedDate" in payload["data"]
    assert "createdAt" in payload["data"]
    assert [json.loads(p) for p in second.drain()] == [payload]


@pytest.mark.asyncio
async def test_subscriber_limit():
    broadcaster = EventBroadcaster(max_subscribers=1)
    broadcaster.subscribe()

    with pytest.raises(SubscriberLimitReached):
        broadcaster.subscribe()


@pytest.mark.asyncio
async def test_full_queue_drops_only_for_that_subscriber():
    """Tests at-most-once delivery when a subscriber falls behind."""
    broadcaster = EventBroadcaster(queue_size=1)
    slow = broadcaster.subscribe()  # Queue already holds the welcome event.
    fast = broadcaster.subscribe()
    fast.drain()

    assert broadcaster.broadcast(outlier_event()) == 1
    assert len(slow.drain()) == 1
    assert len(fast.drain()) == 1


@pytest.mark.asyncio
async def test_closed_subscription_stops_receiving():
    broadcaster = EventBroadcaster()

    async with broadcaster.subscribe() as subscription:
        assert broadcaster.subscriber_count == 1

    assert subscription.closed
    assert broadcaster.subscriber_count == 0
    assert broadcaster.broadcast(outlier_event()) == 0


@pytest.mark.asyncio
async def test_receive_times_out_when_idle():
    broadcaster = EventBroadcaster()
    subscription = broadcaster.subscribe()
    subscription.drain()

    with pytest.raises(asyncio.TimeoutError):
        await subscription.receive(timeout=0.01)


@pytest.mark.asyncio
async def test_async_iteration_ends_after_close():
    broadcaster = EventBroadcaster()
    subscription = broadcaster.subscribe()
    broadcaster.broadcast(outlier_event())
    subscription.close()

    payloads = [payload async for payload in subscription]

    assert len(payloads) == 2
    assert json.loads(payloads[1])["type"] == "outlier"


@pytest.mark.asyncio
async def test_close_wakes_a_waiting_consumer():
    """Tests that closing from another task ends an iteration blocked on an empty queue."""
    broadcaster = EventBroadcaster()
    subscription = broadcaster.subscribe()
    received = []

    async def consume():
        async for payload in subscription:
            received.append(payload)

    consumer = asyncio.create_task(consume())
    await asyncio.sleep(0.01)
    subscription.close()

    await asyncio.wait_for(consumer, timeout=1)
    assert len(received) == 1
    assert json.loads(received[0])["type"] == "connection"


@pytest.mark.parametrize("max_subscribers, queue_size", [(0, 256), (100, 0), (100, -1)])
def test_sizes_must_be_positive(max_subscribers: int, queue_size: int):
    with pytest.raises(ValueError, match="must both be positive"):
        EventBroadcaster(max_subscribers=max_subscribers, queue_size=queue_size)
