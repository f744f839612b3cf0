"""
Unit tests for price feed and buffers
"""

import asyncio
from datetime import timedelta

import pytest

from trade_engine.pipeline.feed import InMemoryFeed, PriceBuffer, PriceTick


def test_buffer_rejects_out_of_order_and_bad_prices(t0):
    buffer = PriceBuffer()
    assert buffer.append(PriceTick("BTCUSDT", 100.0, t0 + timedelta(seconds=2)))
    assert not buffer.append(PriceTick("BTCUSDT", 101.0, t0 + timedelta(seconds=1)))
    assert not buffer.append(PriceTick("BTCUSDT", 0.0, t0 + timedelta(seconds=3)))
    assert buffer.append(PriceTick("BTCUSDT", 100.5, t0 + timedelta(seconds=2)))

    assert len(buffer) == 2
    assert buffer.last == (t0 + timedelta(seconds=2), 100.5)


def test_buffer_window_and_age(t0):
    buffer = PriceBuffer(max_samples=100, max_age_sec=30)
    for k in range(60):
        buffer.append(PriceTick("BTCUSDT", 100.0 + k, t0 + timedelta(seconds=k)))

    # старше 30s от последнего тика вытеснены
    assert len(buffer) == 31
    assert buffer.prices(5) == [154.0, 155.0, 156.0, 157.0, 158.0, 159.0]
    assert buffer.prices(2, now=t0 + timedelta(seconds=40)) == [138.0, 139.0, 140.0]
    assert PriceBuffer().window(10) == []


@pytest.mark.asyncio
async def test_in_memory_feed(t0):
    feed = InMemoryFeed()
    received = []

    async def consume():
        async for tick in feed.subscribe("conn-1", "BTCUSDT"):
            received.append(tick.price)

    task = asyncio.create_task(consume())
    await asyncio.sleep(0)

    await feed.publish("conn-1", PriceTick("BTCUSDT", 100.0, t0))
    await feed.publish("conn-1", PriceTick("ETHUSDT", 2000.0, t0))
    await feed.publish("conn-2", PriceTick("BTCUSDT", 1.0, t0))
    await feed.close("conn-1")
    await asyncio.wait_for(task, timeout=1)

    assert received == [100.0]
    history = await feed.history("conn-1", "BTCUSDT", t0 - timedelta(seconds=1), t0)
    assert [tick.price for tick in history] == [100.0]


@pytest.mark.asyncio
async def test_history_range(t0):
    feed = InMemoryFeed()
    feed.load_history("conn-1", [PriceTick("BTCUSDT", float(k), t0 + timedelta(minutes=k)) for k in range(10)])

    ticks = await feed.history("conn-1", "BTCUSDT", t0 + timedelta(minutes=3), t0 + timedelta(minutes=5))
    assert [tick.price for tick in ticks] == [3.0, 4.0, 5.0]
    assert await feed.history("conn-1", "ETHUSDT", t0, t0 + timedelta(hours=1)) == []
