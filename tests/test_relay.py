"""
Tests for the bidirectional relay.

Run with: pytest tests/test_relay.py -v
"""

import asyncio

import pytest

from helpers import open_stream_pair
from kohakubore.relay import relay

pytestmark = [pytest.mark.integration]


class TestRelay:
    @pytest.mark.asyncio
    async def test_copies_both_directions(self):
        (a_srv_r, a_srv_w), (a_r, a_w) = await open_stream_pair()
        (b_srv_r, b_srv_w), (b_r, b_w) = await open_stream_pair()

        task = asyncio.create_task(relay(a_srv_r, a_srv_w, b_srv_r, b_srv_w, name="t"))

        a_w.write(b"ping")
        await a_w.drain()
        assert await asyncio.wait_for(b_r.readexactly(4), 2.0) == b"ping"

        b_w.write(b"pong!")
        await b_w.drain()
        assert await asyncio.wait_for(a_r.readexactly(5), 2.0) == b"pong!"

        a_w.close()
        sent, received = await asyncio.wait_for(task, 2.0)
        assert (sent, received) == (4, 5)

    @pytest.mark.asyncio
    async def test_one_side_closing_closes_the_other(self):
        (a_srv_r, a_srv_w), (a_r, a_w) = await open_stream_pair()
        (b_srv_r, b_srv_w), (b_r, b_w) = await open_stream_pair()

        task = asyncio.create_task(relay(a_srv_r, a_srv_w, b_srv_r, b_srv_w))

        b_w.close()
        await asyncio.wait_for(task, 2.0)

        # The far side sees EOF without sending anything itself
        assert await asyncio.wait_for(a_r.read(), 2.0) == b""

    @pytest.mark.asyncio
    async def test_large_payload(self):
        (a_srv_r, a_srv_w), (a_r, a_w) = await open_stream_pair()
        (b_srv_r, b_srv_w), (b_r, b_w) = await open_stream_pair()

        task = asyncio.create_task(relay(a_srv_r, a_srv_w, b_srv_r, b_srv_w))
        payload = bytes(range(256)) * 4096

        a_w.write(payload)
        await a_w.drain()
        assert await asyncio.wait_for(b_r.readexactly(len(payload)), 5.0) == payload

        a_w.close()
        await asyncio.wait_for(task, 2.0)
