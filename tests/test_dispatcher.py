"""Tests for the background dispatcher."""

import asyncio
import logging

import pytest

from persona_context.core.dispatcher import BackgroundDispatcher


@pytest.mark.asyncio
async def test_dispatch_and_drain():
    dispatcher = BackgroundDispatcher()
    done = []

    async def job(n):
        await asyncio.sleep(0.01)
        done.append(n)

    dispatcher.dispatch(job(1), name="one")
    dispatcher.dispatch(job(2), name="two")
    assert dispatcher.pending == 2
    await dispatcher.drain(timeout=1)
    assert sorted(done) == [1, 2]
    assert dispatcher.dispatched == 2
    assert dispatcher.pending == 0


@pytest.mark.asyncio
async def test_failures_are_counted_and_logged(caplog):
    dispatcher = BackgroundDispatcher()

    async def boom():
        raise RuntimeError("extractor down")

    with caplog.at_level(logging.ERROR, logger="persona_context.core.dispatcher"):
        dispatcher.dispatch(boom(), name="extract:conv-1")
        await dispatcher.drain(timeout=1)
        await asyncio.sleep(0)

    assert dispatcher.failed == 1
    assert "extract:conv-1" in caplog.text


@pytest.mark.asyncio
async def test_drain_with_nothing_pending():
    await BackgroundDispatcher().drain()
