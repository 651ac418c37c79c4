"""Shared fixtures and reusable dummy steps for flow engine tests.

Every step here is a plain ``fn(shared, ctx)`` function over dict state.
"""

from __future__ import annotations

import asyncio

import pytest

from stepflow import Hooks

# ---------------------------------------------------------------------------
# Reusable dummy steps
# ---------------------------------------------------------------------------


def noop(shared, ctx):
    return None


def set_one(shared, ctx):
    shared["v"] = 1


def increment(shared, ctx):
    shared["v"] += 1


def boom(shared, ctx):
    raise RuntimeError("boom")


async def async_increment(shared, ctx):
    await asyncio.sleep(0)  # yield to event loop
    shared["v"] += 1


class Counter:
    """Callable step counting its invocations; optionally fails every time."""

    def __init__(self, fail: bool = False):
        self.calls = 0
        self.fail = fail

    def __call__(self, shared, ctx):
        self.calls += 1
        if self.fail:
            raise RuntimeError(f"attempt {self.calls} failed")


class HookLog:
    """Records every hook invocation as ``(slot, index)`` tuples."""

    def __init__(self):
        self.events: list[tuple] = []

    def hooks(self, tag: str = "") -> Hooks:
        return Hooks(
            before_flow=lambda s, ctx: self.events.append((f"{tag}before_flow", None)),
            before_step=lambda meta, s, ctx: self.events.append((f"{tag}before_step", meta.index)),
            after_step=lambda meta, s, ctx: self.events.append((f"{tag}after_step", meta.index)),
            on_error=lambda meta, err, s, ctx: self.events.append((f"{tag}on_error", meta.index)),
            after_flow=lambda s, ctx: self.events.append((f"{tag}after_flow", None)),
        )

    def slots(self, name: str) -> list:
        return [index for slot, index in self.events if slot == name]


async def collect(stream) -> list:
    return [event async for event in stream]


# ---------------------------------------------------------------------------
# Pytest fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def hook_log():
    return HookLog()


@pytest.fixture
def shared():
    return {"v": 0}
