"""Unit tests for control primitives: branch, loop, batch, label / jump."""

from __future__ import annotations

import pytest

from stepflow import (
    FINISH,
    CycleLimitError,
    Flow,
    FlowConfigError,
    FlowError,
    Jump,
    RunOptions,
    StepKind,
)
from tests.flow_engine.conftest import Counter, boom, increment, noop

# ---------------------------------------------------------------------------
# branch
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestBranch:
    def _flow(self, key):
        return (
            Flow()
            .branch(
                lambda s, ctx: key,
                {
                    "a": lambda s, ctx: s.setdefault("took", "a"),
                    "default": lambda s, ctx: s.setdefault("took", "default"),
                },
            )
            .then(lambda s, ctx: s.setdefault("after", True))
        )

    def test_dispatches_on_router_key(self):
        shared = {}
        self._flow("a").run(shared)
        assert shared == {"took": "a", "after": True}

    def test_unknown_key_falls_back_to_default(self):
        shared = {}
        self._flow("zzz").run(shared)
        assert shared["took"] == "default"

    def test_none_key_selects_default(self):
        shared = {}
        self._flow(None).run(shared)
        assert shared["took"] == "default"

    def test_no_match_and_no_default_is_noop(self):
        shared = {}
        Flow().branch(lambda s, ctx: "x", {"y": boom}).then(
            lambda s, ctx: s.setdefault("after", True)
        ).run(shared)
        assert shared == {"after": True}

    def test_async_router(self):
        async def route(s, ctx):
            return "b"

        shared = {}
        Flow().branch(route, {"b": lambda s, ctx: s.setdefault("b", 1)}).run(shared)
        assert shared == {"b": 1}

    def test_branch_body_can_jump(self):
        shared = {"v": 0}
        flow = (
            Flow()
            .label("top")
            .then(increment)
            .branch(
                lambda s, ctx: "again" if s["v"] < 3 else "stop",
                {"again": lambda s, ctx: Jump("top"), "stop": noop},
            )
        )
        flow.run(shared)
        assert shared["v"] == 3

    def test_branch_failure_label(self):
        with pytest.raises(FlowError) as exc_info:
            Flow().then(noop).branch(lambda s, ctx: "x", {"x": boom}).run({})
        assert exc_info.value.step == "branch (step 1)"

    def test_branch_retries_body(self):
        body = Counter(fail=True)
        with pytest.raises(FlowError):
            Flow().branch(lambda s, ctx: "x", {"x": body}, {"retries": 3}).run({})
        assert body.calls == 3


# ---------------------------------------------------------------------------
# loop
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestLoop:
    def test_loop_runs_while_condition_holds(self):
        shared = {"v": 0}
        Flow().loop(lambda s, ctx: s["v"] < 5, lambda b: b.then(increment)).run(shared)
        assert shared["v"] == 5

    def test_zero_iterations(self):
        body = Counter()
        shared = {}
        Flow().loop(lambda s, ctx: False, lambda b: b.then(body)).then(
            lambda s, ctx: s.setdefault("after", True)
        ).run(shared)
        assert body.calls == 0
        assert shared == {"after": True}

    def test_body_may_be_a_flow(self):
        shared = {"v": 0}
        body = Flow().then(increment).then(increment)
        Flow().loop(lambda s, ctx: s["v"] < 4, body).run(shared)
        assert shared["v"] == 4

    def test_inner_steps_run_from_first_step_each_iteration(self):
        seen = []
        shared = {"n": 0}

        def first(s, ctx):
            seen.append("first")

        def second(s, ctx):
            seen.append("second")
            s["n"] += 1

        Flow().loop(lambda s, ctx: s["n"] < 2, lambda b: b.then(first).then(second)).run(shared)
        assert seen == ["first", "second", "first", "second"]

    def test_failure_labelled_with_inner_index(self):
        flow = (
            Flow()
            .then(noop)
            .then(noop)
            .loop(lambda s, ctx: True, lambda b: b.then(noop).then(boom))
        )
        with pytest.raises(FlowError) as exc_info:
            flow.run({})
        err = exc_info.value
        assert err.step == "loop (step 1)"
        assert err.index == 1
        assert isinstance(err.cause, RuntimeError)

    def test_nested_loop_failure_reports_position_in_own_body(self):
        flow = Flow().loop(
            lambda s, ctx: True,
            lambda outer: outer.then(noop).loop(
                lambda s, ctx: True, lambda inner: inner.then(noop).then(noop).then(boom)
            ),
        )
        with pytest.raises(FlowError) as exc_info:
            flow.run({})
        err = exc_info.value
        assert err.step == "loop (step 1)"
        assert err.index == 1
        assert isinstance(err.cause, RuntimeError)

    def test_batch_inside_loop_failure_label(self):
        flow = Flow().loop(
            lambda s, ctx: True,
            lambda outer: outer.then(noop)
            .then(noop)
            .batch(lambda s, ctx: [1, 2], lambda b: b.then(boom)),
        )
        with pytest.raises(FlowError) as exc_info:
            flow.run({})
        assert exc_info.value.step == "loop (step 2)"
        assert exc_info.value.index == 2

    def test_user_labelled_failure_keeps_label(self):
        original = FlowError("validation", ValueError("nope"))

        def raise_labelled(s, ctx):
            raise original

        with pytest.raises(FlowError) as exc_info:
            Flow().loop(lambda s, ctx: True, lambda b: b.then(raise_labelled)).run({})
        assert exc_info.value is original

    def test_inner_retries_apply(self):
        body = Counter(fail=True)
        with pytest.raises(FlowError):
            Flow().loop(lambda s, ctx: True, lambda b: b.then(body, {"retries": 2})).run({})
        assert body.calls == 2


# ---------------------------------------------------------------------------
# batch
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestBatch:
    def test_empty_batch_never_runs_body(self):
        body = Counter()
        Flow().batch(lambda s, ctx: [], lambda b: b.then(body)).run({})
        assert body.calls == 0

    def test_items_processed_in_order(self):
        shared = {"seen": []}
        Flow().batch(
            lambda s, ctx: [1, 2, 3],
            lambda b: b.then(lambda s, ctx: s["seen"].append(ctx.item)),
        ).run(shared)
        assert shared["seen"] == [1, 2, 3]

    def test_absent_slot_is_restored(self):
        after = {}

        def check(s, ctx):
            after["present"] = ctx.has_slot("batch_item")

        Flow().batch(lambda s, ctx: [1, 2], lambda b: b.then(noop)).then(check).run({})
        assert after == {"present": False}

    def test_present_slot_is_restored(self):
        after = {}

        def preset(s, ctx):
            ctx.set_slot("batch_item", "outer")

        def check(s, ctx):
            after["item"] = ctx.item

        Flow().then(preset).batch(lambda s, ctx: ["x", "y"], lambda b: b.then(noop)).then(
            check
        ).run({})
        assert after == {"item": "outer"}

    def test_custom_key_and_nesting(self):
        shared = {"pairs": [], "users": [{"name": "a", "posts": [1, 2]}, {"name": "b", "posts": [3]}]}

        def record(s, ctx):
            s["pairs"].append((ctx.slot("user")["name"], ctx.slot("post")))

        flow = Flow().batch(
            lambda s, ctx: s["users"],
            lambda users: users.batch(
                lambda s, ctx: ctx.slot("user")["posts"],
                lambda posts: posts.then(record),
                key="post",
            ),
            key="user",
        )
        flow.run(shared)
        assert shared["pairs"] == [("a", 1), ("a", 2), ("b", 3)]

    def test_async_item_source(self):
        async def items(s, ctx):
            return ["p", "q"]

        shared = {"seen": []}
        Flow().batch(items, lambda b: b.then(lambda s, ctx: s["seen"].append(ctx.item))).run(shared)
        assert shared["seen"] == ["p", "q"]

    def test_failure_labelled_batch(self):
        with pytest.raises(FlowError) as exc_info:
            Flow().batch(lambda s, ctx: [1], lambda b: b.then(boom)).run({})
        assert exc_info.value.step == "batch (step 0)"

    def test_slot_restored_after_failure(self):
        state = {}

        def capture(meta, err, s, ctx):
            state["present"] = ctx.has_slot("batch_item")

        flow = Flow().batch(lambda s, ctx: [1], lambda b: b.then(boom))
        flow.add_hooks(on_error=capture)
        with pytest.raises(FlowError):
            flow.run({})
        assert state == {"present": False}


# ---------------------------------------------------------------------------
# label / jump
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestLabelJump:
    def test_label_step_kind(self):
        flow = Flow().label("start")
        assert flow.steps[0].kind is StepKind.LABEL

    def test_jump_back_repeats_steps(self):
        shared = {"v": 0}

        def step(s, ctx):
            s["v"] += 1
            if s["v"] < 3:
                return Jump("again")

        Flow().label("again").then(step).run(shared)
        assert shared["v"] == 3

    def test_jump_forward_skips_steps(self):
        skipped = Counter()
        shared = {}
        Flow().then(lambda s, ctx: Jump("end")).then(skipped).label("end").then(
            lambda s, ctx: s.setdefault("end", True)
        ).run(shared)
        assert skipped.calls == 0
        assert shared == {"end": True}

    def test_labels_are_not_hook_visible(self):
        indices = []
        flow = Flow().label("a").then(noop).label("b").then(noop)
        flow.add_hooks(before_step=lambda meta, s, ctx: indices.append(meta.index))
        flow.run({})
        assert indices == [1, 3]

    def test_jump_counts_cycles(self):
        seen = {}

        def step(s, ctx):
            s["n"] = s.get("n", 0) + 1
            if s["n"] < 4:
                return Jump("top")
            seen["cycles"] = ctx.cycles

        Flow().label("top").then(step).run({})
        assert seen == {"cycles": 3}

    def test_cycle_ceiling_stops_infinite_jump(self):
        body = Counter()

        def forever(s, ctx):
            body(s, ctx)
            return Jump("loop")

        flow = Flow().label("loop").then(forever)
        with pytest.raises(FlowError) as exc_info:
            flow.run({}, options=RunOptions(max_cycles=3))
        assert isinstance(exc_info.value.cause, CycleLimitError)
        # three jumps succeed, the fourth trips the ceiling
        assert body.calls == 4

    def test_unknown_label_fails_the_step(self):
        with pytest.raises(FlowError) as exc_info:
            Flow().then(lambda s, ctx: Jump("missing")).run({})
        assert isinstance(exc_info.value.cause, FlowConfigError)
        assert "missing" in str(exc_info.value)

    def test_finish_ends_chain(self):
        after = Counter()
        Flow().then(lambda s, ctx: FINISH).then(after).run({})
        assert after.calls == 0

    def test_finish_in_loop_body_ends_iteration_only(self):
        skipped = Counter()
        shared = {"v": 0}

        def step(s, ctx):
            s["v"] += 1
            return FINISH

        Flow().loop(lambda s, ctx: s["v"] < 3, lambda b: b.then(step).then(skipped)).run(shared)
        assert shared["v"] == 3
        assert skipped.calls == 0

    def test_jumps_resolve_within_inner_chain(self):
        shared = {"inner": 0, "rounds": 0}

        def inner_step(s, ctx):
            s["inner"] += 1
            if s["inner"] % 2:
                return Jump("inner")

        def count_round(s, ctx):
            s["rounds"] += 1

        body = Flow().label("inner").then(inner_step).then(count_round)
        Flow().loop(lambda s, ctx: s["rounds"] < 2, body).run(shared)
        assert shared == {"inner": 4, "rounds": 2}

    def test_other_return_values_continue(self):
        shared = {"v": 0}
        Flow().then(lambda s, ctx: "#not-a-jump").then(increment).run(shared)
        assert shared["v"] == 1

    def test_async_generator_yielding_jump(self):
        shared = {"v": 0, "chunks": []}

        async def step(s, ctx):
            s["v"] += 1
            yield f"tick {s['v']}"
            if s["v"] < 2:
                yield Jump("top")

        flow = Flow().label("top").then(step)
        flow.add_hooks(before_flow=lambda s, ctx: ctx.subscribe(s["chunks"].append))
        flow.run(shared)
        assert shared["v"] == 2
        assert shared["chunks"] == ["tick 1", "tick 2"]
