"""Tests for cluster fan-out and the concurrency limiter."""

import asyncio

import pytest

from conftest import make_edge, make_node, make_workflow
from operations.base import FunctionResult
from workflow.cluster import ConcurrencyLimiter, get_all_cluster_outputs, get_cluster_outputs
from workflow.compiler import CompileOptions
from workflow.engine import ExecutionOptions, run_workflow


def cluster_workflow(sub_count, sub_function="test.echo", root_function="core.passThrough", **sub_fields):
    nodes = [
        make_node("root", root_function, nodeType="clusterRoot", params={"value": "root"}),
        make_node("after", "core.passThrough"),
        make_node("on_error", "core.passThrough"),
    ]
    for i in range(sub_count):
        nodes.append(
            make_node(f"sub{i}", sub_function, nodeType="subNode", parentId="root", params={"index": i}, **sub_fields)
        )
    edges = [make_edge("root", "after"), make_edge("root", "on_error", "error")]
    edges += [make_edge("root", f"sub{i}", edgeType="subnode") for i in range(sub_count)]
    return make_workflow(nodes, edges, start="root")


@pytest.mark.unit
class TestConcurrencyLimiter:
    async def test_never_exceeds_limit(self):
        limiter = ConcurrencyLimiter(3)
        peak = 0

        async def work():
            nonlocal peak
            peak = max(peak, limiter.running)
            await asyncio.sleep(0.005)

        await asyncio.gather(*(limiter.run(work) for _ in range(12)))
        assert peak == 3
        assert limiter.running == 0
        assert limiter.waiting == 0

    async def test_returns_values(self):
        limiter = ConcurrencyLimiter(2)

        async def value(n):
            return n * 10

        results = await asyncio.gather(*(limiter.run(lambda n=n: value(n)) for n in range(5)))
        assert results == [0, 10, 20, 30, 40]

    async def test_fifo_admission(self):
        limiter = ConcurrencyLimiter(1)
        order = []

        async def work(n):
            order.append(n)
            await asyncio.sleep(0)

        await asyncio.gather(*(limiter.run(lambda n=n: work(n)) for n in range(6)))
        assert order == list(range(6))

    async def test_slot_released_on_error(self):
        limiter = ConcurrencyLimiter(1)

        async def boom():
            raise RuntimeError("fail")

        with pytest.raises(RuntimeError):
            await limiter.run(boom)
        assert limiter.running == 0

    async def test_cancelled_waiter_leaves_queue(self):
        limiter = ConcurrencyLimiter(1)
        release = asyncio.Event()

        async def hold():
            await release.wait()

        holder = asyncio.create_task(limiter.run(hold))
        await asyncio.sleep(0)
        waiter = asyncio.create_task(limiter.run(hold))
        await asyncio.sleep(0)
        assert limiter.waiting == 1

        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter
        assert limiter.waiting == 0

        release.set()
        await holder
        assert limiter.running == 0

    def test_rejects_zero(self):
        with pytest.raises(ValueError):
            ConcurrencyLimiter(0)


@pytest.mark.unit
class TestClusterExecution:
    async def test_sub_nodes_bounded_concurrency(self, registry):
        in_flight = 0
        peak = 0

        @registry.function("test.track")
        async def track(params, ctx):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.005)
            in_flight -= 1
            return FunctionResult.ok(params["index"])

        result = await run_workflow(cluster_workflow(25, "test.track"), registry)

        assert result.success is True
        assert peak <= 10
        assert peak > 1
        outputs = get_cluster_outputs(result.store, "root")
        assert outputs == {f"sub{i}": i for i in range(25)}
        assert "[root] Executing 25 sub-nodes in parallel (max concurrency: 10)" in result.logs

    async def test_custom_concurrency(self, registry):
        in_flight = 0
        peak = 0

        @registry.function("test.track")
        async def track(params, ctx):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.002)
            in_flight -= 1
            return FunctionResult.ok()

        await run_workflow(
            cluster_workflow(8, "test.track"),
            registry,
            compile_options=CompileOptions(cluster_max_concurrency=2),
        )
        assert peak == 2

    async def test_failing_sub_node_does_not_stop_siblings(self, registry):
        @registry.function("test.maybe")
        async def maybe(params, ctx):
            if params["index"] == 1:
                return FunctionResult.fail("sub failed")
            return FunctionResult.ok(params["index"])

        result = await run_workflow(cluster_workflow(4, "test.maybe"), registry)

        # Every sibling still ran
        assert all(f"sub{i}" in result.store.node_results for i in range(4))
        # Failure recorded, routing followed the root's success
        assert result.success is False
        assert result.error.node_id == "sub1"
        assert "after" in result.store.node_results
        assert "on_error" not in result.store.node_results
        assert get_cluster_outputs(result.store, "root")["sub1"] is None

    async def test_root_failure_skips_sub_nodes(self, registry):
        result = await run_workflow(cluster_workflow(3, root_function="test.fail"), registry)

        assert not any(f"sub{i}" in result.store.node_results for i in range(3))
        assert get_cluster_outputs(result.store, "root") is None
        assert "on_error" in result.store.node_results

    async def test_completion_log_line(self, registry):
        result = await run_workflow(cluster_workflow(2), registry)
        assert "[✓] root: completed (with sub-nodes)" in result.logs
        assert "[✓] sub0: completed" in result.logs

    async def test_sub_nodes_share_store(self, registry):
        nodes = [
            make_node("root", nodeType="clusterRoot"),
            make_node("w1", "core.setValue", nodeType="subNode", parentId="root", params={"key": "a", "value": 1}),
            make_node("w2", "core.setValue", nodeType="subNode", parentId="root", params={"key": "b", "value": 2}),
        ]
        result = await run_workflow(make_workflow(nodes, start="root"), registry)

        assert result.data["a"] == 1
        assert result.data["b"] == 2
        assert result.data["_subNodeOutputs"] == {"w1": 1, "w2": 2}
        assert get_all_cluster_outputs(result.store) == {"root": {"w1": 1, "w2": 2}}

    async def test_sub_nodes_bypass_debug_gate(self, registry):
        gated = []
        result = await run_workflow(
            cluster_workflow(3),
            registry,
            options=ExecutionOptions(on_before_node=gated.append),
        )
        assert result.success is True
        assert "root" in gated
        assert not any(node_id.startswith("sub") for node_id in gated)
