"""Tests for the DAG workflow executor."""
import threading
import time

import pytest

from flowforge.errors import GraphCycleError, GraphValidationError, WorkflowExecutionFailed
from node_registry import NodeRegistry
from node_sdk import NodeItem, TransformNode
from nodepacks.core.manifest import register_nodes
from workflow_runtime import (
    CancellationToken,
    ExecutionObserver,
    ExecutionStatus,
    NodeStatus,
    WorkflowExecution,
    WorkflowExecutor,
    parse_workflow,
)


class SleepNode(TransformNode):
    """Sleeps, then passes items through; records teardown."""

    type = "test.sleep"
    torn_down = threading.Event()

    description = {
        "displayName": "Sleep",
        "name": "sleep",
        "group": ["test"],
        "inputs": ["main"],
        "outputs": ["main"],
    }

    properties = {
        "parameters": [
            {"displayName": "Seconds", "name": "seconds", "type": "number", "default": 0.5},
        ],
    }

    def process(self, items, parameters, context):
        time.sleep(parameters.get("seconds"))
        return list(items)

    def teardown(self):
        SleepNode.torn_down.set()


class FailNode(TransformNode):
    type = "test.fail"

    description = {
        "displayName": "Fail",
        "name": "fail",
        "group": ["test"],
        "inputs": ["main"],
        "outputs": ["main"],
    }

    def process(self, items, parameters, context):
        raise self.error("boom", context)


@pytest.fixture
def test_registry():
    registry = NodeRegistry()
    registry.register_pack(*register_nodes())
    registry.register_node(SleepNode)
    registry.register_node(FailNode)
    registry.freeze()
    SleepNode.torn_down.clear()
    return registry


@pytest.fixture
def executor(test_registry, engine):
    return WorkflowExecutor(test_registry, engine, max_workers=4)


def trigger(node_id="start", name="Start"):
    return {"id": node_id, "name": name, "type": "flowforge.manualTrigger"}


def set_node(node_id, values, **extra):
    return {"id": node_id, "type": "flowforge.set", "parameters": {"values": values}, **extra}


def edge(source, target, source_key="main", target_key="main", **extra):
    return {
        "sourceNodeId": source,
        "sourceOutputKey": source_key,
        "targetNodeId": target,
        "targetInputKey": target_key,
        **extra,
    }


def workflow(nodes, connections, **extra):
    return parse_workflow({"id": "wf-test", "name": "Test", "nodes": nodes, "connections": connections, **extra})


def output_json(result):
    return [item.json_data for item in result.output_items]


class TestLinearExecution:
    def test_simple_workflow(self, executor, simple_workflow):
        result = executor.execute(simple_workflow, input_data=[{"name": "Ada"}])

        assert result.status == ExecutionStatus.COMPLETED
        assert output_json(result) == [{"name": "Ada", "greeting": "Hello Ada"}]
        assert result.execution.output_data[0]["json"] == {"name": "Ada", "greeting": "Hello Ada"}
        assert result.execution.progress.completed_nodes == 2
        assert result.execution.progress.total_nodes == 2
        assert set(result.execution.node_results) == {"start", "set"}

    def test_execution_record_input_used(self, executor, simple_workflow):
        execution = WorkflowExecution(id="exec-1", workflow_id="wf-simple", input_data=[{"name": "Grace"}])

        result = executor.execute(simple_workflow, execution=execution)

        assert result.execution is execution
        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.started_at is not None and execution.finished_at is not None
        assert output_json(result)[0]["greeting"] == "Hello Grace"

    def test_non_trigger_start_node_receives_input(self, executor):
        graph = workflow([set_node("set", {"seen": "{{ $json.id }}"})], [])

        result = executor.execute(graph, input_data=[{"id": 1}, {"id": 2}])

        assert output_json(result) == [{"id": 1, "seen": 1}, {"id": 2, "seen": 2}]

    def test_reference_earlier_node_by_name(self, executor):
        graph = workflow(
            [
                trigger(),
                set_node("a", {"step": "a"}),
                set_node("b", {"origin": "{{ $('Start').first().name }}", "via": "{{ $node['a'].json.step }}"}),
            ],
            [edge("start", "a"), edge("a", "b")],
        )

        result = executor.execute(graph, input_data=[{"name": "Ada"}])

        assert output_json(result)[0]["origin"] == "Ada"
        assert output_json(result)[0]["via"] == "a"

    def test_workflow_variables(self, executor):
        graph = workflow([trigger(), set_node("s", {"region": "{{ $vars.region }}"})],
                         [edge("start", "s")], vars={"region": "eu"})

        assert output_json(executor.execute(graph))[0]["region"] == "eu"


class TestBranching:
    @pytest.fixture
    def branch_graph(self):
        return workflow(
            [
                trigger(),
                {
                    "id": "check",
                    "type": "flowforge.if",
                    "parameters": {"field": "age", "operation": "largerEqual", "value": "18"},
                },
                set_node("adult", {"group": "adult"}),
                set_node("minor", {"group": "minor"}),
                {"id": "after-minor", "type": "flowforge.noOp"},
            ],
            [
                edge("start", "check"),
                edge("check", "adult", source_key="true"),
                edge("check", "minor", source_key="false"),
                edge("minor", "after-minor"),
            ],
        )

    def test_only_taken_branch_runs(self, executor, branch_graph):
        result = executor.execute(branch_graph, input_data=[{"age": 30}])

        assert result.status == ExecutionStatus.COMPLETED
        assert result.node_results["adult"].status == NodeStatus.SUCCESS
        assert result.node_results["minor"].status == NodeStatus.SKIPPED
        assert result.node_results["after-minor"].status == NodeStatus.SKIPPED
        assert output_json(result) == [{"age": 30, "group": "adult"}]

    def test_items_split_across_branches(self, executor, branch_graph):
        result = executor.execute(branch_graph, input_data=[{"age": 30}, {"age": 9}])

        assert output_json(result) == [{"age": 30, "group": "adult"}, {"age": 9, "group": "minor"}]

    def test_disabled_node_skips_downstream(self, executor):
        graph = workflow(
            [trigger(), set_node("a", {"x": 1}, disabled=True), {"id": "b", "type": "flowforge.noOp"}],
            [edge("start", "a"), edge("a", "b")],
        )

        result = executor.execute(graph)

        assert result.status == ExecutionStatus.COMPLETED
        assert result.node_results["a"].status == NodeStatus.SKIPPED
        assert result.node_results["b"].status == NodeStatus.SKIPPED
        assert result.output_items == []

    def test_edge_conditions_filter_items(self, executor):
        graph = workflow(
            [trigger(), {"id": "pass", "type": "flowforge.noOp"}],
            [edge("start", "pass", conditions=["{{ $json.n > 1 }}"])],
        )

        result = executor.execute(graph, input_data=[{"n": 1}, {"n": 2}, {"n": 3}])

        assert output_json(result) == [{"n": 2}, {"n": 3}]


class TestMerging:
    def test_merge_node_waits_for_both_inputs(self, executor):
        graph = workflow(
            [
                trigger(),
                {"id": "slow", "type": "test.sleep", "parameters": {"seconds": 0.2}},
                set_node("fast", {"src": "fast"}),
                {"id": "merge", "type": "flowforge.merge", "parameters": {"mode": "append"}},
            ],
            [
                edge("start", "slow"),
                edge("start", "fast"),
                edge("slow", "merge", target_key="input1"),
                edge("fast", "merge", target_key="input2"),
            ],
        )

        result = executor.execute(graph, input_data=[{"src": "trigger"}])

        assert output_json(result) == [{"src": "trigger"}, {"src": "fast"}]

    def test_same_slot_concatenates_in_connection_order(self, executor):
        graph = workflow(
            [
                trigger(),
                set_node("one", {"src": "one"}),
                set_node("two", {"src": "two"}),
                {"id": "join", "type": "flowforge.noOp"},
            ],
            [
                edge("start", "one"),
                edge("start", "two"),
                edge("two", "join"),
                edge("one", "join"),
            ],
        )

        result = executor.execute(graph)

        assert [item["src"] for item in output_json(result)] == ["two", "one"]

    def test_merge_drops_empty_branch(self, executor):
        graph = workflow(
            [
                trigger(),
                {"id": "check", "type": "flowforge.if",
                 "parameters": {"field": "ok", "operation": "equal", "value": "true"}},
                {"id": "merge", "type": "flowforge.merge", "parameters": {"mode": "append"}},
            ],
            [
                edge("start", "check"),
                edge("check", "merge", source_key="true", target_key="input1"),
                edge("check", "merge", source_key="false", target_key="input2"),
            ],
        )

        result = executor.execute(graph, input_data=[{"ok": True}, {"ok": True}])

        assert result.node_results["merge"].status == NodeStatus.SUCCESS
        assert output_json(result) == [{"ok": True}, {"ok": True}]

    def test_merge_skipped_when_every_input_is_empty(self, executor):
        graph = workflow(
            [
                trigger(),
                {"id": "check", "type": "flowforge.if",
                 "parameters": {"field": "ok", "operation": "equal", "value": "true"}},
                {"id": "off", "type": "flowforge.noOp", "disabled": True},
                {"id": "merge", "type": "flowforge.merge"},
            ],
            [
                edge("start", "check"),
                edge("check", "off", source_key="true"),
                edge("off", "merge", target_key="input1"),
                edge("check", "merge", source_key="false", target_key="input2"),
            ],
        )

        result = executor.execute(graph, input_data=[{"ok": True}])

        assert result.node_results["off"].status == NodeStatus.SKIPPED
        assert result.node_results["merge"].status == NodeStatus.SKIPPED

    def test_non_merge_node_skipped_when_a_slot_is_empty(self, executor):
        graph = workflow(
            [
                trigger(),
                {"id": "check", "type": "flowforge.if",
                 "parameters": {"field": "ok", "operation": "equal", "value": "true"}},
                {"id": "join", "type": "flowforge.noOp"},
            ],
            [
                edge("start", "check"),
                edge("check", "join", source_key="false"),
            ],
        )

        result = executor.execute(graph, input_data=[{"ok": True}])

        assert result.node_results["join"].status == NodeStatus.SKIPPED


class TestErrorHandling:
    def test_fail_fast(self, executor):
        graph = workflow(
            [trigger(), {"id": "fail", "name": "Fail", "type": "test.fail"}, set_node("after", {"x": 1})],
            [edge("start", "fail"), edge("fail", "after")],
        )

        result = executor.execute(graph)

        assert result.status == ExecutionStatus.FAILED
        assert result.execution.error == "boom"
        assert result.execution.error_node_id == "fail"
        assert result.node_results["fail"].status == NodeStatus.ERROR
        assert "after" not in result.node_results
        assert result.execution.output_data == []
        with pytest.raises(WorkflowExecutionFailed) as exc_info:
            result.raise_for_status()
        assert exc_info.value.node_id == "fail"

    def test_continue_on_fail_routes_error_item(self, executor):
        graph = workflow(
            [
                trigger(),
                {"id": "fail", "type": "test.fail", "continueOnFail": True},
                set_node("after", {"handled": True}),
            ],
            [edge("start", "fail"), edge("fail", "after")],
        )

        result = executor.execute(graph)

        assert result.status == ExecutionStatus.COMPLETED
        assert result.node_results["fail"].status == NodeStatus.ERROR
        assert result.node_results["fail"].error == "boom"
        assert output_json(result) == [{"error": "boom", "handled": True}]

    def test_invalid_configuration_fails_node(self, executor):
        graph = workflow(
            [trigger(), {"id": "sort", "type": "flowforge.sort", "parameters": {}}],
            [edge("start", "sort")],
        )

        result = executor.execute(graph)

        assert result.status == ExecutionStatus.FAILED
        assert "Missing required parameter: field" in result.execution.error
        assert result.execution.error_node_id == "sort"

    def test_expression_error_fails_node(self, executor):
        graph = workflow(
            [trigger(), set_node("bad", {"x": "{{ $('Missing').first() }}"})],
            [edge("start", "bad")],
        )

        result = executor.execute(graph)

        assert result.status == ExecutionStatus.FAILED
        assert "Referenced node 'Missing' has no output" in result.execution.error


class TestTimeouts:
    def test_execution_timeout(self, test_registry, engine):
        executor = WorkflowExecutor(test_registry, engine, execution_timeout=0.1)
        graph = workflow(
            [trigger(), {"id": "sleep", "type": "test.sleep", "parameters": {"seconds": 0.5}}],
            [edge("start", "sleep")],
        )

        result = executor.execute(graph)

        assert result.status == ExecutionStatus.TIMEOUT
        assert result.execution.error == "Execution timed out after 0.1s"
        assert result.output_items == []
        assert SleepNode.torn_down.wait(2)

    def test_node_timeout(self, executor):
        graph = workflow(
            [
                trigger(),
                {"id": "sleep", "name": "Sleep", "type": "test.sleep",
                 "parameters": {"seconds": 0.5}, "timeoutSeconds": 0.05},
            ],
            [edge("start", "sleep")],
        )

        result = executor.execute(graph)

        assert result.status == ExecutionStatus.FAILED
        assert result.execution.error == "Node Sleep timed out"
        assert result.execution.error_node_id == "sleep"

    def test_node_timeout_with_continue_on_fail(self, executor):
        graph = workflow(
            [
                trigger(),
                {"id": "sleep", "name": "Sleep", "type": "test.sleep", "continueOnFail": True,
                 "parameters": {"seconds": 0.5}, "timeoutSeconds": 0.05},
            ],
            [edge("start", "sleep")],
        )

        result = executor.execute(graph)

        assert result.status == ExecutionStatus.COMPLETED
        assert output_json(result) == [{"error": "Node Sleep timed out"}]


class TestCancellation:
    def test_cancelled_before_start(self, executor, simple_workflow):
        token = CancellationToken()
        token.cancel()

        result = executor.execute(simple_workflow, cancel_token=token)

        assert result.status == ExecutionStatus.CANCELLED
        assert result.node_results == {}

    def test_cancel_while_running(self, executor):
        graph = workflow(
            [
                trigger(),
                {"id": "sleep", "type": "test.sleep", "parameters": {"seconds": 0.2}},
                set_node("after", {"x": 1}),
            ],
            [edge("start", "sleep"), edge("sleep", "after")],
        )
        token = CancellationToken()
        timer = threading.Timer(0.05, token.cancel)
        timer.start()

        result = executor.execute(graph, cancel_token=token)
        timer.join()

        assert result.status == ExecutionStatus.CANCELLED
        assert "after" not in result.node_results


class TestGraphValidation:
    def test_cycle_rejected_before_running(self, executor):
        observer_calls = []

        class Recorder(ExecutionObserver):
            def execution_started(self, execution):
                observer_calls.append(execution.id)

        executor._observer = Recorder()
        graph = workflow(
            [trigger(), {"id": "a", "type": "flowforge.noOp"}, {"id": "b", "type": "flowforge.noOp"}],
            [edge("start", "a"), edge("a", "b"), edge("b", "a")],
        )

        with pytest.raises(GraphCycleError) as exc_info:
            executor.execute(graph)

        assert exc_info.value.node_ids == ["a", "b"]
        assert observer_calls == []

    def test_unknown_type_and_slot(self, executor):
        graph = workflow(
            [trigger(), {"id": "x", "type": "flowforge.nope"}, {"id": "check", "type": "flowforge.if",
                                                                "parameters": {"field": "a"}}],
            [edge("start", "check", source_key="other")],
        )

        with pytest.raises(GraphValidationError) as exc_info:
            executor.compile(graph)

        errors = exc_info.value.details["errors"]
        assert "Unknown node type: flowforge.nope (node x)" in errors
        assert "Node start has no output 'other'" in errors


class TestObserver:
    def test_lifecycle_callbacks(self, test_registry, engine, simple_workflow):
        events = []

        class Recorder(ExecutionObserver):
            def execution_started(self, execution):
                events.append(("started", execution.status.value))

            def node_started(self, execution, node_id, node_name, start_time):
                events.append(("node_started", node_id))

            def node_finished(self, execution, result):
                events.append(("node_finished", result.node_id, result.status.value))

            def execution_finished(self, execution):
                events.append(("finished", execution.status.value))

        executor = WorkflowExecutor(test_registry, engine, observer=Recorder())
        executor.execute(simple_workflow, input_data=[{"name": "Ada"}])

        assert events == [
            ("started", "running"),
            ("node_started", "start"),
            ("node_finished", "start", "success"),
            ("node_started", "set"),
            ("node_finished", "set", "success"),
            ("finished", "completed"),
        ]


def test_node_item_outputs_are_copies(executor, simple_workflow):
    trigger_items = [{"name": "Ada"}]

    result = executor.execute(simple_workflow, input_data=trigger_items)

    assert trigger_items == [{"name": "Ada"}]
    assert isinstance(result.output_items[0], NodeItem)
