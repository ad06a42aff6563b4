"""Tests for flow instance execution."""

import asyncio
import time

import pytest

from flow_engine.core.exceptions import DefinitionInactive, DefinitionNotFound, InstanceNotFound, StorageError
from flow_engine.core.flow_engine import FlowEngine
from flow_engine.core.instance_manager import FlowInstanceManager
from flow_engine.models.core import FlowStatus, InstanceStatus, LogStatus
from flow_engine.services import MessageStore
from flow_engine.storage.database import drop_tables

from conftest import FailingExecutor, FlakyExecutor, chain, make_definition


def decision_flow(expressions):
    """``decide`` routes to A/B by ordered conditions, to D by default."""
    return make_definition(
        [
            {"id": "decide", "type": "decision", "config": {
                "conditions": [
                    {"expression": expressions[0], "targetNodeId": "A"},
                    {"expression": expressions[1], "targetNodeId": "B"},
                ],
                "defaultTarget": "D",
            }},
            {"id": "A", "type": "record"},
            {"id": "B", "type": "record"},
            {"id": "D", "type": "record"},
        ],
        name="decision-flow",
    )


class TestInstanceCreation:
    def test_new_instance_is_pending_on_start_node(self, engine, definitions):
        definition = definitions.create_definition(chain(("first", "record"), ("second", "record"),
                                                         variables={"tone": "friendly"}))

        instance = engine.create_flow_instance(definition.id, trigger_data={"content": "hi"},
                                               initial_context={"tone": "formal"})

        assert instance.status == InstanceStatus.PENDING
        assert instance.current_node_id == "first"
        assert instance.context["tone"] == "formal"
        assert instance.context["triggerData"] == {"content": "hi"}
        assert instance.trigger_type == "message"
        assert instance.flow_definition_version == "1.0"

    def test_explicit_start_node(self, engine, definitions):
        definition = definitions.create_definition(
            chain(("first", "record"), ("second", "record"), start_node_id="second"))
        assert engine.create_flow_instance(definition.id).current_node_id == "second"

    def test_inactive_definition_needs_allow_inactive(self, engine, definitions):
        draft = definitions.create_definition(chain(("a", "record"), status=FlowStatus.DRAFT))

        with pytest.raises(DefinitionInactive):
            engine.create_flow_instance(draft.id)
        assert engine.create_flow_instance(draft.id, allow_inactive=True).status == InstanceStatus.PENDING

    def test_missing_definition(self, engine):
        with pytest.raises(DefinitionNotFound):
            engine.create_flow_instance("missing")


class TestInstanceStoreErrors:
    """Database failures surface as StorageError from every instance read."""

    def test_status_and_count_wrap_database_errors(self, instances, temp_db):
        drop_tables()

        with pytest.raises(StorageError) as status_error:
            instances.get_status("missing")
        with pytest.raises(StorageError) as count_error:
            instances.count_by_definition("missing")

        assert status_error.value.context["operation"] == "get_status"
        assert count_error.value.context["operation"] == "count_by_definition"


class TestExecution:
    @pytest.mark.asyncio
    async def test_all_nodes_succeed(self, engine, definitions):
        definition = definitions.create_definition(chain(("a", "record"), ("b", "record"), ("c", "end")))
        instance = engine.create_flow_instance(definition.id)

        result = await engine.execute_flow_instance(instance.id)

        assert result.status == InstanceStatus.COMPLETED
        assert result.execution_path == ["a", "b", "c"]
        assert result.success_count == result.total_nodes == 3
        assert result.failed_count == 0
        assert result.current_node_id is None
        assert result.completed_at is not None
        assert result.processing_time is not None
        assert result.context["visited_a"] and result.context["visited_b"]
        assert result.context["nodeOutputs"]["a"] == {"visited": "a"}

        logs = engine.get_execution_logs(instance.id)
        assert [log.node_id for log in logs] == ["a", "b", "c"]
        assert all(log.status == LogStatus.COMPLETED for log in logs)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("context,expected", [
        ({"intent": "complaint"}, "A"),
        ({"intent": "question"}, "B"),
        ({"intent": "chat"}, "D"),
    ])
    async def test_decision_routes_first_true_condition(self, engine, definitions, context, expected):
        definition = definitions.create_definition(decision_flow([
            "context.intent === 'complaint'",
            "context.intent === 'question' || context.intent === 'complaint'",
        ]))
        instance = engine.create_flow_instance(definition.id, initial_context=context)

        result = await engine.execute_flow_instance(instance.id)

        assert result.status == InstanceStatus.COMPLETED
        assert result.execution_path == ["decide", expected]

    @pytest.mark.asyncio
    async def test_decision_condition_that_throws_counts_as_false(self, engine, definitions):
        definition = definitions.create_definition(decision_flow([
            "context.profile.level > 3",
            "context.intent.startswith(",
        ]))
        instance = engine.create_flow_instance(definition.id, initial_context={"intent": "chat"})

        result = await engine.execute_flow_instance(instance.id)

        assert result.status == InstanceStatus.COMPLETED
        assert result.execution_path == ["decide", "D"]

    @pytest.mark.asyncio
    async def test_decision_without_match_or_default_fails(self, engine, definitions):
        definition = definitions.create_definition(make_definition([
            {"id": "decide", "type": "decision", "config": {
                "conditions": [{"expression": "context.x == 1", "targetNodeId": "A"}],
            }},
            {"id": "A", "type": "record"},
        ], name="no-default"))
        instance = engine.create_flow_instance(definition.id)

        result = await engine.execute_flow_instance(instance.id)

        assert result.status == InstanceStatus.FAILED
        assert len(engine.get_execution_logs(instance.id)) == 1

    @pytest.mark.asyncio
    async def test_edges_taken_in_declared_order(self, engine, definitions):
        definition = definitions.create_definition(make_definition(
            [{"id": "start", "type": "record"}, {"id": "x", "type": "record"}, {"id": "y", "type": "record"}],
            [
                {"id": "to-x", "source": "start", "target": "x", "condition": "context.route == 'x'"},
                {"id": "to-y", "source": "start", "target": "y"},
            ],
        ))

        routed = await engine.execute_flow_instance(
            engine.create_flow_instance(definition.id, initial_context={"route": "x"}).id)
        fallthrough = await engine.execute_flow_instance(
            engine.create_flow_instance(definition.id, initial_context={"route": "z"}).id)

        assert routed.execution_path == ["start", "x"]
        assert fallthrough.execution_path == ["start", "y"]

    @pytest.mark.asyncio
    async def test_retries_then_fails(self, engine, definitions, registry):
        failing = FailingExecutor()
        registry.register("failing", failing)
        definition = definitions.create_definition(chain(
            ("ok", "record"), ("bad", "failing"), ("never", "record"),
            retry_config={"maxRetries": 2, "retryInterval": 10},
        ))
        instance = engine.create_flow_instance(definition.id)

        result = await engine.execute_flow_instance(instance.id)

        assert result.status == InstanceStatus.FAILED
        assert result.error_message.startswith("NodeExecutionError")
        assert "boom" in result.error_message
        assert result.failed_count == 1
        assert result.success_count == 1
        assert result.execution_path == ["ok", "bad"]
        assert failing.calls == 3

        bad_logs = [log for log in engine.get_execution_logs(instance.id) if log.node_id == "bad"]
        assert len(bad_logs) == 3
        assert [log.retry_count for log in bad_logs] == [0, 1, 2]
        assert all(log.status == LogStatus.FAILED for log in bad_logs)

    @pytest.mark.asyncio
    async def test_non_idempotent_node_is_not_retried(self, engine, definitions, registry):
        failing = FailingExecutor(idempotent=False)
        registry.register("failing", failing)
        definition = definitions.create_definition(chain(("bad", "failing")))
        instance = engine.create_flow_instance(definition.id)

        result = await engine.execute_flow_instance(instance.id)

        assert result.status == InstanceStatus.FAILED
        assert failing.calls == 1
        assert len(engine.get_execution_logs(instance.id)) == 1

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failure(self, engine, definitions, registry):
        registry.register("flaky", FlakyExecutor(failures=1))
        definition = definitions.create_definition(chain(("call", "flaky"), ("done", "end")))
        instance = engine.create_flow_instance(definition.id)

        result = await engine.execute_flow_instance(instance.id)

        assert result.status == InstanceStatus.COMPLETED
        assert result.failed_count == 0
        statuses = [log.status for log in engine.get_execution_logs(instance.id) if log.node_id == "call"]
        assert statuses == [LogStatus.FAILED, LogStatus.COMPLETED]

    @pytest.mark.asyncio
    async def test_unknown_node_type_fails_without_log(self, engine, definitions):
        definition = definitions.create_definition(chain(("first", "record"), ("weird", "foo_bar")))
        instance = engine.create_flow_instance(definition.id)

        result = await engine.execute_flow_instance(instance.id)

        assert result.status == InstanceStatus.FAILED
        assert result.error_message.startswith("UnknownNodeType")
        assert "foo_bar" in result.error_message
        assert result.failed_count == 1
        assert result.total_nodes == 2
        assert [log.node_id for log in engine.get_execution_logs(instance.id)] == ["first"]

    @pytest.mark.asyncio
    async def test_cycle_hits_step_limit(self, engine, definitions):
        definition = definitions.create_definition(make_definition(
            [{"id": "a", "type": "record"}, {"id": "b", "type": "record"}],
            [{"id": "e1", "source": "a", "target": "b"}, {"id": "e2", "source": "b", "target": "a"}],
            start_node_id="a",
        ))
        instance = engine.create_flow_instance(definition.id)

        result = await engine.execute_flow_instance(instance.id)

        assert result.status == InstanceStatus.FAILED
        assert result.error_message.startswith("ExecutionEngineError")
        assert result.total_nodes == engine.max_steps

    @pytest.mark.asyncio
    async def test_timeout(self, engine, definitions):
        definition = definitions.create_definition(chain(
            ("wait", "slow", {"seconds": 0.3}), ("after", "record"),
            timeout=100,
        ))
        instance = engine.create_flow_instance(definition.id)

        result = await engine.execute_flow_instance(instance.id)

        assert result.status == InstanceStatus.TIMEOUT
        assert result.error_message == "instance timeout"
        assert "after" not in result.execution_path
        assert result.completed_at is not None

    @pytest.mark.asyncio
    async def test_cancel_between_nodes(self, engine, definitions, recording_executor):
        definition = definitions.create_definition(chain(
            ("wait", "slow", {"seconds": 0.3}), ("after", "record"),
        ))
        instance = engine.create_flow_instance(definition.id)

        task = engine.start_flow_instance(instance.id)
        await asyncio.sleep(0.1)
        assert engine.cancel_flow_instance(instance.id) is True
        await task

        result = engine.get_instance(instance.id)
        assert result.status == InstanceStatus.CANCELLED
        assert result.execution_path == ["wait"]
        assert result.completed_at is not None
        assert recording_executor.calls == []
        assert engine.cancel_flow_instance(instance.id) is False

    @pytest.mark.asyncio
    async def test_concurrent_execute_runs_once(self, engine, definitions, recording_executor):
        definition = definitions.create_definition(chain(("a", "record"), ("b", "record")))
        instance = engine.create_flow_instance(definition.id)

        await asyncio.gather(*(engine.execute_flow_instance(instance.id) for _ in range(3)))

        result = engine.get_instance(instance.id)
        assert result.status == InstanceStatus.COMPLETED
        assert recording_executor.calls == ["a", "b"]
        assert len(engine.get_execution_logs(instance.id)) == 2

    @pytest.mark.asyncio
    async def test_executing_finished_instance_is_a_no_op(self, engine, definitions, recording_executor):
        definition = definitions.create_definition(chain(("a", "record")))
        instance = engine.create_flow_instance(definition.id)
        await engine.execute_flow_instance(instance.id)

        again = await engine.execute_flow_instance(instance.id)

        assert again.status == InstanceStatus.COMPLETED
        assert recording_executor.calls == ["a"]

    @pytest.mark.asyncio
    async def test_running_instance_keeps_its_snapshot(self, engine, definitions, recording_executor):
        from flow_engine.models.core import FlowDefinitionUpdate

        definition = definitions.create_definition(chain(("a", "record"), ("b", "record")))
        instance = engine.create_flow_instance(definition.id)
        definitions.update_definition(definition.id, FlowDefinitionUpdate(
            nodes=[{"id": "a", "type": "record"}], edges=[]))

        result = await engine.execute_flow_instance(instance.id)

        assert result.execution_path == ["a", "b"]

    @pytest.mark.asyncio
    async def test_missing_instance(self, engine):
        with pytest.raises(InstanceNotFound):
            await engine.execute_flow_instance("missing")


class TestTriggers:
    @pytest.mark.asyncio
    async def test_trigger_without_configured_flow(self, engine):
        assert await engine.trigger("message", {"content": "hi"}) is None

    @pytest.mark.asyncio
    async def test_trigger_runs_in_background(self, engine, definitions):
        definitions.create_definition(chain(("a", "record"), ("b", "end")))

        instance = await engine.trigger("message", {"content": "hi"})
        assert instance.status == InstanceStatus.PENDING

        await engine.shutdown()
        assert engine.get_instance(instance.id).status == InstanceStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_background_failure_is_recorded_not_raised(self, engine, definitions, registry):
        registry.register("failing", FailingExecutor())
        definitions.create_definition(chain(("bad", "failing")))

        instance = await engine.trigger("message", {})
        await engine.shutdown()

        assert engine.get_instance(instance.id).status == InstanceStatus.FAILED

    @pytest.mark.asyncio
    async def test_shutdown_cancels_overdue_instances(self, engine, definitions):
        engine.shutdown_grace_seconds = 0.05
        definitions.create_definition(chain(("wait", "slow", {"seconds": 1.0}), ("after", "record"),
                                            timeout=5000))

        instance = await engine.trigger("message", {})
        await asyncio.sleep(0.01)
        await engine.shutdown()

        result = engine.get_instance(instance.id)
        assert result.status == InstanceStatus.FAILED
        assert "shutdown" in result.error_message

    @pytest.mark.asyncio
    async def test_finished_instance_is_published(self, engine, definitions, services):
        definitions.create_definition(chain(("a", "end")))
        instance = await engine.trigger("message", {})
        await engine.shutdown()
        await asyncio.sleep(0)

        finished = [data for event, data in services.push_channel.events if event == "instance_finished"]
        assert finished and finished[0]["instanceId"] == instance.id
        assert finished[0]["status"] == "completed"


class TestCustomerServiceScenario:
    @pytest.mark.asyncio
    async def test_complaint_is_escalated(self, engine, definitions, recording_executor):
        definition = definitions.create_definition(make_definition(
            [
                {"id": "receive", "type": "message_receive", "config": {
                    "saveToDatabase": False,
                    "roleMapping": "售后客户:包含'售后','维修'字样",
                }},
                {"id": "classify", "type": "intent", "config": {
                    "intentKeywords": {"complaint": ["投诉"]},
                }},
                {"id": "route", "type": "decision", "config": {
                    "conditions": [{"expression": 'context.intent === "complaint"', "targetNodeId": "escalate"}],
                    "defaultTarget": "reply",
                }},
                {"id": "escalate", "type": "record"},
                {"id": "reply", "type": "ai_reply"},
                {"id": "finish", "type": "end", "config": {"saveStatistics": True}},
            ],
            [
                {"id": "e1", "source": "receive", "target": "classify"},
                {"id": "e2", "source": "classify", "target": "route"},
                {"id": "e3", "source": "escalate", "target": "finish"},
                {"id": "e4", "source": "reply", "target": "finish"},
            ],
            name="customer-service",
        ))
        instance = engine.create_flow_instance(definition.id, trigger_data={
            "content": "我要投诉售后服务",
            "senderName": "王五",
            "groupName": "VIP群",
            "robotId": "robot-1",
        })

        result = await engine.execute_flow_instance(instance.id)

        assert result.status == InstanceStatus.COMPLETED
        assert result.execution_path == ["receive", "classify", "route", "escalate", "finish"]
        assert result.context["intent"] == "complaint"
        assert result.context["businessRole"] == "售后客户"
        assert result.context["statistics"]["nodeCount"] == 5
        assert result.success_count == result.total_nodes == 5

    @pytest.mark.asyncio
    async def test_risky_message_raises_alert_and_soothes(self, engine, definitions, services, temp_db):
        services.message_store = MessageStore()
        definition = definitions.create_definition(make_definition(
            [
                {"id": "node_start", "type": "start"},
                {"id": "receive", "type": "message_receive", "config": {"saveToDatabase": False}},
                {"id": "rule", "type": "alert_rule", "config": {
                    "keywords": ["曝光", "投诉"], "alertLevel": "critical", "escalateTo": ["risk_group"],
                }},
                {"id": "route", "type": "decision", "config": {
                    "conditions": [{"expression": "context.escalate === true", "targetNodeId": "alert"}],
                    "defaultTarget": "finish",
                }},
                {"id": "alert", "type": "alert_save", "config": {"alertTitle": "${groupName}风险"}},
                {"id": "soothe", "type": "risk_handler", "config": {"notifyTargets": ["值班主管"]}},
                {"id": "finish", "type": "end"},
            ],
            [
                {"id": "e1", "source": "node_start", "target": "receive"},
                {"id": "e2", "source": "receive", "target": "rule"},
                {"id": "e3", "source": "rule", "target": "route"},
                {"id": "e4", "source": "alert", "target": "soothe"},
                {"id": "e5", "source": "soothe", "target": "finish"},
            ],
            name="risk-monitoring",
        ))
        instance = engine.create_flow_instance(definition.id, trigger_data={
            "content": "再不退款我就去曝光",
            "senderName": "赵六",
            "groupName": "售后群",
            "robotId": "robot-1",
        })

        result = await engine.execute_flow_instance(instance.id)

        assert result.status == InstanceStatus.COMPLETED
        assert result.execution_path == ["node_start", "receive", "rule", "route", "alert", "soothe", "finish"]
        assert result.context["alertLevel"] == "critical"
        assert result.context["riskHandled"] is True
        alerts = services.message_store.list_alerts(instance.id)
        assert [(alert["title"], alert["alertLevel"]) for alert in alerts] == [("售后群风险", "critical")]
        assert services.bot_client.sent[0]["toName"] == "值班主管"


class SlowProgressStore(FlowInstanceManager):
    """Instance store whose progress writes block for selected instances."""

    def __init__(self, delay: float):
        super().__init__()
        self.delay = delay
        self.slow_instances = set()

    def update_progress(self, instance_id, *args, **kwargs):
        if instance_id in self.slow_instances:
            time.sleep(self.delay)
        return super().update_progress(instance_id, *args, **kwargs)


class TestStoreCallsOffTheEventLoop:
    @pytest.mark.asyncio
    async def test_slow_store_write_does_not_stall_other_instances(self, definitions, registry, services):
        store = SlowProgressStore(delay=1.0)
        engine = FlowEngine(definitions, store, registry, services=services, max_steps=20)
        slow_flow = definitions.create_definition(chain(("a", "record"), name="slow-store"))
        quick_flow = definitions.create_definition(
            chain(("wait", "delay", {"delayMs": 50}), ("done", "end"), name="quick"))
        slow = engine.create_flow_instance(slow_flow.id)
        quick = engine.create_flow_instance(quick_flow.id)
        store.slow_instances.add(slow.id)

        slow_task = asyncio.create_task(engine.execute_flow_instance(slow.id))
        await asyncio.sleep(0.05)

        started = time.monotonic()
        result = await engine.execute_flow_instance(quick.id)
        elapsed = time.monotonic() - started

        assert result.status == InstanceStatus.COMPLETED
        assert elapsed < 0.8
        assert (await slow_task).status == InstanceStatus.COMPLETED
