"""Pytest configuration and fixtures."""

import asyncio
import os
import tempfile
from typing import Any, Dict, List, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import flow_engine.storage.database as db_module
from flow_engine.core.definition_manager import FlowDefinitionManager
from flow_engine.core.exceptions import ExternalServiceError, NodeExecutionError
from flow_engine.core.executor_registry import NodeExecutorRegistry
from flow_engine.core.flow_engine import FlowEngine
from flow_engine.core.instance_manager import FlowInstanceManager
from flow_engine.executors.base import NodeExecutor, NodeResult, NodeServices
from flow_engine.models.core import FlowDefinitionCreate, FlowStatus


@pytest.fixture
def temp_db():
    """Point the storage layer at a temporary sqlite file for one test."""
    db_fd, db_path = tempfile.mkstemp(suffix='.db')
    os.close(db_fd)

    original_engine = db_module.engine
    original_session = db_module.SessionLocal

    test_engine = create_engine(
        f'sqlite:///{db_path}',
        connect_args={"check_same_thread": False},
        echo=False
    )
    db_module.engine = test_engine
    db_module.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)
    db_module.create_tables()

    yield db_path

    test_engine.dispose()
    db_module.engine = original_engine
    db_module.SessionLocal = original_session
    try:
        os.unlink(db_path)
    except OSError:
        pass


class RecordingExecutor(NodeExecutor):
    """Succeeds and marks the node as visited."""

    node_type = "record"
    description = "Test node that records visits"

    def __init__(self):
        self.calls: List[str] = []

    async def execute(self, config, context):
        self.calls.append(context.node.id)
        return NodeResult(
            output={"visited": context.node.id},
            context_patch={f"visited_{context.node.id}": True},
        )


class FailingExecutor(NodeExecutor):
    """Raises a recoverable error on every call."""

    node_type = "failing"
    description = "Test node that always fails"

    def __init__(self, idempotent: bool = True):
        self.idempotent = idempotent
        self.calls = 0

    async def execute(self, config, context):
        self.calls += 1
        raise NodeExecutionError("boom", node_id=context.node.id)


class FlakyExecutor(NodeExecutor):
    """Fails a fixed number of times, then succeeds."""

    node_type = "flaky"
    description = "Test node that recovers after failures"

    def __init__(self, failures: int = 1):
        self.failures = failures
        self.calls = 0

    async def execute(self, config, context):
        self.calls += 1
        if self.calls <= self.failures:
            raise ExternalServiceError("upstream unavailable", service="test", status_code=503)
        return NodeResult(output={"calls": self.calls})


class SlowExecutor(NodeExecutor):
    """Sleeps for ``config.seconds`` before succeeding."""

    node_type = "slow"
    description = "Test node that takes a while"

    async def execute(self, config, context):
        await asyncio.sleep(float(getattr(config, "seconds", 0.2)))
        return NodeResult(output={"slept": True})


class FakeAIClient:
    """Stands in for the AI provider."""

    configured = True

    def __init__(self, reply: str = "您好，已为您处理。", intent: str = "question", confidence: float = 0.9,
                 error: Optional[Exception] = None):
        self.reply = reply
        self.intent = intent
        self.confidence = confidence
        self.error = error
        self.chat_calls: List[Dict[str, Any]] = []

    async def chat(self, messages, model_id=None, temperature=0.7, max_tokens=1000):
        self.chat_calls.append({"messages": messages, "model_id": model_id})
        if self.error:
            raise self.error
        return self.reply

    async def classify_intent(self, content, supported_intents, model_id=None, system_prompt=None):
        if self.error:
            raise self.error
        return self.intent, self.confidence


class FakeBotClient:
    """Records bot API calls."""

    configured = True

    def __init__(self, command_status: str = "delivered"):
        self.sent: List[Dict[str, Any]] = []
        self.commands: List[Dict[str, Any]] = []
        self.command_status = command_status

    async def send_message(self, robot_id, to_name, content, message_type=1):
        self.sent.append({"robotId": robot_id, "toName": to_name, "content": content})
        return {"ok": True}

    async def send_command(self, robot_id, command_type, payload):
        self.commands.append({"robotId": robot_id, "commandType": command_type, "payload": payload})
        return {"commandId": f"cmd-{len(self.commands)}", "status": "queued"}

    async def get_command_status(self, command_id):
        return {"commandId": command_id, "status": self.command_status}


class FakePushChannel:
    """Collects published events."""

    def __init__(self):
        self.events: List[tuple] = []

    async def publish(self, event_type, data):
        self.events.append((event_type, data))
        return 1


@pytest.fixture
def recording_executor():
    return RecordingExecutor()


@pytest.fixture
def registry(recording_executor):
    """Registry with the built-in executors plus the test executors."""
    registry = NodeExecutorRegistry()
    registry.register("record", recording_executor)
    registry.register("failing", FailingExecutor())
    registry.register("flaky", FlakyExecutor())
    registry.register("slow", SlowExecutor())
    return registry


@pytest.fixture
def definitions(temp_db, registry):
    return FlowDefinitionManager(registry=registry)


@pytest.fixture
def instances(temp_db):
    return FlowInstanceManager()


@pytest.fixture
def services():
    return NodeServices(ai_client=FakeAIClient(), bot_client=FakeBotClient(), push_channel=FakePushChannel())


@pytest.fixture
def engine(definitions, instances, registry, services):
    return FlowEngine(definitions, instances, registry, services=services, max_steps=20,
                      shutdown_grace_seconds=2.0)


def make_definition(
    nodes: List[Dict[str, Any]],
    edges: Optional[List[Dict[str, Any]]] = None,
    name: str = "test-flow",
    version: str = "1.0",
    status: FlowStatus = FlowStatus.ACTIVE,
    trigger_type: str = "message",
    **kwargs
) -> FlowDefinitionCreate:
    """Build a definition payload with fast retries unless overridden."""
    kwargs.setdefault("retry_config", {"maxRetries": 2, "retryInterval": 10})
    return FlowDefinitionCreate(
        name=name,
        version=version,
        status=status,
        trigger_type=trigger_type,
        nodes=nodes,
        edges=edges or [],
        **kwargs
    )


def chain(*node_specs, name: str = "test-flow", **kwargs) -> FlowDefinitionCreate:
    """Linear flow ``n1 -> n2 -> ...`` from ``(id, type[, config])`` tuples."""
    nodes = []
    for entry in node_specs:
        node_id, node_type = entry[0], entry[1]
        config = entry[2] if len(entry) > 2 else {}
        nodes.append({"id": node_id, "type": node_type, "name": node_id, "config": config})
    edges = [
        {"id": f"e{index}", "source": nodes[index]["id"], "target": nodes[index + 1]["id"]}
        for index in range(len(nodes) - 1)
    ]
    return make_definition(nodes, edges, name=name, **kwargs)
