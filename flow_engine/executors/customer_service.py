"""Executors for the customer-service node set.

These nodes receive a bot message, classify and route it, generate an AI
reply and deliver it back through the bot command API.
"""

import asyncio
import re
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from ..core.exceptions import ConfigurationError, ExternalServiceError, NodeExecutionError
from ..core.expressions import evaluate_expression, render_template
from ..core.logging import get_logger
from ..models.node_configs import (
    AiReplyConfig,
    CommandStatusConfig,
    DecisionConfig,
    EndConfig,
    IntentConfig,
    MessageDispatchConfig,
    MessageReceiveConfig,
    SendCommandConfig,
    StartConfig,
)
from .base import ExecutionContext, NodeExecutor, NodeResult

logger = get_logger(__name__)

DEFAULT_ROLE = "普通客户"

_RULE_RE = re.compile(r"^([^:：]+)[:：](.*)$")
_QUOTED_RE = re.compile(r"['\"‘’“”]([^'\"‘’“”]+)['\"‘’“”]")


def parse_role_mapping(text: str) -> List[Tuple[str, List[str]]]:
    """
    Parse role rules, one per line.

    Accepted forms are ``售后:包含'售后','客服'字样`` and ``VIP: vip,会员``.
    Lines without a label or keywords are ignored.
    """
    rules = []
    for line in (text or "").splitlines():
        line = line.strip()
        if not line:
            continue
        match = _RULE_RE.match(line)
        if not match:
            continue
        label, rest = match.group(1).strip(), match.group(2)

        keywords = _QUOTED_RE.findall(rest)
        if not keywords:
            cleaned = rest.replace("包含", "").replace("字样", "")
            keywords = [word.strip() for word in re.split(r"[,，、]", cleaned)]
        keywords = [keyword for keyword in keywords if keyword]
        if keywords:
            rules.append((label, keywords))
    return rules


def _keyword_list(value: Any) -> List[str]:
    if isinstance(value, str):
        return [word.strip() for word in re.split(r"[,，、]", value) if word.strip()]
    if isinstance(value, list):
        return [str(word).strip() for word in value if str(word).strip()]
    return []


class MessageReceiveExecutor(NodeExecutor):
    """Normalizes the inbound message, resolves role and priority, persists it."""

    node_type = "message_receive"
    idempotent = False
    config_model = MessageReceiveConfig
    description = "Receive an inbound bot message"

    async def execute(self, config: MessageReceiveConfig, context: ExecutionContext) -> NodeResult:
        trigger = context.trigger_data
        content = str(trigger.get("content") or "")

        message = {
            "messageId": trigger.get("messageId"),
            "robotId": trigger.get("robotId"),
            "senderId": trigger.get("senderId"),
            "senderName": trigger.get("senderName"),
            "groupName": trigger.get("groupName"),
            "content": content,
        }

        role = None
        for label, keywords in parse_role_mapping(config.role_mapping):
            if any(keyword in content for keyword in keywords):
                role = label
                break
        if role is None:
            role = context.variables.get("businessRole") or config.default_role

        priority = "normal"
        if any(word in content for word in _keyword_list(config.priority_keywords.get("high"))):
            priority = "high"
        elif any(word in content for word in _keyword_list(config.priority_keywords.get("low"))):
            priority = "low"

        message["businessRole"] = role
        message["priority"] = priority

        stored_id = None
        store = context.services.message_store
        if config.save_to_database and store is not None:
            stored_id = await asyncio.to_thread(store.save_message, message, flow_instance_id=context.instance_id)

        pushed = False
        push_channel = context.services.push_channel
        if config.enable_websocket_push and push_channel is not None:
            try:
                pushed = await push_channel.publish("new_message", {**message, "instanceId": context.instance_id}) > 0
            except Exception as e:
                logger.warning(f"Push of message for instance {context.instance_id} failed: {str(e)}")

        patch = {
            "message": message,
            "content": content,
            "senderId": message["senderId"],
            "senderName": message["senderName"],
            "groupName": message["groupName"],
            "robotId": message["robotId"],
            "businessRole": role,
            "priority": priority,
        }
        return NodeResult(
            output={"messageRowId": stored_id, "businessRole": role, "priority": priority, "pushed": pushed},
            context_patch=patch,
        )


class IntentExecutor(NodeExecutor):
    """Classifies the message into one of a closed set of intents.

    Never fails on the provider side: low confidence, provider errors and
    answers outside the supported set all yield the fallback intent.
    """

    node_type = "intent"
    config_model = IntentConfig
    description = "Classify message intent"

    async def execute(self, config: IntentConfig, context: ExecutionContext) -> NodeResult:
        content = str(context.variables.get("content") or context.trigger_data.get("content") or "")

        for intent, keywords in config.intent_keywords.items():
            if any(keyword and keyword in content for keyword in keywords):
                return self._result(intent, 1.0, "keyword")

        ai_client = context.services.ai_client
        if ai_client is None or not getattr(ai_client, "configured", True):
            return self._result(config.fallback_intent, 0.0, "fallback", reason="AI client not configured")

        try:
            intent, confidence = await ai_client.classify_intent(
                content,
                config.supported_intents,
                model_id=config.model_id,
                system_prompt=config.system_prompt,
            )
        except (ExternalServiceError, ConfigurationError) as e:
            logger.warning(f"Intent classification failed, using fallback: {e.message}")
            return self._result(config.fallback_intent, 0.0, "fallback", reason=e.message)

        if intent not in config.supported_intents:
            return self._result(config.fallback_intent, confidence, "fallback", reason=f"unsupported intent '{intent}'")
        if confidence < config.confidence_threshold:
            return self._result(config.fallback_intent, confidence, "fallback", reason="low confidence")
        return self._result(intent, confidence, "ai")

    def _result(self, intent: str, confidence: float, source: str, reason: Optional[str] = None) -> NodeResult:
        output = {"intent": intent, "confidence": confidence, "source": source}
        if reason:
            output["reason"] = reason
        return NodeResult(output=output, context_patch={"intent": intent, "intentConfidence": confidence})


class DecisionExecutor(NodeExecutor):
    """Ordered conditions, first true wins, otherwise ``defaultTarget``."""

    node_type = "decision"
    config_model = DecisionConfig
    description = "Route by ordered conditions"

    async def execute(self, config: DecisionConfig, context: ExecutionContext) -> NodeResult:
        for index, condition in enumerate(config.conditions):
            if evaluate_expression(condition.expression, context.variables):
                return NodeResult(
                    output={"matched": condition.label or condition.expression, "index": index,
                            "target": condition.target_node_id},
                    next_node_id=condition.target_node_id,
                )

        if not config.default_target:
            raise NodeExecutionError(
                "No decision condition matched and no defaultTarget is configured",
                node_id=context.node.id,
                instance_id=context.instance_id,
                recoverable=False,
            )
        return NodeResult(
            output={"matched": None, "index": None, "target": config.default_target},
            next_node_id=config.default_target,
        )


class AiReplyExecutor(NodeExecutor):
    node_type = "ai_reply"
    config_model = AiReplyConfig
    description = "Generate an AI reply"

    async def execute(self, config: AiReplyConfig, context: ExecutionContext) -> NodeResult:
        ai_client = context.services.ai_client
        if ai_client is None:
            raise NodeExecutionError("AI client is not available", node_id=context.node.id, recoverable=False)

        variables = context.variables
        system_prompt = config.system_prompt or (
            f"你是企业微信客服助手，语气{config.default_persona_tone}。"
            f"当前客户角色：{variables.get('businessRole') or DEFAULT_ROLE}。"
        )
        messages: List[Dict[str, str]] = [{"role": "system", "content": render_template(system_prompt, variables)}]

        if config.use_context_history and config.history_limit:
            history = variables.get("history") or []
            for item in history[-config.history_limit:]:
                if isinstance(item, dict) and item.get("content"):
                    messages.append({"role": item.get("role", "user"), "content": str(item["content"])})

        content = str(variables.get("content") or context.trigger_data.get("content") or "")
        messages.append({"role": "user", "content": content})

        try:
            reply = await ai_client.chat(
                messages,
                model_id=config.model_id,
                temperature=config.temperature,
                max_tokens=config.max_tokens,
            )
        except ConfigurationError as e:
            raise NodeExecutionError(e.message, node_id=context.node.id, recoverable=False)

        history = list(variables.get("history") or [])
        history.extend([{"role": "user", "content": content}, {"role": "assistant", "content": reply}])
        return NodeResult(
            output={"reply": reply, "model": config.model_id},
            context_patch={"aiReply": reply, "history": history},
        )


class MessageDispatchExecutor(NodeExecutor):
    node_type = "message_dispatch"
    config_model = MessageDispatchConfig
    description = "Send a message through the bot"

    async def execute(self, config: MessageDispatchConfig, context: ExecutionContext) -> NodeResult:
        bot_client = context.services.bot_client
        if bot_client is None:
            raise NodeExecutionError("Bot API client is not available", node_id=context.node.id, recoverable=False)

        variables = context.variables
        trigger = context.trigger_data
        content = render_template(config.content, variables)
        if not content:
            raise NodeExecutionError("Dispatch content rendered empty", node_id=context.node.id, recoverable=False)

        robot_id = render_template(config.robot_id, variables) if config.robot_id else trigger.get("robotId")
        to_name = (
            render_template(config.to_name, variables) if config.to_name
            else trigger.get("groupName") or trigger.get("senderName")
        )
        if config.at_sender and trigger.get("senderName") and trigger.get("groupName"):
            content = f"@{trigger['senderName']} {content}"

        try:
            result = await bot_client.send_message(robot_id, to_name, content, config.message_type)
        except ConfigurationError as e:
            raise NodeExecutionError(e.message, node_id=context.node.id, recoverable=False)

        dispatch = {"robotId": robot_id, "toName": to_name, "content": content, "response": result}
        return NodeResult(output=dispatch, context_patch={"dispatchResult": dispatch})


class SendCommandExecutor(NodeExecutor):
    node_type = "send_command"
    config_model = SendCommandConfig
    description = "Send a robot command"

    async def execute(self, config: SendCommandConfig, context: ExecutionContext) -> NodeResult:
        bot_client = context.services.bot_client
        if bot_client is None:
            raise NodeExecutionError("Bot API client is not available", node_id=context.node.id, recoverable=False)

        variables = context.variables
        robot_id = render_template(config.robot_id, variables) if config.robot_id else context.trigger_data.get("robotId")
        payload = {
            "content": render_template(config.message_content, variables),
            "recipients": [render_template(recipient, variables) for recipient in config.recipients],
        }

        try:
            result = await bot_client.send_command(robot_id, config.command_type, payload)
        except ConfigurationError as e:
            raise NodeExecutionError(e.message, node_id=context.node.id, recoverable=False)

        command_id = result.get("commandId") or result.get("id")
        store = context.services.message_store
        if command_id and store is not None:
            await asyncio.to_thread(
                store.upsert_robot_command,
                str(command_id),
                status=result.get("status", "sent"),
                result=result,
                robot_id=robot_id,
                command_type=config.command_type,
                payload=payload,
                flow_instance_id=context.instance_id,
            )

        return NodeResult(
            output={"commandId": command_id, "response": result},
            context_patch={"lastCommandId": command_id, "commandResult": result},
        )


class CommandStatusExecutor(NodeExecutor):
    node_type = "command_status"
    config_model = CommandStatusConfig
    description = "Read the delivery status of a robot command"

    async def execute(self, config: CommandStatusConfig, context: ExecutionContext) -> NodeResult:
        bot_client = context.services.bot_client
        if bot_client is None:
            raise NodeExecutionError("Bot API client is not available", node_id=context.node.id, recoverable=False)

        command_id = render_template(config.command_id, context.variables)
        if not command_id:
            raise NodeExecutionError("No command id to check", node_id=context.node.id, recoverable=False)

        try:
            result = await bot_client.get_command_status(command_id)
        except ConfigurationError as e:
            raise NodeExecutionError(e.message, node_id=context.node.id, recoverable=False)

        status = result.get("status", "unknown")
        store = context.services.message_store
        if config.save_to_robot_commands and store is not None:
            await asyncio.to_thread(store.upsert_robot_command, command_id, status=status, result=result,
                                    flow_instance_id=context.instance_id)

        command_status = {"commandId": command_id, "status": status, "result": result}
        return NodeResult(output=command_status, context_patch={"commandStatus": command_status})


class StartExecutor(NodeExecutor):
    """Entry marker placed by the canvas editor. Passes straight through."""

    node_type = "start"
    config_model = StartConfig
    description = "Start the flow"

    async def execute(self, config: StartConfig, context: ExecutionContext) -> NodeResult:
        return NodeResult(output={"message": config.message, "startNodeId": context.node.id})


class EndExecutor(NodeExecutor):
    """Terminal marker. The engine completes the instance after it."""

    node_type = "end"
    config_model = EndConfig
    description = "End the flow"

    async def execute(self, config: EndConfig, context: ExecutionContext) -> NodeResult:
        variables = context.variables
        flow_result = {"message": render_template(config.message, variables), "endNodeId": context.node.id}
        patch: Dict[str, Any] = {"flowResult": flow_result}

        if config.save_statistics:
            path = list(context.execution_path)
            elapsed = None
            if context.started_at:
                elapsed = int((datetime.utcnow() - context.started_at).total_seconds() * 1000)
            patch["statistics"] = {"nodeCount": len(path), "path": path, "elapsedMs": elapsed}

        return NodeResult(output=flow_result, context_patch=patch)
