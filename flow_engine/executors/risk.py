"""Executors for risk handling: alert rules, alert persistence and staff escalation."""

import asyncio
import re
from typing import Any, Dict, List

from ..core.exceptions import ConfigurationError, ExternalServiceError, NodeExecutionError
from ..core.expressions import get_path, render_template
from ..core.logging import get_logger
from ..models.node_configs import ALERT_LEVELS, AlertRuleConfig, AlertSaveConfig, RiskHandlerConfig
from .base import ExecutionContext, NodeExecutor, NodeResult

logger = get_logger(__name__)

SOOTHING_PROMPT = (
    "你是企业微信客服助手。客户情绪激动或存在投诉风险，"
    "请用真诚、克制的语气安抚客户，说明已安排专人跟进，不要做无法兑现的承诺。"
)


def level_rank(level: Any) -> int:
    """Position of ``level`` in low < medium < high < critical; unknown levels rank lowest."""
    try:
        return ALERT_LEVELS.index(str(level).lower())
    except ValueError:
        return -1


def _sender_fields(context: ExecutionContext) -> Dict[str, Any]:
    variables = context.variables
    trigger = context.trigger_data
    return {
        "robotId": variables.get("robotId") or trigger.get("robotId"),
        "senderId": variables.get("senderId") or trigger.get("senderId"),
        "senderName": variables.get("senderName") or trigger.get("senderName"),
        "groupName": variables.get("groupName") or trigger.get("groupName"),
    }


class AlertRuleExecutor(NodeExecutor):
    """Evaluates one alert rule and raises the instance's alert level on a match.

    ``pattern`` rules search the message content, ``threshold`` rules compare a
    numeric context field and ``level`` rules check the current ``alertLevel``.
    The level only ever goes up.
    """

    node_type = "alert_rule"
    config_model = AlertRuleConfig
    description = "Judge an alert rule and escalate"

    async def execute(self, config: AlertRuleConfig, context: ExecutionContext) -> NodeResult:
        variables = context.variables
        current_level = variables.get("alertLevel")

        if config.rule_type == "pattern":
            content = str(variables.get("content") or context.trigger_data.get("content") or "")
            matched = any(keyword and keyword in content for keyword in config.keywords)
            if not matched and config.pattern:
                matched = re.search(config.pattern, content) is not None
        elif config.rule_type == "threshold":
            value = get_path(variables, config.field_path)
            try:
                matched = value is not None and float(value) >= config.threshold
            except (TypeError, ValueError):
                matched = False
        else:
            matched = level_rank(current_level) >= level_rank(config.min_level)

        if not matched:
            return NodeResult(
                output={"matched": False, "ruleType": config.rule_type, "alertLevel": current_level},
                context_patch={"escalate": False},
            )

        level = config.alert_level
        if level_rank(current_level) > level_rank(level):
            level = current_level

        escalation = {
            "level": config.escalation_level,
            "escalateTo": config.escalate_to,
            "notifyChannels": config.notify_channels,
        }
        return NodeResult(
            output={"matched": True, "ruleType": config.rule_type, "alertLevel": level, "escalation": escalation},
            context_patch={"alertLevel": level, "escalate": True, "escalation": escalation},
        )


class AlertSaveExecutor(NodeExecutor):
    """Persists an alert row for staff follow-up. Not retried, a retry would duplicate the alert."""

    node_type = "alert_save"
    idempotent = False
    config_model = AlertSaveConfig
    description = "Save an alert"

    async def execute(self, config: AlertSaveConfig, context: ExecutionContext) -> NodeResult:
        variables = context.variables
        level = config.alert_level
        if level_rank(variables.get("alertLevel")) > level_rank(level):
            level = variables["alertLevel"]
        escalation = variables.get("escalation") if isinstance(variables.get("escalation"), dict) else {}

        alert = {
            "alertType": config.alert_type,
            "alertLevel": level,
            "title": render_template(config.alert_title, variables) or config.alert_type,
            "content": render_template(config.alert_content, variables),
            "source": config.source,
            "tags": config.tags,
            "assignee": config.assignee,
            "intent": variables.get("intent"),
            "escalationLevel": escalation.get("level", 0),
            **_sender_fields(context),
        }

        alert_id = None
        store = context.services.message_store
        if config.save_to_database and store is not None:
            alert_id = await asyncio.to_thread(store.save_alert, alert, flow_instance_id=context.instance_id)

        pushed = False
        push_channel = context.services.push_channel
        if config.enable_notification and push_channel is not None:
            try:
                pushed = await push_channel.publish(
                    "alert_created", {**alert, "alertId": alert_id, "instanceId": context.instance_id}) > 0
            except Exception as e:
                logger.warning(f"Push of alert for instance {context.instance_id} failed: {str(e)}")

        return NodeResult(
            output={"alertId": alert_id, "alertLevel": level, "pushed": pushed},
            context_patch={"alertId": alert_id, "alertLevel": level},
        )


class RiskHandlerExecutor(NodeExecutor):
    """Soothes the customer with an AI reply and notifies staff through the bot.

    The soothing reply is written to ``aiReply`` so a following
    ``message_dispatch`` node delivers it. Staff notices are sent here.
    """

    node_type = "risk_handler"
    idempotent = False
    config_model = RiskHandlerConfig
    description = "Soothe the customer and notify staff"

    async def execute(self, config: RiskHandlerConfig, context: ExecutionContext) -> NodeResult:
        variables = context.variables
        content = str(variables.get("content") or context.trigger_data.get("content") or "")

        reply = config.fallback_reply
        reply_source = "fallback"
        ai_client = context.services.ai_client
        if config.ai_soothing and ai_client is not None and getattr(ai_client, "configured", True):
            prompt = render_template(config.soothing_prompt or SOOTHING_PROMPT, variables)
            try:
                reply = await ai_client.chat(
                    [{"role": "system", "content": prompt}, {"role": "user", "content": content}],
                    model_id=config.soothing_model_id,
                )
                reply_source = "ai"
            except (ExternalServiceError, ConfigurationError) as e:
                logger.warning(f"Soothing reply failed, using fallback: {e.message}")

        notified: List[str] = []
        if config.notify_humans and config.notify_targets:
            bot_client = context.services.bot_client
            if bot_client is None:
                raise NodeExecutionError("Bot API client is not available", node_id=context.node.id,
                                         recoverable=False)
            robot_id = (
                render_template(config.robot_id, variables) if config.robot_id
                else _sender_fields(context)["robotId"]
            )
            notice = f"{render_template(config.notify_template, variables)}（风险等级：{config.risk_level}）"
            for target in config.notify_targets:
                try:
                    await bot_client.send_message(robot_id, render_template(target, variables), notice)
                except ConfigurationError as e:
                    raise NodeExecutionError(e.message, node_id=context.node.id, recoverable=False)
                notified.append(target)

        escalation = {
            "strategy": config.escalation_strategy,
            "escalateAfterMinutes": config.escalate_after_minutes,
            "notified": notified,
        }
        return NodeResult(
            output={"reply": reply, "replySource": reply_source, "riskLevel": config.risk_level,
                    "notified": notified},
            context_patch={
                "aiReply": reply,
                "riskLevel": config.risk_level,
                "riskHandled": True,
                "riskEscalation": escalation,
            },
        )
