"""Typed configuration for each built-in node type.

Node configs arrive from the canvas editor as camelCase JSON, so every model
accepts the camelCase alias as well as the Python field name.
"""

import re
from typing import Any, Dict, List, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


CONDITION_OPERATORS = (
    "==", "!=", ">", "<", ">=", "<=",
    "contains", "startsWith", "endsWith",
    "in", "notIn", "exists", "notExists",
)

HTTP_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE", "HEAD")


class NodeConfig(BaseModel):
    """Base for node configs; unknown keys are kept for forward compatibility."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")


class MessageReceiveConfig(NodeConfig):
    save_to_database: bool = Field(True, alias="saveToDatabase")
    enable_websocket_push: bool = Field(False, alias="enableWebSocketPush")
    role_mapping: str = Field("", alias="roleMapping", description="One 'Label: keywords' rule per line")
    priority_keywords: Dict[str, Union[str, List[str]]] = Field(
        default_factory=dict, alias="priorityKeywords"
    )
    default_role: str = Field("普通客户", alias="defaultRole")


class IntentConfig(NodeConfig):
    supported_intents: List[str] = Field(
        default_factory=lambda: ["chat", "question", "complaint", "service", "help", "risk", "spam", "welcome"],
        alias="supportedIntents",
    )
    confidence_threshold: float = Field(0.7, alias="confidenceThreshold")
    fallback_intent: str = Field("chat", alias="fallbackIntent")
    model_id: Optional[str] = Field(None, alias="modelId")
    intent_keywords: Dict[str, List[str]] = Field(default_factory=dict, alias="intentKeywords")
    system_prompt: Optional[str] = Field(None, alias="systemPrompt")

    @field_validator('confidence_threshold')
    @classmethod
    def validate_threshold(cls, value):
        if not 0.0 <= value <= 1.0:
            raise ValueError("confidenceThreshold must be between 0 and 1")
        return value


class DecisionCondition(NodeConfig):
    label: Optional[str] = None
    expression: str
    target_node_id: str = Field(..., alias="targetNodeId")


class DecisionConfig(NodeConfig):
    decision_mode: str = Field("priority", alias="decisionMode")
    conditions: List[DecisionCondition] = Field(default_factory=list)
    default_target: Optional[str] = Field(None, alias="defaultTarget")

    @field_validator('decision_mode')
    @classmethod
    def validate_mode(cls, value):
        if value != "priority":
            raise ValueError("decisionMode must be 'priority'")
        return value


class AiReplyConfig(NodeConfig):
    model_id: Optional[str] = Field(None, alias="modelId")
    temperature: float = Field(0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(1000, alias="maxTokens", gt=0)
    use_context_history: bool = Field(True, alias="useContextHistory")
    history_limit: int = Field(10, alias="historyLimit", ge=0)
    default_persona_tone: str = Field("专业、友好", alias="defaultPersonaTone")
    system_prompt: Optional[str] = Field(None, alias="systemPrompt")


class MessageDispatchConfig(NodeConfig):
    robot_id: Optional[str] = Field(None, alias="robotId")
    to_name: Optional[str] = Field(None, alias="toName")
    content: str = Field("${aiReply}")
    message_type: int = Field(1, alias="messageType")
    at_sender: bool = Field(False, alias="atSender")


class SendCommandConfig(NodeConfig):
    command_type: str = Field("send_message", alias="commandType")
    robot_id: Optional[str] = Field(None, alias="robotId")
    message_content: str = Field("", alias="messageContent")
    recipients: List[str] = Field(default_factory=list)


class CommandStatusConfig(NodeConfig):
    command_id: str = Field("${lastCommandId}", alias="commandId")
    save_to_robot_commands: bool = Field(False, alias="saveToRobotCommands")


class EndConfig(NodeConfig):
    message: str = Field("Flow completed")
    save_statistics: bool = Field(False, alias="saveStatistics")


class HttpConfig(NodeConfig):
    url: str
    method: str = Field("GET")
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Optional[Any] = None
    timeout_ms: int = Field(10000, alias="timeoutMs", gt=0)
    response_variable: str = Field("httpResponse", alias="responseVariable")

    @field_validator('method')
    @classmethod
    def validate_method(cls, value):
        value = value.upper()
        if value not in HTTP_METHODS:
            raise ValueError(f"Unsupported HTTP method: {value}")
        return value


class DelayConfig(NodeConfig):
    delay_ms: Optional[int] = Field(None, alias="delayMs", ge=0)
    duration: Optional[float] = Field(None, ge=0, description="Legacy delay in seconds")

    @model_validator(mode='after')
    def require_delay(self):
        if self.delay_ms is None and self.duration is None:
            raise ValueError("delay node needs delayMs or duration")
        return self

    @property
    def effective_ms(self) -> int:
        if self.delay_ms is not None:
            return self.delay_ms
        return int(self.duration * 1000)


class ConditionRule(NodeConfig):
    id: Optional[str] = None
    field: str
    operator: str
    value: Optional[Any] = None

    @field_validator('operator')
    @classmethod
    def validate_operator(cls, value):
        if value not in CONDITION_OPERATORS:
            raise ValueError(f"Unsupported operator: {value}")
        return value


class ConditionConfig(NodeConfig):
    conditions: List[ConditionRule] = Field(default_factory=list)
    logic: str = Field("and")
    true_target_node_id: Optional[str] = Field(None, alias="trueTargetNodeId")
    false_target_node_id: Optional[str] = Field(None, alias="falseTargetNodeId")

    @field_validator('logic')
    @classmethod
    def validate_logic(cls, value):
        value = value.lower()
        if value not in ("and", "or"):
            raise ValueError("logic must be 'and' or 'or'")
        return value


class EmailConfig(NodeConfig):
    to: Union[str, List[str]]
    subject: str = ""
    body: str = ""
    html: bool = False

    @property
    def recipients(self) -> List[str]:
        if isinstance(self.to, str):
            return [addr.strip() for addr in self.to.split(",") if addr.strip()]
        return list(self.to)


class SmsConfig(NodeConfig):
    phone: str
    template: str
    sign_name: Optional[str] = Field(None, alias="signName")


class WebhookConfig(NodeConfig):
    url: str
    method: str = Field("POST")
    payload: Optional[Any] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    secret: Optional[str] = None
    timeout_ms: int = Field(10000, alias="timeoutMs", gt=0)

    @field_validator('method')
    @classmethod
    def validate_method(cls, value):
        value = value.upper()
        if value not in ("POST", "PUT", "PATCH"):
            raise ValueError("webhook method must be POST, PUT or PATCH")
        return value


ALERT_LEVELS = ("low", "medium", "high", "critical")


def _check_level(value: str) -> str:
    value = value.lower()
    if value not in ALERT_LEVELS:
        raise ValueError(f"level must be one of {', '.join(ALERT_LEVELS)}")
    return value


class StartConfig(NodeConfig):
    message: str = Field("Flow started")


class AlertSaveConfig(NodeConfig):
    alert_type: str = Field("risk", alias="alertType")
    alert_level: str = Field("medium", alias="alertLevel")
    alert_title: str = Field("${intent}", alias="alertTitle")
    alert_content: str = Field("${content}", alias="alertContent")
    source: str = Field("flow")
    tags: List[str] = Field(default_factory=list)
    assignee: Optional[str] = None
    save_to_database: bool = Field(True, alias="saveToDatabase")
    enable_notification: bool = Field(False, alias="enableNotification")

    @field_validator('alert_level')
    @classmethod
    def validate_level(cls, value):
        return _check_level(value)


class AlertRuleConfig(NodeConfig):
    rule_type: str = Field("pattern", alias="ruleType")
    pattern: Optional[str] = None
    keywords: List[str] = Field(default_factory=list)
    field_path: str = Field("riskScore", alias="field", description="Context path compared by threshold rules")
    threshold: Optional[float] = None
    min_level: str = Field("high", alias="minLevel", description="Lowest alertLevel matched by level rules")
    alert_level: str = Field("high", alias="alertLevel")
    escalation_level: int = Field(1, alias="escalationLevel", ge=0)
    escalate_to: List[str] = Field(default_factory=list, alias="escalateTo")
    notify_channels: List[str] = Field(default_factory=list, alias="notifyChannels")

    @field_validator('rule_type')
    @classmethod
    def validate_rule_type(cls, value):
        if value not in ("pattern", "threshold", "level"):
            raise ValueError("ruleType must be 'pattern', 'threshold' or 'level'")
        return value

    @field_validator('min_level', 'alert_level')
    @classmethod
    def validate_levels(cls, value):
        return _check_level(value)

    @model_validator(mode='after')
    def require_rule_input(self):
        if self.rule_type == "pattern" and not (self.pattern or self.keywords):
            raise ValueError("pattern rule needs pattern or keywords")
        if self.pattern:
            try:
                re.compile(self.pattern)
            except re.error as e:
                raise ValueError(f"invalid pattern: {e}")
        if self.rule_type == "threshold" and self.threshold is None:
            raise ValueError("threshold rule needs threshold")
        return self


class RiskHandlerConfig(NodeConfig):
    risk_level: str = Field("high", alias="riskLevel")
    ai_soothing: bool = Field(True, alias="aiSoothing")
    soothing_model_id: Optional[str] = Field(None, alias="soothingModelId")
    soothing_prompt: Optional[str] = Field(None, alias="soothingPrompt")
    fallback_reply: str = Field("非常抱歉给您带来不便，我们已通知专人尽快为您处理。", alias="fallbackReply")
    notify_humans: bool = Field(True, alias="notifyHumans")
    notify_targets: List[str] = Field(default_factory=list, alias="notifyTargets")
    notify_template: str = Field(
        "【风险提醒】${senderName}（${groupName}）：${content}",
        alias="notifyTemplate",
    )
    robot_id: Optional[str] = Field(None, alias="robotId")
    escalation_strategy: str = Field("immediate", alias="escalationStrategy")
    escalate_after_minutes: Optional[int] = Field(None, alias="escalateAfterMinutes", ge=0)

    @field_validator('risk_level')
    @classmethod
    def validate_risk_level(cls, value):
        return _check_level(value)

    @field_validator('escalation_strategy')
    @classmethod
    def validate_strategy(cls, value):
        if value not in ("immediate", "timeout", "manual"):
            raise ValueError("escalationStrategy must be 'immediate', 'timeout' or 'manual'")
        return value
