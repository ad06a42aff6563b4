"""Built-in node executors."""

from typing import List

from .base import ExecutionContext, NodeExecutor, NodeResult, NodeServices
from .customer_service import (
    AiReplyExecutor,
    CommandStatusExecutor,
    DecisionExecutor,
    EndExecutor,
    IntentExecutor,
    MessageDispatchExecutor,
    MessageReceiveExecutor,
    SendCommandExecutor,
    StartExecutor,
)
from .risk import AlertRuleExecutor, AlertSaveExecutor, RiskHandlerExecutor
from .utility import (
    ConditionExecutor,
    DelayExecutor,
    EmailExecutor,
    HttpExecutor,
    SmsExecutor,
    WebhookExecutor,
)


def builtin_executors() -> List[NodeExecutor]:
    """Fresh instances of every built-in executor."""
    return [
        StartExecutor(),
        MessageReceiveExecutor(),
        IntentExecutor(),
        DecisionExecutor(),
        AiReplyExecutor(),
        MessageDispatchExecutor(),
        SendCommandExecutor(),
        CommandStatusExecutor(),
        EndExecutor(),
        AlertRuleExecutor(),
        AlertSaveExecutor(),
        RiskHandlerExecutor(),
        HttpExecutor(),
        DelayExecutor(),
        ConditionExecutor(),
        EmailExecutor(),
        SmsExecutor(),
        WebhookExecutor(),
    ]


__all__ = [
    "ExecutionContext",
    "NodeExecutor",
    "NodeResult",
    "NodeServices",
    "builtin_executors",
    "AiReplyExecutor",
    "CommandStatusExecutor",
    "DecisionExecutor",
    "EndExecutor",
    "IntentExecutor",
    "MessageDispatchExecutor",
    "MessageReceiveExecutor",
    "SendCommandExecutor",
    "StartExecutor",
    "AlertRuleExecutor",
    "AlertSaveExecutor",
    "RiskHandlerExecutor",
    "ConditionExecutor",
    "DelayExecutor",
    "EmailExecutor",
    "HttpExecutor",
    "SmsExecutor",
    "WebhookExecutor",
]
