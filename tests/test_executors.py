"""Tests for the built-in node executors and the clients they call."""

import hashlib
import hmac
import json

import aiosmtplib
import httpx
import pytest

from flow_engine.core.exceptions import ConfigurationError, ExternalServiceError, NodeExecutionError
from flow_engine.executors.base import ExecutionContext, NodeServices
from flow_engine.executors.customer_service import (
    AiReplyExecutor,
    CommandStatusExecutor,
    DecisionExecutor,
    EndExecutor,
    IntentExecutor,
    MessageDispatchExecutor,
    MessageReceiveExecutor,
    SendCommandExecutor,
    StartExecutor,
    parse_role_mapping,
)
from flow_engine.executors.risk import AlertRuleExecutor, AlertSaveExecutor, RiskHandlerExecutor
from flow_engine.executors.utility import (
    ConditionExecutor,
    DelayExecutor,
    EmailExecutor,
    HttpExecutor,
    SmsExecutor,
    WebhookExecutor,
    sign_payload,
)
from flow_engine.models.core import FlowNode
from flow_engine.services import AIClient, BotApiClient, MessageStore, NotificationGateway

from conftest import FakeAIClient, FakeBotClient, FakePushChannel


def make_context(node_type, config=None, variables=None, services=None, node_id="n1", **kwargs):
    node = FlowNode(id=node_id, type=node_type, name=node_id, config=config or {})
    return ExecutionContext(
        instance_id="inst-1",
        definition_id="def-1",
        node=node,
        variables=variables if variables is not None else {},
        services=services or NodeServices(),
        **kwargs
    )


async def run(executor, node_type, config=None, **kwargs):
    context = make_context(node_type, config, **kwargs)
    return await executor.execute(executor.parse_config(context.node.config), context)


class TestParseRoleMapping:
    def test_quoted_keyword_form(self):
        rules = parse_role_mapping("售后客户:包含'售后','维修'字样\nVIP客户：包含“VIP”字样")
        assert rules == [("售后客户", ["售后", "维修"]), ("VIP客户", ["VIP"])]

    def test_plain_list_form(self):
        assert parse_role_mapping("VIP: vip,会员、尊享") == [("VIP", ["vip", "会员", "尊享"])]

    def test_invalid_lines_are_ignored(self):
        assert parse_role_mapping("no separator here\n空规则:\n\n") == []


class TestMessageReceive:
    @pytest.mark.asyncio
    async def test_role_and_priority(self):
        push = FakePushChannel()
        result = await run(
            MessageReceiveExecutor(), "message_receive",
            {
                "saveToDatabase": False,
                "enableWebSocketPush": True,
                "roleMapping": "售后客户:包含'售后','维修'字样",
                "priorityKeywords": {"high": "紧急,投诉", "low": ["闲聊"]},
            },
            variables={"triggerData": {"content": "紧急！售后维修", "senderName": "张三", "robotId": "r1"}},
            services=NodeServices(push_channel=push),
        )

        assert result.context_patch["businessRole"] == "售后客户"
        assert result.context_patch["priority"] == "high"
        assert result.context_patch["content"] == "紧急！售后维修"
        assert result.output["pushed"] is True
        assert push.events[0][0] == "new_message"
        assert push.events[0][1]["instanceId"] == "inst-1"

    @pytest.mark.asyncio
    async def test_default_role(self):
        result = await run(MessageReceiveExecutor(), "message_receive", {"saveToDatabase": False},
                           variables={"triggerData": {"content": "你好"}})
        assert result.context_patch["businessRole"] == "普通客户"
        assert result.context_patch["priority"] == "normal"

    @pytest.mark.asyncio
    async def test_saves_message(self, temp_db):
        store = MessageStore()
        result = await run(MessageReceiveExecutor(), "message_receive", {},
                           variables={"triggerData": {"content": "hi", "messageId": "m-1"}},
                           services=NodeServices(message_store=store))
        assert result.output["messageRowId"]

    def test_not_retried(self):
        assert MessageReceiveExecutor.idempotent is False


class TestIntent:
    @pytest.mark.asyncio
    async def test_keyword_match_skips_ai(self):
        ai = FakeAIClient(intent="question")
        result = await run(IntentExecutor(), "intent", {"intentKeywords": {"complaint": ["投诉"]}},
                           variables={"content": "我要投诉"}, services=NodeServices(ai_client=ai))
        assert result.context_patch["intent"] == "complaint"
        assert result.output["source"] == "keyword"

    @pytest.mark.asyncio
    async def test_ai_classification(self):
        ai = FakeAIClient(intent="question", confidence=0.95)
        result = await run(IntentExecutor(), "intent", {}, variables={"content": "几点开门"},
                           services=NodeServices(ai_client=ai))
        assert result.context_patch == {"intent": "question", "intentConfidence": 0.95}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("ai", [
        FakeAIClient(intent="question", confidence=0.2),
        FakeAIClient(intent="weather", confidence=0.99),
        FakeAIClient(error=ExternalServiceError("down", service="ai")),
        None,
    ])
    async def test_falls_back_instead_of_failing(self, ai):
        result = await run(IntentExecutor(), "intent", {"fallbackIntent": "chat"}, variables={"content": "嗯"},
                           services=NodeServices(ai_client=ai))
        assert result.context_patch["intent"] == "chat"
        assert result.output["source"] == "fallback"


class TestDecision:
    @pytest.mark.asyncio
    async def test_first_true_condition_wins(self):
        config = {"conditions": [
            {"expression": "context.score > 5", "targetNodeId": "high"},
            {"expression": "context.score > 1", "targetNodeId": "mid"},
        ], "defaultTarget": "low"}
        result = await run(DecisionExecutor(), "decision", config, variables={"score": 9})
        assert result.next_node_id == "high"
        assert result.output["index"] == 0

    @pytest.mark.asyncio
    async def test_default_target(self):
        config = {"conditions": [{"expression": "context.score > 5", "targetNodeId": "high"}],
                  "defaultTarget": "low"}
        result = await run(DecisionExecutor(), "decision", config, variables={"score": 0})
        assert result.next_node_id == "low"

    @pytest.mark.asyncio
    async def test_no_match_and_no_default(self):
        with pytest.raises(NodeExecutionError) as exc_info:
            await run(DecisionExecutor(), "decision", {"conditions": []})
        assert exc_info.value.recoverable is False


class TestAiReply:
    @pytest.mark.asyncio
    async def test_reply_and_history(self):
        ai = FakeAIClient(reply="好的")
        variables = {"content": "退款多久到账", "businessRole": "VIP客户",
                     "history": [{"role": "user", "content": "在吗"}]}
        result = await run(AiReplyExecutor(), "ai_reply", {"historyLimit": 5}, variables=variables,
                           services=NodeServices(ai_client=ai))

        assert result.context_patch["aiReply"] == "好的"
        assert result.context_patch["history"][-1] == {"role": "assistant", "content": "好的"}
        messages = ai.chat_calls[0]["messages"]
        assert messages[0]["role"] == "system" and "VIP客户" in messages[0]["content"]
        assert messages[1]["content"] == "在吗"
        assert messages[-1] == {"role": "user", "content": "退款多久到账"}

    @pytest.mark.asyncio
    async def test_provider_error_propagates_as_recoverable(self):
        ai = FakeAIClient(error=ExternalServiceError("timeout", service="ai"))
        with pytest.raises(ExternalServiceError) as exc_info:
            await run(AiReplyExecutor(), "ai_reply", {}, variables={"content": "hi"},
                      services=NodeServices(ai_client=ai))
        assert exc_info.value.recoverable is True

    @pytest.mark.asyncio
    async def test_missing_client(self):
        with pytest.raises(NodeExecutionError):
            await run(AiReplyExecutor(), "ai_reply", {}, variables={"content": "hi"})


class TestBotNodes:
    @pytest.mark.asyncio
    async def test_dispatch_renders_and_mentions_sender(self):
        bot = FakeBotClient()
        variables = {"aiReply": "已处理", "triggerData": {"robotId": "r1", "groupName": "售后群", "senderName": "李四"}}
        result = await run(MessageDispatchExecutor(), "message_dispatch",
                           {"content": "${aiReply}", "atSender": True},
                           variables=variables, services=NodeServices(bot_client=bot))

        assert bot.sent == [{"robotId": "r1", "toName": "售后群", "content": "@李四 已处理"}]
        assert result.context_patch["dispatchResult"]["toName"] == "售后群"

    @pytest.mark.asyncio
    async def test_dispatch_empty_content_fails(self):
        with pytest.raises(NodeExecutionError):
            await run(MessageDispatchExecutor(), "message_dispatch", {"content": "${missing}"},
                      services=NodeServices(bot_client=FakeBotClient()))

    @pytest.mark.asyncio
    async def test_send_command_then_check_status(self, temp_db):
        bot = FakeBotClient(command_status="delivered")
        store = MessageStore()
        services = NodeServices(bot_client=bot, message_store=store)
        variables = {"aiReply": "hello", "triggerData": {"robotId": "r9"}}

        sent = await run(SendCommandExecutor(), "send_command",
                         {"messageContent": "${aiReply}", "recipients": ["客户A"]},
                         variables=variables, services=services)
        assert sent.context_patch["lastCommandId"] == "cmd-1"
        assert bot.commands[0]["payload"] == {"content": "hello", "recipients": ["客户A"]}
        assert store.get_robot_command("cmd-1")["status"] == "queued"

        variables.update(sent.context_patch)
        status = await run(CommandStatusExecutor(), "command_status", {"saveToRobotCommands": True},
                           variables=variables, services=services)
        assert status.context_patch["commandStatus"]["status"] == "delivered"
        assert store.get_robot_command("cmd-1")["status"] == "delivered"


class TestEnd:
    @pytest.mark.asyncio
    async def test_statistics(self):
        result = await run(EndExecutor(), "end", {"message": "done ${name}", "saveStatistics": True},
                           variables={"name": "x"}, execution_path=["a", "b", "n1"])
        assert result.output["message"] == "done x"
        assert result.context_patch["statistics"]["nodeCount"] == 3
        assert result.context_patch["statistics"]["path"] == ["a", "b", "n1"]


class TestStart:
    @pytest.mark.asyncio
    async def test_passes_through(self):
        result = await run(StartExecutor(), "start", {}, variables={"content": "hi"}, node_id="node_start")
        assert result.next_node_id is None
        assert result.context_patch == {}
        assert result.output["startNodeId"] == "node_start"


class TestAlertRule:
    @pytest.mark.asyncio
    async def test_pattern_rule_escalates(self):
        result = await run(AlertRuleExecutor(), "alert_rule",
                           {"ruleType": "pattern", "keywords": ["投诉"], "alertLevel": "high",
                            "escalationLevel": 2, "escalateTo": ["risk_group"]},
                           variables={"content": "我要投诉你们"})

        assert result.context_patch["escalate"] is True
        assert result.context_patch["alertLevel"] == "high"
        assert result.context_patch["escalation"]["level"] == 2
        assert result.context_patch["escalation"]["escalateTo"] == ["risk_group"]

    @pytest.mark.asyncio
    async def test_regex_pattern(self):
        result = await run(AlertRuleExecutor(), "alert_rule", {"pattern": r"退[款钱]"},
                           variables={"triggerData": {"content": "什么时候退钱"}})
        assert result.output["matched"] is True

    @pytest.mark.asyncio
    async def test_no_match_keeps_level(self):
        result = await run(AlertRuleExecutor(), "alert_rule", {"keywords": ["投诉"]},
                           variables={"content": "谢谢", "alertLevel": "low"})
        assert result.context_patch == {"escalate": False}
        assert result.output["alertLevel"] == "low"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("score,matched", [(85, True), ("90", True), (40, False), ("n/a", False)])
    async def test_threshold_rule(self, score, matched):
        result = await run(AlertRuleExecutor(), "alert_rule",
                           {"ruleType": "threshold", "field": "risk.score", "threshold": 80},
                           variables={"risk": {"score": score}})
        assert result.output["matched"] is matched

    @pytest.mark.asyncio
    async def test_level_never_goes_down(self):
        result = await run(AlertRuleExecutor(), "alert_rule",
                           {"ruleType": "level", "minLevel": "medium", "alertLevel": "high"},
                           variables={"alertLevel": "critical"})
        assert result.context_patch["alertLevel"] == "critical"

    @pytest.mark.parametrize("config", [
        {"ruleType": "pattern"},
        {"ruleType": "threshold"},
        {"ruleType": "frequency", "keywords": ["x"]},
        {"pattern": "("},
        {"keywords": ["x"], "alertLevel": "severe"},
    ])
    def test_invalid_config(self, config):
        assert AlertRuleExecutor().validate_config(config)


class TestAlertSave:
    @pytest.mark.asyncio
    async def test_saves_alert(self, temp_db):
        store = MessageStore()
        push = FakePushChannel()
        result = await run(
            AlertSaveExecutor(), "alert_save",
            {"alertType": "risk", "alertLevel": "medium", "alertTitle": "${triggerData.senderName}的投诉",
             "enableNotification": True},
            variables={"content": "太差了", "intent": "complaint", "alertLevel": "high",
                       "escalation": {"level": 2},
                       "triggerData": {"senderName": "张三", "groupName": "售后群", "robotId": "r1"}},
            services=NodeServices(message_store=store, push_channel=push),
        )

        assert result.context_patch["alertLevel"] == "high"
        alerts = store.list_alerts("inst-1")
        assert len(alerts) == 1
        assert alerts[0]["id"] == result.context_patch["alertId"]
        assert alerts[0]["title"] == "张三的投诉"
        assert alerts[0]["content"] == "太差了"
        assert alerts[0]["alertLevel"] == "high"
        assert alerts[0]["escalationLevel"] == 2
        assert push.events[0][0] == "alert_created"

    @pytest.mark.asyncio
    async def test_without_store(self):
        result = await run(AlertSaveExecutor(), "alert_save", {}, variables={"content": "x"})
        assert result.output["alertId"] is None
        assert result.context_patch["alertLevel"] == "medium"

    def test_not_retried(self):
        assert AlertSaveExecutor.idempotent is False


class TestRiskHandler:
    @pytest.mark.asyncio
    async def test_soothes_and_notifies_staff(self):
        ai = FakeAIClient(reply="非常抱歉，我们马上处理。")
        bot = FakeBotClient()
        result = await run(
            RiskHandlerExecutor(), "risk_handler",
            {"riskLevel": "critical", "notifyTargets": ["值班主管", "风控组"], "escalationStrategy": "timeout",
             "escalateAfterMinutes": 30},
            variables={"content": "再不处理就投诉", "senderName": "李四", "groupName": "VIP群", "robotId": "r2"},
            services=NodeServices(ai_client=ai, bot_client=bot),
        )

        assert result.context_patch["aiReply"] == "非常抱歉，我们马上处理。"
        assert result.output["replySource"] == "ai"
        assert ai.chat_calls[0]["messages"][-1] == {"role": "user", "content": "再不处理就投诉"}
        assert [sent["toName"] for sent in bot.sent] == ["值班主管", "风控组"]
        assert bot.sent[0]["robotId"] == "r2"
        assert "李四" in bot.sent[0]["content"] and "critical" in bot.sent[0]["content"]
        assert result.context_patch["riskEscalation"] == {
            "strategy": "timeout", "escalateAfterMinutes": 30, "notified": ["值班主管", "风控组"]}

    @pytest.mark.asyncio
    async def test_ai_failure_uses_fallback_reply(self):
        ai = FakeAIClient(error=ExternalServiceError("down", service="ai", status_code=503))
        result = await run(RiskHandlerExecutor(), "risk_handler", {"fallbackReply": "稍等"},
                           variables={"content": "x"}, services=NodeServices(ai_client=ai))
        assert result.context_patch["aiReply"] == "稍等"
        assert result.output["replySource"] == "fallback"
        assert result.output["notified"] == []

    @pytest.mark.asyncio
    async def test_notification_needs_bot_client(self):
        with pytest.raises(NodeExecutionError) as exc_info:
            await run(RiskHandlerExecutor(), "risk_handler", {"notifyTargets": ["主管"], "aiSoothing": False})
        assert exc_info.value.recoverable is False


class TestUtilityNodes:
    @pytest.mark.asyncio
    async def test_delay(self):
        result = await run(DelayExecutor(), "delay", {"delayMs": 5})
        assert result.output == {"delayedMs": 5}

    @pytest.mark.asyncio
    async def test_legacy_delay_duration(self):
        result = await run(DelayExecutor(), "delay", {"duration": 0.01})
        assert result.output == {"delayedMs": 10}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("logic,expected,target", [("and", False, "no"), ("or", True, "yes")])
    async def test_condition_logic(self, logic, expected, target):
        config = {
            "conditions": [
                {"field": "priority", "operator": "==", "value": "high"},
                {"field": "triggerData.content", "operator": "contains", "value": "退款"},
            ],
            "logic": logic,
            "trueTargetNodeId": "yes",
            "falseTargetNodeId": "no",
        }
        variables = {"priority": "normal", "triggerData": {"content": "申请退款"}}
        result = await run(ConditionExecutor(), "condition", config, variables=variables)
        assert result.context_patch["conditionResult"] is expected
        assert result.next_node_id == target

    @pytest.mark.asyncio
    async def test_http_request(self):
        seen = {}

        def handler(request: httpx.Request):
            seen["method"] = request.method
            seen["body"] = json.loads(request.content)
            seen["auth"] = request.headers.get("authorization")
            return httpx.Response(200, json={"ok": True})

        executor = HttpExecutor(transport=httpx.MockTransport(handler))
        config = {
            "url": "http://crm.local/tickets",
            "method": "post",
            "headers": {"Authorization": "Bearer ${token}"},
            "body": {"customer": "${senderName}", "count": "${count}"},
            "responseVariable": "ticket",
        }
        result = await run(executor, "http", config, variables={"token": "t", "senderName": "王五", "count": 2})

        assert seen == {"method": "POST", "body": {"customer": "王五", "count": 2}, "auth": "Bearer t"}
        assert result.context_patch["ticket"]["data"] == {"ok": True}
        assert result.context_patch["ticket"]["status"] == 200

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,recoverable", [(503, True), (404, False)])
    async def test_http_error_status(self, status, recoverable):
        executor = HttpExecutor(transport=httpx.MockTransport(lambda request: httpx.Response(status)))
        with pytest.raises(ExternalServiceError) as exc_info:
            await run(executor, "http", {"url": "http://crm.local/x"})
        assert exc_info.value.recoverable is recoverable

    @pytest.mark.asyncio
    async def test_http_transport_failure_is_recoverable(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        executor = HttpExecutor(transport=httpx.MockTransport(handler))
        with pytest.raises(ExternalServiceError) as exc_info:
            await run(executor, "http", {"url": "http://crm.local/x"})
        assert exc_info.value.recoverable is True

    @pytest.mark.asyncio
    async def test_webhook_is_signed(self):
        captured = {}

        def handler(request: httpx.Request):
            captured["body"] = request.content
            captured["signature"] = request.headers.get("x-signature")
            return httpx.Response(202, json={"accepted": True})

        executor = WebhookExecutor(transport=httpx.MockTransport(handler))
        result = await run(executor, "webhook", {"url": "http://hooks.local/in", "secret": "s3cret"},
                           variables={"intent": "complaint", "nodeOutputs": {"a": {}}})

        expected = "sha256=" + hmac.new(b"s3cret", captured["body"], hashlib.sha256).hexdigest()
        assert captured["signature"] == expected
        body = json.loads(captured["body"])
        assert body["context"] == {"intent": "complaint"}
        assert body["instanceId"] == "inst-1"
        assert result.output == {"status": 202, "data": {"accepted": True}}

    def test_sign_payload(self):
        assert sign_payload("k", b"{}") == "sha256=" + hmac.new(b"k", b"{}", hashlib.sha256).hexdigest()

    @pytest.mark.asyncio
    async def test_sms_through_gateway(self):
        requests = []

        def handler(request):
            requests.append(json.loads(request.content))
            return httpx.Response(200, json={"code": 0})

        gateway = NotificationGateway(sms_gateway_url="http://sms.local/send",
                                      transport=httpx.MockTransport(handler))
        result = await run(SmsExecutor(), "sms",
                           {"phone": "${phone}", "template": "您的工单 ${ticket} 已受理", "signName": "客服"},
                           variables={"phone": "13800000000", "ticket": "T-1"},
                           services=NodeServices(notifications=gateway))

        assert requests == [{"phone": "13800000000", "content": "您的工单 T-1 已受理", "signName": "客服"}]
        assert result.context_patch["smsResult"]["sent"] is True

    @pytest.mark.asyncio
    async def test_sms_without_gateway_is_not_retryable(self):
        with pytest.raises(NodeExecutionError) as exc_info:
            await run(SmsExecutor(), "sms", {"phone": "1", "template": "x"},
                      services=NodeServices(notifications=NotificationGateway()))
        assert exc_info.value.recoverable is False

    @pytest.mark.asyncio
    async def test_email(self, monkeypatch):
        sent = []

        async def fake_send(message, **kwargs):
            sent.append((message, kwargs))

        monkeypatch.setattr(aiosmtplib, "send", fake_send)
        gateway = NotificationGateway(smtp_host="smtp.local", smtp_port=25, smtp_sender="bot@example.com")
        result = await run(EmailExecutor(), "email",
                           {"to": "a@example.com, b@example.com", "subject": "工单 ${id}", "body": "hi"},
                           variables={"id": 7}, services=NodeServices(notifications=gateway))

        message, kwargs = sent[0]
        assert message["Subject"] == "工单 7"
        assert message["To"] == "a@example.com, b@example.com"
        assert kwargs["hostname"] == "smtp.local"
        assert result.context_patch["emailResult"]["recipients"] == ["a@example.com", "b@example.com"]


class TestClients:
    @pytest.mark.asyncio
    async def test_ai_chat(self):
        def handler(request):
            payload = json.loads(request.content)
            assert request.url.path == "/v1/chat/completions"
            assert payload["model"] == "gpt-4o-mini"
            return httpx.Response(200, json={"choices": [{"message": {"content": " 你好 "}}]})

        client = AIClient("http://ai.local/v1/", api_key="k", transport=httpx.MockTransport(handler))
        assert await client.chat([{"role": "user", "content": "hi"}]) == "你好"

    @pytest.mark.asyncio
    async def test_ai_classify_intent_parses_json(self):
        reply = 'Sure: {"intent": "complaint", "confidence": 0.8}'
        transport = httpx.MockTransport(
            lambda request: httpx.Response(200, json={"choices": [{"message": {"content": reply}}]}))
        client = AIClient("http://ai.local", transport=transport)

        assert await client.classify_intent("投诉", ["complaint", "chat"]) == ("complaint", 0.8)

    @pytest.mark.asyncio
    async def test_ai_not_configured(self):
        with pytest.raises(ConfigurationError):
            await AIClient(None).chat([])

    @pytest.mark.asyncio
    async def test_ai_throttled_is_recoverable(self):
        client = AIClient("http://ai.local", transport=httpx.MockTransport(lambda request: httpx.Response(429)))
        with pytest.raises(ExternalServiceError) as exc_info:
            await client.chat([])
        assert exc_info.value.recoverable is True

    @pytest.mark.asyncio
    async def test_bot_send_command(self):
        def handler(request):
            assert request.headers["authorization"] == "Bearer tok"
            assert request.url.path == "/api/commands"
            return httpx.Response(200, json={"commandId": "c-1", "status": "queued"})

        client = BotApiClient("http://bot.local/api", token="tok", transport=httpx.MockTransport(handler))
        result = await client.send_command("r1", "send_message", {"content": "x"})
        assert result == {"commandId": "c-1", "status": "queued"}

    @pytest.mark.asyncio
    async def test_bot_client_rejection(self):
        client = BotApiClient("http://bot.local", transport=httpx.MockTransport(lambda request: httpx.Response(400)))
        with pytest.raises(ExternalServiceError) as exc_info:
            await client.get_command_status("c-1")
        assert exc_info.value.recoverable is False
