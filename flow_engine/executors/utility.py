"""General-purpose executors for the visual editor canvas."""

import asyncio
import hashlib
import hmac
import json
from typing import Any, Dict, Optional

import httpx

from ..core.exceptions import ConfigurationError, ExternalServiceError, NodeExecutionError
from ..core.expressions import compare, get_path, render_template, render_value
from ..core.logging import get_logger
from ..models.node_configs import (
    ConditionConfig,
    DelayConfig,
    EmailConfig,
    HttpConfig,
    SmsConfig,
    WebhookConfig,
)
from .base import ExecutionContext, NodeExecutor, NodeResult

logger = get_logger(__name__)


def _response_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


class HttpExecutor(NodeExecutor):
    """Performs one HTTP request; 5xx and transport failures are retryable."""

    node_type = "http"
    config_model = HttpConfig
    description = "Call an HTTP endpoint"

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._transport = transport

    async def execute(self, config: HttpConfig, context: ExecutionContext) -> NodeResult:
        variables = context.variables
        url = render_template(config.url, variables)
        headers = {key: render_template(value, variables) for key, value in config.headers.items()}

        request_kwargs: Dict[str, Any] = {"headers": headers}
        if config.body is not None and config.method not in ("GET", "HEAD"):
            body = render_value(config.body, variables)
            if isinstance(body, (dict, list)):
                request_kwargs["json"] = body
            else:
                request_kwargs["content"] = str(body)

        logger.info(f"HTTP node {context.node.id}: {config.method} {url}")
        try:
            async with httpx.AsyncClient(timeout=config.timeout_ms / 1000.0, transport=self._transport) as client:
                response = await client.request(config.method, url, **request_kwargs)
        except httpx.HTTPError as e:
            raise ExternalServiceError(f"HTTP request to {url} failed: {e}", service="http")

        result = {
            "status": response.status_code,
            "data": _response_body(response),
            "headers": dict(response.headers),
            "url": str(response.url),
        }
        if response.status_code >= 400:
            raise ExternalServiceError(
                f"HTTP {config.method} {url} returned {response.status_code}",
                service="http",
                status_code=response.status_code,
            )
        return NodeResult(output=result, context_patch={config.response_variable: result})


class DelayExecutor(NodeExecutor):
    """Suspends only the current instance's task."""

    node_type = "delay"
    config_model = DelayConfig
    description = "Wait for a fixed time"

    async def execute(self, config: DelayConfig, context: ExecutionContext) -> NodeResult:
        delay_ms = config.effective_ms
        await asyncio.sleep(delay_ms / 1000.0)
        return NodeResult(output={"delayedMs": delay_ms})


class ConditionExecutor(NodeExecutor):
    node_type = "condition"
    config_model = ConditionConfig
    description = "Evaluate field conditions"

    async def execute(self, config: ConditionConfig, context: ExecutionContext) -> NodeResult:
        matched = []
        results = []
        for rule in config.conditions:
            field_value = get_path(context.variables, rule.field)
            value = render_value(rule.value, context.variables)
            outcome = compare(field_value, rule.operator, value)
            results.append(outcome)
            if outcome:
                matched.append(rule.id or rule.field)

        if not results:
            passed = True
        elif config.logic == "or":
            passed = any(results)
        else:
            passed = all(results)

        next_node_id = config.true_target_node_id if passed else config.false_target_node_id
        return NodeResult(
            output={"result": passed, "matched": matched},
            context_patch={"conditionResult": passed, "matchedConditions": matched},
            next_node_id=next_node_id,
        )


class EmailExecutor(NodeExecutor):
    node_type = "email"
    config_model = EmailConfig
    description = "Send an email"

    async def execute(self, config: EmailConfig, context: ExecutionContext) -> NodeResult:
        gateway = context.services.notifications
        if gateway is None:
            raise NodeExecutionError("Notification gateway is not available", node_id=context.node.id,
                                     recoverable=False)

        variables = context.variables
        recipients = [render_template(address, variables) for address in config.recipients]
        try:
            result = await gateway.send_email(
                recipients,
                render_template(config.subject, variables),
                render_template(config.body, variables),
                html=config.html,
            )
        except ConfigurationError as e:
            raise NodeExecutionError(e.message, node_id=context.node.id, recoverable=False)
        return NodeResult(output=result, context_patch={"emailResult": result})


class SmsExecutor(NodeExecutor):
    node_type = "sms"
    config_model = SmsConfig
    description = "Send an SMS"

    async def execute(self, config: SmsConfig, context: ExecutionContext) -> NodeResult:
        gateway = context.services.notifications
        if gateway is None:
            raise NodeExecutionError("Notification gateway is not available", node_id=context.node.id,
                                     recoverable=False)

        variables = context.variables
        try:
            result = await gateway.send_sms(
                render_template(config.phone, variables),
                render_template(config.template, variables),
                sign_name=config.sign_name,
            )
        except ConfigurationError as e:
            raise NodeExecutionError(e.message, node_id=context.node.id, recoverable=False)
        return NodeResult(output=result, context_patch={"smsResult": result})


class WebhookExecutor(NodeExecutor):
    """Posts a rendered payload, signed with HMAC-SHA256 when a secret is set."""

    node_type = "webhook"
    config_model = WebhookConfig
    description = "Call an outbound webhook"

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._transport = transport

    async def execute(self, config: WebhookConfig, context: ExecutionContext) -> NodeResult:
        variables = context.variables
        url = render_template(config.url, variables)
        payload = render_value(config.payload, variables) if config.payload is not None else {
            "instanceId": context.instance_id,
            "nodeId": context.node.id,
            "context": {key: value for key, value in variables.items() if key != "nodeOutputs"},
        }
        body = json.dumps(payload, ensure_ascii=False, default=str).encode("utf-8")

        headers = {"Content-Type": "application/json"}
        headers.update({key: render_template(value, variables) for key, value in config.headers.items()})
        if config.secret:
            headers["X-Signature"] = sign_payload(config.secret, body)

        try:
            async with httpx.AsyncClient(timeout=config.timeout_ms / 1000.0, transport=self._transport) as client:
                response = await client.request(config.method, url, content=body, headers=headers)
        except httpx.HTTPError as e:
            raise ExternalServiceError(f"Webhook {url} failed: {e}", service="webhook")

        if response.status_code >= 400:
            raise ExternalServiceError(
                f"Webhook {url} returned {response.status_code}",
                service="webhook",
                status_code=response.status_code,
            )
        result = {"status": response.status_code, "data": _response_body(response)}
        return NodeResult(output=result, context_patch={"webhookResult": result})


def sign_payload(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of ``body``, sent as ``sha256=<hex>``."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"
