"""HTTP client for a user's agent gateway.

Cronjob payloads are delivered to ``/hooks/wake`` (system events) or
``/hooks/agent`` (agent turns); a running agent turn can be asked to stop
through ``/hooks/stop``. Every failure surfaces as a ``GatewayError`` with a
structured ``code``; nothing is retried here.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple
import asyncio
import json
import logging
import re

import aiohttp

from core.config import settings
from utils.timing import timeit

logger = logging.getLogger(__name__)

PAYLOAD_SYSTEM_EVENT = "systemEvent"
PAYLOAD_AGENT_TURN = "agentTurn"

ERROR_NOT_CONFIGURED = "not_configured"
ERROR_TIMEOUT = "timeout"
ERROR_NETWORK = "network"
ERROR_HTTP = "http_error"
ERROR_AUTH = "auth_failed"
ERROR_INVALID_RESPONSE = "invalid_response"

# error.type / code values a gateway reports for credential and billing problems
AUTH_ERROR_TYPES = {
    "authentication_error",
    "permission_error",
    "invalid_api_key",
    "unauthorized",
    "rate_limit_error",
    "billing_error",
    "insufficient_credits",
}

# Legacy gateways only report free text
_AUTH_ERROR_TEXT = re.compile(
    r"authentication_error|invalid.*api.key|unauthorized|rate_limit|credit.*balance.*low|billing|FailoverError",
    re.IGNORECASE,
)

MAX_OUTPUT_CHARS = 65535


class GatewayError(Exception):
    def __init__(self, code: str, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status = status

    def __str__(self) -> str:
        prefix = f"[{self.code}]" if self.status is None else f"[{self.code} {self.status}]"
        return f"{prefix} {self.message}"


@dataclass
class GatewayTarget:
    url: Optional[str]
    token: Optional[str]

    @property
    def configured(self) -> bool:
        return bool(self.url and self.token)

    def endpoint(self, path: str) -> str:
        return f"{(self.url or '').rstrip('/')}{path}"


@dataclass
class GatewayResult:
    status: int
    data: Any
    output: str
    usage: Optional[Dict[str, int]] = None


def classify_error_text(text: Optional[str]) -> Optional[str]:
    """Map free-form gateway error text to an error code, or None if unrecognised."""
    if text and _AUTH_ERROR_TEXT.search(text):
        return ERROR_AUTH
    return None


def _structured_error(data: Any) -> Tuple[Optional[str], Optional[str]]:
    """(type-or-code, message) from a JSON error body."""
    if not isinstance(data, dict):
        return None, None
    err = data.get("error")
    if isinstance(err, dict):
        kind = err.get("type") or err.get("code")
        return (str(kind) if kind else None), err.get("message")
    kind = data.get("code") or data.get("type")
    message = err if isinstance(err, str) else data.get("message")
    return (str(kind) if kind else None), message


def _classify_failure(status: int, data: Any, text: str) -> str:
    kind, _ = _structured_error(data)
    if kind:
        return ERROR_AUTH if kind.lower() in AUTH_ERROR_TYPES else ERROR_HTTP
    if status in (401, 403):
        return ERROR_AUTH
    return classify_error_text(text) or ERROR_HTTP


def _extract_output(data: Any) -> str:
    if isinstance(data, dict):
        for key in ("output", "text", "reply", "message", "result"):
            value = data.get(key)
            if isinstance(value, str) and value:
                return value[:MAX_OUTPUT_CHARS]
    return json.dumps(data, ensure_ascii=False, default=str)[:MAX_OUTPUT_CHARS]


def _count(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
        return 0
    return int(value)


def extract_usage(data: Any) -> Optional[Dict[str, int]]:
    """Token counts from an OpenAI-style ``usage`` block, or None when the gateway reports none."""
    usage = data.get("usage") if isinstance(data, dict) else None
    if not isinstance(usage, dict):
        return None
    input_tokens = _count(usage.get("prompt_tokens", usage.get("input_tokens")))
    output_tokens = _count(usage.get("completion_tokens", usage.get("output_tokens")))
    total_tokens = _count(usage.get("total_tokens")) or input_tokens + output_tokens
    if not total_tokens:
        return None
    return {"input_tokens": input_tokens, "output_tokens": output_tokens, "total_tokens": total_tokens}


def session_key_for(job_id: str) -> str:
    return f"cron:{job_id}"


def build_hook_request(job) -> Tuple[str, Dict[str, Any]]:
    """(payload kind, JSON body) the gateway expects for a cronjob."""
    if job.payload_kind == PAYLOAD_SYSTEM_EVENT:
        return PAYLOAD_SYSTEM_EVENT, {"text": job.message.strip(), "mode": job.wake_mode or "now"}

    body: Dict[str, Any] = {
        "message": job.message.strip(),
        "name": job.name,
        "wakeMode": job.wake_mode or "now",
        "sessionKey": session_key_for(job.id),
        "deliver": bool(job.deliver),
    }
    if job.channel:
        body["channel"] = job.channel
    if job.to_recipient:
        body["to"] = job.to_recipient
    if job.model:
        body["model"] = job.model
    if job.thinking:
        body["thinking"] = job.thinking
    if job.timeout_seconds:
        body["timeoutSeconds"] = job.timeout_seconds
    if job.best_effort_deliver:
        body["bestEffortDeliver"] = True
    return PAYLOAD_AGENT_TURN, body


class GatewayClient:
    def __init__(
        self,
        wake_path: Optional[str] = None,
        agent_path: Optional[str] = None,
        stop_path: Optional[str] = None,
        stop_timeout: Optional[float] = None,
    ):
        self.wake_path = wake_path or settings.GATEWAY_WAKE_PATH
        self.agent_path = agent_path or settings.GATEWAY_AGENT_PATH
        self.stop_path = stop_path or settings.GATEWAY_STOP_PATH
        self.stop_timeout = stop_timeout or settings.GATEWAY_STOP_TIMEOUT_SECONDS

    async def _post(self, target: GatewayTarget, path: str, body: Dict[str, Any], timeout: float) -> GatewayResult:
        if not target.configured:
            raise GatewayError(ERROR_NOT_CONFIGURED, "Gateway not configured for user")

        url = target.endpoint(path)
        headers = {
            "Authorization": f"Bearer {target.token}",
            "Content-Type": "application/json",
        }
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout)) as session:
                async with session.post(url, json=body, headers=headers) as resp:
                    text = await resp.text()
                    try:
                        data = json.loads(text) if text else None
                    except ValueError:
                        data = None
                    if resp.status >= 400:
                        _, message = _structured_error(data)
                        code = _classify_failure(resp.status, data, text)
                        logger.warning(f"Gateway {url} answered {resp.status}: {text[:500]}")
                        raise GatewayError(code, message or f"Gateway error: {resp.status}", resp.status)
                    if data is None:
                        raise GatewayError(ERROR_INVALID_RESPONSE, "Gateway returned a non-JSON body", resp.status)
                    if isinstance(data, dict) and data.get("ok") is False:
                        _, message = _structured_error(data)
                        code = _classify_failure(resp.status, data, text)
                        raise GatewayError(code, message or "Gateway reported failure", resp.status)
                    return GatewayResult(
                        status=resp.status, data=data, output=_extract_output(data), usage=extract_usage(data)
                    )
        except asyncio.TimeoutError:
            raise GatewayError(ERROR_TIMEOUT, f"Gateway did not answer within {timeout:g}s")
        except aiohttp.ClientError as e:
            raise GatewayError(ERROR_NETWORK, f"Gateway unreachable: {e}")

    @timeit("gateway.dispatch")
    async def dispatch(self, target: GatewayTarget, kind: str, body: Dict[str, Any], timeout: float) -> GatewayResult:
        path = self.wake_path if kind == PAYLOAD_SYSTEM_EVENT else self.agent_path
        return await self._post(target, path, body, timeout)

    async def stop(self, target: GatewayTarget, session_key: str) -> bool:
        """Ask the gateway to abort a running turn. Best effort: False on any failure."""
        try:
            await self._post(target, self.stop_path, {"sessionKey": session_key}, self.stop_timeout)
            return True
        except GatewayError as e:
            logger.info(f"Gateway stop for {session_key} failed: {e}")
            return False
