import json
import logging
import os
from typing import Any, Dict, Optional

import httpx

from .errors import ExternalFatal, ExternalTransient
from .models import Job, Task

RESOURCE_BASE_URL = os.environ.get("RESOURCE_BASE_URL", "").rstrip("/")
RESOURCE_TIMEOUT_SEC = float(os.environ.get("RESOURCE_TIMEOUT_SEC", "20"))
RESOURCE_PAYMENT_PROOF = os.environ.get("RESOURCE_PAYMENT_PROOF", "")
CONTEXT_MAX_CHARS = int(os.environ.get("CONTEXT_MAX_CHARS", "2000"))


def as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        for key in ("text", "content", "result"):
            if isinstance(value.get(key), str):
                return value[key]
    return json.dumps(value, default=str)


def build_payload(job: Job, task: Task, max_chars: int = CONTEXT_MAX_CHARS) -> Dict[str, Any]:
    """Request body for a task's resource call.

    The root task only sees the prompt; anything downstream also gets the
    generated content, truncated to ``max_chars``.
    """
    payload: Dict[str, Any] = {"prompt": job.prompt, "task": task.id}
    if task.depends_on is not None:
        content = as_text(job.context.get("content"))
        payload["content"] = content[:max_chars]
        if "publication" in job.context:
            payload["publication"] = job.context["publication"]
    if task.params:
        payload["params"] = dict(task.params)
    return payload


class ResourceInvoker:
    """Calls the external capability behind a task.

    Implementations return the task result, raise ``ExternalTransient`` for
    failures worth retrying on a later tick (including payment required) and
    ``ExternalFatal`` for anything else.
    """

    def invoke(self, resource: str, payload: Dict[str, Any]) -> Any:
        raise NotImplementedError

    def close(self) -> None:
        pass


class EchoResourceInvoker(ResourceInvoker):
    """Local stand-in used when no resource endpoint is configured."""

    def invoke(self, resource: str, payload: Dict[str, Any]) -> Any:
        source = payload.get("content") or payload.get("prompt", "")
        return {"text": f"[{resource}] {source}"}


class HttpResourceInvoker(ResourceInvoker):
    def __init__(
        self,
        base_url: str = RESOURCE_BASE_URL,
        timeout_seconds: float = RESOURCE_TIMEOUT_SEC,
        payment_proof: str = RESOURCE_PAYMENT_PROOF,
        client: Optional[httpx.Client] = None,
    ):
        headers = {"Accept": "application/json"}
        if payment_proof:
            headers["X-PAYMENT"] = payment_proof
        self._base_url = base_url.rstrip("/")
        self._client = client or httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=min(timeout_seconds, 10.0)),
            headers=headers,
        )

    def _url(self, resource: str) -> str:
        if resource.startswith(("http://", "https://")):
            return resource
        return f"{self._base_url}/{resource.lstrip('/')}"

    def invoke(self, resource: str, payload: Dict[str, Any]) -> Any:
        url = self._url(resource)
        try:
            response = self._client.post(url, json=payload)
        except httpx.TimeoutException as exc:
            raise ExternalTransient(f"{resource}: timed out") from exc
        except httpx.TransportError as exc:
            raise ExternalTransient(f"{resource}: {exc}") from exc

        if response.status_code == 402:
            raise ExternalTransient(f"{resource}: payment required")
        if response.status_code in {502, 503, 504}:
            raise ExternalTransient(f"{resource}: upstream returned {response.status_code}")
        if not response.is_success:
            raise ExternalFatal(f"{resource}: HTTP {response.status_code}: {response.text[:200]}")

        try:
            return response.json()
        except ValueError as exc:
            raise ExternalFatal(f"{resource}: response is not JSON") from exc

    def close(self) -> None:
        self._client.close()


def default_invoker() -> ResourceInvoker:
    if RESOURCE_BASE_URL:
        logging.info("Invoking task resources at %s", RESOURCE_BASE_URL)
        return HttpResourceInvoker()
    logging.warning("RESOURCE_BASE_URL is not set; task resources are echoed locally")
    return EchoResourceInvoker()
