"""
Storymap Execution Clients

Contract between the assignment dispatcher and the coding-agent execution
plane, with an HTTP implementation and a local one used when no agent
endpoint is configured.
"""

import uuid
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Protocol

import httpx

from storymap.config import Config
from storymap.logging import get_logger, log_extra
from storymap.orchestration.task_builder import BuiltTask, DispatchPayload, build_task_from_payload

logger = get_logger(__name__)


@dataclass
class DispatchResult:
    success: bool
    execution_id: Optional[str] = None
    error: Optional[str] = None


class ExecutionClient(Protocol):
    def dispatch(self, payload: DispatchPayload) -> DispatchResult: ...


@dataclass
class HttpExecutionConfig:
    """Agent endpoint connection configuration."""
    base_url: str
    token: str = ""
    timeout: float = 30.0


class HttpExecutionClient:
    """
    Dispatches assignments to a remote agent service over HTTP.

    POSTs ``{"task": ..., "context": ..., "payload": ...}`` to
    ``<base_url>/executions`` and expects ``{"execution_id": ...}`` back.
    Network and HTTP errors are reported as a failed DispatchResult.
    """

    def __init__(self, config: HttpExecutionConfig) -> None:
        self.config = config
        self._client: Optional[httpx.Client] = None

    def _get_client(self) -> httpx.Client:
        """Get or create HTTP client."""
        if self._client is None:
            headers = {"Content-Type": "application/json"}
            if self.config.token:
                headers["Authorization"] = f"Bearer {self.config.token}"
            self._client = httpx.Client(
                base_url=self.config.base_url,
                timeout=self.config.timeout,
                headers=headers,
            )
        return self._client

    def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            self._client.close()
            self._client = None

    def dispatch(self, payload: DispatchPayload) -> DispatchResult:
        task = build_task_from_payload(payload)
        body = {"task": task.task_description, "context": task.context, "payload": asdict(payload)}
        extra = log_extra(run_id=payload.run_id, assignment_id=payload.assignment_id, card_id=payload.card_id)
        try:
            resp = self._get_client().post("/executions", json=body)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "agent_dispatch_rejected",
                extra={**extra, "status_code": exc.response.status_code},
            )
            return DispatchResult(success=False, error=f"Agent endpoint returned HTTP {exc.response.status_code}")
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("agent_dispatch_failed", extra={**extra, "error": str(exc)})
            return DispatchResult(success=False, error=f"Agent endpoint unreachable: {exc}")

        execution_id = data.get("execution_id") if isinstance(data, dict) else None
        if not execution_id:
            return DispatchResult(success=False, error="Agent endpoint did not return an execution_id")
        logger.info("agent_dispatched", extra={**extra, "execution_id": execution_id})
        return DispatchResult(success=True, execution_id=str(execution_id))


class LocalExecutionClient:
    """
    In-process execution client.

    Builds the task, keeps it for inspection and returns a fresh execution id.
    The agent itself reports progress through the webhook route.
    """

    def __init__(self) -> None:
        self.dispatched: List[Dict[str, Any]] = []

    def dispatch(self, payload: DispatchPayload) -> DispatchResult:
        task: BuiltTask = build_task_from_payload(payload)
        execution_id = str(uuid.uuid4())
        self.dispatched.append({"execution_id": execution_id, "payload": payload, "task": task})
        logger.info(
            "agent_dispatched_locally",
            extra=log_extra(
                run_id=payload.run_id,
                assignment_id=payload.assignment_id,
                card_id=payload.card_id,
                execution_id=execution_id,
            ),
        )
        return DispatchResult(success=True, execution_id=execution_id)


def get_execution_client(config: Config) -> ExecutionClient:
    """HTTP client when an agent endpoint is configured, local client otherwise."""
    if config.agent_endpoint:
        return HttpExecutionClient(
            HttpExecutionConfig(
                base_url=config.agent_endpoint,
                token=config.agent_token or "",
                timeout=config.agent_timeout_seconds,
            )
        )
    return LocalExecutionClient()
