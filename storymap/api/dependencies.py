import threading
from typing import Dict, Optional

from fastapi import Depends, Header, HTTPException, Request

from storymap.cli.main import get_db as cli_get_db, get_service_context as cli_get_service_context
from storymap.config import load_config
from storymap.db.database import Database
from storymap.orchestration.execution_client import ExecutionClient, get_execution_client as build_execution_client
from storymap.services.base import ServiceContext
from storymap.services.repository import RepositoryManager

_clients: Dict[str, ExecutionClient] = {}
_clients_lock = threading.Lock()


def get_db():
    """Get database instance."""
    db = cli_get_db()
    try:
        yield db
    finally:
        pass


def _token_matches(expected: str, authorization: Optional[str], header_token: Optional[str]) -> bool:
    if header_token and header_token == expected:
        return True
    if authorization:
        parts = authorization.strip().split(None, 1)
        if len(parts) == 2 and parts[0].lower() == "bearer" and parts[1] == expected:
            return True
    return False


def require_api_token(
    authorization: Optional[str] = Header(None, alias="Authorization"),
    x_storymap_token: Optional[str] = Header(None, alias="X-Storymap-Token"),
) -> None:
    """
    Require an API bearer token if `STORYMAP_API_TOKEN` is set.

    Accepted headers:
    - `Authorization: Bearer <token>`
    - `X-Storymap-Token: <token>`
    """
    expected = load_config().api_token
    if not expected:
        return
    if not _token_matches(expected, authorization, x_storymap_token):
        raise HTTPException(status_code=401, detail="Unauthorized")


def require_webhook_token(
    authorization: Optional[str] = Header(None, alias="Authorization"),
    x_storymap_webhook_token: Optional[str] = Header(None, alias="X-Storymap-Webhook-Token"),
) -> None:
    """
    Require the agent callback secret if `STORYMAP_WEBHOOK_TOKEN` is set.

    Accepts the same two header forms as the API token check.
    """
    expected = load_config().webhook_token
    if not expected:
        return
    if not _token_matches(expected, authorization, x_storymap_webhook_token):
        raise HTTPException(status_code=401, detail="Unauthorized")


def get_service_context(request: Request) -> ServiceContext:
    """Service context carrying the request id set by the request middleware."""
    return cli_get_service_context(request_id=getattr(request.state, "request_id", None))


def get_execution_client(ctx: ServiceContext = Depends(get_service_context)) -> ExecutionClient:
    """Execution client for the configured agent endpoint, shared per endpoint."""
    key = ctx.config.agent_endpoint or "local"
    with _clients_lock:
        client = _clients.get(key)
        if client is None:
            client = build_execution_client(ctx.config)
            _clients[key] = client
    return client


def get_repository(ctx: ServiceContext = Depends(get_service_context)) -> RepositoryManager:
    return RepositoryManager(ctx)
