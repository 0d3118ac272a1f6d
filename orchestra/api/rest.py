"""REST API for the orchestration engine.

Endpoints:
  POST   /agents/webhook/{id}  - Webhook trigger (Webhook-Token header)
  GET    /agents               - List registered agents
  GET    /agents/{id}          - Get one agent definition
  PUT    /agents/{id}          - Create or replace an agent definition
  DELETE /agents/{id}          - Remove an agent
  POST   /agents/{id}/run      - Manual activation
  GET    /agents/{id}/history  - Conversation history of a session
  POST   /events/collection    - Content-layer collection event hook
  GET    /jobs                 - Queue contents and counts
  GET    /health               - Health check (DB connectivity)
"""

from __future__ import annotations

import json
import logging
from typing import Any

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from orchestra.agents.schemas import AgentDefinition, parse_agent
from orchestra.config import Settings
from orchestra.errors import (
    AgentDisabled,
    AgentNotFound,
    ConfigurationError,
    DeliveryError,
    WebhookAuthError,
)
from orchestra.events import COLLECTION_EVENT, BusEvent, EventBus
from orchestra.jobs.queue import JobQueue
from orchestra.storage.database import Database

logger = logging.getLogger(__name__)

REDACTED = "***"


class _BadBody(ValueError):
    pass


async def _json_body(request: Request, default: Any = None) -> Any:
    raw = await request.body()
    if not raw.strip():
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise _BadBody(f"Invalid JSON body: {e.msg}") from e


def agent_to_json(agent: AgentDefinition) -> dict[str, Any]:
    """Serialize a definition with secrets masked."""
    data = agent.model_dump(mode="json")
    if data["trigger"].get("webhook_token"):
        data["trigger"]["webhook_token"] = REDACTED
    ref = data["provider"].get("api_key_ref") or ""
    if ref and not ref.startswith("env:"):
        data["provider"]["api_key_ref"] = REDACTED
    return data


def job_to_json(job) -> dict[str, Any]:
    return {
        "id": job.id,
        "status": job.status,
        "task_type": job.task_type,
        "attempts": job.attempts,
        "max_retries": job.max_retries,
        "last_error": job.last_error,
        "worker_id": job.worker_id,
        "run_after": job.run_after.isoformat() if job.run_after else None,
        "created_at": job.created_at.isoformat() if job.created_at else None,
    }


def create_app(
    engine,
    queue: JobQueue,
    database: Database,
    settings: Settings,
    bus: EventBus | None = None,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    async def webhook(request: Request) -> JSONResponse:
        """POST /agents/webhook/{agent_id} - Enqueue a webhook-triggered run."""
        agent_id = request.path_params["agent_id"]
        try:
            payload = await _json_body(request, default={})
        except _BadBody as e:
            return JSONResponse({"error": str(e)}, status_code=400)

        try:
            job_id = await engine.handle_webhook(agent_id, payload, request.headers.get("Webhook-Token"))
        except AgentNotFound:
            return JSONResponse({"error": f"Agent {agent_id} not found"}, status_code=404)
        except AgentDisabled:
            return JSONResponse({"error": f"Agent {agent_id} is disabled"}, status_code=409)
        except WebhookAuthError:
            return JSONResponse({"error": "Invalid webhook token"}, status_code=401)
        except DeliveryError as e:
            logger.error("Webhook enqueue failed for %s: %s", agent_id, e)
            return JSONResponse({"error": "Could not enqueue job"}, status_code=503)
        return JSONResponse({"status": "accepted", "job_id": job_id}, status_code=202)

    async def run_agent(request: Request) -> JSONResponse:
        """POST /agents/{agent_id}/run - Manual activation."""
        agent_id = request.path_params["agent_id"]
        try:
            body = await _json_body(request, default={})
        except _BadBody as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        if not isinstance(body, dict):
            return JSONResponse({"error": "Body must be a JSON object"}, status_code=400)

        try:
            job_id = await engine.trigger_manual(agent_id, str(body.get("input") or ""))
        except AgentNotFound:
            return JSONResponse({"error": f"Agent {agent_id} not found"}, status_code=404)
        except AgentDisabled:
            return JSONResponse({"error": f"Agent {agent_id} is disabled"}, status_code=409)
        except DeliveryError as e:
            logger.error("Manual enqueue failed for %s: %s", agent_id, e)
            return JSONResponse({"error": "Could not enqueue job"}, status_code=503)
        return JSONResponse({"status": "accepted", "job_id": job_id}, status_code=202)

    async def collection_event(request: Request) -> JSONResponse:
        """POST /events/collection - Fan a content event out to subscribed agents."""
        try:
            body = await _json_body(request)
        except _BadBody as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        if not isinstance(body, dict) or not body.get("collection") or not body.get("event"):
            return JSONResponse({"error": "Missing required fields: collection, event"}, status_code=400)

        data = {
            "collection": body["collection"],
            "event": body["event"],
            "item_id": body.get("item_id", ""),
            "item_data": body.get("item_data") or {},
        }
        if bus is not None:
            await bus.emit(BusEvent(type=COLLECTION_EVENT, data=data))
            return JSONResponse({"status": "accepted"}, status_code=202)

        job_ids = await engine.handle_collection_event(
            data["collection"], data["event"], item_id=data["item_id"], item_data=data["item_data"]
        )
        return JSONResponse({"status": "accepted", "job_ids": job_ids}, status_code=202)

    # ------------------------------------------------------------------
    # Agent administration
    # ------------------------------------------------------------------

    async def list_agents(request: Request) -> JSONResponse:
        """GET /agents - All registered agents."""
        agents = await engine.registry.list()
        return JSONResponse({"agents": [agent_to_json(a) for a in agents]})

    async def get_agent(request: Request) -> JSONResponse:
        """GET /agents/{agent_id}"""
        agent = await engine.registry.get(request.path_params["agent_id"])
        if agent is None:
            return JSONResponse({"error": "Agent not found"}, status_code=404)
        return JSONResponse(agent_to_json(agent))

    async def put_agent(request: Request) -> JSONResponse:
        """PUT /agents/{agent_id} - Validate, persist and register a definition."""
        agent_id = request.path_params["agent_id"]
        try:
            body = await _json_body(request)
        except _BadBody as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        if not isinstance(body, dict):
            return JSONResponse({"error": "Body must be a JSON object"}, status_code=400)
        if body.get("id") not in (None, agent_id):
            return JSONResponse({"error": "Body id does not match path"}, status_code=400)

        try:
            agent = parse_agent({**body, "id": agent_id})
            agent = await engine.register_agent(agent, persist=True)
        except ConfigurationError as e:
            return JSONResponse({"error": str(e), "errors": e.errors}, status_code=422)
        return JSONResponse(agent_to_json(agent))

    async def delete_agent(request: Request) -> JSONResponse:
        """DELETE /agents/{agent_id}"""
        agent_id = request.path_params["agent_id"]
        if not await engine.unregister_agent(agent_id, delete=True):
            return JSONResponse({"error": "Agent not found"}, status_code=404)
        return JSONResponse({"status": "deleted", "id": agent_id})

    async def agent_history(request: Request) -> JSONResponse:
        """GET /agents/{agent_id}/history?session_id=&limit="""
        agent_id = request.path_params["agent_id"]
        try:
            limit = int(request.query_params.get("limit", "50"))
        except ValueError:
            return JSONResponse({"error": "limit must be an integer"}, status_code=400)
        session_id = request.query_params.get("session_id") or agent_id
        try:
            messages = await engine.history(agent_id, session_id, limit)
        except AgentNotFound:
            return JSONResponse({"error": "Agent not found"}, status_code=404)
        return JSONResponse(
            {
                "agent_id": agent_id,
                "session_id": session_id,
                "messages": [m.model_dump(mode="json", exclude_none=True) for m in messages],
            }
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def list_jobs(request: Request) -> JSONResponse:
        """GET /jobs?status=&limit="""
        status = request.query_params.get("status")
        try:
            limit = int(request.query_params.get("limit", "50"))
        except ValueError:
            return JSONResponse({"error": "limit must be an integer"}, status_code=400)
        jobs = await queue.list(status=status, limit=limit)
        counts = await queue.count_by_status()
        return JSONResponse({"jobs": [job_to_json(j) for j in jobs], "counts": counts})

    async def health(request: Request) -> JSONResponse:
        """GET /health - Health check."""
        if not await database.ping():
            return JSONResponse({"status": "unhealthy", "database": "unreachable"}, status_code=503)
        agents = await engine.registry.list()
        return JSONResponse(
            {
                "status": "healthy",
                "agents": len(agents),
                "schedules": len(engine.triggers.scheduled()),
            }
        )

    routes = [
        Route("/agents/webhook/{agent_id}", webhook, methods=["POST"]),
        Route("/agents", list_agents),
        Route("/agents/{agent_id}", get_agent, methods=["GET"]),
        Route("/agents/{agent_id}", put_agent, methods=["PUT"]),
        Route("/agents/{agent_id}", delete_agent, methods=["DELETE"]),
        Route("/agents/{agent_id}/run", run_agent, methods=["POST"]),
        Route("/agents/{agent_id}/history", agent_history),
        Route("/events/collection", collection_event, methods=["POST"]),
        Route("/jobs", list_jobs),
        Route("/health", health),
    ]

    return Starlette(routes=routes, lifespan=lifespan)
