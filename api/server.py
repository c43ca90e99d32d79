"""
Agent Engine — API Server

FastAPI application serving:
  POST /v1/agents                           — register an agent definition
  GET  /v1/agents/{id}                      — read a definition
  POST /v1/agents/{id}/executions           — trigger an execution (202)
  GET  /v1/agents/{id}/memories             — memories learned by an agent
  GET  /v1/executions/{id}                  — poll status (pull-based)
  GET  /v1/executions/{id}/steps            — full step log
  POST /v1/executions/{id}/cancel           — request cancellation
  POST /v1/executions/{id}/feedback         — approval / rejection / correction
  GET  /health                              — liveness

Usage:
    uvicorn api.server:app --host 0.0.0.0 --port 8080

Tools are registered in-process; a deployment builds its ToolRegistry,
wraps it in an AgentService and passes that to create_app().

Requires: pip install fastapi uvicorn
"""

# Annotations stay eager in this module: FastAPI inspects the route closures
# below for `Request`, which is only imported inside create_app().
import logging
import os
import time
from typing import Any

from agent_engine.config import load_config
from agent_engine.errors import NotFoundError
from agent_engine.logging import configure_from_config
from agent_engine.service import AgentService
from agent_engine.tools import ToolRegistry
from agent_engine.types import Feedback, FeedbackType, TriggerType

logger = logging.getLogger("agent_engine.api")


def create_app(service: AgentService | None = None) -> Any:
    """
    Create and configure the FastAPI application.

    Returns the app instance. Separated from module-level creation
    so tests can create fresh instances around their own service.
    """
    from fastapi import FastAPI, HTTPException, Request
    from fastapi.responses import JSONResponse

    from api.models import (
        AgentRequest, CancelResponse, FeedbackRequest,
        TriggerRequest, TriggerResponse,
    )

    app = FastAPI(
        title="Agent Engine API",
        version="0.1.0",
        description="Bounded LLM reasoning loop with tools, memory and budgets",
    )

    # ── State ────────────────────────────────────────────────

    _service: AgentService | None = service

    def get_service() -> AgentService:
        nonlocal _service
        if _service is None:
            config = load_config()
            _service = AgentService.from_config(ToolRegistry.from_config(config), config)
        return _service

    def not_found(e: NotFoundError) -> HTTPException:
        return HTTPException(status_code=404, detail=str(e))

    # ── Lifecycle ─────────────────────────────────────────────

    @app.on_event("shutdown")
    async def shutdown():
        if _service is not None:
            _service.shutdown(wait=False)

    # ── Agents ────────────────────────────────────────────────

    @app.post("/v1/agents")
    async def register_agent(request: Request):
        body = await request.json()
        agent_request = AgentRequest.from_body(body)
        errors = agent_request.validate()
        if errors:
            return JSONResponse(status_code=422, content={"errors": errors})

        try:
            agent = get_service().define_agent(
                agent_request.organization_id,
                agent_request.name,
                agent_request.goal_template,
                allowed_tools=agent_request.allowed_tools,
                **agent_request.options,
            )
        except (ValueError, TypeError) as e:
            return JSONResponse(status_code=422, content={"errors": [str(e)]})
        return JSONResponse(status_code=201, content=agent.to_dict())

    @app.get("/v1/agents/{agent_id}")
    async def get_agent(agent_id: str):
        try:
            agent = get_service().get_agent(agent_id)
        except NotFoundError as e:
            raise not_found(e)
        return JSONResponse(content=agent.to_dict())

    # ── Executions ────────────────────────────────────────────

    @app.post("/v1/agents/{agent_id}/executions")
    async def trigger_execution(agent_id: str, request: Request):
        body = await request.json()
        trigger = TriggerRequest(
            trigger_type=body.get("trigger_type", TriggerType.MANUAL.value),
            goal_overrides=body.get("goal_overrides", {}),
            triggered_by=body.get("triggered_by"),
        )
        errors = trigger.validate()
        if errors:
            return JSONResponse(status_code=422, content={"errors": errors})

        try:
            execution_id = get_service().trigger(
                agent_id,
                trigger_type=trigger.trigger_type,
                goal_overrides=trigger.goal_overrides,
                triggered_by=trigger.triggered_by,
            )
        except NotFoundError as e:
            raise not_found(e)
        except ValueError as e:
            raise HTTPException(status_code=409, detail=str(e))

        response = TriggerResponse(
            execution_id=execution_id,
            agent_id=agent_id,
            status="running",
            message="Execution started; poll GET /v1/executions/{id} for status",
        )
        return JSONResponse(status_code=202, content=response.to_dict())

    @app.get("/v1/executions/{execution_id}")
    async def get_execution_status(execution_id: str):
        try:
            view = get_service().get_status(execution_id)
        except NotFoundError as e:
            raise not_found(e)
        return JSONResponse(content=view.to_dict())

    @app.get("/v1/executions/{execution_id}/steps")
    async def get_execution_steps(execution_id: str):
        try:
            steps = get_service().get_steps(execution_id)
        except NotFoundError as e:
            raise not_found(e)
        return JSONResponse(content={
            "execution_id": execution_id,
            "count": len(steps),
            "steps": [s.to_dict() for s in steps],
        })

    @app.post("/v1/executions/{execution_id}/cancel")
    async def cancel_execution(execution_id: str):
        service = get_service()
        try:
            requested = service.cancel(execution_id)
            view = service.get_status(execution_id)
        except NotFoundError as e:
            raise not_found(e)
        response = CancelResponse(
            execution_id=execution_id,
            cancel_requested=requested,
            status=view.status.value,
        )
        return JSONResponse(status_code=202 if requested else 200, content=response.to_dict())

    @app.post("/v1/executions/{execution_id}/feedback")
    async def submit_feedback(execution_id: str, request: Request):
        body = await request.json()
        feedback_request = FeedbackRequest(
            type=body.get("type", ""),
            details=body.get("details", {}),
            submitted_by=body.get("submitted_by"),
        )
        errors = feedback_request.validate()
        if errors:
            return JSONResponse(status_code=422, content={"errors": errors})

        feedback = Feedback(
            type=FeedbackType(feedback_request.type),
            details=feedback_request.details,
            submitted_by=feedback_request.submitted_by,
        )
        try:
            result = get_service().submit_feedback(execution_id, feedback)
        except NotFoundError as e:
            raise not_found(e)
        except ValueError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return JSONResponse(content=result)

    # ── Memories ──────────────────────────────────────────────

    @app.get("/v1/agents/{agent_id}/memories")
    async def list_memories(agent_id: str, include_archived: bool = False):
        try:
            memories = get_service().list_memories(agent_id, include_archived=include_archived)
        except NotFoundError as e:
            raise not_found(e)
        return JSONResponse(content={
            "agent_id": agent_id,
            "count": len(memories),
            "memories": [
                {
                    "memory_id": m.memory_id,
                    "scope": m.scope.value,
                    "entity_key": m.entity_key,
                    "category": m.category,
                    "content": m.content.model_dump(),
                    "conditions": m.conditions.model_dump() if m.conditions else None,
                    "confidence": round(m.confidence, 6),
                    "correct_count": m.correct_count,
                    "total_count": m.total_count,
                    "usage_count": m.usage_count,
                    "is_archived": m.is_archived,
                }
                for m in memories
            ],
        })

    # ── Health ────────────────────────────────────────────────

    @app.get("/health")
    async def health():
        return JSONResponse(content={
            "status": "ok",
            "timestamp": time.time(),
        })

    return app


# ── Module-level app for uvicorn ──────────────────────────────

app = create_app()


if __name__ == "__main__":
    import uvicorn

    configure_from_config(load_config())
    uvicorn.run(
        "api.server:app",
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "8080")),
    )
