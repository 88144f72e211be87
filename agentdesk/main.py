"""FastAPI entry-point exposing the supervisor, agents and workflows."""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from agentdesk.api.chat import router as chat_router
from agentdesk.api.routes import router as agents_router
from agentdesk.api.workflows import approvals_router, router as workflows_router
from agentdesk.config import Config, configure_logging
from agentdesk.runtime import Runtime


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    """Build the app; the lifespan starts and stops the runtime."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        active = runtime or Runtime(Config.from_env())
        configure_logging(active.config)
        await active.start()
        app.state.runtime = active
        try:
            yield
        finally:
            await active.stop()

    app = FastAPI(title="Agent Desk", lifespan=lifespan)
    app.include_router(agents_router)
    app.include_router(chat_router)
    app.include_router(workflows_router)
    app.include_router(approvals_router)

    @app.get("/health")
    async def health() -> dict:
        active: Runtime = app.state.runtime
        return {
            "status": "ok" if active.started else "starting",
            "environment": active.config.environment,
            "agents": len(active.list_agents()),
            "running_workflows": len(active.orchestrator.running()),
            "pending_approvals": len(active.supervisor.pending_approvals()),
        }

    return app


app = create_app()
