from __future__ import annotations

import secrets

from fastapi import Depends, FastAPI, HTTPException, Query, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from . import db
from .api_models import ServiceStatus, StopResponse
from .orchestrator import Orchestrator
from .runtime import UnknownService
from .settings import settings


security = HTTPBasic()


def require_admin(credentials: HTTPBasicCredentials = Depends(security)) -> str:
    user_ok = secrets.compare_digest(credentials.username.encode(), settings.admin_user.encode())
    pass_ok = secrets.compare_digest(credentials.password.encode(), settings.admin_password.encode())
    if not (user_ok and pass_ok):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Basic"},
        )
    return credentials.username


def create_control_app(orchestrator: Orchestrator) -> FastAPI:
    """Local control API: service states, the event journal, and stopping services."""
    app = FastAPI(title="svcgw control")

    @app.get("/status", response_model=list[ServiceStatus])
    def get_status(user: str = Depends(require_admin)):
        return [
            ServiceStatus(
                name=r.name,
                state=r.state.value,
                pid=r.pid,
                restart_count=r.restart_count,
                last_exit_code=r.last_exit_code,
                error=r.error.value if r.error else None,
                message=r.message,
                updated_at=r.updated_at,
            )
            for r in orchestrator.status()
        ]

    @app.get("/events")
    def get_events(limit: int = Query(50, ge=1, le=1000), service: str | None = None, user: str = Depends(require_admin)):
        return db.latest_events(limit=limit, service_name=service)

    @app.post("/services/{name}/stop", response_model=StopResponse)
    def stop_service(name: str, user: str = Depends(require_admin)):
        try:
            orchestrator.stop(name)
        except UnknownService:
            raise HTTPException(status_code=404, detail=f"Unknown service '{name}'")
        db.log_event("INFO", f"Stopped by {user} via control API", service_name=name)
        return StopResponse(name=name, state=orchestrator.current_state(name).value)

    return app
