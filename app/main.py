from fastapi import FastAPI

from app.api.agent import router as agent_router
from app.api.health_twin import router as health_twin_router
from app.db.session import create_tables
from app.orchestrator.runtime import build_runtime

app = FastAPI(title="Health Twin Coach")


@app.on_event("startup")
def on_startup() -> None:
    create_tables()
    runtime = build_runtime()
    runtime.start()
    app.state.runtime = runtime


@app.on_event("shutdown")
def on_shutdown() -> None:
    runtime = getattr(app.state, "runtime", None)
    if runtime is not None:
        runtime.stop()
        app.state.runtime = None


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/api")
def api_root() -> dict[str, str]:
    return {"service": "Health Twin Coach API", "status": "ok"}


app.include_router(agent_router)
app.include_router(health_twin_router)
