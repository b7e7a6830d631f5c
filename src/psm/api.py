from dataclasses import asdict

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from psm.config import PsmConfig
from psm.control.manager import ServerManager
from psm.errors import PsmError, SlotNotFound, StatusMismatch, UnknownInstanceClass


class AllowRequest(BaseModel):
    cidr: str
    port: int | None = None


def _status_code(error: PsmError) -> int:
    if isinstance(error, (SlotNotFound, UnknownInstanceClass)):
        return 404
    if isinstance(error, StatusMismatch):
        return 409
    return 502


def create_app(config: PsmConfig | None = None) -> FastAPI:
    app = FastAPI(title="Pal Server Manager API", version="0.1.0")
    manager = ServerManager(config)

    @app.exception_handler(PsmError)
    async def psm_error(request: Request, exc: PsmError):
        return JSONResponse(status_code=_status_code(exc), content={"detail": str(exc)})

    @app.exception_handler(ValueError)
    async def bad_value(request: Request, exc: ValueError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.get("/slots")
    def list_slots():
        return [r.to_dict() for r in manager.state.list_all()]

    @app.get("/slots/{name}")
    def get_slot(name: str):
        return manager.state.get(name).to_dict()

    @app.post("/slots/{name}/start")
    async def start_slot(name: str):
        messages = []
        record = await manager.start(name, on_status=messages.append)
        return {"slot": record.to_dict(), "messages": messages}

    @app.post("/slots/{name}/stop")
    async def stop_slot(name: str):
        messages = []
        record = await manager.stop(name, on_status=messages.append)
        return {"slot": record.to_dict(), "messages": messages}

    @app.get("/prices/{instance_class}")
    async def get_price(instance_class: str):
        return asdict(await manager.price(instance_class))

    @app.post("/slots/{name}/allow")
    async def allow_slot(name: str, req: AllowRequest):
        added = await manager.allow(name, req.cidr, port=req.port)
        return {"added": added}

    return app
