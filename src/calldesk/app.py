import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from pydantic import BaseModel, Field

from calldesk.config import Settings, validate_config
from calldesk.desk import CallDesk, build_desk
from calldesk.errors import (
    InvalidTransitionError,
    SessionActiveError,
    UnknownRecordError,
    ValidationError,
)
from calldesk.hooks import session_payload
from calldesk.search import ALL_TYPES, full_history, recent_calls
from calldesk.stats import summarize

logger = logging.getLogger(__name__)


class CallerDetails(BaseModel):
    caller_name: str = ""
    caller_phone: str = ""
    call_type: str = "inbound"
    notes: str = ""
    custom_data: dict = Field(default_factory=dict)
    account_number: str = ""
    sensitive_id: str = ""


class FormUpdate(BaseModel):
    notes: Optional[str] = None
    custom_data: Optional[dict] = None
    account_number: Optional[str] = None
    sensitive_id: Optional[str] = None


class CallEdit(FormUpdate):
    caller_name: Optional[str] = None
    caller_phone: Optional[str] = None
    call_type: Optional[str] = None


def _error(status: int, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status, content={"error": str(exc)})


def create_app(desk: Optional[CallDesk] = None) -> FastAPI:
    """Build the HTTP surface. Without a desk, one is built from the environment."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.desk is None
        if owned:
            validate_config()
            app.state.desk = build_desk(Settings.from_env())
            await app.state.desk.open()
        try:
            yield
        finally:
            if owned:
                await app.state.desk.close()

    app = FastAPI(title="Call Desk", lifespan=lifespan)
    app.state.desk = desk

    @app.exception_handler(ValidationError)
    async def validation_error(request: Request, exc: ValidationError):
        return _error(422, exc)

    @app.exception_handler(SessionActiveError)
    async def session_active(request: Request, exc: SessionActiveError):
        return _error(409, exc)

    @app.exception_handler(InvalidTransitionError)
    async def invalid_transition(request: Request, exc: InvalidTransitionError):
        return _error(409, exc)

    @app.exception_handler(UnknownRecordError)
    async def unknown_record(request: Request, exc: UnknownRecordError):
        return _error(404, exc)

    def current_desk() -> CallDesk:
        return app.state.desk

    def current_state() -> dict:
        machine = current_desk().machine
        session = machine.session
        body = {"state": machine.state.value, "session": None}
        if session is not None:
            now = machine.clock()
            body["session"] = {
                **session_payload(session),
                "elapsed_ms": int(session.elapsed(now)),
                "hold_ms": int(session.current_hold(now)),
                "total_hold_ms": int(session.total_hold_duration),
                "contactId": session.contact_id,
                "contactSource": session.contact_source,
            }
        return body

    @app.get("/health")
    async def health():
        return PlainTextResponse("ok")

    @app.get("/calls")
    async def list_calls(type: str = ALL_TYPES, q: str = ""):
        records = recent_calls(current_desk().history.all(), type_filter=type, term=q)
        return [r.to_public_dict() for r in records]

    @app.get("/calls/history")
    async def call_history(q: str = ""):
        return [r.to_public_dict() for r in full_history(current_desk().history.all(), term=q)]

    @app.get("/calls/current")
    async def current_call():
        return current_state()

    @app.post("/calls/start")
    async def start_call(details: CallerDetails):
        current_desk().machine.start(
            details.caller_name,
            details.caller_phone,
            details.call_type,
            notes=details.notes,
            custom_data=details.custom_data,
            account_number=details.account_number,
            sensitive_id=details.sensitive_id,
        )
        return current_state()

    @app.post("/calls/hold")
    async def hold_call():
        current_desk().machine.hold()
        return current_state()

    @app.post("/calls/resume")
    async def resume_call():
        current_desk().machine.resume()
        return current_state()

    @app.post("/calls/end")
    async def end_call():
        record = current_desk().machine.end()
        return record.to_public_dict()

    @app.patch("/calls/current")
    async def update_current(update: FormUpdate):
        current_desk().machine.update_fields(**update.model_dump(exclude_none=True))
        return current_state()

    @app.post("/calls/manual")
    async def log_manual(details: CallerDetails):
        record = current_desk().machine.log_manual(
            details.caller_name,
            details.caller_phone,
            details.call_type,
            notes=details.notes,
            custom_data=details.custom_data,
            account_number=details.account_number,
            sensitive_id=details.sensitive_id,
        )
        return JSONResponse(status_code=201, content=record.to_public_dict())

    @app.put("/calls/{call_id}")
    async def edit_call(call_id: str, edit: CallEdit):
        machine = current_desk().machine
        try:
            machine.edit(call_id)
        except ValueError:
            raise UnknownRecordError(f"Unknown call {call_id}") from None
        try:
            record = machine.save_edit(**edit.model_dump(exclude_none=True))
        except Exception:
            machine.cancel_edit()
            raise
        return record.to_public_dict()

    @app.delete("/calls/{call_id}")
    async def delete_call(call_id: str):
        try:
            current_desk().machine.remove(call_id)
        except ValueError:
            # Not an id this desk could ever have issued; nothing to delete.
            logger.debug("Ignoring delete of malformed id %r", call_id)
        return Response(status_code=204)

    @app.get("/stats")
    async def stats():
        return summarize(current_desk().history.all()).to_dict()

    @app.get("/notifications")
    async def notifications():
        return [{"level": n.level, "message": n.message} for n in current_desk().notifier.drain()]

    return app


def main() -> None:
    load_dotenv()
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    port = int(os.getenv("PORT", "8765"))
    uvicorn.run(create_app(), host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
