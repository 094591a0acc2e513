import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .errors import InvalidInput, SchedoputerError
from .jobs import Clock, create_job, get_status, not_found_status, utc_now
from .models import (
    CompleteTaskRequest,
    CreateJobRequest,
    CreateJobResponse,
    JobStatus,
    SuccessResponse,
)
from .mutations import complete_human_task, modify_task, undo_task
from .payment import BASE_URL, RESOURCE_HEADER, RESOURCE_PATH, PaymentGate, PaymentRequired
from .scheduler import Scheduler
from .storage import JobStore
from .worker import ResourceInvoker, default_invoker

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
DOMAIN_VERIFICATION_TOKEN = os.environ.get("DOMAIN_VERIFICATION_TOKEN", "")


def _scheduler_disabled() -> bool:
    return os.environ.get("SCHEDULER_DISABLED", "false").lower() in {"1", "true", "yes"}


class PaymentRequiredError(Exception):
    def __init__(self, decision: PaymentRequired):
        super().__init__("payment required")
        self.decision = decision


def _challenge_response(decision: PaymentRequired) -> JSONResponse:
    return JSONResponse(
        status_code=402,
        content=decision.challenge.model_dump(exclude_none=True),
        headers={RESOURCE_HEADER: decision.resource},
    )


def require_payment(request: Request):
    decision = request.app.state.gate.evaluate(request.headers)
    if isinstance(decision, PaymentRequired):
        raise PaymentRequiredError(decision)
    return decision


async def _json_body(request: Request):
    body = await request.body()
    if not body:
        return {}
    try:
        return await request.json()
    except ValueError as exc:
        raise InvalidInput("request body must be JSON") from exc


def _first_error(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "invalid request"
    err = errors[0]
    field = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
    return f"{field}: {err.get('msg')}" if field else str(err.get("msg"))


def create_app(
    store: Optional[JobStore] = None,
    invoker: Optional[ResourceInvoker] = None,
    gate: Optional[PaymentGate] = None,
    clock: Clock = utc_now,
    scheduler: Optional[Scheduler] = None,
    run_scheduler: Optional[bool] = None,
) -> FastAPI:
    store = store if store is not None else JobStore()
    if scheduler is None:
        scheduler = Scheduler(store, invoker or default_invoker(), clock=clock)
    if run_scheduler is None:
        run_scheduler = not _scheduler_disabled()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if run_scheduler:
            scheduler.start()
        try:
            yield
        finally:
            if run_scheduler:
                scheduler.stop()

    app = FastAPI(title="Schedoputer", version="0.1.0", lifespan=lifespan)
    app.state.store = store
    app.state.scheduler = scheduler
    app.state.gate = gate or PaymentGate()

    @app.exception_handler(PaymentRequiredError)
    async def payment_required(request: Request, exc: PaymentRequiredError):
        return _challenge_response(exc.decision)

    @app.exception_handler(SchedoputerError)
    async def domain_error(request: Request, exc: SchedoputerError):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"error": "invalid request body"})

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception):
        logging.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"error": "internal server error"})

    @app.get("/healthz")
    def healthz():
        return {"ok": True}

    @app.get("/.well-known/x402-verification.json")
    def domain_verification():
        if not DOMAIN_VERIFICATION_TOKEN:
            return JSONResponse(status_code=404, content={"error": "not configured"})
        return {"origin": BASE_URL, "token": DOMAIN_VERIFICATION_TOKEN}

    @app.get(RESOURCE_PATH)
    def discovery(request: Request):
        return _challenge_response(request.app.state.gate.challenge())

    @app.post(RESOURCE_PATH, response_model=CreateJobResponse)
    async def create(request: Request, _payment=Depends(require_payment)):
        body = await _json_body(request)
        try:
            payload = CreateJobRequest.model_validate(body)
        except ValidationError as exc:
            raise InvalidInput(_first_error(exc)) from exc

        job = create_job(store, payload.prompt, payload.schedule_hhmm, clock=clock)
        return CreateJobResponse(
            jobId=job.id,
            scheduledFor=job.scheduled_for,
            statusUrl=f"{BASE_URL}/jobs/{job.id}",
        )

    @app.get("/jobs/{job_id}", response_model=JobStatus, response_model_exclude_none=True)
    def status(job_id: str):
        return get_status(store, job_id) or not_found_status()

    @app.patch("/jobs/{job_id}/tasks/{task_id}", response_model=SuccessResponse)
    async def modify(job_id: str, task_id: str, request: Request):
        try:
            patch = await _json_body(request)
        except InvalidInput:
            patch = None
        modify_task(store, job_id, task_id, patch)
        return SuccessResponse()

    @app.post("/jobs/{job_id}/tasks/{task_id}/undo", response_model=SuccessResponse)
    def undo(job_id: str, task_id: str):
        undo_task(store, job_id, task_id)
        return SuccessResponse()

    @app.post("/jobs/{job_id}/tasks/{task_id}/complete", response_model=SuccessResponse)
    def complete(job_id: str, task_id: str, body: Optional[CompleteTaskRequest] = None):
        complete_human_task(store, job_id, task_id, body.result if body else None)
        return SuccessResponse()

    return app


def serve() -> None:
    import uvicorn

    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(message)s")
    uvicorn.run(
        create_app(),
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "8000")),
    )


if __name__ == "__main__":
    serve()
