from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import anyio.to_thread
from fastapi import FastAPI, HTTPException, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..core.errors import (
    QueueNotFound,
    RateLimitExceeded,
    ServiceUnavailable,
    StoreUnavailable,
    ValidationFailed,
)
from ..services.judge_service import JudgeService
from ..settings import load_settings

# --------- Schemas (camelCase on the wire) ---------


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TestCaseIn(ApiModel):
    input: Optional[str] = None
    expected_output: Optional[str] = None
    is_hidden: bool = False
    points: int = 0


class ExecuteReq(ApiModel):
    submission_id: Optional[str] = None
    code: Optional[str] = None
    language: Optional[str] = None
    test_cases: Optional[List[TestCaseIn]] = None
    time_limit: Optional[float] = Field(default=None, description="milliseconds")
    memory_limit: Optional[float] = Field(default=None, description="megabytes")
    user_id: Optional[str] = None
    priority: int = 0

    def payload(self) -> Dict[str, Any]:
        return {
            "submission_id": self.submission_id,
            "code": self.code,
            "language": self.language,
            "test_cases": [tc.model_dump() for tc in self.test_cases or []],
            "time_limit_ms": self.time_limit,
            "memory_limit_mb": self.memory_limit,
            "user_id": self.user_id,
            "priority": self.priority,
        }


class ExecuteRes(ApiModel):
    success: bool = True
    job_id: str
    queue: str
    message: str = "Code execution queued"
    estimated_time: str


class BatchReq(ApiModel):
    submissions: List[ExecuteReq] = []
    user_id: Optional[str] = None


class BatchRes(ApiModel):
    success: bool = True
    job_id: str
    queue: str
    total_submissions: int
    message: str = "Batch execution queued"


class AdminReq(ApiModel):
    queue_type: str = "execution"


def _rate_limit_headers(response: Response, info: Dict[str, Any]) -> None:
    reset = datetime.fromtimestamp(info["reset_time"] / 1000, tz=timezone.utc)
    response.headers["X-RateLimit-Limit"] = str(info["limit"])
    response.headers["X-RateLimit-Remaining"] = str(max(0, info["limit"] - info["current"]))
    response.headers["X-RateLimit-Reset"] = reset.isoformat()


def _camel(data: Any) -> Any:
    if isinstance(data, dict):
        return {(to_camel(k) if "_" in k and k.isidentifier() else k): _camel(v) for k, v in data.items()}
    if isinstance(data, list):
        return [_camel(v) for v in data]
    return data


def create_app(service: Optional[JudgeService] = None) -> FastAPI:
    svc = service or JudgeService(load_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        svc.start()
        try:
            yield
        finally:
            # joins worker threads; keep the event loop free meanwhile
            await anyio.to_thread.run_sync(svc.stop)

    app = FastAPI(title="judgebox", lifespan=lifespan)
    app.state.judge = svc
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RateLimitExceeded)
    async def rate_limited(request: Request, exc: RateLimitExceeded):
        info = exc.decision
        resp = JSONResponse(
            status_code=429,
            content={"success": False, "message": str(exc), "rateLimit": _camel(info)},
        )
        resp.headers["Retry-After"] = str(info.get("retry_after", 0))
        _rate_limit_headers(resp, info)
        return resp

    # --------- Endpoints ---------

    @app.get("/health")
    def health():
        return _camel(svc.health())

    @app.post("/execute", response_model=ExecuteRes, response_model_by_alias=True)
    def execute(req: ExecuteReq, request: Request, response: Response):
        payload = req.payload()
        payload["user_id"] = req.user_id or request.headers.get("x-user-id")
        try:
            job = svc.submit(payload)
        except ValidationFailed as e:
            raise HTTPException(status_code=400, detail=str(e))
        except (ServiceUnavailable, StoreUnavailable) as e:
            raise HTTPException(status_code=503, detail=str(e))
        _rate_limit_headers(response, job["rate_limit"])
        return ExecuteRes(
            job_id=job["job_id"],
            queue=job["queue"],
            estimated_time=f"{job['estimated_time_seconds']}s",
        )

    @app.post("/execute/batch", response_model=BatchRes, response_model_by_alias=True)
    def execute_batch(req: BatchReq, request: Request, response: Response):
        user_id = req.user_id or request.headers.get("x-user-id") or "anonymous"
        try:
            job = svc.submit_batch([s.payload() for s in req.submissions], user_id=user_id)
        except ValidationFailed as e:
            raise HTTPException(status_code=400, detail=str(e))
        except (ServiceUnavailable, StoreUnavailable) as e:
            raise HTTPException(status_code=503, detail=str(e))
        _rate_limit_headers(response, job["rate_limit"])
        return BatchRes(job_id=job["job_id"], queue=job["queue"], total_submissions=job["total_submissions"])

    @app.get("/result/{job_id}")
    def result(job_id: str, queue: str = Query("execution")):
        try:
            data = svc.get_result(job_id, queue)
        except QueueNotFound as e:
            raise HTTPException(status_code=404, detail=str(e))
        except StoreUnavailable as e:
            raise HTTPException(status_code=503, detail=str(e))
        if data is None:
            raise HTTPException(status_code=404, detail="Job not found")
        return {"success": data["status"] != "failed", **_camel(data)}

    @app.get("/stats")
    def stats():
        try:
            return {"success": True, "stats": _camel(svc.stats())}
        except StoreUnavailable as e:
            raise HTTPException(status_code=503, detail=str(e))

    @app.get("/rate-limit/{user_id}")
    def rate_limit(user_id: str):
        try:
            limits = svc.rate_limit_status(user_id)
        except StoreUnavailable as e:
            raise HTTPException(status_code=503, detail=str(e))
        return {"success": True, "userId": user_id, "rateLimits": _camel(limits)}

    @app.delete("/rate-limit/{user_id}")
    def reset_rate_limit(user_id: str):
        try:
            svc.reset_rate_limits(user_id)
        except StoreUnavailable as e:
            raise HTTPException(status_code=503, detail=str(e))
        return {"success": True, "message": f"Rate limits reset for user {user_id}"}

    @app.post("/admin/queue/{action}")
    def admin_queue(action: str, req: AdminReq):
        try:
            out = svc.admin(action, req.queue_type)
        except ValidationFailed as e:
            raise HTTPException(status_code=400, detail=str(e))
        except QueueNotFound as e:
            raise HTTPException(status_code=404, detail=str(e))
        except StoreUnavailable as e:
            raise HTTPException(status_code=503, detail=str(e))
        return {"success": True, "message": f"Queue {req.queue_type} {action} completed", **_camel(out)}

    return app
