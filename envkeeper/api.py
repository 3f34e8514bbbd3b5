"""HTTP surface for key status, audits and rotations."""

from __future__ import annotations

from typing import Any, Dict, Literal, Optional

import structlog
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator

from envkeeper.errors import (
    InvalidKeyMaterialError,
    KeyLifecycleError,
    KeyNotFoundError,
    RotationConfigError,
)
from envkeeper.models import RotationReason, to_record
from envkeeper.orchestrator import CryptoOrchestrator

logger = structlog.get_logger(__name__)


class SuccessResponse(BaseModel):
    """Standard successful response envelope."""

    success: Literal[True] = True
    data: Any | None = None


class ErrorDetail(BaseModel):
    code: int | str | None = None
    message: str
    details: Any | None = None


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    success: Literal[False] = False
    error: ErrorDetail


class RotateKeyRequest(BaseModel):
    environment_file: str = Field(alias="environmentFile")
    reason: RotationReason = RotationReason.MANUAL
    custom_max_age: Optional[float] = Field(default=None, alias="customMaxAge", gt=0)
    should_rotate_key: bool = Field(default=False, alias="shouldRotateKey")
    new_key_value: Optional[str] = Field(default=None, alias="newKeyValue")

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    @field_validator("environment_file")
    @classmethod
    def _require_environment_file(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("environmentFile is required")
        return value.strip()

    @field_validator("new_key_value")
    @classmethod
    def _reject_blank_key(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            raise ValueError("newKeyValue cannot be blank")
        return value


def _success_payload(data: Any) -> Dict[str, Any]:
    return SuccessResponse(data=to_record(data, json_ready=True)).model_dump()


def _error_response(status_code: int, message: str, details: Any | None = None) -> JSONResponse:
    payload = ErrorResponse(error=ErrorDetail(code=status_code, message=message, details=details))
    return JSONResponse(status_code=status_code, content=payload.model_dump())


def get_orchestrator(request: Request) -> CryptoOrchestrator:
    return request.app.state.orchestrator


def create_app(orchestrator: CryptoOrchestrator) -> FastAPI:
    """Return a FastAPI application serving ``orchestrator``."""

    app = FastAPI(title="EnvKeeper")
    app.state.orchestrator = orchestrator

    @app.exception_handler(KeyNotFoundError)
    async def _key_not_found(request: Request, exc: KeyNotFoundError) -> JSONResponse:
        return _error_response(404, str(exc))

    @app.exception_handler(RotationConfigError)
    async def _rotation_config(request: Request, exc: RotationConfigError) -> JSONResponse:
        return _error_response(422, str(exc))

    @app.exception_handler(InvalidKeyMaterialError)
    async def _invalid_key_material(request: Request, exc: InvalidKeyMaterialError) -> JSONResponse:
        return _error_response(422, str(exc))

    @app.exception_handler(KeyLifecycleError)
    async def _lifecycle_error(request: Request, exc: KeyLifecycleError) -> JSONResponse:
        logger.error("key_lifecycle_request_failed", path=request.url.path, error=str(exc))
        return _error_response(500, str(exc))

    @app.exception_handler(HTTPException)
    async def _http_error(request: Request, exc: HTTPException) -> JSONResponse:
        return _error_response(exc.status_code, str(exc.detail))

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        details = [
            {"loc": list(error.get("loc", ())), "msg": error.get("msg")} for error in exc.errors()
        ]
        return _error_response(422, "Request validation failed", details)

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return _success_payload({"status": "ok"})

    @app.get("/keys/{key_name}")
    async def key_info(
        key_name: str,
        include_audit: bool = True,
        orchestrator: CryptoOrchestrator = Depends(get_orchestrator),
    ) -> Dict[str, Any]:
        info = await orchestrator.get_key_information(key_name, include_audit=include_audit)
        if not info.exists:
            raise KeyNotFoundError(f"Key '{key_name}' not found in metadata")
        return _success_payload(info)

    @app.get("/keys/{key_name}/rotation-status")
    async def rotation_status(
        key_name: str, orchestrator: CryptoOrchestrator = Depends(get_orchestrator)
    ) -> Dict[str, Any]:
        return _success_payload(await orchestrator.check_key_rotation_status(key_name))

    @app.post("/keys/{key_name}/rotate")
    async def rotate_key(
        key_name: str,
        payload: RotateKeyRequest,
        orchestrator: CryptoOrchestrator = Depends(get_orchestrator),
    ) -> Dict[str, Any]:
        result = await orchestrator.rotate_key_and_re_encrypt(
            key_name,
            payload.environment_file,
            payload.reason,
            new_key_value=payload.new_key_value,
            custom_max_age=payload.custom_max_age,
            should_rotate_key=payload.should_rotate_key,
        )
        return _success_payload(result)

    @app.get("/audit")
    async def system_audit(
        orchestrator: CryptoOrchestrator = Depends(get_orchestrator),
    ) -> Dict[str, Any]:
        return _success_payload(await orchestrator.perform_system_audit())

    @app.get("/startup-check")
    async def startup_check(
        orchestrator: CryptoOrchestrator = Depends(get_orchestrator),
    ) -> Dict[str, Any]:
        return _success_payload(await orchestrator.perform_startup_security_check())

    return app


__all__ = ["RotateKeyRequest", "create_app"]
