from __future__ import annotations

import uuid
from datetime import datetime, timezone

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

REQUEST_ID_HEADER = "x-request-id"
ALLOWED_METHODS = "GET,POST,PUT,PATCH,DELETE,OPTIONS"
ALLOWED_HEADERS = "Content-Type,Authorization,X-Request-Id"


def cors_headers(allow_origin: str) -> dict[str, str]:
    headers = {
        "Access-Control-Allow-Origin": allow_origin,
        "Access-Control-Allow-Methods": ALLOWED_METHODS,
        "Access-Control-Allow-Headers": ALLOWED_HEADERS,
    }
    # Browsers reject credentialed requests against a wildcard origin.
    if allow_origin != "*":
        headers["Access-Control-Allow-Credentials"] = "true"
    return headers


def request_id_for(request: Request) -> str:
    existing = getattr(request.state, "request_id", None)
    if existing:
        return existing
    request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
    request.state.request_id = request_id
    return request_id


def build_meta(request_id: str | None) -> dict:
    meta = {"timestamp": datetime.now(timezone.utc).isoformat()}
    if request_id:
        meta["requestId"] = request_id
    return meta


def _plain(data: object) -> object:
    # Dump models in python mode so money fields stay numeric in JSON.
    if isinstance(data, BaseModel):
        return data.model_dump()
    if isinstance(data, (list, tuple)):
        return [_plain(item) for item in data]
    return data


def success_envelope(data: object, request_id: str | None = None) -> dict:
    return {
        "success": True,
        "data": jsonable_encoder(_plain(data)),
        "meta": build_meta(request_id),
    }


def error_envelope(
    code: str,
    message: str,
    details: object | None = None,
    request_id: str | None = None,
) -> dict:
    error = {"code": code, "message": message}
    if details is not None:
        error["details"] = jsonable_encoder(details)
    return {"success": False, "error": error, "meta": build_meta(request_id)}


def _allow_origin(request: Request) -> str:
    settings = getattr(request.app.state, "settings", None)
    return settings.cors_allow_origin if settings else "*"


def success_response(
    request: Request,
    data: object,
    status_code: int = 200,
    headers: dict[str, str] | None = None,
) -> Response:
    if status_code < 200 or status_code >= 300:
        raise ValueError("Success responses need a 2xx status code.")
    merged = cors_headers(_allow_origin(request))
    merged[REQUEST_ID_HEADER] = request_id_for(request)
    if headers:
        merged.update(headers)
    if status_code == 204:
        return Response(status_code=204, headers=merged)
    return JSONResponse(
        success_envelope(data, request_id_for(request)),
        status_code=status_code,
        headers=merged,
    )


def error_response(
    request: Request,
    code: str,
    message: str,
    status_code: int,
    details: object | None = None,
) -> JSONResponse:
    if status_code < 400:
        raise ValueError("Error responses need a 4xx or 5xx status code.")
    headers = cors_headers(_allow_origin(request))
    headers[REQUEST_ID_HEADER] = request_id_for(request)
    return JSONResponse(
        error_envelope(code, message, details, request_id_for(request)),
        status_code=status_code,
        headers=headers,
    )


def preflight_response(request: Request) -> Response:
    headers = cors_headers(_allow_origin(request))
    return Response(status_code=200, headers=headers)
