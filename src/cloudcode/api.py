"""HTTP surface for a Cloud engine.

    POST   /functions/{name}                 call a cloud function
    POST   /classes/{class_name}             create an object
    GET    /classes/{class_name}/{object_id} fetch an object
    PUT    /classes/{class_name}/{object_id} update an object
    DELETE /classes/{class_name}/{object_id} delete an object

Every response body is a wire envelope. The session token travels in
the ``X-Session-Token`` header.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import Body, FastAPI, Header, Request
from fastapi.responses import JSONResponse

from cloudcode._version import __version__
from cloudcode.cloud import Cloud
from cloudcode.exceptions import CloudCodeError, ObjectNotFoundError
from cloudcode.marshal import render, render_error, status_for
from cloudcode.models.entity import RESERVED_KEYS, Entity

logger = logging.getLogger(__name__)


def _fields(body: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in body.items() if k not in RESERVED_KEYS}


def _object_envelope(entity: Entity, status_code: int = 200) -> JSONResponse:
    return JSONResponse({"result": entity.to_json()}, status_code=status_code)


def create_app(cloud: Cloud) -> FastAPI:
    """Build a FastAPI app serving ``cloud``.

    Routes are plain ``def`` so FastAPI runs them on its threadpool;
    sandboxed handlers block for up to their timeout.
    """
    app = FastAPI(title="cloudcode", version=__version__)
    app.state.cloud = cloud

    @app.exception_handler(CloudCodeError)
    async def cloudcode_error(request: Request, exc: CloudCodeError) -> JSONResponse:
        return JSONResponse(render_error(exc), status_code=status_for(exc))

    @app.post("/functions/{name}")
    def call_function(
        name: str,
        params: Optional[dict[str, Any]] = Body(default=None),
        x_session_token: Optional[str] = Header(default=None),
    ) -> JSONResponse:
        outcome = cloud.run(name, params, session_token=x_session_token)
        return JSONResponse(render(outcome), status_code=status_for(outcome))

    @app.post("/classes/{class_name}")
    def create_object(
        class_name: str,
        body: Optional[dict[str, Any]] = Body(default=None),
        x_session_token: Optional[str] = Header(default=None),
    ) -> JSONResponse:
        entity = Entity(class_name, fields=_fields(body or {}))
        committed = cloud.save(entity, session_token=x_session_token)
        return _object_envelope(committed, status_code=201)

    @app.get("/classes/{class_name}/{object_id}")
    def get_object(class_name: str, object_id: str) -> JSONResponse:
        entity = cloud.get(class_name, object_id)
        if entity is None:
            raise ObjectNotFoundError(class_name, object_id)
        return _object_envelope(entity)

    @app.put("/classes/{class_name}/{object_id}")
    def update_object(
        class_name: str,
        object_id: str,
        body: Optional[dict[str, Any]] = Body(default=None),
        x_session_token: Optional[str] = Header(default=None),
    ) -> JSONResponse:
        entity = cloud.get(class_name, object_id)
        if entity is None:
            raise ObjectNotFoundError(class_name, object_id)
        entity.update(_fields(body or {}))
        committed = cloud.save(entity, session_token=x_session_token)
        return _object_envelope(committed)

    @app.delete("/classes/{class_name}/{object_id}")
    def delete_object(
        class_name: str,
        object_id: str,
        x_session_token: Optional[str] = Header(default=None),
    ) -> JSONResponse:
        cloud.delete(class_name, object_id, session_token=x_session_token)
        return JSONResponse({"result": None})

    return app
