"""HTTP submission routes.

Both verbs follow one rule: a structured body that carries ``source`` is the
record itself; otherwise ``source`` must be in the query string and the
record becomes ``{source, payload}``. The response acknowledges durable
acceptance, not delivery.
"""
from fastapi import APIRouter, Request, Response
import orjson

from ..services.relay import Relay

router = APIRouter(tags=["submit"])


def _relay(request: Request) -> Relay:
    return request.app.state.relay


@router.get("/", status_code=202)
async def submit_query(request: Request):
    params = dict(request.query_params)
    source = params.pop("source", None)
    await _relay(request).sink.accept({"source": source, "payload": params}, channel="http")
    return Response(status_code=202)


@router.post("/", status_code=202)
async def submit_body(request: Request):
    body = await request.body()
    try:
        data = orjson.loads(body) if body else None
    except orjson.JSONDecodeError:
        data = body.decode("utf-8", errors="replace")

    if isinstance(data, dict) and data.get("source"):
        submission = data
    else:
        submission = {"source": request.query_params.get("source"), "payload": data}

    await _relay(request).sink.accept(submission, channel="http")
    return Response(status_code=202)
