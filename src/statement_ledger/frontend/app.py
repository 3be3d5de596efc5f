from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from starlette.applications import Starlette
from starlette.exceptions import HTTPException
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from ..domain.models import MergeResult
from ..errors import InvalidInputError, LedgerError, NothingToMergeError, SessionBusyError, user_message
from ..logging import get_logger
from ..orchestrator.export import FORMAT_CSV, FORMAT_TSV
from ..orchestrator.session import LedgerSession

LOG = get_logger("ledger-api")

_MEDIA_TYPES = {FORMAT_CSV: "text/csv", FORMAT_TSV: "text/tab-separated-values"}


async def _json_body(request: Request) -> Dict[str, Any]:
    raw = await request.body()
    if not raw:
        return {}
    try:
        body = json.loads(raw)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Body is not valid JSON") from exc
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Body must be a JSON object")
    return body


def _bool_field(body: Dict[str, Any], name: str) -> bool:
    value = body.get(name)
    if not isinstance(value, bool):
        raise HTTPException(status_code=400, detail=f"'{name}' must be true or false")
    return value


def create_app(session: LedgerSession, *, allow_origins: Optional[List[str]] = None) -> Starlette:
    """JSON API over one LedgerSession: chunks, batch run, merge, ledger edits, export."""

    locale = session.settings.locale
    contract = session.settings.fee_contract

    def error_response(exc: LedgerError, status_code: int) -> JSONResponse:
        LOG.warning("Request failed: %s", exc)
        return JSONResponse({"detail": user_message(exc, locale)}, status_code=status_code)

    def result_payload(result: MergeResult) -> Dict[str, Any]:
        payload = result.ledger.as_dict(contract)
        payload.update(
            {
                "calculatedEnding": format(result.calculated_ending, "f"),
                "difference": format(result.difference, "f"),
                "warning": result.warning,
                "canUndo": session.editor.can_undo if session.editor else False,
            }
        )
        return payload

    def chunk_or_404(index: int):
        try:
            return session.chunk(index)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=f"Part {index} not found") from exc

    async def health(_: Request) -> JSONResponse:
        return JSONResponse({"status": "ok", "state": session.state, "parts": len(session.chunks)})

    async def chunks(_: Request) -> JSONResponse:
        return JSONResponse(
            {
                "state": session.state,
                "strategy": session.policy.strategy if session.policy else None,
                "progress": session.progress.as_dict(),
                "items": [c.as_dict() for c in session.chunks],
            }
        )

    async def toggle_merge(request: Request) -> JSONResponse:
        chunk = chunk_or_404(request.path_params["index"])
        body = await _json_body(request)
        session.set_include_in_merge(chunk.index, _bool_field(body, "include"))
        return JSONResponse(chunk.as_dict())

    async def toggle_select(request: Request) -> JSONResponse:
        chunk = chunk_or_404(request.path_params["index"])
        body = await _json_body(request)
        session.set_selected(chunk.index, _bool_field(body, "selected"))
        return JSONResponse(chunk.as_dict())

    async def run(_: Request) -> JSONResponse:
        try:
            summary = await session.run()
        except SessionBusyError as exc:
            return error_response(exc, 409)
        except LedgerError as exc:
            return error_response(exc, 422)
        return JSONResponse(
            {
                "total": summary.total,
                "completed": summary.completed,
                "failed": summary.failed,
                "cancelled": summary.cancelled,
                "items": [c.as_dict() for c in session.chunks],
            }
        )

    async def cancel(_: Request) -> JSONResponse:
        session.cancel()
        return JSONResponse({"state": session.state})

    async def retry(request: Request) -> JSONResponse:
        chunk = chunk_or_404(request.path_params["index"])
        try:
            await session.retry(chunk.index)
        except SessionBusyError as exc:
            return error_response(exc, 409)
        except LedgerError as exc:
            return error_response(exc, 422)
        return JSONResponse(chunk.as_dict())

    async def merge(request: Request) -> JSONResponse:
        body = await _json_body(request)
        opening = body.get("openingBalance")
        try:
            result = session.merge(str(opening) if opening not in (None, "") else None)
        except NothingToMergeError as exc:
            return error_response(exc, 409)
        except InvalidInputError as exc:
            return error_response(exc, 400)
        return JSONResponse(result_payload(result))

    async def ledger(_: Request) -> JSONResponse:
        try:
            result = session.current_result()
        except NothingToMergeError as exc:
            return error_response(exc, 404)
        return JSONResponse(result_payload(result))

    async def edit_transaction(request: Request) -> JSONResponse:
        row = request.path_params["row"]
        body = await _json_body(request)
        field = body.get("field")
        if not isinstance(field, str):
            raise HTTPException(status_code=400, detail="'field' is required")
        try:
            session.require_editor().edit(row, field, body.get("value"))
        except NothingToMergeError as exc:
            return error_response(exc, 404)
        except IndexError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return JSONResponse(result_payload(session.current_result()))

    async def add_transaction(request: Request) -> JSONResponse:
        body = await _json_body(request)
        position = body.get("position")
        if position is not None and not isinstance(position, int):
            raise HTTPException(status_code=400, detail="'position' must be an integer")
        try:
            row = session.require_editor().add(position=position)
        except NothingToMergeError as exc:
            return error_response(exc, 404)
        payload = result_payload(session.current_result())
        payload["row"] = row
        return JSONResponse(payload, status_code=201)

    async def delete_transaction(request: Request) -> JSONResponse:
        row = request.path_params["row"]
        try:
            session.require_editor().delete(row)
        except NothingToMergeError as exc:
            return error_response(exc, 404)
        except IndexError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return JSONResponse(result_payload(session.current_result()))

    async def undo(_: Request) -> JSONResponse:
        try:
            undone = session.require_editor().undo()
        except NothingToMergeError as exc:
            return error_response(exc, 404)
        payload = result_payload(session.current_result())
        payload["undone"] = undone
        return JSONResponse(payload)

    async def export(request: Request) -> Response:
        qp = request.query_params
        scope = qp.get("scope") or "ledger"
        fmt = (qp.get("format") or FORMAT_CSV).lower()
        if fmt not in _MEDIA_TYPES:
            raise HTTPException(status_code=400, detail="format must be csv or tsv")
        try:
            content = session.export(scope, fmt)
        except NothingToMergeError as exc:
            return error_response(exc, 404)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        filename = f"{'parts' if scope == 'chunks' else 'ledger'}.{fmt}"
        return Response(
            content,
            media_type=_MEDIA_TYPES[fmt],
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    routes = [
        Route("/api/health", health, methods=["GET"]),
        Route("/api/chunks", chunks, methods=["GET"]),
        Route("/api/chunks/{index:int}/merge", toggle_merge, methods=["POST"]),
        Route("/api/chunks/{index:int}/select", toggle_select, methods=["POST"]),
        Route("/api/chunks/{index:int}/retry", retry, methods=["POST"]),
        Route("/api/run", run, methods=["POST"]),
        Route("/api/cancel", cancel, methods=["POST"]),
        Route("/api/merge", merge, methods=["POST"]),
        Route("/api/ledger", ledger, methods=["GET"]),
        Route("/api/ledger/transactions", add_transaction, methods=["POST"]),
        Route("/api/ledger/transactions/{row:int}", edit_transaction, methods=["PATCH"]),
        Route("/api/ledger/transactions/{row:int}", delete_transaction, methods=["DELETE"]),
        Route("/api/ledger/undo", undo, methods=["POST"]),
        Route("/api/export", export, methods=["GET"]),
    ]

    app = Starlette(debug=False, routes=routes)

    origins = allow_origins or ["http://localhost:5173", "http://127.0.0.1:5173"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if "*" in origins else origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    return app


__all__ = ["create_app"]
