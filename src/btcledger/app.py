# app.py
"""
FastAPI application.

This file wires the HTTP surface onto the ingestion core:
  GET    /health                      → liveness check
  GET    /version                     → app version metadata
  POST   /import                      → upload a file (CSV / JSON), detect + import
  GET    /transactions                → paginated, filterable ledger
  GET    /export/transactions.csv     → ledger in our own (re-importable) CSV layout
  GET    /export/transactions.json    → ledger as JSON (re-importable)
  GET    /exchanges                   → adapters, credential fields, connected flag
  POST   /exchanges/{id}/test         → try credentials without saving them
  POST   /exchanges/{id}/credentials  → test, then store encrypted
  DELETE /exchanges/{id}              → forget stored credentials
  GET    /exchanges/{id}/balances     → live balances
  POST   /exchanges/{id}/sync         → pull trades into the ledger
  GET    /fx/rates                    → cached rate table and its age

  Command to start the server: uvicorn btcledger.app:app --reload
"""
from __future__ import annotations

import csv
import io
import json
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, Request, Response, UploadFile
from fastapi.responses import JSONResponse

from .__about__ import __title__, __version__
from .errors import IngestError
from .ledger import LedgerFilter
from .schemas import (
    ConnectionTestResponse, CredentialsPayload, DetectResponse, ExchangeInfo,
    ImportResponse, RunResult, SyncRequest, TransactionPage,
)
from .services import Services, build_services

EXPORT_HEADERS = [
    "Date", "Type", "Amount (BTC)", "Exchange", "Original Currency",
    "Original Price", "Original Cost", "Original Fee",
]

_build_lock = threading.Lock()

# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

def dec_to_str(x) -> str:
    s = format(x, "f")
    return s.rstrip("0").rstrip(".") if "." in s else s


def error_detail(exc: IngestError) -> Dict[str, str]:
    return exc.to_dict()


def raise_http(exc: IngestError) -> None:
    raise HTTPException(status_code=exc.status_code, detail=error_detail(exc)) from exc


def failed_run_response(result: RunResult, status_by_code: Dict[str, int], body: Dict[str, Any]) -> JSONResponse:
    status = status_by_code.get(result.failure.code, 400) if result.failure else 200
    return JSONResponse(status_code=status, content={"detail": result.failure.model_dump(), **body})


def _parse_day(value: Optional[str], name: str, end: bool = False) -> Optional[datetime]:
    if not value:
        return None
    try:
        d = datetime.strptime(value, "%Y-%m-%d")
    except ValueError:
        raise HTTPException(status_code=400, detail={"code": "invalid_date", "message": f"{name} must be YYYY-MM-DD"})
    return d + timedelta(days=1) - timedelta(microseconds=1) if end else d


def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        with _build_lock:
            services = getattr(request.app.state, "services", None)
            if services is None:
                services = build_services()
                request.app.state.services = services
    return services


# status code for each whole-run failure code
_FAILURE_STATUS = {
    "unrecognized_format": 422,
    "unsupported_file_type": 422,
    "unknown_exchange": 404,
    "exchange_not_configured": 400,
    "credential_invalid": 400,
    "network_failure": 502,
    "merge_conflict": 409,
    "ledger_write_error": 500,
}


def create_app(services: Optional[Services] = None) -> FastAPI:
    app = FastAPI(title=__title__, version=__version__)
    if services is not None:
        app.state.services = services

    @app.on_event("startup")
    def on_startup() -> None:
        """
        Runs when the server starts.
        - Builds the service container (creates tables, loads cached rates).
        """
        if getattr(app.state, "services", None) is None:
            app.state.services = build_services()

    # -------------------------------------------------------------------------
    # Health + version endpoints (simple sanity checks)
    # -------------------------------------------------------------------------
    @app.get("/health")
    def health() -> Dict[str, str]:
        """Quick liveness check for monitoring or manual testing."""
        return {"status": "ok"}

    @app.get("/version")
    def version() -> Dict[str, str]:
        """Show the backend name and version (useful to confirm deployments)."""
        return {"name": __title__, "version": __version__}

    # -------------------------------------------------------------------------
    # File import
    # -------------------------------------------------------------------------
    @app.post("/import")
    async def import_file(
        file: UploadFile = File(...),
        skip_duplicates: bool = Form(True),
        detect_only: bool = Form(False),
        svc: Services = Depends(get_services),
    ):
        """
        Upload a spreadsheet export (.csv / .txt) or a JSON export (.json).
        The format is detected from the header layout, not the extension.
        With detect_only=true nothing is imported; the detected format is returned.
        """
        content = await file.read()
        if not content:
            raise HTTPException(status_code=400, detail={"code": "empty_file", "message": "Empty file"})
        filename = file.filename or ""

        if detect_only:
            try:
                return DetectResponse(detected_format=svc.ingestion.detect(filename, content))
            except IngestError as exc:
                raise_http(exc)

        result = svc.ingestion.import_file(filename, content, skip_duplicates=skip_duplicates)
        body = ImportResponse(
            imported=result.imported,
            skipped=result.skipped,
            skipped_duplicates=result.skipped_duplicates,
            skipped_invalid=result.skipped_invalid,
            total=result.total,
            detected_format=result.source,
            errors=result.errors,
            failure=result.failure,
        )
        if result.failure:
            return failed_run_response(result, _FAILURE_STATUS, {"result": body.model_dump(mode="json")})
        return body

    # -------------------------------------------------------------------------
    # Ledger reads / exports
    # -------------------------------------------------------------------------
    @app.get("/transactions", response_model=TransactionPage)
    def list_transactions(
        limit: int = Query(50, ge=1, le=500),
        offset: int = Query(0, ge=0),
        source: str | None = None,
        type: str | None = None,
        date_from: str | None = None,   # YYYY-MM-DD
        date_to: str | None = None,     # YYYY-MM-DD
        svc: Services = Depends(get_services),
    ):
        """Paginated, filterable list of ledger transactions (oldest first)."""
        flt = LedgerFilter(
            source=source,
            type=type,
            date_from=_parse_day(date_from, "date_from"),
            date_to=_parse_day(date_to, "date_to", end=True),
        )
        total = svc.ledger.count(flt)
        flt.limit, flt.offset = limit, offset
        return TransactionPage(items=svc.ledger.list_transactions(flt), total=total, limit=limit, offset=offset)

    @app.get("/export/transactions.csv", summary="Download the ledger as CSV (re-importable)")
    def export_transactions_csv(svc: Services = Depends(get_services)) -> Response:
        buf = io.StringIO()
        writer = csv.writer(buf, lineterminator="\n")
        writer.writerow(EXPORT_HEADERS)
        for tx in svc.ledger.list_transactions():
            writer.writerow([
                tx.transaction_date.isoformat(timespec="seconds"),
                tx.type.value,
                dec_to_str(tx.btc_amount),
                tx.source,
                tx.original.currency,
                dec_to_str(tx.original.price_per_btc),
                dec_to_str(tx.original.total_cost),
                dec_to_str(tx.original.fee),
            ])
        headers = {"Content-Disposition": 'attachment; filename="btc_transactions.csv"'}
        return Response(content=buf.getvalue().encode("utf-8"), media_type="text/csv; charset=utf-8", headers=headers)

    @app.get("/export/transactions.json", summary="Download the ledger as JSON (re-importable)")
    def export_transactions_json(svc: Services = Depends(get_services)) -> Response:
        items = [tx.model_dump(mode="json") for tx in svc.ledger.list_transactions()]
        exported_at = datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")
        payload = {"exported_at": exported_at, "transactions": items}
        headers = {"Content-Disposition": 'attachment; filename="btc_transactions.json"'}
        return Response(content=json.dumps(payload, indent=2), media_type="application/json", headers=headers)

    # -------------------------------------------------------------------------
    # Exchanges
    # -------------------------------------------------------------------------
    @app.get("/exchanges", response_model=list[ExchangeInfo])
    def list_exchanges(svc: Services = Depends(get_services)):
        return svc.exchanges.available_exchanges()

    @app.post("/exchanges/{exchange_id}/test", response_model=ConnectionTestResponse)
    def test_exchange(exchange_id: str, payload: CredentialsPayload, svc: Services = Depends(get_services)):
        try:
            ok = svc.exchanges.test_connection(exchange_id, payload.credentials)
        except IngestError as exc:
            raise_http(exc)
        return ConnectionTestResponse(exchange=exchange_id, success=ok)

    @app.post("/exchanges/{exchange_id}/credentials")
    def save_exchange_credentials(exchange_id: str, payload: CredentialsPayload, svc: Services = Depends(get_services)):
        try:
            svc.exchanges.save_credentials(exchange_id, payload.credentials)
        except IngestError as exc:
            raise_http(exc)
        return {"exchange": exchange_id, "saved": True}

    @app.delete("/exchanges/{exchange_id}")
    def delete_exchange_credentials(exchange_id: str, svc: Services = Depends(get_services)):
        try:
            deleted = svc.exchanges.delete_credentials(exchange_id)
        except IngestError as exc:
            raise_http(exc)
        return {"exchange": exchange_id, "deleted": deleted}

    @app.get("/exchanges/{exchange_id}/balances")
    def exchange_balances(exchange_id: str, svc: Services = Depends(get_services)):
        try:
            balances = svc.exchanges.get_balances(exchange_id)
        except IngestError as exc:
            raise_http(exc)
        return {"exchange": exchange_id, "balances": {k: dec_to_str(v) for k, v in balances.items()}}

    @app.post("/exchanges/{exchange_id}/sync", response_model=RunResult)
    def sync_exchange(exchange_id: str, payload: SyncRequest | None = None, svc: Services = Depends(get_services)):
        """
        Pull trades from the exchange into the ledger.
        Date bounds that are not YYYY-MM-DD are ignored.
        """
        payload = payload or SyncRequest()
        try:
            result = svc.ingestion.sync_exchange(
                exchange_id,
                start_date=payload.start_date,
                end_date=payload.end_date,
                skip_duplicates=payload.skip_duplicates,
            )
        except IngestError as exc:
            raise_http(exc)
        if result.failure:
            return failed_run_response(result, _FAILURE_STATUS, {"result": result.model_dump(mode="json")})
        return result

    # -------------------------------------------------------------------------
    # FX
    # -------------------------------------------------------------------------
    @app.get("/fx/rates")
    def fx_rates(svc: Services = Depends(get_services)):
        svc.converter.ensure_fresh()
        return svc.converter.snapshot()

    return app


app = create_app()
