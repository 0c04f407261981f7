from __future__ import annotations

import logging
import math
from contextlib import asynccontextmanager
from typing import Optional

import numpy as np
import pandas as pd
from fastapi import FastAPI
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from api.schemas import DashboardFiltersModel, RefreshAccepted
from core.config import config_from_env
from core.filters import DashboardFilters, normalize_filters
from core.metrics_breakdown import compute_breakdown, export_frame
from core.metrics_overview import compute_overview
from core.models import Snapshot
from core.refresh import RefreshOrchestrator


logger = logging.getLogger(__name__)


def _json(data: object, status_code: int = 200) -> JSONResponse:
    """Return JSON with safe encoding for pandas/numpy objects."""

    def _safe_float(value: object) -> float | None:
        try:
            out = float(value)  # type: ignore[arg-type]
        except Exception:
            return None
        if math.isnan(out) or math.isinf(out):
            return None
        return out

    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(
            data,
            custom_encoder={
                type(pd.NA): lambda _: None,
                np.integer: int,
                float: _safe_float,
                np.floating: _safe_float,
                np.bool_: bool,
                pd.Timestamp: lambda ts: ts.isoformat(),
            },
        ),
    )


def _error(exc: Exception, status_code: int = 500) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": str(exc), "type": type(exc).__name__})


def _filters_from_model(model: DashboardFiltersModel, snapshot: Snapshot) -> DashboardFilters:
    return normalize_filters(model.model_dump(), available_tabs=list(snapshot.provinces))


def create_app(orchestrator: Optional[RefreshOrchestrator] = None, *, autostart: bool = True) -> FastAPI:
    orch = orchestrator or RefreshOrchestrator(config_from_env())

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        if autostart:
            orch.start()
        try:
            yield
        finally:
            orch.stop()

    app = FastAPI(title="Regional Results Dashboard API", version="0.1.0", lifespan=lifespan)
    app.state.orchestrator = orch
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(orch.config.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _no_data() -> JSONResponse:
        state = orch.state
        message = state.error or ("Loading data" if state.loading else "No data loaded yet")
        return JSONResponse(status_code=503, content={"error": message, "loading": state.loading})

    def _missing(key: str) -> JSONResponse:
        source = orch.config.source(key)
        if source is None:
            return JSONResponse(status_code=404, content={"error": f"Unknown province: {key}"})
        return JSONResponse(status_code=503, content={"error": f"{source.name} data unavailable"})

    @app.get("/health")
    def health():
        state = orch.state
        return {"status": state.status.value, "loading": state.loading, "scheduler": orch.running}

    @app.get("/state")
    def dashboard_state():
        return _json(orch.state.to_dict())

    @app.get("/snapshot")
    def snapshot():
        try:
            state = orch.state
            if state.snapshot is None:
                return _no_data()
            return _json(state.to_dict(include_snapshot=True))
        except Exception as exc:
            logger.exception("snapshot failed")
            return _error(exc)

    @app.get("/provinces/{key}")
    def province(key: str):
        try:
            snap = orch.state.snapshot
            if snap is None:
                return _no_data()
            dataset = snap.dataset(key)
            if dataset is None:
                return _missing(key)
            return _json(dataset.to_dict())
        except Exception as exc:
            logger.exception("province failed")
            return _error(exc)

    @app.post("/refresh", status_code=202, response_model=RefreshAccepted)
    def refresh():
        orch.trigger_refresh()
        return RefreshAccepted(loading=True)

    @app.post("/overview")
    def overview(filters: DashboardFiltersModel):
        try:
            snap = orch.state.snapshot
            if snap is None:
                return _no_data()
            return _json(compute_overview(_filters_from_model(filters, snap), snap))
        except Exception as exc:
            logger.exception("overview failed")
            return _error(exc)

    @app.post("/breakdown")
    def breakdown(filters: DashboardFiltersModel):
        try:
            snap = orch.state.snapshot
            if snap is None:
                return _no_data()
            return _json(compute_breakdown(_filters_from_model(filters, snap), snap))
        except Exception as exc:
            logger.exception("breakdown failed")
            return _error(exc)

    @app.get("/export/{key}")
    def export_dataset(key: str):
        snap = orch.state.snapshot
        if snap is None:
            return _no_data()
        dataset = snap.dataset(key)
        if dataset is None:
            return _missing(key)
        csv_bytes = export_frame(dataset).to_csv(index=False).encode("utf-8")
        filename = f"{key}.csv"
        return Response(
            content=csv_bytes,
            media_type="text/csv",
            headers={"Content-Disposition": f"attachment; filename={filename}"},
        )

    return app


app = create_app()
