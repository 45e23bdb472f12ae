from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, BackgroundTasks, Query
from pydantic import BaseModel

import daily_kline_loader as loader
from daily_kline_loader import (
    setup_logging,
    get_logger,
    backfill as _backfill,
    verify_day_files,
    status as _status,
    iso_to_ms,
    LoaderError,
)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    setup_logging(verbose=True)
    yield


app = FastAPI(title="Daily Kline Loader API", lifespan=lifespan)


class BackfillRequest(BaseModel):
    start: Optional[str] = None  # ISO8601
    end: Optional[str] = None    # ISO8601
    symbol: Optional[str] = None  # e.g., ETHUSDC
    interval: Optional[str] = None  # e.g., 1s
    page_span_ms: Optional[int] = None
    resume: bool = False


def _dataset(symbol: Optional[str], interval: Optional[str]):
    return symbol or loader.SYMBOL, interval or loader.INTERVAL


@app.post("/backfill")
async def backfill_endpoint(req: BackfillRequest, background_tasks: BackgroundTasks):
    logger = get_logger()
    symbol, interval = _dataset(req.symbol, req.interval)

    def task():
        try:
            _backfill(
                logger,
                start_ms=iso_to_ms(req.start) if req.start else None,
                end_ms=iso_to_ms(req.end) if req.end else None,
                symbol=symbol,
                interval=interval,
                page_span_ms=req.page_span_ms,
                output_dir=loader.OUTPUT_DIR,
                resume=req.resume,
            )
        except (LoaderError, OSError, ValueError) as e:
            logger.error(f"Backfill {symbol} {interval} aborted: {e}")

    background_tasks.add_task(task)
    return {"status": "scheduled", "symbol": symbol, "interval": interval}


@app.get("/days")
async def days(symbol: Optional[str] = Query(None), interval: Optional[str] = Query(None)):
    logger = get_logger()
    symbol, interval = _dataset(symbol, interval)
    return {"symbol": symbol, "interval": interval, "days": _status(logger, loader.OUTPUT_DIR, symbol, interval)}


@app.get("/verify")
async def verify(
    symbol: Optional[str] = Query(None),
    interval: Optional[str] = Query(None),
    start: Optional[str] = Query(None),
    end: Optional[str] = Query(None),
):
    logger = get_logger()
    symbol, interval = _dataset(symbol, interval)
    ok = verify_day_files(
        logger, loader.OUTPUT_DIR, symbol, interval,
        start_ms=iso_to_ms(start) if start else None,
        end_ms=iso_to_ms(end) if end else None,
    )
    return {"ok": ok}


@app.get("/health")
async def health():
    return {"status": "ok"}
