import os
import re
import sys
import time
import atexit
import logging
from enum import Enum
from logging.handlers import RotatingFileHandler
from datetime import datetime, timezone
from typing import List, Dict, Any, Optional, Tuple, NamedTuple, Sequence

import ccxt  # type: ignore
import pandas as pd  # type: ignore
from dateutil import parser as dateparser  # type: ignore

# --------------------------
# Configuration and Defaults
# --------------------------
SYMBOL = os.environ.get("SYMBOL", "ETHUSDC")  # Binance symbol id (no slash)
INTERVAL = os.environ.get("INTERVAL", "1s")
START_ISO_UTC = os.environ.get("START_ISO_UTC", "2024-06-01T00:00:00Z")
# Inclusive end of the range; empty means up to the last closed bar
END_ISO_UTC = os.environ.get("END_ISO_UTC", "2024-06-01T00:19:59Z")
BASE_URL = os.environ.get("BINANCE_BASE_URL", "https://api.binance.com")
# Binance klines max limit per request used by this loader
KLINE_LIMIT = int(os.environ.get("KLINE_LIMIT", "1000"))
# Time span covered by one request; 10 minutes of 1s bars = 600 rows
PAGE_SPAN_MS = int(os.environ.get("PAGE_SPAN_MS", str(10 * 60_000)))
OUTPUT_DIR = os.environ.get("KLINES_DIR", f"{INTERVAL}_klines")
# Pause between requests
PACE_SEC = float(os.environ.get("PACE_SEC", "0.001"))
HTTP_TIMEOUT_MS = int(os.environ.get("HTTP_TIMEOUT_MS", "10000"))
LOG_DIR = os.environ.get("LOG_DIR", "logs")
LOG_FILE = os.path.join(LOG_DIR, "loader.log")
LOGGER_NAME = "klineloader"

DAY_MS = 86_400_000

# Kline schema (12 fields), also the CSV column order
KLINE_COLUMNS = [
    "open_time", "open", "high", "low", "close", "volume",
    "close_time", "quote_volume", "trades", "taker_base_volume", "taker_quote_volume", "ignore"
]


# --------------------------
# Errors
# --------------------------

class LoaderError(Exception):
    """Base class for errors raised by the loader."""


class TransportError(LoaderError):
    """Network, HTTP or exchange failure while fetching a page."""


class DecodeError(LoaderError):
    """A page payload could not be parsed into klines."""


class ContractViolation(LoaderError):
    """A page was out of order or outside the requested window."""


# --------------------------
# Data model
# --------------------------

class KlineRow(NamedTuple):
    open_time: int
    open: str
    high: str
    low: str
    close: str
    volume: str
    close_time: int
    quote_volume: str
    trades: int
    taker_base_volume: str
    taker_quote_volume: str
    ignore: str


# --------------------------
# Helpers
# --------------------------

def sweep_tmp_files(output_dir: str, logger: Optional[logging.Logger] = None):
    """Remove lingering *.tmp files left behind by interrupted day-file writes."""
    if not os.path.isdir(output_dir):
        return
    for name in os.listdir(output_dir):
        if not name.endswith(".tmp"):
            continue
        path = os.path.join(output_dir, name)
        try:
            os.remove(path)
            if logger:
                logger.info(f"Removed lingering temp file: {path}")
        except OSError as e:
            if logger:
                logger.warning(f"Failed to remove temp file {path}: {e}")


def shutdown_logging():
    """Close and remove all handlers attached to the loader logger."""
    logger = logging.getLogger(LOGGER_NAME)
    for h in list(logger.handlers):
        try:
            h.flush()
            h.close()
        finally:
            logger.removeHandler(h)


_atexit_registered = False


def setup_logging(verbose: bool = True):
    global _atexit_registered
    os.makedirs(LOG_DIR, exist_ok=True)
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.INFO)
    logger.propagate = False
    # Avoid duplicate handlers if setup_logging is called multiple times
    if logger.handlers:
        shutdown_logging()
    formatter = logging.Formatter(fmt="%(asctime)s | %(levelname)s | %(message)s", datefmt="%Y-%m-%d %H:%M:%S")

    fh = RotatingFileHandler(LOG_FILE, maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8")
    fh.setLevel(logging.INFO)
    fh.setFormatter(formatter)
    logger.addHandler(fh)

    if verbose:
        ch = logging.StreamHandler(sys.stdout)
        ch.setLevel(logging.INFO)
        ch.setFormatter(formatter)
        logger.addHandler(ch)

    sweep_tmp_files(OUTPUT_DIR, logger)
    if not _atexit_registered:
        atexit.register(shutdown_logging)
        _atexit_registered = True
    return logger


def get_logger(verbose: bool = True) -> logging.Logger:
    """Loader logger, configured on first use only (no tmp sweep afterwards)."""
    logger = logging.getLogger(LOGGER_NAME)
    if logger.handlers:
        return logger
    return setup_logging(verbose=verbose)


def utc_now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def iso_to_ms(iso_str: str) -> int:
    dt = dateparser.isoparse(iso_str)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(round(dt.timestamp() * 1000))


def ms_to_iso(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat()


def interval_to_ms(interval: str) -> int:
    """Bar spacing in ms for a Binance interval string such as '1s' or '1m'."""
    return int(ccxt.Exchange.parse_timeframe(interval) * 1000)


def last_closed_bar_ms(granularity_ms: int) -> int:
    return (utc_now_ms() // granularity_ms) * granularity_ms - granularity_ms


def next_utc_midnight_ms(ms: int) -> int:
    """UTC midnight strictly after the start of the day containing ms."""
    return (ms // DAY_MS + 1) * DAY_MS


def day_key(ms: int) -> Tuple[int, int, int]:
    dt = datetime.fromtimestamp(ms // 1000, tz=timezone.utc)
    return dt.year, dt.month, dt.day


def utc_day_start_ms(year: int, month: int, day: int) -> int:
    return int(datetime(year, month, day, tzinfo=timezone.utc).timestamp() * 1000)


def day_file_name(symbol: str, interval: str, year: int, month: int, day: int) -> str:
    return f"{symbol}-{interval}-{year}-{month:02d}-{day:02d}.csv"


# --------------------------
# Page decoding and checks
# --------------------------

def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError(f"boolean is not a timestamp: {value}")
    if isinstance(value, int):
        return value
    try:
        return int(value)
    except (TypeError, ValueError):
        f = float(value)
        if not f.is_integer():
            raise ValueError(f"not an integral value: {value}")
        return int(f)


def decode_kline_rows(payload: Any) -> List[KlineRow]:
    """Decode a raw klines JSON array into KlineRow values.

    Price and volume fields keep their exact text; open_time, close_time and
    trades must be integral. Anything else raises DecodeError.
    """
    if not isinstance(payload, (list, tuple)):
        raise DecodeError(f"Expected a JSON array of klines, got {type(payload).__name__}")
    rows: List[KlineRow] = []
    for i, r in enumerate(payload):
        if not isinstance(r, (list, tuple)) or len(r) != len(KLINE_COLUMNS):
            raise DecodeError(f"Kline #{i} is not a {len(KLINE_COLUMNS)}-field array: {r!r}")
        try:
            open_time = _as_int(r[0])
            close_time = _as_int(r[6])
            trades = _as_int(r[8])
        except (TypeError, ValueError) as e:
            raise DecodeError(f"Kline #{i} has non-integral time or trade fields: {r!r}") from e
        if close_time < open_time:
            raise DecodeError(f"Kline #{i} closes before it opens: open_time={open_time} close_time={close_time}")
        rows.append(KlineRow(
            open_time, str(r[1]), str(r[2]), str(r[3]), str(r[4]), str(r[5]),
            close_time, str(r[7]), trades, str(r[9]), str(r[10]), str(r[11]),
        ))
    return rows


def check_page(rows: Sequence[KlineRow], start_ms: int, end_ms: int, logger: logging.Logger) -> None:
    """Reject a page that is not strictly ascending or leaves [start_ms, end_ms]."""
    prev: Optional[int] = None
    for r in rows:
        if r.open_time < start_ms or r.open_time > end_ms:
            msg = f"Kline open_time {r.open_time} outside requested window [{start_ms}, {end_ms}]"
            logger.error(msg)
            raise ContractViolation(msg)
        if prev is not None and r.open_time <= prev:
            msg = f"Page not strictly ascending: {r.open_time} after {prev}"
            logger.error(msg)
            raise ContractViolation(msg)
        prev = r.open_time


# --------------------------
# Exchange Client (Page Source)
# --------------------------

def create_exchange(logger: logging.Logger, base_url: Optional[str] = None):
    base = (base_url or BASE_URL).rstrip("/")
    ex = ccxt.binance({"timeout": HTTP_TIMEOUT_MS})
    # Raw endpoint base; publicGetKlines resolves to {base}/api/v3/klines
    ex.urls["api"]["public"] = f"{base}/api/v3"
    logger.info(f"Using kline endpoint {base}/api/v3/klines")
    return ex


class KlinePageSource:
    """Fetches one window of klines from Binance spot through ccxt's raw endpoint."""

    def __init__(self, exchange, symbol: str, interval: str, limit: int, logger: logging.Logger):
        self.exchange = exchange
        self.symbol = symbol
        self.interval = interval
        self.limit = limit
        self.logger = logger

    def fetch(self, start_ms: int, end_ms: int) -> List[KlineRow]:
        params = {
            "symbol": self.symbol,
            "interval": self.interval,
            "startTime": start_ms,
            "endTime": end_ms,
            "limit": self.limit,
        }
        try:
            payload = self.exchange.publicGetKlines(params)
        except ccxt.BadResponse as e:
            raise DecodeError(f"Unparseable klines response for {params}: {e}") from e
        except ccxt.BaseError as e:
            raise TransportError(f"klines request failed for {params}: {e}") from e
        rows = decode_kline_rows(payload)
        self.logger.info(
            f"klines {self.symbol} {self.interval} [{ms_to_iso(start_ms)}, {ms_to_iso(end_ms)}] -> {len(rows)} rows"
        )
        return rows


# --------------------------
# Day files (Day Segment Writer)
# --------------------------

def _atomic_write_csv(df: 'pd.DataFrame', path: str):
    """Write a headerless CSV atomically: write to .tmp then replace."""
    tmp_path = path + ".tmp"
    if os.path.exists(tmp_path):
        os.remove(tmp_path)
    df.to_csv(tmp_path, header=False, index=False)
    os.replace(tmp_path, path)


class DaySegmentWriter:
    """Writes one day's klines to {SYMBOL}-{interval}-{YYYY}-{MM}-{DD}.csv, replacing any previous file."""

    def __init__(self, output_dir: str, symbol: str, interval: str, logger: logging.Logger):
        self.output_dir = output_dir
        self.symbol = symbol
        self.interval = interval
        self.logger = logger

    def path_for(self, year: int, month: int, day: int) -> str:
        return os.path.join(self.output_dir, day_file_name(self.symbol, self.interval, year, month, day))

    def write(self, records: Sequence[KlineRow], year: int, month: int, day: int) -> Optional[str]:
        if not records:
            self.logger.info(f"No klines for {year}-{month:02d}-{day:02d}; nothing written")
            return None
        os.makedirs(self.output_dir, exist_ok=True)
        path = self.path_for(year, month, day)
        df = pd.DataFrame(list(records), columns=KLINE_COLUMNS)
        _atomic_write_csv(df, path)
        self.logger.info(f"Saved day {year}-{month:02d}-{day:02d} -> {path} (rows={len(df)})")
        return path


# --------------------------
# Window Paginator
# --------------------------

class PaginatorState(Enum):
    ACCUMULATING = "accumulating"
    FLUSHING = "flushing"
    DONE = "done"


class PageOutcome(Enum):
    EMPTY_INSIDE_DAY = "empty_inside_day"
    EMPTY_DAY_END = "empty_day_end"
    CROSSES_DAY = "crosses_day"
    INSIDE_DAY = "inside_day"


class CursorRule(Enum):
    AFTER_WINDOW = "after_window"    # window_end + 1
    DAY_BOUNDARY = "day_boundary"    # next UTC midnight
    AFTER_ACCEPTED = "after_accepted"  # last accepted open_time + granularity


class Transition(NamedTuple):
    state: PaginatorState
    cursor: CursorRule


TRANSITIONS: Dict[PageOutcome, Transition] = {
    PageOutcome.EMPTY_INSIDE_DAY: Transition(PaginatorState.ACCUMULATING, CursorRule.AFTER_WINDOW),
    PageOutcome.EMPTY_DAY_END: Transition(PaginatorState.FLUSHING, CursorRule.DAY_BOUNDARY),
    PageOutcome.CROSSES_DAY: Transition(PaginatorState.FLUSHING, CursorRule.AFTER_ACCEPTED),
    PageOutcome.INSIDE_DAY: Transition(PaginatorState.ACCUMULATING, CursorRule.AFTER_ACCEPTED),
}


def classify_page(page: Sequence[KlineRow], window_end_ms: int, boundary_ms: int) -> PageOutcome:
    """Classify an unfiltered page against the day boundary of its window start."""
    if not page:
        if window_end_ms + 1 >= boundary_ms:
            return PageOutcome.EMPTY_DAY_END
        return PageOutcome.EMPTY_INSIDE_DAY
    if page[-1].close_time + 1 >= boundary_ms:
        return PageOutcome.CROSSES_DAY
    return PageOutcome.INSIDE_DAY


class WindowPaginator:
    """Walks [start_ms, end_ms] in bounded windows and flushes one batch per UTC day.

    The cursor and the day buffer are plain fields updated in place by
    advance(). Source and writer errors propagate unchanged and leave the
    buffer as it was.
    """

    def __init__(self, source, writer, start_ms: int, end_ms: int, granularity_ms: int,
                 page_span_ms: int, logger: logging.Logger, page_limit: int = KLINE_LIMIT,
                 pace_sec: float = PACE_SEC):
        if start_ms > end_ms:
            raise ValueError(f"start {ms_to_iso(start_ms)} is after end {ms_to_iso(end_ms)}")
        if granularity_ms <= 0 or page_span_ms <= 0:
            raise ValueError("granularity_ms and page_span_ms must be positive")
        bars_per_page = -(-page_span_ms // granularity_ms)
        if bars_per_page > page_limit:
            raise ValueError(
                f"page span {page_span_ms}ms holds up to {bars_per_page} bars, above the page limit {page_limit}"
            )
        self.source = source
        self.writer = writer
        self.start_ms = start_ms
        self.end_ms = end_ms
        self.granularity_ms = granularity_ms
        self.page_span_ms = page_span_ms
        self.logger = logger
        self.pace_sec = pace_sec

        self.cursor = start_ms
        self.buffer: List[KlineRow] = []
        self.day = day_key(start_ms)
        self.state = PaginatorState.ACCUMULATING

        self.windows_fetched = 0
        self.days_flushed = 0
        self.rows_written = 0

    def window(self) -> Tuple[int, int]:
        return self.cursor, min(self.cursor + self.page_span_ms - 1, self.end_ms)

    def _flush(self, batch: List[KlineRow], day: Tuple[int, int, int]):
        year, month, day_of_month = day
        path = self.writer.write(batch, year, month, day_of_month)
        if path:
            self.days_flushed += 1
            self.rows_written += len(batch)

    def _next_cursor(self, rule: CursorRule, window_end: int, boundary: int, accepted: List[KlineRow]) -> int:
        if rule is CursorRule.AFTER_WINDOW:
            return window_end + 1
        if rule is CursorRule.DAY_BOUNDARY:
            return boundary
        if accepted:
            return accepted[-1].open_time + self.granularity_ms
        # Page held only next-day bars; they are re-fetched from the boundary
        return boundary

    def advance(self) -> bool:
        """Run one fetch-filter-flush iteration. Returns False once the range is done.

        Cursor, buffer and state are only replaced after every write of the
        iteration succeeded, so a failed call can simply be retried.
        """
        if self.state is PaginatorState.DONE:
            return False
        start, end = self.window()
        page = self.source.fetch(start, end)
        check_page(page, start, end, self.logger)

        boundary = next_utc_midnight_ms(start)
        day = day_key(start)
        accepted = [r for r in page if r.open_time < boundary]
        batch = self.buffer + accepted

        outcome = classify_page(page, end, boundary)
        transition = TRANSITIONS[outcome]
        self.logger.info(
            f"window [{ms_to_iso(start)}, {ms_to_iso(end)}] rows={len(page)} accepted={len(accepted)} "
            f"buffer={len(batch)} outcome={outcome.value}"
        )
        if outcome is PageOutcome.EMPTY_INSIDE_DAY and end < self.end_ms:
            # Skipped windows are never re-requested
            self.logger.warning(f"No klines in [{ms_to_iso(start)}, {ms_to_iso(end)}]; skipping ahead")

        next_cursor = self._next_cursor(transition.cursor, end, boundary, accepted)
        if transition.state is PaginatorState.FLUSHING:
            self._flush(batch, day)
            batch = []
        done = next_cursor > self.end_ms
        if done and batch:
            self._flush(batch, day)
            batch = []

        self.windows_fetched += 1
        self.day = day
        self.buffer = batch
        self.cursor = next_cursor
        if done:
            self.state = PaginatorState.DONE
            return False
        self.state = PaginatorState.ACCUMULATING
        if self.pace_sec > 0:
            time.sleep(self.pace_sec)
        return True

    def run(self) -> Dict[str, int]:
        while self.advance():
            pass
        summary = {
            "windows": self.windows_fetched,
            "days": self.days_flushed,
            "rows": self.rows_written,
        }
        self.logger.info(
            f"Range complete: windows={summary['windows']} days={summary['days']} rows={summary['rows']}"
        )
        return summary


# --------------------------
# Day file inspection
# --------------------------

def list_day_files(output_dir: str, symbol: str, interval: str) -> List[Tuple[Tuple[int, int, int], str]]:
    """Return ((year, month, day), path) for every day file of symbol/interval, oldest first."""
    if not os.path.isdir(output_dir):
        return []
    pattern = re.compile(rf"^{re.escape(symbol)}-{re.escape(interval)}-(\d{{4}})-(\d{{2}})-(\d{{2}})\.csv$")
    found = []
    for name in os.listdir(output_dir):
        m = pattern.match(name)
        if m:
            key = (int(m.group(1)), int(m.group(2)), int(m.group(3)))
            found.append((key, os.path.join(output_dir, name)))
    found.sort()
    return found


def read_day_file(path: str) -> 'pd.DataFrame':
    """Read a day CSV back with text fields untouched and integer time/trade columns."""
    df = pd.read_csv(path, header=None, dtype=str, keep_default_na=False)
    if df.shape[1] != len(KLINE_COLUMNS):
        raise ValueError(f"{path}: expected {len(KLINE_COLUMNS)} columns, found {df.shape[1]}")
    df.columns = KLINE_COLUMNS
    for c in ("open_time", "close_time", "trades"):
        df[c] = pd.to_numeric(df[c], errors="raise").astype("int64")
    return df


def resume_start_ms(output_dir: str, symbol: str, interval: str, default_start_ms: int) -> int:
    """Start of the last flushed day, so a re-run rewrites that day completely."""
    files = list_day_files(output_dir, symbol, interval)
    if not files:
        return default_start_ms
    year, month, day = files[-1][0]
    return max(default_start_ms, utc_day_start_ms(year, month, day))


def verify_day_files(logger: logging.Logger, output_dir: str, symbol: str, interval: str,
                     start_ms: Optional[int] = None, end_ms: Optional[int] = None) -> bool:
    """Verify that the day files hold every bar without gaps.

    Checks ordering, uniqueness, day membership and bar spacing inside each
    file, and continuity across files of consecutive days. Optionally
    restricted to days overlapping [start_ms, end_ms].
    """
    granularity = interval_to_ms(interval)
    files = list_day_files(output_dir, symbol, interval)
    if not files:
        logger.info("No day files present; nothing to verify.")
        return True

    ok = True
    prev_last: Optional[int] = None
    prev_day_end: Optional[int] = None
    for (year, month, day), path in files:
        day_start = utc_day_start_ms(year, month, day)
        day_end = day_start + DAY_MS
        if start_ms is not None and day_end <= start_ms:
            continue
        if end_ms is not None and day_start > end_ms:
            continue
        try:
            df = read_day_file(path)
        except (OSError, ValueError, pd.errors.ParserError, pd.errors.EmptyDataError) as e:
            logger.error(f"Failed to read day file {path}: {e}")
            ok = False
            prev_last = None
            continue
        ot = df["open_time"]
        if not ot.is_monotonic_increasing or not ot.is_unique:
            logger.error(f"{path}: open_time is not strictly ascending")
            ok = False
        outside = (ot < day_start) | (ot >= day_end)
        if outside.any():
            logger.error(f"{path}: {int(outside.sum())} row(s) outside {year}-{month:02d}-{day:02d} UTC")
            ok = False
        if len(ot) > 1:
            diffs = ot.diff().iloc[1:]
            bad = diffs[diffs != granularity]
            if len(bad):
                at = int(ot.loc[bad.index[0]])
                logger.error(f"{path}: gap or overlap before {ms_to_iso(at)}")
                ok = False
        if prev_last is not None and prev_day_end == day_start:
            expected = prev_last + granularity
            if int(ot.iloc[0]) != expected:
                logger.error(f"{path}: expected first bar {ms_to_iso(expected)}, got {ms_to_iso(int(ot.iloc[0]))}")
                ok = False
        prev_last = int(ot.iloc[-1])
        prev_day_end = day_end

    if ok:
        logger.info("Continuity verified: no gaps found in day files.")
    return ok


def status(logger: logging.Logger, output_dir: str, symbol: str, interval: str) -> List[Dict[str, Any]]:
    days: List[Dict[str, Any]] = []
    for (year, month, day), path in list_day_files(output_dir, symbol, interval):
        df = read_day_file(path)
        info = {
            "date": f"{year}-{month:02d}-{day:02d}",
            "file": os.path.basename(path),
            "rows": len(df),
            "first_open_time": int(df["open_time"].iloc[0]) if len(df) else None,
            "last_open_time": int(df["open_time"].iloc[-1]) if len(df) else None,
        }
        logger.info(f"{info['date']}: rows={info['rows']} file={info['file']}")
        days.append(info)
    if not days:
        logger.info(f"No day files for {symbol} {interval} in {output_dir}")
    return days


# --------------------------
# Core Loader
# --------------------------

def backfill(logger: logging.Logger,
             start_ms: Optional[int] = None,
             end_ms: Optional[int] = None,
             symbol: Optional[str] = None,
             interval: Optional[str] = None,
             page_span_ms: Optional[int] = None,
             output_dir: Optional[str] = None,
             base_url: Optional[str] = None,
             resume: bool = False) -> Dict[str, int]:
    """Fetch [start_ms, end_ms] for one symbol/interval and write one CSV per UTC day."""
    symbol = symbol or SYMBOL
    interval = interval or INTERVAL
    output_dir = output_dir or OUTPUT_DIR
    granularity = interval_to_ms(interval)

    request_start_ms = iso_to_ms(START_ISO_UTC) if start_ms is None else start_ms
    if end_ms is not None:
        request_end_ms = end_ms
    elif END_ISO_UTC:
        request_end_ms = iso_to_ms(END_ISO_UTC)
    else:
        request_end_ms = last_closed_bar_ms(granularity)
    if resume:
        resumed = resume_start_ms(output_dir, symbol, interval, request_start_ms)
        if resumed != request_start_ms:
            logger.info(f"Resuming from last flushed day {ms_to_iso(resumed)}")
        request_start_ms = resumed

    ex = create_exchange(logger, base_url)
    source = KlinePageSource(ex, symbol, interval, KLINE_LIMIT, logger)
    writer = DaySegmentWriter(output_dir, symbol, interval, logger)
    paginator = WindowPaginator(
        source, writer, request_start_ms, request_end_ms, granularity,
        page_span_ms or PAGE_SPAN_MS, logger, page_limit=KLINE_LIMIT, pace_sec=PACE_SEC,
    )
    logger.info(
        f"Starting backfill {symbol} {interval} from {ms_to_iso(request_start_ms)} to {ms_to_iso(request_end_ms)} "
        f"into {output_dir}"
    )
    return paginator.run()


# --------------------------
# CLI
# --------------------------

def _parse_args(argv: List[str]):
    import argparse
    p = argparse.ArgumentParser(description="Binance kline loader writing one CSV file per UTC day")
    p.add_argument("--symbol", default=SYMBOL, help="Binance symbol id, e.g. ETHUSDC")
    p.add_argument("--interval", default=INTERVAL, help="Kline interval, e.g. 1s or 1m")
    p.add_argument("--out", default=None, help="Output directory for day files (default KLINES_DIR or <interval>_klines)")
    p.add_argument("--base-url", default=BASE_URL, help="REST base URL")
    p.add_argument("--quiet", action="store_true", help="Reduce console logging")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_backfill = sub.add_parser("backfill", help="Download a range and write day files")
    p_backfill.add_argument("--start", default=START_ISO_UTC, help="Start ISO time (UTC), inclusive")
    p_backfill.add_argument("--end", default=END_ISO_UTC, help="End ISO time (UTC), inclusive. Empty means last closed bar")
    p_backfill.add_argument("--page-span-ms", type=int, default=PAGE_SPAN_MS)
    p_backfill.add_argument("--resume", action="store_true", help="Restart from the last written day")

    p_verify = sub.add_parser("verify", help="Check day files for gaps and misplaced rows")
    p_verify.add_argument("--start", default=None, help="Optional start ISO (UTC) for verification window")
    p_verify.add_argument("--end", default=None, help="Optional end ISO (UTC) for verification window")

    sub.add_parser("status", help="List day files with row counts")
    return p.parse_args(argv)


def main(argv: Optional[List[str]] = None):
    global OUTPUT_DIR
    args = _parse_args(argv if argv is not None else sys.argv[1:])
    if args.out:
        OUTPUT_DIR = args.out
    elif "KLINES_DIR" not in os.environ:
        OUTPUT_DIR = f"{args.interval}_klines"

    logger = setup_logging(verbose=not args.quiet)

    try:
        if args.cmd == "backfill":
            start_ms = iso_to_ms(args.start)
            end_ms = iso_to_ms(args.end) if args.end else last_closed_bar_ms(interval_to_ms(args.interval))
            backfill(
                logger, start_ms=start_ms, end_ms=end_ms, symbol=args.symbol, interval=args.interval,
                page_span_ms=args.page_span_ms, output_dir=OUTPUT_DIR, base_url=args.base_url,
                resume=args.resume,
            )
        elif args.cmd == "verify":
            start_ms = iso_to_ms(args.start) if args.start else None
            end_ms = iso_to_ms(args.end) if args.end else None
            ok = verify_day_files(logger, OUTPUT_DIR, args.symbol, args.interval, start_ms, end_ms)
            sys.exit(0 if ok else 2)
        elif args.cmd == "status":
            status(logger, OUTPUT_DIR, args.symbol, args.interval)
    except (LoaderError, OSError, ValueError) as e:
        logger.error(f"Run aborted: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Interrupted by user. Exiting.")
        sys.exit(0)


if __name__ == "__main__":
    main()
