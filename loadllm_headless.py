from __future__ import annotations

import argparse
import asyncio
import datetime as dt
import signal
import sys
import time
from typing import Any, Dict, Optional

import httpx
from dotenv import load_dotenv

from loadllm_lib import (
    AggregateStats,
    LoadConfig,
    Transport,
    WorkerPool,
    WorkerStats,
    add_load_arguments,
    fmt_optional,
    load_config_from_args,
    openai_transport,
)

load_dotenv()

_STOP_REQUESTED = False


def _now_utc_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _request_stop(signum: int, _frame: Any) -> None:
    global _STOP_REQUESTED
    _STOP_REQUESTED = True
    print(f"[{_now_utc_iso()}] Received signal {signum}; workers will stop after their current request.", flush=True)


def _register_signals() -> None:
    for sig in (signal.SIGINT, signal.SIGTERM, signal.SIGHUP):
        try:
            signal.signal(sig, _request_stop)
        except (AttributeError, ValueError, OSError):
            pass


def _format_aggregate(agg: AggregateStats, pool: WorkerPool) -> str:
    return (
        f"workers={len(pool.slots)} target={pool.target} done={agg.completed} "
        f"rpm={agg.requests_per_minute:.2f} agg_speed={agg.aggregate_speed:.0f}B/s "
        f"prefill_tps={fmt_optional(agg.avg_prefill_tps)} decode_tps={fmt_optional(agg.avg_decode_tps)} "
        f"ttft={fmt_optional(agg.avg_ttft_ms, '.0f', 'ms')} ttfr={fmt_optional(agg.avg_ttfr_ms, '.0f', 'ms')} "
        f"prompt_tps={agg.overall_prompt_tps:.2f} completion_tps={agg.overall_completion_tps:.2f}"
    )


async def run_headless(
    cfg: LoadConfig,
    *,
    transport: Optional[Transport] = None,
    report_every_s: float = 5.0,
) -> int:
    started_at = time.time()
    print(
        f"[{_now_utc_iso()}] Load run started. base_url={cfg.base_url} model={cfg.model} "
        f"concurrent={cfg.concurrency} duration={cfg.duration_s or 'single run'}",
        flush=True,
    )

    async def on_stats_update(slot_id: int, update: Dict[str, Any], stats: WorkerStats) -> None:
        if update.get("error"):
            print(f"[{_now_utc_iso()}] worker {slot_id + 1} error: {update['error']}", flush=True)
        elif update.get("is_done"):
            print(
                f"[{_now_utc_iso()}] worker {slot_id + 1} ok "
                f"prompt={stats.prompt_tokens} completion={stats.completion_tokens} "
                f"ttft={fmt_optional(stats.ttft_ms, '.0f', 'ms')} "
                f"prefill_tps={fmt_optional(stats.prefill_tps)} decode_tps={fmt_optional(stats.decode_tps)}",
                flush=True,
            )

    async def on_worker_retired(slot_id: int) -> None:
        print(f"[{_now_utc_iso()}] worker {slot_id + 1} retired", flush=True)

    async with httpx.AsyncClient() as client:
        if transport is None:
            transport = openai_transport(client, cfg.base_url, cfg.api_key, cfg.timeout_s)
        pool = WorkerPool(
            cfg,
            transport,
            on_stats_update=on_stats_update,
            on_worker_retired=on_worker_retired,
        )
        pool.start()
        try:
            while not pool.finished:
                try:
                    await asyncio.wait_for(pool.wait(), timeout=report_every_s)
                except asyncio.TimeoutError:
                    pass
                if _STOP_REQUESTED and pool.target > 0:
                    pool.set_target_concurrency(0)
                print(f"[{_now_utc_iso()}] {_format_aggregate(pool.aggregate(), pool)}", flush=True)
        finally:
            await pool.close()

    elapsed = time.time() - started_at
    print(
        f"[{_now_utc_iso()}] Load run complete. requests_done={pool.aggregator.totals.completed} "
        f"elapsed={elapsed:.1f}s",
        flush=True,
    )
    return 130 if _STOP_REQUESTED else 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Headless/background load generator")
    add_load_arguments(parser)
    parser.add_argument("--report-every", type=float, default=5.0, help="Seconds between aggregate status lines")
    args = parser.parse_args()

    try:
        cfg = load_config_from_args(args)
    except ValueError as exc:
        print(f"Bad arguments: {exc}", file=sys.stderr)
        return 2

    _register_signals()

    try:
        return asyncio.run(run_headless(cfg, report_every_s=max(0.1, args.report_every)))
    except Exception as exc:
        print(f"Fatal: {type(exc).__name__}: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
