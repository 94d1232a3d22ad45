from __future__ import annotations

import argparse
import sys
from typing import Any, Dict, Optional

import httpx
from dotenv import load_dotenv
from rich.text import Text
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Vertical
from textual.widgets import DataTable, Footer, Header, Label, RichLog, Static

from loadllm_lib import (
    RUNNING,
    LoadConfig,
    Transport,
    Worker,
    WorkerPool,
    WorkerStats,
    add_load_arguments,
    fmt_optional,
    load_config_from_args,
    openai_transport,
)

load_dotenv()

JOB_LABELS = {
    "pending": "Prefill",
    "loading": "Decoding",
    "success": "Success",
    "error": "Error",
}
JOB_STYLES = {
    "pending": "dim",
    "loading": "yellow",
    "success": "green",
    "error": "bold red",
}
COLUMNS = [
    ("Worker", "worker"),
    ("Jobs", "jobs"),
    ("Speed", "speed"),
    ("TTFR", "ttfr"),
    ("TTFT", "ttft"),
    ("Prefill tok/s", "prefill"),
    ("Decode tok/s", "decode"),
    ("Output", "output"),
]
COLUMN_KEYS = [key for _, key in COLUMNS]


class LoadLLMTUI(App):
    CSS = """
    Screen { layout: vertical; }
    #summary { height: auto; border: solid green; padding: 0 1; }
    #hint { text-style: dim; }
    #workers { height: 1fr; }
    #log { height: 6; }
    """

    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("up", "more_workers", "+1 worker", priority=True),
        Binding("down", "fewer_workers", "-1 worker", priority=True),
    ]

    def __init__(self, cfg: LoadConfig, transport: Optional[Transport] = None):
        super().__init__()
        self.cfg = cfg
        self.pool: Optional[WorkerPool] = None
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        with Vertical(id="summary"):
            yield Static("", id="run_line")
            yield Static("", id="latency_line")
            yield Static("", id="rate_line")
            yield Label("↑/↓ arrows to change worker count.", id="hint")
        table = DataTable(id="workers")
        for label, key in COLUMNS:
            table.add_column(label, key=key)
        yield table
        yield RichLog(id="log", wrap=True, highlight=False, max_lines=200)
        yield Footer()

    def on_mount(self) -> None:
        transport = self._transport
        if transport is None:
            self._client = httpx.AsyncClient()
            transport = openai_transport(self._client, self.cfg.base_url, self.cfg.api_key, self.cfg.timeout_s)
        self.pool = WorkerPool(
            self.cfg,
            transport,
            on_stats_update=self._on_stats_update,
            on_worker_retired=self._on_worker_retired,
        )
        self.run_worker(self._run_load(), name="load", group="load", exclusive=True)
        self.set_interval(0.25, self._refresh_view)
        self._refresh_view()

    async def _run_load(self) -> None:
        try:
            await self.pool.run()
        finally:
            if self._client is not None:
                await self._client.aclose()
        self.exit()

    def action_more_workers(self) -> None:
        if self.pool is not None:
            self.pool.set_target_concurrency(self.pool.target + 1)
            self._refresh_view()

    def action_fewer_workers(self) -> None:
        if self.pool is not None:
            self.pool.set_target_concurrency(max(0, self.pool.target - 1))
            self._refresh_view()

    async def _on_stats_update(self, slot_id: int, update: Dict[str, Any], stats: WorkerStats) -> None:
        if update.get("error"):
            self.log.warning(f"Worker {slot_id + 1} failed: {update['error']}")
            self._log_message(f"Worker {slot_id + 1}: {update['error']}")

    async def _on_worker_retired(self, slot_id: int) -> None:
        self._log_message(f"Worker {slot_id + 1} retired")

    def _log_message(self, message: str) -> None:
        msg = message.strip().replace("\n", " ")
        if len(msg) > 200:
            msg = msg[:197] + "..."
        self.query_one("#log", RichLog).write(msg)

    def _refresh_view(self) -> None:
        if self.pool is None:
            return
        agg = self.pool.aggregate()
        duration = ""
        if self.cfg.duration_s:
            progress = agg.elapsed_s / self.cfg.duration_s * 100
            duration = f"  Duration: {agg.elapsed_s:.0f}s / {self.cfg.duration_s:g}s ({progress:.2f}%)"
        self.query_one("#run_line", Static).update(
            f"Workers: {len(self.pool.slots)} (target: {self.pool.target})  "
            f"Target: {self.cfg.base_url}  Model: {self.cfg.model}{duration}"
        )
        self.query_one("#latency_line", Static).update(
            f"RPM: {agg.requests_per_minute:.2f}  "
            f"Avg Prefill TPS: {fmt_optional(agg.avg_prefill_tps)}  "
            f"Avg Decode TPS: {fmt_optional(agg.avg_decode_tps)}  "
            f"Avg TTFT: {fmt_optional(agg.avg_ttft_ms, '.0f', 'ms')}  "
            f"Avg TTFR: {fmt_optional(agg.avg_ttfr_ms, '.0f', 'ms')}"
        )
        self.query_one("#rate_line", Static).update(
            f"Agg Speed: {agg.aggregate_speed:.0f} B/s  "
            f"Overall Prompt TPS: {agg.overall_prompt_tps:.2f}  "
            f"Overall Completion TPS: {agg.overall_completion_tps:.2f}"
        )

        table = self.query_one("#workers", DataTable)
        live = {str(slot.id): slot for slot in self.pool.slots if slot.id in self.pool.workers}
        for row_key in [k.value for k in table.rows]:
            if row_key not in live:
                table.remove_row(row_key)
        existing = {k.value for k in table.rows}
        for row_key, slot in live.items():
            cells = self._worker_row(slot.state, self.pool.workers[slot.id])
            if row_key not in existing:
                table.add_row(*cells, key=row_key)
                continue
            for column_key, value in zip(COLUMN_KEYS, cells):
                self._safe_update_cell(table, row_key, column_key, value)

    def _safe_update_cell(self, table: DataTable, row_key: str, column_key: str, value: object) -> None:
        try:
            table.update_cell(row_key, column_key, value)
        except Exception as e:
            self.log.warning(f"Skipping update for row={row_key} col={column_key}: {e}")

    def _worker_row(self, state: str, worker: Worker) -> tuple:
        marker = Text("▶ ", style="green") if state == RUNNING else Text("▼ ", style="red")
        name = marker + Text(f"Worker {worker.id + 1}")

        jobs = Text()
        for job in worker.jobs:
            jobs.append(JOB_LABELS.get(job.state, "Unknown") + " ", style=JOB_STYLES.get(job.state, ""))

        stats = worker.stats
        if worker.error:
            output = Text(worker.error, style="red")
        else:
            attempt = worker.attempt
            tail = (attempt.reasoning + attempt.content) if attempt else ""
            output = Text(tail.replace("\n", " ")[-60:])

        return (
            name,
            jobs,
            fmt_optional(stats.speed, ".0f", " B/s"),
            fmt_optional(stats.ttfr_ms, ".0f", " ms"),
            fmt_optional(stats.ttft_ms, ".0f", " ms"),
            fmt_optional(stats.prefill_tps),
            fmt_optional(stats.decode_tps),
            output,
        )


def main() -> int:
    parser = argparse.ArgumentParser(description="Interactive load generator for streaming chat completions")
    add_load_arguments(parser)
    args = parser.parse_args()
    try:
        cfg = load_config_from_args(args)
    except ValueError as exc:
        print(f"Bad arguments: {exc}", file=sys.stderr)
        return 2
    if cfg.output == "stdout":
        print("--output stdout would draw over the TUI; use loadllm-headless or a file path", file=sys.stderr)
        return 2
    LoadLLMTUI(cfg).run()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
