from __future__ import annotations

import argparse
import asyncio
import datetime as dt
import json
import os
import re
import sys
import time
import uuid
from collections import deque
from contextlib import aclosing
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import IO, Any, AsyncIterator, Awaitable, Callable, Deque, Dict, List, Optional, Tuple

import httpx

DEFAULT_BASE_URL = "http://localhost:8000/v1"
DEFAULT_PROMPT = "Tell me about the history of Tokyo."
DEFAULT_TIMEOUT_S = 900.0

BASE_DELAY_S = 1.0
MAX_DELAY_S = 30.0
RATE_SAMPLES = 10
MAX_JOBS = 4

RUNNING = "running"
STOPPING = "stopping"

_SSE_DATA_RE = re.compile(r"^data:\s*(.*)\s*$")


# ----------------------------
# Data models
# ----------------------------

@dataclass
class LoadConfig:
    base_url: str
    api_key: Optional[str]
    model: str
    prompt: str = DEFAULT_PROMPT
    concurrency: int = 1
    # None runs every worker exactly once
    duration_s: Optional[float] = None
    # file path, "stdout", or None for no event log
    output: Optional[str] = None
    timeout_s: float = DEFAULT_TIMEOUT_S


@dataclass(frozen=True)
class WorkerSlot:
    id: int
    state: str = RUNNING  # "running" | "stopping"


@dataclass
class Usage:
    prompt_tokens: int
    completion_tokens: int
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ChatEvent:
    type: str  # "ttft" | "ttfr" | "content" | "reasoning" | "usage" | "done"
    value: Any = None
    byte_length: int = 0


@dataclass
class AttemptState:
    request_id: str
    started_at: float
    ttft_ms: Optional[float] = None
    ttfr_ms: Optional[float] = None
    content: str = ""
    reasoning: str = ""


@dataclass
class Job:
    id: int
    state: str = "pending"  # "pending" | "loading" | "success" | "error"


@dataclass
class WorkerStats:
    # bytes/s; None means idle or unknown, not zero
    speed: Optional[float] = None
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    prefill_tps: Optional[float] = None
    decode_tps: Optional[float] = None
    ttft_ms: Optional[float] = None
    ttfr_ms: Optional[float] = None
    is_done: bool = False
    error: str = ""


@dataclass
class RunTotals:
    completed: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0


@dataclass
class AggregateStats:
    workers: int
    elapsed_s: float
    completed: int

    aggregate_speed: float
    avg_prefill_tps: Optional[float]
    avg_decode_tps: Optional[float]
    avg_ttft_ms: Optional[float]
    avg_ttfr_ms: Optional[float]

    requests_per_minute: float
    overall_prompt_tps: float
    overall_completion_tps: float


# ----------------------------
# Callbacks
# ----------------------------

Transport = Callable[[str, str], AsyncIterator[Dict[str, Any]]]
OnStatsUpdate = Callable[[int, Dict[str, Any], WorkerStats], Awaitable[None]]
OnSlotEvent = Callable[[int], Awaitable[None]]
OnRunDone = Callable[[], Awaitable[None]]


# ----------------------------
# Utilities
# ----------------------------

def _now_utc_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _now_iso_ms() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _truncate(s: str, n: int = 700) -> str:
    return s if len(s) <= n else s[:n] + "…"


def _join_url(base_url: str, path: str) -> str:
    return base_url.rstrip("/") + path


def _byte_len(text: str) -> int:
    return len(text.encode("utf-8"))


def _parse_usage(u: Dict[str, Any]) -> Usage:
    return Usage(
        prompt_tokens=int(u.get("prompt_tokens") or 0),
        completion_tokens=int(u.get("completion_tokens") or 0),
        raw=dict(u),
    )


def fmt_optional(value: Optional[float], spec: str = ".2f", suffix: str = "") -> str:
    if value is None:
        return "..."
    return f"{value:{spec}}{suffix}"


def backoff_delay(consecutive_errors: int, base_s: float = BASE_DELAY_S, max_s: float = MAX_DELAY_S) -> float:
    return min(max_s, base_s * 2 ** (consecutive_errors - 1))


def derive_rates(
    usage: Usage,
    ttft_ms: Optional[float],
    ttfr_ms: Optional[float],
    duration_ms: float,
) -> Tuple[Optional[float], Optional[float]]:
    """
    Split an attempt into prefill (start -> first output of either kind) and
    decode (first output -> end). Returns (prefill_tps, decode_tps); a rate is
    None whenever its denominator is unknown or not positive.
    """
    if ttft_ms is not None and ttfr_ms is not None:
        first_output: Optional[float] = min(ttft_ms, ttfr_ms)
    else:
        first_output = ttft_ms if ttft_ms is not None else ttfr_ms

    prefill_tps: Optional[float] = None
    if first_output is not None and first_output > 0:
        prefill_tps = usage.prompt_tokens / first_output * 1000.0

    decode_tps: Optional[float] = None
    decode_ms = duration_ms - (first_output or 0.0)
    if first_output is not None and decode_ms > 0:
        decode_tps = usage.completion_tokens / decode_ms * 1000.0

    return prefill_tps, decode_tps


# ----------------------------
# Configuration
# ----------------------------

def add_load_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--model", "-m", required=True, help="Model to use")
    parser.add_argument("--concurrent", "-c", type=int, default=1, help="Number of concurrent requests to make")
    parser.add_argument("--output", "-o", help="Append a JSON-lines event log to this file ('stdout' for console)")
    parser.add_argument("--prompt", "-p", default=DEFAULT_PROMPT, help="Prompt to send to the model")
    parser.add_argument("--duration", "-d", type=float, help="Duration to run the test for (in seconds)")


def load_config_from_args(args: argparse.Namespace) -> LoadConfig:
    """
    Build a LoadConfig from parsed CLI args plus the environment
    (OPENAI_API_BASE, OPENAI_API_KEY, LOADLLM_TIMEOUT_S).
    """
    if args.concurrent < 0:
        raise ValueError(f"--concurrent must be >= 0, got {args.concurrent}")
    if args.duration is not None and args.duration <= 0:
        raise ValueError(f"--duration must be > 0, got {args.duration}")
    try:
        timeout_s = float(os.getenv("LOADLLM_TIMEOUT_S", str(DEFAULT_TIMEOUT_S)))
    except ValueError as e:
        raise ValueError(f"Bad LOADLLM_TIMEOUT_S env: {e}") from e
    return LoadConfig(
        base_url=os.getenv("OPENAI_API_BASE", DEFAULT_BASE_URL),
        api_key=os.getenv("OPENAI_API_KEY") or None,
        model=args.model,
        prompt=args.prompt,
        concurrency=args.concurrent,
        duration_s=args.duration,
        output=args.output,
        timeout_s=timeout_s,
    )


# ----------------------------
# HTTP transport
# ----------------------------

def openai_transport(
    client: httpx.AsyncClient,
    base_url: str,
    api_key: Optional[str],
    timeout_s: float = DEFAULT_TIMEOUT_S,
) -> Transport:
    url = _join_url(base_url, "/chat/completions")
    headers = {"Content-Type": "application/json"}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"

    async def transport(model: str, prompt: str) -> AsyncIterator[Dict[str, Any]]:
        payload: Dict[str, Any] = {
            "model": model,
            "messages": [{"role": "user", "content": prompt}],
            "stream": True,
            "stream_options": {"include_usage": True},
            "reasoning": {"enabled": True},
        }
        try:
            async with client.stream("POST", url, headers=headers, json=payload, timeout=timeout_s) as r:
                r.raise_for_status()
                async for line in r.aiter_lines():
                    if not line:
                        continue
                    m = _SSE_DATA_RE.match(line)
                    if not m:
                        continue
                    raw = m.group(1)
                    if raw == "[DONE]":
                        break
                    try:
                        chunk = json.loads(raw)
                    except ValueError:
                        continue
                    if isinstance(chunk, dict):
                        yield chunk
        except httpx.HTTPError as e:
            raise RuntimeError(f"{type(e).__name__}: {_truncate(str(e), 1200)}") from e

    return transport


# ----------------------------
# Event log
# ----------------------------

class EventLog:
    """
    JSON-lines request log. "stdout" passes through to the console and is only
    flushed on close; any other destination is a file opened for append.
    """

    def __init__(self, destination: str):
        self.destination = destination
        self._owned = destination != "stdout"
        if self._owned:
            path = Path(destination)
            path.parent.mkdir(parents=True, exist_ok=True)
            self._fh: IO[str] = path.open("a", encoding="utf-8")
        else:
            self._fh = sys.stdout

    def write(self, request_id: str, type_: str, **payload: Any) -> None:
        entry = {"timestamp": _now_iso_ms(), "requestId": request_id, "type": type_, **payload}
        self._fh.write(json.dumps(entry, ensure_ascii=False) + "\n")

    def close(self) -> None:
        try:
            if self._owned:
                self._fh.close()
            else:
                self._fh.flush()
        except OSError as e:
            print(f"[{_now_utc_iso()}] Failed to close event log {self.destination}: {e}", file=sys.stderr, flush=True)


# ----------------------------
# Stream interpreter
# ----------------------------

async def stream_chat_completion(
    transport: Transport,
    model: str,
    prompt: str,
    output: Optional[str] = None,
    *,
    request_id: Optional[str] = None,
    clock: Callable[[], float] = time.perf_counter,
) -> AsyncIterator[ChatEvent]:
    """
    One request attempt as typed events:
      ttft / ttfr (ms since start, once each, before the first matching delta),
      content / reasoning deltas with their UTF-8 byte length,
      usage (at most once), then exactly one done.
    Transport errors propagate unchanged; the event log is closed on every exit.
    """
    request_id = request_id or str(uuid.uuid4())
    log = EventLog(output) if output else None
    t0 = clock()

    try:
        if log:
            log.write(request_id, "start", prompt=prompt)

        got_content = False
        got_reasoning = False
        saw_usage = False

        async with aclosing(transport(model, prompt)) as chunks:
            async for chunk in chunks:
                choices = chunk.get("choices") or []
                if choices:
                    delta = (choices[0] or {}).get("delta") or {}

                    content = delta.get("content")
                    if content:
                        if not got_content:
                            got_content = True
                            yield ChatEvent("ttft", (clock() - t0) * 1000.0)
                        if log:
                            log.write(request_id, "content", content=content)
                        yield ChatEvent("content", content, _byte_len(content))

                    reasoning = delta.get("reasoning") or delta.get("reasoning_content")
                    if reasoning:
                        if not got_reasoning:
                            got_reasoning = True
                            yield ChatEvent("ttfr", (clock() - t0) * 1000.0)
                        if log:
                            log.write(request_id, "reasoning", reasoning=reasoning)
                        yield ChatEvent("reasoning", reasoning, _byte_len(reasoning))

                usage = chunk.get("usage")
                if usage and not saw_usage:
                    saw_usage = True
                    if log:
                        log.write(request_id, "usage", usage=usage)
                    yield ChatEvent("usage", _parse_usage(usage))

        if log:
            log.write(request_id, "done")
    finally:
        if log:
            log.close()

    yield ChatEvent("done")


# ----------------------------
# Byte-rate sampler
# ----------------------------

class ByteRateSampler:
    """
    Moving average over the last `samples` ticks, one tick every 1/samples s,
    scaled back to bytes per second.
    """

    def __init__(self, samples: int = RATE_SAMPLES):
        self.samples = samples
        self.period_s = 1.0 / samples
        self.total_bytes = 0
        self.rate: Optional[float] = None
        self._last_bytes = 0
        self._window: Deque[int] = deque([0] * samples, maxlen=samples)

    def add(self, n: int) -> None:
        self.total_bytes += n

    def sample(self) -> Optional[float]:
        delta = self.total_bytes - self._last_bytes
        # nothing received yet: stay unknown rather than report 0
        if delta == 0 and self.rate is None:
            return None
        self._window.append(delta)
        self._last_bytes = self.total_bytes
        self.rate = sum(self._window) / len(self._window) * self.samples
        return self.rate

    async def run(self, publish: Callable[[float], Awaitable[None]]) -> None:
        while True:
            await asyncio.sleep(self.period_s)
            rate = self.sample()
            if rate is not None:
                await publish(rate)


# ----------------------------
# Worker (retrying request loop)
# ----------------------------

class Worker:
    def __init__(
        self,
        slot_id: int,
        transport: Transport,
        cfg: LoadConfig,
        *,
        run_started_at: float,
        get_state: Callable[[int], str],
        on_stats_update: Optional[OnStatsUpdate] = None,
        on_done: Optional[OnSlotEvent] = None,
        on_stopped: Optional[OnSlotEvent] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.perf_counter,
        wall_clock: Callable[[], float] = time.time,
        base_delay_s: float = BASE_DELAY_S,
        max_delay_s: float = MAX_DELAY_S,
    ):
        self.id = slot_id
        self.cfg = cfg
        self.stats = WorkerStats()
        self.attempt: Optional[AttemptState] = None
        self.jobs: Deque[Job] = deque(maxlen=MAX_JOBS)
        self.iteration = 0
        self.consecutive_errors = 0
        self.error = ""

        self._transport = transport
        self._run_started_at = run_started_at
        self._get_state = get_state
        self._on_stats_update = on_stats_update
        self._on_done = on_done
        self._on_stopped = on_stopped
        self._sleep = sleep
        self._clock = clock
        self._wall_clock = wall_clock
        self._base_delay_s = base_delay_s
        self._max_delay_s = max_delay_s

    async def run(self) -> None:
        while True:
            delay = await self.run_attempt()
            if delay is None:
                return
            if delay > 0:
                await self._sleep(delay)
                # lowered while backing off: nothing is in flight, retire now
                if self._get_state(self.id) == STOPPING:
                    if self._on_stopped:
                        await self._on_stopped(self.id)
                    return

    async def run_attempt(self) -> Optional[float]:
        """
        Run one attempt. Returns None when the worker should stop looping,
        otherwise the delay (seconds) before the next attempt.

        Only errors raised while pulling events from the stream count as a
        failed attempt; errors from stats callbacks propagate to the caller.
        """
        job = Job(self.iteration)
        self.jobs.append(job)
        self.iteration += 1
        attempt = AttemptState(request_id=str(uuid.uuid4()), started_at=self._clock())
        self.attempt = attempt
        self.error = ""

        sampler = ByteRateSampler()
        sampler_task = asyncio.create_task(sampler.run(self._publish_speed))
        events = stream_chat_completion(
            self._transport,
            self.cfg.model,
            self.cfg.prompt,
            self.cfg.output,
            request_id=attempt.request_id,
            clock=self._clock,
        )
        try:
            async with aclosing(events):
                while True:
                    try:
                        event = await anext(events)
                    except StopAsyncIteration:
                        break
                    except Exception as e:
                        # stop sampling before the error publish so no stale speed follows it
                        sampler_task.cancel()
                        return await self._on_failure(job, e)
                    await self._handle_event(event, job, attempt, sampler, sampler_task)
        finally:
            sampler_task.cancel()

        return await self._next_step(0.0)

    async def _handle_event(
        self,
        event: ChatEvent,
        job: Job,
        attempt: AttemptState,
        sampler: ByteRateSampler,
        sampler_task: asyncio.Task,
    ) -> None:
        job.state = "loading"
        if event.type == "ttft":
            if attempt.ttft_ms is None:
                attempt.ttft_ms = event.value
        elif event.type == "ttfr":
            if attempt.ttfr_ms is None:
                attempt.ttfr_ms = event.value
        elif event.type == "content":
            attempt.content += event.value
            sampler.add(event.byte_length)
        elif event.type == "reasoning":
            attempt.reasoning += event.value
            sampler.add(event.byte_length)
        elif event.type == "usage":
            duration_ms = (self._clock() - attempt.started_at) * 1000.0
            prefill_tps, decode_tps = derive_rates(event.value, attempt.ttft_ms, attempt.ttfr_ms, duration_ms)
            await self._publish(
                prompt_tokens=event.value.prompt_tokens,
                completion_tokens=event.value.completion_tokens,
                prefill_tps=prefill_tps,
                decode_tps=decode_tps,
                ttft_ms=attempt.ttft_ms,
                ttfr_ms=attempt.ttfr_ms,
            )
        elif event.type == "done":
            sampler_task.cancel()
            job.state = "success"
            self.consecutive_errors = 0
            await self._publish(is_done=True, speed=None, error="")

    async def _on_failure(self, job: Job, exc: Exception) -> Optional[float]:
        job.state = "error"
        self.consecutive_errors += 1
        delay = backoff_delay(self.consecutive_errors, self._base_delay_s, self._max_delay_s)
        message = str(exc) or type(exc).__name__
        self.error = f"{message} (retrying in {round(delay)}s)"
        await self._publish(speed=None, error=self.error)
        return await self._next_step(delay)

    async def _next_step(self, delay: float) -> Optional[float]:
        if self._get_state(self.id) == STOPPING:
            if self._on_stopped:
                await self._on_stopped(self.id)
            return None

        elapsed = self._wall_clock() - self._run_started_at
        # no duration means a single run per worker
        if not self.cfg.duration_s or elapsed > self.cfg.duration_s:
            if self._on_done:
                await self._on_done(self.id)
            return None

        return delay

    async def _publish_speed(self, rate: float) -> None:
        await self._publish(speed=rate)

    async def _publish(self, **fields: Any) -> None:
        for k, v in fields.items():
            setattr(self.stats, k, v)
        if self._on_stats_update:
            await self._on_stats_update(self.id, fields, self.stats)
        # is_done is a pulse, never a level
        self.stats.is_done = False


# ----------------------------
# Metrics aggregation
# ----------------------------

def _mean_defined(vals: List[Optional[float]]) -> Optional[float]:
    defined = [v for v in vals if v is not None]
    return sum(defined) / len(defined) if defined else None


def aggregate(stats_by_slot: Dict[int, WorkerStats], totals: RunTotals, elapsed_s: float) -> AggregateStats:
    stats = list(stats_by_slot.values())
    elapsed_min = elapsed_s / 60.0
    return AggregateStats(
        workers=len(stats),
        elapsed_s=elapsed_s,
        completed=totals.completed,
        aggregate_speed=sum(s.speed for s in stats if s.speed is not None),
        avg_prefill_tps=_mean_defined([s.prefill_tps for s in stats]),
        avg_decode_tps=_mean_defined([s.decode_tps for s in stats]),
        avg_ttft_ms=_mean_defined([s.ttft_ms for s in stats]),
        avg_ttfr_ms=_mean_defined([s.ttfr_ms for s in stats]),
        requests_per_minute=(totals.completed / elapsed_min) if elapsed_min > 0 else 0.0,
        overall_prompt_tps=(totals.prompt_tokens / elapsed_s) if elapsed_s > 0 else 0.0,
        overall_completion_tps=(totals.completion_tokens / elapsed_s) if elapsed_s > 0 else 0.0,
    )


class MetricsAggregator:
    """
    Run-wide counters fed by edge-triggered worker updates, plus snapshots of
    system-wide rates computed from the latest per-worker stats.
    """

    def __init__(self, wall_clock: Callable[[], float] = time.time):
        self.totals = RunTotals()
        self.started_at: Optional[float] = None
        self._wall_clock = wall_clock

    def start(self) -> None:
        self.started_at = self._wall_clock()

    def elapsed_s(self) -> float:
        if self.started_at is None:
            return 0.0
        return max(0.0, self._wall_clock() - self.started_at)

    def record(self, update: Dict[str, Any]) -> None:
        # usage is reported once per attempt, so tokens are summed here only
        if update.get("prompt_tokens") is not None and update.get("completion_tokens") is not None:
            self.totals.prompt_tokens += update["prompt_tokens"]
            self.totals.completion_tokens += update["completion_tokens"]
        if update.get("is_done"):
            self.totals.completed += 1

    def snapshot(self, stats_by_slot: Dict[int, WorkerStats]) -> AggregateStats:
        return aggregate(stats_by_slot, self.totals, self.elapsed_s())


# ----------------------------
# Worker pool
# ----------------------------

def reconcile(slots: List[WorkerSlot], target: int, next_id: int) -> Tuple[List[WorkerSlot], int]:
    """
    Next slot list for `target` running slots. Stopping slots are revived
    (oldest first, same id) before new ids are allocated; when shrinking, the
    last running slots are marked stopping. Returns (slots, next_id).
    """
    if target < 0:
        raise ValueError(f"target concurrency must be >= 0, got {target}")

    running = [s for s in slots if s.state == RUNNING]
    stopping = [s for s in slots if s.state == STOPPING]

    if target > len(running):
        needed = target - len(running)
        revive = {s.id for s in stopping[:needed]}
        needed -= len(revive)
        updated = [replace(s, state=RUNNING) if s.id in revive else s for s in slots]
        fresh = [WorkerSlot(next_id + i) for i in range(needed)]
        return updated + fresh, next_id + needed

    if target < len(running):
        diff = len(running) - target
        stop_ids = {s.id for s in running[-diff:]}
        return [replace(s, state=STOPPING) if s.id in stop_ids else s for s in slots], next_id

    return list(slots), next_id


class WorkerPool:
    def __init__(
        self,
        cfg: LoadConfig,
        transport: Transport,
        *,
        on_stats_update: Optional[OnStatsUpdate] = None,
        on_worker_retired: Optional[OnSlotEvent] = None,
        on_run_done: Optional[OnRunDone] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.perf_counter,
        wall_clock: Callable[[], float] = time.time,
    ):
        if cfg.concurrency < 0:
            raise ValueError(f"concurrency must be >= 0, got {cfg.concurrency}")
        self.cfg = cfg
        self.target = cfg.concurrency
        self.slots, self._next_id = reconcile([], cfg.concurrency, 0)
        self.workers: Dict[int, Worker] = {}
        self.done_count = 0
        self.aggregator = MetricsAggregator(wall_clock)
        self.started = False

        self._transport = transport
        self._on_stats_update = on_stats_update
        self._on_worker_retired = on_worker_retired
        self._on_run_done = on_run_done
        self._sleep = sleep
        self._clock = clock
        self._wall_clock = wall_clock
        self._tasks: Dict[int, asyncio.Task] = {}
        self._finished = asyncio.Event()
        self.failure: Optional[BaseException] = None

    @property
    def finished(self) -> bool:
        return self._finished.is_set()

    def slot_state(self, slot_id: int) -> str:
        for s in self.slots:
            if s.id == slot_id:
                return s.state
        return STOPPING

    def start(self) -> None:
        """Start one worker task per slot. Must run inside the event loop."""
        self.started = True
        self.aggregator.start()
        for s in self.slots:
            self._spawn(s.id)
        self._check_finished()

    def set_target_concurrency(self, n: int) -> None:
        if n < 0:
            raise ValueError(f"target concurrency must be >= 0, got {n}")
        self.target = n
        self.slots, self._next_id = reconcile(self.slots, n, self._next_id)
        if self.started:
            for s in self.slots:
                if s.id not in self.workers:
                    self._spawn(s.id)
        self._check_finished()

    def stats_by_slot(self) -> Dict[int, WorkerStats]:
        return {slot_id: w.stats for slot_id, w in self.workers.items()}

    def aggregate(self) -> AggregateStats:
        return self.aggregator.snapshot(self.stats_by_slot())

    async def wait(self) -> None:
        """Wait for the run to end; re-raises the first error that crashed a worker task."""
        await self._finished.wait()
        if self.failure is not None:
            raise self.failure

    async def run(self) -> None:
        self.start()
        try:
            await self.wait()
        finally:
            await self.close()

    async def close(self) -> None:
        tasks = [t for t in self._tasks.values() if not t.done()]
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _spawn(self, slot_id: int) -> None:
        worker = Worker(
            slot_id,
            self._transport,
            self.cfg,
            run_started_at=self.aggregator.started_at or self._wall_clock(),
            get_state=self.slot_state,
            on_stats_update=self._handle_stats_update,
            on_done=self.on_worker_done,
            on_stopped=self.on_worker_retired,
            sleep=self._sleep,
            clock=self._clock,
            wall_clock=self._wall_clock,
        )
        self.workers[slot_id] = worker
        task = asyncio.create_task(worker.run(), name=f"loadllm-worker-{slot_id}")
        task.add_done_callback(self._on_task_done)
        self._tasks[slot_id] = task

    def _on_task_done(self, task: asyncio.Task) -> None:
        if task.cancelled() or task.exception() is None:
            return
        # a stats callback raised: the run cannot continue consistently
        if self.failure is None:
            self.failure = task.exception()
        self._finished.set()

    async def _handle_stats_update(self, slot_id: int, update: Dict[str, Any], stats: WorkerStats) -> None:
        self.aggregator.record(update)
        if self._on_stats_update:
            await self._on_stats_update(slot_id, update, stats)

    async def on_worker_retired(self, slot_id: int) -> None:
        self.slots = [s for s in self.slots if s.id != slot_id]
        self.workers.pop(slot_id, None)
        self._tasks.pop(slot_id, None)
        if self._on_worker_retired:
            await self._on_worker_retired(slot_id)
        self._check_finished()

    async def on_worker_done(self, slot_id: int) -> None:
        self.done_count += 1
        if self._on_run_done:
            await self._on_run_done()
        self._check_finished()

    def _check_finished(self) -> None:
        if self.done_count > 0 and self.done_count == len(self.slots):
            self._finished.set()
        elif self.target == 0 and not self.slots:
            self._finished.set()
