# etk_dispatch.py
from __future__ import annotations

import heapq
import itertools
import queue
import sys
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, NamedTuple, Optional, Sequence, Set, Tuple

from tqdm import tqdm  # type: ignore

from etk_config import RateBudget
from etk_core import (
    Generate,
    OversizedRequestError,
    RequestError,
    Result,
    RetriesExhaustedError,
    Unit,
    execute_request,
    write_unit_output,
)
from etk_cost import CostEstimator, TokenCounter, char_tokens
from etk_prompts import render_request

INPUT_QUEUE_SIZE = 5000
OUTPUT_QUEUE_SIZE = 100


class Submission(NamedTuple):
    unit: Unit
    attempt: int


_CLOSE = object()


def _stamp() -> str:
    return datetime.now().strftime("%H:%M:%S")


# --- dispatcher ---------------------------------------------------------------

class Dispatcher:
    """
    Launches one request per queued unit, spacing launches by
    `slot_seconds * slots` of the request just launched.

    Launch rate is throttled, concurrency is not: each launched request gets
    its own thread while the loop sleeps and moves on. With `max_workers`
    set, the loop waits for a free worker before launching, so a request is
    only counted as launched when it actually goes out. Requests over the
    token ceiling are answered with an OversizedRequestError result at once,
    without a call and without a delay.
    """

    def __init__(
        self,
        generate: Generate,
        prompt: str,
        estimator: CostEstimator,
        *,
        input_size: int = INPUT_QUEUE_SIZE,
        output_size: int = OUTPUT_QUEUE_SIZE,
        max_workers: Optional[int] = None,
        sleep: Optional[Callable[[float], None]] = None,
        clock: Callable[[], float] = time.monotonic,
        verbose: bool = False,
    ):
        self.generate = generate
        self.prompt = prompt
        self.estimator = estimator
        self.input: "queue.Queue[object]" = queue.Queue(maxsize=input_size)
        self.output: "queue.Queue[Result]" = queue.Queue(maxsize=output_size)
        self.clock = clock
        self.verbose = verbose
        # (identifier, attempt, clock time) per request actually sent
        self.launches: List[Tuple[str, int, float]] = []

        self._closing = threading.Event()
        self._cancel = threading.Event()
        self._sleep = sleep or self._interruptible_sleep
        self._workers = threading.BoundedSemaphore(max_workers) if max_workers else None
        self._inflight: Set[threading.Thread] = set()
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    def _interruptible_sleep(self, seconds: float) -> None:
        self._closing.wait(seconds)

    def submit(self, unit: Unit, attempt: int = 1) -> None:
        self.input.put(Submission(unit, attempt))

    def start(self) -> None:
        self._thread = threading.Thread(target=self.run, name="etk-dispatch", daemon=True)
        self._thread.start()

    def run(self) -> None:
        while True:
            item = self.input.get()
            if item is _CLOSE:
                return
            if self._cancel.is_set():
                continue
            sub: Submission = item  # type: ignore[assignment]
            try:
                self.dispatch(sub)
            except Exception as e:
                # a unit that cannot be prepared must still produce a Result
                self.output.put(Result(identifier=sub.unit.identifier, unit=sub.unit, attempt=sub.attempt,
                                       error=RequestError(f"failed to prepare request: {e}")))

    def dispatch(self, sub: Submission) -> None:
        unit = sub.unit
        request_text = render_request(self.prompt, unit.content, unit.context)
        cost = self.estimator.estimate(request_text)
        result = Result(identifier=unit.identifier, unit=unit, attempt=sub.attempt, tokens=cost.tokens)

        if self.estimator.exceeds_ceiling(cost):
            result.error = OversizedRequestError(cost.tokens, self.estimator.budget.max_tokens)
            self.output.put(result)
            return

        if self._workers is not None:
            self._workers.acquire()
            if self._cancel.is_set():
                self._workers.release()
                return

        delay = self.estimator.delay_for(cost)
        if self.verbose:
            sys.stderr.write(
                f"[info] launch {unit.identifier} (attempt {sub.attempt}) "
                f"tokens~{cost.tokens:,} slots={cost.slots} next in {delay:.1f}s\n"
            )
        self.launches.append((unit.identifier, sub.attempt, self.clock()))
        worker = threading.Thread(target=self._execute, args=(result, request_text),
                                  name=f"etk-request-{unit.ordinal}", daemon=True)
        with self._lock:
            self._inflight.add(worker)
        worker.start()
        self._sleep(delay)

    def _execute(self, result: Result, request_text: str) -> None:
        try:
            done = execute_request(self.generate, result, request_text)
        finally:
            if self._workers is not None:
                self._workers.release()
        self.output.put(done)

    def close(self, cancel_pending: bool = False) -> List[Result]:
        """
        Stop intake and wait for the loop and every in-flight request to
        finish. The current spacing sleep is cut short, so call this once
        the input queue is idle; with `cancel_pending`, queued units are
        dropped instead of launched. Results that arrive while closing are
        drained so no worker blocks on a full output queue; they are
        returned to the caller.
        """
        if cancel_pending:
            self._cancel.set()
        self._closing.set()
        self.input.put(_CLOSE)

        late: List[Result] = []
        if self._thread is not None:
            while self._thread.is_alive():
                self._drain_into(late)
                self._thread.join(timeout=0.1)

        while True:
            with self._lock:
                self._inflight = {t for t in self._inflight if t.is_alive()}
                pending = list(self._inflight)
            if not pending:
                break
            self._drain_into(late)
            pending[0].join(timeout=0.1)
        self._drain_into(late)
        return late

    def _drain_into(self, sink: List[Result]) -> None:
        while True:
            try:
                sink.append(self.output.get_nowait())
            except queue.Empty:
                return


# --- retry / completion -------------------------------------------------------

@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    backoff_base: float = 2.0
    backoff_max: float = 60.0

    def delay(self, failed_attempts: int) -> float:
        """Exponential backoff before the next attempt: base, 2*base, 4*base, ... capped."""
        if self.backoff_base <= 0:
            return 0.0
        return min(self.backoff_max, self.backoff_base * (2 ** max(0, failed_attempts - 1)))


PENDING = "pending"
IN_FLIGHT = "in_flight"
DONE = "done"
FAILED = "failed"


@dataclass
class PipelineSummary:
    total: int
    succeeded: List[str] = field(default_factory=list)
    failed: Dict[str, RetriesExhaustedError] = field(default_factory=dict)
    attempts: int = 0

    @property
    def complete(self) -> bool:
        return not self.failed and len(self.succeeded) == self.total


Persist = Callable[[Path, str, str], Path]


class CompletionController:
    """
    Drains results in arrival order. Failures go back to the dispatcher
    after a backoff until `max_attempts` is reached; successes are written
    to `directory` and counted. Returns once every unit is done or failed.
    """

    def __init__(
        self,
        dispatcher: Dispatcher,
        directory: Path,
        policy: RetryPolicy = RetryPolicy(),
        *,
        persist: Persist = write_unit_output,
        clock: Callable[[], float] = time.monotonic,
        progress: bool = True,
        verbose: bool = False,
    ):
        self.dispatcher = dispatcher
        self.directory = Path(directory)
        self.policy = policy
        self.persist = persist
        self.clock = clock
        self.progress = progress
        self.verbose = verbose
        self.states: Dict[str, str] = {}
        self._retries: List[Tuple[float, int, Unit, int]] = []
        self._seq = itertools.count()

    def _notice(self, msg: str) -> None:
        tqdm.write(msg, file=sys.stderr)

    def _schedule_retry(self, unit: Unit, attempt: int, delay: float) -> None:
        heapq.heappush(self._retries, (self.clock() + delay, next(self._seq), unit, attempt))
        self.states[unit.identifier] = PENDING

    def _release_due(self) -> None:
        now = self.clock()
        while self._retries and self._retries[0][0] <= now:
            _, _, unit, attempt = heapq.heappop(self._retries)
            self.states[unit.identifier] = IN_FLIGHT
            self.dispatcher.submit(unit, attempt)

    def _next_timeout(self) -> Optional[float]:
        if not self._retries:
            return None
        return max(0.0, self._retries[0][0] - self.clock())

    def run(self, units: Sequence[Unit]) -> PipelineSummary:
        summary = PipelineSummary(total=len(units))
        for unit in units:
            self.states[unit.identifier] = IN_FLIGHT
            self.dispatcher.submit(unit, 1)

        remaining = len(units)
        with tqdm(total=len(units), desc="Processing", unit="chapter", disable=not self.progress) as pbar:
            while remaining > 0:
                self._release_due()
                try:
                    result = self.dispatcher.output.get(timeout=self._next_timeout())
                except queue.Empty:
                    continue
                if self.states.get(result.identifier) in (DONE, FAILED):
                    continue
                if result.dispatched:
                    summary.attempts += 1

                if result.error is not None:
                    if result.attempt >= self.policy.max_attempts:
                        err = RetriesExhaustedError(result.identifier, result.attempt, result.error)
                        summary.failed[result.identifier] = err
                        self.states[result.identifier] = FAILED
                        remaining -= 1
                        pbar.update(1)
                        self._notice(f"[{_stamp()}] [fail] {result.identifier}: {result.error} (giving up after {result.attempt} attempts)")
                        continue
                    delay = self.policy.delay(result.attempt)
                    self._notice(
                        f"[{_stamp()}] [retry] Failed to process {result.identifier} "
                        f"(attempt {result.attempt}/{self.policy.max_attempts}): {result.error}; retrying in {delay:.1f}s"
                    )
                    self._schedule_retry(result.unit, result.attempt + 1, delay)
                    continue

                # PersistenceError propagates: the run stops rather than drop a generation
                path = self.persist(self.directory, result.identifier, result.response or "")
                self.states[result.identifier] = DONE
                summary.succeeded.append(result.identifier)
                remaining -= 1
                pbar.update(1)
                self._notice(f"[{_stamp()}] [ok] Processed {result.identifier} in {result.duration:.2f}s")
                if self.verbose:
                    self._notice(f"[info] wrote {path} (tokens~{result.tokens:,})")
        return summary


# --- entry point --------------------------------------------------------------

def run_pipeline(
    units: Sequence[Unit],
    generate: Generate,
    *,
    prompt: str,
    budget: RateBudget,
    directory: Path,
    policy: RetryPolicy = RetryPolicy(),
    count_tokens: TokenCounter = char_tokens,
    max_workers: Optional[int] = None,
    output_size: int = OUTPUT_QUEUE_SIZE,
    sleep: Optional[Callable[[float], None]] = None,
    clock: Callable[[], float] = time.monotonic,
    persist: Persist = write_unit_output,
    progress: bool = True,
    verbose: bool = False,
) -> PipelineSummary:
    """
    Submit every unit, retry failures, and return once each unit is done or
    has exhausted its attempts. The dispatcher is always closed (all
    in-flight requests joined) before this returns or raises.
    """
    estimator = CostEstimator(budget, count_tokens)
    dispatcher = Dispatcher(
        generate,
        prompt,
        estimator,
        input_size=max(INPUT_QUEUE_SIZE, len(units)),
        output_size=output_size,
        max_workers=max_workers,
        sleep=sleep,
        clock=clock,
        verbose=verbose,
    )
    controller = CompletionController(
        dispatcher,
        directory,
        policy,
        persist=persist,
        clock=clock,
        progress=progress,
        verbose=verbose,
    )
    dispatcher.start()
    ok = False
    try:
        summary = controller.run(units)
        ok = True
    finally:
        late = dispatcher.close(cancel_pending=not ok)
        for r in late:
            if r.ok:
                sys.stderr.write(f"[warn] discarded unsaved result for {r.identifier}\n")
    return summary
