"""Bootstrap orchestrator: ingest source material into graph nodes.

Flow for one invocation (typically a scheduled tick):

    1. take the lease lock (another live holder means: skip)
    2. consult the persisted state: skip, resume from the done set, or start fresh
    3. read sources, chunk, pack into batches
    4. run up to `batch_budget_per_run` pending batches with bounded concurrency,
       all workers gated by one RateLimitBreaker
    5. after every batch: advance state, debounced flush, lock heartbeat
    6. pause (work left), finalize (all done) or fail (breaker tripped)
    7. flush state synchronously and release the lock

Failed batches still count as done so a bad chunk never blocks the cursor;
they land in the failure log and can be re-run with retry_failed=True.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from mg.bootstrap.batcher import SourceBatch, batch_to_prompt, chunk_text, max_output_tokens, pack
from mg.bootstrap.breaker import MAX_RETRY_ATTEMPTS, PipelineAbortedError, RateLimitBreaker
from mg.bootstrap.extract import EXTRACT_SYSTEM_PROMPT, parse_extraction, upsert_node
from mg.bootstrap.failures import FailureEntry, FailureLog, compute_quality, log_quality
from mg.bootstrap.lock import LeaseLock
from mg.bootstrap.sources import gather_sources
from mg.bootstrap.state import (
    FLUSH_DELAY,
    BootstrapState,
    DebouncedStateWriter,
    advance_batch,
    apply_retry,
    create_initial,
    finalize,
    mark_failed,
    pause,
    read_state,
    resume,
    should_run,
)
from mg.llm import ModelError, classify_error
from mg.store import FileStore, FrontmatterError, Registry

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

    from mg.bootstrap.failures import ErrorType
    from mg.config import MGConfig
    from mg.llm import Generation, ModelClient

logger = logging.getLogger("mg.bootstrap")


@dataclass
class BootstrapResult:
    ran: bool
    batches_processed: int = 0
    chunks_succeeded: int = 0
    chunks_failed: int = 0
    nodes_written: int = 0
    more_work_remaining: bool = False
    tokens_used: int = 0
    status: str | None = None
    reason: str = ""
    errors: list[str] = field(default_factory=list)


@dataclass
class BatchOutcome:
    batch: SourceBatch
    succeeded: bool
    nodes_written: int = 0
    tokens_used: int = 0


class BatchProcessor:
    """Runs one batch through the model and writes the resulting nodes."""

    def __init__(
        self,
        client: ModelClient,
        breaker: RateLimitBreaker,
        store: FileStore,
        registry: Registry,
        on_failure: Callable[[FailureEntry], None],
    ) -> None:
        self.client = client
        self.breaker = breaker
        self.store = store
        self.registry = registry
        self.on_failure = on_failure

    async def _call_model(self, batch: SourceBatch) -> Generation:
        prompt = batch_to_prompt(batch)
        max_tokens = max_output_tokens(len(batch.chunks))
        for _ in range(MAX_RETRY_ATTEMPTS):
            await self.breaker.await_gate()
            try:
                gen = await asyncio.to_thread(self.client.generate, EXTRACT_SYSTEM_PROMPT, prompt, max_tokens)
            except Exception as exc:
                kind = classify_error(exc)
                if kind == "rate-limit":
                    if not self.breaker.start_backoff():
                        raise PipelineAbortedError(f"rate limited too many times: {exc}") from exc
                    continue
                if kind == "unreachable":
                    self.breaker.abort()
                    raise PipelineAbortedError(f"model service unreachable: {exc}") from exc
                raise
            self.breaker.on_success()
            return gen
        msg = f"batch {batch.batch_index} still rate limited after {MAX_RETRY_ATTEMPTS} attempts"
        raise ModelError(msg)

    def _fail(
        self, batch: SourceBatch, error_type: ErrorType, error: str, diagnostics: dict[str, Any] | None = None,
    ) -> None:
        self.on_failure(FailureEntry(
            batch_index=batch.batch_index,
            labels=batch.labels,
            error_type=error_type,
            error=error,
            chunk_count=len(batch.chunks),
            diagnostics=diagnostics,
        ))

    async def process(self, batch: SourceBatch) -> BatchOutcome:
        """Raises PipelineAbortedError when the whole run must stop; other failures are recorded."""
        label = batch.labels[0] if len(batch.chunks) == 1 else f"batch {batch.batch_index} ({len(batch.chunks)} chunks)"
        try:
            gen = await self._call_model(batch)
        except PipelineAbortedError:
            raise
        except Exception as exc:
            logger.error("model call failed for %s: %s", label, exc)
            self._fail(batch, "llm-error", str(exc))
            return BatchOutcome(batch, succeeded=False)

        try:
            extracted = parse_extraction(gen.text)
        except ValueError as exc:
            logger.error("unparseable extraction for %s: %s", label, exc)
            self._fail(batch, "parse-empty", str(exc), {"responseChars": len(gen.text)})
            return BatchOutcome(batch, succeeded=False, tokens_used=gen.tokens_used)

        if not extracted:
            logger.info("no nodes extracted from %s", label)
            self._fail(batch, "zero-operations", "model returned no usable nodes", {"responseChars": len(gen.text)})
            return BatchOutcome(batch, succeeded=True, tokens_used=gen.tokens_used)

        written = 0
        write_errors: list[str] = []
        for node in extracted:
            try:
                upsert_node(self.store, self.registry, node)
                written += 1
            except (OSError, FrontmatterError) as exc:
                logger.exception("failed to write node %s from %s", node.canonical_key, label)
                write_errors.append(f"{node.canonical_key}: {exc}")
        if written == 0:
            self._fail(batch, "write-all-failed", "; ".join(write_errors)[:500])
            return BatchOutcome(batch, succeeded=False, tokens_used=gen.tokens_used)

        logger.info("processed %s: %d node(s)", label, written)
        return BatchOutcome(batch, succeeded=True, nodes_written=written, tokens_used=gen.tokens_used)


async def _run_workers(
    batches: list[SourceBatch],
    processor: BatchProcessor,
    concurrency: int,
    on_outcome: Callable[[BatchOutcome], None],
) -> list[BaseException]:
    """Pull batches from a shared iterator with `concurrency` workers. Returns worker errors."""
    it: Iterator[SourceBatch] = iter(batches)

    async def worker() -> None:
        for batch in it:
            on_outcome(await processor.process(batch))

    n = max(1, min(concurrency, len(batches)))
    results = await asyncio.gather(*(worker() for _ in range(n)), return_exceptions=True)
    return [r for r in results if isinstance(r, BaseException)]


def _tally(result: BootstrapResult, outcome: BatchOutcome) -> None:
    result.batches_processed += 1
    result.tokens_used += outcome.tokens_used
    result.nodes_written += outcome.nodes_written
    if outcome.succeeded:
        result.chunks_succeeded += len(outcome.batch.chunks)
    else:
        result.chunks_failed += len(outcome.batch.chunks)


def _build_batches(cfg: MGConfig, workspace: Path) -> list[SourceBatch]:
    entries = gather_sources(
        workspace, cfg.graph_dir,
        workspace_memory=cfg.bootstrap.workspace_memory,
        log_dirs=cfg.bootstrap.log_dirs,
    )
    chunks = [c for e in entries for c in chunk_text(e.text, e.label)]
    batches = pack(chunks, cfg.bootstrap.batch_char_budget)
    logger.info("bootstrap sources: %d entries, %d chunks, %d batches", len(entries), len(chunks), len(batches))
    return batches


class _Run:
    """State for one locked bootstrap invocation."""

    def __init__(
        self,
        cfg: MGConfig,
        client: ModelClient,
        lock: LeaseLock,
        breaker: RateLimitBreaker,
        writer: DebouncedStateWriter,
        workspace: Path,
    ) -> None:
        self.cfg = cfg
        self.lock = lock
        self.writer = writer
        self.workspace = workspace
        self.store = FileStore(cfg.graph_dir)
        self.registry = Registry(self.store)
        self.failures = FailureLog(cfg.graph_dir)
        self.client = client
        self.breaker = breaker
        self.result: BootstrapResult | None = None   # partial tallies survive a crash

    def processor(self, on_failure: Callable[[FailureEntry], None]) -> BatchProcessor:
        return BatchProcessor(self.client, self.breaker, self.store, self.registry, on_failure)

    async def run(self, force: bool, max_batches: int | None) -> BootstrapResult:
        stored = read_state(self.cfg.graph_dir)
        decision = should_run(stored, force)
        if not decision.needed:
            logger.info("bootstrap not needed: %s", decision.reason)
            return BootstrapResult(ran=False, reason=decision.reason, status=stored.status if stored else None)

        batches = _build_batches(self.cfg, self.workspace)
        if decision.resume_from_done is not None and stored is not None and stored.total == len(batches):
            state = resume(stored)
            logger.info("%s: %d/%d batches already done", decision.reason, len(state.done), state.total)
        else:
            if decision.resume_from_done is not None and stored is not None:
                logger.warning(
                    "source material changed (%d batches, previously %d), starting fresh", len(batches), stored.total,
                )
            state = create_initial(len(batches))
            self.failures.clear()
        self.writer.flush_now(state)

        done = set(state.done)
        pending = [b for b in batches if b.batch_index not in done]
        budget = max_batches if max_batches is not None else self.cfg.bootstrap.batch_budget_per_run
        selected = pending[:budget] if budget > 0 else pending

        result = self.result = BootstrapResult(ran=True, reason=decision.reason)

        def on_outcome(outcome: BatchOutcome) -> None:
            nonlocal state
            state = advance_batch(
                state, outcome.batch.batch_index,
                chunk_count=len(outcome.batch.chunks), succeeded=outcome.succeeded,
            )
            self.writer.push(state)
            self.lock.refresh()
            _tally(result, outcome)

        errors = await _run_workers(selected, self.processor(self.failures.append), self.cfg.bootstrap.concurrency, on_outcome)
        aborted = next((e for e in errors if isinstance(e, PipelineAbortedError)), None)
        for err in errors:
            if not isinstance(err, PipelineAbortedError):
                logger.error("bootstrap worker crashed: %r", err)
                result.errors.append(f"worker error: {err}")

        if aborted is not None:
            state = mark_failed(state, str(aborted))
            result.errors.append(f"bootstrap aborted: {aborted}")
            result.more_work_remaining = True
        elif len(state.done) < state.total:
            state = pause(state)
            result.more_work_remaining = True
            logger.info("bootstrap paused: %d/%d batches done", len(state.done), state.total)
        else:
            state = finalize(state)
            logger.info(
                "bootstrap %s: %d chunks ok, %d failed, %d batches",
                state.status, state.ok, state.fail, state.total,
            )
            log_quality(compute_quality(self.registry.entries()))

        self.writer.flush_now(state)
        result.status = state.status
        return result

    async def retry_failed(self) -> BootstrapResult:
        stored = read_state(self.cfg.graph_dir)
        finished = stored is not None and (
            stored.status == "completed" or (stored.status == "failed" and stored.cursor == stored.total)
        )
        if stored is None or not finished:
            return BootstrapResult(ran=False, reason="no finished bootstrap run to retry")
        logged = self.failures.read()
        if not logged:
            return BootstrapResult(ran=False, reason="no failed batches logged", status=stored.status)

        batches = _build_batches(self.cfg, self.workspace)
        if stored.total and len(batches) != stored.total:
            msg = f"source material changed ({len(batches)} batches, previously {stored.total}); run with --force"
            return BootstrapResult(ran=False, reason=msg, status=stored.status, errors=[msg])

        wanted = {e.batch_index for e in logged}
        targets = [b for b in batches if b.batch_index in wanted]
        new_failures: list[FailureEntry] = []
        result = self.result = BootstrapResult(ran=True, reason="retrying failed batches")
        retried: set[int] = set()

        def on_outcome(outcome: BatchOutcome) -> None:
            retried.add(outcome.batch.batch_index)
            self.lock.refresh()
            _tally(result, outcome)

        errors = await _run_workers(targets, self.processor(new_failures.append), self.cfg.bootstrap.concurrency, on_outcome)
        for err in errors:
            result.errors.append(f"retry aborted: {err}" if isinstance(err, PipelineAbortedError) else f"worker error: {err}")

        failed_again = {e.batch_index for e in new_failures}
        recovered = sum(len(b.chunks) for b in targets if b.batch_index in retried and b.batch_index not in failed_again)
        remaining = [e for e in logged if e.batch_index not in retried] + new_failures
        self.failures.write_entries(sorted(remaining, key=lambda e: e.batch_index))

        state: BootstrapState = apply_retry(stored, recovered)
        self.writer.flush_now(state)
        result.status = state.status
        result.more_work_remaining = bool(remaining)
        return result


async def run_bootstrap(
    cfg: MGConfig,
    client: ModelClient,
    *,
    workspace: Path | None = None,
    force: bool = False,
    retry_failed: bool = False,
    max_batches: int | None = None,
    breaker: RateLimitBreaker | None = None,
    lock: LeaseLock | None = None,
    flush_delay: float = FLUSH_DELAY,
) -> BootstrapResult:
    """Run one bootstrap invocation. Never raises; problems land in result.errors."""
    cfg.ensure_dirs()
    lock = lock or LeaseLock(cfg.graph_dir)
    if not lock.acquire():
        return BootstrapResult(ran=False, reason="another bootstrap instance holds the lock")

    breaker = breaker or RateLimitBreaker()
    writer = DebouncedStateWriter(cfg.graph_dir, flush_delay)
    run = _Run(cfg, client, lock, breaker, writer, workspace or cfg.root)
    try:
        if retry_failed:
            return await run.retry_failed()
        return await run.run(force, max_batches)
    except Exception as exc:
        logger.exception("bootstrap failed")
        result = run.result or BootstrapResult(ran=True)
        result.errors.append(f"bootstrap failed: {exc}")
        return result
    finally:
        writer.flush_now()
        breaker.close()
        lock.release()
