"""Fulfillment loop: find pending tasks, solve them, submit results on-chain.

Tasks are handled one at a time. A failure on one task is recorded on its
document and never stops the others. Submission re-checks the task before
every attempt, so at most one submitResult per task can take effect.
"""

import logging
import threading
import time
from dataclasses import dataclass, asdict

from protocol import (
    BACKOFF_BASE, MAX_SOLUTION_LENGTH, MAX_SUBMIT_RETRIES, POLL_INTERVAL,
    RETRY_SHRINK_LENGTH, RETRY_SHRINK_MARKER, TRUNCATION_MARKER,
    from_base_units, is_error_placeholder, is_non_retryable,
)
from server.chain import LedgerBackend, Receipt, RevertError, is_connectivity_error, task_from_struct

logger = logging.getLogger(__name__)


class TaskNotFound(Exception):
    pass


class SubmissionAborted(Exception):
    """Submitting cannot succeed; no further attempts are made."""

    def __init__(self, reason: str, already_completed: bool = False):
        super().__init__(reason)
        self.reason = reason
        self.already_completed = already_completed


class SubmissionFailed(Exception):
    """Every attempt failed."""

    def __init__(self, reason: str, attempts: int, tx_hash: str | None = None):
        super().__init__(reason)
        self.reason = reason
        self.attempts = attempts
        self.tx_hash = tx_hash


@dataclass
class Submission:
    receipt: Receipt
    solution: str  # text actually submitted (may be shrunk)
    attempts: int


@dataclass
class FulfillmentOutcome:
    task_id: int
    status: str  # completed | skipped | already_completed | rejected | aborted | failed
    tx_hash: str | None = None
    block_number: int | None = None
    solution: str | None = None
    provider: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "completed"

    def to_dict(self) -> dict:
        return asdict(self)


def truncate_solution(text: str, limit: int = MAX_SOLUTION_LENGTH) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + TRUNCATION_MARKER


class FulfillmentLoop:
    """Polls the ledger for pending tasks and fulfills them."""

    def __init__(self, chain: LedgerBackend, store, solver, bus=None,
                 max_solution_length: int = MAX_SOLUTION_LENGTH,
                 max_retries: int = MAX_SUBMIT_RETRIES, backoff_base: float = BACKOFF_BASE,
                 sleep=time.sleep, clock=time.time):
        if not chain.agent_address:
            raise ValueError("Fulfillment requires an agent account")
        self.chain = chain
        self.store = store
        self.solver = solver
        self.bus = bus
        self.max_solution_length = max_solution_length
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self._sleep = sleep
        self._clock = clock
        self._token_address = None
        # One submission per task at a time across the loop and manual retries
        self._task_locks: dict[int, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @property
    def agent(self) -> str:
        return self.chain.agent_address

    # --- Helpers ---

    def _task_lock(self, task_id: int) -> threading.Lock:
        with self._locks_guard:
            return self._task_locks.setdefault(task_id, threading.Lock())

    def _read_task(self, task_id: int) -> dict:
        return task_from_struct(self.chain.read_call("getTask", task_id))

    def _publish(self, task_id: int, fields: dict):
        if self.bus is not None:
            self.bus.publish(task_id, fields)

    def _record_error(self, task_id: int, message: str, solution: str | None = None, **extra):
        fields = {
            "solution": solution or f"Error: {message}",
            "solution_error": message,
            "attempted_at": self._clock(),
            "attempted_by": self.agent,
            **extra,
        }
        if not self.store.record_diagnostic(task_id, fields):
            logger.info("[agent] Task %d already settled, error not recorded: %s", task_id, message)
            return
        self._publish(task_id, {"event": "task_error", "completed": False, **fields})

    def _check_escrow(self, task: dict):
        """Warn when the escrow looks short. Never blocks a submission."""
        try:
            if self._token_address is None:
                self._token_address = self.chain.read_call("mnee")
            balance = self.chain.token_balance(self._token_address, self.chain.contract_address)
        except Exception as e:
            logger.warning("[agent] Balance check failed: %s", e)
            return
        if balance < task["reward"]:
            logger.warning("[agent] Insufficient escrow: contract holds %s, task needs %s",
                           from_base_units(balance), from_base_units(task["reward"]))

    # --- Submission ---

    def submit_with_retry(self, task_id: int, solution: str, max_attempts: int | None = None) -> Submission:
        """Submit submitResult with prechecks, backoff and a shrunken final attempt.

        Raises SubmissionAborted when retrying cannot help and SubmissionFailed
        once every attempt has failed.
        """
        attempts = max_attempts or self.max_retries
        last_reason = "All retry attempts failed"
        last_tx = None

        for attempt in range(1, attempts + 1):
            try:
                task = self._read_task(task_id)
                if task["completed"]:
                    raise SubmissionAborted("Task already completed", already_completed=True)
                if self._clock() > task["deadline"]:
                    raise SubmissionAborted("Task deadline has passed")
                self._check_escrow(task)

                try:
                    gas = self.chain.estimate_gas("submitResult", task_id, self.agent, solution)
                except RevertError as e:
                    if is_non_retryable(e.reason):
                        raise SubmissionAborted(e.reason,
                                                already_completed="already completed" in e.reason.lower())
                    raise
                logger.debug("[agent] Task %d estimated gas %d", task_id, gas)

                pending = self.chain.write_call("submitResult", task_id, self.agent, solution)
                last_tx = pending.tx_hash
                logger.info("[agent] Task %d submitted (attempt %d/%d): %s",
                            task_id, attempt, attempts, pending.tx_hash)
                receipt = self.chain.confirm(pending)
                if receipt.ok:
                    return Submission(receipt=receipt, solution=solution, attempts=attempt)
                last_reason = "Transaction reverted (status: 0)"
            except SubmissionAborted:
                raise
            except RevertError as e:
                last_reason = e.reason
            except Exception as e:
                last_reason = str(e) or type(e).__name__
            logger.warning("[agent] Task %d attempt %d/%d failed: %s", task_id, attempt, attempts, last_reason)

            if attempt < attempts:
                wait = self.backoff_base ** attempt
                logger.info("[agent] Waiting %ss before retry", wait)
                self._sleep(wait)
                if attempt == attempts - 1 and len(solution) > RETRY_SHRINK_LENGTH:
                    logger.info("[agent] Last retry: trying with minimal solution")
                    solution = solution[:RETRY_SHRINK_LENGTH] + RETRY_SHRINK_MARKER

        raise SubmissionFailed(last_reason, attempts=attempts, tx_hash=last_tx)

    def _submit_and_record(self, task_id: int, solution: str, provider: str | None,
                           max_attempts: int | None = None) -> FulfillmentOutcome:
        try:
            submission = self.submit_with_retry(task_id, solution, max_attempts=max_attempts)
        except SubmissionAborted as e:
            if e.already_completed:
                logger.info("[agent] Task %d already completed, skipping", task_id)
                return FulfillmentOutcome(task_id, "already_completed", error=e.reason)
            logger.warning("[agent] Task %d aborted: %s", task_id, e.reason)
            self._record_error(task_id, e.reason)
            return FulfillmentOutcome(task_id, "aborted", error=e.reason, provider=provider)
        except SubmissionFailed as e:
            logger.error("[agent] Transaction failed for task %d: %s", task_id, e.reason)
            self._record_error(task_id, e.reason, solution=f"Error submitting solution: {e.reason}",
                               transaction_error=True, failed_tx_hash=e.tx_hash)
            return FulfillmentOutcome(task_id, "failed", tx_hash=e.tx_hash, error=e.reason, provider=provider)

        receipt = submission.receipt
        fields = {
            "completed": True,
            "agent": self.agent,
            "solution": submission.solution,
            "completed_tx_hash": receipt.tx_hash,
            "completed_block_number": receipt.block_number,
            "completed_at": self._clock(),
            "solution_error": None,
            "transaction_error": False,
            "failed_tx_hash": None,
        }
        self.store.upsert(task_id, fields)
        self._publish(task_id, {"event": "task_completed", **fields})
        logger.info("[agent] Task %d completed! TX: %s", task_id, receipt.tx_hash)
        return FulfillmentOutcome(task_id, "completed", tx_hash=receipt.tx_hash,
                                  block_number=receipt.block_number, solution=submission.solution,
                                  provider=provider)

    # --- Per-task processing ---

    def process_task(self, task_id: int) -> FulfillmentOutcome:
        with self._task_lock(task_id):
            doc = self.store.get(task_id)
            if doc and doc["completed"]:
                return FulfillmentOutcome(task_id, "skipped")

            task = self._read_task(task_id)
            if task["completed"]:
                return FulfillmentOutcome(task_id, "skipped")

            logger.info("[agent] Solving task %d: %s", task_id, task["description"][:80])
            result = self.solver.solve(task["description"])
            text = (result.text or "").strip()
            if not text:
                logger.error("[agent] Empty solution for task %d, skipping", task_id)
                self._record_error(task_id, "Empty solution generated")
                return FulfillmentOutcome(task_id, "rejected", provider=result.provider,
                                          error="Empty solution generated")

            text = truncate_solution(text, self.max_solution_length)

            if self._clock() > task["deadline"]:
                logger.warning("[agent] Task %d deadline has passed, skipping", task_id)
                self._record_error(task_id, "Task deadline has passed")
                return FulfillmentOutcome(task_id, "rejected", provider=result.provider,
                                          error="Task deadline has passed")

            logger.info("[agent] Submitting solution for task %d (%d chars, via %s)",
                        task_id, len(text), result.provider)
            return self._submit_and_record(task_id, text, result.provider)

    def poll_once(self) -> list[FulfillmentOutcome]:
        try:
            pending = self.chain.read_call("getPendingTasks")
        except Exception as e:
            if is_connectivity_error(e):
                logger.debug("[agent] Error polling tasks: %s", e)
            else:
                logger.error("[agent] Error polling tasks: %s", e)
            return []

        if pending:
            logger.info("[agent] Found %d pending tasks", len(pending))
        outcomes = []
        for task_id in pending:
            task_id = int(task_id)
            try:
                outcomes.append(self.process_task(task_id))
            except Exception as e:
                logger.exception("[agent] Error processing task %d", task_id)
                try:
                    self._record_error(task_id, f"Error processing task: {e}")
                except Exception:
                    logger.exception("[agent] Failed to save error for task %d", task_id)
        return outcomes

    # --- Manual retry ---

    def retry_task(self, task_id: int) -> FulfillmentOutcome:
        """One synchronous submission attempt for a task that failed earlier."""
        doc = self.store.get(task_id)
        if doc is None:
            raise TaskNotFound(f"Task {task_id} not found")

        with self._task_lock(task_id):
            task = self._read_task(task_id)
            if task["completed"]:
                return FulfillmentOutcome(task_id, "already_completed")

            solution = doc.get("solution")
            provider = None
            if is_error_placeholder(doc):
                logger.info("[agent] Regenerating solution for task %d", task_id)
                result = self.solver.solve(task["description"] or doc["description"])
                solution, provider = result.text, result.provider
            solution = truncate_solution(solution.strip(), self.max_solution_length)

            logger.info("[agent] Manual retry for task %d", task_id)
            return self._submit_and_record(task_id, solution, provider, max_attempts=1)

    # --- Background loop ---

    def serve(self, stop: threading.Event, interval: float = POLL_INTERVAL):
        logger.info("[agent] Fulfillment loop started for %s (every %ss)", self.agent, interval)
        while not stop.is_set():
            try:
                self.poll_once()
            except Exception:
                logger.exception("[agent] Poll cycle failed")
            stop.wait(interval)
        logger.info("[agent] Fulfillment loop stopped")
