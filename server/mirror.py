"""Ledger mirror: replicate task events into the local store.

Each cycle scans a bounded block window starting at the stored
checkpoint, ingests TaskCreated, TaskCompleted and TaskCancelled events,
then advances the checkpoint past the window. The mirror is the only
writer of chain-derived fields.
"""

import logging
import threading
import time
from dataclasses import dataclass, asdict

from protocol import (
    CONTRACT_CREATION_BLOCKS, SYNC_FETCH_RETRIES, SYNC_INTERVAL, SYNC_RETRY_PAUSE,
    SYNC_STATE_ID, SYNC_WINDOW_BLOCKS, from_base_units,
)
from server.chain import ChainEvent, LedgerBackend, is_connectivity_error, task_from_struct

logger = logging.getLogger(__name__)


def creation_block_for(contract_address: str, override: int | None = None) -> int:
    """Lowest block worth scanning for a contract."""
    if override is not None:
        return int(override)
    block = CONTRACT_CREATION_BLOCKS.get(contract_address.lower())
    if block is None:
        logger.warning("[sync] No known creation block for %s, scanning from block 0", contract_address)
        return 0
    return block


@dataclass
class SyncReport:
    from_block: int
    to_block: int
    height: int
    created: int = 0
    completed: int = 0
    cancelled: int = 0

    @property
    def noop(self) -> bool:
        return self.from_block > self.to_block

    def to_dict(self) -> dict:
        return {**asdict(self), "noop": self.noop}


class LedgerMirror:
    """Checkpointed, windowed event sync from a LedgerBackend into a TaskStore."""

    def __init__(self, chain: LedgerBackend, store, bus=None, contract_address: str | None = None,
                 creation_block: int | None = None, window: int = SYNC_WINDOW_BLOCKS,
                 fetch_retries: int = SYNC_FETCH_RETRIES, retry_pause: float = SYNC_RETRY_PAUSE,
                 sleep=time.sleep):
        self.chain = chain
        self.store = store
        self.bus = bus
        self.contract_address = contract_address or chain.contract_address
        if not self.contract_address:
            raise ValueError("contract_address is required")
        self.creation_block = creation_block_for(self.contract_address, creation_block)
        self.window = window
        self.fetch_retries = fetch_retries
        self.retry_pause = retry_pause
        self._sleep = sleep
        self._cycle_lock = threading.Lock()
        self.last_report: SyncReport | None = None

    # --- Checkpoint ---

    def _checkpoint(self) -> int:
        state = self.store.get_sync_state()
        if state is None:
            logger.info("[sync] No checkpoint yet, starting at creation block %d", self.creation_block)
            return self.creation_block
        if state["contract_address"].lower() != self.contract_address.lower():
            logger.warning("[sync] Contract changed (%s -> %s), resetting checkpoint to block %d",
                           state["contract_address"], self.contract_address, self.creation_block)
            return self.creation_block
        return int(state["last_synced_block"])

    def reset(self, from_block: int | None = None) -> int:
        """Rewind the checkpoint. Already-mirrored documents are kept."""
        block = self.creation_block if from_block is None else max(int(from_block), self.creation_block)
        with self._cycle_lock:
            self.store.save_sync_state(SYNC_STATE_ID, block, self.contract_address)
        logger.info("[sync] Checkpoint reset to block %d", block)
        return block

    def status(self) -> dict:
        state = self.store.get_sync_state() or {}
        return {
            "contract_address": self.contract_address,
            "creation_block": self.creation_block,
            "window": self.window,
            "last_synced_block": state.get("last_synced_block"),
            "last_sync_time": state.get("last_sync_time"),
            "checkpoint_contract": state.get("contract_address"),
            "last_report": self.last_report.to_dict() if self.last_report else None,
            "tasks": self.store.count(),
        }

    # --- Fetching ---

    def _fetch(self, label: str, fn):
        """Run fn with the sync retry policy.

        Only connectivity errors are retried. Anything else, or the error from
        the try after reconnecting, propagates.
        """
        for attempt in range(1, self.fetch_retries + 1):
            try:
                return fn()
            except Exception as e:
                if not is_connectivity_error(e):
                    raise
                logger.warning("[sync] %s failed (%s), %d attempts left", label, e, self.fetch_retries - attempt)
                if attempt < self.fetch_retries:
                    self._sleep(self.retry_pause)
        logger.warning("[sync] %s still failing, reconnecting", label)
        self.chain.reconnect()
        return fn()

    def _events(self, name: str, from_block: int, to_block: int) -> list[ChainEvent]:
        try:
            return self._fetch(f"{name} query",
                               lambda: self.chain.query_events(name, from_block, to_block))
        except Exception as e:
            logger.error("[sync] Error fetching %s events: %s", name, e)
            return []

    # --- Cycle ---

    def sync_once(self, from_block: int | None = None) -> SyncReport | None:
        """Run one cycle. Returns None when the chain height is unavailable."""
        with self._cycle_lock:
            try:
                height = self._fetch("block height", self.chain.current_height)
            except Exception as e:
                logger.error("[sync] Error getting current block, skipping cycle: %s", e)
                return None

            checkpoint = self._checkpoint() if from_block is None else int(from_block)
            start = max(checkpoint, self.creation_block)
            end = min(start + self.window - 1, height)
            report = SyncReport(from_block=start, to_block=end, height=height)

            if report.noop:
                logger.debug("[sync] Already synced up to current block (%d)", height)
                self.store.save_sync_state(SYNC_STATE_ID, start, self.contract_address)
                self.last_report = report
                return report

            logger.info("[sync] Syncing %d blocks: %d to %d", end - start + 1, start, end)

            for event in self._events("TaskCreated", start, end):
                if self._ingest(self._on_created, event):
                    report.created += 1
            for event in self._events("TaskCompleted", start, end):
                if self._ingest(self._on_completed, event):
                    report.completed += 1
            for event in self._events("TaskCancelled", start, end):
                if self._ingest(self._on_cancelled, event):
                    report.cancelled += 1

            # Advance unconditionally: empty or degraded windows still move forward
            self.store.save_sync_state(SYNC_STATE_ID, end + 1, self.contract_address)
            self.last_report = report
            if report.created or report.completed or report.cancelled:
                logger.info("[sync] Blocks %d-%d: %d created, %d completed, %d cancelled",
                            start, end, report.created, report.completed, report.cancelled)
            return report

    def sync_range(self, from_block: int) -> SyncReport | None:
        """One cycle starting at an explicit block instead of the checkpoint."""
        return self.sync_once(from_block=from_block)

    def _ingest(self, handler, event: ChainEvent) -> bool:
        try:
            return handler(event)
        except Exception:
            logger.exception("[sync] Error ingesting %s for task %s", event.name, event.args.get("taskId"))
            return False

    def _publish(self, task_id: int, fields: dict):
        if self.bus is not None:
            self.bus.publish(task_id, fields)

    # --- Event handlers ---

    def _on_created(self, event: ChainEvent) -> bool:
        task_id = int(event.args["taskId"])
        existing = self.store.get(task_id)
        if existing and existing.get("tx_hash") == event.tx_hash and existing.get("source") == "chain":
            return False

        try:
            task = task_from_struct(self._fetch(f"getTask({task_id})",
                                                lambda: self.chain.read_call("getTask", task_id)))
        except Exception as e:
            logger.warning("[sync] getTask(%d) failed, saving from event data: %s", task_id, e)
            task = {
                "creator": event.args["creator"],
                "reward": int(event.args["reward"]),
                "description": event.args["description"],
                "deadline": int(event.args["deadline"]),
                "created_at": None,
            }

        # Creation fields only. Completion and cancellation belong to their own events.
        fields = {
            "creator": task["creator"] or event.args["creator"],
            "description": task["description"] or event.args["description"],
            "reward": str(task["reward"] or event.args["reward"]),
            "deadline": int(task["deadline"] or event.args["deadline"]),
            "tx_hash": event.tx_hash,
            "block_number": event.block_number,
            "source": "chain",
            "synced_at": time.time(),
        }
        if task["created_at"]:
            fields["created_at"] = float(task["created_at"])
        self.store.upsert(task_id, fields)

        logger.info("[sync] Saved task %d (block %d, reward %s)",
                    task_id, event.block_number, from_base_units(fields["reward"]))
        self._publish(task_id, {"event": "task_created", **fields})
        return True

    def _on_completed(self, event: ChainEvent) -> bool:
        task_id = int(event.args["taskId"])
        existing = self.store.get(task_id)
        if existing and existing.get("completed_tx_hash") == event.tx_hash:
            return False
        fields = {
            "completed": True,
            "agent": event.args["agent"],
            "solution": event.args["solution"],
            "completed_tx_hash": event.tx_hash,
            "completed_block_number": event.block_number,
            "completed_at": time.time(),
            "synced_at": time.time(),
        }
        self.store.upsert(task_id, fields)
        self._publish(task_id, {"event": "task_completed", **fields})
        return True

    def _on_cancelled(self, event: ChainEvent) -> bool:
        task_id = int(event.args["taskId"])
        existing = self.store.get(task_id)
        if existing and existing.get("cancelled_tx_hash") == event.tx_hash:
            return False
        fields = {
            "completed": True,
            "cancelled": True,
            "cancelled_by": event.args["creator"],
            "refund_amount": str(event.args["refundAmount"]),
            "cancelled_tx_hash": event.tx_hash,
            "cancelled_block_number": event.block_number,
            "cancelled_at": time.time(),
            "synced_at": time.time(),
        }
        self.store.upsert(task_id, fields)
        self._publish(task_id, {"event": "task_cancelled", **fields})
        return True

    # --- Background loop ---

    def serve(self, stop: threading.Event, interval: float = SYNC_INTERVAL):
        """Sync once immediately, then every `interval` seconds until stop is set."""
        logger.info("[sync] Mirror started (every %ss, window %d blocks)", interval, self.window)
        while not stop.is_set():
            try:
                self.sync_once()
            except Exception:
                logger.exception("[sync] Sync cycle failed")
            stop.wait(interval)
        logger.info("[sync] Mirror stopped")
