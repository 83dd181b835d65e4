"""Shared constants and task-state helpers for the APTAN agent backend.

All modules import from here to avoid circular dependencies.
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum

# --- Token units ---

# MNEE uses 18 decimals: 1 token = 10^18 base units
TOKEN_DECIMALS = 18
BASE_UNITS_PER_TOKEN = 10**TOKEN_DECIMALS
TOKEN_SYMBOL = "MNEE"


def to_base_units(amount: str | Decimal) -> int:
    """Convert a token amount to base units (integer)."""
    result = Decimal(amount) * BASE_UNITS_PER_TOKEN
    return int(result.to_integral_value())


def from_base_units(raw: int | str) -> Decimal:
    """Convert base units to a token amount."""
    return Decimal(str(raw)) / BASE_UNITS_PER_TOKEN


# --- Chain defaults ---

DEFAULT_CHAIN_ID = 11155111  # Sepolia

DEFAULT_RPC_URLS = [
    "https://rpc.sepolia.org",
    "https://ethereum-sepolia-rpc.publicnode.com",
    "https://rpc.ankr.com/eth_sepolia",
    "https://0xrpc.io/sep",
]

TEST_CONTRACT = "0x34F0f88b1E637640F1fB0B01dBDFd02F7a8B7B92"  # MockMNEE escrow
PRODUCTION_CONTRACT = "0x1be0f1D26748C6C879b988e3516A284c7EA1380A"

# Deployment block per contract (lowercased address). Sync never scans below it.
CONTRACT_CREATION_BLOCKS = {
    TEST_CONTRACT.lower(): 9788210,
    PRODUCTION_CONTRACT.lower(): 9790307,
}

RPC_TIMEOUT = 10  # seconds per JSON-RPC round trip, including the connect probe
RECEIPT_TIMEOUT = 180  # seconds to wait for a transaction to be mined

# --- Sync defaults ---

SYNC_STATE_ID = "sync_state"
SYNC_WINDOW_BLOCKS = 1000
SYNC_INTERVAL = 10  # demo value; lengthen for production
SYNC_FETCH_RETRIES = 3
SYNC_RETRY_PAUSE = 2.0

# --- Fulfillment defaults ---

POLL_INTERVAL = 30  # demo value; lengthen for production
MAX_SOLUTION_LENGTH = 10_000
TRUNCATION_MARKER = "... [truncated]"
RETRY_SHRINK_LENGTH = 100
RETRY_SHRINK_MARKER = "... [truncated for retry]"
MAX_SUBMIT_RETRIES = 3
BACKOFF_BASE = 2.0

# Revert reasons that no amount of retrying will fix
NON_RETRYABLE_REASONS = ("already completed", "deadline", "invalid task")

# --- Provider defaults ---

PROVIDER_TIMEOUT = 30
PROVIDER_PROBE_TIMEOUT = 10
OPENAI_CHAT_URL = "https://api.openai.com/v1/chat/completions"
OPENAI_MODELS = ["gpt-4o", "gpt-4o-mini", "gpt-3.5-turbo"]
GROQ_CHAT_URL = "https://api.groq.com/openai/v1/chat/completions"
GROQ_MODELS = ["llama-3.3-70b-versatile"]
DEFAULT_PROVIDER_ORDER = ["openai", "groq"]

SOLVER_SYSTEM_PROMPT = (
    "You are an autonomous task-solving agent. Solve the given task "
    "accurately and provide a clear, complete solution."
)


# --- Task state ---

class TaskState(Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Pending:
    last_error: str | None = None
    state = TaskState.PENDING


@dataclass(frozen=True)
class Completed:
    agent: str
    solution: str
    tx_hash: str | None = None
    block_number: int | None = None
    state = TaskState.COMPLETED


@dataclass(frozen=True)
class Cancelled:
    refund_amount: str
    tx_hash: str | None = None
    block_number: int | None = None
    state = TaskState.CANCELLED


TaskStatus = Pending | Completed | Cancelled


def task_status(doc: dict) -> TaskStatus:
    """Derive the tagged status variant from a stored task document."""
    if doc.get("cancelled"):
        return Cancelled(
            refund_amount=doc.get("refund_amount") or "0",
            tx_hash=doc.get("cancelled_tx_hash"),
            block_number=doc.get("cancelled_block_number"),
        )
    if doc.get("completed"):
        return Completed(
            agent=doc.get("agent") or "",
            solution=doc.get("solution") or "",
            tx_hash=doc.get("completed_tx_hash"),
            block_number=doc.get("completed_block_number"),
        )
    return Pending(last_error=doc.get("solution_error"))


def is_error_placeholder(doc: dict) -> bool:
    """True when a task document holds no solver output worth resubmitting.

    Failed attempts record solution_error (and transaction_error for
    submissions) next to their placeholder text.
    """
    if not (doc.get("solution") or "").strip():
        return True
    return bool(doc.get("solution_error") or doc.get("transaction_error"))


def is_non_retryable(reason: str) -> bool:
    reason = reason.lower()
    return any(marker in reason for marker in NON_RETRYABLE_REASONS)
