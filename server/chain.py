"""Ledger access for the APTAN agent backend.

ChainClient wraps a prioritised list of JSON-RPC endpoints (web3.py) and
fails over between them. The active connection is one immutable handle,
swapped wholesale on reconnect, so callers never see a half-built
connection.

SimLedger implements the same LedgerBackend interface in memory and
enforces the contract's require() rules. Use it for tests and for running
the service without a node.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass

import requests
from eth_account import Account
from web3 import HTTPProvider, Web3
from web3.exceptions import ContractLogicError

from protocol import DEFAULT_CHAIN_ID, RPC_TIMEOUT, RECEIPT_TIMEOUT

logger = logging.getLogger(__name__)


_TASK_STRUCT = {
    "components": [
        {"name": "creator", "type": "address"},
        {"name": "reward", "type": "uint256"},
        {"name": "description", "type": "string"},
        {"name": "deadline", "type": "uint256"},
        {"name": "completed", "type": "bool"},
        {"name": "agent", "type": "address"},
        {"name": "solution", "type": "string"},
        {"name": "createdAt", "type": "uint256"},
    ],
    "name": "",
    "type": "tuple",
}


def _fn(name, inputs, outputs=(), mutability="view"):
    return {
        "type": "function",
        "name": name,
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": list(outputs),
        "stateMutability": mutability,
    }


def _event(name, inputs):
    return {
        "type": "event",
        "name": name,
        "anonymous": False,
        "inputs": [{"name": n, "type": t, "indexed": i} for n, t, i in inputs],
    }


LEDGER_ABI = [
    _fn("createTask", [("description", "string"), ("reward", "uint256"), ("deadline", "uint256")],
        mutability="nonpayable"),
    _fn("submitResult", [("taskId", "uint256"), ("agent", "address"), ("solution", "string")],
        mutability="nonpayable"),
    _fn("cancelTask", [("taskId", "uint256")], mutability="nonpayable"),
    _fn("getTask", [("taskId", "uint256")], [_TASK_STRUCT]),
    _fn("getPendingTasks", [], [{"name": "", "type": "uint256[]"}]),
    _fn("taskCounter", [], [{"name": "", "type": "uint256"}]),
    _fn("mnee", [], [{"name": "", "type": "address"}]),
    _event("TaskCreated", [("taskId", "uint256", True), ("creator", "address", True),
                           ("reward", "uint256", False), ("description", "string", False),
                           ("deadline", "uint256", False)]),
    _event("TaskCompleted", [("taskId", "uint256", True), ("agent", "address", True),
                             ("solution", "string", False)]),
    _event("PaymentReleased", [("taskId", "uint256", True), ("agent", "address", True),
                               ("amount", "uint256", False)]),
    _event("TaskCancelled", [("taskId", "uint256", True), ("creator", "address", True),
                             ("refundAmount", "uint256", False)]),
]

TOKEN_ABI = [
    _fn("balanceOf", [("account", "address")], [{"name": "", "type": "uint256"}]),
]

EVENT_SIGNATURES = {
    "TaskCreated": "TaskCreated(uint256,address,uint256,string,uint256)",
    "TaskCompleted": "TaskCompleted(uint256,address,string)",
    "PaymentReleased": "PaymentReleased(uint256,address,uint256)",
    "TaskCancelled": "TaskCancelled(uint256,address,uint256)",
}

_ERROR_SELECTOR = bytes.fromhex("08c379a0")  # Error(string)
_PANIC_SELECTOR = bytes.fromhex("4e487b71")  # Panic(uint256)


class ConnectivityError(Exception):
    """No RPC endpoint could serve the request."""


class RevertError(Exception):
    """The contract rejected the call. `reason` is the decoded revert string."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


def decode_revert_data(data) -> str | None:
    """Decode ABI-encoded revert data into a readable reason."""
    if isinstance(data, str):
        try:
            raw = bytes.fromhex(data[2:] if data.startswith("0x") else data)
        except ValueError:
            return None
    elif isinstance(data, (bytes, bytearray)):
        raw = bytes(data)
    else:
        return None
    if len(raw) < 4:
        return None
    selector = raw[:4]
    if selector == _ERROR_SELECTOR and len(raw) >= 4 + 32 + 32:
        strlen = int.from_bytes(raw[36:68], "big")
        return raw[68:68 + strlen].decode("utf-8", errors="replace")
    if selector == _PANIC_SELECTOR and len(raw) >= 36:
        return f"panic(0x{int.from_bytes(raw[4:36], 'big'):02x})"
    return None


def explain_revert(exc: Exception) -> str:
    """Best-effort human-readable reason for a reverted call."""
    data = getattr(exc, "data", None)
    message = getattr(exc, "message", None)
    if isinstance(exc, ValueError) and exc.args and isinstance(exc.args[0], dict):
        err = exc.args[0]
        data = err.get("data")
        message = err.get("message")
    if isinstance(data, dict):
        data = data.get("data")
    decoded = decode_revert_data(data)
    if decoded:
        return decoded
    text = str(message or exc).strip()
    if text.lower().startswith("execution reverted:"):
        text = text.split(":", 1)[1].strip()
    return text or "Transaction would revert"


def is_connectivity_error(exc: Exception) -> bool:
    # requests' exceptions derive from OSError, as do socket timeouts
    return isinstance(exc, (ConnectivityError, requests.exceptions.RequestException, OSError))


@dataclass(frozen=True)
class ChainEvent:
    name: str
    args: dict
    tx_hash: str
    block_number: int


@dataclass(frozen=True)
class PendingTx:
    tx_hash: str
    function_name: str


@dataclass(frozen=True)
class Receipt:
    tx_hash: str
    status: int
    block_number: int

    @property
    def ok(self) -> bool:
        return self.status == 1


ZERO_ADDRESS = "0x" + "0" * 40


def task_from_struct(result) -> dict:
    """Decode a getTask() result into plain task fields."""
    (creator, reward, description, deadline, completed, agent, solution, created_at) = result
    return {
        "creator": creator,
        "reward": int(reward),
        "description": description,
        "deadline": int(deadline),
        "completed": bool(completed),
        "agent": None if not agent or agent == ZERO_ADDRESS else agent,
        "solution": solution or None,
        "created_at": int(created_at),
    }


class LedgerBackend(ABC):
    """What the mirror and the fulfillment loop need from the ledger."""

    agent_address: str | None = None
    contract_address: str | None = None

    @abstractmethod
    def current_height(self) -> int:
        ...

    @abstractmethod
    def query_events(self, event_name: str, from_block: int, to_block: int) -> list[ChainEvent]:
        ...

    @abstractmethod
    def read_call(self, function_name: str, *args):
        ...

    @abstractmethod
    def token_balance(self, token_address: str, holder: str) -> int:
        ...

    @abstractmethod
    def estimate_gas(self, function_name: str, *args) -> int:
        """Pre-flight a write. Raises RevertError if the real call would fail."""
        ...

    @abstractmethod
    def write_call(self, function_name: str, *args) -> PendingTx:
        ...

    @abstractmethod
    def confirm(self, pending: PendingTx) -> Receipt:
        """Block until mined. A reverted transaction comes back with status 0."""
        ...

    @abstractmethod
    def reconnect(self) -> None:
        ...


@dataclass(frozen=True)
class _Connection:
    url: str
    web3: Web3
    ledger: object  # web3 Contract bound to this connection


def _http_web3(url: str, timeout: float) -> Web3:
    return Web3(HTTPProvider(url, request_kwargs={"timeout": timeout}))


class ChainClient(LedgerBackend):
    """web3.py ledger backend with ordered endpoint failover.

    The first endpoint that answers eth_blockNumber (and, when chain_id is
    set, reports the expected chain) becomes the active connection. A
    connectivity failure mid-call reconnects once through the whole list
    and retries the call.
    """

    def __init__(self, rpc_urls: list[str], contract_address: str,
                 private_key: str | None = None, chain_id: int | None = DEFAULT_CHAIN_ID,
                 timeout: float = RPC_TIMEOUT, receipt_timeout: float = RECEIPT_TIMEOUT,
                 web3_factory=None):
        urls = list(dict.fromkeys(u.strip() for u in rpc_urls if u and u.strip()))
        if not urls:
            raise ValueError("At least one RPC endpoint is required")
        self.rpc_urls = urls
        self.contract_address = Web3.to_checksum_address(contract_address)
        self.chain_id = chain_id
        self.timeout = timeout
        self.receipt_timeout = receipt_timeout
        self._web3_factory = web3_factory or _http_web3
        self._account = Account.from_key(private_key) if private_key else None
        self.agent_address = self._account.address if self._account else None
        self._lock = threading.Lock()
        self._conn: _Connection | None = None

    @property
    def active_url(self) -> str | None:
        conn = self._conn
        return conn.url if conn else None

    # --- Connection handling ---

    def _connect(self) -> _Connection:
        failures = []
        for url in self.rpc_urls:
            try:
                w3 = self._web3_factory(url, self.timeout)
                height = w3.eth.block_number
                if self.chain_id is not None and w3.eth.chain_id != self.chain_id:
                    raise ConnectivityError(f"chain id {w3.eth.chain_id}, expected {self.chain_id}")
            except Exception as e:
                logger.warning("[chain] RPC %s failed (%s), trying next...", url, e)
                failures.append(f"{url}: {e}")
                continue
            ledger = w3.eth.contract(address=self.contract_address, abi=LEDGER_ABI)
            logger.info("[chain] Connected to RPC %s (block %s)", url, height)
            return _Connection(url=url, web3=w3, ledger=ledger)
        raise ConnectivityError("All RPC endpoints failed: " + "; ".join(failures))

    def _handle(self) -> _Connection:
        with self._lock:
            if self._conn is None:
                self._conn = self._connect()
            return self._conn

    def _replace(self, stale: _Connection | None) -> _Connection:
        with self._lock:
            # Another thread may already have swapped the handle
            if self._conn is stale or self._conn is None:
                self._conn = self._connect()
            return self._conn

    def reconnect(self) -> None:
        self._replace(self._conn)

    def _call(self, op):
        conn = self._handle()
        try:
            return op(conn)
        except Exception as e:
            if not is_connectivity_error(e):
                raise
            logger.warning("[chain] RPC %s failed mid-call (%s), reconnecting", conn.url, e)
        conn = self._replace(conn)
        try:
            return op(conn)
        except Exception as e:
            if is_connectivity_error(e) and not isinstance(e, ConnectivityError):
                raise ConnectivityError(str(e)) from e
            raise

    def _require_account(self):
        if self._account is None:
            raise RuntimeError("Agent private key not configured; cannot sign transactions")
        return self._account

    # --- Reads ---

    def current_height(self) -> int:
        return self._call(lambda c: int(c.web3.eth.block_number))

    def query_events(self, event_name: str, from_block: int, to_block: int) -> list[ChainEvent]:
        topic = Web3.to_hex(Web3.keccak(text=EVENT_SIGNATURES[event_name]))

        def fetch(c):
            logs = c.web3.eth.get_logs({
                "address": self.contract_address,
                "fromBlock": from_block,
                "toBlock": to_block,
                "topics": [topic],
            })
            return c, logs

        conn, logs = self._call(fetch)
        event = getattr(conn.ledger.events, event_name)()
        events = []
        for log in logs:
            try:
                decoded = event.process_log(log)
            except Exception as e:
                logger.warning("[chain] Skipping undecodable %s log in block %s: %s",
                               event_name, log.get("blockNumber"), e)
                continue
            events.append(ChainEvent(
                name=event_name,
                args=dict(decoded["args"]),
                tx_hash=Web3.to_hex(decoded["transactionHash"]),
                block_number=int(decoded["blockNumber"]),
            ))
        return events

    def read_call(self, function_name: str, *args):
        return self._call(lambda c: getattr(c.ledger.functions, function_name)(*args).call())

    def token_balance(self, token_address: str, holder: str) -> int:
        def op(c):
            token = c.web3.eth.contract(address=Web3.to_checksum_address(token_address), abi=TOKEN_ABI)
            return int(token.functions.balanceOf(Web3.to_checksum_address(holder)).call())
        return self._call(op)

    # --- Writes ---

    def estimate_gas(self, function_name: str, *args) -> int:
        account = self._require_account()

        def op(c):
            fn = getattr(c.ledger.functions, function_name)(*args)
            try:
                return int(fn.estimate_gas({"from": account.address}))
            except ContractLogicError as e:
                raise RevertError(explain_revert(e)) from e
            except ValueError as e:
                if e.args and isinstance(e.args[0], dict):
                    raise RevertError(explain_revert(e)) from e
                raise

        return self._call(op)

    def write_call(self, function_name: str, *args) -> PendingTx:
        account = self._require_account()

        def op(c):
            w3 = c.web3
            try:
                tx = getattr(c.ledger.functions, function_name)(*args).build_transaction({
                    "from": account.address,
                    "nonce": w3.eth.get_transaction_count(account.address, "pending"),
                    "chainId": w3.eth.chain_id,
                })
            except ContractLogicError as e:
                raise RevertError(explain_revert(e)) from e
            signed = account.sign_transaction(tx)
            return w3.eth.send_raw_transaction(signed.raw_transaction)

        tx_hash = Web3.to_hex(self._call(op))
        logger.info("[chain] Sent %s: %s", function_name, tx_hash)
        return PendingTx(tx_hash=tx_hash, function_name=function_name)

    def confirm(self, pending: PendingTx) -> Receipt:
        receipt = self._call(lambda c: c.web3.eth.wait_for_transaction_receipt(
            pending.tx_hash, timeout=self.receipt_timeout))
        return Receipt(
            tx_hash=pending.tx_hash,
            status=int(receipt["status"]),
            block_number=int(receipt["blockNumber"]),
        )


class SimLedger(LedgerBackend):
    """Simulated ledger for development and tests.

    Keeps tasks, blocks, events and the escrow token balance in memory.
    Enforces the same require() rules as the contract:
    - Invalid task ID for unknown ids
    - Task already completed
    - Task deadline has passed
    - Payment transfer failed when escrow cannot cover the reward

    Failure injection:
        sim.fail("current_height", requests.ConnectionError("down"), times=2)
        sim.fail("query_events:TaskCreated", TimeoutError(), times=4)
        sim.revert_receipts = 1  # next mined submission comes back status 0
    """

    TOKEN_ADDRESS = "0x0D10aC728b7DE11183c22ebE5027369394808708"
    CONTRACT_ADDRESS = "0x34F0f88b1E637640F1fB0B01dBDFd02F7a8B7B92"

    def __init__(self, agent_address: str = "0x000000000000000000000000000000000000a6e4",
                 clock=time.time, start_block: int = 0):
        self.agent_address = agent_address
        self.token_address = self.TOKEN_ADDRESS
        self.contract_address = self.CONTRACT_ADDRESS
        self.clock = clock
        self.height = start_block
        self.tasks: dict[int, dict] = {}
        self.events: list[ChainEvent] = []
        self.escrow_balance = 0
        self.writes: list[dict] = []  # log of submitted writes for test assertions
        self.reconnects = 0
        self.revert_receipts = 0
        self.calls: dict[str, int] = {}
        self._failures: dict[str, list[Exception]] = {}
        self._pending: dict[str, tuple[str, tuple]] = {}
        self._tx_counter = 0
        self._lock = threading.Lock()

    # --- SimLedger-only methods (for test setup) ---

    def fail(self, op: str, exc: Exception, times: int = 1):
        self._failures.setdefault(op, []).extend([exc] * times)

    def mine(self, blocks: int = 1) -> int:
        self.height += blocks
        return self.height

    def create_task(self, description: str, reward: int, deadline: int,
                    creator: str = "0x000000000000000000000000000000000000c0de") -> int:
        """Simulate a user calling createTask (reward is pulled into escrow)."""
        with self._lock:
            task_id = len(self.tasks) + 1
            block = self.mine()
            self.tasks[task_id] = {
                "creator": creator, "reward": int(reward), "description": description,
                "deadline": int(deadline), "completed": False, "agent": None,
                "solution": "", "createdAt": int(self.clock()),
            }
            self.escrow_balance += int(reward)
            self._emit("TaskCreated", block, taskId=task_id, creator=creator, reward=int(reward),
                       description=description, deadline=int(deadline))
            return task_id

    def cancel_task(self, task_id: int):
        """Simulate the creator calling cancelTask (reward refunded)."""
        with self._lock:
            reason = self._check_pending(task_id, check_deadline=False)
            if reason:
                raise RevertError(reason)
            task = self.tasks[task_id]
            task["completed"] = True
            self.escrow_balance -= task["reward"]
            self._emit("TaskCancelled", self.mine(), taskId=task_id, creator=task["creator"],
                       refundAmount=task["reward"])

    def complete_task(self, task_id: int, agent: str, solution: str) -> str:
        """Simulate another agent completing the task first."""
        with self._lock:
            return self._apply_submit(task_id, agent, solution, self.mine())

    # --- Internals ---

    def _maybe_fail(self, op: str, detail: str = ""):
        self.calls[op] = self.calls.get(op, 0) + 1
        for key in (f"{op}:{detail}", op):
            queue = self._failures.get(key)
            if queue:
                raise queue.pop(0)

    def _next_hash(self) -> str:
        self._tx_counter += 1
        return f"0x{self._tx_counter:064x}"

    def _emit(self, name: str, block: int, tx_hash: str | None = None, **args) -> str:
        tx_hash = tx_hash or self._next_hash()
        self.events.append(ChainEvent(name=name, args=args, tx_hash=tx_hash, block_number=block))
        return tx_hash

    def _check_pending(self, task_id: int, check_deadline: bool = True) -> str | None:
        task = self.tasks.get(task_id)
        if task is None:
            return "Invalid task ID"
        if task["completed"]:
            return "Task already completed"
        if check_deadline and self.clock() > task["deadline"]:
            return "Task deadline has passed"
        return None

    def _check_submit(self, task_id: int) -> str | None:
        reason = self._check_pending(task_id)
        if reason:
            return reason
        if self.escrow_balance < self.tasks[task_id]["reward"]:
            return "Payment transfer failed"
        return None

    def _apply_submit(self, task_id: int, agent: str, solution: str, block: int) -> str:
        reason = self._check_submit(task_id)
        if reason:
            raise RevertError(reason)
        task = self.tasks[task_id]
        task.update(completed=True, agent=agent, solution=solution)
        self.escrow_balance -= task["reward"]
        tx_hash = self._emit("TaskCompleted", block, taskId=task_id, agent=agent, solution=solution)
        self._emit("PaymentReleased", block, tx_hash=tx_hash, taskId=task_id, agent=agent,
                   amount=task["reward"])
        return tx_hash

    # --- LedgerBackend interface ---

    def current_height(self) -> int:
        self._maybe_fail("current_height")
        return self.height

    def query_events(self, event_name: str, from_block: int, to_block: int) -> list[ChainEvent]:
        self._maybe_fail("query_events", event_name)
        return [e for e in self.events
                if e.name == event_name and from_block <= e.block_number <= to_block]

    def read_call(self, function_name: str, *args):
        self._maybe_fail("read_call", function_name)
        if function_name == "getTask":
            task = self.tasks.get(int(args[0]))
            if task is None:
                raise RevertError("Invalid task ID")
            return (task["creator"], task["reward"], task["description"], task["deadline"],
                    task["completed"], task["agent"] or ZERO_ADDRESS, task["solution"],
                    task["createdAt"])
        if function_name == "getPendingTasks":
            return [tid for tid, t in sorted(self.tasks.items()) if not t["completed"]]
        if function_name == "taskCounter":
            return len(self.tasks)
        if function_name == "mnee":
            return self.token_address
        raise ValueError(f"Unknown function: {function_name}")

    def token_balance(self, token_address: str, holder: str) -> int:
        self._maybe_fail("token_balance")
        return self.escrow_balance

    def estimate_gas(self, function_name: str, *args) -> int:
        self._maybe_fail("estimate_gas", function_name)
        if function_name == "submitResult":
            reason = self._check_submit(int(args[0]))
            if reason:
                raise RevertError(reason)
        return 90_000 + 16 * sum(len(a) for a in args if isinstance(a, str))

    def write_call(self, function_name: str, *args) -> PendingTx:
        self._maybe_fail("write_call", function_name)
        with self._lock:
            tx_hash = self._next_hash()
            self._pending[tx_hash] = (function_name, args)
            self.writes.append({"function": function_name, "args": args, "tx_hash": tx_hash})
        return PendingTx(tx_hash=tx_hash, function_name=function_name)

    def confirm(self, pending: PendingTx) -> Receipt:
        self._maybe_fail("confirm")
        with self._lock:
            function_name, args = self._pending.pop(pending.tx_hash)
            block = self.mine()
            if self.revert_receipts > 0:
                self.revert_receipts -= 1
                return Receipt(tx_hash=pending.tx_hash, status=0, block_number=block)
            if function_name != "submitResult":
                raise ValueError(f"SimLedger cannot mine {function_name}")
            task_id, agent, solution = args
            try:
                self._apply_submit(int(task_id), agent, solution, block)
            except RevertError:
                return Receipt(tx_hash=pending.tx_hash, status=0, block_number=block)
            return Receipt(tx_hash=pending.tx_hash, status=1, block_number=block)

    def reconnect(self) -> None:
        self.reconnects += 1
