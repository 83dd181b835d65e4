"""Tests for server/chain.py -- revert decoding, endpoint failover, SimLedger rules."""

import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
sys.path.insert(0, os.path.dirname(__file__))

import pytest
import requests
from web3.exceptions import ContractLogicError

from server.chain import (
    ChainClient, ConnectivityError, RevertError, SimLedger,
    decode_revert_data, explain_revert, is_connectivity_error, task_from_struct,
)
from conftest import AGENT, NOW, REWARD

CONTRACT = "0x34F0f88b1E637640F1fB0B01dBDFd02F7a8B7B92"
AGENT_KEY = "0x" + "11" * 32


def encode_error(reason: str) -> str:
    body = reason.encode()
    padded = body + b"\x00" * (-len(body) % 32)
    raw = bytes.fromhex("08c379a0") + (32).to_bytes(32, "big") + len(body).to_bytes(32, "big") + padded
    return "0x" + raw.hex()


# --- Fake web3 (only the surface ChainClient touches) ---

class FakeCall:
    def __init__(self, node, name, args):
        self.node = node
        self.name = name
        self.args = args

    def call(self):
        self.node.check()
        self.node.calls.append(self.name)
        return self.node.results[self.name]

    def estimate_gas(self, tx):
        self.node.check()
        if self.node.revert_reason:
            raise ContractLogicError(message=f"execution reverted: {self.node.revert_reason}",
                                     data=encode_error(self.node.revert_reason))
        return 100_000


class FakeFunctions:
    def __init__(self, node):
        self._node = node

    def __getattr__(self, name):
        return lambda *args: FakeCall(self._node, name, args)


class FakeContract:
    def __init__(self, node):
        self.functions = FakeFunctions(node)


class FakeEth:
    def __init__(self, node):
        self._node = node

    @property
    def block_number(self):
        self._node.check()
        return self._node.height

    @property
    def chain_id(self):
        return self._node.chain_id

    def contract(self, address=None, abi=None):
        return FakeContract(self._node)


class FakeNode:
    def __init__(self, height=500, chain_id=11155111, down=False):
        self.height = height
        self.chain_id = chain_id
        self.down = down
        self.revert_reason = None
        self.results = {"getPendingTasks": [1, 2], "taskCounter": 2}
        self.calls = []
        self.eth = FakeEth(self)

    def check(self):
        if self.down:
            raise requests.exceptions.ConnectionError("connection refused")


def make_client(nodes: dict, **kwargs):
    connects = []

    def factory(url, timeout):
        connects.append(url)
        return nodes[url]

    client = ChainClient(list(nodes), CONTRACT, web3_factory=factory, **kwargs)
    return client, connects


class TestRevertDecoding:
    def test_error_string(self):
        assert decode_revert_data(encode_error("Task already completed")) == "Task already completed"

    def test_error_bytes(self):
        raw = bytes.fromhex(encode_error("Invalid task ID")[2:])
        assert decode_revert_data(raw) == "Invalid task ID"

    def test_panic(self):
        raw = bytes.fromhex("4e487b71") + (0x11).to_bytes(32, "big")
        assert decode_revert_data(raw) == "panic(0x11)"

    def test_garbage(self):
        assert decode_revert_data("0x12") is None
        assert decode_revert_data("not hex") is None
        assert decode_revert_data(None) is None

    def test_explain_contract_logic_error(self):
        exc = ContractLogicError(message="execution reverted: whatever",
                                 data=encode_error("Task deadline has passed"))
        assert explain_revert(exc) == "Task deadline has passed"

    def test_explain_strips_prefix(self):
        exc = ContractLogicError(message="execution reverted: Payment transfer failed")
        assert explain_revert(exc) == "Payment transfer failed"

    def test_explain_rpc_error_dict(self):
        exc = ValueError({"code": 3, "message": "execution reverted", "data": encode_error("Invalid task ID")})
        assert explain_revert(exc) == "Invalid task ID"


class TestConnectivityErrors:
    def test_classification(self):
        assert is_connectivity_error(requests.exceptions.ConnectionError())
        assert is_connectivity_error(TimeoutError())
        assert is_connectivity_error(ConnectivityError("all down"))
        assert not is_connectivity_error(RevertError("Task already completed"))
        assert not is_connectivity_error(ValueError("bad"))


class TestChainClientFailover:
    def test_requires_endpoint(self):
        with pytest.raises(ValueError):
            ChainClient([], CONTRACT)

    def test_first_healthy_endpoint_wins(self):
        nodes = {"http://a": FakeNode(down=True), "http://b": FakeNode(height=777)}
        client, connects = make_client(nodes)
        assert client.current_height() == 777
        assert client.active_url == "http://b"
        assert connects == ["http://a", "http://b"]

    def test_wrong_chain_skipped(self):
        nodes = {"http://a": FakeNode(chain_id=1), "http://b": FakeNode(height=5)}
        client, _ = make_client(nodes)
        assert client.current_height() == 5
        assert client.active_url == "http://b"

    def test_all_endpoints_down(self):
        nodes = {"http://a": FakeNode(down=True), "http://b": FakeNode(down=True)}
        client, _ = make_client(nodes)
        with pytest.raises(ConnectivityError):
            client.current_height()

    def test_reconnects_once_mid_call(self):
        a, b = FakeNode(), FakeNode()
        client, connects = make_client({"http://a": a, "http://b": b})
        assert client.read_call("getPendingTasks") == [1, 2]
        assert client.active_url == "http://a"

        a.down = True
        assert client.read_call("taskCounter") == 2
        assert client.active_url == "http://b"
        assert b.calls == ["taskCounter"]

    def test_connection_reused(self):
        client, connects = make_client({"http://a": FakeNode()})
        client.current_height()
        client.current_height()
        assert connects == ["http://a"]

    def test_revert_not_treated_as_connectivity(self):
        a = FakeNode()
        a.revert_reason = "Task already completed"
        client, connects = make_client({"http://a": a, "http://b": FakeNode()}, private_key=AGENT_KEY)
        with pytest.raises(RevertError) as exc_info:
            client.estimate_gas("submitResult", 1, client.agent_address, "x")
        assert exc_info.value.reason == "Task already completed"
        assert connects == ["http://a"]

    def test_writes_require_key(self):
        client, _ = make_client({"http://a": FakeNode()})
        assert client.agent_address is None
        with pytest.raises(RuntimeError):
            client.estimate_gas("submitResult", 1, "0x0", "x")

    def test_agent_address_from_key(self):
        client, _ = make_client({"http://a": FakeNode()}, private_key=AGENT_KEY)
        assert client.agent_address.startswith("0x")
        assert len(client.agent_address) == 42


class TestTaskFromStruct:
    def test_zero_agent_is_none(self):
        task = task_from_struct(("0xc0de", 5, "d", 10, False, "0x" + "0" * 40, "", 3))
        assert task["agent"] is None
        assert task["solution"] is None
        assert task["reward"] == 5


class TestSimLedger:
    def test_create_emits_event(self, sim):
        task_id = sim.create_task("hello", REWARD, NOW + 3600)
        events = sim.query_events("TaskCreated", 0, sim.height)
        assert [e.args["taskId"] for e in events] == [task_id]
        assert sim.escrow_balance == REWARD
        assert sim.read_call("getPendingTasks") == [task_id]

    def test_submit_flow(self, sim):
        task_id = sim.create_task("hello", REWARD, NOW + 3600)
        sim.estimate_gas("submitResult", task_id, AGENT, "hi")
        receipt = sim.confirm(sim.write_call("submitResult", task_id, AGENT, "hi"))
        assert receipt.ok
        task = task_from_struct(sim.read_call("getTask", task_id))
        assert task["completed"] and task["agent"] == AGENT
        assert sim.read_call("getPendingTasks") == []
        assert sim.escrow_balance == 0

    def test_second_submit_reverts(self, sim):
        task_id = sim.create_task("hello", REWARD, NOW + 3600)
        sim.complete_task(task_id, "0xother", "first")
        with pytest.raises(RevertError, match="Task already completed"):
            sim.estimate_gas("submitResult", task_id, AGENT, "second")
        receipt = sim.confirm(sim.write_call("submitResult", task_id, AGENT, "second"))
        assert receipt.status == 0

    def test_deadline_enforced(self, sim, clock):
        task_id = sim.create_task("hello", REWARD, NOW + 10)
        clock.now = NOW + 11
        with pytest.raises(RevertError, match="deadline"):
            sim.estimate_gas("submitResult", task_id, AGENT, "late")

    def test_invalid_task(self, sim):
        with pytest.raises(RevertError, match="Invalid task ID"):
            sim.estimate_gas("submitResult", 42, AGENT, "x")

    def test_short_escrow(self, sim):
        task_id = sim.create_task("hello", REWARD, NOW + 3600)
        sim.escrow_balance = 0
        with pytest.raises(RevertError, match="Payment transfer failed"):
            sim.estimate_gas("submitResult", task_id, AGENT, "x")

    def test_cancel(self, sim):
        task_id = sim.create_task("hello", REWARD, NOW + 3600)
        sim.cancel_task(task_id)
        events = sim.query_events("TaskCancelled", 0, sim.height)
        assert events[0].args["refundAmount"] == REWARD
        assert sim.read_call("getPendingTasks") == []

    def test_failure_injection(self, sim):
        sim.fail("current_height", requests.exceptions.ConnectionError("down"), times=2)
        for _ in range(2):
            with pytest.raises(requests.exceptions.ConnectionError):
                sim.current_height()
        assert sim.current_height() == sim.height

    def test_scoped_failure_injection(self, sim):
        sim.fail("query_events:TaskCompleted", TimeoutError())
        assert sim.query_events("TaskCreated", 0, 10) == []
        with pytest.raises(TimeoutError):
            sim.query_events("TaskCompleted", 0, 10)
