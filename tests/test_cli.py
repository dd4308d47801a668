"""
Tests for the IVS console: output formatting, the in-memory simulation, and the
chain commands against a simulated JSON-RPC node.
"""

from __future__ import annotations

import asyncio
import json

import pytest

from backend_ivs.core.exceptions import ConfigError
from backend_ivs.decryption.models import DataKind, DecryptionOutcome
from backend_ivs.decryption.renderer import render
from backend_ivs.tools import ivs_cli
from backend_ivs.tools.ivs_cli import (
    EXIT_FAILED,
    EXIT_OK,
    build_parser,
    format_outcome,
    format_summary,
    load_health_inputs,
    main,
    run_simulation,
)
from evm_node import (
    COMPLETED_TOPIC,
    CONTRACT,
    SENDER,
    FakeNode,
    abi_result,
    calldata,
    completed_log,
    make_client,
    receipt,
    requested_log,
    revert,
    selector,
)


def test_simulation_decrypts_expected_scores():
    """Five-user example: every decrypted IVS equals the locally computed value."""
    results, expected = asyncio.run(run_simulation(2, 0.01, 5.0))
    assert expected == {2: 5000, 3: 5000, 4: 2500, 5: 2500}
    for user, value in expected.items():
        assert results[user][DataKind.SCORE].raw_value == value
    assert results[1][DataKind.HEALTH_STATUS].rendered.raw_value == 1
    assert results[1][DataKind.SCORE] is None


def test_simulate_command_exit_code(clean_settings, capsys):
    assert main(["simulate", "--dmax", "1", "--latency", "0.01", "--timeout", "5"]) == EXIT_OK
    out = capsys.readouterr().out
    assert "User 4: expected 0, decrypted 0" in out
    assert "<-- mismatch" not in out


def test_format_outcome():
    ok = DecryptionOutcome.success(3, 2, render(5000, DataKind.SCORE))
    assert format_outcome(ok) == "user 2 [ivs] request 3: 0.500 (HIGH) (raw 5000)"
    timeout = DecryptionOutcome.timeout(4, 2, DataKind.HEALTH_STATUS)
    assert format_outcome(timeout).startswith("user 2 [health] request 4: TIMEOUT - ")


def test_format_summary():
    results = {
        2: {
            DataKind.HEALTH_STATUS: DecryptionOutcome.success(1, 2, render(0, DataKind.HEALTH_STATUS)),
            DataKind.SCORE: DecryptionOutcome.success(2, 2, render(2500, DataKind.SCORE)),
        },
        1: {
            DataKind.HEALTH_STATUS: DecryptionOutcome.timeout(3, 1, DataKind.HEALTH_STATUS),
            DataKind.SCORE: None,
        },
    }
    lines = format_summary(results).splitlines()
    assert lines[2] == "   1 | TIMEOUT |    N/A | -"
    assert lines[3] == "   2 |      0 |  0.250 | MEDIUM"


def test_parser_kind_tags():
    args = build_parser().parse_args(["decrypt", "--userid", "7", "--kind", "health"])
    assert args.kind is DataKind.HEALTH_STATUS
    assert args.timeout is None


def test_parser_admin_commands():
    parser = build_parser()
    args = parser.parse_args(["add-contact", "--user-a", "1", "--user-b", "2"])
    assert (args.user_a, args.user_b) == (1, 2)
    assert parser.parse_args(["compute"]).dmax == 2
    args = parser.parse_args(["set-health", "--userid", "1", "--handle", "0x" + "ab" * 32, "--proof", "0x01"])
    assert args.handle == "0x" + "ab" * 32
    with pytest.raises(SystemExit):
        parser.parse_args(["set-health", "--userid", "1", "--handle", "0x12", "--proof", "0x"])
    with pytest.raises(SystemExit):
        parser.parse_args(["set-health", "--userid", "1", "--handle", "0x" + "zz" * 32, "--proof", "0x"])


def test_load_health_inputs(tmp_path):
    path = tmp_path / "health.json"
    path.write_text(json.dumps({"1": {"handle": "0x" + "aa" * 32, "proof": "0x01"}}))
    assert load_health_inputs(path) == {1: ("0x" + "aa" * 32, "0x01")}
    path.write_text(json.dumps({"one": {"handle": "0x", "proof": "0x"}}))
    with pytest.raises(ConfigError):
        load_health_inputs(path)
    with pytest.raises(ConfigError):
        load_health_inputs(tmp_path / "missing.json")


# --- chain commands against a simulated node ---


@pytest.fixture
def node(clean_settings, monkeypatch):
    """FakeNode wired into the console through open_engine."""
    fake = FakeNode()
    monkeypatch.setenv("IVS_CONTRACT_ADDRESS", CONTRACT)
    monkeypatch.setenv("IVS_SENDER_ADDRESS", SENDER)
    monkeypatch.setenv("IVS_POLL_INTERVAL_SEC", "0.01")
    monkeypatch.setenv("IVS_DECRYPT_TIMEOUT_SEC", "5")
    monkeypatch.setattr(ivs_cli, "open_engine", lambda settings: make_client(fake))
    return fake


def test_decrypt_command_end_to_end(node, capsys):
    """Submit, take the request id from the receipt, correlate the relayer's log."""
    logs = []

    def send_transaction(params):
        logs.append(completed_log(77, 2, 5000, "ivs", block=11))
        return "0x" + "11" * 32

    node.results["eth_sendTransaction"] = send_transaction
    node.results["eth_getLogs"] = lambda params: list(logs)
    node.default_receipt = receipt([requested_log(77, 2)])

    assert main(["decrypt", "--userid", "2"]) == EXIT_OK
    out = capsys.readouterr().out
    assert "user 2 [ivs] request 77: 0.500 (HIGH) (raw 5000)" in out


def test_decrypt_command_reports_revert(node, capsys):
    node.errors["eth_estimateGas"] = revert("UserNotRegistered(uint32)", ["uint32"], [9])
    assert main(["decrypt", "--userid", "9"]) == EXIT_FAILED
    out = capsys.readouterr().out
    assert "ENGINE_ERROR" in out
    assert "UserNotRegistered" in out


def test_check_events_lists_outstanding_requests(node, capsys):
    def get_logs(params):
        if params[0]["topics"] == [COMPLETED_TOPIC]:
            return [completed_log(5, 1, 1, "health", block=90)]
        return [requested_log(5, 1, block=80), requested_log(6, 2, block=81, index=1)]

    node.results["eth_blockNumber"] = "0x64"
    node.results["eth_getLogs"] = get_logs
    assert main(["check-events", "--blocks", "50"]) == EXIT_OK
    out = capsys.readouterr().out
    assert "Blocks 50..100" in out
    assert "DecryptionRequested: 2" in out
    assert "DecryptionCompleted: 1" in out
    assert "1 request(s) with no completion yet: [6]" in out


def test_setup_test_tolerates_registered_users(node, capsys):
    node.default_receipt = receipt([])
    node.reverts[calldata("registerUser(uint32)", ["uint32"], [1])] = revert(
        "UserAlreadyRegistered(uint32)", ["uint32"], [1]
    )
    assert main(["setup-test"]) == EXIT_OK
    out = capsys.readouterr().out
    assert "- user 1 already registered" in out
    assert "+ user 5 registered" in out
    assert "+ contact 3 <-> 5" in out
    sent = [tx["data"] for tx in node.sent_transactions()]
    assert len(sent) == 8
    assert calldata("addContact(uint32,uint32)", ["uint32", "uint32"], [2, 4]) in sent


def test_setup_test_reports_unauthorized_sender(node, capsys):
    node.errors["eth_estimateGas"] = revert("OnlyAdmin()")
    assert main(["setup-test"]) == EXIT_FAILED
    assert "Setup finished with 9 failure(s)." in capsys.readouterr().out


def test_register_and_info_commands(node, capsys):
    node.default_receipt = receipt([])
    node.calls_by_selector = {
        selector("admin()"): lambda data: abi_result(["address"], [SENDER]),
        selector("getTotalUsers()"): lambda data: abi_result(["uint256"], [2]),
        selector("isUserRegistered(uint32)"): lambda data: abi_result(["bool"], [True]),
        selector("getAllUsers()"): lambda data: abi_result(["uint32[]"], [[1, 2]]),
        selector("getUserContacts(uint32)"): lambda data: abi_result(
            ["uint32[]"], [[2] if data.endswith("1") else [1]]
        ),
    }
    assert main(["register", "--userid", "2"]) == EXIT_OK
    out = capsys.readouterr().out
    assert "confirmed in block 10" in out
    assert "User 2 registered: True" in out

    assert main(["info"]) == EXIT_OK
    out = capsys.readouterr().out
    assert f"Admin: {SENDER}" in out
    assert "User 1: contacts [2]" in out
    assert "User 2: contacts [1]" in out
