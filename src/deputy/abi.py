"""Minimal contract ABIs for the ledger and agent calls the keeper makes."""

from __future__ import annotations


def _fn(name: str, inputs: list[tuple[str, str]], outputs: list[dict], mutability: str) -> dict:
    return {
        "type": "function",
        "name": name,
        "inputs": [{"name": n, "type": t, "internalType": t} for n, t in inputs],
        "outputs": outputs,
        "stateMutability": mutability,
    }


def _tuple_output(struct: str, components: list[tuple[str, str]]) -> list[dict]:
    return [
        {
            "name": "",
            "type": "tuple",
            "internalType": f"struct {struct}",
            "components": [{"name": n, "type": t, "internalType": t} for n, t in components],
        }
    ]


def _uint_output() -> list[dict]:
    return [{"name": "", "type": "uint256", "internalType": "uint256"}]


def _event(name: str, inputs: list[tuple[str, str, bool]]) -> dict:
    return {
        "type": "event",
        "name": name,
        "anonymous": False,
        "inputs": [
            {"name": n, "type": t, "indexed": indexed, "internalType": t}
            for n, t, indexed in inputs
        ],
    }


DELEGATION_FIELDS = [
    ("agent", "address"),
    ("dailyLimit", "uint256"),
    ("spentToday", "uint256"),
    ("lastResetTimestamp", "uint256"),
    ("active", "bool"),
    ("expiry", "uint256"),
]

MASTER_AGENT_ABI = [
    _fn(
        "getDelegation",
        [("user", "address"), ("agent", "address")],
        _tuple_output("MasterAgent.DelegatedPermission", DELEGATION_FIELDS),
        "view",
    ),
    _event(
        "PermissionDelegated",
        [
            ("user", "address", True),
            ("agent", "address", True),
            ("dailyLimit", "uint256", False),
            ("expiry", "uint256", False),
        ],
    ),
]

DCA_SCHEDULE_FIELDS = [
    ("user", "address"),
    ("inputToken", "address"),
    ("outputToken", "address"),
    ("amountPerPurchase", "uint256"),
    ("intervalSeconds", "uint256"),
    ("lastExecutionTime", "uint256"),
    ("poolFee", "uint24"),
    ("slippageBps", "uint256"),
    ("active", "bool"),
]

DCA_AGENT_ABI = [
    _fn(
        "getSchedule",
        [("user", "address"), ("scheduleId", "uint256")],
        _tuple_output("DCAAgent.DCASchedule", DCA_SCHEDULE_FIELDS),
        "view",
    ),
    _fn("getUserScheduleCount", [("user", "address")], _uint_output(), "view"),
    _fn(
        "canExecute",
        [("user", "address"), ("scheduleId", "uint256")],
        [{"name": "", "type": "bool", "internalType": "bool"}],
        "view",
    ),
    _fn("executeDCA", [("user", "address"), ("scheduleId", "uint256")], [], "nonpayable"),
    _event(
        "DCAScheduleCreated",
        [
            ("user", "address", True),
            ("scheduleId", "uint256", True),
            ("amountPerPurchase", "uint256", False),
            ("intervalSeconds", "uint256", False),
            ("poolFee", "uint24", False),
        ],
    ),
    _event(
        "DCAExecuted",
        [
            ("user", "address", True),
            ("scheduleId", "uint256", True),
            ("amountSpent", "uint256", False),
            ("amountReceived", "uint256", False),
        ],
    ),
    _event(
        "DCAScheduleCancelled",
        [("user", "address", True), ("scheduleId", "uint256", True)],
    ),
]

YIELD_STRATEGY_FIELDS = [
    ("user", "address"),
    ("token", "address"),
    ("aToken", "address"),
    ("strategyType", "uint8"),
    ("targetAllocation", "uint256"),
    ("currentDeposited", "uint256"),
    ("totalYieldEarned", "uint256"),
    ("lastHarvestTime", "uint256"),
    ("active", "bool"),
]

YIELD_AGENT_ABI = [
    _fn(
        "getStrategy",
        [("user", "address"), ("strategyId", "uint256")],
        _tuple_output("YieldAgent.YieldStrategy", YIELD_STRATEGY_FIELDS),
        "view",
    ),
    _fn("getUserStrategyCount", [("user", "address")], _uint_output(), "view"),
    _fn("executeDeposit", [("user", "address"), ("strategyId", "uint256")], [], "nonpayable"),
    _event(
        "YieldStrategyCreated",
        [
            ("user", "address", True),
            ("strategyId", "uint256", True),
            ("amount", "uint256", False),
        ],
    ),
    _event(
        "DepositExecuted",
        [
            ("user", "address", True),
            ("strategyId", "uint256", True),
            ("amount", "uint256", False),
            ("sharesReceived", "uint256", False),
        ],
    ),
]
