from typing import Any, Literal

# type aliases for clarity
EthereumAddress = str
BigNumber = str
HexStr = str
LogReceipt = dict[str, Any]
RunStatus = Literal[
    "complete",
    "needs_funding",
    "submission_failed",
    "daily_budget_reached",
    "cancelled",
    "max_batches",
]
