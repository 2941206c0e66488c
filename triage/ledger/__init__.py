"""
Audit ledger: record hashes and access events.
"""

from typing import Optional

from triage.config import LedgerConfig, RetryPolicy
from triage.ledger.client import (
    AuditEntry,
    LedgerClient,
    LedgerItemResult,
    LedgerReceipt,
    subject_owner_address,
)
from triage.ledger.contract import (
    LedgerContract,
    LedgerRecord,
    MemoryLedgerContract,
    TxResult,
    Web3LedgerContract,
)


def create_ledger_client(config: LedgerConfig, retry_policy: RetryPolicy) -> Optional[LedgerClient]:
    """Ledger client for `config`, or None when ledger logging is disabled."""
    if not config.enabled:
        return None
    if config.mode == "web3":
        contract: LedgerContract = Web3LedgerContract(
            rpc_url=config.rpc_url,
            contract_address=config.contract_address,
            private_key=config.private_key,
            network=config.network,
            timeout_s=config.timeout_s,
            from_block=config.from_block,
        )
    else:
        contract = MemoryLedgerContract()
    return LedgerClient(
        contract,
        owner_mode=config.owner_mode,
        retry_policy=retry_policy,
        timeout_s=config.timeout_s,
    )


__all__ = [
    "AuditEntry",
    "LedgerClient",
    "LedgerContract",
    "LedgerItemResult",
    "LedgerReceipt",
    "LedgerRecord",
    "MemoryLedgerContract",
    "TxResult",
    "Web3LedgerContract",
    "create_ledger_client",
    "subject_owner_address",
]
