"""
Ledger Contract - Record-hash registry surface

Two implementations of the same contract semantics:
- Web3LedgerContract: the deployed contract over JSON-RPC (AsyncWeb3)
- MemoryLedgerContract: in-process emulation for development and tests

Raw events are returned as dicts shaped like web3 event logs
({"event", "args", "transactionHash", "blockNumber", "logIndex"}) so the
client parses both the same way.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple
import asyncio
import time

import structlog
from web3 import AsyncWeb3, Web3
from web3.exceptions import ContractLogicError, TimeExhausted

from triage.errors import (
    LedgerError,
    LedgerRecordExistsError,
    LedgerUnavailableError,
    OperationTimeoutError,
)
from triage.ledger.abi import AUDIT_EVENTS, LEDGER_ABI, RECORD_EXISTS_SELECTOR

logger = structlog.get_logger()


@dataclass(frozen=True)
class TxResult:
    """Mined transaction."""
    transaction_hash: str
    block_number: int


@dataclass(frozen=True)
class LedgerRecord:
    """Current on-ledger state of one record."""
    creator: str
    data_hash: str
    created_at: int
    last_modified: int


class LedgerContract(ABC):
    """Contract calls used by the ledger client."""

    network: str = "localhost"

    @property
    @abstractmethod
    def address(self) -> str:
        """Contract address."""

    @property
    @abstractmethod
    def sender_address(self) -> str:
        """Address transactions are sent from."""

    @abstractmethod
    async def create_record(self, resource_id: str, data_hash: str, owner: str) -> TxResult:
        """
        Raises:
            LedgerRecordExistsError: A record already exists for (resource_id, owner)
        """

    @abstractmethod
    async def update_record(self, resource_id: str, data_hash: str) -> TxResult:
        ...

    @abstractmethod
    async def get_record(self, resource_id: str, owner: str) -> Optional[LedgerRecord]:
        """Current state, or None when no record exists."""

    @abstractmethod
    async def record_exists(self, resource_id: str, owner: str) -> bool:
        ...

    @abstractmethod
    async def record_id(self, resource_id: str, owner: str) -> str:
        """Key the contract indexes events by, as 0x-hex."""

    @abstractmethod
    async def get_events(self, record_id: str) -> List[Dict[str, Any]]:
        """All audit events for a record id, across the six event kinds."""

    def hash_fingerprint(self, data_hash: str) -> str:
        """Representation the contract stores for a submitted hash string."""
        return data_hash


class MemoryLedgerContract(LedgerContract):
    """
    In-process ledger with the deployed contract's record semantics.

    Every write is mined into its own block. Sender authorization is not
    emulated: updates are accepted from any sender.
    """

    network = "memory"

    def __init__(
        self,
        sender: str = "0x00000000000000000000000000000000000000A1",
        clock: Callable[[], float] = time.time,
    ):
        self._sender = Web3.to_checksum_address(sender)
        self._clock = clock
        self._records: Dict[Tuple[str, str], LedgerRecord] = {}
        self._events: List[Dict[str, Any]] = []
        self._block = 0
        self._lock = asyncio.Lock()

    @property
    def address(self) -> str:
        return "0x0000000000000000000000000000000000000000"

    @property
    def sender_address(self) -> str:
        return self._sender

    def _key(self, resource_id: str, owner: str) -> Tuple[str, str]:
        return resource_id, Web3.to_checksum_address(owner)

    def _record_id(self, resource_id: str, owner: str) -> str:
        return Web3.to_hex(Web3.solidity_keccak(["string", "address"], [resource_id, Web3.to_checksum_address(owner)]))

    def _mine(self, event: str, resource_id: str, record_owner: str, **args: Any) -> TxResult:
        self._block += 1
        tx_hash = Web3.to_hex(Web3.keccak(text=f"{self._block}:{event}:{resource_id}"))
        self._events.append({
            "event": event,
            "args": {
                "recordId": self._record_id(resource_id, record_owner),
                "resourceId": resource_id,
                "timestamp": int(self._clock()),
                **args,
            },
            "transactionHash": tx_hash,
            "blockNumber": self._block,
            "logIndex": 0,
        })
        return TxResult(transaction_hash=tx_hash, block_number=self._block)

    def _require(self, resource_id: str, owner: str) -> LedgerRecord:
        record = self._records.get(self._key(resource_id, owner))
        if record is None:
            raise LedgerError(f"Record {resource_id} does not exist", operation="ledger.require")
        return record

    async def create_record(self, resource_id: str, data_hash: str, owner: str) -> TxResult:
        if not data_hash:
            raise LedgerError("Empty hash not allowed", operation="ledger.create_record")
        async with self._lock:
            key = self._key(resource_id, owner)
            if key in self._records:
                raise LedgerRecordExistsError(
                    f"Record {resource_id} already exists", operation="ledger.create_record",
                )
            now = int(self._clock())
            self._records[key] = LedgerRecord(self._sender, data_hash, now, now)
            return self._mine(
                "DataCreated", resource_id, owner,
                owner=key[1], creator=self._sender, dataHash=data_hash,
            )

    async def update_record(self, resource_id: str, data_hash: str) -> TxResult:
        if not data_hash:
            raise LedgerError("Empty hash not allowed", operation="ledger.update_record")
        async with self._lock:
            owner = self._owner_of(resource_id)
            current = self._require(resource_id, owner)
            self._records[self._key(resource_id, owner)] = LedgerRecord(
                current.creator, data_hash, current.created_at, int(self._clock()),
            )
            return self._mine("DataUpdated", resource_id, owner, updater=self._sender, newDataHash=data_hash)

    def _owner_of(self, resource_id: str) -> str:
        # The deployed contract keys updates by msg.sender; without sender
        # authorization the single owner of the resource id is used.
        owners = [owner for rid, owner in self._records if rid == resource_id]
        if len(owners) != 1:
            raise LedgerError(
                f"Record {resource_id} does not exist for a unique owner", operation="ledger.update_record",
            )
        return owners[0]

    async def get_record(self, resource_id: str, owner: str) -> Optional[LedgerRecord]:
        return self._records.get(self._key(resource_id, owner))

    async def record_exists(self, resource_id: str, owner: str) -> bool:
        return self._key(resource_id, owner) in self._records

    async def record_id(self, resource_id: str, owner: str) -> str:
        return self._record_id(resource_id, owner)

    async def get_events(self, record_id: str) -> List[Dict[str, Any]]:
        return [e for e in self._events if e.get("args", {}).get("recordId") == record_id]

    # ---- Access events (emitted by other parties in production) ----

    async def log_access(self, resource_id: str, owner: str) -> TxResult:
        async with self._lock:
            self._require(resource_id, owner)
            return self._mine("DataAccessed", resource_id, owner, accessor=self._sender)

    async def log_share(self, resource_id: str, owner: str, recipient: str) -> TxResult:
        async with self._lock:
            self._require(resource_id, owner)
            return self._mine(
                "DataShared", resource_id, owner,
                sharer=self._sender, recipient=Web3.to_checksum_address(recipient),
            )

    async def log_revoke(self, resource_id: str, owner: str, user: str) -> TxResult:
        async with self._lock:
            self._require(resource_id, owner)
            return self._mine(
                "DataAccessRevoked", resource_id, owner,
                revoker=self._sender, revokedUser=Web3.to_checksum_address(user),
            )

    async def delete_record(self, resource_id: str, owner: str) -> TxResult:
        async with self._lock:
            self._require(resource_id, owner)
            del self._records[self._key(resource_id, owner)]
            return self._mine("DataDeleted", resource_id, owner, deleter=self._sender)


class Web3LedgerContract(LedgerContract):
    """
    Deployed ledger contract over JSON-RPC.

    The contract stores a submitted hash string as bytes32 (its first 32
    UTF-8 bytes, zero padded); `hash_fingerprint` applies the same
    conversion so stored and expected hashes compare directly.
    """

    def __init__(
        self,
        rpc_url: str,
        contract_address: str,
        private_key: str,
        network: str = "localhost",
        timeout_s: float = 60.0,
        from_block: int = 0,
    ):
        self.network = network
        self.timeout_s = timeout_s
        self.from_block = from_block
        self.w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": timeout_s}))
        self.account = self.w3.eth.account.from_key(private_key)
        self.contract = self.w3.eth.contract(address=Web3.to_checksum_address(contract_address), abi=LEDGER_ABI)
        self._nonce_lock = asyncio.Lock()
        self._next_nonce: Optional[int] = None
        self._chain_id: Optional[int] = None

        logger.info(
            "web3_ledger_initialized",
            network=network,
            contract=self.contract.address,
            sender=self.account.address,
        )

    @property
    def address(self) -> str:
        return self.contract.address

    @property
    def sender_address(self) -> str:
        return self.account.address

    def hash_fingerprint(self, data_hash: str) -> str:
        return Web3.to_hex(data_hash.encode("utf-8")[:32].ljust(32, b"\0"))

    async def _call(self, operation: str, coro):
        try:
            return await coro
        except ContractLogicError as e:
            raise LedgerError(
                f"Contract rejected {operation}", operation=operation, details={"error": str(e)},
            ) from e
        except OSError as e:
            raise LedgerUnavailableError(
                f"Ledger node unreachable during {operation}", operation=operation, details={"error": str(e)},
            ) from e

    async def _allocate_nonce(self) -> int:
        async with self._nonce_lock:
            if self._next_nonce is None:
                self._next_nonce = await self.w3.eth.get_transaction_count(self.account.address, "pending")
            nonce = self._next_nonce
            self._next_nonce += 1
            return nonce

    async def _transact(self, operation: str, fn) -> TxResult:
        try:
            if self._chain_id is None:
                self._chain_id = await self.w3.eth.chain_id
            nonce = await self._allocate_nonce()
            tx = await fn.build_transaction({
                "from": self.account.address,
                "nonce": nonce,
                "chainId": self._chain_id,
            })
            signed = self.account.sign_transaction(tx)
            tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
            receipt = await self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.timeout_s)
        except ContractLogicError as e:
            self._next_nonce = None
            if RECORD_EXISTS_SELECTOR in str(getattr(e, "data", "") or e):
                raise LedgerRecordExistsError(
                    "Record already exists", operation=operation, details={"error": str(e)},
                ) from e
            raise LedgerError(f"Contract rejected {operation}", operation=operation, details={"error": str(e)}) from e
        except TimeExhausted as e:
            raise OperationTimeoutError(
                f"{operation} not mined within {self.timeout_s}s", operation=operation,
                details={"timeout_s": self.timeout_s},
            ) from e
        except OSError as e:
            self._next_nonce = None
            raise LedgerUnavailableError(
                f"Ledger node unreachable during {operation}", operation=operation, details={"error": str(e)},
            ) from e

        if receipt["status"] != 1:
            raise LedgerError(
                f"{operation} transaction reverted", operation=operation,
                details={"transactionHash": Web3.to_hex(tx_hash)},
            )
        return TxResult(transaction_hash=Web3.to_hex(receipt["transactionHash"]), block_number=receipt["blockNumber"])

    async def create_record(self, resource_id: str, data_hash: str, owner: str) -> TxResult:
        fn = self.contract.functions.createRecord(resource_id, data_hash, Web3.to_checksum_address(owner))
        return await self._transact("ledger.create_record", fn)

    async def update_record(self, resource_id: str, data_hash: str) -> TxResult:
        return await self._transact("ledger.update_record", self.contract.functions.updateRecord(resource_id, data_hash))

    async def get_record(self, resource_id: str, owner: str) -> Optional[LedgerRecord]:
        owner = Web3.to_checksum_address(owner)
        if not await self.record_exists(resource_id, owner):
            return None
        creator, data_hash, created_at, last_modified = await self._call(
            "ledger.get_record", self.contract.functions.getRecord(resource_id, owner).call(),
        )
        return LedgerRecord(creator, Web3.to_hex(data_hash), int(created_at), int(last_modified))

    async def record_exists(self, resource_id: str, owner: str) -> bool:
        return await self._call(
            "ledger.record_exists",
            self.contract.functions.recordExists(resource_id, Web3.to_checksum_address(owner)).call(),
        )

    async def record_id(self, resource_id: str, owner: str) -> str:
        raw = await self._call(
            "ledger.record_id",
            self.contract.functions.getRecordId(resource_id, Web3.to_checksum_address(owner)).call(),
        )
        return Web3.to_hex(raw)

    async def get_events(self, record_id: str) -> List[Dict[str, Any]]:
        events: List[Dict[str, Any]] = []
        for name in AUDIT_EVENTS:
            event = getattr(self.contract.events, name)
            logs = await self._call(
                f"ledger.get_logs.{name}",
                event().get_logs(argument_filters={"recordId": record_id}, from_block=self.from_block),
            )
            events.extend(dict(log) for log in logs)
        return events
