"""
Ledger Client - Content hashes of structured records on the audit ledger

The ledger never sees clinical content, only the keccak-256 hash of each
record's canonical JSON form.

Tenet #7: Immutability by Default - audit entries are append-only; a
partially submitted batch is never rolled back
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence
import asyncio

import structlog
from web3 import Web3

from triage.config import RetryPolicy
from triage.errors import LedgerRecordExistsError, LedgerUnavailableError, OperationTimeoutError, is_transient
from triage.ledger.abi import AUDIT_EVENTS, EVENT_ACTORS
from triage.ledger.contract import LedgerContract, TxResult
from triage.observability import hash_identifier
from triage.records.models import StructuredRecord
from triage.retry import retry_async, with_timeout

logger = structlog.get_logger()


def subject_owner_address(subject_id: str) -> str:
    """Deterministic checksum address for a subject: first 20 bytes of keccak(subject_id)."""
    return Web3.to_checksum_address(Web3.to_hex(bytes(Web3.keccak(text=subject_id))[:20]))


def _write_retryable(exc: BaseException) -> bool:
    # A timed-out write may already be mined; only a refused connection is resent
    return isinstance(exc, LedgerUnavailableError)


def _hex(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return Web3.to_hex(bytes(value))
    return str(value)


@dataclass(frozen=True)
class LedgerItemResult:
    """Outcome of logging one record."""
    resource_id: str
    data_hash: str
    operation: str  # "create" | "update"
    success: bool
    transaction_hash: Optional[str] = None
    block_number: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "resourceId": self.resource_id,
            "dataHash": self.data_hash,
            "operation": self.operation,
            "success": self.success,
        }
        if self.transaction_hash is not None:
            body["transactionHash"] = self.transaction_hash
        if self.block_number is not None:
            body["blockNumber"] = self.block_number
        if self.error is not None:
            body["error"] = self.error
        return body


@dataclass(frozen=True)
class LedgerReceipt:
    """Per-record outcomes of one batch."""
    network: str
    contract_address: str
    results: List[LedgerItemResult] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return all(r.success for r in self.results)

    @property
    def failed(self) -> List[LedgerItemResult]:
        return [r for r in self.results if not r.success]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "network": self.network,
            "contractAddress": self.contract_address,
            "results": [r.to_dict() for r in self.results],
        }


@dataclass(frozen=True)
class AuditEntry:
    """One ledger event for a record."""
    event: str  # created | updated | accessed | shared | revoked | deleted
    record_id: str
    resource_id: str
    transaction_hash: str
    block_number: int
    timestamp: int
    log_index: int = 0
    data_hash: Optional[str] = None
    actor: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": self.event,
            "recordId": self.record_id,
            "resourceId": self.resource_id,
            "dataHash": self.data_hash,
            "actor": self.actor,
            "transactionHash": self.transaction_hash,
            "blockNumber": self.block_number,
            "timestamp": self.timestamp,
        }


def parse_audit_event(raw: Dict[str, Any]) -> AuditEntry:
    """
    Build an AuditEntry from a raw event log.

    Raises:
        KeyError, TypeError, ValueError: If the event is malformed
    """
    name = raw["event"]
    args = raw["args"]
    data_hash = args.get("dataHash", args.get("newDataHash"))
    actor = args.get(EVENT_ACTORS[name])
    return AuditEntry(
        event=AUDIT_EVENTS[name],
        record_id=_hex(args["recordId"]),
        resource_id=str(args["resourceId"]),
        transaction_hash=_hex(raw["transactionHash"]),
        block_number=int(raw["blockNumber"]),
        timestamp=int(args["timestamp"]),
        log_index=int(raw.get("logIndex", 0)),
        data_hash=_hex(data_hash) if data_hash is not None else None,
        actor=str(actor) if actor is not None else None,
    )


class LedgerClient:
    """
    Writes record hashes and reads the audit trail.

    Example:
        client = LedgerClient(MemoryLedgerContract())
        receipt = await client.log_records([observation, risk], "patient-abc")
        trail = await client.get_audit_trail(observation.ledger_resource_id, "patient-abc")
    """

    def __init__(
        self,
        contract: LedgerContract,
        owner_mode: str = "subject",
        retry_policy: Optional[RetryPolicy] = None,
        timeout_s: float = 60.0,
    ):
        self.contract = contract
        self.owner_mode = owner_mode
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout_s = timeout_s

    def owner_address(self, subject_id: str) -> str:
        if self.owner_mode == "wallet":
            return self.contract.sender_address
        return subject_owner_address(subject_id)

    async def _call(self, operation: str, fn, retry_if=is_transient):
        # Only transient failures are retried; semantic rejections propagate
        return await retry_async(
            lambda: with_timeout(fn(), self.timeout_s, operation),
            policy=self.retry_policy,
            operation=operation,
            retry_if=retry_if,
        )

    async def _write(self, operation: str, fn, resource_id: str, owner: str, data_hash: str) -> Optional[TxResult]:
        """
        Submit one write, never resending after a timeout.

        A timed-out write is confirmed by reading the record back. When the
        stored hash already matches, the write landed and None is returned
        in place of the transaction.

        Raises:
            OperationTimeoutError: The write timed out and did not land
        """
        try:
            return await self._call(operation, fn, retry_if=_write_retryable)
        except OperationTimeoutError:
            record = await self._call("ledger.get_record", lambda: self.contract.get_record(resource_id, owner))
            if record is None or record.data_hash != self.contract.hash_fingerprint(data_hash):
                raise
            logger.warning("ledger_write_confirmed_after_timeout", resource_id=resource_id, operation=operation)
            return None

    async def _log_one(self, record: StructuredRecord, subject_id: str, owner: str) -> LedgerItemResult:
        resource_id = record.ledger_resource_id
        data_hash = record.data_hash
        operation = "create"
        try:
            if record.subject_id != subject_id:
                raise ValueError("record belongs to a different subject")

            exists = await self._call(
                "ledger.record_exists", lambda: self.contract.record_exists(resource_id, owner),
            )
            if exists:
                operation = "update"
                tx = await self._write(
                    "ledger.update_record",
                    lambda: self.contract.update_record(resource_id, data_hash),
                    resource_id, owner, data_hash,
                )
            else:
                try:
                    tx = await self._write(
                        "ledger.create_record",
                        lambda: self.contract.create_record(resource_id, data_hash, owner),
                        resource_id, owner, data_hash,
                    )
                except LedgerRecordExistsError:
                    # Another writer created it between the check and the create
                    operation = "update"
                    tx = await self._write(
                        "ledger.update_record",
                        lambda: self.contract.update_record(resource_id, data_hash),
                        resource_id, owner, data_hash,
                    )
        except Exception as e:
            logger.error(
                "ledger_submission_failed",
                resource_id=resource_id,
                operation=operation,
                error_type=type(e).__name__,
                error=str(e),
            )
            return LedgerItemResult(
                resource_id=resource_id,
                data_hash=data_hash,
                operation=operation,
                success=False,
                error=getattr(e, "message", str(e)),
            )

        logger.info(
            "ledger_record_logged",
            resource_id=resource_id,
            operation=operation,
            transaction_hash=tx.transaction_hash if tx else None,
            block_number=tx.block_number if tx else None,
        )
        return LedgerItemResult(
            resource_id=resource_id,
            data_hash=data_hash,
            operation=operation,
            success=True,
            transaction_hash=tx.transaction_hash if tx else None,
            block_number=tx.block_number if tx else None,
        )

    async def log_records(self, records: Sequence[StructuredRecord], subject_id: str) -> LedgerReceipt:
        """
        Submit the content hash of every record.

        Items are submitted concurrently and all finish (success or
        recorded failure) before the receipt is returned. One failing
        item never prevents the others.
        """
        owner = self.owner_address(subject_id)
        results = await asyncio.gather(*(self._log_one(r, subject_id, owner) for r in records))
        receipt = LedgerReceipt(
            network=self.contract.network,
            contract_address=self.contract.address,
            results=list(results),
        )
        logger.info(
            "ledger_batch_completed",
            subject=hash_identifier(subject_id),
            submitted=len(receipt.results),
            failed=len(receipt.failed),
        )
        return receipt

    async def get_audit_trail(self, resource_id: str, subject_id: str) -> List[AuditEntry]:
        """All audit events for (resource, owner), oldest first. Malformed events are skipped."""
        owner = self.owner_address(subject_id)
        record_id = await self._call("ledger.record_id", lambda: self.contract.record_id(resource_id, owner))
        raw_events = await self._call("ledger.get_events", lambda: self.contract.get_events(record_id))

        entries: List[AuditEntry] = []
        for raw in raw_events:
            try:
                entries.append(parse_audit_event(raw))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("audit_event_skipped", resource_id=resource_id, error=str(e))
        entries.sort(key=lambda e: (e.timestamp, e.block_number, e.log_index))
        return entries

    async def verify_integrity(self, resource_id: str, owner: str, expected_hash: str) -> bool:
        """True only if the stored hash equals `expected_hash` exactly (case-sensitive)."""
        record = await self._call("ledger.get_record", lambda: self.contract.get_record(resource_id, owner))
        if record is None:
            return False
        return record.data_hash == self.contract.hash_fingerprint(expected_hash)
