"""
Audit ledger contract interface.

Only the entries the client calls or reads are listed: record writes and
reads, the record-id helper, the six audit events and the revert errors
the client maps.
"""

from web3 import Web3


def _fn(name, inputs, outputs=(), mutability="nonpayable"):
    return {
        "type": "function",
        "name": name,
        "stateMutability": mutability,
        "inputs": [{"name": n, "type": t, "internalType": t} for n, t in inputs],
        "outputs": [{"name": n, "type": t, "internalType": t} for n, t in outputs],
    }


def _event(name, indexed, data):
    inputs = [{"name": n, "type": t, "internalType": t, "indexed": True} for n, t in indexed]
    inputs += [{"name": n, "type": t, "internalType": t, "indexed": False} for n, t in data]
    return {"type": "event", "name": name, "anonymous": False, "inputs": inputs}


def _error(name):
    return {"type": "error", "name": name, "inputs": []}


LEDGER_ABI = [
    _fn("createRecord", [("_resourceIdStr", "string"), ("_dataHashStr", "string"), ("_owner", "address")]),
    _fn("updateRecord", [("_resourceIdStr", "string"), ("_newDataHashStr", "string")]),
    _fn(
        "getRecord",
        [("_resourceIdStr", "string"), ("_owner", "address")],
        [("creator", "address"), ("dataHash", "bytes32"), ("createdAt", "uint64"), ("lastModified", "uint64")],
        "view",
    ),
    _fn("recordExists", [("_resourceIdStr", "string"), ("_owner", "address")], [("", "bool")], "view"),
    _fn("getRecordId", [("_resourceIdStr", "string"), ("_owner", "address")], [("", "bytes32")], "pure"),
    _event(
        "DataCreated",
        [("recordId", "bytes32"), ("owner", "address"), ("creator", "address")],
        [("resourceId", "string"), ("dataHash", "bytes32"), ("timestamp", "uint64")],
    ),
    _event(
        "DataUpdated",
        [("recordId", "bytes32"), ("updater", "address")],
        [("resourceId", "string"), ("newDataHash", "bytes32"), ("timestamp", "uint64")],
    ),
    _event(
        "DataAccessed",
        [("recordId", "bytes32"), ("accessor", "address")],
        [("resourceId", "string"), ("timestamp", "uint64")],
    ),
    _event(
        "DataShared",
        [("recordId", "bytes32"), ("sharer", "address"), ("recipient", "address")],
        [("resourceId", "string"), ("timestamp", "uint64")],
    ),
    _event(
        "DataAccessRevoked",
        [("recordId", "bytes32"), ("revoker", "address"), ("revokedUser", "address")],
        [("resourceId", "string"), ("timestamp", "uint64")],
    ),
    _event(
        "DataDeleted",
        [("recordId", "bytes32"), ("deleter", "address")],
        [("resourceId", "string"), ("timestamp", "uint64")],
    ),
    _error("LeLink__RecordAlreadyExists"),
    _error("LeLink__RecordDoesNotExist"),
    _error("LeLink__NotAuthorized"),
    _error("LeLink__EmptyHashNotAllowed"),
]

# Event name -> audit kind, in the order events are queried
AUDIT_EVENTS = {
    "DataCreated": "created",
    "DataUpdated": "updated",
    "DataAccessed": "accessed",
    "DataShared": "shared",
    "DataAccessRevoked": "revoked",
    "DataDeleted": "deleted",
}

# Indexed argument naming the address that emitted each event
EVENT_ACTORS = {
    "DataCreated": "creator",
    "DataUpdated": "updater",
    "DataAccessed": "accessor",
    "DataShared": "sharer",
    "DataAccessRevoked": "revoker",
    "DataDeleted": "deleter",
}


def error_selector(name: str) -> str:
    """4-byte selector of a no-argument custom error, as 0x-hex."""
    return Web3.to_hex(Web3.keccak(text=f"{name}()")[:4])


RECORD_EXISTS_SELECTOR = error_selector("LeLink__RecordAlreadyExists")
