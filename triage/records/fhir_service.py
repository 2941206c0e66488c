"""
FHIR Service Record Store - Managed clinical-record REST API

Production backend. Records are written with `PUT /<Type>/<id>` so a
replayed write lands on the same address. The idempotency key travels in
the `Idempotency-Key` header and is also stored on the resource as an
identifier, together with the canonical content hash, so a replay can be
recognized with a search before writing.

Tenet #10: Observable Systems - every request carries X-Correlation-Id
"""

from typing import Any, Dict, List, Optional
import copy

import httpx
import structlog

from triage.config import RetryPolicy, StoreConfig
from triage.errors import (
    IdempotencyConflictError,
    OperationTimeoutError,
    RecordNotFoundError,
    StorageError,
    StorageUnavailableError,
)
from triage.observability import CORRELATION_HEADER, get_correlation_id, hash_identifier
from triage.records.models import ResourceType, StructuredRecord, content_hash, record_from_resource
from triage.records.store import RecordListing, RecordStore, StoredRecord, default_idempotency_key
from triage.retry import retry_async, with_timeout

logger = structlog.get_logger()

FHIR_JSON = "application/fhir+json"
IDEMPOTENCY_KEY_SYSTEM = "urn:triage:idempotency-key"
CONTENT_HASH_SYSTEM = "urn:triage:content-hash"

_SUPPORTED_TYPES = tuple(t.value for t in ResourceType)


def _identifier(resource: Dict[str, Any], system: str) -> Optional[str]:
    for identifier in resource.get("identifier") or []:
        if identifier.get("system") == system:
            return identifier.get("value")
    return None


def _bundle_resources(bundle: Dict[str, Any]) -> List[Dict[str, Any]]:
    return [entry["resource"] for entry in bundle.get("entry") or [] if entry.get("resource")]


def _next_link(bundle: Dict[str, Any]) -> Optional[str]:
    for link in bundle.get("link") or []:
        if link.get("relation") == "next" and link.get("url"):
            return link["url"]
    return None


class FhirServiceRecordStore(RecordStore):
    """
    Record store backed by a FHIR REST server.

    Example:
        store = FhirServiceRecordStore("https://fhir.example.org/r4", bearer_token=token)
        stored = await store.put(observation)
        listing = await store.list_by_subject("patient-abc")
    """

    storage_mode = "fhir-service"

    def __init__(
        self,
        base_url: str,
        bearer_token: Optional[str] = None,
        retry_policy: Optional[RetryPolicy] = None,
        timeout_s: float = 15.0,
        page_size: int = 100,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout_s = timeout_s
        self.page_size = page_size

        headers = {"Accept": FHIR_JSON}
        if bearer_token:
            headers["Authorization"] = f"Bearer {bearer_token}"
        self._client = httpx.AsyncClient(
            base_url=self.base_url + "/",
            headers=headers,
            timeout=timeout_s,
            transport=transport,
        )

        logger.info("fhir_record_store_initialized", base_url=self.base_url)

    @classmethod
    def from_config(cls, config: StoreConfig, retry_policy: RetryPolicy) -> "FhirServiceRecordStore":
        return cls(
            config.fhir_base_url,
            bearer_token=config.fhir_bearer_token,
            retry_policy=retry_policy,
            timeout_s=config.timeout_s,
            page_size=config.page_size,
        )

    async def _request(
        self,
        method: str,
        url: str,
        operation: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        """
        Send one request with timeout and transient-failure retry.

        Responses with 429 or 5xx are raised as StorageUnavailableError;
        every other response is returned for the caller to interpret.
        """
        request_headers = dict(headers or {})
        correlation_id = get_correlation_id()
        if correlation_id:
            request_headers[CORRELATION_HEADER] = correlation_id
        if body is not None:
            request_headers["Content-Type"] = FHIR_JSON

        async def _attempt() -> httpx.Response:
            try:
                response = await with_timeout(
                    self._client.request(method, url, params=params, json=body, headers=request_headers),
                    self.timeout_s,
                    f"store.{operation}",
                )
            except httpx.TimeoutException as e:
                raise OperationTimeoutError(
                    f"store.{operation} timed out", operation=f"store.{operation}",
                    details={"timeout_s": self.timeout_s},
                ) from e
            except httpx.TransportError as e:
                raise StorageUnavailableError(
                    f"Record service unreachable during {operation}", operation=operation,
                    details={"error": str(e)},
                ) from e

            if response.status_code == 429 or response.status_code >= 500:
                raise StorageUnavailableError(
                    f"Record service returned {response.status_code} during {operation}",
                    operation=operation,
                    details={"status": response.status_code},
                )
            return response

        return await retry_async(_attempt, policy=self.retry_policy, operation=f"store.{operation}")

    def _raise_for_status(self, response: httpx.Response, operation: str) -> None:
        if response.is_success:
            return
        raise StorageError(
            f"Record service rejected {operation} with {response.status_code}",
            operation=operation,
            details={"status": response.status_code, "body": response.text[:500]},
        )

    async def _search(self, resource_type: str, params: Dict[str, Any], operation: str) -> List[Dict[str, Any]]:
        """Run a search and follow `next` links until the bundle is exhausted."""
        resources: List[Dict[str, Any]] = []
        url: Optional[str] = resource_type
        query: Optional[Dict[str, Any]] = {**params, "_count": self.page_size}
        while url:
            response = await self._request("GET", url, operation, params=query)
            self._raise_for_status(response, operation)
            bundle = response.json()
            resources.extend(_bundle_resources(bundle))
            url = _next_link(bundle)
            query = None  # next links carry their own query string
        return resources

    async def put(self, record: StructuredRecord, idempotency_key: Optional[str] = None) -> StoredRecord:
        key = idempotency_key or default_idempotency_key(record)
        resource = record.to_resource()
        digest = content_hash(resource)
        address = f"{record.resource_type}/{record.id}"

        existing = await self._search(
            record.resource_type,
            {"identifier": f"{IDEMPOTENCY_KEY_SYSTEM}|{key}"},
            "put.lookup",
        )
        if not existing:
            response = await self._request("GET", address, "put.lookup")
            if response.status_code not in (404, 410):
                self._raise_for_status(response, "put.lookup")
                existing = [response.json()]

        if existing:
            stored_hash = _identifier(existing[0], CONTENT_HASH_SYSTEM)
            if stored_hash != digest:
                raise IdempotencyConflictError(
                    "A different record is already stored under this key or address",
                    operation="put",
                    details={"location": f"{existing[0].get('resourceType')}/{existing[0].get('id')}"},
                )
            stored = self._stored(record, f"{existing[0]['resourceType']}/{existing[0]['id']}", created=False)
        else:
            body = copy.deepcopy(resource)
            body["identifier"] = body.get("identifier", []) + [
                {"system": IDEMPOTENCY_KEY_SYSTEM, "value": key},
                {"system": CONTENT_HASH_SYSTEM, "value": digest},
            ]
            response = await self._request(
                "PUT", address, "put", body=body, headers={"Idempotency-Key": key},
            )
            if response.status_code in (409, 412):
                raise IdempotencyConflictError(
                    "Record service reported a conflicting write",
                    operation="put",
                    details={"status": response.status_code, "location": address},
                )
            self._raise_for_status(response, "put")
            location = response.headers.get("Location") or response.headers.get("Content-Location") or address
            stored = self._stored(record, location, created=True)

        logger.info(
            "record_stored",
            resource_type=stored.resource_type,
            resource_id=stored.id,
            subject=hash_identifier(record.subject_id),
            created=stored.created,
            storage_mode=self.storage_mode,
        )
        return stored

    async def get(self, subject_id: str, resource_type: str, resource_id: str) -> StructuredRecord:
        if resource_type not in _SUPPORTED_TYPES:
            raise RecordNotFoundError(subject_id, resource_type, resource_id)

        response = await self._request("GET", f"{resource_type}/{resource_id}", "get")
        if response.status_code in (404, 410):
            raise RecordNotFoundError(subject_id, resource_type, resource_id)
        self._raise_for_status(response, "get")

        record = record_from_resource(response.json())
        # Addressing is by (subject, type, id); another subject's record is not found
        if record.subject_id != subject_id:
            raise RecordNotFoundError(subject_id, resource_type, resource_id)
        return record

    async def list_by_subject(self, subject_id: str) -> RecordListing:
        resources: List[Dict[str, Any]] = []
        for resource_type in _SUPPORTED_TYPES:
            resources.extend(await self._search(
                resource_type, {"subject": f"Patient/{subject_id}"}, "list_by_subject",
            ))
        return self._listing(resources)

    async def list_by_type(self, resource_type: str) -> RecordListing:
        if resource_type not in _SUPPORTED_TYPES:
            return RecordListing()
        return self._listing(await self._search(resource_type, {}, "list_by_type"))

    async def list_subjects(self) -> List[str]:
        subjects = set()
        for resource_type in _SUPPORTED_TYPES:
            subjects.update((await self.list_by_type(resource_type)).patient_ids)
        return sorted(subjects)

    async def close(self) -> None:
        await self._client.aclose()

    def _stored(self, record: StructuredRecord, location: str, created: bool) -> StoredRecord:
        return StoredRecord(
            id=record.id,
            resource_type=record.resource_type,
            subject_id=record.subject_id,
            location=location,
            storage_mode=self.storage_mode,
            created=created,
        )

    @staticmethod
    def _listing(resources: List[Dict[str, Any]]) -> RecordListing:
        records = []
        for resource in resources:
            try:
                records.append(record_from_resource(resource))
            except (KeyError, ValueError) as e:
                logger.warning("stored_record_unparseable", resource_id=resource.get("id"), error=str(e))
        return RecordListing(records=records)
