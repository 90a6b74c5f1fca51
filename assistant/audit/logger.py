"""Privacy-preserving audit trail for assistant turns.

The raw query is never stored: entries carry its SHA-256 hash and length.
IP addresses are truncated before persistence.  Flagged entries are kept
indefinitely; everything else ages out after the retention window.
"""

import logging
from collections import Counter
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from hashlib import sha256
from typing import Any

from jsonschema import ValidationError, validate

from assistant.domain.types import AuditEntry, DataAccessSummary, utcnow
from assistant.security.sanitizer import SanitizationResult, get_risk_score
from assistant.storage.base import AuditStore

logger = logging.getLogger("aia.audit")

FLAG_RISK_THRESHOLD = 30
DEFAULT_RETENTION_DAYS = 90
TOP_FUNCTIONS_LIMIT = 10

FUNCTION_ENTITY_TYPES: dict[str, str] = {
    "searchEmployees": "Employee",
    "getEmployeeDetails": "Employee",
    "getEmployeeCount": "Employee",
    "getEmployeeSalary": "Salary",
    "getSubscriptionUsers": "Subscription",
    "listSubscriptions": "Subscription",
    "getEmployeeAssets": "Asset",
    "listAssets": "Asset",
    "getAssetDepreciation": "Asset",
    "getPendingLeaveRequests": "LeaveRequest",
    "getEmployeeLeaveBalance": "LeaveRequest",
    "getExpiringDocuments": "Document",
    "getTotalPayroll": "PayrollRun",
    "getPayrollRunStatus": "PayrollRun",
    "getPurchaseRequestSummary": "PurchaseRequest",
    "searchSuppliers": "Supplier",
    "getProjectProgress": "Project",
}

SENSITIVE_FUNCTIONS: frozenset[str] = frozenset(
    {
        "getEmployeeSalary",
        "getTotalPayroll",
        "getPayrollRunStatus",
        "getEmployeeLeaveBalance",
    }
)

AUDIT_ENTRY_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": [
        "id",
        "org_id",
        "actor_id",
        "query_hash",
        "query_length",
        "functions_called",
        "data_accessed",
        "tokens_used",
        "response_time_ms",
        "flagged",
        "flag_reasons",
        "risk_score",
        "created_at",
    ],
    "properties": {
        "id": {"type": "string", "minLength": 1},
        "org_id": {"type": "string", "minLength": 1},
        "actor_id": {"type": "string", "minLength": 1},
        "conversation_id": {"type": ["string", "null"]},
        "query_hash": {"type": "string", "pattern": "^[0-9a-f]{64}$"},
        "query_length": {"type": "integer", "minimum": 0},
        "functions_called": {"type": "array", "items": {"type": "string"}},
        "data_accessed": {
            "type": "object",
            "required": ["entity_types", "record_count", "sensitive_data"],
            "properties": {
                "entity_types": {"type": "array", "items": {"type": "string"}},
                "record_count": {"type": "integer", "minimum": 0},
                "sensitive_data": {"type": "boolean"},
            },
        },
        "tokens_used": {"type": "integer", "minimum": 0},
        "response_time_ms": {"type": "integer", "minimum": 0},
        "ip_address": {"type": ["string", "null"]},
        "user_agent": {"type": ["string", "null"]},
        "flagged": {"type": "boolean"},
        "flag_reasons": {"type": "array", "items": {"type": "string"}},
        "risk_score": {"type": "integer", "minimum": 0, "maximum": 100},
        "created_at": {"type": "string"},
    },
}


class AuditValidationError(Exception):
    """Raised when an audit entry does not match the audit schema."""


def hash_query(query: str) -> str:
    return sha256(query.encode("utf-8")).hexdigest()


def anonymize_ip_address(ip: str | None) -> str | None:
    """Drop the host part of an address: last IPv4 octet, IPv6 past 64 bits."""
    if not ip:
        return None
    if ":" in ip:
        segments = ip.split(":")
        if len(segments) >= 4:
            return ":".join(segments[:4]) + "::"
        return ip
    octets = ip.split(".")
    if len(octets) == 4:
        return ".".join(octets[:3] + ["0"])
    return ip


def _record_count(result: Any) -> int:
    if isinstance(result, list):
        return len(result)
    if isinstance(result, Mapping):
        if "error" in result:
            return 0
        for key in ("count", "total"):
            value = result.get(key)
            if isinstance(value, int | float) and not isinstance(value, bool):
                return int(value)
        return 1
    return 0


def extract_data_access_summary(
    functions_called: Iterable[str], results: Iterable[Any]
) -> DataAccessSummary:
    entity_types: list[str] = []
    sensitive = False
    for name in functions_called:
        entity = FUNCTION_ENTITY_TYPES.get(name)
        if entity and entity not in entity_types:
            entity_types.append(entity)
        if name in SENSITIVE_FUNCTIONS:
            sensitive = True
    return DataAccessSummary(
        entity_types=entity_types,
        record_count=sum(_record_count(result) for result in results),
        sensitive_data=sensitive,
    )


def create_audit_entry(
    *,
    org_id: str,
    actor_id: str,
    query: str,
    conversation_id: str | None,
    function_calls: list[dict[str, Any]] | None,
    tokens_used: int,
    response_time_ms: int,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> AuditEntry:
    """Build an entry from a finished turn; ``function_calls`` items carry ``name`` and ``result``."""
    calls = function_calls or []
    functions_called = [str(call.get("name", "")) for call in calls]
    return AuditEntry(
        org_id=org_id,
        actor_id=actor_id,
        conversation_id=conversation_id,
        query_hash=hash_query(query),
        query_length=len(query),
        functions_called=functions_called,
        data_accessed=extract_data_access_summary(
            functions_called, [call.get("result") for call in calls]
        ),
        tokens_used=max(int(tokens_used), 0),
        response_time_ms=max(int(response_time_ms), 0),
        ip_address=anonymize_ip_address(ip_address),
        user_agent=user_agent,
    )


@dataclass(frozen=True)
class AuditSummary:
    total_queries: int
    flagged_queries: int
    unique_users: int
    avg_risk_score: float
    top_functions: list[dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "total_queries": self.total_queries,
            "flagged_queries": self.flagged_queries,
            "unique_users": self.unique_users,
            "avg_risk_score": self.avg_risk_score,
            "top_functions": [dict(item) for item in self.top_functions],
        }


class AuditLogger:
    def __init__(self, store: AuditStore, now: Callable[[], datetime] = utcnow) -> None:
        self._store = store
        self._now = now

    def log_audit_entry(
        self, entry: AuditEntry, sanitization: SanitizationResult | None = None
    ) -> AuditEntry:
        entry.risk_score = get_risk_score(sanitization)
        entry.flag_reasons = list(sanitization.flags) if sanitization else []
        entry.flagged = entry.risk_score >= FLAG_RISK_THRESHOLD or bool(
            sanitization and sanitization.flagged
        )

        try:
            validate(instance=entry.as_dict(), schema=AUDIT_ENTRY_SCHEMA)
        except ValidationError as exc:
            raise AuditValidationError(exc.message) from exc

        self._store.add_audit_entry(entry)

        if entry.flagged:
            logger.warning(
                "flagged assistant query",
                extra={
                    "org_id": entry.org_id,
                    "actor_id": entry.actor_id,
                    "risk_score": entry.risk_score,
                    "flag_reasons": entry.flag_reasons,
                    "functions_called": entry.functions_called,
                    "sensitive_data": entry.data_accessed.sensitive_data,
                },
            )
        return entry

    def get_audit_summary(self, org_id: str, start: datetime, end: datetime) -> AuditSummary:
        entries = self._store.list_audit_entries(org_id, start, end)
        if not entries:
            return AuditSummary(0, 0, 0, 0.0, [])
        function_counts: Counter[str] = Counter()
        for entry in entries:
            function_counts.update(entry.functions_called)
        return AuditSummary(
            total_queries=len(entries),
            flagged_queries=sum(1 for entry in entries if entry.flagged),
            unique_users=len({entry.actor_id for entry in entries}),
            avg_risk_score=round(sum(e.risk_score for e in entries) / len(entries), 2),
            top_functions=[
                {"name": name, "count": count}
                for name, count in function_counts.most_common(TOP_FUNCTIONS_LIMIT)
            ],
        )

    def get_flagged_queries(self, org_id: str, limit: int = 50) -> list[AuditEntry]:
        return self._store.list_flagged(org_id, limit)

    def cleanup_old_audit_logs(
        self, retention_days: int = DEFAULT_RETENTION_DAYS, org_id: str | None = None
    ) -> int:
        """Delete unflagged entries past retention.

        Scoped to *org_id* when given; ``None`` purges every organization and
        is meant for deployment-level jobs only.
        """
        cutoff = self._now() - timedelta(days=retention_days)
        deleted = self._store.delete_unflagged_before(cutoff, org_id)
        logger.info(
            "audit cleanup",
            extra={"org_id": org_id, "retention_days": retention_days, "deleted": deleted},
        )
        return deleted
