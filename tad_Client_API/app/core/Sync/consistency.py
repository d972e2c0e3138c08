# Sync/consistency.py
# Description: Read-only consistency audit of the local cache against the remote store, plus a repair pass
#              that writes corrections through the same cache-patch primitives as mutations.
#
# Imports
from collections import OrderedDict
from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple
#
# 3rd-party Libraries
from loguru import logger
#
# Local Imports
from .cache import LocalCache, cached_records, evict_record, store_record, transcript_keys
from .exceptions import ConsistencyError
from .models import (
    SYNCED_FIELDS,
    ConflictResolution,
    ConsistencyIssue,
    ConsistencyReport,
    ConsistencySummary,
    IssueType,
    RepairResult,
    RepairStrategy,
    Severity,
    TranscriptRecord,
    is_temp_id,
    utcnow,
    year_from_month,
)
from .sync_service import merge_values
from .transport import SyncTransport
from .validation import ValidationRule, default_validation_rules
#
#######################################################################################################################
#
# Functions:

_MISMATCH_SEVERITY = {
    "client_name": Severity.HIGH,
    "month": Severity.HIGH,
    "transcript_count": Severity.HIGH,
    "notes": Severity.MEDIUM,
}


def _mismatch_fix(field: str, server_value: Any, client_value: Any) -> str:
    if field == "transcript_count":
        return f"Choose between server value ({server_value}) and client value ({client_value})"
    if field == "notes":
        return "Merge notes or choose the most recent version"
    return "Resolve the conflict by choosing the correct value"


def _recency(record: TranscriptRecord) -> Tuple:
    stamp = record.updated_at or record.created_at
    return (stamp is not None, stamp.timestamp() if stamp else 0.0)


def _summarize(issues: Sequence[ConsistencyIssue]) -> ConsistencySummary:
    def count(kind: IssueType) -> int:
        return sum(1 for issue in issues if issue.type == kind)
    return ConsistencySummary(
        duplicates=count(IssueType.DUPLICATE),
        mismatches=count(IssueType.MISMATCH),
        missing=count(IssueType.MISSING),
        invalid=count(IssueType.INVALID),
        orphaned=count(IssueType.ORPHANED),
    )


class DataConsistencyService:
    """
    Audits local data against the authoritative store.

    ``perform_consistency_check`` never writes; calling it twice with the same
    inputs and clock yields equal reports. ``repair_consistency_issues``
    handles each issue independently so one failure does not stop the batch.
    """

    def __init__(
        self,
        transport: SyncTransport,
        cache: LocalCache,
        conflict_resolution: ConflictResolution = ConflictResolution.SERVER,
        rules: Optional[Iterable[ValidationRule]] = None,
        clock: Callable = utcnow,
    ):
        self.transport = transport
        self.cache = cache
        self.conflict_resolution = ConflictResolution(conflict_resolution)
        self._rules: Tuple[ValidationRule, ...] = tuple(rules) if rules is not None else tuple(default_validation_rules())
        self._clock = clock

    # --- Rule management ---

    @property
    def validation_rules(self) -> Tuple[ValidationRule, ...]:
        return self._rules

    def add_validation_rule(self, rule: ValidationRule) -> None:
        self._rules = self._rules + (rule,)

    def remove_validation_rule(self, name: str) -> None:
        self._rules = tuple(rule for rule in self._rules if rule.name != name)

    # --- Audit ---

    async def perform_consistency_check(self, client_data: Optional[Sequence[TranscriptRecord]] = None) -> ConsistencyReport:
        checked_at = self._clock()
        try:
            server_data = await self.transport.read()
        except Exception as e:
            logger.error(f"Consistency check failed while reading server data: {e}")
            issue = ConsistencyIssue(
                type=IssueType.INVALID,
                severity=Severity.CRITICAL,
                record_id="system",
                description=f"Consistency check failed: {e}",
            )
            return ConsistencyReport(
                is_consistent=False,
                total_records=0,
                checked_at=checked_at,
                issues=(issue,),
                summary=_summarize([issue]),
            )

        local_data = list(client_data) if client_data is not None else list(cached_records(self.cache))

        issues: List[ConsistencyIssue] = []
        issues.extend(self._check_validation(server_data, "server"))
        issues.extend(self._check_validation(local_data, "client"))
        issues.extend(self._check_duplicates(server_data, "server"))
        issues.extend(self._check_duplicates(local_data, "client"))
        issues.extend(self._check_mismatches(server_data, local_data))
        issues.extend(self._check_missing_and_orphaned(server_data, local_data))

        report = ConsistencyReport(
            is_consistent=len(issues) == 0,
            total_records=max(len(server_data), len(local_data)),
            checked_at=checked_at,
            issues=tuple(issues),
            summary=_summarize(issues),
        )
        logger.info(f"Consistency check: {len(issues)} issues across {report.total_records} records ({report.summary})")
        return report

    def _check_validation(self, data: Sequence[TranscriptRecord], source: str) -> List[ConsistencyIssue]:
        issues = []
        label = "Client" if source == "client" else "Server"
        for record in data:
            for rule in self._rules:
                value = getattr(record, rule.field, None)
                try:
                    valid = rule.validator(value, record)
                except Exception as e:
                    issues.append(ConsistencyIssue(
                        type=IssueType.INVALID,
                        severity=Severity.MEDIUM,
                        record_id=record.id or "unknown",
                        field=rule.field,
                        description=f"Validation rule '{rule.name}' failed to execute: {e}",
                        source=source,
                    ))
                    continue
                if not valid:
                    issues.append(ConsistencyIssue(
                        type=IssueType.INVALID,
                        severity=rule.severity,
                        record_id=record.id or "unknown",
                        field=rule.field,
                        description=f"{label} data: {rule.message}",
                        server_value=value if source == "server" else None,
                        client_value=value if source == "client" else None,
                        suggested_fix=rule.suggested_fix,
                        source=source,
                    ))
        return issues

    def _check_duplicates(self, data: Sequence[TranscriptRecord], source: str) -> List[ConsistencyIssue]:
        groups: "OrderedDict[Tuple[str, str], List[TranscriptRecord]]" = OrderedDict()
        for record in data:
            if is_temp_id(record.id):
                continue
            groups.setdefault(record.logical_key, []).append(record)

        issues = []
        for (_, month), records in groups.items():
            if len(records) < 2:
                continue
            # keep the most recently updated; ties go to the first listed
            keeper = max(records, key=_recency)
            for record in records:
                if record is keeper:
                    continue
                issues.append(ConsistencyIssue(
                    type=IssueType.DUPLICATE,
                    severity=Severity.HIGH,
                    record_id=record.id or "unknown",
                    description=f"Duplicate record found for client '{record.client_name}' in month '{month}' (kept {keeper.id})",
                    suggested_fix="Remove duplicate record or merge data if different",
                    source=source,
                ))
        return issues

    def _check_mismatches(self, server_data: Sequence[TranscriptRecord], client_data: Sequence[TranscriptRecord]) -> List[ConsistencyIssue]:
        client_map = {record.id: record for record in client_data}
        issues = []
        for server_record in server_data:
            client_record = client_map.get(server_record.id)
            if client_record is None:
                continue
            for field in SYNCED_FIELDS:
                server_value = getattr(server_record, field)
                client_value = getattr(client_record, field)
                if server_value != client_value:
                    issues.append(ConsistencyIssue(
                        type=IssueType.MISMATCH,
                        severity=_MISMATCH_SEVERITY.get(field, Severity.LOW),
                        record_id=server_record.id,
                        field=field,
                        description=f"Data mismatch in field '{field}'",
                        server_value=server_value,
                        client_value=client_value,
                        suggested_fix=_mismatch_fix(field, server_value, client_value),
                    ))
        return issues

    def _check_missing_and_orphaned(self, server_data: Sequence[TranscriptRecord], client_data: Sequence[TranscriptRecord]) -> List[ConsistencyIssue]:
        server_ids = {record.id for record in server_data}
        client_ids = {record.id for record in client_data}
        issues = []
        for record in server_data:
            if record.id not in client_ids:
                issues.append(ConsistencyIssue(
                    type=IssueType.MISSING,
                    severity=Severity.MEDIUM,
                    record_id=record.id or "unknown",
                    description="Record exists on server but missing from client",
                    suggested_fix="Sync record to client",
                ))
        for record in client_data:
            # Placeholders of in-flight optimistic creates are not on the server yet
            if record.id not in server_ids and not is_temp_id(record.id):
                issues.append(ConsistencyIssue(
                    type=IssueType.ORPHANED,
                    severity=Severity.MEDIUM,
                    record_id=record.id or "unknown",
                    description="Record exists on client but missing from server",
                    suggested_fix="Push record to server or remove from client",
                    source="client",
                ))
        return issues

    # --- Repair ---

    async def repair_consistency_issues(
        self,
        issues: Sequence[ConsistencyIssue],
        strategy: RepairStrategy = RepairStrategy.AUTO,
    ) -> RepairResult:
        strategy = RepairStrategy(strategy)
        repaired = 0
        failed = 0
        errors: List[str] = []
        warnings: List[str] = []

        server_index: Optional[Dict[str, TranscriptRecord]] = None
        if strategy == RepairStrategy.AUTO and any(i.type == IssueType.MISSING for i in issues):
            try:
                server_index = {record.id: record for record in await self.transport.read()}
            except Exception as e:
                logger.error(f"Could not read server data for repair: {e}")
                errors.append(f"Failed to read server data: {e}")

        for issue in issues:
            try:
                if await self._repair_single_issue(issue, strategy, server_index):
                    repaired += 1
                else:
                    failed += 1
                    warnings.append(f"Could not auto-repair issue for record {issue.record_id}: {issue.description}")
            except Exception as e:
                failed += 1
                logger.error(f"Repair failed for {issue.type.value} issue on {issue.record_id}: {e}")
                errors.append(f"Failed to repair issue for record {issue.record_id}: {e}")

        if repaired:
            self.cache.invalidate([transcript_keys.ALL])
        result = RepairResult(
            success=len(errors) == 0,
            repaired_issues=repaired,
            failed_repairs=failed,
            errors=tuple(errors),
            warnings=tuple(warnings),
        )
        logger.info(f"Repair pass finished: repaired={repaired} failed={failed}")
        return result

    async def _repair_single_issue(
        self,
        issue: ConsistencyIssue,
        strategy: RepairStrategy,
        server_index: Optional[Dict[str, TranscriptRecord]],
    ) -> bool:
        if strategy == RepairStrategy.MANUAL:
            return False
        if issue.type == IssueType.DUPLICATE:
            return await self._repair_duplicate(issue)
        if issue.type == IssueType.MISMATCH:
            return await self._repair_mismatch(issue)
        if issue.type == IssueType.MISSING:
            return self._repair_missing(issue, server_index)
        if issue.type == IssueType.ORPHANED:
            return self._repair_orphaned(issue)
        # Invalid data needs a person to decide the correct value
        return False

    async def _repair_duplicate(self, issue: ConsistencyIssue) -> bool:
        if issue.source == "server":
            await self.transport.delete(issue.record_id)
        evict_record(self.cache, issue.record_id)
        return True

    async def _repair_mismatch(self, issue: ConsistencyIssue) -> bool:
        if not issue.field:
            raise ConsistencyError("Mismatch issue has no field", context={"record_id": issue.record_id})
        local = self._local_record(issue.record_id)
        if local is None:
            return False

        if self.conflict_resolution == ConflictResolution.SERVER:
            changes = {issue.field: issue.server_value}
            if issue.field == "month":
                changes["year"] = year_from_month(issue.server_value)
            store_record(self.cache, replace(local, **changes))
            return True

        if self.conflict_resolution == ConflictResolution.CLIENT:
            value = issue.client_value
        else:
            value = merge_values(issue.field, issue.server_value, issue.client_value)
        server_record = await self.transport.write(issue.record_id, {issue.field: value})
        store_record(self.cache, server_record)
        return True

    def _repair_missing(self, issue: ConsistencyIssue, server_index: Optional[Dict[str, TranscriptRecord]]) -> bool:
        if server_index is None:
            return False
        record = server_index.get(issue.record_id)
        if record is None:
            return False
        store_record(self.cache, record)
        return True

    def _repair_orphaned(self, issue: ConsistencyIssue) -> bool:
        if is_temp_id(issue.record_id) or self._local_record(issue.record_id) is None:
            return False
        evict_record(self.cache, issue.record_id)
        return True

    def _local_record(self, record_id: str) -> Optional[TranscriptRecord]:
        for record in cached_records(self.cache):
            if record.id == record_id:
                return record
        return None

#
# End of consistency.py
#######################################################################################################################
