"""
Convergence of one target group towards its source.

The same mutation plan is built in both modes; dry_run only decides whether
it is applied or reported.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, List, Mapping, Optional, Tuple

from group_flatten.ldap_client import (
    DirectoryError,
    MemberAlreadyPresentError,
    MemberNotPresentError,
)
from group_flatten.logging_setup import audit_logger, get_plan_logger
from group_flatten.models import ChangeAction, ChangeRecord, DiffResult, GroupRef, Principal
from group_flatten.retry import MaxRetriesExceeded, retry_call, is_retryable_error, create_retry_callback

logger = logging.getLogger(__name__)
plan_logger = get_plan_logger()

RecordSink = Callable[[ChangeRecord], None]


@dataclass
class ConvergenceResult:
    """Outcome of converging one target group."""

    target: GroupRef
    added: int = 0
    removed: int = 0
    skipped: int = 0
    failed: int = 0
    planned: List[ChangeRecord] = field(default_factory=list)
    records: List[ChangeRecord] = field(default_factory=list)


class ConvergenceExecutor:
    """
    Applies, or in dry-run mode only reports, the changes for a target.

    Each principal is handled on its own: a failed add or remove is logged
    and counted, and the remaining principals are still processed.
    """

    def __init__(self, gateway, dry_run: bool = False, server: Optional[str] = None,
                 record_sink: Optional[RecordSink] = None,
                 error_config: Optional[Mapping[str, Any]] = None):
        self.gateway = gateway
        self.dry_run = dry_run
        self.server = server
        self.record_sink = record_sink

        error_config = error_config or {}
        self.max_retries = error_config.get('max_retries', 3)
        self.retry_wait = error_config.get('retry_wait_seconds', 5)

    def plan(self, source: GroupRef, target: GroupRef, diff: DiffResult) -> List[Tuple[ChangeRecord, Principal]]:
        """Order of the plan: adds by account name, then removes by account name."""
        steps = [(ChangeAction.ADD, p) for p in diff.missing] + [(ChangeAction.REMOVE, p) for p in diff.obsolete]
        return [
            (ChangeRecord(source.name, target.name, principal.account_name, action), principal)
            for action, principal in steps
        ]

    def converge(self, source: GroupRef, target: GroupRef, diff: DiffResult) -> ConvergenceResult:
        """
        Bring a target group in line with a diff.

        Args:
            source: Source group the diff was computed from
            target: Target group to modify
            diff: Principals to add and remove

        Returns:
            ConvergenceResult with per-action counts and emitted records
        """
        result = ConvergenceResult(target=target)

        if diff.is_empty:
            logger.info(f"{target.name} is already in sync with {source.name}")
            return result

        for record, principal in self.plan(source, target, diff):
            result.planned.append(record)

            if self.dry_run:
                self._report(record)
                continue

            self._apply(record, principal, target, result)

        return result

    def _report(self, record: ChangeRecord):
        if record.action is ChangeAction.ADD:
            plan_logger.info(f"[DRY RUN] Would add {record.account_name} to {record.target_group}")
        else:
            plan_logger.info(f"[DRY RUN] Would remove {record.account_name} from {record.target_group}")

    def _apply(self, record: ChangeRecord, principal: Principal, target: GroupRef, result: ConvergenceResult):
        if record.action is ChangeAction.ADD:
            operation, verb, preposition = self.gateway.add_member, 'add', 'to'
            converged_error = MemberAlreadyPresentError
        else:
            operation, verb, preposition = self.gateway.remove_member, 'remove', 'from'
            converged_error = MemberNotPresentError

        try:
            retry_call(
                operation,
                args=(target, principal, self.server),
                max_attempts=self.max_retries + 1,
                delay=self.retry_wait,
                exceptions=(DirectoryError,),
                on_retry=create_retry_callback(f"{verb.capitalize()} {principal.account_name} {preposition} {target.name}"),
                should_retry=is_retryable_error
            )
        except converged_error as e:
            logger.info(f"Nothing to {verb} for {principal.account_name} {preposition} {target.name}: {e}")
            result.skipped += 1
            return
        except (DirectoryError, MaxRetriesExceeded) as e:
            logger.error(f"Failed to {verb} {principal.account_name} {preposition} {target.name}: {e}")
            audit_logger.log_membership_change(verb, principal.account_name, target.name, False)
            result.failed += 1
            return

        if record.action is ChangeAction.ADD:
            result.added += 1
            logger.info(f"Added {principal.account_name} to {target.name}")
        else:
            result.removed += 1
            logger.info(f"Removed {principal.account_name} from {target.name}")

        audit_logger.log_membership_change(verb, principal.account_name, target.name, True)
        result.records.append(record)
        if self.record_sink is not None:
            self.record_sink(record)
