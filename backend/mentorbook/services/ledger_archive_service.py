# backend/mentorbook/services/ledger_archive_service.py
"""
Ledger Archive Service for the MentorBook entitlement core.

Copies ledger entries past their retention into the archive table. The
retention that applies to an entry comes from the most specific enabled
policy:

    subject policy  >  service type policy  >  global policy  >  settings default

Each entry is archived by exactly one scope: a service type run skips subjects
that have their own policy, and the global run skips both.

The hot ledger is append-only, so archiving copies without deleting.
"""

from datetime import datetime, timedelta
import logging
from typing import Any, Dict, List, Optional, Tuple, TypedDict

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.exceptions import (
    ConflictException,
    DomainException,
    NotFoundException,
    ValidationException,
)
from ..core.timezone_utils import ensure_utc, utc_now
from ..models.ledger_archive import ArchivePolicyScope, LedgerArchivePolicy
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from ..repositories.ledger_archive_repository import (
    ArchivePolicyRepository,
    LedgerArchiveRepository,
)
from .base import BaseService

logger = logging.getLogger(__name__)


class ArchiveLedgerResult(TypedDict):
    scopes: int
    archived: int
    failed: int
    run_at: str


def _require_days(archive_after_days: int) -> None:
    if archive_after_days is None or archive_after_days < 1:
        raise ValidationException(
            "Archive period must be at least one day",
            code="ARCHIVE_AFTER_DAYS_TOO_SMALL",
            details={"archive_after_days": archive_after_days},
        )


def _scope_for(subject_id: Optional[str], service_type: Optional[str]) -> ArchivePolicyScope:
    if subject_id and service_type:
        raise ValidationException(
            "An archive policy targets a subject or a service type, not both",
            code="INVALID_ARCHIVE_SCOPE",
            details={"subject_id": subject_id, "service_type": service_type},
        )
    if subject_id:
        return ArchivePolicyScope.SUBJECT
    if service_type:
        return ArchivePolicyScope.SERVICE_TYPE
    return ArchivePolicyScope.GLOBAL


class LedgerArchiveService(BaseService):
    """Archive policies and the periodic archive run."""

    def __init__(
        self,
        db: Session,
        archive_repository: Optional[LedgerArchiveRepository] = None,
        policy_repository: Optional[ArchivePolicyRepository] = None,
    ):
        super().__init__(db)
        self.archive_repository = (
            archive_repository or RepositoryFactory.create_ledger_archive_repository(db)
        )
        self.policy_repository = (
            policy_repository or RepositoryFactory.create_archive_policy_repository(db)
        )

    # Policies

    def get_archive_policy(
        self, subject_id: Optional[str] = None, service_type: Optional[str] = None
    ) -> Optional[LedgerArchivePolicy]:
        """Most specific enabled policy for a subject/service type, or None for the default."""
        if subject_id:
            policy = self.policy_repository.find_enabled(
                ArchivePolicyScope.SUBJECT.value, subject_id=subject_id
            )
            if policy is not None:
                return policy
        if service_type:
            policy = self.policy_repository.find_enabled(
                ArchivePolicyScope.SERVICE_TYPE.value, service_type=service_type
            )
            if policy is not None:
                return policy
        return self.policy_repository.find_enabled(ArchivePolicyScope.GLOBAL.value)

    def archive_after_days(
        self, subject_id: Optional[str] = None, service_type: Optional[str] = None
    ) -> int:
        policy = self.get_archive_policy(subject_id, service_type)
        if policy is None:
            return settings.ledger_archive_after_days
        return policy.archive_after_days

    @BaseService.measure_operation("create_archive_policy")
    def create_policy(
        self,
        archive_after_days: int,
        *,
        subject_id: Optional[str] = None,
        service_type: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> LedgerArchivePolicy:
        """
        Create an enabled policy for one scope.

        Raises:
            ValidationException: non-positive period, or both keys given.
            ConflictException: an enabled policy already covers the scope.
        """
        _require_days(archive_after_days)
        scope = _scope_for(subject_id, service_type)

        with self.transaction():
            self._ensure_scope_free(scope, subject_id, service_type)
            policy = self.policy_repository.create(
                scope=scope.value,
                subject_id=subject_id or None,
                service_type=service_type or None,
                archive_after_days=archive_after_days,
                enabled=True,
                created_by=created_by,
            )

        self.log_operation(
            "create_archive_policy",
            policy_id=policy.id,
            scope=scope.value,
            subject_id=subject_id,
            service_type=service_type,
            archive_after_days=archive_after_days,
        )
        return policy

    @BaseService.measure_operation("update_archive_policy")
    def update_policy(
        self,
        policy_id: str,
        *,
        archive_after_days: Optional[int] = None,
        enabled: Optional[bool] = None,
    ) -> LedgerArchivePolicy:
        """Change a policy's period or switch it on or off."""
        if archive_after_days is not None:
            _require_days(archive_after_days)

        with self.transaction():
            policy = self.policy_repository.get_by_id(policy_id)
            if policy is None:
                raise NotFoundException(
                    f"Archive policy {policy_id} not found",
                    code="ARCHIVE_POLICY_NOT_FOUND",
                    details={"policy_id": policy_id},
                )
            if enabled and not policy.enabled:
                self._ensure_scope_free(
                    ArchivePolicyScope(policy.scope),
                    policy.subject_id,
                    policy.service_type,
                    exclude_id=policy.id,
                )
            if archive_after_days is not None:
                policy.archive_after_days = archive_after_days
            if enabled is not None:
                policy.enabled = enabled
            self.policy_repository.flush()

        self.log_operation(
            "update_archive_policy",
            policy_id=policy_id,
            archive_after_days=policy.archive_after_days,
            enabled=policy.enabled,
        )
        return policy

    # Archive run

    @BaseService.measure_operation("archive_ledger_entries")
    def archive_ledger_entries(
        self,
        now: Optional[datetime] = None,
        batch_size: Optional[int] = None,
    ) -> ArchiveLedgerResult:
        """
        Copy every ledger entry older than its retention into the archive.

        Batches commit one at a time; a failing scope is counted and the run
        moves on to the next one.
        """
        at = ensure_utc(now) or utc_now()
        limit = batch_size or settings.ledger_archive_batch_size

        results: ArchiveLedgerResult = {
            "scopes": 0,
            "archived": 0,
            "failed": 0,
            "run_at": at.isoformat(),
        }

        for scope, archive_after_days, filters in self._plan(self.policy_repository.list_enabled()):
            results["scopes"] += 1
            cutoff = at - timedelta(days=archive_after_days)
            try:
                archived = self._archive_scope(cutoff, at, limit, filters)
            except DomainException as exc:
                results["failed"] += 1
                self.logger.error(
                    "Failed to archive ledger entries",
                    extra={"scope": scope, "filters": filters, "error": str(exc)},
                )
                continue
            results["archived"] += archived
            prometheus_metrics.record_ledger_archived(scope, archived)

        self.log_operation("archive_ledger_entries", **results)
        return results

    # Internals

    def _ensure_scope_free(
        self,
        scope: ArchivePolicyScope,
        subject_id: Optional[str],
        service_type: Optional[str],
        exclude_id: Optional[str] = None,
    ) -> None:
        existing = self.policy_repository.find_enabled(
            scope.value,
            subject_id=subject_id,
            service_type=service_type,
            exclude_id=exclude_id,
        )
        if existing is not None:
            raise ConflictException(
                "An enabled archive policy already exists for this scope",
                code="ARCHIVE_POLICY_ALREADY_EXISTS",
                details={
                    "policy_id": existing.id,
                    "scope": scope.value,
                    "subject_id": subject_id,
                    "service_type": service_type,
                },
            )

    @staticmethod
    def _plan(
        policies: List[LedgerArchivePolicy],
    ) -> List[Tuple[str, int, Dict[str, Any]]]:
        """One (scope, days, filters) run per policy plus the global run."""
        subject_policies = [p for p in policies if p.scope == ArchivePolicyScope.SUBJECT.value]
        type_policies = [p for p in policies if p.scope == ArchivePolicyScope.SERVICE_TYPE.value]
        global_policy = next(
            (p for p in policies if p.scope == ArchivePolicyScope.GLOBAL.value), None
        )
        own_subjects = [p.subject_id for p in subject_policies]
        own_types = [p.service_type for p in type_policies]

        plan: List[Tuple[str, int, Dict[str, Any]]] = []
        for policy in subject_policies:
            plan.append(
                (policy.scope, policy.archive_after_days, {"subject_ids": [policy.subject_id]})
            )
        for policy in type_policies:
            plan.append(
                (
                    policy.scope,
                    policy.archive_after_days,
                    {
                        "service_types": [policy.service_type],
                        "exclude_subject_ids": own_subjects,
                    },
                )
            )
        plan.append(
            (
                ArchivePolicyScope.GLOBAL.value,
                global_policy.archive_after_days
                if global_policy is not None
                else settings.ledger_archive_after_days,
                {"exclude_subject_ids": own_subjects, "exclude_service_types": own_types},
            )
        )
        return plan

    def _archive_scope(
        self, cutoff: datetime, at: datetime, limit: int, filters: Dict[str, Any]
    ) -> int:
        archived = 0
        while True:
            with self.transaction():
                copied = self.archive_repository.copy_batch(
                    cutoff, archived_at=at, limit=limit, **filters
                )
            archived += copied
            if copied < limit:
                return archived
