"""
Cross-service transactor.

Creates a project and its repository across the project table and the
gateway's repository API. The two sides share no transaction, so every step
that succeeds records its inverse as a compensation entry; any failure runs
those entries in reverse order and re-raises the original error.

Transactions live in an in-memory registry; only compensation entries and
domain events are persisted.
"""

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy.orm import Session

from ..client import GitGatewayClient
from ..config import get_settings
from ..db.models import ProjectModel, utc_now
from ..db.services import DomainEventService, IdLike, ProjectService, parse_uuid
from ..errors import ForbiddenError, GatewayError, NotFoundError, UpstreamError, ValidationError
from .compensation import CompensationManager

logger = structlog.get_logger()

STATUS_PENDING = "pending"
STATUS_VALIDATED = "validated"
STATUS_EXECUTED = "executed"
STATUS_CONFIRMED = "confirmed"
STATUS_FAILED = "failed"

PHASE_VALIDATION = "validation"
PHASE_EXECUTION = "execution"
PHASE_CONFIRM = "confirm"
PHASE_CANCEL = "cancel"

ACTIVE_STATUSES = (STATUS_PENDING, STATUS_VALIDATED, STATUS_EXECUTED)


@dataclass
class RepositoryRequest:
    name: str
    description: Optional[str] = None
    visibility: str = "private"
    default_branch: Optional[str] = None
    init_readme: bool = False


@dataclass
class DistributedTransaction:
    type: str
    project_id: Optional[uuid.UUID]
    user_id: uuid.UUID
    tenant_id: Optional[uuid.UUID]
    payload: Dict[str, Any] = field(default_factory=dict)
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    status: str = STATUS_PENDING
    current_phase: str = PHASE_VALIDATION
    compensation_ids: List[uuid.UUID] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None

    def advance(self, status: str, phase: Optional[str] = None) -> None:
        self.status = status
        if phase:
            self.current_phase = phase
        self.updated_at = utc_now()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "type": self.type,
            "status": self.status,
            "current_phase": self.current_phase,
            "project_id": str(self.project_id) if self.project_id else None,
            "user_id": str(self.user_id),
            "tenant_id": str(self.tenant_id) if self.tenant_id else None,
            "payload": self.payload,
            "compensation_ids": [str(c) for c in self.compensation_ids],
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "error_message": self.error_message,
        }


class TransactionRegistry:
    """Thread-safe in-memory store of transactions."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._transactions: Dict[uuid.UUID, DistributedTransaction] = {}

    def add(self, tx: DistributedTransaction) -> None:
        with self._lock:
            self._transactions[tx.id] = tx

    def get(self, transaction_id: uuid.UUID) -> Optional[DistributedTransaction]:
        with self._lock:
            return self._transactions.get(transaction_id)

    def all(self) -> List[DistributedTransaction]:
        with self._lock:
            return list(self._transactions.values())

    def cleanup(self, older_than: timedelta) -> int:
        cutoff = utc_now() - older_than
        with self._lock:
            stale = [
                tx_id
                for tx_id, tx in self._transactions.items()
                if tx.status in (STATUS_CONFIRMED, STATUS_FAILED)
                and tx.completed_at is not None
                and tx.completed_at < cutoff
            ]
            for tx_id in stale:
                del self._transactions[tx_id]
        return len(stale)


_registry: Optional[TransactionRegistry] = None
_registry_lock = threading.Lock()


def get_transaction_registry() -> TransactionRegistry:
    global _registry
    with _registry_lock:
        if _registry is None:
            _registry = TransactionRegistry()
        return _registry


class DistributedTransactionManager:
    """Validate, execute and confirm project and repository creation."""

    def __init__(
        self,
        db: Session,
        client: GitGatewayClient,
        compensations: Optional[CompensationManager] = None,
        registry: Optional[TransactionRegistry] = None,
    ):
        self.db = db
        self.client = client
        self.compensations = compensations or CompensationManager(db, client)
        self.registry = registry or get_transaction_registry()
        self.projects = ProjectService(db)
        self.events = DomainEventService(db)

    # =========================================================================
    # Flows
    # =========================================================================

    async def create_project_with_repository(
        self,
        tenant_id: IdLike,
        user_id: IdLike,
        project_name: str,
        project_key: str,
        repository: RepositoryRequest,
        project_description: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Create a project with its owner membership, then its repository."""
        tx = self._begin(
            "create_project_with_repository",
            project_id=None,
            user_id=user_id,
            tenant_id=tenant_id,
            payload={"project_name": project_name, "project_key": project_key, **_payload(repository)},
        )
        log = logger.bind(transaction_id=str(tx.id))
        log.info("transaction started", type=tx.type, project_name=project_name)

        try:
            project = self.projects.create(
                tx.tenant_id, project_name, project_key, tx.user_id, description=project_description
            )
            tx.project_id = project.id
            self._compensate_with(tx, "rollback_project", project.id, {"project_name": project.name})
            self.events.create(
                "project.created",
                project.id,
                project.tenant_id,
                payload={"name": project.name, "key": project.key},
                user_id=tx.user_id,
            )
            self._validate(tx, project, repository)
            created = await self._execute(tx, project, repository)
            await self._confirm(tx, created)
        except Exception as exc:
            await self._fail(tx, exc)
            raise

        self._complete(tx, created)
        return {"project": project.to_dict(), "repository": created, "transaction": tx.to_dict()}

    async def create_repository_for_project(
        self,
        project_id: IdLike,
        user_id: IdLike,
        repository: RepositoryRequest,
    ) -> Dict[str, Any]:
        """Create a repository inside an existing project."""
        tx = self._begin(
            "create_repository",
            project_id=parse_uuid(project_id, "project_id"),
            user_id=user_id,
            tenant_id=None,
            payload=_payload(repository),
        )
        log = logger.bind(transaction_id=str(tx.id))
        log.info("transaction started", type=tx.type, project_id=str(tx.project_id))

        try:
            project = self.projects.get(tx.project_id)
            tx.tenant_id = project.tenant_id
            self._validate(tx, project, repository)
            created = await self._execute(tx, project, repository)
            await self._confirm(tx, created)
        except Exception as exc:
            await self._fail(tx, exc)
            raise

        self._complete(tx, created)
        return {"repository": created, "transaction": tx.to_dict()}

    # =========================================================================
    # Phases
    # =========================================================================

    def _begin(
        self,
        tx_type: str,
        project_id: Optional[uuid.UUID],
        user_id: IdLike,
        tenant_id: Optional[IdLike],
        payload: Dict[str, Any],
    ) -> DistributedTransaction:
        tx = DistributedTransaction(
            type=tx_type,
            project_id=project_id,
            user_id=parse_uuid(user_id, "user_id"),
            tenant_id=parse_uuid(tenant_id, "tenant_id") if tenant_id else None,
            payload=payload,
        )
        self.registry.add(tx)
        return tx

    def _validate(
        self, tx: DistributedTransaction, project: ProjectModel, repository: RepositoryRequest
    ) -> None:
        if not self.projects.is_member(project.id, tx.user_id):
            raise ForbiddenError(
                "user is not a member of the project",
                details={"project_id": str(project.id), "user_id": str(tx.user_id)},
            )
        if not repository.name or not repository.name.strip():
            raise ValidationError("repository name must not be empty")
        tx.advance(STATUS_VALIDATED, PHASE_EXECUTION)

    async def _execute(
        self, tx: DistributedTransaction, project: ProjectModel, repository: RepositoryRequest
    ) -> Dict[str, Any]:
        created, is_new = await self.client.ensure_repository(
            str(project.id),
            repository.name,
            description=repository.description,
            visibility=repository.visibility,
            default_branch=repository.default_branch,
            init_readme=repository.init_readme,
        )
        # an identical repository that already existed is not this transaction's to delete
        if is_new:
            self._compensate_with(
                tx,
                "delete_repository",
                created["id"],
                {"repository_name": created.get("name"), "project_id": str(project.id)},
            )
        tx.advance(STATUS_EXECUTED, PHASE_CONFIRM)
        logger.info(
            "repository created" if is_new else "repository already existed",
            transaction_id=str(tx.id),
            repository_id=created["id"],
        )
        return created

    async def _confirm(self, tx: DistributedTransaction, created: Dict[str, Any]) -> None:
        verified = await self.client.get_repository(created["id"])
        if verified.get("name") != created.get("name"):
            raise UpstreamError(
                "repository verification failed: name mismatch",
                details={"expected": created.get("name"), "actual": verified.get("name")},
            )

    def _complete(self, tx: DistributedTransaction, created: Dict[str, Any]) -> None:
        tx.advance(STATUS_CONFIRMED)
        tx.completed_at = utc_now()
        self.events.create(
            "repository.created",
            created["id"],
            tx.tenant_id,
            payload={"project_id": str(tx.project_id), "name": created.get("name")},
            user_id=tx.user_id,
        )
        logger.info("transaction confirmed", transaction_id=str(tx.id), repository_id=created["id"])

    async def _fail(self, tx: DistributedTransaction, exc: Exception) -> None:
        self.db.rollback()
        tx.error_message = str(exc)
        logger.error(
            "transaction failed",
            transaction_id=str(tx.id),
            type=tx.type,
            phase=tx.current_phase,
            error=str(exc),
        )

        if tx.compensation_ids:
            tx.advance(tx.status, PHASE_CANCEL)
            for compensation_id in reversed(tx.compensation_ids):
                try:
                    await self.compensations.execute(compensation_id)
                except GatewayError as comp_exc:
                    logger.error(
                        "compensation could not run",
                        transaction_id=str(tx.id),
                        compensation_id=str(compensation_id),
                        error=str(comp_exc),
                    )

        tx.advance(STATUS_FAILED)
        tx.completed_at = utc_now()

        if tx.project_id and tx.tenant_id:
            self.events.create(
                "repository.creation_failed",
                tx.project_id,
                tx.tenant_id,
                payload={"error": tx.error_message, "transaction_id": str(tx.id)},
                user_id=tx.user_id,
            )

    def _compensate_with(
        self,
        tx: DistributedTransaction,
        action: str,
        resource_id: IdLike,
        payload: Dict[str, Any],
    ) -> None:
        entry = self.compensations.add(action, resource_id, payload=payload, transaction_id=tx.id)
        tx.compensation_ids.append(entry.id)

    # =========================================================================
    # Registry
    # =========================================================================

    def get_transaction(self, transaction_id: IdLike) -> DistributedTransaction:
        tx = self.registry.get(parse_uuid(transaction_id, "transaction_id"))
        if tx is None:
            raise NotFoundError(
                "transaction not found", details={"transaction_id": str(transaction_id)}
            )
        return tx

    def list_active_transactions(self) -> List[DistributedTransaction]:
        return [tx for tx in self.registry.all() if tx.status in ACTIVE_STATUSES]

    def cleanup_completed_transactions(self, older_than: Optional[timedelta] = None) -> int:
        retention = older_than or timedelta(hours=get_settings().transaction_retention_hours)
        removed = self.registry.cleanup(retention)
        if removed:
            logger.info("completed transactions cleaned up", removed=removed)
        return removed


def _payload(repository: RepositoryRequest) -> Dict[str, Any]:
    return {
        "repository_name": repository.name,
        "description": repository.description,
        "visibility": repository.visibility,
        "default_branch": repository.default_branch,
        "init_readme": repository.init_readme,
    }
