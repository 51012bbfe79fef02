"""
Compensation entries for cross-service transactions.

Each entry records the inverse of a step that already succeeded elsewhere.
Entries are persisted in ``compensation_entries`` so the worker can retry
them after a restart.
"""

import asyncio
import os
import shutil
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy.orm import Session

from ..client import GitGatewayClient
from ..config import get_settings
from ..db.models import CompensationEntryModel, utc_now
from ..db.services import CompensationService, IdLike, ProjectService, RepositoryService
from ..errors import ValidationError
from ..git.locks import get_lock_manager

logger = structlog.get_logger()

COMPENSATION_ACTIONS = ("delete_repository", "rollback_project", "notify_failure")


class CompensationManager:
    """Adds, executes and inspects compensation entries."""

    def __init__(self, db: Session, client: Optional[GitGatewayClient] = None):
        self.db = db
        self.client = client
        self.entries = CompensationService(db)

    def add(
        self,
        action: str,
        resource_id: IdLike,
        payload: Optional[Dict[str, Any]] = None,
        transaction_id: Optional[IdLike] = None,
        max_retries: Optional[int] = None,
    ) -> CompensationEntryModel:
        if action not in COMPENSATION_ACTIONS:
            raise ValidationError(f"unknown compensation action: {action}")
        entry = self.entries.create(
            action,
            resource_id,
            payload=payload,
            transaction_id=transaction_id,
            max_retries=max_retries or get_settings().compensation_max_retries,
        )
        logger.info(
            "compensation added",
            compensation_id=str(entry.id),
            action=action,
            resource_id=str(resource_id),
        )
        return entry

    async def execute(self, compensation_id: IdLike) -> bool:
        """
        Run one entry, retrying up to its ``max_retries``.

        Returns True when the entry is executed (now or earlier). An entry
        that exhausts its retries is marked ``failed``.
        """
        entry = self.entries.get(compensation_id)
        if entry.status == "executed":
            return True

        while (entry.retry_count or 0) < entry.max_retries:
            entry.retry_count = (entry.retry_count or 0) + 1
            try:
                await self._dispatch(entry)
            except Exception as exc:
                entry.last_error = str(exc)
                self.entries.save(entry)
                logger.warning(
                    "compensation attempt failed",
                    compensation_id=str(entry.id),
                    action=entry.action,
                    attempt=entry.retry_count,
                    error=str(exc),
                )
                continue
            entry.status = "executed"
            entry.executed_at = utc_now()
            entry.last_error = None
            self.entries.save(entry)
            logger.info("compensation executed", compensation_id=str(entry.id), action=entry.action)
            return True

        entry.status = "failed"
        self.entries.save(entry)
        logger.error(
            "compensation failed after retries",
            compensation_id=str(entry.id),
            action=entry.action,
            retry_count=entry.retry_count,
            last_error=entry.last_error,
        )
        return False

    async def execute_all_pending(self) -> Dict[str, int]:
        pending = self.list_pending()
        executed = 0
        for entry in pending:
            if await self.execute(entry.id):
                executed += 1
        if pending:
            logger.info(
                "pending compensations executed",
                total=len(pending),
                executed=executed,
                failed=len(pending) - executed,
            )
        return {"total": len(pending), "executed": executed, "failed": len(pending) - executed}

    def get_status(self, compensation_id: IdLike) -> CompensationEntryModel:
        return self.entries.get(compensation_id)

    def list_pending(self) -> List[CompensationEntryModel]:
        return self.entries.list(status="pending")

    def clear_executed(self) -> int:
        removed = self.entries.delete_executed()
        logger.info("executed compensations cleared", removed=removed)
        return removed

    # =========================================================================
    # Handlers
    # =========================================================================

    async def _dispatch(self, entry: CompensationEntryModel) -> None:
        if entry.action == "delete_repository":
            await self._delete_repository(entry)
        elif entry.action == "rollback_project":
            self._rollback_project(entry)
        elif entry.action == "notify_failure":
            logger.warning(
                "failure notification",
                resource_id=str(entry.resource_id),
                payload=entry.payload,
            )
        else:
            raise ValidationError(f"unknown compensation action: {entry.action}")

    async def _delete_repository(self, entry: CompensationEntryModel) -> None:
        git_path = (entry.payload or {}).get("git_path")
        if git_path:
            await self._remove_local_directory(entry, git_path)
            return

        if self.client is not None:
            await self.client.delete_repository(str(entry.resource_id))
            return
        async with GitGatewayClient() as client:
            await client.delete_repository(str(entry.resource_id))

    async def _remove_local_directory(self, entry: CompensationEntryModel, git_path: str) -> None:
        repositories = RepositoryService(self.db)
        locks = get_lock_manager()

        def remove() -> None:
            with locks.write(git_path), locks.write(entry.resource_id):
                if repositories.find_by_path(git_path) is not None:
                    logger.info("directory reused by a live repository, keeping it", git_path=git_path)
                    return
                if os.path.exists(git_path):
                    shutil.rmtree(git_path)

        await asyncio.to_thread(remove)

    def _rollback_project(self, entry: CompensationEntryModel) -> None:
        deleted = ProjectService(self.db).delete(entry.resource_id)
        logger.info("project rolled back", project_id=str(entry.resource_id), deleted=deleted)
