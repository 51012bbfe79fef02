"""
Project, transaction and compensation API routes.
"""

from typing import Any, AsyncIterator, Dict, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..client import GitGatewayClient
from ..db.base import get_db
from ..db.services import CompensationService, ProjectService
from ..envelope import success
from .compensation import CompensationManager
from .schemas import ProjectCreate, ProjectRepositoryCreate
from .transactor import DistributedTransactionManager

router = APIRouter(tags=["transactions"])


async def get_gateway_client() -> AsyncIterator[GitGatewayClient]:
    client = GitGatewayClient()
    try:
        yield client
    finally:
        await client.close()


def get_transactor(
    db: Session = Depends(get_db),
    client: GitGatewayClient = Depends(get_gateway_client),
) -> DistributedTransactionManager:
    return DistributedTransactionManager(db, client)


# =============================================================================
# Projects
# =============================================================================


@router.post("/projects", status_code=201)
async def create_project(
    body: ProjectCreate,
    transactor: DistributedTransactionManager = Depends(get_transactor),
) -> Dict[str, Any]:
    """Create a project and its first repository as one transaction."""
    result = await transactor.create_project_with_repository(
        tenant_id=body.tenant_id,
        user_id=body.user_id,
        project_name=body.name,
        project_key=body.key,
        repository=body.repository.to_request(),
        project_description=body.description,
    )
    return success(result, message="project created", code=201)


@router.get("/projects/{project_id}")
def get_project(project_id: str, db: Session = Depends(get_db)) -> Dict[str, Any]:
    return success(ProjectService(db).get(project_id).to_dict())


@router.post("/projects/{project_id}/repositories", status_code=201)
async def create_project_repository(
    project_id: str,
    body: ProjectRepositoryCreate,
    transactor: DistributedTransactionManager = Depends(get_transactor),
) -> Dict[str, Any]:
    result = await transactor.create_repository_for_project(
        project_id, body.user_id, body.repository.to_request()
    )
    return success(result, message="repository created", code=201)


# =============================================================================
# Transactions and compensations
# =============================================================================


@router.get("/transactions")
def list_transactions(
    transactor: DistributedTransactionManager = Depends(get_transactor),
) -> Dict[str, Any]:
    """Active (pending, validated or executed) transactions."""
    return success([tx.to_dict() for tx in transactor.list_active_transactions()])


@router.get("/transactions/{transaction_id}")
def get_transaction(
    transaction_id: str,
    transactor: DistributedTransactionManager = Depends(get_transactor),
) -> Dict[str, Any]:
    return success(transactor.get_transaction(transaction_id).to_dict())


@router.get("/compensations")
def list_compensations(
    status: Optional[str] = Query(None, pattern="^(pending|executed|failed)$"),
    transaction_id: Optional[str] = Query(None),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    entries = CompensationService(db).list(status=status, transaction_id=transaction_id)
    return success([e.to_dict() for e in entries])


@router.post("/compensations/execute-pending")
async def execute_pending_compensations(
    db: Session = Depends(get_db),
    client: GitGatewayClient = Depends(get_gateway_client),
) -> Dict[str, Any]:
    summary = await CompensationManager(db, client).execute_all_pending()
    return success(summary, message="pending compensations executed")
