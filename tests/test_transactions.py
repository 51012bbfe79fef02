"""Tests for the cross-service transactor and compensation entries."""

import uuid
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from git_gateway.api import app
from git_gateway.db.models import utc_now
from git_gateway.db.services import CompensationService, DomainEventService, ProjectService
from git_gateway.errors import ForbiddenError, NotFoundError, UpstreamError, ValidationError
from git_gateway.transactions.compensation import CompensationManager
from git_gateway.transactions.events import EventPublisher
from git_gateway.transactions.routes import get_gateway_client
from git_gateway.transactions.transactor import (
    DistributedTransactionManager,
    RepositoryRequest,
    TransactionRegistry,
)


def make_gateway_client(name: str = "service", verified_name=None, created: bool = True) -> AsyncMock:
    """Stand-in for ``GitGatewayClient`` answering repository calls."""
    repository_id = str(uuid.uuid4())
    client = AsyncMock()
    client.ensure_repository.return_value = ({"id": repository_id, "name": name}, created)
    client.get_repository.return_value = {
        "id": repository_id,
        "name": verified_name if verified_name is not None else name,
    }
    client.delete_repository.return_value = None
    return client


@pytest.fixture
def registry() -> TransactionRegistry:
    return TransactionRegistry()


@pytest.fixture
def tenant_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def user_id() -> uuid.UUID:
    return uuid.uuid4()


class TestCreateProjectWithRepository:
    @pytest.mark.asyncio
    async def test_success(self, db_session, registry, tenant_id, user_id):
        client = make_gateway_client()
        transactor = DistributedTransactionManager(db_session, client, registry=registry)

        result = await transactor.create_project_with_repository(
            tenant_id, user_id, "Platform", "PLAT", RepositoryRequest(name="service", init_readme=True)
        )

        tx = result["transaction"]
        assert tx["status"] == "confirmed"
        assert tx["completed_at"] is not None
        assert len(tx["compensation_ids"]) == 2
        assert result["project"]["members"] == [{"user_id": str(user_id), "role": "owner"}]

        _, kwargs = client.ensure_repository.call_args
        assert kwargs["init_readme"] is True

        events = [e.type for e in DomainEventService(db_session).list()]
        assert events == ["project.created", "repository.created"]

        entries = CompensationService(db_session).list(transaction_id=tx["id"])
        assert [e.action for e in entries] == ["rollback_project", "delete_repository"]
        assert all(e.status == "pending" for e in entries)

    @pytest.mark.asyncio
    async def test_verification_failure_compensates(self, db_session, registry, tenant_id, user_id):
        client = make_gateway_client(verified_name="other")
        transactor = DistributedTransactionManager(db_session, client, registry=registry)

        with pytest.raises(UpstreamError):
            await transactor.create_project_with_repository(
                tenant_id, user_id, "Platform", "PLAT", RepositoryRequest(name="service")
            )

        repository_id = client.ensure_repository.return_value[0]["id"]
        client.delete_repository.assert_awaited_once_with(repository_id)

        tx = registry.all()[0]
        assert tx.status == "failed"
        assert tx.current_phase == "cancel"
        assert "name mismatch" in tx.error_message
        with pytest.raises(NotFoundError):
            ProjectService(db_session).get(tx.project_id)

        entries = CompensationService(db_session).list(transaction_id=tx.id)
        assert {e.status for e in entries} == {"executed"}

        events = [e.type for e in DomainEventService(db_session).list()]
        assert events[-1] == "repository.creation_failed"

    @pytest.mark.asyncio
    async def test_gateway_failure_rolls_back_project(self, db_session, registry, tenant_id, user_id):
        client = make_gateway_client()
        client.ensure_repository.side_effect = UpstreamError("gateway unavailable")
        transactor = DistributedTransactionManager(db_session, client, registry=registry)

        with pytest.raises(UpstreamError):
            await transactor.create_project_with_repository(
                tenant_id, user_id, "Platform", "PLAT", RepositoryRequest(name="service")
            )

        tx = registry.all()[0]
        assert tx.status == "failed"
        assert len(tx.compensation_ids) == 1
        client.delete_repository.assert_not_awaited()
        with pytest.raises(NotFoundError):
            ProjectService(db_session).get(tx.project_id)


class TestCreateRepositoryForProject:
    @pytest.mark.asyncio
    async def test_member_creates_repository(self, db_session, registry, tenant_id, user_id):
        project = ProjectService(db_session).create(tenant_id, "Platform", "PLAT", user_id)
        client = make_gateway_client("api")
        transactor = DistributedTransactionManager(db_session, client, registry=registry)

        result = await transactor.create_repository_for_project(
            project.id, user_id, RepositoryRequest(name="api")
        )

        assert result["repository"]["name"] == "api"
        assert result["transaction"]["tenant_id"] == str(tenant_id)
        assert transactor.list_active_transactions() == []

    @pytest.mark.asyncio
    async def test_existing_repository_is_not_deleted_on_failure(
        self, db_session, registry, tenant_id, user_id
    ):
        project = ProjectService(db_session).create(tenant_id, "Platform", "PLAT", user_id)
        client = make_gateway_client("api", verified_name="other", created=False)
        transactor = DistributedTransactionManager(db_session, client, registry=registry)

        with pytest.raises(UpstreamError):
            await transactor.create_repository_for_project(
                project.id, user_id, RepositoryRequest(name="api")
            )

        client.delete_repository.assert_not_awaited()
        tx = registry.all()[0]
        assert tx.status == "failed"
        assert tx.compensation_ids == []
        assert CompensationService(db_session).list(transaction_id=tx.id) == []

    @pytest.mark.asyncio
    async def test_non_member_forbidden(self, db_session, registry, tenant_id, user_id):
        project = ProjectService(db_session).create(tenant_id, "Platform", "PLAT", user_id)
        client = make_gateway_client()
        transactor = DistributedTransactionManager(db_session, client, registry=registry)

        with pytest.raises(ForbiddenError):
            await transactor.create_repository_for_project(
                project.id, uuid.uuid4(), RepositoryRequest(name="api")
            )

        client.ensure_repository.assert_not_awaited()
        assert registry.all()[0].status == "failed"
        assert ProjectService(db_session).get(project.id) is not None

    @pytest.mark.asyncio
    async def test_unknown_project(self, db_session, registry, user_id):
        transactor = DistributedTransactionManager(db_session, make_gateway_client(), registry=registry)

        with pytest.raises(NotFoundError):
            await transactor.create_repository_for_project(
                uuid.uuid4(), user_id, RepositoryRequest(name="api")
            )


class TestRegistry:
    def test_get_unknown_transaction(self, db_session, registry):
        transactor = DistributedTransactionManager(db_session, make_gateway_client(), registry=registry)

        with pytest.raises(NotFoundError):
            transactor.get_transaction(uuid.uuid4())

    @pytest.mark.asyncio
    async def test_cleanup_completed(self, db_session, registry, tenant_id, user_id):
        transactor = DistributedTransactionManager(db_session, make_gateway_client(), registry=registry)
        result = await transactor.create_project_with_repository(
            tenant_id, user_id, "Platform", "PLAT", RepositoryRequest(name="service")
        )
        tx = transactor.get_transaction(result["transaction"]["id"])

        assert transactor.cleanup_completed_transactions(timedelta(hours=1)) == 0

        tx.completed_at = utc_now() - timedelta(hours=2)
        assert transactor.cleanup_completed_transactions(timedelta(hours=1)) == 1
        assert registry.all() == []


class TestCompensationManager:
    def test_unknown_action(self, db_session):
        with pytest.raises(ValidationError):
            CompensationManager(db_session).add("drop_everything", uuid.uuid4())

    @pytest.mark.asyncio
    async def test_failing_entry_exhausts_retries(self, db_session):
        client = make_gateway_client()
        client.delete_repository.side_effect = UpstreamError("gateway down")
        manager = CompensationManager(db_session, client)
        entry = manager.add("delete_repository", uuid.uuid4(), max_retries=2)

        assert await manager.execute(entry.id) is False

        stored = manager.get_status(entry.id)
        assert stored.status == "failed"
        assert stored.retry_count == 2
        assert stored.last_error == "gateway down"
        assert client.delete_repository.await_count == 2

    @pytest.mark.asyncio
    async def test_execute_all_pending(self, db_session, tenant_id, user_id):
        project = ProjectService(db_session).create(tenant_id, "Platform", "PLAT", user_id)
        manager = CompensationManager(db_session, make_gateway_client())
        manager.add("rollback_project", project.id)
        manager.add("notify_failure", uuid.uuid4(), payload={"reason": "test"})

        summary = await manager.execute_all_pending()

        assert summary == {"total": 2, "executed": 2, "failed": 0}
        assert manager.list_pending() == []
        assert manager.clear_executed() == 2

    @pytest.mark.asyncio
    async def test_executed_entry_is_not_rerun(self, db_session):
        client = make_gateway_client()
        manager = CompensationManager(db_session, client)
        entry = manager.add("delete_repository", uuid.uuid4())

        assert await manager.execute(entry.id) is True
        assert await manager.execute(entry.id) is True
        assert client.delete_repository.await_count == 1

    @pytest.mark.asyncio
    async def test_local_directory_removed(self, db_session, tmp_path):
        directory = tmp_path / "orphan.git"
        directory.mkdir()
        manager = CompensationManager(db_session)
        entry = manager.add("delete_repository", uuid.uuid4(), payload={"git_path": str(directory)})

        assert await manager.execute(entry.id) is True
        assert not directory.exists()


class TestTransactionRoutes:
    @pytest.fixture
    def gateway(self, client):
        gateway = make_gateway_client()
        app.dependency_overrides[get_gateway_client] = lambda: gateway
        yield gateway
        app.dependency_overrides.pop(get_gateway_client, None)

    def test_create_project(self, client, gateway):
        payload = {
            "tenant_id": str(uuid.uuid4()),
            "user_id": str(uuid.uuid4()),
            "name": "Platform",
            "key": "PLAT",
            "repository": {"name": "service"},
        }

        response = client.post("/api/v1/projects", json=payload)

        assert response.status_code == 201
        data = response.json()["data"]
        assert data["transaction"]["status"] == "confirmed"

        project_id = data["project"]["id"]
        assert client.get(f"/api/v1/projects/{project_id}").json()["data"]["key"] == "PLAT"

        transaction_id = data["transaction"]["id"]
        tx = client.get(f"/api/v1/transactions/{transaction_id}").json()["data"]
        assert tx["type"] == "create_project_with_repository"

        entries = client.get(
            "/api/v1/compensations", params={"transaction_id": transaction_id}
        ).json()["data"]
        assert len(entries) == 2

    def test_upstream_failure_maps_to_502(self, client, gateway):
        gateway.get_repository.return_value = {"id": "x", "name": "renamed"}
        payload = {
            "tenant_id": str(uuid.uuid4()),
            "user_id": str(uuid.uuid4()),
            "name": "Platform",
            "key": "PLAT",
            "repository": {"name": "service"},
        }

        response = client.post("/api/v1/projects", json=payload)

        assert response.status_code == 502
        assert response.json()["error"]["code"] == "UPSTREAM_ERROR"

    def test_invalid_key_rejected(self, client, gateway):
        payload = {
            "tenant_id": str(uuid.uuid4()),
            "user_id": str(uuid.uuid4()),
            "name": "Platform",
            "key": "1bad",
            "repository": {"name": "service"},
        }

        assert client.post("/api/v1/projects", json=payload).status_code == 422


class TestEventPublisher:
    @pytest.mark.asyncio
    async def test_subscribers_receive_pending_events(self, db_session, tenant_id):
        events = DomainEventService(db_session)
        created = events.create("project.created", uuid.uuid4(), tenant_id, payload={"key": "PLAT"})
        events.create("repository.created", uuid.uuid4(), tenant_id)
        received = []

        async def on_project(event):
            received.append(event.payload["key"])

        publisher = EventPublisher(db_session)
        publisher.subscribe("project.created", on_project)

        assert await publisher.publish_pending() == {"total": 2, "published": 2, "failed": 0}
        assert received == ["PLAT"]
        assert events.pending() == []
        assert events.list(created.aggregate_id)[0].processed is True

    @pytest.mark.asyncio
    async def test_failing_handler_leaves_event_for_retry(self, db_session, tenant_id):
        events = DomainEventService(db_session)
        event = events.create("repository.created", uuid.uuid4(), tenant_id)

        def broken(event):
            raise RuntimeError("search index unavailable")

        publisher = EventPublisher(db_session, max_retries=1)
        publisher.subscribe("repository.created", broken)

        assert await publisher.publish_pending() == {"total": 1, "published": 0, "failed": 1}
        stored = events.list(event.aggregate_id)[0]
        assert stored.processed is False
        assert stored.retry_count == 1
        assert stored.error == "search index unavailable"
        # the retry cap keeps it out of the next batch
        assert await publisher.publish_pending() == {"total": 0, "published": 0, "failed": 0}
