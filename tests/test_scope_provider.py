from __future__ import annotations

import pytest

from ontology_engine.db.context import Provenance, bind_provenance, bind_tenant_scope, get_provenance, get_tenant_scope
from ontology_engine.db.scope import resolve_scope
from ontology_engine.errors import DeadlineExceededError, MissingScopeError, StorageUnavailableError


def test_acquire_binds_tenant_and_release_is_idempotent(provider, database):
    scope = provider.acquire("prj_a")
    assert scope.tenant_id == "prj_a"
    assert scope.is_administrative is False
    assert database.open_connections == 1

    scope.release()
    scope.release()
    provider.release(scope)

    assert scope.released is True
    assert database.open_connections == 0


def test_acquire_administrative_has_no_tenant(provider):
    with provider.administrative_scope() as scope:
        assert scope.tenant_id is None
        assert scope.is_administrative is True


def test_acquire_rejects_empty_tenant(provider):
    with pytest.raises(ValueError, match="tenant_id"):
        provider.acquire("  ")


def test_scope_context_manager_releases_on_error(provider, database):
    with pytest.raises(RuntimeError, match="boom"):
        with provider.scope("prj_a"):
            raise RuntimeError("boom")
    assert database.open_connections == 0


def test_released_scope_is_rejected_before_round_trip(provider, repo, database):
    scope = provider.acquire("prj_a")
    scope.release()
    database.round_trips = 0

    with pytest.raises(MissingScopeError, match="released"):
        repo.get_by_id(workflow_id="wf_x", scope=scope)
    assert database.round_trips == 0


def test_from_context_returns_bound_scope(provider, repo, seed_workflow):
    created = seed_workflow("prj_a")
    assert get_tenant_scope() is None

    with provider.scope("prj_a") as scope:
        with bind_tenant_scope(scope):
            assert get_tenant_scope() is scope
            assert resolve_scope(None) is scope
            assert repo.get_by_id(workflow_id=created.id).id == created.id

    assert get_tenant_scope() is None


def test_resolve_scope_without_any_scope_fails():
    with pytest.raises(MissingScopeError):
        resolve_scope(None)


def test_expired_deadline_fails_without_round_trip(provider, repo, database):
    with provider.scope("prj_a", timeout=0) as scope:
        database.round_trips = 0
        with pytest.raises(DeadlineExceededError):
            repo.get_by_id(workflow_id="wf_x", scope=scope)
        assert database.round_trips == 0


def test_cancelled_scope_fails_without_round_trip(provider, repo, database):
    with provider.scope("prj_a") as scope:
        scope.cancel()
        database.round_trips = 0
        with pytest.raises(DeadlineExceededError, match="cancelled"):
            repo.get_by_id(workflow_id="wf_x", scope=scope)
        assert database.round_trips == 0
        assert scope.conn.cancelled is True


def test_unavailable_store_raises_connection_error(provider, database):
    database.available = False
    with pytest.raises(StorageUnavailableError) as exc_info:
        provider.acquire("prj_a")
    assert isinstance(exc_info.value, ConnectionError)
    assert exc_info.value.retryable is True


def test_store_going_away_mid_scope_surfaces_storage_unavailable(provider, repo, database):
    with provider.scope("prj_a") as scope:
        database.available = False
        with pytest.raises(StorageUnavailableError):
            repo.get_by_id(workflow_id="wf_x", scope=scope)


def test_provenance_binding_is_scoped():
    assert get_provenance() is None
    with bind_provenance(Provenance("manual", "user_1")) as provenance:
        assert get_provenance() == provenance
    assert get_provenance() is None


def test_provenance_rejects_unknown_source():
    with pytest.raises(ValueError, match="provenance"):
        Provenance("cron")


def test_cancelled_connection_refuses_direct_calls(database):
    conn = database.connect("prj_a")
    conn.cancel()
    before = database.round_trips
    with pytest.raises(DeadlineExceededError, match="cancelled"):
        conn.select("ontology_workflows")
    with pytest.raises(DeadlineExceededError):
        conn.insert("ontology_workflows", {"id": "wf_x", "project_id": "prj_a"})
    assert database.round_trips == before
    conn.close()
    assert database.open_connections == 0
