"""Tests for operation definitions and the generic HTTP operations (engine/definition.py)."""

from __future__ import annotations

import json

import httpx
import pytest

from entsync.engine.container import Container
from entsync.engine.definition import HttpSyncDefinition, SyncDefinition
from entsync.engine.pipeline import Pipeline
from entsync.exceptions import HttpRequestError, SyncConfigurationError, SyncEntityNotFoundError
from entsync.models.enums import HttpMethod, SyncErrorType, SyncOperation
from entsync.stores.sync_store import SyncStore

from sample_sync import AcmeHttpProvider, AcmeProvider, FakeApi, Task, User


class FlakyApi(FakeApi):
    """Fails every request for user 2 with a server error."""

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/users/2"):
            self.requests.append(request)
            return httpx.Response(503, json={"error": "unavailable"})
        return super().__call__(request)


class TestOperationResolution:
    def test_override_wins_over_declared_method(self, acme: AcmeProvider):
        seen = []

        def read(definition, operation, ctx, entity_id):
            seen.append((definition, operation, entity_id))
            return User(id=entity_id, name="Override")

        definition = SyncDefinition(User, acme, overrides={SyncOperation.READ: read})
        user = definition.get_operation_closure(SyncOperation.READ)(acme.get_context(), 7)
        assert user.name == "Override"
        assert seen == [(definition, SyncOperation.READ, 7)]
        assert acme.calls == []
        assert SyncOperation.READ in definition.operations

    def test_declared_method(self, acme: AcmeProvider):
        definition = SyncDefinition(User, acme, operations=[SyncOperation.READ])
        assert definition.get_operation_closure(SyncOperation.READ) == acme.get_user

    def test_unsupported_operation(self, acme: AcmeProvider):
        assert SyncDefinition(User, acme).get_operation_closure(SyncOperation.CREATE) is None

    def test_closures_are_cached(self, acme: AcmeProvider):
        definition = SyncDefinition(User, acme)
        first = definition.get_operation_closure(SyncOperation.READ_LIST)
        assert definition.get_operation_closure(SyncOperation.READ_LIST) is first

    def test_read_from_list(self, acme: AcmeProvider):
        definition = SyncDefinition(Task, acme, read_from_list=True)
        task = definition.get_operation_closure(SyncOperation.READ)(acme.get_context(), 9)
        assert task.id == 9
        assert acme.calls == [("get_tasks", {"id": 9})]

    def test_generic_needs_a_path(self, http: AcmeHttpProvider):
        definition = HttpSyncDefinition(User, http, operations=[SyncOperation.READ])
        assert definition.get_operation_closure(SyncOperation.READ) is None

    def test_unmapped_http_method(self, http: AcmeHttpProvider):
        definition = HttpSyncDefinition(
            User,
            http,
            operations=[SyncOperation.DELETE],
            path="/users",
            method_map={SyncOperation.READ: HttpMethod.GET},
        )
        with pytest.raises(SyncConfigurationError):
            definition.get_operation_closure(SyncOperation.DELETE)


class TestPaths:
    @pytest.mark.parametrize(
        "path, entity_id, expected",
        [
            ("/users/:id", 5, "/users/5"),
            ("/users/:id", None, "/users"),
            ("/users/{id}/profile", 5, "/users/5/profile"),
            ("/tasks", 5, "/tasks/5"),
            ("/tasks/", "a b", "/tasks/a%20b"),
        ],
    )
    def test_get_path(self, http: AcmeHttpProvider, path, entity_id, expected):
        assert HttpSyncDefinition(User, http, path=path).get_path(entity_id) == expected

    def test_missing_path(self, http: AcmeHttpProvider):
        with pytest.raises(SyncConfigurationError):
            HttpSyncDefinition(User, http).get_path(1)


class TestHttpOperations:
    def test_read(self, http: AcmeHttpProvider):
        user = http.with_(User).get(1)
        assert (user.id, user.name) == (1, "Ada")
        request = http.api.requests[-1]
        assert str(request.url) == "https://http.test/api/users/1"
        assert request.headers["Authorization"] == "Bearer secret"

    def test_read_missing_is_not_found(self, http: AcmeHttpProvider, store: SyncStore):
        with pytest.raises(SyncEntityNotFoundError):
            http.with_(User).get(42)
        errors = list(store.get_errors())
        assert [e.error_type for e in errors] == [SyncErrorType.ENTITY_NOT_FOUND]
        assert errors[0].entity_name == "User#42"

    def test_server_errors_still_raise(self, container: Container, store: SyncStore):
        provider = AcmeHttpProvider(container, store, api=FlakyApi())
        with pytest.raises(HttpRequestError) as exc:
            provider.with_(User).get(2)
        assert exc.value.status_code == 503
        assert store.error_count == 0

    def test_read_sends_context_filters(self, http: AcmeHttpProvider):
        ctx = http.get_context().with_filter("fields", "name")
        user = http.with_(User, ctx).get(1)
        assert user.name == "Ada"
        request = http.api.requests[-1]
        assert request.url.path == "/api/users/1"
        assert request.url.params["fields"] == "name"

    def test_read_without_filters_sends_no_query(self, http: AcmeHttpProvider):
        http.with_(User).get(1)
        assert str(http.api.requests[-1].url) == "https://http.test/api/users/1"

    def test_read_list_with_filters(self, http: AcmeHttpProvider):
        tasks = list(http.with_(Task).get_list({"user": 2}))
        assert [t.id for t in tasks] == [11]
        assert http.api.requests[-1].url.params["user"] == "2"

    def test_read_list_is_lazy(self, http: AcmeHttpProvider):
        tasks = http.with_(Task).get_list()
        assert http.api.requests == []
        assert len(list(tasks)) == 3

    def test_deferred_list_over_http(self, http: AcmeHttpProvider):
        user = http.with_(User).get(1)
        tasks = user.tasks.resolve()
        assert [t.id for t in tasks] == [5, 9]
        assert all(t.user is user for t in tasks)
        assert http.api.requests[-1].url.params.get_list("id") == ["5", "9"]
        assert len(http.api.requests) == 2

    def test_create(self, http: AcmeHttpProvider):
        created = http.with_(User).create(User(name="Linus"))
        assert created.id == 3
        request = http.api.requests[-1]
        assert request.method == "POST"
        assert str(request.url) == "https://http.test/api/users"
        assert json.loads(request.content)["name"] == "Linus"

    def test_update_returns_registered_entity(self, http: AcmeHttpProvider):
        user = http.with_(User).get(1)
        user.name = "Ada Lovelace"
        assert http.with_(User).update(user) is user
        assert http.api.requests[-1].method == "PUT"
        assert http.api.records["users"][1]["name"] == "Ada Lovelace"

    def test_delete_with_empty_response(self, http: AcmeHttpProvider):
        user = http.with_(User).get(2)
        assert http.with_(User).delete(user) is user
        assert 2 not in http.api.records["users"]

    def test_list_writes_yield_per_entity(self, http: AcmeHttpProvider):
        definition = HttpSyncDefinition(User, http, operations=[SyncOperation.CREATE_LIST], path="/users")
        write = definition.get_operation_closure(SyncOperation.CREATE_LIST)
        created = list(write(http.get_context(), [User(name="A"), User(name="B")]))
        assert [u.id for u in created] == [3, 4]

    def test_pipelines(self, http: AcmeHttpProvider):
        definition = HttpSyncDefinition(
            User,
            http,
            operations=[SyncOperation.READ, SyncOperation.CREATE],
            path="/users",
            pipeline_from_backend=Pipeline().through(lambda record, ctx: {**record, "name": record["name"].upper()}),
            pipeline_to_backend=Pipeline().through(
                lambda record, ctx: {k: v for k, v in record.items() if v is not None}
            ),
        )
        ctx = http.get_context()
        assert definition.get_operation_closure(SyncOperation.READ)(ctx, 2).name == "GRACE"

        definition.get_operation_closure(SyncOperation.CREATE)(ctx, User(name="Linus"))
        assert json.loads(http.api.requests[-1].content) == {"name": "Linus"}

    def test_responses_are_cached_when_configured(self, http: AcmeHttpProvider):
        http.with_(Task).get(5)
        http.with_(Task).get(5)
        assert len(http.api.requests) == 1

        http.with_(User).get(1)
        http.with_(User).get(1)
        assert len(http.api.requests) == 3
