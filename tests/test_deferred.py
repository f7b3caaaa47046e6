"""Tests for deferred relationships and hydration policies (engine/deferred.py)."""

from __future__ import annotations

import copy
import threading
import time

import pytest

from entsync.config import reset_settings
from entsync.engine.container import Container
from entsync.engine.definition import HttpSyncDefinition
from entsync.engine.deferred import DeferredEntity, DeferredList, DeferredRelationship
from entsync.engine.provider import SyncProvider
from entsync.exceptions import SyncCircularReferenceError, SyncEntityNotFoundError
from entsync.models.enums import DeferredState, HydrationPolicy, SyncErrorType, SyncOperation
from entsync.stores.sync_store import SyncStore

from sample_sync import RECORDS, AcmeHttpProvider, AcmeProvider, Category, Person, Task, TaskProvider, User, UserProvider


class TaskByIdProvider(SyncProvider, UserProvider, TaskProvider):
    """Can read tasks one at a time only."""

    def __init__(self, container, store):
        self.calls = []
        super().__init__(container, store)

    def get_backend_identifier(self):
        return ["task-by-id"]

    def get_task(self, ctx, task_id):
        self.calls.append(("get_task", task_id))
        data = RECORDS["tasks"].get(task_id)
        return Task.provide(data, self, ctx) if data else None


class SlowUserProvider(SyncProvider, UserProvider, TaskProvider):
    """Takes a while to answer each user read."""

    def __init__(self, container, store):
        self.calls = []
        super().__init__(container, store)

    def get_backend_identifier(self):
        return ["slow-users"]

    def get_user(self, ctx, user_id):
        self.calls.append(("get_user", user_id))
        time.sleep(0.2)
        return User.provide({"id": user_id, "name": "Ada"}, self, ctx)


class UserByIdHttpProvider(AcmeHttpProvider):
    """Reads users one at a time over HTTP."""

    def get_backend_identifier(self):
        return ["https://by-id.test"]

    def get_http_definition(self, entity):
        if entity is User:
            return HttpSyncDefinition(User, self, operations=[SyncOperation.READ], path="/users/:id")
        return super().get_http_definition(entity)


class TestDeferredList:
    def test_resolves_with_one_backend_call(self, acme: AcmeProvider):
        user = acme.with_(User).get(1)
        deferred = user.tasks
        assert isinstance(deferred, DeferredList)
        assert deferred.state is DeferredState.UNRESOLVED

        tasks = deferred.resolve()
        assert [t.id for t in tasks] == [5, 9]
        assert user.tasks == tasks
        assert all(t.user is user for t in tasks)
        assert acme.calls == [("get_user", 1), ("get_tasks", {"id": [5, 9]})]

        assert deferred.resolve() is tasks
        assert len(acme.calls) == 2

    def test_unresolved_list_collapses_to_ids(self, acme: AcmeProvider):
        user = acme.with_(User).get(1)
        assert user.to_record()["tasks"] == [5, 9]

    def test_registered_members_are_not_fetched(self, acme: AcmeProvider):
        task = Task.provide({"id": 5, "title": "Write"}, acme)
        user = User.provide({"id": 1, "tasks": [5, 9]}, acme)
        tasks = user.tasks.resolve()
        assert tasks[0] is task
        assert acme.calls == [("get_tasks", {"id": [9]})]

    def test_missing_members_are_dropped_and_recorded(self, container: Container, store: SyncStore):
        records = copy.deepcopy(RECORDS)
        del records["tasks"][9]
        acme = AcmeProvider(container, store, records=records)

        user = User.provide({"id": 1, "tasks": [5, 9]}, acme)
        assert [t.id for t in user.tasks.resolve()] == [5]
        errors = list(store.get_errors())
        assert [e.error_type for e in errors] == [SyncErrorType.ENTITY_NOT_FOUND]
        assert errors[0].entity_name == "Task#9"

    def test_falls_back_to_one_read_per_id(self, container: Container, store: SyncStore):
        provider = TaskByIdProvider(container, store)
        user = User.provide({"id": 1, "tasks": [5, 7]}, provider)
        assert [t.id for t in user.tasks.resolve()] == [5]
        assert provider.calls == [("get_task", 5), ("get_task", 7)]
        # Recorded once, by the failed read
        assert len(store.get_errors()) == 1
        assert [e.count for e in store.get_errors()] == [1]


    def test_missing_member_over_http_keeps_siblings(self, container: Container, store: SyncStore):
        provider = UserByIdHttpProvider(container, store)
        users = DeferredList.defer(provider, provider.get_context(), User, [1, 42, 2]).resolve()
        assert [u.id for u in users] == [1, 2]
        assert [r.url.path for r in provider.api.requests] == ["/api/users/1", "/api/users/42", "/api/users/2"]
        errors = list(store.get_errors())
        assert [e.entity_name for e in errors] == ["User#42"]


class TestDeferredEntity:
    def test_lazy_resolution(self, acme: AcmeProvider):
        task = Task.provide({"id": 5, "user_id": 1}, acme)
        assert isinstance(task.user, DeferredEntity)
        assert acme.calls == []

        user = task.user.resolve()
        assert task.user is user
        assert acme.calls == [("get_user", 1)]

    def test_registration_elsewhere_resolves_it(self, acme: AcmeProvider):
        task = Task.provide({"id": 5, "user_id": 1}, acme)
        deferred = task.user
        user = User.provide({"id": 1, "name": "Ada"}, acme)
        assert task.user is user
        assert deferred.is_resolved
        assert acme.calls == []

    def test_not_found_leaves_it_unresolved(self, acme: AcmeProvider, store: SyncStore):
        task = Task.provide({"id": 5, "user_id": 99}, acme)
        with pytest.raises(SyncEntityNotFoundError):
            task.user.resolve()
        assert task.user.state is DeferredState.UNRESOLVED
        assert store.error_count == 1

    def test_concurrent_resolution_is_coalesced(self, container: Container, store: SyncStore):
        provider = SlowUserProvider(container, store)
        task = Task.provide({"id": 5, "user_id": 1}, provider)
        deferred = task.user
        results, failures = [], []

        def resolve():
            try:
                results.append(deferred.resolve())
            except Exception as exc:
                failures.append(exc)

        threads = [threading.Thread(target=resolve) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert failures == []
        assert len(results) == 2
        assert results[0] is results[1]
        assert provider.calls == [("get_user", 1)]

    def test_placeholders_do_not_inherit_filters(self, acme: AcmeProvider):
        task = next(iter(acme.with_(Task).get_list({"user": 2})))
        assert isinstance(task.user, DeferredEntity)
        assert task.user.context.filters == {}

        task.user.resolve()
        assert acme.calls[-1] == ("get_user", 2)

    def test_resolving_twice_at_once_is_circular(self, acme: AcmeProvider):
        task = Task.provide({"id": 5, "user_id": 1}, acme)
        task.user.state = DeferredState.RESOLVING
        with pytest.raises(SyncCircularReferenceError):
            task.user.resolve()


class TestDeferredRelationship:
    def test_resolves_with_owner_filter(self, acme: AcmeProvider):
        user = User.provide({"id": 2, "name": "Grace"}, acme)
        assert isinstance(user.tasks, DeferredRelationship)
        tasks = user.tasks.resolve()
        assert [t.id for t in tasks] == [11]
        assert tasks[0].user is user
        assert acme.calls == [("get_tasks", {"user": 2})]

    def test_children_resolve_into_the_hierarchy(self, acme: AcmeProvider):
        books = Category.provide({"id": 2, "name": "Books", "parent": 1}, acme)
        root = books.parent.resolve()
        assert books.parent is root
        assert isinstance(root.children, DeferredRelationship)

        children = root.children.resolve()
        assert children[0] is books
        assert [c.name for c in children] == ["Books", "Music"]
        assert root.children == children
        assert all(c.parent is root for c in children)
        assert acme.calls == [("get_category", 1), ("get_categories", {"parent": 1})]


class TestHydrationPolicies:
    def test_eager_resolves_during_construction(self, acme: AcmeProvider):
        ctx = acme.get_context().with_hydration_policy(HydrationPolicy.EAGER)
        user = acme.with_(User, ctx).get(1)
        assert [t.id for t in user.tasks] == [5, 9]

    def test_eager_from_settings(self, acme: AcmeProvider, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("ENTSYNC_HYDRATION_POLICY", "eager")
        reset_settings()
        user = acme.with_(User).get(1)
        assert isinstance(user.tasks, list)

    def test_policy_for_one_entity(self, acme: AcmeProvider):
        ctx = acme.get_context().with_hydration_policy(HydrationPolicy.EAGER, Task)
        tasks = acme.with_(Task, ctx.with_hydration_policy(HydrationPolicy.LAZY, User)).get_list({"id": [5]})
        task = next(tasks)
        assert isinstance(task.user, DeferredEntity)
        user = acme.with_(User, ctx).get(1)
        assert isinstance(user.tasks, list)

    def test_suppress_skips_resolution(self, acme: AcmeProvider):
        ctx = acme.get_context().with_hydration_policy(HydrationPolicy.SUPPRESS)
        user = acme.with_(User, ctx).get(1)
        assert user.tasks.resolve() is None
        assert user.tasks.state is DeferredState.UNRESOLVED
        assert [t.id for t in user.tasks.resolve(force=True)] == [5, 9]

    def test_suppress_skips_hydration(self, acme: AcmeProvider):
        ctx = acme.get_context().with_hydration_policy(HydrationPolicy.SUPPRESS)
        user = acme.with_(User, ctx).get(2)
        assert user.tasks is None


class TestCycles:
    def test_lazy_mutual_references(self, acme: AcmeProvider):
        alice = acme.with_(Person).get(1)
        bob = alice.best_friend.resolve()
        assert alice.best_friend is bob
        assert bob.best_friend is alice
        assert acme.calls == [("get_person", 1), ("get_person", 2)]

    def test_eager_mutual_references_terminate(self, acme: AcmeProvider):
        ctx = acme.get_context().with_hydration_policy(HydrationPolicy.EAGER)
        alice = acme.with_(Person, ctx).get(1)
        assert alice.best_friend.best_friend is alice
        assert acme.calls == [("get_person", 1), ("get_person", 2)]

    def test_circular_hierarchy_is_rejected(self, acme: AcmeProvider):
        categories = {c.id: c for c in acme.with_(Category).get_list()}
        root, books = categories[1], categories[2]
        with pytest.raises(SyncCircularReferenceError):
            root.set_parent(books)
        assert root.parent is None
