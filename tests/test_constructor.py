"""Tests for signature-cached entity construction (engine/constructor.py)."""

from __future__ import annotations

import threading

import pytest

from entsync.config import reset_settings
from entsync.engine.container import Container
from entsync.engine.deferred import DeferredList, DeferredRelationship
from entsync.engine.introspection import Introspector
from entsync.exceptions import UnclaimedDataError
from entsync.models.enums import Conformity, DeferredState
from entsync.stores.sync_store import SyncStore

from sample_sync import AcmeProvider, Category, Note, OtherAcmeProvider, Task, User


class TestSignatures:
    def test_one_closure_per_key_set(self):
        constructor = Introspector().get(User).constructor
        create = constructor.get_create_from()
        first = create({"id": 1, "name": "Ada"})
        second = create({"name": "Grace", "id": 2})
        assert (first.name, second.name) == ("Ada", "Grace")
        assert constructor.cached_signatures() == [("id\0name", False)]

    def test_strict_closure_serves_loose_callers(self):
        constructor = Introspector().get(User).constructor
        constructor.get_create_from(strict=True)({"id": 1, "name": "Ada"})
        assert set(constructor.cached_signatures()) == {("id\0name", True), ("id\0name", False)}

    def test_without_provider_nothing_is_registered(self, store: SyncStore):
        create = Introspector().get(User).constructor.get_create_from()
        assert create({"id": 1}) is not create({"id": 1})
        assert store.entity_count() == 0


class TestProvide:
    def test_same_key_yields_same_instance(self, acme: AcmeProvider):
        user = User.provide({"id": 1, "name": "Ada"}, acme)
        again = User.provide({"id": 1, "name": "Ada Lovelace", "email": "ada@example.com"}, acme)
        assert again is user
        assert user.name == "Ada Lovelace"
        assert user.email == "ada@example.com"

    def test_string_and_int_ids_share_a_key(self, acme: AcmeProvider):
        assert User.provide({"id": 1}, acme) is User.provide({"id": "1"}, acme)

    def test_providers_have_separate_instances(self, acme: AcmeProvider, container: Container, store: SyncStore):
        other = OtherAcmeProvider(container, store)
        assert User.provide({"id": 1}, acme) is not User.provide({"id": 1}, other)

    def test_records_without_id_are_not_registered(self, acme: AcmeProvider, store: SyncStore):
        first = Task.provide({"title": "Draft"}, acme)
        second = Task.provide({"title": "Draft"}, acme)
        assert first is not second
        assert store.entity_count() == 0

    def test_keys_are_normalised(self, acme: AcmeProvider):
        user = User.provide({"Id": 1, "Name": "Ada"}, acme)
        assert (user.id, user.name) == (1, "Ada")

    def test_unclaimed_keys_are_discarded(self, acme: AcmeProvider):
        user = User.provide({"id": 1, "name": "Ada", "colour": "blue"}, acme)
        assert not hasattr(user, "colour")

    def test_strict_context_rejects_unclaimed_keys(self, acme: AcmeProvider):
        ctx = acme.get_context().with_strict()
        with pytest.raises(UnclaimedDataError) as exc:
            User.provide({"id": 1, "name": "Ada", "colour": "blue"}, acme, ctx)
        assert exc.value.keys == ["colour"]
        assert isinstance(exc.value, ValueError)

    def test_strict_context_rejects_colliding_keys(self, acme: AcmeProvider):
        ctx = acme.get_context().with_strict()
        with pytest.raises(UnclaimedDataError) as exc:
            User.provide({"id": 7, "name": "Ada", "Name": "Shadow"}, acme, ctx)
        assert exc.value.keys == ["Name"]

    def test_colliding_keys_keep_the_first(self, acme: AcmeProvider):
        user = User.provide({"id": 7, "name": "Ada", "Name": "Shadow"}, acme)
        assert user.name == "Ada"

    def test_extensible_entity_drops_colliding_keys_into_extras(self, acme: AcmeProvider):
        note = Note.provide({"id": 1, "body": "hello", "Body": "shadow"}, acme)
        assert note.body == "hello"
        assert note.to_record()["Body"] == "shadow"

    def test_concurrent_records_share_one_instance(self, acme: AcmeProvider, store: SyncStore):
        barrier = threading.Barrier(4)
        users = []

        def provide(name):
            barrier.wait()
            users.append(User.provide({"id": 3, "name": name}, acme))

        threads = [threading.Thread(target=provide, args=(f"Edsger {n}",)) for n in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(users) == 4
        assert all(user is users[0] for user in users)
        assert store.get_entity(acme.provider_id, User, 3) is users[0]

    def test_strict_from_settings(self, acme: AcmeProvider, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("ENTSYNC_STRICT_SIGNATURES", "true")
        reset_settings()
        with pytest.raises(UnclaimedDataError):
            User.provide({"id": 1, "colour": "blue"}, acme)

    def test_extensible_entity_keeps_extra_keys(self, acme: AcmeProvider):
        note = Note.provide({"id": 1, "body": "hello", "colour": "blue"}, acme)
        assert note.colour == "blue"
        assert note.to_record()["colour"] == "blue"

    def test_provide_list_is_lazy(self, acme: AcmeProvider, store: SyncStore):
        tasks = Task.provide_list([{"id": 5, "title": "Write"}, {"id": 9, "title": "Test"}], acme)
        assert store.entity_count() == 0
        assert [t.id for t in tasks] == [5, 9]
        assert store.entity_count() == 2

    def test_provide_list_with_conformity(self, acme: AcmeProvider):
        records = [{"id": 5, "title": "Write"}, {"id": 9, "title": "Test"}]
        tasks = list(Task.provide_list(records, acme, Conformity.COMPLETE))
        assert [t.title for t in tasks] == ["Write", "Test"]


class TestRelationships:
    def test_id_suffix_links_registered_entity(self, acme: AcmeProvider):
        user = User.provide({"id": 1, "name": "Ada"}, acme)
        task = Task.provide({"id": 5, "title": "Write", "userId": 1}, acme)
        assert task.user is user

    def test_nested_mapping_is_provided(self, acme: AcmeProvider):
        task = Task.provide({"id": 5, "user": {"id": 1, "name": "Ada"}}, acme)
        assert isinstance(task.user, User)
        assert User.provide({"id": 1}, acme) is task.user

    def test_nested_list_is_provided(self, acme: AcmeProvider):
        user = User.provide({"id": 1, "tasks": [{"id": 5, "title": "Write"}, {"id": 9}]}, acme)
        assert [t.id for t in user.tasks] == [5, 9]
        assert Task.provide({"id": 9}, acme) is user.tasks[1]

    def test_empty_list_stays_empty(self, acme: AcmeProvider):
        assert User.provide({"id": 1, "tasks": []}, acme).tasks == []

    def test_null_relationship(self, acme: AcmeProvider):
        assert Task.provide({"id": 5, "user": None}, acme).user is None

    def test_list_of_ids_is_deferred(self, acme: AcmeProvider):
        user = User.provide({"id": 1, "name": "Ada", "tasks": [5, 9]}, acme)
        assert isinstance(user.tasks, DeferredList)
        assert user.tasks.state is DeferredState.UNRESOLVED
        assert user.tasks.identifier == [5, 9]
        assert acme.calls == []

    def test_missing_one_to_many_is_hydrated(self, acme: AcmeProvider):
        user = User.provide({"id": 2, "name": "Grace"}, acme)
        assert isinstance(user.tasks, DeferredRelationship)
        assert user.tasks.filters == {"user": 2}

    def test_existing_entity_is_not_hydrated_again(self, acme: AcmeProvider):
        user = User.provide({"id": 2, "name": "Grace"}, acme)
        tasks = user.tasks.resolve()
        User.provide({"id": 2, "name": "Grace Hopper"}, acme)
        assert user.tasks == tasks

    def test_nested_children_join_the_hierarchy(self, acme: AcmeProvider):
        root = Category.provide({"id": 1, "name": "Root", "children": [{"id": 2, "name": "Books"}]}, acme)
        books = root.children[0]
        assert books.parent is root
        assert books.depth() == 1
        assert root.get_children() == [books]
