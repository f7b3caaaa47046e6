"""Cached class metadata for entities and providers.

``Introspector.get(cls)`` inspects a class once and caches a ``ClassInfo``
describing:

  * constructor parameters (pydantic fields), required vs optional
  * readable / writable properties
  * declared one-to-one / one-to-many relationships and hierarchy properties
  * for providers: serviced entities, declared operation methods and the
    method-name → (operation, entity) dispatch table

Method names are compared after lower-casing and removing underscores, so
``get_user``, ``getUser`` and ``getuser`` name the same operation.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from entsync.exceptions import SyncConfigurationError
from entsync.logging import get_logger
from entsync.models.entity import SyncEntity, SyncProviderInterface, resolve_entity_class, snake_case
from entsync.models.enums import LIST_OPERATIONS, READ_OPERATIONS, SyncOperation

if TYPE_CHECKING:
    from entsync.engine.constructor import SignatureConstructor

log = get_logger("introspection")


def is_list_operation(operation: SyncOperation) -> bool:
    return operation in LIST_OPERATIONS


def is_read_operation(operation: SyncOperation) -> bool:
    return operation in READ_OPERATIONS


def is_write_operation(operation: SyncOperation) -> bool:
    return operation not in READ_OPERATIONS


def method_key(name: str) -> str:
    return name.replace("_", "").lower()


def operation_method_names(entity: type[SyncEntity]) -> list[tuple[SyncOperation, str]]:
    """Conventional method names for each operation on ``entity``."""
    noun = entity.noun()
    plural = entity.plural()
    names: list[tuple[SyncOperation, str]] = []
    if plural != noun:
        names += [
            (SyncOperation.CREATE_LIST, f"create_{plural}"),
            (SyncOperation.READ_LIST, f"get_{plural}"),
            (SyncOperation.UPDATE_LIST, f"update_{plural}"),
            (SyncOperation.DELETE_LIST, f"delete_{plural}"),
        ]
    names += [
        (SyncOperation.CREATE, f"create_{noun}"),
        (SyncOperation.READ, f"get_{noun}"),
        (SyncOperation.UPDATE, f"update_{noun}"),
        (SyncOperation.DELETE, f"delete_{noun}"),
        (SyncOperation.CREATE_LIST, f"createlist_{noun}"),
        (SyncOperation.READ_LIST, f"getlist_{noun}"),
        (SyncOperation.UPDATE_LIST, f"updatelist_{noun}"),
        (SyncOperation.DELETE_LIST, f"deletelist_{noun}"),
    ]
    return names


def entity_to_provider(entity: type[SyncEntity]) -> type[SyncProviderInterface] | None:
    return SyncProviderInterface.for_entity(entity)


def provider_to_entity(interface: type) -> list[type[SyncEntity]]:
    if SyncProviderInterface.is_interface(interface):
        return [SyncProviderInterface.serviced_entity(interface)]
    return []


def _is_framework_class(klass: type) -> bool:
    return klass is object or bool(klass.__dict__.get("_is_framework_class"))


@dataclass
class ClassInfo:
    cls: type
    is_entity: bool = False
    is_provider: bool = False

    # normalised key → field / attribute name
    parameters: dict[str, str] = field(default_factory=dict)
    required: frozenset[str] = frozenset()
    readable: dict[str, str] = field(default_factory=dict)
    writable: dict[str, str] = field(default_factory=dict)
    extensible: bool = False

    one_to_one: dict[str, type[SyncEntity]] = field(default_factory=dict)
    one_to_many: dict[str, type[SyncEntity]] = field(default_factory=dict)
    parent_property: str | None = None
    children_property: str | None = None
    id_property: str | None = None

    noun: str | None = None
    plural: str | None = None  # None when the plural is the same as the noun

    provider_interfaces: list[type] = field(default_factory=list)
    provider_entities: list[type[SyncEntity]] = field(default_factory=list)
    entity_basenames: dict[str, type[SyncEntity]] = field(default_factory=dict)
    operation_methods: dict[str, str] = field(default_factory=dict)
    magic_methods: dict[str, tuple[SyncOperation, type[SyncEntity]]] = field(default_factory=dict)

    declared_methods: dict[tuple[type, SyncOperation], str | None] = field(default_factory=dict, repr=False)
    _constructor: SignatureConstructor | None = field(default=None, repr=False)
    _introspector: Introspector | None = field(default=None, repr=False)

    @property
    def relationships(self) -> dict[str, type[SyncEntity]]:
        return {**self.one_to_one, **self.one_to_many}

    @property
    def constructor(self) -> SignatureConstructor:
        if self._constructor is None:
            if not self.is_entity:
                raise SyncConfigurationError(f"{self.cls.__name__} is not a SyncEntity")
            from entsync.engine.constructor import SignatureConstructor

            self._constructor = SignatureConstructor(self, self._introspector or default_introspector)
        return self._constructor

    def get_operation_method(self, entity: type[SyncEntity], operation: SyncOperation) -> str | None:
        """Return the provider method that implements ``operation`` for ``entity``, if any."""
        key = (entity, operation)
        if key in self.declared_methods:
            return self.declared_methods[key]
        if not self.is_provider:
            raise SyncConfigurationError(f"{self.cls.__name__} is not a sync provider")
        candidates = {
            method_key(name)
            for op, name in operation_method_names(entity)
            if op is operation
        }
        methods = sorted({self.operation_methods[k] for k in candidates if k in self.operation_methods})
        if len(methods) > 1:
            raise SyncConfigurationError(
                f"Too many implementations of {operation.name} for {entity.__name__}: {', '.join(methods)}"
            )
        method = methods[0] if methods else None
        self.declared_methods[key] = method
        return method


class Introspector:
    """Registry of ``ClassInfo`` objects, built once per class."""

    def __init__(self) -> None:
        self._classes: dict[type, ClassInfo] = {}
        self._lock = threading.RLock()

    def get(self, cls: type) -> ClassInfo:
        info = self._classes.get(cls)
        if info is not None:
            return info
        with self._lock:
            info = self._classes.get(cls)
            if info is None:
                info = self._inspect(cls)
                self._classes[cls] = info
                log.debug("class_introspected", cls=cls.__name__, entity=info.is_entity, provider=info.is_provider)
            return info

    def clear(self) -> None:
        with self._lock:
            self._classes.clear()

    def __contains__(self, cls: type) -> bool:
        return cls in self._classes

    # ── Inspection ──────────────────────────────────────

    def _inspect(self, cls: type) -> ClassInfo:
        info = ClassInfo(cls=cls, _introspector=self)
        info.is_entity = isinstance(cls, type) and issubclass(cls, SyncEntity)
        info.is_provider = any(SyncProviderInterface.is_interface(k) for k in cls.__mro__)

        if info.is_entity:
            self._inspect_entity(cls, info)
        else:
            self._inspect_properties(cls, info)
        if info.is_provider:
            self._inspect_provider(cls, info)
        return info

    def _inspect_properties(self, cls: type, info: ClassInfo) -> None:
        seen: set[str] = set()
        for klass in cls.__mro__:
            for name, attr in vars(klass).items():
                if name in seen or name.startswith("_") or not isinstance(attr, property):
                    continue
                seen.add(name)
                info.readable.setdefault(snake_case(name), name)
                if attr.fset is not None:
                    info.writable.setdefault(snake_case(name), name)

    def _inspect_entity(self, cls: type[SyncEntity], info: ClassInfo) -> None:
        required = set()
        for name, field_info in cls.model_fields.items():
            key = snake_case(name)
            info.parameters[key] = name
            info.readable[key] = name
            info.writable[key] = name
            if field_info.is_required():
                required.add(name)
        info.required = frozenset(required)
        info.extensible = cls.model_config.get("extra") == "allow"
        info.id_property = "id" if "id" in cls.model_fields else None
        self._inspect_properties(cls, info)

        for attr, mapping in (("one_to_one", cls.one_to_one), ("one_to_many", cls.one_to_many)):
            relationships: dict[str, type[SyncEntity]] = getattr(info, attr)
            for prop, target in mapping.items():
                if prop not in cls.model_fields:
                    raise SyncConfigurationError(
                        f"{cls.__name__}.{prop} is declared as a relationship but is not a field"
                    )
                relationships[prop] = resolve_entity_class(target, cls.__module__)

        for attr in ("parent_property", "children_property"):
            prop = getattr(cls, attr)
            if prop is None:
                continue
            if prop not in cls.model_fields:
                raise SyncConfigurationError(f"{cls.__name__}.{attr} names an unknown field: {prop}")
            setattr(info, attr, prop)
        if bool(info.parent_property) != bool(info.children_property):
            raise SyncConfigurationError(
                f"{cls.__name__} must declare both parent_property and children_property"
            )
        if info.parent_property:
            info.one_to_one.setdefault(info.parent_property, cls)
            info.one_to_many.setdefault(info.children_property, cls)

        info.noun = cls.noun()
        plural = cls.plural()
        info.plural = plural if plural != info.noun else None

    def _inspect_provider(self, cls: type, info: ClassInfo) -> None:
        declared = self._declared_methods(cls)
        basenames: dict[str, type[SyncEntity] | None] = {}
        operation_methods: dict[str, str | None] = {}
        magic_methods: dict[str, tuple[SyncOperation, type[SyncEntity]] | None] = {}

        for interface in cls.__mro__:
            if not SyncProviderInterface.is_interface(interface) or interface in info.provider_interfaces:
                continue
            info.provider_interfaces.append(interface)
            entity = SyncProviderInterface.serviced_entity(interface)
            if entity in info.provider_entities:
                continue
            info.provider_entities.append(entity)

            basename = entity.__name__.lower()
            basenames[basename] = None if basename in basenames else entity

            for operation, name in operation_method_names(entity):
                key = method_key(name)
                # A name implied by more than one entity can't be used
                if key in operation_methods or key in magic_methods:
                    operation_methods[key] = None
                    magic_methods[key] = None
                    continue
                if key in declared:
                    operation_methods[key] = declared[key]
                    continue
                magic_methods[key] = (operation, entity)

        info.entity_basenames = {k: v for k, v in basenames.items() if v is not None}
        info.operation_methods = {k: v for k, v in operation_methods.items() if v is not None}
        info.magic_methods = {k: v for k, v in magic_methods.items() if v is not None}

    @staticmethod
    def _declared_methods(cls: type) -> dict[str, str | None]:
        """Public instance methods declared outside the framework, by normalised name."""
        methods: dict[str, str | None] = {}
        seen: set[str] = set()
        framework: set[str] = set()
        for klass in cls.__mro__:
            if _is_framework_class(klass):
                framework.update(klass.__dict__)
        for klass in cls.__mro__:
            if _is_framework_class(klass) or SyncProviderInterface.is_interface(klass):
                continue
            for name, attr in klass.__dict__.items():
                if name in seen or name.startswith("_") or name in framework:
                    continue
                seen.add(name)
                if isinstance(attr, (staticmethod, classmethod)) or not callable(attr):
                    continue
                key = method_key(name)
                methods[key] = None if key in methods else name
        return methods


default_introspector = Introspector()
