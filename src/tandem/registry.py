"""Worker unit registration and the method role decorators."""

import logging
import threading
from collections.abc import Callable
from typing import Any
from typing import TypeVar

from tandem.descriptors import TypedRef
from tandem.errors import UnitNotRegisteredError
from tandem.errors import UnshareableTypeError
from tandem.resolver import CallableDescriptors
from tandem.resolver import callable_descriptors
from tandem.resolver import constructor_descriptors
from tandem.shared import has_shared_segments
from tandem.structs import StructFactory
from tandem.structs import is_struct_type
from tandem.structs import register_struct_factory
from tandem.structs import struct_byte_size
from tandem.structs import struct_field_names

logger = logging.getLogger(__name__)

ROLE_METHOD: str = "method"
ROLE_CALLBACK: str = "callback"
ROLE_INIT: str = "init"
ROLE_FINALIZE: str = "finalize"
WORKER_EVENTS: frozenset[str] = frozenset({"online", "ready", "error", "exit", "message", "message-error"})

_ROLES_ATTR: str = "__tandem_roles__"
_EVENTS_ATTR: str = "__tandem_events__"

_REGISTRY_LOCK: threading.RLock = threading.RLock()
_UNITS_BY_CLASS: dict[type, "UnitRegistration"] = {}
_UNITS_BY_ID: dict[str, "UnitRegistration"] = {}

F = TypeVar("F", bound=Callable[..., Any])
C = TypeVar("C", bound=type)


def _add_role(func: F, role: str) -> F:
    """Attach one role marker to a function.

    :param func: Function being decorated.
    :param role: Role name.
    :returns: The same function.
    :raises TypeError: If ``func`` is not callable.
    """
    if callable(func) is False:
        raise TypeError(f"@worker_{role} must decorate a function, got {func!r}")
    roles: frozenset[str] = getattr(func, _ROLES_ATTR, frozenset())
    setattr(func, _ROLES_ATTR, roles | {role})
    return func


def worker_method(func: F) -> F:
    """Mark a method as callable from the host; it runs inside the worker."""
    return _add_role(func, ROLE_METHOD)


def worker_callback(func: F) -> F:
    """Mark a method that, called inside the worker, runs on the host instance."""
    return _add_role(func, ROLE_CALLBACK)


def worker_init(func: F) -> F:
    """Mark a method run inside the worker after construction and before ``ready``."""
    return _add_role(func, ROLE_INIT)


def worker_finalize(func: F) -> F:
    """Mark a method after which the worker finalizes itself, even if it raises."""
    return _add_role(func, ROLE_FINALIZE)


def on_worker_event(*events: str) -> Callable[[F], F]:
    """Subscribe a method of the host instance to worker lifecycle events.

    :param events: Event names from ``WORKER_EVENTS``.
    :returns: Decorator.
    :raises ValueError: If an event name is unknown or none is given.
    """
    if len(events) == 0:
        raise ValueError("on_worker_event requires at least one event name")
    unknown: list[str] = sorted(set(events) - WORKER_EVENTS)
    if len(unknown) > 0:
        raise ValueError(f"Unknown worker events: {', '.join(unknown)}")

    def decorate(func: F) -> F:
        subscribed: tuple[str, ...] = getattr(func, _EVENTS_ATTR, ())
        setattr(func, _EVENTS_ATTR, subscribed + tuple(event for event in events if event not in subscribed))
        return func

    return decorate


def on_worker_exit(func: F) -> F:
    """Subscribe a method to the ``exit`` event; it receives the exit code."""
    return on_worker_event("exit")(func)


def on_worker_error(func: F) -> F:
    """Subscribe a method to the ``error`` event; it receives the exception."""
    return on_worker_event("error")(func)


class StructLayoutInfo:
    """Fixed layout of a struct-typed unit."""

    __slots__ = ("size", "field_names")

    size: int
    field_names: frozenset[str]

    def __init__(self, size: int, field_names: frozenset[str]) -> None:
        self.size = size
        self.field_names = field_names


class UnitRegistration:
    """Immutable metadata for one class decorated with ``define_worker``."""

    unit_id: str
    cls: type
    entry_location: str
    struct_layout: StructLayoutInfo | None
    constructor: CallableDescriptors
    methods: dict[str, CallableDescriptors]
    callbacks: dict[str, CallableDescriptors]
    init_methods: tuple[str, ...]
    finalize_methods: frozenset[str]
    event_handlers: dict[str, tuple[str, ...]]

    def __init__(
        self,
        unit_id: str,
        cls: type,
        entry_location: str,
        struct_layout: StructLayoutInfo | None,
        constructor: CallableDescriptors,
        methods: dict[str, CallableDescriptors],
        callbacks: dict[str, CallableDescriptors],
        init_methods: tuple[str, ...],
        finalize_methods: frozenset[str],
        event_handlers: dict[str, tuple[str, ...]],
    ) -> None:
        self.unit_id = unit_id
        self.cls = cls
        self.entry_location = entry_location
        self.struct_layout = struct_layout
        self.constructor = constructor
        self.methods = methods
        self.callbacks = callbacks
        self.init_methods = init_methods
        self.finalize_methods = finalize_methods
        self.event_handlers = event_handlers

    @property
    def is_struct(self) -> bool:
        """Report whether the unit is a ``ctypes`` struct shared with the worker.

        :returns: ``True`` for struct-typed units.
        """
        return self.struct_layout is not None

    def __repr__(self) -> str:
        return f"UnitRegistration({self.unit_id!r}, methods={sorted(self.methods)})"


def _class_members(cls: type) -> list[tuple[type, str, object]]:
    """List class attributes with the class that defines them, bases first.

    :param cls: Class to inspect.
    :returns: ``(owner, name, attribute)`` tuples; overrides replace base entries.
    """
    members: dict[str, tuple[type, str, object]] = {}
    for klass in reversed(cls.__mro__):
        if klass is object:
            continue
        for name, attribute in vars(klass).items():
            members.pop(name, None)
            members[name] = (klass, name, attribute)
    return list(members.values())


def _validate_shared_parameters(cls: type, constructor: CallableDescriptors) -> None:
    """Check every ``Shared()`` constructor parameter can carry shared memory.

    :param cls: Unit class.
    :param constructor: Constructor metadata.
    :raises UnshareableTypeError: If a shared parameter has no shareable type.
    """
    for parameter in constructor.shared_parameters():
        descriptor: object = parameter.descriptor
        if isinstance(descriptor, TypedRef) is False:
            raise UnshareableTypeError(
                f"{cls.__qualname__}.__init__ parameter {parameter.name!r} is marked Shared() "
                + "but has no concrete type annotation"
            )
        if has_shared_segments(descriptor.target) is False:
            raise UnshareableTypeError(
                f"{cls.__qualname__}.__init__ parameter {parameter.name!r} is marked Shared() "
                + f"but {descriptor.target.__qualname__} holds no buffers, structs or shared regions"
            )


def _reject_shared_markers(cls: type, name: str, descriptors: CallableDescriptors) -> None:
    for parameter in descriptors.shared_parameters():
        raise TypeError(
            "Shared() is only valid on constructor parameters; "
            + f"found on {cls.__qualname__}.{name}({parameter.name})"
        )


def _register_unit(
    cls: type,
    entry: str | None,
    unit_id: str | None,
    struct_factory: StructFactory | None,
) -> UnitRegistration:
    """Build and store the registration for one unit class.

    :param cls: Unit class.
    :param entry: Import location override in ``module.path:QualName`` format.
    :param unit_id: Registration identifier override.
    :param struct_factory: Constructor override for struct units.
    :returns: Stored registration.
    """
    if isinstance(cls, type) is False:
        raise TypeError(f"define_worker must decorate a class, got {cls!r}")

    entry_location: str = entry if entry is not None else f"{cls.__module__}:{cls.__qualname__}"
    if entry is None and "<locals>" in cls.__qualname__:
        raise TypeError(
            f"{cls.__qualname__} is defined inside a function; worker units must be importable "
            + "or pass entry='module.path:QualName'"
        )
    resolved_id: str = unit_id if unit_id is not None else entry_location

    methods: dict[str, CallableDescriptors] = {}
    callbacks: dict[str, CallableDescriptors] = {}
    init_methods: list[str] = []
    finalize_methods: set[str] = set()
    event_handlers: dict[str, list[str]] = {}

    for owner, name, attribute in _class_members(cls):
        if isinstance(attribute, (staticmethod, classmethod, property)) is True:
            continue
        roles: frozenset[str] = getattr(attribute, _ROLES_ATTR, frozenset())
        events: tuple[str, ...] = getattr(attribute, _EVENTS_ATTR, ())
        if ROLE_METHOD in roles and ROLE_CALLBACK in roles:
            raise TypeError(f"{cls.__qualname__}.{name} cannot be both a worker method and a callback")
        if ROLE_METHOD in roles:
            methods[name] = callable_descriptors(owner, attribute)
            _reject_shared_markers(cls, name, methods[name])
        if ROLE_CALLBACK in roles:
            callbacks[name] = callable_descriptors(owner, attribute)
            _reject_shared_markers(cls, name, callbacks[name])
        if ROLE_INIT in roles:
            init_methods.append(name)
        if ROLE_FINALIZE in roles:
            finalize_methods.add(name)
        for event in events:
            event_handlers.setdefault(event, []).append(name)

    constructor: CallableDescriptors = constructor_descriptors(cls)
    _validate_shared_parameters(cls, constructor)

    struct_layout: StructLayoutInfo | None = None
    if is_struct_type(cls) is True:
        struct_layout = StructLayoutInfo(struct_byte_size(cls), struct_field_names(cls))
        if struct_factory is not None:
            register_struct_factory(cls, struct_factory)
    elif struct_factory is not None:
        raise TypeError(f"struct_factory requires a ctypes structure unit, got {cls.__qualname__}")

    registration: UnitRegistration = UnitRegistration(
        unit_id=resolved_id,
        cls=cls,
        entry_location=entry_location,
        struct_layout=struct_layout,
        constructor=constructor,
        methods=methods,
        callbacks=callbacks,
        init_methods=tuple(init_methods),
        finalize_methods=frozenset(finalize_methods),
        event_handlers={event: tuple(names) for event, names in event_handlers.items()},
    )

    with _REGISTRY_LOCK:
        if cls in _UNITS_BY_CLASS:
            raise TypeError(f"{cls.__qualname__} is already registered as a worker unit")
        existing: UnitRegistration | None = _UNITS_BY_ID.get(resolved_id)
        if existing is not None:
            raise ValueError(f"Worker unit id {resolved_id!r} is already used by {existing.cls.__qualname__}")
        _UNITS_BY_CLASS[cls] = registration
        _UNITS_BY_ID[resolved_id] = registration

    logger.debug("Registered worker unit %s with methods %s", resolved_id, sorted(methods))
    return registration


def define_worker(
    cls: C | None = None,
    *,
    entry: str | None = None,
    unit_id: str | None = None,
    struct_factory: StructFactory | None = None,
) -> C | Callable[[C], C]:
    """Register a class as a worker unit.

    Usable bare (``@define_worker``) or with options
    (``@define_worker(struct_factory=...)``). Registration resolves every
    transport descriptor up front and raises immediately on invalid metadata.

    :param cls: Class being decorated when used bare.
    :param entry: Import location the worker uses, in ``module.path:QualName`` format.
    :param unit_id: Registration identifier; defaults to the entry location.
    :param struct_factory: Constructor override for ``ctypes`` struct units,
        called as ``factory(buffer, *args, **kwargs)``.
    :returns: The class, or a decorator when called with options.
    """

    def register(target: C) -> C:
        _register_unit(target, entry, unit_id, struct_factory)
        return target

    if cls is None:
        return register
    return register(cls)


def get_unit_registration(cls: type) -> UnitRegistration:
    """Return the registration of a unit class.

    :param cls: Unit class.
    :returns: Registration.
    :raises UnitNotRegisteredError: If ``cls`` was never passed to ``define_worker``.
    """
    with _REGISTRY_LOCK:
        registration: UnitRegistration | None = _UNITS_BY_CLASS.get(cls)
    if registration is None:
        name: str = getattr(cls, "__qualname__", repr(cls))
        raise UnitNotRegisteredError(f"{name} is not decorated with @define_worker")
    return registration
