"""Fixed-layout struct support built on ``ctypes``."""

import ctypes
import threading
from collections.abc import Callable
from typing import Any

from tandem.errors import InvalidBufferSizeError
from tandem.regions import SharedRegion
from tandem.regions import locate

StructFactory = Callable[..., Any]

_STRUCT_BASES: tuple[type, ...] = (ctypes.Structure, ctypes.Union)
_FACTORY_LOCK: threading.Lock = threading.Lock()
_STRUCT_FACTORIES: dict[type, StructFactory] = {}


def is_struct_type(tp: object) -> bool:
    """Report whether ``tp`` is a ``ctypes`` structure or union type.

    :param tp: Candidate type.
    :returns: ``True`` for fixed-layout struct types.
    """
    return isinstance(tp, type) is True and issubclass(tp, _STRUCT_BASES)


def is_struct_instance(value: object) -> bool:
    """Report whether ``value`` is a ``ctypes`` structure or union instance.

    :param value: Candidate value.
    :returns: ``True`` for struct instances.
    """
    return isinstance(value, _STRUCT_BASES)


def struct_byte_size(tp: type) -> int:
    """Return the fixed byte size of a struct type.

    :param tp: Struct type.
    :returns: Size in bytes.
    """
    return ctypes.sizeof(tp)


def struct_field_names(tp: type) -> frozenset[str]:
    """Return the names of every fixed-layout field of ``tp``.

    Fields declared by base structures are included.

    :param tp: Struct type.
    :returns: Layout field names.
    """
    names: set[str] = set()
    for klass in tp.__mro__:
        fields: object = klass.__dict__.get("_fields_")
        if fields is None:
            continue
        for field in fields:
            names.add(field[0])
    return frozenset(names)


def bind_to_buffer(tp: type, buffer: object, copy: bool) -> Any:
    """Create an instance of ``tp`` over ``buffer`` without running ``__init__``.

    :param tp: Struct type.
    :param buffer: Writable buffer to alias, or any buffer to copy from.
    :param copy: ``True`` to copy the bytes into private storage.
    :returns: Struct instance.
    :raises InvalidBufferSizeError: If ``buffer`` is smaller than the struct.
    """
    view: memoryview = memoryview(buffer)
    required: int = struct_byte_size(tp)
    if view.nbytes < required:
        raise InvalidBufferSizeError(tp.__qualname__, required, view.nbytes)
    if copy is True:
        return tp.from_buffer_copy(view)
    return tp.from_buffer(view)


def raw_bytes_of(instance: object) -> bytes:
    """Return a copy of the fixed-layout bytes of a struct instance.

    :param instance: Struct instance.
    :returns: Instance storage bytes.
    """
    return ctypes.string_at(ctypes.addressof(instance), ctypes.sizeof(instance))


def extra_fields_of(instance: object) -> dict[str, object]:
    """Return the attributes of a struct instance that are outside its layout.

    :param instance: Struct instance.
    :returns: Mapping of extra attribute names to values.
    """
    attributes: object = getattr(instance, "__dict__", None)
    if isinstance(attributes, dict) is False:
        return {}
    layout: frozenset[str] = struct_field_names(type(instance))
    return {name: value for name, value in attributes.items() if name not in layout}


def register_struct_factory(tp: type, factory: StructFactory) -> None:
    """Install a constructor override for a struct type.

    The factory is called as ``factory(buffer, *args, **kwargs)`` whenever a
    unit instance of ``tp`` must be built over an existing buffer.

    :param tp: Struct type.
    :param factory: Callable returning an instance bound to ``buffer``.
    :raises TypeError: If ``tp`` is not a struct type.
    """
    if is_struct_type(tp) is False:
        raise TypeError(f"{tp!r} is not a ctypes structure type")
    with _FACTORY_LOCK:
        _STRUCT_FACTORIES[tp] = factory


def struct_factory_for(tp: type) -> StructFactory | None:
    """Return the constructor override registered for ``tp``, if any.

    :param tp: Struct type.
    :returns: Registered factory or ``None``.
    """
    with _FACTORY_LOCK:
        return _STRUCT_FACTORIES.get(tp)


def construct_bound(
    tp: type,
    buffer: object,
    args: tuple[object, ...],
    kwargs: dict[str, object],
    run_init: bool = True,
) -> Any:
    """Build a struct instance over ``buffer`` and run its constructor.

    :param tp: Struct type.
    :param buffer: Writable buffer the instance aliases.
    :param args: Constructor positional arguments.
    :param kwargs: Constructor keyword arguments.
    :param run_init: ``False`` to keep the buffer contents untouched when no
        arguments are given.
    :returns: Constructed instance.
    """
    factory: StructFactory | None = struct_factory_for(tp)
    if factory is not None:
        return factory(buffer, *args, **kwargs)
    instance: Any = bind_to_buffer(tp, buffer, copy=False)
    has_arguments: bool = len(args) > 0 or len(kwargs) > 0
    if has_arguments is True or run_init is True:
        instance.__init__(*args, **kwargs)
    return instance


def region_of_struct(instance: object) -> tuple[SharedRegion, int] | None:
    """Find the shared region backing a struct instance.

    :param instance: Struct instance.
    :returns: Tuple of ``(region, offset)`` or ``None`` for private storage.
    """
    return locate(ctypes.addressof(instance), ctypes.sizeof(instance))
