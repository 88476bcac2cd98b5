"""Encode object graphs into tagged wire values and decode them back.

Every encoded node is a tuple whose first item is one of the ``WIRE_*_TAG``
constants below, except ``None`` which travels untagged:

``(WIRE_RAW_TAG, value)``
    Value pickled as-is by the channel.
``(WIRE_ARRAY_TAG, kind, items)``
    A ``list`` or ``tuple`` of encoded items.
``(WIRE_MAPPING_TAG, entries)``
    A plain ``dict`` as ``(key, encoded_value)`` pairs; keys travel as-is.
``(WIRE_BUFFER_TAG, kind, format, shape, region_name, offset, length, data)``
    A byte buffer; ``region_name`` is set when it aliases a shared region,
    otherwise ``data`` carries a copy.
``(WIRE_REGION_TAG, region_name, size)``
    A bare shared region handle.
``(WIRE_STRUCT_TAG, type_id, buffer, extras)``
    A ``ctypes`` struct: its layout bytes as a buffer node plus encoded
    attributes outside the layout.
``(WIRE_OBJECT_TAG, type_id, fields)``
    A plain class instance rebuilt without calling ``__init__``.
"""

import asyncio
import concurrent.futures
import ctypes
import functools
import inspect
import types
from collections.abc import Awaitable
from typing import Any

from tandem.descriptors import CustomCodec
from tandem.descriptors import NONE
from tandem.descriptors import SUPPRESSED
from tandem.descriptors import TransportDescriptor
from tandem.descriptors import TypedRef
from tandem.errors import CircularReferenceError
from tandem.errors import TransportError
from tandem.regions import SharedRegion
from tandem.regions import attach_region
from tandem.regions import region_of_buffer
from tandem.resolver import CallableDescriptors
from tandem.resolver import GENERIC_OBJECT_TYPES
from tandem.resolver import RAW_BUFFER_TYPES
from tandem.resolver import is_builtin_type
from tandem.resolver import property_descriptor
from tandem.resolver import resolve_type_id
from tandem.resolver import type_id_of
from tandem.structs import bind_to_buffer
from tandem.structs import extra_fields_of
from tandem.structs import is_struct_instance
from tandem.structs import is_struct_type
from tandem.structs import raw_bytes_of
from tandem.structs import region_of_struct

WIRE_RAW_TAG: str = "__tandem_raw_v1__"
WIRE_ARRAY_TAG: str = "__tandem_array_v1__"
WIRE_MAPPING_TAG: str = "__tandem_mapping_v1__"
WIRE_BUFFER_TAG: str = "__tandem_buffer_v1__"
WIRE_REGION_TAG: str = "__tandem_region_v1__"
WIRE_STRUCT_TAG: str = "__tandem_struct_v1__"
WIRE_OBJECT_TAG: str = "__tandem_object_v1__"

_OPAQUE_TYPES: tuple[type, ...] = (
    type,
    types.FunctionType,
    types.BuiltinFunctionType,
    types.MethodType,
    types.ModuleType,
    functools.partial,
)


async def _await_value(awaitable: Awaitable[Any]) -> Any:
    return await awaitable


def settle_awaitable(value: object) -> object:
    """Resolve ``value`` synchronously when it is awaitable.

    Inside a thread that already runs an event loop the awaitable is driven
    by ``asyncio.run`` on a short-lived helper thread, since that loop cannot
    be re-entered.

    :param value: Hook or callable result.
    :returns: Awaited result, or ``value`` unchanged.
    """
    if inspect.isawaitable(value) is False:
        return value
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(_await_value(value))
    with concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="tandem-settle") as executor:
        return executor.submit(asyncio.run, _await_value(value)).result()


def _enter(value: object, visited: set[int], path: str) -> int:
    """Push ``value`` onto the encode path.

    :param value: Container being entered.
    :param visited: Identities on the current encode path.
    :param path: Location used in the cycle error.
    :returns: Identity to discard after the container is encoded.
    :raises CircularReferenceError: If ``value`` is already on the path.
    """
    identity: int = id(value)
    if identity in visited:
        raise CircularReferenceError(path)
    visited.add(identity)
    return identity


def _target_type(value: object, descriptor: TransportDescriptor) -> type | None:
    """Choose the class a value is encoded as.

    :param value: Runtime value.
    :param descriptor: Descriptor at the value's position.
    :returns: Target class, or ``None`` for untyped generic data.
    """
    runtime_type: type = type(value)
    if isinstance(descriptor, TypedRef) is True:
        if isinstance(value, descriptor.target) is True:
            return runtime_type
        return descriptor.target
    if runtime_type in GENERIC_OBJECT_TYPES:
        return None
    return runtime_type


def _buffer_kind(value: object) -> str:
    if isinstance(value, bytes) is True:
        return "bytes"
    if isinstance(value, bytearray) is True:
        return "bytearray"
    return "memoryview"


def _encode_buffer(value: object, kind: str) -> tuple[object, ...]:
    """Encode a byte buffer, by region reference when it lies in a shared region.

    :param value: Buffer object.
    :param kind: Original buffer kind.
    :returns: Buffer wire node.
    """
    view: memoryview = memoryview(value)
    shape: tuple[int, ...] = tuple(view.shape)
    located: tuple[SharedRegion, int] | None = region_of_buffer(view)
    if located is not None:
        region, offset = located
        return (WIRE_BUFFER_TAG, kind, view.format, shape, region.name, offset, view.nbytes, None)
    return (WIRE_BUFFER_TAG, kind, view.format, shape, None, 0, view.nbytes, view.tobytes())


def _encode_struct(value: object, visited: set[int], path: str) -> tuple[object, ...]:
    """Encode a struct as its layout bytes plus encoded extra attributes.

    :param value: Struct instance.
    :param visited: Identities on the current encode path.
    :param path: Location used in cycle errors.
    :returns: Struct wire node.
    """
    owner: type = type(value)
    identity: int = _enter(value, visited, path)
    try:
        located: tuple[SharedRegion, int] | None = region_of_struct(value)
        buffer_node: tuple[object, ...]
        if located is not None and located[0].is_owner is True:
            region, offset = located
            size: int = ctypes.sizeof(value)
            buffer_node = (WIRE_BUFFER_TAG, "struct", "B", (size,), region.name, offset, size, None)
        else:
            data: bytes = raw_bytes_of(value)
            buffer_node = (WIRE_BUFFER_TAG, "struct", "B", (len(data),), None, 0, len(data), data)

        extras: dict[str, object] = {}
        for name, field in extra_fields_of(value).items():
            extras[name] = encode_value(field, property_descriptor(owner, name), visited, f"{path}.{name}")
    finally:
        visited.discard(identity)
    return (WIRE_STRUCT_TAG, type_id_of(owner), buffer_node, extras)


def encode_value(
    value: object,
    descriptor: TransportDescriptor = NONE,
    visited: set[int] | None = None,
    path: str = "value",
) -> object:
    """Encode one value for the host/worker channel.

    :param value: Runtime value.
    :param descriptor: Descriptor at the value's position.
    :param visited: Identities on the current encode path; shared by one
        top-level encode.
    :param path: Location used in cycle errors.
    :returns: Wire value.
    :raises CircularReferenceError: If the value graph contains a cycle.
    """
    if visited is None:
        visited = set()
    if value is None:
        return None
    if descriptor is SUPPRESSED:
        return None
    if isinstance(descriptor, CustomCodec) is True:
        return (WIRE_RAW_TAG, settle_awaitable(descriptor.encode(value)))

    if type(value) is list or type(value) is tuple:
        element_descriptor: TransportDescriptor = NONE
        if isinstance(descriptor, TypedRef) is True and descriptor.is_array is True:
            element_descriptor = descriptor.element()
        identity: int = _enter(value, visited, path)
        try:
            items: list[object] = [
                encode_value(item, element_descriptor, visited, f"{path}[{index}]")
                for index, item in enumerate(value)
            ]
        finally:
            visited.discard(identity)
        kind: str = "tuple" if type(value) is tuple else "list"
        return (WIRE_ARRAY_TAG, kind, items)

    if type(value) is dict:
        mapping_identity: int = _enter(value, visited, path)
        try:
            entries: list[tuple[object, object]] = [
                (key, encode_value(item, NONE, visited, f"{path}[{key!r}]")) for key, item in value.items()
            ]
        finally:
            visited.discard(mapping_identity)
        return (WIRE_MAPPING_TAG, entries)

    if isinstance(value, SharedRegion) is True:
        return (WIRE_REGION_TAG, value.name, value.size)
    if isinstance(value, RAW_BUFFER_TYPES) is True:
        return _encode_buffer(value, _buffer_kind(value))

    target: type | None = _target_type(value, descriptor)
    if target is None or is_builtin_type(target) is True:
        return (WIRE_RAW_TAG, value)
    if is_struct_type(target) is True and is_struct_instance(value) is True:
        return _encode_struct(value, visited, path)
    if isinstance(value, _OPAQUE_TYPES) is True:
        return (WIRE_RAW_TAG, value)

    attributes: object = getattr(value, "__dict__", None)
    if isinstance(attributes, dict) is False:
        return (WIRE_RAW_TAG, value)

    object_identity: int = _enter(value, visited, path)
    try:
        fields: dict[str, object] = {}
        for name, field in list(attributes.items()):
            fields[name] = encode_value(field, property_descriptor(target, name), visited, f"{path}.{name}")
    finally:
        visited.discard(object_identity)
    return (WIRE_OBJECT_TAG, type_id_of(target), fields)


def _require_node(encoded: object, length: int) -> tuple[object, ...]:
    """Validate the arity of a wire node.

    :param encoded: Wire node.
    :param length: Expected tuple length.
    :returns: The node.
    :raises TransportError: If the node is malformed.
    """
    if isinstance(encoded, tuple) is False or len(encoded) != length:
        raise TransportError(f"Malformed wire node: {encoded!r:.200}")
    return encoded


def _decode_buffer(encoded: tuple[object, ...]) -> object:
    _, kind, fmt, shape, region_name, offset, length, data = _require_node(encoded, 8)
    if region_name is not None:
        region: SharedRegion = attach_region(region_name)
        view: memoryview = region.buf[offset : offset + length]
        if fmt != "B" or (shape is not None and len(shape) != 1):
            view = view.cast(fmt, shape)
        return view

    if isinstance(data, bytes) is False:
        raise TransportError("Buffer node carries neither a region nor bytes")
    if kind == "bytes" or kind == "struct":
        return data
    if kind == "bytearray":
        return bytearray(data)
    copied: memoryview = memoryview(bytearray(data))
    if fmt != "B" or (shape is not None and len(shape) != 1):
        copied = copied.cast(fmt, shape)
    return copied


def _decode_struct(encoded: tuple[object, ...], hint: type | None) -> object:
    _, type_id, buffer_node, extras = _require_node(encoded, 4)
    owner: type = resolve_type_id(type_id, hint)
    buffer_fields: tuple[object, ...] = _require_node(buffer_node, 8)
    is_private: bool = buffer_fields[4] is None
    instance: object = bind_to_buffer(owner, _decode_buffer(buffer_fields), copy=is_private)
    for name, field in extras.items():
        setattr(instance, name, decode_value(field, property_descriptor(owner, name)))
    return instance


def _decode_object(encoded: tuple[object, ...], hint: type | None) -> object:
    _, type_id, fields = _require_node(encoded, 3)
    owner: type = resolve_type_id(type_id, hint)
    instance: object = owner.__new__(owner)
    for name, field in fields.items():
        setattr(instance, name, decode_value(field, property_descriptor(owner, name)))
    return instance


def decode_value(encoded: object, descriptor: TransportDescriptor = NONE) -> object:
    """Decode one wire value.

    :param encoded: Wire value produced by ``encode_value``.
    :param descriptor: Descriptor at the value's position.
    :returns: Runtime value.
    :raises TransportError: If the wire value is malformed.
    """
    if descriptor is SUPPRESSED:
        return None
    if encoded is None:
        return None
    if isinstance(encoded, tuple) is False or len(encoded) == 0:
        raise TransportError(f"Malformed wire value: {encoded!r:.200}")

    tag: object = encoded[0]
    if isinstance(descriptor, CustomCodec) is True:
        if tag != WIRE_RAW_TAG:
            raise TransportError("Custom codec positions must carry raw wire values")
        return settle_awaitable(descriptor.decode(_require_node(encoded, 2)[1]))

    if tag == WIRE_RAW_TAG:
        return _require_node(encoded, 2)[1]
    if tag == WIRE_ARRAY_TAG:
        _, kind, items = _require_node(encoded, 3)
        element_descriptor: TransportDescriptor = NONE
        if isinstance(descriptor, TypedRef) is True and descriptor.is_array is True:
            element_descriptor = descriptor.element()
        decoded: list[object] = [decode_value(item, element_descriptor) for item in items]
        if kind == "tuple":
            return tuple(decoded)
        return decoded
    if tag == WIRE_MAPPING_TAG:
        _, entries = _require_node(encoded, 2)
        if isinstance(entries, list) is False:
            raise TransportError("Mapping node entries must be a list")
        return {key: decode_value(item) for key, item in entries}
    if tag == WIRE_BUFFER_TAG:
        return _decode_buffer(encoded)
    if tag == WIRE_REGION_TAG:
        _, region_name, size = _require_node(encoded, 3)
        return attach_region(region_name, size)

    hint: type | None = descriptor.target if isinstance(descriptor, TypedRef) is True else None
    if tag == WIRE_STRUCT_TAG:
        return _decode_struct(encoded, hint)
    if tag == WIRE_OBJECT_TAG:
        return _decode_object(encoded, hint)
    raise TransportError(f"Unknown wire tag {tag!r}")


def encode_args(
    args: tuple[object, ...],
    kwargs: dict[str, object],
    descriptors: CallableDescriptors,
) -> tuple[list[object], dict[str, object]]:
    """Encode call arguments with the descriptors of the target callable.

    :param args: Positional arguments.
    :param kwargs: Keyword arguments.
    :param descriptors: Target callable metadata.
    :returns: Tuple of ``(encoded_args, encoded_kwargs)``.
    :raises CircularReferenceError: If any argument contains a cycle.
    """
    visited: set[int] = set()
    encoded_args: list[object] = []
    for index, argument in enumerate(args):
        encoded_args.append(encode_value(argument, descriptors.for_position(index), visited, f"arg[{index}]"))
    encoded_kwargs: dict[str, object] = {}
    for name, argument in kwargs.items():
        encoded_kwargs[name] = encode_value(argument, descriptors.for_keyword(name), visited, f"arg[{name!r}]")
    return encoded_args, encoded_kwargs


def decode_args(
    encoded_args: object,
    encoded_kwargs: object,
    descriptors: CallableDescriptors,
) -> tuple[list[object], dict[str, object]]:
    """Decode call arguments with the descriptors of the target callable.

    :param encoded_args: Encoded positional arguments.
    :param encoded_kwargs: Encoded keyword arguments.
    :param descriptors: Target callable metadata.
    :returns: Tuple of ``(args, kwargs)``.
    :raises TransportError: If the argument containers are malformed.
    """
    if isinstance(encoded_args, (list, tuple)) is False:
        raise TransportError("Encoded args must be a list")
    if isinstance(encoded_kwargs, dict) is False:
        raise TransportError("Encoded kwargs must be a dict")
    args: list[object] = [
        decode_value(argument, descriptors.for_position(index)) for index, argument in enumerate(encoded_args)
    ]
    kwargs: dict[str, object] = {
        name: decode_value(argument, descriptors.for_keyword(name)) for name, argument in encoded_kwargs.items()
    }
    return args, kwargs


def encode_return(value: object, descriptors: CallableDescriptors) -> object:
    """Encode a return value with the callable's return descriptor.

    :param value: Return value.
    :param descriptors: Callable metadata.
    :returns: Wire value.
    """
    return encode_value(value, descriptors.returns, set(), "return")


def decode_return(encoded: object, descriptors: CallableDescriptors) -> object:
    """Decode a return value with the callable's return descriptor.

    :param encoded: Wire value.
    :param descriptors: Callable metadata.
    :returns: Runtime value.
    """
    return decode_value(encoded, descriptors.returns)
