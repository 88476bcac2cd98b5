"""Decide which values can live in shared memory and move them there."""

import logging

from tandem.descriptors import TypedRef
from tandem.errors import CircularReferenceError
from tandem.errors import CircularTypeReferenceError
from tandem.regions import SharedRegion
from tandem.regions import create_region
from tandem.regions import region_of_buffer
from tandem.resolver import GENERIC_OBJECT_TYPES
from tandem.resolver import RAW_BUFFER_TYPES
from tandem.resolver import is_builtin_type
from tandem.resolver import is_raw_buffer_type
from tandem.resolver import property_descriptor
from tandem.resolver import property_descriptors
from tandem.structs import bind_to_buffer
from tandem.structs import extra_fields_of
from tandem.structs import is_struct_instance
from tandem.structs import is_struct_type
from tandem.structs import raw_bytes_of
from tandem.structs import region_of_struct
from tandem.structs import struct_byte_size

logger = logging.getLogger(__name__)


def _qualifies(owner: type, name: str) -> bool:
    """Report whether an attribute may hold shareable memory.

    Only attributes annotated with a non-built-in type are followed, so
    suppressed, codec-handled and untyped attributes are left alone.

    :param owner: Class declaring the attribute.
    :param name: Attribute name.
    :returns: ``True`` when the attribute is scanned for shared segments.
    """
    descriptor: object = property_descriptor(owner, name)
    if isinstance(descriptor, TypedRef) is False:
        return False
    return is_builtin_type(descriptor.target) is False


def _has_plain_fields(value: object) -> bool:
    attributes: object = getattr(value, "__dict__", None)
    if isinstance(attributes, dict) is False:
        return False
    return is_builtin_type(type(value)) is False and type(value) not in GENERIC_OBJECT_TYPES


def has_shared_segments(tp: type, visited_types: tuple[type, ...] = ()) -> bool:
    """Report whether instances of ``tp`` can carry shared memory.

    :param tp: Type to scan.
    :param visited_types: Types on the current scan path.
    :returns: ``True`` for structs, raw buffers, regions, and classes with
        annotated attributes of such types.
    :raises CircularTypeReferenceError: If the scan revisits a type on its path.
    """
    if is_struct_type(tp) is True:
        return True
    if is_raw_buffer_type(tp) is True:
        return True
    if isinstance(tp, type) is True and issubclass(tp, SharedRegion) is True:
        return True
    if is_builtin_type(tp) is True or tp in GENERIC_OBJECT_TYPES:
        return False

    if tp in visited_types:
        names: tuple[str, ...] = tuple(item.__qualname__ for item in visited_types + (tp,))
        raise CircularTypeReferenceError(names)
    path: tuple[type, ...] = visited_types + (tp,)
    found: bool = False
    for descriptor in property_descriptors(tp).values():
        if isinstance(descriptor, TypedRef) is False:
            continue
        if is_builtin_type(descriptor.target) is True:
            continue
        # no early return: a type cycle fails independent of declaration order
        if has_shared_segments(descriptor.target, path) is True:
            found = True
    return found


def compute_extra_size(value: object, visited_values: set[int] | None = None) -> int:
    """Return the number of bytes needed to move ``value`` into shared memory.

    Region-backed buffers and structs cost nothing; private ones cost their
    byte size. Objects reached twice are counted once.

    :param value: Value to measure.
    :param visited_values: Identities on the current path.
    :returns: Byte count that ``materialize_shared`` would allocate.
    :raises CircularReferenceError: If ``value`` contains a reference cycle.
    """
    ancestors: set[int] = set() if visited_values is None else visited_values
    counted: set[int] = set()
    return _extra_size(value, ancestors, counted, "value")


def _extra_size(value: object, ancestors: set[int], counted: set[int], path: str) -> int:
    if value is None or isinstance(value, SharedRegion) is True:
        return 0

    identity: int = id(value)
    if identity in ancestors:
        raise CircularReferenceError(path)
    if identity in counted:
        return 0

    if isinstance(value, RAW_BUFFER_TYPES) is True:
        counted.add(identity)
        if region_of_buffer(value) is not None:
            return 0
        return memoryview(value).nbytes

    is_sequence: bool = type(value) is list or type(value) is tuple
    is_mapping: bool = type(value) is dict
    is_struct: bool = is_struct_instance(value)
    is_plain: bool = is_struct is False and is_sequence is False and is_mapping is False and _has_plain_fields(value)
    if is_sequence is False and is_mapping is False and is_struct is False and is_plain is False:
        return 0

    counted.add(identity)
    ancestors.add(identity)
    try:
        total: int = 0
        if is_sequence is True:
            for index, item in enumerate(value):
                total += _extra_size(item, ancestors, counted, f"{path}[{index}]")
            return total
        if is_mapping is True:
            for key, item in value.items():
                total += _extra_size(item, ancestors, counted, f"{path}[{key!r}]")
            return total

        owner: type = type(value)
        fields: dict[str, object]
        if is_struct is True:
            if region_of_struct(value) is None:
                total += struct_byte_size(owner)
            fields = extra_fields_of(value)
        else:
            fields = vars(value)
        for name, field in fields.items():
            if _qualifies(owner, name) is False:
                continue
            total += _extra_size(field, ancestors, counted, f"{path}.{name}")
        return total
    finally:
        ancestors.discard(identity)


def materialize_shared(value: object) -> object:
    """Move every private buffer and struct reachable from ``value`` into shared memory.

    Buffers and structs are replaced by new objects over new regions; lists,
    dicts and plain objects are updated in place; tuples are rebuilt. Values that
    are already region-backed are returned unchanged.

    :param value: Value to share.
    :returns: Shared counterpart of ``value``.
    """
    memo: dict[int, object] = {}
    keep_alive: list[object] = []
    return _materialize(value, memo, keep_alive)


def _materialize(value: object, memo: dict[int, object], keep_alive: list[object]) -> object:
    if value is None or isinstance(value, SharedRegion) is True:
        return value

    identity: int = id(value)
    if identity in memo:
        return memo[identity]
    keep_alive.append(value)

    if isinstance(value, RAW_BUFFER_TYPES) is True:
        if region_of_buffer(value) is not None:
            memo[identity] = value
            return value
        source: memoryview = memoryview(value)
        region: SharedRegion = create_region(source.nbytes)
        region.buf[:] = source.tobytes()
        shared_view: memoryview = region.buf
        if source.format != "B" or source.ndim != 1:
            shared_view = shared_view.cast(source.format, source.shape)
        memo[identity] = shared_view
        return shared_view

    if is_struct_instance(value) is True:
        if region_of_struct(value) is not None:
            memo[identity] = value
            return value
        owner: type = type(value)
        struct_region: SharedRegion = create_region(struct_byte_size(owner))
        struct_region.buf[:] = raw_bytes_of(value)
        rebound: object = bind_to_buffer(owner, struct_region.buf, copy=False)
        memo[identity] = rebound
        for name, field in extra_fields_of(value).items():
            if _qualifies(owner, name) is True:
                field = _materialize(field, memo, keep_alive)
            setattr(rebound, name, field)
        return rebound

    if type(value) is list:
        memo[identity] = value
        for index, item in enumerate(value):
            value[index] = _materialize(item, memo, keep_alive)
        return value

    if type(value) is dict:
        memo[identity] = value
        for key, item in list(value.items()):
            value[key] = _materialize(item, memo, keep_alive)
        return value

    if type(value) is tuple:
        rebuilt: tuple[object, ...] = tuple(_materialize(item, memo, keep_alive) for item in value)
        memo[identity] = rebuilt
        return rebuilt

    if _has_plain_fields(value) is False:
        memo[identity] = value
        return value

    memo[identity] = value
    owner_type: type = type(value)
    for name, field in list(vars(value).items()):
        if _qualifies(owner_type, name) is False:
            continue
        replacement: object = _materialize(field, memo, keep_alive)
        if replacement is not field:
            setattr(value, name, replacement)
    return value


def to_shared(value: object) -> object:
    """Move ``value`` into shared memory when it is not fully shared yet.

    :param value: Value to share.
    :returns: Shared counterpart of ``value``.
    """
    extra_size: int = compute_extra_size(value)
    if extra_size == 0:
        return value
    logger.debug("Materializing %d bytes of %s into shared memory", extra_size, type(value).__name__)
    return materialize_shared(value)
