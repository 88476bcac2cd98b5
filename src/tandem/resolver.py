"""Resolve transport descriptors from type hints and ``Annotated`` markers."""

import array
import collections.abc
import datetime
import decimal
import fractions
import importlib
import inspect
import logging
import pathlib
import re
import threading
import types
import typing
import uuid
from collections.abc import Callable
from enum import Enum
from typing import Annotated
from typing import Any

from tandem.descriptors import CustomCodec
from tandem.descriptors import NONE
from tandem.descriptors import SUPPRESSED
from tandem.descriptors import Shared
from tandem.descriptors import Suppress
from tandem.descriptors import TransportCodec
from tandem.descriptors import TransportDescriptor
from tandem.descriptors import TransportType
from tandem.descriptors import TypedRef
from tandem.errors import TransportError
from tandem.errors import TypeResolutionError

logger = logging.getLogger(__name__)

BUILTIN_TYPES: frozenset[type] = frozenset(
    {
        type(None),
        bool,
        int,
        float,
        complex,
        str,
        dict,
        set,
        frozenset,
        object,
        range,
        slice,
        datetime.date,
        datetime.datetime,
        datetime.time,
        datetime.timedelta,
        datetime.timezone,
        decimal.Decimal,
        fractions.Fraction,
        uuid.UUID,
        re.Pattern,
        array.array,
    }
)
_BUILTIN_BASES: tuple[type, ...] = (
    Enum,
    BaseException,
    pathlib.PurePath,
    int,
    float,
    complex,
    str,
    datetime.date,
)
RAW_BUFFER_TYPES: tuple[type, ...] = (bytes, bytearray, memoryview)
GENERIC_OBJECT_TYPES: frozenset[type] = frozenset({dict, object, types.SimpleNamespace})
_SEQUENCE_ORIGINS: frozenset[object] = frozenset(
    {
        list,
        tuple,
        collections.abc.Sequence,
        collections.abc.MutableSequence,
    }
)
_UNION_ORIGINS: tuple[object, ...] = (typing.Union, types.UnionType)

_CACHE_LOCK: threading.RLock = threading.RLock()
_PROPERTY_CACHE: dict[type, dict[str, TransportDescriptor]] = {}
_CALLABLE_CACHE: dict[tuple[type, Callable[..., Any]], "CallableDescriptors"] = {}
_TYPES_BY_ID: dict[str, type] = {}


def is_builtin_type(tp: type) -> bool:
    """Report whether values of ``tp`` travel as-is through the pickle channel.

    :param tp: Candidate type.
    :returns: ``True`` for primitive and standard-library value types.
    """
    if tp in BUILTIN_TYPES:
        return True
    if isinstance(tp, type) is False:
        return False
    return issubclass(tp, _BUILTIN_BASES)


def is_raw_buffer_type(tp: type) -> bool:
    """Report whether ``tp`` is a raw byte buffer type.

    :param tp: Candidate type.
    :returns: ``True`` for ``bytes``, ``bytearray`` and ``memoryview`` types.
    """
    return isinstance(tp, type) is True and issubclass(tp, RAW_BUFFER_TYPES)


class ParameterDescriptor:
    """Transport metadata for one callable parameter."""

    __slots__ = ("name", "kind", "descriptor", "shared")

    name: str
    kind: inspect._ParameterKind
    descriptor: TransportDescriptor
    shared: bool

    def __init__(
        self,
        name: str,
        kind: inspect._ParameterKind,
        descriptor: TransportDescriptor,
        shared: bool,
    ) -> None:
        self.name = name
        self.kind = kind
        self.descriptor = descriptor
        self.shared = shared

    def __repr__(self) -> str:
        return f"ParameterDescriptor({self.name!r}, {self.descriptor!r}, shared={self.shared})"


class CallableDescriptors:
    """Transport metadata for the parameters and return value of one callable."""

    parameters: tuple[ParameterDescriptor, ...]
    returns: TransportDescriptor

    def __init__(self, parameters: tuple[ParameterDescriptor, ...], returns: TransportDescriptor) -> None:
        """Initialize callable metadata.

        :param parameters: Parameter metadata, excluding ``self``.
        :param returns: Return value descriptor.
        """
        self.parameters = parameters
        self.returns = returns

    def for_position(self, index: int) -> TransportDescriptor:
        """Return the descriptor for one positional argument.

        :param index: Zero-based argument index.
        :returns: Matching descriptor or ``NONE``.
        """
        position: int = 0
        for parameter in self.parameters:
            if parameter.kind is inspect.Parameter.VAR_POSITIONAL:
                return parameter.descriptor
            is_positional: bool = parameter.kind in (
                inspect.Parameter.POSITIONAL_ONLY,
                inspect.Parameter.POSITIONAL_OR_KEYWORD,
            )
            if is_positional is False:
                continue
            if position == index:
                return parameter.descriptor
            position += 1
        return NONE

    def for_keyword(self, name: str) -> TransportDescriptor:
        """Return the descriptor for one keyword argument.

        :param name: Keyword name.
        :returns: Matching descriptor or ``NONE``.
        """
        var_keyword: TransportDescriptor = NONE
        for parameter in self.parameters:
            if parameter.kind is inspect.Parameter.VAR_KEYWORD:
                var_keyword = parameter.descriptor
                continue
            if parameter.kind is inspect.Parameter.POSITIONAL_ONLY:
                continue
            if parameter.kind is inspect.Parameter.VAR_POSITIONAL:
                continue
            if parameter.name == name:
                return parameter.descriptor
        return var_keyword

    def position_of(self, name: str) -> int | None:
        """Return the positional index of a named parameter.

        :param name: Parameter name.
        :returns: Zero-based index, or ``None`` for keyword-only and variadic parameters.
        """
        position: int = 0
        for parameter in self.parameters:
            is_positional: bool = parameter.kind in (
                inspect.Parameter.POSITIONAL_ONLY,
                inspect.Parameter.POSITIONAL_OR_KEYWORD,
            )
            if is_positional is False:
                continue
            if parameter.name == name:
                return position
            position += 1
        return None

    def shared_parameters(self) -> list[ParameterDescriptor]:
        """Return parameters marked with ``Shared()``.

        :returns: Shared parameter metadata.
        """
        return [parameter for parameter in self.parameters if parameter.shared is True]


EMPTY_CALLABLE: CallableDescriptors = CallableDescriptors((), NONE)


def _unwrap_optional(annotation: object) -> object | None:
    """Strip ``None`` from a union annotation.

    :param annotation: Union annotation.
    :returns: Single remaining member, or ``None`` when several remain.
    """
    members: list[object] = [arg for arg in typing.get_args(annotation) if arg is not type(None)]
    if len(members) == 1:
        return members[0]
    return None


def descriptor_from_annotation(annotation: object) -> tuple[TransportDescriptor, bool]:
    """Build a descriptor from one evaluated annotation.

    Optional wrappers are ignored; ``Annotated`` markers take precedence over
    the annotated type, in the order ``Suppress``, ``TransportCodec``,
    ``TransportType``.

    :param annotation: Evaluated annotation object.
    :returns: Tuple of ``(descriptor, is_shared)``.
    """
    markers: list[object] = []
    current: object = annotation
    while True:
        origin: object = typing.get_origin(current)
        if origin is Annotated:
            markers.extend(current.__metadata__)
            current = current.__origin__
            continue
        if origin in _UNION_ORIGINS:
            single: object | None = _unwrap_optional(current)
            if single is None:
                current = Any
                break
            current = single
            continue
        break

    is_shared: bool = any(isinstance(marker, Shared) for marker in markers)
    for marker in markers:
        if isinstance(marker, Suppress) is True:
            return SUPPRESSED, is_shared
    for marker in markers:
        if isinstance(marker, TransportCodec) is True:
            return CustomCodec(marker.encode, marker.decode), is_shared
    for marker in markers:
        if isinstance(marker, TransportType) is True:
            return marker.resolve(), is_shared

    return _infer_descriptor(current), is_shared


def _infer_descriptor(annotation: object) -> TransportDescriptor:
    """Infer a descriptor from a plain annotation.

    :param annotation: Annotation without markers.
    :returns: Inferred descriptor.
    """
    origin: object = typing.get_origin(annotation)
    if origin in _SEQUENCE_ORIGINS:
        args: tuple[object, ...] = typing.get_args(annotation)
        element: object = None
        if origin is tuple:
            if len(args) == 2 and args[1] is Ellipsis:
                element = args[0]
        elif len(args) == 1:
            element = args[0]
        if isinstance(element, type) is True and element not in GENERIC_OBJECT_TYPES:
            return TypedRef(element, True)
        return NONE

    if isinstance(annotation, type) is False:
        return NONE
    if annotation in GENERIC_OBJECT_TYPES:
        return NONE
    if annotation is list or annotation is tuple:
        return NONE
    return TypedRef(annotation, False)


def _evaluate_hints(obj: object, localns: dict[str, object] | None) -> dict[str, object]:
    """Evaluate annotations with ``Annotated`` extras preserved.

    :param obj: Class or function.
    :param localns: Extra names for forward references.
    :returns: Evaluated annotations.
    :raises TypeResolutionError: If an annotation cannot be evaluated.
    """
    try:
        return typing.get_type_hints(obj, localns=localns, include_extras=True)
    except (NameError, TypeError, AttributeError) as exc:
        name: str = getattr(obj, "__qualname__", repr(obj))
        raise TypeResolutionError(f"Cannot evaluate annotations of {name}: {exc}") from exc


def property_descriptors(tp: type) -> dict[str, TransportDescriptor]:
    """Return memoized descriptors for every annotated attribute of ``tp``.

    :param tp: Class whose annotations to read.
    :returns: Mapping of attribute name to descriptor.
    """
    with _CACHE_LOCK:
        cached: dict[str, TransportDescriptor] | None = _PROPERTY_CACHE.get(tp)
        if cached is not None:
            return cached

        resolved: dict[str, TransportDescriptor] = {}
        is_builtin: bool = is_builtin_type(tp)
        if is_builtin is False:
            hints: dict[str, object] = _evaluate_hints(tp, {tp.__name__: tp})
            for name, annotation in hints.items():
                if typing.get_origin(annotation) is typing.ClassVar:
                    continue
                descriptor, _ = descriptor_from_annotation(annotation)
                resolved[name] = descriptor
        _PROPERTY_CACHE[tp] = resolved
        return resolved


def property_descriptor(tp: type, name: str) -> TransportDescriptor:
    """Return the descriptor of one attribute of ``tp``.

    :param tp: Owning class.
    :param name: Attribute name.
    :returns: Attribute descriptor or ``NONE``.
    """
    descriptors: dict[str, TransportDescriptor] = property_descriptors(tp)
    return descriptors.get(name, NONE)


def callable_descriptors(owner: type, func: Callable[..., Any]) -> CallableDescriptors:
    """Return memoized descriptors for a method defined on ``owner``.

    The first parameter (``self``) is skipped. Callables without Python
    source, such as ``ctypes.Structure.__init__``, get empty metadata.

    :param owner: Class the method belongs to.
    :param func: Plain function object.
    :returns: Callable metadata.
    """
    key: tuple[type, Callable[..., Any]] = (owner, func)
    with _CACHE_LOCK:
        cached: CallableDescriptors | None = _CALLABLE_CACHE.get(key)
        if cached is not None:
            return cached

        target: object = inspect.unwrap(func)
        if inspect.isfunction(target) is False:
            _CALLABLE_CACHE[key] = EMPTY_CALLABLE
            return EMPTY_CALLABLE

        hints: dict[str, object] = _evaluate_hints(target, {owner.__name__: owner})
        signature: inspect.Signature = inspect.signature(target)
        parameters: list[ParameterDescriptor] = []
        for index, parameter in enumerate(signature.parameters.values()):
            if index == 0:
                continue
            descriptor: TransportDescriptor = NONE
            shared: bool = False
            annotation: object = hints.get(parameter.name)
            if annotation is not None:
                descriptor, shared = descriptor_from_annotation(annotation)
            parameters.append(ParameterDescriptor(parameter.name, parameter.kind, descriptor, shared))

        returns: TransportDescriptor = NONE
        return_annotation: object = hints.get("return")
        if return_annotation is not None:
            returns, _ = descriptor_from_annotation(return_annotation)

        resolved: CallableDescriptors = CallableDescriptors(tuple(parameters), returns)
        _CALLABLE_CACHE[key] = resolved
        return resolved


def constructor_descriptors(cls: type) -> CallableDescriptors:
    """Return descriptors for the constructor parameters of ``cls``.

    :param cls: Class to inspect.
    :returns: Constructor metadata.
    """
    init: object = getattr(cls, "__init__")
    return callable_descriptors(cls, init)


def type_id_of(tp: type) -> str:
    """Return the wire identity of ``tp`` and remember it for decoding.

    :param tp: Class to identify.
    :returns: Identity in ``module:qualname`` format.
    """
    type_id: str = f"{tp.__module__}:{tp.__qualname__}"
    with _CACHE_LOCK:
        _TYPES_BY_ID.setdefault(type_id, tp)
    return type_id


def resolve_qualname(root: object, qualname: str) -> object:
    """Resolve a dotted qualname against a root object.

    :param root: Root object.
    :param qualname: Dotted qualname, such as ``Outer.Inner``.
    :returns: Resolved object.
    """
    current: object = root
    pieces: list[str] = qualname.split(".")
    for piece in pieces:
        current = getattr(current, piece)
    return current


def resolve_type_id(type_id: str, hint: type | None = None) -> type:
    """Resolve a wire identity back into a class.

    :param type_id: Identity in ``module:qualname`` format.
    :param hint: Descriptor target to prefer when it carries the same identity.
    :returns: Resolved class.
    :raises TransportError: If the identity cannot be resolved.
    """
    if hint is not None and type_id == f"{hint.__module__}:{hint.__qualname__}":
        return hint

    with _CACHE_LOCK:
        known: type | None = _TYPES_BY_ID.get(type_id)
    if known is not None:
        return known

    module_name, _, qualname = type_id.partition(":")
    if len(module_name) == 0 or len(qualname) == 0:
        raise TransportError(f"Malformed type identity {type_id!r}")
    try:
        module: object = importlib.import_module(module_name)
        resolved: object = resolve_qualname(module, qualname)
    except (ImportError, AttributeError) as exc:
        raise TransportError(f"Cannot resolve type {type_id!r} in this process") from exc
    if isinstance(resolved, type) is False:
        raise TransportError(f"{type_id!r} does not name a class")

    logger.debug("Resolved wire type %s by import", type_id)
    with _CACHE_LOCK:
        _TYPES_BY_ID.setdefault(type_id, resolved)
    return resolved
