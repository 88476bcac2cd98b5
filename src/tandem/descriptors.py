"""Transport descriptors and the ``Annotated`` markers that produce them."""

from collections.abc import Callable
from typing import Any


class _PassThrough:
    """Descriptor for values with no transport metadata."""

    _instance: "_PassThrough | None" = None

    def __new__(cls) -> "_PassThrough":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "NONE"

    def __reduce__(self) -> object:
        return (_PassThrough, ())


class _Suppressed:
    """Descriptor for values that never cross the boundary."""

    _instance: "_Suppressed | None" = None

    def __new__(cls) -> "_Suppressed":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "SUPPRESSED"

    def __reduce__(self) -> object:
        return (_Suppressed, ())


NONE: _PassThrough = _PassThrough()
SUPPRESSED: _Suppressed = _Suppressed()


class TypedRef:
    """Descriptor naming the concrete type a value is transported as."""

    __slots__ = ("target", "is_array")

    target: type
    is_array: bool

    def __init__(self, target: type, is_array: bool = False) -> None:
        """Initialize a typed reference.

        :param target: Type used to encode and rebuild the value.
        :param is_array: ``True`` when the value is a sequence of ``target``.
        """
        self.target = target
        self.is_array = is_array

    def element(self) -> "TypedRef":
        """Return the non-array descriptor for one element.

        :returns: Element descriptor.
        """
        return TypedRef(self.target, False)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, TypedRef) is False:
            return NotImplemented
        return self.target is other.target and self.is_array == other.is_array

    def __hash__(self) -> int:
        return hash((id(self.target), self.is_array))

    def __repr__(self) -> str:
        suffix: str = "[]" if self.is_array is True else ""
        return f"TypedRef({self.target.__qualname__}{suffix})"


class CustomCodec:
    """Descriptor delegating the wire form to user-supplied callables."""

    __slots__ = ("encode", "decode")

    encode: Callable[[Any], Any]
    decode: Callable[[Any], Any]

    def __init__(self, encode: Callable[[Any], Any], decode: Callable[[Any], Any]) -> None:
        """Initialize a codec descriptor.

        :param encode: Converts a runtime value into a wire-safe value.
        :param decode: Converts a wire value back into a runtime value.
        """
        self.encode = encode
        self.decode = decode

    def __repr__(self) -> str:
        return f"CustomCodec({self.encode!r}, {self.decode!r})"


TransportDescriptor = _PassThrough | _Suppressed | TypedRef | CustomCodec


class TransportType:
    """``Annotated`` marker that pins the transported type.

    Accepts a class, a one-element list ``[cls]`` for sequences of ``cls``,
    or a zero-argument callable returning either, for forward references::

        peer: Annotated[object, TransportType(lambda: Node)]
    """

    target: object

    def __init__(self, target: object) -> None:
        self.target = target

    def resolve(self) -> TypedRef:
        """Resolve the marker into a typed reference.

        :returns: Typed reference descriptor.
        :raises TypeError: If the marker does not name a class.
        """
        target: object = self.target
        is_class: bool = isinstance(target, type)
        if is_class is False and isinstance(target, list) is False and callable(target) is True:
            target = target()
        if isinstance(target, list) is True:
            if len(target) != 1 or isinstance(target[0], type) is False:
                raise TypeError("TransportType list form must hold exactly one class")
            return TypedRef(target[0], True)
        if isinstance(target, type) is False:
            raise TypeError(f"TransportType must name a class, got {target!r}")
        return TypedRef(target, False)


class TransportCodec:
    """``Annotated`` marker installing a custom encode/decode pair."""

    encode: Callable[[Any], Any]
    decode: Callable[[Any], Any]

    def __init__(self, encode: Callable[[Any], Any], decode: Callable[[Any], Any]) -> None:
        self.encode = encode
        self.decode = decode


class Suppress:
    """``Annotated`` marker for values that must never be transported."""


class Shared:
    """``Annotated`` marker for constructor parameters moved into shared memory."""
