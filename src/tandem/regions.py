"""Named shared-memory regions and the per-process region table."""

import atexit
import ctypes
import logging
import sys
import threading
from multiprocessing import shared_memory

logger = logging.getLogger(__name__)

_REGION_LOCK: threading.RLock = threading.RLock()
_REGIONS_BY_NAME: dict[str, "SharedRegion"] = {}


class SharedRegion:
    """Handle to one named shared-memory block.

    Regions pickle by name, so sending one over a pipe attaches the receiving
    process to the same memory.
    """

    name: str
    size: int
    is_owner: bool
    _memory: shared_memory.SharedMemory
    _buf: memoryview | None
    _address: int | None

    def __init__(self, memory: shared_memory.SharedMemory, size: int, is_owner: bool) -> None:
        """Wrap an open shared-memory block.

        :param memory: Open block.
        :param size: Logical size in bytes; the block may be larger.
        :param is_owner: ``True`` when this process created the block.
        """
        self.name = memory.name
        self.size = size
        self.is_owner = is_owner
        self._memory = memory
        self._buf = None
        self._address = None

    @property
    def buf(self) -> memoryview:
        """Writable view over the logical bytes of the region.

        :returns: Byte memoryview of length ``size``.
        """
        if self._buf is None:
            self._buf = self._memory.buf[: self.size]
        return self._buf

    @property
    def address(self) -> int:
        """Base address of the region in this process.

        :returns: Integer address.
        """
        if self._address is None:
            first_byte: ctypes.c_char = ctypes.c_char.from_buffer(self._memory.buf)
            self._address = ctypes.addressof(first_byte)
            del first_byte
        return self._address

    def contains(self, address: int, length: int) -> bool:
        """Report whether a byte range lies inside this region.

        :param address: Range start address.
        :param length: Range length in bytes.
        :returns: ``True`` when the whole range is inside the region.
        """
        start: int = self.address
        return start <= address and address + length <= start + self.size

    def close(self) -> None:
        """Release this process's mapping; owners also unlink the block."""
        self._buf = None
        try:
            self._memory.close()
        except BufferError:
            logger.debug("Region %s still has exported views; leaving it mapped", self.name)
        if self.is_owner is True:
            try:
                self._memory.unlink()
            except FileNotFoundError:
                pass

    def __reduce__(self) -> object:
        return (attach_region, (self.name, self.size))

    def __repr__(self) -> str:
        owner: str = "owned" if self.is_owner is True else "attached"
        return f"SharedRegion({self.name!r}, size={self.size}, {owner})"


def create_region(size: int) -> SharedRegion:
    """Allocate a new shared region owned by this process.

    :param size: Logical size in bytes.
    :returns: New region registered in the process table.
    """
    memory: shared_memory.SharedMemory = shared_memory.SharedMemory(create=True, size=max(1, size))
    region: SharedRegion = SharedRegion(memory, size, is_owner=True)
    with _REGION_LOCK:
        _REGIONS_BY_NAME[region.name] = region
    logger.debug("Allocated shared region %s (%d bytes)", region.name, size)
    return region


def _open_existing(name: str) -> shared_memory.SharedMemory:
    """Open an existing block without registering it for cleanup here.

    :param name: Block name.
    :returns: Open block.
    """
    if sys.version_info >= (3, 13):
        return shared_memory.SharedMemory(name=name, create=False, track=False)
    return shared_memory.SharedMemory(name=name, create=False)


def attach_region(name: str, size: int | None = None) -> SharedRegion:
    """Return the process's handle for a named region, attaching if needed.

    :param name: Region name.
    :param size: Logical size; defaults to the block size.
    :returns: Region handle, identical for repeated calls with one name.
    """
    with _REGION_LOCK:
        existing: SharedRegion | None = _REGIONS_BY_NAME.get(name)
        if existing is not None:
            return existing
        memory: shared_memory.SharedMemory = _open_existing(name)
        logical_size: int = memory.size if size is None else size
        region: SharedRegion = SharedRegion(memory, logical_size, is_owner=False)
        _REGIONS_BY_NAME[name] = region
    logger.debug("Attached shared region %s (%d bytes)", name, logical_size)
    return region


def get_region(name: str) -> SharedRegion | None:
    """Return the handle for a known region name.

    :param name: Region name.
    :returns: Region handle or ``None``.
    """
    with _REGION_LOCK:
        return _REGIONS_BY_NAME.get(name)


def locate(address: int, length: int) -> tuple[SharedRegion, int] | None:
    """Find the region containing a byte range.

    :param address: Range start address.
    :param length: Range length in bytes.
    :returns: Tuple of ``(region, offset)`` or ``None``.
    """
    with _REGION_LOCK:
        regions: list[SharedRegion] = list(_REGIONS_BY_NAME.values())
    for region in regions:
        if region.contains(address, length) is True:
            return region, address - region.address
    return None


def buffer_address(view: memoryview) -> int | None:
    """Return the start address of a writable contiguous buffer.

    :param view: Candidate buffer.
    :returns: Address, or ``None`` when the buffer does not expose a writable contiguous address.
    """
    if view.readonly is True or view.nbytes == 0:
        return None
    if view.c_contiguous is False:
        return None
    try:
        first_byte: ctypes.c_char = ctypes.c_char.from_buffer(view)
    except (TypeError, ValueError, BufferError):
        return None
    address: int = ctypes.addressof(first_byte)
    del first_byte
    return address


def region_of_buffer(buffer: object) -> tuple[SharedRegion, int] | None:
    """Find the region backing a buffer object.

    :param buffer: Object supporting the buffer protocol.
    :returns: Tuple of ``(region, offset)`` or ``None`` for private memory.
    """
    try:
        view: memoryview = memoryview(buffer)
    except TypeError:
        return None
    address: int | None = buffer_address(view)
    if address is None:
        return None
    return locate(address, view.nbytes)


def release_owned_regions() -> None:
    """Close every region this process knows and unlink the ones it created."""
    with _REGION_LOCK:
        regions: list[SharedRegion] = list(_REGIONS_BY_NAME.values())
        _REGIONS_BY_NAME.clear()
    for region in regions:
        region.close()


atexit.register(release_owned_regions)
