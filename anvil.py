import gzip
import io
import os
import struct
import time
import zlib

import nbtlib

SECTOR_BYTES = 4096
HEADER_BYTES = SECTOR_BYTES * 2
REGION_WIDTH = 32
CHUNKS_PER_REGION = REGION_WIDTH * REGION_WIDTH
MAX_SECTOR_COUNT = 255

COMPRESSION_GZIP = 1
COMPRESSION_ZLIB = 2
COMPRESSION_NONE = 3
COMPRESSION_EXTERNAL_FLAG = 0x80


class RegionFormatError(ValueError):
    pass


def slot_position(index):
    return index % REGION_WIDTH, index // REGION_WIDTH


def slot_index(x, z):
    if not (0 <= x < REGION_WIDTH and 0 <= z < REGION_WIDTH):
        raise ValueError(f"Slot out of range: ({x}, {z})")
    return x + z * REGION_WIDTH


def region_filename(region_x, region_z):
    return f"r.{region_x}.{region_z}.mca"


def parse_region_filename(filename):
    # Expected format: r.<x>.<z>.mca
    name = os.path.basename(filename)
    if not (name.startswith("r.") and name.endswith(".mca")):
        raise ValueError(f"Invalid region filename: {filename}")
    parts = name.split(".")
    if len(parts) != 4:
        raise ValueError(f"Invalid region filename: {filename}")
    try:
        return int(parts[1]), int(parts[2])
    except ValueError:
        raise ValueError(f"Invalid region filename: {filename}") from None


def list_region_positions(region_dir):
    if not os.path.isdir(region_dir):
        return []
    positions = set()
    for filename in os.listdir(region_dir):
        try:
            positions.add(parse_region_filename(filename))
        except ValueError:
            continue
    return sorted(positions)


def decompress_chunk(compression, data):
    if compression & COMPRESSION_EXTERNAL_FLAG:
        raise RegionFormatError("external chunk storage (.mcc) is not supported")
    try:
        if compression == COMPRESSION_GZIP:
            return gzip.decompress(data)
        if compression == COMPRESSION_ZLIB:
            return zlib.decompress(data)
    except (OSError, EOFError, zlib.error) as exc:
        raise RegionFormatError(f"could not decompress chunk: {exc}") from exc
    if compression == COMPRESSION_NONE:
        return data
    raise RegionFormatError(f"unsupported compression type {compression}")


class _StrictBuf(io.BytesIO):
    # nbtlib pads short reads with zeros; a truncated payload must fail instead
    def read(self, size=-1):
        data = super().read(size)
        if size is not None and size > 0 and len(data) < size:
            raise RegionFormatError("malformed chunk NBT: truncated")
        return data


def parse_chunk_nbt(data):
    buf = _StrictBuf(data)
    try:
        chunk = nbtlib.File.parse(buf, byteorder="big")
    except RegionFormatError:
        raise
    except Exception as exc:
        raise RegionFormatError(f"malformed chunk NBT: {exc!r}") from exc
    if buf.tell() != len(data):
        raise RegionFormatError(
            f"malformed chunk NBT: {len(data) - buf.tell()} trailing bytes"
        )
    return chunk


def serialize_chunk_nbt(chunk):
    f = nbtlib.File(chunk, gzipped=False, byteorder="big")
    buf = io.BytesIO()
    f.write(buf)
    return buf.getvalue()


class RegionReader:
    """Read-only view of one Anvil region file.

    The location table is loaded once on open; chunk payloads are read on
    demand.  A slot whose location entry is zero is absent and reads as
    ``None``; any other unreadable slot raises :class:`RegionFormatError`.
    """

    def __init__(self, path):
        self.path = path
        self._file = open(path, "rb")
        try:
            self._size = os.fstat(self._file.fileno()).st_size
            header = self._file.read(HEADER_BYTES)
        except BaseException:
            self._file.close()
            raise
        if not header:
            header = bytes(HEADER_BYTES)
        elif len(header) < HEADER_BYTES:
            self._file.close()
            raise RegionFormatError(
                f"Region file {path} has a short header ({len(header)} bytes)"
            )
        self._locations = struct.unpack(">1024I", header[:SECTOR_BYTES])
        self._timestamps = struct.unpack(">1024I", header[SECTOR_BYTES:])

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def close(self):
        self._file.close()

    def timestamp(self, index):
        return self._timestamps[index]

    def read_chunk_bytes(self, index):
        entry = self._locations[index]
        if entry == 0:
            return None
        sector_offset = entry >> 8
        sector_count = entry & 0xFF
        if sector_offset < 2 or sector_count == 0:
            raise RegionFormatError(
                f"invalid location entry (offset {sector_offset}, "
                f"sectors {sector_count})"
            )
        start = sector_offset * SECTOR_BYTES
        if start + 5 > self._size:
            raise RegionFormatError("chunk offset is past the end of the file")
        self._file.seek(start)
        length, compression = struct.unpack(">IB", self._file.read(5))
        if length == 0 or length + 4 > sector_count * SECTOR_BYTES:
            raise RegionFormatError(
                f"chunk length {length} does not fit in {sector_count} sectors"
            )
        data = self._file.read(length - 1)
        if len(data) < length - 1:
            raise RegionFormatError("chunk data is truncated")
        return decompress_chunk(compression, data)

    def read_chunk(self, index):
        data = self.read_chunk_bytes(index)
        if data is None:
            return None
        return parse_chunk_nbt(data)


class RegionWriter:
    """Append-only writer for a freshly created region file."""

    def __init__(self, path, fileobj):
        self.path = path
        self._file = fileobj
        self._next_sector = HEADER_BYTES // SECTOR_BYTES

    @classmethod
    def create(cls, path):
        fileobj = open(path, "xb")
        try:
            fileobj.write(bytes(HEADER_BYTES))
        except BaseException:
            fileobj.close()
            raise
        return cls(path, fileobj)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def close(self):
        self._file.close()

    def write_chunk(self, index, chunk, timestamp=None):
        if not 0 <= index < CHUNKS_PER_REGION:
            raise ValueError(f"Chunk index out of range: {index}")
        compressed = zlib.compress(serialize_chunk_nbt(chunk))
        payload = struct.pack(">IB", len(compressed) + 1, COMPRESSION_ZLIB)
        payload += compressed
        sectors_needed = (len(payload) + SECTOR_BYTES - 1) // SECTOR_BYTES
        if sectors_needed > MAX_SECTOR_COUNT:
            raise RegionFormatError(
                f"chunk needs {sectors_needed} sectors; "
                f"at most {MAX_SECTOR_COUNT} fit in a region file"
            )
        # pad to full sector size
        payload += b"\x00" * (sectors_needed * SECTOR_BYTES - len(payload))

        if timestamp is None:
            timestamp = int(time.time())
        sector_offset = self._next_sector
        self._file.seek(sector_offset * SECTOR_BYTES)
        self._file.write(payload)
        self._file.seek(index * 4)
        self._file.write(struct.pack(">I", (sector_offset << 8) | sectors_needed))
        self._file.seek(SECTOR_BYTES + index * 4)
        self._file.write(struct.pack(">I", timestamp & 0xFFFFFFFF))
        self._next_sector += sectors_needed
