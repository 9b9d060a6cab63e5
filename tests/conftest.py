import gzip
import io
import struct
import zlib
from pathlib import Path

import nbtlib
import pytest

SECTOR = 4096


def make_level(light=0, terrain=0, entities=(), tile_entities=(), **extra):
    level = nbtlib.Compound(
        {
            "xPos": nbtlib.Int(0),
            "zPos": nbtlib.Int(0),
            "LightPopulated": nbtlib.Byte(light),
            "TerrainPopulated": nbtlib.Byte(terrain),
            "Entities": nbtlib.List[nbtlib.Compound](list(entities)),
            "TileEntities": nbtlib.List[nbtlib.Compound](list(tile_entities)),
        }
    )
    level.update(extra)
    return level


def make_chunk(**kwargs):
    return nbtlib.File({"Level": make_level(**kwargs)})


def make_entity(name="minecraft:pig"):
    return nbtlib.Compound({"id": nbtlib.String(name)})


def nbt_bytes(tag):
    buf = io.BytesIO()
    nbtlib.File(tag, gzipped=False, byteorder="big").write(buf)
    return buf.getvalue()


def write_region(path, chunks=None, raw=None, locations=None, timestamps=None):
    """Write an Anvil region file without going through the code under test.

    ``chunks`` maps slot index to an NBT compound (stored zlib-compressed),
    ``raw`` maps slot index to ``(compression, payload_bytes)``,
    ``locations`` overrides location table entries verbatim.
    """
    payloads = {}
    for index, chunk in (chunks or {}).items():
        payloads[index] = (2, zlib.compress(nbt_bytes(chunk)))
    payloads.update(raw or {})

    locations_table = [0] * 1024
    timestamps_table = [0] * 1024
    body = bytearray()
    next_sector = 2
    for index in sorted(payloads):
        compression, data = payloads[index]
        blob = struct.pack(">IB", len(data) + 1, compression) + data
        sectors = (len(blob) + SECTOR - 1) // SECTOR
        blob += b"\x00" * (sectors * SECTOR - len(blob))
        locations_table[index] = (next_sector << 8) | sectors
        timestamps_table[index] = (timestamps or {}).get(index, 1600000000 + index)
        body += blob
        next_sector += sectors
    for index, entry in (locations or {}).items():
        locations_table[index] = entry

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as f:
        f.write(struct.pack(">1024I", *locations_table))
        f.write(struct.pack(">1024I", *timestamps_table))
        f.write(body)
    return path


def gzip_payload(chunk):
    return 1, gzip.compress(nbt_bytes(chunk))


@pytest.fixture()
def world(tmp_path):
    path = tmp_path / "world"
    (path / "region").mkdir(parents=True)
    return path
