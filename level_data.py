import logging
import os

import nbtlib

logger = logging.getLogger(__name__)

INT_MAX = 2**31 - 1

DATA_OVERRIDES = {
    "allowCommands": lambda: nbtlib.Byte(1),
    "generatorName": lambda: nbtlib.String("flat"),
    "generatorOptions": lambda: nbtlib.String("0;"),
    "rainTime": lambda: nbtlib.Int(INT_MAX),
    "thunderTime": lambda: nbtlib.Int(INT_MAX),
    "raining": lambda: nbtlib.Byte(0),
    "thundering": lambda: nbtlib.Byte(0),
}

GAME_RULE_OVERRIDES = {
    "doDaylightCycle": "false",
    "doMobSpawning": "false",
    "mobGriefing": "false",
    "randomTickSpeed": "0",
}


class LevelDataError(ValueError):
    pass


def transform_game_rules(game_rules):
    rules = nbtlib.Compound()
    for key, value in game_rules.items():
        if key in GAME_RULE_OVERRIDES:
            rules[key] = nbtlib.String(GAME_RULE_OVERRIDES[key])
        else:
            rules[key] = value
    return rules


def transform_level_data(data):
    root = nbtlib.Compound()
    # sort for consistency
    for key in sorted(data):
        value = data[key]
        if key in DATA_OVERRIDES:
            root[key] = DATA_OVERRIDES[key]()
        elif key == "GameRules":
            if not isinstance(value, nbtlib.Compound):
                logger.warning("GameRules is not a valid compound tag")
                continue
            root[key] = transform_game_rules(value)
        else:
            root[key] = value
    return root


def process_level_data(world, target_dir):
    source_path = os.path.join(world, "level.dat")
    target_path = os.path.join(target_dir, "level.dat")
    try:
        level = nbtlib.load(source_path)
    except Exception as exc:
        raise LevelDataError(
            f"level.dat is not in a readable format (corrupt?): {source_path}"
        ) from exc

    data = level.get("Data")
    if not isinstance(data, nbtlib.Compound):
        raise LevelDataError("Unable to find the Data tag in level.dat")

    logger.info("Transforming level.dat for %s", data.get("LevelName", "undefined"))
    transformed = nbtlib.File({"Data": transform_level_data(data)}, gzipped=True)
    transformed.save(target_path)
    return transformed
