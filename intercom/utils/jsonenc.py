from typing import Any

import orjson


def dumps(obj: Any) -> str:
    # aiohttp wants str from its dumps hook; orjson yields compact utf-8 bytes
    return orjson.dumps(obj).decode("utf-8")


def loads(data: bytes | str) -> Any:
    return orjson.loads(data)
