from __future__ import annotations

from typing_extensions import TypeAliasType

JsonValue = TypeAliasType(
    "JsonValue", None | bool | int | float | str | list["JsonValue"] | dict[str, "JsonValue"]
)
JsonObject = TypeAliasType("JsonObject", dict[str, JsonValue])
