from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class StoredItem(BaseModel):
    """Base for every record persisted in the single table.

    Key attributes are exposed as ``pk``/``sk`` (and ``gsi*`` on subclasses)
    but stored under their table names (``PK``, ``SK``, ``GSI1PK`` ...).
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore", use_enum_values=False)

    pk: str = Field(alias="PK")
    sk: str = Field(alias="SK")

    def to_item(self) -> dict[str, Any]:
        """Store representation: table attribute names, ``None`` omitted."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
