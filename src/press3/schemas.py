from __future__ import annotations

"""Pydantic schemas for raw ledger payloads.

These models validate the JSON shape of the registry object as returned by a
`sui_getObject` call with `showContent`. The rest of the package only sees the
frozen dataclasses from press3.types.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from press3.errors import ExternalUnavailable
from press3.types import PageRecord, RegistrySnapshot
from press3.util.ids import validate_address

Json = Dict[str, Any]


class _ObjectOnlyModel(BaseModel):
    """Object-only model: payload must be a JSON object; keys may evolve."""

    model_config = ConfigDict(extra="allow")


class PageFields(_ObjectOnlyModel):
    path: str
    walrus_id: str
    editors: List[str] = Field(default_factory=list)


class PageEntry(_ObjectOnlyModel):
    type: Optional[str] = None
    fields: PageFields


class RegistryFields(_ObjectOnlyModel):
    admins: List[str] = Field(default_factory=list)
    pages: List[PageEntry] = Field(default_factory=list)


class MoveObjectContent(_ObjectOnlyModel):
    dataType: str
    type: Optional[str] = None
    fields: RegistryFields


class ObjectData(_ObjectOnlyModel):
    objectId: str
    version: int
    content: Optional[MoveObjectContent] = None


class ObjectResponse(_ObjectOnlyModel):
    data: Optional[ObjectData] = None
    error: Optional[Json] = None


def _norm(addr: str) -> str:
    v = validate_address(addr)
    return v.value if v.ok else addr


def snapshot_from_object_response(raw: Any) -> RegistrySnapshot:
    """Parse a getObject response into a RegistrySnapshot.

    A shape mismatch is reported as ExternalUnavailable: the node answered, but
    not with a readable registry object (e.g. not indexed yet).
    """
    try:
        resp = ObjectResponse.model_validate(raw)
    except PydanticValidationError as e:
        raise ExternalUnavailable(reason="bad_registry_payload", details=str(e)[:300]) from e

    if resp.data is None or resp.data.content is None:
        raise ExternalUnavailable(reason="registry_object_missing", details=resp.error)
    if resp.data.content.dataType != "moveObject":
        raise ExternalUnavailable(reason="registry_not_move_object", details=resp.data.content.dataType)

    fields = resp.data.content.fields
    pages = tuple(
        PageRecord(path=p.fields.path, content_ref=p.fields.walrus_id, editors=tuple(p.fields.editors))
        for p in fields.pages
    )
    return RegistrySnapshot(
        object_id=_norm(resp.data.objectId),
        version=int(resp.data.version),
        admins=frozenset(_norm(a) for a in fields.admins),
        pages=pages,
    )
