"""Content-type and fragment schema models.

Attribute kinds form a closed tagged variant selected by the raw ``type``
field: ``media``, ``relation``, ``component`` (embedded fragment) and
``dynamiczone`` (fragment union) are structural, every other type is scalar.
Code that walks a schema dispatches on ``Attribute.kind`` only.
"""

from __future__ import annotations

import enum
import json
from pathlib import Path
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag, field_validator


class AttributeKind(str, enum.Enum):
    SCALAR = "scalar"
    MEDIA = "media"
    RELATION = "relation"
    FRAGMENT = "fragment"
    FRAGMENT_UNION = "fragment-union"


class ScalarAttribute(BaseModel):
    type: str
    required: bool = False

    model_config = ConfigDict(extra="allow", frozen=True)

    @property
    def kind(self) -> AttributeKind:
        return AttributeKind.SCALAR


class MediaAttribute(BaseModel):
    type: Literal["media"] = "media"
    multiple: bool = False
    allowed_types: list[str] = Field(default_factory=list, alias="allowedTypes")

    model_config = ConfigDict(extra="allow", frozen=True, populate_by_name=True)

    @property
    def kind(self) -> AttributeKind:
        return AttributeKind.MEDIA


_TO_MANY = {"oneToMany", "manyToMany", "manyWay", "morphToMany"}


class RelationAttribute(BaseModel):
    type: Literal["relation"] = "relation"
    relation: str = "oneToOne"
    target: str

    model_config = ConfigDict(extra="allow", frozen=True)

    @property
    def kind(self) -> AttributeKind:
        return AttributeKind.RELATION

    @property
    def many(self) -> bool:
        return self.relation in _TO_MANY


class FragmentAttribute(BaseModel):
    type: Literal["component"] = "component"
    component: str
    repeatable: bool = False

    model_config = ConfigDict(extra="allow", frozen=True)

    @property
    def kind(self) -> AttributeKind:
        return AttributeKind.FRAGMENT


class FragmentUnionAttribute(BaseModel):
    type: Literal["dynamiczone"] = "dynamiczone"
    components: list[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="allow", frozen=True)

    @property
    def kind(self) -> AttributeKind:
        return AttributeKind.FRAGMENT_UNION


_STRUCTURAL_TAGS = {"media", "relation", "component", "dynamiczone"}


def _attribute_tag(value: Any) -> str:
    raw = value.get("type") if isinstance(value, dict) else getattr(value, "type", None)
    return raw if raw in _STRUCTURAL_TAGS else "scalar"


Attribute = Annotated[
    Union[
        Annotated[ScalarAttribute, Tag("scalar")],
        Annotated[MediaAttribute, Tag("media")],
        Annotated[RelationAttribute, Tag("relation")],
        Annotated[FragmentAttribute, Tag("component")],
        Annotated[FragmentUnionAttribute, Tag("dynamiczone")],
    ],
    Discriminator(_attribute_tag),
]


class FragmentSchema(BaseModel):
    """Schema of an embedded fragment (component)."""

    uid: str
    collection_name: str | None = Field(default=None, alias="collectionName")
    attributes: dict[str, Attribute] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class ContentTypeSchema(BaseModel):
    uid: str
    kind: Literal["collection", "singleton"] = "collection"
    collection_name: str | None = Field(default=None, alias="collectionName")
    draft_and_publish: bool = Field(default=True, alias="draftAndPublish")
    localized: bool = False
    attributes: dict[str, Attribute] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("kind", mode="before")
    @classmethod
    def _normalize_kind(cls, v: Any) -> Any:
        # Accept the store's own naming as well
        if v == "collectionType":
            return "collection"
        if v == "singleType":
            return "singleton"
        return v

    @property
    def is_singleton(self) -> bool:
        return self.kind == "singleton"


SchemaLike = Union[ContentTypeSchema, FragmentSchema]


class SchemaError(ValueError):
    """Raised when a schema file or definition cannot be parsed."""


class SchemaRegistry:
    """Lookup of content-type and fragment schemas by uid."""

    def __init__(
        self,
        content_types: dict[str, ContentTypeSchema] | None = None,
        components: dict[str, FragmentSchema] | None = None,
    ) -> None:
        self.content_types: dict[str, ContentTypeSchema] = dict(content_types or {})
        self.components: dict[str, FragmentSchema] = dict(components or {})

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> SchemaRegistry:
        """Build from ``{"contentTypes": {...}, "components": {...}}``."""
        try:
            content_types = {
                uid: ContentTypeSchema.model_validate({"uid": uid, **body})
                for uid, body in (raw.get("contentTypes") or {}).items()
            }
            components = {
                uid: FragmentSchema.model_validate({"uid": uid, **body})
                for uid, body in (raw.get("components") or {}).items()
            }
        except ValueError as exc:
            raise SchemaError(f"Invalid schema definition: {exc}") from exc
        return cls(content_types, components)

    @classmethod
    def from_directory(cls, root: Path) -> SchemaRegistry:
        """Load ``content-types/*.json`` and ``components/<category>/*.json``.

        A component without an explicit ``uid`` gets ``<category>.<file stem>``.
        """
        if not root.is_dir():
            raise SchemaError(f"Schema directory not found: {root}")
        content_types: dict[str, Any] = {}
        components: dict[str, Any] = {}
        for path in sorted((root / "content-types").glob("*.json")):
            body = _read_json(path)
            uid = body.pop("uid", None) or f"api::{path.stem}.{path.stem}"
            content_types[uid] = body
        for path in sorted((root / "components").glob("*/*.json")):
            body = _read_json(path)
            uid = body.pop("uid", None) or f"{path.parent.name}.{path.stem}"
            components[uid] = body
        return cls.from_dict({"contentTypes": content_types, "components": components})

    def get(self, uid: str) -> SchemaLike | None:
        return self.content_types.get(uid) or self.components.get(uid)

    def content_type(self, uid: str) -> ContentTypeSchema | None:
        return self.content_types.get(uid)

    def component(self, uid: str) -> FragmentSchema | None:
        return self.components.get(uid)

    def api_types(self) -> list[str]:
        return sorted(uid for uid in self.content_types if uid.startswith("api::"))

    def to_dict(
        self, content_types: list[str] | None = None, components: list[str] | None = None
    ) -> dict[str, Any]:
        """Serialize (a subset of) the registry using the store's field names."""
        ct_uids = self.content_types.keys() if content_types is None else content_types
        comp_uids = self.components.keys() if components is None else components
        return {
            "contentTypes": {
                uid: self.content_types[uid].model_dump(by_alias=True, exclude={"uid"})
                for uid in ct_uids
                if uid in self.content_types
            },
            "components": {
                uid: self.components[uid].model_dump(by_alias=True, exclude={"uid"})
                for uid in comp_uids
                if uid in self.components
            },
        }


def _read_json(path: Path) -> dict[str, Any]:
    try:
        with open(path, encoding="utf-8") as f:
            body = json.load(f)
    except (json.JSONDecodeError, OSError) as exc:
        raise SchemaError(f"Failed to load schema from {path}: {exc}") from exc
    if not isinstance(body, dict):
        raise SchemaError(f"Schema file {path} must contain a JSON object")
    return body
