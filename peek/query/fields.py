"""Per-kind registries: entity models, relations and filterable fields.

Relations describe how to walk from an entity to related entities. A
relation is either a direct column on the owner row (target lives on the
owner's instance) or a chain of junction hops, each hop joining on BOTH
halves of the composite key.
"""

from dataclasses import dataclass

from peek.core.errors import UnknownEntityKindError
from peek.db.models import (
    Scene, Performer, Studio, Tag, Gallery, Group, Image, Clip,
    ScenePerformer, SceneTag, SceneInheritedTag, SceneGroup, SceneGallery,
    PerformerTag, StudioTag, GroupTag, TagParent,
    GalleryPerformer, GalleryTag, ImagePerformer, ImageTag, ImageGallery, ClipTag,
)
from peek.query.filters import (
    NumberCriterion, TextCriterion, DateCriterion, BoolCriterion,
    MultiIdCriterion, EnumCriterion,
)
from peek.query.predicates import (
    Column, OverlayColumn, EffectiveRating, RelationCount, Computed,
)


ENTITY_MODELS = {
    "scene": Scene,
    "performer": Performer,
    "studio": Studio,
    "tag": Tag,
    "gallery": Gallery,
    "group": Group,
    "image": Image,
    "clip": Clip,
}


def get_model(kind: str):
    """ORM class for an entity kind."""
    try:
        return ENTITY_MODELS[kind]
    except KeyError:
        raise UnknownEntityKindError(kind)


# ============ Relations ============

@dataclass(frozen=True)
class Hop:
    model: type
    owner_id: str
    owner_instance: str
    target_id: str
    target_instance: str


@dataclass(frozen=True)
class Relation:
    target_type: str
    hops: tuple[Hop, ...] = ()
    column: str | None = None  # direct reference on the owner row

    @property
    def is_direct(self) -> bool:
        return self.column is not None


def _hop(model, owner: str, target: str) -> Hop:
    return Hop(model, f"{owner}_id", f"{owner}_instance_id", f"{target}_id", f"{target}_instance_id")


def _junction(target_type: str, *hops: Hop) -> Relation:
    return Relation(target_type, hops=hops)


def _direct(target_type: str, column: str) -> Relation:
    return Relation(target_type, column=column)


# Scene row used as a hop from a scene to its studio
_SCENE_STUDIO_HOP = Hop(Scene, "id", "instance_id", "studio_id", "instance_id")

RELATIONS: dict[str, dict[str, Relation]] = {
    "scene": {
        "performers": _junction("performer", _hop(ScenePerformer, "scene", "performer")),
        "tags": _junction("tag", _hop(SceneTag, "scene", "tag")),
        "inherited_tags": _junction("tag", _hop(SceneInheritedTag, "scene", "tag")),
        "groups": _junction("group", _hop(SceneGroup, "scene", "group")),
        "galleries": _junction("gallery", _hop(SceneGallery, "scene", "gallery")),
        "studios": _direct("studio", "studio_id"),
    },
    "performer": {
        "tags": _junction("tag", _hop(PerformerTag, "performer", "tag")),
        "scenes": _junction("scene", _hop(ScenePerformer, "performer", "scene")),
        "studios": _junction("studio", _hop(ScenePerformer, "performer", "scene"), _SCENE_STUDIO_HOP),
        "groups": _junction(
            "group", _hop(ScenePerformer, "performer", "scene"), _hop(SceneGroup, "scene", "group")
        ),
    },
    "studio": {
        "tags": _junction("tag", _hop(StudioTag, "studio", "tag")),
        "parents": _direct("studio", "parent_id"),
    },
    "tag": {
        "parents": _junction("tag", _hop(TagParent, "tag", "parent")),
        "children": _junction("tag", _hop(TagParent, "parent", "tag")),
    },
    "gallery": {
        "performers": _junction("performer", _hop(GalleryPerformer, "gallery", "performer")),
        "tags": _junction("tag", _hop(GalleryTag, "gallery", "tag")),
        "scenes": _junction("scene", _hop(SceneGallery, "gallery", "scene")),
        "studios": _direct("studio", "studio_id"),
    },
    "group": {
        "performers": _junction(
            "performer", _hop(SceneGroup, "group", "scene"), _hop(ScenePerformer, "scene", "performer")
        ),
        "tags": _junction("tag", _hop(GroupTag, "group", "tag")),
        "scenes": _junction("scene", _hop(SceneGroup, "group", "scene")),
        "studios": _direct("studio", "studio_id"),
    },
    "image": {
        "performers": _junction("performer", _hop(ImagePerformer, "image", "performer")),
        "tags": _junction("tag", _hop(ImageTag, "image", "tag")),
        "galleries": _junction("gallery", _hop(ImageGallery, "image", "gallery")),
        "studios": _direct("studio", "studio_id"),
    },
    "clip": {
        "tags": _junction("tag", _hop(ClipTag, "clip", "tag")),
        "scene": _direct("scene", "scene_id"),
        "primary_tag": _direct("tag", "primary_tag_id"),
    },
}


def get_relation(kind: str, name: str) -> Relation:
    return RELATIONS[kind][name]


# ============ Filterable fields ============

@dataclass(frozen=True)
class FieldSpec:
    """How one filter field of one entity kind compiles.

    - operands: columns/expressions the criterion applies to (text fields may
      search several columns)
    - relation: relation name for multi-id membership and Exists fields
    - hierarchy: 'tag' or 'studio' when values expand to descendants by depth
    - handler: special compile rule ('ids', 'resolution', 'orientation',
      'age', 'related_favorite')
    """
    name: str
    criterion: type
    operands: tuple = ()
    relation: str | None = None
    hierarchy: str | None = None
    handler: str | None = None
    default_modifier: str | None = None


def _text(name, *columns):
    return FieldSpec(name, TextCriterion, tuple(Column(c) for c in (columns or (name,))))


def _number(name, operand=None):
    return FieldSpec(name, NumberCriterion, (operand or Column(name),))


def _overlay_number(name, column):
    return FieldSpec(name, NumberCriterion, (OverlayColumn(column, 0),))


def _date(name, column=None):
    return FieldSpec(name, DateCriterion, (Column(column or name),))


def _ids():
    return FieldSpec("ids", MultiIdCriterion, handler="ids")


def _multi(name, relation=None, hierarchy=None):
    return FieldSpec(name, MultiIdCriterion, relation=relation or name, hierarchy=hierarchy)


def _rating():
    return FieldSpec("rating100", NumberCriterion, (EffectiveRating(),))


def _favorite():
    return FieldSpec("favorite", BoolCriterion, (OverlayColumn("favorite"),))


def _related_favorite(name, relation):
    return FieldSpec(name, BoolCriterion, relation=relation, handler="related_favorite")


def _index(*specs: FieldSpec) -> dict[str, FieldSpec]:
    return {spec.name: spec for spec in specs}


FIELDS: dict[str, dict[str, FieldSpec]] = {
    "scene": _index(
        _ids(),
        _text("title"), _text("details"), _text("code"), _text("director"),
        _text("path", "file_path"),
        _date("date"), _date("created_at", "stash_created_at"), _date("updated_at", "stash_updated_at"),
        FieldSpec("last_played_at", DateCriterion, (OverlayColumn("last_played_at"),)),
        _rating(),
        _overlay_number("o_counter", "o_count"),
        _overlay_number("play_count", "play_count"),
        _overlay_number("play_duration", "play_duration"),
        _number("duration"), _number("bitrate", Column("bit_rate")), _number("framerate", Column("frame_rate")),
        FieldSpec("resolution", EnumCriterion, (Column("height", 0),), handler="resolution", default_modifier="EQUALS"),
        FieldSpec("orientation", EnumCriterion, handler="orientation"),
        _text("video_codec"), _text("audio_codec"),
        FieldSpec("organized", BoolCriterion, (Column("organized"),)),
        _favorite(),
        _multi("performers"),
        _multi("tags", hierarchy="tag"),
        _multi("studios", hierarchy="studio"),
        _multi("groups"),
        _multi("galleries"),
        _number("performer_count", RelationCount("performers")),
        _number("tag_count", RelationCount("tags")),
        _related_favorite("performer_favorite", "performers"),
        _related_favorite("studio_favorite", "studios"),
        _related_favorite("tag_favorite", "tags"),
    ),
    "performer": _index(
        _ids(),
        _text("name", "name", "disambiguation"),
        _text("details"),
        FieldSpec("gender", EnumCriterion, (Column("gender"),)),
        _text("country"), _text("ethnicity"), _text("eye_color"),
        _date("birthdate"),
        FieldSpec("age", NumberCriterion, (Column("birthdate"),), handler="age"),
        _number("height", Column("height_cm")),
        _rating(),
        _overlay_number("o_counter", "o_count"),
        _overlay_number("play_count", "play_count"),
        _number("scene_count"),
        _favorite(),
        _multi("tags", hierarchy="tag"),
        _multi("studios", hierarchy="studio"),
        _multi("scenes"),
        _multi("groups"),
    ),
    "studio": _index(
        _ids(),
        _text("name"), _text("details"), _text("url"),
        _rating(),
        _number("scene_count"),
        _favorite(),
        _multi("tags", hierarchy="tag"),
        _multi("parents", hierarchy="studio"),
        _overlay_number("o_counter", "o_count"),
        _overlay_number("play_count", "play_count"),
    ),
    "tag": _index(
        _ids(),
        _text("name"), _text("description"),
        _rating(),
        _number("scene_count"),
        _favorite(),
        _multi("parents", hierarchy="tag"),
        _multi("children"),
        _overlay_number("o_counter", "o_count"),
        _overlay_number("play_count", "play_count"),
    ),
    "gallery": _index(
        _ids(),
        _text("title"), _text("details"), _text("photographer"),
        _date("date"),
        _rating(),
        _number("image_count"),
        _favorite(),
        _multi("performers"),
        _multi("tags", hierarchy="tag"),
        _multi("studios", hierarchy="studio"),
        _multi("scenes"),
    ),
    "group": _index(
        _ids(),
        _text("name"), _text("director"), _text("synopsis"),
        _date("date"),
        _number("duration"),
        _rating(),
        _number("scene_count"),
        _favorite(),
        _multi("performers"),
        _multi("tags", hierarchy="tag"),
        _multi("studios", hierarchy="studio"),
        _multi("scenes"),
    ),
    "image": _index(
        _ids(),
        _text("title"), _text("details"), _text("photographer"),
        _text("path", "file_path"),
        _date("date"),
        _rating(),
        _overlay_number("o_counter", "o_count"),
        _favorite(),
        FieldSpec("resolution", EnumCriterion, (Column("height", 0),), handler="resolution", default_modifier="EQUALS"),
        FieldSpec("orientation", EnumCriterion, handler="orientation"),
        _multi("performers"),
        _multi("tags", hierarchy="tag"),
        _multi("studios", hierarchy="studio"),
        _multi("galleries"),
    ),
    "clip": _index(
        _ids(),
        _text("title"),
        _number("seconds"),
        _number("duration", Computed("clip_duration")),
        _multi("scene"),
        _multi("tags", hierarchy="tag"),
        _multi("primary_tag", hierarchy="tag"),
        _favorite(),
    ),
}


def get_fields(kind: str) -> dict[str, FieldSpec]:
    try:
        return FIELDS[kind]
    except KeyError:
        raise UnknownEntityKindError(kind)
