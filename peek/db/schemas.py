"""Pydantic schemas: per-kind catalog records and API request/response models."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


# ============ Related entity references ============

class RelatedEntity(BaseModel):
    """Lightweight reference to a related catalog entity."""
    id: str
    instance_id: str = ""
    name: str | None = None
    image_path: str | None = None


class RelatedGroup(RelatedEntity):
    scene_index: int | None = None


# ============ Catalog records ============

class UserOverlayFields(BaseModel):
    """Per-user fields merged onto every record (defaults mean "no opinion")."""
    rating: int = 0  # effective rating: user -> upstream -> 0
    user_rating: int | None = None
    favorite: bool = False
    play_count: int = 0
    o_counter: int = 0
    play_duration: float = 0
    resume_time: float = 0
    last_played_at: datetime | None = None


class CatalogRecord(UserOverlayFields):
    id: str
    instance_id: str = ""
    rating100: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class SceneRecord(CatalogRecord):
    title: str | None = None
    code: str | None = None
    details: str | None = None
    director: str | None = None
    date: str | None = None
    organized: bool = False
    studio_id: str | None = None
    file_path: str | None = None
    duration: float | None = None
    file_size: int | None = None
    bit_rate: int | None = None
    frame_rate: float | None = None
    width: int | None = None
    height: int | None = None
    video_codec: str | None = None
    audio_codec: str | None = None
    paths: dict[str, str | None] = {}
    streams: list[dict[str, Any]] = []
    urls: list[str] = []
    performers: list[RelatedEntity] = []
    tags: list[RelatedEntity] = []
    inherited_tags: list[RelatedEntity] = []
    studio: RelatedEntity | None = None
    groups: list[RelatedGroup] = []
    galleries: list[RelatedEntity] = []


class PerformerRecord(CatalogRecord):
    name: str
    disambiguation: str | None = None
    aliases: list[str] = []
    gender: str | None = None
    birthdate: str | None = None
    country: str | None = None
    ethnicity: str | None = None
    eye_color: str | None = None
    height_cm: int | None = None
    measurements: str | None = None
    career_length: str | None = None
    details: str | None = None
    scene_count: int = 0
    image_count: int = 0
    gallery_count: int = 0
    group_count: int = 0
    image_path: str | None = None
    stash_ids: list[dict[str, str]] = []
    tags: list[RelatedEntity] = []


class StudioRecord(CatalogRecord):
    name: str
    parent_id: str | None = None
    url: str | None = None
    details: str | None = None
    aliases: list[str] = []
    scene_count: int = 0
    image_count: int = 0
    gallery_count: int = 0
    image_path: str | None = None
    stash_ids: list[dict[str, str]] = []
    parent: RelatedEntity | None = None
    tags: list[RelatedEntity] = []


class TagRecord(CatalogRecord):
    name: str
    description: str | None = None
    aliases: list[str] = []
    scene_count: int = 0
    performer_count: int = 0
    image_count: int = 0
    gallery_count: int = 0
    image_path: str | None = None
    stash_ids: list[dict[str, str]] = []
    parents: list[RelatedEntity] = []
    children: list[RelatedEntity] = []


class GalleryRecord(CatalogRecord):
    title: str | None = None
    date: str | None = None
    details: str | None = None
    photographer: str | None = None
    studio_id: str | None = None
    image_count: int = 0
    cover_path: str | None = None
    performers: list[RelatedEntity] = []
    tags: list[RelatedEntity] = []
    studio: RelatedEntity | None = None
    scenes: list[RelatedEntity] = []


class GroupRecord(CatalogRecord):
    name: str
    aliases: str | None = None
    date: str | None = None
    duration: int | None = None
    director: str | None = None
    synopsis: str | None = None
    studio_id: str | None = None
    scene_count: int = 0
    front_image_path: str | None = None
    back_image_path: str | None = None
    tags: list[RelatedEntity] = []
    studio: RelatedEntity | None = None


class ImageRecord(CatalogRecord):
    title: str | None = None
    date: str | None = None
    details: str | None = None
    photographer: str | None = None
    studio_id: str | None = None
    width: int | None = None
    height: int | None = None
    file_path: str | None = None
    file_size: int | None = None
    paths: dict[str, str | None] = {}
    performers: list[RelatedEntity] = []
    tags: list[RelatedEntity] = []
    studio: RelatedEntity | None = None
    galleries: list[RelatedEntity] = []


class ClipRecord(CatalogRecord):
    scene_id: str
    title: str | None = None
    seconds: float = 0
    end_seconds: float | None = None
    primary_tag_id: str | None = None
    paths: dict[str, str | None] = {}
    scene: RelatedEntity | None = None
    primary_tag: RelatedEntity | None = None
    tags: list[RelatedEntity] = []


# ============ Library query API ============

class LibraryQueryRequest(BaseModel):
    """Body of POST /library/{kind}/query."""
    filters: dict[str, Any] = {}
    sort: str | None = None
    sort_direction: str | None = Field(None, description="ASC or DESC")
    page: int = Field(1, ge=1)
    per_page: int | None = Field(None, ge=1)
    random_seed: int | None = None
    apply_exclusions: bool = True


class LibraryQueryResponse(BaseModel):
    items: list[dict[str, Any]]
    total: int
    page: int
    per_page: int
    has_more: bool


class IdsRequest(BaseModel):
    """Body of POST /library/{kind}/ids (composite "id:instanceId" or bare ids)."""
    ids: list[str]


class IdsResponse(BaseModel):
    items: list[dict[str, Any]]


# ============ Hidden entity API ============

class HideRequest(BaseModel):
    entity_type: str
    entity_id: str
    instance_id: str = ""


class HiddenEntityResponse(BaseModel):
    id: int
    entity_type: str
    entity_id: str
    instance_id: str
    name: str | None = None
    hidden_at: datetime


class HiddenListResponse(BaseModel):
    items: list[HiddenEntityResponse]
    total: int


class UnhideAllResponse(BaseModel):
    removed: int


# ============ Stats API ============

class LibraryCounts(BaseModel):
    scenes: int = 0
    performers: int = 0
    studios: int = 0
    tags: int = 0
    galleries: int = 0
    groups: int = 0
    images: int = 0
    clips: int = 0


class EngagementTotals(BaseModel):
    total_watch_time: float = 0
    total_play_count: int = 0
    total_o_count: int = 0
    total_images_viewed: int = 0
    unique_scenes_watched: int = 0


class TopEntity(BaseModel):
    id: str
    instance_id: str = ""
    name: str | None = None
    image_path: str | None = None
    play_count: int = 0
    o_count: int = 0
    play_duration: float = 0
    engagement_rate: float = 0
    percentile_rank: int = 0


class UserStatsResponse(BaseModel):
    library: LibraryCounts
    engagement: EngagementTotals
    top_scenes: list[TopEntity] = []
    top_performers: list[TopEntity] = []
    top_studios: list[TopEntity] = []
    top_tags: list[TopEntity] = []
    most_watched_scene: TopEntity | None = None
    most_o_performer: TopEntity | None = None
    sort_by: str = "engagement"


# ============ Recommendations API ============

class CriteriaCounts(BaseModel):
    favorited_performers: int = 0
    highly_rated_performers: int = 0
    favorited_studios: int = 0
    highly_rated_studios: int = 0
    favorited_tags: int = 0
    highly_rated_tags: int = 0
    favorited_scenes: int = 0
    rated_scenes: int = 0
    implicit_entities: int = 0


class RecommendationsResponse(BaseModel):
    scenes: list[dict[str, Any]]
    total: int
    page: int
    per_page: int
    criteria: CriteriaCounts
    message: str | None = None


# ============ Admin API ============

class RefreshResponse(BaseModel):
    started: bool
    cache_version: int


class RecomputeResponse(BaseModel):
    success: int
    failed: int
    errors: list[dict[str, Any]] = []


class DuplicateMember(BaseModel):
    id: str
    instance_id: str = ""
    name: str | None = None
    priority: int


class DuplicateGroupResponse(BaseModel):
    shared_external_id: str
    primary: DuplicateMember
    members: list[DuplicateMember]


class DuplicateStatsEntry(BaseModel):
    groups: int = 0
    duplicate_entities: int = 0
