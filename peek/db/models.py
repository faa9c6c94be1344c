"""
SQLAlchemy ORM models for the Peek catalog mirror and user overlays.

============================================================================
COMPOSITE IDENTITY
============================================================================
Every catalog row is identified by (id, instance_id). `id` is assigned by the
upstream Stash instance that owns the record and is only unique within that
instance. Two rows with the same `id` and different `instance_id` are
different entities.

- Junction tables store BOTH composite keys (e.g. scene_id + scene_instance_id
  and performer_id + performer_instance_id). Always join on both halves.
- `studio_id` columns reference a studio on the row's own instance.
- instance_id "" (or NULL on very old rows) is the legacy single-instance
  sentinel and matches any allowed instance.

User overlay tables (ratings, watch data, hidden items, exclusions, rankings)
are keyed by (user_id, entity_type, entity_id, instance_id).
============================================================================
"""

from datetime import datetime
from sqlalchemy import (
    Column, String, Integer, Float, Boolean, Text, DateTime, BigInteger,
    JSON, Index, UniqueConstraint,
)

from peek.db.database import Base


ENTITY_TYPES = ("scene", "performer", "studio", "tag", "gallery", "group", "image", "clip")


# ============ Instances and Users ============

class StashInstance(Base):
    """An upstream Stash server the catalog is mirrored from."""

    __tablename__ = "stash_instances"

    id = Column(String(64), primary_key=True)
    name = Column(String(200), nullable=False)
    url = Column(String(500), nullable=False)
    api_key = Column(String(500))
    enabled = Column(Boolean, default=True, nullable=False)
    priority = Column(Integer, default=0, nullable=False)  # Lower number wins when deduplicating
    created_at = Column(DateTime, default=datetime.utcnow)


class User(Base):
    """Local account. Account administration lives elsewhere; only the id matters here."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(100), nullable=False, unique=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class UserStashInstance(Base):
    """Explicit per-user instance selection (no rows = all enabled instances)."""

    __tablename__ = "user_stash_instances"

    user_id = Column(Integer, primary_key=True)
    instance_id = Column(String(64), primary_key=True)


# ============ Catalog Entities ============

class Scene(Base):
    """Scene mirrored from an upstream instance."""

    __tablename__ = "scenes"

    id = Column(String(64), primary_key=True)
    instance_id = Column(String(64), primary_key=True, default="")
    title = Column(String(500))
    code = Column(String(100))
    details = Column(Text)
    director = Column(String(200))
    date = Column(String(10))  # YYYY-MM-DD as supplied upstream
    organized = Column(Boolean, default=False)
    rating100 = Column(Integer)  # Upstream rating (instance owner's, not ours)
    o_counter = Column(Integer, default=0)
    play_count = Column(Integer, default=0)
    studio_id = Column(String(64))

    # Primary file
    file_path = Column(Text)
    duration = Column(Float)
    file_size = Column(BigInteger)
    bit_rate = Column(Integer)
    frame_rate = Column(Float)
    width = Column(Integer)
    height = Column(Integer)
    video_codec = Column(String(50))
    audio_codec = Column(String(50))

    # Upstream media paths (rewritten to proxy URLs on the way out)
    path_screenshot = Column(Text)
    path_preview = Column(Text)
    path_stream = Column(Text)
    path_sprite = Column(Text)
    path_vtt = Column(Text)
    path_chapters_vtt = Column(Text)
    path_caption = Column(Text)
    streams = Column(JSON)  # [{url, mime_type, label}]
    urls = Column(JSON)

    # Denormalized union of performer/studio/group tags minus direct tags
    inherited_tag_ids = Column(JSON)

    stash_created_at = Column(DateTime)
    stash_updated_at = Column(DateTime)
    deleted_at = Column(DateTime)

    __table_args__ = (
        Index("idx_scenes_instance", "instance_id"),
        Index("idx_scenes_studio", "studio_id", "instance_id"),
        Index("idx_scenes_created", "stash_created_at"),
        Index("idx_scenes_deleted", "deleted_at"),
    )


class Performer(Base):
    """Performer mirrored from an upstream instance."""

    __tablename__ = "performers"

    id = Column(String(64), primary_key=True)
    instance_id = Column(String(64), primary_key=True, default="")
    name = Column(String(300), nullable=False)
    disambiguation = Column(String(300))
    aliases = Column(JSON)
    gender = Column(String(50))
    birthdate = Column(String(10))
    country = Column(String(100))
    ethnicity = Column(String(100))
    eye_color = Column(String(50))
    height_cm = Column(Integer)
    measurements = Column(String(100))
    career_length = Column(String(100))
    details = Column(Text)
    rating100 = Column(Integer)
    favorite = Column(Boolean, default=False)  # Upstream favorite flag
    o_counter = Column(Integer, default=0)
    scene_count = Column(Integer, default=0)
    image_count = Column(Integer, default=0)
    gallery_count = Column(Integer, default=0)
    group_count = Column(Integer, default=0)
    image_path = Column(Text)
    stash_ids = Column(JSON)  # [{endpoint, stash_id}] - external registry ids
    stash_created_at = Column(DateTime)
    stash_updated_at = Column(DateTime)
    deleted_at = Column(DateTime)

    __table_args__ = (
        Index("idx_performers_instance", "instance_id"),
        Index("idx_performers_name", "name"),
    )


class Studio(Base):
    """Studio mirrored from an upstream instance."""

    __tablename__ = "studios"

    id = Column(String(64), primary_key=True)
    instance_id = Column(String(64), primary_key=True, default="")
    name = Column(String(300), nullable=False)
    parent_id = Column(String(64))  # Parent studio on the same instance
    url = Column(String(500))
    details = Column(Text)
    aliases = Column(JSON)
    rating100 = Column(Integer)
    favorite = Column(Boolean, default=False)
    scene_count = Column(Integer, default=0)
    image_count = Column(Integer, default=0)
    gallery_count = Column(Integer, default=0)
    image_path = Column(Text)
    stash_ids = Column(JSON)
    stash_created_at = Column(DateTime)
    stash_updated_at = Column(DateTime)
    deleted_at = Column(DateTime)

    __table_args__ = (
        Index("idx_studios_instance", "instance_id"),
        Index("idx_studios_parent", "parent_id", "instance_id"),
    )


class Tag(Base):
    """Tag mirrored from an upstream instance (tags can have multiple parents)."""

    __tablename__ = "tags"

    id = Column(String(64), primary_key=True)
    instance_id = Column(String(64), primary_key=True, default="")
    name = Column(String(300), nullable=False)
    description = Column(Text)
    aliases = Column(JSON)
    parent_ids = Column(JSON)  # Parent tag ids on the same instance
    favorite = Column(Boolean, default=False)
    rating100 = Column(Integer)
    scene_count = Column(Integer, default=0)
    performer_count = Column(Integer, default=0)
    image_count = Column(Integer, default=0)
    gallery_count = Column(Integer, default=0)
    image_path = Column(Text)
    stash_ids = Column(JSON)
    stash_created_at = Column(DateTime)
    stash_updated_at = Column(DateTime)
    deleted_at = Column(DateTime)

    __table_args__ = (
        Index("idx_tags_instance", "instance_id"),
        Index("idx_tags_name", "name"),
    )


class Gallery(Base):
    """Gallery mirrored from an upstream instance."""

    __tablename__ = "galleries"

    id = Column(String(64), primary_key=True)
    instance_id = Column(String(64), primary_key=True, default="")
    title = Column(String(500))
    date = Column(String(10))
    details = Column(Text)
    photographer = Column(String(200))
    rating100 = Column(Integer)
    studio_id = Column(String(64))
    image_count = Column(Integer, default=0)
    cover_path = Column(Text)
    stash_created_at = Column(DateTime)
    stash_updated_at = Column(DateTime)
    deleted_at = Column(DateTime)

    __table_args__ = (
        Index("idx_galleries_instance", "instance_id"),
    )


class Group(Base):
    """Group (movie) mirrored from an upstream instance."""

    __tablename__ = "groups"

    id = Column(String(64), primary_key=True)
    instance_id = Column(String(64), primary_key=True, default="")
    name = Column(String(500), nullable=False)
    aliases = Column(String(500))
    date = Column(String(10))
    duration = Column(Integer)  # seconds
    director = Column(String(200))
    synopsis = Column(Text)
    rating100 = Column(Integer)
    studio_id = Column(String(64))
    scene_count = Column(Integer, default=0)
    front_image_path = Column(Text)
    back_image_path = Column(Text)
    stash_created_at = Column(DateTime)
    stash_updated_at = Column(DateTime)
    deleted_at = Column(DateTime)

    __table_args__ = (
        Index("idx_groups_instance", "instance_id"),
    )


class Image(Base):
    """Image mirrored from an upstream instance."""

    __tablename__ = "images"

    id = Column(String(64), primary_key=True)
    instance_id = Column(String(64), primary_key=True, default="")
    title = Column(String(500))
    date = Column(String(10))
    details = Column(Text)
    photographer = Column(String(200))
    rating100 = Column(Integer)
    o_counter = Column(Integer, default=0)
    studio_id = Column(String(64))
    width = Column(Integer)
    height = Column(Integer)
    file_path = Column(Text)
    file_size = Column(BigInteger)
    path_thumbnail = Column(Text)
    path_preview = Column(Text)
    path_image = Column(Text)
    stash_created_at = Column(DateTime)
    stash_updated_at = Column(DateTime)
    deleted_at = Column(DateTime)

    __table_args__ = (
        Index("idx_images_instance", "instance_id"),
    )


class Clip(Base):
    """Clip (scene marker) mirrored from an upstream instance. Lives on its scene's instance."""

    __tablename__ = "clips"

    id = Column(String(64), primary_key=True)
    instance_id = Column(String(64), primary_key=True, default="")
    scene_id = Column(String(64), nullable=False)
    title = Column(String(500))
    seconds = Column(Float, nullable=False, default=0)
    end_seconds = Column(Float)
    primary_tag_id = Column(String(64))
    path_stream = Column(Text)
    path_preview = Column(Text)
    path_screenshot = Column(Text)
    stash_created_at = Column(DateTime)
    stash_updated_at = Column(DateTime)
    deleted_at = Column(DateTime)

    __table_args__ = (
        Index("idx_clips_scene", "scene_id", "instance_id"),
    )


# ============ Junction Tables ============
# Each junction carries both composite keys. The primary key covers all four
# columns so the same pair cannot be linked twice.

class ScenePerformer(Base):
    __tablename__ = "scene_performers"

    scene_id = Column(String(64), primary_key=True)
    scene_instance_id = Column(String(64), primary_key=True, default="")
    performer_id = Column(String(64), primary_key=True)
    performer_instance_id = Column(String(64), primary_key=True, default="")

    __table_args__ = (
        Index("idx_scene_performers_performer", "performer_id", "performer_instance_id"),
    )


class SceneTag(Base):
    __tablename__ = "scene_tags"

    scene_id = Column(String(64), primary_key=True)
    scene_instance_id = Column(String(64), primary_key=True, default="")
    tag_id = Column(String(64), primary_key=True)
    tag_instance_id = Column(String(64), primary_key=True, default="")

    __table_args__ = (
        Index("idx_scene_tags_tag", "tag_id", "tag_instance_id"),
    )


class SceneInheritedTag(Base):
    """Relational copy of Scene.inherited_tag_ids, rebuilt after every sync."""

    __tablename__ = "scene_inherited_tags"

    scene_id = Column(String(64), primary_key=True)
    scene_instance_id = Column(String(64), primary_key=True, default="")
    tag_id = Column(String(64), primary_key=True)
    tag_instance_id = Column(String(64), primary_key=True, default="")

    __table_args__ = (
        Index("idx_scene_inherited_tags_tag", "tag_id", "tag_instance_id"),
    )


class SceneGroup(Base):
    __tablename__ = "scene_groups"

    scene_id = Column(String(64), primary_key=True)
    scene_instance_id = Column(String(64), primary_key=True, default="")
    group_id = Column(String(64), primary_key=True)
    group_instance_id = Column(String(64), primary_key=True, default="")
    scene_index = Column(Integer)

    __table_args__ = (
        Index("idx_scene_groups_group", "group_id", "group_instance_id"),
    )


class SceneGallery(Base):
    __tablename__ = "scene_galleries"

    scene_id = Column(String(64), primary_key=True)
    scene_instance_id = Column(String(64), primary_key=True, default="")
    gallery_id = Column(String(64), primary_key=True)
    gallery_instance_id = Column(String(64), primary_key=True, default="")

    __table_args__ = (
        Index("idx_scene_galleries_gallery", "gallery_id", "gallery_instance_id"),
    )


class PerformerTag(Base):
    __tablename__ = "performer_tags"

    performer_id = Column(String(64), primary_key=True)
    performer_instance_id = Column(String(64), primary_key=True, default="")
    tag_id = Column(String(64), primary_key=True)
    tag_instance_id = Column(String(64), primary_key=True, default="")

    __table_args__ = (
        Index("idx_performer_tags_tag", "tag_id", "tag_instance_id"),
    )


class StudioTag(Base):
    __tablename__ = "studio_tags"

    studio_id = Column(String(64), primary_key=True)
    studio_instance_id = Column(String(64), primary_key=True, default="")
    tag_id = Column(String(64), primary_key=True)
    tag_instance_id = Column(String(64), primary_key=True, default="")

    __table_args__ = (
        Index("idx_studio_tags_tag", "tag_id", "tag_instance_id"),
    )


class GroupTag(Base):
    __tablename__ = "group_tags"

    group_id = Column(String(64), primary_key=True)
    group_instance_id = Column(String(64), primary_key=True, default="")
    tag_id = Column(String(64), primary_key=True)
    tag_instance_id = Column(String(64), primary_key=True, default="")

    __table_args__ = (
        Index("idx_group_tags_tag", "tag_id", "tag_instance_id"),
    )


class TagParent(Base):
    """Relational copy of Tag.parent_ids (child -> parent, same instance)."""

    __tablename__ = "tag_parents"

    tag_id = Column(String(64), primary_key=True)
    tag_instance_id = Column(String(64), primary_key=True, default="")
    parent_id = Column(String(64), primary_key=True)
    parent_instance_id = Column(String(64), primary_key=True, default="")

    __table_args__ = (
        Index("idx_tag_parents_parent", "parent_id", "parent_instance_id"),
    )


class GalleryPerformer(Base):
    __tablename__ = "gallery_performers"

    gallery_id = Column(String(64), primary_key=True)
    gallery_instance_id = Column(String(64), primary_key=True, default="")
    performer_id = Column(String(64), primary_key=True)
    performer_instance_id = Column(String(64), primary_key=True, default="")


class GalleryTag(Base):
    __tablename__ = "gallery_tags"

    gallery_id = Column(String(64), primary_key=True)
    gallery_instance_id = Column(String(64), primary_key=True, default="")
    tag_id = Column(String(64), primary_key=True)
    tag_instance_id = Column(String(64), primary_key=True, default="")


class ImagePerformer(Base):
    __tablename__ = "image_performers"

    image_id = Column(String(64), primary_key=True)
    image_instance_id = Column(String(64), primary_key=True, default="")
    performer_id = Column(String(64), primary_key=True)
    performer_instance_id = Column(String(64), primary_key=True, default="")

    __table_args__ = (
        Index("idx_image_performers_performer", "performer_id", "performer_instance_id"),
    )


class ImageTag(Base):
    __tablename__ = "image_tags"

    image_id = Column(String(64), primary_key=True)
    image_instance_id = Column(String(64), primary_key=True, default="")
    tag_id = Column(String(64), primary_key=True)
    tag_instance_id = Column(String(64), primary_key=True, default="")


class ImageGallery(Base):
    __tablename__ = "image_galleries"

    image_id = Column(String(64), primary_key=True)
    image_instance_id = Column(String(64), primary_key=True, default="")
    gallery_id = Column(String(64), primary_key=True)
    gallery_instance_id = Column(String(64), primary_key=True, default="")

    __table_args__ = (
        Index("idx_image_galleries_gallery", "gallery_id", "gallery_instance_id"),
    )


class ClipTag(Base):
    __tablename__ = "clip_tags"

    clip_id = Column(String(64), primary_key=True)
    clip_instance_id = Column(String(64), primary_key=True, default="")
    tag_id = Column(String(64), primary_key=True)
    tag_instance_id = Column(String(64), primary_key=True, default="")


# ============ User Overlay ============

class UserEntityData(Base):
    """Per-user rating, favorite flag and engagement counters for one entity.

    Logically a LEFT JOIN onto the catalog row: no row means "no opinion".
    """

    __tablename__ = "user_entity_data"

    user_id = Column(Integer, primary_key=True)
    entity_type = Column(String(20), primary_key=True)
    entity_id = Column(String(64), primary_key=True)
    instance_id = Column(String(64), primary_key=True, default="")
    rating = Column(Integer)  # 0-100
    favorite = Column(Boolean, default=False, nullable=False)
    play_count = Column(Integer, default=0, nullable=False)
    o_count = Column(Integer, default=0, nullable=False)
    view_count = Column(Integer, default=0, nullable=False)
    play_duration = Column(Float, default=0, nullable=False)  # seconds
    resume_time = Column(Float, default=0, nullable=False)
    last_played_at = Column(DateTime)
    play_history = Column(JSON)  # ISO timestamps
    o_history = Column(JSON)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_user_entity_data_lookup", "user_id", "entity_type", "favorite"),
    )


class UserHiddenEntity(Base):
    """Entity a user chose to hide. instance_id "" hides it on every instance."""

    __tablename__ = "user_hidden_entities"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False)
    entity_type = Column(String(20), nullable=False)
    entity_id = Column(String(64), nullable=False)
    instance_id = Column(String(64), nullable=False, default="")
    hidden_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "entity_type", "entity_id", "instance_id", name="uq_user_hidden_entity"),
        Index("idx_user_hidden_user", "user_id", "entity_type"),
    )


class UserContentRestriction(Base):
    """Admin-imposed content restriction.

    - mode='EXCLUDE': the listed entities are excluded
    - mode='INCLUDE': everything NOT listed is excluded
    entity_type is plural ('tags', 'studios', 'groups', 'galleries').
    """

    __tablename__ = "user_content_restrictions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False)
    entity_type = Column(String(20), nullable=False)
    mode = Column(String(10), nullable=False)
    entity_ids = Column(JSON, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_user_restrictions_user", "user_id"),
    )


class UserExcludedEntity(Base):
    """Precomputed suppression row.

    instance_id "" is a global exclusion; any other value scopes the exclusion
    to that instance. reason is one of 'restricted', 'hidden', 'cascade', 'empty'.
    """

    __tablename__ = "user_excluded_entities"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False)
    entity_type = Column(String(20), nullable=False)
    entity_id = Column(String(64), nullable=False)
    instance_id = Column(String(64), nullable=False, default="")
    reason = Column(String(20), nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "entity_type", "entity_id", "instance_id", name="uq_user_excluded_entity"),
        Index("idx_user_excluded_lookup", "user_id", "entity_type", "entity_id"),
    )


class UserEntityStats(Base):
    """Visible entity counts per user, refreshed with every exclusion recompute."""

    __tablename__ = "user_entity_stats"

    user_id = Column(Integer, primary_key=True)
    entity_type = Column(String(20), primary_key=True)
    instance_id = Column(String(64), primary_key=True, default="")
    visible_count = Column(Integer, default=0, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class UserEntityRanking(Base):
    """Precomputed engagement ranking of an entity for one user."""

    __tablename__ = "user_entity_rankings"

    user_id = Column(Integer, primary_key=True)
    entity_type = Column(String(20), primary_key=True)
    entity_id = Column(String(64), primary_key=True)
    instance_id = Column(String(64), primary_key=True, default="")
    play_count = Column(Integer, default=0, nullable=False)
    o_count = Column(Integer, default=0, nullable=False)
    play_duration = Column(Float, default=0, nullable=False)
    engagement_score = Column(Float, default=0, nullable=False)
    library_presence = Column(Integer, default=1, nullable=False)
    engagement_rate = Column(Float, default=0, nullable=False)
    percentile_rank = Column(Integer, default=0, nullable=False)  # 100 = top
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_user_rankings_percentile", "user_id", "entity_type", percentile_rank.desc()),
    )


# ============ System ============

class SystemMetadata(Base):
    """Key/value store for system-wide markers (last refresh, cache version)."""

    __tablename__ = "system_metadata"

    key = Column(String(100), primary_key=True)
    value = Column(Text)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
