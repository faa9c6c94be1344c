"""Initial catalog mirror and user overlay schema.

Revision ID: 001_initial_catalog_schema
Revises:
"""

from alembic import op
import sqlalchemy as sa

revision = "001_initial_catalog_schema"
down_revision = None
branch_labels = None
depends_on = None


# (table, left prefix, right prefix, index on right side, extra columns)
JUNCTIONS = [
    ("scene_performers", "scene", "performer", "idx_scene_performers_performer", []),
    ("scene_tags", "scene", "tag", "idx_scene_tags_tag", []),
    ("scene_inherited_tags", "scene", "tag", "idx_scene_inherited_tags_tag", []),
    ("scene_groups", "scene", "group", "idx_scene_groups_group", [("scene_index", sa.Integer)]),
    ("scene_galleries", "scene", "gallery", "idx_scene_galleries_gallery", []),
    ("performer_tags", "performer", "tag", "idx_performer_tags_tag", []),
    ("studio_tags", "studio", "tag", "idx_studio_tags_tag", []),
    ("group_tags", "group", "tag", "idx_group_tags_tag", []),
    ("tag_parents", "tag", "parent", "idx_tag_parents_parent", []),
    ("gallery_performers", "gallery", "performer", None, []),
    ("gallery_tags", "gallery", "tag", None, []),
    ("image_performers", "image", "performer", "idx_image_performers_performer", []),
    ("image_tags", "image", "tag", None, []),
    ("image_galleries", "image", "gallery", "idx_image_galleries_gallery", []),
    ("clip_tags", "clip", "tag", None, []),
]


def _key_columns():
    return [
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("instance_id", sa.String(64), primary_key=True, server_default=""),
    ]


def _sync_columns():
    return [
        sa.Column("stash_created_at", sa.DateTime),
        sa.Column("stash_updated_at", sa.DateTime),
        sa.Column("deleted_at", sa.DateTime),
    ]


def upgrade() -> None:
    # ============ Instances and users ============
    op.create_table(
        "stash_instances",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("url", sa.String(500), nullable=False),
        sa.Column("api_key", sa.String(500)),
        sa.Column("enabled", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("priority", sa.Integer, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
    )
    op.create_table(
        "users",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("username", sa.String(100), nullable=False, unique=True),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
    )
    op.create_table(
        "user_stash_instances",
        sa.Column("user_id", sa.Integer, primary_key=True),
        sa.Column("instance_id", sa.String(64), primary_key=True),
    )

    # ============ Catalog entities ============
    op.create_table(
        "scenes",
        *_key_columns(),
        sa.Column("title", sa.String(500)),
        sa.Column("code", sa.String(100)),
        sa.Column("details", sa.Text),
        sa.Column("director", sa.String(200)),
        sa.Column("date", sa.String(10)),
        sa.Column("organized", sa.Boolean, server_default=sa.false()),
        sa.Column("rating100", sa.Integer),
        sa.Column("o_counter", sa.Integer, server_default="0"),
        sa.Column("play_count", sa.Integer, server_default="0"),
        sa.Column("studio_id", sa.String(64)),
        sa.Column("file_path", sa.Text),
        sa.Column("duration", sa.Float),
        sa.Column("file_size", sa.BigInteger),
        sa.Column("bit_rate", sa.Integer),
        sa.Column("frame_rate", sa.Float),
        sa.Column("width", sa.Integer),
        sa.Column("height", sa.Integer),
        sa.Column("video_codec", sa.String(50)),
        sa.Column("audio_codec", sa.String(50)),
        sa.Column("path_screenshot", sa.Text),
        sa.Column("path_preview", sa.Text),
        sa.Column("path_stream", sa.Text),
        sa.Column("path_sprite", sa.Text),
        sa.Column("path_vtt", sa.Text),
        sa.Column("path_chapters_vtt", sa.Text),
        sa.Column("path_caption", sa.Text),
        sa.Column("streams", sa.JSON),
        sa.Column("urls", sa.JSON),
        sa.Column("inherited_tag_ids", sa.JSON),
        *_sync_columns(),
    )
    op.create_index("idx_scenes_instance", "scenes", ["instance_id"])
    op.create_index("idx_scenes_studio", "scenes", ["studio_id", "instance_id"])
    op.create_index("idx_scenes_created", "scenes", ["stash_created_at"])
    op.create_index("idx_scenes_deleted", "scenes", ["deleted_at"])

    op.create_table(
        "performers",
        *_key_columns(),
        sa.Column("name", sa.String(300), nullable=False),
        sa.Column("disambiguation", sa.String(300)),
        sa.Column("aliases", sa.JSON),
        sa.Column("gender", sa.String(50)),
        sa.Column("birthdate", sa.String(10)),
        sa.Column("country", sa.String(100)),
        sa.Column("ethnicity", sa.String(100)),
        sa.Column("eye_color", sa.String(50)),
        sa.Column("height_cm", sa.Integer),
        sa.Column("measurements", sa.String(100)),
        sa.Column("career_length", sa.String(100)),
        sa.Column("details", sa.Text),
        sa.Column("rating100", sa.Integer),
        sa.Column("favorite", sa.Boolean, server_default=sa.false()),
        sa.Column("o_counter", sa.Integer, server_default="0"),
        sa.Column("scene_count", sa.Integer, server_default="0"),
        sa.Column("image_count", sa.Integer, server_default="0"),
        sa.Column("gallery_count", sa.Integer, server_default="0"),
        sa.Column("group_count", sa.Integer, server_default="0"),
        sa.Column("image_path", sa.Text),
        sa.Column("stash_ids", sa.JSON),
        *_sync_columns(),
    )
    op.create_index("idx_performers_instance", "performers", ["instance_id"])
    op.create_index("idx_performers_name", "performers", ["name"])

    op.create_table(
        "studios",
        *_key_columns(),
        sa.Column("name", sa.String(300), nullable=False),
        sa.Column("parent_id", sa.String(64)),
        sa.Column("url", sa.String(500)),
        sa.Column("details", sa.Text),
        sa.Column("aliases", sa.JSON),
        sa.Column("rating100", sa.Integer),
        sa.Column("favorite", sa.Boolean, server_default=sa.false()),
        sa.Column("scene_count", sa.Integer, server_default="0"),
        sa.Column("image_count", sa.Integer, server_default="0"),
        sa.Column("gallery_count", sa.Integer, server_default="0"),
        sa.Column("image_path", sa.Text),
        sa.Column("stash_ids", sa.JSON),
        *_sync_columns(),
    )
    op.create_index("idx_studios_instance", "studios", ["instance_id"])
    op.create_index("idx_studios_parent", "studios", ["parent_id", "instance_id"])

    op.create_table(
        "tags",
        *_key_columns(),
        sa.Column("name", sa.String(300), nullable=False),
        sa.Column("description", sa.Text),
        sa.Column("aliases", sa.JSON),
        sa.Column("parent_ids", sa.JSON),
        sa.Column("favorite", sa.Boolean, server_default=sa.false()),
        sa.Column("rating100", sa.Integer),
        sa.Column("scene_count", sa.Integer, server_default="0"),
        sa.Column("performer_count", sa.Integer, server_default="0"),
        sa.Column("image_count", sa.Integer, server_default="0"),
        sa.Column("gallery_count", sa.Integer, server_default="0"),
        sa.Column("image_path", sa.Text),
        sa.Column("stash_ids", sa.JSON),
        *_sync_columns(),
    )
    op.create_index("idx_tags_instance", "tags", ["instance_id"])
    op.create_index("idx_tags_name", "tags", ["name"])

    op.create_table(
        "galleries",
        *_key_columns(),
        sa.Column("title", sa.String(500)),
        sa.Column("date", sa.String(10)),
        sa.Column("details", sa.Text),
        sa.Column("photographer", sa.String(200)),
        sa.Column("rating100", sa.Integer),
        sa.Column("studio_id", sa.String(64)),
        sa.Column("image_count", sa.Integer, server_default="0"),
        sa.Column("cover_path", sa.Text),
        *_sync_columns(),
    )
    op.create_index("idx_galleries_instance", "galleries", ["instance_id"])

    op.create_table(
        "groups",
        *_key_columns(),
        sa.Column("name", sa.String(500), nullable=False),
        sa.Column("aliases", sa.String(500)),
        sa.Column("date", sa.String(10)),
        sa.Column("duration", sa.Integer),
        sa.Column("director", sa.String(200)),
        sa.Column("synopsis", sa.Text),
        sa.Column("rating100", sa.Integer),
        sa.Column("studio_id", sa.String(64)),
        sa.Column("scene_count", sa.Integer, server_default="0"),
        sa.Column("front_image_path", sa.Text),
        sa.Column("back_image_path", sa.Text),
        *_sync_columns(),
    )
    op.create_index("idx_groups_instance", "groups", ["instance_id"])

    op.create_table(
        "images",
        *_key_columns(),
        sa.Column("title", sa.String(500)),
        sa.Column("date", sa.String(10)),
        sa.Column("details", sa.Text),
        sa.Column("photographer", sa.String(200)),
        sa.Column("rating100", sa.Integer),
        sa.Column("o_counter", sa.Integer, server_default="0"),
        sa.Column("studio_id", sa.String(64)),
        sa.Column("width", sa.Integer),
        sa.Column("height", sa.Integer),
        sa.Column("file_path", sa.Text),
        sa.Column("file_size", sa.BigInteger),
        sa.Column("path_thumbnail", sa.Text),
        sa.Column("path_preview", sa.Text),
        sa.Column("path_image", sa.Text),
        *_sync_columns(),
    )
    op.create_index("idx_images_instance", "images", ["instance_id"])

    op.create_table(
        "clips",
        *_key_columns(),
        sa.Column("scene_id", sa.String(64), nullable=False),
        sa.Column("title", sa.String(500)),
        sa.Column("seconds", sa.Float, nullable=False, server_default="0"),
        sa.Column("end_seconds", sa.Float),
        sa.Column("primary_tag_id", sa.String(64)),
        sa.Column("path_stream", sa.Text),
        sa.Column("path_preview", sa.Text),
        sa.Column("path_screenshot", sa.Text),
        *_sync_columns(),
    )
    op.create_index("idx_clips_scene", "clips", ["scene_id", "instance_id"])

    # ============ Junctions ============
    for table, left, right, index_name, extra in JUNCTIONS:
        op.create_table(
            table,
            sa.Column(f"{left}_id", sa.String(64), primary_key=True),
            sa.Column(f"{left}_instance_id", sa.String(64), primary_key=True, server_default=""),
            sa.Column(f"{right}_id", sa.String(64), primary_key=True),
            sa.Column(f"{right}_instance_id", sa.String(64), primary_key=True, server_default=""),
            *[sa.Column(name, type_) for name, type_ in extra],
        )
        if index_name:
            op.create_index(index_name, table, [f"{right}_id", f"{right}_instance_id"])

    # ============ User overlay ============
    op.create_table(
        "user_entity_data",
        sa.Column("user_id", sa.Integer, primary_key=True),
        sa.Column("entity_type", sa.String(20), primary_key=True),
        sa.Column("entity_id", sa.String(64), primary_key=True),
        sa.Column("instance_id", sa.String(64), primary_key=True, server_default=""),
        sa.Column("rating", sa.Integer),
        sa.Column("favorite", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("play_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("o_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("view_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("play_duration", sa.Float, nullable=False, server_default="0"),
        sa.Column("resume_time", sa.Float, nullable=False, server_default="0"),
        sa.Column("last_played_at", sa.DateTime),
        sa.Column("play_history", sa.JSON),
        sa.Column("o_history", sa.JSON),
        sa.Column("updated_at", sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index("idx_user_entity_data_lookup", "user_entity_data", ["user_id", "entity_type", "favorite"])

    op.create_table(
        "user_hidden_entities",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer, nullable=False),
        sa.Column("entity_type", sa.String(20), nullable=False),
        sa.Column("entity_id", sa.String(64), nullable=False),
        sa.Column("instance_id", sa.String(64), nullable=False, server_default=""),
        sa.Column("hidden_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("user_id", "entity_type", "entity_id", "instance_id", name="uq_user_hidden_entity"),
    )
    op.create_index("idx_user_hidden_user", "user_hidden_entities", ["user_id", "entity_type"])

    op.create_table(
        "user_content_restrictions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer, nullable=False),
        sa.Column("entity_type", sa.String(20), nullable=False),
        sa.Column("mode", sa.String(10), nullable=False),
        sa.Column("entity_ids", sa.JSON, nullable=False),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index("idx_user_restrictions_user", "user_content_restrictions", ["user_id"])

    op.create_table(
        "user_excluded_entities",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer, nullable=False),
        sa.Column("entity_type", sa.String(20), nullable=False),
        sa.Column("entity_id", sa.String(64), nullable=False),
        sa.Column("instance_id", sa.String(64), nullable=False, server_default=""),
        sa.Column("reason", sa.String(20), nullable=False),
        sa.UniqueConstraint("user_id", "entity_type", "entity_id", "instance_id", name="uq_user_excluded_entity"),
    )
    op.create_index("idx_user_excluded_lookup", "user_excluded_entities", ["user_id", "entity_type", "entity_id"])

    op.create_table(
        "user_entity_stats",
        sa.Column("user_id", sa.Integer, primary_key=True),
        sa.Column("entity_type", sa.String(20), primary_key=True),
        sa.Column("instance_id", sa.String(64), primary_key=True, server_default=""),
        sa.Column("visible_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime, server_default=sa.func.now()),
    )

    op.create_table(
        "user_entity_rankings",
        sa.Column("user_id", sa.Integer, primary_key=True),
        sa.Column("entity_type", sa.String(20), primary_key=True),
        sa.Column("entity_id", sa.String(64), primary_key=True),
        sa.Column("instance_id", sa.String(64), primary_key=True, server_default=""),
        sa.Column("play_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("o_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("play_duration", sa.Float, nullable=False, server_default="0"),
        sa.Column("engagement_score", sa.Float, nullable=False, server_default="0"),
        sa.Column("library_presence", sa.Integer, nullable=False, server_default="1"),
        sa.Column("engagement_rate", sa.Float, nullable=False, server_default="0"),
        sa.Column("percentile_rank", sa.Integer, nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index(
        "idx_user_rankings_percentile",
        "user_entity_rankings",
        ["user_id", "entity_type", sa.text("percentile_rank DESC")],
    )

    # ============ System ============
    op.create_table(
        "system_metadata",
        sa.Column("key", sa.String(100), primary_key=True),
        sa.Column("value", sa.Text),
        sa.Column("updated_at", sa.DateTime, server_default=sa.func.now()),
    )


def downgrade() -> None:
    for table in (
        "system_metadata",
        "user_entity_rankings",
        "user_entity_stats",
        "user_excluded_entities",
        "user_content_restrictions",
        "user_hidden_entities",
        "user_entity_data",
    ):
        op.drop_table(table)
    for table, *_ in reversed(JUNCTIONS):
        op.drop_table(table)
    for table in ("clips", "images", "groups", "galleries", "tags", "studios", "performers", "scenes"):
        op.drop_table(table)
    for table in ("user_stash_instances", "users", "stash_instances"):
        op.drop_table(table)
