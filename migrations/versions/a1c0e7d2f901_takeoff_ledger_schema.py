"""takeoff_ledger_schema

Initial schema for the takeoff import & progress ledger: projects, drawings,
metadata registries, progress templates, components, the milestone event
ledger, the needs-review queue, operators and the audit log.

Revision ID: a1c0e7d2f901
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "a1c0e7d2f901"
down_revision = None
branch_labels = None
depends_on = None


def _registry_table(name):
    op.create_table(
        name,
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("project_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        *([sa.Column("target_date", sa.Date(), nullable=True)] if name == "test_packages" else []),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("project_id", "name", name=f"uq_{name}_project_name"),
    )
    op.create_index(f"ix_{name}_project_id", name, ["project_id"])


def upgrade():
    bind = op.get_bind()
    existing_tables = set(sa_inspect(bind).get_table_names())

    if "projects" not in existing_tables:
        op.create_table(
            "projects",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("code", sa.String(length=50), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("code"),
        )

    if "drawings" not in existing_tables:
        op.create_table(
            "drawings",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("drawing_no_raw", sa.String(length=120), nullable=False,
                      comment="Drawing number as first seen in a takeoff"),
            sa.Column("drawing_no_norm", sa.String(length=120), nullable=False,
                      comment="normalize_identifier(drawing_no_raw)"),
            sa.Column("title", sa.String(length=255), nullable=True),
            sa.Column("rev", sa.String(length=20), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("retired_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("retire_reason", sa.String(length=200), nullable=True),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_drawings_project", "drawings", ["project_id"])
        op.create_index("ix_drawings_retired_at", "drawings", ["retired_at"])
        # Active drawing numbers are unique per project; retired ones may repeat
        op.create_index(
            "uq_drawings_project_norm_active",
            "drawings",
            ["project_id", "drawing_no_norm"],
            unique=True,
            postgresql_where=sa.text("retired_at IS NULL"),
            sqlite_where=sa.text("retired_at IS NULL"),
        )

    for name in ("areas", "systems", "test_packages"):
        if name not in existing_tables:
            _registry_table(name)

    if "progress_templates" not in existing_tables:
        op.create_table(
            "progress_templates",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("component_type", sa.String(length=30), nullable=False),
            sa.Column("version", sa.Integer(), nullable=False),
            sa.Column("workflow_type", sa.String(length=20), nullable=False,
                      comment="discrete | quantity | hybrid"),
            sa.Column("milestones_config", sa.JSON(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.CheckConstraint("workflow_type IN ('discrete','quantity','hybrid')",
                               name="ck_progress_template_workflow"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("component_type", "version", name="uq_progress_templates_type_version"),
        )
        op.create_index("ix_progress_templates_component_type", "progress_templates", ["component_type"])

    if "components" not in existing_tables:
        op.create_table(
            "components",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("drawing_id", sa.Integer(), nullable=False),
            sa.Column("component_type", sa.String(length=30), nullable=False),
            sa.Column("progress_template_id", sa.Integer(), nullable=False,
                      comment="Template version fixed at creation time"),
            sa.Column("identity_key", sa.JSON(), nullable=False),
            sa.Column("identity_token", sa.String(length=400), nullable=False),
            sa.Column("group_token", sa.String(length=360), nullable=True,
                      comment="DRAWING|CODE|SIZE for grouped types; NULL for exact identity"),
            sa.Column("seq", sa.Integer(), nullable=True),
            sa.Column("attributes", sa.JSON(), nullable=False),
            sa.Column("area_id", sa.Integer(), nullable=True),
            sa.Column("system_id", sa.Integer(), nullable=True),
            sa.Column("test_package_id", sa.Integer(), nullable=True),
            sa.Column("current_milestones", sa.JSON(), nullable=False),
            sa.Column("percent_complete", sa.Numeric(precision=5, scale=2), nullable=False),
            sa.Column("created_by", sa.String(length=64), nullable=True),
            sa.Column("last_updated_by", sa.String(length=64), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("last_updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("retired_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("retire_reason", sa.String(length=200), nullable=True),
            sa.CheckConstraint("percent_complete >= 0 AND percent_complete <= 100",
                               name="ck_components_percent_range"),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["drawing_id"], ["drawings.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["progress_template_id"], ["progress_templates.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["area_id"], ["areas.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["system_id"], ["systems.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["test_package_id"], ["test_packages.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_components_group", "components", ["project_id", "group_token", "seq"])
        op.create_index("idx_components_drawing", "components", ["drawing_id"])
        op.create_index("idx_components_project_type", "components", ["project_id", "component_type"])
        op.create_index("ix_components_retired_at", "components", ["retired_at"])
        op.create_index(
            "uq_components_identity_active",
            "components",
            ["project_id", "component_type", "identity_token"],
            unique=True,
            postgresql_where=sa.text("retired_at IS NULL"),
            sqlite_where=sa.text("retired_at IS NULL"),
        )

    if "operators" not in existing_tables:
        op.create_table(
            "operators",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=120), nullable=False),
            sa.Column("stencil", sa.String(length=20), nullable=False),
            sa.Column("stencil_norm", sa.String(length=20), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False),
            sa.Column("verified_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("verified_by", sa.String(length=64), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.CheckConstraint("status IN ('unverified','verified')", name="ck_operator_status"),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("project_id", "stencil_norm", name="uq_operators_project_stencil"),
        )
        op.create_index("ix_operators_project_id", "operators", ["project_id"])

    if "milestone_events" not in existing_tables:
        op.create_table(
            "milestone_events",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("component_id", sa.Integer(), nullable=False),
            sa.Column("milestone_name", sa.String(length=60), nullable=False),
            sa.Column("action", sa.String(length=20), nullable=False,
                      comment="complete | rollback | update"),
            sa.Column("value", sa.JSON(), nullable=True,
                      comment="true/false for discrete, 0-100 for partial"),
            sa.Column("previous_value", sa.JSON(), nullable=True),
            sa.Column("actor_id", sa.String(length=64), nullable=True),
            sa.Column("operator_id", sa.Integer(), nullable=True,
                      comment="Operator credited with a completion that requires one"),
            sa.Column("metadata", sa.JSON(), nullable=False,
                      comment="Free-form context: reason, operator_id, source, ..."),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.CheckConstraint("action IN ('complete','rollback','update')",
                               name="ck_milestone_event_action"),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["component_id"], ["components.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["operator_id"], ["operators.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_milestone_events_component", "milestone_events", ["component_id", "id"])
        op.create_index("idx_milestone_events_project", "milestone_events", ["project_id"])
        op.create_index("idx_milestone_events_operator", "milestone_events", ["operator_id", "action"])

    if "needs_review" not in existing_tables:
        op.create_table(
            "needs_review",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("component_id", sa.Integer(), nullable=True),
            sa.Column("drawing_id", sa.Integer(), nullable=True),
            sa.Column("type", sa.String(length=40), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False),
            sa.Column("group_token", sa.String(length=400), nullable=True,
                      comment="Coalescing key: grouped identity for quantity deltas, raw drawing for similarity"),
            sa.Column("description", sa.String(length=500), nullable=True),
            sa.Column("payload", sa.JSON(), nullable=False),
            sa.Column("created_by", sa.String(length=64), nullable=True),
            sa.Column("resolved_by", sa.String(length=64), nullable=True),
            sa.Column("resolution_note", sa.Text(), nullable=True),
            sa.Column("resolution", sa.JSON(), nullable=True, comment="Handler input + outcome"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
            sa.CheckConstraint("status IN ('pending','resolved','ignored')", name="ck_needs_review_status"),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["component_id"], ["components.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["drawing_id"], ["drawings.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_needs_review_project_status", "needs_review", ["project_id", "status"])
        op.create_index(
            "idx_needs_review_coalesce", "needs_review", ["project_id", "type", "group_token", "status"],
        )
        op.create_index("idx_needs_review_component", "needs_review", ["component_id"])

    if "audit_logs" not in existing_tables:
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=True),
            sa.Column("entity_type", sa.String(length=30), nullable=False,
                      comment="project | component | drawing | review | operator | template"),
            sa.Column("entity_id", sa.String(length=36), nullable=False),
            sa.Column("action", sa.String(length=60), nullable=False),
            sa.Column("actor", sa.String(length=64), nullable=False),
            sa.Column("diff_json", sa.Text(), nullable=True),
            sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_audit_entity", "audit_logs", ["entity_type", "entity_id"])
        op.create_index("idx_audit_project", "audit_logs", ["project_id"])
        op.create_index("idx_audit_action", "audit_logs", ["action"])
        op.create_index("idx_audit_ts", "audit_logs", ["timestamp"])


def downgrade():
    bind = op.get_bind()
    existing_tables = set(sa_inspect(bind).get_table_names())

    for name in (
        "audit_logs", "needs_review", "milestone_events", "operators", "components",
        "progress_templates", "test_packages", "systems", "areas", "drawings", "projects",
    ):
        if name in existing_tables:
            op.drop_table(name)
