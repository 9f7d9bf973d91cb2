from alembic import op
import sqlalchemy as sa


revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "sites",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("url", sa.Text(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("max_pages", sa.Integer(), nullable=False, server_default="50"),
        sa.Column("auto_merge", sa.Boolean(), nullable=False, server_default=sa.text("FALSE")),
        sa.Column("github_repo", sa.String(length=255), nullable=True),
        sa.Column("github_owner", sa.String(length=255), nullable=True),
        sa.Column("github_installation_id", sa.String(length=64), nullable=True),
        sa.Column("ga4_property_id", sa.String(length=64), nullable=True),
        sa.Column("ga4_credentials", sa.Text(), nullable=True),
        sa.Column("plan_tier", sa.String(length=20), nullable=False, server_default="starter"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("TRUE")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "competitors",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("site_id", sa.Integer(), sa.ForeignKey("sites.id"), nullable=False),
        sa.Column("url", sa.Text(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("TRUE")),
    )

    op.create_table(
        "crawls",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("site_id", sa.Integer(), sa.ForeignKey("sites.id"), nullable=True),
        sa.Column("competitor_id", sa.Integer(), sa.ForeignKey("competitors.id"), nullable=True),
        sa.Column("url", sa.Text(), nullable=False),
        sa.Column("title", sa.Text(), nullable=True),
        sa.Column("content", sa.Text(), nullable=False, server_default=""),
        sa.Column("html_content", sa.Text(), nullable=False, server_default=""),
        sa.Column("meta_description", sa.Text(), nullable=True),
        sa.Column("status_code", sa.Integer(), nullable=False),
        sa.Column("load_time", sa.Float(), nullable=False, server_default="0"),
        sa.Column("content_size", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("performance_score", sa.Float(), nullable=True),
        sa.Column("accessibility_score", sa.Float(), nullable=True),
        sa.Column("best_practices_score", sa.Float(), nullable=True),
        sa.Column("seo_score", sa.Float(), nullable=True),
        sa.Column("cls_score", sa.Float(), nullable=True),
        sa.Column("lcp_score", sa.Float(), nullable=True),
        sa.Column("fcp_score", sa.Float(), nullable=True),
        sa.Column("crawled_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "(site_id IS NULL) <> (competitor_id IS NULL)", name="ck_crawl_single_owner"
        ),
    )
    op.create_index("ix_crawls_site_crawled_at", "crawls", ["site_id", "crawled_at"])
    op.create_index("ix_crawls_competitor_crawled_at", "crawls", ["competitor_id", "crawled_at"])

    op.create_table(
        "embeddings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("crawl_id", sa.Integer(), sa.ForeignKey("crawls.id"), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("vector", sa.JSON(), nullable=False),
        sa.Column("model", sa.String(length=100), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_embeddings_crawl_id", "embeddings", ["crawl_id"])

    op.create_table(
        "opportunities",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("site_id", sa.Integer(), sa.ForeignKey("sites.id"), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("type", sa.String(length=40), nullable=False, server_default="COPY_TWEAK"),
        sa.Column("priority", sa.String(length=10), nullable=False, server_default="MEDIUM"),
        sa.Column("revenue_delta", sa.Float(), nullable=False, server_default="0"),
        sa.Column("confidence", sa.Float(), nullable=False, server_default="0.5"),
        sa.Column("target_url", sa.Text(), nullable=True),
        sa.Column("current_content", sa.Text(), nullable=True),
        sa.Column("suggested_content", sa.Text(), nullable=True),
        sa.Column("patch_data", sa.JSON(), nullable=True),
        sa.Column("reasoning", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="PENDING"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_check_constraint(
        "ck_confidence_range",
        "opportunities",
        "confidence >= 0.0 AND confidence <= 1.0",
    )

    op.create_table(
        "deployments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "opportunity_id", sa.Integer(), sa.ForeignKey("opportunities.id"), nullable=False
        ),
        sa.Column("site_id", sa.Integer(), sa.ForeignKey("sites.id"), nullable=False),
        sa.Column("pr_number", sa.Integer(), nullable=True),
        sa.Column("pr_url", sa.Text(), nullable=True),
        sa.Column("pr_title", sa.String(length=255), nullable=True),
        sa.Column("pr_description", sa.Text(), nullable=True),
        sa.Column("before_score", sa.Float(), nullable=True),
        sa.Column("after_score", sa.Float(), nullable=True),
        sa.Column("performance_delta", sa.Float(), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="PR_CREATED"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("deployed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rolled_back_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "analytics_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("site_id", sa.Integer(), sa.ForeignKey("sites.id"), nullable=True),
        sa.Column("event", sa.String(length=100), nullable=False),
        sa.Column("data_json", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_analytics_events_created_at", "analytics_events", ["created_at"])


def downgrade() -> None:
    op.drop_index("ix_analytics_events_created_at", table_name="analytics_events")
    op.drop_table("analytics_events")
    op.drop_table("deployments")
    op.drop_constraint("ck_confidence_range", "opportunities", type_="check")
    op.drop_table("opportunities")
    op.drop_index("ix_embeddings_crawl_id", table_name="embeddings")
    op.drop_table("embeddings")
    op.drop_index("ix_crawls_competitor_crawled_at", table_name="crawls")
    op.drop_index("ix_crawls_site_crawled_at", table_name="crawls")
    op.drop_table("crawls")
    op.drop_table("competitors")
    op.drop_table("sites")
