"""Initial schema for ASP Catalog.

Revision ID: 0001
Revises:
Create Date: 2026-01-01

Creates:
- Raw data: raw_records
- Product identity: products, product_sources, raw_canonical_links
- Performer identity: performers, performer_aliases, performer_external_ids,
  product_performers
- Tags: tags, product_tags
- Operations: review_flags, product_merges, performer_index
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # =========================================================================
    # Raw Data
    # =========================================================================

    op.create_table(
        "raw_records",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("source", sa.String(100), nullable=False),
        sa.Column("source_product_id", sa.String(255), nullable=False),
        sa.Column("url", sa.Text(), nullable=True),
        sa.Column("body", sa.LargeBinary(), nullable=True),
        sa.Column("body_url", sa.Text(), nullable=True),
        sa.Column("content_hash", sa.String(64), nullable=False),
        sa.Column("mime_type", sa.String(100), default="application/octet-stream"),
        sa.Column("size_bytes", sa.Integer(), default=0),
        sa.Column("fetched_at", sa.DateTime(), nullable=False),
        sa.Column("processed_at", sa.DateTime(), nullable=True),
        sa.Column("review_reason", sa.String(50), nullable=True),
        sa.Column("review_detail", sa.Text(), nullable=True),
        sa.UniqueConstraint("source", "source_product_id", name="uq_raw_records_source_key"),
    )
    op.create_index("ix_raw_records_source", "raw_records", ["source"])
    op.create_index("ix_raw_records_content_hash", "raw_records", ["content_hash"])
    op.create_index("ix_raw_records_fetched_at", "raw_records", ["fetched_at"])
    op.create_index("ix_raw_records_processed_at", "raw_records", ["processed_at"])

    # =========================================================================
    # Product Identity
    # =========================================================================

    op.create_table(
        "products",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("normalized_product_id", sa.String(255), nullable=False),
        sa.Column("product_code", sa.String(100), nullable=True),
        sa.Column("title", sa.Text(), nullable=True),
        sa.Column("titles_json", sa.Text(), default="{}"),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("release_date", sa.Date(), nullable=True),
        sa.Column("duration_minutes", sa.Integer(), nullable=True),
        sa.Column("thumbnail_url", sa.Text(), nullable=True),
        sa.Column("field_sources_json", sa.Text(), default="{}"),
        sa.Column(
            "merged_into_id", sa.String(36), sa.ForeignKey("products.id"), nullable=True
        ),
        sa.Column("merged_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_products_normalized_product_id", "products", ["normalized_product_id"], unique=True
    )
    op.create_index("ix_products_merged_into_id", "products", ["merged_into_id"])

    op.create_table(
        "product_sources",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "product_id",
            sa.String(36),
            sa.ForeignKey("products.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("asp_name", sa.String(100), nullable=False),
        sa.Column("source_product_id", sa.String(255), nullable=False),
        sa.Column("product_code", sa.String(100), nullable=True),
        sa.Column("affiliate_url", sa.Text(), nullable=True),
        sa.Column("price", sa.Integer(), nullable=True),
        sa.Column("currency", sa.String(3), default="JPY"),
        sa.Column("data_source", sa.String(10), default="HTML"),
        sa.Column("last_updated", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("asp_name", "source_product_id", name="uq_product_sources_asp_key"),
    )
    op.create_index("ix_product_sources_product_id", "product_sources", ["product_id"])
    op.create_index("ix_product_sources_asp_name", "product_sources", ["asp_name"])

    op.create_table(
        "raw_canonical_links",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "canonical_product_id",
            sa.String(36),
            sa.ForeignKey("products.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("source_type", sa.String(100), nullable=False),
        sa.Column("raw_record_key", sa.String(255), nullable=False),
        sa.Column("content_hash_at_processing", sa.String(64), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "canonical_product_id",
            "source_type",
            "raw_record_key",
            name="uq_raw_canonical_links_triple",
        ),
    )
    op.create_index(
        "ix_raw_canonical_links_canonical_product_id",
        "raw_canonical_links",
        ["canonical_product_id"],
    )

    # =========================================================================
    # Performer Identity
    # =========================================================================

    op.create_table(
        "performers",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("name_key", sa.String(255), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_performers_name", "performers", ["name"], unique=True)
    op.create_index("ix_performers_name_key", "performers", ["name_key"])

    op.create_table(
        "performer_aliases",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "performer_id", sa.String(36), sa.ForeignKey("performers.id"), nullable=False
        ),
        sa.Column("alias_name", sa.String(255), nullable=False),
        sa.Column("alias_key", sa.String(255), nullable=False),
        sa.Column("source", sa.String(100), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("performer_id", "alias_name", name="uq_performer_aliases_name"),
    )
    op.create_index("ix_performer_aliases_performer_id", "performer_aliases", ["performer_id"])
    op.create_index("ix_performer_aliases_alias_name", "performer_aliases", ["alias_name"])
    op.create_index("ix_performer_aliases_alias_key", "performer_aliases", ["alias_key"])

    op.create_table(
        "performer_external_ids",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "performer_id", sa.String(36), sa.ForeignKey("performers.id"), nullable=False
        ),
        sa.Column("provider", sa.String(100), nullable=False),
        sa.Column("external_id", sa.String(255), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("provider", "external_id", name="uq_performer_external_ids"),
    )
    op.create_index(
        "ix_performer_external_ids_performer_id", "performer_external_ids", ["performer_id"]
    )

    op.create_table(
        "product_performers",
        sa.Column(
            "product_id",
            sa.String(36),
            sa.ForeignKey("products.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column(
            "performer_id", sa.String(36), sa.ForeignKey("performers.id"), primary_key=True
        ),
        sa.Column("source", sa.String(100), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_product_performers_performer_id", "product_performers", ["performer_id"])

    # =========================================================================
    # Tags
    # =========================================================================

    op.create_table(
        "tags",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
    )
    op.create_index("ix_tags_name", "tags", ["name"], unique=True)

    op.create_table(
        "product_tags",
        sa.Column(
            "product_id",
            sa.String(36),
            sa.ForeignKey("products.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("tag_id", sa.String(36), sa.ForeignKey("tags.id"), primary_key=True),
    )

    # =========================================================================
    # Operations and Reference Data
    # =========================================================================

    op.create_table(
        "review_flags",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "raw_record_id",
            sa.String(36),
            sa.ForeignKey("raw_records.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("source", sa.String(100), nullable=False),
        sa.Column("source_product_id", sa.String(255), nullable=False),
        sa.Column("reason", sa.String(50), nullable=False),
        sa.Column("detail", sa.Text(), default=""),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("resolved_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_review_flags_raw_record_id", "review_flags", ["raw_record_id"])
    op.create_index("ix_review_flags_source", "review_flags", ["source"])
    op.create_index("ix_review_flags_reason", "review_flags", ["reason"])

    op.create_table(
        "product_merges",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "surviving_product_id", sa.String(36), sa.ForeignKey("products.id"), nullable=False
        ),
        sa.Column(
            "merged_product_id", sa.String(36), sa.ForeignKey("products.id"), nullable=False
        ),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("moved_sources", sa.Integer(), default=0),
        sa.Column("moved_links", sa.Integer(), default=0),
        sa.Column("merged_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_product_merges_surviving_product_id", "product_merges", ["surviving_product_id"]
    )
    op.create_index(
        "ix_product_merges_merged_product_id", "product_merges", ["merged_product_id"]
    )

    op.create_table(
        "performer_index",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("product_code_key", sa.String(100), nullable=False),
        sa.Column("performer_name", sa.String(255), nullable=False),
        sa.Column("source", sa.String(100), nullable=False),
        sa.Column("source_url", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "source", "product_code_key", "performer_name", name="uq_performer_index_entry"
        ),
    )
    op.create_index("ix_performer_index_product_code_key", "performer_index", ["product_code_key"])


def downgrade() -> None:
    op.drop_index("ix_performer_index_product_code_key", table_name="performer_index")
    op.drop_table("performer_index")

    op.drop_index("ix_product_merges_merged_product_id", table_name="product_merges")
    op.drop_index("ix_product_merges_surviving_product_id", table_name="product_merges")
    op.drop_table("product_merges")

    op.drop_index("ix_review_flags_reason", table_name="review_flags")
    op.drop_index("ix_review_flags_source", table_name="review_flags")
    op.drop_index("ix_review_flags_raw_record_id", table_name="review_flags")
    op.drop_table("review_flags")

    op.drop_table("product_tags")
    op.drop_index("ix_tags_name", table_name="tags")
    op.drop_table("tags")

    op.drop_index("ix_product_performers_performer_id", table_name="product_performers")
    op.drop_table("product_performers")

    op.drop_index("ix_performer_external_ids_performer_id", table_name="performer_external_ids")
    op.drop_table("performer_external_ids")

    op.drop_index("ix_performer_aliases_alias_key", table_name="performer_aliases")
    op.drop_index("ix_performer_aliases_alias_name", table_name="performer_aliases")
    op.drop_index("ix_performer_aliases_performer_id", table_name="performer_aliases")
    op.drop_table("performer_aliases")

    op.drop_index("ix_performers_name_key", table_name="performers")
    op.drop_index("ix_performers_name", table_name="performers")
    op.drop_table("performers")

    op.drop_index(
        "ix_raw_canonical_links_canonical_product_id", table_name="raw_canonical_links"
    )
    op.drop_table("raw_canonical_links")

    op.drop_index("ix_product_sources_asp_name", table_name="product_sources")
    op.drop_index("ix_product_sources_product_id", table_name="product_sources")
    op.drop_table("product_sources")

    op.drop_index("ix_products_merged_into_id", table_name="products")
    op.drop_index("ix_products_normalized_product_id", table_name="products")
    op.drop_table("products")

    op.drop_index("ix_raw_records_processed_at", table_name="raw_records")
    op.drop_index("ix_raw_records_fetched_at", table_name="raw_records")
    op.drop_index("ix_raw_records_content_hash", table_name="raw_records")
    op.drop_index("ix_raw_records_source", table_name="raw_records")
    op.drop_table("raw_records")
