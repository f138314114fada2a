from __future__ import annotations

import sqlalchemy as sa

metadata = sa.MetaData()


kv_entries = sa.Table(
    "kv_entries",
    metadata,
    sa.Column("namespace", sa.String(length=64), nullable=False),
    sa.Column("key", sa.String(length=512), nullable=False),
    sa.Column("value", sa.Text(), nullable=False),
    sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    sa.PrimaryKeyConstraint("namespace", "key", name="pk_kv_entries"),
)

sa.Index("ix_kv_entries_expires_at", kv_entries.c.expires_at)
