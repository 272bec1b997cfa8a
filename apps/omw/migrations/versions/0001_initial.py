"""Core OMW tables.

Tables come from the application models and are only created when missing,
so this revision also succeeds on a database built by create_all.
"""
from alembic import op

from apps.omw.app import models  # noqa: F401
from apps.omw.app.db import Base
from apps.omw.app.schema import create_table_if_missing, has_table

# revision identifiers, used by Alembic.
revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    for table in Base.metadata.sorted_tables:
        create_table_if_missing(table)


def downgrade() -> None:
    bind = op.get_bind()
    for table in reversed(Base.metadata.sorted_tables):
        if has_table(bind, table.name, table.schema):
            op.drop_table(table.name, schema=table.schema)
