"""Default roles, vehicle types, pricing rules and surge zone."""
from alembic import op
from sqlalchemy.orm import Session

from apps.omw.app.seed import seed_defaults

# revision identifiers, used by Alembic.
revision = '0002_reference_data'
down_revision = '0001_initial'
branch_labels = None
depends_on = None


def upgrade() -> None:
    # seed_defaults only inserts what is missing
    with Session(bind=op.get_bind()) as s:
        seed_defaults(s)


def downgrade() -> None:
    pass
