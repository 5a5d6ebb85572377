"""001_initial_schema

Revision ID: 001
Revises: 
Create Date: 2026-10-18 09:00:00.000000

Creates every engine table from the current models:
- Content tables: leagues, seasons, clubs, club_leagues, teams, matches, standings
- Engine tables: migration_records, migration_locks, audit_log_entries
"""
from typing import Sequence, Union

from alembic import op

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create all tables from scratch."""
    from standings_engine.database.db import Base
    from standings_engine.database import models  # noqa: F401

    bind = op.get_bind()
    Base.metadata.create_all(bind=bind, checkfirst=True)


def downgrade() -> None:
    """Drop all tables."""
    from standings_engine.database.db import Base
    from standings_engine.database import models  # noqa: F401

    bind = op.get_bind()
    Base.metadata.drop_all(bind=bind, checkfirst=True)
