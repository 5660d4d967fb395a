"""
Catalog tables consulted by the stream gate.

The admin site owns these tables (and their many other columns); the gate
only reads ids, titles and availability, so only those columns are declared.
"""

import sqlalchemy as sa
from databases import Database

from config import DATABASE_URL

# Works with PostgreSQL or SQLite
database = Database(DATABASE_URL)
metadata = sa.MetaData()


async def configure_database(db: Database = database):
    """
    Configure database-specific settings after connection.
    SQLite needs foreign keys switched on per connection; PostgreSQL enforces them already.
    """
    if db.url.dialect == "sqlite":
        await db.execute("PRAGMA foreign_keys = ON")


dramas = sa.Table(
    "dramas",
    metadata,
    sa.Column("id", sa.String(50), primary_key=True),
    sa.Column("title", sa.String(255), nullable=False),
    sa.Column("status", sa.String(50), default="active"),
)

episodes = sa.Table(
    "episodes",
    metadata,
    sa.Column("id", sa.String(50), primary_key=True),
    sa.Column("drama_id", sa.String(50), sa.ForeignKey("dramas.id"), nullable=False),
    sa.Column("title", sa.String(255), nullable=False),
    sa.Column("episode_number", sa.Integer, nullable=False),
    sa.Column("status", sa.String(50), default="active"),
)
