"""Column types shared by the models: native on Postgres, portable elsewhere (tests run on SQLite)."""
from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB

JSONType = JSON().with_variant(JSONB(), "postgresql")
