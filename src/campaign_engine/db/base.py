from sqlalchemy import MetaData
from sqlalchemy.orm import DeclarativeBase

NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_N_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    """Declarative base for campaign engine tables; every model names its table."""

    metadata = MetaData(naming_convention=NAMING_CONVENTION)


# Register models on the metadata for Alembic autogenerate
import campaign_engine.models  # noqa: F401,E402
