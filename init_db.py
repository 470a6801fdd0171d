from sqlalchemy import create_engine

from internet_id.api.db_models import Base
from internet_id.config import resolve_config

# Same DATABASE_URL resolution as the API and CLI
engine = create_engine(resolve_config().database.url)
print("Creating tables...")
Base.metadata.create_all(engine)
print("Tables created.")
