from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from common.settings import settings

engine = create_engine(settings.database_url, pool_pre_ping=True, isolation_level="READ COMMITTED")
SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)
