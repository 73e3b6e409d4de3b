from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession, AsyncEngine
from sqlalchemy.orm import declarative_base
from localizer.core.config import get_settings

settings = get_settings()
engine = create_async_engine(settings.database_url, echo=False, future=True)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
Base = declarative_base()


async def get_db():
    async with SessionLocal() as session:
        yield session


async def init_models(bind: AsyncEngine | None = None):
    # import models so every table is registered on Base.metadata
    from localizer.models import video, transcription, dubbing  # noqa: F401
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
